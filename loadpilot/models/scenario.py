"""
Scenario Models

Read-only inputs to script generation: a scenario owns weighted flows, each flow
owns ordered steps. Steps are a tagged union over the step kind.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class StepType(str, Enum):
    """Kinds of scenario step."""

    API = "API"
    BROWSER = "BROWSER"


class HttpMethod(str, Enum):
    """HTTP methods an API step may use."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    HEAD = "HEAD"
    TRACE = "TRACE"
    CONNECT = "CONNECT"


class BodyType(str, Enum):
    NONE = "NONE"
    JSON = "JSON"
    FORM_DATA = "FORM_DATA"
    TEXT = "TEXT"
    RAW = "RAW"
    URLENCODED = "x-www-form-urlencoded"


class ApiStepConfig(BaseModel):
    """Protocol config for an API step."""

    endpoint: str = Field(..., description="Request URL")
    method: HttpMethod = Field(HttpMethod.GET, description="HTTP method")
    headers: Optional[Dict[str, str]] = Field(None, description="Request headers")
    body_type: BodyType = Field(BodyType.NONE, alias="bodyType")
    payload: Optional[Union[str, Dict[str, Any]]] = Field(
        None, description="Request body; objects are sent JSON-encoded"
    )

    model_config = {"populate_by_name": True}

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class BrowserStepConfig(BaseModel):
    """Protocol config for a browser step (a page load)."""

    url: str = Field(..., description="Page URL")


class ApiStep(BaseModel):
    id: str
    name: str
    type: Literal["API"] = "API"
    config: ApiStepConfig


class BrowserStep(BaseModel):
    id: str
    name: str
    type: Literal["BROWSER"] = "BROWSER"
    config: BrowserStepConfig


ScenarioStep = Annotated[Union[ApiStep, BrowserStep], Field(discriminator="type")]


class ScenarioFlow(BaseModel):
    """One weighted path through a scenario."""

    id: str
    name: str
    weight: float = Field(1.0, ge=0, description="Relative selection weight")
    steps: List[ScenarioStep] = Field(default_factory=list)


class Scenario(BaseModel):
    """
    A named load-test definition.

    Flows and steps are kept in their persisted order.
    """

    id: str
    user_id: str
    name: str
    vus: int = Field(1, ge=1, description="Virtual users")
    duration: int = Field(..., gt=0, description="Run duration (seconds)")
    flows: List[ScenarioFlow] = Field(default_factory=list)

    def flow_step_pairs(self) -> list[tuple[str, str]]:
        """Every (flow_id, step_id) pair, in scenario order."""
        return [(flow.id, step.id) for flow in self.flows for step in flow.steps]
