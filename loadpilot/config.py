"""
Application Configuration using Pydantic Settings

Loads configuration from environment variables with sensible defaults.
"""

from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    APP_DEBUG: bool = True
    APP_RELOAD: bool = True

    # ========================================================================
    # Postgres Connection Settings
    # ========================================================================
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DATABASE: str = "loadpilot"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""

    POSTGRES_POOL_MIN_SIZE: int = 2
    POSTGRES_POOL_MAX_SIZE: int = 20
    POSTGRES_COMMAND_TIMEOUT_SECONDS: float = 60.0
    POSTGRES_CONNECT_ATTEMPTS: int = 5
    POSTGRES_CONNECT_RETRY_SECONDS: float = 1.0

    # If True, connect and create tables during FastAPI startup.
    POSTGRES_CONNECT_ON_STARTUP: bool = True

    # ========================================================================
    # InfluxDB (telemetry store) Settings
    # ========================================================================
    INFLUXDB_HOST: str = "localhost"
    INFLUXDB_PORT: int = 8086
    INFLUXDB_DATABASE: str = "k6"
    INFLUXDB_USERNAME: str = ""
    INFLUXDB_PASSWORD: str = ""
    INFLUXDB_TIMEOUT_SECONDS: float = 30.0

    # URL the k6 container writes to. It runs inside the cluster, so this is
    # usually a service DNS name rather than INFLUXDB_HOST.
    INFLUXDB_WRITE_URL: str = "http://influxdb:8086/k6"

    # ========================================================================
    # Kubernetes Settings
    # ========================================================================
    K8S_NAMESPACE: str = "default"
    # False loads ~/.kube/config (local development).
    K8S_IN_CLUSTER: bool = False
    # Job watches are reopened after this many seconds.
    K8S_WATCH_TIMEOUT_SECONDS: int = 60
    # A silent watch or log follow gives up its thread after this read timeout.
    K8S_STREAM_READ_TIMEOUT_SECONDS: float = 60.0

    K6_IMAGE: str = "grafana/k6"
    K6_JOB_TTL_SECONDS: int = 10
    K6_LOG_TAIL_LINES: int = 10

    POD_READY_ATTEMPTS: int = 30
    POD_READY_INTERVAL_SECONDS: float = 2.0
    LOG_ATTACH_DELAY_SECONDS: float = 1.0

    # ========================================================================
    # Telemetry Polling Settings
    # ========================================================================
    # Ingestion lags job start; these bound the wait for the first data point.
    RUN_AT_POLL_ATTEMPTS: int = 60
    RUN_AT_POLL_INTERVAL_SECONDS: float = 1.0
    RUN_AT_TIMEOUT_SECONDS: float = 90.0

    DEFAULT_METRICS_INTERVAL: str = "1m"

    # ========================================================================
    # Redis (cross-instance status bus) Settings
    # ========================================================================
    REDIS_URL: str = "redis://localhost:6379/0"
    STATUS_TOPIC: str = "load-test.status"

    # ========================================================================
    # Live Update Stream Settings
    # ========================================================================
    STATUS_HEARTBEAT_SECONDS: float = 15.0
    STATUS_EVENT_RETRY_MS: int = 3000
    SUBSCRIBER_QUEUE_SIZE: int = 50

    # ========================================================================
    # Thread Executors
    # ========================================================================
    # The Kubernetes and InfluxDB Python clients are synchronous; we run them in
    # dedicated thread pools. Watches and log follows run on their own threads
    # and do not count against CLUSTER_EXECUTOR_MAX_WORKERS.
    CLUSTER_EXECUTOR_MAX_WORKERS: int = 32
    TELEMETRY_EXECUTOR_MAX_WORKERS: int = 8

    # ========================================================================
    # Security Settings
    # ========================================================================
    CORS_ORIGINS: List[str] = []

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _build_cors_origins(cls, v, info):
        if v:
            if isinstance(v, str):
                import json

                return json.loads(v)
            return v
        host = info.data.get("APP_HOST", "127.0.0.1")
        port = info.data.get("APP_PORT", 8000)
        origins = [f"http://{host}:{port}"]
        if host == "127.0.0.1":
            origins.append(f"http://localhost:{port}")
        elif host == "localhost":
            origins.append(f"http://127.0.0.1:{port}")
        return origins

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Create global settings instance
settings = Settings()
