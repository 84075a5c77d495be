"""LoadPilot: load-test orchestration service."""

__version__ = "0.1.0"
