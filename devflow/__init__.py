"""DevFlow Orchestrator: development lifecycle automation for platform-hosted repositories."""

__version__ = "0.3.0"
