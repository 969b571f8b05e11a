"""Synergy Core - agentic tool orchestration for a browser assistant."""

__version__ = "0.1.0"

from synergy_core.config import Config
from synergy_core.orchestrator import Orchestrator, RunResult

__all__ = ["Config", "Orchestrator", "RunResult", "__version__"]
