"""promptloom - orchestration engine for self-hosted image and text generation backends."""

__version__ = "0.1.0"

from promptloom.core.config import PromptLoomConfig, config
from promptloom.core.orchestrator import GenerationOrchestrator

__all__ = [
    "GenerationOrchestrator",
    "PromptLoomConfig",
    "config",
]
