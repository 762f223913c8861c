"""Core generation engine.

This package holds everything that talks to the backends and persists
results.  The REST layer in :mod:`promptloom.api` is a thin adapter on top.

Architecture Overview
---------------------
1. **Configuration** (config.py): pydantic-settings, ``PROMPTLOOM_`` prefix.
2. **Data model** (models.py): intents, wire payloads, history records.
3. **Options builder** (options_builder.py): intent to backend payload, pure.
4. **Clients** (clients.py): httpx round trips to the image and text backends.
5. **Concurrency** (single_flight.py, progress.py, sweeps.py): one job at a
   time, progress polling, serial parameter sweeps.
6. **Persistence** (blob_store.py, history_store.py): files plus SQLite.
7. **Orchestrator** (orchestrator.py): the façade callers use.

Usage Example
-------------
::

    from promptloom.core import GenerationIntent, GenerationOrchestrator, config

    orchestrator = GenerationOrchestrator.from_config(config)
    image, entry = await orchestrator.generate(GenerationIntent(prompt="a cat"))
"""

from promptloom.core.config import PromptLoomConfig, config
from promptloom.core.errors import (
    GenerationFailedError,
    GenerationInProgressError,
    PromptLoomError,
)
from promptloom.core.models import GenerationIntent, HistoryEntry, LoraInvocation
from promptloom.core.orchestrator import GenerationOrchestrator
from promptloom.core.sweeps import SweepAxis

__all__ = [
    "GenerationFailedError",
    "GenerationInProgressError",
    "GenerationIntent",
    "GenerationOrchestrator",
    "HistoryEntry",
    "LoraInvocation",
    "PromptLoomConfig",
    "PromptLoomError",
    "SweepAxis",
    "config",
]
