"""FastAPI REST adapter over the generation orchestrator."""
