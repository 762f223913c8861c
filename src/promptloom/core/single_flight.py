"""Single-flight guard: at most one image job in flight at a time.

The image backend processes one diffusion job at a time and has no queue of
its own.  :class:`SingleFlightGuard` prevents client-side races from ever
sending it two jobs at once.

Two admission policies are supported:

- **reject** (``wait=False``): raise
  :class:`~promptloom.core.errors.GenerationInProgressError` immediately if
  a job is active.  Interactive one-shot generation uses this.
- **queue** (``wait=True``): wait for the active job to finish.  Sweep
  points use this so a sweep never fails just because a point overlapped
  with another request.

The check and the claim happen without an intervening suspension point, so
on a single event loop two callers can never both pass the check.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from promptloom.core.errors import GenerationInProgressError

logger = logging.getLogger(__name__)


class SingleFlightGuard:
    """Atomic "current task" guard around an ``asyncio.Lock``."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._current: str | None = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def current(self) -> str | None:
        """Label of the job holding the guard, or ``None``."""
        return self._current

    @asynccontextmanager
    async def claim(self, label: str, *, wait: bool = False) -> AsyncIterator[None]:
        """Hold the guard for the duration of the ``async with`` block.

        Args:
            label: Human-readable description of the job (for logs/errors).
            wait: Queue behind the active job instead of rejecting.

        Raises:
            GenerationInProgressError: ``wait`` is false and a job is active.
        """
        if not wait and self._lock.locked():
            raise GenerationInProgressError(self._current)

        await self._lock.acquire()
        self._current = label
        logger.debug(f"Guard claimed by {label}")
        try:
            yield
        finally:
            self._current = None
            self._lock.release()
            logger.debug(f"Guard released by {label}")
