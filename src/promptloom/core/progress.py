"""Progress polling for an in-flight image job.

The image backend exposes no push notifications, only a ``progress``
endpoint.  :class:`ProgressPoller` runs beside the job as an independent
asyncio task and keeps publishing fresh snapshots until the job tells it to
stop.

Lifecycle
---------
::

    poller = ProgressPoller(client, interval=0.2, on_progress=callback)
    poller.start()              # publishes Progress.initial() right away
    try:
        await client.submit_image(options)
    finally:
        await poller.stop()     # always torn down with its job

Or equivalently ``async with ProgressPoller(...) as poller: ...``.

Rules
-----
- Fixed interval, no backoff.
- Progress is best-effort telemetry: any error while polling is logged and
  ends the loop quietly.  It never fails the owning job.
- ``stop()`` cancels and awaits the task, so a poller can never outlive its
  job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import httpx

from promptloom.core.errors import PromptLoomError
from promptloom.core.models import Progress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], None]


class ProgressPoller:
    """Poll ``query_progress`` on a fixed interval until stopped.

    Attributes:
        latest: Most recent snapshot (starts as ``Progress.initial()``).
        polls: Number of successful polls so far.
    """

    def __init__(
        self,
        client,
        *,
        interval: float = 0.2,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Initialize the poller.

        Args:
            client: Anything with an async ``query_progress()`` method.
            interval: Seconds to sleep between polls.
            on_progress: Called with every published snapshot.
        """
        self._client = client
        self._interval = interval
        self._on_progress = on_progress
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.latest = Progress.initial()
        self.polls = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._publish(Progress.initial())
        self._task = asyncio.create_task(self._run(), name="progress-poller")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> ProgressPoller:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _publish(self, progress: Progress) -> None:
        self.latest = progress
        if self._on_progress is not None:
            self._on_progress(progress)

    async def _run(self) -> None:
        try:
            while not self._stop.is_set():
                progress = await self._client.query_progress()
                if self._stop.is_set():
                    break
                self.polls += 1
                self._publish(progress)
                await asyncio.sleep(self._interval)
        except (PromptLoomError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Progress polling stopped: {e}")
        except Exception:
            # Telemetry must never fail the owning job.
            logger.exception("Progress polling stopped unexpectedly")
