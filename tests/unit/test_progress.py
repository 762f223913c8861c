"""Tests for promptloom.core.progress — the progress poller."""

from __future__ import annotations

import asyncio

from promptloom.core.errors import RequestError
from promptloom.core.models import Progress
from promptloom.core.progress import ProgressPoller


class StubClient:
    """Counts polls and returns a rising progress value."""

    def __init__(self, fail_after: int | None = None):
        self.calls = 0
        self.fail_after = fail_after

    async def query_progress(self) -> Progress:
        self.calls += 1
        if self.fail_after is not None and self.calls > self.fail_after:
            raise RequestError(500, "boom")
        return Progress(progress=min(1.0, self.calls / 10))


class TestProgressPoller:
    def test_publishes_initial_snapshot_first(self):
        published = []

        async def scenario():
            poller = ProgressPoller(StubClient(), interval=0.01, on_progress=published.append)
            poller.start()
            await poller.stop()

        asyncio.run(scenario())
        assert published[0] == Progress.initial()

    def test_polls_until_stopped(self):
        client = StubClient()
        published = []

        async def scenario():
            async with ProgressPoller(client, interval=0.01, on_progress=published.append) as poller:
                await asyncio.sleep(0.08)
            return poller

        poller = asyncio.run(scenario())

        assert poller.polls >= 2
        assert not poller.running
        assert poller.latest.progress > 0
        assert len(published) == poller.polls + 1

    def test_stop_is_idempotent_and_safe_before_start(self):
        async def scenario():
            poller = ProgressPoller(StubClient(), interval=0.01)
            await poller.stop()
            poller.start()
            await poller.stop()
            await poller.stop()
            return poller

        assert not asyncio.run(scenario()).running

    def test_poll_error_ends_loop_quietly(self):
        client = StubClient(fail_after=1)

        async def scenario():
            poller = ProgressPoller(client, interval=0.01)
            poller.start()
            await asyncio.sleep(0.08)
            running = poller.running
            await poller.stop()
            return poller, running

        poller, running_after_error = asyncio.run(scenario())

        assert not running_after_error
        assert poller.polls == 1
        assert client.calls == 2
