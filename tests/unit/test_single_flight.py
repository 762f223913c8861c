"""Tests for promptloom.core.single_flight — one image job at a time."""

from __future__ import annotations

import asyncio

import pytest

from promptloom.core.errors import GenerationInProgressError
from promptloom.core.single_flight import SingleFlightGuard


class TestSingleFlightGuard:
    def test_idle_guard(self):
        guard = SingleFlightGuard()
        assert not guard.busy
        assert guard.current is None

    def test_claim_sets_and_clears_current(self):
        guard = SingleFlightGuard()
        seen = []

        async def scenario():
            async with guard.claim("job-1"):
                seen.append((guard.busy, guard.current))

        asyncio.run(scenario())

        assert seen == [(True, "job-1")]
        assert not guard.busy
        assert guard.current is None

    def test_second_claim_is_rejected(self):
        guard = SingleFlightGuard()

        async def scenario():
            async with guard.claim("first"):
                with pytest.raises(GenerationInProgressError) as exc_info:
                    async with guard.claim("second"):
                        pass
                return exc_info.value

        error = asyncio.run(scenario())
        assert error.current == "first"

    def test_concurrent_claims_admit_exactly_one(self):
        guard = SingleFlightGuard()
        admitted = []
        rejected = []

        async def attempt(label):
            try:
                async with guard.claim(label):
                    admitted.append(label)
                    await asyncio.sleep(0.01)
            except GenerationInProgressError:
                rejected.append(label)

        async def scenario():
            await asyncio.gather(*(attempt(f"job-{i}") for i in range(5)))

        asyncio.run(scenario())

        assert len(admitted) == 1
        assert len(rejected) == 4

    def test_waiting_claims_run_in_order(self):
        guard = SingleFlightGuard()
        order = []

        async def job(label):
            async with guard.claim(label, wait=True):
                order.append(f"{label}:start")
                await asyncio.sleep(0.01)
                order.append(f"{label}:end")

        async def scenario():
            await asyncio.gather(job("a"), job("b"))

        asyncio.run(scenario())

        assert order == ["a:start", "a:end", "b:start", "b:end"]

    def test_released_after_exception(self):
        guard = SingleFlightGuard()

        async def scenario():
            with pytest.raises(RuntimeError):
                async with guard.claim("boom"):
                    raise RuntimeError("boom")

        asyncio.run(scenario())
        assert not guard.busy
