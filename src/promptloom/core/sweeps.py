"""Deterministic parameter sweeps over a single-capacity backend.

A sweep is a batch of generations that varies one or more numeric axes
while everything else in the intent stays fixed.  Two shapes exist:

Bracket sweep
    Two or three LoRA-weight axes.  Axis A is the outer loop, B the middle,
    C (optional) the inner loop.  ``3 x 3`` gives 9 points, ``3 x 3 x 2``
    gives 18.
Step sweep
    An inclusive step-count range, optionally crossed with a sampler list.
    Sampler is the outer loop, steps the inner loop.

Axis Rules
----------
``SweepAxis(minimum, maximum, steps)`` yields ``steps`` evenly spaced
weights from ``minimum`` to ``maximum`` inclusive.  If ``minimum >
maximum`` or ``steps <= 1`` the axis collapses to ``[minimum]``; the
increment ``(maximum - minimum) / (steps - 1)`` is only computed for
``steps >= 2``.

Execution
---------
:class:`SweepScheduler` submits points strictly one after another and
yields each result as soon as it arrives.  It tracks ``issued``,
``completed`` and ``total`` so callers can render ``N / total`` without
relying on the backend's progress endpoint.

Cancellation is cooperative and checked between points: the point already
in flight finishes and is yielded, no new point is issued, and everything
yielded before stays valid.  A submission error aborts the remainder of the
sweep and propagates to the consumer.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence

from PIL import Image
from pydantic import BaseModel, Field

from promptloom.core.models import (
    GenerationIntent,
    LoraInvocation,
    SweepPoint,
    SweepResult,
    utcnow,
)
from promptloom.core.options_builder import build_options

logger = logging.getLogger(__name__)

SubmitPoint = Callable[[SweepPoint], Awaitable[Image.Image]]


class SweepAxis(BaseModel):
    """One LoRA-weight axis of a bracket sweep."""

    name: str
    minimum: float = 0.0
    maximum: float = 1.0
    steps: int = Field(default=3, ge=0)

    def values(self) -> list[float]:
        if self.minimum > self.maximum or self.steps <= 1:
            return [self.minimum]
        increment = (self.maximum - self.minimum) / (self.steps - 1)
        return [self.minimum + increment * i for i in range(self.steps)]


# ---------------------------------------------------------------------------
# Grid enumeration.
# ---------------------------------------------------------------------------


def bracket_points(
    intent: GenerationIntent,
    axes: Sequence[SweepAxis],
    *,
    sampler: str,
    default_size: int,
    default_steps: int,
    activations: Mapping[str, str] | None = None,
) -> list[SweepPoint]:
    """Enumerate a bracket sweep in A-outer / B-middle / C-inner order.

    LoRAs already on the intent keep their weights unless an axis names
    them; axis LoRAs follow in axis order.

    Args:
        intent: Base intent.
        axes: Two or three axes.
        sampler: Resolved sampler name.
        default_size: Size used when the intent leaves it unset.
        default_steps: Step count used when the intent leaves it unset.
        activations: Optional LoRA name to activation text mapping.

    Returns:
        Points in enumeration order.
    """
    if not 2 <= len(axes) <= 3:
        raise ValueError(f"bracket sweep needs 2 or 3 axes, got {len(axes)}")

    activations = activations or {}
    axis_names = {axis.name for axis in axes}
    base_loras = [lora for lora in intent.loras if lora.name not in axis_names]
    steps = intent.steps or default_steps

    points: list[SweepPoint] = []
    for index, weights in enumerate(itertools.product(*(axis.values() for axis in axes))):
        axis_loras = tuple(
            LoraInvocation(name=axis.name, weight=weight, activation=activations.get(axis.name))
            for axis, weight in zip(axes, weights)
        )
        loras = (*base_loras, *axis_loras)
        options = build_options(
            intent,
            sampler=sampler,
            default_size=default_size,
            default_steps=default_steps,
            loras=loras,
        )
        points.append(
            SweepPoint(index=index, options=options, loras=axis_loras, steps=steps, sampler=sampler)
        )
    return points


def step_range(start: int, end: int) -> list[int]:
    """Inclusive step range; collapses to ``[start]`` when ``start > end``."""
    if start < 1:
        raise ValueError(f"step counts start at 1, got {start}")
    if start > end:
        return [start]
    return list(range(start, end + 1))


def step_points(
    intent: GenerationIntent,
    start_step: int,
    end_step: int,
    *,
    samplers: Sequence[str] | None,
    default_sampler: str,
    default_size: int,
    default_steps: int,
) -> list[SweepPoint]:
    """Enumerate a step sweep in sampler-outer / steps-inner order."""
    sampler_axis = list(samplers) if samplers else [intent.sampler or default_sampler]

    points: list[SweepPoint] = []
    for index, (sampler, steps) in enumerate(
        itertools.product(sampler_axis, step_range(start_step, end_step))
    ):
        options = build_options(
            intent,
            sampler=sampler,
            default_size=default_size,
            default_steps=default_steps,
            steps=steps,
        )
        points.append(
            SweepPoint(
                index=index,
                options=options,
                loras=tuple(lora for lora in intent.loras if lora.enabled),
                steps=steps,
                sampler=sampler,
            )
        )
    return points


# ---------------------------------------------------------------------------
# Execution.
# ---------------------------------------------------------------------------


class SweepScheduler:
    """Serial, cancellable execution of a list of sweep points.

    Attributes:
        points: The full grid in enumeration order.
        total: ``len(points)``.
        issued: Points handed to ``submit`` so far.
        completed: Points whose result has been produced.
    """

    def __init__(self, points: Sequence[SweepPoint], label: str = "sweep") -> None:
        self.points = list(points)
        self.label = label
        self.total = len(self.points)
        self.issued = 0
        self.completed = 0
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop issuing new points; the in-flight point still finishes."""
        if not self._cancelled:
            logger.info(f"Cancel requested for {self.label} at {self.issued}/{self.total}")
        self._cancelled = True

    async def run(self, submit: SubmitPoint) -> AsyncIterator[SweepResult]:
        """Submit every point in order, yielding each result immediately."""
        logger.info(f"Starting {self.label}: {self.total} points")

        for point in self.points:
            if self._cancelled:
                logger.info(f"{self.label} cancelled after {self.completed}/{self.total} points")
                return

            self.issued += 1
            start = utcnow()
            try:
                image = await submit(point)
            except Exception:
                logger.error(f"{self.label} aborted at point {self.issued}/{self.total}")
                raise

            self.completed += 1
            yield SweepResult(
                point=point,
                image=image,
                start=start,
                end=utcnow(),
                completed=self.completed,
                total=self.total,
            )

        logger.info(f"{self.label} finished: {self.completed}/{self.total} points")


class SweepRun:
    """Handle returned to callers: an async iterator of results plus controls.

    Usage::

        run = orchestrator.bracket_sweep(intent, axis_a, axis_b)
        async for result in run:
            show(result.image, f"{result.completed} / {run.total}")
            if user_pressed_cancel:
                run.cancel()

    Leaving the loop early is safe; call :meth:`aclose` (or use
    ``async with``) to release the producer immediately.
    """

    def __init__(self, scheduler: SweepScheduler, results: AsyncIterator[SweepResult]) -> None:
        self.scheduler = scheduler
        self._results = results

    def __aiter__(self) -> SweepRun:
        return self

    async def __anext__(self) -> SweepResult:
        return await self._results.__anext__()

    async def __aenter__(self) -> SweepRun:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._results.aclose()

    def cancel(self) -> None:
        self.scheduler.cancel()

    @property
    def cancelled(self) -> bool:
        return self.scheduler.cancelled

    @property
    def total(self) -> int:
        return self.scheduler.total

    @property
    def issued(self) -> int:
        return self.scheduler.issued

    @property
    def completed(self) -> int:
        return self.scheduler.completed

    async def collect(self) -> list[SweepResult]:
        """Drain the run into a list."""
        return [result async for result in self]
