"""Deadline-bounded light/full processing with escalation to the task queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Generic, Optional, TypeVar

from ..clock import SYSTEM_CLOCK, Clock
from ..domain.entities import QualityTier
from ..errors import Aborted, NoTextDetected
from ..schemas import ReceiptJob
from .cancellation import CancellationSignal
from .ports import AsyncTaskQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")

StageWork = Callable[[CancellationSignal], Awaitable[Optional[T]]]

# Tasks that missed their deadline. They are still running towards their next
# checkpoint; holding a reference keeps them from being garbage collected.
_abandoned: set[asyncio.Task[Any]] = set()


class StageStatus(str, Enum):
    RESOLVED = "resolved"
    EMPTY = "empty"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class StageOutcome(Generic[T]):
    status: StageStatus
    value: T | None = None
    error: BaseException | None = None


def _forget(task: asyncio.Task[Any]) -> None:
    _abandoned.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None and not isinstance(error, Aborted):
        logger.debug("Abandoned stage finished with %r", error)


def _abandon(task: asyncio.Task[Any]) -> None:
    _abandoned.add(task)
    task.add_done_callback(_forget)


async def run_stage(
    work: StageWork[T],
    timeout: float,
    *,
    name: str,
    parent: CancellationSignal | None = None,
) -> StageOutcome[T]:
    """Run ``work`` with a hard deadline of ``timeout`` seconds.

    The stage's signal is cancelled as soon as the stage settles, whichever way
    it settles, so late work observes it at its next checkpoint. A ``None``
    result or ``NoTextDetected`` means the work ran but found nothing.
    """
    signal = CancellationSignal(parent)
    task = asyncio.ensure_future(work(signal))
    try:
        done, _ = await asyncio.wait({task}, timeout=max(timeout, 0.0))
    except asyncio.CancelledError:
        signal.cancel(f"{name} stage cancelled by caller")
        _abandon(task)
        raise

    if not done:
        signal.cancel(f"{name} stage timed out")
        _abandon(task)
        logger.info("%s stage timed out after %.3fs", name, timeout)
        return StageOutcome(StageStatus.TIMED_OUT)

    signal.cancel(f"{name} stage settled")
    error = task.exception()
    if error is None:
        value = task.result()
        if value is None:
            return StageOutcome(StageStatus.EMPTY)
        return StageOutcome(StageStatus.RESOLVED, value=value)
    if isinstance(error, Aborted):
        return StageOutcome(StageStatus.ABORTED, error=error)
    if isinstance(error, NoTextDetected):
        return StageOutcome(StageStatus.EMPTY, error=error)
    logger.warning("%s stage failed: %s", name, error)
    return StageOutcome(StageStatus.FAILED, error=error)


class StagedStatus(str, Enum):
    RESOLVED = "resolved"
    NO_AMOUNT = "no_amount"
    ESCALATED = "escalated"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class StagedResult(Generic[T]):
    status: StagedStatus
    phase: QualityTier | None = None
    value: T | None = None

    @property
    def completed_synchronously(self) -> bool:
        return self.status is not StagedStatus.ESCALATED


class StagedProcessingController:
    """Light phase, then full phase, then hand-off to the asynchronous queue.

    Budgets are in seconds. The light phase gets ``light_fraction`` of the
    total; the full phase gets whatever is left minus ``safety_margin``, and
    is skipped in favour of escalation when that is below ``min_full_budget``.
    """

    def __init__(
        self,
        task_queue: AsyncTaskQueue,
        clock: Clock = SYSTEM_CLOCK,
        total_budget: float = 1.5,
        light_fraction: float = 0.4,
        safety_margin: float = 0.1,
        min_full_budget: float = 0.1,
    ) -> None:
        self.task_queue = task_queue
        self.clock = clock
        self.total_budget = total_budget
        self.light_fraction = light_fraction
        self.safety_margin = safety_margin
        self.min_full_budget = min_full_budget

    async def run(
        self,
        job: ReceiptJob,
        work: Callable[[QualityTier, CancellationSignal], Awaitable[T | None]],
        signal: CancellationSignal | None = None,
    ) -> StagedResult[T]:
        deadline = self.clock.now() + self.total_budget

        light = await run_stage(
            partial(work, QualityTier.LIGHT),
            self.total_budget * self.light_fraction,
            name="light",
            parent=signal,
        )
        if light.status is StageStatus.RESOLVED:
            return StagedResult(StagedStatus.RESOLVED, QualityTier.LIGHT, light.value)
        if light.status is StageStatus.ABORTED:
            return StagedResult(StagedStatus.ABORTED, QualityTier.LIGHT)

        remaining = deadline - self.clock.now() - self.safety_margin
        if remaining < self.min_full_budget:
            return self._escalate(job, f"light phase {light.status.value}, {remaining:.3f}s left")

        full = await run_stage(
            partial(work, QualityTier.FULL),
            remaining,
            name="full",
            parent=signal,
        )
        if full.status is StageStatus.RESOLVED:
            return StagedResult(StagedStatus.RESOLVED, QualityTier.FULL, full.value)
        if full.status is StageStatus.EMPTY:
            return StagedResult(StagedStatus.NO_AMOUNT, QualityTier.FULL)
        if full.status is StageStatus.ABORTED:
            return StagedResult(StagedStatus.ABORTED, QualityTier.FULL)
        return self._escalate(job, f"full phase {full.status.value}")

    def _escalate(self, job: ReceiptJob, reason: str) -> StagedResult[Any]:
        logger.info("Escalating message %s to the task queue: %s", job.image.message_id, reason)
        self.task_queue.enqueue_receipt_job(job)
        return StagedResult(StagedStatus.ESCALATED)
