import asyncio

from conftest import FakeQueue, ManualClock

from expense_bot.domain.entities import QualityTier
from expense_bot.errors import Aborted, NoTextDetected, OcrError
from expense_bot.pipeline.cancellation import CancellationSignal
from expense_bot.pipeline.staged import (
    StagedProcessingController,
    StagedStatus,
    StageStatus,
    run_stage,
)
from expense_bot.schemas import ImageRef, ReceiptJob

JOB = ReceiptJob(owner_id="owner-a", image=ImageRef(message_id="1:10", file_id="file-1"))


def _controller(queue, clock=None, total=0.05):
    kwargs = {"clock": clock} if clock is not None else {}
    return StagedProcessingController(
        queue,
        total_budget=total,
        light_fraction=0.4,
        safety_margin=0.005,
        min_full_budget=0.005,
        **kwargs,
    )


def _scripted(results, calls=None, signals=None):
    async def work(tier, signal):
        if calls is not None:
            calls.append(tier)
        if signals is not None:
            signals.append(signal)
        result = results[tier]
        if result == "hang":
            await signal.wait()
            signal.raise_if_cancelled()
        if isinstance(result, BaseException):
            raise result
        return result

    return work


def test_light_phase_answer_is_used():
    queue = FakeQueue()
    calls = []
    work = _scripted({QualityTier.LIGHT: "light total", QualityTier.FULL: "full total"}, calls)

    result = asyncio.run(_controller(queue).run(JOB, work))

    assert result.status is StagedStatus.RESOLVED
    assert result.phase is QualityTier.LIGHT
    assert result.value == "light total"
    assert result.completed_synchronously
    assert calls == [QualityTier.LIGHT]
    assert queue.jobs == []


def test_full_phase_runs_when_light_finds_nothing():
    queue = FakeQueue()
    work = _scripted({QualityTier.LIGHT: None, QualityTier.FULL: "full total"})

    result = asyncio.run(_controller(queue).run(JOB, work))

    assert result.status is StagedStatus.RESOLVED
    assert result.phase is QualityTier.FULL
    assert result.value == "full total"


def test_empty_full_phase_is_no_amount():
    queue = FakeQueue()
    work = _scripted({QualityTier.LIGHT: None, QualityTier.FULL: NoTextDetected("blank")})

    result = asyncio.run(_controller(queue).run(JOB, work))

    assert result.status is StagedStatus.NO_AMOUNT
    assert result.completed_synchronously
    assert queue.jobs == []


def test_both_phases_hanging_escalates_once():
    queue = FakeQueue()
    signals = []
    work = _scripted({QualityTier.LIGHT: "hang", QualityTier.FULL: "hang"}, signals=signals)

    result = asyncio.run(_controller(queue, total=0.2).run(JOB, work))

    assert result.status is StagedStatus.ESCALATED
    assert not result.completed_synchronously
    assert queue.jobs == [JOB]
    assert len(signals) == 2
    assert all(signal.cancelled for signal in signals)


def test_full_phase_failure_escalates():
    queue = FakeQueue()
    work = _scripted({QualityTier.LIGHT: OcrError("bad"), QualityTier.FULL: OcrError("worse")})

    result = asyncio.run(_controller(queue).run(JOB, work))

    assert result.status is StagedStatus.ESCALATED
    assert len(queue.jobs) == 1


def test_slow_light_phase_leaves_no_room_for_full():
    queue = FakeQueue()
    clock = ManualClock()
    calls = []

    async def work(tier, signal):
        calls.append(tier)
        clock.advance(1.0)
        return None

    result = asyncio.run(_controller(queue, clock=clock, total=1.0).run(JOB, work))

    assert result.status is StagedStatus.ESCALATED
    assert calls == [QualityTier.LIGHT]
    assert queue.jobs == [JOB]


def test_cancelled_caller_aborts_without_escalation():
    queue = FakeQueue()
    parent = CancellationSignal()
    parent.cancel("shutdown")

    async def work(tier, signal):
        signal.raise_if_cancelled()
        return "never"

    result = asyncio.run(_controller(queue).run(JOB, work, parent))

    assert result.status is StagedStatus.ABORTED
    assert queue.jobs == []


def test_run_stage_cancels_signal_once_settled():
    seen = []

    async def work(signal):
        seen.append(signal)
        return 42

    outcome = asyncio.run(run_stage(work, 1.0, name="probe"))

    assert outcome.status is StageStatus.RESOLVED
    assert outcome.value == 42
    assert seen[0].cancelled


def test_run_stage_reports_timeout_and_abandoned_work_aborts():
    observed = []

    async def work(signal):
        try:
            await signal.wait()
            signal.raise_if_cancelled()
        except Aborted as exc:
            observed.append(exc.reason)
            raise

    async def scenario():
        outcome = await run_stage(work, 0.01, name="probe")
        await asyncio.sleep(0.01)
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.status is StageStatus.TIMED_OUT
    assert observed == ["probe stage timed out"]
