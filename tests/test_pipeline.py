import asyncio
from decimal import Decimal

import pytest

from conftest import HANG, FakeImages, FakeOcr

from expense_bot.domain.entities import DeleteRequest, EditRequest, ExpenseConfirmation, ResetRequest, TokenKind
from expense_bot.errors import JobFailed, OcrError, PayloadError
from expense_bot.pipeline.confirmation import ESCALATION_MESSAGE, NO_AMOUNT_MESSAGE, ConfirmationStatus
from expense_bot.pipeline.service import QUEUED_FAILURE_MESSAGE, ProcessingStatus, ReceiptPipeline
from expense_bot.pipeline.tracker import MessageStatus
from expense_bot.schemas import ImageRef, ReceiptJob, ReplyContext

RECEIPT = "CAFE MIMI\n合計 ¥3,280"
IMAGE = ImageRef(message_id="111:10", file_id="file-10")
REPLY = ReplyContext(chat_id=111, message_id=10)


def _pipeline(ocr, gateway, ledger, queue, converter, total_budget=0.2):
    return ReceiptPipeline(
        images=FakeImages(),
        ocr=ocr,
        converter=converter,
        gateway=gateway,
        ledger=ledger,
        task_queue=queue,
        total_budget=total_budget,
        safety_margin=0.01,
        min_full_budget=0.01,
        queued_job_timeout=0.2,
    )


def test_receipt_is_offered_for_confirmation(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(light=RECEIPT), gateway, ledger, queue, converter)

    report = asyncio.run(pipeline.process_receipt_with_deadline("owner-a", IMAGE, REPLY))

    assert report.status is ProcessingStatus.OFFERED
    assert report.completed_synchronously
    assert report.pending.amount == Decimal("3280")
    assert report.pending.description == "CAFE MIMI - receipt"
    assert gateway.channels() == ["reply_confirmation"]
    assert pipeline.tracker.status(IMAGE.message_id) is MessageStatus.PROCESSED
    assert queue.jobs == []


def test_duplicate_delivery_is_ignored(gateway, ledger, queue, converter):
    ocr = FakeOcr(light=RECEIPT)
    pipeline = _pipeline(ocr, gateway, ledger, queue, converter)

    async def scenario():
        await pipeline.process_receipt_with_deadline("owner-a", IMAGE, REPLY)
        return await pipeline.process_receipt_with_deadline("owner-a", IMAGE, REPLY)

    report = asyncio.run(scenario())

    assert report.status is ProcessingStatus.DUPLICATE
    assert ocr.calls == ["light"]
    assert len(gateway.sent) == 1


def test_receipt_without_amount_asks_for_manual_entry(gateway, ledger, queue, converter):
    ocr = FakeOcr(light="Thank you", full="Thank you for visiting")
    pipeline = _pipeline(ocr, gateway, ledger, queue, converter)

    report = asyncio.run(pipeline.process_receipt_with_deadline("owner-a", IMAGE, REPLY))

    assert report.status is ProcessingStatus.NO_AMOUNT
    assert gateway.sent == [("reply_text", NO_AMOUNT_MESSAGE)]
    assert pipeline.pending_for("owner-a") is None


def test_slow_receipt_is_escalated(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(light=HANG, full=HANG), gateway, ledger, queue, converter)

    report = asyncio.run(pipeline.process_receipt_with_deadline("owner-a", IMAGE, REPLY))

    assert report.status is ProcessingStatus.ESCALATED
    assert not report.completed_synchronously
    assert [job.image for job in queue.jobs] == [IMAGE]
    assert queue.jobs[0].reply_context == REPLY
    assert gateway.sent == [("reply_text", ESCALATION_MESSAGE)]


def test_queued_job_pushes_confirmation(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(full=RECEIPT), gateway, ledger, queue, converter)
    job = ReceiptJob(owner_id="owner-a", image=IMAGE, reply_context=REPLY)

    report = asyncio.run(pipeline.process_queued_receipt(job))

    assert report.status is ProcessingStatus.OFFERED
    assert gateway.channels() == ["push_confirmation"]
    assert pipeline.tracker.status(f"queued:{IMAGE.message_id}") is MessageStatus.PROCESSED


def test_queued_job_without_amount_pushes_notice(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(full="Thank you"), gateway, ledger, queue, converter)
    job = ReceiptJob(owner_id="owner-a", image=IMAGE)

    report = asyncio.run(pipeline.process_queued_receipt(job))

    assert report.status is ProcessingStatus.NO_AMOUNT
    assert gateway.sent == [("push_text", NO_AMOUNT_MESSAGE)]


def test_failed_queued_job_notifies_and_raises(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(full=OcrError("engine crashed")), gateway, ledger, queue, converter)
    job = ReceiptJob(owner_id="owner-a", image=IMAGE)

    with pytest.raises(JobFailed):
        asyncio.run(pipeline.process_queued_receipt(job))

    assert gateway.sent == [("push_text", QUEUED_FAILURE_MESSAGE)]
    assert pipeline.tracker.status(f"queued:{IMAGE.message_id}") is MessageStatus.NOT_STARTED


def test_manual_expense_round_trip(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)

    async def scenario():
        await pipeline.offer_manual_expense("owner-a", Decimal("12.50"), "USD", "taxi", REPLY)
        return await pipeline.confirm_pending("owner-a", None, accepted=True)

    outcome = asyncio.run(scenario())

    assert outcome.status is ConfirmationStatus.CONFIRMED
    saved = ledger.transactions[outcome.transaction_id]
    assert (saved["amount"], saved["currency"], saved["description"]) == (Decimal("1875"), "JPY", "taxi")


def _seed(ledger, owner_id="owner-a", amount="1000"):
    return asyncio.run(ledger.record_transaction(owner_id, Decimal(amount), "JPY", "seed"))


def test_delete_action(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    transaction_id = _seed(ledger)
    token = pipeline.issue_action_token(TokenKind.DELETE, "owner-a", DeleteRequest(transaction_id))

    outcome = asyncio.run(pipeline.apply_action("delete", token, "owner-a", accepted=True))

    assert outcome.status is ConfirmationStatus.CONFIRMED
    assert ledger.transactions == {}


def test_delete_of_missing_transaction(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    token = pipeline.issue_action_token(TokenKind.DELETE, "owner-a", DeleteRequest(99))

    outcome = asyncio.run(pipeline.apply_action(TokenKind.DELETE, token, "owner-a", accepted=True))

    assert outcome.status is ConfirmationStatus.NOT_FOUND


def test_edit_action(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    transaction_id = _seed(ledger)
    token = pipeline.issue_action_token(TokenKind.EDIT, "owner-a", EditRequest(transaction_id, Decimal("750")))

    outcome = asyncio.run(pipeline.apply_action("edit", token, "owner-a", accepted=True))

    assert outcome.status is ConfirmationStatus.CONFIRMED
    assert ledger.transactions[transaction_id]["amount"] == Decimal("750")


def test_reset_action_only_touches_requester(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    _seed(ledger)
    _seed(ledger)
    _seed(ledger, owner_id="owner-b")
    token = pipeline.issue_action_token(TokenKind.RESET, "owner-a", ResetRequest())

    outcome = asyncio.run(pipeline.apply_action("reset", token, "owner-a", accepted=True))

    assert outcome.status is ConfirmationStatus.CONFIRMED
    assert "2 transactions removed" in outcome.message
    assert [tx["owner_id"] for tx in ledger.transactions.values()] == ["owner-b"]


def test_declined_and_foreign_actions_change_nothing(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    transaction_id = _seed(ledger)
    declined = pipeline.issue_action_token(TokenKind.DELETE, "owner-a", DeleteRequest(transaction_id))
    foreign = pipeline.issue_action_token(TokenKind.DELETE, "owner-a", DeleteRequest(transaction_id))

    async def scenario():
        first = await pipeline.apply_action("delete", declined, "owner-a", accepted=False)
        second = await pipeline.apply_action("delete", foreign, "owner-b", accepted=True)
        third = await pipeline.apply_action("delete", foreign, "owner-a", accepted=True)
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert first.status is ConfirmationStatus.CANCELLED
    assert second.status is ConfirmationStatus.NOT_AUTHORIZED
    assert third.status is ConfirmationStatus.EXPIRED
    assert transaction_id in ledger.transactions


def test_ledger_failure_on_action_asks_for_retry(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    token = pipeline.issue_action_token(TokenKind.RESET, "owner-a", ResetRequest())
    ledger.fail_next = True

    outcome = asyncio.run(pipeline.apply_action("reset", token, "owner-a", accepted=True))

    assert outcome.status is ConfirmationStatus.RETRY


def test_expense_tokens_are_not_actions(gateway, ledger, queue, converter):
    pipeline = _pipeline(FakeOcr(), gateway, ledger, queue, converter)
    token = pipeline.issue_action_token(TokenKind.EXPENSE, "owner-a", ExpenseConfirmation("p1"))

    with pytest.raises(PayloadError):
        asyncio.run(pipeline.apply_action("expense", token, "owner-a", accepted=True))
    with pytest.raises(PayloadError):
        asyncio.run(pipeline.apply_action("refund", token, "owner-a", accepted=True))
