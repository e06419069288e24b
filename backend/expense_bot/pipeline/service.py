"""The receipt pipeline as seen by the bot and the task endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from functools import partial

from ..clock import SYSTEM_CLOCK, Clock
from ..config import Settings
from ..domain.entities import (
    Conversion,
    DeleteRequest,
    EditRequest,
    PendingTransaction,
    QualityTier,
    ReceiptAnalysis,
    ResetRequest,
    TokenError,
    TokenKind,
    TokenPayload,
)
from ..errors import DeliveryError, JobFailed, LedgerError, PayloadError
from ..receipts.extractor import AmountCandidateExtractor
from ..receipts.parser import ReceiptParser
from ..receipts.resolver import TotalAmountResolver
from ..schemas import ImageRef, ReceiptJob, ReplyContext
from .cancellation import CancellationSignal, guarded
from .confirmation import (
    ESCALATION_MESSAGE,
    EXPIRED_MESSAGE,
    NO_AMOUNT_MESSAGE,
    NOT_AUTHORIZED_MESSAGE,
    RETRY_MESSAGE,
    ConfirmationFlowCoordinator,
    ConfirmationOutcome,
    ConfirmationStatus,
    format_amount,
)
from .ports import AsyncTaskQueue, CurrencyConverter, ImageSource, Ledger, MessageGateway, OcrProvider
from .staged import StagedProcessingController, StagedStatus, StageStatus, run_stage
from .tokens import ConfirmationTokenStore, coerce_kind
from .tracker import ProcessingTracker

logger = logging.getLogger(__name__)

QUEUED_FAILURE_MESSAGE = "Sorry, I couldn't process that receipt. Please enter the amount manually."


class ProcessingStatus(str, Enum):
    OFFERED = "offered"
    NO_AMOUNT = "no_amount"
    ESCALATED = "escalated"
    DUPLICATE = "duplicate"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class ProcessingReport:
    completed_synchronously: bool
    status: ProcessingStatus
    pending: PendingTransaction | None = None


class ReceiptPipeline:
    """Owns the tracker, the token store and the pending slots.

    One instance serves the whole process; all of its state is in memory.
    """

    def __init__(
        self,
        *,
        images: ImageSource,
        ocr: OcrProvider,
        converter: CurrencyConverter,
        gateway: MessageGateway,
        ledger: Ledger,
        task_queue: AsyncTaskQueue,
        parser: ReceiptParser | None = None,
        tracker: ProcessingTracker | None = None,
        tokens: ConfirmationTokenStore | None = None,
        clock: Clock = SYSTEM_CLOCK,
        home_currency: str = "JPY",
        total_budget: float = 1.5,
        light_fraction: float = 0.4,
        safety_margin: float = 0.1,
        min_full_budget: float = 0.1,
        queued_job_timeout: float = 30.0,
    ) -> None:
        self.images = images
        self.ocr = ocr
        self.gateway = gateway
        self.ledger = ledger
        self.parser = parser or ReceiptParser(AmountCandidateExtractor(home_currency=home_currency))
        self.tracker = tracker or ProcessingTracker(clock=clock)
        self.tokens = tokens or ConfirmationTokenStore(clock=clock)
        self.coordinator = ConfirmationFlowCoordinator(
            self.tokens, converter, gateway, ledger, home_currency=home_currency, clock=clock
        )
        self.controller = StagedProcessingController(
            task_queue,
            clock=clock,
            total_budget=total_budget,
            light_fraction=light_fraction,
            safety_margin=safety_margin,
            min_full_budget=min_full_budget,
        )
        self.queued_job_timeout = queued_job_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        images: ImageSource,
        ocr: OcrProvider,
        converter: CurrencyConverter,
        gateway: MessageGateway,
        ledger: Ledger,
        task_queue: AsyncTaskQueue,
        clock: Clock = SYSTEM_CLOCK,
    ) -> "ReceiptPipeline":
        parser = ReceiptParser(
            AmountCandidateExtractor(
                home_currency=settings.home_currency,
                max_amount=settings.max_candidate_amount,
            ),
            TotalAmountResolver(default_tax_rate=settings.default_tax_rate),
        )
        return cls(
            images=images,
            ocr=ocr,
            converter=converter,
            gateway=gateway,
            ledger=ledger,
            task_queue=task_queue,
            parser=parser,
            tracker=ProcessingTracker(
                capacity=settings.processed_cache_size,
                stale_after=settings.stale_processing_seconds,
                clock=clock,
            ),
            tokens=ConfirmationTokenStore(ttl=settings.token_ttl_seconds, clock=clock),
            clock=clock,
            home_currency=settings.home_currency,
            total_budget=settings.total_budget_ms / 1000,
            light_fraction=settings.light_phase_fraction,
            safety_margin=settings.safety_margin_ms / 1000,
            min_full_budget=settings.min_full_phase_ms / 1000,
            queued_job_timeout=settings.queued_job_timeout_s,
        )

    async def _analyse(
        self, image_ref: ImageRef, tier: QualityTier, signal: CancellationSignal
    ) -> tuple[ReceiptAnalysis, Conversion] | None:
        image = await guarded(signal, self.images.fetch, image_ref)
        text = await self.ocr.extract_text(image, tier, signal)
        signal.raise_if_cancelled()
        analysis = self.parser.parse(text)
        total = analysis.resolved_total
        if total is None:
            return None
        conversion = await self.coordinator.convert(total.amount, total.currency.code, signal)
        return analysis, conversion

    async def process_receipt_with_deadline(
        self,
        owner_id: str,
        image_ref: ImageRef,
        reply_context: ReplyContext | None = None,
        signal: CancellationSignal | None = None,
    ) -> ProcessingReport:
        message_id = image_ref.message_id
        if not self.tracker.claim(message_id):
            return ProcessingReport(True, ProcessingStatus.DUPLICATE)

        job = ReceiptJob(owner_id=owner_id, image=image_ref, reply_context=reply_context)
        try:
            result = await self.controller.run(job, partial(self._analyse, image_ref), signal)
        except BaseException:
            self.tracker.fail(message_id)
            raise

        if result.status is StagedStatus.ABORTED:
            self.tracker.fail(message_id)
            logger.info("Processing of message %s aborted", message_id)
            return ProcessingReport(True, ProcessingStatus.ABORTED)

        self.tracker.complete(message_id)
        if result.status is StagedStatus.ESCALATED:
            await self._notify(owner_id, reply_context, ESCALATION_MESSAGE)
            return ProcessingReport(False, ProcessingStatus.ESCALATED)
        if result.status is StagedStatus.NO_AMOUNT:
            await self._notify(owner_id, reply_context, NO_AMOUNT_MESSAGE)
            return ProcessingReport(True, ProcessingStatus.NO_AMOUNT)

        analysis, conversion = result.value
        pending = await self.coordinator.offer_receipt(owner_id, analysis, conversion, reply_context)
        return ProcessingReport(True, ProcessingStatus.OFFERED, pending)

    async def process_queued_receipt(self, job: ReceiptJob) -> ProcessingReport:
        """Handle a job the task queue delivered after an escalation."""
        key = f"queued:{job.image.message_id}"
        if not self.tracker.claim(key):
            return ProcessingReport(False, ProcessingStatus.DUPLICATE)

        try:
            outcome = await run_stage(
                partial(self._analyse, job.image, QualityTier.FULL),
                self.queued_job_timeout,
                name="queued",
            )
        except BaseException:
            self.tracker.fail(key)
            raise

        if outcome.status is StageStatus.RESOLVED:
            self.tracker.complete(key)
            analysis, conversion = outcome.value
            pending = await self.coordinator.offer_receipt(job.owner_id, analysis, conversion)
            return ProcessingReport(False, ProcessingStatus.OFFERED, pending)
        if outcome.status is StageStatus.EMPTY:
            self.tracker.complete(key)
            await self.gateway.push_text(job.owner_id, NO_AMOUNT_MESSAGE)
            return ProcessingReport(False, ProcessingStatus.NO_AMOUNT)

        self.tracker.fail(key)
        try:
            await self.gateway.push_text(job.owner_id, QUEUED_FAILURE_MESSAGE)
        except DeliveryError as exc:
            logger.error("Could not tell %s about the failed receipt job: %s", job.owner_id, exc)
        raise JobFailed(
            f"Receipt job for message {job.image.message_id} {outcome.status.value}"
        ) from outcome.error

    async def _notify(self, owner_id: str, reply_context: ReplyContext | None, text: str) -> None:
        if reply_context is not None:
            try:
                await self.gateway.reply_text(reply_context, text)
                return
            except DeliveryError as exc:
                logger.warning("Reply to %s failed, pushing instead: %s", owner_id, exc)
        await self.gateway.push_text(owner_id, text)

    def pending_for(self, owner_id: str) -> PendingTransaction | None:
        return self.coordinator.pending_for(owner_id)

    async def confirm_pending(
        self, owner_id: str, token: str | None, accepted: bool
    ) -> ConfirmationOutcome:
        return await self.coordinator.confirm_pending(owner_id, token, accepted)

    async def offer_manual_expense(
        self,
        owner_id: str,
        amount: Decimal,
        currency_code: str,
        description: str,
        reply_context: ReplyContext | None = None,
    ) -> PendingTransaction:
        return await self.coordinator.offer_manual(
            owner_id, amount, currency_code, description, reply_context
        )

    def issue_action_token(self, kind: TokenKind | str, owner_id: str, payload: TokenPayload) -> str:
        return self.tokens.issue(kind, owner_id, payload)

    def consume_action_token(
        self, kind: TokenKind | str, token: str, requester_id: str
    ) -> TokenPayload | TokenError:
        return self.tokens.consume(kind, token, requester_id)

    async def apply_action(
        self, kind: TokenKind | str, token: str, requester_id: str, accepted: bool
    ) -> ConfirmationOutcome:
        """Consume a delete/edit/reset token and, if accepted, apply it to the ledger."""
        kind = coerce_kind(kind)
        if kind is TokenKind.EXPENSE:
            raise PayloadError("Expense tokens are confirmed through confirm_pending")

        payload = self.tokens.consume(kind, token, requester_id)
        if payload is TokenError.NOT_AUTHORIZED:
            return ConfirmationOutcome(ConfirmationStatus.NOT_AUTHORIZED, NOT_AUTHORIZED_MESSAGE)
        if payload is TokenError.INVALID_OR_EXPIRED:
            return ConfirmationOutcome(ConfirmationStatus.EXPIRED, EXPIRED_MESSAGE)
        if not accepted:
            return ConfirmationOutcome(ConfirmationStatus.CANCELLED, "Cancelled.")

        try:
            if isinstance(payload, DeleteRequest):
                done = await self.ledger.delete_transaction(requester_id, payload.transaction_id)
                message = f"🗑 Deleted transaction #{payload.transaction_id}."
            elif isinstance(payload, EditRequest):
                done = await self.ledger.update_transaction_amount(
                    requester_id, payload.transaction_id, payload.new_amount
                )
                message = (
                    f"✏️ Transaction #{payload.transaction_id} is now "
                    f"{format_amount(payload.new_amount, self.coordinator.home_currency.code)}."
                )
            elif isinstance(payload, ResetRequest):
                removed = await self.ledger.reset_budget(requester_id)
                done = True
                message = f"🔄 Budget reset, {removed} transaction{'s' if removed != 1 else ''} removed."
            else:
                raise PayloadError(f"{kind.value} token carried {type(payload).__name__}")
        except LedgerError as exc:
            logger.error("Could not apply %s action for %s: %s", kind.value, requester_id, exc)
            return ConfirmationOutcome(ConfirmationStatus.RETRY, RETRY_MESSAGE)

        if not done:
            return ConfirmationOutcome(ConfirmationStatus.NOT_FOUND, "That transaction no longer exists.")
        return ConfirmationOutcome(ConfirmationStatus.CONFIRMED, message)
