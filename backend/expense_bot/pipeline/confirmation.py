"""Pending-transaction slots and the confirm/cancel round trip."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from ..clock import SYSTEM_CLOCK, Clock
from ..domain.entities import (
    Conversion,
    ExpenseConfirmation,
    PendingTransaction,
    ReceiptAnalysis,
    TokenError,
    TokenKind,
)
from ..errors import DeliveryError, LedgerError, PayloadError, RateLookupError
from ..receipts.currencies import get_currency, static_rate
from ..schemas import ReplyContext
from .cancellation import CancellationSignal, guarded
from .ports import CurrencyConverter, Ledger, MessageGateway
from .tokens import ConfirmationTokenStore

logger = logging.getLogger(__name__)

NO_AMOUNT_MESSAGE = 'I could not read an amount from that receipt. Please enter it manually, e.g. "lunch 1200".'
EXPIRED_MESSAGE = "This confirmation has expired or was already used."
NOTHING_PENDING_MESSAGE = "Nothing to confirm right now."
NOT_AUTHORIZED_MESSAGE = "You are not allowed to use this confirmation."
RETRY_MESSAGE = "I could not save that. Please try again."
ESCALATION_MESSAGE = "Processing is taking longer than expected. I'll follow up shortly."


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    NOTHING_TO_CONFIRM = "nothing_to_confirm"
    EXPIRED = "expired"
    NOT_AUTHORIZED = "not_authorized"
    NOT_FOUND = "not_found"
    RETRY = "retry"


@dataclass(slots=True, frozen=True)
class ConfirmationOutcome:
    status: ConfirmationStatus
    message: str
    pending: PendingTransaction | None = None
    transaction_id: int | None = None


def format_amount(amount: Decimal, currency_code: str) -> str:
    currency = get_currency(currency_code)
    quantised = amount.quantize(currency.quantum(), rounding=ROUND_HALF_UP)
    return f"{quantised:,} {currency.code}"


def confirmation_text(pending: PendingTransaction) -> str:
    """Plain-text rendering of a confirmation request."""
    lines = [
        "🧾 Please confirm this expense",
        f"• Amount: {format_amount(pending.amount, pending.currency)}",
    ]
    if pending.was_converted:
        lines.append(
            f"• Original: {format_amount(pending.original_amount, pending.original_currency)}"
            f" (rate {pending.rate.normalize():f})"
        )
    lines.append(f"• Description: {pending.description}")
    lines.append("\nReply yes to save or no to discard.")
    return "\n".join(lines)


def receipt_description(analysis: ReceiptAnalysis) -> str:
    if analysis.store_name:
        return f"{analysis.store_name} - receipt"
    return "receipt"


class ConfirmationFlowCoordinator:
    """Holds at most one pending transaction per owner.

    A newer offer silently replaces an older one (last write wins) and the
    older offer's token is discarded, so its buttons report "expired".
    """

    def __init__(
        self,
        tokens: ConfirmationTokenStore,
        converter: CurrencyConverter,
        gateway: MessageGateway,
        ledger: Ledger,
        home_currency: str = "JPY",
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.tokens = tokens
        self.converter = converter
        self.gateway = gateway
        self.ledger = ledger
        self.home_currency = get_currency(home_currency)
        self.clock = clock
        self._pending: dict[str, PendingTransaction] = {}

    def pending_for(self, owner_id: str) -> PendingTransaction | None:
        return self._pending.get(owner_id)

    async def convert(
        self, amount: Decimal, currency_code: str, signal: CancellationSignal | None = None
    ) -> Conversion:
        """Convert to the home currency, falling back to static rates."""
        home = self.home_currency
        if currency_code.upper() == home.code:
            return Conversion(converted_amount=amount, rate=Decimal(1), is_realtime=True)
        try:
            conversion = await guarded(signal, self.converter.to_home_currency, amount, currency_code)
        except RateLookupError as exc:
            rate = static_rate(currency_code, home.code)
            if rate is None:
                raise
            logger.warning("Rate lookup for %s failed (%s), using static rate %s", currency_code, exc, rate)
            conversion = Conversion(converted_amount=amount * rate, rate=rate, is_realtime=False)
        return replace(
            conversion,
            converted_amount=conversion.converted_amount.quantize(home.quantum(), rounding=ROUND_HALF_UP),
        )

    async def offer_receipt(
        self,
        owner_id: str,
        analysis: ReceiptAnalysis,
        conversion: Conversion,
        reply_context: ReplyContext | None = None,
    ) -> PendingTransaction:
        total = analysis.resolved_total
        if total is None:
            raise ValueError("Cannot offer a receipt without a resolved total")
        return await self._offer(
            owner_id,
            total.amount,
            total.currency.code,
            receipt_description(analysis),
            analysis.confidence,
            conversion,
            reply_context,
        )

    async def offer_manual(
        self,
        owner_id: str,
        amount: Decimal,
        currency_code: str,
        description: str,
        reply_context: ReplyContext | None = None,
    ) -> PendingTransaction:
        conversion = await self.convert(amount, currency_code)
        return await self._offer(
            owner_id, amount, currency_code, description, 1.0, conversion, reply_context
        )

    async def _offer(
        self,
        owner_id: str,
        amount: Decimal,
        currency_code: str,
        description: str,
        confidence: float,
        conversion: Conversion,
        reply_context: ReplyContext | None,
    ) -> PendingTransaction:
        pending_id = secrets.token_hex(8)
        token = self.tokens.issue(TokenKind.EXPENSE, owner_id, ExpenseConfirmation(pending_id))
        pending = PendingTransaction(
            id=pending_id,
            owner_id=owner_id,
            amount=conversion.converted_amount,
            currency=self.home_currency.code,
            description=description,
            created_at=datetime.now(timezone.utc),
            token=token,
            original_amount=amount,
            original_currency=currency_code.upper(),
            rate=conversion.rate,
            confidence=confidence,
        )
        previous = self._pending.get(owner_id)
        self._pending[owner_id] = pending
        if previous is not None:
            self.tokens.discard(TokenKind.EXPENSE, previous.token)
            logger.info("Pending transaction %s for %s replaced by %s", previous.id, owner_id, pending.id)

        await self._deliver(owner_id, pending, reply_context)
        return pending

    async def _deliver(
        self, owner_id: str, pending: PendingTransaction, reply_context: ReplyContext | None
    ) -> None:
        attempts = []
        if reply_context is not None:
            attempts.append(("reply", self.gateway.reply_confirmation, (reply_context, pending)))
        attempts.append(("push", self.gateway.push_confirmation, (owner_id, pending)))
        attempts.append(("text", self.gateway.push_text, (owner_id, confirmation_text(pending))))

        for name, send, args in attempts:
            try:
                await send(*args)
            except DeliveryError as exc:
                logger.warning("Confirmation %s delivery to %s failed: %s", name, owner_id, exc)
                continue
            logger.info("Confirmation for %s delivered via %s", owner_id, name)
            return
        raise DeliveryError("All message sending methods failed")

    async def confirm_pending(
        self, owner_id: str, token: str | None, accepted: bool
    ) -> ConfirmationOutcome:
        """Commit or discard the owner's pending transaction.

        A button press carries ``token`` and is checked against the token
        store. A typed reply passes ``None`` and acts on the pending slot
        directly; the slot does not expire, only its token does. The slot's
        token is discarded so its buttons stop working.
        """
        pending = self._pending.get(owner_id)
        if token is None:
            if pending is None:
                return ConfirmationOutcome(ConfirmationStatus.NOTHING_TO_CONFIRM, NOTHING_PENDING_MESSAGE)
            self.tokens.discard(TokenKind.EXPENSE, pending.token)
        else:
            result = self.tokens.consume(TokenKind.EXPENSE, token, owner_id)
            if result is TokenError.NOT_AUTHORIZED:
                return ConfirmationOutcome(ConfirmationStatus.NOT_AUTHORIZED, NOT_AUTHORIZED_MESSAGE)
            if result is TokenError.INVALID_OR_EXPIRED:
                return ConfirmationOutcome(ConfirmationStatus.EXPIRED, EXPIRED_MESSAGE)
            if not isinstance(result, ExpenseConfirmation):
                raise PayloadError(f"Expense token carried {type(result).__name__}")
            if pending is None or pending.id != result.pending_id:
                return ConfirmationOutcome(ConfirmationStatus.EXPIRED, EXPIRED_MESSAGE)

        self._release(owner_id, pending)
        if not accepted:
            return ConfirmationOutcome(ConfirmationStatus.CANCELLED, "Discarded.", pending=pending)

        try:
            transaction_id = await self.ledger.record_transaction(
                owner_id, pending.amount, pending.currency, pending.description
            )
        except LedgerError as exc:
            logger.error("Could not record pending transaction %s for %s: %s", pending.id, owner_id, exc)
            return await self._offer_retry(owner_id, pending)

        logger.info("Recorded transaction %s for %s", transaction_id, owner_id)
        return ConfirmationOutcome(
            ConfirmationStatus.CONFIRMED,
            f"✅ Saved {format_amount(pending.amount, pending.currency)} ({pending.description}).",
            pending=pending,
            transaction_id=transaction_id,
        )

    async def _offer_retry(self, owner_id: str, pending: PendingTransaction) -> ConfirmationOutcome:
        if owner_id in self._pending:
            # a newer offer arrived while the ledger call was running
            return ConfirmationOutcome(ConfirmationStatus.RETRY, RETRY_MESSAGE)

        retry_token = self.tokens.issue(TokenKind.EXPENSE, owner_id, ExpenseConfirmation(pending.id))
        retry = replace(pending, token=retry_token)
        self._pending[owner_id] = retry
        try:
            await self._deliver(owner_id, retry, None)
        except DeliveryError as exc:
            logger.warning("Retry confirmation for %s was not delivered: %s", owner_id, exc)
        return ConfirmationOutcome(ConfirmationStatus.RETRY, RETRY_MESSAGE, pending=retry)

    def _release(self, owner_id: str, pending: PendingTransaction) -> None:
        if self._pending.get(owner_id) is pending:
            del self._pending[owner_id]
