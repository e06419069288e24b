from __future__ import annotations

from decimal import Decimal

import pytest

from expense_bot.clock import Clock
from expense_bot.domain.entities import Conversion, PendingTransaction, QualityTier
from expense_bot.errors import DeliveryError, LedgerError, OwnerNotFound, RateLookupError
from expense_bot.pipeline.cancellation import CancellationSignal
from expense_bot.pipeline.ports import (
    AsyncTaskQueue,
    CurrencyConverter,
    ImageSource,
    Ledger,
    MessageGateway,
    OcrProvider,
)
from expense_bot.schemas import ImageRef, ReceiptJob, ReplyContext


class ManualClock(Clock):
    def __init__(self, start: float = 1000.0) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


HANG = object()


class FakeOcr(OcrProvider):
    """Returns canned text per tier. ``HANG`` blocks until the signal fires;
    an exception instance is raised."""

    def __init__(self, light=None, full=None) -> None:
        self.results = {QualityTier.LIGHT: light, QualityTier.FULL: full}
        self.calls: list[QualityTier] = []

    async def extract_text(self, image: bytes, tier: QualityTier, signal: CancellationSignal) -> str:
        self.calls.append(tier)
        result = self.results[tier]
        if result is HANG:
            await signal.wait()
            signal.raise_if_cancelled()
        if isinstance(result, BaseException):
            raise result
        return result or ""


class FakeImages(ImageSource):
    def __init__(self) -> None:
        self.fetched: list[str] = []

    async def fetch(self, image_ref: ImageRef) -> bytes:
        self.fetched.append(image_ref.file_id)
        return b"image"


class FakeConverter(CurrencyConverter):
    def __init__(self, rates: dict[tuple[str, str], Decimal] | None = None, fail: bool = False) -> None:
        self.rates = rates or {}
        self.fail = fail

    async def to_home_currency(self, amount: Decimal, currency_code: str) -> Conversion:
        if self.fail:
            raise RateLookupError("rate service down")
        rate = self.rates.get((currency_code, "JPY"))
        if rate is None:
            raise RateLookupError(f"no {currency_code}->JPY rate")
        return Conversion(converted_amount=amount * rate, rate=rate, is_realtime=True)


class RecordingGateway(MessageGateway):
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.sent: list[tuple[str, object]] = []

    async def _record(self, channel: str, payload: object) -> None:
        if channel in self.failing:
            raise DeliveryError(f"{channel} unavailable")
        self.sent.append((channel, payload))

    async def reply_confirmation(self, context: ReplyContext, pending: PendingTransaction) -> None:
        await self._record("reply_confirmation", pending)

    async def push_confirmation(self, owner_id: str, pending: PendingTransaction) -> None:
        await self._record("push_confirmation", pending)

    async def reply_text(self, context: ReplyContext, text: str) -> None:
        await self._record("reply_text", text)

    async def push_text(self, owner_id: str, text: str) -> None:
        await self._record("push_text", text)

    def channels(self) -> list[str]:
        return [channel for channel, _ in self.sent]


class FakeQueue(AsyncTaskQueue):
    def __init__(self) -> None:
        self.jobs: list[ReceiptJob] = []

    def enqueue_receipt_job(self, job: ReceiptJob) -> None:
        self.jobs.append(job)


class InMemoryLedger(Ledger):
    def __init__(self, owners: tuple[str, ...] = ("owner-a", "owner-b")) -> None:
        self.transactions: dict[int, dict] = {}
        self.owners = set(owners)
        self.fail_next = False
        self._next_id = 1

    def _check(self, owner_id: str) -> None:
        if self.fail_next:
            self.fail_next = False
            raise LedgerError("database is locked")
        if owner_id not in self.owners:
            raise OwnerNotFound(owner_id)

    async def record_transaction(self, owner_id, amount, currency, description) -> int:
        self._check(owner_id)
        transaction_id = self._next_id
        self._next_id += 1
        self.transactions[transaction_id] = {
            "owner_id": owner_id,
            "amount": amount,
            "currency": currency,
            "description": description,
        }
        return transaction_id

    async def delete_transaction(self, owner_id, transaction_id) -> bool:
        self._check(owner_id)
        tx = self.transactions.get(transaction_id)
        if tx is None or tx["owner_id"] != owner_id:
            return False
        del self.transactions[transaction_id]
        return True

    async def update_transaction_amount(self, owner_id, transaction_id, new_amount) -> bool:
        self._check(owner_id)
        tx = self.transactions.get(transaction_id)
        if tx is None or tx["owner_id"] != owner_id:
            return False
        tx["amount"] = new_amount
        return True

    async def reset_budget(self, owner_id) -> int:
        self._check(owner_id)
        owned = [key for key, tx in self.transactions.items() if tx["owner_id"] == owner_id]
        for key in owned:
            del self.transactions[key]
        return len(owned)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter({("USD", "JPY"): Decimal("150")})
