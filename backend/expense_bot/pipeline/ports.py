"""Boundaries between the receipt pipeline and the outside world."""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from ..domain.entities import Conversion, PendingTransaction, QualityTier
from ..schemas import ImageRef, ReceiptJob, ReplyContext
from .cancellation import CancellationSignal


class OcrProvider(ABC):
    @abstractmethod
    async def extract_text(self, image: bytes, tier: QualityTier, signal: CancellationSignal) -> str:
        """Return the text in ``image``.

        Raises ``NoTextDetected`` when the image holds no text, ``Aborted`` once
        ``signal`` is cancelled and ``OcrError`` on any other failure.
        """


class ImageSource(ABC):
    @abstractmethod
    async def fetch(self, image_ref: ImageRef) -> bytes:
        """Download the image bytes. Raises ``ImageFetchError``."""


class CurrencyConverter(ABC):
    @abstractmethod
    async def to_home_currency(self, amount: Decimal, currency_code: str) -> Conversion:
        """Raises ``RateLookupError`` when no rate can be obtained."""


class MessageGateway(ABC):
    """Outbound messages. Every method raises ``DeliveryError`` on failure."""

    @abstractmethod
    async def reply_confirmation(self, context: ReplyContext, pending: PendingTransaction) -> None:
        ...

    @abstractmethod
    async def push_confirmation(self, owner_id: str, pending: PendingTransaction) -> None:
        ...

    @abstractmethod
    async def reply_text(self, context: ReplyContext, text: str) -> None:
        ...

    @abstractmethod
    async def push_text(self, owner_id: str, text: str) -> None:
        ...


class AsyncTaskQueue(ABC):
    @abstractmethod
    def enqueue_receipt_job(self, job: ReceiptJob) -> None:
        """Hand the job off without waiting for it to be accepted."""


class Ledger(ABC):
    @abstractmethod
    async def record_transaction(
        self, owner_id: str, amount: Decimal, currency: str, description: str
    ) -> int:
        """Persist an expense and return its id. Raises ``OwnerNotFound``."""

    @abstractmethod
    async def delete_transaction(self, owner_id: str, transaction_id: int) -> bool:
        ...

    @abstractmethod
    async def update_transaction_amount(
        self, owner_id: str, transaction_id: int, new_amount: Decimal
    ) -> bool:
        ...

    @abstractmethod
    async def reset_budget(self, owner_id: str) -> int:
        """Remove the owner's transactions for a fresh start; return how many."""
