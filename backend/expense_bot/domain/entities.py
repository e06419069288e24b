from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Union


@dataclass(slots=True, frozen=True)
class Currency:
    """A currency the receipt reader knows how to recognise."""

    code: str
    symbol: str
    name: str
    minor_units: int = 2

    def quantum(self) -> Decimal:
        """Smallest representable step, e.g. ``Decimal("0.01")`` for USD."""
        return Decimal(1).scaleb(-self.minor_units)


@dataclass(slots=True, frozen=True)
class AmountCandidate:
    """A plausible (amount, currency) pair found in OCR text."""

    amount: Decimal
    currency: Currency
    matched_text: str
    confidence: float = 0.0
    line_index: int = 0

    def key(self) -> tuple[Decimal, str]:
        return self.amount, self.currency.code


class ReceiptKind(str, Enum):
    RECEIPT = "receipt"
    INVOICE = "invoice"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class AnalysisDetails:
    total_keywords: tuple[str, ...] = ()
    subtotal_found: bool = False
    tax_found: bool = False
    discount_found: bool = False


@dataclass(slots=True, frozen=True)
class ReceiptAnalysis:
    """Everything the parser learned from one receipt. Never mutated."""

    candidates: tuple[AmountCandidate, ...]
    resolved_total: AmountCandidate | None
    confidence: float
    store_name: str | None = None
    line_items: tuple[str, ...] = ()
    receipt_kind: ReceiptKind = ReceiptKind.UNKNOWN
    details: AnalysisDetails = field(default_factory=AnalysisDetails)

    @property
    def found_amount(self) -> bool:
        return self.resolved_total is not None


@dataclass(slots=True, frozen=True)
class Conversion:
    converted_amount: Decimal
    rate: Decimal
    is_realtime: bool


@dataclass(slots=True, frozen=True)
class PendingTransaction:
    """An expense awaiting the owner's confirmation. One slot per owner."""

    id: str
    owner_id: str
    amount: Decimal
    currency: str
    description: str
    created_at: datetime
    token: str
    original_amount: Decimal
    original_currency: str
    rate: Decimal
    confidence: float

    @property
    def was_converted(self) -> bool:
        return self.original_currency != self.currency


class TokenKind(str, Enum):
    EXPENSE = "expense"
    DELETE = "delete"
    EDIT = "edit"
    RESET = "reset"


@dataclass(slots=True, frozen=True)
class ExpenseConfirmation:
    pending_id: str


@dataclass(slots=True, frozen=True)
class DeleteRequest:
    transaction_id: int


@dataclass(slots=True, frozen=True)
class EditRequest:
    transaction_id: int
    new_amount: Decimal


@dataclass(slots=True, frozen=True)
class ResetRequest:
    pass


TokenPayload = Union[ExpenseConfirmation, DeleteRequest, EditRequest, ResetRequest]

PAYLOAD_TYPES: dict[TokenKind, type] = {
    TokenKind.EXPENSE: ExpenseConfirmation,
    TokenKind.DELETE: DeleteRequest,
    TokenKind.EDIT: EditRequest,
    TokenKind.RESET: ResetRequest,
}


@dataclass(slots=True, frozen=True)
class ConfirmationToken:
    token: str
    kind: TokenKind
    owner_id: str
    payload: TokenPayload
    issued_at: float


class TokenError(str, Enum):
    INVALID_OR_EXPIRED = "invalid_or_expired"
    NOT_AUTHORIZED = "not_authorized"


class QualityTier(str, Enum):
    LIGHT = "light"
    FULL = "full"
