from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RECEIPT_PROCESSING_TASK = "receipt_processing"


class ImageRef(BaseModel):
    """Where to fetch an inbound receipt image from."""

    message_id: str = Field(min_length=1)
    file_id: str = Field(min_length=1)


class ReplyContext(BaseModel):
    """Enough information to answer the inbound message directly."""

    chat_id: int
    message_id: Optional[int] = None


class ReceiptJob(BaseModel):
    owner_id: str = Field(min_length=1)
    image: ImageRef
    reply_context: Optional[ReplyContext] = None


class TaskEnvelope(BaseModel):
    type: str
    data: dict[str, Any]


class TaskResult(BaseModel):
    status: str
    detail: Optional[str] = None


class TransactionOut(BaseModel):
    id: int
    amount: Decimal
    currency: str
    description: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BudgetStatus(BaseModel):
    monthly_budget: Optional[Decimal] = None
    spent: Decimal
    currency: str
    remaining: Optional[Decimal] = None


HealthStatus = Literal["ok"]
