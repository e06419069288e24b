"""SQLAlchemy-backed ledger. Blocking session work runs in worker threads."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import crud
from .errors import LedgerError, OwnerNotFound
from .models import UserModel
from .pipeline.ports import Ledger
from .schemas import BudgetStatus, TransactionOut

logger = logging.getLogger(__name__)


def month_start(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class SqlLedger(Ledger):
    def __init__(self, session_factory: sessionmaker[Session], home_currency: str = "JPY") -> None:
        self.session_factory = session_factory
        self.home_currency = home_currency

    def _owner(self, db: Session, owner_id: str) -> UserModel:
        user = crud.get_user_by_telegram_id(db, owner_id)
        if user is None:
            raise OwnerNotFound(owner_id)
        return user

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            logger.error("Ledger operation %s failed: %s", func.__name__, exc)
            raise LedgerError(str(exc)) from exc

    def _ensure_owner(self, owner_id: str, name: str) -> bool:
        with self.session_factory() as db:
            if crud.get_user_by_telegram_id(db, owner_id) is not None:
                return False
            crud.create_user(db, owner_id, name, self.home_currency)
            logger.info("Created ledger owner %s", owner_id)
            return True

    async def ensure_owner(self, owner_id: str, name: str) -> bool:
        """Create the owner on first contact. Returns True when created."""
        return await self._run(self._ensure_owner, owner_id, name)

    def _record(self, owner_id: str, amount: Decimal, currency: str, description: str) -> int:
        with self.session_factory() as db:
            user = self._owner(db, owner_id)
            return crud.create_transaction(db, user.id, amount, currency, description).id

    async def record_transaction(
        self, owner_id: str, amount: Decimal, currency: str, description: str
    ) -> int:
        return await self._run(self._record, owner_id, amount, currency, description)

    def _delete(self, owner_id: str, transaction_id: int) -> bool:
        with self.session_factory() as db:
            user = self._owner(db, owner_id)
            return crud.delete_transaction_by_id(db, transaction_id, user.id)

    async def delete_transaction(self, owner_id: str, transaction_id: int) -> bool:
        return await self._run(self._delete, owner_id, transaction_id)

    def _update_amount(self, owner_id: str, transaction_id: int, new_amount: Decimal) -> bool:
        with self.session_factory() as db:
            user = self._owner(db, owner_id)
            tx = crud.get_transaction(db, transaction_id, user.id)
            if tx is None:
                return False
            crud.update_transaction_amount(db, tx, new_amount)
            return True

    async def update_transaction_amount(
        self, owner_id: str, transaction_id: int, new_amount: Decimal
    ) -> bool:
        return await self._run(self._update_amount, owner_id, transaction_id, new_amount)

    def _reset(self, owner_id: str) -> int:
        with self.session_factory() as db:
            user = self._owner(db, owner_id)
            return crud.delete_transactions_for_user(db, user.id)

    async def reset_budget(self, owner_id: str) -> int:
        return await self._run(self._reset, owner_id)

    def _set_budget(self, owner_id: str, amount: Decimal | None) -> None:
        with self.session_factory() as db:
            crud.set_monthly_budget(db, self._owner(db, owner_id), amount)

    async def set_monthly_budget(self, owner_id: str, amount: Decimal | None) -> None:
        await self._run(self._set_budget, owner_id, amount)

    def _budget_status(self, owner_id: str) -> BudgetStatus:
        with self.session_factory() as db:
            user = self._owner(db, owner_id)
            spent = crud.total_spent(db, user.id, since=month_start())
            remaining = None if user.monthly_budget is None else user.monthly_budget - spent
            return BudgetStatus(
                monthly_budget=user.monthly_budget,
                spent=spent,
                currency=user.currency,
                remaining=remaining,
            )

    async def budget_status(self, owner_id: str) -> BudgetStatus:
        return await self._run(self._budget_status, owner_id)

    def _recent(self, owner_id: str, limit: int) -> list[TransactionOut]:
        with self.session_factory() as db:
            user = self._owner(db, owner_id)
            return [
                TransactionOut.model_validate(tx)
                for tx in crud.list_transactions(db, user.id, limit=limit)
            ]

    async def recent_transactions(self, owner_id: str, limit: int = 5) -> list[TransactionOut]:
        return await self._run(self._recent, owner_id, limit)
