from datetime import datetime
from decimal import Decimal

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .models import TransactionModel, UserModel


def create_user(db: Session, telegram_id: str, name: str, currency: str) -> UserModel:
    user = UserModel(telegram_id=telegram_id, name=name, currency=currency.upper())
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_telegram_id(db: Session, telegram_id: str) -> UserModel | None:
    return db.scalar(select(UserModel).where(UserModel.telegram_id == telegram_id))


def set_monthly_budget(db: Session, user: UserModel, amount: Decimal | None) -> UserModel:
    user.monthly_budget = amount
    db.commit()
    db.refresh(user)
    return user


def create_transaction(
    db: Session, user_id: int, amount: Decimal, currency: str, description: str | None
) -> TransactionModel:
    transaction = TransactionModel(
        user_id=user_id,
        amount=amount,
        currency=currency.upper(),
        description=(description or "")[:255] or None,
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


def get_transaction(db: Session, transaction_id: int, user_id: int) -> TransactionModel | None:
    stmt = select(TransactionModel).where(
        TransactionModel.id == transaction_id, TransactionModel.user_id == user_id
    )
    return db.scalar(stmt)


def list_transactions(
    db: Session,
    user_id: int,
    limit: int | None = None,
    since: datetime | None = None,
) -> list[TransactionModel]:
    stmt = select(TransactionModel).where(TransactionModel.user_id == user_id)
    if since is not None:
        stmt = stmt.where(TransactionModel.created_at >= since)
    stmt = stmt.order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt))


def update_transaction_amount(db: Session, transaction: TransactionModel, amount: Decimal) -> TransactionModel:
    transaction.amount = amount
    db.commit()
    db.refresh(transaction)
    return transaction


def delete_transaction_by_id(db: Session, transaction_id: int, user_id: int) -> bool:
    tx = get_transaction(db, transaction_id, user_id)
    if not tx:
        return False
    db.delete(tx)
    db.commit()
    return True


def delete_transactions_for_user(db: Session, user_id: int) -> int:
    result = db.execute(delete(TransactionModel).where(TransactionModel.user_id == user_id))
    db.commit()
    return result.rowcount or 0


def total_spent(db: Session, user_id: int, since: datetime | None = None) -> Decimal:
    stmt = select(func.coalesce(func.sum(TransactionModel.amount), 0)).where(
        TransactionModel.user_id == user_id
    )
    if since is not None:
        stmt = stmt.where(TransactionModel.created_at >= since)
    return Decimal(str(db.scalar(stmt) or 0))
