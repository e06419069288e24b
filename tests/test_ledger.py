import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_bot.db import Base
from expense_bot.errors import LedgerError, OwnerNotFound
from expense_bot.ledger import SqlLedger


@pytest.fixture
def sql_ledger():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield SqlLedger(factory, home_currency="JPY")
    engine.dispose()


def test_owner_is_created_once(sql_ledger):
    assert asyncio.run(sql_ledger.ensure_owner("42", "Aiko"))
    assert not asyncio.run(sql_ledger.ensure_owner("42", "Aiko"))


def test_unknown_owner_is_rejected(sql_ledger):
    with pytest.raises(OwnerNotFound) as excinfo:
        asyncio.run(sql_ledger.record_transaction("404", Decimal("100"), "JPY", "ghost"))

    assert isinstance(excinfo.value, LedgerError)
    assert excinfo.value.owner_id == "404"


def test_record_and_list_transactions(sql_ledger):
    async def scenario():
        await sql_ledger.ensure_owner("42", "Aiko")
        first = await sql_ledger.record_transaction("42", Decimal("1200"), "jpy", "lunch")
        second = await sql_ledger.record_transaction("42", Decimal("450"), "JPY", "coffee")
        recent = await sql_ledger.recent_transactions("42", limit=5)
        return first, second, recent

    first, second, recent = asyncio.run(scenario())

    assert [tx.id for tx in recent] == [second, first]
    assert recent[1].amount == Decimal("1200")
    assert recent[1].currency == "JPY"
    assert recent[1].description == "lunch"


def test_budget_status_tracks_spending(sql_ledger):
    async def scenario():
        await sql_ledger.ensure_owner("42", "Aiko")
        await sql_ledger.record_transaction("42", Decimal("1200"), "JPY", "lunch")
        before = await sql_ledger.budget_status("42")
        await sql_ledger.set_monthly_budget("42", Decimal("50000"))
        after = await sql_ledger.budget_status("42")
        return before, after

    before, after = asyncio.run(scenario())

    assert before.spent == Decimal("1200")
    assert before.monthly_budget is None
    assert before.remaining is None
    assert after.monthly_budget == Decimal("50000")
    assert after.remaining == Decimal("48800")


def test_delete_and_edit_are_scoped_to_owner(sql_ledger):
    async def scenario():
        await sql_ledger.ensure_owner("42", "Aiko")
        await sql_ledger.ensure_owner("43", "Ren")
        transaction_id = await sql_ledger.record_transaction("42", Decimal("900"), "JPY", "book")
        foreign_delete = await sql_ledger.delete_transaction("43", transaction_id)
        edited = await sql_ledger.update_transaction_amount("42", transaction_id, Decimal("950"))
        recent = await sql_ledger.recent_transactions("42")
        deleted = await sql_ledger.delete_transaction("42", transaction_id)
        deleted_again = await sql_ledger.delete_transaction("42", transaction_id)
        missing_edit = await sql_ledger.update_transaction_amount("42", transaction_id, Decimal("1"))
        return foreign_delete, edited, recent, deleted, deleted_again, missing_edit

    foreign_delete, edited, recent, deleted, deleted_again, missing_edit = asyncio.run(scenario())

    assert not foreign_delete
    assert edited
    assert recent[0].amount == Decimal("950")
    assert deleted
    assert not deleted_again
    assert not missing_edit


def test_reset_removes_only_the_owners_transactions(sql_ledger):
    async def scenario():
        await sql_ledger.ensure_owner("42", "Aiko")
        await sql_ledger.ensure_owner("43", "Ren")
        await sql_ledger.record_transaction("42", Decimal("100"), "JPY", "a")
        await sql_ledger.record_transaction("42", Decimal("200"), "JPY", "b")
        await sql_ledger.record_transaction("43", Decimal("300"), "JPY", "c")
        removed = await sql_ledger.reset_budget("42")
        return removed, await sql_ledger.recent_transactions("42"), await sql_ledger.recent_transactions("43")

    removed, mine, theirs = asyncio.run(scenario())

    assert removed == 2
    assert mine == []
    assert len(theirs) == 1
