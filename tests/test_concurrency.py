"""
Tests that a lost race is refused instead of corrupting the ledger.

Two sessions share one database file; whatever the interleaving, an item
ends up with at most one open transaction.
"""
from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from workwear.database import Base
from workwear.models.audit import AuditAction, AuditEvent
from workwear.models.domain import ClothingItem, Employee, Transaction
from workwear.models.enums import ClothingCategory, ClothingCondition, ClothingStatus
from workwear.services.concurrency import atomic
from workwear.services.errors import ConflictError
from workwear.services.inventory import Inventory
from workwear.services.lifecycle import TransactionLifecycle


@pytest.fixture
def two_sessions(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    first, second = Session(), Session()

    yield first, second

    first.close()
    second.close()
    engine.dispose()


@pytest.fixture
def seeded(two_sessions):
    first, _ = two_sessions
    staff = Employee(first_name="Wanda", last_name="Lager")
    alice = Employee(first_name="Alice", last_name="A")
    bob = Employee(first_name="Bob", last_name="B")
    first.add_all([staff, alice, bob])
    first.commit()
    jacket_type = Inventory(first).create_type("Work jacket", ClothingCategory.POOL, "JAC")
    item = Inventory(first).generate_items(jacket_type.id, size="M", quantity=1)[0]
    return {"staff": staff.id, "alice": alice.id, "bob": bob.id, "item": item.id}


class TestConcurrentIssue:
    def test_second_issue_of_same_item_is_refused(self, two_sessions, seeded):
        """Both sessions saw the item AVAILABLE; only the first issue wins."""
        first, second = two_sessions
        assert second.get(ClothingItem, seeded["item"]).status == ClothingStatus.AVAILABLE

        TransactionLifecycle(first).issue(seeded["alice"], seeded["item"], "GOOD", seeded["staff"])

        with pytest.raises(ConflictError):
            TransactionLifecycle(second).issue(seeded["bob"], seeded["item"], "GOOD", seeded["staff"])

        first.expire_all()
        open_count = first.execute(
            select(func.count()).select_from(Transaction).where(Transaction.returned_at.is_(None))
        ).scalar_one()
        assert open_count == 1
        assert first.get(ClothingItem, seeded["item"]).current_employee_id == seeded["alice"]

    def test_stale_write_becomes_conflict(self, two_sessions, seeded):
        """A flush against an outdated version is rolled back and reported as a conflict."""
        first, second = two_sessions
        stale_item = second.get(ClothingItem, seeded["item"])

        TransactionLifecycle(first).issue(seeded["alice"], seeded["item"], "GOOD", seeded["staff"])

        with pytest.raises(ConflictError):
            with atomic(second, "manual status change"):
                stale_item.status = ClothingStatus.LOST
                second.flush()

        second.expire_all()
        item = second.get(ClothingItem, seeded["item"])
        assert item.status == ClothingStatus.ISSUED
        assert item.current_employee_id == seeded["alice"]

    def test_database_rejects_second_open_transaction(self, two_sessions, seeded):
        """The partial unique index backs the one-open-transaction rule."""
        first, _ = two_sessions
        TransactionLifecycle(first).issue(seeded["alice"], seeded["item"], "GOOD", seeded["staff"])

        with pytest.raises(ConflictError):
            with atomic(first, "duplicate open transaction"):
                first.add(Transaction(
                    clothing_item_id=seeded["item"],
                    employee_id=seeded["bob"],
                    issued_by_id=seeded["staff"],
                    condition_on_issue=ClothingCondition.GOOD,
                ))

        open_count = first.execute(
            select(func.count()).select_from(Transaction).where(Transaction.returned_at.is_(None))
        ).scalar_one()
        assert open_count == 1


class TestConcurrentReturn:
    def test_second_return_of_same_transaction_is_refused(self, two_sessions, seeded):
        """Both sessions saw the transaction open; only one return is recorded."""
        first, second = two_sessions
        transaction = TransactionLifecycle(first).issue(
            seeded["alice"], seeded["item"], "GOOD", seeded["staff"]
        )
        transaction_id = transaction.id
        assert second.get(Transaction, transaction_id).returned_at is None
        assert second.get(ClothingItem, seeded["item"]).status == ClothingStatus.ISSUED

        TransactionLifecycle(first).return_item(transaction_id, "WORN", seeded["staff"])

        with pytest.raises(ConflictError):
            TransactionLifecycle(second).return_item(transaction_id, "RETIRED", seeded["staff"])

        first.expire_all()
        returns = first.execute(
            select(AuditEvent).where(AuditEvent.action == AuditAction.RETURN)
        ).scalars().all()
        assert len(returns) == 1
        assert first.get(Transaction, transaction_id).condition_on_return == ClothingCondition.WORN
        assert first.get(ClothingItem, seeded["item"]).status == ClothingStatus.AVAILABLE

    def test_stale_return_flush_becomes_conflict(self, two_sessions, seeded):
        """A return written against outdated row versions is rolled back."""
        first, second = two_sessions
        transaction_id = TransactionLifecycle(first).issue(
            seeded["alice"], seeded["item"], "GOOD", seeded["staff"]
        ).id
        stale_transaction = second.get(Transaction, transaction_id)
        stale_item = second.get(ClothingItem, seeded["item"])

        TransactionLifecycle(first).return_item(transaction_id, "WORN", seeded["staff"])

        with pytest.raises(ConflictError):
            with atomic(second, "stale return"):
                stale_transaction.returned_at = datetime.utcnow()
                stale_transaction.returned_by_id = seeded["staff"]
                stale_transaction.condition_on_return = ClothingCondition.RETIRED
                stale_item.status = ClothingStatus.RETIRED
                stale_item.current_employee_id = None
                second.flush()

        second.expire_all()
        transaction = second.get(Transaction, transaction_id)
        assert transaction.condition_on_return == ClothingCondition.WORN
        assert second.get(ClothingItem, seeded["item"]).status == ClothingStatus.AVAILABLE
