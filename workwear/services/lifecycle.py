"""
Transaction lifecycle: issuing clothing items to employees and taking them back.

This is the only place custody changes - every issue and return MUST go
through here. Each public mutation is one database transaction: all
preconditions are checked under row locks first, then every write (ledger
row, item row, audit entry, confirmation) is applied and committed together.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from workwear.config import Settings, settings as default_settings
from workwear.models.audit import AuditAction
from workwear.models.domain import ClothingItem, Confirmation, Employee, Transaction
from workwear.models.enums import (
    ClothingCondition,
    ClothingStatus,
    EventType,
    ProtocolType,
    normalize_condition,
)
from workwear.services.audit import AuditLog, change
from workwear.services.concurrency import atomic, lock_for_update
from workwear.services.confirmation import ConfirmationGate
from workwear.services.directory import EmployeeDirectory
from workwear.services.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    failure,
)

logger = logging.getLogger(__name__)

RECENT_TRANSACTIONS = 10

# Failure codes caused by current state rather than by the request itself
STATE_FAILURES = {"NOT_FOUND", "NOT_AVAILABLE", "ALREADY_RETURNED"}


@dataclass
class BulkIssueResult:
    """Transactions of one handover plus the single confirmation covering them."""
    transactions: List[Transaction]
    confirmation: Confirmation


@dataclass
class ReturnLine:
    transaction_id: int
    condition_on_return: Union[ClothingCondition, str]
    notes: Optional[str] = None


@dataclass
class HistoryEvent:
    """One chronological event of an item; a closed transaction yields two."""
    event_type: EventType
    transaction_id: int
    clothing_item_id: int
    employee_id: int
    actor_id: Optional[int]
    timestamp: datetime
    condition: ClothingCondition
    notes: Optional[str]


class TransactionLifecycle:
    """Enforces the issue/return state transitions and their invariants."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings
        self.directory = EmployeeDirectory(db)
        self.gate = ConfirmationGate(db, self.settings)
        self.audit = AuditLog(db)

    # Issue

    def issue(
        self,
        employee_id: int,
        clothing_item_id: int,
        condition_on_issue,
        issued_by_id: int,
        notes: Optional[str] = None,
        request_meta: Optional[dict] = None,
    ) -> Transaction:
        """
        Issue one AVAILABLE item to an active employee.

        Creates the open transaction, flips the item to ISSUED with the
        employee as holder, writes the audit entry and registers a pending
        SINGLE confirmation - all or nothing.
        """
        condition = self._condition(condition_on_issue, "condition_on_issue")

        with atomic(self.db, "issue"):
            employee = self.directory.require_active(employee_id)
            self.directory.get_employee(issued_by_id, label="Issuer")

            item = self._lock_items([clothing_item_id]).get(clothing_item_id)
            if item is None:
                raise NotFoundError(f"Clothing item {clothing_item_id} not found")
            if item.status != ClothingStatus.AVAILABLE:
                raise ConflictError(
                    f"Clothing item {item.internal_id} is not available "
                    f"(current status: {item.status.value})"
                )

            transaction = self._apply_issue(
                item, employee, condition, issued_by_id, notes, request_meta
            )
            self.gate.create_confirmation(employee, [transaction], ProtocolType.SINGLE)

        logger.info(
            "Issued clothing item %s to employee %s (transaction %s)",
            clothing_item_id, employee_id, transaction.id,
        )
        return transaction

    def bulk_issue(
        self,
        employee_id: int,
        clothing_item_ids: Iterable[int],
        issued_by_id: int,
        condition_on_issue=None,
        item_conditions: Optional[Mapping[int, object]] = None,
        notes: Optional[str] = None,
        request_meta: Optional[dict] = None,
    ) -> BulkIssueResult:
        """
        Issue several items to one employee as a single handover.

        Every item is validated before anything is written. If any item
        fails, the whole batch is refused and every failure is reported.
        One BULK_ISSUE confirmation covers all created transactions.

        The condition must be explicit: `condition_on_issue` for the whole
        batch, `item_conditions` for per-item overrides.
        """
        ids = self._unique_ids(clothing_item_ids, "clothing_item_ids")
        conditions, failures = self._batch_conditions(ids, condition_on_issue, item_conditions or {})

        with atomic(self.db, "bulk issue"):
            employee = self.directory.require_active(employee_id)
            self.directory.get_employee(issued_by_id, label="Issuer")

            items = self._lock_items(ids)
            for item_id in ids:
                item = items.get(item_id)
                if item is None:
                    failures.append(failure(item_id, "NOT_FOUND", "clothing item not found"))
                elif item.status != ClothingStatus.AVAILABLE:
                    failures.append(failure(
                        item_id, "NOT_AVAILABLE",
                        f"{item.internal_id} is not available (current status: {item.status.value})",
                    ))
            if failures:
                _refuse_batch(
                    f"Bulk issue refused: {len(failures)} failures across {len(ids)} items",
                    failures,
                )

            transactions = [
                self._apply_issue(
                    items[item_id], employee, conditions[item_id], issued_by_id, notes, request_meta
                )
                for item_id in ids
            ]
            confirmation = self.gate.create_confirmation(
                employee, transactions, ProtocolType.BULK_ISSUE
            )

        logger.info(
            "Bulk issued %d items to employee %s (confirmation %s)",
            len(transactions), employee_id, confirmation.id,
        )
        return BulkIssueResult(transactions=transactions, confirmation=confirmation)

    def _apply_issue(
        self,
        item: ClothingItem,
        employee: Employee,
        condition: ClothingCondition,
        issued_by_id: int,
        notes: Optional[str],
        request_meta: Optional[dict],
    ) -> Transaction:
        transaction = Transaction(
            clothing_item_id=item.id,
            employee_id=employee.id,
            issued_by_id=issued_by_id,
            issued_at=datetime.utcnow(),
            condition_on_issue=condition,
            notes=notes or None,
        )
        self.db.add(transaction)

        before_status = item.status
        before_holder = item.current_employee_id
        item.status = ClothingStatus.ISSUED
        item.current_employee_id = employee.id
        self.db.flush()

        self.audit.record(
            "ClothingItem", item.id, AuditAction.ISSUE, issued_by_id,
            diff={
                "status": change(before_status, item.status),
                "current_employee_id": change(before_holder, employee.id),
                "transaction_id": transaction.id,
                "condition_on_issue": condition.value,
            },
            request_meta=request_meta,
        )
        return transaction

    # Return

    def return_item(
        self,
        transaction_id: int,
        condition_on_return,
        returned_by_id: int,
        notes: Optional[str] = None,
        request_meta: Optional[dict] = None,
    ) -> Transaction:
        """
        Close an open transaction.

        The item goes back to AVAILABLE, or to RETIRED when it comes back
        in RETIRED condition. The holder is cleared in both cases.
        """
        condition = self._condition(condition_on_return, "condition_on_return")

        with atomic(self.db, "return"):
            self.directory.get_employee(returned_by_id, label="Returner")

            transaction = self._lock_transactions([transaction_id]).get(transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if not transaction.is_open:
                raise ConflictError(
                    f"Transaction {transaction_id} already returned "
                    f"at {transaction.returned_at.isoformat()}"
                )

            self._apply_return(
                transaction,
                condition,
                returned_by_id,
                _append_note(transaction.notes, "Return", notes),
                request_meta,
            )

        logger.info(
            "Returned clothing item %s from transaction %s (condition %s)",
            transaction.clothing_item_id, transaction_id, condition.value,
        )
        return transaction

    def bulk_return(
        self,
        items: Iterable[Union[ReturnLine, Mapping]],
        returned_by_id: int,
        general_notes: Optional[str] = None,
        request_meta: Optional[dict] = None,
    ) -> List[Transaction]:
        """
        Close several open transactions of one employee, each with its own condition.

        All-or-nothing: every transaction must exist, be open and belong to
        the same employee before any of them is closed. No confirmation is
        created for returns.
        """
        lines = [_as_return_line(line) for line in (items or [])]
        missing = [
            failure(index, "REQUIRED", "transaction_id is required")
            for index, line in enumerate(lines)
            if line.transaction_id is None
        ]
        if missing:
            raise ValidationError("Every return line needs a transaction_id", failures=missing)
        ids = self._unique_ids([line.transaction_id for line in lines], "items")

        conditions = {}
        failures = []
        for line in lines:
            if line.condition_on_return is None:
                failures.append(failure(line.transaction_id, "REQUIRED", "condition_on_return is required"))
                continue
            try:
                conditions[line.transaction_id] = normalize_condition(line.condition_on_return)
            except ValueError as exc:
                failures.append(failure(line.transaction_id, "INVALID_CONDITION", str(exc)))

        with atomic(self.db, "bulk return"):
            self.directory.get_employee(returned_by_id, label="Returner")

            transactions = self._lock_transactions(ids)
            for transaction_id in ids:
                transaction = transactions.get(transaction_id)
                if transaction is None:
                    failures.append(failure(transaction_id, "NOT_FOUND", "transaction not found"))
                elif not transaction.is_open:
                    failures.append(failure(
                        transaction_id, "ALREADY_RETURNED",
                        f"already returned at {transaction.returned_at.isoformat()}",
                    ))

            employee_ids = {t.employee_id for t in transactions.values()}
            if len(employee_ids) > 1:
                failures.extend(
                    failure(t.id, "EMPLOYEE_MISMATCH", f"issued to employee {t.employee_id}")
                    for t in transactions.values()
                )
            if failures:
                _refuse_batch(
                    f"Bulk return refused: {len(failures)} failures across {len(ids)} transactions",
                    failures,
                )

            returned = []
            for line in lines:
                transaction = transactions[line.transaction_id]
                notes = _append_note(transaction.notes, "Return (General)", general_notes)
                notes = _append_note(notes, "Return (Item)", line.notes)
                self._apply_return(
                    transaction, conditions[line.transaction_id], returned_by_id, notes, request_meta
                )
                returned.append(transaction)

        logger.info("Bulk returned %d items by %s", len(returned), returned_by_id)
        return returned

    def _apply_return(
        self,
        transaction: Transaction,
        condition: ClothingCondition,
        returned_by_id: int,
        notes: Optional[str],
        request_meta: Optional[dict],
    ) -> None:
        item = self._lock_items([transaction.clothing_item_id])[transaction.clothing_item_id]

        transaction.returned_at = datetime.utcnow()
        transaction.returned_by_id = returned_by_id
        transaction.condition_on_return = condition
        transaction.notes = notes

        before_status = item.status
        before_holder = item.current_employee_id
        before_condition = item.condition
        if condition == ClothingCondition.RETIRED:
            item.status = ClothingStatus.RETIRED
            item.retired_at = transaction.returned_at
        else:
            item.status = ClothingStatus.AVAILABLE
        item.condition = condition
        item.current_employee_id = None
        self.db.flush()

        self.audit.record(
            "ClothingItem", item.id, AuditAction.RETURN, returned_by_id,
            diff={
                "status": change(before_status, item.status),
                "current_employee_id": change(before_holder, None),
                "condition": change(before_condition, condition),
                "transaction_id": transaction.id,
            },
            request_meta=request_meta,
        )

    # Reads

    def get_transaction(self, transaction_id: int) -> Transaction:
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def get_history(self, clothing_item_id: int) -> List[HistoryEvent]:
        """
        Chronological custody events of an item, newest first.

        Each transaction yields an ISSUE event and, once closed, a RETURN event.
        """
        if self.db.get(ClothingItem, clothing_item_id) is None:
            raise NotFoundError(f"Clothing item {clothing_item_id} not found")

        transactions = self.db.execute(
            select(Transaction).where(Transaction.clothing_item_id == clothing_item_id)
        ).scalars().all()

        events = []
        for t in transactions:
            events.append(HistoryEvent(
                event_type=EventType.ISSUE,
                transaction_id=t.id,
                clothing_item_id=t.clothing_item_id,
                employee_id=t.employee_id,
                actor_id=t.issued_by_id,
                timestamp=t.issued_at,
                condition=t.condition_on_issue,
                notes=t.notes,
            ))
            if not t.is_open:
                events.append(HistoryEvent(
                    event_type=EventType.RETURN,
                    transaction_id=t.id,
                    clothing_item_id=t.clothing_item_id,
                    employee_id=t.employee_id,
                    actor_id=t.returned_by_id,
                    timestamp=t.returned_at,
                    condition=t.condition_on_return,
                    notes=t.notes,
                ))

        # Ties follow ledger order: older transactions first, a return after its own issue
        events.sort(
            key=lambda e: (e.timestamp, e.transaction_id, e.event_type == EventType.RETURN),
            reverse=True,
        )
        return events

    def list_transactions(
        self,
        employee_id: Optional[int] = None,
        clothing_item_id: Optional[int] = None,
        returned: Optional[bool] = None,
    ) -> List[Transaction]:
        stmt = select(Transaction)
        if employee_id is not None:
            stmt = stmt.where(Transaction.employee_id == employee_id)
        if clothing_item_id is not None:
            stmt = stmt.where(Transaction.clothing_item_id == clothing_item_id)
        if returned is True:
            stmt = stmt.where(Transaction.returned_at.is_not(None))
        elif returned is False:
            stmt = stmt.where(Transaction.returned_at.is_(None))
        stmt = stmt.order_by(Transaction.issued_at.desc(), Transaction.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def pending_returns(self, employee_id: Optional[int] = None) -> List[Transaction]:
        """Open transactions - items still out with an employee."""
        return self.list_transactions(employee_id=employee_id, returned=False)

    def pending_issues(self, employee_id: Optional[int] = None) -> List[Transaction]:
        """Open transactions whose recipient has not confirmed receipt yet."""
        stmt = (
            select(Transaction)
            .join(ClothingItem, Transaction.clothing_item_id == ClothingItem.id)
            .where(
                Transaction.returned_at.is_(None),
                ClothingItem.status == ClothingStatus.ISSUED,
            )
        )
        if employee_id is not None:
            stmt = stmt.where(Transaction.employee_id == employee_id)
        stmt = stmt.order_by(Transaction.issued_at.desc(), Transaction.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def stats(self, employee_id: Optional[int] = None) -> dict:
        def count(*criteria):
            stmt = select(func.count(Transaction.id)).select_from(Transaction)
            if employee_id is not None:
                stmt = stmt.where(Transaction.employee_id == employee_id)
            for criterion in criteria:
                stmt = stmt.where(criterion)
            return self.db.execute(stmt).scalar_one()

        return {
            "total": count(),
            "open": count(Transaction.returned_at.is_(None)),
            "returned": count(Transaction.returned_at.is_not(None)),
            "unconfirmed": len(self.pending_issues(employee_id)),
            "recent": self.list_transactions(employee_id=employee_id)[:RECENT_TRANSACTIONS],
        }

    # Helpers

    def _lock_items(self, item_ids: List[int]) -> Dict[int, ClothingItem]:
        # Fixed lock order keeps concurrent batches from deadlocking
        stmt = lock_for_update(
            select(ClothingItem)
            .where(ClothingItem.id.in_(item_ids))
            .order_by(ClothingItem.id)
        ).execution_options(populate_existing=True)
        return {item.id: item for item in self.db.execute(stmt).scalars().all()}

    def _lock_transactions(self, transaction_ids: List[int]) -> Dict[int, Transaction]:
        stmt = lock_for_update(
            select(Transaction)
            .where(Transaction.id.in_(transaction_ids))
            .order_by(Transaction.id)
        ).execution_options(populate_existing=True)
        return {t.id: t for t in self.db.execute(stmt).scalars().all()}

    @staticmethod
    def _condition(value, field: str) -> ClothingCondition:
        if value is None:
            raise ValidationError(
                f"{field} is required",
                failures=[failure(field, "REQUIRED", f"{field} is required")],
            )
        try:
            return normalize_condition(value)
        except ValueError as exc:
            raise ValidationError(
                str(exc), failures=[failure(field, "INVALID_CONDITION", str(exc))]
            ) from None

    @staticmethod
    def _unique_ids(values: Iterable[int], field: str) -> List[int]:
        ids = list(values or [])
        if not ids:
            raise ValidationError(f"{field} must contain at least one entry")
        seen = set()
        duplicates = []
        for value in ids:
            if value in seen and value not in duplicates:
                duplicates.append(value)
            seen.add(value)
        if duplicates:
            raise ValidationError(
                f"{field} contains duplicates",
                failures=[failure(d, "DUPLICATE", "listed more than once") for d in duplicates],
            )
        return ids

    @staticmethod
    def _batch_conditions(
        ids: List[int],
        shared,
        overrides: Mapping[int, object],
    ) -> Tuple[Dict[int, ClothingCondition], List[dict]]:
        """Resolve each item's condition; failures are returned, not raised."""
        failures = []
        for key in overrides:
            if key not in ids:
                failures.append(failure(key, "NOT_IN_BATCH", "condition given for an item not in the batch"))

        conditions = {}
        for item_id in ids:
            value = overrides.get(item_id, shared)
            if value is None:
                failures.append(failure(item_id, "REQUIRED", "condition_on_issue is required"))
                continue
            try:
                conditions[item_id] = normalize_condition(value)
            except ValueError as exc:
                failures.append(failure(item_id, "INVALID_CONDITION", str(exc)))

        return conditions, failures


def _refuse_batch(message: str, failures: List[dict]) -> None:
    """Reject a whole batch with every collected failure."""
    if any(f["code"] in STATE_FAILURES for f in failures):
        raise ConflictError(message, failures=failures)
    raise ValidationError(message, failures=failures)


def _append_note(existing: Optional[str], label: str, note: Optional[str]) -> Optional[str]:
    """Append a labelled note the way the ledger keeps handover remarks."""
    if not note:
        return existing
    entry = f"{label}: {note}"
    return f"{existing}\n---\n{entry}" if existing else entry


def _as_return_line(line) -> ReturnLine:
    if isinstance(line, ReturnLine):
        return line
    if isinstance(line, Mapping):
        return ReturnLine(
            transaction_id=line.get("transaction_id"),
            condition_on_return=line.get("condition_on_return"),
            notes=line.get("notes"),
        )
    # Pydantic request models and other attribute carriers
    return ReturnLine(
        transaction_id=getattr(line, "transaction_id"),
        condition_on_return=getattr(line, "condition_on_return"),
        notes=getattr(line, "notes", None),
    )
