"""
Tests for item history and the audit trail.

Every issue, return and confirmation leaves an audit row written in the
same database transaction; refused operations leave none.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from workwear.models.audit import AuditAction, AuditEvent
from workwear.models.enums import ClothingCondition, EventType
from workwear.services.confirmation import ConfirmationGate
from workwear.services.errors import ConflictError, NotFoundError
from workwear.services.lifecycle import TransactionLifecycle


def audit_events(db_session, action):
    return db_session.execute(
        select(AuditEvent).where(AuditEvent.action == action).order_by(AuditEvent.id)
    ).scalars().all()


class TestItemHistory:
    def test_history_is_newest_first(self, db_session, staff, employee, other_employee, make_items):
        """Two closed transactions and one open one give five events."""
        item = make_items(1)[0]
        lc = TransactionLifecycle(db_session)
        t1 = lc.issue(employee.id, item.id, "NEW", staff.id)
        lc.return_item(t1.id, "GOOD", staff.id)
        t2 = lc.issue(other_employee.id, item.id, "GOOD", staff.id)
        lc.return_item(t2.id, "WORN", staff.id)
        t3 = lc.issue(employee.id, item.id, "WORN", staff.id)

        # Spread the timestamps so the expected order does not depend on clock resolution
        base = datetime(2024, 3, 1, 8, 0)
        for offset, (transaction, has_return) in enumerate([(t1, True), (t2, True), (t3, False)]):
            transaction.issued_at = base + timedelta(days=2 * offset)
            if has_return:
                transaction.returned_at = base + timedelta(days=2 * offset + 1)
        db_session.commit()

        history = lc.get_history(item.id)

        assert [(e.event_type, e.transaction_id) for e in history] == [
            (EventType.ISSUE, t3.id),
            (EventType.RETURN, t2.id),
            (EventType.ISSUE, t2.id),
            (EventType.RETURN, t1.id),
            (EventType.ISSUE, t1.id),
        ]
        assert history[1].condition == ClothingCondition.WORN
        assert history[1].actor_id == staff.id
        assert history[2].employee_id == other_employee.id

    def test_return_sorts_before_issue_on_equal_timestamps(self, db_session, staff, employee, make_items):
        item = make_items(1)[0]
        lc = TransactionLifecycle(db_session)
        transaction = lc.issue(employee.id, item.id, "GOOD", staff.id)
        lc.return_item(transaction.id, "GOOD", staff.id)
        transaction.returned_at = transaction.issued_at
        db_session.commit()

        history = lc.get_history(item.id)

        assert [e.event_type for e in history] == [EventType.RETURN, EventType.ISSUE]

    def test_reissue_at_return_time_sorts_after_the_return(
        self, db_session, staff, employee, other_employee, make_items
    ):
        """A re-issue stamped with the previous return's time is still the newest event."""
        item = make_items(1)[0]
        lc = TransactionLifecycle(db_session)
        t1 = lc.issue(employee.id, item.id, "GOOD", staff.id)
        lc.return_item(t1.id, "GOOD", staff.id)
        t2 = lc.issue(other_employee.id, item.id, "GOOD", staff.id)

        handover = datetime(2024, 3, 1, 12, 0)
        t1.issued_at = datetime(2024, 3, 1, 10, 0)
        t1.returned_at = handover
        t2.issued_at = handover
        db_session.commit()

        history = lc.get_history(item.id)

        assert [(e.event_type, e.transaction_id) for e in history] == [
            (EventType.ISSUE, t2.id),
            (EventType.RETURN, t1.id),
            (EventType.ISSUE, t1.id),
        ]

    def test_history_of_unknown_item(self, db_session):
        with pytest.raises(NotFoundError):
            TransactionLifecycle(db_session).get_history(9999)

    def test_never_issued_item_has_empty_history(self, db_session, make_items):
        item = make_items(1)[0]
        assert TransactionLifecycle(db_session).get_history(item.id) == []


class TestAuditTrail:
    def test_generated_items_are_audited(self, db_session, make_items):
        items = make_items(3)
        events = audit_events(db_session, AuditAction.ITEMS_GENERATED)

        assert [e.entity_id for e in events] == [str(i.id) for i in items]

    def test_issue_writes_audit_entry(self, db_session, staff, employee, make_items):
        item = make_items(1)[0]
        transaction = TransactionLifecycle(db_session).issue(
            employee.id, item.id, "GOOD", staff.id,
            request_meta={"ip_address": "10.0.0.5", "user_agent": "scanner/1.0"},
        )

        (event,) = audit_events(db_session, AuditAction.ISSUE)
        assert event.entity_type == "ClothingItem"
        assert event.entity_id == str(item.id)
        assert event.actor_id == str(staff.id)
        assert event.diff["status"] == {"from": "AVAILABLE", "to": "ISSUED"}
        assert event.diff["current_employee_id"] == {"from": None, "to": employee.id}
        assert event.diff["transaction_id"] == transaction.id
        assert event.ip_address == "10.0.0.5"
        assert event.user_agent == "scanner/1.0"

    def test_return_writes_audit_entry(self, db_session, staff, employee, make_items):
        item = make_items(1)[0]
        lc = TransactionLifecycle(db_session)
        transaction = lc.issue(employee.id, item.id, "GOOD", staff.id)
        lc.return_item(transaction.id, "RETIRED", staff.id)

        (event,) = audit_events(db_session, AuditAction.RETURN)
        assert event.diff["status"] == {"from": "ISSUED", "to": "RETIRED"}
        assert event.diff["current_employee_id"] == {"from": employee.id, "to": None}
        assert event.diff["condition"] == {"from": "NEW", "to": "RETIRED"}

    def test_bulk_issue_audits_every_item(self, db_session, staff, employee, make_items):
        items = make_items(3)
        TransactionLifecycle(db_session).bulk_issue(employee.id, [i.id for i in items], staff.id, "GOOD")

        events = audit_events(db_session, AuditAction.ISSUE)
        assert sorted(e.entity_id for e in events) == sorted(str(i.id) for i in items)

    def test_confirmation_is_audited(self, db_session, staff, employee, make_items):
        items = make_items(2)
        result = TransactionLifecycle(db_session).bulk_issue(
            employee.id, [i.id for i in items], staff.id, "GOOD"
        )
        ConfirmationGate(db_session).confirm(result.confirmation.token, employee.id)

        (event,) = audit_events(db_session, AuditAction.RECEIPT_CONFIRMED)
        assert event.entity_type == "Confirmation"
        assert event.actor_id == str(employee.id)
        assert event.diff["protocol_type"] == "BULK_ISSUE"
        assert sorted(event.diff["items_in_use"]) == sorted(i.id for i in items)

    def test_refused_operations_leave_no_audit(self, db_session, staff, employee, other_employee, make_items):
        items = make_items(2)
        lc = TransactionLifecycle(db_session)
        lc.issue(employee.id, items[0].id, "GOOD", staff.id)

        with pytest.raises(ConflictError):
            lc.bulk_issue(other_employee.id, [i.id for i in items], staff.id, "GOOD")

        assert len(audit_events(db_session, AuditAction.ISSUE)) == 1
