"""
Tests for item generation, QR lookup and taking items out of circulation.
"""
import pytest
from workwear.models.audit import AuditAction
from workwear.models.enums import ClothingCondition, ClothingStatus
from workwear.services.audit import AuditLog
from workwear.services.confirmation import ConfirmationGate
from workwear.services.errors import ConflictError, NotFoundError, ValidationError
from workwear.services.inventory import Inventory
from workwear.services.lifecycle import TransactionLifecycle


class TestItemGeneration:
    def test_internal_ids_continue_the_sequence(self, make_items):
        first = make_items(2)
        second = make_items(1)

        assert [i.internal_id for i in first + second] == ["JAC-00001", "JAC-00002", "JAC-00003"]
        assert all(i.status == ClothingStatus.AVAILABLE for i in first + second)
        assert len({i.qr_code for i in first + second}) == 3

    def test_quantity_is_bounded(self, db_session, jacket_type):
        with pytest.raises(ValidationError):
            Inventory(db_session).generate_items(jacket_type.id, size="L", quantity=0)
        with pytest.raises(ValidationError):
            Inventory(db_session).generate_items(jacket_type.id, size="L", quantity=101)

    def test_prefix_defaults_to_name(self, db_session):
        assert Inventory(db_session).create_type("Safety boots").code_prefix == "SAF"


class TestQrLookup:
    def test_scanned_code_resolves_to_item(self, db_session, make_items):
        item = make_items(1)[0]
        assert Inventory(db_session).get_item_by_qr(item.qr_code).id == item.id

    def test_unknown_code(self, db_session):
        with pytest.raises(NotFoundError):
            Inventory(db_session).get_item_by_qr("0" * 32)


class TestTakingItemsOut:
    """RETIRED and LOST are reachable only for items nobody holds."""

    def test_retire_available_item(self, db_session, staff, make_items):
        item = make_items(1)[0]

        retired = Inventory(db_session).retire_item(item.id, reason="Torn", performed_by=staff.id)

        assert retired.status == ClothingStatus.RETIRED
        assert retired.condition == ClothingCondition.RETIRED
        assert retired.retired_at is not None
        assert retired.retirement_reason == "Torn"
        (event,) = [
            e for e in AuditLog(db_session).entries_for("ClothingItem", item.id)
            if e.action == AuditAction.RETIRE
        ]
        assert event.diff["status"] == {"from": "AVAILABLE", "to": "RETIRED"}
        assert event.actor_id == str(staff.id)

    def test_issued_item_cannot_be_retired(self, db_session, staff, employee, make_items):
        item = make_items(1)[0]
        TransactionLifecycle(db_session).issue(employee.id, item.id, "GOOD", staff.id)

        with pytest.raises(ConflictError):
            Inventory(db_session).retire_item(item.id, performed_by=staff.id)
        with pytest.raises(ConflictError):
            Inventory(db_session).mark_lost(item.id, performed_by=staff.id)

        db_session.refresh(item)
        assert item.status == ClothingStatus.ISSUED
        assert item.current_employee_id == employee.id
        actions = {e.action for e in AuditLog(db_session).entries_for("ClothingItem", item.id)}
        assert AuditAction.RETIRE not in actions
        assert AuditAction.LOST not in actions

    def test_lost_item_cannot_be_issued(self, db_session, staff, employee, make_items):
        item = make_items(1)[0]
        Inventory(db_session).mark_lost(item.id, reason="Left on site", performed_by=staff.id)

        with pytest.raises(ConflictError):
            TransactionLifecycle(db_session).issue(employee.id, item.id, "GOOD", staff.id)

        db_session.refresh(item)
        assert item.status == ClothingStatus.LOST
        assert item.current_employee_id is None

    def test_lost_item_can_be_retired_but_not_lost_twice(self, db_session, staff, make_items):
        item = make_items(1)[0]
        inventory = Inventory(db_session)
        inventory.mark_lost(item.id, performed_by=staff.id)

        with pytest.raises(ConflictError):
            inventory.mark_lost(item.id, performed_by=staff.id)
        assert inventory.retire_item(item.id, performed_by=staff.id).status == ClothingStatus.RETIRED

    def test_retired_item_stays_retired(self, db_session, staff, make_items):
        item = make_items(1)[0]
        inventory = Inventory(db_session)
        inventory.retire_item(item.id, performed_by=staff.id)

        with pytest.raises(ConflictError):
            inventory.retire_item(item.id, performed_by=staff.id)
        with pytest.raises(ConflictError):
            inventory.mark_lost(item.id, performed_by=staff.id)

    def test_unknown_item(self, db_session):
        with pytest.raises(NotFoundError):
            Inventory(db_session).retire_item(9999)


class TestReadsOfTheTrail:
    def test_item_audit_log_is_newest_first(self, db_session, staff, employee, make_items):
        item = make_items(1)[0]
        lc = TransactionLifecycle(db_session)
        transaction = lc.issue(employee.id, item.id, "GOOD", staff.id)
        lc.return_item(transaction.id, "GOOD", staff.id)

        entries = AuditLog(db_session).entries_for("ClothingItem", item.id)

        assert [e.action for e in entries] == [
            AuditAction.RETURN, AuditAction.ISSUE, AuditAction.ITEMS_GENERATED,
        ]

    def test_confirmation_list_filters(self, db_session, staff, employee, other_employee, make_items):
        items = make_items(3)
        lc = TransactionLifecycle(db_session)
        lc.issue(employee.id, items[0].id, "GOOD", staff.id)
        lc.issue(employee.id, items[1].id, "GOOD", staff.id)
        lc.issue(other_employee.id, items[2].id, "GOOD", staff.id)
        gate = ConfirmationGate(db_session)
        gate.confirm(gate.list_confirmations(employee_id=employee.id)[0].token, employee.id)

        assert len(gate.list_confirmations()) == 3
        assert len(gate.list_confirmations(employee_id=employee.id)) == 2
        assert len(gate.list_confirmations(employee_id=employee.id, confirmed=False)) == 1
        assert len(gate.list_confirmations(confirmed=True)) == 1
