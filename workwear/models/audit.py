"""
Audit logging model.

Every mutation the lifecycle performs is written here in the same database
transaction as the mutation itself. Rows are append-only.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON
from workwear.database import Base


class AuditEvent(Base):
    """
    Immutable audit record of one mutation.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_type = Column(String, nullable=False)  # e.g. "ClothingItem", "Transaction"
    entity_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # e.g. "ISSUE"
    actor_id = Column(String, nullable=True)  # Nullable for system events
    diff = Column(JSON, nullable=True)  # {"field": {"from": ..., "to": ...}} or context
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class AuditAction:
    """Action tags written to the audit log."""
    ISSUE = "ISSUE"
    RETURN = "RETURN"
    RECEIPT_CONFIRMED = "RECEIPT_CONFIRMED"
    ITEMS_GENERATED = "ITEMS_GENERATED"
    EMPLOYEE_CREATED = "EMPLOYEE_CREATED"
    RETIRE = "RETIRE"
    LOST = "LOST"
