"""Audit log sink used by every mutating service."""
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from workwear.models.audit import AuditEvent


def change(before, after) -> dict:
    """Diff entry for one field."""
    return {"from": _plain(before), "to": _plain(after)}


def _plain(value):
    return getattr(value, "value", value)


class AuditLog:
    """
    Writes audit events into the caller's session.

    The event is committed (or rolled back) together with the mutation it
    describes - the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        entity_type: str,
        entity_id,
        action: str,
        actor_id=None,
        diff: Optional[dict] = None,
        request_meta: Optional[dict] = None,
    ) -> AuditEvent:
        request_meta = request_meta or {}
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            actor_id=str(actor_id) if actor_id is not None else None,
            diff=diff,
            ip_address=request_meta.get("ip_address"),
            user_agent=request_meta.get("user_agent"),
        )
        self.db.add(event)
        return event

    def entries_for(self, entity_type: str, entity_id, limit: int = 100) -> List[AuditEvent]:
        """Audit trail of one entity, newest first."""
        stmt = (
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
