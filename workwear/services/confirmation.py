"""
Confirmation gate: recipients acknowledge receipt of issued items.

An issuance is only considered confirmed once the receiving employee has
confirmed the token-addressed confirmation covering it. Delivering the link
(email) is not done here.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session

from workwear.config import Settings, settings as default_settings
from workwear.models.audit import AuditAction
from workwear.models.domain import Confirmation, Employee, Transaction, confirmation_transactions
from workwear.models.enums import ClothingStatus, ProtocolType
from workwear.services.audit import AuditLog, change
from workwear.services.concurrency import atomic, lock_for_update
from workwear.services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


class ConfirmationGate:
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings

    def create_confirmation(
        self,
        employee: Employee,
        transactions: List[Transaction],
        protocol_type: ProtocolType,
    ) -> Confirmation:
        """
        Register a pending confirmation for freshly issued transactions.

        Runs inside the caller's atomic scope and does not commit.
        """
        now = datetime.utcnow()
        confirmation = Confirmation(
            token=secrets.token_hex(32),
            employee_id=employee.id,
            protocol_type=protocol_type,
            items_json={"items": [self._item_summary(t) for t in transactions]},
            expires_at=now + timedelta(days=self.settings.confirmation_ttl_days),
            confirmed=False,
            created_at=now,
        )
        confirmation.transactions = list(transactions)
        self.db.add(confirmation)
        return confirmation

    def get_confirmation(self, token: str) -> Confirmation:
        confirmation = self._by_token(token)
        if confirmation.is_expired():
            raise ExpiredError("Confirmation link has expired")
        return confirmation

    def list_confirmations(
        self,
        employee_id: Optional[int] = None,
        confirmed: Optional[bool] = None,
    ) -> List[Confirmation]:
        stmt = select(Confirmation)
        if employee_id is not None:
            stmt = stmt.where(Confirmation.employee_id == employee_id)
        if confirmed is not None:
            stmt = stmt.where(Confirmation.confirmed == confirmed)
        stmt = stmt.order_by(Confirmation.created_at.desc(), Confirmation.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def find_for_transactions(self, transaction_ids: Iterable[int]) -> List[Confirmation]:
        """All confirmations covering any of the given transactions, newest first."""
        ids = list(transaction_ids)
        if not ids:
            return []
        stmt = (
            select(Confirmation)
            .join(confirmation_transactions)
            .where(confirmation_transactions.c.transaction_id.in_(ids))
            .order_by(Confirmation.created_at.desc(), Confirmation.id.desc())
        )
        return list(self.db.execute(stmt).scalars().unique().all())

    def confirm(
        self,
        token: str,
        confirmed_by_employee_id: int,
        request_meta: Optional[dict] = None,
    ) -> Confirmation:
        """
        Record that the recipient confirmed receipt.

        Only the employee the items were issued to may confirm. Items still
        ISSUED to that employee move to IN_USE.
        """
        request_meta = request_meta or {}
        with atomic(self.db, "confirm receipt"):
            confirmation = self._by_token(token, for_update=True)
            if confirmation.is_expired():
                raise ExpiredError("Confirmation link has expired")
            if confirmation.confirmed:
                raise ConflictError(
                    f"Already confirmed at {confirmation.confirmed_at.isoformat()}"
                )
            if confirmation.employee_id != confirmed_by_employee_id:
                raise ForbiddenError("Only the recipient can confirm this receipt")

            now = datetime.utcnow()
            confirmation.confirmed = True
            confirmation.confirmed_at = now
            confirmation.confirmed_by = confirmed_by_employee_id
            confirmation.ip_address = request_meta.get("ip_address")
            confirmation.user_agent = request_meta.get("user_agent")

            activated = []
            for transaction in confirmation.transactions:
                item = transaction.clothing_item
                if (
                    transaction.is_open
                    and item.status == ClothingStatus.ISSUED
                    and item.current_employee_id == transaction.employee_id
                ):
                    item.status = ClothingStatus.IN_USE
                    activated.append(item.id)

            AuditLog(self.db).record(
                "Confirmation", confirmation.id, AuditAction.RECEIPT_CONFIRMED,
                confirmed_by_employee_id,
                diff={
                    "confirmed": change(False, True),
                    "protocol_type": confirmation.protocol_type.value,
                    "transaction_ids": confirmation.transaction_ids,
                    "items_in_use": activated,
                },
                request_meta=request_meta,
            )

        logger.info(
            "Confirmation %s confirmed by employee %s (%d items in use)",
            confirmation.id, confirmed_by_employee_id, len(activated),
        )
        return confirmation

    def _by_token(self, token: str, for_update: bool = False) -> Confirmation:
        stmt = select(Confirmation).where(Confirmation.token == token)
        if for_update:
            stmt = lock_for_update(stmt)
        confirmation = self.db.execute(stmt).scalar_one_or_none()
        if confirmation is None:
            raise NotFoundError("Confirmation not found")
        return confirmation

    @staticmethod
    def _item_summary(transaction: Transaction) -> dict:
        item = transaction.clothing_item
        return {
            "transaction_id": transaction.id,
            "internal_id": item.internal_id,
            "name": item.type.name if item.type else None,
            "size": item.size,
            "category": item.category.value,
        }
