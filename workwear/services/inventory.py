"""Clothing types and type-based generation of individual items."""
import logging
import secrets
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session

from workwear.models.audit import AuditAction
from workwear.models.domain import ClothingItem, ClothingType, Transaction
from workwear.models.enums import ClothingCategory, ClothingCondition, ClothingStatus, HELD_STATUSES
from workwear.services.audit import AuditLog, change
from workwear.services.concurrency import atomic, lock_for_update
from workwear.services.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_GENERATED_ITEMS = 100


class Inventory:
    def __init__(self, db: Session):
        self.db = db

    def create_type(
        self,
        name: str,
        category: ClothingCategory = ClothingCategory.POOL,
        code_prefix: Optional[str] = None,
    ) -> ClothingType:
        prefix = (code_prefix or name[:3]).strip().upper()
        if not prefix:
            raise ValidationError("code_prefix must not be empty")
        clothing_type = ClothingType(name=name, category=category, code_prefix=prefix)
        with atomic(self.db, "create clothing type"):
            self.db.add(clothing_type)
        self.db.refresh(clothing_type)
        return clothing_type

    def get_type(self, type_id: int) -> ClothingType:
        clothing_type = self.db.get(ClothingType, type_id)
        if clothing_type is None:
            raise NotFoundError(f"Clothing type {type_id} not found")
        return clothing_type

    def get_item(self, item_id: int) -> ClothingItem:
        item = self.db.get(ClothingItem, item_id)
        if item is None:
            raise NotFoundError(f"Clothing item {item_id} not found")
        return item

    def get_item_by_qr(self, qr_code: str) -> ClothingItem:
        item = self.db.execute(
            select(ClothingItem).where(ClothingItem.qr_code == qr_code)
        ).scalar_one_or_none()
        if item is None:
            raise NotFoundError("No clothing item with this QR code")
        return item

    def retire_item(self, item_id: int, reason: Optional[str] = None, performed_by=None) -> ClothingItem:
        """
        Take an item out of circulation for good.

        Items still held by an employee must be returned first.
        """
        return self._take_out(
            item_id, ClothingStatus.RETIRED, AuditAction.RETIRE,
            reason or "Retired by user", performed_by,
        )

    def mark_lost(self, item_id: int, reason: Optional[str] = None, performed_by=None) -> ClothingItem:
        return self._take_out(
            item_id, ClothingStatus.LOST, AuditAction.LOST,
            reason or "Reported lost", performed_by,
        )

    def _take_out(self, item_id, new_status, action, reason, performed_by) -> ClothingItem:
        with atomic(self.db, f"mark item {new_status.value.lower()}"):
            item = self.db.execute(
                lock_for_update(select(ClothingItem).where(ClothingItem.id == item_id))
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if item is None:
                raise NotFoundError(f"Clothing item {item_id} not found")

            open_transaction = self.db.execute(
                select(Transaction.id).where(
                    Transaction.clothing_item_id == item_id,
                    Transaction.returned_at.is_(None),
                )
            ).scalar_one_or_none()
            if open_transaction is not None or item.status in HELD_STATUSES:
                raise ConflictError(
                    f"Clothing item {item.internal_id} is still issued; return it first"
                )
            if item.status == new_status or item.status == ClothingStatus.RETIRED:
                raise ConflictError(
                    f"Clothing item {item.internal_id} is already {item.status.value}"
                )

            before_status = item.status
            item.status = new_status
            if new_status == ClothingStatus.RETIRED:
                item.condition = ClothingCondition.RETIRED
                item.retired_at = datetime.utcnow()
                item.retirement_reason = reason
            self.db.flush()

            AuditLog(self.db).record(
                "ClothingItem", item.id, action, performed_by,
                diff={
                    "status": change(before_status, new_status),
                    "internal_id": item.internal_id,
                    "reason": reason,
                },
            )

        logger.info("Clothing item %s marked %s: %s", item_id, new_status.value, reason)
        return item

    def generate_items(
        self,
        type_id: int,
        size: str,
        quantity: int,
        category: Optional[ClothingCategory] = None,
        condition: ClothingCondition = ClothingCondition.NEW,
        performed_by=None,
    ) -> List[ClothingItem]:
        """
        Create `quantity` new AVAILABLE items of one type and size.

        Internal ids continue the type's prefix sequence: JAC-00001, JAC-00002 ...
        """
        if quantity < 1 or quantity > MAX_GENERATED_ITEMS:
            raise ValidationError(f"Quantity must be between 1 and {MAX_GENERATED_ITEMS}")
        if not size:
            raise ValidationError("size is required")

        clothing_type = self.get_type(type_id)
        audit = AuditLog(self.db)
        items = []
        with atomic(self.db, "generate clothing items"):
            next_number = self._next_sequence(clothing_type.code_prefix)
            for offset in range(quantity):
                item = ClothingItem(
                    internal_id=f"{clothing_type.code_prefix}-{next_number + offset:05d}",
                    qr_code=secrets.token_hex(16),
                    type_id=clothing_type.id,
                    size=size,
                    category=category or clothing_type.category,
                    condition=condition,
                    status=ClothingStatus.AVAILABLE,
                )
                self.db.add(item)
                items.append(item)
            self.db.flush()
            for item in items:
                audit.record(
                    "ClothingItem", item.id, AuditAction.ITEMS_GENERATED, performed_by,
                    diff={"internal_id": item.internal_id, "type": clothing_type.name,
                          "size": size, "status": ClothingStatus.AVAILABLE.value},
                )

        logger.info("Generated %d items of type %s", len(items), clothing_type.name)
        return items

    def _next_sequence(self, prefix: str) -> int:
        rows = self.db.execute(
            select(ClothingItem.internal_id).where(ClothingItem.internal_id.like(f"{prefix}-%"))
        ).scalars().all()
        highest = 0
        for internal_id in rows:
            raw = internal_id[len(prefix) + 1:]
            if raw.isdigit():
                highest = max(highest, int(raw))
        return highest + 1
