"""
When may a handover protocol be produced?

Return protocols: as soon as every transaction is closed - the return was
witnessed by staff. Issue protocols: only after the recipient confirmed
receipt. The single exception is `provisional_after_bulk_issue`, which lets
staff print a provisional copy right after a bulk handover and nothing else.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session

from workwear.config import Settings, settings as default_settings
from workwear.models.domain import Confirmation, Transaction
from workwear.models.enums import ProtocolKind, ProtocolType
from workwear.services.confirmation import ConfirmationGate
from workwear.services.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    failure,
)
from workwear.services.reports import ProtocolRenderer, TextProtocolRenderer

logger = logging.getLogger(__name__)

AWAITING_CONFIRMATION = "awaiting recipient confirmation"


class ProtocolPolicy:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        renderer: Optional[ProtocolRenderer] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.gate = ConfirmationGate(db, self.settings)
        self.renderer = renderer or TextProtocolRenderer()

    def check(
        self,
        transaction_ids: Iterable[int],
        kind,
        provisional_after_bulk_issue: bool = False,
    ) -> List[Transaction]:
        """
        Raise if the protocol may not be generated now; return the transactions otherwise.

        Refusals:
        - unknown transactions -> NotFoundError
        - return protocol with an open transaction -> ConflictError
        - issue protocol without confirmed receipt -> ForbiddenError
        """
        ids = list(dict.fromkeys(transaction_ids or []))
        if not ids:
            raise ValidationError("transaction_ids must contain at least one entry")
        try:
            kind = ProtocolKind(kind)
        except ValueError:
            raise ValidationError('type must be either "issue" or "return"') from None

        found = {
            t.id: t
            for t in self.db.execute(
                select(Transaction).where(Transaction.id.in_(ids))
            ).scalars().all()
        }
        missing = [tid for tid in ids if tid not in found]
        if missing:
            raise NotFoundError(
                f"Transaction {', '.join(str(m) for m in missing)} not found",
                failures=[failure(m, "NOT_FOUND", "transaction not found") for m in missing],
            )
        transactions = [found[tid] for tid in ids]

        if kind == ProtocolKind.RETURN:
            still_open = [t.id for t in transactions if t.is_open]
            if still_open:
                raise ConflictError(
                    "Return protocol requires returned items",
                    failures=[failure(tid, "NOT_RETURNED", "item not returned yet") for tid in still_open],
                )
            return transactions

        confirmations = self.gate.find_for_transactions(ids)
        confirmed_ids = set()
        for confirmation in confirmations:
            if confirmation.confirmed:
                confirmed_ids.update(confirmation.transaction_ids)
        unconfirmed = [tid for tid in ids if tid not in confirmed_ids]
        if not unconfirmed:
            return transactions

        if provisional_after_bulk_issue and self._fresh_bulk_issue(transactions, confirmations):
            logger.info("Provisional issue protocol allowed for transactions %s", ids)
            return transactions

        raise ForbiddenError(
            AWAITING_CONFIRMATION,
            failures=[failure(tid, "AWAITING_CONFIRMATION", AWAITING_CONFIRMATION) for tid in unconfirmed],
        )

    def can_generate_protocol(
        self,
        transaction_ids: Iterable[int],
        kind,
        provisional_after_bulk_issue: bool = False,
    ) -> bool:
        try:
            self.check(transaction_ids, kind, provisional_after_bulk_issue)
        except (ForbiddenError, ConflictError):
            return False
        return True

    def render(
        self,
        transaction_ids: Iterable[int],
        kind,
        provisional_after_bulk_issue: bool = False,
    ) -> bytes:
        transactions = self.check(transaction_ids, kind, provisional_after_bulk_issue)
        kind = ProtocolKind(kind)
        provisional = kind == ProtocolKind.ISSUE and not all(
            any(c.confirmed for c in t.confirmations) for t in transactions
        )
        return self.renderer.render_protocol(transactions, kind, provisional=provisional)

    def _fresh_bulk_issue(
        self, transactions: List[Transaction], confirmations: List[Confirmation]
    ) -> bool:
        """
        True only right after a bulk handover: every transaction still open and
        covered by one pending BULK_ISSUE confirmation inside the print window.
        """
        if not all(t.is_open for t in transactions):
            return False
        now = datetime.utcnow()
        window = timedelta(minutes=self.settings.provisional_protocol_window_minutes)
        wanted = {t.id for t in transactions}
        for confirmation in confirmations:
            if (
                confirmation.protocol_type == ProtocolType.BULK_ISSUE
                and not confirmation.confirmed
                and not confirmation.is_expired(now)
                and now - confirmation.created_at <= window
                and wanted <= set(confirmation.transaction_ids)
            ):
                return True
        return False
