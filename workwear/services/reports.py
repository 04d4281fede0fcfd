"""Handover protocol rendering."""
from typing import List

from workwear.models.domain import Transaction
from workwear.models.enums import ProtocolKind


class ProtocolRenderer:
    """Turns transactions into a downloadable document."""

    media_type = "application/octet-stream"
    extension = "bin"

    def render_protocol(
        self, transactions: List[Transaction], kind: ProtocolKind, provisional: bool = False
    ) -> bytes:
        raise NotImplementedError


class TextProtocolRenderer(ProtocolRenderer):
    """Plain-text protocol, one line per handed-over item."""

    media_type = "text/plain; charset=utf-8"
    extension = "txt"

    def render_protocol(self, transactions, kind, provisional=False):
        issue = kind == ProtocolKind.ISSUE
        lines = ["ISSUE PROTOCOL" if issue else "RETURN PROTOCOL"]
        if provisional:
            lines.append("PROVISIONAL - awaiting recipient confirmation")

        employees = sorted({t.employee.full_name for t in transactions})
        lines.append(f"Employee: {', '.join(employees)}")
        lines.append("")

        for t in transactions:
            item = t.clothing_item
            if issue:
                when, condition, actor = t.issued_at, t.condition_on_issue, t.issued_by
            else:
                when, condition, actor = t.returned_at, t.condition_on_return, t.returned_by
            lines.append(
                f"{item.internal_id}\t{item.type.name}\t{item.size}\t"
                f"{condition.value}\t{when:%Y-%m-%d %H:%M}\t{actor.full_name}"
            )

        lines.append("")
        lines.append(f"Items: {len(transactions)}")
        return ("\n".join(lines) + "\n").encode("utf-8")
