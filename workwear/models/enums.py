"""Enums for the workwear system - these define the valid values for states and conditions."""
from enum import Enum


class EmployeeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    LEFT = "LEFT"


class EmployeeRole(str, Enum):
    ADMIN = "ADMIN"
    WAREHOUSE = "WAREHOUSE"
    HR = "HR"
    READ_ONLY = "READ_ONLY"


class ClothingCategory(str, Enum):
    PERSONALIZED = "PERSONALIZED"
    POOL = "POOL"


class ClothingCondition(str, Enum):
    """Physical condition of a garment. Closed set, no legacy values."""
    NEW = "NEW"
    GOOD = "GOOD"
    WORN = "WORN"
    RETIRED = "RETIRED"


class ClothingStatus(str, Enum):
    """
    Where a clothing item is in its custody cycle.

    ISSUED means handed over and awaiting the recipient's confirmation,
    IN_USE means the recipient has confirmed receipt.
    """
    AVAILABLE = "AVAILABLE"
    ISSUED = "ISSUED"
    IN_USE = "IN_USE"
    RETURNED = "RETURNED"
    RETIRED = "RETIRED"
    LOST = "LOST"


# Statuses in which an item must have a current holder
HELD_STATUSES = (ClothingStatus.ISSUED, ClothingStatus.IN_USE)


class ProtocolType(str, Enum):
    """Scope of a receipt confirmation."""
    SINGLE = "SINGLE"
    BULK_ISSUE = "BULK_ISSUE"


class ProtocolKind(str, Enum):
    """Kind of handover document that can be requested."""
    ISSUE = "issue"
    RETURN = "return"


class EventType(str, Enum):
    """Chronological events derived from a transaction."""
    ISSUE = "ISSUE"
    RETURN = "RETURN"


# Values written by older clients
LEGACY_CONDITIONS = {
    "ACCEPTABLE": ClothingCondition.WORN,
}


def normalize_condition(value) -> ClothingCondition:
    """
    Map an incoming condition value onto ClothingCondition.

    Accepts enum members and case-insensitive strings, including legacy
    values such as ACCEPTABLE. Raises ValueError for anything else.
    """
    if isinstance(value, ClothingCondition):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Invalid condition: {value!r}")
    key = value.strip().upper()
    if key in LEGACY_CONDITIONS:
        return LEGACY_CONDITIONS[key]
    try:
        return ClothingCondition(key)
    except ValueError:
        raise ValueError(f"Invalid condition: {value!r}") from None
