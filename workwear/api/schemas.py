"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from workwear.models.enums import (
    ClothingCategory,
    ClothingCondition,
    ClothingStatus,
    EmployeeRole,
    EmployeeStatus,
    EventType,
    ProtocolType,
    normalize_condition,
)


def _condition_or_none(value):
    # Legacy values (ACCEPTABLE) are normalised here, at the boundary
    if value is None:
        return None
    return normalize_condition(value)


# Employee schemas
class EmployeeCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    department: Optional[str] = None
    role: EmployeeRole = EmployeeRole.READ_ONLY
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    is_hidden: bool = False
    performed_by_id: Optional[int] = None


class EmployeeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: Optional[str]
    department: Optional[str]
    role: EmployeeRole
    status: EmployeeStatus
    is_hidden: bool
    created_at: datetime


# Clothing type / item schemas
class ClothingTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: ClothingCategory = ClothingCategory.POOL
    code_prefix: Optional[str] = Field(None, max_length=10)


class ClothingTypeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category: ClothingCategory
    code_prefix: str
    is_active: bool


class ItemGenerate(BaseModel):
    size: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1, le=100)
    category: Optional[ClothingCategory] = None
    condition: ClothingCondition = ClothingCondition.NEW
    performed_by_id: Optional[int] = None

    @field_validator("condition", mode="before")
    @classmethod
    def normalize_item_condition(cls, value):
        return normalize_condition(value)


class ClothingItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    internal_id: str
    qr_code: str
    type_id: int
    size: str
    category: ClothingCategory
    condition: ClothingCondition
    status: ClothingStatus
    current_employee_id: Optional[int]
    retired_at: Optional[datetime] = None
    retirement_reason: Optional[str] = None
    updated_at: datetime


class ItemTakeOut(BaseModel):
    """Retire an item or report it lost."""
    reason: Optional[str] = Field(None, max_length=500)
    performed_by_id: Optional[int] = None


# Transaction schemas
class IssueRequest(BaseModel):
    employee_id: int
    clothing_item_id: int
    condition_on_issue: ClothingCondition
    issued_by_id: int
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("condition_on_issue", mode="before")
    @classmethod
    def normalize_condition_on_issue(cls, value):
        return normalize_condition(value)


class BulkIssueRequest(BaseModel):
    employee_id: int
    clothing_item_ids: List[int] = Field(..., min_length=1)
    issued_by_id: int
    condition_on_issue: Optional[ClothingCondition] = None
    item_conditions: Optional[Dict[int, ClothingCondition]] = None  # Per-item overrides
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("condition_on_issue", mode="before")
    @classmethod
    def normalize_condition_on_issue(cls, value):
        return _condition_or_none(value)

    @field_validator("item_conditions", mode="before")
    @classmethod
    def normalize_item_conditions(cls, value):
        if value is None:
            return None
        return {key: normalize_condition(condition) for key, condition in value.items()}


class ReturnRequest(BaseModel):
    condition_on_return: ClothingCondition
    returned_by_id: int
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("condition_on_return", mode="before")
    @classmethod
    def normalize_condition_on_return(cls, value):
        return normalize_condition(value)


class BulkReturnLine(BaseModel):
    transaction_id: int
    condition_on_return: ClothingCondition
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("condition_on_return", mode="before")
    @classmethod
    def normalize_condition_on_return(cls, value):
        return normalize_condition(value)


class BulkReturnRequest(BaseModel):
    items: List[BulkReturnLine] = Field(..., min_length=1)
    returned_by_id: int
    general_notes: Optional[str] = Field(None, max_length=1000)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clothing_item_id: int
    employee_id: int
    issued_by_id: int
    issued_at: datetime
    condition_on_issue: ClothingCondition
    returned_by_id: Optional[int]
    returned_at: Optional[datetime]
    condition_on_return: Optional[ClothingCondition]
    notes: Optional[str]


class ConfirmationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    token: str
    employee_id: int
    protocol_type: ProtocolType
    transaction_ids: List[int]
    items_json: Optional[dict]
    expires_at: datetime
    confirmed: bool
    confirmed_at: Optional[datetime]
    confirmed_by: Optional[int]
    created_at: datetime


class BulkIssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transactions: List[TransactionResponse]
    confirmation: ConfirmationResponse


class ConfirmRequest(BaseModel):
    confirmed_by_id: int


class HistoryEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: EventType
    transaction_id: int
    clothing_item_id: int
    employee_id: int
    actor_id: Optional[int]
    timestamp: datetime
    condition: ClothingCondition
    notes: Optional[str]


class StatsResponse(BaseModel):
    total: int
    open: int
    returned: int
    unconfirmed: int
    recent: List[TransactionResponse]


class ProtocolPermissionResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: str
    action: str
    actor_id: Optional[str]
    diff: Optional[dict]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


# Error response
class ErrorResponse(BaseModel):
    """Response when an operation is refused."""
    message: str
    failures: List[dict] = []
