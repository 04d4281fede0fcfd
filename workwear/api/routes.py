"""API routes for the clothing issue/return workflow."""
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional

from workwear.database import get_db
from workwear.models.enums import ProtocolKind
from workwear.services.audit import AuditLog
from workwear.services.confirmation import ConfirmationGate
from workwear.services.directory import EmployeeDirectory
from workwear.services.errors import LifecycleError
from workwear.services.inventory import Inventory
from workwear.services.lifecycle import TransactionLifecycle
from workwear.services.protocol import ProtocolPolicy
from workwear.api.schemas import (
    AuditEventResponse,
    BulkIssueRequest,
    BulkIssueResponse,
    BulkReturnRequest,
    ClothingItemResponse,
    ClothingTypeCreate,
    ClothingTypeResponse,
    ConfirmRequest,
    ConfirmationResponse,
    EmployeeCreate,
    EmployeeResponse,
    ErrorResponse,
    HistoryEventResponse,
    IssueRequest,
    ItemGenerate,
    ItemTakeOut,
    ProtocolPermissionResponse,
    ReturnRequest,
    StatsResponse,
    TransactionResponse,
)

router = APIRouter()

REFUSALS = {
    403: {"model": ErrorResponse, "description": "Refusal - awaiting recipient confirmation"},
    404: {"model": ErrorResponse, "description": "Referenced entity not found"},
    409: {"model": ErrorResponse, "description": "Refusal - current state forbids the operation"},
    422: {"model": ErrorResponse, "description": "Invalid input"},
}


def _refuse(error: LifecycleError) -> HTTPException:
    """Report a service refusal with its status and every per-item failure."""
    return HTTPException(status_code=error.status_code, detail=error.to_detail())


def _request_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _parse_ids(raw: str) -> List[int]:
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "transaction_ids must be comma-separated integers", "failures": []},
        )


# Employee endpoints
@router.post("/employees", response_model=EmployeeResponse, status_code=status.HTTP_201_CREATED)
def create_employee(data: EmployeeCreate, db: Session = Depends(get_db)):
    """Mirror an employee from the directory."""
    try:
        return EmployeeDirectory(db).create_employee(
            first_name=data.first_name,
            last_name=data.last_name,
            email=data.email,
            department=data.department,
            role=data.role,
            status=data.status,
            is_hidden=data.is_hidden,
            performed_by=data.performed_by_id,
        )
    except LifecycleError as e:
        raise _refuse(e)


@router.get("/employees/{employee_id}", response_model=EmployeeResponse, responses=REFUSALS)
def get_employee(employee_id: int, db: Session = Depends(get_db)):
    try:
        return EmployeeDirectory(db).get_employee(employee_id)
    except LifecycleError as e:
        raise _refuse(e)


# Clothing type / item endpoints
@router.post("/clothing-types", response_model=ClothingTypeResponse, status_code=status.HTTP_201_CREATED)
def create_clothing_type(data: ClothingTypeCreate, db: Session = Depends(get_db)):
    try:
        return Inventory(db).create_type(data.name, data.category, data.code_prefix)
    except LifecycleError as e:
        raise _refuse(e)


@router.post(
    "/clothing-types/{type_id}/items",
    response_model=List[ClothingItemResponse],
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def generate_items(type_id: int, data: ItemGenerate, db: Session = Depends(get_db)):
    """Create a batch of AVAILABLE items of one type and size."""
    try:
        return Inventory(db).generate_items(
            type_id,
            size=data.size,
            quantity=data.quantity,
            category=data.category,
            condition=data.condition,
            performed_by=data.performed_by_id,
        )
    except LifecycleError as e:
        raise _refuse(e)


@router.get("/clothing-items/qr/{qr_code}", response_model=ClothingItemResponse, responses=REFUSALS)
def get_clothing_item_by_qr(qr_code: str, db: Session = Depends(get_db)):
    """Resolve a scanned QR code to its item."""
    try:
        return Inventory(db).get_item_by_qr(qr_code)
    except LifecycleError as e:
        raise _refuse(e)


@router.get("/clothing-items/{item_id}", response_model=ClothingItemResponse, responses=REFUSALS)
def get_clothing_item(item_id: int, db: Session = Depends(get_db)):
    try:
        return Inventory(db).get_item(item_id)
    except LifecycleError as e:
        raise _refuse(e)


@router.get(
    "/clothing-items/{item_id}/history",
    response_model=List[HistoryEventResponse],
    responses=REFUSALS,
)
def get_item_history(item_id: int, db: Session = Depends(get_db)):
    """Issue and return events of an item, newest first."""
    try:
        events = TransactionLifecycle(db).get_history(item_id)
    except LifecycleError as e:
        raise _refuse(e)
    return [HistoryEventResponse.model_validate(event) for event in events]


@router.get(
    "/clothing-items/{item_id}/audit-log",
    response_model=List[AuditEventResponse],
    responses=REFUSALS,
)
def get_item_audit_log(item_id: int, limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    """Audit entries of an item, newest first."""
    try:
        Inventory(db).get_item(item_id)
    except LifecycleError as e:
        raise _refuse(e)
    return AuditLog(db).entries_for("ClothingItem", item_id, limit=limit)


@router.post("/clothing-items/{item_id}/retire", response_model=ClothingItemResponse, responses=REFUSALS)
def retire_item(item_id: int, data: ItemTakeOut, db: Session = Depends(get_db)):
    """
    Retire an item for good.

    WILL REFUSE if the item is still issued to an employee (409).
    """
    try:
        return Inventory(db).retire_item(item_id, reason=data.reason, performed_by=data.performed_by_id)
    except LifecycleError as e:
        raise _refuse(e)


@router.post("/clothing-items/{item_id}/lost", response_model=ClothingItemResponse, responses=REFUSALS)
def mark_item_lost(item_id: int, data: ItemTakeOut, db: Session = Depends(get_db)):
    try:
        return Inventory(db).mark_lost(item_id, reason=data.reason, performed_by=data.performed_by_id)
    except LifecycleError as e:
        raise _refuse(e)


# Transaction endpoints
@router.post(
    "/transactions/issue",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def issue(data: IssueRequest, request: Request, db: Session = Depends(get_db)):
    """
    Issue one item to an employee.

    WILL REFUSE if:
    - The item is not AVAILABLE (409)
    - The employee is not active (422)
    """
    try:
        return TransactionLifecycle(db).issue(
            employee_id=data.employee_id,
            clothing_item_id=data.clothing_item_id,
            condition_on_issue=data.condition_on_issue,
            issued_by_id=data.issued_by_id,
            notes=data.notes,
            request_meta=_request_meta(request),
        )
    except LifecycleError as e:
        raise _refuse(e)


@router.post(
    "/transactions/bulk-issue",
    response_model=BulkIssueResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def bulk_issue(data: BulkIssueRequest, request: Request, db: Session = Depends(get_db)):
    """
    Issue several items to one employee as one handover.

    The whole batch is refused if any item cannot be issued; the refusal
    lists every failing item.
    """
    try:
        result = TransactionLifecycle(db).bulk_issue(
            employee_id=data.employee_id,
            clothing_item_ids=data.clothing_item_ids,
            issued_by_id=data.issued_by_id,
            condition_on_issue=data.condition_on_issue,
            item_conditions=data.item_conditions,
            notes=data.notes,
            request_meta=_request_meta(request),
        )
    except LifecycleError as e:
        raise _refuse(e)
    return BulkIssueResponse(
        transactions=[TransactionResponse.model_validate(t) for t in result.transactions],
        confirmation=ConfirmationResponse.model_validate(result.confirmation),
    )


@router.post("/transactions/bulk-return", response_model=List[TransactionResponse], responses=REFUSALS)
def bulk_return(data: BulkReturnRequest, request: Request, db: Session = Depends(get_db)):
    """Return several items of one employee, each with its own condition."""
    try:
        return TransactionLifecycle(db).bulk_return(
            items=data.items,
            returned_by_id=data.returned_by_id,
            general_notes=data.general_notes,
            request_meta=_request_meta(request),
        )
    except LifecycleError as e:
        raise _refuse(e)


@router.post("/transactions/{transaction_id}/return", response_model=TransactionResponse, responses=REFUSALS)
def return_item(transaction_id: int, data: ReturnRequest, request: Request, db: Session = Depends(get_db)):
    """
    Close an open transaction.
    An item returned in RETIRED condition is retired instead of made available.
    """
    try:
        return TransactionLifecycle(db).return_item(
            transaction_id,
            condition_on_return=data.condition_on_return,
            returned_by_id=data.returned_by_id,
            notes=data.notes,
            request_meta=_request_meta(request),
        )
    except LifecycleError as e:
        raise _refuse(e)


@router.get("/transactions", response_model=List[TransactionResponse])
def list_transactions(
    employee_id: Optional[int] = None,
    clothing_item_id: Optional[int] = None,
    returned: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    return TransactionLifecycle(db).list_transactions(
        employee_id=employee_id, clothing_item_id=clothing_item_id, returned=returned
    )


@router.get("/transactions/pending", response_model=List[TransactionResponse])
def pending_returns(employee_id: Optional[int] = None, db: Session = Depends(get_db)):
    """Items still out with employees."""
    return TransactionLifecycle(db).pending_returns(employee_id)


@router.get("/transactions/pending-issues", response_model=List[TransactionResponse])
def pending_issues(employee_id: Optional[int] = None, db: Session = Depends(get_db)):
    """Issues whose recipient has not confirmed receipt yet."""
    return TransactionLifecycle(db).pending_issues(employee_id)


@router.get("/transactions/stats", response_model=StatsResponse)
def transaction_stats(employee_id: Optional[int] = None, db: Session = Depends(get_db)):
    stats = TransactionLifecycle(db).stats(employee_id)
    return StatsResponse(
        total=stats["total"],
        open=stats["open"],
        returned=stats["returned"],
        unconfirmed=stats["unconfirmed"],
        recent=[TransactionResponse.model_validate(t) for t in stats["recent"]],
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse, responses=REFUSALS)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionLifecycle(db).get_transaction(transaction_id)
    except LifecycleError as e:
        raise _refuse(e)


# Confirmation endpoints
@router.get("/confirmations", response_model=List[ConfirmationResponse])
def list_confirmations(
    employee_id: Optional[int] = None,
    confirmed: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    return ConfirmationGate(db).list_confirmations(employee_id=employee_id, confirmed=confirmed)


@router.get("/confirmations/{token}", response_model=ConfirmationResponse, responses=REFUSALS)
def get_confirmation(token: str, db: Session = Depends(get_db)):
    try:
        return ConfirmationGate(db).get_confirmation(token)
    except LifecycleError as e:
        raise _refuse(e)


@router.post("/confirmations/{token}/confirm", response_model=ConfirmationResponse, responses=REFUSALS)
def confirm_receipt(token: str, data: ConfirmRequest, request: Request, db: Session = Depends(get_db)):
    """The recipient confirms receipt; their items move to IN_USE."""
    try:
        return ConfirmationGate(db).confirm(
            token, data.confirmed_by_id, request_meta=_request_meta(request)
        )
    except LifecycleError as e:
        raise _refuse(e)


# Protocol endpoints
@router.get("/protocols/permission", response_model=ProtocolPermissionResponse, responses=REFUSALS)
def protocol_permission(
    transaction_ids: str,
    type: ProtocolKind = Query(...),
    provisional_after_bulk_issue: bool = False,
    db: Session = Depends(get_db),
):
    """Whether the protocol may be generated now, and why not."""
    policy = ProtocolPolicy(db)
    try:
        policy.check(_parse_ids(transaction_ids), type, provisional_after_bulk_issue)
    except LifecycleError as e:
        if e.status_code in (403, 409):
            return ProtocolPermissionResponse(allowed=False, reason=e.message)
        raise _refuse(e)
    return ProtocolPermissionResponse(allowed=True)


@router.get("/protocols", responses=REFUSALS)
def download_protocol(
    transaction_ids: str,
    type: ProtocolKind = Query(...),
    provisional_after_bulk_issue: bool = False,
    db: Session = Depends(get_db),
):
    """
    Download the handover protocol.
    Issue protocols are refused (403) until the recipient confirmed receipt.
    """
    ids = _parse_ids(transaction_ids)
    policy = ProtocolPolicy(db)
    try:
        document = policy.render(ids, type, provisional_after_bulk_issue)
    except LifecycleError as e:
        raise _refuse(e)

    filename = f"{type.value}-protocol-{'-'.join(str(i) for i in ids)}.{policy.renderer.extension}"
    return Response(
        content=document,
        media_type=policy.renderer.media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
