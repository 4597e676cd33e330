import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from procurement.config import settings
from procurement.database import get_db
from procurement.errors import ErrorCode
from procurement.middleware.auth import get_caller_context
from procurement.repositories.sql import SqlPurchaseOrderRepository
from procurement.schemas.context import CallerContext
from procurement.schemas.purchase_order import (
    ApproveRequest,
    CancelRequest,
    PurchaseOrderCreate,
    PurchaseOrderUpdate,
    ReceiveRequest,
    RejectRequest,
    TransitionRequest,
)
from procurement.services.audit_service import SqlAuditRecorder
from procurement.services.inventory_service import SqlInventoryService
from procurement.services.lock_manager import LockManager
from procurement.services.purchase_order_service import (
    OperationResult,
    PurchaseOrderService,
)

logger = structlog.get_logger()
router = APIRouter()

# Order and product locks are shared by every request served by this process.
_locks = LockManager(settings.LOCK_TIMEOUT_SECONDS)


def get_purchase_order_service(db: AsyncSession = Depends(get_db)) -> PurchaseOrderService:
    return PurchaseOrderService(
        repository=SqlPurchaseOrderRepository(db),
        inventory=SqlInventoryService(db, _locks),
        audit=SqlAuditRecorder(db),
        locks=_locks,
    )


def _failure_status(result: OperationResult) -> int:
    if ErrorCode.AUTHENTICATION_REQUIRED.value in result.error_codes:
        return status.HTTP_401_UNAUTHORIZED
    if result.denied:
        return status.HTTP_403_FORBIDDEN
    return status.HTTP_422_UNPROCESSABLE_ENTITY


def _to_response(result: OperationResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    # Failures are returned rather than raised so the denial audit rows commit.
    if not result.success:
        first = result.errors[0] if result.errors else None
        return JSONResponse(
            status_code=_failure_status(result),
            content={
                "error": {
                    "code": result.error_codes[0] if first else "OPERATION_FAILED",
                    "message": first.message if first else "Operation failed",
                    "details": [e.to_dict() for e in result.errors],
                    "warnings": [w.to_dict() for w in result.warnings],
                }
            },
        )

    body: dict = {
        "data": result.order.model_dump(mode="json") if result.order else None,
        "warnings": [w.to_dict() for w in result.warnings],
    }
    if result.transitions:
        body["transitions"] = [t.model_dump(mode="json") for t in result.transitions]
    if result.receiving_record is not None:
        body["receiving_record"] = result.receiving_record.model_dump(mode="json")
        body["stock_adjustments"] = [a.model_dump(mode="json") for a in result.stock_adjustments]
    if result.history is not None:
        history = result.history
        body["history"] = {
            "transitions": [t.model_dump(mode="json") for t in history.transitions],
            "receiving_records": [r.model_dump(mode="json") for r in history.receiving_records],
            "approval_records": [a.model_dump(mode="json") for a in history.approval_records],
            "audit_events": [e.model_dump(mode="json") for e in history.audit_events],
        }
    return JSONResponse(status_code=success_status, content=body)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    body: PurchaseOrderCreate,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    result = await service.create_purchase_order(context, body)
    return _to_response(result, status.HTTP_201_CREATED)


@router.get("/transitions/{po_status}")
async def get_valid_transitions(po_status: str):
    try:
        transitions = PurchaseOrderService.get_valid_transitions(po_status)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_STATUS", "message": f"Unknown status '{po_status}'"},
        )
    return {"status": po_status, "valid_transitions": transitions}


@router.get("/{po_id}")
async def get_purchase_order(
    po_id: uuid.UUID,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    return _to_response(await service.get_purchase_order(context, po_id))


@router.patch("/{po_id}")
async def update_purchase_order(
    po_id: uuid.UUID,
    body: PurchaseOrderUpdate,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    return _to_response(await service.update_purchase_order(context, po_id, body))


@router.post("/{po_id}/submit")
async def submit_purchase_order(
    po_id: uuid.UUID,
    body: Optional[TransitionRequest] = None,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    body = body or TransitionRequest()
    return _to_response(await service.submit_for_approval(context, po_id, body.reason))


@router.post("/{po_id}/approve")
async def approve_purchase_order(
    po_id: uuid.UUID,
    body: Optional[ApproveRequest] = None,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    body = body or ApproveRequest()
    return _to_response(await service.approve(context, po_id, body.notes))


@router.post("/{po_id}/reject")
async def reject_purchase_order(
    po_id: uuid.UUID,
    body: RejectRequest,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    return _to_response(await service.reject(context, po_id, body.reason))


@router.post("/{po_id}/send")
async def send_purchase_order(
    po_id: uuid.UUID,
    body: Optional[TransitionRequest] = None,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    body = body or TransitionRequest()
    return _to_response(await service.send_to_supplier(context, po_id, body.reason))


@router.post("/{po_id}/receive")
async def receive_purchase_order(
    po_id: uuid.UUID,
    body: Optional[ReceiveRequest] = None,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    """Record a goods receipt. An empty body receives every pending quantity."""
    body = body or ReceiveRequest()
    result = await service.receive(context, po_id, body.items, body.notes)
    return _to_response(result)


@router.post("/{po_id}/cancel")
async def cancel_purchase_order(
    po_id: uuid.UUID,
    body: Optional[CancelRequest] = None,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    body = body or CancelRequest()
    return _to_response(await service.cancel(context, po_id, body.reason))


@router.post("/{po_id}/close")
async def close_purchase_order(
    po_id: uuid.UUID,
    body: Optional[TransitionRequest] = None,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    body = body or TransitionRequest()
    return _to_response(await service.close(context, po_id, body.reason))


@router.get("/{po_id}/history")
async def get_purchase_order_history(
    po_id: uuid.UUID,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    return _to_response(await service.get_history(context, po_id))


@router.get("/{po_id}/actions")
async def get_purchase_order_actions(
    po_id: uuid.UUID,
    context: Optional[CallerContext] = Depends(get_caller_context),
    service: PurchaseOrderService = Depends(get_purchase_order_service),
):
    actions = await service.get_user_actions(context, po_id)
    return {"po_id": str(po_id), "actions": actions}
