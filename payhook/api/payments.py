from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ..engine import RedisExecutionEngine
from ..lifecycle import CancelIntent, DomainStatus, PaymentService
from ..reconcile import delete_all, list_active
from ..schemas import (
    DeleteAllResponse,
    PaymentActionResponse,
    PaymentCreate,
    PaymentCreated,
    PaymentResultOut,
    PaymentStatusResponse,
    PaymentSummary,
)

router = APIRouter()


def get_engine(request: Request) -> RedisExecutionEngine:
    return request.app.state.engine


def get_service(engine: RedisExecutionEngine = Depends(get_engine)) -> PaymentService:
    return PaymentService(engine)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@router.post("/payment", response_model=PaymentCreated, status_code=201)
async def create_payment(body: PaymentCreate, service: PaymentService = Depends(get_service)):
    payment_id = await service.create(body.webhook_url, sleep=body.sleep, data=body.data)
    return PaymentCreated(id=payment_id)


@router.get("/payment/{payment_id}", response_model=PaymentStatusResponse, response_model_exclude_none=True)
async def get_payment(payment_id: str, service: PaymentService = Depends(get_service)):
    view = await service.get_status(payment_id)
    if view.status is DomainStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Payment not found")

    result = PaymentResultOut(**view.result.to_dict()) if view.result else None
    return PaymentStatusResponse(
        id=view.payment_id,
        status=view.status.value,
        run_id=view.run_id,
        workflow_id=view.workflow_id,
        start_time=_isoformat(view.start_time),
        close_time=_isoformat(view.close_time),
        result=result,
    )


async def _act(payment_id: str, intent: CancelIntent, service: PaymentService) -> PaymentActionResponse:
    outcome = await service.cancel(payment_id, intent)
    message = "Payment was already completed" if outcome.already_finished else None
    return PaymentActionResponse(status=outcome.status, message=message)


@router.post("/payment/{payment_id}/cancel", response_model=PaymentActionResponse, response_model_exclude_none=True)
async def cancel_payment(payment_id: str, service: PaymentService = Depends(get_service)):
    return await _act(payment_id, CancelIntent.CANCEL, service)


@router.post("/payment/{payment_id}/delete", response_model=PaymentActionResponse, response_model_exclude_none=True)
async def delete_payment(payment_id: str, service: PaymentService = Depends(get_service)):
    return await _act(payment_id, CancelIntent.DELETE, service)


@router.post("/payments/delete-all", response_model=DeleteAllResponse, response_model_exclude_none=True)
async def delete_all_payments(engine: RedisExecutionEngine = Depends(get_engine)):
    report = await delete_all(engine)
    return DeleteAllResponse(**report.to_response())


@router.get("/payments", response_model=List[PaymentSummary])
async def list_payments(engine: RedisExecutionEngine = Depends(get_engine)):
    return [
        PaymentSummary(
            id=payment.id,
            workflow_id=payment.workflow_id,
            run_id=payment.run_id,
            status=payment.status.value,
            start_time=_isoformat(payment.start_time) or "",
        )
        for payment in await list_active(engine)
    ]
