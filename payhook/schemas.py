from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class PaymentCreate(BaseModel):
    webhook_url: str = ""
    sleep: Optional[int] = None  # seconds; missing or <= 0 falls back to the default delay
    data: Optional[Dict[str, Any]] = None


class PaymentCreated(BaseModel):
    id: str


class PaymentResultOut(BaseModel):
    id: str
    webhook_sent: bool
    webhook_response: Optional[str] = None
    error: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    id: str
    status: str
    run_id: str
    workflow_id: str
    start_time: Optional[str] = None
    close_time: Optional[str] = None
    result: Optional[PaymentResultOut] = None


class PaymentActionResponse(BaseModel):
    status: str
    message: Optional[str] = None


class PaymentSummary(BaseModel):
    id: str
    workflow_id: str
    run_id: str
    status: str
    start_time: str


class DeleteAllResponse(BaseModel):
    status: str
    count: int
    terminated: int
    already_terminated: int
    completed_filtered: int
    failed: Optional[int] = None
    failed_ids: Optional[List[str]] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    has_delete: bool = True
