from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime

class CreateOrderRequest(BaseModel):
    provider: Optional[str] = None

class CreateOrderResponse(BaseModel):
    order_id: str
    provider: str
    amount_minor_units: int
    currency: str
    created_at: datetime
    expires_at: datetime
    payment_link: Optional[str] = None
    redirect_info: Dict[str, Any] = {}

class VerifyPaymentRequest(BaseModel):
    order_id: Optional[str] = None
    provider: Optional[str] = None

class VerifyPaymentResponse(BaseModel):
    result: str  # activated, pending, rejected
    message: str
    subscription_end: Optional[datetime] = None
    manual_verification_required: bool = False

class SubscriptionStatusResponse(BaseModel):
    status: str
    end_date: Optional[datetime] = None
    is_expired: bool
    is_entitled: bool

class WebhookAck(BaseModel):
    status: str  # ok, already_processed, ignored
    order_id: Optional[str] = None
    reason: Optional[str] = None

class MonitorIssues(BaseModel):
    expired_needing_update: int
    expiring_soon: int

class MonitorMetrics(BaseModel):
    active_subscriptions: int
    recent_expirations: int

class MonitorResponse(BaseModel):
    timestamp: datetime
    status_distribution: Dict[str, int]
    issues: MonitorIssues
    metrics: MonitorMetrics
    available_providers: List[str] = []

class ManualReviewDecision(BaseModel):
    note: Optional[str] = None

class ManualReviewResponse(BaseModel):
    id: int
    order_id: str
    user_id: int
    provider: str
    status: str
    note: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
