import logging
import os
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from paygate import models, schemas
from paygate.auth import get_current_active_user, get_current_admin_user
from paygate.config import Settings, get_settings
from paygate.database import get_db
from paygate.errors import AccountNotFound, InvalidOrderId, OrderAlreadyUsed, OrderExpired, OrderOwnershipError
from paygate.manual_reviews import (
    approve_manual_review,
    enqueue_manual_review,
    list_pending_reviews,
    reject_manual_review,
)
from paygate.order_ids import order_created_at, order_prefix, parse_account_id
from paygate.security_log import ORDER_OWNERSHIP_MISMATCH, ORDER_REPLAY_REJECTED, log_security_event
from paygate.services.base import OutcomeState, PaymentProvider, ProviderAdapter
from paygate.services.registry import ProviderRegistry, get_provider_registry
from paygate.subscriptions import (
    activate_subscription,
    apply_webhook_activation,
    cancel_subscription,
    collect_subscription_metrics,
    is_entitled,
    order_is_stale,
    order_predates_window,
    refresh_subscription_status,
)
from paygate.utils.rate_limiter import enforce_rate_limit, extract_client_ip
from paygate.webhooks import verify_webhook

router = APIRouter(prefix="/api/subscription", tags=["subscription"])
logger = logging.getLogger(__name__)

CREATE_ORDER_RATE_LIMIT = int(os.getenv("SUBSCRIPTION_CREATE_ORDER_RATE_LIMIT", "8"))
CREATE_ORDER_RATE_WINDOW_SECONDS = int(os.getenv("SUBSCRIPTION_CREATE_ORDER_RATE_WINDOW_SECONDS", "900"))
VERIFY_RATE_LIMIT = int(os.getenv("SUBSCRIPTION_VERIFY_RATE_LIMIT", "20"))
VERIFY_RATE_WINDOW_SECONDS = int(os.getenv("SUBSCRIPTION_VERIFY_RATE_WINDOW_SECONDS", "900"))
WEBHOOK_RATE_LIMIT = int(os.getenv("SUBSCRIPTION_WEBHOOK_RATE_LIMIT", "120"))
WEBHOOK_RATE_WINDOW_SECONDS = int(os.getenv("SUBSCRIPTION_WEBHOOK_RATE_WINDOW_SECONDS", "60"))


def _status_response(view) -> schemas.SubscriptionStatusResponse:
    return schemas.SubscriptionStatusResponse(
        status=view.status,
        end_date=view.end_date,
        is_expired=view.is_expired,
        is_entitled=view.is_entitled,
    )


def _require_order_prefix(adapter: ProviderAdapter, order_id: str) -> None:
    if order_prefix(order_id) != adapter.order_prefix:
        raise InvalidOrderId(f"Order id was not issued by {adapter.provider.value}.")


@router.get("/status", response_model=schemas.SubscriptionStatusResponse)
def get_subscription_status(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return _status_response(refresh_subscription_status(db, current_user))


@router.post("/create-order", response_model=schemas.CreateOrderResponse)
def create_order(
    request: Request,
    payload: Optional[schemas.CreateOrderRequest] = Body(default=None),
    current_user: models.User = Depends(get_current_active_user),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    enforce_rate_limit(
        request=request,
        scope="subscription.create_order",
        limit=CREATE_ORDER_RATE_LIMIT,
        window_seconds=CREATE_ORDER_RATE_WINDOW_SECONDS,
        extra_key=str(current_user.id),
    )

    payload = payload or schemas.CreateOrderRequest()
    provider = PaymentProvider.parse(payload.provider)
    if is_entitled(current_user):
        raise HTTPException(status_code=400, detail="You already have an active subscription")

    adapter = registry.require(provider)
    order = adapter.create_order(current_user)
    return schemas.CreateOrderResponse(
        order_id=order.order_id,
        provider=order.provider.value,
        amount_minor_units=order.amount_minor_units,
        currency=order.currency,
        created_at=order.created_at,
        expires_at=order.expires_at,
        payment_link=order.payment_link,
        redirect_info=order.redirect_info,
    )


@router.post("/verify-payment", response_model=schemas.VerifyPaymentResponse)
def verify_payment(
    request: Request,
    response: Response,
    payload: Optional[schemas.VerifyPaymentRequest] = Body(default=None),
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    enforce_rate_limit(
        request=request,
        scope="subscription.verify_payment",
        limit=VERIFY_RATE_LIMIT,
        window_seconds=VERIFY_RATE_WINDOW_SECONDS,
        extra_key=str(current_user.id),
    )

    payload = payload or schemas.VerifyPaymentRequest()
    order_id = (payload.order_id or "").strip()
    if not order_id:
        raise HTTPException(status_code=400, detail="Order ID is required")
    provider = PaymentProvider.parse(payload.provider)

    if parse_account_id(order_id) != current_user.id:
        log_security_event(
            ORDER_OWNERSHIP_MISMATCH,
            client_ip=extract_client_ip(request),
            user_id=current_user.id,
            order_id=order_id,
        )
        raise OrderOwnershipError()

    adapter = registry.require(provider)
    _require_order_prefix(adapter, order_id)

    created_at = order_created_at(order_id)
    if order_predates_window(current_user, created_at):
        if is_entitled(current_user):
            return schemas.VerifyPaymentResponse(
                result="activated",
                message="Subscription is already active",
                subscription_end=current_user.subscription_end_date,
            )
        log_security_event(
            ORDER_REPLAY_REJECTED,
            client_ip=extract_client_ip(request),
            user_id=current_user.id,
            order_id=order_id,
        )
        raise OrderAlreadyUsed()
    if order_is_stale(created_at, registry.settings.order_ttl_minutes):
        raise OrderExpired()

    outcome = adapter.verify_order(order_id)

    if outcome.succeeded:
        result = activate_subscription(db, current_user.id)
        logger.info("Payment verified user_id=%s order_id=%s provider=%s", current_user.id, order_id, provider.value)
        return schemas.VerifyPaymentResponse(
            result="activated",
            message="Subscription activated successfully",
            subscription_end=result.end_date,
        )

    if outcome.state == OutcomeState.MANUAL_REVIEW:
        enqueue_manual_review(db, order_id, current_user.id, provider.value)
        response.status_code = 202
        return schemas.VerifyPaymentResponse(
            result="pending",
            message=outcome.detail or "Payment requires manual verification.",
            manual_verification_required=True,
        )

    if outcome.state == OutcomeState.FAILED:
        logger.info("Payment failed user_id=%s order_id=%s provider=%s", current_user.id, order_id, provider.value)
        response.status_code = 402
        return schemas.VerifyPaymentResponse(result="rejected", message=outcome.detail or "Payment failed.")

    response.status_code = 202
    return schemas.VerifyPaymentResponse(
        result="pending",
        message=outcome.detail or "Payment verification pending. Check status later.",
    )


@router.post("/webhook", response_model=schemas.WebhookAck)
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    enforce_rate_limit(
        request=request,
        scope="subscription.webhook",
        limit=WEBHOOK_RATE_LIMIT,
        window_seconds=WEBHOOK_RATE_WINDOW_SECONDS,
    )

    body = await request.body()
    event = verify_webhook(request.headers, body, settings, client_ip=extract_client_ip(request))
    account_id = parse_account_id(event.order_id)
    _require_order_prefix(registry.get(event.provider), event.order_id)

    if not event.succeeded:
        logger.info(
            "Webhook payment not successful provider=%s order_id=%s payment_status=%s",
            event.provider.value,
            event.order_id,
            event.payment_status,
        )
        return schemas.WebhookAck(
            status="ignored",
            order_id=event.order_id,
            reason=f"payment_status_{(event.payment_status or 'unknown').lower()}",
        )

    account = db.get(models.User, account_id)
    if account is not None and not is_entitled(account) and order_predates_window(
        account, order_created_at(event.order_id)
    ):
        logger.warning("Webhook for already used order order_id=%s account_id=%s", event.order_id, account_id)
        return schemas.WebhookAck(status="ignored", order_id=event.order_id, reason="order_already_used")

    try:
        result = apply_webhook_activation(db, account_id)
    except AccountNotFound:
        logger.warning("Webhook for unknown account order_id=%s", event.order_id)
        return schemas.WebhookAck(status="ignored", order_id=event.order_id, reason="account_not_found")

    if result.already_processed:
        return schemas.WebhookAck(status="already_processed", order_id=event.order_id)
    return schemas.WebhookAck(status="ok", order_id=event.order_id)


@router.get("/monitor", response_model=schemas.MonitorResponse)
def monitor_subscriptions(
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    metrics = collect_subscription_metrics(db)
    return schemas.MonitorResponse(available_providers=registry.available(), **metrics)


@router.post("/cancel", response_model=schemas.SubscriptionStatusResponse)
def cancel_my_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    user = cancel_subscription(db, current_user.id)
    return _status_response(refresh_subscription_status(db, user))


@router.get("/manual-reviews", response_model=List[schemas.ManualReviewResponse])
def get_pending_manual_reviews(
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return list_pending_reviews(db)


@router.post("/manual-reviews/{order_id}/approve", response_model=schemas.VerifyPaymentResponse)
def approve_review(
    order_id: str,
    payload: Optional[schemas.ManualReviewDecision] = Body(default=None),
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    parse_account_id(order_id)
    result = approve_manual_review(db, order_id, reviewer_id=current_user.id, note=payload.note if payload else None)
    return schemas.VerifyPaymentResponse(
        result="activated",
        message="Manual payment approved and subscription activated",
        subscription_end=result.end_date,
    )


@router.post("/manual-reviews/{order_id}/reject", response_model=schemas.ManualReviewResponse)
def reject_review(
    order_id: str,
    payload: Optional[schemas.ManualReviewDecision] = Body(default=None),
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    parse_account_id(order_id)
    return reject_manual_review(db, order_id, reviewer_id=current_user.id, note=payload.note if payload else None)
