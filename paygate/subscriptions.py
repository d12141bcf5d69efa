"""
Subscription state machine and expiry reconciliation.

``subscription_end_date`` is the source of truth for entitlement. The stored
``subscription_status`` is a cache of that date which reads correct lazily, so
every entitlement check goes through :func:`is_entitled`, never the status
string alone.

All writes are single conditional UPDATE statements, which keeps a status read
that writes ``expired`` from overwriting a concurrent activation.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from paygate import models
from paygate.errors import AccountNotFound, InvalidTransition

logger = logging.getLogger(__name__)

STATUS_FREE = "free"
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_PAID = "paid"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"

PAID_STATUSES = (STATUS_ACTIVE, STATUS_PAID)
TRIAL_OR_PAID_STATUSES = (STATUS_FREE, STATUS_ACTIVE, STATUS_PAID)

SUBSCRIPTION_DURATION = timedelta(days=365)
EXPIRING_SOON_WINDOW = timedelta(days=7)
RECENT_EXPIRY_WINDOW = timedelta(days=1)
# Slack past the order TTL for payments completed just before the order lapsed.
ORDER_VERIFICATION_GRACE = timedelta(days=1)

# ``paid`` is a legacy alias of ``active``; ``pending`` is never stored by this service.
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    STATUS_FREE: frozenset({STATUS_PENDING, STATUS_ACTIVE, STATUS_EXPIRED}),
    STATUS_PENDING: frozenset({STATUS_FREE, STATUS_ACTIVE, STATUS_EXPIRED}),
    STATUS_ACTIVE: frozenset({STATUS_ACTIVE, STATUS_EXPIRED, STATUS_CANCELLED}),
    STATUS_PAID: frozenset({STATUS_ACTIVE, STATUS_EXPIRED, STATUS_CANCELLED}),
    STATUS_EXPIRED: frozenset({STATUS_ACTIVE}),
    STATUS_CANCELLED: frozenset({STATUS_ACTIVE, STATUS_EXPIRED}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_datetime(value):
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def sources_for(target: str) -> List[str]:
    return sorted(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)


@dataclass
class ActivationResult:
    user_id: int
    applied: bool
    end_date: Optional[datetime]

    @property
    def already_processed(self) -> bool:
        return not self.applied


@dataclass
class SubscriptionView:
    status: str
    end_date: Optional[datetime]
    is_expired: bool
    is_entitled: bool
    corrected: bool = False


@dataclass
class ExpirySweepResult:
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    updated: int = 0


def is_expired(user: models.User, now: Optional[datetime] = None) -> bool:
    end_date = _normalize_datetime(user.subscription_end_date)
    if end_date is None:
        return False
    return (now or utcnow()) >= end_date


def is_entitled(user: models.User, now: Optional[datetime] = None) -> bool:
    end_date = _normalize_datetime(user.subscription_end_date)
    if end_date is None:
        return False
    status = (user.subscription_status or STATUS_FREE).lower()
    return status in PAID_STATUSES and end_date > (now or utcnow())


def current_window_start(user: models.User) -> Optional[datetime]:
    end_date = _normalize_datetime(user.subscription_end_date)
    if end_date is None:
        return None
    return end_date - SUBSCRIPTION_DURATION


def order_predates_window(user: models.User, order_created_at: datetime) -> bool:
    """True when the order was created before the account's latest activation.

    Such an order has already been consumed by that activation or an earlier
    one, so a replay of it must not grant another period.
    """
    window_start = current_window_start(user)
    return window_start is not None and order_created_at < window_start


def order_is_stale(order_created_at: datetime, ttl_minutes: int, now: Optional[datetime] = None) -> bool:
    cutoff = (now or utcnow()) - timedelta(minutes=ttl_minutes) - ORDER_VERIFICATION_GRACE
    return order_created_at < cutoff


def _get_user(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise AccountNotFound()
    return user


def _finish(db: Session, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()


def activate_subscription(
    db: Session,
    user_id: int,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ActivationResult:
    """
    Start a fresh one-year window from ``now``.

    Renewal overwrites the end date rather than adding to the remaining time.
    """
    now = now or utcnow()
    new_end_date = now + SUBSCRIPTION_DURATION

    updated = (
        db.query(models.User)
        .filter(models.User.id == user_id)
        .update(
            {
                models.User.subscription_status: STATUS_ACTIVE,
                models.User.subscription_end_date: new_end_date,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        raise AccountNotFound()

    _finish(db, commit)
    logger.info("Subscription activated user_id=%s end_date=%s", user_id, new_end_date.isoformat())
    return ActivationResult(user_id=user_id, applied=True, end_date=new_end_date)


def apply_webhook_activation(
    db: Session,
    user_id: int,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ActivationResult:
    """
    Activate from a verified webhook unless the account is already entitled.

    Providers retry deliveries, so an account that is active with a future end
    date is treated as already processed. The check lives in the UPDATE's WHERE
    clause so it cannot race with another writer.
    """
    now = now or utcnow()
    new_end_date = now + SUBSCRIPTION_DURATION

    not_entitled = or_(
        models.User.subscription_status.is_(None),
        models.User.subscription_status.not_in(PAID_STATUSES),
        models.User.subscription_end_date.is_(None),
        models.User.subscription_end_date <= now,
    )
    updated = (
        db.query(models.User)
        .filter(models.User.id == user_id, not_entitled)
        .update(
            {
                models.User.subscription_status: STATUS_ACTIVE,
                models.User.subscription_end_date: new_end_date,
            },
            synchronize_session=False,
        )
    )

    if updated:
        _finish(db, commit)
        logger.info("Subscription activated from webhook user_id=%s end_date=%s", user_id, new_end_date.isoformat())
        return ActivationResult(user_id=user_id, applied=True, end_date=new_end_date)

    user = _get_user(db, user_id)
    logger.info("Webhook activation already processed user_id=%s", user_id)
    return ActivationResult(
        user_id=user_id,
        applied=False,
        end_date=_normalize_datetime(user.subscription_end_date),
    )


def cancel_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> models.User:
    now = now or utcnow()
    updated = (
        db.query(models.User)
        .filter(
            models.User.id == user_id,
            models.User.subscription_status.in_(sources_for(STATUS_CANCELLED)),
            models.User.subscription_end_date > now,
        )
        .update({models.User.subscription_status: STATUS_CANCELLED}, synchronize_session=False)
    )
    if not updated:
        user = _get_user(db, user_id)
        raise InvalidTransition(
            f"Cannot cancel a subscription in status '{user.subscription_status}'."
        )

    db.commit()
    logger.info("Subscription cancelled user_id=%s", user_id)
    return _get_user(db, user_id)


def refresh_subscription_status(
    db: Session,
    user: models.User,
    now: Optional[datetime] = None,
) -> SubscriptionView:
    """
    Derive the subscription view from the end date, writing ``expired`` back
    to the cached status when it is stale.
    """
    now = now or utcnow()
    corrected = False

    if is_expired(user, now) and user.subscription_status != STATUS_EXPIRED:
        previous_status = user.subscription_status
        updated = (
            db.query(models.User)
            .filter(
                models.User.id == user.id,
                models.User.subscription_status != STATUS_EXPIRED,
                models.User.subscription_end_date <= now,
            )
            .update({models.User.subscription_status: STATUS_EXPIRED}, synchronize_session=False)
        )
        db.commit()
        db.refresh(user)
        corrected = bool(updated)
        if corrected:
            logger.info(
                "Subscription status updated to expired user_id=%s previous_status=%s",
                user.id,
                previous_status,
            )

    expired = is_expired(user, now)
    return SubscriptionView(
        status=STATUS_EXPIRED if expired else (user.subscription_status or STATUS_FREE),
        end_date=_normalize_datetime(user.subscription_end_date),
        is_expired=expired,
        is_entitled=is_entitled(user, now),
        corrected=corrected,
    )


def _overdue_filter(now: datetime):
    return and_(
        models.User.subscription_status != STATUS_EXPIRED,
        models.User.subscription_end_date.isnot(None),
        models.User.subscription_end_date <= now,
    )


def expire_overdue_subscriptions(
    db: Session,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> ExpirySweepResult:
    now = now or utcnow()
    rows = (
        db.query(models.User)
        .filter(_overdue_filter(now))
        .order_by(models.User.subscription_end_date.asc())
        .all()
    )
    result = ExpirySweepResult(
        candidates=[
            {
                "id": row.id,
                "username": row.username,
                "email": row.email,
                "status": row.subscription_status,
                "end_date": _normalize_datetime(row.subscription_end_date),
            }
            for row in rows
        ]
    )
    if dry_run or not rows:
        return result

    result.updated = (
        db.query(models.User)
        .filter(_overdue_filter(now))
        .update({models.User.subscription_status: STATUS_EXPIRED}, synchronize_session=False)
    )
    db.commit()
    logger.info("Expired %s overdue subscription(s)", result.updated)
    return result


def collect_subscription_metrics(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    User = models.User

    distribution = {
        status: count
        for status, count in db.query(User.subscription_status, func.count(User.id))
        .filter(User.subscription_status.isnot(None))
        .group_by(User.subscription_status)
        .all()
    }
    expired_needing_update = db.query(func.count(User.id)).filter(_overdue_filter(now)).scalar()
    expiring_soon = (
        db.query(func.count(User.id))
        .filter(
            User.subscription_status.in_(TRIAL_OR_PAID_STATUSES),
            User.subscription_end_date > now,
            User.subscription_end_date <= now + EXPIRING_SOON_WINDOW,
        )
        .scalar()
    )
    recent_expirations = (
        db.query(func.count(User.id))
        .filter(
            User.subscription_end_date.isnot(None),
            User.subscription_end_date > now - RECENT_EXPIRY_WINDOW,
            User.subscription_end_date <= now,
        )
        .scalar()
    )
    active_subscriptions = (
        db.query(func.count(User.id))
        .filter(User.subscription_status.in_(PAID_STATUSES), User.subscription_end_date > now)
        .scalar()
    )

    return {
        "timestamp": now,
        "status_distribution": distribution,
        "issues": {
            "expired_needing_update": int(expired_needing_update or 0),
            "expiring_soon": int(expiring_soon or 0),
        },
        "metrics": {
            "active_subscriptions": int(active_subscriptions or 0),
            "recent_expirations": int(recent_expirations or 0),
        },
    }
