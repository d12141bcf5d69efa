import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate import models
from paygate.errors import InvalidTransition
from paygate.security_log import MANUAL_REVIEW_DECISION, log_security_event
from paygate.subscriptions import ActivationResult, activate_subscription, utcnow

logger = logging.getLogger(__name__)

REVIEW_PENDING = "pending"
REVIEW_APPROVED = "approved"
REVIEW_REJECTED = "rejected"


def enqueue_manual_review(db: Session, order_id: str, user_id: int, provider: str) -> models.ManualPaymentReview:
    """Record a provisional payment report for an operator; repeated reports reuse the row."""
    review = db.query(models.ManualPaymentReview).filter(
        models.ManualPaymentReview.order_id == order_id
    ).first()
    if review:
        return review

    review = models.ManualPaymentReview(
        order_id=order_id,
        user_id=user_id,
        provider=provider,
        status=REVIEW_PENDING,
    )
    db.add(review)
    try:
        db.commit()
    except IntegrityError:
        # Another request queued the same order first.
        db.rollback()
        return db.query(models.ManualPaymentReview).filter(
            models.ManualPaymentReview.order_id == order_id
        ).one()
    db.refresh(review)
    logger.info("Manual payment review queued order_id=%s user_id=%s", order_id, user_id)
    return review


def list_pending_reviews(db: Session, limit: int = 100) -> List[models.ManualPaymentReview]:
    return (
        db.query(models.ManualPaymentReview)
        .filter(models.ManualPaymentReview.status == REVIEW_PENDING)
        .order_by(models.ManualPaymentReview.id.asc())
        .limit(limit)
        .all()
    )


def _claim_review(
    db: Session,
    order_id: str,
    decision: str,
    reviewer_id: int,
    note: Optional[str],
) -> models.ManualPaymentReview:
    updated = (
        db.query(models.ManualPaymentReview)
        .filter(
            models.ManualPaymentReview.order_id == order_id,
            models.ManualPaymentReview.status == REVIEW_PENDING,
        )
        .update(
            {
                models.ManualPaymentReview.status: decision,
                models.ManualPaymentReview.reviewed_by: reviewer_id,
                models.ManualPaymentReview.reviewed_at: utcnow(),
                models.ManualPaymentReview.note: (note or None),
            },
            synchronize_session=False,
        )
    )
    review = db.query(models.ManualPaymentReview).filter(
        models.ManualPaymentReview.order_id == order_id
    ).first()
    if not updated:
        db.rollback()
        if review is None:
            raise InvalidTransition("No manual review exists for this order.")
        raise InvalidTransition(f"Manual review is already {review.status}.")
    return review


def approve_manual_review(
    db: Session,
    order_id: str,
    reviewer_id: int,
    note: Optional[str] = None,
) -> ActivationResult:
    review = _claim_review(db, order_id, REVIEW_APPROVED, reviewer_id, note)
    result = activate_subscription(db, review.user_id, commit=False)
    db.commit()
    log_security_event(
        MANUAL_REVIEW_DECISION,
        order_id=order_id,
        decision=REVIEW_APPROVED,
        reviewer_id=reviewer_id,
        user_id=result.user_id,
    )
    return result


def reject_manual_review(
    db: Session,
    order_id: str,
    reviewer_id: int,
    note: Optional[str] = None,
) -> models.ManualPaymentReview:
    review = _claim_review(db, order_id, REVIEW_REJECTED, reviewer_id, note)
    db.commit()
    db.refresh(review)
    log_security_event(
        MANUAL_REVIEW_DECISION,
        order_id=order_id,
        decision=REVIEW_REJECTED,
        reviewer_id=reviewer_id,
        user_id=review.user_id,
    )
    return review
