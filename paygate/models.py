from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from paygate.database import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=True)
    is_active = Column(Boolean, default=True)
    is_admin = Column(Boolean, default=False)
    # Cached view of subscription_end_date; see paygate.subscriptions for the rules.
    subscription_status = Column(String, nullable=False, default="free", index=True)
    subscription_end_date = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    manual_reviews = relationship(
        "ManualPaymentReview",
        foreign_keys="ManualPaymentReview.user_id",
        back_populates="user",
        cascade="all, delete-orphan",
    )

class ManualPaymentReview(Base):
    __tablename__ = "manual_payment_reviews"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, approved, rejected
    note = Column(Text, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", foreign_keys=[user_id], back_populates="manual_reviews")
