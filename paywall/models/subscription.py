from sqlalchemy import Column, String, DateTime, Enum, Boolean, Integer, Numeric
from sqlalchemy.orm import relationship
from paywall.core.database import Base
from datetime import datetime
import enum


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    GRACE = "grace"
    CANCELLED = "cancelled"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, unique=True, index=True)  # auth provider uid
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    next_payment_due = Column(DateTime, nullable=False)
    grace_period_end = Column(DateTime, nullable=True)  # set only while in grace
    auto_renewal = Column(Boolean, nullable=False, default=True)
    cancellation_date = Column(DateTime, nullable=True)
    monthly_price = Column(Numeric(18, 6), nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    payments = relationship("Payment", back_populates="subscription", order_by="Payment.payment_date")

    __mapper_args__ = {"version_id_col": version}
