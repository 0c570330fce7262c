from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Integer, Numeric
from sqlalchemy.orm import relationship
from paywall.core.database import Base
from datetime import datetime
import enum


class Network(str, enum.Enum):
    TRC20 = "TRC20"
    ERC20 = "ERC20"
    BEP20 = "BEP20"

    @classmethod
    def parse(cls, tag: str) -> "Network":
        """Parse a network tag case-insensitively ('trc20', 'TRC20')."""
        try:
            return cls(tag.strip().upper())
        except (AttributeError, ValueError):
            raise ValueError(f"Unsupported network: {tag!r}") from None


class PaymentStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class VerificationMethod(str, enum.Enum):
    TRANSACTION_ID = "transaction_id"
    ADDRESS_SCAN = "address_scan"


def payment_key(network: Network, transaction_hash: str) -> str:
    """Network-qualified idempotency key for a transaction hash."""
    return f"{network.value}:{transaction_hash.strip().lower()}"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    payment_key = Column(String, nullable=False, unique=True)  # one credit per on-chain transfer, system-wide
    transaction_hash = Column(String, nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    network = Column(Enum(Network), nullable=False)
    payment_date = Column(DateTime, nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.CONFIRMED)
    verification_method = Column(Enum(VerificationMethod), nullable=False, default=VerificationMethod.TRANSACTION_ID)
    confirmations = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    subscription = relationship("Subscription", back_populates="payments")
