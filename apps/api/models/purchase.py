"""Purchase model recorded from payment-provider events."""

import enum
import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PurchaseStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Purchase(Base):
    """Append-only purchase record; provider_event_id is the idempotency key."""

    __tablename__ = "purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False, default="stripe")
    provider_event_id = Column(String, nullable=False, unique=True)
    payment_reference = Column(String, nullable=True, index=True)
    credits_granted = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="purchases")
