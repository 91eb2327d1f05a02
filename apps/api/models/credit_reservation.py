"""CreditReservation model: a credit deducted ahead of an enhancement attempt."""

import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class ReservationState(str, enum.Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    REFUNDED = "REFUNDED"


class CreditReservation(Base):
    """Resolved exactly once, to COMMITTED or REFUNDED."""

    __tablename__ = "credit_reservations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    photo_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=False, default=1)
    state = Column(String, nullable=False, default=ReservationState.HELD.value, index=True)
    # False for unlimited accounts: their balance is never decremented, so never refunded.
    balance_applied = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
