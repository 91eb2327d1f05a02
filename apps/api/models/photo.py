"""Photo model and its lifecycle enums."""

import enum
import uuid

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PhotoStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EnhancementMode(str, enum.Enum):
    RESTORE = "restore"
    ENHANCE = "enhance"
    COLORIZE = "colorize"
    UPSCALE = "upscale"


class ChargeSource(str, enum.Enum):
    FREE_TIER = "free_tier"
    CREDIT = "credit"


class Photo(Base):
    """Uploaded photo and the state of its enhancement."""

    __tablename__ = "photos"
    __table_args__ = (
        Index("ix_photos_status_started", "status", "processing_started_at"),
        Index("ix_photos_owner_created", "owner_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    original_asset_ref = Column(String, nullable=False)
    original_mime_type = Column(String, nullable=True)
    original_size_bytes = Column(BigInteger, nullable=False, default=0)
    enhanced_asset_ref = Column(String, nullable=True)
    enhanced_mime_type = Column(String, nullable=True)
    enhanced_size_bytes = Column(BigInteger, nullable=True)
    status = Column(String, nullable=False, default=PhotoStatus.PENDING.value, index=True)
    enhancement_mode = Column(String, nullable=False)

    # Set only while PROCESSING; exactly one of the two describes the held authorization.
    credit_reservation_id = Column(String, ForeignKey("credit_reservations.id"), nullable=True, index=True)
    free_slot_held = Column(Boolean, nullable=False, default=False)

    charged_with = Column(String, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    error_reason = Column(String, nullable=True)
    last_error_retryable = Column(Boolean, nullable=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    owner = relationship("User", back_populates="photos")
    credit_reservation = relationship("CreditReservation", foreign_keys=[credit_reservation_id])
