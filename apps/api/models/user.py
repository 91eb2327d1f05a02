"""User model."""

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from config import settings
from database import Base


class User(Base):
    """Authenticated user with credit balance, free-tier usage and storage quota."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint("free_enhancements_used >= 0", name="ck_users_free_enhancements_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=True, index=True)
    credits = Column(Integer, nullable=False, default=0)
    free_enhancements_used = Column(Integer, nullable=False, default=0)
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    storage_limit_bytes = Column(
        BigInteger,
        nullable=False,
        default=lambda: settings.DEFAULT_STORAGE_LIMIT_BYTES,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    photos = relationship("Photo", back_populates="owner", cascade="all, delete-orphan")
    credit_entries = relationship("CreditLedger", back_populates="user", cascade="all, delete-orphan")
    purchases = relationship("Purchase", back_populates="user")
