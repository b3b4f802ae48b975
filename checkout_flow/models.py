"""
SQLAlchemy models for the reference backends.

These tables back SqlAccountDirectory, SandboxPaymentGateway and
LocalOtpProvider. The checkout flow itself is never persisted.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class GuestAccount(Base):
    __tablename__ = "guest_accounts"

    id = Column(String, primary_key=True, default=_new_id)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    organization_name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)  # stored lower case
    mobile_number = Column(String, nullable=True, index=True)  # E.164
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    cards = relationship("SavedCardRecord", back_populates="customer", cascade="all, delete-orphan")


class SavedCardRecord(Base):
    __tablename__ = "saved_cards"

    id = Column(String, primary_key=True, default=_new_id)
    customer_id = Column(String, ForeignKey("guest_accounts.id"), nullable=False, index=True)
    brand = Column(String, nullable=False)
    last4 = Column(String(4), nullable=False)
    exp_month = Column(Integer, nullable=False)
    exp_year = Column(Integer, nullable=False)
    token = Column(String, nullable=False)
    # Replayed saves with the same key return this card
    idempotency_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("GuestAccount", back_populates="cards")


class ChargeRecord(Base):
    __tablename__ = "charges"

    id = Column(String, primary_key=True, default=_new_id)
    customer_id = Column(String, ForeignKey("guest_accounts.id"), nullable=False, index=True)
    card_id = Column(String, ForeignKey("saved_cards.id"), nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(String, nullable=False)  # COMPLETED / DECLINED
    # Replayed charges with the same key return this record
    idempotency_key = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OtpCodeRecord(Base):
    __tablename__ = "otp_codes"

    sid = Column(String, primary_key=True, default=_new_id)
    channel = Column(String, nullable=False)  # sms / email
    destination = Column(String, nullable=False, index=True)
    code_hash = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
