"""
Payment model — one payment intent and its lifecycle.

Status changes only through conditional updates (see PaymentOrchestrator._transition),
so the fulfillment side effect runs at most once per row.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from vpnshop.db.base import Base


class PaymentStatus:
    PENDING = "PENDING"
    WAITING_REVIEW = "WAITING_REVIEW"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    TERMINAL = frozenset({SUCCESS, FAILED, CANCELED})
    CLAIMABLE = (PENDING, WAITING_REVIEW)


class PaymentType:
    PURCHASE = "PURCHASE"
    RENEWAL = "RENEWAL"
    WALLET_CHARGE = "WALLET_CHARGE"


class PaymentGateway:
    WALLET = "WALLET"
    HOSTED = "HOSTED"
    MANUAL = "MANUAL"

    ALL = (WALLET, HOSTED, MANUAL)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    gateway = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING, index=True)

    amount_tomans = Column(Integer, nullable=False)
    amount_rials = Column(Integer, nullable=False)  # tomans * 10, sent to the hosted gateway

    plan_id = Column(String, ForeignKey("plans.id", ondelete="RESTRICT"), nullable=True)
    target_service_id = Column(String, ForeignKey("services.id", ondelete="SET NULL"), nullable=True)
    promo_code_id = Column(String, ForeignKey("promo_codes.id"), nullable=True)
    details = Column(JSON, nullable=True)

    hash_id = Column(String, unique=True, nullable=False, default=lambda: uuid4().hex)
    authority = Column(String, unique=True, nullable=True)

    manual_receipt_file_id = Column(String, nullable=True)
    reviewed_by_user_id = Column(String, nullable=True)
    review_note = Column(Text, nullable=True)
    description = Column(String, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
