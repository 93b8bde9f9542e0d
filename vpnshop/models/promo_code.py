from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from vpnshop.db.base import Base


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    code = Column(String, unique=True, nullable=False, index=True)  # stored uppercase
    discount_percent = Column(Integer, nullable=True)
    fixed_tomans = Column(Integer, nullable=True)
    uses_left = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class PromoUsage(Base):
    """One redemption. payment_id is unique: a payment consumes a promo at most once."""

    __tablename__ = "promo_usages"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    promo_code_id = Column(String, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    payment_id = Column(String, ForeignKey("payments.id"), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
