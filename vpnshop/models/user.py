from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from vpnshop.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    telegram_id = Column(String, unique=True, nullable=False, index=True)
    telegram_username = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    # Tomans; never negative, changed only through WalletService
    wallet_balance = Column(Integer, nullable=False, default=0)

    is_banned = Column(Boolean, nullable=False, default=False)
    ban_reason = Column(Text, nullable=True)
    used_trial = Column(Boolean, nullable=False, default=False)

    # Referral program: set once, never reassigned
    referred_by_user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    referred_at = Column(DateTime(timezone=True), nullable=True)
    affiliate_reward_processed = Column(Boolean, nullable=False, default=False)
    first_purchase_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
