from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String

from vpnshop.db.base import Base


class AffiliateRewardType:
    FIXED = "FIXED"
    PERCENT = "PERCENT"


class AppSettings(Base):
    """Global app settings (single row, id=1). Toggles and overrides from admin."""

    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True, default=1)

    # Free trial
    test_enabled = Column(Boolean, nullable=False, default=True)
    test_traffic_bytes = Column(BigInteger, nullable=False, default=1024 ** 3)
    test_duration_days = Column(Integer, nullable=False, default=1)
    test_internal_squad_id = Column(String, nullable=True)

    # Low-resource notifications
    notify_days_left = Column(Integer, nullable=False, default=3)
    notify_gb_left = Column(Integer, nullable=False, default=2)

    enable_manual_payment = Column(Boolean, nullable=False, default=True)
    enable_hosted_payment = Column(Boolean, nullable=False, default=True)
    enable_promos = Column(Boolean, nullable=False, default=True)
    enable_referrals = Column(Boolean, nullable=False, default=True)
    enable_affiliate_rewards = Column(Boolean, nullable=False, default=True)
    enable_new_purchases = Column(Boolean, nullable=False, default=True)
    enable_renewals = Column(Boolean, nullable=False, default=True)

    affiliate_reward_type = Column(String, nullable=False, default=AffiliateRewardType.FIXED)
    affiliate_reward_value = Column(Integer, nullable=False, default=15000)

    manual_card_number = Column(String, nullable=True)
    support_handle = Column(String, nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
