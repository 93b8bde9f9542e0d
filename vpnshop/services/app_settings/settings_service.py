"""Global shop settings from the admin: feature toggles, trial quota, affiliate policy."""
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from vpnshop.core.config import settings
from vpnshop.models.app_settings import AffiliateRewardType, AppSettings

_BOOL_FIELDS = (
    "test_enabled",
    "enable_manual_payment",
    "enable_hosted_payment",
    "enable_promos",
    "enable_referrals",
    "enable_affiliate_rewards",
    "enable_new_purchases",
    "enable_renewals",
)
_INT_FIELDS = (
    "test_traffic_bytes",
    "test_duration_days",
    "notify_days_left",
    "notify_gb_left",
    "affiliate_reward_value",
)
_STR_FIELDS = ("test_internal_squad_id", "manual_card_number", "support_handle")


class AppSettingsService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self) -> AppSettings | None:
        return self.db.query(AppSettings).filter(AppSettings.id == 1).first()

    def get_or_create(self) -> AppSettings:
        row = self.get()
        if row:
            return row
        row = AppSettings(
            id=1,
            manual_card_number=settings.manual_card_number or None,
            support_handle=settings.support_handle or None,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def card_number(self) -> str:
        return self.get_or_create().manual_card_number or settings.manual_card_number

    def as_dict(self) -> dict[str, Any]:
        row = self.get_or_create()
        data = {name: getattr(row, name) for name in _BOOL_FIELDS + _INT_FIELDS + _STR_FIELDS}
        data["affiliate_reward_type"] = row.affiliate_reward_type
        data["updated_at"] = row.updated_at.isoformat() if row.updated_at else None
        return data

    def update(self, data: dict[str, Any]) -> dict[str, Any]:
        row = self.get_or_create()
        for name in _BOOL_FIELDS:
            if data.get(name) is not None:
                setattr(row, name, bool(data[name]))
        for name in _INT_FIELDS:
            if data.get(name) is not None:
                setattr(row, name, max(0, int(data[name])))
        for name in _STR_FIELDS:
            if name in data:
                setattr(row, name, data[name] or None)
        reward_type = data.get("affiliate_reward_type")
        if reward_type in (AffiliateRewardType.FIXED, AffiliateRewardType.PERCENT):
            row.affiliate_reward_type = reward_type
        row.updated_at = datetime.now(timezone.utc)
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return self.as_dict()
