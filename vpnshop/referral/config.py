"""
Referral program config — start payload parsing and reward math.
"""
from __future__ import annotations

import re

from vpnshop.core.config import settings
from vpnshop.models.app_settings import AffiliateRewardType

REFERRAL_PAYLOAD_RE = re.compile(r"ref[_=](\d+)")


def parse_referral(payload: str | None) -> str | None:
    """Return the referrer's Telegram id from a /start payload like `ref_12345`."""
    if not payload:
        return None
    match = REFERRAL_PAYLOAD_RE.search(payload)
    return match.group(1) if match else None


def build_referral_link(telegram_id: str | int) -> str:
    return f"https://t.me/{settings.telegram_bot_username}?start=ref_{telegram_id}"


def calc_reward_tomans(reward_type: str, reward_value: int, payment_amount: int) -> int:
    if reward_type == AffiliateRewardType.PERCENT:
        return (payment_amount * reward_value) // 100
    return reward_value
