"""Tests for ReferralService — attribution and the first-purchase reward."""
from unittest.mock import MagicMock

import pytest

from vpnshop.models.app_settings import AffiliateRewardType
from vpnshop.models.payment import PaymentType
from vpnshop.models.user import User
from vpnshop.models.wallet_transaction import WalletTransaction, WalletTransactionType
from vpnshop.referral.config import build_referral_link, calc_reward_tomans, parse_referral
from vpnshop.referral.service import ReferralService
from vpnshop.services.app_settings.settings_service import AppSettingsService


class TestConfig:
    @pytest.mark.parametrize(
        "payload,expected",
        [("ref_12345", "12345"), ("ref=777", "777"), ("promo", None), (None, None), ("", None)],
    )
    def test_parse_referral(self, payload, expected):
        assert parse_referral(payload) == expected

    def test_reward_math(self):
        assert calc_reward_tomans(AffiliateRewardType.FIXED, 15_000, 130_000) == 15_000
        assert calc_reward_tomans(AffiliateRewardType.PERCENT, 10, 130_005) == 13_000

    def test_referral_link(self, monkeypatch):
        from vpnshop.core.config import settings

        monkeypatch.setattr(settings, "telegram_bot_username", "shop_bot")
        assert build_referral_link(42) == "https://t.me/shop_bot?start=ref_42"


class TestAttribution:
    def test_attribute_new_user(self, db, make_user):
        referrer = make_user(telegram_id="111")
        newcomer = make_user(telegram_id="222")

        assert ReferralService(db).attribute(newcomer, "111") is True
        db.commit()

        db.refresh(newcomer)
        assert newcomer.referred_by_user_id == referrer.id
        assert newcomer.referred_at is not None

    def test_attribute_is_set_once(self, db, make_user):
        first = make_user(telegram_id="111")
        make_user(telegram_id="333")
        newcomer = make_user(telegram_id="222", referred_by_user_id=first.id)

        assert ReferralService(db).attribute(newcomer, "333") is False
        assert newcomer.referred_by_user_id == first.id

    def test_self_referral_ignored(self, db, make_user):
        user = make_user(telegram_id="444")
        assert ReferralService(db).attribute(user, "444") is False

    def test_unknown_referrer(self, db, make_user):
        user = make_user(telegram_id="555")
        assert ReferralService(db).attribute(user, "999999") is False

    def test_disabled(self, db, make_user):
        make_user(telegram_id="111")
        newcomer = make_user(telegram_id="222")
        AppSettingsService(db).update({"enable_referrals": False})

        assert ReferralService(db).attribute(newcomer, "111") is False


def _payment(user_id, amount=130_000, type=PaymentType.PURCHASE):
    payment = MagicMock()
    payment.id = "pay-ref"
    payment.user_id = user_id
    payment.amount_tomans = amount
    payment.type = type
    return payment


class TestReward:
    def test_percent_reward(self, db, make_user):
        referrer = make_user(telegram_id="111")
        buyer = make_user(telegram_id="222", referred_by_user_id=referrer.id)
        AppSettingsService(db).update({"affiliate_reward_type": AffiliateRewardType.PERCENT, "affiliate_reward_value": 10})

        assert ReferralService(db).reward_if_needed(_payment(buyer.id)) == 13_000
        db.commit()

        assert db.get(User, referrer.id).wallet_balance == 13_000
        row = db.query(WalletTransaction).one()
        assert row.type == WalletTransactionType.AFFILIATE_REWARD
        assert row.payment_id == "pay-ref"

    def test_only_first_purchase(self, db, make_user):
        referrer = make_user(telegram_id="111")
        buyer = make_user(telegram_id="222", referred_by_user_id=referrer.id)
        svc = ReferralService(db)

        assert svc.reward_if_needed(_payment(buyer.id)) == 15_000
        db.commit()
        assert svc.reward_if_needed(_payment(buyer.id)) == 0

    def test_renewal_not_rewarded(self, db, make_user):
        referrer = make_user(telegram_id="111")
        buyer = make_user(telegram_id="222", referred_by_user_id=referrer.id)

        assert ReferralService(db).reward_if_needed(_payment(buyer.id, type=PaymentType.RENEWAL)) == 0
        db.refresh(buyer)
        assert buyer.affiliate_reward_processed is False

    def test_disabled_rewards_consume_flag(self, db, make_user):
        referrer = make_user(telegram_id="111")
        buyer = make_user(telegram_id="222", referred_by_user_id=referrer.id)
        AppSettingsService(db).update({"enable_affiliate_rewards": False})

        assert ReferralService(db).reward_if_needed(_payment(buyer.id)) == 0
        db.commit()

        db.refresh(buyer)
        assert buyer.affiliate_reward_processed is True
        assert db.get(User, referrer.id).wallet_balance == 0

    def test_user_without_referrer(self, db, make_user):
        buyer = make_user(telegram_id="222")
        assert ReferralService(db).reward_if_needed(_payment(buyer.id)) == 0
