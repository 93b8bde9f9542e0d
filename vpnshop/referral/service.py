"""
ReferralService — one-time referrer capture and the first-purchase affiliate reward.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from vpnshop.models.payment import Payment, PaymentType
from vpnshop.models.user import User
from vpnshop.models.wallet_transaction import WalletTransactionType
from vpnshop.referral.config import calc_reward_tomans
from vpnshop.services.app_settings.settings_service import AppSettingsService
from vpnshop.services.wallet.service import WalletService

logger = logging.getLogger(__name__)


class ReferralService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    def attribute(self, referral_user: User, referrer_telegram_id: str) -> bool:
        """
        Assign referrer to a user. Idempotent — ignores if already attributed.
        Caller commits.
        """
        if referral_user.referred_by_user_id:
            return False

        if not AppSettingsService(self.db).get_or_create().enable_referrals:
            return False

        if str(referrer_telegram_id) == str(referral_user.telegram_id):
            return False

        referrer = (
            self.db.query(User)
            .filter(User.telegram_id == str(referrer_telegram_id))
            .one_or_none()
        )
        if not referrer:
            logger.warning("referrer_not_found", extra={"telegram_id": referrer_telegram_id})
            return False

        referral_user.referred_by_user_id = referrer.id
        referral_user.referred_at = datetime.now(timezone.utc)
        self.db.add(referral_user)
        self.db.flush()

        logger.info(
            "referral_attributed",
            extra={"user_id": referral_user.id, "telegram_id": referrer_telegram_id},
        )
        return True

    # ------------------------------------------------------------------
    # Affiliate reward (first purchase only)
    # ------------------------------------------------------------------

    def reward_if_needed(self, payment: Payment) -> int:
        """
        Credit the referrer once per referred user. Returns the credited amount.

        The processed flag is taken with a conditional update so concurrent
        fulfillments cannot both pay; the flag is consumed even when rewards
        are switched off or the amount comes out as zero.
        """
        if payment.type != PaymentType.PURCHASE:
            return 0

        user = self.db.query(User).filter(User.id == payment.user_id).one_or_none()
        if not user or not user.referred_by_user_id or user.affiliate_reward_processed:
            return 0

        result = self.db.execute(
            update(User)
            .where(User.id == user.id, User.affiliate_reward_processed.is_(False))
            .values(affiliate_reward_processed=True, first_purchase_at=datetime.now(timezone.utc))
        )
        if result.rowcount == 0:
            return 0

        app_settings = AppSettingsService(self.db).get_or_create()
        if not app_settings.enable_affiliate_rewards:
            logger.info("affiliate_reward_disabled", extra={"payment_id": payment.id})
            return 0

        amount = calc_reward_tomans(
            app_settings.affiliate_reward_type,
            app_settings.affiliate_reward_value or 0,
            payment.amount_tomans,
        )
        if amount <= 0:
            return 0

        WalletService(self.db).credit(
            user.referred_by_user_id,
            amount,
            WalletTransactionType.AFFILIATE_REWARD,
            description=f"affiliate reward for purchase by {user.telegram_id}",
            payment_id=payment.id,
        )
        logger.info(
            "affiliate_rewarded",
            extra={"payment_id": payment.id, "user_id": user.referred_by_user_id, "amount": amount},
        )
        return amount
