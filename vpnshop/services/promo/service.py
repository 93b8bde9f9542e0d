import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from vpnshop.core.errors import InvalidPromoFormat, PromoExpired, PromoInvalid, ValidationError
from vpnshop.models.payment import Payment
from vpnshop.models.promo_code import PromoCode, PromoUsage
from vpnshop.utils.format import as_utc
from vpnshop.utils.metrics import promo_redemptions_total

logger = logging.getLogger(__name__)

PROMO_CODE_RE = re.compile(r"^[A-Z0-9_-]{3,40}$")


@dataclass(frozen=True)
class DiscountResult:
    final_amount: int
    promo_code_id: str | None = None


def normalize_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if not PROMO_CODE_RE.match(normalized):
        raise InvalidPromoFormat()
    return normalized


def apply_discount(amount: int, percent: int | None, fixed: int | None) -> int:
    """Percent first (floored), then fixed; never below zero."""
    final = amount
    if percent and percent > 0:
        final -= (amount * percent) // 100
    if fixed and fixed > 0:
        final -= fixed
    return max(final, 0)


class PromoService:
    def __init__(self, db: DBSession):
        self.db = db

    def compute_discount(self, base_amount: int, code: str | None = None) -> DiscountResult:
        """Resolve a promo code against a price. Does not consume it."""
        if not code or not code.strip():
            return DiscountResult(final_amount=base_amount)

        normalized = normalize_code(code)
        promo = self.db.query(PromoCode).filter(PromoCode.code == normalized).one_or_none()
        if not promo or not promo.is_active or (promo.uses_left or 0) <= 0:
            raise PromoInvalid()
        if promo.expires_at and as_utc(promo.expires_at) < datetime.now(timezone.utc):
            raise PromoExpired()

        final = apply_discount(base_amount, promo.discount_percent, promo.fixed_tomans)
        return DiscountResult(final_amount=final, promo_code_id=promo.id)

    def consume(self, payment: Payment) -> bool:
        """
        Redeem the payment's promo once. Returns True if a use was taken now.

        Decrement and usage row share the caller's transaction; a concurrent
        redemption of the last use affects zero rows and raises PromoInvalid.
        """
        if not payment.promo_code_id:
            return False

        existing = (
            self.db.query(PromoUsage)
            .filter(PromoUsage.payment_id == payment.id)
            .one_or_none()
        )
        if existing:
            return False

        result = self.db.execute(
            update(PromoCode)
            .where(
                PromoCode.id == payment.promo_code_id,
                PromoCode.uses_left > 0,
                PromoCode.is_active.is_(True),
            )
            .values(uses_left=PromoCode.uses_left - 1)
        )
        if result.rowcount == 0:
            logger.info(
                "promo_consume_rejected",
                extra={"payment_id": payment.id, "user_id": payment.user_id},
            )
            raise PromoInvalid("Promo code can no longer be used")

        self.db.add(
            PromoUsage(
                promo_code_id=payment.promo_code_id,
                user_id=payment.user_id,
                payment_id=payment.id,
            )
        )
        self.db.flush()
        promo_redemptions_total.inc()
        logger.info("promo_consumed", extra={"payment_id": payment.id, "user_id": payment.user_id})
        return True

    def create_promo(
        self,
        code: str,
        discount_percent: int | None = None,
        fixed_tomans: int | None = None,
        uses_left: int = 1,
        expires_at: datetime | None = None,
    ) -> PromoCode:
        normalized = normalize_code(code)
        if not discount_percent and not fixed_tomans:
            raise ValidationError("Promo code needs a percent or a fixed discount")
        if discount_percent is not None and not 0 < discount_percent <= 100:
            raise ValidationError("Percent must be between 1 and 100")
        if fixed_tomans is not None and fixed_tomans < 0:
            raise ValidationError("Fixed discount cannot be negative")
        if uses_left <= 0:
            raise ValidationError("Uses must be a positive number")

        promo = PromoCode(
            code=normalized,
            discount_percent=discount_percent,
            fixed_tomans=fixed_tomans,
            uses_left=uses_left,
            expires_at=expires_at,
        )
        self.db.add(promo)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("Promo code already exists")
        self.db.refresh(promo)
        return promo
