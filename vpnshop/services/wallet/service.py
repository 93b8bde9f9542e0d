import logging

from sqlalchemy.orm import Session as DBSession

from vpnshop.core.errors import InsufficientFunds, InvalidAmount, UserNotFound
from vpnshop.models.user import User
from vpnshop.models.wallet_transaction import WalletTransaction, WalletTransactionType
from vpnshop.utils.metrics import wallet_operations_total, wallet_rejected_total

logger = logging.getLogger(__name__)


class WalletService:
    """
    Wallet balance lives on User; every change appends one WalletTransaction.

    Balance and ledger row are written under the same row lock and flushed
    together. The caller owns commit/rollback.
    """

    def __init__(self, db: DBSession):
        self.db = db

    def credit(
        self,
        user_id: str,
        amount: int,
        type: str,
        description: str | None = None,
        payment_id: str | None = None,
    ) -> int:
        self._check_amount(amount)
        return self._apply_delta(user_id, amount, type, description, payment_id)

    def debit(
        self,
        user_id: str,
        amount: int,
        type: str,
        description: str | None = None,
        payment_id: str | None = None,
    ) -> int:
        """Raises InsufficientFunds if the balance would go negative."""
        self._check_amount(amount)
        return self._apply_delta(user_id, -amount, type, description, payment_id)

    def get_balance(self, user_id: str) -> int:
        user = self.db.query(User).filter(User.id == user_id).one_or_none()
        if not user:
            raise UserNotFound()
        return user.wallet_balance or 0

    def list_transactions(self, user_id: str, limit: int = 20) -> list[WalletTransaction]:
        return (
            self.db.query(WalletTransaction)
            .filter(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc())
            .limit(limit)
            .all()
        )

    def admin_adjust(self, telegram_id: str, delta: int, admin_user_id: str | None = None) -> int:
        """Signed manual correction by an admin. Zero is rejected."""
        user = self.db.query(User).filter(User.telegram_id == str(telegram_id)).one_or_none()
        if not user:
            raise UserNotFound()
        description = f"admin adjust by {admin_user_id or 'api'}"
        if isinstance(delta, int) and delta < 0:
            return self.debit(user.id, -delta, WalletTransactionType.ADMIN_ADJUST, description)
        return self.credit(user.id, delta, WalletTransactionType.ADMIN_ADJUST, description)

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount("Amount must be a positive whole number of tomans")

    def _apply_delta(
        self,
        user_id: str,
        delta: int,
        type: str,
        description: str | None,
        payment_id: str | None,
    ) -> int:
        locked = (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if not locked:
            raise UserNotFound()

        new_balance = (locked.wallet_balance or 0) + delta
        if new_balance < 0:
            wallet_rejected_total.inc()
            logger.info(
                "wallet_debit_rejected",
                extra={"user_id": user_id, "amount": delta, "payment_id": payment_id},
            )
            raise InsufficientFunds()

        locked.wallet_balance = new_balance
        self.db.add(
            WalletTransaction(
                user_id=user_id,
                amount_tomans=delta,
                balance_after_tomans=new_balance,
                type=type,
                payment_id=payment_id,
                description=description,
            )
        )
        self.db.flush()
        wallet_operations_total.labels(operation=type).inc()
        logger.info(
            "wallet_balance_changed",
            extra={
                "user_id": user_id,
                "amount": delta,
                "new_balance": new_balance,
                "payment_id": payment_id,
            },
        )
        return new_balance
