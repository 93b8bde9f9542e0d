from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from vpnshop.db.base import Base


class WalletTransactionType:
    CHARGE = "CHARGE"
    PURCHASE = "PURCHASE"
    ADMIN_ADJUST = "ADMIN_ADJUST"
    AFFILIATE_REWARD = "AFFILIATE_REWARD"
    REFUND = "REFUND"


class WalletTransaction(Base):
    """Append-only wallet ledger. One row per balance change."""

    __tablename__ = "wallet_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount_tomans = Column(Integer, nullable=False)  # signed
    balance_after_tomans = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    payment_id = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
