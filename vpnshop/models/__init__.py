from vpnshop.models.app_settings import AppSettings
from vpnshop.models.payment import Payment
from vpnshop.models.plan import Plan
from vpnshop.models.promo_code import PromoCode, PromoUsage
from vpnshop.models.service import Service
from vpnshop.models.user import User
from vpnshop.models.wallet_transaction import WalletTransaction

__all__ = [
    "AppSettings",
    "Payment",
    "Plan",
    "PromoCode",
    "PromoUsage",
    "Service",
    "User",
    "WalletTransaction",
]
