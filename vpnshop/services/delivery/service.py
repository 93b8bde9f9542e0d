"""
User and admin notifications for payment outcomes.
Every send is best effort: failures are logged and never raised to the caller.
"""
import logging

from sqlalchemy.orm import Session as DBSession

from vpnshop.core.config import settings
from vpnshop.core.errors import PanelError
from vpnshop.models.payment import Payment, PaymentGateway, PaymentType
from vpnshop.models.service import Service
from vpnshop.models.user import User
from vpnshop.schemas.payments import parse_details
from vpnshop.services.panel.client import PanelClient, panel_client
from vpnshop.services.telegram.client import TelegramClient
from vpnshop.utils.currency import format_tomans
from vpnshop.utils.format import bytes_to_gb, days_left

logger = logging.getLogger(__name__)

COMPLETION_FAILED_TEXT = (
    "Your payment was received, but we could not finish setting up your order. "
    "Please contact support{support} and mention payment {payment_id}."
)
PAYMENT_FAILED_TEXT = (
    "Your payment {payment_id} did not go through. "
    "If your account was charged, contact support{support} with this payment id."
)


def manual_review_keyboard(payment_id: str) -> dict:
    return {
        "inline_keyboard": [
            [
                {"text": "Approve", "callback_data": f"manual_approve:{payment_id}"},
                {"text": "Reject", "callback_data": f"manual_deny:{payment_id}"},
            ]
        ]
    }


def format_service_access(service: Service, header: str) -> str:
    lines = [
        header,
        f"Service: {service.name}",
        f"Traffic: {bytes_to_gb(service.traffic_limit_bytes)} GB",
        f"Days left: {days_left(service.expire_at)}",
    ]
    if service.subscription_url:
        lines.append(f"Subscription link:\n{service.subscription_url}")
    return "\n".join(lines)


class DeliveryService:
    def __init__(
        self,
        db: DBSession,
        telegram: TelegramClient | None = None,
        panel: PanelClient | None = None,
    ):
        self.db = db
        self.telegram = telegram or TelegramClient()
        self.panel = panel or panel_client

    def _send(self, chat_id: str, text: str, reply_markup: dict | None = None) -> bool:
        try:
            self.telegram.send_message(chat_id, text, reply_markup=reply_markup)
            return True
        except Exception as e:
            logger.warning("notification_failed", extra={"chat_id": chat_id, "error": str(e)})
            return False

    def notify_admins(self, text: str, reply_markup: dict | None = None) -> int:
        sent = 0
        for admin_id in settings.admin_telegram_ids_set:
            if self._send(admin_id, text, reply_markup):
                sent += 1
        return sent

    def _refresh_link(self, service: Service) -> None:
        try:
            link = self.panel.get_subscription_link(service.remote_account_id)
        except PanelError as e:
            logger.warning("subscription_link_refresh_failed", extra={"service_id": service.id, "error": e.message})
            return
        if link and link != service.subscription_url:
            service.subscription_url = link
            self.db.add(service)
            self.db.commit()

    def _find_purchased_service(self, payment: Payment) -> Service | None:
        if payment.target_service_id:
            return self.db.query(Service).filter(Service.id == payment.target_service_id).one_or_none()
        details = parse_details(payment.details)
        name = getattr(details, "service_name", None)
        q = self.db.query(Service).filter(Service.user_id == payment.user_id, Service.is_trial.is_(False))
        if name:
            q = q.filter(Service.name == name)
        return q.order_by(Service.created_at.desc()).first()

    def deliver_service(self, user: User, service: Service, header: str) -> bool:
        self._refresh_link(service)
        return self._send(user.telegram_id, format_service_access(service, header))

    def deliver_payment_result(self, payment: Payment) -> bool:
        user = self.db.query(User).filter(User.id == payment.user_id).one_or_none()
        if not user:
            return False

        if payment.type == PaymentType.WALLET_CHARGE:
            return self._send(
                user.telegram_id,
                f"Wallet charged with {format_tomans(payment.amount_tomans)}.\n"
                f"Balance: {format_tomans(user.wallet_balance or 0)}",
            )

        service = self._find_purchased_service(payment)
        if not service:
            logger.warning("delivery_service_missing", extra={"payment_id": payment.id})
            return False

        if payment.type == PaymentType.RENEWAL:
            return self._send(
                user.telegram_id,
                f"Service {service.name} renewed.\n"
                f"New expiry: {service.expire_at:%Y-%m-%d} ({days_left(service.expire_at)} days left)\n"
                f"Traffic: {bytes_to_gb(service.traffic_limit_bytes)} GB",
            )
        return self.deliver_service(user, service, "Your purchase is ready.")

    def notify_completion_failed(self, payment: Payment, error: Exception) -> None:
        user = self.db.query(User).filter(User.id == payment.user_id).one_or_none()
        support = f" ({settings.support_handle})" if settings.support_handle else ""
        if user and payment.gateway != PaymentGateway.WALLET:
            self._send(user.telegram_id, COMPLETION_FAILED_TEXT.format(support=support, payment_id=payment.id))
        elif user:
            self._send(user.telegram_id, "We could not complete your order. Your wallet was not charged.")
        self.notify_admins(
            f"Payment completion failed\n"
            f"payment: {payment.id}\n"
            f"type: {payment.type} / {payment.gateway}\n"
            f"amount: {format_tomans(payment.amount_tomans)}\n"
            f"error: {getattr(error, 'message', None) or error}"
        )

    def notify_payment_failed(self, payment: Payment, reason: str) -> None:
        """The gateway reported a failed or unverifiable payment; nothing was fulfilled."""
        user = self.db.query(User).filter(User.id == payment.user_id).one_or_none()
        support = f" ({settings.support_handle})" if settings.support_handle else ""
        if user:
            self._send(user.telegram_id, PAYMENT_FAILED_TEXT.format(support=support, payment_id=payment.id))
        self.notify_admins(
            f"Payment failed at the gateway\n"
            f"payment: {payment.id}\n"
            f"user: {user.telegram_id if user else payment.user_id}\n"
            f"amount: {format_tomans(payment.amount_tomans)}\n"
            f"authority: {payment.authority or '-'}\n"
            f"reason: {reason}"
        )

    def notify_manual_review(self, payment: Payment) -> int:
        """Forward the receipt photo to every admin with approve/reject buttons."""
        user = self.db.query(User).filter(User.id == payment.user_id).one_or_none()
        caption = (
            f"Manual payment {payment.id}\n"
            f"user: {user.telegram_id if user else payment.user_id}\n"
            f"type: {payment.type}\n"
            f"amount: {format_tomans(payment.amount_tomans)}"
        )
        keyboard = manual_review_keyboard(payment.id)
        sent = 0
        for admin_id in settings.admin_telegram_ids_set:
            try:
                if payment.manual_receipt_file_id:
                    self.telegram.send_photo(admin_id, payment.manual_receipt_file_id, caption, keyboard)
                else:
                    self.telegram.send_message(admin_id, caption, reply_markup=keyboard)
                sent += 1
            except Exception as e:
                logger.warning("manual_review_notify_failed", extra={"chat_id": admin_id, "error": str(e)})
        return sent

    def notify_payment_rejected(self, payment: Payment) -> bool:
        user = self.db.query(User).filter(User.id == payment.user_id).one_or_none()
        if not user:
            return False
        note = f"\nReason: {payment.review_note}" if payment.review_note else ""
        return self._send(user.telegram_id, f"Your payment {payment.id} was rejected.{note}")

    def notify_low_resources(self, user: User, service: Service, remaining_gb: float, remaining_days: int) -> bool:
        return self._send(
            user.telegram_id,
            f"Your service {service.name} has only {int(remaining_gb)} GB / {max(remaining_days, 0)} days left.",
        )
