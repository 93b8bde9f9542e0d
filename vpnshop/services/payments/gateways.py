"""
Payment gateway adapters.

Each adapter knows the initial status of its payments and what happens right
after the payment row is created. Fulfillment itself always goes through
PaymentOrchestrator.process_successful_payment.
"""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from sqlalchemy import update

from vpnshop.core.config import settings
from vpnshop.core.errors import (
    AppError,
    FeatureDisabled,
    InvalidPaymentState,
    PaymentInProgress,
    PaymentNotFound,
    ValidationError,
)
from vpnshop.models.payment import Payment, PaymentGateway, PaymentStatus
from vpnshop.models.wallet_transaction import WalletTransaction, WalletTransactionType
from vpnshop.schemas.payments import HostedOrder
from vpnshop.services.gateway.client import STATUS_OK, HostedGatewayClient

if TYPE_CHECKING:
    from vpnshop.services.payments.orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

AUTHORITY_RE = re.compile(r"^[A-Za-z0-9_-]{6,128}$")


class CallbackResult:
    """Outcome codes returned by HostedGateway.reconcile."""

    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"
    INVALID_AUTHORITY = "invalid_authority"
    NOT_FOUND = "not_found"
    NOT_PAYABLE = "not_payable"
    PROVIDER_FAILED = "provider_failed"
    VERIFY_FAILED = "verify_failed"
    COMPLETION_FAILED = "completion_failed"


class PaymentGatewayAdapter:
    name: str = ""
    initial_status: str = PaymentStatus.PENDING
    toggle: str | None = None

    def __init__(self, orchestrator: PaymentOrchestrator):
        self.orchestrator = orchestrator
        self.db = orchestrator.db

    def ensure_enabled(self) -> None:
        if self.toggle is None:
            return
        app_settings = self.orchestrator.app_settings.get_or_create()
        if not getattr(app_settings, self.toggle):
            raise FeatureDisabled("This payment method is temporarily unavailable")

    def create_intent(self, payment: Payment) -> Payment:
        return payment


class WalletGateway(PaymentGatewayAdapter):
    """Debit first, then fulfill. A failed fulfillment refunds the debit."""

    name = PaymentGateway.WALLET

    def create_intent(self, payment: Payment) -> Payment:
        orch = self.orchestrator
        payment_id = payment.id
        try:
            if payment.amount_tomans > 0:
                orch.wallet.debit(
                    payment.user_id,
                    payment.amount_tomans,
                    WalletTransactionType.PURCHASE,
                    description=payment.description,
                    payment_id=payment_id,
                )
                self.db.commit()
        except Exception as e:
            # lock timeouts and other database errors must not leave the payment PENDING
            self.db.rollback()
            code = e.code if isinstance(e, AppError) else type(e).__name__
            orch.mark_payment_failed(payment_id, f"wallet debit failed: {code}")
            raise

        try:
            return orch.process_successful_payment(payment_id)
        except Exception as e:
            self.refund_if_failed(payment_id)
            orch.report_completion_failure(payment_id, e)
            raise

    def refund_if_failed(self, payment_id: str) -> bool:
        """Return the debit of a FAILED wallet payment once."""
        payment = self.db.get(Payment, payment_id, populate_existing=True)
        if not payment or payment.status != PaymentStatus.FAILED or payment.amount_tomans <= 0:
            return False
        already = (
            self.db.query(WalletTransaction.id)
            .filter(
                WalletTransaction.payment_id == payment_id,
                WalletTransaction.type == WalletTransactionType.REFUND,
            )
            .first()
        )
        if already:
            return False
        self.orchestrator.wallet.credit(
            payment.user_id,
            payment.amount_tomans,
            WalletTransactionType.REFUND,
            description="refund for failed order",
            payment_id=payment_id,
        )
        self.db.commit()
        logger.info("wallet_payment_refunded", extra={"payment_id": payment_id, "amount": payment.amount_tomans})
        return True


class HostedGateway(PaymentGatewayAdapter):
    """Redirect to the hosted page; fulfillment happens on a verified callback."""

    name = PaymentGateway.HOSTED
    toggle = "enable_hosted_payment"

    def __init__(self, orchestrator: PaymentOrchestrator, client: HostedGatewayClient):
        super().__init__(orchestrator)
        self.client = client

    def create_order(self, payment: Payment) -> HostedOrder:
        """Idempotent: a payment gets exactly one authority."""
        if payment.gateway != PaymentGateway.HOSTED or payment.status != PaymentStatus.PENDING:
            raise InvalidPaymentState("This payment cannot be paid online")
        if payment.authority:
            return HostedOrder(authority=payment.authority, pay_link=self.client.get_payment_link(payment.authority))

        created = self.client.create_order(
            hash_id=payment.hash_id,
            amount_rials=payment.amount_rials,
            callback_url=settings.hosted_callback_url,
        )
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.authority.is_(None))
            .values(authority=created.authority)
        )
        self.db.commit()
        if result.rowcount == 0:
            # another request stored its order first
            winner = self.db.get(Payment, payment.id, populate_existing=True)
            authority = winner.authority
        else:
            authority = created.authority
            logger.info("hosted_order_created", extra={"payment_id": payment.id, "authority": authority})
        return HostedOrder(authority=authority, pay_link=self.client.get_payment_link(authority))

    def reconcile(self, authority: str | None, status: int | str | None) -> str:
        """
        Handle a callback from the hosted gateway. Returns a CallbackResult code.

        The callback status is only a hint: success is confirmed with a
        server-side verify before anything is fulfilled.
        """
        orch = self.orchestrator
        authority = (authority or "").strip()
        if not AUTHORITY_RE.match(authority):
            return CallbackResult.INVALID_AUTHORITY

        payment = (
            self.db.query(Payment)
            .filter(Payment.authority == authority)
            .populate_existing()
            .one_or_none()
        )
        if not payment or payment.gateway != PaymentGateway.HOSTED:
            return CallbackResult.NOT_FOUND

        if payment.status == PaymentStatus.SUCCESS:
            return CallbackResult.ALREADY_PROCESSED
        if payment.status == PaymentStatus.PROCESSING:
            return CallbackResult.IN_PROGRESS
        if payment.status not in PaymentStatus.CLAIMABLE:
            return CallbackResult.NOT_PAYABLE

        try:
            provider_status = int(status)
        except (TypeError, ValueError):
            provider_status = None
        if provider_status != STATUS_OK:
            self._fail(payment, f"gateway callback status {status}")
            return CallbackResult.PROVIDER_FAILED

        verified = self.client.verify(authority)
        if not verified.ok:
            self._fail(payment, "gateway verify failed")
            return CallbackResult.VERIFY_FAILED

        try:
            orch.process_successful_payment(payment.id)
        except PaymentInProgress:
            return CallbackResult.IN_PROGRESS
        except InvalidPaymentState:
            return CallbackResult.NOT_PAYABLE
        except Exception as e:
            logger.exception("hosted_payment_completion_failed", extra={"payment_id": payment.id})
            orch.report_completion_failure(payment.id, e)
            return CallbackResult.COMPLETION_FAILED
        orch.delivery.deliver_payment_result(self.db.get(Payment, payment.id))
        return CallbackResult.SUCCESS


    def _fail(self, payment: Payment, reason: str) -> None:
        # repeated callbacks must not notify twice
        if self.orchestrator.mark_payment_failed(payment.id, reason):
            self.orchestrator.delivery.notify_payment_failed(payment, reason)


class ManualGateway(PaymentGatewayAdapter):
    """Card-to-card transfer; an admin approves the uploaded receipt."""

    name = PaymentGateway.MANUAL
    initial_status = PaymentStatus.WAITING_REVIEW
    toggle = "enable_manual_payment"

    def submit_receipt(self, payment_id: str, file_id: str) -> Payment:
        if not file_id:
            raise ValidationError("Please send the receipt as a photo")
        payment = self.db.get(Payment, payment_id)
        if not payment or payment.gateway != PaymentGateway.MANUAL:
            raise PaymentNotFound()
        moved = self.orchestrator._transition(
            payment_id,
            PaymentStatus.CLAIMABLE,
            PaymentStatus.WAITING_REVIEW,
            manual_receipt_file_id=file_id,
        )
        self.db.commit()
        if not moved:
            raise InvalidPaymentState("A receipt can no longer be sent for this payment")
        payment = self.db.get(Payment, payment_id, populate_existing=True)
        logger.info("manual_receipt_submitted", extra={"payment_id": payment_id, "user_id": payment.user_id})
        return payment

    def approve(self, payment_id: str, reviewer_user_id: str | None) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment or payment.gateway != PaymentGateway.MANUAL:
            raise PaymentNotFound()
        return self.orchestrator.process_successful_payment(payment_id, reviewed_by_user_id=reviewer_user_id)

    def reject(self, payment_id: str, reviewer_user_id: str | None, note: str | None) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment or payment.gateway != PaymentGateway.MANUAL:
            raise PaymentNotFound()
        moved = self.orchestrator._transition(
            payment_id,
            PaymentStatus.CLAIMABLE,
            PaymentStatus.CANCELED,
            reviewed_by_user_id=reviewer_user_id,
            review_note=note or "rejected by admin",
        )
        self.db.commit()
        if not moved:
            raise InvalidPaymentState("This payment was already reviewed")
        logger.info("manual_payment_rejected", extra={"payment_id": payment_id})
        return self.db.get(Payment, payment_id, populate_existing=True)
