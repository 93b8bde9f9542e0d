"""
PaymentOrchestrator — payment intents, the status machine and fulfillment.

Status only moves through _transition, a conditional UPDATE whose rowcount
tells the caller whether it won. The PROCESSING claim is committed before any
side effect, so a second worker sees PROCESSING and backs off.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from vpnshop.core.config import settings
from vpnshop.core.errors import (
    AppError,
    FeatureDisabled,
    InsufficientFunds,
    InvalidAmount,
    InvalidPaymentState,
    PaymentInProgress,
    PaymentNotFound,
    PlanNotFound,
    ServiceNameDuplicate,
    ServiceNotFound,
    StateConflict,
    TrialAlreadyUsed,
    ValidationError,
)
from vpnshop.models.payment import Payment, PaymentGateway, PaymentStatus, PaymentType
from vpnshop.models.plan import Plan
from vpnshop.models.service import Service
from vpnshop.models.user import User
from vpnshop.models.wallet_transaction import WalletTransactionType
from vpnshop.referral.service import ReferralService
from vpnshop.schemas.payments import (
    ChargeDetails,
    HostedOrder,
    PurchaseDetails,
    RenewalDetails,
    parse_details,
)
from vpnshop.services.app_settings.settings_service import AppSettingsService
from vpnshop.services.delivery.service import DeliveryService
from vpnshop.services.gateway.client import HostedGatewayClient, hosted_gateway_client
from vpnshop.services.panel.client import PanelClient, panel_client
from vpnshop.services.payments.gateways import (
    HostedGateway,
    ManualGateway,
    PaymentGatewayAdapter,
    WalletGateway,
)
from vpnshop.services.promo.service import PromoService
from vpnshop.services.provisioning.service import FulfillmentSaga, ProvisioningService
from vpnshop.services.users.service import UserService
from vpnshop.services.wallet.service import WalletService
from vpnshop.utils.currency import to_rials
from vpnshop.utils.format import ensure_service_name
from vpnshop.utils.metrics import (
    payments_created_total,
    payments_failed_total,
    payments_succeeded_total,
)

logger = logging.getLogger(__name__)


class PaymentOrchestrator:
    def __init__(
        self,
        db: DBSession,
        panel: PanelClient | None = None,
        hosted_client: HostedGatewayClient | None = None,
        delivery: DeliveryService | None = None,
    ):
        self.db = db
        self.panel = panel or panel_client
        self.hosted_client = hosted_client or hosted_gateway_client
        self.wallet = WalletService(db)
        self.promos = PromoService(db)
        self.provisioning = ProvisioningService(db, self.panel)
        self.referrals = ReferralService(db)
        self.app_settings = AppSettingsService(db)
        self.users = UserService(db)
        self._delivery = delivery

    @property
    def delivery(self) -> DeliveryService:
        if self._delivery is None:
            self._delivery = DeliveryService(self.db, panel=self.panel)
        return self._delivery

    def gateway(self, name: str) -> PaymentGatewayAdapter:
        if name == PaymentGateway.WALLET:
            return WalletGateway(self)
        if name == PaymentGateway.HOSTED:
            return HostedGateway(self, self.hosted_client)
        if name == PaymentGateway.MANUAL:
            return ManualGateway(self)
        raise ValidationError(f"Unknown payment method: {name}")

    # ------------------------------------------------------------------
    # Status primitive
    # ------------------------------------------------------------------

    def _transition(self, payment_id: str, allowed_from, to: str, **values) -> bool:
        """UPDATE ... WHERE id = :id AND status IN (:allowed_from). True if this call won."""
        values["updated_at"] = datetime.now(timezone.utc)
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(list(allowed_from)))
            .values(status=to, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.db.get(Payment, payment_id, populate_existing=True)
        if not payment:
            raise PaymentNotFound()
        return payment

    # ------------------------------------------------------------------
    # Intent creation
    # ------------------------------------------------------------------

    def _user_for(self, telegram_id: str) -> User:
        user, _ = self.users.get_or_create_user(str(telegram_id))
        if user.is_banned:
            raise StateConflict("Your account is blocked", code="USER_BANNED")
        return user

    def _insert_payment(
        self,
        user: User,
        type: str,
        gateway: PaymentGatewayAdapter,
        amount_tomans: int,
        details,
        description: str,
        plan_id: str | None = None,
        target_service_id: str | None = None,
        promo_code_id: str | None = None,
    ) -> Payment:
        payment = Payment(
            user_id=user.id,
            type=type,
            gateway=gateway.name,
            status=gateway.initial_status,
            amount_tomans=amount_tomans,
            amount_rials=to_rials(amount_tomans),
            plan_id=plan_id,
            target_service_id=target_service_id,
            promo_code_id=promo_code_id,
            details=details.model_dump(),
            description=description,
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        payments_created_total.labels(type=type, gateway=gateway.name).inc()
        logger.info(
            "payment_created",
            extra={
                "payment_id": payment.id,
                "user_id": user.id,
                "payment_type": type,
                "gateway": gateway.name,
                "amount": amount_tomans,
                "status": payment.status,
            },
        )
        return payment

    def _resolve_price(self, base_amount: int, promo_code: str | None):
        if promo_code and promo_code.strip():
            if not self.app_settings.get_or_create().enable_promos:
                raise FeatureDisabled("Promo codes are disabled right now")
        return self.promos.compute_discount(base_amount, promo_code)

    def _pick_gateway(self, gateway: str, amount: int) -> PaymentGatewayAdapter:
        # nothing to collect: settle through the wallet path without a debit
        if amount == 0:
            return self.gateway(PaymentGateway.WALLET)
        adapter = self.gateway(gateway)
        adapter.ensure_enabled()
        return adapter

    def create_wallet_charge_payment(self, telegram_id: str, amount_tomans: int, gateway: str) -> Payment:
        if isinstance(amount_tomans, bool) or not isinstance(amount_tomans, int) or amount_tomans <= 0:
            raise InvalidAmount("Charge amount is invalid")
        if not settings.min_wallet_charge_tomans <= amount_tomans <= settings.max_wallet_charge_tomans:
            raise InvalidAmount("Charge amount is out of the allowed range", code="INVALID_WALLET_RANGE")
        if gateway == PaymentGateway.WALLET:
            raise ValidationError("The wallet cannot be charged from itself")

        adapter = self.gateway(gateway)
        adapter.ensure_enabled()
        user = self._user_for(telegram_id)
        payment = self._insert_payment(
            user,
            PaymentType.WALLET_CHARGE,
            adapter,
            amount_tomans,
            ChargeDetails(),
            "wallet charge",
        )
        return adapter.create_intent(payment)

    def create_purchase_payment(
        self,
        telegram_id: str,
        plan_id: str,
        service_name: str,
        gateway: str,
        promo_code: str | None = None,
    ) -> Payment:
        if not self.app_settings.get_or_create().enable_new_purchases:
            raise FeatureDisabled("New purchases are paused right now")
        name = ensure_service_name(service_name)
        user = self._user_for(telegram_id)

        plan = self.db.query(Plan).filter(Plan.id == plan_id).one_or_none()
        if not plan or not plan.is_active:
            raise PlanNotFound()
        if self.provisioning.has_service_named(user.id, name):
            raise ServiceNameDuplicate()

        discount = self._resolve_price(plan.price_tomans, promo_code)
        adapter = self._pick_gateway(gateway, discount.final_amount)
        if adapter.name == PaymentGateway.WALLET and (user.wallet_balance or 0) < discount.final_amount:
            raise InsufficientFunds()

        payment = self._insert_payment(
            user,
            PaymentType.PURCHASE,
            adapter,
            discount.final_amount,
            PurchaseDetails(service_name=name),
            f"purchase {plan.name}",
            plan_id=plan.id,
            promo_code_id=discount.promo_code_id,
        )
        return adapter.create_intent(payment)

    def create_renew_payment(
        self,
        telegram_id: str,
        service_id: str,
        gateway: str,
        promo_code: str | None = None,
    ) -> Payment:
        if not self.app_settings.get_or_create().enable_renewals:
            raise FeatureDisabled("Renewals are paused right now")
        user = self._user_for(telegram_id)

        service = (
            self.db.query(Service)
            .filter(Service.id == service_id, Service.user_id == user.id)
            .one_or_none()
        )
        if not service:
            raise ServiceNotFound()
        if service.is_trial or not service.plan_id:
            raise StateConflict("Trial services cannot be renewed", code="SERVICE_NOT_RENEWABLE")
        plan = self.db.query(Plan).filter(Plan.id == service.plan_id).one_or_none()
        if not plan:
            raise PlanNotFound()

        discount = self._resolve_price(plan.price_tomans, promo_code)
        adapter = self._pick_gateway(gateway, discount.final_amount)
        if adapter.name == PaymentGateway.WALLET and (user.wallet_balance or 0) < discount.final_amount:
            raise InsufficientFunds()

        payment = self._insert_payment(
            user,
            PaymentType.RENEWAL,
            adapter,
            discount.final_amount,
            RenewalDetails(service_name=service.name),
            f"renew {service.name}",
            plan_id=plan.id,
            target_service_id=service.id,
            promo_code_id=discount.promo_code_id,
        )
        return adapter.create_intent(payment)

    # ------------------------------------------------------------------
    # Gateway steps
    # ------------------------------------------------------------------

    def create_hosted_order(self, payment_id: str) -> HostedOrder:
        payment = self.get_payment(payment_id)
        return self.gateway(PaymentGateway.HOSTED).create_order(payment)

    def handle_hosted_callback(self, authority: str | None, status) -> str:
        return self.gateway(PaymentGateway.HOSTED).reconcile(authority, status)

    def submit_manual_receipt(self, payment_id: str, file_id: str) -> Payment:
        return self.gateway(PaymentGateway.MANUAL).submit_receipt(payment_id, file_id)

    def approve_manual_payment(self, payment_id: str, reviewer_user_id: str | None = None) -> Payment:
        return self.gateway(PaymentGateway.MANUAL).approve(payment_id, reviewer_user_id)

    def reject_manual_payment(self, payment_id: str, reviewer_user_id: str | None = None, note: str | None = None) -> Payment:
        return self.gateway(PaymentGateway.MANUAL).reject(payment_id, reviewer_user_id, note)

    def list_pending_manual(self, limit: int = 50) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.gateway == PaymentGateway.MANUAL,
                Payment.status == PaymentStatus.WAITING_REVIEW,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    def process_successful_payment(self, payment_id: str, reviewed_by_user_id: str | None = None) -> Payment:
        """
        Fulfill a paid payment exactly once.

        SUCCESS is returned as-is; a concurrent PROCESSING raises
        PaymentInProgress; anything else raises InvalidPaymentState.
        """
        claim_values = {"reviewed_by_user_id": reviewed_by_user_id} if reviewed_by_user_id else {}
        claimed = self._transition(payment_id, PaymentStatus.CLAIMABLE, PaymentStatus.PROCESSING, **claim_values)
        self.db.commit()

        if not claimed:
            current = self.db.get(Payment, payment_id, populate_existing=True)
            if not current:
                raise PaymentNotFound()
            if current.status == PaymentStatus.SUCCESS:
                return current
            if current.status == PaymentStatus.PROCESSING:
                raise PaymentInProgress()
            raise InvalidPaymentState()

        payment = self.get_payment(payment_id)
        saga = FulfillmentSaga(payment_id)
        try:
            service_id = self._fulfill(payment, saga)
            self.promos.consume(payment)
            self.referrals.reward_if_needed(payment)
            done = self._transition(
                payment_id,
                [PaymentStatus.PROCESSING],
                PaymentStatus.SUCCESS,
                completed_at=datetime.now(timezone.utc),
                target_service_id=service_id,
            )
            if not done:
                raise InvalidPaymentState()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            saga.compensate()
            self._fail_processing(payment, e)
            raise

        payments_succeeded_total.labels(type=payment.type, gateway=payment.gateway).inc()
        logger.info(
            "payment_succeeded",
            extra={"payment_id": payment_id, "payment_type": payment.type, "gateway": payment.gateway},
        )
        return self.get_payment(payment_id)

    def _fulfill(self, payment: Payment, saga: FulfillmentSaga) -> str | None:
        """Apply the side effect for the payment type. Returns the affected service id."""
        if payment.type == PaymentType.WALLET_CHARGE:
            self.wallet.credit(
                payment.user_id,
                payment.amount_tomans,
                WalletTransactionType.CHARGE,
                description="wallet charge",
                payment_id=payment.id,
            )
            return None

        user = self.db.query(User).filter(User.id == payment.user_id).one()
        plan = self.db.query(Plan).filter(Plan.id == payment.plan_id).one_or_none()
        if not plan:
            raise PlanNotFound()

        if payment.type == PaymentType.PURCHASE:
            details = parse_details(payment.details)
            if not isinstance(details, PurchaseDetails):
                raise InvalidPaymentState("Purchase is missing the service name", code="PAYMENT_DATA_INVALID")
            service = self.provisioning.provision_for_plan(user, plan, details.service_name, saga)
            return service.id

        if payment.type == PaymentType.RENEWAL:
            service = self.db.query(Service).filter(Service.id == payment.target_service_id).one_or_none()
            if not service:
                raise ServiceNotFound()
            self.provisioning.renew(service, plan, saga)
            return service.id

        raise InvalidPaymentState(f"Unknown payment type {payment.type}")

    def _fail_processing(self, payment: Payment, error: Exception) -> None:
        payment_id = payment.id
        code = getattr(error, "code", type(error).__name__)
        note = f"completion failed: {code}"
        try:
            self._transition(payment_id, [PaymentStatus.PROCESSING], PaymentStatus.FAILED, review_note=note)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("payment_fail_mark_failed", extra={"payment_id": payment_id})
        payments_failed_total.labels(type=payment.type, gateway=payment.gateway, error_code=code).inc()
        log = logger.warning if isinstance(error, AppError) else logger.error
        log(
            "payment_completion_failed",
            extra={"payment_id": payment_id, "error": getattr(error, "message", str(error))},
            exc_info=not isinstance(error, AppError),
        )

    def mark_payment_failed(self, payment_id: str, reason: str) -> bool:
        """No-op (False) when the payment is already terminal."""
        moved = self._transition(
            payment_id,
            [PaymentStatus.PENDING, PaymentStatus.WAITING_REVIEW, PaymentStatus.PROCESSING],
            PaymentStatus.FAILED,
            review_note=reason,
        )
        self.db.commit()
        if moved:
            logger.info("payment_marked_failed", extra={"payment_id": payment_id, "error": reason})
        return moved

    def cancel_payment(self, payment_id: str, user: User) -> Payment:
        payment = self.get_payment(payment_id)
        if payment.user_id != user.id:
            raise PaymentNotFound()
        moved = self._transition(
            payment_id,
            PaymentStatus.CLAIMABLE,
            PaymentStatus.CANCELED,
            review_note="canceled by user",
        )
        self.db.commit()
        if not moved:
            raise InvalidPaymentState("This payment can no longer be canceled")
        logger.info("payment_canceled", extra={"payment_id": payment_id, "user_id": user.id})
        return self.get_payment(payment_id)

    # ------------------------------------------------------------------
    # Free trial
    # ------------------------------------------------------------------

    def create_trial_subscription(self, telegram_id: str) -> Service:
        user = self._user_for(telegram_id)
        app_settings = self.app_settings.get_or_create()
        if not app_settings.test_enabled:
            raise FeatureDisabled("Free trial is not available right now", code="TEST_DISABLED")

        reserved = self.db.execute(
            update(User)
            .where(User.id == user.id, User.used_trial.is_(False))
            .values(used_trial=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if reserved.rowcount == 0:
            raise TrialAlreadyUsed()

        saga = FulfillmentSaga()
        try:
            service = self.provisioning.create_trial(user, app_settings, saga)
            self.db.commit()
        except Exception:
            self.db.rollback()
            saga.compensate()
            self.db.execute(
                update(User)
                .where(User.id == user.id)
                .values(used_trial=False)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            logger.warning("trial_creation_failed", extra={"user_id": user.id})
            raise

        logger.info("trial_created", extra={"user_id": user.id, "service_id": service.id})
        return service

    def report_completion_failure(self, payment_id: str, error: Exception) -> bool:
        """Tell the user and admins when a payment ended FAILED during completion."""
        payment = self.db.get(Payment, payment_id, populate_existing=True)
        if not payment or payment.status != PaymentStatus.FAILED:
            return False
        self.delivery.notify_completion_failed(payment, error)
        return True
