"""Tests for PaymentOrchestrator — wallet/manual flows, fulfillment, compensation, trial."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from vpnshop.core.errors import (
    FeatureDisabled,
    InsufficientFunds,
    InvalidAmount,
    InvalidPaymentState,
    PanelError,
    PaymentInProgress,
    PaymentNotFound,
    PlanNotFound,
    PromoInvalid,
    ServiceNameDuplicate,
    ServiceNotFound,
    StateConflict,
    TrialAlreadyUsed,
    ValidationError,
)
from vpnshop.models.payment import Payment, PaymentGateway, PaymentStatus, PaymentType
from vpnshop.models.promo_code import PromoCode, PromoUsage
from vpnshop.models.service import Service
from vpnshop.models.user import User
from vpnshop.models.wallet_transaction import WalletTransaction, WalletTransactionType
from vpnshop.services.app_settings.settings_service import AppSettingsService
from vpnshop.utils.format import as_utc


def _payment_row(db, user, status, gateway=PaymentGateway.MANUAL, type=PaymentType.WALLET_CHARGE, amount=50_000):
    payment = Payment(
        user_id=user.id,
        type=type,
        gateway=gateway,
        status=status,
        amount_tomans=amount,
        amount_rials=amount * 10,
        details={"kind": "charge"},
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def _ledger(db, user_id):
    return db.query(WalletTransaction).filter(WalletTransaction.user_id == user_id).all()


class TestWalletPurchase:
    def test_purchase_debits_and_provisions(self, db, orchestrator, panel, make_user, make_plan):
        user = make_user(telegram_id="1001", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)

        payment = orchestrator.create_purchase_payment("1001", plan.id, "home", PaymentGateway.WALLET)

        assert payment.status == PaymentStatus.SUCCESS
        assert payment.completed_at is not None
        assert db.get(User, user.id).wallet_balance == 70_000
        ledger = _ledger(db, user.id)
        assert [(r.amount_tomans, r.type) for r in ledger] == [(-130_000, WalletTransactionType.PURCHASE)]
        services = db.query(Service).filter(Service.user_id == user.id).all()
        assert len(services) == 1
        assert services[0].name == "home"
        assert services[0].plan_id == plan.id
        assert payment.target_service_id == services[0].id
        panel.create_account.assert_called_once()
        assert panel.create_account.call_args.kwargs["traffic_limit_bytes"] == 50 * 1024 ** 3

    def test_purchase_with_fixed_promo(self, db, orchestrator, make_user, make_plan, make_promo):
        user = make_user(telegram_id="1002", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)
        promo = make_promo(code="50OFF", fixed_tomans=50_000, uses_left=5)

        payment = orchestrator.create_purchase_payment("1002", plan.id, "home", PaymentGateway.WALLET, "50off")

        assert payment.amount_tomans == 80_000
        assert db.get(User, user.id).wallet_balance == 120_000
        db.refresh(promo)
        assert promo.uses_left == 4
        assert db.query(PromoUsage).filter(PromoUsage.payment_id == payment.id).count() == 1

    def test_insufficient_balance_creates_no_payment(self, db, orchestrator, make_user, make_plan):
        make_user(telegram_id="1003", wallet_balance=1000)
        plan = make_plan(price_tomans=130_000)

        with pytest.raises(InsufficientFunds):
            orchestrator.create_purchase_payment("1003", plan.id, "home", PaymentGateway.WALLET)

        assert db.query(Payment).count() == 0

    def test_zero_amount_order_skips_debit(self, db, orchestrator, make_user, make_plan, make_promo):
        user = make_user(telegram_id="1004", wallet_balance=0)
        plan = make_plan(price_tomans=130_000)
        make_promo(code="FREE100", discount_percent=100, uses_left=1)

        payment = orchestrator.create_purchase_payment("1004", plan.id, "home", PaymentGateway.MANUAL, "FREE100")

        assert payment.gateway == PaymentGateway.WALLET
        assert payment.status == PaymentStatus.SUCCESS
        assert _ledger(db, user.id) == []

    def test_duplicate_service_name(self, orchestrator, make_user, make_plan, make_service):
        user = make_user(telegram_id="1005", wallet_balance=500_000)
        plan = make_plan()
        make_service(user, plan, name="home")

        with pytest.raises(ServiceNameDuplicate):
            orchestrator.create_purchase_payment("1005", plan.id, "home", PaymentGateway.WALLET)

    def test_invalid_service_name(self, orchestrator, make_user, make_plan):
        make_user(telegram_id="1006", wallet_balance=500_000)
        plan = make_plan()
        with pytest.raises(ValidationError):
            orchestrator.create_purchase_payment("1006", plan.id, "no spaces!", PaymentGateway.WALLET)

    def test_inactive_plan(self, orchestrator, make_user, make_plan):
        make_user(telegram_id="1007", wallet_balance=500_000)
        plan = make_plan(is_active=False)
        with pytest.raises(PlanNotFound):
            orchestrator.create_purchase_payment("1007", plan.id, "home", PaymentGateway.WALLET)

    def test_banned_user(self, orchestrator, make_user, make_plan):
        make_user(telegram_id="1008", wallet_balance=500_000, is_banned=True)
        plan = make_plan()
        with pytest.raises(StateConflict) as exc_info:
            orchestrator.create_purchase_payment("1008", plan.id, "home", PaymentGateway.WALLET)
        assert exc_info.value.code == "USER_BANNED"

    def test_panel_failure_refunds_wallet(self, db, orchestrator, panel, make_user, make_plan):
        user = make_user(telegram_id="1009", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)
        panel.create_account.side_effect = PanelError("panel down", retryable=True)

        with pytest.raises(PanelError):
            orchestrator.create_purchase_payment("1009", plan.id, "home", PaymentGateway.WALLET)

        payment = db.query(Payment).one()
        db.refresh(payment)
        assert payment.status == PaymentStatus.FAILED
        assert "PANEL_ERROR" in payment.review_note
        assert db.get(User, user.id).wallet_balance == 200_000
        assert sorted(r.type for r in _ledger(db, user.id)) == [
            WalletTransactionType.PURCHASE,
            WalletTransactionType.REFUND,
        ]
        assert db.query(Service).count() == 0

    def test_refund_written_once(self, db, orchestrator, panel, make_user, make_plan):
        make_user(telegram_id="1010", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)
        panel.create_account.side_effect = PanelError("panel down")

        with pytest.raises(PanelError):
            orchestrator.create_purchase_payment("1010", plan.id, "home", PaymentGateway.WALLET)
        payment = db.query(Payment).one()

        assert orchestrator.gateway(PaymentGateway.WALLET).refund_if_failed(payment.id) is False
        refunds = db.query(WalletTransaction).filter(WalletTransaction.type == WalletTransactionType.REFUND).count()
        assert refunds == 1

    def test_fulfillment_failure_reaches_admins(self, db, orchestrator, panel, delivery, make_user, make_plan):
        make_user(telegram_id="1011", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)
        panel.create_account.side_effect = PanelError("panel down", retryable=True)

        with pytest.raises(PanelError):
            orchestrator.create_purchase_payment("1011", plan.id, "home", PaymentGateway.WALLET)

        payment = db.query(Payment).one()
        delivery.notify_completion_failed.assert_called_once()
        reported, error = delivery.notify_completion_failed.call_args.args
        assert reported.id == payment.id
        assert isinstance(error, PanelError)

    def test_database_error_during_debit_fails_payment(self, db, orchestrator, monkeypatch, make_user, make_plan):
        user = make_user(telegram_id="1012", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)

        def locked(*args, **kwargs):
            raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock wait timeout"))

        monkeypatch.setattr(orchestrator.wallet, "debit", locked)

        with pytest.raises(OperationalError):
            orchestrator.create_purchase_payment("1012", plan.id, "home", PaymentGateway.WALLET)

        payment = db.query(Payment).one()
        db.refresh(payment)
        assert payment.status == PaymentStatus.FAILED
        assert payment.review_note == "wallet debit failed: OperationalError"
        assert db.get(User, user.id).wallet_balance == 200_000
        assert _ledger(db, user.id) == []


class TestIdempotency:
    def test_second_process_returns_same_result(self, db, orchestrator, panel, make_user, make_plan):
        user = make_user(telegram_id="2001", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)
        payment = orchestrator.create_purchase_payment("2001", plan.id, "home", PaymentGateway.WALLET)

        again = orchestrator.process_successful_payment(payment.id)

        assert again.status == PaymentStatus.SUCCESS
        assert again.id == payment.id
        assert panel.create_account.call_count == 1
        assert db.get(User, user.id).wallet_balance == 70_000
        assert db.query(Service).count() == 1

    def test_processing_raises_in_progress(self, db, orchestrator, make_user):
        user = make_user()
        payment = _payment_row(db, user, PaymentStatus.PROCESSING)

        with pytest.raises(PaymentInProgress):
            orchestrator.process_successful_payment(payment.id)

    @pytest.mark.parametrize("status", [PaymentStatus.FAILED, PaymentStatus.CANCELED])
    def test_terminal_non_success_rejected(self, db, orchestrator, make_user, status):
        user = make_user()
        payment = _payment_row(db, user, status)

        with pytest.raises(InvalidPaymentState):
            orchestrator.process_successful_payment(payment.id)

    def test_unknown_payment(self, orchestrator):
        with pytest.raises(PaymentNotFound):
            orchestrator.process_successful_payment("does-not-exist")

    def test_mark_failed_is_noop_when_terminal(self, db, orchestrator, make_user):
        user = make_user()
        payment = _payment_row(db, user, PaymentStatus.SUCCESS)

        assert orchestrator.mark_payment_failed(payment.id, "late") is False
        db.refresh(payment)
        assert payment.status == PaymentStatus.SUCCESS

    def test_mark_failed_moves_pending(self, db, orchestrator, make_user):
        user = make_user()
        payment = _payment_row(db, user, PaymentStatus.PENDING, gateway=PaymentGateway.HOSTED)

        assert orchestrator.mark_payment_failed(payment.id, "gateway said no") is True
        db.refresh(payment)
        assert payment.status == PaymentStatus.FAILED
        assert payment.review_note == "gateway said no"


class TestPromoRace:
    def test_last_use_goes_to_one_payment(self, db, orchestrator, panel, make_user, make_plan, make_promo):
        make_user(telegram_id="3001")
        make_user(telegram_id="3002")
        plan = make_plan(price_tomans=130_000)
        promo = make_promo(code="ONLY1", fixed_tomans=50_000, uses_left=1)

        # both intents see the code as valid; only one can redeem it
        first = orchestrator.create_purchase_payment("3001", plan.id, "home", PaymentGateway.MANUAL, "ONLY1")
        second = orchestrator.create_purchase_payment("3002", plan.id, "home", PaymentGateway.MANUAL, "ONLY1")
        assert first.amount_tomans == second.amount_tomans == 80_000

        assert orchestrator.approve_manual_payment(first.id, "admin").status == PaymentStatus.SUCCESS
        with pytest.raises(PromoInvalid):
            orchestrator.approve_manual_payment(second.id, "admin")

        db.refresh(promo)
        assert promo.uses_left == 0
        assert db.query(PromoUsage).count() == 1
        assert orchestrator.get_payment(second.id).status == PaymentStatus.FAILED
        # the remote account created for the losing payment is removed again
        panel.delete_account.assert_called_once()
        assert db.query(Service).count() == 1


class TestRenewal:
    def test_expired_service_extends_from_now(self, db, orchestrator, panel, make_user, make_plan, make_service):
        user = make_user(telegram_id="4001", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000, duration_days=30)
        service = make_service(
            user,
            plan,
            expire_at=datetime.now(timezone.utc) - timedelta(days=5),
            is_active=False,
            last_known_used_bytes=10,
        )

        payment = orchestrator.create_renew_payment("4001", service.id, PaymentGateway.WALLET)

        assert payment.status == PaymentStatus.SUCCESS
        assert payment.target_service_id == service.id
        db.refresh(service)
        expected = datetime.now(timezone.utc) + timedelta(days=30)
        assert abs((as_utc(service.expire_at) - expected).total_seconds()) < 60
        assert service.is_active is True
        assert service.last_known_used_bytes == 0
        assert panel.update_account.call_args.kwargs["enabled"] is True
        panel.reset_usage.assert_called_once_with(service.remote_account_id)

    def test_active_service_extends_from_expiry(self, db, orchestrator, make_user, make_plan, make_service):
        user = make_user(telegram_id="4002", wallet_balance=200_000)
        plan = make_plan(duration_days=30)
        current = datetime.now(timezone.utc) + timedelta(days=10)
        service = make_service(user, plan, expire_at=current)

        orchestrator.create_renew_payment("4002", service.id, PaymentGateway.WALLET)

        db.refresh(service)
        assert abs((as_utc(service.expire_at) - (current + timedelta(days=30))).total_seconds()) < 1

    def test_usage_reset_before_extension(self, orchestrator, panel, make_user, make_plan, make_service):
        user = make_user(telegram_id="4007", wallet_balance=200_000)
        service = make_service(user, make_plan())

        orchestrator.create_renew_payment("4007", service.id, PaymentGateway.WALLET)

        remote_calls = [c[0] for c in panel.method_calls if c[0] in ("reset_usage", "update_account")]
        assert remote_calls == ["reset_usage", "update_account"]

    def test_reset_failure_leaves_account_untouched(
        self, db, orchestrator, panel, make_user, make_plan, make_service
    ):
        user = make_user(telegram_id="4003", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000)
        service = make_service(user, plan)
        panel.reset_usage.side_effect = PanelError("reset failed")

        with pytest.raises(PanelError):
            orchestrator.create_renew_payment("4003", service.id, PaymentGateway.WALLET)

        panel.update_account.assert_not_called()
        assert db.get(User, user.id).wallet_balance == 200_000
        assert db.query(Payment).one().status == PaymentStatus.FAILED

    def test_later_failure_restores_limit_and_expiry(
        self, db, orchestrator, panel, monkeypatch, make_user, make_plan, make_service
    ):
        user = make_user(telegram_id="4008", wallet_balance=200_000)
        plan = make_plan(price_tomans=130_000, traffic_gb=100)
        service = make_service(user, plan)
        prev_limit = service.traffic_limit_bytes

        def exhausted(payment):
            raise PromoInvalid()

        monkeypatch.setattr(orchestrator.promos, "consume", exhausted)

        with pytest.raises(PromoInvalid):
            orchestrator.create_renew_payment("4008", service.id, PaymentGateway.WALLET)

        assert panel.update_account.call_count == 2
        restore = panel.update_account.call_args_list[1]
        assert restore.args[1] == prev_limit
        assert db.get(User, user.id).wallet_balance == 200_000

    def test_trial_not_renewable(self, orchestrator, make_user, make_service):
        user = make_user(telegram_id="4004", wallet_balance=200_000)
        service = make_service(user, None, is_trial=True, name="test-1234")

        with pytest.raises(StateConflict) as exc_info:
            orchestrator.create_renew_payment("4004", service.id, PaymentGateway.WALLET)
        assert exc_info.value.code == "SERVICE_NOT_RENEWABLE"

    def test_other_users_service(self, orchestrator, make_user, make_plan, make_service):
        owner = make_user(telegram_id="4005")
        make_user(telegram_id="4006", wallet_balance=200_000)
        service = make_service(owner, make_plan())

        with pytest.raises(ServiceNotFound):
            orchestrator.create_renew_payment("4006", service.id, PaymentGateway.WALLET)

    def test_renewals_disabled(self, db, orchestrator, make_user, make_plan, make_service):
        user = make_user(telegram_id="4007", wallet_balance=200_000)
        service = make_service(user, make_plan())
        AppSettingsService(db).update({"enable_renewals": False})

        with pytest.raises(FeatureDisabled):
            orchestrator.create_renew_payment("4007", service.id, PaymentGateway.WALLET)


class TestWalletCharge:
    def test_manual_charge_credits_on_approval(self, db, orchestrator, make_user):
        user = make_user(telegram_id="5001", wallet_balance=0)

        payment = orchestrator.create_wallet_charge_payment("5001", 50_000, PaymentGateway.MANUAL)
        assert payment.status == PaymentStatus.WAITING_REVIEW

        done = orchestrator.approve_manual_payment(payment.id, reviewer_user_id="admin-1")

        assert done.status == PaymentStatus.SUCCESS
        assert done.reviewed_by_user_id == "admin-1"
        assert db.get(User, user.id).wallet_balance == 50_000
        assert [r.type for r in _ledger(db, user.id)] == [WalletTransactionType.CHARGE]

    def test_charge_out_of_range(self, orchestrator, make_user):
        make_user(telegram_id="5002")
        with pytest.raises(InvalidAmount) as exc_info:
            orchestrator.create_wallet_charge_payment("5002", 5_000, PaymentGateway.MANUAL)
        assert exc_info.value.code == "INVALID_WALLET_RANGE"

    @pytest.mark.parametrize("amount", [0, -100, 50_000.0, "50000"])
    def test_charge_amount_must_be_int(self, orchestrator, make_user, amount):
        make_user(telegram_id="5003")
        with pytest.raises(InvalidAmount):
            orchestrator.create_wallet_charge_payment("5003", amount, PaymentGateway.MANUAL)

    def test_wallet_cannot_charge_itself(self, orchestrator, make_user):
        make_user(telegram_id="5004")
        with pytest.raises(ValidationError):
            orchestrator.create_wallet_charge_payment("5004", 50_000, PaymentGateway.WALLET)

    def test_disabled_gateway(self, db, orchestrator, make_user):
        make_user(telegram_id="5005")
        AppSettingsService(db).update({"enable_manual_payment": False})
        with pytest.raises(FeatureDisabled):
            orchestrator.create_wallet_charge_payment("5005", 50_000, PaymentGateway.MANUAL)
        assert db.query(Payment).count() == 0


class TestManualReview:
    def test_receipt_then_reject(self, db, orchestrator, make_user):
        make_user(telegram_id="6001")
        payment = orchestrator.create_wallet_charge_payment("6001", 50_000, PaymentGateway.MANUAL)

        submitted = orchestrator.submit_manual_receipt(payment.id, "file-abc")
        assert submitted.manual_receipt_file_id == "file-abc"
        assert submitted.status == PaymentStatus.WAITING_REVIEW
        assert [p.id for p in orchestrator.list_pending_manual()] == [payment.id]

        rejected = orchestrator.reject_manual_payment(payment.id, "admin-1", "blurry receipt")
        assert rejected.status == PaymentStatus.CANCELED
        assert rejected.review_note == "blurry receipt"
        assert orchestrator.list_pending_manual() == []

        with pytest.raises(InvalidPaymentState):
            orchestrator.approve_manual_payment(payment.id, "admin-2")

    def test_reject_twice(self, orchestrator, make_user):
        make_user(telegram_id="6002")
        payment = orchestrator.create_wallet_charge_payment("6002", 50_000, PaymentGateway.MANUAL)
        orchestrator.reject_manual_payment(payment.id)
        with pytest.raises(InvalidPaymentState):
            orchestrator.reject_manual_payment(payment.id)

    def test_receipt_without_file(self, orchestrator, make_user):
        make_user(telegram_id="6003")
        payment = orchestrator.create_wallet_charge_payment("6003", 50_000, PaymentGateway.MANUAL)
        with pytest.raises(ValidationError):
            orchestrator.submit_manual_receipt(payment.id, "")

    def test_cancel_by_owner(self, db, orchestrator, make_user):
        owner = make_user(telegram_id="6004")
        stranger = make_user(telegram_id="6005")
        payment = orchestrator.create_wallet_charge_payment("6004", 50_000, PaymentGateway.MANUAL)

        with pytest.raises(PaymentNotFound):
            orchestrator.cancel_payment(payment.id, stranger)

        canceled = orchestrator.cancel_payment(payment.id, owner)
        assert canceled.status == PaymentStatus.CANCELED
        with pytest.raises(InvalidPaymentState):
            orchestrator.cancel_payment(payment.id, owner)


class TestReferralReward:
    def test_first_purchase_rewards_referrer_once(self, db, orchestrator, make_user, make_plan):
        referrer = make_user(telegram_id="7001", wallet_balance=0)
        buyer = make_user(telegram_id="7002", wallet_balance=500_000, referred_by_user_id=referrer.id)
        plan = make_plan(price_tomans=130_000)

        orchestrator.create_purchase_payment("7002", plan.id, "home", PaymentGateway.WALLET)
        orchestrator.create_purchase_payment("7002", plan.id, "office", PaymentGateway.WALLET)

        assert db.get(User, referrer.id).wallet_balance == 15_000
        rewards = [r for r in _ledger(db, referrer.id) if r.type == WalletTransactionType.AFFILIATE_REWARD]
        assert len(rewards) == 1
        assert db.get(User, buyer.id).affiliate_reward_processed is True


class TestTrial:
    def test_trial_created_once(self, db, orchestrator, panel, make_user):
        user = make_user(telegram_id="8001")

        service = orchestrator.create_trial_subscription("8001")

        assert service.is_trial is True
        assert service.plan_id is None
        assert service.name.startswith("test-")
        assert service.traffic_limit_bytes == 1024 ** 3
        assert db.get(User, user.id).used_trial is True
        with pytest.raises(TrialAlreadyUsed):
            orchestrator.create_trial_subscription("8001")
        assert panel.create_account.call_count == 1

    def test_failed_trial_releases_reservation(self, db, orchestrator, panel, make_user):
        user = make_user(telegram_id="8002")
        panel.create_account.side_effect = PanelError("panel down", retryable=True)

        with pytest.raises(PanelError):
            orchestrator.create_trial_subscription("8002")

        db.expire_all()
        assert db.get(User, user.id).used_trial is False
        assert db.query(Service).count() == 0

    def test_trial_disabled(self, db, orchestrator, make_user):
        make_user(telegram_id="8003")
        AppSettingsService(db).update({"test_enabled": False})
        with pytest.raises(FeatureDisabled):
            orchestrator.create_trial_subscription("8003")


class TestCompletionFailureReport:
    def test_reports_only_failed_payments(self, db, orchestrator, delivery, make_user):
        user = make_user()
        failed = _payment_row(db, user, PaymentStatus.FAILED)
        pending = _payment_row(db, user, PaymentStatus.PENDING)
        error = PanelError("boom")

        assert orchestrator.report_completion_failure(failed.id, error) is True
        assert orchestrator.report_completion_failure(pending.id, error) is False
        delivery.notify_completion_failed.assert_called_once()


def test_promo_count_untouched_when_intent_rejected(db, orchestrator, make_user, make_plan, make_promo):
    make_user(telegram_id="9001", wallet_balance=10)
    plan = make_plan(price_tomans=130_000)
    promo = make_promo(code="KEEPME", fixed_tomans=1_000, uses_left=1)

    with pytest.raises(InsufficientFunds):
        orchestrator.create_purchase_payment("9001", plan.id, "home", PaymentGateway.WALLET, "KEEPME")

    assert db.query(PromoCode).filter(PromoCode.id == promo.id).one().uses_left == 1
