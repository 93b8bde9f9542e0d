"""
Provisioning on the remote panel: purchase, renewal, trial, sync and removal.

Remote side effects made during fulfillment register an undo step on a
FulfillmentSaga; the orchestrator runs them if the local transaction fails.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from vpnshop.core.errors import IntegrityCompensationFailure, PanelError, ServiceNameDuplicate
from vpnshop.models.app_settings import AppSettings
from vpnshop.models.payment import Payment
from vpnshop.models.plan import Plan
from vpnshop.models.service import Service
from vpnshop.models.user import User
from vpnshop.services.panel.client import PanelClient, panel_client
from vpnshop.utils.format import as_utc, build_remote_username, gb_to_bytes
from vpnshop.utils.metrics import compensation_failures_total

logger = logging.getLogger(__name__)


class FulfillmentSaga:
    """Undo steps for remote side effects, run newest first."""

    def __init__(self, payment_id: str | None = None) -> None:
        self.payment_id = payment_id
        self._steps: list[tuple[str, Callable[[], None]]] = []

    def add(self, name: str, undo: Callable[[], None]) -> None:
        self._steps.append((name, undo))

    def __len__(self) -> int:
        return len(self._steps)

    def compensate(self) -> list[str]:
        """Run every undo step. Returns names of steps that failed."""
        failed: list[str] = []
        while self._steps:
            name, undo = self._steps.pop()
            try:
                undo()
                logger.info("compensation_applied", extra={"payment_id": self.payment_id, "status": name})
            except Exception as e:
                failed.append(name)
                compensation_failures_total.inc()
                err = IntegrityCompensationFailure(f"{name} failed: {e}")
                logger.critical(
                    "compensation_failed",
                    extra={"payment_id": self.payment_id, "status": name, "error": err.message},
                )
        return failed


class ProvisioningService:
    def __init__(self, db: DBSession, panel: PanelClient | None = None):
        self.db = db
        self.panel = panel or panel_client

    def has_service_named(self, user_id: str, name: str) -> bool:
        return (
            self.db.query(Service.id)
            .filter(Service.user_id == user_id, Service.name == name)
            .first()
            is not None
        )

    def _subscription_url(self, account) -> str | None:
        if account.subscription_url:
            return account.subscription_url
        try:
            return self.panel.get_subscription_link(account.account_id)
        except PanelError as e:
            logger.warning("subscription_link_unavailable", extra={"account_id": account.account_id, "error": e.message})
            return None

    def _create_remote_service(
        self,
        user: User,
        name: str,
        traffic_limit_bytes: int,
        expire_at: datetime,
        saga: FulfillmentSaga,
        plan_id: str | None = None,
        squad_id: str | None = None,
        is_trial: bool = False,
    ) -> Service:
        username = build_remote_username(user.telegram_id, name)
        account = self.panel.create_account(
            username=username,
            traffic_limit_bytes=traffic_limit_bytes,
            expire_at=expire_at,
            owner_telegram_id=user.telegram_id,
            squad_ids=[squad_id] if squad_id else None,
        )
        account_id = account.account_id
        saga.add("delete_remote_account", lambda: self.panel.delete_account(account_id))

        service = Service(
            user_id=user.id,
            plan_id=plan_id,
            name=name,
            remote_username=username,
            remote_account_id=account_id,
            short_uuid=account.short_uuid,
            subscription_url=self._subscription_url(account),
            traffic_limit_bytes=traffic_limit_bytes,
            last_known_used_bytes=0,
            expire_at=expire_at,
            is_active=True,
            is_trial=is_trial,
        )
        self.db.add(service)
        try:
            self.db.flush()
        except IntegrityError:
            raise ServiceNameDuplicate()
        logger.info(
            "service_provisioned",
            extra={"service_id": service.id, "user_id": user.id, "account_id": account_id},
        )
        return service

    def provision_for_plan(self, user: User, plan: Plan, service_name: str, saga: FulfillmentSaga) -> Service:
        if self.has_service_named(user.id, service_name):
            raise ServiceNameDuplicate()
        expire_at = datetime.now(timezone.utc) + timedelta(days=plan.duration_days)
        return self._create_remote_service(
            user,
            service_name,
            gb_to_bytes(plan.traffic_gb),
            expire_at,
            saga,
            plan_id=plan.id,
            squad_id=plan.internal_squad_id,
        )

    def renew(self, service: Service, plan: Plan, saga: FulfillmentSaga) -> Service:
        """Extend from max(now, expiry), restore full traffic and re-enable."""
        now = datetime.now(timezone.utc)
        current_expiry = as_utc(service.expire_at)
        base = current_expiry if current_expiry and current_expiry > now else now
        new_expire_at = base + timedelta(days=plan.duration_days)
        new_limit = gb_to_bytes(plan.traffic_gb)

        account_id = service.remote_account_id
        prev_limit = service.traffic_limit_bytes
        prev_enabled = bool(service.is_active)

        # a usage reset cannot be undone; only the limit and expiry are restored
        self.panel.reset_usage(account_id)
        self.panel.update_account(account_id, new_limit, new_expire_at, enabled=True)
        saga.add(
            "restore_remote_account",
            lambda: self.panel.update_account(account_id, prev_limit, current_expiry or now, enabled=prev_enabled),
        )

        service.traffic_limit_bytes = new_limit
        service.expire_at = new_expire_at
        service.last_known_used_bytes = 0
        service.is_active = True
        self.db.add(service)
        self.db.flush()
        logger.info("service_renewed", extra={"service_id": service.id, "account_id": account_id})
        return service

    def create_trial(self, user: User, app_settings: AppSettings, saga: FulfillmentSaga) -> Service:
        name = f"test-{str(int(time.time() * 1000))[-4:]}"
        expire_at = datetime.now(timezone.utc) + timedelta(days=app_settings.test_duration_days or 1)
        return self._create_remote_service(
            user,
            name,
            int(app_settings.test_traffic_bytes),
            expire_at,
            saga,
            squad_id=app_settings.test_internal_squad_id,
            is_trial=True,
        )

    def sync_service(self, service: Service) -> tuple[int, datetime]:
        """Pull usage and expiry from the panel. Returns (remaining_bytes, expire_at)."""
        remote = self.panel.get_account_by_username(service.remote_username)
        expire_at = as_utc(remote.expire_at) if remote.expire_at else as_utc(service.expire_at)
        used = remote.used_traffic_bytes if remote.used_traffic_bytes is not None else service.last_known_used_bytes
        limit = remote.traffic_limit_bytes or service.traffic_limit_bytes

        service.expire_at = expire_at
        service.last_known_used_bytes = used
        service.subscription_url = remote.subscription_url or service.subscription_url
        service.short_uuid = remote.short_uuid or service.short_uuid
        self.db.add(service)
        self.db.flush()
        return max(limit - used, 0), expire_at

    def remove_service(self, service: Service, attempts: int = 2) -> bool:
        """Delete remotely, then locally. A 404 from the panel counts as already gone."""
        for attempt in range(1, attempts + 1):
            try:
                self.panel.delete_account(service.remote_account_id)
            except PanelError as e:
                if e.status_code != 404:
                    logger.warning(
                        "service_remove_failed",
                        extra={"service_id": service.id, "attempt": attempt, "error": e.message},
                    )
                    continue
            self.db.query(Payment).filter(Payment.target_service_id == service.id).update(
                {Payment.target_service_id: None}, synchronize_session=False
            )
            self.db.delete(service)
            self.db.flush()
            logger.info("service_removed", extra={"service_id": service.id, "status": "trial" if service.is_trial else "paid"})
            return True
        return False
