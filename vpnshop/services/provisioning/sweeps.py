"""
Daily maintenance of provisioned services: panel sync with low-resource
notices, and removal of expired trial and paid services.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session as DBSession

from vpnshop.core.errors import PanelError
from vpnshop.models.service import Service
from vpnshop.models.user import User
from vpnshop.services.app_settings.settings_service import AppSettingsService
from vpnshop.services.delivery.service import DeliveryService
from vpnshop.services.provisioning.service import ProvisioningService
from vpnshop.utils.format import BYTES_PER_GB, days_left

logger = logging.getLogger(__name__)

PAID_SERVICE_GRACE_DAYS = 7


class SubscriptionSweeper:
    def __init__(self, db: DBSession, provisioning: ProvisioningService, delivery: DeliveryService):
        self.db = db
        self.provisioning = provisioning
        self.delivery = delivery

    def sync_and_notify(self) -> dict:
        app_settings = AppSettingsService(self.db).get_or_create()
        notify_days = app_settings.notify_days_left
        notify_gb = app_settings.notify_gb_left

        services = self.db.query(Service).filter(Service.is_active.is_(True)).all()
        synced = notified = failed = 0
        for service in services:
            try:
                remaining_bytes, expire_at = self.provisioning.sync_service(service)
                self.db.commit()
            except PanelError as e:
                self.db.rollback()
                failed += 1
                logger.warning("service_sync_failed", extra={"service_id": service.id, "error": e.message})
                continue
            synced += 1

            remaining_gb = remaining_bytes / BYTES_PER_GB
            remaining_days = days_left(expire_at)
            if remaining_gb <= notify_gb or remaining_days <= notify_days:
                user = self.db.query(User).filter(User.id == service.user_id).one_or_none()
                if user and self.delivery.notify_low_resources(user, service, remaining_gb, remaining_days):
                    notified += 1

        logger.info("sync_and_notify_done", extra={"status": f"synced={synced} notified={notified} failed={failed}"})
        return {"synced": synced, "notified": notified, "failed": failed}

    def _remove_all(self, services: list[Service]) -> int:
        removed = 0
        for service in services:
            if self.provisioning.remove_service(service, attempts=2):
                self.db.commit()
                removed += 1
            else:
                self.db.rollback()
        return removed

    def cleanup_expired_trials(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        services = (
            self.db.query(Service)
            .filter(Service.is_trial.is_(True), Service.expire_at < now)
            .all()
        )
        return self._remove_all(services)

    def cleanup_expired_services(self, now: datetime | None = None) -> int:
        threshold = (now or datetime.now(timezone.utc)) - timedelta(days=PAID_SERVICE_GRACE_DAYS)
        services = (
            self.db.query(Service)
            .filter(Service.is_trial.is_(False), Service.expire_at < threshold)
            .all()
        )
        return self._remove_all(services)
