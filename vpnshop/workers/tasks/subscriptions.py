"""
Celery periodic tasks: panel sync with low-resource notices, expired service cleanup.
"""
import logging

from vpnshop.core.celery_app import celery_app
from vpnshop.core.logging import configure_logging
from vpnshop.db.session import SessionLocal
from vpnshop.services.delivery.service import DeliveryService
from vpnshop.services.provisioning.service import ProvisioningService
from vpnshop.services.provisioning.sweeps import SubscriptionSweeper
from vpnshop.services.telegram.client import TelegramClient

configure_logging("worker")
logger = logging.getLogger(__name__)


def _run(name: str, action):
    db = SessionLocal()
    telegram = TelegramClient()
    try:
        provisioning = ProvisioningService(db)
        sweeper = SubscriptionSweeper(db, provisioning, DeliveryService(db, telegram=telegram))
        return action(sweeper)
    except Exception:
        db.rollback()
        logger.exception(f"{name}_error")
        return {"error": "exception"}
    finally:
        telegram.close()
        db.close()


@celery_app.task(name="vpnshop.workers.tasks.subscriptions.sync_and_notify")
def sync_and_notify() -> dict:
    """Pull usage/expiry from the panel and warn users running low."""
    return _run("sync_and_notify", lambda s: s.sync_and_notify())


@celery_app.task(name="vpnshop.workers.tasks.subscriptions.cleanup_expired_trials")
def cleanup_expired_trials() -> dict:
    return _run("cleanup_expired_trials", lambda s: {"removed": s.cleanup_expired_trials()})


@celery_app.task(name="vpnshop.workers.tasks.subscriptions.cleanup_expired_services")
def cleanup_expired_services() -> dict:
    """Paid services are kept for a grace week after expiry before removal."""
    return _run("cleanup_expired_services", lambda s: {"removed": s.cleanup_expired_services()})
