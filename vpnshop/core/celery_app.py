"""
Celery application: broker and result backend from settings.
Periodic subscription sweeps live in vpnshop.workers.tasks.subscriptions.
"""
from celery import Celery
from celery.schedules import crontab

from vpnshop.core.config import settings

celery_app = Celery(
    "vpnshop",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["vpnshop.workers.tasks.subscriptions"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=3600,
    result_expires=86400,
    timezone="Asia/Tehran",
    beat_schedule={
        "cleanup-expired-trials": {
            "task": "vpnshop.workers.tasks.subscriptions.cleanup_expired_trials",
            "schedule": crontab(hour=3, minute=0),
        },
        "cleanup-expired-services": {
            "task": "vpnshop.workers.tasks.subscriptions.cleanup_expired_services",
            "schedule": crontab(hour=4, minute=0),
        },
        "sync-and-notify": {
            "task": "vpnshop.workers.tasks.subscriptions.sync_and_notify",
            "schedule": crontab(hour=16, minute=0),
        },
    },
)
