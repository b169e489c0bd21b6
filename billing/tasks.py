"""Celery tasks for notification delivery and billing maintenance jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from celery import Celery

from config import CELERY_ALWAYS_EAGER, NOTIFICATION_REDELIVERY_BATCH, REDIS_DISABLED, REDIS_URL
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .notifications import CeleryNotificationDispatcher, NotificationDispatcher, deliver_notification
from .repository import BillingRepository

_LOGGER = get_logger("crm_billing.billing.tasks")

_USE_REDIS = not (REDIS_DISABLED or CELERY_ALWAYS_EAGER)
_BROKER_URL = REDIS_URL if _USE_REDIS else "memory://"
_BACKEND_URL = REDIS_URL if _USE_REDIS else "cache+memory://"

celery_app = Celery("crm_billing", broker=_BROKER_URL, backend=_BACKEND_URL)
if not _USE_REDIS:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_ignore_result = True
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.beat_schedule = {
    "billing-expire-due-subscriptions": {
        "task": "billing.expire_due_subscriptions",
        "schedule": 3600.0,
    },
    "billing-redeliver-pending-notifications": {
        "task": "billing.redeliver_pending_notifications",
        "schedule": 300.0,
    },
}

# Rows younger than this are assumed to still be in flight from their first publish.
REDELIVERY_GRACE_SECONDS: int = 120


@celery_app.task(
    name="billing.deliver_notification",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def deliver_notification_task(notification_id: str) -> bool:
    return deliver_notification(notification_id)


def run_redeliver_pending_notifications(
    *,
    session_factory: SessionFactory | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: Optional[datetime] = None,
    grace_seconds: int = REDELIVERY_GRACE_SECONDS,
    limit: int = NOTIFICATION_REDELIVERY_BATCH,
) -> int:
    """Republish PENDING notifications whose first publish was lost."""

    current = now or datetime.now(timezone.utc)
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        pending_ids = [
            str(item.id)
            for item in repo.list_pending_notifications(
                limit=limit,
                created_before=current - timedelta(seconds=max(0, int(grace_seconds))),
            )
        ]

    sender = dispatcher or CeleryNotificationDispatcher()
    republished = sum(1 for notification_id in pending_ids if sender.enqueue(notification_id))
    if pending_ids:
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.redeliver_pending_notifications.completed",
            pending_count=len(pending_ids),
            republished_count=republished,
        )
    return republished


def run_expire_due_subscriptions(
    *,
    session_factory: SessionFactory | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: Optional[datetime] = None,
) -> int:
    """Expire overdue subscriptions. Intended for periodic scheduling via Celery beat."""
    from .service import expire_subscriptions

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        notification_ids = expire_subscriptions(repo, now=now)

    sender = dispatcher or CeleryNotificationDispatcher()
    for notification_id in notification_ids:
        sender.enqueue(notification_id)
    if notification_ids:
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.expire_due_subscriptions.completed",
            notified_count=len(notification_ids),
        )
    return len(notification_ids)


@celery_app.task(name="billing.redeliver_pending_notifications")
def redeliver_pending_notifications_task() -> int:
    return run_redeliver_pending_notifications()


@celery_app.task(name="billing.expire_due_subscriptions")
def expire_due_subscriptions_task() -> int:
    return run_expire_due_subscriptions()
