from __future__ import annotations

import abc
import logging
from typing import Optional

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .models import ClientProfile, PaymentProvider
from .plans import PlanDefinition, format_amount
from .repository import BillingRepository

_LOGGER = get_logger("crm_billing.billing.notifications")

CHANNEL_EMAIL = "EMAIL"
CHANNEL_WHATSAPP = "WHATSAPP"


def payment_received_dedupe_key(payment_id: str) -> str:
    return f"payment-received:{payment_id}"


def payment_failed_dedupe_key(payment_id: str) -> str:
    return f"payment-failed:{payment_id}"


def subscription_expired_dedupe_key(subscription_id: str, end_date_iso: str) -> str:
    return f"subscription-expired:{subscription_id}:{end_date_iso}"


def subscription_cancelled_dedupe_key(subscription_id: str) -> str:
    return f"subscription-cancelled:{subscription_id}"


def payment_received_message(plan: PlanDefinition, provider: PaymentProvider) -> tuple[str, str]:
    amount = format_amount(plan.amount_minor, plan.currency)
    if provider == PaymentProvider.PAYPAL:
        return (
            "PayPal Payment Received",
            f"Your PayPal payment of {amount} has been confirmed. Your subscription is now active.",
        )
    return (
        "Payment Received",
        f"Your payment of {amount} has been confirmed. Your subscription is now active.",
    )


def payment_failed_message() -> tuple[str, str]:
    return "Payment Failed", "Your recent payment attempt failed. Please try again or contact support."


def subscription_expired_message() -> tuple[str, str]:
    return "Subscription Expired", "Your subscription has expired. Please renew to continue accessing your portal."


def subscription_cancelled_message() -> tuple[str, str]:
    return "Subscription Cancelled", "Your subscription has been cancelled and will not renew."


def channels_for_profile(profile: Optional[ClientProfile]) -> list[str]:
    if profile is None:
        return [CHANNEL_EMAIL]
    channels: list[str] = []
    if profile.notify_by_email:
        channels.append(CHANNEL_EMAIL)
    if profile.notify_by_whatsapp:
        channels.append(CHANNEL_WHATSAPP)
    return channels


class NotificationDispatcher(abc.ABC):
    """
    Hands a persisted PENDING notification to the delivery pipeline.

    `enqueue` is fire-and-forget: it returns whether the request was accepted
    and never raises, so a broker outage cannot fail a reconciliation.
    """

    @abc.abstractmethod
    def enqueue(self, notification_id: str) -> bool:
        raise NotImplementedError


class CeleryNotificationDispatcher(NotificationDispatcher):
    def enqueue(self, notification_id: str) -> bool:
        from .tasks import deliver_notification_task

        try:
            deliver_notification_task.apply_async(args=[notification_id], ignore_result=True)
        except Exception as exc:  # noqa: BLE001
            # Row stays PENDING; the redelivery sweep republishes it.
            log_event(
                _LOGGER,
                logging.WARNING,
                "notification.enqueue_failed",
                notification_id=notification_id,
                error=str(exc),
            )
            return False
        log_event(_LOGGER, logging.DEBUG, "notification.enqueued", notification_id=notification_id)
        return True


def deliver_notification(notification_id: str, *, session_factory: SessionFactory | None = None) -> bool:
    """
    Mark one notification delivered.

    Channel transports (email, WhatsApp) consume SENT rows; this only claims the
    row so redelivery of the same id is a no-op. A row with no channels is
    marked FAILED instead.
    """

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        notification = repo.get_notification(notification_id)
        if notification is None:
            log_event(_LOGGER, logging.WARNING, "notification.deliver_missing", notification_id=notification_id)
            return False
        if not notification.channels:
            # Every channel switched off on the profile: nothing can carry it.
            failed = repo.mark_notification_failed(notification_id)
            if failed:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "notification.no_channels",
                    notification_id=notification_id,
                    client_profile_id=notification.client_profile_id,
                )
            return False
        delivered = repo.mark_notification_sent(notification_id)
    log_event(
        _LOGGER,
        logging.INFO,
        "notification.delivered" if delivered else "notification.deliver_skipped",
        notification_id=notification_id,
    )
    return delivered
