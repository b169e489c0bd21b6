from __future__ import annotations

import enum
import hashlib
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Final, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from config import (
    PAYPAL_SUBSCRIPTION_AUTHORITATIVE,
    PAYSTACK_SUBSCRIPTION_AUTHORITATIVE,
    RECONCILE_MAX_ATTEMPTS,
    SUBSCRIPTION_PLANS,
)
from observability import alert_event, get_logger, log_event

from .adapters import BaseWebhookAdapter, WebhookAuthError
from .db import SessionFactory, SessionLocal, session_scope
from .events import EventKind, NormalizationError, PaymentEvent
from .locks import TenantLockManager, TenantLockTimeout
from .models import NotificationType, PaymentProvider, PaymentRecord, PaymentStatus
from .notifications import (
    CeleryNotificationDispatcher,
    NotificationDispatcher,
    channels_for_profile,
    payment_failed_dedupe_key,
    payment_failed_message,
    payment_received_dedupe_key,
    payment_received_message,
    subscription_cancelled_dedupe_key,
    subscription_cancelled_message,
    subscription_expired_dedupe_key,
    subscription_expired_message,
)
from .plans import PlanCatalog, UnknownPlanError, advance_period
from .repository import BillingRepository
from .schemas import PaymentMetadataError, parse_payment_metadata

_LOGGER = get_logger("crm_billing.billing.service")

_T = TypeVar("_T")

RETRY_AFTER_SECONDS: Final[int] = 30
REJECTED_PAYLOAD_PREVIEW_BYTES: Final[int] = 512
_TRANSIENT_MARKERS: Final[tuple[str, ...]] = ("database is locked", "deadlock")


class OutcomeKind(str, enum.Enum):
    SETTLED = "settled"
    ALREADY_PROCESSED = "already_processed"
    ORPHANED = "orphaned"
    UNKNOWN_PLAN = "unknown_plan"
    UNKNOWN_TENANT = "unknown_tenant"
    MALFORMED_EVENT = "malformed_event"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NO_OP = "no_op"


class InfrastructureFailure(RuntimeError):
    """
    Record store or lock unavailable.

    Raised, never returned: the webhook boundary answers 503 so the provider
    redelivers.
    """

    def __init__(self, code: str, detail: str = "", *, retry_after_seconds: int = RETRY_AFTER_SECONDS) -> None:
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class ReconciliationOutcome:
    kind: OutcomeKind
    provider: PaymentProvider
    event_type: str
    provider_correlation_id: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    client_profile_id: Optional[str] = None
    notification_id: Optional[str] = None
    notification_enqueued: bool = False
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.kind.value,
            "provider": self.provider.value,
            "event_type": self.event_type,
            "provider_correlation_id": self.provider_correlation_id,
            "payment_id": self.payment_id,
            "subscription_id": self.subscription_id,
            "notification_id": self.notification_id,
            "notification_enqueued": self.notification_enqueued,
            "detail": self.detail,
        }


def _is_transient(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def _provider_payload_section(event: PaymentEvent) -> Any:
    if event.provider == PaymentProvider.PAYSTACK:
        return event.raw_payload.get("data")
    return event.raw_payload.get("resource")


class ReconciliationCoordinator:
    """
    Applies normalized webhook events to payments, subscriptions and notifications.

    Concurrency model:
    - per-correlation idempotency: PENDING -> COMPLETED is one conditional UPDATE,
      so at most one delivery of a correlation id settles.
    - per-tenant serialization: settlement runs under a lock keyed by
      client_profile_id, in a single transaction covering payment, subscription,
      payment back-link, profile mirror and notification row.
    - a crash before commit leaves the payment PENDING, so redelivery replays
      the whole unit.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        catalog: PlanCatalog | None = None,
        locks: TenantLockManager | None = None,
        dispatcher: NotificationDispatcher | None = None,
        max_attempts: int = RECONCILE_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
        subscription_authority: Mapping[PaymentProvider, bool] | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.catalog = catalog or PlanCatalog.from_config(SUBSCRIPTION_PLANS)
        self.locks = locks or TenantLockManager()
        self.dispatcher = dispatcher or CeleryNotificationDispatcher()
        self.max_attempts = max(1, int(max_attempts))
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        if subscription_authority is None:
            subscription_authority = {
                PaymentProvider.PAYSTACK: PAYSTACK_SUBSCRIPTION_AUTHORITATIVE,
                PaymentProvider.PAYPAL: PAYPAL_SUBSCRIPTION_AUTHORITATIVE,
            }
        self.subscription_authority = dict(subscription_authority)

    def reconcile(self, event: PaymentEvent) -> ReconciliationOutcome:
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.reconcile.received",
            provider=event.provider,
            event_type=event.event_type,
            kind=event.kind,
            provider_correlation_id=event.provider_correlation_id,
            provider_event_id=event.provider_event_id,
        )
        if event.kind == EventKind.PAYMENT_COMPLETED:
            outcome = self._with_retries(lambda: self._settle(event))
        elif event.kind == EventKind.PAYMENT_FAILED:
            outcome = self._with_retries(lambda: self._fail(event))
        elif event.kind == EventKind.SUBSCRIPTION_ACTIVATED:
            outcome = self._activate(event)
        elif event.kind == EventKind.SUBSCRIPTION_CANCELLED:
            outcome = self._cancel(event)
        else:
            outcome = self._outcome(event, OutcomeKind.NO_OP, detail=f"unhandled event type {event.event_type}")

        if outcome.notification_id:
            outcome = replace(outcome, notification_enqueued=self._enqueue(outcome.notification_id))
        log_event(
            _LOGGER,
            logging.INFO,
            f"billing.reconcile.{outcome.kind.value}",
            **outcome.to_dict(),
        )
        return outcome

    # -- infrastructure ----------------------------------------------------

    def _with_retries(self, operation: Callable[[], _T]) -> _T:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except TenantLockTimeout as exc:
                raise InfrastructureFailure("TENANT_LOCK_TIMEOUT", str(exc)) from exc
            except OperationalError as exc:
                if not _is_transient(exc):
                    raise InfrastructureFailure("STORE_UNAVAILABLE", str(exc.orig or exc)) from exc
                last_error = exc
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "billing.reconcile.transient_store_error",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc.orig or exc),
                )
                time.sleep(0.02 * attempt)
            except SQLAlchemyError as exc:
                raise InfrastructureFailure("STORE_UNAVAILABLE", str(exc)) from exc
        raise InfrastructureFailure("STORE_UNAVAILABLE", f"gave up after {self.max_attempts} attempts: {last_error}")

    def _enqueue(self, notification_id: str) -> bool:
        try:
            accepted = self.dispatcher.enqueue(notification_id)
        except Exception as exc:  # noqa: BLE001
            # Row is committed as PENDING; the redelivery sweep picks it up.
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.reconcile.notification_enqueue_failed",
                notification_id=notification_id,
                error=str(exc),
            )
            return False
        if not accepted:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.reconcile.notification_enqueue_rejected",
                notification_id=notification_id,
            )
        return bool(accepted)

    @staticmethod
    def _outcome(event: PaymentEvent, kind: OutcomeKind, **fields: Any) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            kind=kind,
            provider=event.provider,
            event_type=event.event_type,
            provider_correlation_id=event.provider_correlation_id,
            **fields,
        )

    def _create_notification_safely(self, repo: BillingRepository, **kwargs: Any) -> Optional[str]:
        """Insert a notification inside a savepoint; failure never aborts the caller's transaction."""

        try:
            with repo.session.begin_nested():
                notification, _created = repo.create_notification(**kwargs)
        except SQLAlchemyError as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.reconcile.notification_insert_failed",
                client_profile_id=kwargs.get("client_profile_id"),
                notification_type=kwargs.get("notification_type"),
                error=str(exc),
            )
            return None
        return str(notification.id)

    # -- settlement --------------------------------------------------------

    def _resolve_tenant(self, payment: PaymentRecord) -> tuple[str, str, Optional[str]]:
        """Return (client_profile_id, plan_id, user_id) for a payment row."""

        try:
            metadata = parse_payment_metadata(payment.metadata_json, payment.provider)
        except PaymentMetadataError as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.reconcile.metadata_invalid",
                payment_id=payment.id,
                error=str(exc),
            )
            return payment.client_profile_id, payment.plan_id, None
        return payment.client_profile_id, metadata.plan_id, metadata.user_id

    def _settle(
        self,
        event: PaymentEvent,
        *,
        provider_subscription_id: Optional[str] = None,
    ) -> ReconciliationOutcome:
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            payment = repo.get_payment_by_correlation(event.provider, str(event.provider_correlation_id))
            if payment is None:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "billing.reconcile.orphaned_payment",
                    provider=event.provider,
                    provider_correlation_id=event.provider_correlation_id,
                )
                return self._outcome(event, OutcomeKind.ORPHANED, detail="no payment record for correlation id")
            if payment.status != PaymentStatus.PENDING:
                return self._replayed(event, payment)
            client_profile_id = payment.client_profile_id

        with self.locks.hold(client_profile_id):
            return self._settle_locked(event, provider_subscription_id=provider_subscription_id)

    def _replayed(self, event: PaymentEvent, payment: PaymentRecord) -> ReconciliationOutcome:
        if payment.status == PaymentStatus.FAILED and event.kind == EventKind.PAYMENT_COMPLETED:
            # Provider reports a capture for an attempt already marked failed.
            alert_event(
                _LOGGER,
                "billing.reconcile.completed_after_failed",
                payment_id=payment.id,
                provider=event.provider,
                provider_correlation_id=event.provider_correlation_id,
            )
        return self._outcome(
            event,
            OutcomeKind.ALREADY_PROCESSED,
            payment_id=payment.id,
            subscription_id=payment.subscription_id,
            client_profile_id=payment.client_profile_id,
            detail=f"payment already {payment.status.value}",
        )

    def _settle_locked(
        self,
        event: PaymentEvent,
        *,
        provider_subscription_id: Optional[str],
    ) -> ReconciliationOutcome:
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            payment = repo.get_payment_by_correlation(event.provider, str(event.provider_correlation_id))
            if payment is None:
                return self._outcome(event, OutcomeKind.ORPHANED, detail="no payment record for correlation id")
            if payment.status != PaymentStatus.PENDING:
                return self._replayed(event, payment)

            client_profile_id, plan_id, metadata_user_id = self._resolve_tenant(payment)
            try:
                plan = self.catalog.lookup(plan_id)
            except UnknownPlanError as exc:
                alert_event(
                    _LOGGER,
                    "billing.reconcile.unknown_plan",
                    error_code="UNKNOWN_PLAN",
                    payment_id=payment.id,
                    plan_id=exc.plan_id,
                    client_profile_id=client_profile_id,
                )
                return self._outcome(
                    event,
                    OutcomeKind.UNKNOWN_PLAN,
                    payment_id=payment.id,
                    client_profile_id=client_profile_id,
                    detail=str(exc),
                )

            mismatch = self._amount_mismatch(event, payment)
            if mismatch:
                alert_event(
                    _LOGGER,
                    "billing.reconcile.amount_mismatch",
                    error_code="AMOUNT_MISMATCH",
                    payment_id=payment.id,
                    detail=mismatch,
                )
                return self._outcome(
                    event,
                    OutcomeKind.MALFORMED_EVENT,
                    payment_id=payment.id,
                    client_profile_id=client_profile_id,
                    detail=mismatch,
                )

            profile = repo.get_client_profile(client_profile_id)
            if profile is None:
                alert_event(
                    _LOGGER,
                    "billing.reconcile.unknown_tenant",
                    error_code="UNKNOWN_TENANT",
                    payment_id=payment.id,
                    client_profile_id=client_profile_id,
                )
                return self._outcome(
                    event,
                    OutcomeKind.UNKNOWN_TENANT,
                    payment_id=payment.id,
                    client_profile_id=client_profile_id,
                    detail=f"client profile not found: {client_profile_id}",
                )

            now = self.clock()
            end_date = advance_period(now, plan.interval)
            patch = {
                "provider": event.provider.value,
                "webhook_processed_at": now.isoformat(),
                f"{event.provider.value}_data": _provider_payload_section(event),
            }
            if not repo.complete_payment_if_pending(payment, metadata_patch=patch, now=now):
                # Lost the compare-and-set to a concurrent delivery.
                return self._outcome(
                    event,
                    OutcomeKind.ALREADY_PROCESSED,
                    payment_id=payment.id,
                    client_profile_id=client_profile_id,
                    detail="payment settled concurrently",
                )

            subscription = repo.upsert_subscription(
                client_profile_id=client_profile_id,
                plan=plan,
                start_date=now,
                end_date=end_date,
                provider=event.provider,
                provider_subscription_id=provider_subscription_id,
            )
            repo.link_payment_subscription(payment, subscription)
            repo.sync_client_profile_mirror(client_profile_id, subscription)

            title, message = payment_received_message(plan, event.provider)
            notification_id = self._create_notification_safely(
                repo,
                client_profile_id=client_profile_id,
                user_id=profile.user_id or metadata_user_id,
                notification_type=NotificationType.PAYMENT_RECEIVED,
                title=title,
                message=message,
                channels=["EMAIL"],
                dedupe_key=payment_received_dedupe_key(payment.id),
                now=now,
            )
            return self._outcome(
                event,
                OutcomeKind.SETTLED,
                payment_id=payment.id,
                subscription_id=subscription.id,
                client_profile_id=client_profile_id,
                notification_id=notification_id,
            )

    @staticmethod
    def _amount_mismatch(event: PaymentEvent, payment: PaymentRecord) -> Optional[str]:
        if event.amount_minor is not None and int(event.amount_minor) != int(payment.amount_minor):
            return f"amount {event.amount_minor} != recorded {payment.amount_minor}"
        if event.currency and str(event.currency).upper() != str(payment.currency).upper():
            return f"currency {event.currency} != recorded {payment.currency}"
        return None

    # -- failure -----------------------------------------------------------

    def _fail(self, event: PaymentEvent) -> ReconciliationOutcome:
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            payment = repo.get_payment_by_correlation(event.provider, str(event.provider_correlation_id))
            if payment is None:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "billing.reconcile.orphaned_failure",
                    provider=event.provider,
                    provider_correlation_id=event.provider_correlation_id,
                )
                return self._outcome(event, OutcomeKind.ORPHANED, detail="no payment record for correlation id")
            if payment.status != PaymentStatus.PENDING:
                return self._replayed(event, payment)

            now = self.clock()
            patch = {
                "provider": event.provider.value,
                "webhook_failed_at": now.isoformat(),
                f"{event.provider.value}_failure": _provider_payload_section(event),
            }
            if not repo.fail_payment_if_pending(payment, metadata_patch=patch, now=now):
                return self._outcome(
                    event,
                    OutcomeKind.ALREADY_PROCESSED,
                    payment_id=payment.id,
                    client_profile_id=payment.client_profile_id,
                    detail="payment left PENDING concurrently",
                )

            profile = repo.get_client_profile(payment.client_profile_id)
            notification_id = None
            if profile is not None:
                title, message = payment_failed_message()
                notification_id = self._create_notification_safely(
                    repo,
                    client_profile_id=profile.id,
                    user_id=profile.user_id,
                    notification_type=NotificationType.PAYMENT_FAILED,
                    title=title,
                    message=message,
                    channels=["EMAIL"],
                    dedupe_key=payment_failed_dedupe_key(payment.id),
                    now=now,
                )
            return self._outcome(
                event,
                OutcomeKind.FAILED,
                payment_id=payment.id,
                client_profile_id=payment.client_profile_id,
                notification_id=notification_id,
            )

    # -- provider-native subscriptions -------------------------------------

    def _is_authoritative(self, provider: PaymentProvider) -> bool:
        return bool(self.subscription_authority.get(provider, False))

    def _activate(self, event: PaymentEvent) -> ReconciliationOutcome:
        if not self._is_authoritative(event.provider):
            return self._outcome(
                event,
                OutcomeKind.NO_OP,
                detail=f"{event.provider.value} subscriptions are not the billing source of truth",
            )
        return self._with_retries(
            lambda: self._settle(event, provider_subscription_id=event.provider_correlation_id)
        )

    def _cancel(self, event: PaymentEvent) -> ReconciliationOutcome:
        if not self._is_authoritative(event.provider):
            return self._outcome(
                event,
                OutcomeKind.NO_OP,
                detail=f"{event.provider.value} subscriptions are not the billing source of truth",
            )
        return self._with_retries(lambda: self._cancel_once(event))

    def _cancel_once(self, event: PaymentEvent) -> ReconciliationOutcome:
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription_by_provider_id(event.provider, str(event.provider_correlation_id))
            if subscription is None:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "billing.reconcile.orphaned_subscription",
                    provider=event.provider,
                    provider_subscription_id=event.provider_correlation_id,
                )
                return self._outcome(event, OutcomeKind.ORPHANED, detail="no subscription for provider id")
            client_profile_id = subscription.client_profile_id

        with self.locks.hold(client_profile_id):
            with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                subscription = repo.get_subscription_by_provider_id(event.provider, str(event.provider_correlation_id))
                if subscription is None:
                    return self._outcome(event, OutcomeKind.ORPHANED, detail="no subscription for provider id")
                now = self.clock()
                if not repo.cancel_subscription(subscription, now=now):
                    return self._outcome(
                        event,
                        OutcomeKind.ALREADY_PROCESSED,
                        subscription_id=subscription.id,
                        client_profile_id=client_profile_id,
                        detail="subscription already CANCELLED",
                    )
                profile = repo.get_client_profile(client_profile_id)
                notification_id = None
                if profile is not None:
                    repo.sync_client_profile_mirror(client_profile_id, subscription)
                    title, message = subscription_cancelled_message()
                    notification_id = self._create_notification_safely(
                        repo,
                        client_profile_id=client_profile_id,
                        user_id=profile.user_id,
                        notification_type=NotificationType.SUBSCRIPTION_CANCELLED,
                        title=title,
                        message=message,
                        channels=channels_for_profile(profile),
                        dedupe_key=subscription_cancelled_dedupe_key(subscription.id),
                        now=now,
                    )
                return self._outcome(
                    event,
                    OutcomeKind.CANCELLED,
                    subscription_id=subscription.id,
                    client_profile_id=client_profile_id,
                    notification_id=notification_id,
                )


def expire_subscriptions(repo: BillingRepository, *, now: Optional[datetime] = None) -> list[str]:
    """
    Expire ACTIVE subscriptions past end_date and queue SUBSCRIPTION_EXPIRED notices.

    Returns the ids of the notifications created in this pass.
    """

    current = now or datetime.now(timezone.utc)
    notification_ids: list[str] = []
    for subscription in repo.expire_due_subscriptions(current):
        profile = repo.get_client_profile(subscription.client_profile_id)
        channels = channels_for_profile(profile)
        if profile is None or not channels:
            continue
        title, message = subscription_expired_message()
        notification, created = repo.create_notification(
            client_profile_id=profile.id,
            user_id=profile.user_id,
            notification_type=NotificationType.SUBSCRIPTION_EXPIRED,
            title=title,
            message=message,
            channels=channels,
            dedupe_key=subscription_expired_dedupe_key(subscription.id, subscription.end_date.isoformat()),
            now=current,
        )
        if created:
            notification_ids.append(str(notification.id))
    return notification_ids


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    body: dict[str, Any]
    outcome: Optional[ReconciliationOutcome] = None
    headers: dict[str, str] = field(default_factory=dict)


def _record_webhook_audit(session_factory: SessionFactory, **fields: Any) -> None:
    try:
        with session_scope(session_factory) as session:
            BillingRepository(session).record_audit_log(**fields)
    except SQLAlchemyError as exc:
        # Outcome is already committed (or the store is down); the log line keeps the trail.
        log_event(
            _LOGGER,
            logging.ERROR,
            "billing.webhook.audit_write_failed",
            provider=fields.get("provider"),
            outcome=fields.get("outcome"),
            error=str(exc),
        )


def process_webhook(
    coordinator: ReconciliationCoordinator,
    adapter: BaseWebhookAdapter,
    body: bytes,
    headers: Mapping[str, str],
    *,
    trace_id: Optional[str] = None,
) -> WebhookResult:
    """
    Authenticate, normalize, reconcile and audit one webhook delivery.

    Every handled outcome is acknowledged with 200 so the provider stops
    retrying; only signature problems (400/401), missing provider secrets (503)
    and InfrastructureFailure (503 + Retry-After) are not.
    """

    provider = adapter.provider.value
    verified = bool(adapter.signature_required)

    # Nothing in an unauthenticated body is parsed or stored in full.
    try:
        signature = adapter.authenticate(body, headers)
    except WebhookAuthError as exc:
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.webhook.rejected",
            provider=provider,
            error_code=exc.code,
            detail=exc.detail,
            trace_id=trace_id,
        )
        _record_webhook_audit(
            coordinator.session_factory,
            provider=provider,
            event_type="unknown",
            raw_payload=body[:REJECTED_PAYLOAD_PREVIEW_BYTES].decode("utf-8", errors="replace"),
            outcome="rejected",
            signature=str(headers.get("x-paystack-signature") or headers.get("paypal-transmission-sig") or "") or None,
            signature_valid=False,
            detail=f"{exc.code}: {exc.detail} (bytes={len(body)} sha256={hashlib.sha256(body).hexdigest()})",
        )
        return WebhookResult(
            status_code=exc.status_code,
            body={"received": False, "error_code": exc.code, "message": exc.detail or exc.code},
        )

    event_type = adapter.peek_event_type(body)
    audit = dict(provider=provider, event_type=event_type, raw_payload=body.decode("utf-8", errors="replace"))

    try:
        event = adapter.normalize(body)
    except NormalizationError as exc:
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.webhook.normalization_failed",
            provider=provider,
            event_type=exc.event_type or event_type,
            error_code=exc.code,
            detail=exc.detail,
            trace_id=trace_id,
        )
        _record_webhook_audit(
            coordinator.session_factory,
            **audit,
            outcome=exc.code.lower(),
            signature=signature,
            signature_valid=verified,
            detail=exc.detail,
        )
        return WebhookResult(
            status_code=200,
            body={"received": True, "outcome": exc.code.lower(), "detail": exc.detail},
        )

    try:
        outcome = coordinator.reconcile(event)
    except InfrastructureFailure as exc:
        log_event(
            _LOGGER,
            logging.ERROR,
            "billing.webhook.infrastructure_failure",
            provider=provider,
            event_type=event.event_type,
            provider_correlation_id=event.provider_correlation_id,
            error_code=exc.code,
            detail=exc.detail,
            trace_id=trace_id,
        )
        _record_webhook_audit(
            coordinator.session_factory,
            **audit,
            outcome="retry",
            signature=signature,
            signature_valid=verified,
            provider_event_id=event.provider_event_id,
            provider_correlation_id=event.provider_correlation_id,
            detail=f"{exc.code}: {exc.detail}",
        )
        return WebhookResult(
            status_code=503,
            body={"received": False, "error_code": exc.code, "message": "temporarily unavailable"},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    _record_webhook_audit(
        coordinator.session_factory,
        **audit,
        outcome=outcome.kind.value,
        signature=signature,
        signature_valid=verified,
        provider_event_id=event.provider_event_id,
        provider_correlation_id=event.provider_correlation_id,
        detail=json.dumps({"detail": outcome.detail, "payment_id": outcome.payment_id}, ensure_ascii=False),
    )
    return WebhookResult(
        status_code=200,
        body={"received": True, **outcome.to_dict()},
        outcome=outcome,
    )
