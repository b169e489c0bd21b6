"""Reconciliation coordinator behavior against a real (SQLite) record store.

Covers idempotent settlement, anomaly outcomes, crash replay, notification
isolation and provider-native subscription events.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from billing import (
    BillingRepository,
    Notification,
    NotificationStatus,
    NotificationType,
    PaymentProvider,
    PaymentStatus,
    PayPalAdapter,
    PaystackAdapter,
    PlanCatalog,
    Subscription,
    SubscriptionStatus,
    TenantLockManager,
    build_session_factory,
    init_billing_db,
    session_scope,
)
from billing.lifecycle import transition
from billing.notifications import NotificationDispatcher
from billing.repository import _as_utc_aware
from billing.service import InfrastructureFailure, OutcomeKind, ReconciliationCoordinator

NOW = datetime(2026, 1, 31, 10, 0, tzinfo=timezone.utc)
PROFILE_ID = "profile-1"


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, *, fail: bool = False) -> None:
        self.enqueued: list[str] = []
        self.fail = fail

    def enqueue(self, notification_id: str) -> bool:
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.enqueued.append(notification_id)
        return True


def _make_db():
    engine, sf = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine)
    return engine, sf


def _coordinator(
    sf,
    *,
    dispatcher=None,
    locks=None,
    clock_value: datetime = NOW,
    authoritative: bool = False,
    max_attempts: int = 2,
):
    return ReconciliationCoordinator(
        session_factory=sf,
        catalog=PlanCatalog(),
        locks=locks or TenantLockManager(use_redis=False, timeout_seconds=2),
        dispatcher=dispatcher or RecordingDispatcher(),
        clock=lambda: clock_value,
        subscription_authority={
            PaymentProvider.PAYSTACK: authoritative,
            PaymentProvider.PAYPAL: authoritative,
        },
        max_attempts=max_attempts,
    )


def _seed(
    sf,
    *,
    correlation: str = "ref_001",
    provider: PaymentProvider = PaymentProvider.PAYSTACK,
    plan_id: str = "STANDARD",
    amount_minor: int = 10000,
    with_profile: bool = True,
    metadata: Optional[dict] = None,
) -> str:
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        if with_profile and repo.get_client_profile(PROFILE_ID) is None:
            repo.create_client_profile(user_id="user-1", business_name="Ama Stores", profile_id=PROFILE_ID)
        payment = repo.create_payment(
            client_profile_id=PROFILE_ID,
            plan_id=plan_id,
            provider=provider,
            provider_correlation_id=correlation,
            amount_minor=amount_minor,
            metadata=metadata
            if metadata is not None
            else {"plan_id": plan_id, "client_profile_id": PROFILE_ID, "user_id": "user-1", "email": "ama@example.com"},
        )
        return payment.id


def _paystack_event(event_type: str = "charge.success", **data):
    payload = {"event": event_type, "data": {"id": 4099260516, "reference": "ref_001", "amount": 10000, "currency": "GHS"}}
    payload["data"].update(data)
    return PaystackAdapter(signature_required=False).normalize(json.dumps(payload).encode("utf-8"))


def _count(sf, model) -> int:
    with session_scope(sf) as session:
        return int(session.scalar(select(func.count()).select_from(model)) or 0)


def test_completed_payment_settles_subscription_profile_and_notification() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf)
    dispatcher = RecordingDispatcher()

    outcome = _coordinator(sf, dispatcher=dispatcher).reconcile(_paystack_event())

    assert outcome.kind == OutcomeKind.SETTLED
    assert outcome.payment_id == payment_id
    assert outcome.notification_enqueued is True
    assert dispatcher.enqueued == [outcome.notification_id]

    with session_scope(sf) as session:
        repo = BillingRepository(session)
        payment = repo.get_payment(payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert _as_utc_aware(payment.payment_date) == NOW
        assert payment.subscription_id == outcome.subscription_id
        assert payment.metadata_json["email"] == "ama@example.com"
        assert payment.metadata_json["provider"] == "paystack"
        assert payment.metadata_json["webhook_processed_at"] == NOW.isoformat()
        assert payment.metadata_json["paystack_data"]["reference"] == "ref_001"

        subscription = repo.get_subscription_by_client_profile(PROFILE_ID)
        assert subscription.id == outcome.subscription_id
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan == "STANDARD"
        assert _as_utc_aware(subscription.start_date) == NOW
        # Jan 31 + one calendar month clamps to Feb 28.
        assert _as_utc_aware(subscription.end_date) == datetime(2026, 2, 28, 10, 0, tzinfo=timezone.utc)

        profile = repo.get_client_profile(PROFILE_ID)
        assert profile.subscription_status == subscription.status
        assert profile.subscription_start == subscription.start_date
        assert profile.subscription_end == subscription.end_date

        notification = repo.get_notification(outcome.notification_id)
        assert notification.type == NotificationType.PAYMENT_RECEIVED
        assert notification.status == NotificationStatus.PENDING
        assert notification.title == "Payment Received"
        assert "GHS 100.00" in notification.message
        assert notification.user_id == "user-1"

    engine.dispose()


def test_replayed_completion_is_already_processed() -> None:
    """A provider retransmit must not extend the subscription or notify twice."""

    engine, sf = _make_db()
    _seed(sf)
    dispatcher = RecordingDispatcher()
    coordinator = _coordinator(sf, dispatcher=dispatcher)

    first = coordinator.reconcile(_paystack_event())
    later = _coordinator(sf, dispatcher=dispatcher, clock_value=datetime(2026, 3, 1, tzinfo=timezone.utc))
    second = later.reconcile(_paystack_event(id=999))

    assert first.kind == OutcomeKind.SETTLED
    assert second.kind == OutcomeKind.ALREADY_PROCESSED
    assert second.notification_id is None
    assert len(dispatcher.enqueued) == 1
    assert _count(sf, Notification) == 1
    with session_scope(sf) as session:
        subscription = BillingRepository(session).get_subscription_by_client_profile(PROFILE_ID)
        assert _as_utc_aware(subscription.end_date) == datetime(2026, 2, 28, 10, 0, tzinfo=timezone.utc)
        assert BillingRepository(session).get_payment(first.payment_id).version == 1

    engine.dispose()


def test_unknown_correlation_is_orphaned() -> None:
    engine, sf = _make_db()
    _seed(sf)

    outcome = _coordinator(sf).reconcile(_paystack_event(reference="ref_unknown"))

    assert outcome.kind == OutcomeKind.ORPHANED
    assert outcome.payment_id is None
    assert _count(sf, Subscription) == 0
    assert _count(sf, Notification) == 0
    engine.dispose()


@pytest.mark.parametrize(
    "seed_kwargs, event_kwargs, expected",
    [
        ({"plan_id": "GOLD"}, {}, OutcomeKind.UNKNOWN_PLAN),
        ({}, {"amount": 5000}, OutcomeKind.MALFORMED_EVENT),
        ({}, {"currency": "NGN"}, OutcomeKind.MALFORMED_EVENT),
        ({"with_profile": False}, {}, OutcomeKind.UNKNOWN_TENANT),
    ],
)
def test_settlement_anomalies_leave_payment_pending(seed_kwargs, event_kwargs, expected, caplog) -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf, **seed_kwargs)
    dispatcher = RecordingDispatcher()

    with caplog.at_level("ERROR"):
        outcome = _coordinator(sf, dispatcher=dispatcher).reconcile(_paystack_event(**event_kwargs))

    assert outcome.kind == expected
    assert outcome.payment_id == payment_id
    assert dispatcher.enqueued == []
    assert any(getattr(record, "alert", False) for record in caplog.records)
    with session_scope(sf) as session:
        payment = BillingRepository(session).get_payment(payment_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.version == 0
    assert _count(sf, Subscription) == 0
    engine.dispose()


def test_invalid_metadata_falls_back_to_row_plan() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf, plan_id="BASIC", amount_minor=5000, metadata={"note": "legacy checkout"})

    outcome = _coordinator(sf).reconcile(_paystack_event(amount=5000))

    assert outcome.kind == OutcomeKind.SETTLED
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_subscription_by_client_profile(PROFILE_ID).plan == "BASIC"
        assert repo.get_payment(payment_id).metadata_json["note"] == "legacy checkout"
    engine.dispose()


def test_renewal_reuses_tenant_subscription_row() -> None:
    engine, sf = _make_db()
    _seed(sf, correlation="ref_jan")
    _seed(sf, correlation="ref_mar", plan_id="PREMIUM", amount_minor=20000)

    first = _coordinator(sf).reconcile(_paystack_event(reference="ref_jan"))
    march = datetime(2026, 3, 5, 8, 0, tzinfo=timezone.utc)
    second = _coordinator(sf, clock_value=march).reconcile(_paystack_event(reference="ref_mar", amount=20000))

    assert first.kind == second.kind == OutcomeKind.SETTLED
    assert first.subscription_id == second.subscription_id
    assert _count(sf, Subscription) == 1
    with session_scope(sf) as session:
        subscription = BillingRepository(session).get_subscription_by_client_profile(PROFILE_ID)
        assert subscription.plan == "PREMIUM"
        assert subscription.amount_minor == 20000
        assert _as_utc_aware(subscription.end_date) == datetime(2026, 4, 5, 8, 0, tzinfo=timezone.utc)
    engine.dispose()


def test_settlement_reactivates_cancelled_subscription() -> None:
    engine, sf = _make_db()
    _seed(sf, correlation="ref_a")
    _seed(sf, correlation="ref_b")
    _coordinator(sf).reconcile(_paystack_event(reference="ref_a"))
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        subscription = repo.get_subscription_by_client_profile(PROFILE_ID)
        repo.cancel_subscription(subscription, now=NOW)
        repo.sync_client_profile_mirror(PROFILE_ID, subscription)

    outcome = _coordinator(sf).reconcile(_paystack_event(reference="ref_b"))

    assert outcome.kind == OutcomeKind.SETTLED
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_subscription_by_client_profile(PROFILE_ID).status == SubscriptionStatus.ACTIVE
        assert repo.get_client_profile(PROFILE_ID).subscription_status == SubscriptionStatus.ACTIVE
    engine.dispose()


def test_failed_payment_is_terminal_for_late_completion(caplog) -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf)
    dispatcher = RecordingDispatcher()
    coordinator = _coordinator(sf, dispatcher=dispatcher)

    failed = coordinator.reconcile(_paystack_event("charge.failed"))
    assert failed.kind == OutcomeKind.FAILED
    assert dispatcher.enqueued == [failed.notification_id]

    with caplog.at_level("ERROR"):
        late = coordinator.reconcile(_paystack_event())
    assert late.kind == OutcomeKind.ALREADY_PROCESSED
    assert any(record.getMessage() == "billing.reconcile.completed_after_failed" for record in caplog.records)

    with session_scope(sf) as session:
        repo = BillingRepository(session)
        payment = repo.get_payment(payment_id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.payment_date is None
        assert repo.get_subscription_by_client_profile(PROFILE_ID) is None
        notification = repo.get_notification(failed.notification_id)
        assert notification.type == NotificationType.PAYMENT_FAILED
    engine.dispose()


def test_failure_after_completion_does_not_downgrade() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf)
    coordinator = _coordinator(sf)

    assert coordinator.reconcile(_paystack_event()).kind == OutcomeKind.SETTLED
    assert coordinator.reconcile(_paystack_event("charge.failed")).kind == OutcomeKind.ALREADY_PROCESSED
    with session_scope(sf) as session:
        assert BillingRepository(session).get_payment(payment_id).status == PaymentStatus.COMPLETED
    engine.dispose()


def test_failure_for_unknown_correlation_is_orphaned() -> None:
    engine, sf = _make_db()
    outcome = _coordinator(sf).reconcile(_paystack_event("charge.failed", reference="nope"))
    assert outcome.kind == OutcomeKind.ORPHANED
    engine.dispose()


def test_crash_before_commit_replays_cleanly(monkeypatch) -> None:
    """A crash mid-settlement commits nothing; the redelivery settles normally."""

    engine, sf = _make_db()
    payment_id = _seed(sf)
    original = BillingRepository.sync_client_profile_mirror
    calls = {"count": 0}

    def _crash_once(self, *args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("worker killed")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(BillingRepository, "sync_client_profile_mirror", _crash_once)
    coordinator = _coordinator(sf)

    with pytest.raises(RuntimeError):
        coordinator.reconcile(_paystack_event())

    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_payment(payment_id).status == PaymentStatus.PENDING
        assert repo.get_subscription_by_client_profile(PROFILE_ID) is None
    assert _count(sf, Notification) == 0

    replay = coordinator.reconcile(_paystack_event())
    assert replay.kind == OutcomeKind.SETTLED
    assert _count(sf, Notification) == 1
    engine.dispose()


def test_enqueue_failure_does_not_fail_settlement() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf)

    outcome = _coordinator(sf, dispatcher=RecordingDispatcher(fail=True)).reconcile(_paystack_event())

    assert outcome.kind == OutcomeKind.SETTLED
    assert outcome.notification_id
    assert outcome.notification_enqueued is False
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_payment(payment_id).status == PaymentStatus.COMPLETED
        assert repo.get_notification(outcome.notification_id).status == NotificationStatus.PENDING
    engine.dispose()


def test_notification_insert_failure_does_not_fail_settlement(monkeypatch) -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf)

    def _broken_insert(self, **_kwargs):
        raise SQLAlchemyError("notifications table unavailable")

    monkeypatch.setattr(BillingRepository, "create_notification", _broken_insert)
    dispatcher = RecordingDispatcher()
    outcome = _coordinator(sf, dispatcher=dispatcher).reconcile(_paystack_event())

    assert outcome.kind == OutcomeKind.SETTLED
    assert outcome.notification_id is None
    assert dispatcher.enqueued == []
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_payment(payment_id).status == PaymentStatus.COMPLETED
        assert repo.get_client_profile(PROFILE_ID).subscription_status == SubscriptionStatus.ACTIVE
    engine.dispose()


def test_store_outage_raises_infrastructure_failure() -> None:
    def _down():
        raise OperationalError("SELECT 1", {}, Exception("could not connect to server"))

    coordinator = _coordinator(_down)
    with pytest.raises(InfrastructureFailure) as excinfo:
        coordinator.reconcile(_paystack_event())
    assert excinfo.value.code == "STORE_UNAVAILABLE"
    assert excinfo.value.retry_after_seconds == 30


def test_transient_lock_errors_are_retried_then_surface() -> None:
    attempts = {"count": 0}

    def _locked():
        attempts["count"] += 1
        raise OperationalError("UPDATE billing_payments", {}, Exception("database is locked"))

    coordinator = _coordinator(_locked, max_attempts=3)
    with pytest.raises(InfrastructureFailure) as excinfo:
        coordinator.reconcile(_paystack_event())
    assert excinfo.value.code == "STORE_UNAVAILABLE"
    assert attempts["count"] == 3


def test_tenant_lock_timeout_raises_infrastructure_failure() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf)
    locks = TenantLockManager(use_redis=False, timeout_seconds=0.05)
    coordinator = _coordinator(sf, locks=locks)

    with locks.hold(PROFILE_ID):
        with pytest.raises(InfrastructureFailure) as excinfo:
            coordinator.reconcile(_paystack_event())
    assert excinfo.value.code == "TENANT_LOCK_TIMEOUT"

    with session_scope(sf) as session:
        assert BillingRepository(session).get_payment(payment_id).status == PaymentStatus.PENDING
    assert coordinator.reconcile(_paystack_event()).kind == OutcomeKind.SETTLED
    engine.dispose()


def test_unhandled_event_type_is_no_op() -> None:
    engine, sf = _make_db()
    outcome = _coordinator(sf).reconcile(_paystack_event("transfer.success"))
    assert outcome.kind == OutcomeKind.NO_OP
    engine.dispose()


def test_paypal_capture_settles_with_paypal_notification() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf, provider=PaymentProvider.PAYPAL, correlation="ORDER-7", plan_id="BASIC", amount_minor=5000)
    body = {
        "id": "WH-EVT-7",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAPTURE-7",
            "amount": {"value": "50.00", "currency_code": "GHS"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-7"}},
        },
    }
    event = PayPalAdapter(signature_required=False).normalize(json.dumps(body).encode("utf-8"))

    outcome = _coordinator(sf).reconcile(event)

    assert outcome.kind == OutcomeKind.SETTLED
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        payment = repo.get_payment(payment_id)
        assert payment.metadata_json["paypal_data"]["id"] == "CAPTURE-7"
        assert repo.get_notification(outcome.notification_id).title == "PayPal Payment Received"
        assert repo.get_subscription_by_client_profile(PROFILE_ID).provider == "paypal"
    engine.dispose()


def test_subscription_events_ignored_unless_provider_is_authoritative() -> None:
    engine, sf = _make_db()
    _seed(sf, correlation="SUB_abc")
    event = _paystack_event("subscription.create", subscription_code="SUB_abc")

    outcome = _coordinator(sf, authoritative=False).reconcile(event)

    assert outcome.kind == OutcomeKind.NO_OP
    assert _count(sf, Subscription) == 0
    engine.dispose()


def test_authoritative_subscription_activation_and_cancellation() -> None:
    engine, sf = _make_db()
    _seed(sf, correlation="SUB_abc")
    dispatcher = RecordingDispatcher()
    coordinator = _coordinator(sf, dispatcher=dispatcher, authoritative=True)

    activated = coordinator.reconcile(_paystack_event("subscription.create", subscription_code="SUB_abc"))
    assert activated.kind == OutcomeKind.SETTLED
    with session_scope(sf) as session:
        subscription = BillingRepository(session).get_subscription_by_client_profile(PROFILE_ID)
        assert subscription.provider_subscription_id == "SUB_abc"
        assert subscription.status == SubscriptionStatus.ACTIVE

    cancelled = coordinator.reconcile(_paystack_event("subscription.disable", subscription_code="SUB_abc"))
    assert cancelled.kind == OutcomeKind.CANCELLED
    assert cancelled.subscription_id == activated.subscription_id
    again = coordinator.reconcile(_paystack_event("subscription.disable", subscription_code="SUB_abc"))
    assert again.kind == OutcomeKind.ALREADY_PROCESSED
    orphan = coordinator.reconcile(_paystack_event("subscription.disable", subscription_code="SUB_zzz"))
    assert orphan.kind == OutcomeKind.ORPHANED

    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_subscription_by_client_profile(PROFILE_ID).status == SubscriptionStatus.CANCELLED
        assert repo.get_client_profile(PROFILE_ID).subscription_status == SubscriptionStatus.CANCELLED
        notification = repo.get_notification(cancelled.notification_id)
        assert notification.type == NotificationType.SUBSCRIPTION_CANCELLED
    assert len(dispatcher.enqueued) == 2
    engine.dispose()


def test_settlement_recovers_suspended_subscription() -> None:
    engine, sf = _make_db()
    _seed(sf, correlation="ref_first")
    _seed(sf, correlation="ref_recover")
    _coordinator(sf).reconcile(_paystack_event(reference="ref_first"))
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        subscription = repo.get_subscription_by_client_profile(PROFILE_ID)
        subscription.status = transition(subscription.status, SubscriptionStatus.SUSPENDED)
        repo.sync_client_profile_mirror(PROFILE_ID, subscription)

    later = datetime(2026, 4, 10, 15, 30, tzinfo=timezone.utc)
    outcome = _coordinator(sf, clock_value=later).reconcile(_paystack_event(reference="ref_recover"))

    assert outcome.kind == OutcomeKind.SETTLED
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        subscription = repo.get_subscription_by_client_profile(PROFILE_ID)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert _as_utc_aware(subscription.end_date) == datetime(2026, 5, 10, 15, 30, tzinfo=timezone.utc)
        assert repo.get_client_profile(PROFILE_ID).subscription_status == SubscriptionStatus.ACTIVE
    engine.dispose()


def test_order_end_to_end_premium_settlement() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        repo.create_client_profile(user_id="owner-c1", profile_id="C1")
        payment_id = repo.create_payment(
            client_profile_id="C1",
            plan_id="PREMIUM",
            provider=PaymentProvider.PAYSTACK,
            provider_correlation_id="ORD-1",
            amount_minor=20000,
            metadata={"plan_id": "PREMIUM", "client_profile_id": "C1"},
        ).id
    dispatcher = RecordingDispatcher()
    start = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)

    outcome = _coordinator(sf, dispatcher=dispatcher, clock_value=start).reconcile(
        _paystack_event(reference="ORD-1", amount=20000)
    )

    assert outcome.kind == OutcomeKind.SETTLED
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        payment = repo.get_payment(payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        subscription = repo.get_subscription_by_client_profile("C1")
        assert payment.subscription_id == subscription.id
        assert subscription.plan == "PREMIUM"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert _as_utc_aware(subscription.end_date) == datetime(2026, 11, 17, 9, 0, tzinfo=timezone.utc)
        notifications = repo.list_notifications(client_profile_id="C1")
        assert [item.type for item in notifications] == [NotificationType.PAYMENT_RECEIVED]
    assert dispatcher.enqueued == [notifications[0].id]
    engine.dispose()


def test_order_failure_event_leaves_subscription_untouched() -> None:
    engine, sf = _make_db()
    payment_id = _seed(sf, correlation="ORD-1")

    outcome = _coordinator(sf).reconcile(_paystack_event("charge.failed", reference="ORD-1"))

    assert outcome.kind == OutcomeKind.FAILED
    with session_scope(sf) as session:
        repo = BillingRepository(session)
        assert repo.get_payment(payment_id).status == PaymentStatus.FAILED
        assert repo.get_subscription_by_client_profile(PROFILE_ID) is None
        assert repo.get_client_profile(PROFILE_ID).subscription_status is None
    engine.dispose()
