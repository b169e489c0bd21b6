from .adapters import (
    BaseWebhookAdapter,
    PayPalAdapter,
    PaystackAdapter,
    WebhookAuthError,
    get_webhook_adapter,
)
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_billing_db,
    session_scope,
)
from .events import EventKind, NormalizationError, PaymentEvent
from .lifecycle import SubscriptionTransitionError, transition
from .locks import TenantLockManager, TenantLockTimeout
from .models import (
    Base,
    ClientProfile,
    Notification,
    NotificationStatus,
    NotificationType,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookAuditLog,
)
from .notifications import CeleryNotificationDispatcher, NotificationDispatcher
from .plans import PlanCatalog, PlanDefinition, UnknownPlanError, advance_period
from .repository import BillingRepository, BillingStateError
from .schemas import PayPalPaymentMetadata, PaystackPaymentMetadata, parse_payment_metadata
from .service import (
    InfrastructureFailure,
    OutcomeKind,
    ReconciliationCoordinator,
    ReconciliationOutcome,
    WebhookResult,
    process_webhook,
)

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "ClientProfile",
    "PaymentRecord",
    "Subscription",
    "Notification",
    "WebhookAuditLog",
    "PaymentProvider",
    "PaymentStatus",
    "SubscriptionStatus",
    "NotificationStatus",
    "NotificationType",
    "PaystackPaymentMetadata",
    "PayPalPaymentMetadata",
    "parse_payment_metadata",
    "PlanCatalog",
    "PlanDefinition",
    "UnknownPlanError",
    "advance_period",
    "EventKind",
    "PaymentEvent",
    "NormalizationError",
    "BaseWebhookAdapter",
    "PaystackAdapter",
    "PayPalAdapter",
    "WebhookAuthError",
    "get_webhook_adapter",
    "SubscriptionTransitionError",
    "transition",
    "TenantLockManager",
    "TenantLockTimeout",
    "NotificationDispatcher",
    "CeleryNotificationDispatcher",
    "BillingRepository",
    "BillingStateError",
    "InfrastructureFailure",
    "OutcomeKind",
    "ReconciliationCoordinator",
    "ReconciliationOutcome",
    "WebhookResult",
    "process_webhook",
    "build_session_factory",
    "init_billing_db",
    "session_scope",
]
