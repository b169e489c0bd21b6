from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .models import PaymentProvider


class EventKind(str, enum.Enum):
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    NO_OP = "no_op"


class NormalizationError(ValueError):
    """
    Webhook body could not be turned into a PaymentEvent.

    `code` is MALFORMED_PAYLOAD or MISSING_CORRELATION (see errors.py). The HTTP
    layer acknowledges these so the provider does not retry a body that will
    never parse.
    """

    def __init__(self, code: str, detail: str = "", *, event_type: Optional[str] = None) -> None:
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail
        self.event_type = event_type


@dataclass(frozen=True)
class PaymentEvent:
    provider: PaymentProvider
    event_type: str
    kind: EventKind
    provider_correlation_id: Optional[str]
    raw_payload: dict[str, Any]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    provider_event_id: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
