from __future__ import annotations

import abc
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from config import PAYPAL_WEBHOOK_ID, PAYSTACK_SECRET_KEY

from .events import EventKind, NormalizationError, PaymentEvent
from .models import PaymentProvider
from .paypal import CertLoader, PayPalSignatureError, PayPalTransmission, verify_paypal_transmission
from .paystack import PAYSTACK_SIGNATURE_HEADER, verify_paystack_signature
from .plans import currency_exponent

MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
MISSING_CORRELATION = "MISSING_CORRELATION"


class WebhookAuthError(RuntimeError):
    """Delivery rejected before its body is trusted; `status_code` is the HTTP answer."""

    def __init__(self, code: str, status_code: int, detail: str = "") -> None:
        super().__init__(detail or code)
        self.code = code
        self.status_code = status_code
        self.detail = detail


def _decode_body(raw_body: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(raw_body, Mapping):
        return dict(raw_body)
    try:
        text = raw_body.decode("utf-8") if isinstance(raw_body, (bytes, bytearray)) else str(raw_body)
        parsed = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise NormalizationError(MALFORMED_PAYLOAD, "body is not valid JSON") from exc
    except RecursionError as exc:
        raise NormalizationError(MALFORMED_PAYLOAD, "body is nested too deeply") from exc
    if not isinstance(parsed, dict):
        raise NormalizationError(MALFORMED_PAYLOAD, "body must be a JSON object")
    return parsed


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _clean_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _decimal_to_minor(value: Any, currency: Optional[str], *, event_type: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise InvalidOperation(value)
        # Context overflow (e.g. "1e30") surfaces here as InvalidOperation.
        minor = amount.scaleb(currency_exponent(currency)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise NormalizationError(MALFORMED_PAYLOAD, f"invalid amount: {value}", event_type=event_type) from exc
    return int(minor)


class BaseWebhookAdapter(abc.ABC):
    """
    Turns one provider's webhook body into a PaymentEvent.

    `normalize` is a pure function of the body; `authenticate` checks the
    delivery's signature headers before the body is trusted.
    """

    signature_required: bool = True

    #: event_type -> EventKind; anything absent maps to NO_OP.
    event_kinds: Mapping[str, EventKind] = {}

    @property
    @abc.abstractmethod
    def provider(self) -> PaymentProvider:
        raise NotImplementedError

    @abc.abstractmethod
    def authenticate(self, body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        """Return the signature value recorded for audit, or raise WebhookAuthError."""

    @abc.abstractmethod
    def _event_type(self, payload: dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _correlation_id(self, kind: EventKind, payload: dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _amount(self, kind: EventKind, payload: dict[str, Any], event_type: str) -> tuple[Optional[int], Optional[str]]:
        raise NotImplementedError

    @abc.abstractmethod
    def _event_id(self, payload: dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def peek_event_type(self, raw_body: bytes | str | Mapping[str, Any]) -> str:
        try:
            return self._event_type(_decode_body(raw_body)) or "unknown"
        except NormalizationError:
            return "unknown"

    def normalize(
        self,
        raw_body: bytes | str | Mapping[str, Any],
        *,
        received_at: Optional[datetime] = None,
    ) -> PaymentEvent:
        payload = _decode_body(raw_body)
        event_type = self._event_type(payload)
        if not event_type:
            raise NormalizationError(MALFORMED_PAYLOAD, "event type missing")
        kind = self.event_kinds.get(event_type, EventKind.NO_OP)
        correlation_id = None
        amount_minor: Optional[int] = None
        currency: Optional[str] = None
        if kind != EventKind.NO_OP:
            correlation_id = self._correlation_id(kind, payload)
            if not correlation_id:
                raise NormalizationError(
                    MISSING_CORRELATION,
                    f"{self.provider.value} {event_type} carries no correlation id",
                    event_type=event_type,
                )
            amount_minor, currency = self._amount(kind, payload, event_type)
        return PaymentEvent(
            provider=self.provider,
            event_type=event_type,
            kind=kind,
            provider_correlation_id=correlation_id,
            raw_payload=payload,
            received_at=received_at or datetime.now(timezone.utc),
            provider_event_id=self._event_id(payload),
            amount_minor=amount_minor,
            currency=currency,
        )


class PaystackAdapter(BaseWebhookAdapter):
    event_kinds = {
        "charge.success": EventKind.PAYMENT_COMPLETED,
        "charge.failed": EventKind.PAYMENT_FAILED,
        "invoice.payment_failed": EventKind.PAYMENT_FAILED,
        "subscription.create": EventKind.SUBSCRIPTION_ACTIVATED,
        "subscription.disable": EventKind.SUBSCRIPTION_CANCELLED,
    }

    def __init__(self, *, secret_key: Optional[str] = None, signature_required: bool = True) -> None:
        self.secret_key = PAYSTACK_SECRET_KEY if secret_key is None else secret_key
        self.signature_required = signature_required

    @property
    def provider(self) -> PaymentProvider:
        return PaymentProvider.PAYSTACK

    def authenticate(self, body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        signature = str(headers.get(PAYSTACK_SIGNATURE_HEADER) or "").strip()
        if not self.signature_required:
            return signature or None
        if not signature:
            raise WebhookAuthError("WEBHOOK_SIGNATURE_MISSING", 400, "x-paystack-signature header missing")
        if not self.secret_key:
            raise WebhookAuthError("WEBHOOK_PROVIDER_MISCONFIG", 503, "PAYSTACK_SECRET_KEY is not configured")
        if not verify_paystack_signature(body, signature, self.secret_key):
            raise WebhookAuthError("WEBHOOK_SIGNATURE_INVALID", 401, "paystack signature mismatch")
        return signature

    def _event_type(self, payload: dict[str, Any]) -> Optional[str]:
        return _clean_id(payload.get("event"))

    def _correlation_id(self, kind: EventKind, payload: dict[str, Any]) -> Optional[str]:
        data = payload.get("data")
        if kind in {EventKind.SUBSCRIPTION_ACTIVATED, EventKind.SUBSCRIPTION_CANCELLED}:
            return _clean_id(_dig(data, "subscription_code"))
        if kind == EventKind.PAYMENT_FAILED:
            return _clean_id(_dig(data, "reference")) or _clean_id(_dig(data, "transaction", "reference"))
        return _clean_id(_dig(data, "reference"))

    def _amount(self, kind: EventKind, payload: dict[str, Any], event_type: str) -> tuple[Optional[int], Optional[str]]:
        if kind != EventKind.PAYMENT_COMPLETED:
            return None, None
        data = payload.get("data")
        raw_amount = _dig(data, "amount")
        currency = _clean_id(_dig(data, "currency"))
        if raw_amount is None:
            return None, currency.upper() if currency else None
        if isinstance(raw_amount, bool) or not isinstance(raw_amount, (int, str)):
            raise NormalizationError(MALFORMED_PAYLOAD, f"invalid amount: {raw_amount}", event_type=event_type)
        try:
            amount_minor = int(str(raw_amount).strip())
        except ValueError as exc:
            raise NormalizationError(MALFORMED_PAYLOAD, f"invalid amount: {raw_amount}", event_type=event_type) from exc
        return amount_minor, currency.upper() if currency else None

    def _event_id(self, payload: dict[str, Any]) -> Optional[str]:
        return _clean_id(_dig(payload, "data", "id"))


class PayPalAdapter(BaseWebhookAdapter):
    event_kinds = {
        "PAYMENT.CAPTURE.COMPLETED": EventKind.PAYMENT_COMPLETED,
        "PAYMENT.CAPTURE.DENIED": EventKind.PAYMENT_FAILED,
        "PAYMENT.CAPTURE.DECLINED": EventKind.PAYMENT_FAILED,
        "BILLING.SUBSCRIPTION.ACTIVATED": EventKind.SUBSCRIPTION_ACTIVATED,
        "BILLING.SUBSCRIPTION.CANCELLED": EventKind.SUBSCRIPTION_CANCELLED,
    }

    def __init__(
        self,
        *,
        webhook_id: Optional[str] = None,
        signature_required: bool = True,
        cert_loader: CertLoader | None = None,
        allowed_hosts: list[str] | None = None,
    ) -> None:
        self.webhook_id = PAYPAL_WEBHOOK_ID if webhook_id is None else webhook_id
        self.signature_required = signature_required
        self.cert_loader = cert_loader
        self.allowed_hosts = allowed_hosts

    @property
    def provider(self) -> PaymentProvider:
        return PaymentProvider.PAYPAL

    def authenticate(self, body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        transmission = PayPalTransmission.from_headers(headers)
        if not self.signature_required:
            return transmission.transmission_sig if transmission else None
        if transmission is None:
            raise WebhookAuthError("WEBHOOK_SIGNATURE_MISSING", 400, "paypal transmission headers missing")
        if not self.webhook_id:
            raise WebhookAuthError("WEBHOOK_PROVIDER_MISCONFIG", 503, "PAYPAL_WEBHOOK_ID is not configured")
        try:
            valid = verify_paypal_transmission(
                body,
                transmission,
                webhook_id=self.webhook_id,
                cert_loader=self.cert_loader,
                allowed_hosts=self.allowed_hosts,
            )
        except PayPalSignatureError as exc:
            raise WebhookAuthError("WEBHOOK_SIGNATURE_INVALID", 401, str(exc)) from exc
        if not valid:
            raise WebhookAuthError("WEBHOOK_SIGNATURE_INVALID", 401, "paypal transmission signature mismatch")
        return transmission.transmission_sig

    def _event_type(self, payload: dict[str, Any]) -> Optional[str]:
        return _clean_id(payload.get("event_type"))

    def _correlation_id(self, kind: EventKind, payload: dict[str, Any]) -> Optional[str]:
        resource = payload.get("resource")
        if kind in {EventKind.SUBSCRIPTION_ACTIVATED, EventKind.SUBSCRIPTION_CANCELLED}:
            return _clean_id(_dig(resource, "id"))
        return _clean_id(_dig(resource, "supplementary_data", "related_ids", "order_id"))

    def _amount(self, kind: EventKind, payload: dict[str, Any], event_type: str) -> tuple[Optional[int], Optional[str]]:
        if kind != EventKind.PAYMENT_COMPLETED:
            return None, None
        amount = _dig(payload, "resource", "amount")
        currency = _clean_id(_dig(amount, "currency_code"))
        currency = currency.upper() if currency else None
        return _decimal_to_minor(_dig(amount, "value"), currency, event_type=event_type), currency

    def _event_id(self, payload: dict[str, Any]) -> Optional[str]:
        return _clean_id(payload.get("id"))


def get_webhook_adapter(name: str | PaymentProvider, **kwargs: Any) -> BaseWebhookAdapter:
    """
    Adapter factory, selected by the webhook route.

    Keyword arguments are passed to the adapter constructor (tests inject
    secrets and certificate loaders this way).
    """

    selected = PaymentProvider(str(getattr(name, "value", name) or "").strip().lower())
    if selected == PaymentProvider.PAYSTACK:
        return PaystackAdapter(**kwargs)
    return PayPalAdapter(**kwargs)
