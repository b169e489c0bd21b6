from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .models import PaymentProvider


class _PaymentMetadataBase(BaseModel):
    # Audit merges add keys like `webhook_processed_at`; keep them round-tripping.
    model_config = ConfigDict(extra="allow")

    plan_id: str = Field(min_length=1, max_length=64)
    client_profile_id: str = Field(min_length=1, max_length=36)
    user_id: Optional[str] = None
    email: Optional[str] = None


class PaystackPaymentMetadata(_PaymentMetadataBase):
    provider: Literal["paystack"] = PaymentProvider.PAYSTACK.value
    paystack_reference: Optional[str] = None


class PayPalPaymentMetadata(_PaymentMetadataBase):
    provider: Literal["paypal"] = PaymentProvider.PAYPAL.value
    paypal_order_id: Optional[str] = None


PaymentMetadata = Annotated[
    Union[PaystackPaymentMetadata, PayPalPaymentMetadata],
    Field(discriminator="provider"),
]

_METADATA_ADAPTER: TypeAdapter[Any] = TypeAdapter(PaymentMetadata)


class PaymentMetadataError(ValueError):
    pass


def parse_payment_metadata(raw: Any, provider: PaymentProvider | str | None = None) -> PaystackPaymentMetadata | PayPalPaymentMetadata:
    """
    Validate a PaymentRecord metadata bag into its provider variant.

    Rows written before the provider tag was captured are accepted when the
    caller supplies the row's provider; a tag disagreeing with it is rejected.
    """

    if not isinstance(raw, dict):
        raise PaymentMetadataError("payment metadata must be an object")
    data = dict(raw)
    expected = PaymentProvider(provider).value if provider is not None else None
    tagged = data.get("provider")
    if tagged is None and expected is not None:
        data["provider"] = expected
    elif expected is not None and str(tagged) != expected:
        raise PaymentMetadataError(f"payment metadata provider={tagged} does not match row provider={expected}")
    try:
        return _METADATA_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise PaymentMetadataError(str(exc)) from exc


def merge_metadata(existing: Optional[dict[str, Any]], patch: dict[str, Any]) -> dict[str, Any]:
    """Add keys from `patch`; keys already captured are never overwritten."""

    merged: dict[str, Any] = dict(existing or {})
    for key, value in dict(patch or {}).items():
        merged.setdefault(str(key), value)
    return merged
