from __future__ import annotations

import pytest

from billing.models import PaymentProvider
from billing.schemas import (
    PaymentMetadataError,
    PayPalPaymentMetadata,
    PaystackPaymentMetadata,
    merge_metadata,
    parse_payment_metadata,
)


def test_metadata_variant_follows_row_provider() -> None:
    parsed = parse_payment_metadata(
        {"plan_id": "BASIC", "client_profile_id": "profile-1", "paystack_reference": "ref_1"},
        PaymentProvider.PAYSTACK,
    )
    assert isinstance(parsed, PaystackPaymentMetadata)
    assert parsed.paystack_reference == "ref_1"

    tagged = parse_payment_metadata(
        {"provider": "paypal", "plan_id": "PREMIUM", "client_profile_id": "profile-1", "webhook_processed_at": "x"}
    )
    assert isinstance(tagged, PayPalPaymentMetadata)
    # Keys added by reconciliation survive validation.
    assert tagged.model_dump()["webhook_processed_at"] == "x"


def test_metadata_rejects_mismatched_or_incomplete_bags() -> None:
    with pytest.raises(PaymentMetadataError):
        parse_payment_metadata(
            {"provider": "paypal", "plan_id": "BASIC", "client_profile_id": "profile-1"},
            PaymentProvider.PAYSTACK,
        )
    with pytest.raises(PaymentMetadataError):
        parse_payment_metadata({"plan_id": "BASIC"}, "paystack")
    with pytest.raises(PaymentMetadataError):
        parse_payment_metadata({"plan_id": "BASIC", "client_profile_id": "profile-1"})
    with pytest.raises(PaymentMetadataError):
        parse_payment_metadata(["not", "a", "mapping"], "paypal")


def test_merge_metadata_only_adds_keys() -> None:
    existing = {"plan_id": "BASIC", "provider": "paystack"}
    merged = merge_metadata(existing, {"provider": "paypal", "webhook_processed_at": "2026-01-01T00:00:00+00:00"})
    assert merged == {
        "plan_id": "BASIC",
        "provider": "paystack",
        "webhook_processed_at": "2026-01-01T00:00:00+00:00",
    }
    assert existing == {"plan_id": "BASIC", "provider": "paystack"}
    assert merge_metadata(None, {}) == {}
