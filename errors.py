from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "WEBHOOK_SIGNATURE_MISSING": {
        "message": "Webhook signature header missing",
        "hint": "Confirm the request came from the provider and the proxy forwards signature headers.",
    },
    "WEBHOOK_SIGNATURE_INVALID": {
        "message": "Webhook signature invalid",
        "hint": "Check PAYSTACK_SECRET_KEY / PAYPAL_WEBHOOK_ID against the provider dashboard.",
    },
    "WEBHOOK_PROVIDER_MISCONFIG": {
        "message": "Webhook provider not configured",
        "hint": "Set the provider secret in the environment; the provider will retry meanwhile.",
    },
    "MALFORMED_PAYLOAD": {
        "message": "Webhook body is not a valid provider payload",
        "hint": "Acknowledged without reconciling. Inspect the audit log raw payload.",
    },
    "MISSING_CORRELATION": {
        "message": "Webhook carries no correlation id",
        "hint": "Acknowledged without reconciling. The provider payload lacks the order/reference id.",
    },
    "ORPHANED_PAYMENT": {
        "message": "No payment record for this correlation id",
        "hint": "The provider reported a payment this system never initiated. Investigate before crediting.",
    },
    "UNKNOWN_PLAN": {
        "message": "Payment references a plan missing from the catalog",
        "hint": "Payment left PENDING. Fix SUBSCRIPTION_PLANS or the payment metadata, then replay the webhook.",
    },
    "UNKNOWN_TENANT": {
        "message": "Payment references a client profile that does not exist",
        "hint": "Payment left PENDING. Restore the client profile, then replay the webhook.",
    },
    "AMOUNT_MISMATCH": {
        "message": "Reported amount or currency differs from the payment record",
        "hint": "Payment left PENDING. Compare the provider dashboard with the checkout record.",
    },
    "STORE_UNAVAILABLE": {
        "message": "Record store unavailable",
        "hint": "Transient failure; the provider will redeliver. Check database health.",
    },
    "TENANT_LOCK_TIMEOUT": {
        "message": "Timed out waiting for the tenant billing lock",
        "hint": "Transient failure; the provider will redeliver. Check Redis and long-running settlements.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "See logs for the trace id.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
