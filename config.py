import json
import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Empty pre-existing env vars are not authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

# Provider secrets are never read from config.yaml.
_ENV_ONLY_KEYS = {
    "PAYSTACK_SECRET_KEY",
    "PAYPAL_WEBHOOK_ID",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_csv(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value or "").split(",") if item.strip()]


# Env vars carry mappings as JSON; config.yaml carries them natively.
def _parse_mapping(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    text = str(value or "").strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {}
    return dict(parsed) if isinstance(parsed, dict) else {}


API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8020"))
_root_path = str(_get("ROOT_PATH", "")).strip()
if _root_path and not _root_path.startswith("/"):
    _root_path = f"/{_root_path}"
ROOT_PATH = _root_path.rstrip("/") if _root_path else ""
APP_VERSION = str(_get("APP_VERSION", "0.3.0"))

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.crm_billing', 'crm_billing.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
DATABASE_TIMEOUT_SECONDS = max(1, int(_get("DATABASE_TIMEOUT_SECONDS", "10")))
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "false"), False)
CELERY_ALWAYS_EAGER = _parse_bool(_get("CELERY_ALWAYS_EAGER", "false"), False)

TENANT_LOCK_TIMEOUT_SECONDS = max(1.0, float(_get("TENANT_LOCK_TIMEOUT_SECONDS", "10")))
TENANT_LOCK_TTL_SECONDS = max(5, int(_get("TENANT_LOCK_TTL_SECONDS", "30")))
RECONCILE_MAX_ATTEMPTS = max(1, int(_get("RECONCILE_MAX_ATTEMPTS", "5")))

WEBHOOK_SIGNATURE_REQUIRED = _parse_bool(_get("WEBHOOK_SIGNATURE_REQUIRED", "true"), True)
PAYSTACK_SECRET_KEY = str(_get("PAYSTACK_SECRET_KEY", "")).strip()
PAYPAL_WEBHOOK_ID = str(_get("PAYPAL_WEBHOOK_ID", "")).strip()
PAYPAL_CERT_ALLOWED_HOSTS = _parse_csv(
    _get("PAYPAL_CERT_ALLOWED_HOSTS", "api.paypal.com,api.sandbox.paypal.com,api-m.paypal.com,api-m.sandbox.paypal.com")
)
PAYPAL_CERT_FETCH_TIMEOUT_SECONDS = max(1.0, float(_get("PAYPAL_CERT_FETCH_TIMEOUT_SECONDS", "5")))

# When a provider's native subscription object is the tenant's billing source of
# truth, its activation/cancellation events drive the subscription state machine.
PAYSTACK_SUBSCRIPTION_AUTHORITATIVE = _parse_bool(_get("PAYSTACK_SUBSCRIPTION_AUTHORITATIVE", "false"), False)
PAYPAL_SUBSCRIPTION_AUTHORITATIVE = _parse_bool(_get("PAYPAL_SUBSCRIPTION_AUTHORITATIVE", "false"), False)

SUBSCRIPTION_PLANS = _parse_mapping(_get("SUBSCRIPTION_PLANS", {}))
NOTIFICATION_REDELIVERY_BATCH = max(1, int(_get("NOTIFICATION_REDELIVERY_BATCH", "100")))

LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
