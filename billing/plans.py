from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

_INTERVAL_MONTHS = {
    "month": 1,
    "monthly": 1,
    "quarter": 3,
    "quarterly": 3,
    "year": 12,
    "yearly": 12,
    "annual": 12,
}

_CURRENCY_EXPONENTS = {
    "BIF": 0,
    "CLP": 0,
    "HUF": 0,
    "JPY": 0,
    "KRW": 0,
    "TWD": 0,
    "UGX": 0,
    "VND": 0,
    "XAF": 0,
    "XOF": 0,
    "BHD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
}


class UnknownPlanError(LookupError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"unknown plan: {plan_id}")
        self.plan_id = plan_id


@dataclass(frozen=True)
class PlanDefinition:
    plan_id: str
    name: str
    amount_minor: int
    currency: str = "GHS"
    interval: str = "month"
    features: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "name": self.name,
            "amount_minor": self.amount_minor,
            "amount": format_amount(self.amount_minor, self.currency),
            "currency": self.currency,
            "interval": self.interval,
            "features": list(self.features),
        }


DEFAULT_PLANS: tuple[PlanDefinition, ...] = (
    PlanDefinition(
        plan_id="BASIC",
        name="Basic Plan",
        amount_minor=5000,
        interval="monthly",
        features=(
            "Up to 50 products",
            "Basic inventory tracking",
            "Sales recording",
            "Email notifications",
            "Basic analytics",
        ),
    ),
    PlanDefinition(
        plan_id="STANDARD",
        name="Standard Plan",
        amount_minor=10000,
        interval="monthly",
        features=(
            "Up to 200 products",
            "Advanced inventory tracking",
            "Sales recording & analytics",
            "Email & WhatsApp notifications",
            "Advanced analytics & reports",
            "Low stock alerts",
            "Priority support",
        ),
    ),
    PlanDefinition(
        plan_id="PREMIUM",
        name="Premium Plan",
        amount_minor=20000,
        interval="monthly",
        features=(
            "Unlimited products",
            "Full inventory management",
            "Advanced sales analytics",
            "All notification channels",
            "Custom reports",
            "API access",
            "Dedicated account manager",
            "24/7 priority support",
        ),
    ),
)


def interval_months(interval: str) -> int:
    key = str(interval or "").strip().lower()
    if key not in _INTERVAL_MONTHS:
        raise ValueError(f"unsupported billing interval: {interval}")
    return _INTERVAL_MONTHS[key]


def add_months(start: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day clamps to the target month's last day."""

    month_index = start.month - 1 + int(months)
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def advance_period(start: datetime, interval: str) -> datetime:
    return add_months(start, interval_months(interval))


def currency_exponent(currency: Optional[str]) -> int:
    """Number of minor-unit digits for an ISO 4217 code (2 unless listed)."""

    return _CURRENCY_EXPONENTS.get(str(currency or "").strip().upper(), 2)


def format_amount(amount_minor: int, currency: str) -> str:
    exponent = currency_exponent(currency)
    major = (Decimal(int(amount_minor)) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))
    return f"{str(currency or '').upper()} {major}"


def _plan_key(plan_id: Optional[str]) -> str:
    return str(plan_id or "").strip().upper()


class PlanCatalog:
    """
    Static plan table, loaded once at process start.

    Lookups are pure; the catalog is never mutated after construction.
    """

    def __init__(self, plans: Optional[list[PlanDefinition] | tuple[PlanDefinition, ...]] = None) -> None:
        entries = list(DEFAULT_PLANS if plans is None else plans)
        for plan in entries:
            interval_months(plan.interval)
        self._plans: dict[str, PlanDefinition] = {_plan_key(plan.plan_id): plan for plan in entries}

    @classmethod
    def from_config(cls, raw: Optional[Mapping[str, Any]] = None) -> "PlanCatalog":
        """
        Build a catalog from the `SUBSCRIPTION_PLANS` mapping.

        An empty mapping keeps the default plan table.
        """

        if not raw:
            return cls()
        if not isinstance(raw, Mapping):
            raise ValueError("SUBSCRIPTION_PLANS must be a mapping of plan id to plan fields")
        plans: list[PlanDefinition] = []
        for plan_id, fields in raw.items():
            if not isinstance(fields, Mapping):
                raise ValueError(f"plan {plan_id} must be a mapping")
            key = str(plan_id).strip().upper()
            plans.append(
                PlanDefinition(
                    plan_id=key,
                    name=str(fields.get("name") or key.title()),
                    amount_minor=int(fields.get("amount_minor", 0)),
                    currency=str(fields.get("currency") or "GHS").upper(),
                    interval=str(fields.get("interval") or "month"),
                    features=tuple(str(item) for item in fields.get("features") or ()),
                )
            )
        return cls(plans)

    def get(self, plan_id: Optional[str]) -> Optional[PlanDefinition]:
        key = _plan_key(plan_id)
        if not key:
            return None
        return self._plans.get(key)

    def lookup(self, plan_id: Optional[str]) -> PlanDefinition:
        plan = self.get(plan_id)
        if plan is None:
            raise UnknownPlanError(str(plan_id or ""))
        return plan

    def list(self) -> list[PlanDefinition]:
        return sorted(self._plans.values(), key=lambda plan: (plan.amount_minor, plan.plan_id))

    def __len__(self) -> int:
        return len(self._plans)
