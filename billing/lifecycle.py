from __future__ import annotations

from .models import SubscriptionStatus


class SubscriptionTransitionError(RuntimeError):
    def __init__(self, current: SubscriptionStatus | None, target: SubscriptionStatus) -> None:
        current_label = current.value if current is not None else "NONE"
        super().__init__(f"subscription cannot move from {current_label} to {target.value}")
        self.current = current
        self.target = target


_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.EXPIRED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.SUSPENDED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.CANCELLED: set(),
}


def can_transition(
    current: SubscriptionStatus | None,
    target: SubscriptionStatus,
    *,
    settlement: bool = False,
) -> bool:
    if target == SubscriptionStatus.ACTIVE and not settlement:
        return False
    if settlement:
        # A settled payment reactivates whatever row the tenant holds.
        return target == SubscriptionStatus.ACTIVE
    if current is None:
        return False
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def transition(
    current: SubscriptionStatus | None,
    target: SubscriptionStatus,
    *,
    settlement: bool = False,
) -> SubscriptionStatus:
    """
    Validate a subscription status change and return the new status.

    Only the settlement flow may target ACTIVE; it may do so from any prior
    status, including no row at all. Every other transition follows the
    table above, and CANCELLED is terminal for them.
    """

    if not can_transition(current, target, settlement=settlement):
        raise SubscriptionTransitionError(current, target)
    return target


def is_terminal(status: SubscriptionStatus | None) -> bool:
    return status == SubscriptionStatus.CANCELLED
