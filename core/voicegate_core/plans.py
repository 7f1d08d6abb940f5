"""Subscription plans, tier limits and usage warning thresholds.

Two tiers control how many assistants a tenant may keep active and how many
call minutes it may consume per billing period:

* **Free** -- 1 assistant, 10 minutes per month.
* **Pro** -- 10 assistants, 100 minutes per month ($25.00).

A tenant whose subscription is ``cancelled`` or ``inactive`` falls back to
the free limits regardless of its recorded tier.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PlanTier(str, Enum):
    """Subscription tier."""

    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle state."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


class UsageKind(str, Enum):
    """Metered dimension checked by the usage ledger."""

    MINUTES = "minutes"
    ASSISTANTS = "assistants"


class WarningLevel(str, Enum):
    """How close a tenant is to a limit."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PlanLimits:
    """Numeric limits and price of one plan tier."""

    tier: PlanTier
    name: str
    max_assistants: int
    max_minutes_monthly: int
    price_cents: int
    support_level: str


PLANS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        tier=PlanTier.FREE,
        name="Free Plan",
        max_assistants=1,
        max_minutes_monthly=10,
        price_cents=0,
        support_level="community",
    ),
    PlanTier.PRO: PlanLimits(
        tier=PlanTier.PRO,
        name="Pro Plan",
        max_assistants=10,
        max_minutes_monthly=100,
        price_cents=2500,
        support_level="priority",
    ),
}

# (warning, critical) fractions of the limit.  Assistants have no soft
# headroom: critical is the hard cap itself.
WARNING_THRESHOLDS: dict[UsageKind, tuple[float, float]] = {
    UsageKind.MINUTES: (0.8, 0.9),
    UsageKind.ASSISTANTS: (0.8, 1.0),
}

_LIMITED_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.INACTIVE}
)


def parse_tier(value: str | None) -> PlanTier:
    """Map a stored tier string to :class:`PlanTier`; unknown values are free."""
    try:
        return PlanTier(value or PlanTier.FREE.value)
    except ValueError:
        return PlanTier.FREE


def get_plan_limits(tier: PlanTier | str) -> PlanLimits:
    """Return the limits of *tier*, defaulting to the free plan."""
    if not isinstance(tier, PlanTier):
        tier = parse_tier(tier)
    return PLANS.get(tier, PLANS[PlanTier.FREE])


def effective_limits(tier: PlanTier | str, status: SubscriptionStatus | str) -> PlanLimits:
    """Return the limits that apply to a tenant in *status* on *tier*.

    ``past_due`` keeps the paid limits (the processor is still retrying the
    charge); ``cancelled`` and ``inactive`` drop to the free plan.
    """
    if not isinstance(status, SubscriptionStatus):
        status = SubscriptionStatus(status)
    if status in _LIMITED_STATUSES:
        return PLANS[PlanTier.FREE]
    return get_plan_limits(tier)


def warning_level(used: float, limit: float, kind: UsageKind | str) -> WarningLevel:
    """Classify *used* against *limit* for the thresholds of *kind*.

    Parameters
    ----------
    used:
        Current consumption (non-negative).
    limit:
        The applicable limit.  A zero limit means nothing is ever allowed
        and is reported as :attr:`WarningLevel.CRITICAL`.
    kind:
        ``minutes`` or ``assistants``.

    Returns
    -------
    WarningLevel
        ``NONE`` below the warning threshold, ``WARNING`` between the
        warning and critical thresholds, ``CRITICAL`` at or above critical.
    """
    kind = UsageKind(kind)
    if limit <= 0:
        return WarningLevel.CRITICAL
    warn_at, critical_at = WARNING_THRESHOLDS[kind]
    ratio = used / limit
    if ratio >= critical_at:
        return WarningLevel.CRITICAL
    if ratio >= warn_at:
        return WarningLevel.WARNING
    return WarningLevel.NONE
