"""
Renewal eligibility: which lifecycle actions are open for a subscription today.

Rules:
  - Renewal opens RENEWAL_WINDOW_DAYS (3) days before the end date
  - A lapsed subscription (end date behind us) can always be renewed
  - Cancel depends only on the (derived) status, never on the calendar
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime

from gymdesk.config import settings
from gymdesk.exceptions import PolicyViolation, ViolationCode
from gymdesk.schemas import Subscription
from gymdesk.services.lifecycle import can_cancel


@dataclass(frozen=True)
class Eligibility:
    can_renew: bool
    days_remaining: int
    can_cancel: bool
    message: str | None = None


def _as_date(now: date | datetime) -> date:
    return now.date() if isinstance(now, datetime) else now


def days_remaining(subscription: Subscription, now: date | datetime) -> int:
    """
    Whole days left before the end date, 0 once it has passed.

    Counted from today's date, so it equals ceil((end_date - now) in days)
    for any time of day.
    """
    return max(0, (subscription.end_date - _as_date(now)).days)


def eligibility(
    subscription: Subscription,
    now: date | datetime,
    window_days: int | None = None,
) -> Eligibility:
    window = settings.RENEWAL_WINDOW_DAYS if window_days is None else window_days
    today = _as_date(now)
    remaining = days_remaining(subscription, today)
    cancelable = can_cancel(subscription, today)

    if subscription.end_date < today:
        return Eligibility(
            can_renew=True,
            days_remaining=0,
            can_cancel=cancelable,
            message="The subscription has expired. It can be renewed now.",
        )

    if remaining > window:
        return Eligibility(
            can_renew=False,
            days_remaining=remaining,
            can_cancel=cancelable,
            message=(
                f"Renewal opens {window} days before the subscription ends. "
                f"{remaining} days remain."
            ),
        )

    if remaining == 0:
        # Last day of the term: still active, not expired
        return Eligibility(
            can_renew=True,
            days_remaining=0,
            can_cancel=cancelable,
            message="The subscription ends today. It can be renewed now.",
        )

    return Eligibility(can_renew=True, days_remaining=remaining, can_cancel=cancelable)


def ensure_renewable(subscription: Subscription, now: date | datetime) -> Eligibility:
    verdict = eligibility(subscription, now)
    if not verdict.can_renew:
        raise PolicyViolation(ViolationCode.NOT_RENEWABLE, verdict.message or "Renewal not allowed")
    return verdict
