"""
Subscription lifecycle: statuses, legal transitions and derived expiry.

States: ACTIVE, EXPIRED, PENDING_PAYMENT, CANCELED, SCHEDULED

  create → ACTIVE (nothing to pay) | PENDING_PAYMENT
  renew  → new record: SCHEDULED (starts after the current period) | ACTIVE
  cancel → CANCELED, only from ACTIVE / PENDING_PAYMENT / SCHEDULED

Expiry is never a stored transition here: a subscription whose end_date has
passed *reads* as EXPIRED until the backend says otherwise. Transitions built
here are provisional; the backend response always replaces them.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from enum import Enum

from gymdesk.exceptions import PolicyViolation, ViolationCode
from gymdesk.schemas import Plan, Subscription, SubscriptionStatus


CANCELABLE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_PAYMENT,
    SubscriptionStatus.SCHEDULED,
})

# Statuses that silently lapse into EXPIRED once end_date is behind us
LAPSING_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.SCHEDULED,
    SubscriptionStatus.PENDING_PAYMENT,
})

PAYABLE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_PAYMENT,
    SubscriptionStatus.SCHEDULED,
})

# Display order for lists: live subscriptions first, history last
STATUS_PRIORITY = {
    SubscriptionStatus.ACTIVE: 1,
    SubscriptionStatus.PENDING_PAYMENT: 2,
    SubscriptionStatus.SCHEDULED: 3,
    SubscriptionStatus.EXPIRED: 4,
    SubscriptionStatus.CANCELED: 5,
}


class Action(str, Enum):
    RENEW = "renew"
    CANCEL = "cancel"
    PAY = "pay"


def provisional_id() -> str:
    return f"temp-{uuid.uuid4().hex}"


# ── Derived state ──────────────────────────────────────────

def is_lapsed(subscription: Subscription, today: date) -> bool:
    return subscription.end_date < today


def effective_status(subscription: Subscription, today: date) -> SubscriptionStatus:
    """Stored status, except that a lapsed live subscription reads as EXPIRED."""
    if subscription.status in LAPSING_STATUSES and is_lapsed(subscription, today):
        return SubscriptionStatus.EXPIRED
    return subscription.status


def can_cancel(subscription: Subscription, today: date) -> bool:
    return effective_status(subscription, today) in CANCELABLE_STATUSES


def sort_by_status(subscriptions: list[Subscription], today: date) -> list[Subscription]:
    """Live subscriptions first, then by end date (latest first) within a status."""
    by_end = sorted(subscriptions, key=lambda s: s.end_date, reverse=True)
    return sorted(by_end, key=lambda s: STATUS_PRIORITY[effective_status(s, today)])


def history(subscriptions: list[Subscription], today: date) -> list[Subscription]:
    """Finished subscriptions only (expired or canceled, stored or derived)."""
    done = {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELED}
    return [s for s in subscriptions if effective_status(s, today) in done]


def scheduled_renewal(
    subscriptions: list[Subscription],
    active: Subscription | None,
) -> Subscription | None:
    """The SCHEDULED record that follows the active one, if any."""
    if active is None:
        return None
    for sub in subscriptions:
        if sub.status == SubscriptionStatus.SCHEDULED and sub.start_date > active.end_date:
            return sub
    return None


# ── Transitions ────────────────────────────────────────────

def create(
    client_id: str | None,
    plan: Plan | None,
    start_date: date,
    now: datetime,
) -> Subscription:
    """Provisional record for a brand new subscription."""
    if not client_id or plan is None:
        raise PolicyViolation(
            ViolationCode.MISSING_CONTEXT,
            "A client and a plan are required to create a subscription",
        )
    status = SubscriptionStatus.ACTIVE if plan.price == 0 else SubscriptionStatus.PENDING_PAYMENT
    return Subscription(
        id=provisional_id(),
        client_id=client_id,
        plan_id=plan.id,
        start_date=start_date,
        end_date=start_date + timedelta(days=plan.duration_days - 1),
        status=status,
        final_price=plan.price,
        created_at=now,
        updated_at=now,
        provisional=True,
    )


def renew(
    source: Subscription | None,
    now: datetime,
    plan: Plan | None = None,
    final_price: int | None = None,
) -> Subscription:
    """
    Provisional record for the subscription that follows `source`.

    The new period starts the day after the current one ends, or today when
    the current one has already lapsed. `source` is left untouched.
    """
    if source is None or not source.client_id:
        raise PolicyViolation(
            ViolationCode.MISSING_CONTEXT,
            "Renewal needs the client's current subscription",
        )
    plan_id = plan.id if plan else source.plan_id
    if not plan_id:
        raise PolicyViolation(ViolationCode.MISSING_CONTEXT, "Renewal needs a plan")

    today = now.date()
    start = max(today, source.end_date + timedelta(days=1))
    if plan is not None:
        duration = plan.duration_days
    else:
        duration = (source.end_date - source.start_date).days + 1
    status = SubscriptionStatus.SCHEDULED if start > today else SubscriptionStatus.ACTIVE

    if final_price is None and plan is not None:
        final_price = plan.price
    return Subscription(
        id=provisional_id(),
        client_id=source.client_id,
        plan_id=plan_id,
        start_date=start,
        end_date=start + timedelta(days=duration - 1),
        status=status,
        final_price=final_price,
        created_at=now,
        updated_at=now,
        provisional=True,
    )


def ensure_cancelable(subscription: Subscription, today: date) -> None:
    if not can_cancel(subscription, today):
        status = effective_status(subscription, today)
        raise PolicyViolation(
            ViolationCode.NOT_CANCELABLE,
            f"A subscription in status '{status.value}' cannot be canceled",
        )


def cancel(subscription: Subscription, now: datetime, reason: str | None = None) -> Subscription:
    """Canceled copy of `subscription`; the input is never modified."""
    ensure_cancelable(subscription, now.date())
    return subscription.model_copy(update={
        "status": SubscriptionStatus.CANCELED,
        "cancellation_date": now,
        "cancellation_reason": reason,
        "updated_at": now,
        "provisional": True,
    })


def with_status(subscription: Subscription, status: SubscriptionStatus) -> Subscription:
    """
    Copy carrying a status reported by the backend (e.g. after a payment).

    The copy is validated like any parsed record, so a status that breaks the
    record's invariants (CANCELED without a cancellation date) raises ValidationError.
    """
    if status == subscription.status:
        return subscription
    data = subscription.model_dump()
    data["status"] = status
    return Subscription.model_validate(data)


# ── Actions ────────────────────────────────────────────────

def allowed_actions(
    subscription: Subscription,
    now: datetime,
    remaining_debt: int | None = None,
) -> set[Action]:
    """
    Which actions the dashboard may offer for a subscription right now.

    Renewal follows the eligibility window, cancel follows the status, and
    payment needs a payable status plus outstanding debt when it is known.
    """
    from gymdesk.services.eligibility import eligibility

    today = now.date()
    actions: set[Action] = set()
    verdict = eligibility(subscription, now)
    if verdict.can_renew:
        actions.add(Action.RENEW)
    if verdict.can_cancel:
        actions.add(Action.CANCEL)
    if effective_status(subscription, today) in PAYABLE_STATUSES and (
        remaining_debt is None or remaining_debt > 0
    ):
        actions.add(Action.PAY)
    return actions
