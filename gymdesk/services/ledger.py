"""
Payment Ledger: append-only payments of one subscription and the debt they leave.

Policy:
  - Amounts are positive whole units and never exceed the remaining debt
  - At most one partial payment per calendar day per subscription
  - A full payment (exactly the remaining debt) is exempt from the daily limit;
    its amount always comes from the ledger, never from free input
  - Provisional entries are superseded by the confirmed payment or discarded,
    never edited

The backend enforces the same rules; the checks here spare a round trip.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable

from gymdesk.config import settings
from gymdesk.exceptions import PolicyViolation, ViolationCode
from gymdesk.schemas import Payment, PaymentIntent, PaymentMethod, PaymentStats
from gymdesk.services.lifecycle import provisional_id
from gymdesk.services.money import format_amount, percentage_of, require_positive


def compute_stats(
    payments: Iterable[Payment],
    subscription_price: int,
    subscription_id: str | None = None,
) -> PaymentStats:
    """Derive totals for a subscription: paid + remaining_debt == price (debt floored at 0)."""
    payments = list(payments)
    total_paid = sum(p.amount for p in payments)
    last = max((p.payment_date for p in payments), default=None)
    return PaymentStats(
        subscription_id=subscription_id,
        total_payments=len(payments),
        total_amount_paid=total_paid,
        remaining_debt=max(0, subscription_price - total_paid),
        last_payment_date=last,
    )


def sort_by_date(payments: Iterable[Payment]) -> list[Payment]:
    """Newest first."""
    return sorted(payments, key=lambda p: p.payment_date, reverse=True)


class PaymentLedger:
    """Payments of one subscription, with the debt derived from the subscription price."""

    def __init__(
        self,
        subscription_id: str,
        price: int | None = None,
        payments: Iterable[Payment] = (),
    ):
        self.subscription_id = subscription_id
        self.price = price
        self._confirmed: list[Payment] = []
        self._pending: dict[str, Payment] = {}
        for payment in payments:
            self._append_confirmed(payment)

    @classmethod
    def from_stats(
        cls,
        subscription_id: str,
        stats: PaymentStats,
        payments: Iterable[Payment] = (),
    ) -> "PaymentLedger":
        """Ledger priced from backend stats (price = paid + remaining debt)."""
        return cls(subscription_id, price=stats.price, payments=payments)

    # ── Views ──────────────────────────────────────────────

    @property
    def payments(self) -> list[Payment]:
        """Confirmed and provisional entries, oldest first."""
        entries = self._confirmed + list(self._pending.values())
        return sorted(entries, key=lambda p: p.payment_date)

    @property
    def total_paid(self) -> int:
        return sum(p.amount for p in self.payments)

    @property
    def remaining_debt(self) -> int | None:
        if self.price is None:
            return None
        return max(0, self.price - self.total_paid)

    def stats(self) -> PaymentStats | None:
        if self.price is None:
            return None
        return compute_stats(self.payments, self.price, self.subscription_id)

    def partial_payment_days(self) -> set[date]:
        """
        Calendar days that already hold a partial payment.

        A payment is partial when it left debt behind at the time it was made.
        With an unknown price every payment counts as partial.
        """
        days: set[date] = set()
        outstanding = self.price
        for payment in self.payments:
            if outstanding is None or payment.amount < outstanding:
                days.add(payment.payment_date.date())
            if outstanding is not None:
                outstanding = max(0, outstanding - payment.amount)
        return days

    def has_partial_payment_on(self, day: date) -> bool:
        return day in self.partial_payment_days()

    def full_payment_amount(self) -> int:
        """The exact amount that settles the subscription."""
        debt = self.remaining_debt
        if debt is None:
            raise PolicyViolation(
                ViolationCode.MISSING_CONTEXT,
                "The subscription price is unknown; refresh payment stats first",
            )
        if debt == 0:
            raise PolicyViolation(ViolationCode.ALREADY_PAID, "The subscription is already fully paid")
        return debt

    def payment_progress(self) -> int:
        if self.price is None:
            return 0
        return percentage_of(self.total_paid, self.price)

    def payment_state(self, end_date: date, today: date) -> str:
        """'paid', 'partial', 'overdue' (past end date plus grace) or 'pending'."""
        debt = self.remaining_debt
        if debt == 0:
            return "paid"
        if self.total_paid > 0:
            return "partial"
        if today > end_date + timedelta(days=settings.PAYMENT_GRACE_DAYS):
            return "overdue"
        return "pending"

    # ── Policy ─────────────────────────────────────────────

    def validate(
        self,
        amount,
        today: date,
        intent: PaymentIntent = PaymentIntent.PARTIAL,
    ) -> int:
        """
        Check a payment against the ledger policy.

        Args:
            amount: Requested amount; ignored (or cross-checked) for FULL intent
            today: Calendar day the payment is made
            intent: PARTIAL or FULL

        Returns:
            The amount to submit

        Raises:
            PolicyViolation: INVALID_AMOUNT, EXCEEDS_DEBT, ALREADY_PAID,
                FULL_AMOUNT_MISMATCH or PARTIAL_PAYMENT_LIMIT
        """
        if intent == PaymentIntent.FULL:
            full = self.full_payment_amount()
            if amount is not None and require_positive(amount) != full:
                raise PolicyViolation(
                    ViolationCode.FULL_AMOUNT_MISMATCH,
                    f"A full payment must be exactly {format_amount(full)}",
                )
            return full

        value = require_positive(amount)
        debt = self.remaining_debt
        if debt is not None:
            if debt == 0:
                raise PolicyViolation(ViolationCode.ALREADY_PAID, "The subscription is already fully paid")
            if value > debt:
                raise PolicyViolation(
                    ViolationCode.EXCEEDS_DEBT,
                    f"Amount cannot exceed the remaining debt of {format_amount(debt)}",
                )
            if value == debt:
                return value  # settles the debt: not a partial payment

        if self.has_partial_payment_on(today):
            raise PolicyViolation(
                ViolationCode.PARTIAL_PAYMENT_LIMIT,
                "Only one partial payment per day is allowed; pay the full remaining debt instead",
            )
        return value

    # ── Mutations ──────────────────────────────────────────

    def record_payment(
        self,
        amount,
        method: PaymentMethod,
        now: datetime,
        intent: PaymentIntent = PaymentIntent.PARTIAL,
    ) -> Payment:
        """Validate and append a provisional payment; returns it."""
        value = self.validate(amount, now.date(), intent)
        payment = Payment(
            id=provisional_id(),
            subscription_id=self.subscription_id,
            amount=value,
            payment_method=method,
            payment_date=now,
            provisional=True,
        )
        self._pending[payment.id] = payment
        return payment

    def confirm(self, provisional_id: str, payment: Payment) -> None:
        """Supersede a provisional entry with the backend's payment."""
        self._pending.pop(provisional_id, None)
        self._append_confirmed(payment)

    def discard(self, provisional_id: str) -> None:
        self._pending.pop(provisional_id, None)

    def _append_confirmed(self, payment: Payment) -> None:
        if any(p.id == payment.id for p in self._confirmed):
            return
        self._confirmed.append(payment.model_copy(update={"provisional": False}))
