"""
Subscription Desk: the intents the dashboard issues against a client's memberships.

Every mutation follows the same path:
  validate locally (no round trip on a rule violation)
  → optimistic cache write → backend call
  → commit authoritative data + mark dependent views stale, or roll back

Policy checks (eligibility, debt) always run on authoritative data.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable

from pydantic import ValidationError

from gymdesk.exceptions import NotFoundError, PolicyConflict, PolicyViolation, ViolationCode
from gymdesk.schemas import (
    Payment,
    PaymentCreate,
    PaymentIntent,
    PaymentMethod,
    PaymentReceipt,
    PaymentStats,
    Plan,
    Reward,
    RewardApply,
    Subscription,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionRenew,
)
from gymdesk.services import lifecycle
from gymdesk.services.api_client import GymApiClient
from gymdesk.services.consistency import (
    ConsistencyCoordinator,
    append_item,
    plan_keys,
    prepend_item,
    replace_item,
    replace_value,
    reward_keys,
    subscription_keys as keys,
)
from gymdesk.services.eligibility import Eligibility, eligibility, ensure_renewable
from gymdesk.services.ledger import PaymentLedger, compute_stats
from gymdesk.services.notifier import notify_payment_rejected
from gymdesk.services.rewards import (
    RenewalOutcome,
    RewardApplicationCoordinator,
    available_rewards,
    discounted_price,
)

logger = logging.getLogger(__name__)


def _require(**context) -> None:
    missing = [name for name, value in context.items() if not value]
    if missing:
        raise PolicyViolation(
            ViolationCode.MISSING_CONTEXT,
            f"Missing required context: {', '.join(missing)}",
        )


class SubscriptionDesk:
    def __init__(
        self,
        api: GymApiClient,
        coordinator: ConsistencyCoordinator | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.api = api
        self.cache = coordinator or ConsistencyCoordinator()
        self._clock = clock
        self.rewards = RewardApplicationCoordinator(renew=self.renew, apply_reward=self.apply_reward)

    def now(self) -> datetime:
        return self._clock()

    # ── Reads ──────────────────────────────────────────────

    async def list_subscriptions(self, client_id: str, authoritative: bool = False) -> list[Subscription]:
        _require(client_id=client_id)
        return await self.cache.read(
            keys.list(client_id),
            lambda: self.api.list_subscriptions(client_id),
            authoritative=authoritative,
        )

    async def active_subscription(self, client_id: str, authoritative: bool = False) -> Subscription | None:
        """The client's current subscription, or None when there is none."""
        _require(client_id=client_id)

        async def fetch() -> Subscription | None:
            try:
                return await self.api.get_active_subscription(client_id)
            except NotFoundError:
                return None

        return await self.cache.read(keys.active(client_id), fetch, authoritative=authoritative)

    async def subscription(
        self,
        client_id: str,
        subscription_id: str,
        authoritative: bool = False,
    ) -> Subscription:
        _require(client_id=client_id, subscription_id=subscription_id)

        async def fetch() -> Subscription:
            for sub in await self.list_subscriptions(client_id, authoritative=True):
                if sub.id == subscription_id:
                    return sub
            raise NotFoundError(404, f"Subscription {subscription_id} not found for client {client_id}")

        return await self.cache.read(keys.detail(subscription_id), fetch, authoritative=authoritative)

    async def plan(self, plan_id: str) -> Plan:
        return await self.cache.read(plan_keys.detail(plan_id), lambda: self.api.get_plan(plan_id))

    async def payments(self, subscription_id: str, authoritative: bool = False) -> list[Payment]:
        return await self.cache.read(
            keys.payments(subscription_id),
            lambda: self.api.list_payments(subscription_id),
            authoritative=authoritative,
        )

    async def payment_stats(self, subscription_id: str, authoritative: bool = False) -> PaymentStats:
        return await self.cache.read(
            keys.payment_stats(subscription_id),
            lambda: self.api.get_payment_stats(subscription_id),
            authoritative=authoritative,
        )

    async def ledger(self, subscription_id: str) -> PaymentLedger:
        """Ledger built from fresh backend stats and payments."""
        stats = await self.payment_stats(subscription_id, authoritative=True)
        payments = await self.payments(subscription_id, authoritative=True)
        return PaymentLedger.from_stats(subscription_id, stats, payments)

    async def available_rewards(self, client_id: str) -> list[Reward]:
        rewards = await self.cache.read(
            reward_keys.available(client_id),
            lambda: self.api.list_available_rewards(client_id),
        )
        return available_rewards(rewards, self.now())

    async def eligibility(self, client_id: str, subscription_id: str) -> Eligibility:
        sub = await self.subscription(client_id, subscription_id, authoritative=True)
        return eligibility(sub, self.now())

    async def allowed_actions(self, client_id: str, subscription_id: str) -> set[lifecycle.Action]:
        sub = await self.subscription(client_id, subscription_id, authoritative=True)
        stats = await self.payment_stats(subscription_id, authoritative=True)
        return lifecycle.allowed_actions(sub, self.now(), stats.remaining_debt)

    def forget_client(self, client_id: str) -> None:
        """Drop a client's cached views, e.g. when the operator leaves their page."""
        self.cache.forget(keys.list(client_id))
        self.cache.forget(reward_keys.available(client_id))

    # ── Mutations ──────────────────────────────────────────

    async def create_subscription(self, client_id: str, plan_id: str, start_date: date) -> Subscription:
        _require(client_id=client_id, plan_id=plan_id)
        plan = await self.plan(plan_id)
        provisional = lifecycle.create(client_id, plan, start_date, self.now())

        sub = await self.cache.mutate(
            request=lambda: self.api.create_subscription(
                client_id,
                SubscriptionCreate(plan_id=plan_id, start_date=start_date),
            ),
            optimistic={keys.list(client_id): append_item(provisional)},
            commit=lambda sub: {keys.detail(sub.id): sub},
            invalidate=lambda sub: [keys.list(client_id), keys.payment_stats(sub.id)],
        )
        logger.info("Subscription %s created for client %s (%s)", sub.id, client_id, sub.status.value)
        return sub

    async def renew(
        self,
        client_id: str,
        source: Subscription,
        plan_id: str | None = None,
        discount_percentage=None,
    ) -> Subscription:
        """
        Create the subscription that follows `source`.

        The source is re-read (never from provisional data) before the eligibility check;
        the source record itself is never modified by a renewal.
        """
        _require(client_id=client_id, subscription=source)
        now = self.now()
        current = await self.subscription(client_id, source.id, authoritative=True)
        ensure_renewable(current, now)

        plan = await self.plan(plan_id) if plan_id else None
        final_price = None
        if plan is not None:
            final_price = discounted_price(plan.price, discount_percentage)
        provisional = lifecycle.renew(current, now, plan, final_price)

        body = SubscriptionRenew(
            plan_id=plan_id,
            discount_percentage=None if discount_percentage is None else str(discount_percentage),
        )
        sub = await self.cache.mutate(
            request=lambda: self.api.renew_subscription(client_id, current.id, body),
            optimistic={keys.list(client_id): append_item(provisional)},
            commit=lambda sub: {keys.detail(sub.id): sub},
            invalidate=lambda sub: [keys.list(client_id), keys.payment_stats(sub.id)],
        )
        logger.info("Subscription %s renewed as %s (%s)", current.id, sub.id, sub.status.value)
        return sub

    async def renew_with_reward(
        self,
        client_id: str,
        source: Subscription,
        reward: Reward | None = None,
        plan_id: str | None = None,
    ) -> RenewalOutcome:
        return await self.rewards.renew_with_reward(client_id, source, self.now(), reward=reward, plan_id=plan_id)

    async def apply_reward(self, reward_id: str, data: RewardApply) -> dict:
        return await self.cache.mutate(
            request=lambda: self.api.apply_reward(reward_id, data),
            invalidate=lambda _: [
                reward_keys.all(),
                keys.lists(),
                keys.detail(data.subscription_id),
                keys.payment_stats(data.subscription_id),
            ],
        )

    async def cancel(self, client_id: str, subscription_id: str, reason: str | None = None) -> Subscription:
        current = await self.subscription(client_id, subscription_id, authoritative=True)
        canceled = lifecycle.cancel(current, self.now(), reason)

        sub = await self.cache.mutate(
            request=lambda: self.api.cancel_subscription(
                client_id,
                subscription_id,
                SubscriptionCancel(cancellation_reason=reason),
            ),
            optimistic={
                keys.detail(subscription_id): replace_value(canceled),
                keys.list(client_id): replace_item(canceled),
            },
            commit=lambda sub: {keys.detail(sub.id): sub},
            invalidate=lambda sub: [keys.list(client_id), keys.payment_stats(sub.id)],
        )
        logger.info("Subscription %s canceled (reason=%s)", sub.id, reason)
        return sub

    async def record_payment(
        self,
        subscription_id: str,
        amount,
        method: PaymentMethod,
        intent: PaymentIntent = PaymentIntent.PARTIAL,
        client_id: str | None = None,
    ) -> PaymentReceipt:
        """
        Record a payment against a subscription.

        For a FULL intent the amount is taken from the current remaining debt;
        pass None (or the same figure) as `amount`.
        """
        _require(subscription_id=subscription_id)
        ledger = await self.ledger(subscription_id)
        provisional = ledger.record_payment(amount, PaymentMethod(method), self.now(), intent)
        optimistic_stats = compute_stats(ledger.payments, ledger.price, subscription_id)

        list_prefix = keys.list(client_id) if client_id else keys.lists()
        try:
            receipt = await self.cache.mutate(
                request=lambda: self.api.create_payment(
                    subscription_id,
                    PaymentCreate(amount=provisional.amount, payment_method=provisional.payment_method),
                ),
                optimistic={
                    keys.payments(subscription_id): prepend_item(provisional),
                    keys.payment_stats(subscription_id): replace_value(optimistic_stats),
                },
                commit=lambda r: self._commit_payment_status(subscription_id, r),
                invalidate=lambda _: [
                    keys.payments(subscription_id),
                    keys.payment_stats(subscription_id),
                    keys.detail(subscription_id),
                    list_prefix,
                ],
            )
        except PolicyConflict as e:
            # Local view was behind the server; force a reload and tell the operator
            self.cache.invalidate(keys.payments(subscription_id), keys.payment_stats(subscription_id))
            await notify_payment_rejected(subscription_id, provisional.amount, e.detail)
            raise
        logger.info(
            "Payment %s of %s recorded on %s; subscription now %s",
            receipt.payment.id,
            receipt.payment.amount,
            subscription_id,
            receipt.subscription_status.value,
        )
        return receipt

    def _commit_payment_status(self, subscription_id: str, receipt: PaymentReceipt) -> dict:
        # The backend decides whether the payment flipped the status
        cached = self.cache.get_data(keys.detail(subscription_id))
        if cached is None:
            return {}
        try:
            updated = lifecycle.with_status(cached, receipt.subscription_status)
        except ValidationError:
            # Left stale; the next read takes the full record from the backend
            logger.warning(
                "Cannot apply status %s to cached subscription %s; refetching instead",
                receipt.subscription_status.value,
                subscription_id,
            )
            return {}
        return {keys.detail(subscription_id): updated}
