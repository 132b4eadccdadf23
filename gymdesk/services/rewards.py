"""
Reward application at renewal time.

Flow:
  1. Operator optionally picks one of the client's available rewards
  2. Its percentage is parsed; an unusable value means "no discount"
  3. The renewal is created (fails or succeeds on its own)
  4. Only then the reward is applied to the NEW subscription id

Step 4 has no compensating transaction: if it fails the renewal stands,
the failure is logged, the operator is alerted and the outcome says so.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Iterable

from gymdesk.exceptions import DeskError
from gymdesk.schemas import Reward, RewardApply, RewardStatus, Subscription
from gymdesk.services.money import apply_percentage
from gymdesk.services.notifier import notify_reward_not_applied

logger = logging.getLogger(__name__)

MIN_DISCOUNT = Decimal("0")    # exclusive
MAX_DISCOUNT = Decimal("100")  # inclusive


@dataclass
class RenewalOutcome:
    subscription: Subscription
    reward_id: str | None = None
    discount_percentage: Decimal | None = None
    reward_applied: bool = False
    reward_error: str | None = None

    @property
    def warning(self) -> str | None:
        """Secondary message for the operator when the reward did not stick."""
        if self.reward_error is None:
            return None
        return f"Renewal created, but the reward could not be applied: {self.reward_error}"


# ── Pure helpers ───────────────────────────────────────────

def parse_discount(value) -> Decimal | None:
    """
    Discount percentage as a Decimal, or None when it cannot be used.

    Unparseable, NaN, infinite and out-of-range (not in (0, 100]) values
    all mean "no discount" rather than an error.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        pct = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not pct.is_finite() or pct <= MIN_DISCOUNT or pct > MAX_DISCOUNT:
        return None
    return pct


def discounted_price(price: int, discount_percentage) -> int:
    pct = parse_discount(discount_percentage)
    if pct is None:
        return price
    return apply_percentage(price, pct)


def discount_amount(price: int, discount_percentage) -> int:
    return price - discounted_price(price, discount_percentage)


def is_reward_available(reward: Reward, now: datetime) -> bool:
    if reward.status != RewardStatus.PENDING:
        return False
    return reward.expires_at is None or reward.expires_at >= now


def available_rewards(rewards: Iterable[Reward], now: datetime) -> list[Reward]:
    return [r for r in rewards if is_reward_available(r, now)]


# ── Coordinator ────────────────────────────────────────────

RenewFn = Callable[..., Awaitable[Subscription]]
ApplyFn = Callable[[str, RewardApply], Awaitable[dict]]


class RewardApplicationCoordinator:
    """Runs renew → apply-reward as two independent steps."""

    def __init__(self, renew: RenewFn, apply_reward: ApplyFn):
        self._renew = renew
        self._apply_reward = apply_reward

    async def renew_with_reward(
        self,
        client_id: str,
        source: Subscription,
        now: datetime,
        reward: Reward | None = None,
        plan_id: str | None = None,
    ) -> RenewalOutcome:
        pct = None
        if reward is not None:
            if not is_reward_available(reward, now):
                logger.warning("Reward %s is not available (status=%s); renewing without it", reward.id, reward.status.value)
                reward = None
            else:
                pct = parse_discount(reward.discount_percentage)
                if pct is None:
                    logger.warning(
                        "Reward %s has unusable discount %r; renewing without it",
                        reward.id,
                        reward.discount_percentage,
                    )
                    reward = None

        # Any failure here propagates: no renewal, nothing to apply
        subscription = await self._renew(
            client_id,
            source,
            plan_id=plan_id,
            discount_percentage=pct,
        )
        outcome = RenewalOutcome(subscription=subscription, discount_percentage=pct)
        if reward is None:
            return outcome

        outcome.reward_id = reward.id
        try:
            await self._apply_reward(
                reward.id,
                RewardApply(subscription_id=subscription.id, discount_percentage=str(pct)),
            )
        except DeskError as e:
            logger.warning(
                "Renewal %s created but reward %s was not applied: %s",
                subscription.id,
                reward.id,
                e.message,
            )
            outcome.reward_error = e.message
            await notify_reward_not_applied(client_id, subscription.id, reward.id, e.message)
            return outcome

        logger.info("Reward %s (%s%%) applied to subscription %s", reward.id, pct, subscription.id)
        outcome.reward_applied = True
        return outcome
