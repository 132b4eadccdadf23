"""End-to-end desk flows against the in-memory backend."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from gymdesk.exceptions import PolicyConflict, PolicyViolation, TransportError, ViolationCode
from gymdesk.schemas import PaymentIntent, PaymentMethod, PaymentReceipt, RewardStatus, SubscriptionStatus
from gymdesk.services.consistency import subscription_keys as keys
from gymdesk.services.lifecycle import Action

from factories import TODAY, ending_in, make_payment, make_reward


# ── Create & pay ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_then_pay_in_two_steps(desk, gym):
    sub = await desk.create_subscription("client-1", "plan-monthly", TODAY)
    assert sub.status == SubscriptionStatus.PENDING_PAYMENT
    assert [s.id for s in await desk.list_subscriptions("client-1")] == [sub.id]

    receipt = await desk.record_payment(sub.id, 40000, PaymentMethod.CASH, client_id="client-1")
    assert receipt.subscription_status == SubscriptionStatus.PENDING_PAYMENT
    assert (await desk.payment_stats(sub.id)).remaining_debt == 60000

    posts_before = len(gym.mutating_calls())
    with pytest.raises(PolicyViolation) as exc:
        await desk.record_payment(sub.id, 30000, PaymentMethod.CASH, client_id="client-1")
    assert exc.value.code == ViolationCode.PARTIAL_PAYMENT_LIMIT
    assert len(gym.mutating_calls()) == posts_before  # refused locally

    gym.now += timedelta(hours=1)
    receipt = await desk.record_payment(sub.id, None, PaymentMethod.CARD, PaymentIntent.FULL, client_id="client-1")
    assert receipt.payment.amount == 60000
    assert receipt.subscription_status == SubscriptionStatus.ACTIVE
    assert (await desk.subscription("client-1", sub.id)).status == SubscriptionStatus.ACTIVE
    assert (await desk.active_subscription("client-1")).id == sub.id

    stats = await desk.payment_stats(sub.id)
    assert stats.total_amount_paid == 100000
    assert stats.remaining_debt == 0
    assert [p.amount for p in await desk.payments(sub.id)] == [60000, 40000]


@pytest.mark.asyncio
async def test_free_plan_is_active_immediately(desk):
    sub = await desk.create_subscription("client-1", "plan-trial", TODAY)
    assert sub.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_create_without_client_sends_nothing(desk, gym):
    with pytest.raises(PolicyViolation) as exc:
        await desk.create_subscription("", "plan-monthly", TODAY)
    assert exc.value.code == ViolationCode.MISSING_CONTEXT
    assert gym.calls == []


@pytest.mark.asyncio
async def test_no_active_subscription_reads_as_none(desk):
    assert await desk.active_subscription("client-1") is None


@pytest.mark.asyncio
async def test_failed_payment_rolls_back_optimistic_views(desk, gym):
    sub = await desk.create_subscription("client-1", "plan-monthly", TODAY)
    await desk.payments(sub.id)
    gym.fail_next = (503, "database unavailable")

    with pytest.raises(TransportError):
        await desk.record_payment(sub.id, 40000, PaymentMethod.QR)

    assert desk.cache.get_data(keys.payments(sub.id)) == []
    assert desk.cache.get_data(keys.payment_stats(sub.id)).remaining_debt == 100000

    # the same intent can simply be re-issued
    receipt = await desk.record_payment(sub.id, 40000, PaymentMethod.QR)
    assert receipt.payment.amount == 40000


@pytest.mark.asyncio
async def test_server_rejection_alerts_operator(desk, gym):
    sub = await desk.create_subscription("client-1", "plan-monthly", TODAY)
    gym.fail_next = (409, "A partial payment was already made today")

    with patch("gymdesk.services.subscriptions.notify_payment_rejected", new_callable=AsyncMock) as mock_notify:
        with pytest.raises(PolicyConflict) as exc:
            await desk.record_payment(sub.id, 40000, PaymentMethod.CASH)

    assert exc.value.status_code == 409
    mock_notify.assert_awaited_once_with(sub.id, 40000, "A partial payment was already made today")
    assert desk.cache.cache.get(keys.payment_stats(sub.id)).stale


# ── Renew ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_renewal_opens_three_days_before_end(desk, gym):
    source = gym.add_subscription(ending_in(5))

    verdict = await desk.eligibility("client-1", source.id)
    assert not verdict.can_renew
    with pytest.raises(PolicyViolation) as exc:
        await desk.renew("client-1", source)
    assert exc.value.code == ViolationCode.NOT_RENEWABLE
    assert gym.mutating_calls() == []

    gym.now += timedelta(days=2)
    renewed = await desk.renew("client-1", source)

    assert renewed.status == SubscriptionStatus.SCHEDULED
    assert renewed.start_date == source.end_date + timedelta(days=1)
    subs = await desk.list_subscriptions("client-1")
    assert {s.id for s in subs} == {source.id, renewed.id}
    assert next(s for s in subs if s.id == source.id).status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_lapsed_subscription_renews_from_today(desk, gym):
    source = gym.add_subscription(ending_in(-3))
    renewed = await desk.renew("client-1", source, plan_id="plan-quarterly")
    assert renewed.status == SubscriptionStatus.ACTIVE
    assert renewed.start_date == TODAY
    assert renewed.final_price == 270000


@pytest.mark.asyncio
async def test_failed_renewal_leaves_list_untouched(desk, gym):
    source = gym.add_subscription(ending_in(1))
    before = await desk.list_subscriptions("client-1")
    gym.fail_next = (500, "boom")

    with pytest.raises(TransportError):
        await desk.renew("client-1", source)

    assert desk.cache.get_data(keys.list("client-1")) == before


# ── Rewards ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_renew_with_reward_applies_discount(desk, gym):
    source = gym.add_subscription(ending_in(2))
    gym.add_reward(make_reward())

    [reward] = await desk.available_rewards("client-1")
    outcome = await desk.renew_with_reward("client-1", source, reward=reward)

    assert outcome.reward_applied
    assert outcome.subscription.final_price == 90000
    assert gym.rewards["reward-1"].status == RewardStatus.APPLIED
    assert gym.rewards["reward-1"].applied_subscription_id == outcome.subscription.id
    assert await desk.available_rewards("client-1") == []


@pytest.mark.asyncio
async def test_reward_failure_keeps_renewal(desk, gym):
    source = gym.add_subscription(ending_in(2))
    reward = gym.add_reward(make_reward())
    gym.fail_reward_apply = True

    with patch("gymdesk.services.rewards.notify_reward_not_applied", new_callable=AsyncMock) as mock_notify:
        outcome = await desk.renew_with_reward("client-1", source, reward=reward)

    assert not outcome.reward_applied
    assert outcome.reward_error == "Reward cannot be applied"
    assert outcome.subscription.id in gym.subscriptions
    mock_notify.assert_awaited_once()
    assert gym.rewards["reward-1"].status == RewardStatus.PENDING


# ── Cancel ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_is_not_repeatable(desk, gym):
    sub = gym.add_subscription(ending_in(15))

    canceled = await desk.cancel("client-1", sub.id, "moving away")
    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.cancellation_reason == "moving away"

    with pytest.raises(PolicyViolation) as exc:
        await desk.cancel("client-1", sub.id)
    assert exc.value.code == ViolationCode.NOT_CANCELABLE
    assert [c for c in gym.mutating_calls() if c[0] == "PATCH"] == [
        ("PATCH", f"/clients/client-1/subscriptions/{sub.id}/cancel"),
    ]
    [listed] = await desk.list_subscriptions("client-1")
    assert listed.status == SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_failed_cancel_restores_previous_status(desk, gym):
    sub = gym.add_subscription(ending_in(15))
    gym.fail_next = (503, "maintenance")

    with pytest.raises(TransportError):
        await desk.cancel("client-1", sub.id)

    assert desk.cache.get_data(keys.detail(sub.id)).status == SubscriptionStatus.ACTIVE
    assert [s.status for s in desk.cache.get_data(keys.list("client-1"))] == [SubscriptionStatus.ACTIVE]


@pytest.mark.asyncio
async def test_lapsed_subscription_cannot_be_canceled(desk, gym):
    sub = gym.add_subscription(ending_in(-1))
    with pytest.raises(PolicyViolation) as exc:
        await desk.cancel("client-1", sub.id)
    assert exc.value.code == ViolationCode.NOT_CANCELABLE


# ── Actions ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_allowed_actions_follow_debt_and_window(desk, gym):
    sub = gym.add_subscription(ending_in(2))
    assert await desk.allowed_actions("client-1", sub.id) == {Action.RENEW, Action.CANCEL, Action.PAY}

    await desk.record_payment(sub.id, None, PaymentMethod.CASH, PaymentIntent.FULL)
    assert await desk.allowed_actions("client-1", sub.id) == {Action.RENEW, Action.CANCEL}


@pytest.mark.asyncio
async def test_forget_client_drops_cached_views(desk, gym):
    gym.add_subscription(ending_in(10))
    await desk.list_subscriptions("client-1")
    await desk.available_rewards("client-1")

    desk.forget_client("client-1")

    assert keys.list("client-1") not in desk.cache.cache


@pytest.mark.asyncio
async def test_receipt_status_that_cannot_be_applied_triggers_refetch(desk, gym):
    sub = gym.add_subscription(ending_in(15, status=SubscriptionStatus.PENDING_PAYMENT))
    await desk.subscription("client-1", sub.id)
    # backend canceled it meanwhile and reports that with the payment
    gym.subscriptions[sub.id] = sub.model_copy(update={
        "status": SubscriptionStatus.CANCELED,
        "cancellation_date": gym.now,
    })
    receipt = PaymentReceipt(
        payment=make_payment(1000, subscription_id=sub.id),
        remaining_debt=99000,
        subscription_status=SubscriptionStatus.CANCELED,
    )

    with patch.object(desk.api, "create_payment", new_callable=AsyncMock, return_value=receipt):
        await desk.record_payment(sub.id, 1000, PaymentMethod.CASH, client_id="client-1")

    assert desk.cache.cache.get(keys.detail(sub.id)).stale
    refreshed = await desk.subscription("client-1", sub.id)
    assert refreshed.status == SubscriptionStatus.CANCELED
    assert refreshed.cancellation_date == gym.now
