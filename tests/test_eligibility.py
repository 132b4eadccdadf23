"""Tests for the renewal window."""

from datetime import timedelta

import pytest

from gymdesk.exceptions import PolicyViolation, ViolationCode
from gymdesk.schemas import SubscriptionStatus
from gymdesk.services.eligibility import days_remaining, eligibility, ensure_renewable

from factories import NOW, ending_in


def test_five_days_left_is_closed():
    verdict = eligibility(ending_in(5), NOW)
    assert not verdict.can_renew
    assert verdict.days_remaining == 5
    assert verdict.can_cancel
    assert "3 days" in verdict.message
    assert "5 days remain" in verdict.message


def test_three_days_left_is_open():
    verdict = eligibility(ending_in(3), NOW)
    assert verdict.can_renew
    assert verdict.days_remaining == 3
    assert verdict.message is None


def test_ending_today_is_open():
    verdict = eligibility(ending_in(0), NOW)
    assert verdict.can_renew
    assert verdict.days_remaining == 0
    assert verdict.can_cancel
    assert "ends today" in verdict.message
    assert verdict.message != eligibility(ending_in(-1), NOW).message


def test_expired_yesterday_is_open_and_not_cancelable():
    verdict = eligibility(ending_in(-1), NOW)
    assert verdict.can_renew
    assert verdict.days_remaining == 0
    assert not verdict.can_cancel
    assert "expired" in verdict.message


def test_days_remaining_ignores_time_of_day():
    sub = ending_in(3)
    late = NOW.replace(hour=23, minute=59)
    assert days_remaining(sub, late) == 3
    assert days_remaining(sub, late + timedelta(minutes=2)) == 2


def test_custom_window():
    assert eligibility(ending_in(5), NOW, window_days=7).can_renew


def test_canceled_cannot_be_canceled_again():
    verdict = eligibility(ending_in(2, status=SubscriptionStatus.CANCELED), NOW)
    assert not verdict.can_cancel


def test_ensure_renewable():
    assert ensure_renewable(ending_in(1), NOW).can_renew
    with pytest.raises(PolicyViolation) as exc:
        ensure_renewable(ending_in(20), NOW)
    assert exc.value.code == ViolationCode.NOT_RENEWABLE
