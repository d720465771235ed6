# -*- coding: utf-8 -*-

"""
Unit tests for usage parsing and subscription classification.
"""

import pytest

from kiro_manager.models import SubscriptionType
from kiro_manager.usage import (
    MS_PER_DAY,
    aggregate_credit_usage,
    classify_subscription,
    days_until,
    find_credit_breakdown,
    parse_timestamp_ms,
    parse_usage_response,
)

NOW_MS = 1_700_000_000_000


def _credit_with_trial_and_bonuses():
    return {
        "resourceType": "CREDIT",
        "displayName": "Credits",
        "usageLimit": 10,
        "currentUsage": 2,
        "freeTrialInfo": {
            "freeTrialStatus": "ACTIVE",
            "usageLimit": 5,
            "currentUsage": 1,
            "freeTrialExpiry": "2099-01-01T00:00:00Z",
        },
        "bonuses": [
            {"bonusCode": "WELCOME", "displayName": "Welcome", "status": "ACTIVE", "usageLimit": 3, "currentUsage": 0},
            {"bonusCode": "OLD", "displayName": "Old", "status": "EXPIRED", "usageLimit": 100, "currentUsage": 100},
        ],
    }


class TestAggregateCreditUsage:
    """Tests for summing base, trial and bonus quotas."""

    def test_expired_bonus_is_excluded(self):
        """
        What it does: Aggregates base 10/2, active trial 5/1, active bonus 3/0 and expired bonus 100/100.
        Purpose: Ensure totals are 18/3 and the expired bonus contributes nothing.
        """
        usage = aggregate_credit_usage(_credit_with_trial_and_bonuses(), now_ms=NOW_MS)

        assert usage.limit == 18
        assert usage.current == 3
        assert usage.base_limit == 10
        assert usage.free_trial_limit == 5
        assert [bonus.code for bonus in usage.bonuses] == ["WELCOME"]
        assert usage.percent_used == pytest.approx(3 / 18)
        assert usage.last_updated == NOW_MS

    def test_inactive_trial_is_excluded(self):
        """
        What it does: Aggregates a credit entry whose trial has expired.
        Purpose: Ensure only ACTIVE trials count.
        """
        credit = _credit_with_trial_and_bonuses()
        credit["freeTrialInfo"]["freeTrialStatus"] = "EXPIRED"
        credit["bonuses"] = []

        usage = aggregate_credit_usage(credit, now_ms=NOW_MS)

        assert usage.limit == 10
        assert usage.current == 2
        assert usage.free_trial_limit == 0
        assert usage.free_trial_expiry is None

    def test_missing_credit_gives_zero_usage(self):
        """
        What it does: Aggregates without any credit breakdown.
        Purpose: Ensure zero limit does not divide by zero.
        """
        usage = aggregate_credit_usage(None, now_ms=NOW_MS)

        assert usage.limit == 0
        assert usage.percent_used == 0
        assert usage.resource_detail is None


class TestClassifySubscription:
    """Tests for subscription title classification."""

    @pytest.mark.parametrize(
        "title, expected",
        [
            ("Kiro Teams Annual", SubscriptionType.TEAMS),
            ("kiro pro plus", SubscriptionType.PRO),
            ("KIRO ENTERPRISE", SubscriptionType.ENTERPRISE),
            ("Enterprise Teams Pro", SubscriptionType.ENTERPRISE),
            ("Teams Pro", SubscriptionType.TEAMS),
            ("KIRO FREE", SubscriptionType.FREE),
            ("", SubscriptionType.FREE),
            (None, SubscriptionType.FREE),
        ],
    )
    def test_precedence(self, title, expected):
        """
        What it does: Classifies subscription titles.
        Purpose: Ensure Enterprise > Teams > Pro > Free precedence with case-insensitive matching.
        """
        assert classify_subscription(title) is expected


class TestDaysUntil:
    """Tests for remaining-days computation."""

    def test_rounds_up_partial_days(self):
        assert days_until(NOW_MS + MS_PER_DAY + 1, NOW_MS) == 2

    def test_past_date_floors_at_zero(self):
        assert days_until(NOW_MS - 5 * MS_PER_DAY, NOW_MS) == 0

    def test_unknown_reset_date(self):
        assert days_until(None, NOW_MS) is None


class TestParseTimestamp:
    """Tests for timestamp normalization."""

    def test_iso_string_with_z_suffix(self):
        assert parse_timestamp_ms("1970-01-02T00:00:00Z") == MS_PER_DAY

    def test_epoch_seconds_are_scaled(self):
        assert parse_timestamp_ms(1_700_000_000) == 1_700_000_000_000

    def test_epoch_milliseconds_are_kept(self):
        assert parse_timestamp_ms(1_700_000_000_000) == 1_700_000_000_000

    def test_garbage_returns_none(self):
        assert parse_timestamp_ms("not a date") is None
        assert parse_timestamp_ms(None) is None

    @pytest.mark.parametrize("value", ["Infinity", "-inf", "NaN", float("inf"), float("nan")])
    def test_non_finite_values_return_none(self, value):
        assert parse_timestamp_ms(value) is None


class TestParseUsageResponse:
    """Tests for full GetUserUsageAndLimits parsing."""

    def test_identity_and_subscription(self):
        """
        What it does: Parses a usage payload together with user info.
        Purpose: Ensure identity, status and subscription are extracted.
        """
        payload = {
            "nextDateReset": NOW_MS + 3 * MS_PER_DAY,
            "subscriptionInfo": {"subscriptionTitle": "Kiro Pro", "type": "Q_DEVELOPER_STANDALONE_PRO"},
            "usageBreakdownList": [{"resourceType": "OTHER"}, _credit_with_trial_and_bonuses()],
            "overageConfiguration": {"overageEnabled": True},
            "userInfo": {"email": "dev@example.com", "userId": "u-42"},
        }
        user_info = {"email": "ignored@example.com", "idp": "Github", "status": "Active"}

        snapshot = parse_usage_response(payload, user_info, now_ms=NOW_MS)

        assert snapshot.email == "dev@example.com"
        assert snapshot.user_id == "u-42"
        assert snapshot.idp == "Github"
        assert snapshot.user_status == "Active"
        assert snapshot.subscription.type is SubscriptionType.PRO
        assert snapshot.subscription.days_remaining == 3
        assert snapshot.usage.limit == 18
        assert snapshot.usage.resource_detail.overage_enabled is True

    def test_defaults_without_subscription_info(self):
        """
        What it does: Parses a payload without subscription info or user info.
        Purpose: Ensure the title defaults to Free and identity falls back to None.
        """
        snapshot = parse_usage_response({}, None, now_ms=NOW_MS)

        assert snapshot.subscription.title == "Free"
        assert snapshot.subscription.type is SubscriptionType.FREE
        assert snapshot.email is None
        assert snapshot.subscription.days_remaining is None

    def test_infinite_reset_date_is_unknown(self):
        snapshot = parse_usage_response({"nextDateReset": "Infinity"}, None, now_ms=NOW_MS)

        assert snapshot.subscription.days_remaining is None

    def test_find_credit_breakdown_by_display_name(self):
        entry = {"displayName": "Credits", "usageLimit": 1}
        assert find_credit_breakdown([{"resourceType": "AGENTIC_REQUEST"}, entry]) is entry
        assert find_credit_breakdown(None) is None
