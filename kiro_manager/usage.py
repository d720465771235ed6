# -*- coding: utf-8 -*-

# Kiro Account Manager
# Copyright (C) 2025 Jwadow
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Parsing of GetUserUsageAndLimits responses.

Every code path that reads usage (SSO import, credential verification,
status check, batch refresh) goes through parse_usage_response so the
aggregation and classification rules stay identical.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kiro_manager.models import (
    Bonus,
    ResourceDetail,
    Subscription,
    SubscriptionType,
    Usage,
    current_time_ms,
)

CREDIT_RESOURCE_TYPE = "CREDIT"
ACTIVE_QUOTA_STATUS = "ACTIVE"
DEFAULT_SUBSCRIPTION_TITLE = "Free"

MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class UsageSnapshot:
    """
    Normalized account data from one usage (+ optional user info) fetch.

    Attributes:
        email: Email reported by the usage API or user info.
        user_id: User id reported by the usage API or user info.
        idp: Identity provider reported by user info.
        user_status: Raw user status from user info ("Active", "Suspended", ...).
        usage: Aggregated usage.
        subscription: Classified subscription.
    """

    email: Optional[str]
    user_id: Optional[str]
    idp: Optional[str]
    user_status: Optional[str]
    usage: Usage
    subscription: Subscription


def classify_subscription(title: Optional[str]) -> SubscriptionType:
    """
    Derives the subscription type from its title.

    Matching is a case-insensitive substring test with precedence
    Enterprise > Teams > Pro > Free.

    Args:
        title: Subscription title, e.g. "Kiro Teams Annual"

    Returns:
        SubscriptionType
    """
    upper = (title or "").upper()
    if "ENTERPRISE" in upper:
        return SubscriptionType.ENTERPRISE
    if "TEAMS" in upper:
        return SubscriptionType.TEAMS
    if "PRO" in upper:
        return SubscriptionType.PRO
    return SubscriptionType.FREE


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Converts an API timestamp to epoch milliseconds.

    Accepts ISO 8601 strings and numeric epoch values (seconds or milliseconds).
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        # Epoch seconds are below 1e12 until the year 33658
        return int(value if value > 1e12 else value * 1000)
    if isinstance(value, str):
        text = value.strip()
        try:
            return parse_timestamp_ms(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def days_until(reset_at_ms: Optional[int], now_ms: Optional[int] = None) -> Optional[int]:
    """Returns ceil(days) until `reset_at_ms`, floored at 0, or None if unknown."""
    if reset_at_ms is None:
        return None
    now_ms = current_time_ms() if now_ms is None else now_ms
    return max(0, math.ceil((reset_at_ms - now_ms) / MS_PER_DAY))


def find_credit_breakdown(breakdowns: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """Returns the credit-type usage breakdown entry, if any."""
    for item in breakdowns or []:
        if not isinstance(item, dict):
            continue
        if item.get("resourceType") == CREDIT_RESOURCE_TYPE or item.get("displayName") == "Credits":
            return item
    return None


def _number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def aggregate_credit_usage(
    credit: Optional[Dict[str, Any]],
    next_reset_date: Optional[str] = None,
    overage_enabled: bool = False,
    now_ms: Optional[int] = None,
) -> Usage:
    """
    Sums base, active trial and active bonus quotas into one Usage.

    Trial and bonus quotas only count while their status is ACTIVE; an
    expired bonus contributes nothing to either total.

    Args:
        credit: Credit breakdown entry (see find_credit_breakdown)
        next_reset_date: Raw nextDateReset value
        overage_enabled: overageConfiguration.overageEnabled
        now_ms: Current time, epoch ms

    Returns:
        Usage with totals and the per-quota breakdown
    """
    now_ms = current_time_ms() if now_ms is None else now_ms
    credit = credit or {}

    base_limit = _number(credit.get("usageLimit"))
    base_current = _number(credit.get("currentUsage"))

    trial_limit: float = 0
    trial_current: float = 0
    trial_expiry: Optional[str] = None
    trial = credit.get("freeTrialInfo") or {}
    if trial.get("freeTrialStatus") == ACTIVE_QUOTA_STATUS:
        trial_limit = _number(trial.get("usageLimit"))
        trial_current = _number(trial.get("currentUsage"))
        trial_expiry = _optional_str(trial.get("freeTrialExpiry"))

    bonuses: List[Bonus] = []
    for bonus in credit.get("bonuses") or []:
        if not isinstance(bonus, dict) or bonus.get("status") != ACTIVE_QUOTA_STATUS:
            continue
        bonuses.append(
            Bonus(
                code=bonus.get("bonusCode") or "",
                name=bonus.get("displayName") or "",
                current=_number(bonus.get("currentUsage")),
                limit=_number(bonus.get("usageLimit")),
                expires_at=_optional_str(bonus.get("expiresAt")),
            )
        )

    total_limit = base_limit + trial_limit + sum(b.limit for b in bonuses)
    total_current = base_current + trial_current + sum(b.current for b in bonuses)

    resource_detail = None
    if credit:
        resource_detail = ResourceDetail(
            resource_type=credit.get("resourceType"),
            display_name=credit.get("displayName"),
            display_name_plural=credit.get("displayNamePlural"),
            currency=credit.get("currency"),
            unit=credit.get("unit"),
            overage_rate=credit.get("overageRate"),
            overage_cap=credit.get("overageCap"),
            overage_enabled=overage_enabled,
        )

    return Usage(
        current=total_current,
        limit=total_limit,
        percent_used=total_current / total_limit if total_limit > 0 else 0,
        last_updated=now_ms,
        base_current=base_current,
        base_limit=base_limit,
        free_trial_current=trial_current,
        free_trial_limit=trial_limit,
        free_trial_expiry=trial_expiry,
        bonuses=bonuses,
        next_reset_date=_optional_str(next_reset_date),
        resource_detail=resource_detail,
    )


def parse_usage_response(
    payload: Dict[str, Any],
    user_info: Optional[Dict[str, Any]] = None,
    now_ms: Optional[int] = None,
) -> UsageSnapshot:
    """
    Converts GetUserUsageAndLimits (and optional GetUserInfo) into a snapshot.

    Args:
        payload: GetUserUsageAndLimits JSON
        user_info: GetUserInfo JSON, or None if it was unavailable
        now_ms: Current time, epoch ms

    Returns:
        UsageSnapshot
    """
    now_ms = current_time_ms() if now_ms is None else now_ms
    user_info = user_info or {}

    next_reset = payload.get("nextDateReset")
    overage = payload.get("overageConfiguration") or {}
    usage = aggregate_credit_usage(
        find_credit_breakdown(payload.get("usageBreakdownList")),
        next_reset_date=next_reset,
        overage_enabled=bool(overage.get("overageEnabled", False)),
        now_ms=now_ms,
    )

    info = payload.get("subscriptionInfo") or {}
    title = info.get("subscriptionTitle") or DEFAULT_SUBSCRIPTION_TITLE
    reset_at_ms = parse_timestamp_ms(next_reset)
    subscription = Subscription(
        type=classify_subscription(title),
        title=title,
        raw_type=info.get("type"),
        days_remaining=days_until(reset_at_ms, now_ms),
        expires_at=reset_at_ms,
        upgrade_capability=info.get("upgradeCapability"),
        overage_capability=info.get("overageCapability"),
        management_target=info.get("subscriptionManagementTarget"),
    )

    usage_user = payload.get("userInfo") or {}
    return UsageSnapshot(
        email=usage_user.get("email") or user_info.get("email"),
        user_id=usage_user.get("userId") or user_info.get("userId"),
        idp=user_info.get("idp"),
        user_status=user_info.get("status"),
        usage=usage,
        subscription=subscription,
    )
