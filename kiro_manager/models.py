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
Data model for managed accounts.

Persisted records are Pydantic models with camelCase aliases so the JSON
store keeps the layout the desktop client uses. Short-lived results passed
between adapters are frozen dataclasses.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def current_time_ms() -> int:
    """Returns the current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class AuthMethod(str, Enum):
    """
    How an account authenticates.

    IDC: AWS IAM Identity Center / BuilderId
        - Refresh via https://oidc.{region}.amazonaws.com/token
        - Requires clientId and clientSecret of a registered OIDC client

    SOCIAL: Google / GitHub login through the Kiro auth service
        - Refresh via {KIRO_AUTH_ENDPOINT}/refreshToken
        - Only the refresh token is needed
    """
    IDC = "IdC"
    SOCIAL = "social"


class Provider(str, Enum):
    """Identity provider behind an account."""
    BUILDER_ID = "BuilderId"
    GITHUB = "Github"
    GOOGLE = "Google"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    EXPIRED = "expired"


class SubscriptionType(str, Enum):
    FREE = "Free"
    PRO = "Pro"
    TEAMS = "Teams"
    ENTERPRISE = "Enterprise"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Credentials(CamelModel):
    access_token: str = ""
    csrf_token: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    region: str = "us-east-1"
    # epoch milliseconds
    expires_at: int = 0
    auth_method: AuthMethod = AuthMethod.IDC
    provider: Optional[Provider] = None

    def can_refresh(self) -> bool:
        """
        Checks whether a refresh is possible with the stored data.

        Social accounts only need a refresh token; IdC accounts also need the
        registered client id and secret.
        """
        if not self.refresh_token:
            return False
        if self.auth_method is AuthMethod.SOCIAL:
            return True
        return bool(self.client_id and self.client_secret)

    def expires_within(self, seconds: int, now_ms: Optional[int] = None) -> bool:
        """Returns True if the access token expires within `seconds`."""
        if not self.expires_at:
            return True
        now_ms = current_time_ms() if now_ms is None else now_ms
        return self.expires_at - now_ms <= seconds * 1000


class Bonus(CamelModel):
    code: str = ""
    name: str = ""
    current: float = 0
    limit: float = 0
    expires_at: Optional[str] = None


class ResourceDetail(CamelModel):
    resource_type: Optional[str] = None
    display_name: Optional[str] = None
    display_name_plural: Optional[str] = None
    currency: Optional[str] = None
    unit: Optional[str] = None
    overage_rate: Optional[float] = None
    overage_cap: Optional[float] = None
    overage_enabled: Optional[bool] = None


class Usage(CamelModel):
    current: float = 0
    limit: float = 0
    percent_used: float = 0
    last_updated: int = 0
    base_current: Optional[float] = None
    base_limit: Optional[float] = None
    free_trial_current: Optional[float] = None
    free_trial_limit: Optional[float] = None
    free_trial_expiry: Optional[str] = None
    bonuses: List[Bonus] = Field(default_factory=list)
    next_reset_date: Optional[str] = None
    resource_detail: Optional[ResourceDetail] = None

    @property
    def remaining(self) -> float:
        return self.limit - self.current


class Subscription(CamelModel):
    type: SubscriptionType = SubscriptionType.FREE
    title: Optional[str] = None
    raw_type: Optional[str] = None
    days_remaining: Optional[int] = None
    expires_at: Optional[int] = None
    upgrade_capability: Optional[str] = None
    overage_capability: Optional[str] = None
    management_target: Optional[str] = None


class Account(CamelModel):
    id: str = Field(default_factory=new_id)
    email: str
    user_id: Optional[str] = None
    nickname: Optional[str] = None
    idp: Optional[str] = None
    credentials: Credentials
    subscription: Subscription = Field(default_factory=Subscription)
    usage: Usage = Field(default_factory=Usage)
    status: AccountStatus = AccountStatus.ACTIVE
    last_error: Optional[str] = None
    group_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=current_time_ms)
    last_used_at: int = Field(default_factory=current_time_ms)
    last_checked_at: Optional[int] = None


class Group(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    order: int = 0
    created_at: int = Field(default_factory=current_time_ms)


class Tag(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    color: Optional[str] = None


class Settings(CamelModel):
    auto_refresh_enabled: bool = True
    # minutes
    auto_refresh_interval: int = 5
    auto_refresh_concurrency: int = 10
    # seconds
    status_check_interval: int = 60
    proxy_enabled: bool = False
    proxy_url: str = ""
    auto_switch_enabled: bool = False
    auto_switch_threshold: float = 0
    # minutes
    auto_switch_interval: int = 5


class StoreSnapshot(CamelModel):
    """In-memory root aggregate of the account store."""

    version: int = 1
    accounts: Dict[str, Account] = Field(default_factory=dict)
    groups: Dict[str, Group] = Field(default_factory=dict)
    tags: Dict[str, Tag] = Field(default_factory=dict)
    active_account_id: Optional[str] = None
    settings: Settings = Field(default_factory=Settings)


class OperationResult(BaseModel):
    """Result envelope returned by every UI-facing operation."""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, data: Any = None) -> "OperationResult":
        return cls(success=False, error=error, data=data)


@dataclass(frozen=True)
class TokenResult:
    """
    Normalized result of any token exchange.

    Attributes:
        success: Whether new tokens were obtained.
        access_token: New access token.
        refresh_token: Refresh token to keep (may equal the old one).
        expires_in: Lifetime of the access token in seconds.
        profile_arn: Profile ARN returned by the social auth service.
        error: Failure description.
        status_code: HTTP status of a failed exchange, if any.
    """

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    profile_arn: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(
        cls,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: int,
        profile_arn: Optional[str] = None,
    ) -> "TokenResult":
        return cls(
            success=True,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            profile_arn=profile_arn,
        )

    @classmethod
    def failed(cls, error: str, status_code: Optional[int] = None) -> "TokenResult":
        return cls(success=False, error=error, status_code=status_code)


@dataclass(frozen=True)
class RefreshedCredentials:
    """Token fields that changed after a refresh and must be persisted."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: int

    @classmethod
    def from_token_result(cls, result: TokenResult, now_ms: Optional[int] = None) -> "RefreshedCredentials":
        now_ms = current_time_ms() if now_ms is None else now_ms
        expires_in = result.expires_in or 3600
        return cls(
            access_token=result.access_token or "",
            refresh_token=result.refresh_token,
            expires_at=now_ms + expires_in * 1000,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
        }
