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
Token refresh orchestration.

TokenRefreshOrchestrator is the only component that knows which adapter
refreshes which account. It never persists anything: every operation
returns the new credentials so the caller can merge and save them.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from kiro_manager.errors import (
    FailureKind,
    KiroManagerError,
    OperationCancelledError,
    RefreshFailedError,
    classify_failure,
)
from kiro_manager.http_client import CancelToken
from kiro_manager.models import (
    Account,
    AccountStatus,
    AuthMethod,
    Credentials,
    Provider,
    RefreshedCredentials,
    TokenResult,
    current_time_ms,
)
from kiro_manager.oidc import OidcClient
from kiro_manager.portal import KiroPortalClient
from kiro_manager.social import SocialAuthClient
from kiro_manager.usage import UsageSnapshot, parse_usage_response

ACTIVE_USER_STATUS = "Active"


@dataclass(frozen=True)
class StatusCheckResult:
    """
    Outcome of check_account_status / probe_account / refresh_and_probe.

    Attributes:
        status: Account status derived from the check.
        snapshot: Parsed usage data, None when usage could not be fetched.
        new_credentials: Set when a refresh happened and must be persisted.
        error: Error message explaining a non-active status.
    """

    status: AccountStatus
    snapshot: Optional[UsageSnapshot] = None
    new_credentials: Optional[RefreshedCredentials] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class VerifiedAccount:
    """Credentials proven to work, with the identity and usage they unlock."""

    credentials: Credentials
    snapshot: Optional[UsageSnapshot]

    @property
    def email(self) -> Optional[str]:
        return self.snapshot.email if self.snapshot else None

    @property
    def user_id(self) -> Optional[str]:
        return self.snapshot.user_id if self.snapshot else None


def resolve_idp(credentials: Credentials) -> str:
    """Returns the Idp cookie value for an account's credentials."""
    if credentials.provider is not None:
        return credentials.provider.value
    return Provider.BUILDER_ID.value


def status_from_user_status(user_status: Optional[str]) -> AccountStatus:
    """Active (or unknown) user status means active; anything else is an error."""
    if not user_status or user_status == ACTIVE_USER_STATUS:
        return AccountStatus.ACTIVE
    return AccountStatus.ERROR


class TokenRefreshOrchestrator:
    """
    Selects the refresh adapter by auth method and runs check/refresh sequences.

    Example:
        >>> orchestrator = TokenRefreshOrchestrator(oidc, social, portal)
        >>> result = await orchestrator.check_account_status(account)
        >>> if result.new_credentials:
        ...     reconciler.apply_status_check(account.id, result)
    """

    def __init__(self, oidc: OidcClient, social: SocialAuthClient, portal: KiroPortalClient):
        self._oidc = oidc
        self._social = social
        self._portal = portal

    async def refresh_by_method(
        self,
        token: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        region: str,
        auth_method: AuthMethod,
        cancel: Optional[CancelToken] = None,
    ) -> TokenResult:
        """
        Refreshes a token with the adapter matching the auth method.

        Args:
            token: Refresh token
            client_id: OIDC client id (IdC only)
            client_secret: OIDC client secret (IdC only)
            region: OIDC region (IdC only)
            auth_method: AuthMethod of the account
            cancel: Optional cancel token

        Returns:
            TokenResult
        """
        if auth_method is AuthMethod.SOCIAL:
            return await self._social.refresh_token(token, cancel)
        if auth_method is AuthMethod.IDC:
            if not client_id or not client_secret:
                return TokenResult.failed("Missing clientId or clientSecret")
            return await self._oidc.refresh_token(token, client_id, client_secret, region, cancel)
        raise ValueError(f"Unsupported auth method: {auth_method}")

    async def refresh_credentials(
        self,
        credentials: Credentials,
        cancel: Optional[CancelToken] = None,
    ) -> TokenResult:
        """Refreshes stored credentials after checking that a refresh is possible."""
        if not credentials.refresh_token:
            return TokenResult.failed("Missing refresh token")
        if not credentials.can_refresh():
            return TokenResult.failed("Missing clientId or clientSecret")
        return await self.refresh_by_method(
            credentials.refresh_token,
            credentials.client_id,
            credentials.client_secret,
            credentials.region,
            credentials.auth_method,
            cancel,
        )

    async def _optional_user_info(
        self,
        access_token: str,
        idp: str,
        cancel: Optional[CancelToken],
    ) -> Optional[Dict[str, Any]]:
        try:
            return await self._portal.get_user_info(access_token, idp, cancel)
        except OperationCancelledError:
            raise
        except KiroManagerError as e:
            logger.warning(f"GetUserInfo failed, continuing without it: {e}")
            return None

    async def fetch_account_data(
        self,
        access_token: str,
        idp: str,
        cancel: Optional[CancelToken] = None,
    ) -> UsageSnapshot:
        """
        Fetches usage and user info in parallel.

        User info is optional; usage errors propagate.

        Raises:
            AuthExpiredError / AccountSuspendedError / ProtocolError / NetworkError
        """
        usage, user_info = await asyncio.gather(
            self._portal.get_usage_and_limits(access_token, idp, cancel),
            self._optional_user_info(access_token, idp, cancel),
        )
        return parse_usage_response(usage, user_info)

    async def check_account_status(
        self,
        account: Account,
        cancel: Optional[CancelToken] = None,
    ) -> StatusCheckResult:
        """
        Checks an account, refreshing its token once if it was rejected.

        1. Fetch usage with the current access token
        2. On success return the parsed data, no refresh
        3. On an expired token with refresh possible: refresh and retry once
        4. Any other failure, a failed refresh, or a failed retry is raised

        Returns:
            StatusCheckResult; new_credentials is set if a refresh happened

        Raises:
            RefreshFailedError: Token expired and refresh failed
            KiroManagerError: Any other failure of the fetch or the retry
        """
        credentials = account.credentials
        if not credentials.access_token:
            raise KiroManagerError("Missing accessToken")

        idp = resolve_idp(credentials)
        try:
            snapshot = await self.fetch_account_data(credentials.access_token, idp, cancel)
            return StatusCheckResult(status=status_from_user_status(snapshot.user_status), snapshot=snapshot)
        except KiroManagerError as e:
            if classify_failure(e) is not FailureKind.EXPIRED or not credentials.can_refresh():
                raise
            logger.info(f"Access token of {account.email} rejected, refreshing...")

        refreshed = await self.refresh_credentials(credentials, cancel)
        if not refreshed.success:
            raise RefreshFailedError(f"Token expired and refresh failed: {refreshed.error}")

        new_credentials = RefreshedCredentials.from_token_result(refreshed, current_time_ms())
        snapshot = await self.fetch_account_data(new_credentials.access_token, idp, cancel)
        return StatusCheckResult(
            status=status_from_user_status(snapshot.user_status),
            snapshot=snapshot,
            new_credentials=new_credentials,
        )

    async def probe_account(
        self,
        account: Account,
        cancel: Optional[CancelToken] = None,
    ) -> StatusCheckResult:
        """
        Checks an account without refreshing.

        Failures are classified: suspended -> error, expired -> expired,
        anything else -> error with the raw message.
        """
        credentials = account.credentials
        if not credentials.access_token:
            raise KiroManagerError("Missing accessToken")

        try:
            snapshot = await self.fetch_account_data(credentials.access_token, resolve_idp(credentials), cancel)
        except OperationCancelledError:
            raise
        except KiroManagerError as e:
            kind = classify_failure(e)
            if kind is FailureKind.EXPIRED:
                return StatusCheckResult(status=AccountStatus.EXPIRED, error="Token expired, please refresh")
            return StatusCheckResult(status=AccountStatus.ERROR, error=str(e))

        return self._result_from_snapshot(snapshot)

    async def refresh_and_probe(
        self,
        account: Account,
        cancel: Optional[CancelToken] = None,
    ) -> StatusCheckResult:
        """
        Refreshes an account's token, then re-reads its usage.

        Raises:
            RefreshFailedError: The refresh itself failed
        """
        refreshed = await self.refresh_credentials(account.credentials, cancel)
        if not refreshed.success:
            raise RefreshFailedError(refreshed.error or "Token refresh failed")

        new_credentials = RefreshedCredentials.from_token_result(refreshed, current_time_ms())
        try:
            snapshot = await self.fetch_account_data(
                new_credentials.access_token, resolve_idp(account.credentials), cancel
            )
        except OperationCancelledError:
            raise
        except KiroManagerError as e:
            if classify_failure(e) is FailureKind.SUSPENDED:
                return StatusCheckResult(status=AccountStatus.ERROR, new_credentials=new_credentials, error=str(e))
            logger.warning(f"Usage fetch after refresh failed for {account.email}: {e}")
            return StatusCheckResult(status=AccountStatus.ACTIVE, new_credentials=new_credentials)

        result = self._result_from_snapshot(snapshot)
        return StatusCheckResult(
            status=result.status,
            snapshot=snapshot,
            new_credentials=new_credentials,
            error=result.error,
        )

    @staticmethod
    def _result_from_snapshot(snapshot: UsageSnapshot) -> StatusCheckResult:
        status = status_from_user_status(snapshot.user_status)
        error = None
        if status is AccountStatus.ERROR:
            error = f"User status abnormal: {snapshot.user_status}"
        return StatusCheckResult(status=status, snapshot=snapshot, error=error)

    async def verify_credentials(
        self,
        credentials: Credentials,
        cancel: Optional[CancelToken] = None,
    ) -> VerifiedAccount:
        """
        Proves that credentials work before an account is added.

        Refreshes the token (the stored access token may be stale), then
        reads usage to learn the account identity.

        Raises:
            RefreshFailedError: Refresh failed
            KiroManagerError: Usage fetch failed
        """
        refreshed = await self.refresh_credentials(credentials, cancel)
        if not refreshed.success:
            raise RefreshFailedError(refreshed.error or "Token refresh failed")

        new_credentials = RefreshedCredentials.from_token_result(refreshed, current_time_ms())
        verified = credentials.model_copy(
            update={
                "access_token": new_credentials.access_token,
                "refresh_token": new_credentials.refresh_token or credentials.refresh_token,
                "expires_at": new_credentials.expires_at,
            }
        )
        snapshot = await self.fetch_account_data(verified.access_token, resolve_idp(verified), cancel)
        logger.info(f"Credentials verified for {snapshot.email}")
        return VerifiedAccount(credentials=verified, snapshot=snapshot)

    async def verify_tokens(
        self,
        credentials: Credentials,
        cancel: Optional[CancelToken] = None,
    ) -> VerifiedAccount:
        """Reads usage with freshly issued credentials (no refresh)."""
        snapshot = await self.fetch_account_data(credentials.access_token, resolve_idp(credentials), cancel)
        return VerifiedAccount(credentials=credentials, snapshot=snapshot)

    async def import_from_sso_token(
        self,
        bearer_token: str,
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> VerifiedAccount:
        """
        Imports an IdC account from an SSO portal bearer token.

        Usage enrichment is best-effort: the account is returned even if the
        usage fetch fails.

        Raises:
            KiroManagerError: The device authorization flow failed
        """
        result = await self._oidc.authorize_with_sso_token(bearer_token, region, cancel=cancel)
        if not result.success:
            if result.failure is not None:
                raise result.failure
            raise KiroManagerError(result.error or "SSO import failed")

        credentials = Credentials(
            access_token=result.access_token or "",
            refresh_token=result.refresh_token,
            client_id=result.client_id,
            client_secret=result.client_secret,
            region=region,
            expires_at=current_time_ms() + (result.expires_in or 3600) * 1000,
            auth_method=AuthMethod.IDC,
            provider=Provider.BUILDER_ID,
        )

        try:
            snapshot = await self.fetch_account_data(credentials.access_token, resolve_idp(credentials), cancel)
        except OperationCancelledError:
            raise
        except KiroManagerError as e:
            logger.warning(f"Usage fetch after SSO import failed: {e}")
            snapshot = None
        return VerifiedAccount(credentials=credentials, snapshot=snapshot)


def status_for_failure(error: BaseException) -> Optional[AccountStatus]:
    """
    Maps a failed operation to the account status it implies.

    A suspension means error. A failed refresh, or a rejected token that
    reached the caller (refresh impossible or already retried), means
    expired. Anything else leaves the status unchanged (None).
    """
    kind = classify_failure(error)
    if kind is FailureKind.SUSPENDED:
        return AccountStatus.ERROR
    if isinstance(error, RefreshFailedError) or kind is FailureKind.EXPIRED:
        return AccountStatus.EXPIRED
    return None
