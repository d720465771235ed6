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
AWS SSO OIDC adapter (IdC / BuilderId).

Covers:
- Refresh token exchange against https://oidc.{region}.amazonaws.com/token
- Public client registration and device authorization
- Device token polling
- The full SSO import that approves a device code with a portal bearer token
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger

from kiro_manager.config import (
    DEFAULT_EXPIRES_IN,
    DEVICE_CODE_GRANT_TYPE,
    DEVICE_FLOW_IMPORT_INTERVAL,
    DEVICE_FLOW_TIMEOUT,
    OIDC_CLIENT_NAME,
    SLOW_DOWN_INCREMENT,
    SSO_PORTAL_BASE,
    SSO_REFERER,
    SSO_SCOPES,
    SSO_START_URL,
    get_aws_sso_oidc_base,
    get_aws_sso_oidc_url,
)
from kiro_manager.errors import (
    AuthorizationTimeoutError,
    KiroManagerError,
    NetworkError,
    ProtocolError,
)
from kiro_manager.http_client import (
    CancelToken,
    KiroHttpClient,
    extract_error_code,
    extract_error_message,
)
from kiro_manager.models import TokenResult


@dataclass(frozen=True)
class ClientRegistration:
    client_id: str
    client_secret: str
    # epoch seconds, as returned by /client/register
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: Optional[str]
    verification_uri_complete: Optional[str]
    interval: int
    expires_in: int


class PollStatus(Enum):
    """Outcome of one device token poll."""

    COMPLETED = "completed"
    PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    EXPIRED = "expired_token"
    DENIED = "access_denied"
    FAILED = "failed"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class DevicePollResult:
    status: PollStatus
    token: Optional[TokenResult] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SsoAuthResult:
    """
    Result of the bearer token SSO import.

    Attributes:
        success: Whether tokens were obtained.
        access_token / refresh_token / expires_in: Issued tokens.
        client_id / client_secret: Client registered for this account.
        region: OIDC region.
        error: Failure description.
        failure: Typed error behind the failure, e.g. AuthorizationTimeoutError.
    """

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    region: Optional[str] = None
    error: Optional[str] = None
    failure: Optional[KiroManagerError] = None

    @classmethod
    def failed(cls, error: str, failure: Optional[KiroManagerError] = None) -> "SsoAuthResult":
        return cls(success=False, error=error, failure=failure)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class OidcClient:
    """
    Stateless AWS SSO OIDC protocol adapter.

    `sleep` and `clock` are injectable so the poll loop can be driven by a
    fake clock in tests.
    """

    def __init__(
        self,
        http: KiroHttpClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._http = http
        self._sleep = sleep
        self._clock = clock

    async def refresh_token(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str,
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> TokenResult:
        """
        Exchanges a refresh token at the regional OIDC token endpoint.

        Endpoint: https://oidc.{region}.amazonaws.com/token
        Method: POST
        Content-Type: application/json
        Body: {"grantType": "refresh_token", "clientId": ..., "clientSecret": ..., "refreshToken": ...}

        Args:
            refresh_token: Current refresh token
            client_id: Registered OIDC client id
            client_secret: Registered OIDC client secret
            region: AWS region of the OIDC endpoint
            cancel: Optional cancel token

        Returns:
            TokenResult; never raises for network or HTTP failures
        """
        url = get_aws_sso_oidc_url(region)
        payload = {
            "grantType": "refresh_token",
            "clientId": client_id,
            "clientSecret": client_secret,
            "refreshToken": refresh_token,
        }

        logger.info(f"Refreshing token via AWS SSO OIDC (region: {region})...")
        try:
            response = await self._http.post_json(
                url,
                payload,
                operation="OIDC token refresh",
                timeout=self._http.config.refresh_timeout,
                cancel=cancel,
            )
        except NetworkError as e:
            return TokenResult.failed(str(e))

        if response.status_code != 200:
            message = extract_error_message(response)
            logger.error(f"AWS SSO OIDC refresh failed: {message}")
            return TokenResult.failed(f"Token refresh failed: {message}", status_code=response.status_code)

        data = _json_or_empty(response)
        access_token = data.get("accessToken")
        if not access_token:
            return TokenResult.failed("Token refresh response does not contain accessToken")

        expires_in = data.get("expiresIn") or DEFAULT_EXPIRES_IN
        logger.info(f"Token refreshed via AWS SSO OIDC, expires in {expires_in}s")
        return TokenResult.ok(access_token, data.get("refreshToken") or refresh_token, expires_in)

    async def register_client(self, region: str, cancel: Optional[CancelToken] = None) -> ClientRegistration:
        """
        Registers a public OIDC client able to use the device code grant.

        Raises:
            ProtocolError: On non-2xx or missing fields
            NetworkError: On transport failure
        """
        payload = {
            "clientName": OIDC_CLIENT_NAME,
            "clientType": "public",
            "scopes": SSO_SCOPES,
            "grantTypes": [DEVICE_CODE_GRANT_TYPE, "refresh_token"],
            "issuerUrl": SSO_START_URL,
        }
        response = await self._http.post_json(
            f"{get_aws_sso_oidc_base(region)}/client/register",
            payload,
            operation="Client registration",
            timeout=self._http.config.login_timeout,
            cancel=cancel,
        )
        if not response.is_success:
            raise ProtocolError(extract_error_message(response), status_code=response.status_code)

        data = _json_or_empty(response)
        if not data.get("clientId") or not data.get("clientSecret"):
            raise ProtocolError("Client registration response is missing clientId/clientSecret")
        logger.info("OIDC client registered")
        return ClientRegistration(
            client_id=data["clientId"],
            client_secret=data["clientSecret"],
            expires_at=data.get("clientSecretExpiresAt"),
        )

    async def start_device_authorization(
        self,
        registration: ClientRegistration,
        region: str,
        default_interval: int,
        cancel: Optional[CancelToken] = None,
    ) -> DeviceAuthorization:
        """
        Starts device authorization for a registered client.

        Raises:
            ProtocolError: On non-2xx or missing fields
            NetworkError: On transport failure
        """
        payload = {
            "clientId": registration.client_id,
            "clientSecret": registration.client_secret,
            "startUrl": SSO_START_URL,
        }
        response = await self._http.post_json(
            f"{get_aws_sso_oidc_base(region)}/device_authorization",
            payload,
            operation="Device authorization",
            timeout=self._http.config.login_timeout,
            cancel=cancel,
        )
        if not response.is_success:
            raise ProtocolError(extract_error_message(response), status_code=response.status_code)

        data = _json_or_empty(response)
        if not data.get("deviceCode") or not data.get("userCode"):
            raise ProtocolError("Device authorization response is missing deviceCode/userCode")
        return DeviceAuthorization(
            device_code=data["deviceCode"],
            user_code=data["userCode"],
            verification_uri=data.get("verificationUri"),
            verification_uri_complete=data.get("verificationUriComplete"),
            interval=int(data.get("interval") or default_interval),
            expires_in=int(data.get("expiresIn") or 600),
        )

    async def poll_device_token(
        self,
        registration: ClientRegistration,
        device_code: str,
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> DevicePollResult:
        """
        Polls the token endpoint once with the device code grant.

        Returns:
            DevicePollResult; OAuth errors are reported through `status`

        Raises:
            NetworkError: On transport failure
        """
        payload = {
            "clientId": registration.client_id,
            "clientSecret": registration.client_secret,
            "grantType": DEVICE_CODE_GRANT_TYPE,
            "deviceCode": device_code,
        }
        response = await self._http.post_json(
            get_aws_sso_oidc_url(region),
            payload,
            operation="Device token poll",
            timeout=self._http.config.login_timeout,
            cancel=cancel,
        )

        if response.status_code == 200:
            data = _json_or_empty(response)
            if not data.get("accessToken"):
                return DevicePollResult(PollStatus.FAILED, error="Token response does not contain accessToken")
            token = TokenResult.ok(
                data["accessToken"],
                data.get("refreshToken"),
                data.get("expiresIn") or DEFAULT_EXPIRES_IN,
            )
            return DevicePollResult(PollStatus.COMPLETED, token=token)

        if response.status_code == 400:
            code = extract_error_code(response)
            if code == "authorization_pending":
                return DevicePollResult(PollStatus.PENDING)
            if code == "slow_down":
                return DevicePollResult(PollStatus.SLOW_DOWN)
            if code == "expired_token":
                return DevicePollResult(PollStatus.EXPIRED, error="Device code expired")
            if code == "access_denied":
                return DevicePollResult(PollStatus.DENIED, error="User denied authorization")
            return DevicePollResult(PollStatus.FAILED, error=f"Authorization error: {code or 'unknown'}")

        return DevicePollResult(
            PollStatus.UNEXPECTED,
            error=f"Unknown response: {extract_error_message(response)}",
        )

    async def _portal_request(
        self,
        method: str,
        path: str,
        bearer_token: str,
        operation: str,
        cancel: Optional[CancelToken],
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "headers": {"Authorization": f"Bearer {bearer_token}", "Accept": "application/json"},
        }
        if json_body is not None:
            kwargs["json"] = json_body
        response = await self._http.request(
            method,
            f"{SSO_PORTAL_BASE}{path}",
            operation=operation,
            timeout=self._http.config.import_timeout,
            cancel=cancel,
            **kwargs,
        )
        if not response.is_success:
            raise ProtocolError(f"{operation} failed: HTTP {response.status_code}", status_code=response.status_code)
        return _json_or_empty(response)

    async def _oidc_portal_post(
        self,
        path: str,
        region: str,
        payload: Dict[str, Any],
        operation: str,
        cancel: Optional[CancelToken],
    ) -> Dict[str, Any]:
        response = await self._http.post_json(
            f"{get_aws_sso_oidc_base(region)}{path}",
            payload,
            operation=operation,
            headers={"Referer": SSO_REFERER},
            timeout=self._http.config.import_timeout,
            cancel=cancel,
        )
        if not response.is_success:
            raise ProtocolError(f"{operation} failed: HTTP {response.status_code}", status_code=response.status_code)
        return _json_or_empty(response)

    async def authorize_with_sso_token(
        self,
        bearer_token: str,
        region: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SsoAuthResult:
        """
        Obtains IdC tokens for the user behind a portal bearer token.

        Steps:
        1. Register a public OIDC client
        2. Start device authorization
        3. Verify the bearer token (whoAmI)
        4. Exchange it for a device session token
        5. Accept the user code with the device session
        6. Approve the device context (when one is returned)
        7. Poll for the token until success, a terminal error or the deadline

        Args:
            bearer_token: x-amz-sso_authn value from the SSO portal
            region: OIDC region
            timeout: Wall-clock limit for step 7 (DEVICE_FLOW_TIMEOUT by default)
            cancel: Optional cancel token

        Returns:
            SsoAuthResult
        """
        timeout = DEVICE_FLOW_TIMEOUT if timeout is None else timeout

        logger.info("SSO import step 1: registering OIDC client...")
        try:
            registration = await self.register_client(region, cancel)
        except KiroManagerError as e:
            return SsoAuthResult.failed(f"Client registration failed: {e}", e)

        logger.info("SSO import step 2: starting device authorization...")
        try:
            authorization = await self.start_device_authorization(
                registration, region, DEVICE_FLOW_IMPORT_INTERVAL, cancel
            )
        except KiroManagerError as e:
            return SsoAuthResult.failed(f"Device authorization failed: {e}", e)

        logger.info("SSO import step 3: verifying bearer token...")
        try:
            await self._portal_request("GET", "/token/whoAmI", bearer_token, "whoAmI", cancel)
        except KiroManagerError as e:
            return SsoAuthResult.failed(f"Bearer token verification failed: {e}", e)

        logger.info("SSO import step 4: creating device session...")
        try:
            session = await self._portal_request(
                "POST", "/session/device", bearer_token, "Device session", cancel, json_body={}
            )
        except KiroManagerError as e:
            return SsoAuthResult.failed(f"Get device session failed: {e}", e)
        session_token = session.get("token")
        if not session_token:
            error = ProtocolError("Device session response does not contain token")
            return SsoAuthResult.failed(f"Get device session failed: {error}", error)

        logger.info("SSO import step 5: accepting user code...")
        try:
            accepted = await self._oidc_portal_post(
                "/device_authorization/accept_user_code",
                region,
                {"userCode": authorization.user_code, "userSessionId": session_token},
                "Accept user code",
                cancel,
            )
        except KiroManagerError as e:
            return SsoAuthResult.failed(f"Accept user code failed: {e}", e)

        device_context = accepted.get("deviceContext") or {}
        if device_context.get("deviceContextId"):
            logger.info("SSO import step 6: approving authorization...")
            try:
                await self._oidc_portal_post(
                    "/device_authorization/associate_token",
                    region,
                    {
                        "deviceContext": {
                            "deviceContextId": device_context["deviceContextId"],
                            "clientId": device_context.get("clientId") or registration.client_id,
                            "clientType": device_context.get("clientType") or "public",
                        },
                        "userSessionId": session_token,
                    },
                    "Approve authorization",
                    cancel,
                )
            except KiroManagerError as e:
                return SsoAuthResult.failed(f"Authorization approval failed: {e}", e)

        logger.info("SSO import step 7: polling for token...")
        try:
            token = await self._poll_until_complete(registration, authorization, region, timeout, cancel)
        except KiroManagerError as e:
            return SsoAuthResult.failed(str(e), e)

        logger.info("SSO import completed, token obtained")
        return SsoAuthResult(
            success=True,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_in=token.expires_in,
            client_id=registration.client_id,
            client_secret=registration.client_secret,
            region=region,
        )

    async def _poll_until_complete(
        self,
        registration: ClientRegistration,
        authorization: DeviceAuthorization,
        region: str,
        timeout: float,
        cancel: Optional[CancelToken],
    ) -> TokenResult:
        """
        Polls the device token until it is issued.

        Raises:
            AuthorizationTimeoutError: Deadline passed without a token
            ProtocolError: Terminal OAuth error
            OperationCancelledError: Cancel token fired
        """
        deadline = self._clock() + timeout
        interval = authorization.interval

        while self._clock() < deadline:
            await self._sleep(interval)
            if cancel is not None:
                cancel.raise_if_cancelled("SSO import")

            try:
                result = await self.poll_device_token(registration, authorization.device_code, region, cancel)
            except NetworkError as e:
                logger.warning(f"Device token poll error, retrying: {e}")
                continue

            if result.status is PollStatus.COMPLETED and result.token is not None:
                return result.token
            if result.status is PollStatus.PENDING:
                continue
            if result.status is PollStatus.SLOW_DOWN:
                interval += SLOW_DOWN_INCREMENT
                logger.debug(f"Server asked to slow down, poll interval is now {interval}s")
                continue
            if result.status is PollStatus.UNEXPECTED:
                logger.warning(f"Device token poll: {result.error}")
                continue
            raise ProtocolError(result.error or "Token polling failed", error_code=result.status.value)

        logger.error(f"Device authorization timed out after {timeout}s")
        raise AuthorizationTimeoutError("Authorization timeout, please retry")
