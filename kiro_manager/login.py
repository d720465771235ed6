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
Interactive logins: manual device authorization and social PKCE.

Only one login can be in flight per process. The in-flight state lives in
a LoginSessionSlot; every session gets a generation number so a poll that
finishes after its session was replaced cannot clear or mutate the newer one.
"""

import asyncio
import secrets
import time
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from loguru import logger

from kiro_manager.config import (
    DEFAULT_REGION,
    DEVICE_LOGIN_DEFAULT_INTERVAL,
    SLOW_DOWN_INCREMENT,
)
from kiro_manager.errors import KiroManagerError, ProtocolError, SessionStateError
from kiro_manager.models import Provider, TokenResult
from kiro_manager.oidc import ClientRegistration, OidcClient, PollStatus
from kiro_manager.social import (
    SocialAuthClient,
    build_login_url,
    generate_pkce,
    generate_state,
    parse_callback_url,
)

SOCIAL_PROVIDERS = (Provider.GITHUB, Provider.GOOGLE)


@dataclass
class DeviceFlowSession:
    region: str
    registration: ClientRegistration
    device_code: str
    user_code: str
    verification_uri: Optional[str]
    interval: int
    # monotonic clock deadline
    expires_at: float


@dataclass
class SocialFlowSession:
    provider: Provider
    code_verifier: str
    code_challenge: str
    oauth_state: str


LoginSession = Union[DeviceFlowSession, SocialFlowSession]


class LoginSessionSlot:
    """
    Holds at most one in-flight login session.

    `replace` swaps the session atomically; `clear(generation)` only clears
    when the slot still holds the session of that generation.
    """

    def __init__(self):
        self._session: Optional[LoginSession] = None
        self._generation = 0

    @property
    def current(self) -> Optional[LoginSession]:
        return self._session

    def snapshot(self) -> Tuple[Optional[LoginSession], int]:
        return self._session, self._generation

    def replace(self, session: Optional[LoginSession]) -> int:
        if self._session is not None:
            logger.info(f"Replacing in-flight {type(self._session).__name__}")
        self._generation += 1
        self._session = session
        return self._generation

    def clear(self, generation: Optional[int] = None) -> bool:
        if generation is not None and generation != self._generation:
            return False
        if self._session is None:
            return False
        self._session = None
        self._generation += 1
        return True

    def is_current(self, generation: int) -> bool:
        return self._session is not None and generation == self._generation


@dataclass(frozen=True)
class DeviceLoginStart:
    user_code: str
    verification_uri: Optional[str]
    verification_uri_complete: Optional[str]
    interval: int
    expires_in: int


@dataclass(frozen=True)
class DeviceLoginPoll:
    """
    Result of one manual device login poll.

    `completed` is False while the user has not approved yet; `interval`
    is the delay the caller should wait before polling again.
    """

    completed: bool
    status: str
    interval: Optional[int] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class SocialLoginStart:
    login_url: str
    state: str


@dataclass(frozen=True)
class SocialLoginResult:
    provider: Provider
    token: TokenResult


class LoginManager:
    """
    Runs the interactive login flows against a single session slot.

    Args:
        oidc: OIDC adapter for the device flow
        social: Kiro auth service adapter for PKCE code exchange
        open_browser: Callable that opens a URL externally
        clock: Monotonic clock used for session expiry
    """

    def __init__(
        self,
        oidc: OidcClient,
        social: SocialAuthClient,
        open_browser: Callable[[str], Any] = webbrowser.open,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._oidc = oidc
        self._social = social
        self._open_browser = open_browser
        self._clock = clock
        self._slot = LoginSessionSlot()
        self._start_lock = asyncio.Lock()

    @property
    def session(self) -> Optional[LoginSession]:
        return self._slot.current

    async def start_device_login(self, region: Optional[str] = None) -> DeviceLoginStart:
        """
        Registers a client and starts device authorization.

        Any previous login session is cancelled first.

        Raises:
            ProtocolError / NetworkError: When registration or authorization fails
        """
        region = region or DEFAULT_REGION
        async with self._start_lock:
            self._slot.clear()
            logger.info(f"Starting device login (region: {region})...")
            registration = await self._oidc.register_client(region)
            authorization = await self._oidc.start_device_authorization(
                registration, region, DEVICE_LOGIN_DEFAULT_INTERVAL
            )
            self._slot.replace(
                DeviceFlowSession(
                    region=region,
                    registration=registration,
                    device_code=authorization.device_code,
                    user_code=authorization.user_code,
                    verification_uri=authorization.verification_uri,
                    interval=authorization.interval,
                    expires_at=self._clock() + authorization.expires_in,
                )
            )

        logger.info(f"Device login started, user code: {authorization.user_code}")
        return DeviceLoginStart(
            user_code=authorization.user_code,
            verification_uri=authorization.verification_uri,
            verification_uri_complete=authorization.verification_uri_complete,
            interval=authorization.interval,
            expires_in=authorization.expires_in,
        )

    async def poll_device_login(self, region: Optional[str] = None) -> DeviceLoginPoll:
        """
        Polls the device token once.

        Returns:
            DeviceLoginPoll with completed=True and tokens on success,
            completed=False while authorization is pending

        Raises:
            SessionStateError: No device session, code expired, or user denied
            ProtocolError: Unexpected response (session kept)
            NetworkError: Transport failure (session kept)
        """
        session, generation = self._slot.snapshot()
        if not isinstance(session, DeviceFlowSession):
            raise SessionStateError("No active device login session")

        if self._clock() >= session.expires_at:
            self._slot.clear(generation)
            raise SessionStateError("Device code expired")

        result = await self._oidc.poll_device_token(
            session.registration, session.device_code, region or session.region
        )

        if result.status is PollStatus.COMPLETED and result.token is not None:
            self._slot.clear(generation)
            logger.info("Device login completed")
            return DeviceLoginPoll(
                completed=True,
                status="completed",
                access_token=result.token.access_token,
                refresh_token=result.token.refresh_token,
                expires_in=result.token.expires_in,
                client_id=session.registration.client_id,
                client_secret=session.registration.client_secret,
                region=session.region,
            )

        if result.status is PollStatus.PENDING:
            return DeviceLoginPoll(completed=False, status="pending", interval=session.interval)

        if result.status is PollStatus.SLOW_DOWN:
            if self._slot.is_current(generation):
                session.interval += SLOW_DOWN_INCREMENT
            return DeviceLoginPoll(completed=False, status="slow_down", interval=session.interval)

        if result.status is PollStatus.UNEXPECTED:
            raise ProtocolError(result.error or "Unknown response")

        self._slot.clear(generation)
        logger.warning(f"Device login failed: {result.error}")
        raise SessionStateError(result.error or "Authorization failed")

    def start_social_login(self, provider: Provider) -> SocialLoginStart:
        """
        Creates a PKCE session and opens the provider login page.

        Any previous login session is replaced.
        """
        if provider not in SOCIAL_PROVIDERS:
            raise KiroManagerError(f"Unsupported social provider: {provider.value}")

        code_verifier, code_challenge = generate_pkce()
        state = generate_state()
        self._slot.replace(
            SocialFlowSession(
                provider=provider,
                code_verifier=code_verifier,
                code_challenge=code_challenge,
                oauth_state=state,
            )
        )

        login_url = build_login_url(provider, code_challenge, state)
        logger.info(f"Starting social login via {provider.value}")
        self._open_browser(login_url)
        return SocialLoginStart(login_url=login_url, state=state)

    async def exchange_social_token(self, code: str, state: str) -> SocialLoginResult:
        """
        Exchanges the callback code after checking the state nonce.

        The session is consumed before the network call, so a code/state
        pair can only be exchanged once.

        Raises:
            SessionStateError: No social session or state mismatch
        """
        session, generation = self._slot.snapshot()
        if not isinstance(session, SocialFlowSession):
            raise SessionStateError("No active social login session")

        if not secrets.compare_digest((state or "").encode("utf-8"), session.oauth_state.encode("utf-8")):
            self._slot.clear(generation)
            logger.warning("Social login state mismatch, session discarded")
            raise SessionStateError("State mismatch, possible CSRF attack")

        self._slot.clear(generation)
        token = await self._social.exchange_code(code, session.code_verifier)
        return SocialLoginResult(provider=session.provider, token=token)

    async def handle_callback_url(self, url: str) -> SocialLoginResult:
        callback = parse_callback_url(url)
        if callback is None:
            raise SessionStateError("Not a valid login callback URL")
        return await self.exchange_social_token(callback.code, callback.state)

    def cancel_login(self) -> bool:
        cancelled = self._slot.clear()
        if cancelled:
            logger.info("Login cancelled")
        return cancelled
