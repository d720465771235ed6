# -*- coding: utf-8 -*-

"""
Unit tests for interactive logins (device flow and social PKCE).
"""

from urllib.parse import parse_qs, urlparse

import pytest

from kiro_manager.errors import KiroManagerError, ProtocolError, SessionStateError
from kiro_manager.login import DeviceFlowSession, LoginManager, LoginSessionSlot, SocialFlowSession
from kiro_manager.models import Provider
from kiro_manager.oidc import OidcClient
from kiro_manager.social import SocialAuthClient


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def opened():
    return []


@pytest.fixture
def login(http, clock, opened):
    return LoginManager(OidcClient(http), SocialAuthClient(http), open_browser=opened.append, clock=clock)


def _device_routes(routes, *token_responses):
    routes.add("/client/register", (200, {"clientId": "cid", "clientSecret": "csecret"}))
    routes.add(
        "/device_authorization",
        (
            200,
            {
                "deviceCode": "dev-code",
                "userCode": "WXYZ-1234",
                "verificationUri": "https://device.sso.us-east-1.amazonaws.com/",
                "verificationUriComplete": "https://device.sso.us-east-1.amazonaws.com/?user_code=WXYZ-1234",
                "interval": 5,
                "expiresIn": 600,
            },
        ),
    )
    if token_responses:
        routes.add("/token", *token_responses)


class TestLoginSessionSlot:
    """Tests for the single-slot session holder."""

    def test_stale_generation_cannot_clear_newer_session(self):
        """
        What it does: Clears with the generation of a replaced session.
        Purpose: Ensure a late poll cannot wipe out a newer login.
        """
        slot = LoginSessionSlot()
        old_generation = slot.replace(SocialFlowSession(Provider.GITHUB, "v1", "c1", "s1"))
        slot.replace(SocialFlowSession(Provider.GOOGLE, "v2", "c2", "s2"))

        assert slot.clear(old_generation) is False
        assert slot.current.provider is Provider.GOOGLE
        assert slot.clear() is True
        assert slot.current is None


class TestDeviceLogin:
    """Tests for the manual device login."""

    @pytest.mark.asyncio
    async def test_start_returns_user_code(self, routes, login):
        _device_routes(routes)

        started = await login.start_device_login("us-east-1")

        assert started.user_code == "WXYZ-1234"
        assert started.interval == 5
        assert isinstance(login.session, DeviceFlowSession)

    @pytest.mark.asyncio
    async def test_pending_then_completed(self, routes, login):
        """
        What it does: Polls once while pending and once after approval.
        Purpose: Ensure tokens and client credentials are returned and the session is cleared.
        """
        _device_routes(
            routes,
            (400, {"error": "authorization_pending"}),
            (200, {"accessToken": "a", "refreshToken": "r", "expiresIn": 3600}),
        )
        await login.start_device_login()

        pending = await login.poll_device_login()
        assert pending.completed is False
        assert pending.status == "pending"
        assert pending.interval == 5

        completed = await login.poll_device_login()
        assert completed.completed is True
        assert completed.access_token == "a"
        assert completed.client_id == "cid"
        assert completed.client_secret == "csecret"
        assert login.session is None

    @pytest.mark.asyncio
    async def test_slow_down_increases_interval(self, routes, login):
        _device_routes(routes, (400, {"error": "slow_down"}))
        await login.start_device_login()

        poll = await login.poll_device_login()

        assert poll.status == "slow_down"
        assert poll.interval == 10
        assert login.session.interval == 10

    @pytest.mark.asyncio
    async def test_expired_session(self, routes, login, clock):
        """
        What it does: Polls after the device code lifetime has passed.
        Purpose: Ensure SessionStateError is raised without a network call and the session is cleared.
        """
        _device_routes(routes, (400, {"error": "authorization_pending"}))
        await login.start_device_login()
        clock.now += 601

        with pytest.raises(SessionStateError, match="Device code expired"):
            await login.poll_device_login()

        assert routes.count("/token") == 0
        assert login.session is None

    @pytest.mark.asyncio
    async def test_denied_clears_session(self, routes, login):
        _device_routes(routes, (400, {"error": "access_denied"}))
        await login.start_device_login()

        with pytest.raises(SessionStateError, match="User denied authorization"):
            await login.poll_device_login()

        assert login.session is None

    @pytest.mark.asyncio
    async def test_unexpected_response_keeps_session(self, routes, login):
        _device_routes(routes, (500, {"message": "internal"}))
        await login.start_device_login()

        with pytest.raises(ProtocolError):
            await login.poll_device_login()

        assert isinstance(login.session, DeviceFlowSession)

    @pytest.mark.asyncio
    async def test_poll_without_session(self, login):
        with pytest.raises(SessionStateError, match="No active device login session"):
            await login.poll_device_login()


class TestSocialLogin:
    """Tests for the social PKCE login."""

    def test_start_opens_browser(self, login, opened):
        started = login.start_social_login(Provider.GOOGLE)

        assert opened == [started.login_url]
        params = parse_qs(urlparse(started.login_url).query)
        assert params["state"] == [started.state]
        assert params["idp"] == ["Google"]
        assert isinstance(login.session, SocialFlowSession)

    def test_builder_id_is_not_a_social_provider(self, login):
        with pytest.raises(KiroManagerError):
            login.start_social_login(Provider.BUILDER_ID)

    @pytest.mark.asyncio
    async def test_state_mismatch_never_calls_token_endpoint(self, routes, login):
        """
        What it does: Exchanges a code with a state that does not match the session.
        Purpose: Ensure the CSRF check fails before any network call.
        """
        routes.add("/oauth/token", (200, {"accessToken": "a", "refreshToken": "r"}))
        login.start_social_login(Provider.GITHUB)

        with pytest.raises(SessionStateError, match="State mismatch"):
            await login.exchange_social_token("code", "forged-state")

        assert routes.count("/oauth/token") == 0
        assert login.session is None

    @pytest.mark.asyncio
    async def test_non_ascii_state_is_a_mismatch(self, routes, login):
        login.start_social_login(Provider.GITHUB)

        with pytest.raises(SessionStateError, match="State mismatch"):
            await login.exchange_social_token("code", "évil")

        assert routes.count("/oauth/token") == 0
        assert login.session is None

    @pytest.mark.asyncio
    async def test_exchange_consumes_session(self, routes, login):
        """
        What it does: Exchanges a valid code twice.
        Purpose: Ensure the verifier is sent once and replays fail.
        """
        routes.add("/oauth/token", (200, {"accessToken": "a", "refreshToken": "r", "expiresIn": 3600}))
        started = login.start_social_login(Provider.GITHUB)
        verifier = login.session.code_verifier

        result = await login.exchange_social_token("code", started.state)

        assert result.provider is Provider.GITHUB
        assert result.token.success is True
        assert routes.bodies("/oauth/token")[0]["code_verifier"] == verifier

        with pytest.raises(SessionStateError):
            await login.exchange_social_token("code", started.state)
        assert routes.count("/oauth/token") == 1

    @pytest.mark.asyncio
    async def test_callback_url(self, routes, login):
        routes.add("/oauth/token", (200, {"accessToken": "a", "refreshToken": "r"}))
        started = login.start_social_login(Provider.GITHUB)

        result = await login.handle_callback_url(
            f"kiro://kiro.kiroAgent/authenticate-success?code=c&state={started.state}"
        )

        assert result.token.access_token == "a"

    @pytest.mark.asyncio
    async def test_invalid_callback_url(self, login):
        with pytest.raises(SessionStateError):
            await login.handle_callback_url("https://example.com/?code=c&state=s")

    @pytest.mark.asyncio
    async def test_device_login_replaces_social_session(self, routes, login):
        _device_routes(routes)
        login.start_social_login(Provider.GITHUB)

        await login.start_device_login()

        assert isinstance(login.session, DeviceFlowSession)

    def test_cancel_login(self, login):
        login.start_social_login(Provider.GITHUB)

        assert login.cancel_login() is True
        assert login.session is None
        assert login.cancel_login() is False
