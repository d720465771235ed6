# -*- coding: utf-8 -*-

"""
Unit tests for the social (Google / GitHub) auth adapter and PKCE helpers.
"""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import pytest

from kiro_manager.models import Provider
from kiro_manager.social import (
    SocialAuthClient,
    build_login_url,
    generate_pkce,
    generate_state,
    parse_callback_url,
)


class TestPkce:
    """Tests for PKCE generation."""

    def test_challenge_is_s256_of_verifier(self):
        """
        What it does: Generates a verifier/challenge pair.
        Purpose: Ensure challenge = BASE64URL(SHA256(verifier)) without padding.
        """
        verifier, challenge = generate_pkce()

        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert challenge == expected
        assert "=" not in challenge
        assert 43 <= len(verifier) <= 128

    def test_values_are_random(self):
        assert generate_pkce()[0] != generate_pkce()[0]
        assert generate_state() != generate_state()


class TestLoginUrl:
    """Tests for build_login_url."""

    def test_contains_pkce_parameters(self):
        url = build_login_url(Provider.GITHUB, "challenge-value", "state-value")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.path.endswith("/login")
        assert params["idp"] == ["Github"]
        assert params["code_challenge"] == ["challenge-value"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["state"] == ["state-value"]
        assert params["redirect_uri"] == ["kiro://kiro.kiroAgent/authenticate-success"]


class TestParseCallbackUrl:
    """Tests for kiro:// callback parsing."""

    @pytest.mark.parametrize(
        "url",
        [
            "kiro://kiro.kiroAgent/authenticate-success?code=abc&state=xyz",
            "kiro://auth/callback?code=abc&state=xyz",
        ],
    )
    def test_valid_callbacks(self, url):
        callback = parse_callback_url(url)

        assert callback is not None
        assert callback.code == "abc"
        assert callback.state == "xyz"

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/authenticate-success?code=abc&state=xyz",
            "kiro://kiro.kiroAgent/other?code=abc&state=xyz",
            "kiro://auth/callback?code=abc",
        ],
    )
    def test_invalid_callbacks(self, url):
        assert parse_callback_url(url) is None


class TestSocialRefresh:
    """Tests for SocialAuthClient.refresh_token."""

    @pytest.mark.asyncio
    async def test_success(self, routes, http):
        """
        What it does: Refreshes a social token.
        Purpose: Ensure only the refresh token is sent and profileArn is kept.
        """
        routes.add(
            "/refreshToken",
            (200, {"accessToken": "access-new", "refreshToken": "refresh-new", "expiresIn": 1800, "profileArn": "arn"}),
        )

        result = await SocialAuthClient(http).refresh_token("refresh-old")

        assert result.success is True
        assert result.refresh_token == "refresh-new"
        assert result.expires_in == 1800
        assert result.profile_arn == "arn"
        assert routes.bodies("/refreshToken") == [{"refreshToken": "refresh-old"}]
        assert routes.requests("/refreshToken")[0].headers["user-agent"].startswith("kiro-account-manager/")

    @pytest.mark.asyncio
    async def test_keeps_old_refresh_token(self, routes, http):
        routes.add("/refreshToken", (200, {"accessToken": "access-new"}))

        result = await SocialAuthClient(http).refresh_token("refresh-old")

        assert result.refresh_token == "refresh-old"

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, routes, http):
        routes.add("/refreshToken", (401, {"message": "Invalid refresh token"}))

        result = await SocialAuthClient(http).refresh_token("refresh-old")

        assert result.success is False
        assert result.status_code == 401
        assert "HTTP 401" in result.error


class TestExchangeCode:
    """Tests for SocialAuthClient.exchange_code."""

    @pytest.mark.asyncio
    async def test_sends_code_and_verifier(self, routes, http):
        routes.add("/oauth/token", (200, {"accessToken": "a", "refreshToken": "r", "expiresIn": 3600}))

        result = await SocialAuthClient(http).exchange_code("code-1", "verifier-1")

        assert result.success is True
        body = routes.bodies("/oauth/token")[0]
        assert body["code"] == "code-1"
        assert body["code_verifier"] == "verifier-1"

    @pytest.mark.asyncio
    async def test_missing_access_token(self, routes, http):
        routes.add("/oauth/token", (200, {"refreshToken": "r"}))

        result = await SocialAuthClient(http).exchange_code("code-1", "verifier-1")

        assert result.success is False
