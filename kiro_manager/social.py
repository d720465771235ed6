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
Kiro auth service adapter for social (Google / GitHub) accounts.

Social accounts have no OIDC client: refresh only needs the refresh token,
and login uses an authorization code with PKCE delivered through the
kiro:// redirect URI.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

from loguru import logger

from kiro_manager.config import (
    DEFAULT_EXPIRES_IN,
    PROTOCOL_PREFIX,
    SOCIAL_REDIRECT_URI,
    get_kiro_auth_endpoint,
    get_kiro_refresh_url,
)
from kiro_manager.errors import NetworkError
from kiro_manager.http_client import CancelToken, KiroHttpClient, extract_error_message
from kiro_manager.models import Provider, TokenResult

# RFC 7636 allows 43-128 characters
MAX_VERIFIER_LENGTH = 128


def generate_pkce() -> Tuple[str, str]:
    """
    Generates a PKCE code verifier and its S256 challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    code_verifier = secrets.token_urlsafe(64)[:MAX_VERIFIER_LENGTH]
    code_challenge = base64.urlsafe_b64encode(
        hashlib.sha256(code_verifier.encode()).digest()
    ).decode().rstrip("=")
    return code_verifier, code_challenge


def generate_state() -> str:
    """Generates an anti-CSRF state nonce."""
    return secrets.token_urlsafe(32)


def build_login_url(
    provider: Provider,
    code_challenge: str,
    state: str,
    redirect_uri: str = SOCIAL_REDIRECT_URI,
) -> str:
    """Builds the Kiro auth service login URL for a social provider."""
    query = urlencode(
        {
            "idp": provider.value,
            "redirect_uri": redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
    )
    return f"{get_kiro_auth_endpoint()}/login?{query}"


@dataclass(frozen=True)
class SocialCallback:
    code: str
    state: str


def parse_callback_url(url: str) -> Optional[SocialCallback]:
    """
    Extracts code and state from a kiro:// redirect.

    Accepts both the registered redirect (kiro://kiro.kiroAgent/authenticate-success)
    and the short kiro://auth/callback form.

    Returns:
        SocialCallback, or None if the URL is not an auth callback
    """
    if not url.startswith(f"{PROTOCOL_PREFIX}://"):
        return None

    parsed = urlparse(url)
    path = parsed.path.lstrip("/")
    if path not in ("auth/callback", "authenticate-success") and parsed.netloc != "auth":
        return None

    params = parse_qs(parsed.query)
    code = params.get("code", [None])[0]
    state = params.get("state", [None])[0]
    if not code or not state:
        return None
    return SocialCallback(code=code, state=state)


class SocialAuthClient:
    """Stateless adapter for the Kiro auth service token endpoints."""

    def __init__(self, http: KiroHttpClient):
        self._http = http

    def _headers(self):
        return {"User-Agent": self._http.config.user_agent}

    async def refresh_token(self, refresh_token: str, cancel: Optional[CancelToken] = None) -> TokenResult:
        """
        Refreshes a social account token.

        Endpoint: {KIRO_AUTH_ENDPOINT}/refreshToken
        Method: POST
        Content-Type: application/json
        Body: {"refreshToken": "..."}

        Args:
            refresh_token: Current refresh token
            cancel: Optional cancel token

        Returns:
            TokenResult; the old refresh token is kept if the response omits one
        """
        logger.info("Refreshing token via Kiro auth service...")
        try:
            response = await self._http.post_json(
                get_kiro_refresh_url(),
                {"refreshToken": refresh_token},
                operation="Social token refresh",
                headers=self._headers(),
                timeout=self._http.config.refresh_timeout,
                cancel=cancel,
            )
        except NetworkError as e:
            return TokenResult.failed(str(e))

        if not response.is_success:
            message = extract_error_message(response)
            logger.error(f"Social token refresh failed: {message}")
            return TokenResult.failed(f"Token refresh failed: {message}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            return TokenResult.failed("Token refresh returned invalid JSON", status_code=response.status_code)

        access_token = data.get("accessToken") if isinstance(data, dict) else None
        if not access_token:
            return TokenResult.failed("Token refresh response does not contain accessToken")

        expires_in = data.get("expiresIn") or DEFAULT_EXPIRES_IN
        logger.info(f"Token refreshed via Kiro auth service, expires in {expires_in}s")
        return TokenResult.ok(
            access_token,
            data.get("refreshToken") or refresh_token,
            expires_in,
            profile_arn=data.get("profileArn"),
        )

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str = SOCIAL_REDIRECT_URI,
        cancel: Optional[CancelToken] = None,
    ) -> TokenResult:
        """
        Exchanges an authorization code and PKCE verifier for tokens.

        Endpoint: {KIRO_AUTH_ENDPOINT}/oauth/token
        Body: {"code": ..., "code_verifier": ..., "redirect_uri": ...}
        """
        try:
            response = await self._http.post_json(
                f"{get_kiro_auth_endpoint()}/oauth/token",
                {"code": code, "code_verifier": code_verifier, "redirect_uri": redirect_uri},
                operation="Social code exchange",
                headers=self._headers(),
                timeout=self._http.config.login_timeout,
                cancel=cancel,
            )
        except NetworkError as e:
            return TokenResult.failed(str(e))

        if not response.is_success:
            message = extract_error_message(response)
            logger.error(f"Social code exchange failed: {message}")
            return TokenResult.failed(f"Token exchange failed: {message}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            return TokenResult.failed("Token exchange returned invalid JSON", status_code=response.status_code)

        if not isinstance(data, dict) or not data.get("accessToken"):
            return TokenResult.failed("Token exchange response does not contain accessToken")

        logger.info("Social login code exchanged for tokens")
        return TokenResult.ok(
            data["accessToken"],
            data.get("refreshToken"),
            data.get("expiresIn") or DEFAULT_EXPIRES_IN,
            profile_arn=data.get("profileArn"),
        )
