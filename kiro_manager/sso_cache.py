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
Reader/writer for the Kiro IDE's local SSO cache.

The IDE keeps its login in ~/.aws/sso/cache:
- kiro-auth-token.json: access/refresh token, auth method, provider, region
- {clientIdHash}.json: OIDC client registration (IdC only), where
  clientIdHash = SHA1(JSON.stringify({"startUrl": ...}))
"""

import hashlib
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from kiro_manager.config import (
    CLIENT_REGISTRATION_TTL_DAYS,
    KIRO_TOKEN_FILE_NAME,
    SSO_SCOPES,
    SSO_START_URL,
    get_sso_cache_dir,
)
from kiro_manager.errors import KiroManagerError
from kiro_manager.models import AuthMethod, Credentials, Provider


def compute_client_id_hash(start_url: str = SSO_START_URL) -> str:
    """
    Computes the cache key of the client registration file.

    Matches JavaScript's JSON.stringify output (no whitespace).
    """
    payload = json.dumps({"startUrl": start_url}, separators=(",", ":"))
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.debug(f"Skipping unreadable SSO cache file {path.name}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


class SsoCache:
    """
    Local SSO cache of the Kiro IDE.

    Args:
        cache_dir: Cache directory, ~/.aws/sso/cache by default
    """

    def __init__(self, cache_dir: Optional[Path] = None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else get_sso_cache_dir()

    @property
    def token_path(self) -> Path:
        return self.cache_dir / KIRO_TOKEN_FILE_NAME

    def _find_client_registration(self, client_id_hash: str) -> Optional[Dict[str, Any]]:
        registration = _read_json(self.cache_dir / f"{client_id_hash}.json")
        if registration and registration.get("clientId") and registration.get("clientSecret"):
            return registration

        logger.debug("Client registration not found by hash, scanning SSO cache directory...")
        if not self.cache_dir.is_dir():
            return None
        for path in sorted(self.cache_dir.glob("*.json")):
            if path.name == KIRO_TOKEN_FILE_NAME:
                continue
            data = _read_json(path)
            if data and data.get("clientId") and data.get("clientSecret"):
                logger.info(f"Client registration found in {path.name}")
                return data
        return None

    def read_local_sso_cache(self) -> Credentials:
        """
        Loads the IDE's current login as Credentials.

        Raises:
            KiroManagerError: Token file missing, no refresh token, or no
                client registration for an IdC login
        """
        token = _read_json(self.token_path)
        if token is None:
            raise KiroManagerError(f"Cannot find {KIRO_TOKEN_FILE_NAME}, please login in Kiro IDE first")
        if not token.get("refreshToken"):
            raise KiroManagerError(f"Missing refreshToken in {KIRO_TOKEN_FILE_NAME}")

        auth_method = AuthMethod.SOCIAL if token.get("authMethod") == AuthMethod.SOCIAL.value else AuthMethod.IDC
        client_id_hash = token.get("clientIdHash") or compute_client_id_hash()

        registration: Dict[str, Any] = {}
        if auth_method is AuthMethod.IDC:
            found = self._find_client_registration(client_id_hash)
            if found is None:
                raise KiroManagerError("Cannot find client registration file, please ensure you have logged in Kiro IDE")
            registration = found

        try:
            provider = Provider(token.get("provider") or Provider.BUILDER_ID.value)
        except ValueError:
            provider = Provider.BUILDER_ID

        logger.info(f"Loaded local Kiro credentials (authMethod: {auth_method.value})")
        return Credentials(
            access_token=token.get("accessToken") or "",
            refresh_token=token["refreshToken"],
            client_id=registration.get("clientId"),
            client_secret=registration.get("clientSecret"),
            region=token.get("region") or "us-east-1",
            auth_method=auth_method,
            provider=provider,
        )

    def read_refresh_token(self) -> Optional[str]:
        """Returns the refresh token of the IDE's current login, if any."""
        token = _read_json(self.token_path)
        return token.get("refreshToken") if token else None

    def write_local_sso_cache(self, credentials: Credentials) -> None:
        """
        Makes the IDE use the given credentials.

        Writes the token file and, for IdC logins, the client registration.

        Raises:
            KiroManagerError: On file system errors
        """
        client_id_hash = compute_client_id_hash()
        now = datetime.now(timezone.utc)
        token_data = {
            "accessToken": credentials.access_token,
            "refreshToken": credentials.refresh_token,
            "expiresAt": (now + timedelta(hours=1)).isoformat().replace("+00:00", "Z"),
            "clientIdHash": client_id_hash,
            "authMethod": credentials.auth_method.value,
            "provider": (credentials.provider or Provider.BUILDER_ID).value,
            "region": credentials.region,
        }

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            _write_json(self.token_path, token_data)
            logger.info(f"Token written to {self.token_path}")

            if credentials.auth_method is not AuthMethod.SOCIAL and credentials.client_id and credentials.client_secret:
                expires_at = now + timedelta(days=CLIENT_REGISTRATION_TTL_DAYS)
                client_data = {
                    "clientId": credentials.client_id,
                    "clientSecret": credentials.client_secret,
                    "expiresAt": expires_at.replace(tzinfo=None).isoformat(timespec="milliseconds"),
                    "scopes": SSO_SCOPES,
                }
                client_path = self.cache_dir / f"{client_id_hash}.json"
                _write_json(client_path, client_data)
                logger.info(f"Client registration written to {client_path}")
        except OSError as e:
            logger.error(f"Failed to write local SSO cache: {e}")
            raise KiroManagerError(f"Switch failed: {e}") from e
