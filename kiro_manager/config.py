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
Configuration for Kiro Account Manager.

Values are read from environment variables (and an optional .env file).
Everything else in the package imports constants from here, so tests can
override them with monkeypatch.
"""

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


APP_NAME = "Kiro Account Manager"
APP_VERSION = "1.0.0"

# ==================================================================================================
# Vendor endpoints
# ==================================================================================================

DEFAULT_REGION = os.getenv("KIRO_REGION", "us-east-1")

# Kiro auth service (social refresh, social login, code exchange)
KIRO_AUTH_ENDPOINT = os.getenv("KIRO_AUTH_ENDPOINT", "https://prod.us-east-1.auth.desktop.kiro.dev")

# Kiro web portal operations (usage, user info)
KIRO_API_BASE = os.getenv(
    "KIRO_API_BASE",
    "https://app.kiro.dev/service/KiroWebPortalService/operation",
)

# AWS SSO portal used by the bearer token import flow
SSO_PORTAL_BASE = "https://portal.sso.us-east-1.amazonaws.com"
SSO_START_URL = "https://view.awsapps.com/start"
SSO_REFERER = "https://view.awsapps.com/"

SSO_SCOPES: List[str] = [
    "codewhisperer:completions",
    "codewhisperer:analysis",
    "codewhisperer:conversations",
    "codewhisperer:transformations",
    "codewhisperer:taskassist",
]

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

OIDC_CLIENT_NAME = APP_NAME

# Redirect URI registered for the Kiro desktop client
SOCIAL_REDIRECT_URI = "kiro://kiro.kiroAgent/authenticate-success"
PROTOCOL_PREFIX = "kiro"

USER_AGENT = f"kiro-account-manager/{APP_VERSION}"

# ==================================================================================================
# Token lifecycle
# ==================================================================================================

# Refresh tokens this many seconds before they expire
TOKEN_REFRESH_THRESHOLD = _get_int_env("TOKEN_REFRESH_THRESHOLD", 300)

# Used when a token endpoint omits expiresIn
DEFAULT_EXPIRES_IN = 3600

# Hard wall-clock deadline for the SSO import poll loop (seconds)
DEVICE_FLOW_TIMEOUT = _get_float_env("DEVICE_FLOW_TIMEOUT", 120.0)

# Poll interval used by the import flow when the server does not send one
DEVICE_FLOW_IMPORT_INTERVAL = 1

# Poll interval and lifetime for the interactive device login
DEVICE_LOGIN_DEFAULT_INTERVAL = 5
DEVICE_LOGIN_DEFAULT_EXPIRES_IN = 600

SLOW_DOWN_INCREMENT = 5

# Local client registration files written on account switch stay valid this long
CLIENT_REGISTRATION_TTL_DAYS = 90

# ==================================================================================================
# HTTP timeouts (seconds)
# ==================================================================================================

CONNECT_TIMEOUT = _get_float_env("CONNECT_TIMEOUT", 10.0)
LOGIN_TIMEOUT = _get_float_env("LOGIN_TIMEOUT", 30.0)
REFRESH_TIMEOUT = _get_float_env("REFRESH_TIMEOUT", 30.0)
API_TIMEOUT = _get_float_env("API_TIMEOUT", 60.0)
IMPORT_TIMEOUT = _get_float_env("IMPORT_TIMEOUT", 120.0)

# ==================================================================================================
# Batch operations
# ==================================================================================================

DEFAULT_BATCH_CONCURRENCY = _get_int_env("BATCH_CONCURRENCY", 10)

# Pause between chunks so the identity provider does not see bursts
BATCH_CHUNK_DELAY = _get_float_env("BATCH_CHUNK_DELAY", 0.1)

# Auto refresh defaults (minutes)
DEFAULT_AUTO_REFRESH_INTERVAL = 5

# Subscription considered "expiring soon" within this many days
EXPIRING_SOON_DAYS = 7

# ==================================================================================================
# Storage
# ==================================================================================================

STORE_DIR = os.getenv("KIRO_MANAGER_DATA_DIR", "~/.kiro-account-manager")
STORE_FILE_NAME = "kiro-accounts.json"
BACKUP_FILE_NAME = "kiro-accounts.backup.json"
STORE_VERSION = 1

SSO_CACHE_DIR = os.getenv("KIRO_SSO_CACHE_DIR", "~/.aws/sso/cache")
KIRO_TOKEN_FILE_NAME = "kiro-auth-token.json"

# ==================================================================================================
# Network / server
# ==================================================================================================

PROXY_URL = os.getenv("KIRO_MANAGER_PROXY", "")
PROXY_ENABLED = _get_bool_env("KIRO_MANAGER_PROXY_ENABLED", bool(PROXY_URL))

MANAGER_API_KEY = os.getenv("MANAGER_API_KEY", "")
AUTO_REFRESH_ON_STARTUP = _get_bool_env("AUTO_REFRESH_ON_STARTUP", True)


def get_aws_sso_oidc_base(region: str) -> str:
    """Returns the AWS SSO OIDC base URL for a region."""
    return f"https://oidc.{region}.amazonaws.com"


def get_aws_sso_oidc_url(region: str) -> str:
    """Returns the AWS SSO OIDC token endpoint for a region."""
    return f"{get_aws_sso_oidc_base(region)}/token"


def get_kiro_auth_endpoint() -> str:
    """Returns the Kiro auth service base URL without trailing slash."""
    return KIRO_AUTH_ENDPOINT.rstrip("/")


def get_kiro_refresh_url() -> str:
    """Returns the social refresh endpoint."""
    return f"{get_kiro_auth_endpoint()}/refreshToken"


def get_store_dir() -> Path:
    """Returns the expanded account store directory."""
    return Path(STORE_DIR).expanduser()


def get_sso_cache_dir() -> Path:
    """Returns the expanded local SSO cache directory."""
    return Path(SSO_CACHE_DIR).expanduser()
