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
Client for the Kiro web portal operations (usage and user info).
"""

import uuid
from typing import Any, Dict, Optional

from loguru import logger

from kiro_manager.config import KIRO_API_BASE
from kiro_manager.errors import (
    AccountSuspendedError,
    AuthExpiredError,
    ProtocolError,
)
from kiro_manager.http_client import (
    CancelToken,
    KiroHttpClient,
    extract_error_code,
    extract_error_message,
)

SUSPENDED_ERROR_CODE = "AccountSuspendedException"


class KiroPortalClient:
    """
    Calls KiroWebPortalService operations with an account's access token.

    Non-2xx responses raise typed errors whose message always carries the
    HTTP status and the vendor error type, e.g.
    "GetUserUsageAndLimits failed: HTTP 401: UnauthorizedException: ...".
    """

    def __init__(self, http: KiroHttpClient, base_url: Optional[str] = None):
        self._http = http
        self._base_url = (base_url or KIRO_API_BASE).rstrip("/")

    def _headers(self, operation: str, access_token: str, idp: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Cookie": f"Idp={idp}; AccessToken={access_token}",
            "X-Operation-Name": operation,
            "amz-sdk-invocation-id": str(uuid.uuid4()),
        }

    async def call(
        self,
        operation: str,
        body: Dict[str, Any],
        access_token: str,
        idp: str = "BuilderId",
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """
        Invokes one portal operation.

        Args:
            operation: Operation name, e.g. "GetUserInfo"
            body: JSON request body
            access_token: Account access token
            idp: Identity provider sent in the Idp cookie
            cancel: Optional cancel token

        Returns:
            Parsed JSON response

        Raises:
            AuthExpiredError: HTTP 401
            AccountSuspendedError: HTTP 423 or AccountSuspendedException
            ProtocolError: Other non-2xx or invalid JSON
            NetworkError: Transport failure
        """
        response = await self._http.post_json(
            f"{self._base_url}/{operation}",
            body,
            operation=operation,
            headers=self._headers(operation, access_token, idp),
            cancel=cancel,
        )

        if not response.is_success:
            message = f"{operation} failed: {extract_error_message(response)}"
            code = extract_error_code(response)
            logger.warning(message)
            if response.status_code == 423 or code == SUSPENDED_ERROR_CODE:
                raise AccountSuspendedError(message, status_code=response.status_code, error_code=code)
            if response.status_code == 401:
                raise AuthExpiredError(message, status_code=401, error_code=code)
            raise ProtocolError(message, status_code=response.status_code, error_code=code)

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"{operation} returned invalid JSON", status_code=response.status_code) from e
        if not isinstance(data, dict):
            raise ProtocolError(f"{operation} returned unexpected payload", status_code=response.status_code)
        return data

    async def get_usage_and_limits(
        self,
        access_token: str,
        idp: str = "BuilderId",
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        return await self.call(
            "GetUserUsageAndLimits",
            {"isEmailRequired": True, "origin": "KIRO_IDE"},
            access_token,
            idp,
            cancel,
        )

    async def get_user_info(
        self,
        access_token: str,
        idp: str = "BuilderId",
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        return await self.call("GetUserInfo", {"origin": "KIRO_IDE"}, access_token, idp, cancel)
