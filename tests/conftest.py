# -*- coding: utf-8 -*-

"""
Shared fixtures for Kiro Account Manager tests.

Network calls go through httpx.MockTransport injected into KiroHttpClient,
so no request ever leaves the process.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from kiro_manager.http_client import KiroHttpClient
from kiro_manager.models import Account, AuthMethod, Credentials, Provider, current_time_ms
from kiro_manager.store import CredentialStore

Responder = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class MockRoutes:
    """
    Routes requests to canned responses by URL path suffix.

    Each path keeps a queue of responders: the first one is consumed per call
    until only the last is left, which then answers every further call.
    A responder is either (status_code, json_body) or a callable(request).
    """

    def __init__(self):
        self._routes: Dict[str, List[Responder]] = {}
        self.calls: List[Tuple[str, Optional[Dict[str, Any]], httpx.Request]] = []

    def add(self, path: str, *responders: Responder) -> "MockRoutes":
        self._routes[path] = list(responders)
        return self

    def count(self, path: str) -> int:
        return sum(1 for called, _, _ in self.calls if called.endswith(path))

    def bodies(self, path: str) -> List[Optional[Dict[str, Any]]]:
        return [body for called, body, _ in self.calls if called.endswith(path)]

    def requests(self, path: str) -> List[httpx.Request]:
        return [request for called, _, request in self.calls if called.endswith(path)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append((path, body, request))

        for key in sorted(self._routes, key=len, reverse=True):
            if path.endswith(key):
                queue = self._routes[key]
                responder = queue.pop(0) if len(queue) > 1 else queue[0]
                if callable(responder):
                    return responder(request)
                status_code, payload = responder
                return httpx.Response(status_code, json=payload)
        return httpx.Response(404, json={"message": f"No route for {path}"})


def usage_payload(
    email: str = "user@example.com",
    user_id: str = "user-1",
    title: str = "KIRO FREE",
    usage_limit: float = 50,
    current_usage: float = 10,
) -> Dict[str, Any]:
    """GetUserUsageAndLimits response with a single credit breakdown."""
    return {
        "nextDateReset": "2099-01-01T00:00:00Z",
        "subscriptionInfo": {"subscriptionTitle": title, "type": "Q_DEVELOPER_STANDALONE_FREE"},
        "usageBreakdownList": [
            {
                "resourceType": "CREDIT",
                "displayName": "Credits",
                "usageLimit": usage_limit,
                "currentUsage": current_usage,
            }
        ],
        "userInfo": {"email": email, "userId": user_id},
    }


def user_info_payload(email: str = "user@example.com", user_id: str = "user-1", status: str = "Active"):
    return {"email": email, "userId": user_id, "idp": "BuilderId", "status": status}


def make_account(
    email: str = "user@example.com",
    user_id: Optional[str] = "user-1",
    auth_method: AuthMethod = AuthMethod.IDC,
    expires_in_seconds: int = 3600,
    **overrides: Any,
) -> Account:
    """Builds a stored account with refreshable credentials."""
    credentials = Credentials(
        access_token=overrides.pop("access_token", "access-old"),
        refresh_token=overrides.pop("refresh_token", "refresh-old"),
        client_id="client-id" if auth_method is AuthMethod.IDC else None,
        client_secret="client-secret" if auth_method is AuthMethod.IDC else None,
        region="us-east-1",
        expires_at=current_time_ms() + expires_in_seconds * 1000,
        auth_method=auth_method,
        provider=Provider.BUILDER_ID if auth_method is AuthMethod.IDC else Provider.GITHUB,
    )
    return Account(email=email, user_id=user_id, credentials=credentials, **overrides)


@pytest.fixture
def routes():
    return MockRoutes()


@pytest.fixture
def http(routes):
    return KiroHttpClient(transport=httpx.MockTransport(routes))


@pytest.fixture
def store(tmp_path):
    credential_store = CredentialStore(tmp_path / "data")
    credential_store.load()
    return credential_store
