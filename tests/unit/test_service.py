# -*- coding: utf-8 -*-

"""
Unit tests for AccountService, the UI-facing facade.

Each test wires the real adapters to a MockTransport, a temporary store
and a temporary SSO cache directory.
"""

import json

import httpx
import pytest

from conftest import make_account, usage_payload, user_info_payload
from kiro_manager.errors import StorageError
from kiro_manager.models import AccountStatus, AuthMethod, Credentials, Provider, Usage
from kiro_manager.oidc import OidcClient
from kiro_manager.service import AccountService
from kiro_manager.sso_cache import SsoCache
from kiro_manager.store import CredentialStore

USAGE = "/GetUserUsageAndLimits"
USER_INFO = "/GetUserInfo"
REFRESHED = (200, {"accessToken": "access-new", "refreshToken": "refresh-new", "expiresIn": 3600})
UNAUTHORIZED = (401, {"__type": "UnauthorizedException", "message": "expired"})


async def _no_sleep(seconds):
    return None


@pytest.fixture
def opened():
    return []


@pytest.fixture
def service(store, http, tmp_path, opened):
    return AccountService(
        store,
        http,
        sso_cache=SsoCache(tmp_path / "sso"),
        oidc=OidcClient(http, sleep=_no_sleep),
        open_browser=opened.append,
    )


def _portal_ok(routes, **usage_kwargs):
    routes.add(USAGE, (200, usage_payload(**usage_kwargs)))
    routes.add(USER_INFO, (200, user_info_payload()))


class TestAddAccount:
    """Tests for adding accounts from credentials."""

    @pytest.mark.asyncio
    async def test_add_from_credentials(self, routes, service, store):
        """
        What it does: Adds an IdC account from a refresh token and client registration.
        Purpose: Ensure credentials are verified, identity is read from usage, and the account is stored.
        """
        routes.add("/token", REFRESHED)
        _portal_ok(routes, email="new@example.com", user_id="u-new")
        credentials = Credentials(refresh_token="refresh-old", client_id="cid", client_secret="cs")

        result = await service.add_account_from_credentials(credentials, nickname="work")

        assert result.success is True
        assert result.data["email"] == "new@example.com"
        assert result.data["nickname"] == "work"
        stored = store.list_accounts()[0]
        assert stored.credentials.access_token == "access-new"
        assert stored.user_id == "u-new"

    @pytest.mark.asyncio
    async def test_duplicate_is_rejected(self, routes, service, store):
        routes.add("/token", REFRESHED)
        _portal_ok(routes)
        credentials = Credentials(refresh_token="refresh-old", client_id="cid", client_secret="cs")

        await service.add_account_from_credentials(credentials)
        second = await service.add_account_from_credentials(credentials)

        assert second.success is False
        assert second.error == "Account already exists"
        assert len(store.list_accounts()) == 1

    @pytest.mark.asyncio
    async def test_invalid_refresh_token(self, routes, service, store):
        routes.add("/token", (400, {"error": "invalid_grant"}))

        result = await service.add_account_from_credentials(
            Credentials(refresh_token="bad", client_id="cid", client_secret="cs")
        )

        assert result.success is False
        assert "invalid_grant" in result.error
        assert store.list_accounts() == []

    @pytest.mark.asyncio
    async def test_import_local_credentials(self, routes, service, tmp_path):
        cache_dir = tmp_path / "sso"
        cache_dir.mkdir()
        with open(cache_dir / "kiro-auth-token.json", "w", encoding="utf-8") as f:
            json.dump({"refreshToken": "r", "authMethod": "social", "provider": "Github"}, f)
        routes.add("/refreshToken", REFRESHED)
        _portal_ok(routes)

        result = await service.import_local_credentials()

        assert result.success is True
        assert result.data["credentials"]["authMethod"] == "social"


class TestSingleAccountOperations:
    """Tests for refresh and status check of one account."""

    @pytest.mark.asyncio
    async def test_refresh_account(self, routes, service, store):
        account = store.put_account(make_account())
        routes.add("/token", REFRESHED)

        result = await service.refresh_account(account.id)

        assert result.success is True
        assert result.data["newCredentials"]["accessToken"] == "access-new"
        assert store.get_account(account.id).credentials.refresh_token == "refresh-new"

    @pytest.mark.asyncio
    async def test_refresh_failure_marks_expired(self, routes, service, store):
        account = store.put_account(make_account())
        routes.add("/token", (400, {"error": "invalid_grant"}))

        result = await service.refresh_account(account.id)

        assert result.success is False
        assert store.get_account(account.id).status is AccountStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_refresh_unknown_account(self, service):
        result = await service.refresh_account("missing")

        assert result.success is False
        assert "Account not found" in result.error

    @pytest.mark.asyncio
    async def test_check_persists_refreshed_credentials(self, routes, service, store):
        """
        What it does: Checks an account whose token was rejected once.
        Purpose: Ensure the refreshed credentials are persisted and returned.
        """
        account = store.put_account(make_account())
        routes.add(USAGE, UNAUTHORIZED, (200, usage_payload(current_usage=7)))
        routes.add(USER_INFO, (200, user_info_payload()))
        routes.add("/token", REFRESHED)

        result = await service.check_account_status(account.id)

        assert result.success is True
        assert result.data["newCredentials"]["accessToken"] == "access-new"
        stored = store.get_account(account.id)
        assert stored.credentials.access_token == "access-new"
        assert stored.usage.current == 7
        reloaded = CredentialStore(store.data_dir)
        reloaded.load()
        assert reloaded.get_account(account.id).credentials.access_token == "access-new"

    @pytest.mark.asyncio
    async def test_check_account_deleted_while_in_flight(self, routes, service, store):
        account = store.put_account(make_account(refresh_token=None))

        def reject_and_delete(request):
            store.remove_account(account.id)
            return httpx.Response(401, json={"__type": "UnauthorizedException", "message": "expired"})

        routes.add(USAGE, reject_and_delete)
        routes.add(USER_INFO, UNAUTHORIZED)

        result = await service.check_account_status(account.id)

        assert result.success is False
        assert "UnauthorizedException" in result.error
        assert store.get_account(account.id) is None

    @pytest.mark.asyncio
    async def test_check_suspended_account(self, routes, service, store):
        account = store.put_account(make_account())
        routes.add(USAGE, (423, {"__type": "AccountSuspendedException", "message": "suspended"}))
        routes.add(USER_INFO, (423, {"__type": "AccountSuspendedException", "message": "suspended"}))

        result = await service.check_account_status(account.id)

        assert result.success is False
        stored = store.get_account(account.id)
        assert stored.status is AccountStatus.ERROR
        assert "AccountSuspendedException" in stored.last_error

    @pytest.mark.asyncio
    async def test_delete_accounts(self, service, store):
        first = store.put_account(make_account(email="a@example.com"))
        store.put_account(make_account(email="b@example.com"))

        result = await service.delete_accounts([first.id, "missing"])

        assert result.data == {"removed": 1}
        assert len(store.list_accounts()) == 1


class TestBatch:
    """Tests for batch operations through the service."""

    @pytest.mark.asyncio
    async def test_batch_refresh_merges_results(self, routes, service, store):
        accounts = [store.put_account(make_account(email=f"u{i}@example.com", user_id=f"u-{i}")) for i in range(3)]
        routes.add("/token", REFRESHED)
        routes.add(USAGE, (500, {"message": "down"}))
        routes.add(USER_INFO, (500, {"message": "down"}))
        forwarded = []

        result = await service.batch_refresh(on_result=forwarded.append)

        assert result.success is True
        assert result.data["successCount"] == 3
        assert len(forwarded) == 3
        assert all(store.get_account(a.id).credentials.access_token == "access-new" for a in accounts)

    @pytest.mark.asyncio
    async def test_batch_check_selected_ids(self, routes, service, store):
        first = store.put_account(make_account(email="a@example.com"))
        second = store.put_account(make_account(email="b@example.com"))
        routes.add(USAGE, UNAUTHORIZED)
        routes.add(USER_INFO, UNAUTHORIZED)

        result = await service.batch_check([first.id])

        assert result.data["total"] == 1
        assert store.get_account(first.id).status is AccountStatus.EXPIRED
        assert store.get_account(second.id).status is AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_batch_check_survives_store_failure(self, routes, service, store, monkeypatch):
        """
        What it does: Checks 4 accounts in chunks of 2 while the first save fails.
        Purpose: Ensure one failed save fails only its account and the second chunk still runs.
        """
        for i in range(4):
            store.put_account(make_account(email=f"u{i}@example.com", user_id=f"u-{i}"))
        routes.add(USAGE, (200, usage_payload(email="u0@example.com", user_id="u-0")))
        routes.add(USER_INFO, (200, user_info_payload()))
        original_save = store.save
        failures = []

        def flaky_save():
            if not failures:
                failures.append(True)
                raise StorageError("Failed to save accounts: disk full")
            original_save()

        monkeypatch.setattr(store, "save", flaky_save)

        result = await service.batch_check(concurrency=2)

        assert result.success is True
        assert result.data["completed"] == 4
        assert result.data["successCount"] == 3
        assert result.data["failedCount"] == 1
        assert "disk full" in result.data["errors"][0]["error"]
        assert routes.count(USAGE) == 4

    @pytest.mark.asyncio
    async def test_refresh_expiring_accounts(self, routes, service, store):
        expiring = store.put_account(make_account(email="a@example.com", expires_in_seconds=10))
        fresh = store.put_account(make_account(email="b@example.com", expires_in_seconds=7200))
        routes.add("/token", REFRESHED)
        _portal_ok(routes, email="a@example.com")

        result = await service.refresh_expiring_accounts()

        assert result.data["total"] == 1
        assert store.get_account(expiring.id).credentials.access_token == "access-new"
        assert store.get_account(fresh.id).credentials.access_token == "access-old"


class TestLogins:
    """Tests for login flows that end in a stored account."""

    @pytest.mark.asyncio
    async def test_import_from_sso_token(self, routes, service, store):
        routes.add("/client/register", (200, {"clientId": "cid", "clientSecret": "cs"}))
        routes.add("/device_authorization", (200, {"deviceCode": "d", "userCode": "U", "interval": 1}))
        routes.add("/token/whoAmI", (200, {}))
        routes.add("/session/device", (200, {"token": "session"}))
        routes.add("/device_authorization/accept_user_code", (200, {}))
        routes.add("/token", (200, {"accessToken": "a", "refreshToken": "r", "expiresIn": 3600}))
        _portal_ok(routes, email="sso@example.com")

        result = await service.import_from_sso_token("bearer", "us-east-1")

        assert result.success is True
        stored = store.list_accounts()[0]
        assert stored.email == "sso@example.com"
        assert stored.credentials.client_id == "cid"
        assert stored.credentials.auth_method is AuthMethod.IDC

    @pytest.mark.asyncio
    async def test_device_login_adds_account(self, routes, service, store):
        routes.add("/client/register", (200, {"clientId": "cid", "clientSecret": "cs"}))
        routes.add("/device_authorization", (200, {"deviceCode": "d", "userCode": "U", "interval": 5}))
        routes.add("/token", (400, {"error": "authorization_pending"}), (200, {"accessToken": "a", "refreshToken": "r"}))
        _portal_ok(routes, email="device@example.com")

        started = await service.start_device_login()
        pending = await service.poll_device_login()
        completed = await service.poll_device_login()

        assert started.data["userCode"] == "U"
        assert pending.data == {"completed": False, "status": "pending", "interval": 5}
        assert completed.data["completed"] is True
        assert completed.data["account"]["email"] == "device@example.com"
        assert len(store.list_accounts()) == 1

    @pytest.mark.asyncio
    async def test_social_login_adds_account(self, routes, service, store, opened):
        routes.add("/oauth/token", (200, {"accessToken": "a", "refreshToken": "r", "expiresIn": 3600}))
        _portal_ok(routes, email="social@example.com")

        started = service.start_social_login(Provider.GOOGLE)
        result = await service.exchange_social_token("code", started.data["state"])

        assert opened == [started.data["loginUrl"]]
        assert result.success is True
        stored = store.list_accounts()[0]
        assert stored.credentials.auth_method is AuthMethod.SOCIAL
        assert stored.credentials.provider is Provider.GOOGLE

    @pytest.mark.asyncio
    async def test_social_login_state_mismatch(self, routes, service, store):
        service.start_social_login(Provider.GITHUB)

        result = await service.exchange_social_token("code", "wrong")

        assert result.success is False
        assert "State mismatch" in result.error
        assert routes.count("/oauth/token") == 0


class TestLocalSession:
    """Tests for switching and syncing the IDE login."""

    def test_switch_account(self, service, store):
        account = store.put_account(make_account())

        result = service.switch_account(account.id)

        assert result.data == {"activeAccountId": account.id}
        assert store.snapshot.active_account_id == account.id
        assert service.sso_cache.read_refresh_token() == "refresh-old"

    def test_sync_local_active_account(self, service, store):
        store.put_account(make_account(email="a@example.com", refresh_token="r-a"))
        other = store.put_account(make_account(email="b@example.com", refresh_token="r-b"))
        service.sso_cache.write_local_sso_cache(other.credentials)

        assert service.sync_local_active_account() == other.id
        assert store.snapshot.active_account_id == other.id

    @pytest.mark.asyncio
    async def test_auto_switch_when_quota_exhausted(self, routes, service, store):
        active = store.put_account(make_account(email="a@example.com", user_id="u-a"))
        spare = store.put_account(
            make_account(email="c@example.com", user_id="u-c", usage=Usage(current=10, limit=50))
        )
        store.set_active_account(active.id)
        store.update_settings(auto_switch_enabled=True, auto_switch_threshold=5)
        _portal_ok(routes, email="a@example.com", user_id="u-a", usage_limit=50, current_usage=50)

        result = await service.auto_switch_if_needed()

        assert result.data == {"switched": True, "activeAccountId": spare.id}
        assert store.snapshot.active_account_id == spare.id


class TestSettingsAndExport:
    """Tests for proxy settings, export/import and stats."""

    @pytest.mark.asyncio
    async def test_set_proxy(self, service, store):
        result = await service.set_proxy(True, "http://127.0.0.1:8080")

        assert result.success is True
        assert store.settings.proxy_enabled is True
        assert service.http.config.proxy_url == "http://127.0.0.1:8080"

        await service.set_proxy(False, "http://127.0.0.1:8080")
        assert service.http.config.proxy_url is None

    def test_export_then_import_skips_existing(self, service, store, tmp_path, http):
        group = store.add_group("Team")
        account = store.put_account(make_account(group_id=group.id))
        exported = service.export_accounts()

        other_store = CredentialStore(tmp_path / "other")
        other_store.load()
        other = AccountService(other_store, http, sso_cache=SsoCache(tmp_path / "sso2"))

        first = other.import_accounts(exported)
        second = other.import_accounts(exported)

        assert first.data["success"] == 1
        assert other_store.get_account(account.id).group_id == group.id
        assert second.data["skipped"] == 1
        assert len(other_store.list_accounts()) == 1

    def test_import_reports_invalid_records(self, service, store):
        result = service.import_accounts({"accounts": [{"id": "x"}, make_account().to_document()]})

        assert result.data["success"] == 1
        assert result.data["failed"] == 1

    def test_stats(self, service, store):
        store.put_account(make_account())

        stats = service.get_stats()

        assert stats["total"] == 1
        assert stats["activeCount"] == 1
