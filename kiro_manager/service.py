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
UI-facing account operations.

AccountService wires the adapters, orchestrator, batch executor and
reconciler together. Every public coroutine returns an OperationResult;
errors are logged and converted, never raised to the caller.
"""

import inspect
import webbrowser
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import ValidationError

from kiro_manager.batch import AccountBatchResult, BatchExecutor, ProgressCallback, ResultCallback
from kiro_manager.config import STORE_VERSION
from kiro_manager.errors import KiroManagerError, RefreshFailedError
from kiro_manager.http_client import CancelToken, KiroHttpClient
from kiro_manager.login import LoginManager
from kiro_manager.models import (
    Account,
    AuthMethod,
    Credentials,
    Group,
    OperationResult,
    Provider,
    RefreshedCredentials,
    Tag,
    TokenResult,
    current_time_ms,
)
from kiro_manager.oidc import OidcClient
from kiro_manager.portal import KiroPortalClient
from kiro_manager.reconciler import AccountReconciler, ImportSummary
from kiro_manager.refresh import TokenRefreshOrchestrator, VerifiedAccount
from kiro_manager.social import SocialAuthClient
from kiro_manager.sso_cache import SsoCache
from kiro_manager.store import CredentialStore


def _failed(operation: str, error: BaseException) -> OperationResult:
    if isinstance(error, KiroManagerError):
        logger.error(f"{operation} failed: {error}")
    else:
        logger.exception(f"{operation} failed with unexpected error")
    return OperationResult.failed(str(error) or type(error).__name__)


def _check_payload(account: Account, new_credentials: Optional[RefreshedCredentials]) -> Dict[str, Any]:
    return {
        "id": account.id,
        "status": account.status.value,
        "usage": account.usage.to_document(),
        "subscription": account.subscription.to_document(),
        "newCredentials": new_credentials.to_dict() if new_credentials else None,
    }


class AccountService:
    """
    Facade over the credential core.

    Args:
        store: Loaded CredentialStore
        http: Shared HTTP client
        sso_cache: Local SSO cache of the Kiro IDE
        oidc: OIDC adapter (built from `http` when omitted)
        open_browser: Opener for social login URLs
    """

    def __init__(
        self,
        store: CredentialStore,
        http: KiroHttpClient,
        sso_cache: Optional[SsoCache] = None,
        oidc: Optional[OidcClient] = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ):
        self.store = store
        self.http = http
        self.sso_cache = sso_cache or SsoCache()

        oidc = oidc or OidcClient(http)
        social = SocialAuthClient(http)
        portal = KiroPortalClient(http)
        self.orchestrator = TokenRefreshOrchestrator(oidc, social, portal)
        self.batch = BatchExecutor(self.orchestrator)
        self.reconciler = AccountReconciler(store)
        self.login = LoginManager(oidc, social, open_browser=open_browser)

    async def aclose(self) -> None:
        await self.http.close()

    # ==============================================================================================
    # Single account
    # ==============================================================================================

    def list_accounts(self) -> List[Dict[str, Any]]:
        return [account.to_document() for account in self.store.list_accounts()]

    async def refresh_account(self, account_id: str) -> OperationResult:
        """Refreshes one account's token and persists the new credentials."""
        try:
            account = self.store.require_account(account_id)
            result = await self.orchestrator.refresh_credentials(account.credentials)
            if not result.success:
                error = RefreshFailedError(result.error or "Token refresh failed")
                self.reconciler.apply_failure(account_id, error)
                return _failed("Token refresh", error)
            updated = self.reconciler.apply_refresh(account_id, result)
        except Exception as e:
            return _failed("Token refresh", e)

        credentials = updated.credentials
        return OperationResult.ok(
            {
                "newCredentials": {
                    "accessToken": credentials.access_token,
                    "refreshToken": credentials.refresh_token,
                    "expiresAt": credentials.expires_at,
                }
            }
        )

    async def check_account_status(self, account_id: str) -> OperationResult:
        """Checks one account, refreshing once on an expired token, and persists the result."""
        try:
            account = self.store.require_account(account_id)
        except KiroManagerError as e:
            return _failed("Status check", e)

        try:
            result = await self.orchestrator.check_account_status(account)
        except KiroManagerError as e:
            try:
                self.reconciler.apply_failure(account_id, e)
            except KiroManagerError as record_error:
                logger.warning(f"Could not record status check failure for {account_id}: {record_error}")
            return _failed("Status check", e)
        except Exception as e:
            return _failed("Status check", e)

        try:
            updated = self.reconciler.apply_status_check(account_id, result)
        except KiroManagerError as e:
            return _failed("Status check", e)
        return OperationResult.ok(_check_payload(updated, result.new_credentials))

    async def delete_accounts(self, account_ids: Iterable[str]) -> OperationResult:
        try:
            removed = self.store.remove_accounts(account_ids)
        except KiroManagerError as e:
            return _failed("Delete accounts", e)
        return OperationResult.ok({"removed": removed})

    # ==============================================================================================
    # Batch
    # ==============================================================================================

    def _select_accounts(self, account_ids: Optional[Iterable[str]]) -> List[Account]:
        if account_ids is None:
            return self.store.list_accounts()
        selected = []
        for account_id in account_ids:
            account = self.store.get_account(account_id)
            if account is not None:
                selected.append(account)
        return selected

    def _result_handler(self, on_result: Optional[ResultCallback]):
        async def handle(result: AccountBatchResult) -> None:
            self.reconciler.apply_batch_result(result)
            if on_result is not None:
                outcome = on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome

        return handle

    async def batch_refresh(
        self,
        account_ids: Optional[Iterable[str]] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> OperationResult:
        accounts = self._select_accounts(account_ids)
        concurrency = concurrency or self.store.settings.auto_refresh_concurrency
        try:
            summary = await self.batch.batch_refresh(
                accounts, concurrency, on_progress, self._result_handler(on_result), cancel
            )
        except Exception as e:
            return _failed("Batch refresh", e)
        return OperationResult.ok(summary.to_dict())

    async def batch_check(
        self,
        account_ids: Optional[Iterable[str]] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> OperationResult:
        accounts = self._select_accounts(account_ids)
        concurrency = concurrency or self.store.settings.auto_refresh_concurrency
        try:
            summary = await self.batch.batch_check(
                accounts, concurrency, on_progress, self._result_handler(on_result), cancel
            )
        except Exception as e:
            return _failed("Batch check", e)
        return OperationResult.ok(summary.to_dict())

    async def refresh_expiring_accounts(self, cancel: Optional[CancelToken] = None) -> OperationResult:
        """Refreshes every account whose token is about to expire."""
        expiring = self.reconciler.accounts_needing_refresh()
        if not expiring:
            return OperationResult.ok({"total": 0})
        logger.info(f"Auto refresh: {len(expiring)} accounts expiring soon")
        return await self.batch_refresh([account.id for account in expiring], cancel=cancel)

    # ==============================================================================================
    # Adding accounts
    # ==============================================================================================

    def _store_verified(self, verified: VerifiedAccount, **kwargs: Any) -> OperationResult:
        try:
            account = self.reconciler.add_verified(verified, **kwargs)
        except KiroManagerError as e:
            return _failed("Add account", e)
        return OperationResult.ok(account.to_document())

    async def add_account_from_credentials(
        self,
        credentials: Credentials,
        nickname: Optional[str] = None,
        group_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> OperationResult:
        """Verifies credentials (refresh + usage) and adds the account."""
        try:
            verified = await self.orchestrator.verify_credentials(credentials)
        except Exception as e:
            return _failed("Verify credentials", e)
        return self._store_verified(verified, nickname=nickname, group_id=group_id, tags=tags)

    async def import_local_credentials(self) -> OperationResult:
        """Adds the account the Kiro IDE is currently logged in with."""
        try:
            credentials = self.sso_cache.read_local_sso_cache()
        except KiroManagerError as e:
            return _failed("Load local credentials", e)
        return await self.add_account_from_credentials(credentials)

    async def import_from_sso_token(self, bearer_token: str, region: str) -> OperationResult:
        try:
            verified = await self.orchestrator.import_from_sso_token(bearer_token, region)
        except Exception as e:
            return _failed("SSO import", e)
        return self._store_verified(verified)

    # ==============================================================================================
    # Interactive login
    # ==============================================================================================

    async def start_device_login(self, region: Optional[str] = None) -> OperationResult:
        try:
            started = await self.login.start_device_login(region)
        except Exception as e:
            return _failed("Start device login", e)
        return OperationResult.ok(
            {
                "userCode": started.user_code,
                "verificationUri": started.verification_uri,
                "verificationUriComplete": started.verification_uri_complete,
                "interval": started.interval,
                "expiresIn": started.expires_in,
            }
        )

    async def poll_device_login(self, region: Optional[str] = None) -> OperationResult:
        """Polls once; on completion verifies the new tokens and adds the account."""
        try:
            poll = await self.login.poll_device_login(region)
        except Exception as e:
            return _failed("Device login poll", e)

        if not poll.completed:
            return OperationResult.ok({"completed": False, "status": poll.status, "interval": poll.interval})

        credentials = Credentials(
            access_token=poll.access_token or "",
            refresh_token=poll.refresh_token,
            client_id=poll.client_id,
            client_secret=poll.client_secret,
            region=poll.region or "us-east-1",
            expires_at=current_time_ms() + (poll.expires_in or 3600) * 1000,
            auth_method=AuthMethod.IDC,
            provider=Provider.BUILDER_ID,
        )
        try:
            verified = await self.orchestrator.verify_tokens(credentials)
        except Exception as e:
            return _failed("Verify device login", e)

        added = self._store_verified(verified)
        if not added.success:
            return added
        return OperationResult.ok({"completed": True, "account": added.data})

    def cancel_login(self) -> OperationResult:
        return OperationResult.ok({"cancelled": self.login.cancel_login()})

    def start_social_login(self, provider: Provider) -> OperationResult:
        try:
            started = self.login.start_social_login(provider)
        except Exception as e:
            return _failed("Start social login", e)
        return OperationResult.ok({"loginUrl": started.login_url, "state": started.state})

    async def exchange_social_token(self, code: str, state: str) -> OperationResult:
        try:
            result = await self.login.exchange_social_token(code, state)
        except Exception as e:
            return _failed("Social login", e)
        return await self._add_social_account(result.provider, result.token)

    async def handle_callback_url(self, url: str) -> OperationResult:
        try:
            result = await self.login.handle_callback_url(url)
        except Exception as e:
            return _failed("Social login", e)
        return await self._add_social_account(result.provider, result.token)

    async def _add_social_account(self, provider: Provider, token: TokenResult) -> OperationResult:
        if not token.success:
            return OperationResult.failed(token.error or "Token exchange failed")

        credentials = Credentials(
            access_token=token.access_token or "",
            refresh_token=token.refresh_token,
            region="us-east-1",
            expires_at=current_time_ms() + (token.expires_in or 3600) * 1000,
            auth_method=AuthMethod.SOCIAL,
            provider=provider,
        )
        try:
            verified = await self.orchestrator.verify_tokens(credentials)
        except Exception as e:
            return _failed("Verify social login", e)
        return self._store_verified(verified)

    # ==============================================================================================
    # Local IDE session
    # ==============================================================================================

    def switch_account(self, account_id: str) -> OperationResult:
        """Writes an account's credentials into the IDE's SSO cache and marks it active."""
        try:
            account = self.store.require_account(account_id)
            self.sso_cache.write_local_sso_cache(account.credentials)
            self.store.put_account(account.model_copy(update={"last_used_at": current_time_ms()}))
            self.store.set_active_account(account_id)
        except KiroManagerError as e:
            return _failed("Switch account", e)
        logger.info(f"Switched to account {account.email}")
        return OperationResult.ok({"activeAccountId": account_id})

    def sync_local_active_account(self) -> Optional[str]:
        """Marks the stored account the IDE is logged in with as active."""
        refresh_token = self.sso_cache.read_refresh_token()
        if not refresh_token:
            return None
        for account in self.store.list_accounts():
            if account.credentials.refresh_token == refresh_token:
                if self.store.snapshot.active_account_id != account.id:
                    self.store.set_active_account(account.id)
                    logger.info(f"Active account synced from local SSO cache: {account.email}")
                return account.id
        return None

    async def auto_switch_if_needed(self) -> OperationResult:
        """Switches away from the active account once its remaining quota is at the threshold."""
        settings = self.store.settings
        if not settings.auto_switch_enabled:
            return OperationResult.ok({"switched": False})

        active = self.store.active_account
        if active is not None:
            await self.check_account_status(active.id)

        candidate = self.reconciler.next_auto_switch_candidate(settings.auto_switch_threshold)
        if candidate is None:
            return OperationResult.ok({"switched": False})

        switched = self.switch_account(candidate.id)
        if not switched.success:
            return switched
        return OperationResult.ok({"switched": True, "activeAccountId": candidate.id})

    # ==============================================================================================
    # Settings, import / export, stats
    # ==============================================================================================

    async def set_proxy(self, enabled: bool, url: str = "") -> OperationResult:
        """Persists proxy settings and applies them to all later requests."""
        try:
            self.store.update_settings(proxy_enabled=enabled, proxy_url=url)
        except KiroManagerError as e:
            return _failed("Set proxy", e)
        await self.http.set_proxy(url if enabled and url else None)
        return OperationResult.ok()

    async def apply_stored_settings(self) -> None:
        settings = self.store.settings
        if settings.proxy_enabled and settings.proxy_url:
            await self.http.set_proxy(settings.proxy_url)

    def export_accounts(self, account_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        snapshot = self.store.snapshot
        return {
            "version": STORE_VERSION,
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "accounts": [account.to_document() for account in self._select_accounts(account_ids)],
            "groups": [group.to_document() for group in snapshot.groups.values()],
            "tags": [tag.to_document() for tag in snapshot.tags.values()],
        }

    def import_accounts(self, document: Dict[str, Any]) -> OperationResult:
        """
        Imports an export document.

        Groups and tags that do not exist yet are added first; accounts that
        duplicate a stored identity are skipped.
        """
        snapshot = self.store.snapshot
        for raw in document.get("groups") or []:
            try:
                group = Group.model_validate(raw)
            except ValidationError:
                continue
            snapshot.groups.setdefault(group.id, group)
        for raw in document.get("tags") or []:
            try:
                tag = Tag.model_validate(raw)
            except ValidationError:
                continue
            snapshot.tags.setdefault(tag.id, tag)

        raw_accounts = document.get("accounts") or []
        if isinstance(raw_accounts, dict):
            raw_accounts = list(raw_accounts.values())

        parsed: List[Account] = []
        invalid: List[str] = []
        for raw in raw_accounts:
            try:
                account = Account.model_validate(raw)
            except ValidationError as e:
                invalid.append(f"{raw.get('email', '?') if isinstance(raw, dict) else '?'}: {e.error_count()} invalid fields")
                continue
            if account.group_id is not None and account.group_id not in snapshot.groups:
                account.group_id = None
            account.tags = [tag_id for tag_id in account.tags if tag_id in snapshot.tags]
            parsed.append(account)

        try:
            summary: ImportSummary = self.reconciler.import_accounts(parsed)
            if not parsed:
                self.store.save()
        except KiroManagerError as e:
            return _failed("Import accounts", e)

        summary.failed += len(invalid)
        summary.errors.extend(("", message) for message in invalid)
        return OperationResult(success=summary.success > 0 or not invalid, data=summary.to_dict())

    def get_stats(self) -> Dict[str, Any]:
        return self.reconciler.compute_stats()
