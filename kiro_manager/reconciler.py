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
Merges fetched data into stored accounts.

Handles:
- Duplicate detection by (email, userId)
- Merging refreshed credentials and usage without dropping known fields
- Account status transitions
- Selection of accounts for auto refresh and auto switch
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from loguru import logger
from pydantic import BaseModel

from kiro_manager.batch import AccountBatchResult
from kiro_manager.config import EXPIRING_SOON_DAYS, TOKEN_REFRESH_THRESHOLD
from kiro_manager.errors import DuplicateAccountError, KiroManagerError, is_banned_error
from kiro_manager.models import (
    Account,
    AccountStatus,
    RefreshedCredentials,
    TokenResult,
    current_time_ms,
    new_id,
)
from kiro_manager.refresh import StatusCheckResult, VerifiedAccount, status_for_failure
from kiro_manager.store import CredentialStore
from kiro_manager.usage import UsageSnapshot

ALREADY_EXISTS = "Account already exists"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class ImportSummary:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [{"id": item_id, "error": error} for item_id, error in self.errors],
            "message": f"Skipped {self.skipped} existing accounts" if self.skipped else None,
        }


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def identities_match(
    email: Optional[str],
    user_id: Optional[str],
    other_email: Optional[str],
    other_user_id: Optional[str],
) -> bool:
    """
    Returns True if two (email, userId) identities denote the same account.

    Emails compare case-insensitively. A missing userId on either side
    matches any userId, so an account fetched before its userId was known
    still counts as the same identity.
    An equal userId under a different email is a different identity.
    """
    if not email or _normalize_email(email) != _normalize_email(other_email):
        return False
    if user_id and other_user_id:
        return user_id == other_user_id
    return True


def merge_model(current: ModelT, fresh: ModelT) -> ModelT:
    """Returns `current` updated with every non-None field of `fresh`."""
    update = {
        name: getattr(fresh, name)
        for name in type(fresh).model_fields
        if getattr(fresh, name) is not None
    }
    return current.model_copy(update=update)


class AccountReconciler:
    """
    Applies orchestrator results to the CredentialStore.

    Each apply_* method persists the store (primary + backup) through the
    store's mutators.
    """

    def __init__(self, store: CredentialStore, now: Callable[[], int] = current_time_ms):
        self._store = store
        self._now = now

    # ==============================================================================================
    # Duplicates and insertion
    # ==============================================================================================

    def find_duplicate(
        self,
        email: Optional[str],
        user_id: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> Optional[Account]:
        for account in self._store.list_accounts():
            if account.id == exclude_id:
                continue
            if identities_match(email, user_id, account.email, account.user_id):
                return account
        return None

    def add_account(self, account: Account) -> Account:
        """
        Stores a new account unless its identity already exists.

        Raises:
            DuplicateAccountError: An account with the same identity exists
        """
        existing = self.find_duplicate(account.email, account.user_id)
        if existing is not None:
            logger.info(f"Skipping {account.email}: already stored as {existing.id}")
            raise DuplicateAccountError(ALREADY_EXISTS)
        if self._store.get_account(account.id) is not None:
            account = account.model_copy(update={"id": new_id()})
        self._store.put_account(account)
        logger.info(f"Account added: {account.email}")
        return account

    def build_account(
        self,
        verified: VerifiedAccount,
        nickname: Optional[str] = None,
        group_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        fallback_email: Optional[str] = None,
    ) -> Account:
        """Creates an account record from verified credentials."""
        snapshot = verified.snapshot
        email = verified.email or fallback_email
        if not email:
            raise KiroManagerError("Account email is unknown, cannot check for duplicates")

        now_ms = self._now()
        account = Account(
            email=email,
            user_id=verified.user_id,
            nickname=nickname,
            idp=(snapshot.idp if snapshot else None) or (
                verified.credentials.provider.value if verified.credentials.provider else None
            ),
            credentials=verified.credentials,
            group_id=group_id,
            tags=list(tags or []),
            status=AccountStatus.ACTIVE,
            created_at=now_ms,
            last_used_at=now_ms,
            last_checked_at=now_ms,
        )
        if snapshot is not None:
            account = self._merge_snapshot(account, snapshot)
        return account

    def add_verified(self, verified: VerifiedAccount, **kwargs: Any) -> Account:
        return self.add_account(self.build_account(verified, **kwargs))

    def import_accounts(self, accounts: Iterable[Account]) -> ImportSummary:
        """
        Adds many accounts, skipping duplicates within the batch and the store.

        Returns:
            ImportSummary with per-item errors
        """
        summary = ImportSummary()
        accepted: List[Account] = []

        for account in accounts:
            duplicate = self.find_duplicate(account.email, account.user_id) or next(
                (
                    other for other in accepted
                    if identities_match(account.email, account.user_id, other.email, other.user_id)
                ),
                None,
            )
            if duplicate is not None:
                summary.skipped += 1
                continue
            if self._store.get_account(account.id) is not None or any(a.id == account.id for a in accepted):
                account = account.model_copy(update={"id": new_id()})
            accepted.append(account)

        if accepted:
            self._store.put_accounts(accepted)
        summary.success = len(accepted)
        logger.info(f"Imported {summary.success} accounts, skipped {summary.skipped}")
        return summary

    # ==============================================================================================
    # Merging
    # ==============================================================================================

    @staticmethod
    def _merge_credentials(account: Account, new_credentials: RefreshedCredentials) -> Account:
        credentials = account.credentials.model_copy(
            update={
                "access_token": new_credentials.access_token,
                "refresh_token": new_credentials.refresh_token or account.credentials.refresh_token,
                "expires_at": new_credentials.expires_at,
            }
        )
        return account.model_copy(update={"credentials": credentials})

    def _merge_snapshot(self, account: Account, snapshot: UsageSnapshot) -> Account:
        update: Dict[str, Any] = {
            "usage": merge_model(account.usage, snapshot.usage),
            "subscription": merge_model(account.subscription, snapshot.subscription),
        }
        if snapshot.idp:
            update["idp"] = snapshot.idp

        email = snapshot.email or account.email
        user_id = snapshot.user_id or account.user_id
        if self.find_duplicate(email, user_id, exclude_id=account.id) is None:
            update["email"] = email
            update["user_id"] = user_id
        else:
            logger.warning(f"Not updating identity of {account.id}: {email} belongs to another account")
        return account.model_copy(update=update)

    def apply_refresh(self, account_id: str, result: TokenResult) -> Account:
        """Merges a successful token refresh into an account and saves."""
        account = self._store.require_account(account_id)
        new_credentials = RefreshedCredentials.from_token_result(result, self._now())
        account = self._merge_credentials(account, new_credentials)
        account = account.model_copy(update={"status": AccountStatus.ACTIVE, "last_error": None})
        return self._store.put_account(account)

    def apply_status_check(self, account_id: str, result: StatusCheckResult) -> Account:
        """Merges a status check (and any refresh it did) into an account and saves."""
        account = self._store.require_account(account_id)
        if result.new_credentials is not None:
            account = self._merge_credentials(account, result.new_credentials)
        if result.snapshot is not None:
            account = self._merge_snapshot(account, result.snapshot)
        account = account.model_copy(
            update={
                "status": result.status,
                "last_error": result.error,
                "last_checked_at": self._now(),
            }
        )
        logger.debug(f"Account {account.email} is {result.status.value}")
        return self._store.put_account(account)

    def apply_failure(self, account_id: str, error: BaseException) -> Account:
        """
        Records a failed operation.

        Status moves to expired after a failed refresh and to error on
        suspension; other failures keep the status and only set lastError.
        """
        account = self._store.require_account(account_id)
        return self._record_failure(account, str(error), status_for_failure(error))

    def _record_failure(self, account: Account, message: str, status: Optional[AccountStatus]) -> Account:
        update: Dict[str, Any] = {"last_error": message, "last_checked_at": self._now()}
        if status is not None:
            update["status"] = status
        logger.warning(f"Account {account.email}: {message}")
        return self._store.put_account(account.model_copy(update=update))

    def apply_batch_result(self, result: AccountBatchResult) -> Optional[Account]:
        """Merges one batch result; accounts deleted meanwhile are ignored."""
        if self._store.get_account(result.account_id) is None:
            return None
        if result.success and result.check is not None:
            return self.apply_status_check(result.account_id, result.check)
        account = self._store.require_account(result.account_id)
        return self._record_failure(account, result.error or "Unknown error", result.status)

    # ==============================================================================================
    # Selection and stats
    # ==============================================================================================

    def accounts_needing_refresh(
        self,
        now_ms: Optional[int] = None,
        threshold: int = TOKEN_REFRESH_THRESHOLD,
    ) -> List[Account]:
        """
        Returns accounts whose token expires within `threshold` seconds.

        Accounts that cannot be refreshed or whose last error marks them as
        banned are left out.
        """
        now_ms = self._now() if now_ms is None else now_ms
        return [
            account
            for account in self._store.list_accounts()
            if account.credentials.can_refresh()
            and not is_banned_error(account.last_error)
            and account.credentials.expires_within(threshold, now_ms)
        ]

    def compute_stats(self) -> Dict[str, Any]:
        accounts = self._store.list_accounts()
        expiring = [
            account for account in accounts
            if account.subscription.days_remaining is not None
            and account.subscription.days_remaining <= EXPIRING_SOON_DAYS
        ]
        return {
            "total": len(accounts),
            "byStatus": dict(Counter(account.status.value for account in accounts)),
            "bySubscription": dict(Counter(account.subscription.type.value for account in accounts)),
            "byIdp": dict(Counter(account.idp or "Unknown" for account in accounts)),
            "activeCount": sum(1 for account in accounts if account.status is AccountStatus.ACTIVE),
            "expiringSoonCount": len(expiring),
        }

    def next_auto_switch_candidate(self, threshold: float) -> Optional[Account]:
        """
        Picks the account to switch to when the active one runs low.

        Returns None while the active account still has more than `threshold`
        remaining, or when no other healthy account has more.
        """
        active = self._store.active_account
        if active is None or active.usage.remaining > threshold:
            return None
        for account in self._store.list_accounts():
            if account.id == active.id or account.status is not AccountStatus.ACTIVE:
                continue
            if is_banned_error(account.last_error):
                continue
            if account.usage.remaining > threshold:
                return account
        return None
