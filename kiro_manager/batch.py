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
Chunked concurrent refresh / health check over many accounts.

Accounts are processed in chunks of `concurrency`. Inside a chunk every
account runs concurrently and settles on its own; a failure never aborts
its siblings. Per-account results are reported as soon as they settle,
progress after each chunk.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from loguru import logger

from kiro_manager.config import BATCH_CHUNK_DELAY, DEFAULT_BATCH_CONCURRENCY
from kiro_manager.http_client import CancelToken
from kiro_manager.models import Account, AccountStatus
from kiro_manager.refresh import StatusCheckResult, TokenRefreshOrchestrator, status_for_failure


@dataclass(frozen=True)
class BatchProgress:
    completed: int
    total: int
    success_count: int
    failed_count: int


@dataclass(frozen=True)
class AccountBatchResult:
    """
    Per-account outcome.

    Attributes:
        account_id: Account the result belongs to.
        success: False when the operation itself failed.
        check: Status/usage/credentials to merge when the operation ran.
        error: Failure message when success is False.
        status: Status implied by a failure, None to leave it unchanged.
    """

    account_id: str
    success: bool
    check: Optional[StatusCheckResult] = None
    error: Optional[str] = None
    status: Optional[AccountStatus] = None


@dataclass
class BatchSummary:
    total: int
    completed: int = 0
    success_count: int = 0
    failed_count: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self):
        return {
            "total": self.total,
            "completed": self.completed,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "errors": [{"id": account_id, "error": error} for account_id, error in self.errors],
            "cancelled": self.cancelled,
        }


AccountOperation = Callable[[Account, Optional[CancelToken]], Awaitable[AccountBatchResult]]
ProgressCallback = Callable[[BatchProgress], Any]
ResultCallback = Callable[[AccountBatchResult], Any]


async def _notify(callback: Optional[Callable[..., Any]], payload: Any) -> None:
    if callback is None:
        return
    outcome = callback(payload)
    if inspect.isawaitable(outcome):
        await outcome


class BatchExecutor:
    """
    Runs an account operation over many accounts with bounded concurrency.

    Args:
        orchestrator: Token refresh orchestrator used by the built-in operations
        chunk_delay: Pause between chunks in seconds
        sleep: Injectable sleep coroutine
    """

    def __init__(
        self,
        orchestrator: TokenRefreshOrchestrator,
        chunk_delay: float = BATCH_CHUNK_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._orchestrator = orchestrator
        self._chunk_delay = chunk_delay
        self._sleep = sleep

    async def run(
        self,
        accounts: Sequence[Account],
        operation: AccountOperation,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchSummary:
        """
        Executes `operation` for every account.

        Args:
            accounts: Accounts to process
            operation: Coroutine function producing an AccountBatchResult
            concurrency: Chunk size
            on_progress: Called with BatchProgress after each chunk
            on_result: Called with each AccountBatchResult as soon as it settles
            cancel: Stops further chunks and aborts in-flight requests

        Returns:
            BatchSummary
        """
        concurrency = max(1, concurrency)
        total = len(accounts)
        summary = BatchSummary(total=total)

        async def run_one(account: Account) -> None:
            try:
                result = await operation(account, cancel)
            except Exception as e:
                logger.warning(f"Batch operation failed for {account.email}: {e}")
                result = AccountBatchResult(
                    account_id=account.id,
                    success=False,
                    error=str(e) or type(e).__name__,
                    status=status_for_failure(e),
                )

            try:
                await _notify(on_result, result)
            except Exception as e:
                logger.error(f"Result handler failed for {account.email}: {e}")
                result = AccountBatchResult(
                    account_id=account.id,
                    success=False,
                    error=str(e) or type(e).__name__,
                )

            if result.success:
                summary.success_count += 1
            else:
                summary.failed_count += 1
                summary.errors.append((result.account_id, result.error or "Unknown error"))
            summary.completed += 1

        for start in range(0, total, concurrency):
            if cancel is not None and cancel.cancelled:
                summary.cancelled = True
                logger.info(f"Batch cancelled after {summary.completed}/{total} accounts")
                break

            chunk = accounts[start:start + concurrency]
            await asyncio.gather(*(run_one(account) for account in chunk))
            await _notify(
                on_progress,
                BatchProgress(
                    completed=summary.completed,
                    total=total,
                    success_count=summary.success_count,
                    failed_count=summary.failed_count,
                ),
            )

            if start + concurrency < total:
                await self._sleep(self._chunk_delay)

        if cancel is not None and cancel.cancelled:
            summary.cancelled = True

        logger.info(
            f"Batch finished: {summary.success_count} succeeded, "
            f"{summary.failed_count} failed, {summary.completed}/{total} processed"
        )
        return summary

    async def _refresh_one(self, account: Account, cancel: Optional[CancelToken]) -> AccountBatchResult:
        if not account.credentials.refresh_token:
            return AccountBatchResult(account_id=account.id, success=False, error="Missing refresh token")
        check = await self._orchestrator.refresh_and_probe(account, cancel)
        return AccountBatchResult(account_id=account.id, success=True, check=check)

    async def _check_one(self, account: Account, cancel: Optional[CancelToken]) -> AccountBatchResult:
        if not account.credentials.access_token:
            return AccountBatchResult(account_id=account.id, success=False, error="Missing access token")
        check = await self._orchestrator.probe_account(account, cancel)
        return AccountBatchResult(account_id=account.id, success=True, check=check)

    async def batch_refresh(
        self,
        accounts: Sequence[Account],
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchSummary:
        """Refreshes every account's token and re-reads its usage."""
        logger.info(f"Batch refresh of {len(accounts)} accounts (concurrency: {concurrency})")
        return await self.run(accounts, self._refresh_one, concurrency, on_progress, on_result, cancel)

    async def batch_check(
        self,
        accounts: Sequence[Account],
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchSummary:
        """Checks every account without refreshing (expired tokens are only flagged)."""
        logger.info(f"Batch check of {len(accounts)} accounts (concurrency: {concurrency})")
        return await self.run(accounts, self._check_one, concurrency, on_progress, on_result, cancel)

