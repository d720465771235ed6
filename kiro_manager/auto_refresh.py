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

"""Background refresh of expiring tokens and optional auto switch."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from kiro_manager.http_client import CancelToken
from kiro_manager.service import AccountService


class AutoRefreshTask:
    """
    Periodically refreshes accounts whose tokens expire soon.

    The interval and the on/off switch are read from the store settings on
    every cycle, so changes apply without a restart.
    """

    def __init__(
        self,
        service: AccountService,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._service = service
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._cancel = CancelToken()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        settings = self._service.store.settings
        if settings.auto_refresh_enabled:
            result = await self._service.refresh_expiring_accounts(self._cancel)
            if not result.success:
                logger.warning(f"Auto refresh failed: {result.error}")
        if settings.auto_switch_enabled:
            await self._service.auto_switch_if_needed()

    async def _run(self) -> None:
        logger.info("Auto refresh started")
        while not self._cancel.cancelled:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Auto refresh cycle failed")
            interval_minutes = max(1, self._service.store.settings.auto_refresh_interval)
            await self._sleep(interval_minutes * 60)

    def start(self) -> None:
        if self.running:
            return
        self._cancel = CancelToken()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._cancel.cancel()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Auto refresh stopped")
