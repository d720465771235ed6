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
Kiro Account Manager - local API for the account manager UI.

Application entry point. Loads settings, opens the credential store and
serves the account routes.

Usage:
    uvicorn kiro_manager.main:app --host 127.0.0.1 --port 8765
    or directly:
    python -m kiro_manager.main
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from kiro_manager.auto_refresh import AutoRefreshTask
from kiro_manager.config import APP_NAME, APP_VERSION
from kiro_manager.http_client import HttpClientConfig, KiroHttpClient
from kiro_manager.routes import router
from kiro_manager.service import AccountService
from kiro_manager.store import CredentialStore


@dataclass(frozen=True)
class ServerSettings:
    """
    Runtime settings of the local API server.

    Attributes:
        host: Interface to bind.
        port: Port to bind.
        api_key: Optional key expected in the Authorization header. Empty disables the check.
        data_dir: Directory of the account store, None for the default.
        proxy_url: Proxy applied on startup when the stored settings have none.
        auto_refresh: Whether the background refresh task starts with the server.
    """

    host: str
    port: int
    api_key: str
    data_dir: Optional[Path]
    proxy_url: Optional[str]
    auto_refresh: bool


def load_server_settings() -> ServerSettings:
    """
    Load and validate server settings from environment.

    Optional env vars:
    - SERVER_HOST (default: 127.0.0.1)
    - SERVER_PORT (default: 8765)
    - MANAGER_API_KEY
    - KIRO_MANAGER_DATA_DIR
    - KIRO_MANAGER_PROXY, KIRO_MANAGER_PROXY_ENABLED
    - AUTO_REFRESH_ON_STARTUP (default: true)

    Raises:
        ValueError: If a value is invalid.
    """
    host = os.getenv("SERVER_HOST", "127.0.0.1").strip() or "127.0.0.1"
    port_raw = os.getenv("SERVER_PORT", "8765").strip()
    try:
        port = int(port_raw)
    except ValueError as error:
        raise ValueError("SERVER_PORT must be an integer") from error
    if not 0 < port < 65536:
        raise ValueError("SERVER_PORT must be between 1 and 65535")

    proxy_url = os.getenv("KIRO_MANAGER_PROXY", "").strip()
    proxy_enabled = os.getenv("KIRO_MANAGER_PROXY_ENABLED", "true" if proxy_url else "false").lower()
    if proxy_url and not proxy_url.startswith(("http://", "https://", "socks5://")):
        raise ValueError("KIRO_MANAGER_PROXY must start with http://, https:// or socks5://")

    data_dir = os.getenv("KIRO_MANAGER_DATA_DIR", "").strip()

    return ServerSettings(
        host=host,
        port=port,
        api_key=os.getenv("MANAGER_API_KEY", "").strip(),
        data_dir=Path(data_dir).expanduser() if data_dir else None,
        proxy_url=proxy_url if proxy_url and proxy_enabled in ("true", "1", "yes") else None,
        auto_refresh=os.getenv("AUTO_REFRESH_ON_STARTUP", "true").lower() in ("true", "1", "yes"),
    )


def build_service(settings: ServerSettings) -> AccountService:
    """Opens the store and builds the account service."""
    store = CredentialStore(settings.data_dir)
    store.load()
    store.install_shutdown_hook()
    http = KiroHttpClient(HttpClientConfig(proxy_url=settings.proxy_url))
    return AccountService(store, http)


def create_app(service_factory: Optional[Callable[[ServerSettings], AccountService]] = None) -> FastAPI:
    """
    Create FastAPI application instance.

    Args:
        service_factory: Builds the AccountService from settings (build_service when omitted).

    Returns:
        Configured FastAPI app.
    """
    factory = service_factory or build_service

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        """Open the store on startup, flush it on shutdown."""
        try:
            settings = load_server_settings()
        except ValueError as error:
            logger.error(f"Configuration error: {error}")
            raise RuntimeError(f"Invalid configuration: {error}") from error

        service = factory(settings)
        await service.apply_stored_settings()
        service.sync_local_active_account()

        application.state.settings = settings
        application.state.service = service
        application.state.auto_refresh = AutoRefreshTask(service)
        if settings.auto_refresh:
            application.state.auto_refresh.start()

        logger.info(f"{APP_NAME} started with {len(service.store.list_accounts())} accounts")
        yield

        logger.info("Shutting down...")
        await application.state.auto_refresh.stop()
        await service.aclose()
        service.store.flush()

    app = FastAPI(
        title=APP_NAME,
        description="Local API for managing Kiro IDE accounts and their credentials.",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    server_settings = load_server_settings()
    logger.info(f"Starting server on http://{server_settings.host}:{server_settings.port}")
    uvicorn.run(app, host=server_settings.host, port=server_settings.port)
