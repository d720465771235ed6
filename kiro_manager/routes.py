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
FastAPI routes for Kiro Account Manager.

Contains the endpoints used by the desktop UI:
- / and /health: Health check
- /accounts: Listing, adding, refreshing, checking and deleting accounts
- /accounts/batch/*: Batch refresh and check
- /login/*: Device and social logins
- /groups, /tags, /settings, /import, /export, /stats
"""

import secrets
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from loguru import logger
from pydantic import BaseModel, Field

from kiro_manager.batch import BatchProgress
from kiro_manager.config import APP_NAME, APP_VERSION
from kiro_manager.errors import KiroManagerError
from kiro_manager.models import AuthMethod, Credentials, OperationResult, Provider
from kiro_manager.service import AccountService


# --- Request bodies ---

class AddAccountRequest(BaseModel):
    refresh_token: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    region: str = "us-east-1"
    auth_method: AuthMethod = AuthMethod.IDC
    provider: Optional[Provider] = None
    nickname: Optional[str] = None
    group_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class BatchRequest(BaseModel):
    account_ids: Optional[List[str]] = None
    concurrency: Optional[int] = Field(default=None, ge=1, le=100)


class AccountIdsRequest(BaseModel):
    account_ids: List[str] = Field(min_length=1)


class SsoImportRequest(BaseModel):
    bearer_token: str = Field(min_length=1)
    region: str = "us-east-1"


class DeviceLoginRequest(BaseModel):
    region: Optional[str] = None


class SocialLoginRequest(BaseModel):
    provider: Provider


class SocialExchangeRequest(BaseModel):
    code: str
    state: str


class CallbackRequest(BaseModel):
    url: str


class GroupRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None


class TagRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class MoveToGroupRequest(BaseModel):
    account_ids: List[str]
    group_id: Optional[str] = None


class TagAccountsRequest(BaseModel):
    account_ids: List[str]
    tag_id: str


class ProxyRequest(BaseModel):
    enabled: bool
    url: str = ""


class SettingsRequest(BaseModel):
    auto_refresh_enabled: Optional[bool] = None
    auto_refresh_interval: Optional[int] = Field(default=None, ge=1)
    auto_refresh_concurrency: Optional[int] = Field(default=None, ge=1, le=100)
    status_check_interval: Optional[int] = Field(default=None, ge=1)
    auto_switch_enabled: Optional[bool] = None
    auto_switch_threshold: Optional[float] = Field(default=None, ge=0)
    auto_switch_interval: Optional[int] = Field(default=None, ge=1)


# --- Security scheme ---
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


async def verify_api_key(request: Request, auth_header: Optional[str] = Security(api_key_header)) -> bool:
    """
    Verify the local API key when one is configured.

    Expects format: "Bearer {MANAGER_API_KEY}"

    Raises:
        HTTPException: 401 if key is invalid or missing
    """
    expected = request.app.state.settings.api_key
    if not expected:
        return True
    if not auth_header or not secrets.compare_digest(auth_header, f"Bearer {expected}"):
        logger.warning("Access attempt with invalid API key.")
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return True


def get_service(request: Request) -> AccountService:
    return request.app.state.service


def _respond(result: OperationResult, failure_status: int = 400) -> JSONResponse:
    status_code = 200 if result.success else failure_status
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def _log_progress(operation: str):
    def log(progress: BatchProgress) -> None:
        logger.info(
            f"{operation} progress: {progress.completed}/{progress.total} "
            f"({progress.success_count} ok, {progress.failed_count} failed)"
        )
    return log


# --- Router ---
router = APIRouter()
protected = APIRouter(dependencies=[Depends(verify_api_key)])


@router.get("/")
async def root():
    return {"status": "ok", "message": f"{APP_NAME} is running", "version": APP_VERSION}


@router.get("/health")
async def health(request: Request):
    """
    Health check endpoint.

    Returns:
        Status and number of stored accounts
    """
    service: AccountService = request.app.state.service
    return {"status": "healthy", "accounts": len(service.store.list_accounts()), "version": APP_VERSION}


# --- Accounts ---

@protected.get("/accounts")
async def list_accounts(service: AccountService = Depends(get_service)):
    return {"accounts": service.list_accounts(), "activeAccountId": service.store.snapshot.active_account_id}


@protected.get("/accounts/{account_id}")
async def get_account(account_id: str, service: AccountService = Depends(get_service)):
    account = service.store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account.to_document()


@protected.post("/accounts")
async def add_account(payload: AddAccountRequest, service: AccountService = Depends(get_service)):
    credentials = Credentials(
        refresh_token=payload.refresh_token,
        client_id=payload.client_id,
        client_secret=payload.client_secret,
        region=payload.region,
        auth_method=payload.auth_method,
        provider=payload.provider or (Provider.BUILDER_ID if payload.auth_method is AuthMethod.IDC else None),
    )
    result = await service.add_account_from_credentials(
        credentials, nickname=payload.nickname, group_id=payload.group_id, tags=payload.tags
    )
    return _respond(result)


@protected.post("/accounts/import-local")
async def import_local_account(service: AccountService = Depends(get_service)):
    return _respond(await service.import_local_credentials())


@protected.post("/accounts/delete")
async def delete_accounts(payload: AccountIdsRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.delete_accounts(payload.account_ids))


@protected.post("/accounts/batch/refresh")
async def batch_refresh(payload: BatchRequest, service: AccountService = Depends(get_service)):
    result = await service.batch_refresh(
        payload.account_ids, payload.concurrency, on_progress=_log_progress("Batch refresh")
    )
    return _respond(result, failure_status=500)


@protected.post("/accounts/batch/check")
async def batch_check(payload: BatchRequest, service: AccountService = Depends(get_service)):
    result = await service.batch_check(
        payload.account_ids, payload.concurrency, on_progress=_log_progress("Batch check")
    )
    return _respond(result, failure_status=500)


@protected.post("/accounts/{account_id}/refresh")
async def refresh_account(account_id: str, service: AccountService = Depends(get_service)):
    return _respond(await service.refresh_account(account_id))


@protected.post("/accounts/{account_id}/check")
async def check_account(account_id: str, service: AccountService = Depends(get_service)):
    return _respond(await service.check_account_status(account_id))


@protected.post("/accounts/{account_id}/switch")
async def switch_account(account_id: str, service: AccountService = Depends(get_service)):
    return _respond(service.switch_account(account_id))


# --- Login ---

@protected.post("/import/sso-token")
async def import_sso_token(payload: SsoImportRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.import_from_sso_token(payload.bearer_token, payload.region))


@protected.post("/login/device/start")
async def start_device_login(payload: DeviceLoginRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.start_device_login(payload.region))


@protected.post("/login/device/poll")
async def poll_device_login(payload: DeviceLoginRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.poll_device_login(payload.region))


@protected.post("/login/social/start")
async def start_social_login(payload: SocialLoginRequest, service: AccountService = Depends(get_service)):
    return _respond(service.start_social_login(payload.provider))


@protected.post("/login/social/exchange")
async def exchange_social_token(payload: SocialExchangeRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.exchange_social_token(payload.code, payload.state))


@protected.post("/login/social/callback")
async def social_callback(payload: CallbackRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.handle_callback_url(payload.url))


@protected.post("/login/cancel")
async def cancel_login(service: AccountService = Depends(get_service)):
    return _respond(service.cancel_login())


# --- Groups and tags ---

@protected.post("/groups")
async def create_group(payload: GroupRequest, service: AccountService = Depends(get_service)):
    if not payload.name:
        raise HTTPException(status_code=422, detail="Group name is required")
    return service.store.add_group(payload.name, payload.color, payload.description).to_document()


@protected.patch("/groups/{group_id}")
async def update_group(group_id: str, payload: GroupRequest, service: AccountService = Depends(get_service)):
    try:
        group = service.store.update_group(group_id, **payload.model_dump())
    except KiroManagerError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return group.to_document()


@protected.delete("/groups/{group_id}")
async def delete_group(group_id: str, service: AccountService = Depends(get_service)):
    if not service.store.remove_group(group_id):
        raise HTTPException(status_code=404, detail="Group not found")
    return {"success": True}


@protected.post("/groups/move")
async def move_to_group(payload: MoveToGroupRequest, service: AccountService = Depends(get_service)):
    try:
        moved = service.store.move_accounts_to_group(payload.account_ids, payload.group_id)
    except KiroManagerError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"success": True, "moved": moved}


@protected.post("/tags")
async def create_tag(payload: TagRequest, service: AccountService = Depends(get_service)):
    if not payload.name:
        raise HTTPException(status_code=422, detail="Tag name is required")
    return service.store.add_tag(payload.name, payload.color).to_document()


@protected.patch("/tags/{tag_id}")
async def update_tag(tag_id: str, payload: TagRequest, service: AccountService = Depends(get_service)):
    try:
        tag = service.store.update_tag(tag_id, **payload.model_dump())
    except KiroManagerError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return tag.to_document()


@protected.delete("/tags/{tag_id}")
async def delete_tag(tag_id: str, service: AccountService = Depends(get_service)):
    if not service.store.remove_tag(tag_id):
        raise HTTPException(status_code=404, detail="Tag not found")
    return {"success": True}


@protected.post("/tags/assign")
async def assign_tag(payload: TagAccountsRequest, service: AccountService = Depends(get_service)):
    try:
        changed = service.store.add_tag_to_accounts(payload.account_ids, payload.tag_id)
    except KiroManagerError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"success": True, "changed": changed}


@protected.post("/tags/unassign")
async def unassign_tag(payload: TagAccountsRequest, service: AccountService = Depends(get_service)):
    changed = service.store.remove_tag_from_accounts(payload.account_ids, payload.tag_id)
    return {"success": True, "changed": changed}


# --- Settings, import/export, stats ---

@protected.get("/settings")
async def get_settings(service: AccountService = Depends(get_service)):
    return service.store.settings.to_document()


@protected.patch("/settings")
async def update_settings(payload: SettingsRequest, service: AccountService = Depends(get_service)):
    return service.store.update_settings(**payload.model_dump()).to_document()


@protected.put("/settings/proxy")
async def set_proxy(payload: ProxyRequest, service: AccountService = Depends(get_service)):
    return _respond(await service.set_proxy(payload.enabled, payload.url))


@protected.get("/export")
async def export_accounts(service: AccountService = Depends(get_service)):
    return service.export_accounts()


@protected.post("/import")
async def import_accounts(payload: Dict[str, Any], service: AccountService = Depends(get_service)):
    return _respond(service.import_accounts(payload))


@protected.get("/stats")
async def stats(service: AccountService = Depends(get_service)):
    return service.get_stats()


router.include_router(protected)
