# -*- coding: utf-8 -*-

"""
JSON file store for accounts, groups, tags and settings.

The whole snapshot is written on every mutation: first the primary file,
then a backup copy, both with write-then-rename. The last saved document
is kept in memory so it can be written again at process exit.
"""

from __future__ import annotations

import atexit
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import ValidationError

from kiro_manager.config import (
    BACKUP_FILE_NAME,
    STORE_FILE_NAME,
    STORE_VERSION,
    get_store_dir,
)
from kiro_manager.errors import KiroManagerError, StorageError
from kiro_manager.models import Account, Group, Settings, StoreSnapshot, Tag


def _atomic_write_json(path: Path, document: Dict[str, Any]) -> None:
    """
    Writes JSON to a temp file next to `path`, then renames it over `path`.

    Raises:
        OSError: On file system errors.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with temp_path.open("w", encoding="utf-8") as f:
        json.dump(document, f, indent=2, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp_path, path)


def _read_json_document(path: Path) -> Optional[Dict[str, Any]]:
    """Returns the parsed JSON object at `path`, or None if missing or unreadable."""
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: root is not an object")
        return None
    return data


def _has_accounts(document: Optional[Dict[str, Any]]) -> bool:
    return document is not None and isinstance(document.get("accounts"), (list, dict))


def _records(raw: Any) -> List[Dict[str, Any]]:
    """Accepts both list and id-keyed object layouts."""
    if isinstance(raw, dict):
        return [value for value in raw.values() if isinstance(value, dict)]
    if isinstance(raw, list):
        return [value for value in raw if isinstance(value, dict)]
    return []


class CredentialStore:
    """
    Persisted multi-account store.

    Every mutating method saves the snapshot before returning. Writes are
    whole-snapshot replacements (last writer wins).

    Example:
        >>> store = CredentialStore(Path("~/.kiro-account-manager").expanduser())
        >>> store.load()
        >>> store.put_account(account)
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        file_name: str = STORE_FILE_NAME,
        backup_name: str = BACKUP_FILE_NAME,
    ):
        self.data_dir = Path(data_dir) if data_dir is not None else get_store_dir()
        self.path = self.data_dir / file_name
        self.backup_path = self.data_dir / backup_name
        self._snapshot = StoreSnapshot()
        self._last_saved: Optional[Dict[str, Any]] = None
        self._shutdown_hook_installed = False

    @property
    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    @property
    def settings(self) -> Settings:
        return self._snapshot.settings

    # ==============================================================================================
    # Load / save
    # ==============================================================================================

    def load(self) -> StoreSnapshot:
        """
        Loads the snapshot from disk.

        Falls back to the backup copy when the primary file is missing,
        unparsable or has no `accounts` field, and rewrites the primary from
        it. Starts empty when neither is usable.

        Returns:
            Loaded StoreSnapshot
        """
        document = _read_json_document(self.path)
        restored = False

        if not _has_accounts(document):
            backup = _read_json_document(self.backup_path)
            if _has_accounts(backup):
                logger.warning(f"Account store {self.path} missing or corrupt, restoring from backup")
                document = backup
                restored = True

        if document is None:
            logger.info(f"No account store at {self.path}, starting empty")
            self._snapshot = StoreSnapshot()
            return self._snapshot

        self._snapshot = self._parse_document(document)
        logger.info(
            f"Loaded {len(self._snapshot.accounts)} accounts, {len(self._snapshot.groups)} groups, "
            f"{len(self._snapshot.tags)} tags"
        )
        if restored:
            self.save()
        return self._snapshot

    @staticmethod
    def _parse_document(document: Dict[str, Any]) -> StoreSnapshot:
        snapshot = StoreSnapshot()

        for raw in _records(document.get("groups")):
            try:
                group = Group.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid group record: {e.error_count()} errors")
                continue
            snapshot.groups[group.id] = group

        for raw in _records(document.get("tags")):
            try:
                tag = Tag.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid tag record: {e.error_count()} errors")
                continue
            snapshot.tags[tag.id] = tag

        for raw in _records(document.get("accounts")):
            try:
                account = Account.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid account record {raw.get('id')}: {e.error_count()} errors")
                continue
            # Dangling references load as ungrouped / untagged
            if account.group_id is not None and account.group_id not in snapshot.groups:
                account.group_id = None
            account.tags = [tag_id for tag_id in dict.fromkeys(account.tags) if tag_id in snapshot.tags]
            snapshot.accounts[account.id] = account

        active_id = document.get("activeAccountId")
        snapshot.active_account_id = active_id if active_id in snapshot.accounts else None

        raw_settings = document.get("settings")
        if isinstance(raw_settings, dict):
            try:
                snapshot.settings = Settings.model_validate(raw_settings)
            except ValidationError as e:
                logger.warning(f"Invalid settings in account store, using defaults: {e.error_count()} errors")
        return snapshot

    def to_document(self) -> Dict[str, Any]:
        """Serializes the snapshot to the persisted layout."""
        snapshot = self._snapshot
        return {
            "version": STORE_VERSION,
            "accounts": [account.to_document() for account in snapshot.accounts.values()],
            "groups": [group.to_document() for group in snapshot.groups.values()],
            "tags": [tag.to_document() for tag in snapshot.tags.values()],
            "activeAccountId": snapshot.active_account_id,
            "settings": snapshot.settings.to_document(),
        }

    def save(self) -> None:
        """
        Writes the primary file and the backup copy.

        Raises:
            StorageError: If the primary file cannot be written
        """
        document = self.to_document()
        try:
            _atomic_write_json(self.path, document)
        except OSError as e:
            logger.error(f"Failed to save account store to {self.path}: {e}")
            raise StorageError(f"Failed to save accounts: {e}") from e
        self._last_saved = document

        try:
            _atomic_write_json(self.backup_path, document)
        except OSError as e:
            logger.warning(f"Failed to write account store backup {self.backup_path}: {e}")
        logger.debug(f"Account store saved ({len(document['accounts'])} accounts)")

    def flush(self) -> bool:
        """
        Best-effort re-write of the last saved snapshot.

        Called at process exit. Completion is not guaranteed if the process is
        killed; the write-then-rename in save() keeps the files consistent
        either way.

        Returns:
            True if the snapshot was written
        """
        if self._last_saved is None:
            return False
        try:
            _atomic_write_json(self.path, self._last_saved)
            _atomic_write_json(self.backup_path, self._last_saved)
        except OSError as e:
            logger.error(f"Failed to flush account store on exit: {e}")
            return False
        logger.info("Account store flushed")
        return True

    def install_shutdown_hook(self) -> None:
        if not self._shutdown_hook_installed:
            atexit.register(self.flush)
            self._shutdown_hook_installed = True

    # ==============================================================================================
    # Accounts
    # ==============================================================================================

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._snapshot.accounts.get(account_id)

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise KiroManagerError(f"Account not found: {account_id}")
        return account

    def list_accounts(self) -> List[Account]:
        return list(self._snapshot.accounts.values())

    def put_account(self, account: Account) -> Account:
        """Inserts or replaces an account and saves."""
        self._snapshot.accounts[account.id] = account
        self.save()
        return account

    def put_accounts(self, accounts: Iterable[Account]) -> None:
        for account in accounts:
            self._snapshot.accounts[account.id] = account
        self.save()

    def remove_account(self, account_id: str) -> bool:
        return self.remove_accounts([account_id]) == 1

    def remove_accounts(self, account_ids: Iterable[str]) -> int:
        removed = 0
        for account_id in account_ids:
            if self._snapshot.accounts.pop(account_id, None) is not None:
                removed += 1
                if self._snapshot.active_account_id == account_id:
                    self._snapshot.active_account_id = None
        if removed:
            self.save()
        return removed

    @property
    def active_account(self) -> Optional[Account]:
        active_id = self._snapshot.active_account_id
        return self._snapshot.accounts.get(active_id) if active_id else None

    def set_active_account(self, account_id: Optional[str]) -> None:
        if account_id is not None:
            self.require_account(account_id)
        self._snapshot.active_account_id = account_id
        self.save()

    # ==============================================================================================
    # Groups
    # ==============================================================================================

    def add_group(self, name: str, color: Optional[str] = None, description: Optional[str] = None) -> Group:
        group = Group(name=name, color=color, description=description, order=len(self._snapshot.groups))
        self._snapshot.groups[group.id] = group
        self.save()
        return group

    def update_group(self, group_id: str, **changes: Any) -> Group:
        group = self._snapshot.groups.get(group_id)
        if group is None:
            raise KiroManagerError(f"Group not found: {group_id}")
        updated = group.model_copy(update={key: value for key, value in changes.items() if value is not None})
        self._snapshot.groups[group_id] = updated
        self.save()
        return updated

    def remove_group(self, group_id: str) -> bool:
        """Deletes a group and ungroups its accounts (accounts are kept)."""
        if self._snapshot.groups.pop(group_id, None) is None:
            return False
        for account in self._snapshot.accounts.values():
            if account.group_id == group_id:
                account.group_id = None
        self.save()
        return True

    def move_accounts_to_group(self, account_ids: Iterable[str], group_id: Optional[str]) -> int:
        if group_id is not None and group_id not in self._snapshot.groups:
            raise KiroManagerError(f"Group not found: {group_id}")
        moved = 0
        for account_id in account_ids:
            account = self._snapshot.accounts.get(account_id)
            if account is not None:
                account.group_id = group_id
                moved += 1
        self.save()
        return moved

    # ==============================================================================================
    # Tags
    # ==============================================================================================

    def add_tag(self, name: str, color: Optional[str] = None) -> Tag:
        tag = Tag(name=name, color=color)
        self._snapshot.tags[tag.id] = tag
        self.save()
        return tag

    def update_tag(self, tag_id: str, **changes: Any) -> Tag:
        tag = self._snapshot.tags.get(tag_id)
        if tag is None:
            raise KiroManagerError(f"Tag not found: {tag_id}")
        updated = tag.model_copy(update={key: value for key, value in changes.items() if value is not None})
        self._snapshot.tags[tag_id] = updated
        self.save()
        return updated

    def remove_tag(self, tag_id: str) -> bool:
        """Deletes a tag and removes it from every account."""
        if self._snapshot.tags.pop(tag_id, None) is None:
            return False
        for account in self._snapshot.accounts.values():
            if tag_id in account.tags:
                account.tags = [existing for existing in account.tags if existing != tag_id]
        self.save()
        return True

    def add_tag_to_accounts(self, account_ids: Iterable[str], tag_id: str) -> int:
        if tag_id not in self._snapshot.tags:
            raise KiroManagerError(f"Tag not found: {tag_id}")
        changed = 0
        for account_id in account_ids:
            account = self._snapshot.accounts.get(account_id)
            if account is not None and tag_id not in account.tags:
                account.tags = account.tags + [tag_id]
                changed += 1
        self.save()
        return changed

    def remove_tag_from_accounts(self, account_ids: Iterable[str], tag_id: str) -> int:
        changed = 0
        for account_id in account_ids:
            account = self._snapshot.accounts.get(account_id)
            if account is not None and tag_id in account.tags:
                account.tags = [existing for existing in account.tags if existing != tag_id]
                changed += 1
        self.save()
        return changed

    # ==============================================================================================
    # Settings
    # ==============================================================================================

    def update_settings(self, **changes: Any) -> Settings:
        settings = self._snapshot.settings.model_copy(
            update={key: value for key, value in changes.items() if value is not None}
        )
        self._snapshot.settings = settings
        self.save()
        return settings
