from __future__ import annotations

import dataclasses
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from persistoken.logging import get_logger
from persistoken.storage.errors import ConstraintViolation, StoreError
from persistoken.storage.models import WRITABLE_FIELDS, Account

# Columns that must be unique across accounts
_UNIQUE_FIELDS = ("email", "persistence_token")


class MemoryStore:
    """In-memory account store persisted to a JSON file under ``fs_root``.

    Records handed out are copies; callers mutate their copy and write back
    through ``save``, as they would against a database.
    """

    def __init__(self, fs_root: Optional[str] = "/tmp/persistoken") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # unique column -> value -> account id
        self._index: Dict[str, Dict[object, str]] = {name: {} for name in _UNIQUE_FIELDS}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _copy(account: Account) -> Account:
        meta = dict(account.meta) if account.meta else account.meta
        return dataclasses.replace(account, meta=meta)

    def _index_account(self, account: Account) -> None:
        for name in _UNIQUE_FIELDS:
            self._index[name][getattr(account, name)] = account.id

    def _unindex_account(self, account: Account) -> None:
        for name in _UNIQUE_FIELDS:
            value = getattr(account, name)
            if self._index[name].get(value) == account.id:
                del self._index[name][value]

    def _rebuild_index(self) -> None:
        self._index = {name: {} for name in _UNIQUE_FIELDS}
        for account in self.accounts.values():
            self._index_account(account)

    def _check_unique(self, account_id: str, values: Dict[str, object]) -> None:
        for name in _UNIQUE_FIELDS:
            if name not in values:
                continue
            owner = self._index[name].get(values[name])
            if owner is not None and owner != account_id:
                raise ConstraintViolation(f"{name} already exists", {"field": name})

    def _lookup(self, name: str, value: object) -> Optional[Account]:
        account_id = self._index[name].get(value)
        return self.accounts.get(account_id) if account_id else None

    def create_account(
        self,
        email: str,
        persistence_token: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Account:
        if not persistence_token:
            raise StoreError("persistence_token must not be empty")
        account = Account.new(
            email,
            persistence_token,
            password_hash=password_hash,
            password_algo=password_algo,
            meta=meta.copy() if meta else {},
        )
        with self._data_lock:
            self._check_unique(
                account.id, {"email": email, "persistence_token": persistence_token}
            )
            self.accounts[account.id] = account
            self._index_account(account)
            try:
                self._persist_state()
            except StoreError:
                self._unindex_account(account)
                self.accounts.pop(account.id, None)
                raise
            return self._copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._copy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._lookup("email", email)
            return self._copy(account) if account else None

    def get_account_by_persistence_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            account = self._lookup("persistence_token", token)
            return self._copy(account) if account else None

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    def fetch_page(self, limit: int, offset: int) -> List[Account]:
        """Return up to ``limit`` accounts ordered by (created_at, id)."""
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must not be negative")
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: (a.created_at, a.id))
            return [self._copy(a) for a in ordered[offset : offset + limit]]

    def save(self, record: Account, fields: Iterable[str]) -> None:
        """Persist only ``fields`` of ``record``."""
        names = set(fields)
        unknown = names - WRITABLE_FIELDS
        if unknown:
            raise StoreError(
                f"cannot write fields: {sorted(unknown)}", {"fields": sorted(unknown)}
            )
        with self._data_lock:
            stored = self.accounts.get(record.id)
            if stored is None:
                raise StoreError("account not found", {"record_id": record.id})
            values = {name: getattr(record, name) for name in names}
            if "persistence_token" in values and not values["persistence_token"]:
                raise StoreError("persistence_token must not be empty")
            self._check_unique(record.id, values)
            previous = self._copy(stored)
            self._unindex_account(stored)
            for name, value in values.items():
                setattr(stored, name, value)
            stored.updated_at = datetime.utcnow()
            self._index_account(stored)
            try:
                self._persist_state()
            except StoreError:
                self._unindex_account(stored)
                self.accounts[record.id] = previous
                self._index_account(previous)
                raise
            record.updated_at = stored.updated_at

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            removed = self.accounts.pop(account_id)
            self._unindex_account(removed)
            try:
                self._persist_state()
            except StoreError:
                self.accounts[account_id] = removed
                self._index_account(removed)
                raise
            return True

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._rebuild_index()
        self.logger.debug("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "persistence_token": account.persistence_token,
            "password_hash": account.password_hash,
            "password_algo": account.password_algo,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "meta": account.meta,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            persistence_token=data["persistence_token"],
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            meta=data.get("meta"),
        )
