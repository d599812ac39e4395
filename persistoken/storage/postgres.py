from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from persistoken.logging import get_logger
from persistoken.storage.errors import ConstraintViolation, StoreError
from persistoken.storage.models import WRITABLE_FIELDS, Account

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    persistence_token TEXT NOT NULL UNIQUE CHECK (persistence_token <> ''),
    password_hash TEXT,
    password_algo TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ,
    meta JSONB
)
"""

# Backs the (created_at, id) ordering used by fetch_page
_PAGE_INDEX = """
CREATE INDEX IF NOT EXISTS account_created_at_id_idx ON account (created_at, id)
"""


def _violated_field(exc: errors.UniqueViolation) -> Optional[str]:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for name in ("persistence_token", "email"):
        if name in constraint:
            return name
    return None


class PostgresStore:
    """Postgres-backed account store on a psycopg connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(
                f"{field or 'value'} already exists", {"field": field}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(f"{operation} failed: {exc}") from exc

    def _ensure_schema(self) -> None:
        """Create the ``account`` table and its paging index if missing."""

        with self._translate_errors("ensure_schema"), self._connect() as conn:
            conn.execute(_SCHEMA)
            conn.execute(_PAGE_INDEX)

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            persistence_token=row["persistence_token"],
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at"),
            meta=meta,
        )

    def create_account(
        self,
        email: str,
        persistence_token: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Account:
        if not persistence_token:
            raise StoreError("persistence_token must not be empty")
        account_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        with self._translate_errors("create_account"), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO account (id, email, persistence_token, password_hash, password_algo, meta)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    account_id,
                    email,
                    persistence_token,
                    password_hash,
                    password_algo,
                    json.dumps(normalized_meta),
                ),
            ).fetchone()
        return self._row_to_account(row)

    def _get_one(self, operation: str, column: str, value: Any) -> Optional[Account]:
        query = sql.SQL("SELECT * FROM account WHERE {} = %s").format(sql.Identifier(column))
        with self._translate_errors(operation), self._connect() as conn:
            row = conn.execute(query, (value,)).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._get_one("get_account", "id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._get_one("get_account_by_email", "email", email)

    def get_account_by_persistence_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._get_one("get_account_by_persistence_token", "persistence_token", token)

    def count_accounts(self) -> int:
        with self._translate_errors("count_accounts"), self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM account").fetchone()
        return int(row["total"]) if row else 0

    def fetch_page(self, limit: int, offset: int) -> List[Account]:
        """Return up to ``limit`` accounts ordered by (created_at, id)."""
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must not be negative")
        with self._translate_errors("fetch_page"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at, id LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def save(self, record: Account, fields: Iterable[str]) -> None:
        """Persist only ``fields`` of ``record`` in a single UPDATE."""
        names = sorted(set(fields))
        unknown = set(names) - WRITABLE_FIELDS
        if unknown:
            raise StoreError(
                f"cannot write fields: {sorted(unknown)}", {"fields": sorted(unknown)}
            )
        if not names:
            return
        values: List[Any] = []
        for name in names:
            value = getattr(record, name)
            if name == "meta":
                value = json.dumps(value) if value is not None else None
            values.append(value)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in names
        )
        query = sql.SQL(
            "UPDATE account SET {}, updated_at = now() WHERE id = %s RETURNING updated_at"
        ).format(assignments)
        with self._translate_errors("save"), self._connect() as conn:
            row = conn.execute(query, (*values, record.id)).fetchone()
        if not row:
            raise StoreError("account not found", {"record_id": record.id})
        record.updated_at = row["updated_at"]

    def delete_account(self, account_id: str) -> bool:
        with self._translate_errors("delete_account"), self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    def close(self) -> None:
        self.pool.close()
