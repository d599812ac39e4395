from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class Account:
    id: str
    email: str
    persistence_token: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        email: str,
        persistence_token: str,
        *,
        password_hash: str | None = None,
        password_algo: str | None = None,
        meta: Dict | None = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            persistence_token=persistence_token,
            password_hash=password_hash,
            password_algo=password_algo,
            meta=meta,
        )


# Columns a caller may name in ``save(record, fields)``
WRITABLE_FIELDS = frozenset(
    {"email", "persistence_token", "password_hash", "password_algo", "meta"}
)

# Columns sized and indexed to hold a persistence token
TOKEN_FIELDS = frozenset({"persistence_token"})


@dataclass(frozen=True)
class TokenFields:
    """Names of the record attributes holding the token and the credential."""

    token_field: str = "persistence_token"
    credential_field: str = "password_hash"

    def __post_init__(self) -> None:
        if self.token_field not in TOKEN_FIELDS:
            raise ValueError(f"{self.token_field!r} is not a token column")
        if self.credential_field not in WRITABLE_FIELDS:
            raise ValueError(f"{self.credential_field!r} is not a writable account field")
        if self.token_field == self.credential_field:
            raise ValueError("token and credential fields must differ")
