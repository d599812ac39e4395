from __future__ import annotations

import hmac
from typing import Optional, Protocol, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from persistoken.logging import get_logger
from persistoken.service.errors import AccountExistsError, RotationWriteFailed
from persistoken.service.rotation import TokenRotationPolicy
from persistoken.service.tokens import TokenGenerator
from persistoken.storage.errors import ConstraintViolation
from persistoken.storage.models import Account

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AccountRepository(Protocol):
    def create_account(
        self,
        email: str,
        persistence_token: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_persistence_token(self, token: str) -> Optional[Account]: ...

    def fetch_page(self, limit: int, offset: int) -> Sequence[Account]: ...

    def save(self, record: Account, fields: set[str]) -> None: ...

    def delete_account(self, account_id: str) -> bool: ...


class AccountService:
    """Account registration, password changes and token lookup.

    Password changes go through ``TokenRotationPolicy.intercept_credential_write``
    so the persistence token is always replaced before a new credential is
    stored.
    """

    def __init__(
        self,
        store: AccountRepository,
        generator: TokenGenerator,
        policy: TokenRotationPolicy,
        *,
        max_collision_retries: int = 3,
    ) -> None:
        self.store = store
        self.generator = generator
        self.policy = policy
        self.max_collision_retries = max_collision_retries
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def register(
        self, email: str, password: Optional[str] = None, *, meta: Optional[dict] = None
    ) -> Account:
        """Create an account carrying its initial persistence token."""
        pwd_hash = self._pwd_hasher.hash(password) if password else None
        algo = PASSWORD_ALGO if password else None
        attempts = 0
        while True:
            token = self.generator.generate()
            try:
                account = self.store.create_account(
                    email,
                    token,
                    password_hash=pwd_hash,
                    password_algo=algo,
                    meta=meta,
                )
            except ConstraintViolation as exc:
                field = exc.detail.get("field")
                if field == "email":
                    raise AccountExistsError(
                        "account already exists", detail={"field": "email"}
                    ) from exc
                if field == "persistence_token" and attempts < self.max_collision_retries:
                    attempts += 1
                    self.logger.warning("register_token_collision_retry", attempt=attempts)
                    continue
                raise
            self.logger.info("account_registered", account_id=account.id)
            return account

    def change_password(self, account: Account, new_password: str) -> None:
        """Rotate the token, then store the new password hash.

        Raises:
            RotationWriteFailed: the token could not be rotated; the password
                is left unchanged
        """
        credential_field = self.policy.fields.credential_field
        old_hash = getattr(account, credential_field)
        old_algo = account.password_algo
        digest = self._pwd_hasher.hash(new_password)
        try:
            self.policy.intercept_credential_write(account, digest)
        except RotationWriteFailed:
            self.logger.warning("password_change_aborted", account_id=account.id)
            raise
        account.password_algo = PASSWORD_ALGO
        try:
            self.store.save(account, {credential_field, "password_algo"})
        except Exception:
            # The token has already moved on; only the credential is rolled back
            setattr(account, credential_field, old_hash)
            account.password_algo = old_algo
            self.logger.error("password_save_failed", account_id=account.id)
            raise
        self.logger.info("password_changed", account_id=account.id)

    def verify_password(self, account: Account, password: str) -> bool:
        stored_hash = getattr(account, self.policy.fields.credential_field)
        if not stored_hash or account.password_algo != PASSWORD_ALGO:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", account_id=account.id)
            return False

    def forget(self, account: Account) -> str:
        return self.policy.forget(account)

    def find_by_persistence_token(self, token: Optional[str]) -> Optional[Account]:
        """Resolve a presented persistence token to its account, if still live."""
        if not token:
            return None
        account = self.store.get_account_by_persistence_token(token)
        if account is None:
            return None
        current = getattr(account, self.policy.fields.token_field)
        # SECURITY: constant-time comparison on the stored value
        if not current or not hmac.compare_digest(current, token):
            return None
        return account
