from __future__ import annotations

from typing import Optional, Protocol, Sequence

from persistoken.logging import get_logger
from persistoken.service.errors import RotationWriteFailed
from persistoken.service.tokens import TokenGenerator
from persistoken.storage.errors import ConstraintViolation, StoreError
from persistoken.storage.models import Account, TokenFields

logger = get_logger(__name__)

DEFAULT_MAX_COLLISION_RETRIES = 3


class AccountStore(Protocol):
    def fetch_page(self, limit: int, offset: int) -> Sequence[Account]: ...

    def save(self, record: Account, fields: set[str]) -> None: ...


class TokenRotationPolicy:
    """Replace a record's persistence token and write only that field.

    ``rotate`` is the single entry point every invalidation path goes
    through: explicit forget, credential changes and the forget-all sweep.
    The write names the token field alone, so no other column and no
    session bookkeeping is touched.
    """

    def __init__(
        self,
        store: AccountStore,
        generator: TokenGenerator,
        *,
        fields: Optional[TokenFields] = None,
        max_collision_retries: int = DEFAULT_MAX_COLLISION_RETRIES,
    ) -> None:
        if max_collision_retries < 0:
            raise ValueError("max_collision_retries must not be negative")
        self.store = store
        self.generator = generator
        self.fields = fields or TokenFields()
        self.max_collision_retries = max_collision_retries
        self.logger = logger

    def rotate(self, record: Account) -> str:
        """Assign and persist a fresh token; return it.

        On any failure the record's previous token is restored before the
        error propagates.

        Raises:
            GenerationUnavailable: if no token could be produced
            RotationWriteFailed: if the store rejected the write
        """
        token_field = self.fields.token_field
        previous = getattr(record, token_field)
        collisions = 0
        try:
            while True:
                token = self.generator.generate()
                if token == previous:
                    # A token must never survive its own rotation
                    collisions += 1
                    if collisions > self.max_collision_retries:
                        raise RotationWriteFailed(
                            "generator repeated the current token",
                            detail={"record_id": record.id},
                        )
                    continue
                setattr(record, token_field, token)
                try:
                    self.store.save(record, {token_field})
                except ConstraintViolation as exc:
                    if (
                        exc.detail.get("field") == token_field
                        and collisions < self.max_collision_retries
                    ):
                        collisions += 1
                        self.logger.warning(
                            "token_collision_retry",
                            record_id=record.id,
                            attempt=collisions,
                        )
                        continue
                    self._fail(record, exc)
                except (StoreError, TimeoutError, OSError) as exc:
                    self._fail(record, exc)
                self.logger.info(
                    "token_rotated", record_id=record.id, collisions=collisions
                )
                return token
        except BaseException:
            setattr(record, token_field, previous)
            raise

    def _fail(self, record: Account, exc: Exception) -> None:
        self.logger.error(
            "token_rotation_failed",
            record_id=record.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise RotationWriteFailed(
            f"failed to persist rotated token: {exc}",
            detail={"record_id": record.id},
        ) from exc

    def forget(self, record: Account) -> str:
        """Invalidate every session resumed from this record's current token."""
        self.logger.info("record_forget", record_id=record.id)
        return self.rotate(record)

    def intercept_credential_write(self, record: Account, new_credential_value: str) -> None:
        """Rotate the token, then apply the new credential to ``record``.

        The token is rotated before the credential is assigned. If rotation
        raises, the credential is left untouched and the error propagates; the
        caller must abort the change.
        Persisting the credential itself is the caller's job.
        """
        self.rotate(record)
        setattr(record, self.fields.credential_field, new_credential_value)
