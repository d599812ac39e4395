from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from persistoken.config import Settings, get_settings, reset_settings_cache
from persistoken.logging import get_logger
from persistoken.service.accounts import AccountService
from persistoken.service.invalidation import BulkInvalidator
from persistoken.service.rotation import TokenRotationPolicy
from persistoken.service.tokens import TokenGenerator
from persistoken.storage.memory import MemoryStore
from persistoken.storage.models import TokenFields
from persistoken.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:hunter2@db/app -> postgresql://app:***@db/app
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store and token services built from one ``Settings``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info("runtime_init_started", store_type=store_type)

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.fields = TokenFields(
            token_field=self.settings.token_field,
            credential_field=self.settings.credential_field,
        )
        self.generator = TokenGenerator(
            self.settings.crypto_provider,
            random_draw_count=self.settings.random_draw_count,
            aes_key=self.settings.aes_key,
        )
        self.rotation = TokenRotationPolicy(
            self.store,
            self.generator,
            fields=self.fields,
            max_collision_retries=self.settings.max_collision_retries,
        )
        self.invalidator = BulkInvalidator(
            self.store, self.rotation, page_size=self.settings.page_size
        )
        self.accounts = AccountService(
            self.store,
            self.generator,
            self.rotation,
            max_collision_retries=self.settings.max_collision_retries,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            crypto_provider=type(self.generator.provider).__name__,
            page_size=self.settings.page_size,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()
