"""Forget-all: rotate every persistence token in the store.

The population is walked in fixed-size offset windows so memory stays
bounded regardless of how many accounts exist. Individual rotation failures
are collected and reported once at the end instead of aborting the sweep.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from persistoken.logging import correlation_scope, get_logger
from persistoken.service.errors import BulkSweepPartialFailure
from persistoken.service.rotation import AccountStore, TokenRotationPolicy

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50


@dataclass
class SweepFailure:
    record_id: str
    error: str


@dataclass
class SweepResult:
    pages_fetched: int = 0
    rotated: int = 0
    failures: List[SweepFailure] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: float = 0.0

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def failed_ids(self) -> List[str]:
        return [failure.record_id for failure in self.failures]

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled

    def raise_for_failures(self) -> None:
        if self.failures:
            raise BulkSweepPartialFailure(
                f"{self.failed_count} token rotation(s) failed during forget-all",
                detail={"failed_count": self.failed_count, "failed_ids": self.failed_ids},
            )


class BulkInvalidator:
    """Rotate every record's token, one page at a time."""

    def __init__(
        self,
        store: AccountStore,
        policy: TokenRotationPolicy,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.store = store
        self.policy = policy
        self.page_size = page_size

    def invalidate_all(self, cancel_event: Optional[threading.Event] = None) -> SweepResult:
        """Run one sweep.

        Stops only when a fetched page is empty: a short page is not proof of
        exhaustion when the store is being written concurrently. Cancellation
        is checked between pages.
        """
        with correlation_scope():
            return self._sweep(cancel_event)

    def _sweep(self, cancel_event: Optional[threading.Event]) -> SweepResult:
        result = SweepResult()
        started = time.monotonic()
        offset = 0
        logger.info("invalidate_all_started", page_size=self.page_size)
        while True:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.warning("invalidate_all_cancelled", offset=offset)
                break
            try:
                page = self.store.fetch_page(limit=self.page_size, offset=offset)
            except Exception as exc:
                logger.error(
                    "invalidate_all_fetch_failed",
                    offset=offset,
                    rotated=result.rotated,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            result.pages_fetched += 1
            if not page:
                break
            for record in page:
                try:
                    self.policy.rotate(record)
                except Exception as exc:
                    result.failures.append(
                        SweepFailure(record_id=str(record.id), error=str(exc))
                    )
                else:
                    result.rotated += 1
            logger.debug(
                "invalidate_all_page",
                offset=offset,
                size=len(page),
                rotated=result.rotated,
                failed=result.failed_count,
            )
            offset += self.page_size
        result.duration_ms = (time.monotonic() - started) * 1000
        log = logger.warning if result.failures else logger.info
        log(
            "invalidate_all_completed",
            pages=result.pages_fetched,
            rotated=result.rotated,
            failed_count=result.failed_count,
            cancelled=result.cancelled,
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    def invalidate_all_or_raise(
        self, cancel_event: Optional[threading.Event] = None
    ) -> SweepResult:
        result = self.invalidate_all(cancel_event)
        result.raise_for_failures()
        return result


class InvalidationWorker:
    """Run a forget-all sweep on a worker thread, off the request path."""

    def __init__(self, invalidator: BulkInvalidator) -> None:
        self.invalidator = invalidator
        self._cancel = threading.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep in the background."""
        if self.running:
            logger.warning("invalidation_worker_already_running")
            return
        self._cancel.clear()
        self._task = asyncio.create_task(
            asyncio.to_thread(self.invalidator.invalidate_all, self._cancel)
        )
        logger.info("invalidation_worker_started")

    async def wait(self) -> Optional[SweepResult]:
        """Wait for the running sweep and return its result."""
        if self._task is None:
            return None
        return await self._task

    async def stop(self) -> Optional[SweepResult]:
        """Ask the sweep to stop after the current page and wait for it."""
        self._cancel.set()
        result = await self.wait()
        self._task = None
        logger.info("invalidation_worker_stopped")
        return result
