"""Tests for the forget-all sweep.

Tests for:
- Page fetch counts and termination on an empty page
- Best-effort handling of individual rotation failures
- Permanent invalidity of rotated-away tokens
- Cancellation and the background worker
"""

import asyncio
import math
import threading

import pytest

from persistoken.logging import correlation_id_var, get_correlation_id
from persistoken.service.errors import BulkSweepPartialFailure
from persistoken.service.invalidation import (
    BulkInvalidator,
    InvalidationWorker,
    SweepResult,
)
from persistoken.service.rotation import TokenRotationPolicy
from persistoken.storage.errors import StoreError
from persistoken.storage.models import Account


class CountingStore:
    """Wraps a MemoryStore and records every page fetch."""

    def __init__(self, inner, on_fetch=None):
        self.inner = inner
        self.page_sizes = []
        self.on_fetch = on_fetch

    def fetch_page(self, limit, offset):
        page = self.inner.fetch_page(limit, offset)
        self.page_sizes.append(len(page))
        if self.on_fetch:
            self.on_fetch(len(self.page_sizes))
        return page

    def save(self, record, fields):
        self.inner.save(record, fields)


class FailingStore(CountingStore):
    """Fails the token write for the given record ids."""

    def __init__(self, inner, failing_ids):
        super().__init__(inner)
        self.failing_ids = set(failing_ids)
        self.saved_ids = []

    def save(self, record, fields):
        if record.id in self.failing_ids:
            raise StoreError("row locked")
        self.saved_ids.append(record.id)
        super().save(record, fields)


def populate(store, generator, count):
    return [
        store.create_account(f"user{i}@example.com", generator.generate())
        for i in range(count)
    ]


def populate_plain(count):
    return [Account.new(f"plain{i}@example.com", f"token-{i}") for i in range(count)]


def build(store, generator, page_size):
    policy = TokenRotationPolicy(store, generator)
    return BulkInvalidator(store, policy, page_size=page_size)


class TestSweepTermination:
    """The sweep stops on the first empty page and on nothing else."""

    @pytest.mark.parametrize("count", [0, 5, 6, 14])
    def test_fetch_and_rotation_counts(self, memory_store, generator, count):
        page_size = 5
        populate(memory_store, generator, count)
        store = CountingStore(memory_store)

        result = build(store, generator, page_size).invalidate_all()

        assert len(store.page_sizes) == math.ceil(count / page_size) + 1
        assert store.page_sizes[-1] == 0
        assert result.pages_fetched == len(store.page_sizes)
        assert result.rotated == count
        assert result.ok

    def test_example_population_of_120(self, memory_store, generator):
        accounts = populate(memory_store, generator, 120)
        store = CountingStore(memory_store)

        result = build(store, generator, 50).invalidate_all()

        assert store.page_sizes == [50, 50, 20, 0]
        assert result.rotated == 120
        for account in accounts:
            assert memory_store.get_account(account.id).persistence_token != account.persistence_token

    def test_short_page_does_not_end_sweep(self, generator):
        class ShortPageStore:
            """Returns a short page before the population is exhausted."""

            def __init__(self, records):
                self.records = records
                self.calls = []

            def fetch_page(self, limit, offset):
                self.calls.append(offset)
                if offset == 0:
                    return self.records[:2]
                return self.records[offset : offset + limit]

            def save(self, record, fields):
                pass

        records = populate_plain(8)
        store = ShortPageStore(records)

        result = build(store, generator, 4).invalidate_all()

        assert store.calls == [0, 4, 8]
        assert result.rotated == 6

    def test_page_size_must_be_positive(self, memory_store, policy):
        with pytest.raises(ValueError):
            BulkInvalidator(memory_store, policy, page_size=0)

    def test_default_page_size(self, memory_store, policy):
        assert BulkInvalidator(memory_store, policy).page_size == 50


class TestPartialFailure:
    """A single bad record never aborts the sweep."""

    def test_failure_is_recorded_and_sweep_continues(self, memory_store, generator):
        populate(memory_store, generator, 12)
        order = [a.id for a in memory_store.fetch_page(limit=100, offset=0)]
        bad = memory_store.get_account(order[4])
        store = FailingStore(memory_store, [bad.id])

        result = build(store, generator, 5).invalidate_all()

        assert result.rotated == 11
        assert result.failed_ids == [bad.id]
        assert "row locked" in result.failures[0].error
        assert not result.ok
        assert store.saved_ids == order[:4] + order[5:]
        assert memory_store.get_account(bad.id).persistence_token == bad.persistence_token

    def test_raise_for_failures_reports_count_and_ids(self, memory_store, generator):
        accounts = populate(memory_store, generator, 3)
        store = FailingStore(memory_store, [accounts[0].id, accounts[2].id])
        invalidator = build(store, generator, 2)

        with pytest.raises(BulkSweepPartialFailure) as exc_info:
            invalidator.invalidate_all_or_raise()

        assert exc_info.value.detail["failed_count"] == 2
        assert set(exc_info.value.detail["failed_ids"]) == {accounts[0].id, accounts[2].id}
        assert exc_info.value.error_code == "bulk_sweep_partial_failure"

    def test_clean_result_does_not_raise(self):
        SweepResult(pages_fetched=1).raise_for_failures()

    def test_fetch_failure_propagates(self, generator):
        class DownStore:
            def fetch_page(self, limit, offset):
                raise StoreError("connection refused")

            def save(self, record, fields):
                pass

        with pytest.raises(StoreError):
            build(DownStore(), generator, 5).invalidate_all()


class TestInvalidity:
    """Rotated-away tokens never authenticate again."""

    def test_old_tokens_stay_invalid_after_second_sweep(self, memory_store, generator, account_service):
        accounts = populate(memory_store, generator, 7)
        old_tokens = [a.persistence_token for a in accounts]
        invalidator = build(memory_store, generator, 3)

        invalidator.invalidate_all()
        middle_tokens = [memory_store.get_account(a.id).persistence_token for a in accounts]
        invalidator.invalidate_all()

        for token in old_tokens + middle_tokens:
            assert account_service.find_by_persistence_token(token) is None
        for account in accounts:
            current = memory_store.get_account(account.id).persistence_token
            assert account_service.find_by_persistence_token(current).id == account.id


class TestCancellation:
    """Cancellation is honoured between pages."""

    def test_cancel_before_start(self, memory_store, generator):
        populate(memory_store, generator, 4)
        cancel = threading.Event()
        cancel.set()

        result = build(memory_store, generator, 2).invalidate_all(cancel)

        assert result.cancelled
        assert result.pages_fetched == 0
        assert result.rotated == 0
        assert not result.ok

    def test_cancel_after_first_page(self, memory_store, generator):
        populate(memory_store, generator, 6)
        cancel = threading.Event()
        store = CountingStore(memory_store, on_fetch=lambda n: cancel.set())

        result = build(store, generator, 2).invalidate_all(cancel)

        assert result.cancelled
        assert store.page_sizes == [2]
        assert result.rotated == 2


class TestCorrelation:
    """Sweep log lines share one correlation id without clobbering the caller's."""

    def test_caller_correlation_id_is_reused_and_kept(self, memory_store, generator):
        populate(memory_store, generator, 3)
        seen = []
        store = CountingStore(memory_store, on_fetch=lambda n: seen.append(get_correlation_id()))
        token = correlation_id_var.set("caller-cid")
        try:
            build(store, generator, 2).invalidate_all()

            assert get_correlation_id() == "caller-cid"
        finally:
            correlation_id_var.reset(token)
        assert set(seen) == {"caller-cid"}

    def test_generated_correlation_id_does_not_leak(self, memory_store, generator):
        populate(memory_store, generator, 3)
        seen = []
        store = CountingStore(memory_store, on_fetch=lambda n: seen.append(get_correlation_id()))
        token = correlation_id_var.set(None)
        try:
            build(store, generator, 2).invalidate_all()

            assert get_correlation_id() is None
        finally:
            correlation_id_var.reset(token)
        assert len(set(seen)) == 1
        assert seen[0] is not None


class TestInvalidationWorker:
    """The sweep can run off the calling thread."""

    async def test_worker_runs_sweep(self, memory_store, generator):
        populate(memory_store, generator, 5)
        worker = InvalidationWorker(build(memory_store, generator, 2))

        await worker.start()
        result = await worker.wait()

        assert result.rotated == 5
        assert not worker.running

    async def test_stop_cancels_between_pages(self, memory_store, generator):
        populate(memory_store, generator, 6)
        first_page = threading.Event()
        release = threading.Event()

        def pause(n):
            if n == 1:
                first_page.set()
                release.wait(5)

        store = CountingStore(memory_store, on_fetch=pause)
        worker = InvalidationWorker(build(store, generator, 2))

        await worker.start()
        while not first_page.is_set():
            await asyncio.sleep(0.01)
        stopping = asyncio.create_task(worker.stop())
        await asyncio.sleep(0)
        release.set()
        result = await stopping

        assert result.cancelled
        assert result.rotated == 2

    async def test_wait_without_start(self, memory_store, policy):
        worker = InvalidationWorker(BulkInvalidator(memory_store, policy))

        assert await worker.wait() is None
