"""
Tests for the in-memory Job Store and per-identity locks.

Tests cover:
  - Delayed delivery driven by the clock
  - Cancel / cancel_handle / is_live
  - At-least-once retries with exponential backoff, then failure history
  - Cancelled-while-in-flight handles are not retried
  - Native repeat schedules exactly one next occurrence, after the current
    one is delivered or out of retries
  - find() raises DuplicateIdentityViolation, reschedule() moves a job in place
  - IdentityLocks serialise per key and clean up after themselves
"""

import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from heatcare.monitoring.errors import DuplicateIdentityViolation
from heatcare.monitoring.jobstore import InMemoryJobStore, RepeatSpec
from heatcare.monitoring.locks import IdentityLocks


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Delivery
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDelivery:

    @pytest.mark.asyncio
    async def test_not_delivered_before_due(self, store, clock):
        handler = AsyncMock(return_value="done")
        store.register_handler(handler)
        await store.enqueue("job-a", {"x": 1}, delay=timedelta(minutes=5))

        clock.advance(minutes=4)
        assert await store.run_due() == 0
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivered_when_due(self, store, clock):
        handler = AsyncMock(return_value="done")
        store.register_handler(handler)
        await store.enqueue("job-a", {"x": 1}, delay=timedelta(minutes=5))

        clock.advance(minutes=5)
        assert await store.run_due() == 1
        handle = handler.call_args[0][0]
        assert handle.job_id == "job-a"
        assert handle.payload == {"x": 1}
        assert store.pending_count == 0
        assert await store.last_result("job-a") == "done"

    @pytest.mark.asyncio
    async def test_no_handler_drops_job(self, store, clock):
        await store.enqueue("job-a", {}, delay=timedelta(0))
        await store.run_due()
        assert store.pending_count == 0
        assert store.in_flight_count == 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Cancellation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_removes_all_handles(self, store):
        await store.enqueue("job-a", {}, delay=timedelta(minutes=1))
        await store.enqueue("job-a", {}, delay=timedelta(minutes=2))
        assert await store.cancel("job-a") is True
        assert await store.pending("job-a") == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_false(self, store):
        assert await store.cancel("nothing") is False

    @pytest.mark.asyncio
    async def test_cancel_handle_and_is_live(self, store):
        handle = await store.enqueue("job-a", {}, delay=timedelta(minutes=1))
        assert await store.is_live(handle.handle_id) is True
        assert await store.cancel_handle(handle.handle_id) is True
        assert await store.is_live(handle.handle_id) is False
        assert await store.cancel_handle(handle.handle_id) is False

    @pytest.mark.asyncio
    async def test_cancel_during_delivery_ends_repeat(self, store, clock):
        async def cancel_self(handle):
            await store.cancel(handle.job_id)

        store.register_handler(cancel_self)
        await store.enqueue("daily", {}, delay=timedelta(0), repeat=RepeatSpec(every_seconds=86400))
        await store.run_due()
        assert await store.pending("daily") == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Retries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRetries:

    @pytest.mark.asyncio
    async def test_failure_is_retried_after_backoff(self, store, clock):
        handler = AsyncMock(side_effect=[RuntimeError("boom"), "ok"])
        store.register_handler(handler)
        await store.enqueue("job-a", {}, delay=timedelta(0))

        await store.run_due()
        assert store.pending_count == 1  # back in the queue

        assert await store.run_due() == 0  # backoff not elapsed
        clock.advance(seconds=1)
        assert await store.run_due() == 1
        assert handler.call_count == 2
        assert handler.call_args[0][0].attempts == 2
        assert await store.last_result("job-a") == "ok"

    @pytest.mark.asyncio
    async def test_backoff_is_exponential(self, store, clock):
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        store.register_handler(handler)
        await store.enqueue("job-a", {}, delay=timedelta(0))

        await store.run_due()
        clock.advance(seconds=1)
        await store.run_due()
        handle = (await store.pending("job-a"))[0]
        assert handle.due_at == clock.now + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, clock):
        store = InMemoryJobStore(clock=clock, max_attempts=2, backoff_seconds=0)
        store.register_handler(AsyncMock(side_effect=RuntimeError("boom")))
        await store.enqueue("job-a", {}, delay=timedelta(0))

        await store.run_due()
        await store.run_due()
        assert store.pending_count == 0
        assert len(store.failed_jobs) == 1
        assert store.failed_jobs[0].attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_in_flight_is_not_retried(self, store, clock):
        async def cancel_then_fail(handle):
            await store.cancel(handle.job_id)
            raise RuntimeError("after cancel")

        store.register_handler(cancel_then_fail)
        await store.enqueue("job-a", {}, delay=timedelta(0))
        await store.run_due()
        assert store.pending_count == 0
        assert len(store.failed_jobs) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Native repeat
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestNativeRepeat:

    @pytest.mark.asyncio
    async def test_repeat_schedules_next_occurrence(self, store, clock):
        handler = AsyncMock(return_value=None)
        store.register_handler(handler)
        first = await store.enqueue(
            "daily", {}, delay=timedelta(hours=1), repeat=RepeatSpec(every_seconds=86400),
        )

        clock.advance(hours=1)
        await store.run_due()
        pending = await store.pending("daily")
        assert len(pending) == 1
        assert pending[0].due_at == first.due_at + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_retry_does_not_duplicate_repeat(self, store, clock):
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
        store.register_handler(handler)
        await store.enqueue("daily", {}, delay=timedelta(0), repeat=RepeatSpec(every_seconds=86400))

        await store.run_due()
        clock.advance(seconds=1)
        await store.run_due()
        assert len(await store.pending("daily")) == 1

    @pytest.mark.asyncio
    async def test_retry_window_holds_only_the_retry(self, store, clock):
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
        store.register_handler(handler)
        first = await store.enqueue(
            "daily", {}, delay=timedelta(0), repeat=RepeatSpec(every_seconds=86400),
        )

        await store.run_due()
        pending = await store.pending("daily")
        assert len(pending) == 1
        assert pending[0].handle_id == first.handle_id
        assert pending[0].attempts == 1

        clock.advance(seconds=1)
        await store.run_due()
        pending = await store.pending("daily")
        assert len(pending) == 1
        # Next slot follows the original schedule, not the retry time
        assert pending[0].due_at == first.due_at + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_repeat_survives_exhausted_retries(self, clock):
        store = InMemoryJobStore(clock=clock, max_attempts=2, backoff_seconds=0)
        store.register_handler(AsyncMock(side_effect=RuntimeError("boom")))
        first = await store.enqueue(
            "daily", {}, delay=timedelta(0), repeat=RepeatSpec(every_seconds=86400),
        )

        await store.run_due()
        assert len(await store.pending("daily")) == 1
        await store.run_due()
        pending = await store.pending("daily")
        assert len(store.failed_jobs) == 1
        assert len(pending) == 1
        assert pending[0].due_at == first.due_at + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_missed_occurrences_are_skipped(self, store, clock):
        store.register_handler(AsyncMock(return_value=None))
        await store.enqueue("daily", {}, delay=timedelta(0), repeat=RepeatSpec(every_seconds=3600))

        clock.advance(hours=5, minutes=30)
        await store.run_due()
        pending = await store.pending("daily")
        assert len(pending) == 1
        assert pending[0].due_at > clock.now


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Identity lookups
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFind:

    @pytest.mark.asyncio
    async def test_find_single(self, store):
        handle = await store.enqueue("job-a", {}, delay=timedelta(minutes=1))
        found = await store.find("job-a")
        assert found.handle_id == handle.handle_id

    @pytest.mark.asyncio
    async def test_find_none(self, store):
        assert await store.find("job-a") is None

    @pytest.mark.asyncio
    async def test_find_duplicates_raises(self, store):
        await store.enqueue("job-a", {}, delay=timedelta(minutes=1))
        await store.enqueue("job-a", {}, delay=timedelta(minutes=2))
        with pytest.raises(DuplicateIdentityViolation) as exc_info:
            await store.find("job-a")
        assert len(exc_info.value.handles) == 2

    @pytest.mark.asyncio
    async def test_reschedule_moves_job_in_place(self, store, clock):
        first = await store.enqueue("job-a", {"n": 1}, delay=timedelta(minutes=30))
        moved = await store.reschedule("job-a", timedelta(minutes=2), {"n": 2})

        assert moved.handle_id == first.handle_id
        found = await store.find("job-a")
        assert found.due_at == clock.now + timedelta(minutes=2)
        assert found.payload == {"n": 2}

    @pytest.mark.asyncio
    async def test_reschedule_keeps_payload_by_default(self, store):
        await store.enqueue("job-a", {"n": 1}, delay=timedelta(minutes=30))
        await store.reschedule("job-a", timedelta(minutes=2))
        assert (await store.find("job-a")).payload == {"n": 1}

    @pytest.mark.asyncio
    async def test_reschedule_missing_is_none(self, store):
        assert await store.reschedule("missing", timedelta(minutes=2)) is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Poll loop
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPollLoop:

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        store = InMemoryJobStore(poll_interval_seconds=0.01)
        handler = AsyncMock(return_value=None)
        store.register_handler(handler)
        await store.enqueue("job-a", {}, delay=timedelta(0))

        await store.start()
        for _ in range(50):
            if handler.called:
                break
            await asyncio.sleep(0.01)
        await store.stop()
        handler.assert_called_once()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Identity locks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestIdentityLocks:

    @pytest.mark.asyncio
    async def test_same_key_runs_in_order(self):
        locks = IdentityLocks()
        order = []

        async def worker(name, delay):
            async with locks.hold("key"):
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a", 0.02), worker("b", 0))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = IdentityLocks()
        async with locks.hold("one"):
            assert locks.is_locked("one")
            assert not locks.is_locked("two")
            async with locks.hold("two"):
                assert locks.active_count == 2

    @pytest.mark.asyncio
    async def test_lock_table_is_cleaned_up(self):
        locks = IdentityLocks()
        async with locks.hold("key"):
            assert locks.active_keys == ["key"]
        assert locks.active_count == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = IdentityLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("key"):
                raise RuntimeError("boom")
        assert not locks.is_locked("key")
        assert locks.active_count == 0
