"""Tests for access tracking, TTL purges and the loop guard."""

from datetime import datetime, timedelta, timezone

import pytest

PROJECT = "project-under-test"


def at(minutes):
    return T0 + timedelta(minutes=minutes)


T0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


class TestLoopGuard:

    @pytest.mark.asyncio
    async def test_unknown_task_is_not_repeated(self, stack):
        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=T0) == (False, 0)

    @pytest.mark.asyncio
    async def test_fourth_call_within_window_is_flagged(self, stack):
        started = await stack.loop_guard.start(PROJECT, "deploy", total_steps=3, now=T0)
        assert started["status"] == "planning"
        assert started["callCount"] == 1

        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=at(1)) == (False, 2)
        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=at(2)) == (False, 3)
        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=at(3)) == (True, 4)

    @pytest.mark.asyncio
    async def test_counter_resets_after_idle_window(self, stack):
        await stack.loop_guard.start(PROJECT, "deploy", now=T0)
        await stack.loop_guard.check_call(PROJECT, "deploy", now=at(1))
        await stack.loop_guard.check_call(PROJECT, "deploy", now=at(2))

        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=at(30)) == (False, 1)
        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=at(31)) == (False, 2)

    @pytest.mark.asyncio
    async def test_finished_task_is_not_tracked(self, stack):
        started = await stack.loop_guard.start(PROJECT, "deploy", now=T0)
        await stack.loop_guard.complete(started["executionId"])

        assert await stack.loop_guard.check_call(PROJECT, "deploy", now=at(1)) == (False, 0)

    @pytest.mark.asyncio
    async def test_update_progress(self, stack):
        started = await stack.loop_guard.start(PROJECT, "migrate", total_steps=2, now=T0)
        execution_id = started["executionId"]

        state = await stack.loop_guard.update(execution_id, status="executing", current_step="schema")
        state = await stack.loop_guard.update(execution_id, completed_step="schema", current_step="data")
        assert state["status"] == "executing"
        assert state["completedSteps"] == ["schema"]
        assert state["currentStep"] == "data"

        failed = await stack.loop_guard.fail(execution_id, "lock timeout")
        assert failed["status"] == "failed"
        assert failed["error"] == "lock timeout"
        assert failed["completedAt"] is not None

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_status(self, stack):
        started = await stack.loop_guard.start(PROJECT, "deploy", now=T0)
        with pytest.raises(ValueError):
            await stack.loop_guard.update(started["executionId"], status="paused")

    @pytest.mark.asyncio
    async def test_update_unknown_execution(self, stack):
        assert await stack.loop_guard.update("no-such-id", status="complete") is None

    @pytest.mark.asyncio
    async def test_terminal_states_purged_after_a_day(self, stack):
        done = await stack.loop_guard.start(PROJECT, "deploy", now=T0)
        await stack.loop_guard.update(done["executionId"], status="complete", now=T0)
        await stack.loop_guard.start(PROJECT, "still-running", now=T0)

        assert await stack.loop_guard.purge_terminal(now=T0 + timedelta(hours=23)) == 0
        assert await stack.loop_guard.purge_terminal(now=T0 + timedelta(hours=25)) == 1

        remaining = await stack.loop_guard.list_states(PROJECT)
        assert [s["taskName"] for s in remaining] == ["still-running"]


class TestAccessTracker:

    @pytest.mark.asyncio
    async def test_touch_ignores_empty(self, stack):
        assert await stack.tracker.touch([]) == 0

    @pytest.mark.asyncio
    async def test_touch_does_not_change_content_timestamps(self, stack, seed):
        await seed("projectbrief")
        before = await stack.memory.get(PROJECT, "projectbrief")

        assert await stack.tracker.touch([before.id, before.id]) == 1

        after = await stack.memory.get(PROJECT, "projectbrief")
        assert after.access_count == 1
        assert after.updated_at == before.updated_at
        assert after.last_modified == before.last_modified
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_working_memories_expire_after_ttl(self, stack):
        await stack.memory.remember(PROJECT, "scratch", "Temporary note about the flaky build.")
        now = datetime.now(timezone.utc)

        assert await stack.tracker.purge_expired(now=now + timedelta(days=29)) == 0
        assert await stack.tracker.purge_expired(now=now + timedelta(days=31)) == 1

        result = await stack.memory.recall(PROJECT, "scratch")
        assert result["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_expiry_is_fixed_from_creation(self, stack):
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert stack.tracker.expiry_for(created) == datetime(2026, 1, 31, tzinfo=timezone.utc)
