"""
Access tracking, TTL expiry and the loop guard.

AccessTracker bumps access counters and freshness on reads and expires
working memories. LoopGuard counts repeated invocations of the same agent
task so a caller can break out of a retry loop.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, select, update

from .database import DatabaseManager
from .models import ExecutionState, MemoryDocument, WorkingMemory, as_utc

logger = logging.getLogger(__name__)

LIVE_STATUSES = ("planning", "executing")
TERMINAL_STATUSES = ("complete", "failed")
ALL_STATUSES = LIVE_STATUSES + TERMINAL_STATUSES


class AccessTracker:
    """Read-side bookkeeping for memory documents and working memories."""

    def __init__(self, db: DatabaseManager, working_memory_ttl_days: int = 30):
        self.db = db
        self.ttl = timedelta(days=working_memory_ttl_days)

    async def touch(self, memory_ids: Iterable[int]) -> int:
        """Increment access_count and refresh freshness for each id. Returns rows touched."""
        ids = sorted(set(memory_ids))
        if not ids:
            return 0

        now = datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            result = await session.execute(
                update(MemoryDocument)
                .where(MemoryDocument.id.in_(ids))
                .values(
                    access_count=MemoryDocument.access_count + 1,
                    last_accessed=now,
                    # freshness only; updated_at tracks content changes
                    updated_at=MemoryDocument.updated_at,
                )
            )
            return result.rowcount or 0

    def expiry_for(self, created: Optional[datetime] = None) -> datetime:
        """Fixed horizon from creation."""
        return (created or datetime.now(timezone.utc)) + self.ttl

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete working memories past their expiry. Core memories never expire."""
        now = now or datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkingMemory).where(WorkingMemory.expires_at <= now)
            )
            purged = result.rowcount or 0

        if purged:
            logger.info(f"Purged {purged} expired working memories")
        return purged


class LoopGuard:
    """
    Repeated-call detector for long-running agent tasks.

    A task is "repeated" once it has been called `max_calls` times without
    `window` passing between calls. An idle gap longer than the window resets
    the counter to 1.
    """

    def __init__(
        self,
        db: DatabaseManager,
        max_calls: int = 3,
        window_minutes: int = 10,
        terminal_ttl_hours: int = 24
    ):
        self.db = db
        self.max_calls = max_calls
        self.window = timedelta(minutes=window_minutes)
        self.terminal_ttl = timedelta(hours=terminal_ttl_hours)

    async def _live_state(self, session, project_id: str, task_name: str) -> Optional[ExecutionState]:
        result = await session.execute(
            select(ExecutionState)
            .where(
                ExecutionState.project_id == project_id,
                ExecutionState.task_name == task_name,
                ExecutionState.status.in_(LIVE_STATUSES),
            )
            .order_by(ExecutionState.created_at.desc(), ExecutionState.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def check_call(
        self,
        project_id: str,
        task_name: str,
        now: Optional[datetime] = None
    ) -> Tuple[bool, int]:
        """
        Record a call and report whether the task is looping.

        Returns:
            (is_repeated, call_count). (False, 0) when the task has no live state.
        """
        now = now or datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            state = await self._live_state(session, project_id, task_name)
            if state is None:
                return False, 0

            last = as_utc(state.last_called)
            if last is None or now - last > self.window:
                state.call_count = 1
                state.last_called = now
                logger.debug(f"Loop guard reset for {task_name} after idle window")
                return False, 1

            is_repeated = state.call_count >= self.max_calls
            state.call_count += 1
            state.last_called = now
            if is_repeated:
                logger.warning(f"Repeated call detected for {task_name} (count={state.call_count})")
            return is_repeated, state.call_count

    async def start(
        self,
        project_id: str,
        task_name: str,
        total_steps: int = 0,
        now: Optional[datetime] = None
    ) -> dict:
        now = now or datetime.now(timezone.utc)
        state = ExecutionState(
            project_id=project_id,
            task_name=task_name,
            execution_id=str(uuid.uuid4()),
            status="planning",
            call_count=1,
            last_called=now,
            total_steps=total_steps,
            completed_steps=[],
            created_at=now,
        )
        async with self.db.get_session() as session:
            session.add(state)
            await session.flush()
            return state.to_dict()

    async def update(
        self,
        execution_id: str,
        status: Optional[str] = None,
        current_step: Optional[str] = None,
        completed_step: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Optional[dict]:
        """Advance an execution. Terminal statuses stamp completed_at. None if unknown."""
        if status is not None and status not in ALL_STATUSES:
            raise ValueError(f"status must be one of {ALL_STATUSES}")

        now = now or datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionState).where(ExecutionState.execution_id == execution_id)
            )
            state = result.scalar_one_or_none()
            if state is None:
                return None

            if status is not None:
                state.status = status
                if status in TERMINAL_STATUSES:
                    state.completed_at = now
            if current_step is not None:
                state.current_step = current_step
            if completed_step is not None:
                # Reassign so the JSON column is flagged dirty
                state.completed_steps = list(state.completed_steps or []) + [completed_step]
            if error is not None:
                state.error = error
            return state.to_dict()

    async def complete(self, execution_id: str) -> Optional[dict]:
        return await self.update(execution_id, status="complete")

    async def fail(self, execution_id: str, error: str) -> Optional[dict]:
        return await self.update(execution_id, status="failed", error=error)

    async def purge_terminal(self, now: Optional[datetime] = None) -> int:
        """Delete complete/failed states that reached their terminal status over 24h ago."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.terminal_ttl
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionState).where(
                    ExecutionState.status.in_(TERMINAL_STATUSES),
                    ExecutionState.completed_at < cutoff,
                )
            )
            purged = result.rowcount or 0

        if purged:
            logger.info(f"Purged {purged} terminal execution states")
        return purged

    async def list_states(self, project_id: str) -> List[dict]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionState)
                .where(ExecutionState.project_id == project_id)
                .order_by(ExecutionState.created_at)
            )
            return [s.to_dict() for s in result.scalars().all()]
