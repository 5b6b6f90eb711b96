"""
State management with atomic writes for plan execution records.

This module provides the StateManager class which persists execution
records to disk. The state manager ensures data integrity through:

- Atomic file writes using temporary files and rename operations
- Per-plan asyncio locks serialising writes (single-writer discipline)
- An advisory lock file per plan id so that at most one engine drives a
  plan at a time, across processes

State File Structure:
    Each plan gets its own file named ``{plan_id}.json`` holding an
    :class:`~devflow.engine.types.ExecutionRecordState`::

        {
            "plan_id": "p1",
            "status": "executing",
            "plan": {...},
            "created_at": "2024-01-15T10:30:00+00:00",
            "updated_at": "2024-01-15T11:45:00+00:00",
            "approved": true,
            "position": 1,
            "steps": {"s1": {"status": "succeeded", ...}, ...},
            "transitions": [...],
            "completion_order": ["s1"]
        }

Transaction Support:
    The ``transaction()`` context manager provides atomic read-modify-write::

        async with state_manager.transaction("p1") as state:
            state["approved"] = True
            # Changes are saved atomically on context exit

Example:
    >>> state = StateManager(".devflow/state")
    >>> await state.create_record(ExecutionRecord.new(plan))
    >>> record = await state.load_record("p1")
"""

import asyncio
import json
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import cast

import aiofiles
import structlog

from devflow.engine.types import ExecutionRecordState
from devflow.exceptions import PlanLockedError, PlanNotFoundError, WorkflowError
from devflow.models.execution import ExecutionRecord, utc_now

log = structlog.get_logger(__name__)

# Unreadable lock files younger than this are assumed to be mid-write
_LOCK_WRITE_GRACE_SECONDS = 30.0


class StateManager:
    """Persist execution records with atomic file operations.

    Attributes:
        state_dir: Directory where state files are stored.

    Thread Safety:
        Designed for single-threaded asyncio usage. Each plan has its own
        lock; lock creation is guarded by a meta-lock.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the state manager with a storage directory.

        Args:
            state_dir: Directory for state files. Created, with parents,
                if it does not exist.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        # Per-plan locks to prevent interleaved writes to the same record
        self._locks: dict[str, asyncio.Lock] = {}
        # Meta-lock for lock creation
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, plan_id: str) -> asyncio.Lock:
        """Get or create the asyncio lock for a plan."""
        async with self._locks_lock:
            if plan_id not in self._locks:
                self._locks[plan_id] = asyncio.Lock()
            return self._locks[plan_id]

    def _get_state_path(self, plan_id: str) -> Path:
        return self.state_dir / f"{plan_id}.json"

    def _get_lock_path(self, plan_id: str) -> Path:
        return self.state_dir / f"{plan_id}.lock"

    def exists(self, plan_id: str) -> bool:
        return self._get_state_path(plan_id).exists()

    async def _load_state_internal(self, plan_id: str) -> ExecutionRecordState:
        """Load state from disk. Caller must hold the plan lock.

        Raises:
            PlanNotFoundError: If no state file exists for the plan.
            WorkflowError: If the state file is not valid JSON.
        """
        state_path = self._get_state_path(plan_id)

        if not state_path.exists():
            raise PlanNotFoundError(plan_id)

        async with aiofiles.open(state_path) as f:
            content = await f.read()

        try:
            return cast(ExecutionRecordState, json.loads(content))
        except json.JSONDecodeError as e:
            log.error("state_file_corrupt", plan_id=plan_id, path=str(state_path))
            raise WorkflowError(f"State file for plan '{plan_id}' is corrupt: {e}") from e

    async def _save_state_internal(self, plan_id: str, state: ExecutionRecordState) -> None:
        """Save state to disk. Caller must hold the plan lock.

        Updates ``state["updated_at"]`` in place before writing.
        """
        state["updated_at"] = utc_now()
        await self._write_state(self._get_state_path(plan_id), state)

    async def load_state(self, plan_id: str) -> ExecutionRecordState:
        """Load the raw persisted state for a plan.

        Raises:
            PlanNotFoundError: If the plan has no record.
        """
        lock = await self._get_lock(plan_id)
        async with lock:
            return await self._load_state_internal(plan_id)

    async def _write_state(self, path: Path, state: ExecutionRecordState) -> None:
        """Write state atomically: temp file in the same directory, then rename."""
        tmp_path = path.with_name(f"{path.name}.tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(state, indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    @asynccontextmanager
    async def transaction(self, plan_id: str) -> AsyncIterator[ExecutionRecordState]:
        """Context manager for atomic read-modify-write of a plan's state.

        If an exception occurs within the context, the state is NOT saved
        and the exception is re-raised after logging.

        Yields:
            The persisted state dictionary, saved on successful exit.
        """
        lock = await self._get_lock(plan_id)
        async with lock:
            state = await self._load_state_internal(plan_id)
            try:
                yield state
                # Only save if no exception occurred
                await self._save_state_internal(plan_id, state)
            except Exception:
                log.error("state_transaction_failed", plan_id=plan_id)
                raise

    async def create_record(self, record: ExecutionRecord) -> None:
        """Persist a new record, replacing any previous one for the plan id."""
        await self.save_record(record)
        log.info("execution_record_created", plan_id=record.plan_id, status=record.status.value)

    async def save_record(self, record: ExecutionRecord) -> None:
        """Persist an execution record.

        The record is serialised while the plan lock is held, so concurrent
        saves of the same record are written in lock order and the last
        write always carries every change made before it.
        """
        lock = await self._get_lock(record.plan_id)
        async with lock:
            record.updated_at = utc_now()
            state = record.to_dict()
            await self._write_state(self._get_state_path(record.plan_id), state)

    async def load_record(self, plan_id: str) -> ExecutionRecord:
        """Load an execution record.

        Raises:
            PlanNotFoundError: If the plan has no record.
        """
        state = await self.load_state(plan_id)
        try:
            return ExecutionRecord.from_dict(state)
        except (KeyError, ValueError) as e:
            raise WorkflowError(f"State file for plan '{plan_id}' is malformed: {e}") from e

    async def delete_record(self, plan_id: str) -> None:
        lock = await self._get_lock(plan_id)
        async with lock:
            self._get_state_path(plan_id).unlink(missing_ok=True)
        log.info("execution_record_deleted", plan_id=plan_id)

    async def list_records(self) -> list[ExecutionRecord]:
        """Load every record in the state directory, sorted by plan id."""
        records = []
        for state_file in sorted(self.state_dir.glob("*.json")):
            try:
                records.append(await self.load_record(state_file.stem))
            except WorkflowError as e:
                log.warning("state_file_skipped", path=str(state_file), error=e.message)
        return records

    async def get_active_plans(self) -> list[ExecutionRecord]:
        """Records of plans whose status is not terminal."""
        return [record for record in await self.list_records() if not record.status.is_terminal]

    async def get_resumable_plans(self) -> list[ExecutionRecord]:
        """Records of plans interrupted while executing or rolling back."""
        return [record for record in await self.list_records() if record.status.is_resumable]

    @asynccontextmanager
    async def run_lock(self, plan_id: str) -> AsyncIterator[None]:
        """Hold the advisory run lock for a plan.

        The lock is a ``{plan_id}.lock`` file created exclusively and holding
        the owner's pid. A lock whose owner process no longer exists is
        considered stale and replaced.

        Raises:
            PlanLockedError: If a live process already holds the lock.
        """
        path = self._get_lock_path(plan_id)
        self._acquire_file_lock(path, plan_id)
        log.debug("run_lock_acquired", plan_id=plan_id)
        try:
            yield
        finally:
            path.unlink(missing_ok=True)
            log.debug("run_lock_released", plan_id=plan_id)

    def is_locked(self, plan_id: str) -> bool:
        path = self._get_lock_path(plan_id)
        return path.exists() and not self._lock_is_stale(path)

    def _acquire_file_lock(self, path: Path, plan_id: str) -> None:
        payload = json.dumps({"pid": os.getpid(), "acquired_at": utc_now()})

        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if not self._lock_is_stale(path):
                    holder = self._read_lock_holder(path)
                    raise PlanLockedError(plan_id, holder=f"pid {holder}" if holder else None) from None
                log.warning("stale_run_lock_removed", plan_id=plan_id, path=str(path))
                path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(payload)
            return

        raise PlanLockedError(plan_id)

    def _read_lock_holder(self, path: Path) -> int | None:
        try:
            return int(json.loads(path.read_text())["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def _lock_is_stale(self, path: Path) -> bool:
        pid = self._read_lock_holder(path)
        if pid is None:
            try:
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > _LOCK_WRITE_GRACE_SECONDS
        return not _pid_alive(pid)


def _pid_alive(pid: int) -> bool:
    """Check whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True
