"""
Boomerang Task Store

File-backed key -> record persistence for parent tasks, subtasks, isolated
contexts and approval requests. One JSON file per record:

    <base_dir>/tasks/<id>.json       parent tasks and subtasks
    <base_dir>/contexts/<id>.json    isolated contexts
    <base_dir>/approvals/<id>.json   approval requests

Writes are atomic (temp file + replace) and serialized by an asyncio.Lock.
Loads always return freshly deserialized objects.
"""

import asyncio
import json
import logging
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from .models import (
    ApprovalRequest,
    IsolatedContext,
    ParentTask,
    Subtask,
    parse_iso,
    utc_now,
)

logger = logging.getLogger("task_store")

T = TypeVar("T")
TaskRecord = Union[ParentTask, Subtask]


def generate_id(prefix: str) -> str:
    """Generate a unique, sortable record id."""
    return f"{prefix}-{utc_now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"


class TaskStore:
    """JSON-file store for all Boomerang records."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)
        self._tasks_dir = self._base_dir / "tasks"
        self._contexts_dir = self._base_dir / "contexts"
        self._approvals_dir = self._base_dir / "approvals"
        self._lock = asyncio.Lock()
        self._ensure_dirs()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _ensure_dirs(self) -> None:
        for directory in (self._tasks_dir, self._contexts_dir, self._approvals_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Low-level file access
    # -------------------------------------------------------------------------
    @staticmethod
    def _read(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to read record {path.name}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Record {path.name} is not a mapping, ignoring")
            return None
        return data

    async def _write(self, path: Path, data: Dict[str, Any]) -> None:
        """Write a record atomically."""
        async with self._lock:
            temp_file = path.with_suffix(".tmp")
            try:
                temp_file.write_text(json.dumps(data, indent=2, default=str))
                temp_file.replace(path)
            except IOError:
                if temp_file.exists():
                    temp_file.unlink()
                raise

    async def _delete(self, path: Path) -> bool:
        async with self._lock:
            if path.exists():
                path.unlink()
                return True
            return False

    @staticmethod
    def _iter_records(directory: Path) -> List[Dict[str, Any]]:
        records = []
        for path in sorted(directory.glob("*.json")):
            data = TaskStore._read(path)
            if data is not None:
                records.append(data)
        return records

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------
    async def save_task(self, task: TaskRecord) -> str:
        """Persist a parent task or subtask and return its id."""
        await self._write(self._tasks_dir / f"{task.id}.json", task.to_dict())
        logger.debug(f"Saved task {task.id}")
        return task.id

    def load_task_data(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self._read(self._tasks_dir / f"{task_id}.json")

    def load_parent_task(self, task_id: str) -> Optional[ParentTask]:
        data = self.load_task_data(task_id)
        if data is None or data.get("type") != "parent":
            return None
        return ParentTask.from_dict(data)

    def load_subtask(self, subtask_id: str) -> Optional[Subtask]:
        data = self.load_task_data(subtask_id)
        if data is None or data.get("type") != "subtask":
            return None
        return Subtask.from_dict(data)

    async def delete_task(self, task_id: str) -> bool:
        return await self._delete(self._tasks_dir / f"{task_id}.json")

    def list_tasks(self, **filters: Any) -> List[Dict[str, Any]]:
        """
        All task records matching every key=value filter, newest first.
        """
        tasks = [
            data for data in self._iter_records(self._tasks_dir)
            if all(data.get(key) == value for key, value in filters.items())
        ]
        tasks.sort(key=lambda t: t.get("created_at", ""), reverse=True)
        return tasks

    def get_subtasks_by_parent(self, parent_id: str) -> List[Subtask]:
        return [
            Subtask.from_dict(data)
            for data in self.list_tasks(type="subtask", parent_id=parent_id)
        ]

    def get_tasks_by_mode(self, mode_id: str) -> List[Subtask]:
        return [
            Subtask.from_dict(data)
            for data in self.list_tasks(type="subtask", mode=mode_id)
        ]

    def get_tasks_by_status(self, status: str) -> List[Dict[str, Any]]:
        return self.list_tasks(status=status)

    def get_sibling_tasks(self, subtask_id: str) -> List[Subtask]:
        subtask = self.load_subtask(subtask_id)
        if subtask is None:
            return []
        return [
            sibling for sibling in self.get_subtasks_by_parent(subtask.parent_id)
            if sibling.id != subtask_id
        ]

    # -------------------------------------------------------------------------
    # Contexts
    # -------------------------------------------------------------------------
    async def save_context(self, context: IsolatedContext) -> str:
        await self._write(self._contexts_dir / f"{context.id}.json", context.to_dict())
        return context.id

    def load_context(self, context_id: str) -> Optional[IsolatedContext]:
        data = self._read(self._contexts_dir / f"{context_id}.json")
        return IsolatedContext.from_dict(data) if data is not None else None

    async def delete_context(self, context_id: str) -> bool:
        return await self._delete(self._contexts_dir / f"{context_id}.json")

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------
    async def save_approval(self, approval: ApprovalRequest) -> str:
        await self._write(self._approvals_dir / f"{approval.id}.json", approval.to_dict())
        return approval.id

    def load_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        data = self._read(self._approvals_dir / f"{approval_id}.json")
        return ApprovalRequest.from_dict(data) if data is not None else None

    async def delete_approval(self, approval_id: str) -> bool:
        return await self._delete(self._approvals_dir / f"{approval_id}.json")

    def list_approvals(
        self,
        predicate: Optional[Callable[[ApprovalRequest], bool]] = None,
    ) -> List[ApprovalRequest]:
        """All approval requests, oldest first."""
        approvals = [
            ApprovalRequest.from_dict(data)
            for data in self._iter_records(self._approvals_dir)
        ]
        if predicate is not None:
            approvals = [a for a in approvals if predicate(a)]
        approvals.sort(key=lambda a: a.requested_at)
        return approvals

    def load_approval_history(self, subtask_id: str) -> List[ApprovalRequest]:
        return self.list_approvals(lambda a: a.subtask_id == subtask_id)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    async def cleanup_old_tasks(self, max_age_days: int = 30) -> int:
        """Delete completed tasks (and their contexts) older than max_age_days."""
        cutoff = utc_now() - timedelta(days=max_age_days)
        cleaned = 0
        for data in self.list_tasks(status="completed"):
            created_at = parse_iso(data.get("created_at"))
            if created_at is None or created_at >= cutoff:
                continue
            await self.delete_task(data["id"])
            if data.get("context_id"):
                await self.delete_context(data["context_id"])
            cleaned += 1
        if cleaned:
            logger.info(f"Cleaned up {cleaned} completed tasks older than {max_age_days} days")
        return cleaned

    def get_storage_stats(self) -> Dict[str, int]:
        stats = {"tasks": 0, "contexts": 0, "approvals": 0, "total_size": 0}
        for key, directory in (
            ("tasks", self._tasks_dir),
            ("contexts", self._contexts_dir),
            ("approvals", self._approvals_dir),
        ):
            files = list(directory.glob("*.json"))
            stats[key] = len(files)
            stats["total_size"] += sum(f.stat().st_size for f in files)
        return stats
