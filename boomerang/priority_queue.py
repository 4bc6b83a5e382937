"""
Boomerang Priority Queue

Three FIFO tiers (high, medium, low) with an SLA profile per tier.

- dequeue() always drains high before medium before low
- SLA is assigned at enqueue and only re-tagged on an explicit priority change
- Wait-time SLA violations are counted at dequeue; they are logged, never enforced
- A background sweep evicts items older than 2x their tier's max wait
  (forced expiry, counted separately from SLA violations)
- Enqueue fails closed once the total across tiers reaches max_size
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import DEFAULT_SLA_PROFILES
from .errors import CapacityExceededError
from .models import ExecutionMode, Priority, utc_now_iso

logger = logging.getLogger("priority_queue")

EXPIRY_FACTOR = 2


@dataclass(frozen=True)
class SlaProfile:
    """Per-tier service levels, in seconds."""
    max_wait_time: float
    max_execution_time: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "max_wait_time": self.max_wait_time,
            "max_execution_time": self.max_execution_time,
        }


@dataclass
class QueuedTask:
    """A subtask waiting on the queue."""
    id: str
    priority: str
    execution_mode: str = ExecutionMode.SIMULATION.value
    queued_at: float = 0.0
    sla: SlaProfile = SlaProfile(0.0, 0.0)
    retry_on_failure: bool = True
    max_retries: int = 3
    retry_count: int = 0

    @property
    def can_retry(self) -> bool:
        return self.retry_on_failure and self.retry_count < self.max_retries

    def wait_time(self, now: float) -> float:
        return now - self.queued_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "priority": self.priority,
            "execution_mode": self.execution_mode,
            "queued_at": self.queued_at,
            "sla": self.sla.to_dict(),
            "options": {
                "retry_on_failure": self.retry_on_failure,
                "max_retries": self.max_retries,
            },
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedTask":
        options = data.get("options", {})
        sla = data.get("sla", {})
        return cls(
            id=data["id"],
            priority=data["priority"],
            execution_mode=data.get("execution_mode", ExecutionMode.SIMULATION.value),
            queued_at=data["queued_at"],
            sla=SlaProfile(sla.get("max_wait_time", 0.0), sla.get("max_execution_time", 0.0)),
            retry_on_failure=options.get("retry_on_failure", True),
            max_retries=options.get("max_retries", 3),
            retry_count=data.get("retry_count", 0),
        )


def _empty_counters() -> Dict[str, int]:
    return {p.value: 0 for p in Priority.ordered()}


@dataclass
class QueueStats:
    enqueued: Dict[str, int] = field(default_factory=_empty_counters)
    dequeued: Dict[str, int] = field(default_factory=_empty_counters)
    sla_violations: Dict[str, int] = field(default_factory=_empty_counters)
    expired: Dict[str, int] = field(default_factory=_empty_counters)
    total_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enqueued": dict(self.enqueued),
            "dequeued": dict(self.dequeued),
            "sla_violations": dict(self.sla_violations),
            "expired": dict(self.expired),
            "total_processed": self.total_processed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueStats":
        stats = cls()
        for name in ("enqueued", "dequeued", "sla_violations", "expired"):
            getattr(stats, name).update(data.get(name, {}))
        stats.total_processed = data.get("total_processed", 0)
        return stats


class PriorityQueue:
    """SLA-aware three-tier FIFO queue."""

    def __init__(
        self,
        max_size: int = 1000,
        sla_profiles: Optional[Dict[str, Tuple[float, float]]] = None,
        cleanup_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.cleanup_interval_seconds = cleanup_interval_seconds
        profiles = sla_profiles or DEFAULT_SLA_PROFILES
        self.sla_profiles: Dict[str, SlaProfile] = {
            tier: SlaProfile(*profiles[tier]) for tier in (p.value for p in Priority.ordered())
        }
        self._clock = clock
        self._tiers: Dict[str, List[QueuedTask]] = {p.value: [] for p in Priority.ordered()}
        self.stats = QueueStats()
        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None

        logger.info(f"PriorityQueue initialized (max_size={max_size})")

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def _validate_priority(priority: str) -> str:
        try:
            return Priority(priority).value
        except ValueError:
            raise ValueError(f"Invalid priority: {priority}. Must be 'high', 'medium', or 'low'")

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------
    def enqueue(
        self,
        task_id: str,
        priority: str = Priority.MEDIUM.value,
        execution_mode: str = ExecutionMode.SIMULATION.value,
        retry_on_failure: bool = True,
        max_retries: int = 3,
        retry_count: int = 0,
    ) -> QueuedTask:
        """
        Append a task to the tail of its tier.

        Raises:
            ValueError: Unknown priority
            CapacityExceededError: Queue is at max_size
        """
        priority = self._validate_priority(priority)
        total = self.total_size()
        if total >= self.max_size:
            logger.warning(f"Queue full ({total}), rejecting task {task_id}")
            raise CapacityExceededError("Queue is full", limit=self.max_size)

        queued = QueuedTask(
            id=task_id,
            priority=priority,
            execution_mode=execution_mode,
            queued_at=self._clock(),
            sla=self.sla_profiles[priority],
            retry_on_failure=retry_on_failure,
            max_retries=max_retries,
            retry_count=retry_count,
        )
        self._tiers[priority].append(queued)
        self.stats.enqueued[priority] += 1
        logger.info(
            f"Task {task_id} enqueued at {priority} "
            f"(position {len(self._tiers[priority])}, total {total + 1})"
        )
        return queued

    def requeue(self, task: QueuedTask) -> QueuedTask:
        """Re-enqueue a failed task for retry with a fresh wait timer."""
        return self.enqueue(
            task.id,
            priority=task.priority,
            execution_mode=task.execution_mode,
            retry_on_failure=task.retry_on_failure,
            max_retries=task.max_retries,
            retry_count=task.retry_count + 1,
        )

    def dequeue(self) -> Optional[QueuedTask]:
        """Pop the oldest task from the highest non-empty tier."""
        for priority in (p.value for p in Priority.ordered()):
            tier = self._tiers[priority]
            if not tier:
                continue
            task = tier.pop(0)
            self.stats.dequeued[priority] += 1
            self.stats.total_processed += 1

            wait = task.wait_time(self._clock())
            if wait > task.sla.max_wait_time:
                self.stats.sla_violations[priority] += 1
                logger.warning(
                    f"SLA violation: task {task.id} waited {wait:.1f}s "
                    f"(max {task.sla.max_wait_time:.0f}s at {priority})"
                )
            logger.info(f"Task {task.id} dequeued from {priority} after {wait:.1f}s")
            return task
        return None

    def peek(self) -> Optional[QueuedTask]:
        for priority in (p.value for p in Priority.ordered()):
            if self._tiers[priority]:
                return self._tiers[priority][0]
        return None

    def get_task(self, task_id: str) -> Optional[QueuedTask]:
        for tier in self._tiers.values():
            for task in tier:
                if task.id == task_id:
                    return task
        return None

    def remove_task(self, task_id: str) -> Optional[QueuedTask]:
        for priority, tier in self._tiers.items():
            for index, task in enumerate(tier):
                if task.id == task_id:
                    del tier[index]
                    logger.info(f"Task {task_id} removed from {priority} queue")
                    return task
        return None

    def change_priority(self, task_id: str, new_priority: str) -> bool:
        """Move a queued task to the tail of another tier and re-tag its SLA."""
        new_priority = self._validate_priority(new_priority)
        task = self.remove_task(task_id)
        if task is None:
            return False
        task.priority = new_priority
        task.sla = self.sla_profiles[new_priority]
        self._tiers[new_priority].append(task)
        logger.info(f"Task {task_id} moved to {new_priority} queue")
        return True

    def get_all_tasks(self) -> List[Dict[str, Any]]:
        """All queued tasks in dequeue order, with wait and SLA remaining."""
        now = self._clock()
        items = []
        for priority in (p.value for p in Priority.ordered()):
            for position, task in enumerate(self._tiers[priority], start=1):
                data = task.to_dict()
                wait = task.wait_time(now)
                data["queue_position"] = position
                data["wait_time"] = wait
                data["sla_time_remaining"] = max(0.0, task.sla.max_wait_time - wait)
                items.append(data)
        return items

    # -------------------------------------------------------------------------
    # Expiry sweep
    # -------------------------------------------------------------------------
    def cleanup_expired_tasks(self) -> int:
        """Evict tasks older than twice their tier's max wait."""
        now = self._clock()
        removed = 0
        for priority, tier in self._tiers.items():
            max_age = self.sla_profiles[priority].max_wait_time * EXPIRY_FACTOR
            kept = []
            for task in tier:
                age = task.wait_time(now)
                if age > max_age:
                    removed += 1
                    self.stats.expired[priority] += 1
                    logger.warning(f"Task {task.id} expired in {priority} queue after {age:.1f}s")
                else:
                    kept.append(task)
            tier[:] = kept
        if removed:
            logger.info(f"Queue cleanup removed {removed} expired tasks")
        return removed

    async def start(self) -> None:
        """Start the periodic expiry sweep."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.cleanup_interval_seconds)
                self.cleanup_expired_tasks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Queue cleanup loop error: {e}")

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------
    def total_size(self) -> int:
        return sum(len(tier) for tier in self._tiers.values())

    def __len__(self) -> int:
        return self.total_size()

    def get_sizes(self) -> Dict[str, int]:
        sizes = {priority: len(tier) for priority, tier in self._tiers.items()}
        sizes["total"] = self.total_size()
        return sizes

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        average_waits = {}
        violation_rates = {}
        for priority, tier in self._tiers.items():
            average_waits[priority] = (
                round(sum(t.wait_time(now) for t in tier) / len(tier), 3) if tier else 0.0
            )
            dequeued = self.stats.dequeued[priority]
            violations = self.stats.sla_violations[priority]
            violation_rates[priority] = round(violations / dequeued * 100) if dequeued else 0
        return {
            "sizes": self.get_sizes(),
            "stats": self.stats.to_dict(),
            "average_wait_times": average_waits,
            "sla_violation_rate": violation_rates,
        }

    def clear(self) -> int:
        removed = self.total_size()
        for tier in self._tiers.values():
            tier.clear()
        logger.info(f"All queues cleared ({removed} tasks)")
        return removed

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def serialize(self) -> Dict[str, Any]:
        return {
            "queues": {
                priority: [task.to_dict() for task in tier]
                for priority, tier in self._tiers.items()
            },
            "stats": self.stats.to_dict(),
            "timestamp": utc_now_iso(),
        }

    def deserialize(self, data: Dict[str, Any]) -> None:
        queues = data.get("queues", {})
        for priority in self._tiers:
            self._tiers[priority] = [QueuedTask.from_dict(t) for t in queues.get(priority, [])]
        if "stats" in data:
            self.stats = QueueStats.from_dict(data["stats"])
        logger.info(f"Priority queue restored with {self.total_size()} tasks")
