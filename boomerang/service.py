"""
Boomerang Service

Composes every component from a BoomerangConfig and exposes the boundary
operations a calling agent uses:

1. analyze_task       - complexity analysis and decomposition
2. create_subtask     - isolated subtask under a parent
3. execute_subtask    - synchronous execution
4. get_subtask_status - lifecycle and progress of one subtask
5. merge_results      - recompose completed subtask outputs
6. get_task_progress  - progress across a parent's subtasks

plus queue, approval, bulk and cleanup operations. Every operation returns a plain
dict and raises a BoomerangError subclass on failure.
"""

import logging
from typing import Any, Dict, List, Optional

from .approval_gate import ApprovalGate
from .cache import TaskCache
from .config import BoomerangConfig
from .context_isolation import ContextIsolation
from .execution_dispatcher import ExecutionDispatcher
from .models import ExecutionMode
from .orchestrator import Orchestrator
from .priority_queue import PriorityQueue
from .results_merger import ResultsMerger
from .subtask_manager import SubtaskManager
from .task_store import TaskStore

logger = logging.getLogger("service")


class BoomerangService:
    """Process-scoped composition of the Boomerang components."""

    def __init__(
        self,
        config: BoomerangConfig,
        store: TaskStore,
        cache: TaskCache,
        context_isolation: ContextIsolation,
        orchestrator: Orchestrator,
        approval_gate: ApprovalGate,
        dispatcher: ExecutionDispatcher,
        queue: PriorityQueue,
        subtask_manager: SubtaskManager,
        results_merger: ResultsMerger,
    ):
        self.config = config
        self.store = store
        self.cache = cache
        self.context_isolation = context_isolation
        self.orchestrator = orchestrator
        self.approval_gate = approval_gate
        self.dispatcher = dispatcher
        self.queue = queue
        self.subtask_manager = subtask_manager
        self.results_merger = results_merger

    @classmethod
    def from_config(
        cls,
        config: BoomerangConfig,
        dispatcher: Optional[ExecutionDispatcher] = None,
    ) -> "BoomerangService":
        """Build every component from config; a dispatcher may be supplied."""
        store = TaskStore(config.storage_dir)
        cache = TaskCache(
            ttl_seconds=config.cache_ttl_seconds,
            max_size=config.cache_max_size,
            enabled=config.cache_enabled,
        )
        isolation = ContextIsolation()
        orchestrator = Orchestrator(store, cache, isolation)
        approval_gate = ApprovalGate(store)
        dispatcher = dispatcher or ExecutionDispatcher(
            max_concurrent=config.executor_max_concurrent,
            task_timeout_seconds=config.task_timeout_seconds,
            http_timeout_seconds=config.http_timeout_seconds,
            simulation_delay_seconds=config.simulation_delay_seconds,
        )
        queue = PriorityQueue(
            max_size=config.queue_max_size,
            sla_profiles=config.sla_profiles,
            cleanup_interval_seconds=config.queue_cleanup_interval_seconds,
        )
        manager = SubtaskManager(
            store,
            isolation,
            approval_gate,
            dispatcher,
            queue,
            max_concurrent=config.max_concurrent_tasks,
            worker_interval_seconds=config.worker_interval_seconds,
        )
        merger = ResultsMerger(store)
        logger.info(f"Boomerang service configured with storage at {config.storage_dir}")
        return cls(
            config, store, cache, isolation, orchestrator, approval_gate,
            dispatcher, queue, manager, merger,
        )

    async def start(self) -> None:
        await self.subtask_manager.start()

    async def stop(self) -> None:
        await self.subtask_manager.stop()

    # -------------------------------------------------------------------------
    # Boundary operations
    # -------------------------------------------------------------------------
    async def analyze_task(
        self,
        description: str,
        project_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        task = await self.orchestrator.analyze_task(description, project_context)
        return {
            "task_id": task.id,
            "context_id": task.context_id,
            "analysis": task.analysis.to_dict(),
        }

    async def create_subtask(
        self,
        parent_task_id: str,
        subtask_config: Dict[str, Any],
        context_to_pass: Optional[Dict[str, Any]] = None,
        requires_approval: bool = True,
        mode: Optional[str] = None,
        approval_rules: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        subtask = await self.subtask_manager.create_subtask(
            parent_task_id,
            subtask_config,
            context_to_pass,
            requires_approval=requires_approval,
            mode=mode,
            approval_rules=approval_rules,
        )
        context = self.store.load_context(subtask.context_id)
        return {
            "subtask_id": subtask.id,
            "title": subtask.title,
            "status": subtask.status,
            "context_id": subtask.context_id,
            "mode": subtask.mode,
            "approval_status": subtask.approval_status,
            "warnings": list(context.warnings) if context else [],
        }

    async def execute_subtask(
        self,
        subtask_id: str,
        execution_mode: str = ExecutionMode.SIMULATION.value,
    ) -> Dict[str, Any]:
        subtask = await self.subtask_manager.execute_subtask(subtask_id, execution_mode)
        return {
            "subtask_id": subtask.id,
            "status": subtask.status,
            "results": subtask.results,
            "summary": subtask.summary,
        }

    def get_subtask_status(self, subtask_id: str) -> Dict[str, Any]:
        return self.subtask_manager.get_subtask_status(subtask_id)

    async def merge_results(self, parent_task_id: str) -> Dict[str, Any]:
        merged = await self.results_merger.merge_subtask_results(parent_task_id)
        return {
            "merged_results": merged["merged_results"],
            "final_summary": merged["final_summary"],
            "subtask_count": merged["subtask_count"],
        }

    def get_task_progress(self, parent_task_id: str) -> Dict[str, Any]:
        return self.results_merger.get_task_progress(parent_task_id)

    # -------------------------------------------------------------------------
    # Queue, approval and bulk operations
    # -------------------------------------------------------------------------
    async def enqueue_subtask(
        self,
        subtask_id: str,
        priority: Optional[str] = None,
        execution_mode: str = ExecutionMode.SIMULATION.value,
        retry_on_failure: bool = True,
        max_retries: int = 3,
    ) -> Dict[str, Any]:
        queued = await self.subtask_manager.enqueue_subtask(
            subtask_id, priority, execution_mode, retry_on_failure, max_retries,
        )
        return queued.to_dict()

    async def process_approval(
        self,
        approval_id: str,
        decision: str,
        approved_by: str = "system",
        reason: str = "",
    ) -> Dict[str, Any]:
        approval = await self.approval_gate.process_approval(approval_id, decision, approved_by, reason)
        return approval.to_dict()

    def get_pending_approvals(self) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in self.approval_gate.get_pending_approvals()]

    def get_queue_info(self) -> Dict[str, Any]:
        return self.subtask_manager.get_queue_info()

    async def bulk_operation(
        self,
        subtask_ids: List[str],
        operation: str,
        value: Optional[str] = None,
        actor: str = "system",
        reason: str = "",
    ) -> List[Dict[str, Any]]:
        return await self.subtask_manager.bulk_operation(subtask_ids, operation, value, actor, reason)

    async def cleanup(self, max_age_days: int = 30) -> Dict[str, int]:
        """Drop old completed tasks, stale pending approvals and expired cache entries."""
        removed = {
            "tasks": await self.store.cleanup_old_tasks(max_age_days),
            "approvals": await self.approval_gate.cleanup_old_approvals(max_age_days),
            "cache_entries": self.cache.cleanup(),
        }
        logger.info(f"Cleanup removed {removed}")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.get_stats(),
            "queue": self.queue.get_stats(),
            "storage": self.store.get_storage_stats(),
            "executor": self.dispatcher.get_active_tasks_info(),
        }
