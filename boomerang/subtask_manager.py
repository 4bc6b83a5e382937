"""
Boomerang Subtask Manager

Owns the subtask lifecycle and the bounded worker loop.

State machine:
    created -> (requires approval) pending -> approved | rejected
    created | approved | pending -> executing -> completed | failed

Execution paths:
- execute_subtask(): runs immediately and returns the finished subtask
- enqueue_subtask(): places the subtask on the priority queue; the worker
  loop dispatches it when a slot is free

Worker loop:
- every worker_interval seconds (or sooner, when work is enqueued) a tick
  dequeues while the executing set is below max_concurrent
- the slot is reserved before the item is spawned as its own asyncio task,
  so a tick never over-dispatches
- a failed item is re-enqueued with retry_count + 1 and a fresh wait timer
  while its retry budget lasts

The executing set is in-memory only. Rejected subtasks never execute.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from . import modes
from .approval_gate import ApprovalGate, rules_for_mode
from .context_isolation import ContextIsolation
from .errors import (
    ApprovalRejectedError,
    BoomerangError,
    CapacityExceededError,
    ExecutionFailure,
    InvalidStateError,
    NotFoundError,
)
from .execution_dispatcher import ExecutionDispatcher
from .models import (
    ApprovalStatus,
    ExecutionMode,
    IsolatedContext,
    ParentTask,
    Priority,
    Subtask,
    SubtaskConfig,
    SubtaskStatus,
    utc_now_iso,
)
from .priority_queue import PriorityQueue, QueuedTask
from .task_store import TaskStore, generate_id

logger = logging.getLogger("subtask_manager")

# Status -> progress reported by get_subtask_status
STATUS_PROGRESS = {
    SubtaskStatus.CREATED.value: 0,
    SubtaskStatus.EXECUTING.value: 50,
    SubtaskStatus.COMPLETED.value: 100,
}

IDLE_POLL_SECONDS = 0.01


class BulkOperation(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CHANGE_MODE = "change_mode"
    CHANGE_PRIORITY = "change_priority"


class SubtaskManager:
    """Creates, schedules and executes subtasks."""

    def __init__(
        self,
        store: TaskStore,
        context_isolation: ContextIsolation,
        approval_gate: ApprovalGate,
        dispatcher: ExecutionDispatcher,
        queue: PriorityQueue,
        max_concurrent: int = 5,
        worker_interval_seconds: float = 1.0,
    ):
        self.store = store
        self.context_isolation = context_isolation
        self.approval_gate = approval_gate
        self.dispatcher = dispatcher
        self.queue = queue
        self.max_concurrent = max_concurrent
        self.worker_interval_seconds = worker_interval_seconds

        self._executing: Set[str] = set()
        self._inflight: Set[asyncio.Task] = set()
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self.peak_executing = 0

    # -------------------------------------------------------------------------
    # Lookup helpers
    # -------------------------------------------------------------------------
    def _require_subtask(self, subtask_id: str) -> Subtask:
        subtask = self.store.load_subtask(subtask_id)
        if subtask is None:
            raise NotFoundError("subtask", subtask_id)
        return subtask

    def _require_context(self, context_id: str) -> IsolatedContext:
        context = self.store.load_context(context_id)
        if context is None:
            raise NotFoundError("context", context_id)
        return context

    async def _root_context_for(self, parent: ParentTask) -> IsolatedContext:
        """The parent's root context, created if the task predates it."""
        if parent.context_id:
            context = self.store.load_context(parent.context_id)
            if context is not None:
                return context
        root = self.context_isolation.create_isolated_context(
            None, parent.description, parent.project_context, mode=modes.ORCHESTRATOR.id,
        )
        parent.context_id = root.id
        await self.store.save_context(root)
        return root

    @property
    def executing(self) -> Set[str]:
        return set(self._executing)

    def _reserve(self, subtask_id: str) -> None:
        self._executing.add(subtask_id)
        self.peak_executing = max(self.peak_executing, len(self._executing))

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------
    async def create_subtask(
        self,
        parent_task_id: str,
        config: Union[SubtaskConfig, Dict[str, Any]],
        context_to_pass: Optional[Dict[str, Any]] = None,
        *,
        requires_approval: bool = True,
        mode: Optional[str] = None,
        approval_rules: Optional[Dict[str, Any]] = None,
    ) -> Subtask:
        """
        Create a subtask under a parent task.

        The mode is the explicit one, else the suggested one, else selected
        from the description. Missing mode context keys are recorded as
        warnings on the new context. With approval required, auto-approval
        runs immediately and leaves the subtask approved or pending.

        Raises:
            NotFoundError: Parent task or mode does not exist
        """
        parent = self.store.load_parent_task(parent_task_id)
        if parent is None:
            raise NotFoundError("task", parent_task_id)
        if isinstance(config, dict):
            config = SubtaskConfig.from_dict(config)

        if mode:
            selected = modes.get_mode(mode)
        elif config.suggested_mode:
            selected = modes.get_mode(config.suggested_mode)
        else:
            selected = modes.select_best_mode(config.description, config.task_type)

        root = await self._root_context_for(parent)
        context = self.context_isolation.create_isolated_context(
            root, config.description, context_to_pass, mode=selected.id,
        )
        context.warnings = modes.validate_mode_context(selected, context.passed_data)
        if context.warnings:
            logger.warning(
                f"Mode {selected.id} is missing context for '{config.title}': "
                f"{', '.join(context.warnings)}"
            )
        self.context_isolation.link_child(root, context)

        subtask = Subtask(
            id=generate_id("sub"),
            parent_id=parent.id,
            title=config.title,
            description=config.description,
            task_type=config.task_type,
            priority=config.priority,
            mode=selected.id,
            context_id=context.id,
            requires_approval=requires_approval,
            estimated_duration=config.estimated_duration,
            complexity=config.complexity,
            dependencies=list(config.dependencies),
            tags=list(config.tags),
        )
        if not requires_approval:
            subtask.approval_status = ApprovalStatus.APPROVED.value

        await self.store.save_context(context)
        await self.store.save_context(root)
        await self.store.save_task(subtask)
        parent.add_subtask(subtask.id)
        await self.store.save_task(parent)
        logger.info(f"Created subtask {subtask.id} '{subtask.title}' ({selected.id}) under {parent.id}")

        if requires_approval:
            rules = rules_for_mode(selected.id, approval_rules)
            approval = await self.approval_gate.auto_approve(subtask.id, rules)
            if approval.is_pending:
                pending = self._require_subtask(subtask.id)
                pending.status = SubtaskStatus.PENDING.value
                await self.store.save_task(pending)

        return self._require_subtask(subtask.id)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    async def execute_subtask(
        self,
        subtask_id: str,
        execution_mode: str = ExecutionMode.SIMULATION.value,
    ) -> Subtask:
        subtask = self._require_subtask(subtask_id)
        return await self.process_subtask(subtask, execution_mode)

    async def process_subtask(self, subtask: Subtask, execution_mode: str) -> Subtask:
        """
        Run one subtask through the dispatcher.

        Raises:
            ApprovalRejectedError: The subtask was rejected
            InvalidStateError: The subtask is already executing or completed
            CapacityExceededError: The dispatcher is at its ceiling
            ExecutionFailure: The execution strategy failed
        """
        if (subtask.status == SubtaskStatus.REJECTED.value
                or subtask.approval_status == ApprovalStatus.REJECTED.value):
            raise ApprovalRejectedError(subtask.id, subtask.approval_reason)
        if subtask.status in (SubtaskStatus.EXECUTING.value, SubtaskStatus.COMPLETED.value):
            raise InvalidStateError(
                f"Subtask {subtask.id} is already {subtask.status}",
                details={"subtask_id": subtask.id, "status": subtask.status},
            )
        context = self._require_context(subtask.context_id)

        self._reserve(subtask.id)
        try:
            subtask.status = SubtaskStatus.EXECUTING.value
            subtask.started_at = utc_now_iso()
            subtask.error = None
            await self.store.save_task(subtask)
            self.context_isolation.add_to_conversation_history(
                context, f"Execution started ({execution_mode})", role="system",
            )

            try:
                results = await self.dispatcher.execute_task(subtask, execution_mode, context)
            except Exception as e:
                subtask.status = SubtaskStatus.FAILED.value
                subtask.error = str(e)
                subtask.completed_at = utc_now_iso()
                self.context_isolation.mark_failed(context, str(e))
                self.context_isolation.add_to_conversation_history(
                    context, f"Execution failed: {e}", role="system",
                )
                await self.store.save_context(context)
                await self.store.save_task(subtask)
                logger.error(f"Subtask {subtask.id} failed: {e}")
                if isinstance(e, BoomerangError):
                    raise
                raise ExecutionFailure(subtask.id, str(e)) from e

            subtask.results = results
            subtask.summary = self.context_isolation.generate_summary(context, results)
            self.context_isolation.create_upward_context(context, results)
            self.context_isolation.add_to_conversation_history(
                context, "Execution completed", role="system",
            )
            subtask.status = SubtaskStatus.COMPLETED.value
            subtask.completed_at = utc_now_iso()
            await self.store.save_context(context)
            await self.store.save_task(subtask)

            if context.parent_id:
                parent_context = self.store.load_context(context.parent_id)
                if parent_context is not None:
                    self.context_isolation.merge_results(parent_context, subtask)
                    await self.store.save_context(parent_context)

            logger.info(f"Subtask {subtask.id} completed")
            return subtask
        finally:
            self._executing.discard(subtask.id)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------
    async def enqueue_subtask(
        self,
        subtask_id: str,
        priority: Optional[str] = None,
        execution_mode: str = ExecutionMode.SIMULATION.value,
        retry_on_failure: bool = True,
        max_retries: int = 3,
    ) -> QueuedTask:
        subtask = self._require_subtask(subtask_id)
        if subtask.status == SubtaskStatus.REJECTED.value:
            raise ApprovalRejectedError(subtask.id, subtask.approval_reason)
        ExecutionMode(execution_mode)

        queued = self.queue.enqueue(
            subtask.id,
            priority=priority or subtask.priority,
            execution_mode=execution_mode,
            retry_on_failure=retry_on_failure,
            max_retries=max_retries,
        )
        self._wake()
        return queued

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def start(self) -> None:
        """Start the worker loop and the queue's expiry sweep."""
        if self._running:
            logger.warning("Worker loop already running")
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._worker_task = asyncio.create_task(self._worker_loop())
        await self.queue.start()
        logger.info(f"Worker loop started (max_concurrent={self.max_concurrent})")

    async def stop(self) -> None:
        """Stop dispatching and wait for in-flight items to finish."""
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        await self.queue.stop()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("Worker loop stopped")

    async def _worker_loop(self) -> None:
        while self._running:
            try:
                self._tick()
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.worker_interval_seconds)
                except asyncio.TimeoutError:
                    pass
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker loop error: {e}")
                await asyncio.sleep(self.worker_interval_seconds)

    def _tick(self) -> int:
        """Dispatch queued items while slots are free; returns the count."""
        dispatched = 0
        while len(self._executing) < self.max_concurrent:
            head = self.queue.peek()
            if head is None:
                break
            if head.id in self._executing:
                # Same subtask already running; leave it at the head for the next tick
                break
            queued = self.queue.dequeue()
            self._reserve(queued.id)
            task = asyncio.create_task(self.process_queued_task(queued))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            dispatched += 1
        return dispatched

    async def process_queued_task(self, queued: QueuedTask) -> None:
        """Execute a dequeued item, re-enqueueing it on failure while retries remain."""
        try:
            subtask = self.store.load_subtask(queued.id)
            if subtask is None:
                logger.warning(f"Queued subtask {queued.id} not found")
                return

            wait = queued.wait_time(self.queue.now())
            if wait > queued.sla.max_wait_time:
                logger.warning(
                    f"SLA violation detected for {queued.id}: waited {wait:.1f}s "
                    f"(max {queued.sla.max_wait_time:.0f}s)"
                )

            await self.process_subtask(subtask, queued.execution_mode)
        except ApprovalRejectedError as e:
            logger.warning(f"Queued subtask {queued.id} skipped: {e.message}")
        except BoomerangError as e:
            logger.error(f"Failed to process queued task {queued.id}: {e.message}")
            self._retry(queued)
        except Exception as e:
            logger.error(f"Unexpected error processing queued task {queued.id}: {e}")
            self._retry(queued)
        finally:
            self._executing.discard(queued.id)

    def _retry(self, queued: QueuedTask) -> None:
        """Re-enqueue a failed item while its retry budget lasts."""
        if not queued.can_retry:
            logger.error(f"Task {queued.id} failed after {queued.retry_count} retries")
            return
        attempt = queued.retry_count + 1
        try:
            self.queue.requeue(queued)
        except CapacityExceededError as e:
            logger.error(
                f"Retry {attempt}/{queued.max_retries} for task {queued.id} dropped: {e.message}"
            )
            return
        self._wake()
        logger.info(f"Task {queued.id} requeued for retry {attempt}/{queued.max_retries}")

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until the queue is drained and nothing is executing."""
        async def _drain() -> None:
            while len(self.queue) or self._executing or self._inflight:
                await asyncio.sleep(IDLE_POLL_SECONDS)

        await asyncio.wait_for(_drain(), timeout=timeout)

    def cancel_queued_task(self, subtask_id: str) -> Optional[QueuedTask]:
        return self.queue.remove_task(subtask_id)

    def clear_queue(self) -> int:
        return self.queue.clear()

    def get_queue_info(self) -> Dict[str, Any]:
        return {
            "sizes": self.queue.get_sizes(),
            "stats": self.queue.get_stats(),
            "processing_count": len(self._executing),
            "executing": sorted(self._executing),
            "max_concurrent": self.max_concurrent,
            "running": self._running,
            "all_tasks": self.queue.get_all_tasks(),
        }

    # -------------------------------------------------------------------------
    # Modification
    # -------------------------------------------------------------------------
    async def change_mode(self, subtask_id: str, mode_id: str) -> Subtask:
        """Reassign the mode; only allowed while created or approved."""
        subtask = self._require_subtask(subtask_id)
        mode = modes.get_mode(mode_id)
        allowed = {s.value for s in SubtaskStatus.mode_changeable_states()}
        if subtask.status not in allowed:
            raise InvalidStateError(
                f"Cannot change mode of subtask {subtask_id} in status {subtask.status}",
                details={"subtask_id": subtask_id, "status": subtask.status},
            )

        previous = subtask.mode
        subtask.mode = mode.id
        await self.store.save_task(subtask)

        context = self.store.load_context(subtask.context_id)
        if context is not None:
            context.mode = mode.id
            context.warnings = modes.validate_mode_context(mode, context.passed_data)
            await self.store.save_context(context)

        logger.info(f"Subtask {subtask_id} mode changed {previous} -> {mode.id}")
        return subtask

    async def change_priority(self, subtask_id: str, priority: str) -> Subtask:
        """Update the subtask priority and re-tag it on the queue if queued."""
        priority = Priority(priority).value
        subtask = self._require_subtask(subtask_id)
        subtask.priority = priority
        await self.store.save_task(subtask)
        if self.queue.change_priority(subtask_id, priority):
            logger.info(f"Queued subtask {subtask_id} moved to {priority}")
        return subtask

    async def bulk_operation(
        self,
        subtask_ids: List[str],
        operation: str,
        value: Optional[str] = None,
        actor: str = "system",
        reason: str = "",
    ) -> List[Dict[str, Any]]:
        """
        Apply one operation to many subtasks.

        Each id succeeds or fails on its own; failures are reported in the
        result list, never raised.
        """
        op = BulkOperation(operation)
        if op in (BulkOperation.CHANGE_MODE, BulkOperation.CHANGE_PRIORITY) and not value:
            raise ValueError(f"Operation {op.value} requires a value")

        results = []
        for subtask_id in subtask_ids:
            try:
                if op in (BulkOperation.APPROVE, BulkOperation.REJECT):
                    await self._decide(subtask_id, op, actor, reason)
                elif op == BulkOperation.CHANGE_MODE:
                    await self.change_mode(subtask_id, value)
                elif op == BulkOperation.CHANGE_PRIORITY:
                    await self.change_priority(subtask_id, value)
                results.append({"subtask_id": subtask_id, "success": True, "error": None})
            except (BoomerangError, ValueError) as e:
                results.append({"subtask_id": subtask_id, "success": False, "error": str(e)})

        succeeded = sum(1 for r in results if r["success"])
        logger.info(f"Bulk {op.value}: {succeeded}/{len(results)} succeeded")
        return results

    async def _decide(self, subtask_id: str, op: BulkOperation, actor: str, reason: str) -> None:
        self._require_subtask(subtask_id)
        approval = self.approval_gate.get_pending_approval_for(subtask_id)
        if approval is None:
            raise InvalidStateError(
                f"Subtask {subtask_id} has no pending approval",
                details={"subtask_id": subtask_id},
            )
        decision = ApprovalStatus.APPROVED if op == BulkOperation.APPROVE else ApprovalStatus.REJECTED
        await self.approval_gate.process_approval(approval.id, decision.value, actor, reason)

    # -------------------------------------------------------------------------
    # Status and conversation
    # -------------------------------------------------------------------------
    def get_subtask_status(self, subtask_id: str) -> Dict[str, Any]:
        subtask = self._require_subtask(subtask_id)
        return {
            "id": subtask.id,
            "parent_id": subtask.parent_id,
            "title": subtask.title,
            "status": subtask.status,
            "mode": subtask.mode,
            "priority": subtask.priority,
            "approval_status": subtask.approval_status,
            "progress": STATUS_PROGRESS.get(subtask.status, 0),
            "created_at": subtask.created_at,
            "started_at": subtask.started_at,
            "completed_at": subtask.completed_at,
            "summary": subtask.summary,
            "error": subtask.error,
            "queued": self.queue.get_task(subtask.id) is not None,
        }

    async def add_conversation_message(
        self,
        subtask_id: str,
        message: str,
        role: str = "user",
    ) -> Dict[str, Any]:
        subtask = self._require_subtask(subtask_id)
        context = self._require_context(subtask.context_id)
        entry = self.context_isolation.add_to_conversation_history(context, message, role)
        await self.store.save_context(context)
        return entry
