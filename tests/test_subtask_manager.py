"""
Unit Tests for the Subtask Manager

Test coverage for:
- Subtask creation, mode assignment and approval outcome
- Synchronous execution and the upward/sibling context flow
- Worker loop ordering, concurrency bound and retries
- Mode/priority changes and bulk operations
"""

import logging
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from boomerang.errors import (
    ApprovalRejectedError,
    CapacityExceededError,
    ExecutionFailure,
    InvalidStateError,
    NotFoundError,
)
from boomerang.service import BoomerangService

from .conftest import AUTH_TASK_DESCRIPTION


def subtask_config(**overrides):
    config = {
        "title": "Login endpoint",
        "description": "Implement the login function",
        "type": "implementation",
        "priority": "medium",
    }
    config.update(overrides)
    return config


async def new_parent(service, description=AUTH_TASK_DESCRIPTION):
    return await service.orchestrator.analyze_task(description, {"requirements": ["secure"]})


def failing_dispatcher(error: Exception) -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.execute_task = AsyncMock(side_effect=error)
    return dispatcher


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------
class TestCreateSubtask:
    """Tests for create_subtask."""

    @pytest.mark.asyncio
    async def test_unknown_parent(self, service):
        with pytest.raises(NotFoundError):
            await service.subtask_manager.create_subtask("task-missing", subtask_config())

    @pytest.mark.asyncio
    async def test_without_approval(self, service):
        parent = await new_parent(service)
        subtask = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), requires_approval=False,
        )

        assert subtask.status == "created"
        assert subtask.approval_status == "approved"
        assert subtask.mode == "code"
        assert service.store.list_approvals() == []
        assert service.store.load_parent_task(parent.id).subtasks == [subtask.id]

    @pytest.mark.asyncio
    async def test_mode_precedence(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager

        explicit = await manager.create_subtask(
            parent.id, subtask_config(suggested_mode="test"), requires_approval=False, mode="debug",
        )
        suggested = await manager.create_subtask(
            parent.id, subtask_config(suggested_mode="test"), requires_approval=False,
        )
        selected = await manager.create_subtask(
            parent.id, subtask_config(description="Design the schema", type="design"), requires_approval=False,
        )

        assert explicit.mode == "debug"
        assert suggested.mode == "test"
        assert selected.mode == "architect"

    @pytest.mark.asyncio
    async def test_unknown_mode(self, service):
        parent = await new_parent(service)
        with pytest.raises(NotFoundError):
            await service.subtask_manager.create_subtask(
                parent.id, subtask_config(), requires_approval=False, mode="wizard",
            )

    @pytest.mark.asyncio
    async def test_missing_mode_context_recorded_as_warnings(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager

        bare = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        complete = await manager.create_subtask(
            parent.id,
            subtask_config(),
            {"technical_specs": "OpenAPI v3", "data": {"existing_codebase": "src/"}},
            requires_approval=False,
        )

        assert service.store.load_context(bare.context_id).warnings == [
            "technical_specs", "existing_codebase",
        ]
        assert service.store.load_context(complete.context_id).warnings == []

    @pytest.mark.asyncio
    async def test_context_is_isolated_and_sanitized(self, service):
        parent = await new_parent(service)
        subtask = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), {"db_password": "hunter2", "table": "users"}, requires_approval=False,
        )

        context = service.store.load_context(subtask.context_id)
        assert context.parent_id == parent.context_id
        assert context.passed_data == {"db_password": "[REDACTED]", "table": "users"}
        assert context.downward_context["inherited"]["global_requirements"] == ["secure"]
        root = service.store.load_context(parent.context_id)
        assert root.child_contexts == [context.id]

    @pytest.mark.asyncio
    async def test_manual_review_leaves_pending(self, service):
        parent = await new_parent(service)
        subtask = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(description="Design the schema", type="design"),
        )

        assert subtask.mode == "architect"
        assert subtask.status == "pending"
        assert subtask.approval_status == "pending"
        pending = service.approval_gate.get_pending_approvals()
        assert [a.subtask_id for a in pending] == [subtask.id]

    @pytest.mark.asyncio
    async def test_auto_approved(self, service):
        parent = await new_parent(service)
        subtask = await service.subtask_manager.create_subtask(
            parent.id,
            subtask_config(type="design", priority="low", estimated_duration="10-20 minutes"),
            mode="docs",
        )

        assert subtask.status == "approved"
        assert subtask.approval_status == "approved"
        history = service.approval_gate.get_approval_history(subtask.id)
        assert history[0].approved_by == "auto-approval-system"

    @pytest.mark.asyncio
    async def test_caller_rules_override_mode_defaults(self, service):
        parent = await new_parent(service)
        subtask = await service.subtask_manager.create_subtask(
            parent.id,
            subtask_config(description="Design the schema", type="design"),
            approval_rules={
                "requires_manual_review": False,
                "allowed_modes": ["architect"],
                "max_impact": "high",
            },
        )
        assert subtask.status == "approved"


# -----------------------------------------------------------------------------
# Synchronous Execution
# -----------------------------------------------------------------------------
class TestExecuteSubtask:
    """Tests for execute_subtask / process_subtask."""

    @pytest.mark.asyncio
    async def test_simulated_execution_completes(self, service):
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), requires_approval=False,
        )

        subtask = await service.subtask_manager.execute_subtask(created.id)

        assert subtask.status == "completed"
        assert subtask.started_at is not None
        assert subtask.completed_at is not None
        assert subtask.results["mode"] == "simulation"
        assert subtask.summary["context_id"] == subtask.context_id

        context = service.store.load_context(subtask.context_id)
        assert context.status == "completed"
        assert context.upward_context["key_outputs"] == subtask.results["key_outputs"]
        assert [e["message"] for e in context.conversation_history] == [
            "Execution started (simulation)", "Execution completed",
        ]
        assert service.subtask_manager.executing == set()

    @pytest.mark.asyncio
    async def test_cannot_execute_twice(self, service):
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), requires_approval=False,
        )
        await service.subtask_manager.execute_subtask(created.id)

        with pytest.raises(InvalidStateError):
            await service.subtask_manager.execute_subtask(created.id)

    @pytest.mark.asyncio
    async def test_pending_subtask_may_execute(self, service):
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(description="Design the schema", type="design"),
        )
        assert created.status == "pending"

        subtask = await service.subtask_manager.execute_subtask(created.id)
        assert subtask.status == "completed"

    @pytest.mark.asyncio
    async def test_rejected_subtask_never_executes(self, service):
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(description="Design the schema", type="design"),
        )
        approval = service.approval_gate.get_pending_approval_for(created.id)
        await service.approval_gate.process_approval(approval.id, "rejected", reason="out of scope")

        with pytest.raises(ApprovalRejectedError):
            await service.subtask_manager.execute_subtask(created.id)
        assert service.store.load_subtask(created.id).status == "rejected"

    @pytest.mark.asyncio
    async def test_unknown_subtask(self, service):
        with pytest.raises(NotFoundError):
            await service.subtask_manager.execute_subtask("sub-missing")

    @pytest.mark.asyncio
    async def test_failure_marks_failed(self, config):
        service = BoomerangService.from_config(config, dispatcher=failing_dispatcher(RuntimeError("boom")))
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), requires_approval=False,
        )

        with pytest.raises(ExecutionFailure) as exc_info:
            await service.subtask_manager.execute_subtask(created.id)
        assert exc_info.value.reason == "boom"

        subtask = service.store.load_subtask(created.id)
        assert subtask.status == "failed"
        assert subtask.error == "boom"
        context = service.store.load_context(subtask.context_id)
        assert context.status == "failed"
        assert context.upward_context is None

    @pytest.mark.asyncio
    async def test_capacity_error_propagates_unchanged(self, config):
        error = CapacityExceededError("Maximum concurrent executions (1) reached", limit=1)
        service = BoomerangService.from_config(config, dispatcher=failing_dispatcher(error))
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), requires_approval=False,
        )

        with pytest.raises(CapacityExceededError):
            await service.subtask_manager.execute_subtask(created.id, "real")

    @pytest.mark.asyncio
    async def test_completed_sibling_visible_to_later_subtasks(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        first = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        await manager.execute_subtask(first.id)

        second = await manager.create_subtask(
            parent.id, subtask_config(title="Tests", type="testing"), requires_approval=False,
        )
        siblings = service.store.load_context(second.context_id).downward_context["sibling_results"]
        assert [s["subtask_id"] for s in siblings] == [first.id]


# -----------------------------------------------------------------------------
# Worker Loop
# -----------------------------------------------------------------------------
class TestWorkerLoop:
    """Tests for queued execution."""

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_limit(self, config):
        service = BoomerangService.from_config(replace(config, max_concurrent_tasks=2))
        parent = await new_parent(service)
        manager = service.subtask_manager
        ids = []
        for i in range(5):
            created = await manager.create_subtask(
                parent.id, subtask_config(title=f"Part {i}"), requires_approval=False,
            )
            await manager.enqueue_subtask(created.id)
            ids.append(created.id)

        await service.start()
        try:
            await manager.wait_until_idle(timeout=10)
        finally:
            await service.stop()

        assert manager.peak_executing == 2
        assert all(service.store.load_subtask(i).status == "completed" for i in ids)

    @pytest.mark.asyncio
    async def test_priority_order_with_single_slot(self, config):
        service = BoomerangService.from_config(replace(config, max_concurrent_tasks=1))
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = {}
        for priority in ("low", "high", "medium"):
            subtask = await manager.create_subtask(
                parent.id, subtask_config(title=priority, priority=priority), requires_approval=False,
            )
            await manager.enqueue_subtask(subtask.id)
            created[priority] = subtask.id

        await service.start()
        try:
            await manager.wait_until_idle(timeout=10)
        finally:
            await service.stop()

        started = {p: service.store.load_subtask(i).started_at for p, i in created.items()}
        assert started["high"] < started["medium"] < started["low"]

    @pytest.mark.asyncio
    async def test_failed_item_retried_until_budget_exhausted(self, config):
        dispatcher = failing_dispatcher(RuntimeError("flaky"))
        service = BoomerangService.from_config(config, dispatcher=dispatcher)
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)

        await manager.enqueue_subtask(created.id, max_retries=2)
        await service.start()
        try:
            await manager.wait_until_idle(timeout=10)
        finally:
            await service.stop()

        assert dispatcher.execute_task.await_count == 3
        assert service.store.load_subtask(created.id).status == "failed"
        assert service.queue.stats.enqueued["medium"] == 3

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, config):
        dispatcher = failing_dispatcher(RuntimeError("flaky"))
        service = BoomerangService.from_config(config, dispatcher=dispatcher)
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)

        await manager.enqueue_subtask(created.id, retry_on_failure=False)
        await service.start()
        try:
            await manager.wait_until_idle(timeout=10)
        finally:
            await service.stop()

        assert dispatcher.execute_task.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_dropped_when_queue_full_is_logged(self, config, caplog):
        dispatcher = failing_dispatcher(RuntimeError("flaky"))
        service = BoomerangService.from_config(replace(config, queue_max_size=1), dispatcher=dispatcher)
        parent = await new_parent(service)
        manager = service.subtask_manager
        first = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        second = await manager.create_subtask(parent.id, subtask_config(title="Other"), requires_approval=False)

        await manager.enqueue_subtask(first.id)
        queued = service.queue.dequeue()
        await manager.enqueue_subtask(second.id)

        with caplog.at_level(logging.ERROR, logger="subtask_manager"):
            await manager.process_queued_task(queued)

        assert service.queue.get_task(first.id) is None
        assert service.queue.get_task(second.id) is not None
        assert service.store.load_subtask(first.id).status == "failed"
        assert any(
            first.id in r.getMessage() and "dropped" in r.getMessage() for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(self, config):
        service = BoomerangService.from_config(config)
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        await manager.enqueue_subtask(created.id)
        queued = service.queue.dequeue()

        service.store.save_task = AsyncMock(side_effect=OSError("disk full"))
        await manager.process_queued_task(queued)

        requeued = service.queue.get_task(created.id)
        assert requeued is not None
        assert requeued.retry_count == 1
        assert manager.get_queue_info()["processing_count"] == 0

    @pytest.mark.asyncio
    async def test_item_already_executing_stays_at_head(self, config):
        service = BoomerangService.from_config(config)
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        queued = await manager.enqueue_subtask(created.id)
        manager._executing.add(created.id)

        assert manager._tick() == 0

        head = service.queue.peek()
        assert head.id == created.id
        assert head.queued_at == queued.queued_at
        assert service.queue.stats.enqueued["medium"] == 1
        assert service.queue.stats.dequeued["medium"] == 0

    @pytest.mark.asyncio
    async def test_enqueue_rejected_subtask(self, service):
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(description="Design the schema", type="design"),
        )
        await service.subtask_manager.bulk_operation([created.id], "reject")

        with pytest.raises(ApprovalRejectedError):
            await service.subtask_manager.enqueue_subtask(created.id)

    @pytest.mark.asyncio
    async def test_enqueue_invalid_execution_mode(self, service):
        parent = await new_parent(service)
        created = await service.subtask_manager.create_subtask(
            parent.id, subtask_config(), requires_approval=False,
        )
        with pytest.raises(ValueError):
            await service.subtask_manager.enqueue_subtask(created.id, execution_mode="dry-run")

    @pytest.mark.asyncio
    async def test_queue_info_and_cancel(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        await manager.enqueue_subtask(created.id, priority="high")

        info = manager.get_queue_info()
        assert info["sizes"]["high"] == 1
        assert info["running"] is False
        assert manager.get_subtask_status(created.id)["queued"] is True

        assert manager.cancel_queued_task(created.id).id == created.id
        assert manager.get_subtask_status(created.id)["queued"] is False


# -----------------------------------------------------------------------------
# Modification
# -----------------------------------------------------------------------------
class TestModification:
    """Tests for mode/priority changes and bulk operations."""

    @pytest.mark.asyncio
    async def test_change_mode_updates_context(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)

        subtask = await manager.change_mode(created.id, "test")
        assert subtask.mode == "test"
        context = service.store.load_context(created.context_id)
        assert context.mode == "test"
        assert context.warnings == ["code_to_test", "test_requirements"]

    @pytest.mark.asyncio
    async def test_change_mode_rejected_after_completion(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        await manager.execute_subtask(created.id)

        with pytest.raises(InvalidStateError):
            await manager.change_mode(created.id, "test")

    @pytest.mark.asyncio
    async def test_change_mode_rejected_while_pending(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(
            parent.id, subtask_config(description="Design the schema", type="design"),
        )
        with pytest.raises(InvalidStateError):
            await manager.change_mode(created.id, "code")

    @pytest.mark.asyncio
    async def test_change_priority_retags_queued_item(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        await manager.enqueue_subtask(created.id)

        subtask = await manager.change_priority(created.id, "high")
        assert subtask.priority == "high"
        queued = service.queue.get_task(created.id)
        assert queued.priority == "high"
        assert queued.sla.max_wait_time == 30

        with pytest.raises(ValueError):
            await manager.change_priority(created.id, "urgent")

    @pytest.mark.asyncio
    async def test_bulk_approve_reports_per_id(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        pending = [
            await manager.create_subtask(
                parent.id, subtask_config(title=f"Design {i}", description="Design the schema", type="design"),
            )
            for i in range(2)
        ]
        unapproved = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)
        ids = [p.id for p in pending] + ["sub-missing", unapproved.id]

        results = await manager.bulk_operation(ids, "approve", actor="alice")

        assert [r["success"] for r in results] == [True, True, False, False]
        assert results[2]["error"] == "Subtask sub-missing not found"
        for p in pending:
            subtask = service.store.load_subtask(p.id)
            assert subtask.status == "approved"
            assert subtask.approval_status == "approved"

    @pytest.mark.asyncio
    async def test_bulk_change_priority(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)

        results = await manager.bulk_operation([created.id], "change_priority", value="low")
        assert results[0]["success"] is True
        assert service.store.load_subtask(created.id).priority == "low"

    @pytest.mark.asyncio
    async def test_bulk_change_mode_requires_value(self, service):
        with pytest.raises(ValueError):
            await service.subtask_manager.bulk_operation(["sub-1"], "change_mode")

    @pytest.mark.asyncio
    async def test_bulk_unknown_operation(self, service):
        with pytest.raises(ValueError):
            await service.subtask_manager.bulk_operation(["sub-1"], "delete")


# -----------------------------------------------------------------------------
# Status and Conversation
# -----------------------------------------------------------------------------
class TestStatus:
    """Tests for get_subtask_status and conversation messages."""

    @pytest.mark.asyncio
    async def test_progress_follows_status(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)

        assert manager.get_subtask_status(created.id)["progress"] == 0
        await manager.execute_subtask(created.id)
        status = manager.get_subtask_status(created.id)
        assert status["progress"] == 100
        assert status["status"] == "completed"
        assert status["summary"] is not None

    @pytest.mark.asyncio
    async def test_add_conversation_message(self, service):
        parent = await new_parent(service)
        manager = service.subtask_manager
        created = await manager.create_subtask(parent.id, subtask_config(), requires_approval=False)

        entry = await manager.add_conversation_message(created.id, "Use bcrypt")
        assert entry["role"] == "user"
        assert entry["mode"] == "code"
        history = service.store.load_context(created.context_id).conversation_history
        assert history[-1]["message"] == "Use bcrypt"
