"""
Unit Tests for the Approval Gate

Test coverage for:
- Impact scoring and banding
- Auto-approval rule evaluation and mode defaults
- Terminal decisions kept in lockstep with the subtask
- Queries and cleanup
"""

from datetime import timedelta

import pytest

from boomerang.approval_gate import (
    AUTO_APPROVER,
    ApprovalGate,
    AutoApprovalRules,
    ImpactLevel,
    parse_estimated_time,
    rules_for_mode,
)
from boomerang.errors import InvalidStateError, NotFoundError
from boomerang.models import ApprovalRequest, utc_now

from .conftest import make_subtask


@pytest.fixture
def gate(store):
    return ApprovalGate(store)


async def saved_subtask(store, **overrides):
    subtask = make_subtask(**overrides)
    await store.save_task(subtask)
    return subtask


# -----------------------------------------------------------------------------
# Impact
# -----------------------------------------------------------------------------
class TestImpact:
    """Tests for impact scoring."""

    @pytest.mark.parametrize("priority,task_type,mode,score,level", [
        ("low", "design", "docs", 2, ImpactLevel.LOW),
        ("low", "testing", "test", 3, ImpactLevel.MEDIUM),
        ("medium", "implementation", "docs", 4, ImpactLevel.MEDIUM),
        ("high", "deployment", "code", 8, ImpactLevel.HIGH),
        ("high", "execution", "orchestrator", 3, ImpactLevel.MEDIUM),
    ])
    def test_score_and_level(self, gate, priority, task_type, mode, score, level):
        subtask = make_subtask(priority=priority, task_type=task_type, mode=mode)
        assert gate.impact_score(subtask) == score
        assert gate.assess_impact(subtask) == level


class TestRules:
    """Tests for rule evaluation and mode defaults."""

    @pytest.mark.parametrize("duration,minutes", [
        ("15-30 minutes", 22.5),
        ("45 minutes", 45.0),
        (None, 30.0),
        ("soon", 30.0),
    ])
    def test_parse_estimated_time(self, duration, minutes):
        assert parse_estimated_time(duration) == minutes

    def test_all_criteria_met(self, gate):
        subtask = make_subtask(priority="low", task_type="design", mode="docs", estimated_duration="10-20 minutes")
        evaluation = gate.evaluate_rules(subtask, AutoApprovalRules())
        assert evaluation.approved is True
        assert evaluation.reason == "All auto-approval criteria met"

    def test_every_failed_criterion_reported(self, gate):
        subtask = make_subtask(priority="high", task_type="deployment", mode="architect", estimated_duration="60 minutes")
        rules = AutoApprovalRules(requires_manual_review=True)
        evaluation = gate.evaluate_rules(subtask, rules)
        assert evaluation.approved is False
        assert "Impact high exceeds maximum low" in evaluation.reason
        assert "Mode architect not in allowed modes" in evaluation.reason
        assert "Estimated time 60min exceeds maximum 30min" in evaluation.reason
        assert "Manual review explicitly required" in evaluation.reason

    def test_mode_defaults(self):
        assert rules_for_mode("docs").max_impact == "medium"
        assert rules_for_mode("test").max_estimated_time == 60
        assert rules_for_mode("architect").requires_manual_review is True
        assert rules_for_mode("code") == AutoApprovalRules()

    def test_caller_rules_override_mode_defaults(self):
        rules = rules_for_mode("architect", {"requires_manual_review": False, "unknown": 1})
        assert rules.requires_manual_review is False

    def test_merged_does_not_share_lists(self):
        base = AutoApprovalRules()
        merged = base.merged(None)
        merged.allowed_modes.append("debug")
        assert base.allowed_modes == ["code", "test", "docs"]


# -----------------------------------------------------------------------------
# Requests and Decisions
# -----------------------------------------------------------------------------
class TestDecisions:
    """Tests for request_approval, auto_approve and process_approval."""

    @pytest.mark.asyncio
    async def test_request_metadata(self, gate, store):
        subtask = await saved_subtask(store)
        approval = await gate.request_approval(subtask.id, metadata={"requested_by": "agent"})

        assert approval.status == "pending"
        assert approval.approval_type == "creation"
        assert approval.metadata["impact_score"] == 6
        assert approval.metadata["estimated_impact"] == "high"
        assert approval.metadata["requested_by"] == "agent"

    @pytest.mark.asyncio
    async def test_request_for_unknown_subtask(self, gate):
        with pytest.raises(NotFoundError):
            await gate.request_approval("sub-missing")

    @pytest.mark.asyncio
    async def test_auto_approve_when_rules_hold(self, gate, store):
        subtask = await saved_subtask(
            store, priority="low", task_type="design", mode="docs", estimated_duration="10-20 minutes",
        )
        approval = await gate.auto_approve(subtask.id)

        assert approval.status == "approved"
        assert approval.approved_by == AUTO_APPROVER
        updated = store.load_subtask(subtask.id)
        assert updated.approval_status == "approved"
        assert updated.status == "approved"

    @pytest.mark.asyncio
    async def test_auto_approve_leaves_pending(self, gate, store):
        subtask = await saved_subtask(store, mode="architect")
        approval = await gate.auto_approve(subtask.id, rules_for_mode("architect"))

        assert approval.status == "pending"
        assert approval.metadata["requires_manual_review"] is True
        assert approval.metadata["evaluation_result"]["approved"] is False
        assert gate.get_pending_approvals()[0].id == approval.id

    @pytest.mark.asyncio
    async def test_decision_is_terminal(self, gate, store):
        subtask = await saved_subtask(store)
        approval = await gate.request_approval(subtask.id)
        await gate.process_approval(approval.id, "approved", approved_by="alice", reason="looks good")

        with pytest.raises(InvalidStateError):
            await gate.process_approval(approval.id, "rejected")

        stored = store.load_approval(approval.id)
        assert stored.status == "approved"
        assert stored.approved_by == "alice"
        assert store.load_subtask(subtask.id).approval_status == "approved"

    @pytest.mark.asyncio
    async def test_rejection_updates_subtask(self, gate, store):
        subtask = await saved_subtask(store, status="pending")
        approval = await gate.request_approval(subtask.id)
        await gate.process_approval(approval.id, "rejected", reason="too risky")

        updated = store.load_subtask(subtask.id)
        assert updated.status == "rejected"
        assert updated.approval_status == "rejected"
        assert updated.approval_reason == "too risky"

    @pytest.mark.asyncio
    async def test_completed_subtask_keeps_status(self, gate, store):
        subtask = await saved_subtask(store, status="completed")
        approval = await gate.request_approval(subtask.id, "completion")
        await gate.process_approval(approval.id, "approved")

        updated = store.load_subtask(subtask.id)
        assert updated.status == "completed"
        assert updated.approval_status == "approved"

    @pytest.mark.asyncio
    async def test_invalid_decision(self, gate, store):
        subtask = await saved_subtask(store)
        approval = await gate.request_approval(subtask.id)
        with pytest.raises(ValueError):
            await gate.process_approval(approval.id, "maybe")

    @pytest.mark.asyncio
    async def test_unknown_approval(self, gate):
        with pytest.raises(NotFoundError):
            await gate.process_approval("apr-missing", "approved")


# -----------------------------------------------------------------------------
# Queries and Cleanup
# -----------------------------------------------------------------------------
class TestQueries:
    """Tests for history, pending lookup and cleanup."""

    @pytest.mark.asyncio
    async def test_history_and_pending_for(self, gate, store):
        subtask = await saved_subtask(store)
        first = await gate.request_approval(subtask.id)
        await gate.process_approval(first.id, "approved")
        second = await gate.request_approval(subtask.id, "execution")

        history = gate.get_approval_history(subtask.id)
        assert {a.id for a in history} == {first.id, second.id}
        assert gate.get_pending_approval_for(subtask.id).id == second.id
        assert gate.get_pending_approval_for("sub-other") is None

    @pytest.mark.asyncio
    async def test_cleanup_old_pending(self, gate, store):
        subtask = await saved_subtask(store)
        old = ApprovalRequest(
            id="apr-old",
            subtask_id=subtask.id,
            approval_type="creation",
            requested_at=(utc_now() - timedelta(days=40)).isoformat(),
        )
        await store.save_approval(old)
        recent = await gate.request_approval(subtask.id)

        assert await gate.cleanup_old_approvals(max_age_days=30) == 1
        assert store.load_approval("apr-old") is None
        assert store.load_approval(recent.id) is not None
