"""
Boomerang Approval Gate

Decides whether a subtask may proceed without a human.

Impact score = priority weight + task type weight + mode weight, banded into
low / medium / high. Auto-approval holds only when every rule passes:

- impact <= max_impact
- mode in allowed_modes
- estimated minutes <= max_estimated_time
- requires_manual_review is False

Decisions are terminal: a request leaves PENDING exactly once, and the
subtask's approval_status/status are updated in the same step.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidStateError, NotFoundError
from .models import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalType,
    Subtask,
    SubtaskStatus,
    parse_iso,
    utc_now,
    utc_now_iso,
)
from .task_store import TaskStore, generate_id

logger = logging.getLogger("approval_gate")

AUTO_APPROVER = "auto-approval-system"
DEFAULT_ESTIMATED_MINUTES = 30.0

_RANGE_RE = re.compile(r"(\d+)\s*-\s*(\d+)")
_NUMBER_RE = re.compile(r"(\d+)")


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


@dataclass(frozen=True)
class ImpactPolicy:
    """Weights and bands for impact scoring."""
    priority_weights: Tuple[Tuple[str, int], ...] = (("low", 1), ("medium", 2), ("high", 3))
    type_weights: Tuple[Tuple[str, int], ...] = (
        ("deployment", 3), ("implementation", 2), ("testing", 1), ("design", 1),
    )
    mode_weights: Tuple[Tuple[str, int], ...] = (
        ("architect", 2), ("code", 2), ("debug", 1), ("test", 1), ("review", 1), ("docs", 0),
    )
    low_max: int = 2
    medium_max: int = 4

    def score(self, subtask: Subtask) -> int:
        return (
            dict(self.priority_weights).get(subtask.priority, 0)
            + dict(self.type_weights).get(subtask.task_type, 0)
            + dict(self.mode_weights).get(subtask.mode, 0)
        )

    def level(self, score: int) -> ImpactLevel:
        if score <= self.low_max:
            return ImpactLevel.LOW
        if score <= self.medium_max:
            return ImpactLevel.MEDIUM
        return ImpactLevel.HIGH


@dataclass
class AutoApprovalRules:
    max_impact: str = ImpactLevel.LOW.value
    allowed_modes: List[str] = field(default_factory=lambda: ["code", "test", "docs"])
    max_estimated_time: float = 30.0
    requires_manual_review: bool = False

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "AutoApprovalRules":
        """Copy with the given fields replaced; unknown keys are ignored."""
        if not overrides:
            return replace(self, allowed_modes=list(self.allowed_modes))
        known = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__}
        merged = replace(self, **known)
        merged.allowed_modes = list(merged.allowed_modes)
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_impact": self.max_impact,
            "allowed_modes": list(self.allowed_modes),
            "max_estimated_time": self.max_estimated_time,
            "requires_manual_review": self.requires_manual_review,
        }


# Mode-specific adjustments applied on top of the defaults before caller rules
MODE_DEFAULT_RULES: Dict[str, Dict[str, Any]] = {
    "docs": {"max_impact": ImpactLevel.MEDIUM.value},
    "test": {"max_estimated_time": 60},
    "architect": {"requires_manual_review": True},
}


def rules_for_mode(mode_id: str, overrides: Optional[Dict[str, Any]] = None) -> AutoApprovalRules:
    rules = AutoApprovalRules().merged(MODE_DEFAULT_RULES.get(mode_id))
    return rules.merged(overrides)


def parse_estimated_time(duration: Optional[str]) -> float:
    """
    Minutes from an estimate string.

    "15-30 minutes" -> 22.5, "45 minutes" -> 45, missing -> 30.
    """
    if not duration:
        return DEFAULT_ESTIMATED_MINUTES
    match = _RANGE_RE.search(duration)
    if match:
        return (int(match.group(1)) + int(match.group(2))) / 2
    match = _NUMBER_RE.search(duration)
    if match:
        return float(match.group(1))
    return DEFAULT_ESTIMATED_MINUTES


@dataclass
class RuleEvaluation:
    approved: bool
    reason: str
    impact: str
    estimated_minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "reason": self.reason,
            "impact": self.impact,
            "estimated_minutes": self.estimated_minutes,
        }


class ApprovalGate:
    """Creates, evaluates and decides approval requests."""

    def __init__(self, store: TaskStore, impact_policy: Optional[ImpactPolicy] = None):
        self.store = store
        self.impact_policy = impact_policy or ImpactPolicy()

    def _require_subtask(self, subtask_id: str) -> Subtask:
        subtask = self.store.load_subtask(subtask_id)
        if subtask is None:
            raise NotFoundError("subtask", subtask_id)
        return subtask

    # -------------------------------------------------------------------------
    # Impact
    # -------------------------------------------------------------------------
    def impact_score(self, subtask: Subtask) -> int:
        return self.impact_policy.score(subtask)

    def assess_impact(self, subtask: Subtask) -> ImpactLevel:
        return self.impact_policy.level(self.impact_score(subtask))

    def evaluate_rules(self, subtask: Subtask, rules: AutoApprovalRules) -> RuleEvaluation:
        impact = self.assess_impact(subtask)
        minutes = parse_estimated_time(subtask.estimated_duration)
        reasons = []

        if impact.rank > ImpactLevel(rules.max_impact).rank:
            reasons.append(f"Impact {impact.value} exceeds maximum {rules.max_impact}")
        if subtask.mode not in rules.allowed_modes:
            reasons.append(
                f"Mode {subtask.mode} not in allowed modes: {', '.join(rules.allowed_modes)}"
            )
        if minutes > rules.max_estimated_time:
            reasons.append(
                f"Estimated time {minutes:g}min exceeds maximum {rules.max_estimated_time:g}min"
            )
        if rules.requires_manual_review:
            reasons.append("Manual review explicitly required")

        approved = not reasons
        return RuleEvaluation(
            approved=approved,
            reason="All auto-approval criteria met" if approved else "; ".join(reasons),
            impact=impact.value,
            estimated_minutes=minutes,
        )

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------
    async def request_approval(
        self,
        subtask_id: str,
        approval_type: str = ApprovalType.CREATION.value,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        subtask = self._require_subtask(subtask_id)
        score = self.impact_score(subtask)

        request_metadata = {
            "task_title": subtask.title,
            "task_description": subtask.description,
            "mode": subtask.mode,
            "priority": subtask.priority,
            "estimated_impact": self.impact_policy.level(score).value,
            "impact_score": score,
        }
        request_metadata.update(metadata or {})

        approval = ApprovalRequest(
            id=generate_id("apr"),
            subtask_id=subtask_id,
            approval_type=approval_type,
            metadata=request_metadata,
        )
        await self.store.save_approval(approval)
        logger.info(
            f"Approval {approval.id} requested for subtask {subtask_id} "
            f"({approval_type}, impact={request_metadata['estimated_impact']})"
        )
        return approval

    async def auto_approve(
        self,
        subtask_id: str,
        rules: Optional[AutoApprovalRules] = None,
    ) -> ApprovalRequest:
        """
        Evaluate rules and either approve immediately or leave a pending request.

        Returns:
            The approval request, approved or pending
        """
        subtask = self._require_subtask(subtask_id)
        rules = rules or AutoApprovalRules()
        evaluation = self.evaluate_rules(subtask, rules)

        metadata = {
            "auto_approval_rules": rules.to_dict(),
            "evaluation_result": evaluation.to_dict(),
        }
        if not evaluation.approved:
            metadata["requires_manual_review"] = True

        approval = await self.request_approval(subtask_id, ApprovalType.CREATION.value, metadata)

        if evaluation.approved:
            return await self.process_approval(
                approval.id,
                ApprovalStatus.APPROVED.value,
                approved_by=AUTO_APPROVER,
                reason=evaluation.reason,
            )

        logger.info(f"Manual approval required for subtask {subtask_id}: {evaluation.reason}")
        return approval

    async def process_approval(
        self,
        approval_id: str,
        decision: str,
        approved_by: str = "system",
        reason: str = "",
    ) -> ApprovalRequest:
        """
        Record a terminal decision.

        Raises:
            NotFoundError: Unknown approval id
            InvalidStateError: The request was already decided
            ValueError: Decision is not 'approved' or 'rejected'
        """
        if decision not in (ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value):
            raise ValueError(f"Invalid decision: {decision}. Must be 'approved' or 'rejected'")

        approval = self.store.load_approval(approval_id)
        if approval is None:
            raise NotFoundError("approval", approval_id)
        if not approval.is_pending:
            raise InvalidStateError(
                f"Approval request {approval_id} is already {approval.status}",
                details={"approval_id": approval_id, "status": approval.status},
            )

        approval.status = decision
        approval.approved_by = approved_by
        approval.approved_at = utc_now_iso()
        approval.reason = reason
        await self.store.save_approval(approval)

        subtask = self.store.load_subtask(approval.subtask_id)
        if subtask is not None:
            subtask.approval_status = decision
            subtask.approval_reason = reason
            # A subtask that already ran keeps its execution status
            if subtask.status in (
                SubtaskStatus.CREATED.value,
                SubtaskStatus.PENDING.value,
                SubtaskStatus.APPROVED.value,
            ):
                subtask.status = decision
            await self.store.save_task(subtask)

        logger.info(
            f"Approval {approval_id} for subtask {approval.subtask_id}: "
            f"{decision} by {approved_by}"
        )
        return approval

    # -------------------------------------------------------------------------
    # Queries and maintenance
    # -------------------------------------------------------------------------
    def get_pending_approvals(self) -> List[ApprovalRequest]:
        return self.store.list_approvals(lambda a: a.is_pending)

    def get_pending_approval_for(self, subtask_id: str) -> Optional[ApprovalRequest]:
        pending = self.store.list_approvals(lambda a: a.is_pending and a.subtask_id == subtask_id)
        return pending[-1] if pending else None

    def get_approval_history(self, subtask_id: str) -> List[ApprovalRequest]:
        return self.store.load_approval_history(subtask_id)

    async def cleanup_old_approvals(self, max_age_days: int = 30) -> int:
        """Delete pending requests older than max_age_days."""
        cutoff = utc_now() - timedelta(days=max_age_days)
        cleaned = 0
        for approval in self.get_pending_approvals():
            requested_at = parse_iso(approval.requested_at)
            if requested_at is not None and requested_at < cutoff:
                await self.store.delete_approval(approval.id)
                cleaned += 1
        logger.info(f"Cleaned up {cleaned} approval requests older than {max_age_days} days")
        return cleaned
