"""
Boomerang Data Model

Enums and record types for parent tasks, subtasks, isolated contexts and
approval requests. Records are persisted as plain dicts; loading always
builds a fresh object so callers never alias persisted state.
"""

import copy
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class Priority(str, Enum):
    """Subtask priority; also the priority queue tier."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def ordered(cls) -> List["Priority"]:
        """Dequeue order."""
        return [cls.HIGH, cls.MEDIUM, cls.LOW]


class TaskType(str, Enum):
    """Task types produced by decomposition."""
    DESIGN = "design"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    DEPLOYMENT = "deployment"
    EXECUTION = "execution"


class ParentTaskStatus(str, Enum):
    ANALYZED = "analyzed"
    COMPLETED = "completed"


class SubtaskStatus(str, Enum):
    """
    Subtask lifecycle states.

    State machine:
    CREATED → (requires approval) PENDING → APPROVED | REJECTED
    CREATED | APPROVED → EXECUTING → COMPLETED | FAILED
    """
    CREATED = "created"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def mode_changeable_states(cls) -> Set["SubtaskStatus"]:
        """States in which the assigned mode may still be changed."""
        return {cls.CREATED, cls.APPROVED}


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalType(str, Enum):
    CREATION = "creation"
    EXECUTION = "execution"
    COMPLETION = "completion"


class ContextStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    SIMULATION = "simulation"
    REAL = "real"


# -----------------------------------------------------------------------------
# Subtask Configuration (suggested by analysis or supplied by caller)
# -----------------------------------------------------------------------------
@dataclass
class SubtaskConfig:
    """Configuration of a subtask before it is created."""
    title: str
    description: str
    task_type: str
    priority: str = Priority.MEDIUM.value
    estimated_duration: Optional[str] = None
    suggested_mode: Optional[str] = None
    complexity: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        # Normalizes enum members and rejects unknown priorities
        self.priority = Priority(self.priority).value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "type": self.task_type,
            "priority": self.priority,
            "estimated_duration": self.estimated_duration,
            "suggested_mode": self.suggested_mode,
            "complexity": self.complexity,
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubtaskConfig":
        return cls(
            title=data["title"],
            description=data["description"],
            task_type=data.get("type") or data.get("task_type") or TaskType.EXECUTION.value,
            priority=data.get("priority") or Priority.MEDIUM.value,
            estimated_duration=data.get("estimated_duration"),
            suggested_mode=data.get("suggested_mode"),
            complexity=data.get("complexity"),
            dependencies=list(data.get("dependencies") or []),
            tags=list(data.get("tags") or []),
        )


@dataclass
class TaskAnalysis:
    """Outcome of complexity analysis."""
    complexity: int
    should_break_down: bool
    reason: str
    factors: List[str] = field(default_factory=list)
    suggested_subtasks: List[SubtaskConfig] = field(default_factory=list)
    estimated_time: Optional[str] = None
    estimated_minutes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complexity": self.complexity,
            "should_break_down": self.should_break_down,
            "reason": self.reason,
            "factors": list(self.factors),
            "suggested_subtasks": [s.to_dict() for s in self.suggested_subtasks],
            "estimated_time": self.estimated_time,
            "estimated_minutes": self.estimated_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskAnalysis":
        return cls(
            complexity=data["complexity"],
            should_break_down=data["should_break_down"],
            reason=data["reason"],
            factors=list(data.get("factors", [])),
            suggested_subtasks=[
                SubtaskConfig.from_dict(s) for s in data.get("suggested_subtasks", [])
            ],
            estimated_time=data.get("estimated_time"),
            estimated_minutes=data.get("estimated_minutes"),
        )


# -----------------------------------------------------------------------------
# Parent Task
# -----------------------------------------------------------------------------
@dataclass
class ParentTask:
    """A high-level work item and the ids of the subtasks it was split into."""
    id: str
    description: str
    analysis: TaskAnalysis
    project_context: Dict[str, Any] = field(default_factory=dict)
    subtasks: List[str] = field(default_factory=list)
    status: str = ParentTaskStatus.ANALYZED.value
    context_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    merged_results: Optional[Dict[str, Any]] = None
    final_summary: Optional[Dict[str, Any]] = None

    def add_subtask(self, subtask_id: str) -> None:
        """Append a subtask id; the list only grows."""
        if subtask_id not in self.subtasks:
            self.subtasks.append(subtask_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "parent",
            "description": self.description,
            "project_context": copy.deepcopy(self.project_context),
            "analysis": self.analysis.to_dict(),
            "subtasks": list(self.subtasks),
            "status": self.status,
            "context_id": self.context_id,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "merged_results": copy.deepcopy(self.merged_results),
            "final_summary": copy.deepcopy(self.final_summary),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParentTask":
        return cls(
            id=data["id"],
            description=data["description"],
            analysis=TaskAnalysis.from_dict(data["analysis"]),
            project_context=copy.deepcopy(data.get("project_context") or {}),
            subtasks=list(data.get("subtasks", [])),
            status=data.get("status", ParentTaskStatus.ANALYZED.value),
            context_id=data.get("context_id"),
            created_at=data["created_at"],
            completed_at=data.get("completed_at"),
            merged_results=copy.deepcopy(data.get("merged_results")),
            final_summary=copy.deepcopy(data.get("final_summary")),
        )


# -----------------------------------------------------------------------------
# Subtask
# -----------------------------------------------------------------------------
@dataclass
class Subtask:
    """An isolated, independently schedulable unit of a parent task."""
    id: str
    parent_id: str
    title: str
    description: str
    task_type: str
    priority: str
    mode: str
    context_id: str
    status: str = SubtaskStatus.CREATED.value
    approval_status: str = ApprovalStatus.PENDING.value
    requires_approval: bool = True
    approval_reason: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    estimated_duration: Optional[str] = None
    complexity: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = "subtask"
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subtask":
        return cls(
            id=data["id"],
            parent_id=data["parent_id"],
            title=data["title"],
            description=data["description"],
            task_type=data["task_type"],
            priority=data["priority"],
            mode=data["mode"],
            context_id=data["context_id"],
            status=data.get("status", SubtaskStatus.CREATED.value),
            approval_status=data.get("approval_status", ApprovalStatus.PENDING.value),
            requires_approval=data.get("requires_approval", True),
            approval_reason=data.get("approval_reason"),
            created_at=data["created_at"],
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            results=copy.deepcopy(data.get("results")),
            summary=copy.deepcopy(data.get("summary")),
            error=data.get("error"),
            estimated_duration=data.get("estimated_duration"),
            complexity=data.get("complexity"),
            dependencies=list(data.get("dependencies") or []),
            tags=list(data.get("tags") or []),
        )


# -----------------------------------------------------------------------------
# Isolated Context
# -----------------------------------------------------------------------------
@dataclass
class IsolatedContext:
    """
    The minimal state visible to one subtask.

    downward_context is computed once at creation; upward_context is written
    exactly once, when the subtask completes.
    """
    id: str
    parent_id: Optional[str]
    subtask_description: str
    passed_data: Dict[str, Any]
    mode: Optional[str]
    downward_context: Dict[str, Any]
    upward_context: Optional[Dict[str, Any]] = None
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    child_contexts: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    status: str = ContextStatus.PENDING.value
    results: Optional[Dict[str, Any]] = None
    summary: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def is_root(self) -> bool:
        return bool(self.downward_context.get("is_root"))

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IsolatedContext":
        data = copy.deepcopy(data)
        return cls(
            id=data["id"],
            parent_id=data.get("parent_id"),
            subtask_description=data.get("subtask_description", ""),
            passed_data=data.get("passed_data") or {},
            mode=data.get("mode"),
            downward_context=data.get("downward_context") or {},
            upward_context=data.get("upward_context"),
            conversation_history=data.get("conversation_history") or [],
            child_contexts=data.get("child_contexts") or [],
            warnings=data.get("warnings") or [],
            status=data.get("status", ContextStatus.PENDING.value),
            results=data.get("results"),
            summary=data.get("summary"),
            created_at=data.get("created_at") or utc_now_iso(),
        )


# -----------------------------------------------------------------------------
# Approval Request
# -----------------------------------------------------------------------------
@dataclass
class ApprovalRequest:
    """An approval request; once decided, its status never changes again."""
    id: str
    subtask_id: str
    approval_type: str
    status: str = ApprovalStatus.PENDING.value
    requested_at: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self):
        self.approval_type = ApprovalType(self.approval_type).value
        self.status = ApprovalStatus(self.status).value

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING.value

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        return cls(
            id=data["id"],
            subtask_id=data["subtask_id"],
            approval_type=data["approval_type"],
            status=data.get("status", ApprovalStatus.PENDING.value),
            requested_at=data["requested_at"],
            metadata=copy.deepcopy(data.get("metadata") or {}),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
            reason=data.get("reason"),
        )
