"""
Boomerang Context Isolation

Builds the minimal state each subtask sees. A child context receives only
the data passed to it explicitly, plus the project-level fields inherited
from its parent's downward context. The parent's full state is never copied.

Flow:
    downward: computed once when the context is created
    upward:   written once when the subtask completes
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from .errors import InvalidStateError
from .models import ContextStatus, IsolatedContext, Subtask, utc_now_iso
from .task_store import generate_id

logger = logging.getLogger("context_isolation")

REDACTED = "[REDACTED]"
SENSITIVE_MARKERS = ("password", "apikey", "api_key", "secret", "token", "credential")
MAX_HISTORY = 50


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def sanitize(data: Any) -> Any:
    """Redact sensitive keys recursively through mappings and lists."""
    if isinstance(data, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize(item) for item in data]
    return copy.deepcopy(data)


class ContextIsolation:
    """Creates isolated contexts and moves data between them."""

    def __init__(self, max_history: int = MAX_HISTORY):
        self.max_history = max_history

    # -------------------------------------------------------------------------
    # Creation (downward flow)
    # -------------------------------------------------------------------------
    def create_isolated_context(
        self,
        parent_context: Optional[IsolatedContext],
        description: str,
        passed_data: Optional[Dict[str, Any]] = None,
        mode: Optional[str] = None,
    ) -> IsolatedContext:
        """
        Build a new context.

        Without a parent this is a root context seeded with project-level
        requirements and constraints from passed_data. With a parent, the
        child sees its explicit data, the project fields the parent
        inherited, and the upward summaries of siblings completed so far.
        """
        clean = sanitize(passed_data or {})

        if parent_context is None:
            downward = {
                "is_root": True,
                "project_context": copy.deepcopy(clean),
                "project_requirements": copy.deepcopy(clean.get("requirements", [])),
                "project_constraints": copy.deepcopy(clean.get("constraints", [])),
            }
        else:
            downward = {
                "is_root": False,
                "parent_context_id": parent_context.id,
                "explicit_data": copy.deepcopy(clean),
                "inherited": self._inherited_from(parent_context),
                "sibling_results": self._sibling_results(parent_context),
            }

        context = IsolatedContext(
            id=generate_id("ctx"),
            parent_id=parent_context.id if parent_context else None,
            subtask_description=description,
            passed_data=clean,
            mode=mode,
            downward_context=downward,
        )
        logger.debug(f"Created context {context.id} (root={parent_context is None})")
        return context

    @staticmethod
    def _inherited_from(parent: IsolatedContext) -> Dict[str, Any]:
        downward = parent.downward_context
        if downward.get("is_root"):
            source = {
                "project_context": downward.get("project_context", {}),
                "global_requirements": downward.get("project_requirements", []),
                "global_constraints": downward.get("project_constraints", []),
            }
        else:
            inherited = downward.get("inherited", {})
            source = {
                "project_context": inherited.get("project_context", {}),
                "global_requirements": inherited.get("global_requirements", []),
                "global_constraints": inherited.get("global_constraints", []),
            }
        return copy.deepcopy(source)

    @staticmethod
    def _sibling_results(parent: IsolatedContext) -> List[Dict[str, Any]]:
        collected = (parent.results or {}).get("subtask_results", [])
        return [
            {"subtask_id": item.get("subtask_id"), "summary": copy.deepcopy(item.get("summary"))}
            for item in collected
        ]

    def link_child(self, parent: IsolatedContext, child: IsolatedContext) -> None:
        if child.id not in parent.child_contexts:
            parent.child_contexts.append(child.id)

    # -------------------------------------------------------------------------
    # Conversation history
    # -------------------------------------------------------------------------
    def add_to_conversation_history(
        self,
        context: IsolatedContext,
        message: str,
        role: str = "system",
    ) -> Dict[str, Any]:
        """Append a mode-tagged entry, keeping only the newest max_history."""
        entry = {
            "timestamp": utc_now_iso(),
            "role": role,
            "mode": context.mode,
            "message": message,
        }
        context.conversation_history.append(entry)
        overflow = len(context.conversation_history) - self.max_history
        if overflow > 0:
            del context.conversation_history[:overflow]
        return entry

    # -------------------------------------------------------------------------
    # Completion (upward flow)
    # -------------------------------------------------------------------------
    def generate_summary(self, context: IsolatedContext, results: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "context_id": context.id,
            "description": context.subtask_description,
            "status": ContextStatus.COMPLETED.value,
            "key_outputs": list(results.get("key_outputs", [])),
            "files_modified": list(results.get("files_modified", [])),
            "recommendations": list(results.get("recommendations", [])),
            "completed_at": utc_now_iso(),
        }

    def create_upward_context(self, context: IsolatedContext, results: Dict[str, Any]) -> Dict[str, Any]:
        """
        Distill results into the single artifact the parent may read, and
        mark the context completed.

        Raises:
            InvalidStateError: If the upward context was already written
        """
        if context.upward_context is not None:
            raise InvalidStateError(
                f"Context {context.id} already has an upward context",
                details={"context_id": context.id},
            )

        key_outputs = list(results.get("key_outputs", []))
        files_modified = list(results.get("files_modified", []))
        recommendations = list(results.get("recommendations", []))

        upward = {
            "context_id": context.id,
            "executive_summary": self._executive_summary(context, key_outputs, files_modified),
            "key_outputs": key_outputs,
            "files_modified": files_modified,
            "recommendations": recommendations,
            "next_steps": self._next_steps(results, files_modified, recommendations),
            "completed_at": utc_now_iso(),
        }
        context.upward_context = upward
        context.results = copy.deepcopy(results)
        context.summary = self.generate_summary(context, results)
        context.status = ContextStatus.COMPLETED.value
        return copy.deepcopy(upward)

    @staticmethod
    def _executive_summary(context: IsolatedContext, key_outputs: List[str], files_modified: List[str]) -> str:
        summary = f"Completed: {context.subtask_description}"
        if key_outputs:
            summary += f". Produced {len(key_outputs)} key outputs"
        if files_modified:
            summary += f", modified {len(files_modified)} files"
        return summary

    @staticmethod
    def _next_steps(
        results: Dict[str, Any],
        files_modified: List[str],
        recommendations: List[str],
    ) -> List[str]:
        if results.get("next_steps"):
            return list(results["next_steps"])
        steps = []
        if recommendations:
            steps.append("Review the recommendations")
        if files_modified:
            steps.append("Verify the modified files")
        if not steps:
            steps.append("Hand results back to the parent task")
        return steps

    def mark_failed(self, context: IsolatedContext, error: str) -> None:
        context.status = ContextStatus.FAILED.value
        context.results = {"error": error}

    def merge_results(self, parent_context: IsolatedContext, subtask: Subtask) -> None:
        """Record a completed child's summary on the parent for later siblings."""
        results = parent_context.results or {}
        collected = results.setdefault("subtask_results", [])
        collected.append({
            "subtask_id": subtask.id,
            "summary": copy.deepcopy(subtask.summary),
            "completed_at": subtask.completed_at or utc_now_iso(),
        })
        parent_context.results = results
