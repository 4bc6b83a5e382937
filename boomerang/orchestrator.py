"""
Boomerang Orchestrator

Deterministic complexity scoring and decomposition of a high-level task.

Complexity (capped at 10):
    1                      base
    +1                     description longer than 200 characters
    +min(3, keywords)      action keywords present (implement, create, ...)
    +1                     " and " or "," present (multiple requirements)
    +1                     mentions "file" or "component"

A task at or below the simple threshold runs directly. Anything above is
split into subtasks by keyword family. Analysis is memoized by a
fingerprint of the normalized description and project context.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from . import modes
from .cache import TaskCache
from .context_isolation import ContextIsolation
from .models import ParentTask, Priority, SubtaskConfig, TaskAnalysis, TaskType
from .task_store import TaskStore, generate_id

logger = logging.getLogger("orchestrator")

DEFAULT_RANGE_MINUTES = 30

_RANGE_RE = re.compile(r"(\d+)\s*-\s*(\d+)")


@dataclass(frozen=True)
class ComplexityPolicy:
    """Tunable weights and thresholds for complexity scoring."""
    action_keywords: Tuple[str, ...] = (
        "implement", "create", "build", "design", "refactor", "test", "deploy",
    )
    long_description_chars: int = 200
    max_keyword_bonus: int = 3
    max_score: int = 10
    simple_threshold: int = 1


# (title, description, task type, priority, estimated duration)
DESIGN_SUBTASK = (
    "Design and Planning",
    "Analyze requirements and create implementation plan",
    TaskType.DESIGN, Priority.HIGH, "15-30 minutes",
)
IMPLEMENTATION_SUBTASK = (
    "Core Implementation",
    "Implement the main functionality",
    TaskType.IMPLEMENTATION, Priority.HIGH, "30-60 minutes",
)
TESTING_SUBTASK = (
    "Testing",
    "Create and run tests for the implementation",
    TaskType.TESTING, Priority.MEDIUM, "15-30 minutes",
)
DEPLOYMENT_SUBTASK = (
    "Build and Deployment",
    "Build the project and handle deployment",
    TaskType.DEPLOYMENT, Priority.MEDIUM, "10-20 minutes",
)
EXECUTION_SUBTASK = (
    "Task Execution",
    "Execute the main task requirements",
    TaskType.EXECUTION, Priority.HIGH, "20-40 minutes",
)


def estimate_minutes(subtasks: List[SubtaskConfig]) -> int:
    """Sum of range midpoints, 30 for a missing or unparseable range."""
    total = 0.0
    for subtask in subtasks:
        match = _RANGE_RE.search(subtask.estimated_duration or "")
        if match:
            total += (int(match.group(1)) + int(match.group(2))) / 2
        else:
            total += DEFAULT_RANGE_MINUTES
    return int(total + 0.5)


class Orchestrator:
    """Analyzes and decomposes parent tasks."""

    def __init__(
        self,
        store: TaskStore,
        cache: TaskCache,
        context_isolation: ContextIsolation,
        policy: Optional[ComplexityPolicy] = None,
    ):
        self.store = store
        self.cache = cache
        self.context_isolation = context_isolation
        self.policy = policy or ComplexityPolicy()

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------
    def assess_complexity(self, description: str) -> Tuple[int, List[str]]:
        policy = self.policy
        lowered = description.lower()
        score = 1
        factors = []

        if len(description) > policy.long_description_chars:
            score += 1
            factors.append("Long description suggests complex requirements")

        keyword_count = sum(1 for kw in policy.action_keywords if kw in lowered)
        if keyword_count:
            score += min(keyword_count, policy.max_keyword_bonus)
            factors.append(f"Action types detected: {keyword_count}")

        if " and " in description or "," in description:
            score += 1
            factors.append("Multiple requirements detected")

        if "file" in lowered or "component" in lowered:
            score += 1
            factors.append("File/component manipulation required")

        return min(score, policy.max_score), factors

    def suggest_subtasks(self, description: str) -> List[SubtaskConfig]:
        lowered = description.lower()
        templates = []
        if "implement" in lowered or "create" in lowered:
            templates.extend([DESIGN_SUBTASK, IMPLEMENTATION_SUBTASK])
        if "test" in lowered:
            templates.append(TESTING_SUBTASK)
        if "deploy" in lowered or "build" in lowered:
            templates.append(DEPLOYMENT_SUBTASK)

        if not templates:
            title, desc, task_type, priority, duration = EXECUTION_SUBTASK
            mode = modes.select_best_mode(description, task_type.value)
            return [SubtaskConfig(
                title=title,
                description=desc,
                task_type=task_type.value,
                priority=priority.value,
                estimated_duration=duration,
                suggested_mode=mode.id,
            )]

        suggestions = []
        for title, desc, task_type, priority, duration in templates:
            mode = modes.select_best_mode(desc, task_type.value)
            suggestions.append(SubtaskConfig(
                title=title,
                description=desc,
                task_type=task_type.value,
                priority=priority.value,
                estimated_duration=duration,
                suggested_mode=mode.id,
            ))
        return suggestions

    def break_down_task(self, description: str) -> TaskAnalysis:
        score, factors = self.assess_complexity(description)

        if score <= self.policy.simple_threshold:
            return TaskAnalysis(
                complexity=score,
                should_break_down=False,
                reason=f"Task is simple enough to execute directly (complexity score: {score})",
                factors=factors,
            )

        subtasks = self.suggest_subtasks(description)
        minutes = estimate_minutes(subtasks)
        return TaskAnalysis(
            complexity=score,
            should_break_down=True,
            reason=f"Task complexity score: {score}/{self.policy.max_score}. Breaking down into subtasks.",
            factors=factors,
            suggested_subtasks=subtasks,
            estimated_time=f"{minutes} minutes total",
            estimated_minutes=minutes,
        )

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------
    async def analyze_task(
        self,
        description: str,
        project_context: Optional[Dict[str, Any]] = None,
    ) -> ParentTask:
        """
        Analyze a task and persist it as a ParentTask.

        Identical requests within the cache TTL return the already persisted
        task without recomputation.
        """
        if not description or not description.strip():
            raise ValueError("Task description must not be empty")
        project_context = dict(project_context or {})

        created: List[ParentTask] = []

        async def analyze_and_persist() -> str:
            created.append(await self._create_parent_task(description, project_context))
            return created[-1].id

        task_id = await self.cache.get_or_compute(description, project_context, analyze_and_persist)
        if created:
            return created[-1]

        task = self.store.load_parent_task(task_id)
        if task is not None:
            logger.info(f"Task analysis for {task.id} served from cache")
            return task

        logger.warning(f"Cached task {task_id} no longer in store, recomputing")
        self.cache.delete(description, project_context)
        await self.cache.get_or_compute(description, project_context, analyze_and_persist)
        return created[-1]

    async def _create_parent_task(
        self,
        description: str,
        project_context: Dict[str, Any],
    ) -> ParentTask:
        analysis = self.break_down_task(description)
        root = self.context_isolation.create_isolated_context(
            None, description, project_context, mode=modes.ORCHESTRATOR.id,
        )
        task = ParentTask(
            id=generate_id("task"),
            description=description,
            analysis=analysis,
            project_context=project_context,
            context_id=root.id,
        )
        await self.store.save_context(root)
        await self.store.save_task(task)

        logger.info(
            f"Analyzed task {task.id}: complexity {analysis.complexity}, "
            f"{len(analysis.suggested_subtasks)} suggested subtasks"
        )
        return task
