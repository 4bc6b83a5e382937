"""
Boomerang Subtask Modes

A mode is a capability profile assigned to a subtask. Each mode declares the
context keys it expects, and the output shape its results are formatted
into. Mode selection is a deterministic keyword score over the subtask
description and task type, with a task-type fallback when nothing matches.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError
from .models import TaskType, utc_now_iso

logger = logging.getLogger("modes")


class OutputFormat(str, Enum):
    WORKFLOW_PLAN = "workflow_plan"
    CODE_CHANGES = "code_changes"
    ARCHITECTURE_DOCS = "architecture_docs"
    DEBUG_REPORT = "debug_report"
    TEST_SUITE = "test_suite"
    REVIEW_REPORT = "review_report"
    DOCUMENTATION = "documentation"


@dataclass(frozen=True)
class Mode:
    id: str
    name: str
    description: str
    capabilities: Tuple[str, ...]
    context_requirements: Tuple[str, ...]
    output_format: OutputFormat
    keywords: Tuple[str, ...] = ()
    instructions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "capabilities": list(self.capabilities),
            "context_requirements": list(self.context_requirements),
            "output_format": self.output_format.value,
        }


# -----------------------------------------------------------------------------
# Mode Catalogue (declaration order breaks selection ties)
# -----------------------------------------------------------------------------
ORCHESTRATOR = Mode(
    id="orchestrator",
    name="Orchestrator",
    description="Manages the workflow and delegates work to other modes",
    capabilities=("task_breakdown", "workflow_management", "delegation"),
    context_requirements=("project_overview", "requirements"),
    output_format=OutputFormat.WORKFLOW_PLAN,
)

CODE = Mode(
    id="code",
    name="Code",
    description="Implements, refactors and fixes code",
    capabilities=("implementation", "refactoring", "bug_fixing", "code_review"),
    context_requirements=("technical_specs", "existing_codebase"),
    output_format=OutputFormat.CODE_CHANGES,
    keywords=("implement", "code", "function", "method", "class", "refactor", "fix bug"),
    instructions=(
        "Keep the code clean and maintainable",
        "Follow the project's coding standards",
        "Comment the non-obvious parts",
        "Handle errors at the boundaries",
    ),
)

ARCHITECT = Mode(
    id="architect",
    name="Architect",
    description="Designs architecture, components and system solutions",
    capabilities=("system_design", "architecture_planning", "component_design"),
    context_requirements=("requirements", "constraints", "existing_architecture"),
    output_format=OutputFormat.ARCHITECTURE_DOCS,
    keywords=("design", "architecture", "structure", "component", "system", "plan"),
    instructions=(
        "Design for scale",
        "Consider security implications",
        "Record architectural decisions",
        "Choose fitting design patterns",
    ),
)

DEBUG = Mode(
    id="debug",
    name="Debug",
    description="Analyzes failures and proposes fixes",
    capabilities=("error_analysis", "log_analysis", "performance_debugging"),
    context_requirements=("error_reports", "logs", "reproduction_steps"),
    output_format=OutputFormat.DEBUG_REPORT,
    keywords=("debug", "error", "bug", "issue", "problem", "crash", "fail"),
    instructions=(
        "Analyze the problem systematically",
        "Identify the root cause",
        "Find minimal reproduction steps",
        "Recommend preventive measures",
    ),
)

TEST = Mode(
    id="test",
    name="Test",
    description="Writes tests and guards quality and coverage",
    capabilities=("unit_testing", "integration_testing", "test_automation"),
    context_requirements=("code_to_test", "test_requirements"),
    output_format=OutputFormat.TEST_SUITE,
    keywords=("test", "testing", "unit test", "integration", "coverage", "qa"),
    instructions=(
        "Build a comprehensive test suite",
        "Cover edge cases",
        "Include integration tests",
        "Automate test execution",
    ),
)

REVIEW = Mode(
    id="review",
    name="Review",
    description="Reviews code, documentation and designs",
    capabilities=("code_review", "security_review", "performance_review"),
    context_requirements=("code_changes", "review_criteria"),
    output_format=OutputFormat.REVIEW_REPORT,
    keywords=("review", "check", "validate", "audit", "inspect", "analyze"),
    instructions=(
        "Look for security vulnerabilities",
        "Check performance implications",
        "Check code style and conventions",
        "Assess maintainability",
    ),
)

DOCS = Mode(
    id="docs",
    name="Docs",
    description="Writes and maintains documentation",
    capabilities=("technical_writing", "api_docs", "user_guides"),
    context_requirements=("code_structure", "user_requirements"),
    output_format=OutputFormat.DOCUMENTATION,
    keywords=("document", "documentation", "readme", "guide", "manual", "api docs"),
    instructions=(
        "Write clear, concise documentation",
        "Add practical examples",
        "Document APIs and interfaces",
        "Keep documentation current",
    ),
)

MODES: Dict[str, Mode] = {
    mode.id: mode
    for mode in (ORCHESTRATOR, CODE, ARCHITECT, DEBUG, TEST, REVIEW, DOCS)
}

# Task type -> mode used when no keyword matches
FALLBACK_MODES: Dict[str, str] = {
    TaskType.DESIGN.value: ARCHITECT.id,
    TaskType.IMPLEMENTATION.value: CODE.id,
    TaskType.TESTING.value: TEST.id,
    TaskType.DEPLOYMENT.value: CODE.id,
    TaskType.EXECUTION.value: CODE.id,
}


def get_mode(mode_id: str) -> Mode:
    mode = MODES.get(mode_id)
    if mode is None:
        raise NotFoundError("mode", mode_id)
    return mode


def get_all_modes() -> List[Mode]:
    return list(MODES.values())


def score_modes(description: str, task_type: Optional[str] = None) -> Dict[str, int]:
    """Number of distinct mode keywords found in the description or type."""
    desc = description.lower()
    kind = (task_type or "").lower()
    return {
        mode.id: sum(1 for kw in mode.keywords if kw in desc or kw in kind)
        for mode in MODES.values()
    }


def select_best_mode(description: str, task_type: Optional[str] = None) -> Mode:
    """
    Pick the highest-scoring mode.

    Ties go to the earliest declared mode. With no keyword hits the task
    type decides, defaulting to code.
    """
    scores = score_modes(description, task_type)
    best_id, best_score = CODE.id, 0
    for mode_id, score in scores.items():
        if score > best_score:
            best_id, best_score = mode_id, score

    if best_score == 0:
        best_id = FALLBACK_MODES.get((task_type or "").lower(), CODE.id)

    logger.debug(f"Selected mode {best_id} (score={best_score}) for task type {task_type}")
    return MODES[best_id]


def validate_mode_context(mode: Mode, context: Optional[Dict[str, Any]]) -> List[str]:
    """Return required context keys missing at the top level and under 'data'."""
    context = context or {}
    data = context.get("data")
    data = data if isinstance(data, dict) else {}
    return [
        key for key in mode.context_requirements
        if key not in context and key not in data
    ]


def generate_mode_context(
    mode: Mode,
    context: Optional[Dict[str, Any]],
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Decorate a context with the mode descriptor and its instructions."""
    mode_context = dict(context or {})
    mode_context["mode"] = {
        "id": mode.id,
        "name": mode.name,
        "capabilities": list(mode.capabilities),
        "output_format": mode.output_format.value,
    }
    mode_context["mode_specific_data"] = dict(extra or {})
    if mode.instructions:
        mode_context["instructions"] = list(mode.instructions)
    return mode_context


def format_mode_output(mode: Mode, results: Dict[str, Any]) -> Dict[str, Any]:
    """Shape results into the mode's declared output format."""
    output = {"mode": mode.name, "timestamp": utc_now_iso()}
    output.update(results)
    fmt = mode.output_format

    if fmt == OutputFormat.CODE_CHANGES:
        output.update({
            "files_modified": results.get("files_modified", []),
            "code_changes": results.get("code_changes", []),
            "test_results": results.get("test_results"),
        })
    elif fmt == OutputFormat.ARCHITECTURE_DOCS:
        output.update({
            "architecture_decisions": results.get("architecture_decisions", []),
            "component_diagram": results.get("component_diagram"),
            "tech_stack": results.get("tech_stack", []),
        })
    elif fmt == OutputFormat.DEBUG_REPORT:
        output.update({
            "root_cause": results.get("root_cause", "Not identified"),
            "reproduction_steps": results.get("reproduction_steps", []),
            "suggested_fix": results.get("suggested_fix", "Under investigation"),
        })
    elif fmt == OutputFormat.TEST_SUITE:
        output.update({
            "tests_covered": results.get("tests_covered", []),
            "coverage": results.get("coverage", "Unknown"),
            "test_results": results.get("test_results", "Not run"),
        })
    elif fmt == OutputFormat.REVIEW_REPORT:
        output.update({
            "issues_found": results.get("issues_found", []),
            "recommendations": results.get("recommendations", []),
            "approval_status": results.get("approval_status", "Pending review"),
        })
    elif fmt == OutputFormat.DOCUMENTATION:
        output.update({
            "documents_created": results.get("documents_created", []),
            "api_documentation": results.get("api_documentation"),
            "user_guides": results.get("user_guides", []),
        })
    elif fmt == OutputFormat.WORKFLOW_PLAN:
        output.update({
            "workflow_steps": results.get("workflow_steps", []),
            "delegations": results.get("delegations", []),
        })
    else:
        raise ValueError(f"Unhandled output format: {fmt}")

    return output
