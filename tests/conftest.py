"""
Pytest configuration for Boomerang tests.

This module provides:
1. Storage and config fixtures rooted in tmp_path
2. A fully composed BoomerangService with fast simulation timings
3. Helpers for building records directly
"""

from typing import Any, Dict

import pytest

from boomerang.config import BoomerangConfig
from boomerang.models import IsolatedContext, Subtask
from boomerang.service import BoomerangService
from boomerang.task_store import TaskStore


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
SIMPLE_TASK_DESCRIPTION = "Fix typo"
AUTH_TASK_DESCRIPTION = (
    "Create a new user authentication system with login, registration, "
    "password reset, and email verification features. Include comprehensive "
    "testing and deployment setup."
)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / "storage"


@pytest.fixture
def store(storage_dir) -> TaskStore:
    return TaskStore(storage_dir)


@pytest.fixture
def config(storage_dir) -> BoomerangConfig:
    """Config with near-instant simulation and a fast worker tick."""
    return BoomerangConfig(
        storage_dir=storage_dir,
        simulation_delay_seconds=(0.0, 0.01),
        worker_interval_seconds=0.05,
    )


@pytest.fixture
def service(config) -> BoomerangService:
    return BoomerangService.from_config(config)


# -----------------------------------------------------------------------------
# Record Helpers
# -----------------------------------------------------------------------------
def make_subtask(**overrides: Any) -> Subtask:
    """Build a Subtask with sensible defaults."""
    values: Dict[str, Any] = {
        "id": "sub-test-1",
        "parent_id": "task-test-1",
        "title": "Test subtask",
        "description": "Do the test work",
        "task_type": "implementation",
        "priority": "medium",
        "mode": "code",
        "context_id": "ctx-test-1",
    }
    values.update(overrides)
    return Subtask(**values)


def make_context(passed_data=None, **overrides: Any) -> IsolatedContext:
    """Build a standalone IsolatedContext."""
    values: Dict[str, Any] = {
        "id": "ctx-test-1",
        "parent_id": None,
        "subtask_description": "Do the test work",
        "passed_data": passed_data or {},
        "mode": "code",
        "downward_context": {},
    }
    values.update(overrides)
    return IsolatedContext(**values)
