"""
Boomerang Execution Dispatcher

Runs a single subtask in one of two execution modes:

- SIMULATION: sleeps a bounded random delay and returns synthetic results
  keyed by task type. No side effects.
- REAL: dispatches on the strategy declared in the subtask's passed data.

Real strategies:
- shell-command:  allow-listed binaries only, run without a shell, with timeout
- http-request:   httpx, retried on transport errors, 5xx and 429
- delegated-call: records the call it would make
- custom:         generic success

The dispatcher keeps its own set of active real executions and refuses new
work once it reaches its ceiling. This is separate from the subtask
manager's executing set.
"""

import asyncio
import json
import logging
import random
import shlex
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from .errors import CapacityExceededError, ExecutionFailure
from .models import ExecutionMode, IsolatedContext, Subtask, TaskType
from .retry import RetryPolicy

logger = logging.getLogger("execution_dispatcher")

ALLOWED_COMMANDS = frozenset(["ls", "pwd", "echo", "git", "python", "pip"])
USER_AGENT = "Boomerang-Orchestrator/1.0"


class ExecutionStrategy(str, Enum):
    SHELL_COMMAND = "shell-command"
    HTTP_REQUEST = "http-request"
    DELEGATED_CALL = "delegated-call"
    CUSTOM = "custom"

    @classmethod
    def resolve(cls, passed_data: Dict[str, Any]) -> "ExecutionStrategy":
        tag = passed_data.get("strategy") or passed_data.get("task_type")
        try:
            return cls(tag)
        except ValueError:
            return cls.CUSTOM


# Task type -> (key outputs, files modified, recommendations)
SIMULATED_RESULTS: Dict[str, Tuple[List[str], List[str], List[str]]] = {
    TaskType.DESIGN.value: (
        ["Architecture plan", "Component specifications", "Implementation strategy"],
        ["docs/design.md"],
        ["Use modular architecture", "Implement error handling"],
    ),
    TaskType.IMPLEMENTATION.value: (
        ["Core functionality implemented", "API endpoints created", "Database models updated"],
        ["src/main.py", "src/models/user.py", "src/routes/api.py"],
        ["Add input validation", "Implement caching"],
    ),
    TaskType.TESTING.value: (
        ["Unit tests created", "Integration tests passed", "Coverage report generated"],
        ["tests/test_unit.py", "tests/test_integration.py"],
        ["Increase test coverage", "Add performance tests"],
    ),
    TaskType.DEPLOYMENT.value: (
        ["Build completed", "Deployment configured", "CI/CD pipeline ready"],
        [".github/workflows/deploy.yml", "Dockerfile"],
        ["Monitor performance", "Set up alerts"],
    ),
}


class ExecutionDispatcher:
    """Executes subtasks in simulation or real mode."""

    def __init__(
        self,
        max_concurrent: int = 5,
        task_timeout_seconds: float = 300.0,
        http_timeout_seconds: float = 30.0,
        simulation_delay_seconds: Tuple[float, float] = (1.0, 3.0),
        retry_policy: Optional[RetryPolicy] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        self.max_concurrent = max_concurrent
        self.task_timeout_seconds = task_timeout_seconds
        self.http_timeout_seconds = http_timeout_seconds
        self.simulation_delay_seconds = simulation_delay_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self._http_transport = http_transport
        self._rng = rng or random.Random()
        self._active: Dict[str, float] = {}

    @property
    def active_ids(self) -> Set[str]:
        return set(self._active)

    def get_active_tasks_info(self) -> Dict[str, Any]:
        now = time.monotonic()
        return {
            "count": len(self._active),
            "limit": self.max_concurrent,
            "tasks": [
                {"id": task_id, "running_time": now - started}
                for task_id, started in self._active.items()
            ],
        }

    async def execute_task(
        self,
        subtask: Subtask,
        execution_mode: str = ExecutionMode.SIMULATION.value,
        context: Optional[IsolatedContext] = None,
    ) -> Dict[str, Any]:
        """
        Execute a subtask and return its results.

        Raises:
            CapacityExceededError: Real execution ceiling reached
            ExecutionFailure: The strategy failed
        """
        mode = ExecutionMode(execution_mode)
        if mode == ExecutionMode.SIMULATION:
            return await self.simulate_execution(subtask)

        if len(self._active) >= self.max_concurrent:
            raise CapacityExceededError(
                f"Maximum concurrent executions ({self.max_concurrent}) reached",
                limit=self.max_concurrent,
            )

        passed_data = context.passed_data if context else {}
        strategy = ExecutionStrategy.resolve(passed_data)
        self._active[subtask.id] = time.monotonic()
        logger.info(f"Executing subtask {subtask.id} with strategy {strategy.value}")
        try:
            if strategy == ExecutionStrategy.SHELL_COMMAND:
                return await self._execute_shell_command(subtask, passed_data)
            elif strategy == ExecutionStrategy.HTTP_REQUEST:
                return await self._execute_http_request(subtask, passed_data)
            elif strategy == ExecutionStrategy.DELEGATED_CALL:
                return self._execute_delegated_call(subtask, passed_data)
            elif strategy == ExecutionStrategy.CUSTOM:
                return self._execute_custom(subtask)
            raise ValueError(f"Unhandled execution strategy: {strategy}")
        finally:
            self._active.pop(subtask.id, None)

    def _elapsed_ms(self, subtask_id: str) -> int:
        started = self._active.get(subtask_id, time.monotonic())
        return int((time.monotonic() - started) * 1000)

    # -------------------------------------------------------------------------
    # Simulation
    # -------------------------------------------------------------------------
    async def simulate_execution(self, subtask: Subtask) -> Dict[str, Any]:
        low, high = self.simulation_delay_seconds
        delay = self._rng.uniform(low, high)
        await asyncio.sleep(delay)

        known = SIMULATED_RESULTS.get(subtask.task_type)
        if known:
            key_outputs, files_modified, recommendations = known
        else:
            key_outputs = [
                f"Simulated output for {subtask.title}",
                f"Task type: {subtask.task_type}",
                "Context data received",
            ]
            files_modified = ["output.json"]
            recommendations = ["Review results", "Plan next steps"]

        return {
            "key_outputs": list(key_outputs),
            "files_modified": list(files_modified),
            "recommendations": list(recommendations),
            "execution_time_ms": int(delay * 1000),
            "task_type": subtask.task_type,
            "mode": ExecutionMode.SIMULATION.value,
        }

    # -------------------------------------------------------------------------
    # Shell
    # -------------------------------------------------------------------------
    async def _execute_shell_command(self, subtask: Subtask, passed_data: Dict[str, Any]) -> Dict[str, Any]:
        command = passed_data.get("command")
        if not command:
            raise ExecutionFailure(subtask.id, "Shell command not specified")

        argv = shlex.split(command) + [str(a) for a in passed_data.get("args", [])]
        if argv[0] not in ALLOWED_COMMANDS:
            raise ExecutionFailure(subtask.id, f"Command '{argv[0]}' is not in allowed list")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=passed_data.get("cwd"),
            )
        except OSError as e:
            raise ExecutionFailure(subtask.id, f"Command execution failed: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.task_timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ExecutionFailure(subtask.id, f"Command timed out after {self.task_timeout_seconds}s")

        if process.returncode != 0:
            raise ExecutionFailure(
                subtask.id,
                f"Command failed with code {process.returncode}: {stderr.decode(errors='replace').strip()}",
            )

        return {
            "success": True,
            "output": stdout.decode(errors="replace"),
            "command": " ".join(argv),
            "execution_time_ms": self._elapsed_ms(subtask.id),
            "task_type": ExecutionStrategy.SHELL_COMMAND.value,
        }

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    async def _execute_http_request(self, subtask: Subtask, passed_data: Dict[str, Any]) -> Dict[str, Any]:
        url = passed_data.get("url")
        if not url:
            raise ExecutionFailure(subtask.id, "URL not specified for HTTP request")
        method = passed_data.get("method", "GET").upper()
        headers = {"User-Agent": USER_AGENT}
        headers.update(passed_data.get("headers") or {})
        body = passed_data.get("body")

        async def perform() -> httpx.Response:
            async with httpx.AsyncClient(
                timeout=self.http_timeout_seconds,
                transport=self._http_transport,
            ) as client:
                if isinstance(body, (dict, list)):
                    response = await client.request(method, url, headers=headers, json=body)
                else:
                    response = await client.request(method, url, headers=headers, content=body)
            # Only transient statuses raise; other 4xx are reported as results
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        try:
            response = await self.retry_policy.execute(perform, f"HTTP {method} {url}")
        except httpx.HTTPError as e:
            raise ExecutionFailure(subtask.id, f"HTTP request failed: {e}")

        return {
            "success": response.is_success,
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": response.text,
            "execution_time_ms": self._elapsed_ms(subtask.id),
            "task_type": ExecutionStrategy.HTTP_REQUEST.value,
        }

    # -------------------------------------------------------------------------
    # Delegated / custom
    # -------------------------------------------------------------------------
    def _execute_delegated_call(self, subtask: Subtask, passed_data: Dict[str, Any]) -> Dict[str, Any]:
        server = passed_data.get("server_name")
        tool = passed_data.get("tool_name")
        if not server or not tool:
            raise ExecutionFailure(subtask.id, "Delegated call requires server_name and tool_name")
        arguments = json.dumps(passed_data.get("arguments", {}), default=str)
        return {
            "success": True,
            "result": {"message": f"Would call {tool} on {server} with args: {arguments}"},
            "execution_time_ms": self._elapsed_ms(subtask.id),
            "task_type": ExecutionStrategy.DELEGATED_CALL.value,
        }

    def _execute_custom(self, subtask: Subtask) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "Custom task executed",
            "execution_time_ms": self._elapsed_ms(subtask.id),
            "task_type": ExecutionStrategy.CUSTOM.value,
        }
