"""
Boomerang - FastAPI Application

HTTP binding of the Boomerang service. Request bodies are validated here;
the core assumes well-formed input. BoomerangError codes map to statuses:

    NOT_FOUND          404
    INVALID_STATE      409
    APPROVAL_REJECTED  409
    CAPACITY_EXCEEDED  429
    EXECUTION_FAILED   500

Run with:
    python -m boomerang.main
    uvicorn boomerang.main:create_app --factory
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import BoomerangConfig, configure_logging
from .errors import BoomerangError
from .models import ApprovalStatus, ExecutionMode, Priority
from .service import BoomerangService
from .subtask_manager import BulkOperation

logger = logging.getLogger("boomerang_api")

ERROR_STATUS = {
    "NOT_FOUND": 404,
    "INVALID_STATE": 409,
    "APPROVAL_REJECTED": 409,
    "CAPACITY_EXCEEDED": 429,
    "EXECUTION_FAILED": 500,
}


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class AnalyzeTaskRequest(BaseModel):
    description: str = Field(..., min_length=1)
    project_context: Dict[str, Any] = Field(default_factory=dict)


class SubtaskConfigModel(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, description="Task type, e.g. design or testing")
    priority: Priority = Priority.MEDIUM
    estimated_duration: Optional[str] = None
    suggested_mode: Optional[str] = None
    complexity: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class CreateSubtaskRequest(BaseModel):
    subtask_config: SubtaskConfigModel
    context_to_pass: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = True
    mode: Optional[str] = None
    approval_rules: Optional[Dict[str, Any]] = None


class ExecuteSubtaskRequest(BaseModel):
    execution_mode: ExecutionMode = ExecutionMode.SIMULATION


class EnqueueSubtaskRequest(BaseModel):
    priority: Optional[Priority] = None
    execution_mode: ExecutionMode = ExecutionMode.SIMULATION
    retry_on_failure: bool = True
    max_retries: int = Field(3, ge=0)


class ApprovalDecisionRequest(BaseModel):
    decision: ApprovalStatus
    approved_by: str = "system"
    reason: str = ""


class BulkOperationRequest(BaseModel):
    subtask_ids: List[str] = Field(..., min_length=1)
    operation: BulkOperation
    value: Optional[str] = None
    actor: str = "system"
    reason: str = ""


class CleanupRequest(BaseModel):
    max_age_days: int = Field(30, ge=0)


# -----------------------------------------------------------------------------
# Application Factory
# -----------------------------------------------------------------------------
def create_app(service: Optional[BoomerangService] = None) -> FastAPI:
    """Build the FastAPI app around a service (built from env when omitted)."""
    if service is None:
        config = BoomerangConfig.from_env()
        configure_logging(config.log_level)
        service = BoomerangService.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Boomerang starting up...")
        await service.start()
        try:
            yield
        finally:
            logger.info("Boomerang shutting down...")
            await service.stop()

    app = FastAPI(
        title="Boomerang Task Orchestrator",
        description="Task decomposition, isolated subtask execution and result merging",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(BoomerangError)
    async def boomerang_error_handler(request: Request, exc: BoomerangError):
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"error": True, "code": "INVALID_REQUEST", "message": str(exc), "details": {}},
        )

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/")
    async def root():
        return {"service": "Boomerang Task Orchestrator", "status": "running", "version": __version__}

    @app.get("/stats")
    async def stats():
        return service.get_stats()

    @app.post("/maintenance/cleanup")
    async def cleanup(request: CleanupRequest = CleanupRequest()):
        return await service.cleanup(request.max_age_days)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------
    @app.post("/tasks/analyze")
    async def analyze_task(request: AnalyzeTaskRequest):
        return await service.analyze_task(request.description, request.project_context)

    @app.post("/tasks/{task_id}/subtasks")
    async def create_subtask(task_id: str, request: CreateSubtaskRequest):
        config = request.subtask_config.model_dump(mode="json")
        return await service.create_subtask(
            task_id,
            config,
            request.context_to_pass,
            requires_approval=request.requires_approval,
            mode=request.mode,
            approval_rules=request.approval_rules,
        )

    @app.post("/tasks/{task_id}/merge")
    async def merge_results(task_id: str):
        return await service.merge_results(task_id)

    @app.get("/tasks/{task_id}/progress")
    async def get_task_progress(task_id: str):
        return service.get_task_progress(task_id)

    # -------------------------------------------------------------------------
    # Subtasks
    # -------------------------------------------------------------------------
    @app.get("/subtasks/{subtask_id}")
    async def get_subtask_status(subtask_id: str):
        return service.get_subtask_status(subtask_id)

    @app.post("/subtasks/{subtask_id}/execute")
    async def execute_subtask(subtask_id: str, request: ExecuteSubtaskRequest = ExecuteSubtaskRequest()):
        return await service.execute_subtask(subtask_id, request.execution_mode.value)

    @app.post("/subtasks/{subtask_id}/enqueue")
    async def enqueue_subtask(subtask_id: str, request: EnqueueSubtaskRequest = EnqueueSubtaskRequest()):
        return await service.enqueue_subtask(
            subtask_id,
            priority=request.priority.value if request.priority else None,
            execution_mode=request.execution_mode.value,
            retry_on_failure=request.retry_on_failure,
            max_retries=request.max_retries,
        )

    @app.post("/subtasks/bulk")
    async def bulk_operation(request: BulkOperationRequest):
        results = await service.bulk_operation(
            request.subtask_ids,
            request.operation.value,
            value=request.value,
            actor=request.actor,
            reason=request.reason,
        )
        return {"results": results}

    # -------------------------------------------------------------------------
    # Approvals and queue
    # -------------------------------------------------------------------------
    @app.get("/approvals/pending")
    async def get_pending_approvals():
        return {"approvals": service.get_pending_approvals()}

    @app.post("/approvals/{approval_id}")
    async def process_approval(approval_id: str, request: ApprovalDecisionRequest):
        return await service.process_approval(
            approval_id,
            request.decision.value,
            approved_by=request.approved_by,
            reason=request.reason,
        )

    @app.get("/queue")
    async def get_queue_info():
        return service.get_queue_info()

    return app


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        create_app(),
        host=os.getenv("BOOMERANG_HOST", "0.0.0.0"),
        port=int(os.getenv("BOOMERANG_PORT", "8000")),
    )
