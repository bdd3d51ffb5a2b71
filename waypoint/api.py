"""HTTP surface for starting runs, inspecting them and settling hooks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import to_jsonable_python

from .errors import (
    HookNotFound,
    HookValidationError,
    InvalidRunState,
    RunNotFound,
    WorkflowNotFound,
)
from .persistence.models import Run, StepRecord
from .scheduler import RunScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


class StartRunRequest(BaseModel):
    input: Any = None


class ResolveHookRequest(BaseModel):
    """``token`` plus the resolution payload as sibling fields."""

    model_config = ConfigDict(extra="allow")

    token: str = Field(min_length=1)

    def payload(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


def clean_token(token: str) -> str:
    """Drop quotes and whitespace that copy-pasted tokens tend to carry."""
    return token.strip().rstrip("\"'").strip()


def get_scheduler(request: Request) -> RunScheduler:
    return request.app.state.scheduler


def _run_body(run: Run) -> Dict[str, Any]:
    return {
        "runId": run.run_id,
        "workflowName": run.workflow_name,
        "status": run.status.value,
        "input": run.input_args,
        "output": run.output,
        "error": run.error,
        "generation": run.generation,
        "resumeAt": run.resume_at.isoformat() if run.resume_at else None,
        "waitingOn": run.waiting_on,
        "createdAt": run.created_at.isoformat(),
        "updatedAt": run.updated_at.isoformat(),
    }


def _step_body(record: StepRecord) -> Dict[str, Any]:
    return {
        "stepKey": record.step_key,
        "stepName": record.step_name,
        "status": record.status.value,
        "output": record.output,
        "error": record.error,
        "attempts": record.attempts,
        "generation": record.generation,
        "completedAt": record.completed_at.isoformat(),
    }


def _error(http_status: int, message: str, **details: Any) -> JSONResponse:
    return JSONResponse(
        status_code=http_status,
        content={"ok": False, "error": message, **to_jsonable_python(details)},
    )


@router.post("/runs/{workflow_name}", status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    workflow_name: str,
    body: Optional[StartRunRequest] = None,
    scheduler: RunScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    handle = await scheduler.start(workflow_name, body.input if body else None)
    return {"runId": handle.run_id}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, scheduler: RunScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return _run_body(await scheduler.get_run(run_id))


@router.get("/runs/{run_id}/steps")
async def list_steps(run_id: str, scheduler: RunScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    steps = await scheduler.list_steps(run_id)
    return {"runId": run_id, "steps": [_step_body(s) for s in steps]}


@router.post("/runs/{run_id}/restart")
async def restart_run(run_id: str, scheduler: RunScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    run = await scheduler.restart(run_id)
    return {
        "message": "Workflow restarted successfully",
        "runId": run.run_id,
        "workflowName": run.workflow_name,
    }


@router.post("/hooks/resolve")
async def resolve_hook(
    body: ResolveHookRequest, scheduler: RunScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    token = clean_token(body.token)
    run_id = await scheduler.resolve_hook(token, body.payload())
    return {"ok": True, "runId": run_id}


@router.post("/hooks/{token}/expire")
async def expire_hook(token: str, scheduler: RunScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    run_id = await scheduler.expire_hook(clean_token(token))
    return {"ok": True, "runId": run_id}


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HookNotFound)
    async def _hook_not_found(request: Request, exc: HookNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, str(exc), token=exc.token)

    @app.exception_handler(HookValidationError)
    async def _hook_invalid(request: Request, exc: HookValidationError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), details=exc.errors)

    @app.exception_handler(RunNotFound)
    async def _run_not_found(request: Request, exc: RunNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, str(exc), runId=exc.run_id)

    @app.exception_handler(WorkflowNotFound)
    async def _workflow_not_found(request: Request, exc: WorkflowNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(InvalidRunState)
    async def _invalid_state(request: Request, exc: InvalidRunState) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(ValidationError)
    async def _invalid_input(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "Invalid workflow input",
            details=exc.errors(include_url=False),
        )


def create_app(scheduler: Optional[RunScheduler] = None, run_worker: bool = False) -> FastAPI:
    """Build the FastAPI app.

    With ``run_worker`` the app also recovers interrupted runs and consumes
    the run queue for as long as it is up.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        worker: Optional[asyncio.Task] = None
        if run_worker:
            await app.state.scheduler.recover()
            worker = asyncio.create_task(app.state.scheduler.serve())
            logger.info("Embedded worker started")
        try:
            yield
        finally:
            if worker is not None:
                worker.cancel()
                await asyncio.gather(worker, return_exceptions=True)
            await app.state.scheduler.close()

    app = FastAPI(title="waypoint", version="0.1.0", lifespan=lifespan)
    app.state.scheduler = scheduler or RunScheduler()
    app.include_router(router)
    _install_error_handlers(app)
    return app
