"""FastAPI application factory"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from esign_workflow.api.routes.contracts import router as contracts_router
from esign_workflow.api.routes.jobs import router as jobs_router
from esign_workflow.engine import WorkflowEngine
from esign_workflow.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from esign_workflow.services.worker import WorkflowWorker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    engine: WorkflowEngine = app.state.engine
    worker: WorkflowWorker = app.state.worker

    engine.init_db()
    if engine.settings.worker_enabled:
        await worker.start()
    else:
        engine.outbox.start()
    yield
    await worker.stop()


def _error_status(error: WorkflowError) -> int:
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, InvalidStateError):
        return 409
    return 500


def create_app(engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Contract E-Signature Workflow API",
        description="Dual-signature contract workflow with audit trail and signed document generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine or WorkflowEngine()
    app.state.worker = WorkflowWorker(app.state.engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        status = _error_status(exc)
        if status == 500:
            logger.error(f"Unhandled workflow error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status,
            content={"detail": str(exc), "fields": getattr(exc, "fields", [])},
        )

    app.include_router(contracts_router)
    app.include_router(jobs_router)

    return app
