"""HTTP surface: cron trigger, batch job management and interactive runs."""

from typing import Callable, Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..batch.trigger import Orchestrator
from ..config import Settings, load_settings
from ..errors import ConfigError, InvalidTransitionError, JobNotFoundError, ScriptoriumError
from ..interactive.inference import PageStageHandler
from ..interactive.processor import InteractiveProcessor, ItemHandler
from ..library.models import Stage
from ..logger import logger as LOGGER


HandlerFactory = Callable[[Stage], ItemHandler]


class JobActionRequest(BaseModel):
    action: Literal["refresh", "complete", "cancel"]


class SubmitJobRequest(BaseModel):
    book_id: str
    type: Stage = Stage.OCR
    page_ids: Optional[list[str]] = None


class ProcessRequest(BaseModel):
    page_ids: list[str] = Field(..., min_length=1)
    stage: Stage
    concurrency: Optional[int] = Field(default=None, ge=1, le=20)


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
    handler_factory: Optional[HandlerFactory] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Loaded settings; read from file and environment if omitted
        orchestrator: Pre-built components, mainly for tests
        handler_factory: Builds the per-item handler for /api/process
    """
    settings = settings or load_settings()
    orchestrator = orchestrator or Orchestrator(settings)
    if handler_factory is None:
        def handler_factory(stage: Stage) -> ItemHandler:
            return PageStageHandler(settings, orchestrator.db, stage)

    app = FastAPI(title="Scriptorium")
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    def _process_batches(skip_new_work: bool, max_new_jobs: Optional[int]):
        try:
            return orchestrator.run_cycle(skip_new_work=skip_new_work, max_new_jobs=max_new_jobs)
        except Exception as e:
            LOGGER.error(f"Processing cycle failed: {e}")
            return JSONResponse(status_code=500, content={"error": "Cron job failed", "details": str(e)})

    @app.get("/api/cron/process-batches")
    def process_batches_get(
        skip_new_work: bool = Query(False),
        max_new_jobs: Optional[int] = Query(None, ge=0),
    ):
        return _process_batches(skip_new_work, max_new_jobs)

    @app.post("/api/cron/process-batches")
    def process_batches_post(
        skip_new_work: bool = Query(False),
        max_new_jobs: Optional[int] = Query(None, ge=0),
    ):
        return _process_batches(skip_new_work, max_new_jobs)

    @app.get("/api/batch-jobs")
    def list_jobs(limit: int = Query(50, ge=1, le=500), book_id: Optional[str] = None):
        jobs = orchestrator.store.list_recent(limit=limit, book_id=book_id)
        return {"jobs": [job.to_dict() for job in jobs]}

    @app.get("/api/batch-jobs/{job_id}")
    def get_job(job_id: str):
        job = orchestrator.store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": job.to_dict()}

    @app.post("/api/batch-jobs/{job_id}")
    def job_action(job_id: str, body: JobActionRequest):
        sync = orchestrator.synchronizer
        try:
            if body.action == "refresh":
                job = sync.refresh_job(job_id)
                return {"success": True, "job": job.to_dict()}
            if body.action == "complete":
                report = sync.reconcile_job(job_id)
                job = orchestrator.store.require(job_id)
                return {"success": not report.errors, "job": job.to_dict(), "stats": report.to_dict()}
            job = sync.cancel_job(job_id)
            return {"success": True, "job": job.to_dict()}
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except (InvalidTransitionError, ConfigError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except ScriptoriumError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e

    @app.post("/api/batch-jobs")
    def submit_job(body: SubmitJobRequest):
        if orchestrator.db.get_book(body.book_id) is None:
            raise HTTPException(status_code=404, detail="Book not found")
        if orchestrator.store.has_active(body.book_id, body.type):
            raise HTTPException(status_code=409, detail=f"A {body.type.value} job is already in flight for this book")

        try:
            plan = orchestrator.planner.submit_book(body.book_id, body.type, body.page_ids)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        if not plan.jobs:
            status = 502 if plan.errors else 400
            return JSONResponse(
                status_code=status,
                content={
                    "error": "No batch job created" if plan.errors else "No valid pages to process",
                    "errors": plan.errors,
                    "skipped_page_ids": plan.skipped_page_ids,
                },
            )
        return {
            "success": True,
            "jobs": [job.to_dict() for job in plan.jobs],
            "skipped_page_ids": plan.skipped_page_ids,
            "errors": plan.errors,
        }

    @app.post("/api/process")
    def process_pages(body: ProcessRequest):
        try:
            handler = handler_factory(body.stage)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        processor = InteractiveProcessor.from_settings(settings, handler, concurrency=body.concurrency)
        report = processor.run(body.page_ids)
        return report.to_dict()

    return app
