"""
LeadScout - Main Application Entry Point

Runs long-lived organization search tasks in the background:
- POST a task, the background worker claims and executes it
- Poll the task or stream its progress over server-sent events
- Cancel or force-start tasks

The requesting user is identified by the X-User-Id header; authentication
happens upstream.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .archivist import ProgressBroadcaster, TaskStore, close_db, init_db
from .config import settings
from .enrichment import AnthropicQueryGenerator, ApifyClient
from .harvester import PipelineExecutor
from .scheduler import BackgroundWorker, setup_scheduler, shutdown_scheduler
from .service import TaskNotFoundError, TaskService, TaskStateError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class TaskCreateRequest(BaseModel):
    kind: str = Field(description="ai_search or url_parse")
    task_name: str = ""
    input_data: Dict[str, Any] = Field(default_factory=dict)


def build_service(apify: Optional[ApifyClient] = None) -> TaskService:
    """Wire store, executor, worker and broadcaster with the production adapters."""
    store = TaskStore()
    broadcaster = ProgressBroadcaster()
    apify = apify or ApifyClient()
    executor = PipelineExecutor(
        store=store,
        query_generator=AnthropicQueryGenerator(),
        search_provider=apify,
        contact_enricher=apify,
        capacity_detector=apify,
        broadcaster=broadcaster,
    )
    worker = BackgroundWorker(store, executor, broadcaster=broadcaster)
    return TaskService(store, worker=worker, broadcaster=broadcaster)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting LeadScout...")
    await init_db()

    apify = ApifyClient()
    service = build_service(apify)
    app.state.service = service

    if settings.worker_enabled and service.worker is not None:
        await service.worker.start()
        try:
            setup_scheduler(service.store, service.worker)
        except Exception as e:
            logger.warning(f"Could not start scheduler: {e}")
    else:
        logger.info("Background worker disabled (WORKER_ENABLED=false)")

    yield

    logger.info("Shutting down...")
    shutdown_scheduler()
    if service.worker is not None:
        await service.worker.stop()

    try:
        await apify.close()
    except Exception as e:
        logger.warning(f"Error closing Apify client: {e}")

    try:
        await close_db()
        logger.info("Database connections closed")
    except Exception as e:
        logger.warning(f"Error closing database: {e}")


app = FastAPI(
    title="LeadScout",
    description="Background organization search and contact enrichment",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> TaskService:
    return request.app.state.service


async def current_user(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id.strip()


@app.get("/health")
async def health(service: TaskService = Depends(get_service)):
    report = service.worker.health_check() if service.worker is not None else {"status": "healthy"}
    return {"status": report["status"], "worker": report}


@app.post("/api/tasks", status_code=201)
async def create_task(
    body: TaskCreateRequest,
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    try:
        task = await service.create_task(user_id, body.kind, body.task_name, body.input_data)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"success": True, "task": task.to_dict()}


@app.get("/api/tasks")
async def list_tasks(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    tasks = await service.list_tasks(user_id, limit=limit)
    return {"success": True, "tasks": [t.to_dict() for t in tasks]}


@app.get("/api/tasks/active")
async def list_active_tasks(
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    tasks = await service.list_active_tasks(user_id)
    return {"success": True, "tasks": [t.to_dict() for t in tasks]}


@app.get("/api/tasks/stats")
async def task_stats(
    _: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    return {"success": True, "stats": await service.task_stats()}


@app.get("/api/tasks/{task_id}")
async def get_task(
    task_id: str,
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    try:
        task = await service.get_task(task_id, owner_id=user_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "task": task.to_dict()}


@app.post("/api/tasks/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    try:
        task = await service.cancel_task(task_id, owner_id=user_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TaskStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "task": task.to_dict()}


@app.post("/api/tasks/{task_id}/run")
async def run_task_now(
    task_id: str,
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    try:
        started = await service.run_now(task_id, owner_id=user_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TaskStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "started": started}


@app.get("/api/tasks/{task_id}/events")
async def task_events(
    task_id: str,
    user_id: str = Depends(current_user),
    service: TaskService = Depends(get_service),
):
    """Server-sent progress events until the task finishes."""
    # Subscribed before the snapshot read; a final event published in between stays queued
    subscription = service.subscribe(task_id)
    try:
        task = await service.get_task(task_id, owner_id=user_id)
    except TaskNotFoundError as e:
        subscription.close()
        raise HTTPException(status_code=404, detail=str(e))

    async def event_stream():
        progress = task.progress_model
        snapshot = {
            "task_id": task.id,
            "stage": task.current_stage,
            "current": progress.current,
            "total": progress.total,
            "message": progress.message,
            "final": task.status_enum.is_terminal,
        }
        try:
            yield f"data: {json.dumps(snapshot)}\n\n"
            if snapshot["final"]:
                return
            async for event in subscription:
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/worker/status")
async def worker_status(service: TaskService = Depends(get_service)):
    if service.worker is None:
        return {"success": True, "worker": None}
    return {"success": True, "worker": service.worker.get_status()}
