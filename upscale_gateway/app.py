from __future__ import annotations

import asyncio
import io
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .comfy_client import ComfyClient
from .orchestrator import DEFAULT_VIEW_PATH, UpscaleOrchestrator, UpscaleResult
from .proxy_routes import router as proxy_router
from .resolver import ResultResolver

logger = logging.getLogger(__name__)


STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERROR = "error"


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    comfy_api_url: str = "http://127.0.0.1:8188"
    comfy_ws_url: Optional[str] = None  # derived from comfy_api_url when unset
    request_timeout: float = 30.0
    view_timeout: float = 120.0
    # Upscale job settings
    deadline: float = 300.0
    resolver_attempts: int = 5
    resolver_delay: float = 1.0
    default_resolution: int = 4000
    worker_concurrency: int = 1
    view_path: str = DEFAULT_VIEW_PATH


@dataclass
class JobRecord:
    job_id: str
    data: bytes
    filename: str
    content_type: str
    resolution: int
    status: str = STATUS_QUEUED
    message: Optional[str] = None
    image_url: Optional[str] = None
    error: Optional[str] = None
    failure: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self, status: Optional[str] = None, message: Optional[str] = None) -> None:
        if status:
            self.status = status
        if message is not None:
            self.message = message
        self.updated_at = datetime.now(timezone.utc)

    def finish(self, result: UpscaleResult) -> None:
        self.data = b""
        if result.success:
            self.image_url = result.image_url
            self.touch(status=STATUS_DONE, message="Done")
        else:
            self.error = result.error
            self.failure = result.failure.value if result.failure else None
            self.touch(status=STATUS_ERROR)


@dataclass
class GatewayState:
    config: GatewayConfig
    queue: asyncio.Queue[str]
    jobs: Dict[str, JobRecord]
    workers: List[asyncio.Task]
    orchestrator: Optional[UpscaleOrchestrator] = None


class UpscaleCreateResponse(BaseModel):
    job_id: str
    status: str


class UpscaleStatusResponse(BaseModel):
    job_id: str
    status: str
    resolution: int
    message: Optional[str] = None
    image_url: Optional[str] = None
    error: Optional[str] = None
    failure: Optional[str] = None
    submitted_at: datetime
    updated_at: datetime


def build_orchestrator(config: GatewayConfig) -> UpscaleOrchestrator:
    client = ComfyClient(
        api_url=config.comfy_api_url,
        ws_url=config.comfy_ws_url,
        timeout=config.request_timeout,
    )
    resolver = ResultResolver(
        client,
        attempts=config.resolver_attempts,
        delay=config.resolver_delay,
    )
    return UpscaleOrchestrator(
        client,
        resolver=resolver,
        deadline=config.deadline,
        view_path=config.view_path,
    )


def _inspect_image(data: bytes) -> Tuple[str, Tuple[int, int]]:
    from PIL import Image

    with Image.open(io.BytesIO(data)) as im:
        image_format, size = im.format, im.size
        im.verify()
    return image_format or "unknown", size


async def _worker_loop(state: GatewayState) -> None:
    while True:
        try:
            job_id = await state.queue.get()
        except asyncio.CancelledError:
            break
        job = state.jobs.get(job_id)
        if job is None:
            state.queue.task_done()
            continue
        job.touch(status=STATUS_RUNNING)

        try:
            result = await state.orchestrator.run_upscale(
                job.data,
                job.resolution,
                on_progress=lambda status, job=job: job.touch(message=status),
                filename=job.filename,
                content_type=job.content_type,
            )
            job.finish(result)
            if result.success:
                logger.info(f"Upscale job {job_id} finished: {result.image_url}")
            else:
                logger.warning(f"Upscale job {job_id} failed: {result.error}")
        finally:
            state.queue.task_done()


def create_app(
    config: Optional[GatewayConfig] = None,
    orchestrator: Optional[UpscaleOrchestrator] = None,
) -> FastAPI:
    cfg = config or GatewayConfig()
    state = GatewayState(config=cfg, queue=asyncio.Queue(), jobs={}, workers=[])
    state.orchestrator = orchestrator or build_orchestrator(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN001
        for _ in range(max(1, cfg.worker_concurrency)):
            task = asyncio.create_task(_worker_loop(state))
            state.workers.append(task)
        try:
            yield
        finally:
            for task in state.workers:
                task.cancel()
            for task in state.workers:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            state.workers.clear()

    app = FastAPI(title="Upscale Gateway", version="0.1.0", lifespan=lifespan)
    app.state.gateway_config = cfg

    # Same-origin pass-through to ComfyUI
    app.include_router(proxy_router)

    def get_state() -> GatewayState:
        return state

    @app.post("/v1/upscale", response_model=UpscaleCreateResponse, status_code=202)
    async def submit_upscale(
        state: GatewayState = Depends(get_state),
        file: UploadFile = File(None),
        resolution: Optional[int] = Form(None),
    ) -> UpscaleCreateResponse:
        if file is None:
            raise HTTPException(status_code=400, detail="image file required")
        target = resolution if resolution is not None else state.config.default_resolution
        if target <= 0:
            raise HTTPException(status_code=400, detail="resolution must be a positive integer")

        data = await file.read()
        try:
            image_format, size = _inspect_image(data)
        except Exception as e:
            raise HTTPException(status_code=400, detail=f"Invalid image: {e}")

        job_id = uuid.uuid4().hex
        record = JobRecord(
            job_id=job_id,
            data=data,
            filename=file.filename or "image.png",
            content_type=file.content_type or "application/octet-stream",
            resolution=target,
        )
        state.jobs[job_id] = record
        await state.queue.put(job_id)
        logger.info(f"Queued upscale job {job_id}: {image_format} {size[0]}x{size[1]} -> {target}")
        return UpscaleCreateResponse(job_id=job_id, status=record.status)

    @app.get("/v1/upscale/{job_id}", response_model=UpscaleStatusResponse)
    async def get_upscale(job_id: str, state: GatewayState = Depends(get_state)) -> UpscaleStatusResponse:
        record = state.jobs.get(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="job not found")
        return UpscaleStatusResponse(
            job_id=job_id,
            status=record.status,
            resolution=record.resolution,
            message=record.message,
            image_url=record.image_url,
            error=record.error,
            failure=record.failure,
            submitted_at=record.submitted_at,
            updated_at=record.updated_at,
        )

    @app.delete("/v1/upscale/{job_id}")
    async def delete_upscale(job_id: str, state: GatewayState = Depends(get_state)) -> JSONResponse:
        record = state.jobs.get(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="job not found")
        # A running job still holds a backend prompt and an open channel.
        if record.status == STATUS_RUNNING:
            raise HTTPException(status_code=409, detail="job is running")
        # Queued ids left in the queue are skipped by the workers.
        del state.jobs[job_id]
        logger.info(f"Deleted upscale job {job_id} ({record.status})")
        return JSONResponse({"job_id": job_id, "status": "deleted"})

    @app.get("/health")
    async def health(state: GatewayState = Depends(get_state)) -> Dict[str, object]:
        return {
            "status": "ok",
            "comfy_api_url": state.config.comfy_api_url,
            "queued": state.queue.qsize(),
        }

    return app
