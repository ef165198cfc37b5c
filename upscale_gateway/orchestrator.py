"""Drive one upscale job from upload to the saved output image."""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from .comfy_client import BackendError, ChannelError
from .events import EventChannel, ExecutionError, Executing, Progress, parse_event
from .graph_builder import build_upscale_graph
from .resolver import OutputNotFoundError, ResultResolver

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE = 300.0
DEFAULT_VIEW_PATH = "/api/comfyui/view"

ProgressObserver = Callable[[str], None]


class FailureKind(str, Enum):
    UPLOAD_FAILED = "upload_failed"
    SUBMISSION_FAILED = "submission_failed"
    CHANNEL_ERROR = "channel_error"
    EXECUTION_FAILED = "execution_failed"
    TIMED_OUT = "timed_out"
    OUTPUT_NOT_FOUND = "output_not_found"
    UNEXPECTED = "unexpected"


class JobState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class UpscaleResult:
    success: bool
    image_url: Optional[str] = None
    error: Optional[str] = None
    failure: Optional[FailureKind] = None

    @classmethod
    def ok(cls, image_url: str) -> "UpscaleResult":
        return cls(success=True, image_url=image_url)

    @classmethod
    def failed(cls, failure: FailureKind, error: str) -> "UpscaleResult":
        return cls(success=False, error=error, failure=failure)


@dataclass
class JobHandle:
    job_id: str
    client_id: str


class UpscaleFailure(Exception):
    """Terminal failure of one job, carried up to ``run_upscale``."""

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


def build_view_url(artifact: Dict[str, Any], view_path: str = DEFAULT_VIEW_PATH) -> str:
    params = {"filename": artifact["filename"], "type": "output"}
    if artifact.get("subfolder"):
        params["subfolder"] = artifact["subfolder"]
    return f"{view_path}?{urlencode(params)}"


class UpscaleOrchestrator:
    """
    Run the upload -> submit -> listen -> resolve workflow against ComfyUI.

    ``gateway`` is any object exposing the coroutines ``upload``, ``submit``,
    ``open_event_channel`` and ``fetch_job_outputs`` (see ComfyClient).
    Nothing is shared between calls to ``run_upscale`` except the gateway, so
    concurrent jobs are independent.
    """

    def __init__(
        self,
        gateway: Any,
        resolver: Optional[ResultResolver] = None,
        deadline: float = DEFAULT_DEADLINE,
        view_path: str = DEFAULT_VIEW_PATH,
        rng: Optional[random.Random] = None,
    ):
        self.gateway = gateway
        self.resolver = resolver or ResultResolver(gateway)
        self.deadline = deadline
        self.view_path = view_path
        self.rng = rng

    def new_client_id(self) -> str:
        if self.rng is None:
            return str(uuid.uuid4())
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))

    async def run_upscale(
        self,
        data: bytes,
        resolution: int,
        on_progress: Optional[ProgressObserver] = None,
        filename: str = "image.png",
        content_type: str = "application/octet-stream",
    ) -> UpscaleResult:
        """
        Upscale one image and return where to fetch the result.

        Never raises: every failure is reported through UpscaleResult.
        """
        report = _observer(on_progress)
        client_id = self.new_client_id()
        try:
            artifact = await self._run(data, resolution, client_id, report, filename, content_type)
        except UpscaleFailure as e:
            logger.warning(f"Upscale for client {client_id} failed ({e.kind.value}): {e.message}")
            return UpscaleResult.failed(e.kind, e.message)
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Unexpected upscale error for client {client_id}")
            return UpscaleResult.failed(FailureKind.UNEXPECTED, f"Unexpected error: {e}")

        return UpscaleResult.ok(build_view_url(artifact, self.view_path))

    async def _run(
        self,
        data: bytes,
        resolution: int,
        client_id: str,
        report: ProgressObserver,
        filename: str,
        content_type: str,
    ) -> Dict[str, Any]:
        report("Uploading image...")
        try:
            uploaded = await self.gateway.upload(data, filename=filename, content_type=content_type)
        except BackendError as e:
            raise UpscaleFailure(FailureKind.UPLOAD_FAILED, f"Failed to upload image to ComfyUI: {e}") from e

        graph = build_upscale_graph(uploaded.name, resolution, rng=self.rng)

        report("Starting upscale...")
        try:
            job_id = await self.gateway.submit(graph, client_id)
        except BackendError as e:
            raise UpscaleFailure(FailureKind.SUBMISSION_FAILED, f"Failed to queue upscale prompt: {e}") from e

        handle = JobHandle(job_id=job_id, client_id=client_id)
        logger.info(f"Queued prompt {job_id} for client {client_id} at resolution {resolution}")

        report("Processing...")
        await self.wait_for_completion(handle, report)

        try:
            return await self.resolver.resolve_output_artifact(handle.job_id)
        except OutputNotFoundError as e:
            raise UpscaleFailure(FailureKind.OUTPUT_NOT_FOUND, str(e)) from e

    async def wait_for_completion(self, handle: JobHandle, report: ProgressObserver) -> JobState:
        """
        Listen on the client's event channel until the prompt finishes.

        The deadline covers opening the channel and every message after it.
        The channel is closed exactly once, whichever way this returns.

        Raises:
            UpscaleFailure: execution error, channel error or deadline expiry
        """
        channel: Optional[EventChannel] = None
        state = JobState.CONNECTING
        try:
            async with asyncio.timeout(self.deadline):
                try:
                    channel = await self.gateway.open_event_channel(handle.client_id)
                    state = JobState.ACTIVE
                    state = await self._interpret_events(channel, handle, report)
                except ChannelError as e:
                    raise UpscaleFailure(FailureKind.CHANNEL_ERROR, f"WebSocket connection failed: {e}") from e
        except TimeoutError as e:
            logger.warning(f"Prompt {handle.job_id} timed out after {self.deadline}s while {state.value}")
            raise UpscaleFailure(FailureKind.TIMED_OUT, "Upscale timed out") from e
        finally:
            if channel is not None:
                await _close_quietly(channel)
        logger.info(f"Prompt {handle.job_id} reported completion")
        return state

    async def _interpret_events(
        self,
        channel: EventChannel,
        handle: JobHandle,
        report: ProgressObserver,
    ) -> JobState:
        async for raw in channel:
            event = parse_event(raw)
            if event is None:
                continue
            if isinstance(event, Progress):
                report(f"Processing... {event.percentage()}%")
            elif isinstance(event, Executing):
                if event.is_completion_of(handle.job_id):
                    return JobState.COMPLETED
            elif isinstance(event, ExecutionError):
                message = "Upscale execution failed"
                if event.message:
                    message = f"{message}: {event.message}"
                raise UpscaleFailure(FailureKind.EXECUTION_FAILED, message)

        # A closed channel is not terminal; only the deadline ends the wait now.
        logger.info(f"Event channel for client {handle.client_id} closed before prompt {handle.job_id} finished")
        await asyncio.get_running_loop().create_future()
        return JobState.FAILED


def _observer(on_progress: Optional[ProgressObserver]) -> ProgressObserver:
    def report(status: str) -> None:
        if on_progress is None:
            return
        try:
            on_progress(status)
        except Exception:  # noqa: BLE001
            logger.exception("Progress observer raised")

    return report


async def _close_quietly(channel: EventChannel) -> None:
    try:
        await channel.close()
    except Exception as e:  # noqa: BLE001
        logger.debug(f"Error closing event channel: {e}")
