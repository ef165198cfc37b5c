"""Tests for the upscale job orchestrator and its event loop."""

import asyncio
import json
import random
from unittest.mock import AsyncMock

import pytest

from upscale_gateway.comfy_client import BackendError, ChannelError, UploadedImage
from upscale_gateway.events import EventChannel
from upscale_gateway.graph_builder import UPSCALE_NODE
from upscale_gateway.orchestrator import FailureKind, UpscaleOrchestrator
from upscale_gateway.resolver import ResultResolver

PROMPT_ID = "prompt-1"
OUTPUTS = {"10": {"images": [{"filename": "upscaleapp_00001_.png", "subfolder": "", "type": "output"}]}}


def progress(value, maximum):
    return json.dumps({"type": "progress", "data": {"value": value, "max": maximum}})


def executing(node, prompt_id=PROMPT_ID):
    return json.dumps({"type": "executing", "data": {"node": node, "prompt_id": prompt_id}})


def execution_error(message="boom"):
    return json.dumps({"type": "execution_error", "data": {"prompt_id": PROMPT_ID, "exception_message": message}})


class ScriptedChannel(EventChannel):
    """Replays messages, then either ends, raises or stays open."""

    def __init__(self, messages, hang=False, error=None):
        self._messages = list(messages)
        self.hang = hang
        self.error = error
        self.close_calls = 0
        self.delivered = 0

    async def messages(self):
        for message in self._messages:
            self.delivered += 1
            yield message
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def close(self):
        self.close_calls += 1


class FakeGateway:
    def __init__(self, channel, outputs=None):
        self.channel = channel
        self.outputs = list(outputs if outputs is not None else [OUTPUTS])
        self.upload_error = None
        self.submit_error = None
        self.channel_error = None
        self.submitted = []
        self.uploads = []
        self.opened = []

    async def upload(self, data, filename="image.png", content_type="application/octet-stream"):
        if self.upload_error:
            raise self.upload_error
        self.uploads.append((data, filename, content_type))
        return UploadedImage(name=f"stored-{filename}")

    async def submit(self, graph, client_id):
        if self.submit_error:
            raise self.submit_error
        self.submitted.append((graph, client_id))
        return PROMPT_ID

    async def open_event_channel(self, client_id):
        self.opened.append(client_id)
        if self.channel_error:
            raise self.channel_error
        return self.channel

    async def fetch_job_outputs(self, job_id):
        if not self.outputs:
            return None
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_orchestrator(gateway, deadline=5.0, rng=None):
    resolver = ResultResolver(gateway, attempts=5, delay=1.0, sleep=AsyncMock())
    return UpscaleOrchestrator(gateway, resolver=resolver, deadline=deadline, rng=rng)


@pytest.mark.asyncio
async def test_progress_then_completion_resolves_on_third_attempt():
    channel = ScriptedChannel([progress(50, 100), executing(None)])
    gateway = FakeGateway(channel, outputs=[None, {}, OUTPUTS])
    statuses = []

    result = await make_orchestrator(gateway).run_upscale(b"png-bytes", 4000, on_progress=statuses.append)

    assert result.success
    assert result.image_url == "/api/comfyui/view?filename=upscaleapp_00001_.png&type=output"
    assert statuses == ["Uploading image...", "Starting upscale...", "Processing...", "Processing... 50%"]
    assert channel.close_calls == 1
    assert gateway.outputs == []


@pytest.mark.asyncio
async def test_submits_graph_for_uploaded_image_with_client_id():
    channel = ScriptedChannel([executing(None)])
    gateway = FakeGateway(channel)

    await make_orchestrator(gateway).run_upscale(b"data", 1536, filename="cat.jpg", content_type="image/jpeg")

    graph, client_id = gateway.submitted[0]
    assert gateway.uploads == [(b"data", "cat.jpg", "image/jpeg")]
    assert graph[UPSCALE_NODE].inputs["resolution"] == 1536
    assert graph.to_prompt()["16"]["inputs"]["image"] == "stored-cat.jpg"
    assert gateway.opened == [client_id]


@pytest.mark.asyncio
async def test_injected_random_source_makes_client_id_deterministic():
    first = FakeGateway(ScriptedChannel([executing(None)]))
    second = FakeGateway(ScriptedChannel([executing(None)]))

    await make_orchestrator(first, rng=random.Random(9)).run_upscale(b"x", 512)
    await make_orchestrator(second, rng=random.Random(9)).run_upscale(b"x", 512)

    first_graph, first_client = first.submitted[0]
    second_graph, second_client = second.submitted[0]
    assert first_client == second_client
    assert first_client[14] == "4"
    assert first_graph[UPSCALE_NODE].inputs["seed"] == second_graph[UPSCALE_NODE].inputs["seed"]


@pytest.mark.asyncio
async def test_execution_error_fails_job():
    channel = ScriptedChannel([progress(1, 4), execution_error("CUDA out of memory"), executing(None)])
    gateway = FakeGateway(channel)

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert not result.success
    assert result.failure is FailureKind.EXECUTION_FAILED
    assert result.error == "Upscale execution failed: CUDA out of memory"
    # Nothing after the terminal event is read and the resolver never runs
    assert channel.delivered == 2
    assert channel.close_calls == 1
    assert gateway.outputs == [OUTPUTS]


@pytest.mark.asyncio
async def test_deadline_expiry_times_out_and_closes_channel_once():
    channel = ScriptedChannel([progress(10, 100)], hang=True)
    gateway = FakeGateway(channel)

    result = await make_orchestrator(gateway, deadline=0.05).run_upscale(b"x", 4000)

    assert not result.success
    assert result.failure is FailureKind.TIMED_OUT
    assert result.error == "Upscale timed out"
    assert channel.close_calls == 1


@pytest.mark.asyncio
async def test_non_qualifying_events_do_not_finish_job():
    channel = ScriptedChannel(
        [executing("11"), executing(None, prompt_id="someone-else"), executing("10")],
        hang=True,
    )
    gateway = FakeGateway(channel)

    result = await make_orchestrator(gateway, deadline=0.05).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.TIMED_OUT
    assert channel.delivered == 3


@pytest.mark.asyncio
async def test_channel_close_is_not_terminal():
    channel = ScriptedChannel([progress(3, 10)])
    gateway = FakeGateway(channel)

    result = await make_orchestrator(gateway, deadline=0.05).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.TIMED_OUT
    assert channel.close_calls == 1


@pytest.mark.asyncio
async def test_malformed_messages_are_skipped():
    channel = ScriptedChannel([b"\xff\xfe binary", "{not json", json.dumps({"type": "status"}), executing(None)])
    gateway = FakeGateway(channel)

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert result.success
    assert channel.delivered == 4


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_message",
    [
        '{"type": "progress", "data": {"value": NaN, "max": 10}}',
        '{"type": "progress", "data": {"value": Infinity, "max": 10}}',
        '{"type": "progress", "data": {"value": ' + "9" * 400 + ', "max": 10}}',
        "[" * 100000,
    ],
)
async def test_unparseable_numbers_and_deep_nesting_do_not_end_job(bad_message):
    channel = ScriptedChannel([bad_message, executing(None)])
    gateway = FakeGateway(channel)
    statuses = []

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000, on_progress=statuses.append)

    assert result.success
    assert result.failure is None
    assert channel.delivered == 2
    assert statuses[-1] == "Processing..."


@pytest.mark.asyncio
async def test_output_not_found_after_completion_event():
    channel = ScriptedChannel([executing(None)])
    gateway = FakeGateway(channel, outputs=[{}, {}, {}, {}, {}])

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert not result.success
    assert result.failure is FailureKind.OUTPUT_NOT_FOUND
    assert result.error == "Output not found after retries"


@pytest.mark.asyncio
async def test_upload_failure_is_classified():
    gateway = FakeGateway(ScriptedChannel([]))
    gateway.upload_error = BackendError("upload returned 500")

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.UPLOAD_FAILED
    assert result.error.startswith("Failed to upload image to ComfyUI")
    assert gateway.submitted == []


@pytest.mark.asyncio
async def test_submission_failure_is_classified():
    gateway = FakeGateway(ScriptedChannel([]))
    gateway.submit_error = BackendError("prompt returned 400")

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.SUBMISSION_FAILED
    assert result.error.startswith("Failed to queue upscale prompt")
    assert gateway.opened == []


@pytest.mark.asyncio
async def test_channel_connect_failure_is_classified():
    gateway = FakeGateway(ScriptedChannel([]))
    gateway.channel_error = ChannelError("could not connect")

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.CHANNEL_ERROR
    assert result.error.startswith("WebSocket connection failed")


@pytest.mark.asyncio
async def test_channel_error_mid_stream_closes_channel():
    channel = ScriptedChannel([progress(1, 2)], error=ChannelError("connection lost"))
    gateway = FakeGateway(channel)

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.CHANNEL_ERROR
    assert channel.close_calls == 1


@pytest.mark.asyncio
async def test_unexpected_errors_never_escape():
    gateway = FakeGateway(ScriptedChannel([]))
    gateway.upload_error = RuntimeError("bad state")

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000)

    assert result.failure is FailureKind.UNEXPECTED
    assert "bad state" in result.error


@pytest.mark.asyncio
async def test_observer_errors_do_not_break_job():
    def explode(status):
        raise RuntimeError("observer down")

    gateway = FakeGateway(ScriptedChannel([progress(1, 2), executing(None)]))

    result = await make_orchestrator(gateway).run_upscale(b"x", 4000, on_progress=explode)

    assert result.success


@pytest.mark.asyncio
async def test_concurrent_jobs_are_independent():
    ok_channel = ScriptedChannel([progress(1, 2), executing(None)])
    failing_channel = ScriptedChannel([execution_error()])
    ok_gateway = FakeGateway(ok_channel)
    failing_gateway = FakeGateway(failing_channel)

    ok_result, failed_result = await asyncio.gather(
        make_orchestrator(ok_gateway).run_upscale(b"a", 1024),
        make_orchestrator(failing_gateway).run_upscale(b"b", 1024),
    )

    assert ok_result.success
    assert failed_result.failure is FailureKind.EXECUTION_FAILED
    assert ok_gateway.submitted[0][1] != failing_gateway.submitted[0][1]
