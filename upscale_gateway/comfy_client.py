"""HTTP and WebSocket client for the ComfyUI backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Union
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, WebSocketException

from .events import EventChannel
from .graph_builder import JobGraph

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base exception for ComfyUI backend errors."""
    pass


class ChannelError(BackendError):
    """Event channel could not be opened or failed mid-stream."""
    pass


@dataclass
class UploadedImage:
    name: str
    subfolder: str = ""


def derive_ws_url(api_url: str) -> str:
    """Map ``http(s)://host:port`` to ``ws(s)://host:port/ws``."""
    parts = urlsplit(api_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


class WebSocketEventChannel(EventChannel):
    """EventChannel backed by a ComfyUI ``/ws`` connection."""

    def __init__(self, connection: Any, client_id: str):
        self._connection = connection
        self.client_id = client_id

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        try:
            async for message in self._connection:
                yield message
        except ConnectionClosedOK:
            return
        except (ConnectionClosedError, WebSocketException, OSError) as e:
            raise ChannelError(f"connection lost: {e}") from e

    async def close(self) -> None:
        await self._connection.close()


class ComfyClient:
    """
    Client for the four ComfyUI operations used by the upscale workflow.

    A fresh ``httpx.AsyncClient`` is opened per call so concurrent jobs never
    share connection state.
    """

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:8188",
        ws_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize ComfyUI client.

        Args:
            api_url: Base URL of the ComfyUI HTTP API
            ws_url: WebSocket endpoint (derived from api_url when omitted)
            timeout: HTTP request timeout in seconds
        """
        self.api_url = api_url.rstrip("/")
        self.ws_url = ws_url or derive_ws_url(self.api_url)
        self.timeout = timeout

    async def upload(
        self,
        data: bytes,
        filename: str = "image.png",
        content_type: str = "application/octet-stream",
    ) -> UploadedImage:
        """
        Upload an input image.

        Raises:
            BackendError: Upload rejected or backend unreachable
        """
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.api_url}/upload/image",
                    files={"image": (filename, data, content_type)},
                    data={"overwrite": "true"},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            raise BackendError(f"upload request failed: {e}") from e

        if response.status_code >= 400:
            raise BackendError(f"upload returned {response.status_code}")

        result = _json_object(response, "upload")
        name = result.get("name")
        if not name:
            raise BackendError("upload response did not include a stored name")
        return UploadedImage(name=name, subfolder=result.get("subfolder") or "")

    async def submit(self, graph: JobGraph, client_id: str) -> str:
        """
        Queue a prompt and return its prompt id.

        Raises:
            BackendError: Prompt rejected or backend unreachable
        """
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.api_url}/prompt",
                    json={"prompt": graph.to_prompt(), "client_id": client_id},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            raise BackendError(f"prompt request failed: {e}") from e

        if response.status_code >= 400:
            raise BackendError(f"prompt returned {response.status_code}")

        prompt_id = _json_object(response, "prompt").get("prompt_id")
        if not prompt_id:
            raise BackendError("prompt response did not include a prompt_id")
        return str(prompt_id)

    async def open_event_channel(self, client_id: str) -> WebSocketEventChannel:
        """
        Open the push channel scoped to ``client_id``.

        Raises:
            ChannelError: Connection could not be established
        """
        uri = f"{self.ws_url}?{urlencode({'clientId': client_id})}"
        try:
            # Preview frames can exceed the library's default frame limit.
            connection = await websockets.connect(uri, max_size=None)
        except (WebSocketException, OSError) as e:
            raise ChannelError(f"could not connect to {self.ws_url}: {e}") from e
        logger.debug(f"Opened event channel for client {client_id}")
        return WebSocketEventChannel(connection, client_id)

    async def fetch_job_outputs(self, job_id: str) -> Optional[Dict[str, Dict[str, Any]]]:
        """
        Fetch the output manifest of a finished prompt.

        Returns:
            Mapping node id -> output dict, or None when the history entry
            for ``job_id`` is absent

        Raises:
            BackendError: History request failed
        """
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.api_url}/history/{job_id}",
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            raise BackendError(f"history request failed: {e}") from e

        if response.status_code >= 400:
            raise BackendError(f"history returned {response.status_code}")

        entry = _json_object(response, "history").get(job_id)
        if not isinstance(entry, dict):
            return None
        outputs = entry.get("outputs")
        return outputs if isinstance(outputs, dict) else None


def _json_object(response: httpx.Response, operation: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as e:
        raise BackendError(f"{operation} returned invalid JSON") from e
    if not isinstance(payload, dict):
        raise BackendError(f"{operation} returned unexpected payload")
    return payload
