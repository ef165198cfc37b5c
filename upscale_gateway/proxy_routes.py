"""
Same-origin pass-through routes to the ComfyUI HTTP API.

Each route forwards the request to ComfyUI and relays the status and body so
browsers never call the backend directly:
- POST /api/comfyui/upload -> /upload/image
- POST /api/comfyui/prompt -> /prompt
- GET /api/comfyui/history/{prompt_id} -> /history/{prompt_id}
- GET /api/comfyui/view -> /view (streamed)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/comfyui", tags=["comfyui"])

CONNECT_ERROR = "Failed to connect to ComfyUI"


def get_config(request: Request):
    return request.app.state.gateway_config


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _relay_json(response: httpx.Response, route: str) -> JSONResponse:
    try:
        payload = response.json()
    except ValueError as e:
        logger.error(f"{route} proxy got a non-JSON body from ComfyUI: {e}")
        return _error(CONNECT_ERROR, 500)
    return JSONResponse(payload)


@router.post("/upload")
async def upload_image(
    image: UploadFile = File(...),
    overwrite: Optional[str] = Form("true"),
    subfolder: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    config=Depends(get_config),
) -> JSONResponse:
    """Forward a multipart image upload to ComfyUI."""
    content = await image.read()
    form: Dict[str, str] = {"overwrite": overwrite or "true"}
    if subfolder:
        form["subfolder"] = subfolder
    if type:
        form["type"] = type

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{config.comfy_api_url}/upload/image",
                files={"image": (image.filename or "image.png", content, image.content_type or "application/octet-stream")},
                data=form,
                timeout=config.request_timeout,
            )
    except httpx.HTTPError as e:
        logger.error(f"Upload proxy could not reach ComfyUI: {e}")
        return _error(CONNECT_ERROR, 500)

    if response.status_code >= 400:
        logger.warning(f"ComfyUI upload failed with status {response.status_code}")
        return _error("Upload failed", response.status_code)
    return _relay_json(response, "Upload")


@router.post("/prompt")
async def queue_prompt(
    payload: Dict[str, Any] = Body(...),
    config=Depends(get_config),
) -> JSONResponse:
    """Forward a prompt (workflow + client_id) to ComfyUI."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{config.comfy_api_url}/prompt",
                json=payload,
                timeout=config.request_timeout,
            )
    except httpx.HTTPError as e:
        logger.error(f"Prompt proxy could not reach ComfyUI: {e}")
        return _error(CONNECT_ERROR, 500)

    if response.status_code >= 400:
        logger.warning(f"ComfyUI prompt failed with status {response.status_code}")
        return _error("Failed to queue prompt", response.status_code)
    return _relay_json(response, "Prompt")


@router.get("/history/{prompt_id}")
async def get_history(prompt_id: str, config=Depends(get_config)) -> JSONResponse:
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{config.comfy_api_url}/history/{prompt_id}",
                timeout=config.request_timeout,
            )
    except httpx.HTTPError as e:
        logger.error(f"History proxy could not reach ComfyUI: {e}")
        return _error(CONNECT_ERROR, 500)

    if response.status_code >= 400:
        return _error("Failed to get history", response.status_code)
    return _relay_json(response, "History")


@router.get("/view")
async def view_image(
    filename: Optional[str] = None,
    type: str = "output",
    subfolder: Optional[str] = None,
    config=Depends(get_config),
):
    """
    Stream an image from ComfyUI, preserving its content type and length.

    Uses ``config.view_timeout`` since full-size upscales can be large.
    """
    if not filename:
        return _error("Filename required", 400)

    params = {"filename": filename, "type": type or "output"}
    if subfolder:
        params["subfolder"] = subfolder

    logger.info(f"Fetching image: {config.comfy_api_url}/view filename={filename} type={params['type']}")

    client = httpx.AsyncClient(timeout=config.view_timeout)
    try:
        request = client.build_request("GET", f"{config.comfy_api_url}/view", params=params)
        upstream = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error(f"View endpoint error: {e}")
        return _error(CONNECT_ERROR, 502, details=str(e))

    if upstream.status_code >= 400:
        logger.error(f"ComfyUI view failed: {upstream.status_code} {upstream.reason_phrase}")
        await upstream.aclose()
        await client.aclose()
        return _error("Failed to get image", upstream.status_code, status=upstream.status_code)

    content_type = upstream.headers.get("content-type") or "image/png"
    content_length = upstream.headers.get("content-length")
    logger.info(f"Image response: type={content_type}, size={content_length}")

    headers = {"Content-Length": content_length} if content_length else None
    return StreamingResponse(
        upstream.aiter_raw(),
        media_type=content_type,
        headers=headers,
        background=BackgroundTask(_close_stream, upstream, client),
    )


async def _close_stream(upstream: httpx.Response, client: httpx.AsyncClient) -> None:
    await upstream.aclose()
    await client.aclose()
