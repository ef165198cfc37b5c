"""Configuration loader for the upscale gateway - loads from environment variables."""

from __future__ import annotations

import os

from dotenv import load_dotenv

from .app import GatewayConfig


def load_config_from_env() -> GatewayConfig:
    """
    Load GatewayConfig from environment variables.

    Loads .env file if present and reads configuration values.

    Environment Variables:
        HOST: Server host (default: 127.0.0.1)
        PORT: Server port (default: 8765)
        COMFY_API_URL: ComfyUI HTTP API base URL (default: http://127.0.0.1:8188)
        COMFY_WS_URL: ComfyUI WebSocket URL (default: derived from COMFY_API_URL)
        REQUEST_TIMEOUT: Backend request timeout in seconds (default: 30)
        VIEW_TIMEOUT: Image download timeout in seconds (default: 120)
        UPSCALE_DEADLINE: Seconds to wait for a prompt to finish (default: 300)
        RESOLVER_ATTEMPTS: History fetch attempts after completion (default: 5)
        RESOLVER_DELAY_MS: Delay between history fetches in milliseconds (default: 1000)
        DEFAULT_RESOLUTION: Resolution used when a request omits it (default: 4000)
        WORKER_CONCURRENCY: Number of upscale workers (default: 1)
        VIEW_PATH: Path of the image proxy used in result URLs (default: /api/comfyui/view)

    Returns:
        GatewayConfig object with values from environment
    """
    # Load .env file if it exists
    load_dotenv()

    return GatewayConfig(
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8765")),
        comfy_api_url=os.getenv("COMFY_API_URL", "http://127.0.0.1:8188").rstrip("/"),
        comfy_ws_url=os.getenv("COMFY_WS_URL") or None,
        request_timeout=float(os.getenv("REQUEST_TIMEOUT", "30.0")),
        view_timeout=float(os.getenv("VIEW_TIMEOUT", "120.0")),
        # Upscale job settings
        deadline=float(os.getenv("UPSCALE_DEADLINE", "300")),
        resolver_attempts=int(os.getenv("RESOLVER_ATTEMPTS", "5")),
        resolver_delay=float(os.getenv("RESOLVER_DELAY_MS", "1000")) / 1000.0,
        default_resolution=int(os.getenv("DEFAULT_RESOLUTION", "4000")),
        worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "1")),
        view_path=os.getenv("VIEW_PATH", "/api/comfyui/view"),
    )
