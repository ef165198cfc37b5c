"""Poll prompt history until the saved output image shows up."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .comfy_client import BackendError

logger = logging.getLogger(__name__)


class OutputNotFoundError(Exception):
    """History never listed an output image for the prompt."""
    pass


class ResultResolver:
    """
    Resolve the output filename of a finished prompt with retry logic.

    The completion event can arrive before ComfyUI has written the prompt's
    history entry, so a missing or empty manifest is retried.
    """

    def __init__(
        self,
        gateway: Any,
        attempts: int = 5,
        delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize result resolver.

        Args:
            gateway: Object providing ``fetch_job_outputs(job_id)``
            attempts: Maximum number of history fetches
            delay: Fixed delay before every fetch after the first, in seconds
            sleep: Coroutine used to wait between attempts
        """
        self.gateway = gateway
        self.attempts = max(1, attempts)
        self.delay = delay
        self._sleep = sleep

    async def resolve_output_filename(self, job_id: str) -> str:
        artifact = await self.resolve_output_artifact(job_id)
        return artifact["filename"]

    async def resolve_output_artifact(self, job_id: str) -> Dict[str, Any]:
        """
        Return the first output artifact descriptor recorded for ``job_id``.

        Raises:
            OutputNotFoundError: No artifact after all attempts
        """
        for attempt in range(self.attempts):
            if attempt > 0:
                await self._sleep(self.delay)
            try:
                outputs = await self.gateway.fetch_job_outputs(job_id)
            except BackendError as e:
                logger.warning(
                    f"History fetch failed for prompt {job_id}: {e} "
                    f"(attempt {attempt + 1}/{self.attempts})"
                )
                continue

            artifact = first_artifact(outputs)
            if artifact is not None:
                logger.info(f"Resolved output {artifact['filename']} for prompt {job_id} (attempt {attempt + 1})")
                return artifact

            logger.info(f"No outputs yet for prompt {job_id} (attempt {attempt + 1}/{self.attempts})")

        raise OutputNotFoundError("Output not found after retries")


def first_artifact(outputs: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Scan every node's ``images`` list and return the first entry with a filename."""
    if not outputs:
        return None
    for node_output in outputs.values():
        if not isinstance(node_output, dict):
            continue
        for image in node_output.get("images") or []:
            if isinstance(image, dict) and image.get("filename"):
                return image
    return None
