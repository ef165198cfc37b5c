"""Same-origin gateway for SeedVR2 upscaling on a ComfyUI backend."""

from .app import GatewayConfig, create_app
from .orchestrator import FailureKind, UpscaleOrchestrator, UpscaleResult

__all__ = ["GatewayConfig", "create_app", "FailureKind", "UpscaleOrchestrator", "UpscaleResult"]
