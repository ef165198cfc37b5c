"""Build the fixed SeedVR2 upscale workflow submitted to ComfyUI."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

SEED_UPPER_BOUND = 1_000_000_000
FILENAME_PREFIX = "upscaleapp"

# Node ids match the workflow exported from the ComfyUI editor.
SAVE_NODE = "10"
UPSCALE_NODE = "11"
DIT_NODE = "12"
VAE_NODE = "13"
LOAD_NODE = "16"

DIT_MODEL = "seedvr2_ema_7b_sharp_fp16.safetensors"
VAE_MODEL = "ema_vae_fp16.safetensors"
DEVICE = "cuda:0"
OFFLOAD_DEVICE = "cpu"


@dataclass(frozen=True)
class NodeSpec:
    """One processing node: its operation type, parameters and upstream links."""

    class_type: str
    inputs: Mapping[str, Any]
    references: Tuple[Tuple[str, str, int], ...] = ()
    title: Optional[str] = None

    def wire_inputs(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.inputs)
        for input_name, node_id, slot in self.references:
            data[input_name] = [node_id, slot]
        return data


@dataclass(frozen=True)
class JobGraph:
    """Immutable node-id -> NodeSpec mapping."""

    nodes: Mapping[str, NodeSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))
        for node_id, spec in self.nodes.items():
            for input_name, ref_id, _slot in spec.references:
                if ref_id not in self.nodes:
                    raise ValueError(
                        f"node {node_id} input {input_name!r} references missing node {ref_id}"
                    )
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        visiting: set = set()
        done: set = set()

        def visit(node_id: str) -> None:
            if node_id in done:
                return
            if node_id in visiting:
                raise ValueError(f"cycle detected at node {node_id}")
            visiting.add(node_id)
            for _name, ref_id, _slot in self.nodes[node_id].references:
                visit(ref_id)
            visiting.discard(node_id)
            done.add(node_id)

        for node_id in self.nodes:
            visit(node_id)

    def __getitem__(self, node_id: str) -> NodeSpec:
        return self.nodes[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def upstream(self, node_id: str) -> List[str]:
        return [ref_id for _name, ref_id, _slot in self.nodes[node_id].references]

    def to_prompt(self) -> Dict[str, Dict[str, Any]]:
        """Render the graph in the ComfyUI ``/prompt`` wire format."""
        prompt: Dict[str, Dict[str, Any]] = {}
        for node_id, spec in self.nodes.items():
            entry: Dict[str, Any] = {
                "inputs": spec.wire_inputs(),
                "class_type": spec.class_type,
            }
            if spec.title:
                entry["_meta"] = {"title": spec.title}
            prompt[node_id] = entry
        return prompt


def build_upscale_graph(
    image_reference: str,
    resolution: int,
    rng: Optional[random.Random] = None,
) -> JobGraph:
    """
    Build the load -> upscale -> save workflow for one uploaded image.

    Args:
        image_reference: Stored image name returned by the upload endpoint
        resolution: Target resolution, also used as the maximum resolution
        rng: Random source for the sampler seed (module ``random`` by default)

    Returns:
        JobGraph ready for submission

    Raises:
        ValueError: resolution is not a positive integer
    """
    if isinstance(resolution, bool) or not isinstance(resolution, int) or resolution <= 0:
        raise ValueError(f"resolution must be a positive integer, got {resolution!r}")

    source = rng if rng is not None else random
    seed = source.randrange(SEED_UPPER_BOUND)

    nodes = {
        SAVE_NODE: NodeSpec(
            class_type="SaveImage",
            inputs={"filename_prefix": FILENAME_PREFIX},
            references=(("images", UPSCALE_NODE, 0),),
            title="Save Image",
        ),
        UPSCALE_NODE: NodeSpec(
            class_type="SeedVR2VideoUpscaler",
            inputs={
                "seed": seed,
                "resolution": resolution,
                "max_resolution": resolution,
                "batch_size": 1,
                "uniform_batch_size": False,
                "color_correction": "lab",
                "temporal_overlap": 0,
                "prepend_frames": 0,
                "input_noise_scale": 0,
                "latent_noise_scale": 0,
                "offload_device": OFFLOAD_DEVICE,
                "enable_debug": False,
            },
            references=(
                ("image", LOAD_NODE, 0),
                ("dit", DIT_NODE, 0),
                ("vae", VAE_NODE, 0),
            ),
            title="SeedVR2 Video Upscaler (v2.5.22)",
        ),
        DIT_NODE: NodeSpec(
            class_type="SeedVR2LoadDiTModel",
            inputs={
                "model": DIT_MODEL,
                "device": DEVICE,
                "blocks_to_swap": 36,
                "swap_io_components": False,
                "offload_device": OFFLOAD_DEVICE,
                "cache_model": False,
                "attention_mode": "sdpa",
            },
            title="SeedVR2 (Down)Load DiT Model",
        ),
        VAE_NODE: NodeSpec(
            class_type="SeedVR2LoadVAEModel",
            inputs={
                "model": VAE_MODEL,
                "device": DEVICE,
                "encode_tiled": True,
                "encode_tile_size": 1024,
                "encode_tile_overlap": 128,
                "decode_tiled": True,
                "decode_tile_size": 1024,
                "decode_tile_overlap": 128,
                "tile_debug": "false",
                "offload_device": OFFLOAD_DEVICE,
                "cache_model": False,
            },
            title="SeedVR2 (Down)Load VAE Model",
        ),
        LOAD_NODE: NodeSpec(
            class_type="LoadImage",
            inputs={"image": image_reference},
            title="Load Image",
        ),
    }
    return JobGraph(nodes=nodes)
