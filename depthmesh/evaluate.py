"""Metrics and timing for image-to-mesh conversion.

This module provides the mesh statistics and per-stage timings reported
for each conversion, along with a small context-manager timer.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Union

import numpy as np

from depthmesh.mesh import MeshBuffers

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass(frozen=True)
class MeshMetrics:
    """Size summary of a generated grid mesh."""

    vertex_count: int
    triangle_count: int
    gpu_memory_mb: int

    @classmethod
    def for_image(cls, width: int, height: int, memory_scale: float = 1.0) -> "MeshMetrics":
        """Metrics for the mesh of a W x H image.

        Args:
            width: Image width in pixels
            height: Image height in pixels
            memory_scale: Multiplier applied to the memory estimate
        """
        return cls(
            vertex_count=width * height,
            triangle_count=2 * (width - 1) * (height - 1),
            gpu_memory_mb=int(estimate_memory_usage(width, height) * memory_scale),
        )


@dataclass(frozen=True)
class ProcessingTiming:
    """Wall-clock seconds spent in each stage of one conversion."""

    segmentation: float
    depth_estimation: float
    mesh_generation: float
    total: float


@dataclass
class ProcessingResult:
    """Everything produced by converting one image."""

    depth: np.ndarray
    depth_map: np.ndarray
    mesh: MeshBuffers
    mesh_text: str
    final_render: np.ndarray
    timing: ProcessingTiming
    metrics: MeshMetrics
    mask: Optional[np.ndarray] = None
    device_name: str = "serial"


def estimate_memory_usage(width: int, height: int) -> int:
    """Estimated device memory for converting a W x H image, in MiB (at least 1).

    Counts the input and depth textures (RGBA8), positions and UVs
    (float32), triangle indices (uint32) and a one-byte-per-pixel mask.
    """
    texture_bytes = width * height * 4 * 2
    vertex_bytes = width * height * (3 + 2) * 4
    index_bytes = (width - 1) * (height - 1) * 6 * 4
    mask_bytes = width * height

    total_bytes = texture_bytes + vertex_bytes + index_bytes + mask_bytes
    return max(1, total_bytes // MIB)


def processing_stats(result: ProcessingResult) -> Dict[str, Union[int, float, str]]:
    """Flatten a result's timings and mesh metrics into a report dictionary."""
    timing = result.timing
    metrics = result.metrics
    mesh_time = timing.mesh_generation

    return {
        "device": result.device_name,
        "total_time": timing.total,
        "segmentation_time": timing.segmentation,
        "depth_estimation_time": timing.depth_estimation,
        "mesh_generation_time": mesh_time,
        "vertex_count": metrics.vertex_count,
        "triangle_count": metrics.triangle_count,
        "gpu_memory_mb": metrics.gpu_memory_mb,
        "vertices_per_second": metrics.vertex_count / mesh_time if mesh_time > 0 else 0.0,
        "triangles_per_second": metrics.triangle_count / mesh_time if mesh_time > 0 else 0.0,
    }


def summary(result: ProcessingResult) -> str:
    """Human-readable summary of a conversion."""
    stats = processing_stats(result)
    lines = [
        "Conversion Metrics:",
        f"  Device: {stats['device']}",
        f"  Vertices: {stats['vertex_count']}",
        f"  Triangles: {stats['triangle_count']}",
        f"  Estimated GPU memory: {stats['gpu_memory_mb']} MB",
        "  Stage timings:",
        f"    segmentation: {stats['segmentation_time']:.3f}s",
        f"    depth_estimation: {stats['depth_estimation_time']:.3f}s",
        f"    mesh_generation: {stats['mesh_generation_time']:.3f}s",
        f"  Total runtime: {stats['total_time']:.3f}s",
    ]
    return "\n".join(lines)


def timing_dict(timing: ProcessingTiming) -> Dict[str, float]:
    return asdict(timing)


class Timer:
    """Utility class for timing operations with context manager support."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        """Initialize timer.

        Args:
            name: Timer name for logging
            logger: Logger to use (if None, uses module logger)
        """
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None

    def start(self) -> None:
        """Start the timer."""
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed time.

        Returns:
            Elapsed time in seconds
        """
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        """Start timing when entering context."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop timing when exiting context."""
        self.stop()

    @property
    def elapsed(self) -> float:
        """Elapsed time in seconds; frozen once the timer has been stopped."""
        if self.start_time is None:
            return 0.0
        end_time = self.end_time if self.end_time is not None else time.perf_counter()
        return end_time - self.start_time
