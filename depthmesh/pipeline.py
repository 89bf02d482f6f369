"""Image-to-mesh conversion pipeline.

A Renderer owns the compute device for the lifetime of the process and
runs the two kernels; an ImageProcessor strings the stages together for
one image:

    1. Subject mask (standard / high_quality modes)
    2. Depth estimation
    3. Mesh generation (untextured, or textured in high_quality mode)
    4. OBJ serialization

When the renderer has no device the serial fallback is used for both
kernels.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
from typing import Dict, List, Optional

import cv2
import numpy as np

from depthmesh import depth as depth_mod
from depthmesh import evaluate, mask, obj, serial, visualise
from depthmesh.config import max_buffer_bytes
from depthmesh.dispatch import ComputeDevice, acquire_device
from depthmesh.mesh import MeshBuffers, check_grid_size

logger = logging.getLogger(__name__)

MODE_STANDARD = "standard"
MODE_FAST = "fast"
MODE_HIGH_QUALITY = "high_quality"
MODES = (MODE_STANDARD, MODE_FAST, MODE_HIGH_QUALITY)

# Test image gradient stops (position, RGB)
GRADIENT_STOPS = (
    (0.0, (255, 0, 0)),
    (0.33, (0, 255, 0)),
    (0.66, (0, 0, 255)),
    (1.0, (255, 255, 0)),
)
DISC_COLOR = (255, 128, 0)
DISC_RADIUS = 80


class Renderer:
    """Runs depth estimation and mesh generation on one long-lived device."""

    def __init__(
        self,
        device: Optional[ComputeDevice] = None,
        noise_amplitude: float = depth_mod.NOISE_AMPLITUDE,
        max_buffer_bytes: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the renderer.

        Args:
            device: Compute device, or None for the serial fallback
            noise_amplitude: Scale of the depth kernel's hash noise
            max_buffer_bytes: Per-buffer allocation limit for the serial path
            logger: Observability hook, defaults to the module logger
        """
        self.device = device
        self.noise_amplitude = noise_amplitude
        self.max_buffer_bytes = max_buffer_bytes
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: Dict, logger: Optional[logging.Logger] = None) -> "Renderer":
        """Acquire the configured device and build a renderer around it."""
        limit = max_buffer_bytes(config)
        device = acquire_device(
            backend=config["device"]["backend"],
            require_gpu=config["device"]["require_gpu"],
            max_buffer_bytes=limit,
            logger=logger,
        )
        return cls(
            device=device,
            noise_amplitude=config["depth"]["noise_amplitude"],
            max_buffer_bytes=limit,
            logger=logger,
        )

    @property
    def device_name(self) -> str:
        return self.device.name if self.device is not None else "serial"

    def estimate_depth(self, image: np.ndarray) -> np.ndarray:
        """Estimate the HxW depth field of an image."""
        if self.device is None:
            return serial.estimate_depth(image, max_bytes=self.max_buffer_bytes, logger=self.logger)
        return self.device.estimate_depth(image, self.noise_amplitude, logger=self.logger)

    def generate_mesh(self, depth: np.ndarray, rgb: Optional[np.ndarray] = None) -> MeshBuffers:
        """Generate mesh buffers from a depth field, with vertex colours if rgb is given."""
        height, width = depth.shape
        check_grid_size(width, height)
        if self.device is None:
            return serial.generate_mesh(
                width, height, rgb=rgb, max_bytes=self.max_buffer_bytes, logger=self.logger
            )
        return self.device.generate_mesh(depth, rgb, logger=self.logger)

    def release(self) -> None:
        if self.device is not None:
            self.device.release()
            self.device = None


class ImageProcessor:
    """Converts single images to meshes with a shared Renderer."""

    def __init__(
        self,
        renderer: Renderer,
        material_library: str = obj.DEFAULT_MATERIAL_LIBRARY,
        logger: Optional[logging.Logger] = None,
    ):
        self.renderer = renderer
        self.material_library = material_library
        self.logger = logger or logging.getLogger(__name__)

    def process_image(self, image: np.ndarray, mode: str = MODE_STANDARD) -> evaluate.ProcessingResult:
        """Convert one image to a mesh.

        Args:
            image: RGB(A) or grayscale image, uint8 or float in [0, 1]
            mode: "standard" (mask + untextured mesh), "fast" (no mask,
                untextured mesh) or "high_quality" (mask + textured mesh)

        Returns:
            ProcessingResult with depth, mesh buffers, OBJ text and metrics
        """
        if mode not in MODES:
            raise ValueError(f"Unknown processing mode: {mode}")

        log = self.logger
        rgb = depth_mod.to_rgb_float(image)
        height, width = rgb.shape[:2]
        check_grid_size(width, height)
        log.info(f"Starting conversion of {width}x{height} image (mode: {mode}, device: {self.renderer.device_name})")

        total_timer = evaluate.Timer("Conversion", logger=log)
        total_timer.start()

        subject_mask = None
        segmentation_time = 0.0
        if mode != MODE_FAST:
            with evaluate.Timer("Subject Mask", logger=log) as timer:
                subject_mask = mask.generate_subject_mask(rgb, logger=log)
            segmentation_time = timer.elapsed

        with evaluate.Timer("Depth Estimation", logger=log) as timer:
            depth = self.renderer.estimate_depth(rgb)
        depth_time = timer.elapsed
        log.info(f"Depth estimation complete (elapsed time: {depth_time:.2f}s)")

        textured = mode == MODE_HIGH_QUALITY
        with evaluate.Timer("Mesh Generation", logger=log) as timer:
            buffers = self.renderer.generate_mesh(depth, rgb if textured else None)
            buffers.validate()
            mesh_text = obj.write_obj(buffers, textured=textured, material_library=self.material_library)
        mesh_time = timer.elapsed
        log.info(
            f"Mesh generation complete: {buffers.vertex_count} vertices, "
            f"{buffers.triangle_count} triangles (elapsed time: {mesh_time:.2f}s)"
        )

        total_time = total_timer.stop()
        memory_scale = 0.5 if mode == MODE_FAST else 1.0

        return evaluate.ProcessingResult(
            depth=depth,
            depth_map=depth_mod.depth_to_image(depth),
            mesh=buffers,
            mesh_text=mesh_text,
            final_render=to_uint8(rgb),
            timing=evaluate.ProcessingTiming(
                segmentation=segmentation_time,
                depth_estimation=depth_time,
                mesh_generation=mesh_time,
                total=total_time,
            ),
            metrics=evaluate.MeshMetrics.for_image(width, height, memory_scale),
            mask=subject_mask,
            device_name=self.renderer.device_name,
        )


def to_uint8(rgb: np.ndarray) -> np.ndarray:
    """Float RGB in [0, 1] to uint8."""
    return np.rint(np.clip(rgb, 0.0, 1.0) * 255.0).astype(np.uint8)


def load_image(image_path: str) -> np.ndarray:
    """Read an image file as an HxWx3 uint8 RGB array.

    Raises:
        OSError: If the file does not exist or cannot be decoded
    """
    if not os.path.isfile(image_path):
        raise FileNotFoundError(f"Image not found: {image_path}")

    image = cv2.imread(image_path, cv2.IMREAD_COLOR)
    if image is None:
        raise OSError(f"Could not decode image: {image_path}")

    logger.info(f"Loaded image {image_path}: {image.shape[1]}x{image.shape[0]}")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def save_image(image: np.ndarray, output_path: str) -> None:
    """Write an RGB or single-channel uint8 image, creating parent directories.

    Raises:
        OSError: If the image cannot be written
    """
    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    if not cv2.imwrite(output_path, image):
        raise OSError(f"Could not write image: {output_path}")


def create_test_image(width: int = 512, height: int = 512) -> np.ndarray:
    """Synthesise a diagonal red-green-blue-yellow gradient with an orange disc.

    Returns:
        HxWx3 uint8 RGB image
    """
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    t = (xs * width + ys * height) / float(width * width + height * height)

    positions = [stop[0] for stop in GRADIENT_STOPS]
    image = np.zeros((height, width, 3), dtype=np.uint8)
    for channel in range(3):
        values = [stop[1][channel] for stop in GRADIENT_STOPS]
        image[:, :, channel] = np.rint(np.interp(t, positions, values)).astype(np.uint8)

    cv2.circle(image, (width // 2, height // 2), DISC_RADIUS, DISC_COLOR, thickness=-1)
    return image


def save_outputs(
    result: evaluate.ProcessingResult,
    output_dir: str,
    io_config: Dict,
    preview: bool = False,
    preview_max_grid: int = 128,
) -> Dict[str, str]:
    """Persist a conversion result.

    Writes the depth map, mesh, material file (textured meshes), original
    image, subject mask, optional preview and extra mesh formats, and a
    JSON report. The in-memory result stays valid if any write fails.

    Args:
        result: Conversion result
        output_dir: Root output directory
        io_config: "io" section of the configuration
        preview: Whether to render a preview image
        preview_max_grid: Preview sampling limit per side

    Returns:
        Mapping of output kind to written path

    Raises:
        OSError: If any output cannot be written
    """
    paths = {}

    def _path(key: str) -> str:
        paths[key] = os.path.join(output_dir, io_config[key])
        return paths[key]

    save_image(result.depth_map, _path("depth_map"))
    logger.info(f"Depth map: {paths['depth_map']}")

    mesh_path = _path("mesh")
    os.makedirs(os.path.dirname(os.path.abspath(mesh_path)), exist_ok=True)
    with open(mesh_path, "w") as f:
        f.write(result.mesh_text)
    logger.info(f"3D mesh: {mesh_path} ({len(result.mesh_text.encode('utf-8'))} bytes)")

    if result.mesh.textured:
        obj.save_mtl(_path("material"))

    save_image(result.final_render, _path("original"))

    if result.mask is not None:
        save_image(result.mask, _path("mask"))

    if preview:
        visualise.render_preview(result.mesh, _path("preview"), max_grid=preview_max_grid)

    extra_formats: List[str] = io_config.get("extra_formats") or []
    stem = os.path.splitext(mesh_path)[0]
    for fmt in extra_formats:
        export_path = f"{stem}.{fmt.lower().lstrip('.')}"
        visualise.export_mesh(result.mesh, export_path)
        paths[f"mesh_{fmt}"] = export_path

    report = evaluate.processing_stats(result)
    report["timing"] = evaluate.timing_dict(result.timing)
    report["datetime"] = datetime.datetime.now().isoformat()
    report_path = _path("report")
    with open(report_path, "w") as f:
        json.dump(report, f, indent=2)

    logger.info(f"Results saved to {output_dir}")
    return paths
