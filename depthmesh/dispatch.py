"""Compute dispatch for the depth and mesh kernels.

A compute device owns everything that outlives a single image (context,
compiled programs) and allocates the per-image textures and buffers on
each call:

    depth:  2D grid of 16x16 work-groups, ceil(W/16) x ceil(H/16)
    mesh:   1D grid of 256-wide work-groups, ceil(W*H/256)

Each call blocks until the device has finished before returning. Two
devices are provided:

    - GLComputeDevice runs the GLSL compute shaders through moderngl on a
      headless OpenGL 4.3 context.
    - HostDevice executes the same kernels on the CPU with numpy, over the
      full padded grid, masking the padding threads exactly as the shaders do.

`acquire_device` decides once, at startup, which device (if any) a
renderer uses. A None result selects the serial fallback.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import moderngl
import numpy as np

from depthmesh import depth as depth_mod
from depthmesh.errors import BufferAllocationError, DeviceUnavailableError, KernelCompileError
from depthmesh.mesh import (
    MeshBuffers,
    allocate_mesh_buffers,
    buffer_sizes,
    check_grid_size,
    mesh_kernel,
)
from depthmesh.shaders import DEPTH_ESTIMATION_COMPUTE_SHADER, MESH_GENERATION_COMPUTE_SHADER

logger = logging.getLogger(__name__)

WORKGROUP_2D = (16, 16)
WORKGROUP_1D = 256

BACKENDS = ("auto", "gl", "host", "serial")


def partition(domain_size: int, group_size: int) -> int:
    """Number of work-groups of group_size needed to cover domain_size items."""
    if group_size <= 0:
        raise ValueError(f"Work-group size must be positive, got {group_size}")
    if domain_size < 0:
        raise ValueError(f"Domain size must be non-negative, got {domain_size}")
    return (domain_size + group_size - 1) // group_size


def depth_grid(width: int, height: int) -> Tuple[int, int]:
    """Work-group grid for the depth kernel."""
    return partition(width, WORKGROUP_2D[0]), partition(height, WORKGROUP_2D[1])


def mesh_grid(width: int, height: int) -> int:
    """Work-group count for the mesh kernel."""
    return partition(width * height, WORKGROUP_1D)


class ComputeDevice(ABC):
    """Base class for devices that execute the two kernels."""

    name = "device"

    def __init__(self, max_buffer_bytes: Optional[int] = None):
        self.max_buffer_bytes = max_buffer_bytes

    def check_allocation(self, resource: str, nbytes: int) -> None:
        """Raise BufferAllocationError if nbytes exceeds the per-buffer limit."""
        if self.max_buffer_bytes is not None and nbytes > self.max_buffer_bytes:
            raise BufferAllocationError(
                resource, nbytes, f"exceeds limit of {self.max_buffer_bytes} bytes"
            )

    @abstractmethod
    def estimate_depth(
        self,
        image: np.ndarray,
        noise_amplitude: float = depth_mod.NOISE_AMPLITUDE,
        logger: Optional[logging.Logger] = None,
    ) -> np.ndarray:
        """Estimate the HxW depth field of an image, blocking until done."""

    @abstractmethod
    def generate_mesh(
        self,
        depth: np.ndarray,
        rgb: Optional[np.ndarray] = None,
        logger: Optional[logging.Logger] = None,
    ) -> MeshBuffers:
        """Fill mesh buffers from a depth field, blocking until done."""

    def release(self) -> None:
        pass

    def __enter__(self) -> "ComputeDevice":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class HostDevice(ComputeDevice):
    """Vectorised CPU execution of the kernels over the padded dispatch grid."""

    name = "host"

    def estimate_depth(
        self,
        image: np.ndarray,
        noise_amplitude: float = depth_mod.NOISE_AMPLITUDE,
        logger: Optional[logging.Logger] = None,
    ) -> np.ndarray:
        log = logger or logging.getLogger(__name__)
        rgb = depth_mod.to_rgb_float(image)
        height, width = rgb.shape[:2]
        self.check_allocation("depth texture", width * height * 4)

        groups_x, groups_y = depth_grid(width, height)
        log.debug(
            f"Depth dispatch: {groups_x}x{groups_y} groups of "
            f"{WORKGROUP_2D[0]}x{WORKGROUP_2D[1]} for {width}x{height} pixels"
        )

        ys, xs = np.mgrid[0:groups_y * WORKGROUP_2D[1], 0:groups_x * WORKGROUP_2D[0]]
        in_bounds = (xs < width) & (ys < height)
        xs = xs[in_bounds]
        ys = ys[in_bounds]

        try:
            depth = np.zeros((height, width), dtype=np.float32)
        except MemoryError as e:
            raise BufferAllocationError("depth texture", width * height * 4, str(e)) from e
        depth[ys, xs] = depth_mod.depth_kernel(rgb, xs, ys, noise_amplitude)

        return depth

    def generate_mesh(
        self,
        depth: np.ndarray,
        rgb: Optional[np.ndarray] = None,
        logger: Optional[logging.Logger] = None,
    ) -> MeshBuffers:
        log = logger or logging.getLogger(__name__)
        height, width = depth.shape
        buffers = allocate_mesh_buffers(
            width, height, textured=rgb is not None, max_bytes=self.max_buffer_bytes
        )

        groups = mesh_grid(width, height)
        log.debug(
            f"Mesh dispatch: {groups} groups of {WORKGROUP_1D} for {width * height} vertices"
        )
        mesh_kernel(depth, np.arange(groups * WORKGROUP_1D), buffers, rgb)

        return buffers


class GLComputeDevice(ComputeDevice):
    """OpenGL 4.3 compute-shader device backed by moderngl."""

    name = "gl"

    def __init__(
        self,
        ctx: Optional[moderngl.Context] = None,
        max_buffer_bytes: Optional[int] = None,
    ):
        super().__init__(max_buffer_bytes)

        self._owns_context = ctx is None
        if self._owns_context:
            try:
                ctx = moderngl.create_standalone_context(require=430)
            except Exception as e:
                raise DeviceUnavailableError(f"No OpenGL 4.3 compute context available: {e}") from e
        self.ctx = ctx
        self.name = f"gl ({ctx.info.get('GL_RENDERER', 'unknown renderer')})"

        self._depth_program = None
        self._mesh_program = None
        try:
            self._depth_program = self._compile(
                "depth_estimation_kernel", DEPTH_ESTIMATION_COMPUTE_SHADER, "input_tex"
            )
            self._mesh_program = self._compile(
                "mesh_generation_kernel", MESH_GENERATION_COMPUTE_SHADER, "depth_tex"
            )
        except KernelCompileError:
            if self._depth_program is not None:
                self._depth_program.release()
                self._depth_program = None
            if self._owns_context:
                ctx.release()
                self.ctx = None
            raise

    def _compile(self, kernel_name: str, source: str, entry_uniform: str):
        try:
            program = self.ctx.compute_shader(source)
        except Exception as e:
            raise KernelCompileError(f"Could not compile {kernel_name}: {e}") from e
        if program.get(entry_uniform, None) is None:
            program.release()
            raise KernelCompileError(f"{kernel_name} does not expose '{entry_uniform}'")
        return program

    @staticmethod
    def _set_uniform(program, name: str, value) -> None:
        uniform = program.get(name, None)
        if uniform is not None:
            uniform.value = value

    def _texture(self, resource: str, size: Tuple[int, int], components: int, data: Optional[bytes] = None):
        nbytes = size[0] * size[1] * components * 4
        self.check_allocation(resource, nbytes)
        try:
            return self.ctx.texture(size, components, data=data, dtype="f4")
        except moderngl.Error as e:
            raise BufferAllocationError(resource, nbytes, str(e)) from e

    def _buffer(self, resource: str, nbytes: int):
        self.check_allocation(resource, nbytes)
        try:
            return self.ctx.buffer(reserve=max(nbytes, 4))
        except moderngl.Error as e:
            raise BufferAllocationError(resource, nbytes, str(e)) from e

    def _finish(self) -> None:
        self.ctx.memory_barrier()
        self.ctx.finish()

    def estimate_depth(
        self,
        image: np.ndarray,
        noise_amplitude: float = depth_mod.NOISE_AMPLITUDE,
        logger: Optional[logging.Logger] = None,
    ) -> np.ndarray:
        log = logger or logging.getLogger(__name__)
        rgb = depth_mod.to_rgb_float(image)
        height, width = rgb.shape[:2]
        rgba = np.concatenate([rgb, np.ones((height, width, 1), dtype=np.float32)], axis=2)

        resources = []
        try:
            input_tex = self._texture("input texture", (width, height), 4, rgba.tobytes())
            resources.append(input_tex)
            depth_tex = self._texture("depth texture", (width, height), 1)
            resources.append(depth_tex)

            program = self._depth_program
            input_tex.use(location=0)
            self._set_uniform(program, "input_tex", 0)
            depth_tex.bind_to_image(1, read=False, write=True)
            self._set_uniform(program, "depth_scale", float(depth_mod.DEPTH_SCALE))
            self._set_uniform(program, "noise_amplitude", float(noise_amplitude))

            groups_x, groups_y = depth_grid(width, height)
            log.debug(f"Depth dispatch: {groups_x}x{groups_y} groups on {self.name}")
            program.run(groups_x, groups_y, 1)
            self._finish()

            depth = np.frombuffer(depth_tex.read(), dtype=np.float32).reshape(height, width)
            return depth.copy()
        finally:
            for resource in resources:
                resource.release()

    def generate_mesh(
        self,
        depth: np.ndarray,
        rgb: Optional[np.ndarray] = None,
        logger: Optional[logging.Logger] = None,
    ) -> MeshBuffers:
        log = logger or logging.getLogger(__name__)
        depth = np.ascontiguousarray(depth, dtype=np.float32)
        height, width = depth.shape
        check_grid_size(width, height)
        textured = rgb is not None
        sizes = buffer_sizes(width, height, textured)

        resources = []
        try:
            depth_tex = self._texture("depth texture", (width, height), 1, depth.tobytes())
            resources.append(depth_tex)
            if textured:
                color_tex = self._texture(
                    "color texture", (width, height), 3, np.ascontiguousarray(rgb, dtype=np.float32).tobytes()
                )
            else:
                color_tex = self._texture("color texture", (1, 1), 3, bytes(12))
            resources.append(color_tex)

            positions_buf = self._buffer("positions", sizes["positions"])
            resources.append(positions_buf)
            uv_buf = self._buffer("uv", sizes["uv"])
            resources.append(uv_buf)
            colors_buf = self._buffer("colors", sizes.get("colors", 12))
            resources.append(colors_buf)
            indices_buf = self._buffer("indices", sizes["indices"])
            resources.append(indices_buf)

            program = self._mesh_program
            depth_tex.use(location=0)
            color_tex.use(location=1)
            self._set_uniform(program, "depth_tex", 0)
            self._set_uniform(program, "color_tex", 1)
            self._set_uniform(program, "textured", 1 if textured else 0)
            positions_buf.bind_to_storage_buffer(0)
            uv_buf.bind_to_storage_buffer(1)
            colors_buf.bind_to_storage_buffer(2)
            indices_buf.bind_to_storage_buffer(3)

            groups = mesh_grid(width, height)
            log.debug(f"Mesh dispatch: {groups} groups on {self.name}")
            program.run(groups, 1, 1)
            self._finish()

            n_vertices = width * height
            buffers = MeshBuffers(
                width=width,
                height=height,
                positions=np.frombuffer(positions_buf.read(sizes["positions"]), dtype=np.float32)
                .reshape(n_vertices, 3).copy(),
                uv=np.frombuffer(uv_buf.read(sizes["uv"]), dtype=np.float32)
                .reshape(n_vertices, 2).copy(),
                indices=np.frombuffer(indices_buf.read(sizes["indices"]), dtype=np.uint32).copy(),
            )
            if textured:
                buffers.colors = (
                    np.frombuffer(colors_buf.read(sizes["colors"]), dtype=np.float32)
                    .reshape(n_vertices, 3).copy()
                )
            return buffers
        finally:
            for resource in resources:
                resource.release()

    def release(self) -> None:
        """Release the compiled programs, and the context if this device created it."""
        for program in (self._depth_program, self._mesh_program):
            if program is not None:
                program.release()
        self._depth_program = None
        self._mesh_program = None
        if self.ctx is not None and self._owns_context:
            self.ctx.release()
        self.ctx = None


def acquire_device(
    backend: str = "auto",
    require_gpu: bool = False,
    max_buffer_bytes: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[ComputeDevice]:
    """Select the compute device once, at startup.

    Device absence and kernel compile failures are treated alike: with
    require_gpu they are raised, otherwise the renderer degrades.

    Args:
        backend: "auto" (GL, else host), "gl" (GL, else serial),
            "host" or "serial"
        require_gpu: Raise instead of degrading when GL is unavailable
        max_buffer_bytes: Per-buffer allocation limit for the device
        logger: Observability hook, defaults to the module logger

    Returns:
        The device to use, or None to use the serial fallback

    Raises:
        ValueError: For an unknown backend name
        DeviceUnavailableError: If GL is required but no context exists
        KernelCompileError: If GL is required but a kernel fails to build
    """
    log = logger or logging.getLogger(__name__)
    if backend not in BACKENDS:
        raise ValueError(f"Unknown compute backend: {backend} (expected one of {', '.join(BACKENDS)})")

    if require_gpu and backend in ("host", "serial"):
        raise DeviceUnavailableError(f"Backend '{backend}' does not provide a GPU")

    if backend == "serial":
        log.info("Using serial CPU fallback")
        return None

    if backend == "host":
        log.info("Using host compute device")
        return HostDevice(max_buffer_bytes)

    start_time = time.perf_counter()
    try:
        device = GLComputeDevice(max_buffer_bytes=max_buffer_bytes)
    except (DeviceUnavailableError, KernelCompileError) as e:
        if require_gpu:
            log.error(f"GPU compute unavailable: {e}")
            raise
        if backend == "auto":
            log.warning(f"GPU compute unavailable, using host compute device: {e}")
            return HostDevice(max_buffer_bytes)
        log.warning(f"GPU compute unavailable, using serial CPU fallback: {e}")
        return None

    elapsed_time = time.perf_counter() - start_time
    log.info(f"Compute device initialized: {device.name} (elapsed time: {elapsed_time:.2f}s)")
    return device
