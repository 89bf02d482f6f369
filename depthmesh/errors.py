"""Exception types raised by the image-to-mesh pipeline."""

from __future__ import annotations

from typing import Optional


class DepthMeshError(Exception):
    """Base class for all pipeline errors."""


class DeviceUnavailableError(DepthMeshError):
    """No compute context or command queue could be created."""


class KernelCompileError(DepthMeshError):
    """A compute program failed to compile or lacks a required entry point."""


class BufferAllocationError(DepthMeshError):
    """A device buffer or texture could not be allocated for one conversion.

    Recoverable per call: the caller may retry with a smaller image.
    """

    def __init__(self, resource: str, nbytes: int, reason: Optional[str] = None):
        self.resource = resource
        self.nbytes = nbytes
        self.reason = reason
        message = f"Could not allocate {resource} ({nbytes} bytes)"
        if reason:
            message += f": {reason}"
        super().__init__(message)
