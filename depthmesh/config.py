"""Configuration loading.

Settings are read from a YAML file and merged over DEFAULT_CONFIG, so a
config file only needs to name the values it changes.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

DEFAULT_CONFIG: Dict = {
    "device": {
        "backend": "auto",
        "require_gpu": False,
        "max_buffer_mb": None,
    },
    "depth": {
        "noise_amplitude": 0.05,
    },
    "processing": {
        "mode": "high_quality",
    },
    "io": {
        "output_dir": "Outputs",
        "depth_map": "DepthMaps/depth_map.png",
        "mesh": "Meshes/mesh.obj",
        "material": "Meshes/textured_mesh.mtl",
        "original": "Renders/original_image.png",
        "mask": "Renders/subject_mask.png",
        "preview": "Renders/preview.png",
        "report": "report.json",
        "extra_formats": [],
    },
    "preview": {
        "enabled": True,
        "max_grid": 128,
    },
    "test_image": {
        "width": 512,
        "height": 512,
    },
    "logging": {
        "level": "INFO",
    },
}


def merge_config(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file. Defaults to config.yaml at
            the repository root; built-in defaults are used if it is absent.

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return copy.deepcopy(DEFAULT_CONFIG)
        config_path = DEFAULT_CONFIG_PATH

    with open(config_path, "r") as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    logger.debug(f"Loaded configuration from {config_path}")
    return merge_config(DEFAULT_CONFIG, loaded)


def max_buffer_bytes(config: Dict) -> Optional[int]:
    """Per-buffer allocation limit in bytes from the device section, if set."""
    limit_mb = config["device"].get("max_buffer_mb")
    if limit_mb is None:
        return None
    return int(float(limit_mb) * 1024 * 1024)
