#!/usr/bin/env python3
"""
Image to 3D Mesh Conversion

This script converts a single image (or a synthetic test image) into a
depth map and a textured 3D mesh using the GPU compute kernels, falling
back to the CPU when no compute device is available.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh import evaluate, pipeline
from depthmesh.config import load_config
from depthmesh.errors import DepthMeshError


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("pipeline")


def run_conversion(
    image_path: Optional[str],
    output_dir: Optional[str] = None,
    mode: Optional[str] = None,
    backend: Optional[str] = None,
    config_path: Optional[str] = None,
) -> Dict:
    """Run the complete image-to-mesh conversion.

    Args:
        image_path: Path to the input image, or None for a synthetic test image
        output_dir: Path to output directory (overrides the configuration)
        mode: Processing mode (overrides the configuration)
        backend: Compute backend (overrides the configuration)
        config_path: Path to configuration file

    Returns:
        Dictionary of conversion statistics
    """
    # Load configuration
    config = load_config(config_path)

    # Update configuration with command-line arguments
    if output_dir is not None:
        config["io"]["output_dir"] = output_dir
    if mode is not None:
        config["processing"]["mode"] = mode
    if backend is not None:
        config["device"]["backend"] = backend

    output_dir = config["io"]["output_dir"]
    os.makedirs(output_dir, exist_ok=True)

    logging.getLogger().setLevel(config["logging"]["level"])

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"))
    logging.getLogger().addHandler(file_handler)

    try:
        # === Stage 1: Read Image ===
        if image_path is not None:
            image = pipeline.load_image(image_path)
        else:
            size = config["test_image"]
            image = pipeline.create_test_image(size["width"], size["height"])
            logger.info(f"Created test image: {image.shape[1]}x{image.shape[0]}")

        # === Stage 2: Acquire Compute Device ===
        renderer = pipeline.Renderer.from_config(config, logger=logging.getLogger("depthmesh"))
        try:
            # === Stage 3: Convert ===
            processor = pipeline.ImageProcessor(
                renderer,
                material_library=os.path.basename(config["io"]["material"]),
                logger=logging.getLogger("depthmesh"),
            )
            result = processor.process_image(image, mode=config["processing"]["mode"])
        finally:
            renderer.release()

        # === Stage 4: Save Results ===
        pipeline.save_outputs(
            result,
            output_dir,
            config["io"],
            preview=config["preview"]["enabled"],
            preview_max_grid=config["preview"]["max_grid"],
        )

        logger.info("\n" + evaluate.summary(result))
        return evaluate.processing_stats(result)
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()


def main():
    """Main function to parse arguments and run the conversion."""
    parser = argparse.ArgumentParser(description="Image to 3D Mesh Conversion")
    parser.add_argument(
        "--image", "-i", dest="image_path", default=None,
        help="Path to the input image (a synthetic test image is used if omitted)"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default=None,
        help="Path to output directory"
    )
    parser.add_argument(
        "--mode", "-m", dest="mode", default=None,
        choices=list(pipeline.MODES),
        help="Processing mode"
    )
    parser.add_argument(
        "--backend", "-b", dest="backend", default=None,
        choices=["auto", "gl", "host", "serial"],
        help="Compute backend"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )

    args = parser.parse_args()

    try:
        run_conversion(
            args.image_path,
            args.output_dir,
            args.mode,
            args.backend,
            args.config_path,
        )
    except (DepthMeshError, OSError, ValueError) as e:
        logger.exception(f"Error running conversion: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
