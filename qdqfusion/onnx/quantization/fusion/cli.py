#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2024 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""CLI argument parsing and execution for QDQ fusion.

This module provides `run_fusion` which handles both argument parsing and
pass execution. See `__main__.py` for usage examples.
"""

import argparse
import sys
from pathlib import Path

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import Config, FusionError, TransformerLevel
from qdqfusion.onnx.quantization.fusion.driver import fuse_qdq_file

DEFAULT_LEVEL = "all"
LEVEL_CHOICES = ["1", "2", "all"]


def validate_file_path(path: str | None, description: str) -> Path | None:
    """Validate that a file path exists.

    Args:
        path: Path string to validate (can be None)
        description: Description of the file for error messages

    Returns:
        Path object if valid, None if path is None

    Raises:
        SystemExit: If path is provided but doesn't exist
    """
    if path is None:
        return None

    path_obj = Path(path)
    if not path_obj.exists():
        logger.error(f"{description} not found: {path_obj}")
        sys.exit(1)

    return path_obj


def positive_int(value: str) -> int:
    """Argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {number}")
    return number


def default_output_path(model_path: Path) -> Path:
    """Output path used when --output is omitted: <stem>.fused.onnx next to the input."""
    return model_path.with_name(f"{model_path.stem}.fused.onnx")


def load_config(args) -> Config:
    """Build the pass configuration from --config and command-line overrides."""
    config_path = validate_file_path(args.config, "Config file")
    config = Config.load(str(config_path)) if config_path else Config()
    if args.verbose:
        config.verbose = True
    if args.strict:
        config.strict = True
    if args.max_iterations is not None:
        config.max_fixpoint_iterations = args.max_iterations
    if args.disable_rules:
        config.disabled_rules = sorted(set(config.disabled_rules) | set(args.disable_rules))
    return config


def run_fusion(args=None) -> int:
    """Fuse QDQ patterns in an ONNX model file.

    Args:
        args: Optional parsed command-line arguments. If None, parses sys.argv.

    Returns:
        Exit code:
        - 0: Success
        - 1: Fusion failed (exception occurred)
    """
    if args is None:
        args = get_fusion_parser().parse_args()

    model_path = validate_file_path(args.onnx_path, "Model file")
    output_path = Path(args.output) if args.output else default_output_path(model_path)

    try:
        config = load_config(args)
        level = TransformerLevel.from_string(args.level)
        result = fuse_qdq_file(model_path, output_path, level, config)

        if args.report:
            result.save(args.report)
            logger.info(f"Saved fusion report → {args.report}")

        logger.info("=" * 70)
        logger.info(
            f"✓ QDQ fusion completed: {result.num_fused} fused, {result.num_skipped} skipped"
        )
        logger.info(f"✓ Output: {output_path}")
        logger.info("=" * 70)
        return 0

    except (FusionError, ValueError, OSError) as e:
        logger.error(f"QDQ fusion failed: {e}", exc_info=args.verbose)
        return 1


def get_fusion_parser() -> argparse.ArgumentParser:
    """Create and configure the command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="qdqfusion.onnx.quantization.fusion",
        description="Fuse QuantizeLinear/DequantizeLinear patterns into quantized ONNX operators",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run both levels
  python -m qdqfusion.onnx.quantization.fusion --onnx_path model.onnx

  # Level 1 only (pass-through QDQ removal and Conv fusion)
  python -m qdqfusion.onnx.quantization.fusion -m model.onnx --level 1 -o model.l1.onnx

  # Custom configuration and YAML report
  python -m qdqfusion.onnx.quantization.fusion \\
      --onnx_path model.onnx --config fusion.yaml --report report.yaml --verbose
        """,
    )

    # Model and Output
    io_group = parser.add_argument_group("Model and Output")
    io_group.add_argument(
        "--onnx_path", "-m", type=str, required=True, help="Path to ONNX model file"
    )
    io_group.add_argument(
        "--output",
        "-o",
        type=str,
        default=None,
        help="Path of the fused model (default: <model>.fused.onnx)",
    )
    io_group.add_argument(
        "--report",
        type=str,
        default=None,
        help="Path of a YAML summary of the run (optional)",
    )

    # Fusion
    fusion_group = parser.add_argument_group("Fusion")
    fusion_group.add_argument(
        "--level",
        type=str,
        default=DEFAULT_LEVEL,
        choices=LEVEL_CHOICES,
        help=f"Optimization level to run (default: {DEFAULT_LEVEL})",
    )
    fusion_group.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML file with pass configuration (optional)",
    )
    fusion_group.add_argument(
        "--disable_rules",
        type=str,
        nargs="+",
        default=None,
        help="Fusion rules to skip, e.g. qlinear_matmul drop_qdq_reshape (optional)",
    )
    fusion_group.add_argument(
        "--max_iterations",
        type=positive_int,
        default=None,
        help="Maximum scans per level before failing (default: from config)",
    )
    fusion_group.add_argument(
        "--strict",
        action="store_true",
        default=False,
        help="Fail on unsupported quantization parameters instead of skipping (default: False)",
    )

    # Logging
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose DEBUG logging")

    return parser
