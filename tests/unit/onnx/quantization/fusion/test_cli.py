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

"""
Tests for the QDQ fusion command-line interface.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import onnx
import yaml

# Add test directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from model_builder import build_binary_model, build_conv_maxpool_reshape_model, count_ops

from qdqfusion.onnx.quantization.fusion.cli import (
    default_output_path,
    get_fusion_parser,
    load_config,
    run_fusion,
)


class TestFusionCLI(unittest.TestCase):
    """Test run_fusion end to end on model files."""

    def setUp(self):
        self._tmp_dir = tempfile.TemporaryDirectory()
        self.tmp_dir = self._tmp_dir.name

    def tearDown(self):
        self._tmp_dir.cleanup()

    def _save_model(self, model, name="model.onnx"):
        path = os.path.join(self.tmp_dir, name)
        onnx.save(model, path)
        return path

    def test_fuse_all_levels(self):
        """Test fusing a model file with a report."""
        model_path = self._save_model(
            build_conv_maxpool_reshape_model([1, 12, 37], [32, 12, 5])
        )
        output_path = os.path.join(self.tmp_dir, "fused.onnx")
        report_path = os.path.join(self.tmp_dir, "report.yaml")
        args = get_fusion_parser().parse_args(
            ["--onnx_path", model_path, "--output", output_path, "--report", report_path]
        )

        assert run_fusion(args) == 0

        counts = count_ops(onnx.load(output_path))
        assert counts["QLinearConv"] == 1
        assert counts["QuantizeLinear"] == 1
        assert "DequantizeLinear" not in counts

        with open(report_path) as f:
            report = yaml.safe_load(f)
        assert report["num_fused"] == 3
        assert report["states"][-1] == "Done"
        assert report["rule_counts"]["drop_qdq_reshape"] == 1

    def test_level_option(self):
        """Test that --level 1 leaves binary ops unfused."""
        model_path = self._save_model(build_binary_model("Add", [1, 4]))
        output_path = os.path.join(self.tmp_dir, "fused.onnx")
        args = get_fusion_parser().parse_args(
            ["-m", model_path, "-o", output_path, "--level", "1"]
        )

        assert run_fusion(args) == 0
        assert count_ops(onnx.load(output_path))["Add"] == 1

    def test_default_output_path(self):
        """Test the output path used when --output is omitted."""
        model_path = self._save_model(build_binary_model("Mul", [1, 4]), "mul.onnx")
        args = get_fusion_parser().parse_args(["--onnx_path", model_path])

        assert run_fusion(args) == 0
        expected = os.path.join(self.tmp_dir, "mul.fused.onnx")
        assert default_output_path(Path(model_path)) == Path(expected)
        assert os.path.exists(expected)

    def test_missing_model(self):
        """Test that a missing model file exits."""
        args = get_fusion_parser().parse_args(["--onnx_path", "/nonexistent/model.onnx"])
        with self.assertRaises(SystemExit):
            run_fusion(args)

    def test_invalid_config_fails(self):
        """Test that an invalid config file yields exit code 1."""
        model_path = self._save_model(build_binary_model("Add", [1, 4]))
        config_path = os.path.join(self.tmp_dir, "fusion.yaml")
        with open(config_path, "w") as f:
            yaml.safe_dump({"max_fixpoint_iterations": 0}, f)
        args = get_fusion_parser().parse_args(["-m", model_path, "--config", config_path])

        assert run_fusion(args) == 1

    def test_config_overrides(self):
        """Test that command-line flags override the config file."""
        config_path = os.path.join(self.tmp_dir, "fusion.yaml")
        with open(config_path, "w") as f:
            yaml.safe_dump({"disabled_rules": ["qlinear_add"], "max_fixpoint_iterations": 50}, f)
        args = get_fusion_parser().parse_args(
            [
                "-m",
                "model.onnx",
                "--config",
                config_path,
                "--strict",
                "--max_iterations",
                "7",
                "--disable_rules",
                "qlinear_mul",
            ]
        )
        config = load_config(args)

        assert config.strict
        assert config.max_fixpoint_iterations == 7
        assert config.disabled_rules == ["qlinear_add", "qlinear_mul"]

    def test_max_iterations_must_be_positive(self):
        """Test that a non-positive --max_iterations is rejected while parsing."""
        parser = get_fusion_parser()
        for value in ("0", "-3", "many"):
            with self.subTest(value=value):
                with self.assertRaises(SystemExit):
                    parser.parse_args(["-m", "model.onnx", "--max_iterations", value])
        assert parser.parse_args(["-m", "model.onnx", "--max_iterations", "1"]).max_iterations == 1

    def test_disable_rules_option(self):
        """Test that --disable_rules keeps the named fusion from running."""
        model_path = self._save_model(build_binary_model("Add", [1, 4]))
        output_path = os.path.join(self.tmp_dir, "fused.onnx")
        args = get_fusion_parser().parse_args(
            ["-m", model_path, "-o", output_path, "--disable_rules", "qlinear_add"]
        )

        assert run_fusion(args) == 0
        assert count_ops(onnx.load(output_path))["Add"] == 1


if __name__ == "__main__":
    unittest.main()
