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
Tests for the Config class of the fusion pass.

Tests configuration parameter validation, defaults and YAML persistence.
"""

import os
import tempfile
import unittest

from qdqfusion.onnx.quantization.fusion import Config, TransformerLevel


class TestConfig(unittest.TestCase):
    """Test Config class functionality."""

    def test_default_values(self):
        """Test that Config has correct default values."""
        config = Config()

        # Logging
        assert not config.verbose

        # Driver settings
        assert config.max_fixpoint_iterations == 1000
        assert config.validate_after_rewrite
        assert not config.strict

        # Matching settings
        assert config.scale_rtol == 1e-6
        assert config.disabled_rules == []

    def test_custom_values(self):
        """Test creating Config with custom values."""
        config = Config(
            verbose=True,
            max_fixpoint_iterations=10,
            validate_after_rewrite=False,
            strict=True,
            disabled_rules=["qlinear_matmul"],
        )

        assert config.verbose
        assert config.max_fixpoint_iterations == 10
        assert not config.validate_after_rewrite
        assert config.strict
        assert config.disabled_rules == ["qlinear_matmul"]

    def test_invalid_values(self):
        """Test that invalid parameters are rejected."""
        with self.assertRaises(ValueError):
            Config(max_fixpoint_iterations=0)
        with self.assertRaises(ValueError):
            Config(scale_rtol=-1.0)

    def test_disabled_rules_not_shared(self):
        """Test that instances do not share the default list."""
        first = Config()
        second = Config()
        first.disabled_rules.append("qlinear_add")
        assert second.disabled_rules == []

    def test_dict_round_trip(self):
        """Test to_dict/from_dict."""
        config = Config(strict=True, scale_rtol=1e-4, disabled_rules=["drop_qdq_reshape"])
        restored = Config.from_dict(config.to_dict())
        assert restored == config

    def test_unknown_keys_ignored(self):
        """Test that unknown keys are ignored when loading from a dict."""
        config = Config.from_dict({"strict": True, "not_a_field": 3})
        assert config.strict

    def test_yaml_save_load(self):
        """Test saving and loading a YAML config file."""
        config = Config(max_fixpoint_iterations=5, disabled_rules=["qlinear_mul"])

        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "fusion.yaml")
            config.save(path)
            loaded = Config.load(path)

        assert loaded.max_fixpoint_iterations == 5
        assert loaded.disabled_rules == ["qlinear_mul"]
        assert loaded == config

    def test_load_empty_yaml(self):
        """Test that an empty YAML file yields the defaults."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "empty.yaml")
            with open(path, "w"):
                pass
            assert Config.load(path) == Config()


class TestTransformerLevel(unittest.TestCase):
    """Test level parsing."""

    def test_from_string(self):
        """Test parsing level names."""
        assert TransformerLevel.from_string("1") == TransformerLevel.LEVEL1
        assert TransformerLevel.from_string("level2") == TransformerLevel.LEVEL2
        assert TransformerLevel.from_string("ALL") == TransformerLevel.ALL
        with self.assertRaises(ValueError):
            TransformerLevel.from_string("3")

    def test_all_contains_both_levels(self):
        """Test that ALL covers LEVEL1 and LEVEL2."""
        assert TransformerLevel.LEVEL1 in TransformerLevel.ALL
        assert TransformerLevel.LEVEL2 in TransformerLevel.ALL
        assert TransformerLevel.LEVEL2 not in TransformerLevel.LEVEL1


if __name__ == "__main__":
    unittest.main()
