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

r"""QDQ Fusion Command-Line Interface.

Rewrites a QDQ-format ONNX model (float operators wrapped in
DequantizeLinear/QuantizeLinear pairs) into quantized operators.

**Levels:**

- **Level 1**: Drops DQ/Q pairs around MaxPool and Reshape when both sides carry
  the same parameters, and fuses DQ -> Conv -> Q into QLinearConv
- **Level 2**: Fuses Add and Mul into com.microsoft QLinearAdd/QLinearMul, MatMul
  into QLinearMatMul, and closes any Conv left after level 1

**Usage Examples:**

    # Both levels, output written to model.fused.onnx
    python -m qdqfusion.onnx.quantization.fusion --onnx_path model.onnx

    # Level 2 only with an explicit output path
    python -m qdqfusion.onnx.quantization.fusion \\
        --onnx_path model.onnx --level 2 --output fused.onnx

    # Configuration file, YAML report and debug logging
    python -m qdqfusion.onnx.quantization.fusion \\
        --onnx_path model.onnx \\
        --config fusion.yaml \\
        --report report.yaml \\
        --verbose

**Config File:**

    max_fixpoint_iterations: 1000
    validate_after_rewrite: true
    strict: false
    scale_rtol: 1.0e-06
    disabled_rules: [qlinear_matmul]
"""

import sys

from qdqfusion.onnx.logging_config import configure_logging
from qdqfusion.onnx.quantization.fusion.cli import get_fusion_parser, run_fusion


def main():
    """Command-line entry point for QDQ fusion.

    Parses command-line arguments, configures logging based on verbosity,
    and runs the fusion pass.

    Returns:
        Exit code from run_fusion (0 for success, non-zero for errors)
    """
    parser = get_fusion_parser()
    args = parser.parse_args()

    configure_logging(verbose=args.verbose)

    return run_fusion(args)


if __name__ == "__main__":
    sys.exit(main())
