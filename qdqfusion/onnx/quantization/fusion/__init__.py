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

"""QDQ Fusion for ONNX Models.

This package rewrites QDQ-format graphs, where float operators are wrapped by
DequantizeLinear/QuantizeLinear pairs, into graphs that run quantized operators
directly. Fusion only relocates quantization parameters; it never re-quantizes.

**Key Features:**

- **Pass-through QDQ removal**: MaxPool and Reshape run on quantized data once the
  surrounding DQ/Q pair with identical parameters is dropped

- **Operator fusion**: Conv, MatMul, Add and Mul become QLinearConv, QLinearMatMul
  and com.microsoft QLinearAdd/QLinearMul

- **Fixpoint driver**: Each level rescans after every rewrite until nothing
  matches, with a configurable iteration cap

- **Atomic rewrites**: Every rewrite is applied inside a graph transaction and the
  graph is validated afterwards

**Core Components:**

Graph IR:
    - Graph: Arena-based graph with id handles, transactions and validation
    - Node / Tensor: Graph elements

Pass Components:
    - PatternMatcher: Finds fusion candidates in topological order
    - FusionRule: Per-operator-family match and rewrite layout
    - propagate: Derives and validates relocated quantization parameters
    - Rewriter: Commits candidates atomically
    - QDQFusionPass: Level1/Level2 fixpoint driver

Configuration & Results:
    - Config: Pass parameters (iteration cap, strictness, disabled rules)
    - FusionResult: Operator counts and rewrite statistics

**Quick Start:**

    >>> import onnx
    >>> from qdqfusion.onnx.quantization.fusion import TransformerLevel, fuse_qdq
    >>> model = onnx.load("model_qdq.onnx")
    >>> fused_model, result = fuse_qdq(model, TransformerLevel.ALL)
    >>> result.op_counts["QLinearConv"]

**Command-Line Interface:**

    $ python -m qdqfusion.onnx.quantization.fusion --onnx_path model.onnx --level all
"""

# Core data structures
from .common import (
    Config,
    FixpointNotReachedError,
    FusionCandidate,
    FusionError,
    FusionParams,
    GraphInvariantError,
    OpKind,
    ParameterMismatchError,
    PassState,
    QuantParams,
    TransformerLevel,
    UnsupportedPatternError,
)

# Driver
from .driver import FusionResult, QDQFusionPass, fuse_qdq, fuse_qdq_file, run_qdq_fusion

# Graph IR
from .graph import Graph, Node, Tensor

# Pattern matching
from .matcher import PatternMatcher

# ONNX conversion
from .onnx_io import export_onnx, import_onnx

# Parameter propagation
from .propagation import propagate, read_quant_params

# Rewriting
from .rewriter import RewriteResult, Rewriter

# Fusion rules
from .rules import FusionRule, get_fusion_rule

# Public API
__all__ = [
    # Configuration
    "Config",
    # Exceptions
    "FixpointNotReachedError",
    "FusionCandidate",
    "FusionError",
    "FusionParams",
    "FusionResult",
    "FusionRule",
    # Graph IR
    "Graph",
    "GraphInvariantError",
    "Node",
    "OpKind",
    "ParameterMismatchError",
    "PassState",
    # Pass components
    "PatternMatcher",
    "QDQFusionPass",
    "QuantParams",
    "RewriteResult",
    "Rewriter",
    "Tensor",
    "TransformerLevel",
    "UnsupportedPatternError",
    "export_onnx",
    "fuse_qdq",
    "fuse_qdq_file",
    "get_fusion_rule",
    "import_onnx",
    "propagate",
    "read_quant_params",
    "run_qdq_fusion",
]
