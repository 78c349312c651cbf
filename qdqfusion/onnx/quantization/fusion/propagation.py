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

"""Quantization parameter propagation for fusion candidates.

Fusion relocates parameters; it never re-quantizes. Input scales and
zero-points are copied verbatim from the matched DequantizeLinear nodes and
the output scale/zero-point from the trailing QuantizeLinear node. This module
reads those parameters from the graph and validates that the fused operator
can accept them.

**Validation:**
- Activation, weight and output types must be uint8 or int8
- A Conv bias must be int32 with zero-point 0 and scale x_scale * w_scale
- Add and Mul inputs and output must share one quantized type
- A pass-through op drops its DQ/Q pair, so both must carry the same parameters
"""

import math

import numpy as np

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import (
    ACTIVATION_QUANT_TYPES,
    BIAS_QUANT_TYPES,
    PASS_THROUGH_KINDS,
    Config,
    FusionCandidate,
    FusionParams,
    OpKind,
    ParameterMismatchError,
    QuantParams,
    UnsupportedPatternError,
)
from qdqfusion.onnx.quantization.fusion.graph import Graph, Tensor

# ONNX default when the zero-point input is omitted
DEFAULT_ZERO_POINT_DTYPE = np.dtype(np.uint8)

# Contrib QLinearAdd/QLinearMul bind A, B and C to a single type
SINGLE_TYPE_KINDS = frozenset({OpKind.ADD, OpKind.MUL})


def _read_scalar(tensor: Tensor, node_name: str, what: str) -> np.generic:
    if not tensor.is_constant:
        raise UnsupportedPatternError(
            f"{what} '{tensor.name}' of '{node_name}' is not a constant (dynamic quantization)"
        )
    if tensor.values.size != 1:
        raise ParameterMismatchError(
            f"{what} '{tensor.name}' of '{node_name}' has {tensor.values.size} elements, "
            "only per-tensor quantization is supported"
        )
    return tensor.values.reshape(-1)[0]


def has_zero_point_input(graph: Graph, node_id: int) -> bool:
    """Check whether a Q/DQ node carries an explicit zero-point input."""
    node = graph.node(node_id)
    return len(node.inputs) > 2 and graph.tensor(node.inputs[2]).name != ""


def read_quant_params(graph: Graph, node_id: int) -> QuantParams:
    """Read the scale/zero-point/type of a QuantizeLinear or DequantizeLinear node.

    Args:
        graph: Graph containing the node
        node_id: Id of the Q or DQ node

    Returns:
        QuantParams of the node

    Raises:
        UnsupportedPatternError: If the node is not Q/DQ or its parameters are not constants
        ParameterMismatchError: If the parameters are per-channel or out of range
    """
    node = graph.node(node_id)
    if node.kind not in (OpKind.QUANTIZE_LINEAR, OpKind.DEQUANTIZE_LINEAR):
        raise UnsupportedPatternError(f"{node} is not a QuantizeLinear/DequantizeLinear node")

    scale = float(_read_scalar(graph.tensor(node.inputs[1]), node.name, "Scale"))

    if has_zero_point_input(graph, node_id):
        zp_tensor = graph.tensor(node.inputs[2])
        zero_point = int(_read_scalar(zp_tensor, node.name, "Zero-point"))
        dtype = zp_tensor.values.dtype
    else:
        zero_point = 0
        dtype = DEFAULT_ZERO_POINT_DTYPE

    return QuantParams(scale=scale, zero_point=zero_point, dtype=dtype)


def _check_activation_type(params: QuantParams, role: str) -> None:
    if params.dtype not in ACTIVATION_QUANT_TYPES:
        supported = ", ".join(sorted(dtype.name for dtype in ACTIVATION_QUANT_TYPES))
        raise ParameterMismatchError(
            f"Unsupported quantized type {params.dtype.name} for {role} (supported: {supported})"
        )


def _check_bias(bias: QuantParams, inputs: list[QuantParams], rtol: float) -> None:
    if bias.dtype not in BIAS_QUANT_TYPES:
        raise ParameterMismatchError(f"Conv bias must be int32, got {bias.dtype.name}")
    if bias.zero_point != 0:
        raise ParameterMismatchError(f"Conv bias zero-point must be 0, got {bias.zero_point}")
    expected_scale = inputs[0].scale * inputs[1].scale
    if not math.isclose(bias.scale, expected_scale, rel_tol=rtol):
        raise ParameterMismatchError(
            f"Conv bias scale {bias.scale:g} does not equal input*weight scale {expected_scale:g}"
        )


def propagate(
    graph: Graph, candidate: FusionCandidate, config: Config | None = None
) -> FusionParams:
    """Derive and validate the parameters of a fusion candidate.

    The result is also stored on candidate.params.

    Args:
        graph: Graph containing the candidate
        candidate: Matched candidate
        config: Pass configuration (scale tolerance)

    Returns:
        FusionParams with the relocated input/output (and bias) parameters

    Raises:
        ParameterMismatchError: If the parameters cannot be fused
        UnsupportedPatternError: If a parameter is not a compile-time constant
    """
    config = config or Config()

    inputs = [read_quant_params(graph, dq_id) for dq_id in candidate.input_dqs]
    output = read_quant_params(graph, candidate.output_q)

    for index, params in enumerate(inputs):
        _check_activation_type(params, f"input {index} of {candidate.kind.value}")
    _check_activation_type(output, f"output of {candidate.kind.value}")

    if candidate.kind in SINGLE_TYPE_KINDS:
        dtypes = [params.dtype.name for params in [*inputs, output]]
        if len(set(dtypes)) > 1:
            raise ParameterMismatchError(
                f"{candidate.kind.value} inputs and output must share one quantized type, "
                f"got {', '.join(dtypes)}"
            )

    bias = None
    if candidate.bias_dq is not None:
        bias = read_quant_params(graph, candidate.bias_dq)
        _check_bias(bias, inputs, config.scale_rtol)

    if candidate.kind in PASS_THROUGH_KINDS and not inputs[0].matches(output, config.scale_rtol):
        raise ParameterMismatchError(
            f"{candidate.kind.value} is surrounded by different parameters: "
            f"{inputs[0]} before, {output} after"
        )

    candidate.params = FusionParams(inputs=inputs, output=output, bias=bias)
    logger.debug(
        f"Propagated {candidate.rule_name}: inputs=[{', '.join(str(p) for p in inputs)}], "
        f"output={output}"
    )
    return candidate.params
