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

"""Helpers that build small QDQ-format ONNX models for the fusion tests."""

import numpy as np
import onnx
from onnx import helper, numpy_helper

from qdqfusion.onnx.quantization.fusion import Graph, import_onnx

OPSET = 13
MS_DOMAIN = "com.microsoft"

# Parameters used across the QDQ scenarios
INPUT_SCALE, INPUT_ZP = 0.004, 129
WEIGHT_SCALE, WEIGHT_ZP = 0.003, 118
OUTPUT_SCALE, OUTPUT_ZP = 0.0039, 135


class QDQModelBuilder:
    """Incrementally builds an ONNX model from QDQ building blocks."""

    def __init__(self, name: str = "qdq_test", seed: int = 0):
        self.name = name
        self.nodes: list[onnx.NodeProto] = []
        self.inputs: list[onnx.ValueInfoProto] = []
        self.outputs: list[onnx.ValueInfoProto] = []
        self.initializers: list[onnx.TensorProto] = []
        self.rng = np.random.default_rng(seed)
        self._counter = 0

    def _unique(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def make_input(self, shape, name: str | None = None) -> str:
        name = name or self._unique("input")
        self.inputs.append(helper.make_tensor_value_info(name, onnx.TensorProto.FLOAT, shape))
        return name

    def make_output(self, name: str, elem_type=onnx.TensorProto.UINT8, shape=None) -> str:
        self.outputs.append(helper.make_tensor_value_info(name, elem_type, shape))
        return name

    def make_initializer(self, values, name: str | None = None) -> str:
        name = name or self._unique("init")
        self.initializers.append(numpy_helper.from_array(np.asarray(values), name))
        return name

    def make_weight(self, shape, dtype=np.uint8) -> str:
        info = np.iinfo(dtype)
        values = self.rng.integers(info.min, info.max, size=shape, endpoint=True).astype(dtype)
        return self.make_initializer(values, self._unique("weight"))

    def add_node(self, op: str, inputs, num_outputs: int = 1, outputs=None, domain=None, **attrs):
        outputs = outputs or [self._unique(f"{op.lower()}_out") for _ in range(num_outputs)]
        self.nodes.append(
            helper.make_node(
                op, inputs, outputs, name=self._unique(op.lower()), domain=domain, **attrs
            )
        )
        return outputs[0] if len(outputs) == 1 else outputs

    def _quant_operands(self, scale, zero_point, dtype) -> list[str]:
        operands = [self.make_initializer(np.array(scale, dtype=np.float32), self._unique("scale"))]
        if zero_point is not None:
            operands.append(
                self.make_initializer(np.array(zero_point, dtype=dtype), self._unique("zero_point"))
            )
        return operands

    def quantize(self, x: str, scale, zero_point, dtype=np.uint8, output: str | None = None) -> str:
        outputs = [output] if output else None
        return self.add_node(
            "QuantizeLinear", [x, *self._quant_operands(scale, zero_point, dtype)], outputs=outputs
        )

    def dequantize(self, x: str, scale, zero_point, dtype=np.uint8) -> str:
        operands = self._quant_operands(scale, zero_point, dtype)
        return self.add_node("DequantizeLinear", [x, *operands])

    def qdq(self, x: str, scale, zero_point, dtype=np.uint8) -> str:
        return self.dequantize(self.quantize(x, scale, zero_point, dtype), scale, zero_point, dtype)

    def build(self) -> onnx.ModelProto:
        graph = helper.make_graph(
            self.nodes, self.name, self.inputs, self.outputs, initializer=self.initializers
        )
        return helper.make_model(
            graph,
            producer_name="test",
            opset_imports=[helper.make_opsetid("", OPSET), helper.make_opsetid(MS_DOMAIN, 1)],
        )

    def build_graph(self) -> Graph:
        return import_onnx(self.build())


# =============================================================================
# Scenario Models
# =============================================================================


def build_conv_model(input_shape, weight_shape, with_bias: bool = False, bias_scale=None):
    """DQ(Q(x)), DQ(w)[, DQ(b)] -> Conv -> Q -> output."""
    builder = QDQModelBuilder("conv")
    x = builder.make_input(input_shape, "input")
    dq_x = builder.qdq(x, INPUT_SCALE, INPUT_ZP)
    dq_w = builder.dequantize(builder.make_weight(weight_shape), WEIGHT_SCALE, WEIGHT_ZP)
    conv_inputs = [dq_x, dq_w]
    if with_bias:
        if bias_scale is None:
            bias_scale = np.float32(INPUT_SCALE) * np.float32(WEIGHT_SCALE)
        bias = builder.make_initializer(
            np.arange(weight_shape[0], dtype=np.int32), builder._unique("bias")
        )
        conv_inputs.append(builder.dequantize(bias, bias_scale, 0, dtype=np.int32))
    conv_out = builder.add_node("Conv", conv_inputs)
    builder.quantize(conv_out, OUTPUT_SCALE, OUTPUT_ZP, output="output")
    builder.make_output("output")
    return builder.build()


def build_conv_maxpool_reshape_model(input_shape, weight_shape):
    """QDQ Conv -> QDQ MaxPool -> QDQ Reshape -> Q chain."""
    builder = QDQModelBuilder("conv_maxpool_reshape")
    spatial = len(weight_shape) - 2
    x = builder.make_input(input_shape, "input")
    dq_x = builder.qdq(x, INPUT_SCALE, INPUT_ZP)
    dq_w = builder.dequantize(builder.make_weight(weight_shape), WEIGHT_SCALE, WEIGHT_ZP)
    conv_out = builder.add_node("Conv", [dq_x, dq_w])

    dq_conv = builder.qdq(conv_out, OUTPUT_SCALE, OUTPUT_ZP)
    pool_out = builder.add_node(
        "MaxPool", [dq_conv], pads=[1] * (2 * spatial), kernel_shape=[3] * spatial
    )

    dq_pool = builder.qdq(pool_out, OUTPUT_SCALE, OUTPUT_ZP)
    shape = builder.make_initializer(np.array([-1], dtype=np.int64), "reshape_shape")
    reshape_out = builder.add_node("Reshape", [dq_pool, shape])

    builder.quantize(reshape_out, OUTPUT_SCALE, OUTPUT_ZP, output="output")
    builder.make_output("output")
    return builder.build()


def build_binary_model(op: str, input_shape, second_shape=None, zero_points: bool = True):
    """DQ(Q(a)), DQ(Q(b)) -> Add/Mul/MatMul -> Q -> output."""
    builder = QDQModelBuilder(op.lower())
    input_zp = INPUT_ZP if zero_points else None
    output_zp = OUTPUT_ZP if zero_points else None
    a = builder.make_input(input_shape, "input_a")
    b = builder.make_input(second_shape or input_shape, "input_b")
    dq_a = builder.qdq(a, INPUT_SCALE, input_zp)
    dq_b = builder.qdq(b, INPUT_SCALE, input_zp)
    out = builder.add_node(op, [dq_a, dq_b])
    builder.quantize(out, OUTPUT_SCALE, output_zp, output="output")
    builder.make_output("output")
    return builder.build()


def build_mixed_type_binary_model(op: str, input_shape):
    """DQ(Q(a), int8), DQ(Q(b), uint8) -> Add/Mul -> Q(uint8) -> output."""
    builder = QDQModelBuilder(f"{op.lower()}_mixed")
    a = builder.make_input(input_shape, "input_a")
    b = builder.make_input(input_shape, "input_b")
    dq_a = builder.qdq(a, INPUT_SCALE, 0, dtype=np.int8)
    dq_b = builder.qdq(b, INPUT_SCALE, INPUT_ZP)
    out = builder.add_node(op, [dq_a, dq_b])
    builder.quantize(out, OUTPUT_SCALE, OUTPUT_ZP, output="output")
    builder.make_output("output")
    return builder.build()


def build_maxpool_model(output_scale=OUTPUT_SCALE, output_zp=OUTPUT_ZP):
    """DQ(Q(x)) -> MaxPool -> Q -> output."""
    builder = QDQModelBuilder("maxpool")
    x = builder.make_input([1, 4, 8, 8], "input")
    dq_x = builder.qdq(x, OUTPUT_SCALE, OUTPUT_ZP)
    pool_out = builder.add_node("MaxPool", [dq_x], kernel_shape=[2, 2], strides=[2, 2])
    builder.quantize(pool_out, output_scale, output_zp, output="output")
    builder.make_output("output")
    return builder.build()


def count_ops(model: onnx.ModelProto) -> dict[str, int]:
    """Count ops in an ONNX model keyed like Graph.count_ops()."""
    counts: dict[str, int] = {}
    for node in model.graph.node:
        if node.domain in ("", "ai.onnx"):
            key = node.op_type
        else:
            key = f"{node.domain}.{node.op_type}"
        counts[key] = counts.get(key, 0) + 1
    return counts
