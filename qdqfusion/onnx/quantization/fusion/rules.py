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

"""Fusion rules, one per operator family.

Each rule knows how to match its operator kind against the surrounding
DequantizeLinear/QuantizeLinear nodes and how to lay out the inputs of the
node that replaces the match.

**Families:**
- PassThroughRule: MaxPool, Reshape. DQ -> op -> Q with equal parameters
  becomes op running directly on quantized data.
- ConvFusionRule: DQ(x), DQ(w)[, DQ(bias)] -> Conv -> Q becomes QLinearConv.
- BinaryElementwiseFusionRule: DQ(a), DQ(b) -> Add/Mul -> Q becomes
  com.microsoft QLinearAdd/QLinearMul.
- MatMulFusionRule: DQ(a), DQ(b) -> MatMul -> Q becomes QLinearMatMul.

Rules are registered per kind in FUSION_RULES. Every kind in FUSIBLE_KINDS must
have exactly one rule; this is checked when the module is imported.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any

from qdqfusion.onnx.quantization.fusion.common import (
    FUSIBLE_KINDS,
    FusionCandidate,
    OpKind,
    TransformerLevel,
    UnsupportedPatternError,
)
from qdqfusion.onnx.quantization.fusion.graph import Graph, Node
from qdqfusion.onnx.quantization.fusion.matcher import PatternMatcher

# Returns the (scale, zero_point) tensor ids of a Q/DQ node
QuantOperands = Callable[[int], list[int]]


class FusionRule(ABC):
    """Base class for all fusion rules."""

    name: str
    kind: OpKind

    @abstractmethod
    def data_input_indices(self, node: Node) -> list[int] | None:
        """Input slots that must be fed by DequantizeLinear, or None if the node cannot match."""

    @abstractmethod
    def fused_inputs(
        self, graph: Graph, candidate: FusionCandidate, quant_operands: QuantOperands
    ) -> list[int]:
        """Input tensor ids of the replacement node."""

    @abstractmethod
    def fused_op(self, node: Node) -> tuple[str, str]:
        """Operator name and domain of the replacement node."""

    def fused_attrs(self, node: Node) -> dict[str, Any]:
        """Attributes of the replacement node."""
        return {}

    def fused_name(self, node: Node) -> str:
        """Name of the replacement node."""
        return f"{node.name}_quant" if node.name else ""

    def match_bias(self, matcher: PatternMatcher, node: Node) -> tuple[bool, int | None]:
        """Match optional non-data inputs. Returns (ok, bias DequantizeLinear id)."""
        return True, None

    def match(self, matcher: PatternMatcher, node: Node) -> FusionCandidate | None:
        """Match this rule at a node.

        Every data input must be produced by a DequantizeLinear node and the
        node's output must feed exactly one QuantizeLinear node.
        """
        if node.kind != self.kind:
            return None
        indices = self.data_input_indices(node)
        if indices is None:
            return None

        input_dqs = []
        for index in indices:
            dq = matcher.dequantize_source(node.inputs[index])
            if dq is None:
                return None
            input_dqs.append(dq.id)

        bias_ok, bias_dq = self.match_bias(matcher, node)
        if not bias_ok:
            return None

        output_q = matcher.trailing_quantize(node)
        if output_q is None:
            return None

        return FusionCandidate(
            rule_name=self.name,
            kind=self.kind,
            node=node.id,
            input_dqs=input_dqs,
            output_q=output_q.id,
            bias_dq=bias_dq,
            input_ranks=[matcher.operand_rank(node.inputs[index]) for index in indices],
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"


class PassThroughRule(FusionRule):
    """Drop the DQ/Q pair around an op that is valid on quantized data."""

    def __init__(self, kind: OpKind, name: str):
        self.kind = kind
        self.name = name

    def data_input_indices(self, node: Node) -> list[int] | None:
        return [0]

    def match(self, matcher: PatternMatcher, node: Node) -> FusionCandidate | None:
        # MaxPool Indices are computed on float data; keep such nodes unfused
        if matcher.output_is_used(node, 1):
            return None
        return super().match(matcher, node)

    def fused_inputs(
        self, graph: Graph, candidate: FusionCandidate, quant_operands: QuantOperands
    ) -> list[int]:
        node = graph.node(candidate.node)
        dq = graph.node(candidate.input_dqs[0])
        return [dq.inputs[0], *node.inputs[1:]]

    def fused_op(self, node: Node) -> tuple[str, str]:
        return node.op, node.domain

    def fused_attrs(self, node: Node) -> dict[str, Any]:
        return dict(node.attrs)

    def fused_name(self, node: Node) -> str:
        return node.name


class QLinearFusionRule(FusionRule):
    """Replace a compute node and its QDQ boundaries by a quantized-linear node.

    Fused inputs follow the QLinear operator layout: for each data input the
    quantized tensor, its scale and its zero-point, then the output scale and
    zero-point, then an optional bias.
    """

    fused_kind: OpKind

    def data_input_indices(self, node: Node) -> list[int] | None:
        if len(node.inputs) != 2:
            return None
        return [0, 1]

    def fused_inputs(
        self, graph: Graph, candidate: FusionCandidate, quant_operands: QuantOperands
    ) -> list[int]:
        inputs = []
        for dq_id in candidate.input_dqs:
            dq = graph.node(dq_id)
            inputs.extend([dq.inputs[0], *quant_operands(dq_id)])
        inputs.extend(quant_operands(candidate.output_q))
        if candidate.bias_dq is not None:
            inputs.append(graph.node(candidate.bias_dq).inputs[0])
        return inputs

    def fused_op(self, node: Node) -> tuple[str, str]:
        return self.fused_kind.value, self.fused_kind.domain


class ConvFusionRule(QLinearFusionRule):
    """DQ(x), DQ(w)[, DQ(b)] -> Conv -> Q  =>  QLinearConv."""

    name = "qlinear_conv"
    kind = OpKind.CONV
    fused_kind = OpKind.QLINEAR_CONV

    def data_input_indices(self, node: Node) -> list[int] | None:
        return [0, 1]

    def match_bias(self, matcher: PatternMatcher, node: Node) -> tuple[bool, int | None]:
        if len(node.inputs) < 3:
            return True, None
        bias_dq = matcher.dequantize_source(node.inputs[2])
        if bias_dq is None:
            return False, None
        return True, bias_dq.id

    def fused_attrs(self, node: Node) -> dict[str, Any]:
        return dict(node.attrs)


class BinaryElementwiseFusionRule(QLinearFusionRule):
    """DQ(a), DQ(b) -> Add/Mul -> Q  =>  com.microsoft QLinearAdd/QLinearMul.

    The two inputs are independent quantization domains; their parameters
    are not required to match.
    """

    def __init__(self, kind: OpKind, fused_kind: OpKind, name: str):
        self.kind = kind
        self.fused_kind = fused_kind
        self.name = name


class MatMulFusionRule(QLinearFusionRule):
    """DQ(a), DQ(b) -> MatMul -> Q  =>  QLinearMatMul.

    Input ranks are recorded on the candidate; batched N-D inputs with
    broadcast leading dimensions are accepted as-is.
    """

    name = "qlinear_matmul"
    kind = OpKind.MATMUL
    fused_kind = OpKind.QLINEAR_MATMUL


FUSION_RULES: dict[OpKind, FusionRule] = {
    OpKind.MAXPOOL: PassThroughRule(OpKind.MAXPOOL, "drop_qdq_maxpool"),
    OpKind.RESHAPE: PassThroughRule(OpKind.RESHAPE, "drop_qdq_reshape"),
    OpKind.CONV: ConvFusionRule(),
    OpKind.ADD: BinaryElementwiseFusionRule(OpKind.ADD, OpKind.QLINEAR_ADD, "qlinear_add"),
    OpKind.MUL: BinaryElementwiseFusionRule(OpKind.MUL, OpKind.QLINEAR_MUL, "qlinear_mul"),
    OpKind.MATMUL: MatMulFusionRule(),
}

_missing_rules = FUSIBLE_KINDS - FUSION_RULES.keys()
if _missing_rules:
    raise RuntimeError(
        f"No fusion rule registered for: {', '.join(sorted(k.value for k in _missing_rules))}"
    )

LEVEL_RULES: dict[TransformerLevel, list[OpKind]] = {
    TransformerLevel.LEVEL1: [OpKind.MAXPOOL, OpKind.RESHAPE, OpKind.CONV],
    TransformerLevel.LEVEL2: [OpKind.ADD, OpKind.MUL, OpKind.MATMUL, OpKind.CONV],
}


def get_fusion_rule(kind: OpKind | None) -> FusionRule:
    """Get the fusion rule for an operator kind.

    Raises:
        UnsupportedPatternError: If no rule is registered for the kind
    """
    if kind not in FUSION_RULES:
        name = kind.value if kind is not None else "unknown operator"
        raise UnsupportedPatternError(f"No fusion rule registered for {name}")
    return FUSION_RULES[kind]


def rules_for_level(level: TransformerLevel, disabled: Iterable[str] = ()) -> list[FusionRule]:
    """Get the enabled rules of a single level, in registration order."""
    disabled = set(disabled)
    return [
        FUSION_RULES[kind]
        for kind in LEVEL_RULES[level]
        if FUSION_RULES[kind].name not in disabled
    ]
