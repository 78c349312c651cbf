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

"""Atomic graph rewrites for fusion candidates.

A commit inserts the replacement node, moves every consumer of the trailing
QuantizeLinear output onto it, then deletes the absorbed nodes. Input
DequantizeLinear nodes that still feed other consumers are kept. Constants
left without readers are removed. The whole edit runs inside a graph
transaction, so a failure leaves the graph exactly as it was.
"""

from dataclasses import dataclass, field

import numpy as np

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import (
    Config,
    FusionCandidate,
    UnsupportedPatternError,
)
from qdqfusion.onnx.quantization.fusion.graph import Graph
from qdqfusion.onnx.quantization.fusion.matcher import PatternMatcher
from qdqfusion.onnx.quantization.fusion.propagation import (
    DEFAULT_ZERO_POINT_DTYPE,
    has_zero_point_input,
)
from qdqfusion.onnx.quantization.fusion.rules import FusionRule, get_fusion_rule


@dataclass
class RewriteResult:
    """Outcome of one committed rewrite.

    Attributes:
        rule_name: Rule that produced the rewrite
        new_node: Id of the inserted node
        removed_nodes: Ids of the nodes deleted by the rewrite
        removed_tensors: Names of constants dropped because nothing reads them anymore
    """

    rule_name: str
    new_node: int
    removed_nodes: list[int] = field(default_factory=list)
    removed_tensors: list[str] = field(default_factory=list)


class Rewriter:
    """Commits fusion candidates to a graph."""

    def __init__(self, graph: Graph, config: Config | None = None):
        """Initialize the rewriter.

        Args:
            graph: Graph to rewrite
            config: Pass configuration (controls post-rewrite validation)
        """
        self.graph = graph
        self.config = config or Config()

    def is_current(self, candidate: FusionCandidate) -> bool:
        """Check that a candidate still describes the graph.

        All referenced nodes must be live and re-matching the rule at the
        compute node must yield the same nodes.
        """
        if not all(self.graph.has_node(node_id) for node_id in candidate.node_ids):
            return False
        rule = get_fusion_rule(candidate.kind)
        fresh = PatternMatcher(self.graph).match(candidate.node, rule)
        return fresh is not None and fresh.node_ids == candidate.node_ids

    def commit(self, candidate: FusionCandidate) -> RewriteResult:
        """Apply a propagated candidate to the graph.

        Args:
            candidate: Candidate whose parameters were derived by propagate()

        Returns:
            RewriteResult describing the edit

        Raises:
            UnsupportedPatternError: If the candidate was not propagated or is stale
            GraphInvariantError: If the edit would break the graph (graph is rolled back)
        """
        if candidate.params is None:
            raise UnsupportedPatternError(f"{candidate} has no propagated parameters")
        if not self.is_current(candidate):
            raise UnsupportedPatternError(f"{candidate} no longer matches the graph")

        rule = get_fusion_rule(candidate.kind)
        with self.graph.transaction():
            result = self._apply(rule, candidate)
            if self.config.validate_after_rewrite:
                self.graph.validate()

        logger.debug(
            f"Committed {candidate.rule_name}: {self.graph.node(result.new_node)} replaces "
            f"{len(result.removed_nodes)} nodes"
        )
        return result

    def _quant_operands(self, node_id: int) -> list[int]:
        """Scale and zero-point tensor ids of a Q/DQ node, creating a zero-point if omitted.

        A DQ shared by several fusions gets one zero-point constant, reused by
        every fused node that reads it.
        """
        node = self.graph.node(node_id)
        if has_zero_point_input(self.graph, node_id):
            return [node.inputs[1], node.inputs[2]]
        name = f"{node.name or node.op}_zero_point_{node_id}"
        existing = self.graph.find_tensor(name)
        if existing is not None and existing.is_constant:
            return [node.inputs[1], existing.id]
        zero_point = self.graph.add_constant(name, np.array(0, dtype=DEFAULT_ZERO_POINT_DTYPE))
        return [node.inputs[1], zero_point]

    def _apply(self, rule: FusionRule, candidate: FusionCandidate) -> RewriteResult:
        graph = self.graph
        node = graph.node(candidate.node)
        quantize = graph.node(candidate.output_q)
        q_output = graph.tensor(quantize.outputs[0])

        op, domain = rule.fused_op(node)
        inputs = rule.fused_inputs(graph, candidate, self._quant_operands)
        fused_output = graph.add_tensor(
            q_output.name,
            dtype=q_output.dtype or candidate.params.output.dtype,
            shape=q_output.shape
            if q_output.shape is not None
            else graph.tensor(node.outputs[0]).shape,
        )
        new_node = graph.add_node(
            op,
            inputs,
            [fused_output],
            attrs=rule.fused_attrs(node),
            name=rule.fused_name(node),
            domain=domain,
        )
        graph.replace_all_uses(q_output.id, fused_output)

        result = RewriteResult(rule_name=candidate.rule_name, new_node=new_node)
        touched: list[int] = []

        for node_id in (quantize.id, node.id):
            touched.extend(graph.node(node_id).inputs)
            graph.remove_node(node_id)
            result.removed_nodes.append(node_id)

        dq_ids = list(dict.fromkeys(candidate.input_dqs))
        if candidate.bias_dq is not None and candidate.bias_dq not in dq_ids:
            dq_ids.append(candidate.bias_dq)
        for dq_id in dq_ids:
            dq = graph.node(dq_id)
            output_id = dq.outputs[0]
            if graph.tensor(output_id).consumers or graph.is_graph_output(output_id):
                logger.debug(f"Keeping shared {dq}")
                continue
            touched.extend(dq.inputs)
            graph.remove_node(dq_id)
            result.removed_nodes.append(dq_id)

        for tensor_id in dict.fromkeys(touched):
            if graph.is_unused(tensor_id):
                result.removed_tensors.append(graph.tensor(tensor_id).name)
                graph.remove_tensor(tensor_id)

        return result
