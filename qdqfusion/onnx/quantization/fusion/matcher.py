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

"""Pattern matching of QDQ boundaries around compute nodes.

The matcher walks the graph in topological order and asks the fusion rule
registered for each node kind whether the node and its neighbourhood form a
fusion candidate. It only hands out node ids; the rewriter re-validates them
before committing.
"""

from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import FusionCandidate, OpKind
from qdqfusion.onnx.quantization.fusion.graph import Graph, Node
from qdqfusion.onnx.quantization.graph_utils import get_producer_of_kind, get_single_consumer

if TYPE_CHECKING:
    from qdqfusion.onnx.quantization.fusion.rules import FusionRule

# Operators that preserve the shape of their data input
QDQ_KINDS = frozenset({OpKind.QUANTIZE_LINEAR, OpKind.DEQUANTIZE_LINEAR})


class PatternMatcher:
    """Locates fusion candidates in a graph."""

    def __init__(self, graph: Graph):
        """Initialize the matcher.

        Args:
            graph: Graph to scan
        """
        self.graph = graph

    def dequantize_source(self, tensor_id: int) -> Node | None:
        """Return the DequantizeLinear node producing a tensor, if any."""
        return get_producer_of_kind(self.graph, tensor_id, OpKind.DEQUANTIZE_LINEAR)

    def trailing_quantize(self, node: Node, output_index: int = 0) -> Node | None:
        """Return the QuantizeLinear node that is the only consumer of a node output.

        The output must not be a graph output, since fusing would remove the
        float value the graph exposes.
        """
        output_id = node.outputs[output_index]
        if self.graph.is_graph_output(output_id):
            return None
        consumer = get_single_consumer(self.graph, output_id)
        if consumer is None or consumer.kind != OpKind.QUANTIZE_LINEAR:
            return None
        if consumer.inputs[0] != output_id:
            return None
        return consumer

    def output_is_used(self, node: Node, output_index: int) -> bool:
        """Check whether a node output has consumers or is a graph output."""
        if output_index >= len(node.outputs):
            return False
        tensor_id = node.outputs[output_index]
        return bool(self.graph.tensor(tensor_id).consumers) or self.graph.is_graph_output(
            tensor_id
        )

    def operand_rank(self, tensor_id: int) -> int | None:
        """Rank of a tensor, looking through Q/DQ nodes when it is not declared."""
        tensor = self.graph.tensor(tensor_id)
        while tensor.rank is None:
            producer = self.graph.producer(tensor.id)
            if producer is None or producer.kind not in QDQ_KINDS:
                return None
            tensor = self.graph.tensor(producer.inputs[0])
        return tensor.rank

    def match(self, node_id: int, rule: "FusionRule") -> FusionCandidate | None:
        """Try one rule on one node. Stale ids and other kinds yield None."""
        node = self.graph.nodes.get(node_id)
        if node is None or node.kind != rule.kind:
            return None
        return rule.match(self, node)

    def scan(self, rules: Sequence["FusionRule"]) -> Iterator[FusionCandidate]:
        """Yield candidates for the given rules in topological node order.

        The node order is computed when the scan starts. Callers that mutate
        the graph must start a new scan afterwards.
        """
        rules_by_kind = {rule.kind: rule for rule in rules}
        for node in self.graph.iter_nodes():
            rule = rules_by_kind.get(node.kind)
            if rule is None:
                continue
            candidate = rule.match(self, node)
            if candidate is not None:
                logger.debug(f"Matched {candidate}")
                yield candidate
