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

"""Graph query helpers shared by the quantization passes."""

from collections import Counter
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from qdqfusion.onnx.quantization.fusion.common import OpKind
    from qdqfusion.onnx.quantization.fusion.graph import Graph, Node

QDQ_OPS = {"QuantizeLinear", "DequantizeLinear"}


def get_single_consumer(graph: "Graph", tensor_id: int) -> "Node | None":
    """Return the only consumer of a tensor, or None if it has zero or several."""
    consumers = graph.tensor(tensor_id).consumers
    if len(consumers) != 1:
        return None
    return graph.nodes[next(iter(consumers))]


def get_producer_of_kind(graph: "Graph", tensor_id: int, kind: "OpKind") -> "Node | None":
    """Return the producer of a tensor if it is of the given kind."""
    producer = graph.producer(tensor_id)
    if producer is None or producer.kind != kind:
        return None
    return producer


def count_ops_in_graph(graph: "Graph") -> Counter:
    """Count operators in the graph keyed by domain-qualified op name.

    Contrib operators are keyed with their domain, e.g. "com.microsoft.QLinearAdd".
    """
    return graph.count_ops()


def count_quantize_boundaries(graph: "Graph") -> int:
    """Count QuantizeLinear and DequantizeLinear nodes in the graph."""
    return sum(1 for node in graph.nodes.values() if node.op in QDQ_OPS)


def has_qdq_nodes(graph: "Graph") -> bool:
    """Check if the graph already has QDQ nodes."""
    return any(node.op in QDQ_OPS for node in graph.nodes.values())
