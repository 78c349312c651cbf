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

"""Conversion between ONNX models and the fusion graph IR.

Models are read and written through ONNX-GraphSurgeon. Tensors are matched by
name on import; initializers become constant tensors with their values, and
each use of the optional-input placeholder "" gets its own unnamed tensor.
"""

from typing import Any

import numpy as np
import onnx
import onnx_graphsurgeon as gs

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import MS_DOMAIN
from qdqfusion.onnx.quantization.fusion.graph import Graph

# Opset version registered for com.microsoft when contrib ops are emitted
MS_DOMAIN_VERSION = 1


def _to_numpy_dtype(dtype: Any) -> np.dtype | None:
    """Normalize a GraphSurgeon dtype (numpy type or ONNX enum) to a numpy dtype."""
    if dtype is None:
        return None
    if isinstance(dtype, int):
        return np.dtype(onnx.helper.tensor_dtype_to_np_dtype(dtype))
    try:
        return np.dtype(dtype)
    except TypeError:
        logger.debug(f"Unrepresentable dtype {dtype}, keeping tensor untyped")
        return None


def _to_gs_graph_input(model: onnx.ModelProto | gs.Graph) -> gs.Graph:
    if isinstance(model, onnx.ModelProto):
        return gs.import_onnx(model)
    if isinstance(model, gs.Graph):
        return model
    raise TypeError(f"Expected onnx.ModelProto or gs.Graph, got {type(model)}")


def import_onnx(model: onnx.ModelProto | gs.Graph) -> Graph:
    """Build a fusion graph from an ONNX model or GraphSurgeon graph.

    Args:
        model: ONNX model or GraphSurgeon graph

    Returns:
        Graph holding the same nodes, tensors, inputs and outputs

    Raises:
        TypeError: If model is neither an onnx.ModelProto nor a gs.Graph
        GraphInvariantError: If the model violates a known operator signature
    """
    gs_graph = _to_gs_graph_input(model)

    extra_opsets = {
        opset.domain: opset.version
        for opset in (gs_graph.import_domains or [])
        if opset.domain not in ("", "ai.onnx")
    }
    graph = Graph(name=gs_graph.name or "graph", opset=gs_graph.opset, extra_opsets=extra_opsets)
    tensor_ids: dict[str, int] = {}

    def resolve(tensor: gs.Tensor) -> int:
        if tensor.name in tensor_ids:
            return tensor_ids[tensor.name]
        if isinstance(tensor, gs.Constant):
            tensor_id = graph.add_constant(tensor.name, np.asarray(tensor.values))
        else:
            tensor_id = graph.add_tensor(
                tensor.name, dtype=_to_numpy_dtype(tensor.dtype), shape=tensor.shape
            )
        # Omitted optional inputs/outputs share the name "", keep them distinct
        if tensor.name:
            tensor_ids[tensor.name] = tensor_id
        return tensor_id

    for tensor in gs_graph.inputs:
        graph.inputs.append(resolve(tensor))

    for gs_node in gs_graph.nodes:
        graph.add_node(
            gs_node.op,
            [resolve(tensor) for tensor in gs_node.inputs],
            [resolve(tensor) for tensor in gs_node.outputs],
            attrs=dict(gs_node.attrs),
            name=gs_node.name or "",
            domain=gs_node.domain or "",
        )

    for tensor in gs_graph.outputs:
        graph.mark_output(resolve(tensor))

    logger.debug(f"Imported {graph}")
    return graph


def to_gs_graph(graph: Graph) -> gs.Graph:
    """Convert a fusion graph to a GraphSurgeon graph (nodes in topological order)."""
    gs_tensors: dict[int, gs.Tensor] = {}

    def convert(tensor_id: int) -> gs.Tensor:
        tensor = graph.tensor(tensor_id)
        if tensor.name == "":
            return gs.Variable.empty()
        if tensor_id not in gs_tensors:
            if tensor.is_constant:
                gs_tensors[tensor_id] = gs.Constant(tensor.name, values=tensor.values)
            else:
                gs_tensors[tensor_id] = gs.Variable(
                    tensor.name,
                    dtype=tensor.dtype,
                    shape=list(tensor.shape) if tensor.shape is not None else None,
                )
        return gs_tensors[tensor_id]

    nodes = [
        gs.Node(
            op=node.op,
            name=node.name or None,
            attrs=dict(node.attrs),
            inputs=[convert(tensor_id) for tensor_id in node.inputs],
            outputs=[convert(tensor_id) for tensor_id in node.outputs],
            domain=node.domain or None,
        )
        for node in graph.iter_nodes()
    ]

    opset = graph.opset or onnx.defs.onnx_opset_version()
    extra_opsets = dict(graph.extra_opsets)
    if any(node.domain == MS_DOMAIN for node in graph.nodes.values()):
        extra_opsets.setdefault(MS_DOMAIN, MS_DOMAIN_VERSION)
    import_domains = [onnx.helper.make_opsetid("", opset)] + [
        onnx.helper.make_opsetid(domain, version) for domain, version in extra_opsets.items()
    ]

    return gs.Graph(
        nodes=nodes,
        inputs=[convert(tensor_id) for tensor_id in graph.inputs],
        outputs=[convert(tensor_id) for tensor_id in graph.outputs],
        name=graph.name,
        opset=opset,
        import_domains=import_domains,
    )


def export_onnx(graph: Graph) -> onnx.ModelProto:
    """Export a fusion graph as an ONNX model.

    Contrib operators (QLinearAdd, QLinearMul) register the com.microsoft domain
    in the model's opset imports.
    """
    model = gs.export_onnx(to_gs_graph(graph))
    logger.debug(f"Exported {graph}")
    return model
