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

"""Arena-based graph IR mutated by the QDQ fusion pass.

Nodes and tensors live in dictionaries keyed by integer ids that are never
reused. Anything outside the graph (matcher, rewriter, candidates) refers to
nodes and tensors by id only, so a handle that became stale through an
earlier rewrite is detected with a simple existence check instead of
dereferencing a deleted object.

**Structure:**
- Tensor: A named edge with optional static values, dtype and shape
- Node: An operator with ordered input/output tensor ids and attributes
- Graph: The arena, plus graph inputs/outputs and the mutation API

**Mutation API:**
- add_tensor / add_constant / add_input / mark_output
- add_node / remove_node / remove_tensor
- replace_all_uses / set_node_input
- transaction: all-or-nothing edits (undoes the journaled edits on failure)
"""

import copy
import heapq
from collections import Counter
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import OP_SIGNATURES, GraphInvariantError, OpKind


@dataclass
class Tensor:
    """A tensor value (edge) in the graph.

    Attributes:
        id: Arena id of the tensor
        name: Tensor name
        dtype: Declared element type, None if unknown
        shape: Declared shape, None if unknown (entries may be symbolic)
        values: Static content for constants/initializers
        producer: Id of the producing node, None for graph inputs and constants
        consumers: Ids of nodes reading this tensor
    """

    id: int
    name: str
    dtype: np.dtype | None = None
    shape: tuple | None = None
    values: np.ndarray | None = None
    producer: int | None = None
    consumers: set[int] = field(default_factory=set)

    @property
    def is_constant(self) -> bool:
        """Whether the tensor carries static content."""
        return self.values is not None

    @property
    def rank(self) -> int | None:
        """Rank of the tensor, if known."""
        if self.values is not None:
            return self.values.ndim
        if self.shape is None:
            return None
        return len(self.shape)


@dataclass
class Node:
    """An operator in the graph.

    Attributes:
        id: Arena id of the node
        op: Operator name, e.g. "Conv"
        name: Node name
        domain: Operator domain ('' for the default domain)
        inputs: Ordered input tensor ids
        outputs: Ordered output tensor ids
        attrs: Attribute name to value mapping
    """

    id: int
    op: str
    name: str = ""
    domain: str = ""
    inputs: list[int] = field(default_factory=list)
    outputs: list[int] = field(default_factory=list)
    attrs: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> OpKind | None:
        """Operator kind, or None for operators outside the known set."""
        return OpKind.from_op(self.op, self.domain)

    @property
    def qualified_op(self) -> str:
        """Operator name prefixed by its domain when not in the default domain."""
        if self.domain in ("", "ai.onnx"):
            return self.op
        return f"{self.domain}.{self.op}"

    def __str__(self) -> str:
        return f"Node[id={self.id}, op={self.qualified_op}, name={self.name}]"


@dataclass
class _Journal:
    """Entry state of everything a transaction touched.

    A None entry marks a node or tensor created inside the transaction.
    """

    inputs: list[int]
    outputs: list[int]
    nodes: dict[int, Node | None] = field(default_factory=dict)
    tensors: dict[int, Tensor | None] = field(default_factory=dict)


class Graph:
    """Dataflow graph stored as an arena of nodes and tensors.

    Any structural mutation may invalidate ids held elsewhere. Callers must
    re-resolve nodes through has_node()/node() after each mutation.
    """

    def __init__(
        self,
        name: str = "graph",
        opset: int | None = None,
        extra_opsets: dict[str, int] | None = None,
    ):
        """Initialize an empty graph.

        Args:
            name: Graph name
            opset: Default-domain opset version, carried through import/export
            extra_opsets: Opset versions of non-default domains, keyed by domain
        """
        self.name = name
        self.opset = opset
        self.extra_opsets: dict[str, int] = dict(extra_opsets or {})
        self.nodes: dict[int, Node] = {}
        self.tensors: dict[int, Tensor] = {}
        self.inputs: list[int] = []
        self.outputs: list[int] = []
        self._next_node_id = 0
        self._next_tensor_id = 0
        self._journals: list[_Journal] = []

    # =========================================================================
    # Accessors
    # =========================================================================

    def __len__(self) -> int:
        return len(self.nodes)

    def has_node(self, node_id: int) -> bool:
        """Check whether a node id is still live."""
        return node_id in self.nodes

    def has_tensor(self, tensor_id: int) -> bool:
        """Check whether a tensor id is still live."""
        return tensor_id in self.tensors

    def node(self, node_id: int) -> Node:
        """Get a node by id.

        Raises:
            GraphInvariantError: If the node does not exist
        """
        if node_id not in self.nodes:
            raise GraphInvariantError(f"Node {node_id} does not exist")
        return self.nodes[node_id]

    def tensor(self, tensor_id: int) -> Tensor:
        """Get a tensor by id.

        Raises:
            GraphInvariantError: If the tensor does not exist
        """
        if tensor_id not in self.tensors:
            raise GraphInvariantError(f"Tensor {tensor_id} does not exist")
        return self.tensors[tensor_id]

    def find_tensor(self, name: str) -> Tensor | None:
        """Find a tensor by name (first match in id order)."""
        for tensor in self.tensors.values():
            if tensor.name == name:
                return tensor
        return None

    def find_node(self, name: str) -> Node | None:
        """Find a node by name (first match in id order)."""
        for node in self.nodes.values():
            if node.name == name:
                return node
        return None

    def producer(self, tensor_id: int) -> Node | None:
        """Get the node producing a tensor, if any."""
        producer_id = self.tensor(tensor_id).producer
        return None if producer_id is None else self.nodes[producer_id]

    def consumers(self, tensor_id: int) -> list[Node]:
        """Get the nodes consuming a tensor, in id order."""
        return [self.nodes[idx] for idx in sorted(self.tensor(tensor_id).consumers)]

    def is_graph_input(self, tensor_id: int) -> bool:
        """Check if a tensor is a graph input."""
        return tensor_id in self.inputs

    def is_graph_output(self, tensor_id: int) -> bool:
        """Check if a tensor is a graph output."""
        return tensor_id in self.outputs

    # =========================================================================
    # Tensor Management
    # =========================================================================

    def add_tensor(
        self,
        name: str,
        dtype: Any = None,
        shape: Sequence | None = None,
        values: np.ndarray | None = None,
    ) -> int:
        """Add a tensor to the arena and return its id."""
        tensor_id = self._next_tensor_id
        self._next_tensor_id += 1
        self._record_tensor(tensor_id)
        if values is not None:
            values = np.asarray(values)
            dtype = values.dtype
            shape = values.shape
        self.tensors[tensor_id] = Tensor(
            id=tensor_id,
            name=name,
            dtype=None if dtype is None else np.dtype(dtype),
            shape=None if shape is None else tuple(shape),
            values=values,
        )
        return tensor_id

    def add_constant(self, name: str, values: Any) -> int:
        """Add a constant (initializer) tensor and return its id."""
        return self.add_tensor(name, values=np.asarray(values))

    def add_input(self, name: str, dtype: Any = None, shape: Sequence | None = None) -> int:
        """Add a graph input tensor and return its id."""
        tensor_id = self.add_tensor(name, dtype=dtype, shape=shape)
        self.inputs.append(tensor_id)
        return tensor_id

    def mark_output(self, tensor_id: int) -> None:
        """Mark an existing tensor as a graph output."""
        self.tensor(tensor_id)
        if tensor_id not in self.outputs:
            self.outputs.append(tensor_id)

    def remove_tensor(self, tensor_id: int) -> None:
        """Remove a tensor that nothing references anymore.

        Raises:
            GraphInvariantError: If the tensor is produced, consumed, or a graph input/output
        """
        tensor = self.tensor(tensor_id)
        if tensor.producer is not None or tensor.consumers:
            raise GraphInvariantError(f"Cannot remove tensor '{tensor.name}': still connected")
        if self.is_graph_input(tensor_id) or self.is_graph_output(tensor_id):
            raise GraphInvariantError(f"Cannot remove graph input/output tensor '{tensor.name}'")
        self._record_tensor(tensor_id)
        del self.tensors[tensor_id]

    def is_unused(self, tensor_id: int) -> bool:
        """Check if a live tensor is disconnected and not a graph input/output."""
        tensor = self.tensors.get(tensor_id)
        return (
            tensor is not None
            and tensor.producer is None
            and not tensor.consumers
            and not self.is_graph_input(tensor_id)
            and not self.is_graph_output(tensor_id)
        )

    def cleanup(self) -> int:
        """Remove all unused tensors. Returns the number removed."""
        unused = [tensor_id for tensor_id in self.tensors if self.is_unused(tensor_id)]
        for tensor_id in unused:
            self._record_tensor(tensor_id)
            del self.tensors[tensor_id]
        return len(unused)

    # =========================================================================
    # Node Management
    # =========================================================================

    def add_node(
        self,
        op: str,
        inputs: Sequence[int],
        outputs: Sequence[int],
        attrs: dict[str, Any] | None = None,
        name: str = "",
        domain: str = "",
    ) -> int:
        """Insert a node and return its id.

        Raises:
            GraphInvariantError: If a tensor id is unknown, the arity does not
                match the operator signature, or an output already has a producer
        """
        for tensor_id in [*inputs, *outputs]:
            self.tensor(tensor_id)

        kind = OpKind.from_op(op, domain)
        if kind is not None and not OP_SIGNATURES[kind].accepts(len(inputs), len(outputs)):
            raise GraphInvariantError(
                f"{op} node '{name}' has {len(inputs)} inputs and {len(outputs)} outputs, "
                f"expected {OP_SIGNATURES[kind]}"
            )

        for tensor_id in outputs:
            tensor = self.tensors[tensor_id]
            if tensor.producer is not None:
                raise GraphInvariantError(
                    f"Tensor '{tensor.name}' already produced by node {tensor.producer}"
                )
            if tensor.is_constant or self.is_graph_input(tensor_id):
                raise GraphInvariantError(
                    f"Tensor '{tensor.name}' is a constant or graph input and cannot be produced"
                )
        if len(set(outputs)) != len(outputs):
            raise GraphInvariantError(f"Node '{name}' lists the same output twice")

        node_id = self._next_node_id
        self._next_node_id += 1
        self._record_node(node_id)
        for tensor_id in [*inputs, *outputs]:
            self._record_tensor(tensor_id)
        self.nodes[node_id] = Node(
            id=node_id,
            op=op,
            name=name,
            domain=domain,
            inputs=list(inputs),
            outputs=list(outputs),
            attrs=dict(attrs or {}),
        )
        for tensor_id in inputs:
            self.tensors[tensor_id].consumers.add(node_id)
        for tensor_id in outputs:
            self.tensors[tensor_id].producer = node_id
        return node_id

    def remove_node(self, node_id: int) -> None:
        """Remove a node whose outputs are no longer referenced.

        The node's output tensors are removed with it. Input tensors are
        detached but kept; use cleanup() or remove_tensor() for those.

        Raises:
            GraphInvariantError: If any output still has consumers or is a graph output
        """
        node = self.node(node_id)
        for tensor_id in node.outputs:
            tensor = self.tensors[tensor_id]
            if tensor.consumers:
                raise GraphInvariantError(
                    f"Cannot remove {node}: output '{tensor.name}' still consumed by "
                    f"{sorted(tensor.consumers)}"
                )
            if self.is_graph_output(tensor_id):
                raise GraphInvariantError(
                    f"Cannot remove {node}: output '{tensor.name}' is a graph output"
                )

        self._record_node(node_id)
        for tensor_id in [*node.inputs, *node.outputs]:
            self._record_tensor(tensor_id)
        for tensor_id in set(node.inputs):
            self.tensors[tensor_id].consumers.discard(node_id)
        for tensor_id in node.outputs:
            del self.tensors[tensor_id]
        del self.nodes[node_id]

    def set_node_input(self, node_id: int, input_index: int, tensor_id: int) -> None:
        """Point one input slot of a node at a different tensor."""
        node = self.node(node_id)
        self.tensor(tensor_id)
        if not 0 <= input_index < len(node.inputs):
            raise GraphInvariantError(f"Input index {input_index} out of range for {node}")
        old_id = node.inputs[input_index]
        self._record_node(node_id)
        self._record_tensor(old_id)
        self._record_tensor(tensor_id)
        node.inputs[input_index] = tensor_id
        if old_id not in node.inputs:
            self.tensors[old_id].consumers.discard(node_id)
        self.tensors[tensor_id].consumers.add(node_id)

    def replace_all_uses(self, old_id: int, new_id: int) -> None:
        """Redirect every consumer and graph-output slot of one tensor to another."""
        old = self.tensor(old_id)
        new = self.tensor(new_id)
        if old_id == new_id:
            return
        self._record_tensor(old_id)
        self._record_tensor(new_id)

        for consumer_id in sorted(old.consumers):
            self._record_node(consumer_id)
            node = self.nodes[consumer_id]
            node.inputs = [new_id if idx == old_id else idx for idx in node.inputs]
            new.consumers.add(consumer_id)
        old.consumers.clear()

        self.outputs = [new_id if idx == old_id else idx for idx in self.outputs]

    # =========================================================================
    # Traversal
    # =========================================================================

    def toposort(self) -> list[int]:
        """Return node ids in topological order (ties broken by id).

        Raises:
            GraphInvariantError: If the graph contains a cycle
        """
        in_degree: dict[int, int] = {}
        for node_id, node in self.nodes.items():
            in_degree[node_id] = len(
                {
                    self.tensors[tensor_id].producer
                    for tensor_id in node.inputs
                    if self.tensors[tensor_id].producer is not None
                }
            )

        ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[int] = []
        while ready:
            node_id = heapq.heappop(ready)
            order.append(node_id)
            successors = set()
            for tensor_id in self.nodes[node_id].outputs:
                successors.update(self.tensors[tensor_id].consumers)
            for successor in successors:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, successor)

        if len(order) != len(self.nodes):
            raise GraphInvariantError("Graph contains a cycle")
        return order

    def iter_nodes(self) -> Iterator[Node]:
        """Iterate nodes in topological order.

        The order is computed up front; nodes removed during iteration are skipped.
        """
        for node_id in self.toposort():
            if node_id in self.nodes:
                yield self.nodes[node_id]

    def count_ops(self) -> Counter:
        """Count nodes per operator, keyed by domain-qualified op name."""
        return Counter(node.qualified_op for node in self.nodes.values())

    # =========================================================================
    # Consistency
    # =========================================================================

    def validate(self) -> None:
        """Check every structural invariant of the graph.

        Raises:
            GraphInvariantError: On the first violation found
        """
        for tensor_id in [*self.inputs, *self.outputs]:
            if tensor_id not in self.tensors:
                raise GraphInvariantError(f"Graph input/output {tensor_id} does not exist")

        for node_id, node in self.nodes.items():
            kind = node.kind
            if kind is not None and not OP_SIGNATURES[kind].accepts(
                len(node.inputs), len(node.outputs)
            ):
                raise GraphInvariantError(f"{node} violates signature {OP_SIGNATURES[kind]}")
            for tensor_id in node.inputs:
                if tensor_id not in self.tensors:
                    raise GraphInvariantError(f"{node} references missing input {tensor_id}")
                if node_id not in self.tensors[tensor_id].consumers:
                    raise GraphInvariantError(
                        f"{node} reads '{self.tensors[tensor_id].name}' but is not a consumer"
                    )
            for tensor_id in node.outputs:
                if tensor_id not in self.tensors:
                    raise GraphInvariantError(f"{node} references missing output {tensor_id}")
                if self.tensors[tensor_id].producer != node_id:
                    raise GraphInvariantError(
                        f"{node} writes '{self.tensors[tensor_id].name}' but is not its producer"
                    )

        for tensor in self.tensors.values():
            if tensor.producer is not None and tensor.producer not in self.nodes:
                raise GraphInvariantError(
                    f"Tensor '{tensor.name}' has dangling producer {tensor.producer}"
                )
            for consumer_id in tensor.consumers:
                if consumer_id not in self.nodes or tensor.id not in self.nodes[consumer_id].inputs:
                    raise GraphInvariantError(
                        f"Tensor '{tensor.name}' has dangling consumer {consumer_id}"
                    )
            if (
                tensor.producer is None
                and not tensor.is_constant
                and not self.is_graph_input(tensor.id)
                and (tensor.consumers or self.is_graph_output(tensor.id))
                and tensor.name != ""
            ):
                raise GraphInvariantError(
                    f"Tensor '{tensor.name}' is read but has no producer and is not an input"
                )

    # =========================================================================
    # Transactions
    # =========================================================================

    def _record_node(self, node_id: int) -> None:
        for journal in self._journals:
            if node_id not in journal.nodes:
                node = self.nodes.get(node_id)
                journal.nodes[node_id] = (
                    None
                    if node is None
                    else replace(
                        node,
                        inputs=list(node.inputs),
                        outputs=list(node.outputs),
                        attrs=dict(node.attrs),
                    )
                )

    def _record_tensor(self, tensor_id: int) -> None:
        # Constant values are never mutated in place, so they are shared
        for journal in self._journals:
            if tensor_id not in journal.tensors:
                tensor = self.tensors.get(tensor_id)
                journal.tensors[tensor_id] = (
                    None if tensor is None else replace(tensor, consumers=set(tensor.consumers))
                )

    def _rollback(self, journal: _Journal) -> None:
        for node_id, node in journal.nodes.items():
            if node is None:
                self.nodes.pop(node_id, None)
            else:
                self.nodes[node_id] = node
        for tensor_id, tensor in journal.tensors.items():
            if tensor is None:
                self.tensors.pop(tensor_id, None)
            else:
                self.tensors[tensor_id] = tensor
        # Re-inserted entries must not break id order
        self.nodes = dict(sorted(self.nodes.items()))
        self.tensors = dict(sorted(self.tensors.items()))
        self.inputs = journal.inputs
        self.outputs = journal.outputs

    @contextmanager
    def transaction(self):
        """Apply a group of edits atomically.

        Every node and tensor is recorded the first time an edit touches it.
        If the body raises, the recorded entries are put back, entries created
        inside the transaction are dropped, and the exception propagates. Ids
        handed out inside a failed transaction are not reused.
        """
        journal = _Journal(inputs=list(self.inputs), outputs=list(self.outputs))
        self._journals.append(journal)
        try:
            yield self
        except BaseException:
            logger.debug(
                f"Rolling back graph '{self.name}': {len(journal.nodes)} nodes, "
                f"{len(journal.tensors)} tensors touched"
            )
            self._rollback(journal)
            raise
        finally:
            self._journals.pop()

    def copy(self) -> "Graph":
        """Create an independent copy of the graph."""
        return copy.deepcopy(self)

    def __str__(self) -> str:
        return (
            f"Graph[name={self.name}, nodes={len(self.nodes)}, tensors={len(self.tensors)}, "
            f"inputs={len(self.inputs)}, outputs={len(self.outputs)}]"
        )
