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

"""QDQ fusion pass driver.

Runs the fusion rules of each requested level to a fixpoint:

    Level1Scanning -> Level1Fixpoint -> Level2Scanning -> Level2Fixpoint -> Done

A scan walks the graph in topological order and commits the first candidate
that propagates and rewrites cleanly, then starts over on the updated graph.
A scan that commits nothing ends the level. Each level is capped at
Config.max_fixpoint_iterations scans; exceeding the cap raises
FixpointNotReachedError.

Skipped candidates (parameter mismatch, non-constant parameters) leave the
graph untouched. Structural errors abort the pass with the graph rolled back
to the state before the failing rewrite.
"""

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import onnx
import onnx_graphsurgeon as gs
import yaml

from qdqfusion.onnx.logging_config import logger
from qdqfusion.onnx.quantization.fusion.common import (
    Config,
    FixpointNotReachedError,
    ParameterMismatchError,
    PassState,
    TransformerLevel,
    UnsupportedPatternError,
)
from qdqfusion.onnx.quantization.fusion.graph import Graph
from qdqfusion.onnx.quantization.fusion.matcher import PatternMatcher
from qdqfusion.onnx.quantization.fusion.onnx_io import export_onnx, import_onnx, to_gs_graph
from qdqfusion.onnx.quantization.fusion.propagation import propagate
from qdqfusion.onnx.quantization.fusion.rewriter import Rewriter
from qdqfusion.onnx.quantization.fusion.rules import FusionRule, rules_for_level
from qdqfusion.onnx.quantization.graph_utils import (
    count_ops_in_graph,
    count_quantize_boundaries,
    has_qdq_nodes,
)

_LEVEL_STATES = [
    (TransformerLevel.LEVEL1, PassState.LEVEL1_SCANNING, PassState.LEVEL1_FIXPOINT),
    (TransformerLevel.LEVEL2, PassState.LEVEL2_SCANNING, PassState.LEVEL2_FIXPOINT),
]

_TRANSITIONS = {
    None: {PassState.LEVEL1_SCANNING, PassState.LEVEL2_SCANNING, PassState.DONE},
    PassState.LEVEL1_SCANNING: {PassState.LEVEL1_FIXPOINT},
    PassState.LEVEL1_FIXPOINT: {PassState.LEVEL2_SCANNING, PassState.DONE},
    PassState.LEVEL2_SCANNING: {PassState.LEVEL2_FIXPOINT},
    PassState.LEVEL2_FIXPOINT: {PassState.DONE},
    PassState.DONE: set(),
}


@dataclass
class FusionResult:
    """Summary of one pass run.

    Attributes:
        op_counts: Operator histogram of the final graph
        num_fused: Number of committed rewrites
        num_skipped: Number of distinct candidates skipped for parameter reasons
        rule_counts: Committed rewrites per rule name
        scans: Number of scans per level name
        states: States visited by the driver, in order
        qdq_before: QuantizeLinear + DequantizeLinear count before the pass
        qdq_after: QuantizeLinear + DequantizeLinear count after the pass
    """

    op_counts: Counter = field(default_factory=Counter)
    num_fused: int = 0
    num_skipped: int = 0
    rule_counts: Counter = field(default_factory=Counter)
    scans: dict[str, int] = field(default_factory=dict)
    states: list[PassState] = field(default_factory=list)
    qdq_before: int = 0
    qdq_after: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "op_counts": dict(sorted(self.op_counts.items())),
            "num_fused": self.num_fused,
            "num_skipped": self.num_skipped,
            "rule_counts": dict(sorted(self.rule_counts.items())),
            "scans": dict(self.scans),
            "states": [state.value for state in self.states],
            "qdq_before": self.qdq_before,
            "qdq_after": self.qdq_after,
        }

    def save(self, output_path: str) -> None:
        """Save the summary as a YAML report."""
        with open(output_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        logger.debug(f"Saved fusion report → {output_path}")

    def __str__(self) -> str:
        return (
            f"FusionResult(fused={self.num_fused}, skipped={self.num_skipped}, "
            f"qdq={self.qdq_before}->{self.qdq_after})"
        )


class QDQFusionPass:
    """Drives the fusion rules over a graph level by level."""

    def __init__(self, config: Config | None = None):
        """Initialize the pass.

        Args:
            config: Pass configuration (uses defaults if None)
        """
        self.config = config or Config()
        self.state: PassState | None = None
        self._skipped: set[int] = set()

    def _transition(self, state: PassState, result: FusionResult) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pass transition {self.state} -> {state}")
        self.state = state
        result.states.append(state)
        logger.debug(f"Pass state: {state.value}")

    def run(self, graph: Graph, level: TransformerLevel = TransformerLevel.ALL) -> FusionResult:
        """Run the requested levels on a graph in place.

        Args:
            graph: Graph to optimize (mutated)
            level: Levels to run; LEVEL1 always runs before LEVEL2

        Returns:
            FusionResult summary

        Raises:
            FixpointNotReachedError: If a level exceeds max_fixpoint_iterations scans
            ParameterMismatchError: On unsupported parameters when config.strict is set
            GraphInvariantError: If a rewrite would break the graph
        """
        self.state = None
        self._skipped = set()
        result = FusionResult(qdq_before=count_quantize_boundaries(graph))
        logger.info(f"Running QDQ fusion ({level.name}) on {graph}")
        if not has_qdq_nodes(graph):
            logger.info("Graph has no QDQ nodes, nothing to fuse")

        for stage, scanning, fixpoint in _LEVEL_STATES:
            if stage not in level:
                continue
            self._transition(scanning, result)
            result.scans[stage.name] = self._run_to_fixpoint(graph, stage, result)
            self._transition(fixpoint, result)
        self._transition(PassState.DONE, result)

        result.op_counts = count_ops_in_graph(graph)
        result.qdq_after = count_quantize_boundaries(graph)
        logger.info(
            f"QDQ fusion complete: {result.num_fused} fused, {result.num_skipped} skipped, "
            f"Q/DQ nodes {result.qdq_before} → {result.qdq_after}"
        )
        if self.config.verbose:
            for rule_name, count in sorted(result.rule_counts.items()):
                logger.info(f"  {rule_name}: {count}")
        return result

    def _run_to_fixpoint(
        self, graph: Graph, level: TransformerLevel, result: FusionResult
    ) -> int:
        rules = rules_for_level(level, self.config.disabled_rules)
        if not rules:
            logger.debug(f"{level.name}: all rules disabled")
            return 0

        for scan in range(1, self.config.max_fixpoint_iterations + 1):
            if not self._commit_first_candidate(graph, rules, result):
                logger.debug(f"{level.name} reached fixpoint after {scan} scans")
                return scan
        raise FixpointNotReachedError(
            f"{level.name} did not reach a fixpoint within "
            f"{self.config.max_fixpoint_iterations} scans"
        )

    def _commit_first_candidate(
        self, graph: Graph, rules: list[FusionRule], result: FusionResult
    ) -> bool:
        rewriter = Rewriter(graph, self.config)
        for candidate in PatternMatcher(graph).scan(rules):
            try:
                propagate(graph, candidate, self.config)
            except ParameterMismatchError as e:
                if self.config.strict:
                    raise
                if candidate.node not in self._skipped:
                    self._skipped.add(candidate.node)
                    result.num_skipped += 1
                    logger.warning(
                        f"Skipping {candidate.rule_name} at {graph.node(candidate.node)}: {e}"
                    )
                continue
            except UnsupportedPatternError as e:
                logger.debug(f"Not fusing {candidate}: {e}")
                continue

            if not rewriter.is_current(candidate):
                logger.debug(f"Dropping stale {candidate}")
                continue
            rewrite = rewriter.commit(candidate)
            result.num_fused += 1
            result.rule_counts[candidate.rule_name] += 1
            if self.config.verbose:
                logger.info(f"Fused {candidate.rule_name} → {graph.node(rewrite.new_node)}")
            return True
        return False


def run_qdq_fusion(
    graph: Graph,
    level: TransformerLevel = TransformerLevel.ALL,
    config: Config | None = None,
) -> FusionResult:
    """Run the QDQ fusion pass on a graph in place."""
    return QDQFusionPass(config).run(graph, level)


def fuse_qdq(
    model: Graph | onnx.ModelProto | gs.Graph,
    level: TransformerLevel = TransformerLevel.ALL,
    config: Config | None = None,
) -> tuple[Graph | onnx.ModelProto | gs.Graph, FusionResult]:
    """Fuse QDQ patterns in a model.

    A Graph is optimized in place. ONNX models and GraphSurgeon graphs are
    converted, optimized and converted back to the same kind of object.

    Args:
        model: Graph, ONNX model or GraphSurgeon graph
        level: Levels to run
        config: Pass configuration

    Returns:
        Tuple of (optimized model, FusionResult)
    """
    if isinstance(model, Graph):
        return model, run_qdq_fusion(model, level, config)

    graph = import_onnx(model)
    result = run_qdq_fusion(graph, level, config)
    if isinstance(model, gs.Graph):
        return to_gs_graph(graph), result
    return export_onnx(graph), result


def fuse_qdq_file(
    onnx_path: str | Path,
    output_path: str | Path,
    level: TransformerLevel = TransformerLevel.ALL,
    config: Config | None = None,
) -> FusionResult:
    """Load an ONNX file, fuse QDQ patterns and save the result."""
    logger.info(f"Loading model: {onnx_path}")
    model = onnx.load(str(onnx_path))
    fused, result = fuse_qdq(model, level, config)
    onnx.save(fused, str(output_path))
    logger.info(f"Saved fused model → {output_path}")
    return result
