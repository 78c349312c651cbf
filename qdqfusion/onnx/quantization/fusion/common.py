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

"""Common data structures and types for the QDQ fusion pass.

This module provides the foundational classes used throughout the fusion pass:

**Exceptions:**
- FusionError: Base class for all fusion errors
- GraphInvariantError: Structural edit would break the graph (fatal)
- ParameterMismatchError: Unsupported quantization parameters (candidate skipped)
- UnsupportedPatternError: No fusion rule applies (node left untouched)
- FixpointNotReachedError: Fixpoint loop exceeded its iteration cap

**Operator Model:**
- OpKind: Closed set of operator kinds the pass understands
- OpSignature / OP_SIGNATURES: Declared input/output arity per kind

**Pass Staging:**
- TransformerLevel: Optimization levels (LEVEL1, LEVEL2, ALL)
- PassState: States of the pass driver state machine

**Quantization Records:**
- QuantParams: Per-tensor scale/zero-point/type triple
- FusionParams: Parameters relocated onto a fused node
- FusionCandidate: Transient record of one matched subgraph

**Configuration:**
- Config: Pass parameters, loadable from YAML
"""

import math
from dataclasses import asdict, dataclass, field
from enum import Enum, Flag
from typing import Any

import numpy as np
import yaml

from qdqfusion.onnx.logging_config import logger

MS_DOMAIN = "com.microsoft"


# Fusion-related Exceptions
class FusionError(Exception):
    """Base exception for fusion-pass errors."""


class GraphInvariantError(FusionError):
    """Exception raised when a graph edit would leave the graph inconsistent."""


class ParameterMismatchError(FusionError):
    """Exception raised when quantization parameters cannot be fused."""


class UnsupportedPatternError(FusionError):
    """Exception raised when no fusion rule applies to a node."""


class FixpointNotReachedError(GraphInvariantError):
    """Exception raised when a level does not converge within the iteration cap."""


class OpKind(Enum):
    """Operator kinds known to the fusion pass.

    Nodes whose operator is not listed here are carried through the pass
    untouched and are not arity-checked.
    """

    CONV = "Conv"
    MATMUL = "MatMul"
    ADD = "Add"
    MUL = "Mul"
    MAXPOOL = "MaxPool"
    RESHAPE = "Reshape"
    QUANTIZE_LINEAR = "QuantizeLinear"
    DEQUANTIZE_LINEAR = "DequantizeLinear"
    QLINEAR_CONV = "QLinearConv"
    QLINEAR_MATMUL = "QLinearMatMul"
    QLINEAR_ADD = "QLinearAdd"
    QLINEAR_MUL = "QLinearMul"

    @property
    def domain(self) -> str:
        """ONNX domain of the operator ('' is the default ai.onnx domain)."""
        if self in (OpKind.QLINEAR_ADD, OpKind.QLINEAR_MUL):
            return MS_DOMAIN
        return ""

    @property
    def is_fused(self) -> bool:
        """Whether this kind is a fused quantized-linear operator."""
        return self in FUSED_KINDS

    @classmethod
    def from_op(cls, op: str, domain: str = "") -> "OpKind | None":
        """Resolve an operator name and domain to a kind, or None if unknown."""
        try:
            kind = cls(op)
        except ValueError:
            return None
        normalized = "" if domain in ("", "ai.onnx") else domain
        if kind.domain != normalized:
            return None
        return kind


FUSED_KINDS = frozenset(
    {OpKind.QLINEAR_CONV, OpKind.QLINEAR_MATMUL, OpKind.QLINEAR_ADD, OpKind.QLINEAR_MUL}
)

# Kinds that must have a registered fusion rule
FUSIBLE_KINDS = frozenset(
    {OpKind.CONV, OpKind.MATMUL, OpKind.ADD, OpKind.MUL, OpKind.MAXPOOL, OpKind.RESHAPE}
)

# Ops that run unchanged on quantized data once the surrounding QDQ pair is dropped
PASS_THROUGH_KINDS = frozenset({OpKind.MAXPOOL, OpKind.RESHAPE})


@dataclass(frozen=True)
class OpSignature:
    """Declared arity of an operator kind (inclusive bounds)."""

    min_inputs: int
    max_inputs: int
    min_outputs: int = 1
    max_outputs: int = 1

    def accepts(self, num_inputs: int, num_outputs: int) -> bool:
        """Check whether the given arity fits this signature."""
        return (
            self.min_inputs <= num_inputs <= self.max_inputs
            and self.min_outputs <= num_outputs <= self.max_outputs
        )


OP_SIGNATURES: dict[OpKind, OpSignature] = {
    OpKind.CONV: OpSignature(2, 3),
    OpKind.MATMUL: OpSignature(2, 2),
    OpKind.ADD: OpSignature(2, 2),
    OpKind.MUL: OpSignature(2, 2),
    OpKind.MAXPOOL: OpSignature(1, 1, 1, 2),
    OpKind.RESHAPE: OpSignature(2, 2),
    OpKind.QUANTIZE_LINEAR: OpSignature(2, 3),
    OpKind.DEQUANTIZE_LINEAR: OpSignature(2, 3),
    OpKind.QLINEAR_CONV: OpSignature(8, 9),
    OpKind.QLINEAR_MATMUL: OpSignature(8, 8),
    OpKind.QLINEAR_ADD: OpSignature(7, 8),
    OpKind.QLINEAR_MUL: OpSignature(7, 8),
}


class TransformerLevel(Flag):
    """Optimization levels of the fusion pass.

    - LEVEL1: Pass-through QDQ removal and Conv fusion
    - LEVEL2: Operator-family fusions (Add, Mul, MatMul) and Conv chain closure
    - ALL: LEVEL1 followed by LEVEL2
    """

    LEVEL1 = 1
    LEVEL2 = 2
    ALL = LEVEL1 | LEVEL2

    @classmethod
    def from_string(cls, value: str) -> "TransformerLevel":
        """Parse '1', '2', 'all' (or 'level1', 'level2') into a level."""
        normalized = value.strip().lower().removeprefix("level")
        mapping = {"1": cls.LEVEL1, "2": cls.LEVEL2, "all": cls.ALL, "1+2": cls.ALL}
        if normalized not in mapping:
            raise ValueError(f"Unknown transformer level '{value}'")
        return mapping[normalized]


class PassState(Enum):
    """States of the pass driver."""

    LEVEL1_SCANNING = "Level1Scanning"
    LEVEL1_FIXPOINT = "Level1Fixpoint"
    LEVEL2_SCANNING = "Level2Scanning"
    LEVEL2_FIXPOINT = "Level2Fixpoint"
    DONE = "Done"


# =============================================================================
# Quantization Records
# =============================================================================

ACTIVATION_QUANT_TYPES = frozenset({np.dtype(np.uint8), np.dtype(np.int8)})
BIAS_QUANT_TYPES = frozenset({np.dtype(np.int32)})


@dataclass(frozen=True)
class QuantParams:
    """Uniform affine per-tensor quantization parameters.

    real ~= (quantized - zero_point) * scale

    Attributes:
        scale: Positive scale factor
        zero_point: Integer offset within the range of dtype
        dtype: Quantized integer type
    """

    scale: float
    zero_point: int
    dtype: np.dtype

    def __post_init__(self):
        object.__setattr__(self, "dtype", np.dtype(self.dtype))
        if not np.issubdtype(self.dtype, np.integer):
            raise ParameterMismatchError(
                f"Quantized type must be an integer type, got {self.dtype}"
            )
        if not math.isfinite(self.scale) or self.scale <= 0:
            raise ParameterMismatchError(f"Scale must be positive, got {self.scale}")
        info = np.iinfo(self.dtype)
        if not info.min <= self.zero_point <= info.max:
            raise ParameterMismatchError(
                f"Zero-point {self.zero_point} outside [{info.min}, {info.max}] for {self.dtype}"
            )

    def matches(self, other: "QuantParams", rtol: float = 1e-6) -> bool:
        """Check whether two parameter sets describe the same quantization."""
        return (
            self.dtype == other.dtype
            and self.zero_point == other.zero_point
            and math.isclose(self.scale, other.scale, rel_tol=rtol)
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"scale": self.scale, "zero_point": self.zero_point, "dtype": self.dtype.name}

    def __str__(self) -> str:
        return f"QuantParams(scale={self.scale:g}, zp={self.zero_point}, {self.dtype.name})"


@dataclass
class FusionParams:
    """Quantization parameters relocated onto a fused node.

    Attributes:
        inputs: Parameters of each data input, in operand order
        output: Parameters of the fused output
        bias: Parameters of the Conv bias, if any
    """

    inputs: list[QuantParams]
    output: QuantParams
    bias: QuantParams | None = None


@dataclass
class FusionCandidate:
    """A matched subgraph awaiting propagation and rewrite.

    Holds node ids only; ids are re-validated before the rewrite commits.

    Attributes:
        rule_name: Name of the rule that produced the match
        kind: Kind of the matched compute node
        node: Id of the matched compute node
        input_dqs: Ids of the DequantizeLinear nodes feeding each data input
        output_q: Id of the trailing QuantizeLinear node
        bias_dq: Id of the DequantizeLinear node feeding the Conv bias
        input_ranks: Rank of each data input when known
        params: Derived parameters, set by the propagator
    """

    rule_name: str
    kind: OpKind
    node: int
    input_dqs: list[int]
    output_q: int
    bias_dq: int | None = None
    input_ranks: list[int | None] = field(default_factory=list)
    params: FusionParams | None = None

    @property
    def node_ids(self) -> list[int]:
        """All node ids this candidate references."""
        ids = [self.node, *self.input_dqs, self.output_q]
        if self.bias_dq is not None:
            ids.append(self.bias_dq)
        return ids

    def __str__(self) -> str:
        return (
            f"FusionCandidate[{self.rule_name}: node={self.node}, "
            f"dqs={self.input_dqs}, q={self.output_q}]"
        )


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class Config:
    """Configuration parameters for the QDQ fusion pass.

    Attributes:
        verbose: Enable detailed logging of matches and rewrites (default: False)
        max_fixpoint_iterations: Maximum scans per level before the pass fails
            with FixpointNotReachedError (default: 1000)
        validate_after_rewrite: Run a full graph invariant check after every
            committed rewrite (default: True)
        strict: Raise ParameterMismatchError instead of skipping the
            candidate (default: False)
        scale_rtol: Relative tolerance used when comparing scales of a
            Dequantize/Quantize pair around a pass-through op (default: 1e-6)
        disabled_rules: Names of fusion rules to skip (default: none)

    Example:
        >>> config = Config(verbose=True, disabled_rules=["qlinear_matmul"])
        >>> QDQFusionPass(config).run(graph, TransformerLevel.ALL)
    """

    # Logging
    verbose: bool = False

    # Driver Settings
    max_fixpoint_iterations: int = 1000
    validate_after_rewrite: bool = True
    strict: bool = False

    # Matching Settings
    scale_rtol: float = 1e-6
    disabled_rules: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.max_fixpoint_iterations <= 0:
            raise ValueError(
                f"max_fixpoint_iterations must be positive, got {self.max_fixpoint_iterations}"
            )
        if self.scale_rtol < 0:
            raise ValueError(f"scale_rtol must be non-negative, got {self.scale_rtol}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from a dictionary, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return cls(**{key: value for key, value in data.items() if key in known})

    def save(self, output_path: str) -> None:
        """Save the configuration to a YAML file."""
        with open(output_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        logger.debug(f"Saved fusion config → {output_path}")

    @classmethod
    def load(cls, input_path: str) -> "Config":
        """Load a configuration from a YAML file.

        Raises:
            FileNotFoundError: If the input_path doesn't exist
        """
        with open(input_path) as f:
            data = yaml.safe_load(f) or {}
        config = cls.from_dict(data)
        logger.debug(f"Loaded fusion config from {input_path}: {config}")
        return config
