"""
Problem description consumed by the assemblers: least-squares objective,
weighting blocks, bounds and constraint functions
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

import numpy as np

from .core import NamedArray


def _frozen(matrix) -> Optional[np.ndarray]:
    if matrix is None:
        return None
    value = np.array(matrix, dtype=float)
    value.setflags(write=False)
    return value


@dataclass(frozen=True, eq=False)
class Given:
    """Weighting block known at generation time"""
    matrix: np.ndarray

    def __post_init__(self):
        value = np.atleast_2d(np.array(self.matrix, dtype=float))
        value.setflags(write=False)
        object.__setattr__(self, 'matrix', value)

    @property
    def shape(self):
        return self.matrix.shape


@dataclass(frozen=True, eq=False)
class Computed:
    """Weighting block populated at runtime"""
    array: NamedArray

    @property
    def shape(self):
        return self.array.shape


WeightingBlock = Union[Given, Computed]


@dataclass(frozen=True)
class ResidualFunction:
    """External function evaluating a residual (and optionally its Jacobians).

    ``body`` is the C body produced by the symbolic backend; without it only
    a prototype is emitted.
    """
    name: str
    dim: int
    body: Optional[str] = None


@dataclass(eq=False)
class LeastSquaresObjective:
    """Nonlinear least-squares stage and terminal cost.

    Jacobians and weights left as None are evaluated/supplied at runtime.
    """
    stage_function: ResidualFunction
    terminal_function: ResidualFunction
    weight: Optional[np.ndarray] = None
    terminal_weight: Optional[np.ndarray] = None
    jacobian_x: Optional[np.ndarray] = None
    jacobian_u: Optional[np.ndarray] = None
    terminal_jacobian_x: Optional[np.ndarray] = None
    linear_term_x: Optional[np.ndarray] = None
    linear_term_u: Optional[np.ndarray] = None
    runtime_linear_terms: bool = False
    cross_term: bool = False

    def __post_init__(self):
        for name in ('weight', 'terminal_weight', 'jacobian_x', 'jacobian_u',
                     'terminal_jacobian_x', 'linear_term_x', 'linear_term_u'):
            setattr(self, name, _frozen(getattr(self, name)))


@dataclass(eq=False)
class BoxBound:
    lower: Optional[np.ndarray] = None
    upper: Optional[np.ndarray] = None

    def __post_init__(self):
        self.lower = _frozen(self.lower)
        self.upper = _frozen(self.upper)


@dataclass(eq=False)
class PathConstraint:
    """Constraint evaluated at every node 0..N-1.

    ``lower``/``upper`` have ``dim`` entries (same for all nodes) or N*dim;
    a missing side is unbounded.
    """
    name: str
    dim: int
    lower: Optional[np.ndarray] = None
    upper: Optional[np.ndarray] = None
    jacobian_x: Optional[np.ndarray] = None
    jacobian_u: Optional[np.ndarray] = None
    body: Optional[str] = None

    def __post_init__(self):
        for name in ('lower', 'upper', 'jacobian_x', 'jacobian_u'):
            setattr(self, name, _frozen(getattr(self, name)))


@dataclass(eq=False)
class PointConstraint:
    """Constraint at a single node, declared by its total output width"""
    name: str
    output_width: int
    lower: Optional[np.ndarray] = None
    upper: Optional[np.ndarray] = None
    body: Optional[str] = None

    def __post_init__(self):
        self.lower = _frozen(self.lower)
        self.upper = _frozen(self.upper)


@dataclass(eq=False)
class ConstraintSet:
    control_bounds: Dict[int, BoxBound] = field(default_factory=dict)
    state_bounds: Dict[int, BoxBound] = field(default_factory=dict)
    path: Optional[PathConstraint] = None
    point_constraints: Dict[int, PointConstraint] = field(default_factory=dict)

    def point_nodes(self):
        return sorted(self.point_constraints)


@dataclass(frozen=True)
class IntegratorInterface:
    """Names of the external integrator entry points"""
    simulation: str = "modelSimulation"
    integrate: str = "integrate"
