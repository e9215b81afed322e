"""
Array/storage planner: decides the storage class and shape of every array
of the generated module
"""

import logging
from typing import Dict, List, Optional

import numpy as np

from .config import ProblemConfiguration
from .core import NamedArray, StorageClass, ElementKind, DataType, ConfigurationError

logger = logging.getLogger(__name__)


class StoragePlanner:
    """Owns the module-level arrays of one generation run.

    Every request is checked against earlier requests of the same name; an
    identical request returns the existing array, a different one is an error.
    """

    def __init__(self, config: ProblemConfiguration):
        self.config = config
        self.dims = config.dims
        self.arrays: Dict[str, NamedArray] = {}

    def allocate(self, name: str, rows: int, cols: int = 1,
                 storage: StorageClass = StorageClass.WORKSPACE,
                 kind: ElementKind = ElementKind.REAL,
                 value: Optional[np.ndarray] = None,
                 doc: Optional[str] = None,
                 dtype: Optional[DataType] = None) -> NamedArray:
        if storage == StorageClass.LOCAL:
            raise ConfigurationError(name, "local arrays belong to a routine, use local()")
        if storage == StorageClass.CONSTANT:
            if not self.config.hardcode_constraints:
                raise ConfigurationError(name, "constants require hardcodeConstraints")
            if value is None:
                raise ConfigurationError(name, "a constant needs a known value")
        if value is not None:
            value = np.asarray(value, dtype=float)
            self.check_size(name, value.size, rows * cols)

        existing = self.arrays.get(name)
        if existing is not None:
            if (existing.shape != (rows, cols) or existing.storage != storage
                    or existing.kind != kind):
                raise ConfigurationError(
                    name, f"already allocated as {existing.rows}x{existing.cols} "
                          f"{existing.storage.value}, requested {rows}x{cols} {storage.value}")
            if value is not None and not np.array_equal(existing.value, value.reshape(rows, cols)):
                raise ConfigurationError(name, "already allocated with a different value")
            return existing

        array = NamedArray(name, rows, cols, storage, kind, dtype, value, doc)
        self.arrays[name] = array
        logger.debug(f"Allocated {name}: {rows}x{cols} ({storage.value})")
        return array

    def local(self, name: str, rows: int, cols: int = 1,
              kind: ElementKind = ElementKind.REAL, doc: Optional[str] = None) -> NamedArray:
        """Routine-scoped array; not registered with the module"""
        return NamedArray(name, rows, cols, StorageClass.LOCAL, kind, doc=doc)

    def get(self, name: str) -> NamedArray:
        if name not in self.arrays:
            raise ConfigurationError(name, "not allocated")
        return self.arrays[name]

    def has(self, name: str) -> bool:
        return name in self.arrays

    @staticmethod
    def check_size(quantity: str, actual: int, expected: int):
        if actual != expected:
            raise ConfigurationError(quantity, f"expected {expected} elements, got {actual}")

    def by_storage(self) -> Dict[StorageClass, List[NamedArray]]:
        """Registered arrays grouped by storage class, in allocation order"""
        groups: Dict[StorageClass, List[NamedArray]] = {s: [] for s in StorageClass}
        for array in self.arrays.values():
            groups[array.storage].append(array)
        return groups

    def num_qp_vars(self) -> int:
        d = self.dims
        if self.config.initial_state_fixed:
            return d.N * d.NX + d.N * d.NU
        return (d.N + 1) * d.NX + d.N * d.NU

    @property
    def box_bound_dim(self) -> int:
        return self.dims.N * self.dims.NU + self.dims.N * self.dims.NX

    @property
    def integrator_state_dim(self) -> int:
        d = self.dims
        return d.NX * (1 + d.NX + d.NU) + d.NU + d.NOD

    def plan_base(self):
        """Arrays every configuration needs: trajectories, references, QP data"""
        d = self.dims
        V, W = StorageClass.VARIABLE, StorageClass.WORKSPACE

        self.allocate("x", d.N + 1, d.NX, V, doc="State trajectory")
        self.allocate("u", d.N, d.NU, V, doc="Control trajectory")
        if d.NOD > 0:
            self.allocate("od", d.N + 1, d.NOD, V, doc="Online data")
        self.allocate("y", d.N, d.NY, V, doc="Stage references")
        self.allocate("yN", d.NYN, 1, V, doc="Terminal reference")

        if self.config.initial_state_fixed:
            self.allocate("x0", d.NX, 1, V, doc="Current state estimate")
        else:
            self.allocate("xAC", d.NX, 1, V, doc="Arrival cost reference")
            self.allocate("SAC", d.NX, d.NX, V, doc="Arrival cost weight")
            self.allocate("sigmaN", d.NX, d.NX, V, doc="Arrival cost noise covariance")
            self.allocate("DxAC", d.NX, 1, W)
        if self.config.use_arrival_cost:
            self.allocate("WL", d.NX, d.NX, V, doc="Arrival cost update weight")

        self.allocate("state", self.integrator_state_dim, 1, W)
        self.allocate("d", d.N * d.NX, 1, W, doc="Dynamics residuals")
        self.allocate("evGx", d.N * d.NX, d.NX, W, doc="State sensitivities")
        self.allocate("evGu", d.N * d.NX, d.NU, W, doc="Control sensitivities")

        self.allocate("Dy", d.N * d.NY, 1, W)
        self.allocate("DyN", d.NYN, 1, W)

        self.allocate("qpx", (d.N + 1) * d.NX, 1, W)
        self.allocate("qpu", d.N * d.NU, 1, W)
        self.allocate("qpq", d.N * d.NX, 1, W)
        self.allocate("qpqf", d.NX, 1, W)
        self.allocate("qpr", d.N * d.NU, 1, W)
        self.allocate("qpLambda", d.N * d.NX, 1, W)
        self.allocate("nIt", 1, 1, W, ElementKind.INT, dtype=DataType.SCALAR)

        logger.info(f"Planned {len(self.arrays)} base arrays, {self.num_qp_vars()} QP variables")


def copy_node_inputs(body, planner: StoragePlanner, target: NamedArray, node):
    """target <- [x_node, u_node, od_node]; the terminal node has no control"""
    d = planner.dims
    terminal = isinstance(node, int) and node == d.N
    body.assign(target.vector(0, d.NX), planner.get("x").row(node))
    offset = d.NX
    if not terminal:
        body.assign(target.vector(d.NX, d.NU), planner.get("u").row(node))
        offset += d.NU
    if d.NOD > 0:
        body.assign(target.vector(offset, d.NOD), planner.get("od").row(node))
