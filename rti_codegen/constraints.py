"""
Constraint assembler: stacked box bounds, affine (path and point) constraint
bounds and the routine turning them into QP-relative bounds
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import ProblemConfiguration
from .core import INFTY, IndexExpr, NamedArray, StorageClass, ElementKind, ConfigurationError
from .ast_nodes import ConstantMatrix, difference
from .problem import ConstraintSet, BoxBound, PointConstraint
from .routine import Routine, StatementList, scalar
from .storage import StoragePlanner, copy_node_inputs

logger = logging.getLogger(__name__)


def _bound_values(bound: Optional[BoxBound], size: int, quantity: str) -> Tuple[np.ndarray, np.ndarray]:
    """Lower and upper vectors of one node; missing sides become -/+INFTY"""
    lower = np.full(size, -INFTY)
    upper = np.full(size, INFTY)
    if bound is not None:
        if bound.lower is not None:
            StoragePlanner.check_size(f"{quantity} lower bound", bound.lower.size, size)
            lower = bound.lower.reshape(size)
        if bound.upper is not None:
            StoragePlanner.check_size(f"{quantity} upper bound", bound.upper.size, size)
            upper = bound.upper.reshape(size)
    return lower, upper


class ConstraintAssembler:
    """Builds evaluateConstraints and setStagePac.

    Box bounds cover controls 0..N-1 then states 1..N. Affine bounds are
    ordered by node, path constraint before point constraint, terminal last.
    """

    def __init__(self, config: ProblemConfiguration, planner: StoragePlanner,
                 constraints: Optional[ConstraintSet], initialize: Routine):
        self.config = config
        self.dims = config.dims
        self.planner = planner
        self.constraints = constraints if constraints is not None else ConstraintSet()
        self.initialize = initialize
        self.routines: List[Routine] = []
        self.external: Dict[str, Routine] = {}

        self.path_dim = 0
        self.point_dims: Dict[int, int] = {}
        self.qp_con_dim: List[int] = []
        self.qp_dim_h = 0
        self.qp_dim_hn = 0
        self.qp_dim_h_tot = 0

    def assemble(self) -> List[Routine]:
        self.evaluateConstraints = Routine("evaluateConstraints")
        self._setup_box_bounds()
        self._setup_dimensions()
        self._setup_affine_bounds()
        self._setup_path_evaluation()
        self._setup_point_evaluation()
        self._setup_affine_evaluation()
        self.routines.append(self.evaluateConstraints.seal())
        logger.info(f"Constraints assembled: {self.planner.box_bound_dim} box bounds, "
                    f"{self.qp_dim_h_tot} affine bounds")
        return self.routines

    def stack_box_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        d = self.dims
        cs = self.constraints
        for node in cs.control_bounds:
            if not 0 <= node < d.N:
                raise ConfigurationError(f"control bound on node {node}", f"node outside 0..{d.N - 1}")
        for node in cs.state_bounds:
            if not 0 <= node <= d.N:
                raise ConfigurationError(f"state bound on node {node}", f"node outside 0..{d.N}")
        if 0 in cs.state_bounds:
            logger.debug("State bound on node 0 ignored, the QP has no bounds on the first state")

        lower, upper = [], []
        for node in range(d.N):
            lb, ub = _bound_values(cs.control_bounds.get(node), d.NU, f"u[{node}]")
            lower.append(lb)
            upper.append(ub)
        for node in range(1, d.N + 1):
            lb, ub = _bound_values(cs.state_bounds.get(node), d.NX, f"x[{node}]")
            lower.append(lb)
            upper.append(ub)
        lb, ub = np.concatenate(lower), np.concatenate(upper)
        self.planner.check_size("box bounds", lb.size, self.planner.box_bound_dim)
        return lb, ub

    def _bound_storage(self, name: str, values: np.ndarray, doc: str) -> NamedArray:
        """Compile-time constant, or runtime array set once in initialize"""
        if self.config.hardcode_constraints:
            return self.planner.allocate(name, values.size, 1, StorageClass.CONSTANT, value=values)
        array = self.planner.allocate(name, values.size, 1, StorageClass.VARIABLE, doc=doc)
        self.initialize.assign(array.whole(), ConstantMatrix(values))
        return array

    def _setup_box_bounds(self):
        d = self.dims
        lb, ub = self.stack_box_bounds()
        n = self.planner.box_bound_dim
        self.lbValues = self._bound_storage("lbValues", lb, "Lower bounds values")
        self.ubValues = self._bound_storage("ubValues", ub, "Upper bounds values")
        self.qpLb = self.planner.allocate("qpLb", n)
        self.qpUb = self.planner.allocate("qpUb", n)

        routine = self.evaluateConstraints
        u = self.planner.get("u").flat()
        x = self.planner.get("x").vector(d.NX, d.N * d.NX)
        nu = d.N * d.NU
        for qp, values in ((self.qpLb, self.lbValues), (self.qpUb, self.ubValues)):
            routine.assign(qp.vector(0, nu), difference(values.vector(0, nu), u))
        for qp, values in ((self.qpLb, self.lbValues), (self.qpUb, self.ubValues)):
            routine.assign(qp.vector(nu, d.N * d.NX), difference(values.vector(nu, d.N * d.NX), x))

    def _setup_dimensions(self):
        d = self.dims
        cs = self.constraints
        path = cs.path
        self.path_dim = path.dim if path is not None else 0
        if self.path_dim < 0:
            raise ConfigurationError(path.name, f"negative dimension {path.dim}")
        self.qp_con_dim = [self.path_dim] * d.N + [0]

        for node in cs.point_nodes():
            pc = cs.point_constraints[node]
            if not 0 <= node <= d.N:
                raise ConfigurationError(pc.name, f"node {node} outside 0..{d.N}")
            block = 1 + d.NX if node == d.N else 1 + d.NX + d.NU
            if pc.output_width < 0 or pc.output_width % block:
                raise ConfigurationError(
                    pc.name, f"output width {pc.output_width} on node {node} is not a multiple of {block}")
            dim = pc.output_width // block
            if dim == 0:
                logger.warning(f"Point constraint {pc.name} on node {node} has zero width, skipped")
                continue
            self.point_dims[node] = dim
            self.qp_con_dim[node] += dim

        self.qp_dim_hn = self.point_dims.get(d.N, 0)
        self.qp_dim_h = d.N * self.path_dim + sum(
            dim for node, dim in self.point_dims.items() if node < d.N)
        self.qp_dim_h_tot = self.qp_dim_h + self.qp_dim_hn
        logger.debug(f"Constraint dimensions per node: {self.qp_con_dim}")

    def _path_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        d = self.dims
        path = self.constraints.path
        bounds = []
        for side, infinity in ((path.lower, -INFTY), (path.upper, INFTY)):
            if side is None:
                side = np.full(path.dim, infinity)
            if side.size == path.dim:
                side = np.tile(side.reshape(path.dim), d.N)
            else:
                self.planner.check_size(f"{path.name} bounds", side.size, d.N * path.dim)
            bounds.append(side.reshape(d.N * path.dim))
        return bounds[0], bounds[1]

    def stack_affine_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        d = self.dims
        lower, upper = [], []
        if self.path_dim:
            path_lb, path_ub = self._path_bounds()
        for node in range(d.N + 1):
            if node < d.N and self.path_dim:
                lower.append(path_lb[node * self.path_dim:(node + 1) * self.path_dim])
                upper.append(path_ub[node * self.path_dim:(node + 1) * self.path_dim])
            if node in self.point_dims:
                pc = self.constraints.point_constraints[node]
                lb, ub = _bound_values(BoxBound(pc.lower, pc.upper), self.point_dims[node], pc.name)
                lower.append(lb)
                upper.append(ub)
        if not lower:
            return np.zeros(0), np.zeros(0)
        lb, ub = np.concatenate(lower), np.concatenate(upper)
        self.planner.check_size("affine bounds", lb.size, self.qp_dim_h_tot)
        return lb, ub

    def _setup_affine_bounds(self):
        d = self.dims
        tot = self.qp_dim_h_tot
        if tot == 0:
            logger.debug("No affine constraints, allocating 1-element qpLbA/qpUbA placeholders")
        self.qpLbA = self.planner.allocate("qpLbA", max(tot, 1))
        self.qpUbA = self.planner.allocate("qpUbA", max(tot, 1))
        self.qpMu = self.planner.allocate("qpMu", 2 * d.N * (d.NX + d.NU) + 2 * tot)
        self.lbAValues = self.ubAValues = None
        if tot:
            lb, ub = self.stack_affine_bounds()
            self.lbAValues = self._bound_storage("lbAValues", lb, "Lower affine bounds values")
            self.ubAValues = self._bound_storage("ubAValues", ub, "Upper affine bounds values")

        if self.path_dim or self.point_dims:
            widths = [self._path_width()] + [self.constraints.point_constraints[n].output_width
                                             for n in self.point_dims]
            self.conValueIn = self.planner.allocate("conValueIn", d.NX + d.NU + d.NOD)
            self.conValueOut = self.planner.allocate("conValueOut", max(widths))

    def _path_width(self) -> int:
        d = self.dims
        path = self.constraints.path
        if not self.path_dim:
            return 0
        return self.path_dim * (1 + d.NX * (path.jacobian_x is None) + d.NU * (path.jacobian_u is None))

    def _external(self, name: str, body: Optional[str]) -> Routine:
        """Constraint function ``name(in, out)``, shared by every node using it"""
        if name in self.external:
            return self.external[name]
        routine = Routine(name, doc="Constraint values and Jacobians", external=True, body_source=body)
        routine.add_parameter(self.planner.local("in", self.conValueIn.size), read_only=True)
        routine.add_parameter(self.planner.local("out", self.conValueOut.size))
        self.external[name] = routine
        self.routines.append(routine.seal())
        return routine

    def _setup_path_evaluation(self):
        if not self.path_dim:
            return
        d = self.dims
        path = self.constraints.path
        dim = self.path_dim
        W = StorageClass.WORKSPACE
        self.pacEvH = self.planner.allocate("pacEvH", d.N * dim, 1, W)
        self.pacEvHx = self.planner.allocate("pacEvHx", d.N * dim, d.NX, W)
        self.pacEvHu = self.planner.allocate("pacEvHu", d.N * dim, d.NU, W)
        for array, jacobian in ((self.pacEvHx, path.jacobian_x), (self.pacEvHu, path.jacobian_u)):
            if jacobian is None:
                continue
            StoragePlanner.check_size(array.name, jacobian.size, dim * array.cols)
            for node in range(d.N):
                self.initialize.assign(array.rows_block(node * dim, dim),
                                       ConstantMatrix(jacobian.reshape(dim, array.cols)))

        function = self._external(path.name, path.body)
        run = IndexExpr("runPac")
        out = self.conValueOut
        body = StatementList()
        copy_node_inputs(body, self.planner, self.conValueIn, run)
        body.call(function, self.conValueIn, out)
        body.assign(self.pacEvH.vector(run * dim, dim), out.vector(0, dim))
        offset = dim
        if path.jacobian_x is None:
            body.assign(self.pacEvHx.vector(run * (dim * d.NX), dim * d.NX), out.vector(offset, dim * d.NX))
            offset += dim * d.NX
        if path.jacobian_u is None:
            body.assign(self.pacEvHu.vector(run * (dim * d.NU), dim * d.NU), out.vector(offset, dim * d.NU))
        self.evaluateConstraints.loop("runPac", 0, d.N, body)

    def _setup_point_evaluation(self):
        if not self.point_dims:
            return
        d = self.dims
        total = sum(self.point_dims.values())
        interior = total - self.point_dims.get(d.N, 0)
        self.pocEvH = self.planner.allocate("pocEvH", total)
        self.pocEvHx = self.planner.allocate("pocEvHx", total, d.NX)
        self.pocEvHu = self.planner.allocate("pocEvHu", interior, d.NU) if interior else None

        routine = self.evaluateConstraints
        out = self.conValueOut
        offset = 0
        for node in sorted(self.point_dims):
            pc: PointConstraint = self.constraints.point_constraints[node]
            dim = self.point_dims[node]
            function = self._external(pc.name, pc.body)
            routine.comment(f"Evaluating constraint on node: #{node}")
            copy_node_inputs(routine, self.planner, self.conValueIn, node)
            routine.call(function, self.conValueIn, out)
            routine.assign(self.pocEvH.vector(offset, dim), out.vector(0, dim))
            routine.assign(self.pocEvHx.vector(offset * d.NX, dim * d.NX), out.vector(dim, dim * d.NX))
            if node < d.N:
                routine.assign(self.pocEvHu.vector(offset * d.NU, dim * d.NU),
                               out.vector(dim + dim * d.NX, dim * d.NU))
            offset += dim

    def _setup_affine_evaluation(self):
        """QP-relative affine bounds: bound minus evaluated constraint"""
        if not self.qp_dim_h_tot:
            return
        d = self.dims
        routine = self.evaluateConstraints
        set_stage = self._setup_stage_pac() if self.path_dim else None

        offset_eval = offset_poc = 0
        for node in range(d.N + 1):
            if node < d.N and set_stage is not None:
                routine.call(set_stage, offset_eval, node,
                             self.lbAValues.vector(offset_eval, self.path_dim),
                             self.ubAValues.vector(offset_eval, self.path_dim))
                offset_eval += self.path_dim
            if node in self.point_dims:
                dim = self.point_dims[node]
                evaluated = self.pocEvH.vector(offset_poc, dim)
                routine.assign(self.qpLbA.vector(offset_eval, dim),
                               difference(self.lbAValues.vector(offset_eval, dim), evaluated))
                routine.assign(self.qpUbA.vector(offset_eval, dim),
                               difference(self.ubAValues.vector(offset_eval, dim), evaluated))
                offset_eval += dim
                offset_poc += dim

    def _setup_stage_pac(self) -> Routine:
        """setStagePac(offset, ind, tLbAValues, tUbAValues)"""
        dim = self.path_dim
        routine = Routine("setStagePac")
        routine.add_parameter(scalar("offset", ElementKind.INT))
        routine.add_parameter(scalar("ind", ElementKind.INT))
        lb = routine.add_parameter(self.planner.local("tLbAValues", dim), read_only=True)
        ub = routine.add_parameter(self.planner.local("tUbAValues", dim), read_only=True)
        offset, ind = IndexExpr("offset"), IndexExpr("ind")
        evaluated = self.pacEvH.vector(ind * dim, dim)
        routine.assign(self.qpLbA.vector(offset, dim), difference(lb.whole(), evaluated))
        routine.assign(self.qpUbA.vector(offset, dim), difference(ub.whole(), evaluated))
        self.setStagePac = routine
        self.routines.append(routine.seal())
        return routine
