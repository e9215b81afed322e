"""
RTI phase builder: preparation and feedback steps, KKT tolerance, arrival
cost update and the auxiliary node initialization and shifting routines
"""

import logging
from enum import Enum
from typing import Dict, List, Optional

from .config import ProblemConfiguration
from .core import IndexExpr, ElementKind
from .ast_nodes import (ArrayAccess, Assignment, BinaryOp, ConditionalBlock, ConstantMatrix,
                        IndexValue, Literal, MatrixProduct, MatrixSum, UnaryOp, difference)
from .problem import Computed, IntegratorInterface
from .routine import Routine, StatementList, make_call, scalar, scalar_set
from .storage import StoragePlanner
from .objective import ObjectiveAssembler
from .constraints import ConstraintAssembler

logger = logging.getLogger(__name__)


class RTIPhase(Enum):
    PREPARATION = "preparationStep"
    FEEDBACK = "feedbackStep"


class RTIPhaseBuilder:
    """Composes the assembled objective and constraints into the RTI routines"""

    def __init__(self, config: ProblemConfiguration, planner: StoragePlanner,
                 objective: ObjectiveAssembler, constraints: ConstraintAssembler,
                 integrator: Optional[IntegratorInterface] = None):
        self.config = config
        self.dims = config.dims
        self.planner = planner
        self.objective = objective
        self.constraints = constraints
        self.integrator = integrator or IntegratorInterface()
        self.routines: List[Routine] = []
        self.phases: Dict[RTIPhase, Routine] = {}

    def build(self) -> List[Routine]:
        self._setup_external()
        self._setup_preparation()
        self._setup_feedback()
        if self.config.use_arrival_cost:
            self._setup_arrival_cost()
        self._setup_kkt()
        self._setup_initialize_nodes()
        self._setup_shift_states()
        self._setup_shift_controls()
        logger.info(f"RTI phases built: {[r.name for r in self.routines if not r.external]}")
        return self.routines

    def phase(self, phase: RTIPhase) -> Routine:
        return self.phases[phase]

    def _external(self, name: str, doc: str, returns: bool = True) -> Routine:
        routine = Routine(name, doc=doc, external=True)
        if returns:
            routine.set_return_kind(ElementKind.INT)
        self.routines.append(routine)
        return routine

    def _setup_external(self):
        self.modelSimulation = self._external(self.integrator.simulation,
                                              "Integrate the dynamics and sensitivities over the horizon")
        self.modelSimulation.seal()

        self.integrate = self._external(self.integrator.integrate, "One-step integrator")
        self.integrate.add_parameter(self.planner.local("state", self.planner.integrator_state_dim))
        self.integrate.add_parameter(scalar("resetIntegrator", ElementKind.INT))
        self.integrate.seal()

        self.solve = self._external("solve", "QP solver; fills qpx, qpu, qpLambda and qpMu")
        self.solve.seal()

    def _setup_preparation(self):
        routine = Routine(RTIPhase.PREPARATION.value, doc="Preparation step of the RTI scheme.")
        ret = scalar("ret", ElementKind.INT, doc="Status of the integration module. =0: OK, otherwise the error code.")
        routine.set_return(ret)
        routine.add_statement(Assignment(ArrayAccess(ret), make_call(self.modelSimulation)))
        routine.call(self.objective.evaluateObjective)
        routine.call(self.constraints.evaluateConstraints)
        self.phases[RTIPhase.PREPARATION] = routine
        self.routines.append(routine.seal())

    def _setup_feedback(self):
        d = self.dims
        get = self.planner.get
        routine = Routine(RTIPhase.FEEDBACK.value, doc="Feedback/estimation step of the RTI scheme.")
        ret = scalar("retVal", ElementKind.INT, doc="Status code of the QP solver.")
        routine.set_return(ret)
        qpx, qpq = get("qpx"), get("qpq")
        x = get("x")

        if self.config.initial_state_fixed:
            routine.assign(qpx.vector(0, d.NX), difference(get("x0").whole(), x.row(0)))

        routine.assign(get("Dy").whole(), get("y").flat(), '-=')
        routine.assign(get("DyN").whole(), get("yN").whole(), '-=')

        qpr = get("qpr")
        for i in range(d.N):
            routine.call(self.objective.setStagef,
                         *self.objective.stage_gradient_args(i, qpq.vector(i * d.NX, d.NX),
                                                             qpr.vector(i * d.NU, d.NU)))
        routine.assign(get("qpqf").whole(), self.objective.terminal_gradient())

        if not self.config.initial_state_fixed:
            sac, dxac = get("SAC"), get("DxAC")
            routine.comment("Arrival cost")
            routine.assign(dxac.whole(), difference(x.row(0), get("xAC").whole()))
            q1 = self.objective.Q1
            if isinstance(q1, Computed):
                routine.assign(q1.array.block(0, d.NX, 0, d.NX), sac.whole(), '+=')
            else:
                # the given block stays untouched, the first QP block is rewritten
                qp_q = self.objective.qp_hessian["qpQ"]
                routine.assign(qp_q.block(0, d.NX, 0, d.NX),
                               MatrixSum([(1, ConstantMatrix(q1.matrix)), (1, sac.whole())]))
            routine.assign(qpq.vector(0, d.NX), MatrixProduct(sac.whole(), dxac.whole()), '+=')

        routine.add_statement(Assignment(ArrayAccess(ret), make_call(self.solve)))
        routine.assign(x.flat(), qpx.whole(), '+=')
        routine.assign(get("u").flat(), get("qpu").whole(), '+=')
        self.phases[RTIPhase.FEEDBACK] = routine
        self.routines.append(routine.seal())

    def _setup_arrival_cost(self):
        """Call contract of the arrival cost factor update; the recursion lives in the backend"""
        backend = self._external("updateArrivalCostFactor",
                                 "Reset (reset != 0) or update SAC from WL, sigmaN and the sensitivities")
        backend.add_parameter(scalar("reset", ElementKind.INT))
        backend.seal()

        routine = Routine("updateArrivalCost", doc="Update the arrival cost factor SAC.")
        reset = routine.add_parameter(scalar("reset", ElementKind.INT))
        ret = scalar("ret", ElementKind.INT)
        routine.set_return(ret)
        routine.add_statement(Assignment(ArrayAccess(ret), make_call(backend, ArrayAccess(reset))))
        self.updateArrivalCost = routine
        self.routines.append(routine.seal())
        logger.debug("Arrival cost update routine emitted")

    def _setup_kkt(self):
        d = self.dims
        get = self.planner.get
        routine = Routine("getKKT", doc="Get the KKT tolerance of the current iterate.")
        kkt = scalar("kkt", doc="The KKT tolerance value.")
        tmp = routine.add_local(scalar("tmp"))
        routine.set_return(kkt)
        index = IndexExpr("index")

        routine.add_statement(scalar_set(kkt, 0.0))
        for left, right in ((get("qpq").whole(), get("qpx").vector(0, d.N * d.NX)),
                            (get("qpqf").whole(), get("qpx").vector(d.N * d.NX, d.NX)),
                            (get("qpr").whole(), get("qpu").whole())):
            routine.assign(tmp.whole(), MatrixProduct(left.T, right))
            routine.add_statement(scalar_set(kkt, UnaryOp("fabs", ArrayAccess(tmp)), accumulate=True))

        def product_loop(end, left, right, offset=0):
            term = BinaryOp('*', ArrayAccess(left, [index]), ArrayAccess(right, [index + offset]))
            body = StatementList()
            body.add_statement(scalar_set(kkt, UnaryOp("fabs", term), accumulate=True))
            routine.loop("index", 0, end, body)

        product_loop(d.N * d.NX, get("d"), get("qpLambda"))

        # Inequality multipliers are only defined for a fixed initial state
        if self.config.initial_state_fixed:
            nb = self.planner.box_bound_dim
            tot = self.constraints.qp_dim_h_tot
            qp_mu = self.constraints.qpMu
            product_loop(nb, self.constraints.qpLb, qp_mu)
            product_loop(nb, self.constraints.qpUb, qp_mu, nb)
            if tot:
                product_loop(tot, self.constraints.qpLbA, qp_mu, 2 * nb)
                product_loop(tot, self.constraints.qpUbA, qp_mu, 2 * nb + tot)
        else:
            logger.debug("getKKT: inequality multipliers omitted for a free initial state")
        self.getKKT = routine
        self.routines.append(routine.seal())

    def _state_layout(self):
        """Offsets of u and od inside the integrator state vector"""
        d = self.dims
        u_offset = d.NX * (1 + d.NX + d.NU)
        return u_offset, u_offset + d.NU

    def _setup_initialize_nodes(self):
        """Forward simulation of the initial guess through the one-step integrator"""
        d = self.dims
        get = self.planner.get
        state, x = get("state"), get("x")
        u_offset, od_offset = self._state_layout()
        index = IndexExpr("index")

        routine = Routine("initializeNodes", doc="Initialize the state trajectory by forward simulation.")
        body = StatementList()
        body.assign(state.vector(0, d.NX), x.row(index))
        body.assign(state.vector(u_offset, d.NU), get("u").row(index))
        if d.NOD > 0:
            body.assign(state.vector(od_offset, d.NOD), get("od").row(index))
        body.call(self.integrate, state, BinaryOp('==', IndexValue(index), Literal(0)))
        body.assign(x.row(index + 1), state.vector(0, d.NX))
        routine.loop("index", 0, d.N, body)
        self.initializeNodes = routine
        self.routines.append(routine.seal())

    def _setup_shift_states(self):
        """strategy 1: xEnd becomes the last node; strategy 2: simulate the last interval"""
        d = self.dims
        get = self.planner.get
        state, x = get("state"), get("x")
        u_offset, od_offset = self._state_layout()
        index = IndexExpr("index")

        routine = Routine("shiftStates", doc="Shift the state trajectory by one node.")
        strategy = routine.add_parameter(scalar("strategy", ElementKind.INT))
        x_end = routine.add_parameter(self.planner.local("xEnd", d.NX), read_only=True)
        u_end = routine.add_parameter(self.planner.local("uEnd", d.NU), read_only=True)

        body = StatementList()
        body.assign(x.row(index), x.row(index + 1))
        routine.loop("index", 0, d.N, body)

        copy_end = StatementList()
        copy_end.assign(x.row(d.N), x_end.whole())

        simulate = StatementList()
        simulate.assign(state.vector(0, d.NX), x.row(d.N))
        given_u = StatementList()
        given_u.assign(state.vector(u_offset, d.NU), u_end.whole())
        last_u = StatementList()
        last_u.assign(state.vector(u_offset, d.NU), get("u").row(d.N - 1))
        simulate.add_statement(ConditionalBlock(_non_null(u_end), given_u.statements, last_u.statements))
        if d.NOD > 0:
            simulate.assign(state.vector(od_offset, d.NOD), get("od").row(d.N))
        simulate.call(self.integrate, state, 1)
        simulate.assign(x.row(d.N), state.vector(0, d.NX))

        by_simulation = ConditionalBlock(_equals(strategy, 2), simulate.statements)
        routine.add_statement(ConditionalBlock(
            BinaryOp('&&', _equals(strategy, 1), _non_null(x_end)),
            copy_end.statements, [by_simulation]))
        self.shiftStates = routine
        self.routines.append(routine.seal())

    def _setup_shift_controls(self):
        d = self.dims
        u = self.planner.get("u")
        index = IndexExpr("index")
        routine = Routine("shiftControls", doc="Shift the control trajectory by one node.")
        u_end = routine.add_parameter(self.planner.local("uEnd", d.NU), read_only=True)

        body = StatementList()
        body.assign(u.row(index), u.row(index + 1))
        routine.loop("index", 0, d.N - 1, body)

        copy_end = StatementList()
        copy_end.assign(u.row(d.N - 1), u_end.whole())
        routine.add_statement(ConditionalBlock(_non_null(u_end), copy_end.statements))
        self.shiftControls = routine
        self.routines.append(routine.seal())


def _equals(array, value: int) -> BinaryOp:
    return BinaryOp('==', ArrayAccess(array), Literal(value))


def _non_null(array) -> BinaryOp:
    return BinaryOp('!=', ArrayAccess(array), Literal(0))
