"""
Objective assembler: linearizes the least-squares stage and terminal costs
and assembles the Gauss-Newton Hessian and gradient blocks
"""

import logging
from typing import Dict, List, Optional

import numpy as np

from .config import ProblemConfiguration
from .core import ArrayView, IndexExpr, StorageClass, ElementKind, ConfigurationError, get_sparsity_info
from .ast_nodes import ConstantMatrix, MatrixProduct, MatrixSum, difference
from .problem import LeastSquaresObjective, Given, Computed, WeightingBlock
from .routine import Routine, StatementList, scalar
from .storage import StoragePlanner, copy_node_inputs

logger = logging.getLogger(__name__)


def block_operand(block: WeightingBlock, view: Optional[ArrayView] = None):
    """Expression reading a weighting block.

    Given blocks are inlined as literals; computed ones are read through
    ``view`` (the node's slice) or the whole array.
    """
    if isinstance(block, Given):
        return ConstantMatrix(block.matrix)
    if view is not None:
        return view
    return block.array.whole()


class ObjectiveAssembler:
    """Builds evaluateObjective, the setObj* helpers, setStagef and getObjective"""

    def __init__(self, config: ProblemConfiguration, planner: StoragePlanner,
                 objective: LeastSquaresObjective, initialize: Routine):
        self.config = config
        self.dims = config.dims
        self.planner = planner
        self.objective = objective
        self.initialize = initialize
        self.lm = config.levenberg_marquardt
        self.routines: List[Routine] = []

        self.S: Optional[WeightingBlock] = None
        self.SN: Optional[WeightingBlock] = None
        self.Q1 = self.Q2 = self.R1 = self.R2 = self.S1 = None
        self.QN1 = self.QN2 = None
        self.qp_hessian: Dict[str, object] = {}

    def assemble(self) -> List[Routine]:
        self._validate()
        self._setup_weights()
        self._setup_blocks()
        self._setup_linear_terms()
        self._setup_evaluation_storage()
        self._setup_objective_evaluation()
        self._setup_gradient()
        self._setup_qp_hessian()
        self._setup_get_objective()
        logger.info(f"Objective assembled: {len(self.routines)} routines")
        return self.routines

    def _validate(self):
        d = self.dims
        obj = self.objective
        if obj.stage_function.dim != d.NY:
            raise ConfigurationError(obj.stage_function.name,
                                     f"residual dimension {obj.stage_function.dim} != NY={d.NY}")
        if obj.terminal_function.dim != d.NYN:
            raise ConfigurationError(obj.terminal_function.name,
                                     f"residual dimension {obj.terminal_function.dim} != NYN={d.NYN}")
        shapes = {
            'weight': (d.NY, d.NY),
            'terminal_weight': (d.NYN, d.NYN),
            'jacobian_x': (d.NY, d.NX),
            'jacobian_u': (d.NY, d.NU),
            'terminal_jacobian_x': (d.NYN, d.NX),
        }
        for name, shape in shapes.items():
            value = getattr(obj, name)
            if value is not None and value.shape != shape:
                raise ConfigurationError(name, f"expected shape {shape}, got {value.shape}")
        for name, size in (('linear_term_x', d.NX), ('linear_term_u', d.NU)):
            value = getattr(obj, name)
            if value is None:
                continue
            self.planner.check_size(name, value.size, size)
            if obj.runtime_linear_terms:
                raise ConfigurationError(name, "given linear terms exclude runtime linear terms")
            if self.config.adjoint:
                raise ConfigurationError(name, "given linear terms exclude the lifted adjoint "
                                               f"({self.config.sensitivity_mode.value} sensitivities)")
        if self.config.variable_weighting and obj.weight is not None:
            raise ConfigurationError('objS', "a given weight cannot vary per node")

    def _setup_weights(self):
        d = self.dims
        V = StorageClass.VARIABLE
        obj = self.objective
        if obj.weight is not None:
            self.S = Given(obj.weight)
        else:
            rows = d.N * d.NY if self.config.variable_weighting else d.NY
            self.S = Computed(self.planner.allocate("objS", rows, d.NY, V, doc="Stage weighting matrix"))
        if obj.terminal_weight is not None:
            self.SN = Given(obj.terminal_weight)
        else:
            self.SN = Computed(self.planner.allocate("objSEndTerm", d.NYN, d.NYN, V,
                                                     doc="Terminal weighting matrix"))

    def _damped(self, matrix: np.ndarray) -> np.ndarray:
        # zero damping leaves the block untouched
        if self.lm > 0.0:
            return matrix + self.lm * np.eye(matrix.shape[0])
        return matrix

    def _setup_blocks(self):
        d = self.dims
        obj = self.objective
        S = self.S.matrix if isinstance(self.S, Given) else None
        SN = self.SN.matrix if isinstance(self.SN, Given) else None
        fx, fu, fxn = obj.jacobian_x, obj.jacobian_u, obj.terminal_jacobian_x
        alloc = self.planner.allocate

        if fx is not None and S is not None:
            q2 = fx.T @ S
            self.Q2 = Given(q2)
            self.Q1 = Given(self._damped(q2 @ fx))
        else:
            self.Q1 = Computed(alloc("Q1", d.N * d.NX, d.NX))
            self.Q2 = Computed(alloc("Q2", d.N * d.NX, d.NY))

        if fu is not None and S is not None:
            r2 = fu.T @ S
            self.R2 = Given(r2)
            self.R1 = Given(self._damped(r2 @ fu))
        else:
            self.R1 = Computed(alloc("R1", d.N * d.NU, d.NU))
            self.R2 = Computed(alloc("R2", d.N * d.NU, d.NY))

        if not obj.cross_term:
            self.S1 = Given(np.zeros((d.NX, d.NU)))
        elif fx is not None and fu is not None and S is not None:
            self.S1 = Given(fx.T @ S @ fu)
        else:
            self.S1 = Computed(alloc("S1", d.N * d.NX, d.NU))

        if fxn is not None and SN is not None:
            qn2 = fxn.T @ SN
            self.QN2 = Given(qn2)
            self.QN1 = Given(self._damped(qn2 @ fxn))
        else:
            self.QN1 = Computed(alloc("QN1", d.NX, d.NX))
            self.QN2 = Computed(alloc("QN2", d.NX, d.NYN))

        for name in ('Q1', 'Q2', 'R1', 'R2', 'S1', 'QN1', 'QN2'):
            block = getattr(self, name)
            if isinstance(block, Given):
                info = get_sparsity_info(block.matrix, threshold=0.0)
                logger.debug(f"Weighting block {name}: given, {info['nonzero_elements']}/{info['total_elements']} nonzeros")
            else:
                logger.debug(f"Weighting block {name}: computed as {block.array.name}")

    @property
    def linear_terms_per_node(self) -> bool:
        return self.config.variable_weighting or self.config.adjoint

    def _setup_linear_terms(self):
        """Gradient lift: runtime arrays, inlined literals or nothing"""
        d = self.dims
        obj = self.objective
        self.Slx = self.Slu = None
        self.Slx_given = self.Slu_given = None
        if obj.runtime_linear_terms or self.config.adjoint:
            # the lifted adjoint is written by the integrator
            storage = StorageClass.WORKSPACE if self.config.adjoint else StorageClass.VARIABLE
            if self.linear_terms_per_node:
                self.Slx = self.planner.allocate("objSlx", (d.N + 1) * d.NX, 1, storage)
                self.Slu = self.planner.allocate("objSlu", d.N * d.NU, 1, storage)
            else:
                self.Slx = self.planner.allocate("objSlx", d.NX, 1, storage)
                self.Slu = self.planner.allocate("objSlu", d.NU, 1, storage)
            return
        if obj.linear_term_x is not None and np.any(obj.linear_term_x):
            self.Slx_given = obj.linear_term_x.reshape(d.NX)
        if obj.linear_term_u is not None and np.any(obj.linear_term_u):
            self.Slu_given = obj.linear_term_u.reshape(d.NU)

    def _setup_evaluation_storage(self):
        d = self.dims
        obj = self.objective
        # [residual | Fx | Fu], Jacobians only when evaluated at runtime
        stage_width = d.NY * (1 + d.NX * (obj.jacobian_x is None) + d.NU * (obj.jacobian_u is None))
        terminal_width = d.NYN * (1 + d.NX * (obj.terminal_jacobian_x is None))
        self.objValueIn = self.planner.allocate("objValueIn", d.NX + d.NU + d.NOD, 1)
        self.objValueOut = self.planner.allocate("objValueOut", max(stage_width, terminal_width), 1)

        self.evaluateStageCost = self._external_cost(self.objective.stage_function,
                                                     "Stage residual and Jacobians")
        self.evaluateTerminalCost = self._external_cost(self.objective.terminal_function,
                                                        "Terminal residual and Jacobian")

    def _external_cost(self, function, doc: str) -> Routine:
        routine = Routine(function.name, doc=doc, external=True, body_source=function.body)
        routine.add_parameter(self.planner.local("in", self.objValueIn.size), read_only=True)
        routine.add_parameter(self.planner.local("out", self.objValueOut.size))
        self.routines.append(routine.seal())
        return routine

    def _copy_node(self, body: StatementList, node):
        copy_node_inputs(body, self.planner, self.objValueIn, node)

    def _setup_objective_evaluation(self):
        d = self.dims
        routine = Routine("evaluateObjective")
        run = IndexExpr("runObj")
        Dy = self.planner.get("Dy")
        out = self.objValueOut

        loop_body = StatementList()
        self._copy_node(loop_body, run)
        loop_body.call(self.evaluateStageCost, self.objValueIn, out)
        loop_body.assign(Dy.vector(run * d.NY, d.NY), out.vector(0, d.NY))

        index = d.NY
        fx_view = fu_view = None
        if self.objective.jacobian_x is None:
            fx_view = out.vector(index, d.NY * d.NX)
            index += d.NY * d.NX
        if self.objective.jacobian_u is None:
            fu_view = out.vector(index, d.NY * d.NU)
        if isinstance(self.S, Computed):
            if self.config.variable_weighting:
                s_view = self.S.array.rows_block(run * d.NY, d.NY)
            else:
                s_view = self.S.array.whole()
        else:
            s_view = None

        if isinstance(self.Q1, Computed):
            helper = self._weighting_helper("setObjQ1Q2", "tmpFx", d.NX, fx_view, s_view,
                                            "tmpQ1", "tmpQ2", self.objective.jacobian_x)
            loop_body.call(helper, *self._helper_args(fx_view, s_view,
                                                      self.Q1.array.rows_block(run * d.NX, d.NX),
                                                      self.Q2.array.rows_block(run * d.NX, d.NX)))
        if isinstance(self.R1, Computed):
            helper = self._weighting_helper("setObjR1R2", "tmpFu", d.NU, fu_view, s_view,
                                            "tmpR1", "tmpR2", self.objective.jacobian_u)
            loop_body.call(helper, *self._helper_args(fu_view, s_view,
                                                      self.R1.array.rows_block(run * d.NU, d.NU),
                                                      self.R2.array.rows_block(run * d.NU, d.NU)))
        if isinstance(self.S1, Computed):
            helper = self._cross_helper(fx_view, fu_view, s_view)
            args = [a for a in (fx_view, fu_view, s_view) if a is not None]
            args.append(self.S1.array.rows_block(run * d.NX, d.NX))
            loop_body.call(helper, *args)

        routine.loop("runObj", 0, d.N, loop_body)

        routine.comment("Terminal node")
        self._copy_node(routine, d.N)
        routine.call(self.evaluateTerminalCost, self.objValueIn, out)
        routine.assign(self.planner.get("DyN").whole(), out.vector(0, d.NYN))
        if isinstance(self.QN1, Computed):
            fxn_view = None
            if self.objective.terminal_jacobian_x is None:
                fxn_view = out.vector(d.NYN, d.NYN * d.NX)
            sn_view = self.SN.array.whole() if isinstance(self.SN, Computed) else None
            helper = self._weighting_helper("setObjQN1QN2", "tmpFx", d.NX, fxn_view, sn_view,
                                            "tmpQN1", "tmpQN2", self.objective.terminal_jacobian_x,
                                            terminal=True)
            routine.call(helper, *self._helper_args(fxn_view, sn_view, self.QN1.array.whole(),
                                                    self.QN2.array.whole()))
        self.evaluateObjective = routine
        self.routines.append(routine.seal())

    @staticmethod
    def _helper_args(jac_view, weight_view, first, second):
        return [a for a in (jac_view, weight_view) if a is not None] + [first, second]

    def _weighting_helper(self, name, jac_name, cols, jac_view, weight_view,
                          first_name, second_name, given_jacobian, terminal=False) -> Routine:
        """``second = F^T W``, ``first = second F (+ lambda I)``"""
        d = self.dims
        ny = d.NYN if terminal else d.NY
        routine = Routine(name)
        if jac_view is not None:
            jac = routine.add_parameter(self.planner.local(jac_name, ny, cols), read_only=True).whole()
        else:
            jac = ConstantMatrix(given_jacobian)
        if weight_view is not None:
            weight_name = "tmpObjSEndTerm" if terminal else "tmpObjS"
            weight = routine.add_parameter(self.planner.local(weight_name, ny, ny), read_only=True).whole()
        else:
            weight = block_operand(self.SN if terminal else self.S)
        first = routine.add_parameter(self.planner.local(first_name, cols, cols))
        second = routine.add_parameter(self.planner.local(second_name, cols, ny))

        routine.assign(second.whole(), MatrixProduct(jac.T, weight))
        routine.assign(first.whole(), MatrixProduct(second.whole(), jac))
        if self.lm > 0.0:
            routine.assign(first.whole(), ConstantMatrix(self.lm * np.eye(cols)), '+=')
        self.routines.append(routine.seal())
        return routine

    def _cross_helper(self, fx_view, fu_view, weight_view) -> Routine:
        d = self.dims
        routine = Routine("setObjS1")
        obj = self.objective
        fx = (routine.add_parameter(self.planner.local("tmpFx", d.NY, d.NX), read_only=True).whole()
              if fx_view is not None else ConstantMatrix(obj.jacobian_x))
        fu = (routine.add_parameter(self.planner.local("tmpFu", d.NY, d.NU), read_only=True).whole()
              if fu_view is not None else ConstantMatrix(obj.jacobian_u))
        weight = (routine.add_parameter(self.planner.local("tmpObjS", d.NY, d.NY), read_only=True).whole()
                  if weight_view is not None else block_operand(self.S))
        s1 = routine.add_parameter(self.planner.local("tmpS1", d.NX, d.NU))
        s2 = routine.add_local(self.planner.local("tmpS2", d.NX, d.NY))
        routine.assign(s2.whole(), MatrixProduct(fx.T, weight))
        routine.assign(s1.whole(), MatrixProduct(s2.whole(), fu))
        self.routines.append(routine.seal())
        return routine

    def _setup_gradient(self):
        """setStagef(stageq, stager, [Slx], [Slu], index)"""
        d = self.dims
        routine = Routine("setStagef")
        stageq = routine.add_parameter(self.planner.local("stageq", d.NX))
        stager = routine.add_parameter(self.planner.local("stager", d.NU))
        slx = slu = None
        if self.Slx is not None:
            slx = routine.add_parameter(self.planner.local("Slx", d.NX), read_only=True)
            slu = routine.add_parameter(self.planner.local("Slu", d.NU), read_only=True)
        routine.add_parameter(scalar("index", ElementKind.INT))

        index = IndexExpr("index")
        dy = self.planner.get("Dy").vector(index * d.NY, d.NY)
        q2 = block_operand(self.Q2, None if isinstance(self.Q2, Given)
                           else self.Q2.array.rows_block(index * d.NX, d.NX))
        r2 = block_operand(self.R2, None if isinstance(self.R2, Given)
                           else self.R2.array.rows_block(index * d.NU, d.NU))
        routine.assign(stageq.whole(), _plus(MatrixProduct(q2, dy), slx, self.Slx_given))
        routine.assign(stager.whole(), _plus(MatrixProduct(r2, dy), slu, self.Slu_given))
        self.setStagef = routine
        self.routines.append(routine.seal())

    def stage_gradient_args(self, node: int, qpq: ArrayView, qpr: ArrayView) -> list:
        """Arguments of the setStagef call filling node ``node``"""
        d = self.dims
        args = [qpq, qpr]
        if self.Slx is not None:
            if self.linear_terms_per_node:
                args += [self.Slx.vector(node * d.NX, d.NX), self.Slu.vector(node * d.NU, d.NU)]
            else:
                args += [self.Slx.whole(), self.Slu.whole()]
        args.append(node)
        return args

    def terminal_gradient(self):
        """``QN2 * DyN (+ Slx_N)``"""
        d = self.dims
        product = MatrixProduct(block_operand(self.QN2), self.planner.get("DyN").whole())
        slx = None
        if self.Slx is not None:
            slx = self.Slx.vector(d.N * d.NX, d.NX) if self.linear_terms_per_node else self.Slx.whole()
        return _plus(product, slx, self.Slx_given)

    def _setup_qp_hessian(self):
        """QP Hessian storage; given blocks are copied in once at initialization"""
        d = self.dims
        for qp_name, block, rows, count in (("qpQ", self.Q1, d.NX, d.N), ("qpR", self.R1, d.NU, d.N),
                                            ("qpS", self.S1, d.NX, d.N), ("qpQf", self.QN1, d.NX, 1)):
            if isinstance(block, Computed):
                self.qp_hessian[qp_name] = block.array
                continue
            cols = block.shape[1]
            array = self.planner.allocate(qp_name, count * rows, cols)
            self.qp_hessian[qp_name] = array
            if not np.any(block.matrix):
                logger.debug(f"{qp_name}: zero block, left to the storage reset")
                continue
            for blk in range(count):
                self.initialize.assign(array.rows_block(blk * rows, rows), ConstantMatrix(block.matrix))

    def _setup_get_objective(self):
        """0.5 * sum of weighted squared residuals at the current iterate"""
        d = self.dims
        routine = Routine("getObjective", doc="Objective value at the current iterate")
        obj_val = scalar("objVal")
        routine.set_return(obj_val)
        tmp_dy = routine.add_local(self.planner.local("tmpDy", d.NY))
        tmp_dyn = routine.add_local(self.planner.local("tmpDyN", d.NYN))
        tmp_s_dy = routine.add_local(self.planner.local("tmpSDy", max(d.NY, d.NYN)))
        out = self.objValueOut
        run = IndexExpr("runObj")

        routine.assign(obj_val.whole(), ConstantMatrix([[0.0]]))
        loop_body = StatementList()
        self._copy_node(loop_body, run)
        loop_body.call(self.evaluateStageCost, self.objValueIn, out)
        loop_body.assign(tmp_dy.whole(), difference(out.vector(0, d.NY),
                                                    self.planner.get("y").row(run)))
        if isinstance(self.S, Computed) and self.config.variable_weighting:
            weight = self.S.array.rows_block(run * d.NY, d.NY)
        else:
            weight = block_operand(self.S)
        loop_body.assign(tmp_s_dy.vector(0, d.NY), MatrixProduct(weight, tmp_dy.whole()))
        loop_body.assign(obj_val.whole(), MatrixProduct(tmp_dy.whole().T, tmp_s_dy.vector(0, d.NY)), '+=')
        routine.loop("runObj", 0, d.N, loop_body)

        self._copy_node(routine, d.N)
        routine.call(self.evaluateTerminalCost, self.objValueIn, out)
        routine.assign(tmp_dyn.whole(), difference(out.vector(0, d.NYN), self.planner.get("yN").whole()))
        routine.assign(tmp_s_dy.vector(0, d.NYN), MatrixProduct(block_operand(self.SN), tmp_dyn.whole()))
        routine.assign(obj_val.whole(), MatrixProduct(tmp_dyn.whole().T, tmp_s_dy.vector(0, d.NYN)), '+=')
        routine.assign(obj_val.whole(), MatrixProduct(ConstantMatrix([[0.5]]), obj_val.whole()))
        self.getObjective = routine
        self.routines.append(routine.seal())


def _plus(expr, runtime: Optional[ArrayView], given: Optional[np.ndarray]):
    if runtime is not None:
        if not isinstance(runtime, ArrayView):
            runtime = runtime.whole()
        return MatrixSum([(1, expr), (1, runtime)])
    if given is not None:
        return MatrixSum([(1, expr), (1, ConstantMatrix(given))])
    return expr
