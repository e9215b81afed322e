"""
Complete RTI Gauss-Newton solver generator
"""

import logging
import os
from typing import Optional, Dict, Any, List, Callable

from .config import ProblemConfiguration
from .core import StorageClass, ElementKind, NamedArray
from .ast_nodes import ClearStorage
from .problem import LeastSquaresObjective, ConstraintSet, IntegratorInterface
from .routine import Routine, scalar, scalar_set
from .storage import StoragePlanner
from .objective import ObjectiveAssembler
from .constraints import ConstraintAssembler
from .rti_phases import RTIPhaseBuilder
from .aggregator import ProgramAggregator, GeneratedCode
from .interpreter import ASTInterpreter

logger = logging.getLogger(__name__)


class GaussNewtonGenerator:
    """RTI Gauss-Newton NLP solver code generator"""

    def __init__(self, config: ProblemConfiguration, objective: LeastSquaresObjective,
                 constraints: Optional[ConstraintSet] = None,
                 integrator: Optional[IntegratorInterface] = None):
        """
        Initialize the generator

        Args:
            config: Dimensions and feature flags
            objective: Least-squares stage and terminal cost
            constraints: Box bounds, path and point constraints (optional)
            integrator: Names of the external integrator entry points (optional)
        """
        self.config = config
        self.objective = objective
        self.constraints = constraints
        self.integrator = integrator or IntegratorInterface()
        self.planner: Optional[StoragePlanner] = None
        self.aggregator: Optional[ProgramAggregator] = None
        self._ready = False

    def setup(self) -> 'GaussNewtonGenerator':
        """Plan storage and assemble every routine; runs once"""
        if self._ready:
            return self
        d = self.config.dims
        self.planner = StoragePlanner(self.config)
        self.planner.plan_base()

        self.initialize = Routine("initialize", doc="Initialize the solver module. Call once before any other routine.")
        self.initialize.add_statement(ClearStorage(StorageClass.VARIABLE))
        self.initialize.add_statement(ClearStorage(StorageClass.WORKSPACE))

        self.objective_assembler = ObjectiveAssembler(self.config, self.planner, self.objective,
                                                      self.initialize)
        objective_routines = self.objective_assembler.assemble()
        self.constraint_assembler = ConstraintAssembler(self.config, self.planner, self.constraints,
                                                        self.initialize)
        constraint_routines = self.constraint_assembler.assemble()
        self.phase_builder = RTIPhaseBuilder(self.config, self.planner, self.objective_assembler,
                                             self.constraint_assembler, self.integrator)
        phase_routines = self.phase_builder.build()

        ret = scalar("ret", ElementKind.INT)
        self.initialize.set_return(ret)
        self.initialize.add_statement(scalar_set(ret, 0))
        self.initialize.seal()

        self.aggregator = ProgramAggregator(self.config)
        self.aggregator.declare_all(self.planner.arrays.values())
        for routine in [self.initialize] + objective_routines + constraint_routines + phase_routines:
            self.aggregator.add_routine(routine)

        defines = {
            'N': d.N, 'NX': d.NX, 'NU': d.NU, 'NY': d.NY, 'NYN': d.NYN, 'NOD': d.NOD,
            'QP_NV': self.num_qp_vars(),
            'QP_NB': self.planner.box_bound_dim,
            'QP_NCA': self.constraint_assembler.qp_dim_h_tot,
        }
        for name, value in defines.items():
            self.aggregator.define(name, value)
        self.aggregator.validate()
        self._ready = True
        logger.info(f"Generator ready: {len(self.aggregator.routines)} routines, "
                    f"{len(self.aggregator.arrays)} arrays")
        return self

    def num_qp_vars(self) -> int:
        """Number of QP variables: N*NX + N*NU, plus NX for a free initial state"""
        if self.planner is None:
            return StoragePlanner(self.config).num_qp_vars()
        return self.planner.num_qp_vars()

    @property
    def routines(self) -> List[Routine]:
        self.setup()
        return self.aggregator.routines

    def routine(self, name: str) -> Routine:
        self.setup()
        return self.aggregator.routine(name)

    def array(self, name: str) -> NamedArray:
        self.setup()
        return self.planner.get(name)

    def get_data_declarations(self) -> Dict[StorageClass, List[NamedArray]]:
        """Module arrays grouped by storage class"""
        self.setup()
        return self.aggregator.declarations()

    def get_function_declarations(self) -> List[Routine]:
        """Routines exposed by the generated module (externals included)"""
        self.setup()
        return list(self.aggregator.routines)

    def generate(self, basename: Optional[str] = None) -> GeneratedCode:
        """Render the header and source of the solver module"""
        self.setup()
        return self.aggregator.emit(basename or f"{self.config.module_name}_solver")

    def write(self, output_dir: str, basename: Optional[str] = None) -> List[str]:
        """Generate, then write both files into ``output_dir``"""
        code = self.generate(basename)
        os.makedirs(output_dir, exist_ok=True)
        paths = []
        for name, content in ((code.header_name, code.header), (code.source_name, code.source)):
            path = os.path.join(output_dir, name)
            with open(path, 'w') as f:
                f.write(content)
            paths.append(path)
            logger.info(f"Wrote {path}")
        return paths

    def interpreter(self, externals: Optional[Dict[str, Callable]] = None) -> ASTInterpreter:
        """Executable model of the generated module for numerical checks"""
        self.setup()
        return ASTInterpreter(self.aggregator.arrays.values(), self.aggregator.routines, externals)

    def get_problem_info(self) -> Dict[str, Any]:
        """Get problem information for validation"""
        self.setup()
        d = self.config.dims
        return {
            'N': d.N,
            'nx': d.NX,
            'nu': d.NU,
            'ny': d.NY,
            'nyn': d.NYN,
            'nod': d.NOD,
            'qp_nv': self.num_qp_vars(),
            'qp_nb': self.planner.box_bound_dim,
            'qp_nca': self.constraint_assembler.qp_dim_h_tot,
            'qp_con_dim': list(self.constraint_assembler.qp_con_dim),
            'options': self.config.as_options(),
        }
