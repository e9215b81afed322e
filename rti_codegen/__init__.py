from .core import ConfigurationError, StorageClass, ElementKind, NamedArray, IndexExpr
from .config import Dimensions, ProblemConfiguration, SensitivityMode
from .problem import (
    Given, Computed, ResidualFunction, LeastSquaresObjective,
    BoxBound, PathConstraint, PointConstraint, ConstraintSet, IntegratorInterface
)
from .gauss_newton_generator import GaussNewtonGenerator
from .aggregator import ProgramAggregator, GeneratedCode
from .emitters import CCodeEmitter
from .interpreter import ASTInterpreter
from .rti_phases import RTIPhase

__all__ = [
    'ConfigurationError',
    'StorageClass',
    'ElementKind',
    'NamedArray',
    'IndexExpr',
    'Dimensions',
    'ProblemConfiguration',
    'SensitivityMode',
    'Given',
    'Computed',
    'ResidualFunction',
    'LeastSquaresObjective',
    'BoxBound',
    'PathConstraint',
    'PointConstraint',
    'ConstraintSet',
    'IntegratorInterface',
    'GaussNewtonGenerator',
    'ProgramAggregator',
    'GeneratedCode',
    'CCodeEmitter',
    'ASTInterpreter',
    'RTIPhase',
]
