"""
Problem configuration: dimensions and feature flags, read once per generation run
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Mapping

from .core import ConfigurationError


class SensitivityMode(Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    INEXACT = "inexact"


@dataclass(frozen=True)
class Dimensions:
    """Horizon length and problem dimensions"""
    N: int
    NX: int
    NU: int
    NY: int
    NYN: int
    NOD: int = 0

    def __post_init__(self):
        for name in ('N', 'NX', 'NU', 'NY', 'NYN'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(name, f"must be a positive integer, got {value!r}")
        if not isinstance(self.NOD, int) or isinstance(self.NOD, bool) or self.NOD < 0:
            raise ConfigurationError('NOD', f"must be a non-negative integer, got {self.NOD!r}")


# Stable option keys -> attribute names
OPTION_KEYS = {
    'useArrivalCost': 'use_arrival_cost',
    'variableWeighting': 'variable_weighting',
    'hardcodeConstraints': 'hardcode_constraints',
    'initialStateFixed': 'initial_state_fixed',
    'sensitivityMode': 'sensitivity_mode',
    'levenbergMarquardt': 'levenberg_marquardt',
    'liftedGradientUpdate': 'lifted_gradient_update',
    'moduleName': 'module_name',
    'precision': 'precision',
}


@dataclass(frozen=True)
class ProblemConfiguration:
    """Dimensions and feature flags of one generation run.

    Args:
        dims: Dimension set
        use_arrival_cost: Emit the arrival-cost update routine (MHE only)
        variable_weighting: Stage weighting matrix supplied per node at runtime
        hardcode_constraints: Bake bound vectors in as compile-time constants
        initial_state_fixed: NMPC state feedback (True) or MHE arrival cost (False)
        sensitivity_mode: Sensitivity propagation of the integrator
        levenberg_marquardt: Damping added to the state/control Hessian blocks
        lifted_gradient_update: Per-node gradient lift with inexact sensitivities
        module_name: Prefix of every generated symbol
        precision: 'double' or 'float'
    """
    dims: Dimensions
    use_arrival_cost: bool = False
    variable_weighting: bool = False
    hardcode_constraints: bool = True
    initial_state_fixed: bool = True
    sensitivity_mode: SensitivityMode = SensitivityMode.FORWARD
    levenberg_marquardt: float = 0.0
    lifted_gradient_update: bool = False
    module_name: str = "rti"
    precision: str = "double"

    def __post_init__(self):
        if not isinstance(self.sensitivity_mode, SensitivityMode):
            try:
                object.__setattr__(self, 'sensitivity_mode', SensitivityMode(self.sensitivity_mode))
            except ValueError:
                raise ConfigurationError('sensitivityMode', f"unknown mode {self.sensitivity_mode!r}")
        if self.levenberg_marquardt < 0.0:
            raise ConfigurationError('levenbergMarquardt',
                                     f"must be non-negative, got {self.levenberg_marquardt}")
        if self.use_arrival_cost and self.initial_state_fixed:
            raise ConfigurationError('useArrivalCost',
                                     "arrival cost requires a free initial state (initialStateFixed=False)")
        if self.precision not in ('double', 'float'):
            raise ConfigurationError('precision', f"expected 'double' or 'float', got {self.precision!r}")
        if not self.module_name.isidentifier():
            raise ConfigurationError('moduleName', f"not a valid C identifier: {self.module_name!r}")

    @property
    def adjoint(self) -> bool:
        """Gradient lift is stored per node (backward or lifted inexact sensitivities)"""
        return (self.sensitivity_mode == SensitivityMode.BACKWARD or
                (self.sensitivity_mode == SensitivityMode.INEXACT and self.lifted_gradient_update))

    def get(self, key: str) -> Any:
        """Look up a flag by its stable key"""
        if key in OPTION_KEYS:
            return getattr(self, OPTION_KEYS[key])
        if key in ('N', 'NX', 'NU', 'NY', 'NYN', 'NOD'):
            return getattr(self.dims, key)
        raise ConfigurationError(key, "unknown option key")

    @classmethod
    def from_options(cls, dims: Dimensions, options: Mapping[str, Any]) -> 'ProblemConfiguration':
        """Build a configuration from stable option keys"""
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            if key not in OPTION_KEYS:
                raise ConfigurationError(key, "unknown option key")
            kwargs[OPTION_KEYS[key]] = value
        return cls(dims=dims, **kwargs)

    def as_options(self) -> Dict[str, Any]:
        names = {f.name for f in fields(self)}
        return {key: getattr(self, attr) for key, attr in OPTION_KEYS.items() if attr in names}
