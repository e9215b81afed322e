"""
Command-line entry point: generates the RTI solver of a state/control
tracking problem
"""

import argparse
import logging
import os

import numpy as np

from .config import Dimensions, ProblemConfiguration
from .core import ConfigurationError
from .problem import LeastSquaresObjective, ResidualFunction, ConstraintSet, BoxBound
from .gauss_newton_generator import GaussNewtonGenerator


def _copy_body(count: int) -> str:
    return f"int i;\nfor (i = 0; i < {count}; ++i)\n    out[i] = in[i];\n"


def build_tracking_problem(args):
    """Tracking cost y = [x; u] and yN = x, identity weights, optional control bounds"""
    nx, nu = args.nx, args.nu
    ny, nyn = nx + nu, nx
    dims = Dimensions(N=args.N, NX=nx, NU=nu, NY=ny, NYN=nyn)
    config = ProblemConfiguration(
        dims=dims,
        use_arrival_cost=args.arrival_cost,
        variable_weighting=args.variable_weighting,
        hardcode_constraints=not args.runtime_bounds,
        initial_state_fixed=not args.mhe,
        levenberg_marquardt=args.lm,
        module_name=args.module,
        precision=args.precision,
    )

    selector = np.eye(ny)
    objective = LeastSquaresObjective(
        stage_function=ResidualFunction("evaluateStageCost", ny, _copy_body(ny)),
        terminal_function=ResidualFunction("evaluateTerminalCost", nyn, _copy_body(nyn)),
        weight=None if args.variable_weighting else np.eye(ny),
        terminal_weight=np.eye(nyn),
        jacobian_x=selector[:, :nx],
        jacobian_u=selector[:, nx:],
        terminal_jacobian_x=np.eye(nyn),
    )

    constraints = ConstraintSet()
    if args.u_bound is not None:
        bound = BoxBound(-args.u_bound * np.ones(nu), args.u_bound * np.ones(nu))
        constraints.control_bounds = {node: bound for node in range(args.N)}
    return config, objective, constraints


def main(argv=None):
    parser = argparse.ArgumentParser(description='Generate an RTI Gauss-Newton solver')
    parser.add_argument('--N', type=int, default=10, help='Prediction horizon')
    parser.add_argument('--nx', type=int, default=2, help='Number of states')
    parser.add_argument('--nu', type=int, default=1, help='Number of controls')
    parser.add_argument('--mhe', action='store_true', help='Free initial state (estimation)')
    parser.add_argument('--arrival-cost', action='store_true', help='Emit the arrival cost update (requires --mhe)')
    parser.add_argument('--runtime-bounds', action='store_true', help='Bounds set at runtime instead of hardcoded')
    parser.add_argument('--variable-weighting', action='store_true', help='Stage weight supplied per node')
    parser.add_argument('--lm', type=float, default=0.0, help='Levenberg-Marquardt damping')
    parser.add_argument('--u-bound', type=float, default=None, help='Symmetric control bound')
    parser.add_argument('--module', default='rti', help='Prefix of the generated symbols')
    parser.add_argument('--precision', choices=['float', 'double'], default='double', help='Data precision')
    parser.add_argument('--output', default=None, help='Output directory (auto-generated if not specified)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')

    # Auto-generate output directory name if not specified
    if args.output is None:
        mode = "mhe" if args.mhe else "nmpc"
        output_dir = f"{args.module}_N{args.N}_{mode}_{args.precision}"
    else:
        output_dir = args.output

    try:
        config, objective, constraints = build_tracking_problem(args)
        generator = GaussNewtonGenerator(config, objective, constraints)
        generator.generate()
    except ConfigurationError as e:
        parser.error(str(e))

    for path in generator.write(output_dir):
        print(os.path.abspath(path))
    return 0


if __name__ == "__main__":
    main()
