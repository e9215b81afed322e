#!/usr/bin/env python3
"""
Shared tracking problems and Python stand-ins for the external routines
"""

import numpy as np
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen import (Dimensions, ProblemConfiguration, LeastSquaresObjective,
                         ResidualFunction, GaussNewtonGenerator)


def make_problem(N=3, NX=2, NU=1, given_weight=True, given_jacobians=True, **options):
    """Tracking of y = [x; u] and yN = x with identity weights"""
    NY, NYN = NX + NU, NX
    dims = Dimensions(N=N, NX=NX, NU=NU, NY=NY, NYN=NYN)
    config = ProblemConfiguration(dims=dims, **options)
    selector = np.eye(NY)
    objective = LeastSquaresObjective(
        stage_function=ResidualFunction("evaluateStageCost", NY),
        terminal_function=ResidualFunction("evaluateTerminalCost", NYN),
        weight=np.eye(NY) if given_weight else None,
        terminal_weight=np.eye(NYN) if given_weight else None,
        jacobian_x=selector[:, :NX] if given_jacobians else None,
        jacobian_u=selector[:, NX:] if given_jacobians else None,
        terminal_jacobian_x=np.eye(NYN) if given_jacobians else None,
    )
    return config, objective


def make_generator(constraints=None, **kwargs):
    config, objective = make_problem(**kwargs)
    return GaussNewtonGenerator(config, objective, constraints).setup()


def residual_externals(dims, with_jacobians=False):
    """evaluateStageCost/evaluateTerminalCost writing [residual | Fx | Fu] into out"""
    NX, NU, NY, NYN = dims.NX, dims.NU, dims.NY, dims.NYN
    selector = np.eye(NY)

    def stage(inputs, out):
        out[:NY] = inputs[:NY]
        if with_jacobians:
            out[NY:NY + NY * NX] = selector[:, :NX].reshape(-1)
            out[NY + NY * NX:NY + NY * (NX + NU)] = selector[:, NX:].reshape(-1)

    def terminal(inputs, out):
        out[:NYN] = inputs[:NYN]
        if with_jacobians:
            out[NYN:NYN + NYN * NX] = np.eye(NYN, NX).reshape(-1)

    return {'evaluateStageCost': stage, 'evaluateTerminalCost': terminal}
