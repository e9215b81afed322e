#!/usr/bin/env python3
"""
Unit test for the RTI phases: preparation, feedback, KKT and auxiliary routines
"""

import unittest
import numpy as np
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen import RTIPhase, ASTInterpreter
from rti_codegen.ast_nodes import BinaryOp, Literal, UnaryOp
from rti_codegen.routine import Routine, scalar, scalar_set
from problem_fixtures import make_generator, residual_externals


class TestRTIPhases(unittest.TestCase):

    def _names(self, gen):
        return [r.name for r in gen.routines]

    def test_fixed_initial_state_scenario(self):
        gen = make_generator(N=3, NX=2, NU=1)
        names = self._names(gen)
        for name in ('preparationStep', 'feedbackStep', 'initialize', 'initializeNodes',
                     'shiftStates', 'shiftControls', 'getKKT', 'getObjective',
                     'evaluateStageCost', 'evaluateTerminalCost'):
            self.assertIn(name, names)
        self.assertNotIn('updateArrivalCost', names)
        self.assertEqual(gen.num_qp_vars(), 9)
        self.assertIs(gen.phase_builder.phase(RTIPhase.PREPARATION), gen.routine('preparationStep'))

    def test_free_initial_state_scenario(self):
        gen = make_generator(N=3, NX=2, NU=1, initial_state_fixed=False)
        self.assertEqual(gen.num_qp_vars(), 11)
        for name in ('xAC', 'SAC', 'sigmaN', 'DxAC'):
            self.assertTrue(gen.planner.has(name), name)
        self.assertNotIn('updateArrivalCost', self._names(gen))

    def test_arrival_cost_routine(self):
        gen = make_generator(initial_state_fixed=False, use_arrival_cost=True)
        self.assertIn('updateArrivalCost', self._names(gen))
        calls = []

        def backend(reset):
            calls.append(reset)
            return 5

        interp = gen.interpreter({'updateArrivalCostFactor': backend})
        self.assertEqual(interp.run('updateArrivalCost', 1), 5)
        self.assertEqual(calls, [1])

    def test_preparation_surfaces_integrator_status(self):
        gen = make_generator()
        externals = residual_externals(gen.config.dims)
        externals['modelSimulation'] = lambda: 3
        interp = gen.interpreter(externals)
        interp.run('initialize')
        self.assertEqual(interp.run('preparationStep'), 3)

    def test_feedback_step(self):
        gen = make_generator()
        observed = {}

        def solve():
            observed['qpx'] = interp.get('qpx').reshape(-1)
            observed['qpq'] = interp.get('qpq').reshape(-1)
            observed['qpqf'] = interp.get('qpqf').reshape(-1)
            interp.set('qpx', np.full(8, 0.5))
            interp.set('qpu', [1.0, 2.0, 3.0])
            return 7

        interp = gen.interpreter({'solve': solve})
        interp.run('initialize')
        x = np.arange(8.0).reshape(4, 2)
        interp.set('x', x)
        interp.set('x0', [10.0, 20.0])
        interp.set('Dy', np.arange(9.0))
        interp.set('DyN', [1.0, 1.0])
        interp.set('yN', [0.5, 2.0])

        self.assertEqual(interp.run('feedbackStep'), 7)
        np.testing.assert_allclose(observed['qpx'][:2], [10.0, 19.0])
        # Q2 selects the state part of each stage residual
        np.testing.assert_allclose(observed['qpq'], [0, 1, 3, 4, 6, 7])
        np.testing.assert_allclose(observed['qpqf'], [0.5, -1.0])
        np.testing.assert_allclose(interp.get('x'), x + 0.5)
        np.testing.assert_allclose(interp.get('u').reshape(-1), [1.0, 2.0, 3.0])

    def test_feedback_arrival_cost(self):
        gen = make_generator(initial_state_fixed=False)
        observed = {}

        def solve():
            observed['qpQ'] = interp.get('qpQ')
            observed['qpq'] = interp.get('qpq').reshape(-1)
            return 0

        interp = gen.interpreter({'solve': solve})
        interp.run('initialize')
        interp.set('x', [[1.0, 2.0], [0, 0], [0, 0], [0, 0]])
        interp.set('xAC', [0.0, 1.0])
        interp.set('SAC', 2.0 * np.eye(2))
        interp.run('feedbackStep')

        np.testing.assert_allclose(interp.get('DxAC').reshape(-1), [1.0, 1.0])
        np.testing.assert_allclose(observed['qpQ'][:2], 3.0 * np.eye(2))
        np.testing.assert_allclose(observed['qpQ'][2:4], np.eye(2))
        np.testing.assert_allclose(observed['qpq'][:2], [2.0, 2.0])
        # the given block itself stays untouched
        np.testing.assert_array_equal(gen.objective_assembler.Q1.matrix, np.eye(2))

    def test_kkt_trivial_horizon(self):
        gen = make_generator(N=1)
        interp = gen.interpreter()
        interp.run('initialize')
        self.assertEqual(interp.run('getKKT'), 0.0)

    def test_kkt_value(self):
        for fixed, expected in ((True, 29.0), (False, 23.0)):
            with self.subTest(initial_state_fixed=fixed):
                gen = make_generator(N=1, initial_state_fixed=fixed)
                interp = gen.interpreter()
                interp.run('initialize')
                interp.set('qpq', [1.0, 2.0])
                interp.set('qpx', [3.0, 4.0, 5.0, 6.0])
                interp.set('qpqf', [1.0, -1.0])
                interp.set('qpr', [2.0])
                interp.set('qpu', [-3.0])
                interp.set('d', [1.0, 1.0])
                interp.set('qpLambda', [2.0, -3.0])
                interp.set('qpLb', [1.0, 1.0, 1.0])
                interp.set('qpMu', [1.0, 2.0, 3.0, 0.0, 0.0, 0.0])
                self.assertAlmostEqual(interp.run('getKKT'), expected)

    def test_interpreter_operators(self):
        def scalar_routine(name, value):
            routine = Routine(name)
            result = scalar("result")
            routine.set_return(result)
            routine.add_statement(scalar_set(result, value))
            return routine.seal()

        product = scalar_routine('product', UnaryOp('fabs', BinaryOp('*', Literal(-2.0), Literal(3.0))))
        ratio = scalar_routine('ratio', BinaryOp('/', Literal(1.0), Literal(2.0)))
        interp = ASTInterpreter([], [product, ratio])
        self.assertEqual(interp.run('product'), 6.0)
        # only the operators of the generated routines are executable
        with self.assertRaises(ValueError):
            interp.run('ratio')

    def test_initialize_nodes(self):
        gen = make_generator()
        resets = []

        def integrate(state, reset):
            resets.append(reset)
            x0, x1, u = state[0], state[1], state[8]
            state[0:2] = [x0 + 0.1 * x1, x1 + 0.1 * u]

        interp = gen.interpreter({'integrate': integrate})
        interp.run('initialize')
        interp.set('x', [[1.0, 1.0], [0, 0], [0, 0], [0, 0]])
        interp.set('u', [[10.0], [10.0], [10.0]])
        interp.run('initializeNodes')

        expected = [np.array([1.0, 1.0])]
        for _ in range(3):
            xk = expected[-1]
            expected.append(np.array([xk[0] + 0.1 * xk[1], xk[1] + 1.0]))
        np.testing.assert_allclose(interp.get('x'), np.array(expected))
        self.assertEqual(resets, [1, 0, 0])

    def test_shift_states_and_controls(self):
        gen = make_generator()

        def integrate(state, reset):
            state[0:2] = state[0:2] + state[8]

        interp = gen.interpreter({'integrate': integrate})
        interp.run('initialize')
        x = np.arange(8.0).reshape(4, 2)
        interp.set('x', x)
        interp.set('u', [[1.0], [2.0], [3.0]])

        interp.run('shiftStates', 1, np.array([-1.0, -2.0]), None)
        np.testing.assert_allclose(interp.get('x'), np.vstack([x[1:], [[-1.0, -2.0]]]))

        interp.set('x', x)
        interp.run('shiftStates', 2, None, None)
        np.testing.assert_allclose(interp.get('x'), np.vstack([x[1:], x[3:] + 3.0]))

        interp.set('x', x)
        interp.run('shiftStates', 1, None, None)
        np.testing.assert_allclose(interp.get('x'), np.vstack([x[1:], x[3:]]))

        interp.run('shiftControls', np.array([9.0]))
        np.testing.assert_allclose(interp.get('u').reshape(-1), [2.0, 3.0, 9.0])
        interp.run('shiftControls', None)
        np.testing.assert_allclose(interp.get('u').reshape(-1), [3.0, 9.0, 9.0])


if __name__ == '__main__':
    unittest.main()
