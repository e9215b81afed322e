#!/usr/bin/env python3
"""
Unit test for the objective assembler: Hessian blocks, LM damping, gradients
"""

import unittest
import numpy as np
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen import (ConfigurationError, GaussNewtonGenerator, Given, Computed,
                         CCodeEmitter, StorageClass, ResidualFunction)
from problem_fixtures import make_problem, make_generator, residual_externals


class TestObjectiveAssembler(unittest.TestCase):

    def test_given_blocks_without_damping(self):
        gen = make_generator()
        obj = gen.objective_assembler
        for name in ('Q1', 'Q2', 'R1', 'R2', 'S1', 'QN1', 'QN2'):
            self.assertIsInstance(getattr(obj, name), Given, name)
        np.testing.assert_array_equal(obj.Q1.matrix, np.eye(2))
        np.testing.assert_array_equal(obj.R1.matrix, np.eye(1))
        np.testing.assert_array_equal(obj.QN1.matrix, np.eye(2))
        np.testing.assert_array_equal(obj.Q2.matrix, np.eye(3)[:, :2].T)

    def test_given_blocks_with_damping(self):
        lm = 0.5
        gen = make_generator(levenberg_marquardt=lm)
        obj = gen.objective_assembler
        np.testing.assert_array_equal(obj.Q1.matrix, np.eye(2) + lm * np.eye(2))
        np.testing.assert_array_equal(obj.R1.matrix, np.eye(1) + lm * np.eye(1))
        np.testing.assert_array_equal(obj.QN1.matrix, np.eye(2) + lm * np.eye(2))
        # gradient blocks are never damped
        np.testing.assert_array_equal(obj.Q2.matrix, np.eye(3)[:, :2].T)

    def test_damped_blocks_copied_at_initialization(self):
        for lm in (0.0, 0.5):
            with self.subTest(lm=lm):
                gen = make_generator(levenberg_marquardt=lm)
                interp = gen.interpreter()
                self.assertEqual(interp.run('initialize'), 0)
                qpQ = interp.get('qpQ')
                for node in range(3):
                    np.testing.assert_allclose(qpQ[2 * node:2 * node + 2], (1.0 + lm) * np.eye(2))
                np.testing.assert_allclose(interp.get('qpQf'), (1.0 + lm) * np.eye(2))
                np.testing.assert_allclose(interp.get('qpR'), (1.0 + lm) * np.ones((3, 1)))
                # the cross block is zero and left to the storage reset
                np.testing.assert_array_equal(interp.get('qpS'), np.zeros((6, 1)))

    def test_computed_blocks(self):
        gen = make_generator(given_weight=False)
        obj = gen.objective_assembler
        self.assertIsInstance(obj.Q1, Computed)
        self.assertIsInstance(obj.R1, Computed)
        self.assertIsInstance(obj.QN1, Computed)
        self.assertEqual(obj.Q1.array.shape, (6, 2))
        self.assertEqual(gen.array('objS').storage, StorageClass.VARIABLE)
        self.assertIs(obj.qp_hessian['qpQ'], obj.Q1.array)

    def test_runtime_damping_only_when_positive(self):
        emitter_text = {}
        for lm in (0.0, 0.5):
            gen = make_generator(given_weight=False, levenberg_marquardt=lm)
            emitter = CCodeEmitter(gen.config)
            emitter_text[lm] = emitter.emit_routine(gen.routine('setObjQ1Q2'))
        self.assertNotIn('+=', emitter_text[0.0])
        self.assertIn('tmpQ1[0] += 5.0000000000000000e-01;', emitter_text[0.5])
        self.assertIn('tmpQ1[3] += 5.0000000000000000e-01;', emitter_text[0.5])
        self.assertNotIn('tmpQ1[1] +=', emitter_text[0.5])

    def test_weighting_helper_values(self):
        lm = 0.25
        gen = make_generator(given_weight=False, levenberg_marquardt=lm)
        interp = gen.interpreter()
        W = np.diag([2.0, 3.0, 4.0])
        Q1 = np.zeros((2, 2))
        Q2 = np.zeros((2, 3))
        interp.run('setObjQ1Q2', W, Q1, Q2)
        Fx = np.eye(3)[:, :2]
        np.testing.assert_allclose(Q2, Fx.T @ W)
        np.testing.assert_allclose(Q1, Fx.T @ W @ Fx + lm * np.eye(2))

    def test_variable_weighting_preparation(self):
        lm = 0.5
        gen = make_generator(given_weight=False, given_jacobians=False,
                             variable_weighting=True, levenberg_marquardt=lm)
        externals = residual_externals(gen.config.dims, with_jacobians=True)
        externals['modelSimulation'] = lambda: 0
        interp = gen.interpreter(externals)
        interp.run('initialize')
        self.assertEqual(gen.array('objS').shape, (9, 3))
        interp.set('objS', np.vstack([(i + 1) * np.eye(3) for i in range(3)]))
        interp.set('objSEndTerm', 5.0 * np.eye(2))

        self.assertEqual(interp.run('preparationStep'), 0)
        Q1, R1 = interp.get('Q1'), interp.get('R1')
        for node in range(3):
            np.testing.assert_allclose(Q1[2 * node:2 * node + 2], (node + 1 + lm) * np.eye(2))
            np.testing.assert_allclose(R1[node], [node + 1 + lm])
        np.testing.assert_allclose(interp.get('QN1'), (5.0 + lm) * np.eye(2))
        np.testing.assert_allclose(interp.get('QN2'), 5.0 * np.eye(2))

    def test_residual_stacking(self):
        gen = make_generator()
        externals = residual_externals(gen.config.dims)
        externals['modelSimulation'] = lambda: 0
        interp = gen.interpreter(externals)
        interp.run('initialize')
        x = np.arange(8.0).reshape(4, 2)
        u = np.array([[10.0], [20.0], [30.0]])
        interp.set('x', x)
        interp.set('u', u)
        interp.run('preparationStep')
        np.testing.assert_allclose(interp.get('Dy').reshape(3, 3), np.hstack([x[:3], u]))
        np.testing.assert_allclose(interp.get('DyN').reshape(-1), x[3])

    def test_get_objective(self):
        gen = make_generator()
        interp = gen.interpreter(residual_externals(gen.config.dims))
        interp.run('initialize')
        x = np.array([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0], [3.0, 0.0]])
        u = np.array([[1.0], [0.0], [2.0]])
        y = np.ones((3, 3))
        yN = np.array([1.0, 1.0])
        for name, value in (('x', x), ('u', u), ('y', y), ('yN', yN)):
            interp.set(name, value)
        stage = np.hstack([x[:3], u]) - y
        expected = 0.5 * (np.sum(stage ** 2) + np.sum((x[3] - yN) ** 2))
        self.assertAlmostEqual(interp.run('getObjective'), expected)

    def test_runtime_linear_terms(self):
        config, objective = make_problem()
        objective.runtime_linear_terms = True
        gen = GaussNewtonGenerator(config, objective).setup()
        self.assertEqual(gen.array('objSlx').size, 2)
        self.assertEqual(gen.array('objSlu').size, 1)
        self.assertEqual(len(gen.routine('setStagef').parameters), 5)

        config, objective = make_problem(given_weight=False, variable_weighting=True)
        objective.runtime_linear_terms = True
        gen = GaussNewtonGenerator(config, objective).setup()
        self.assertEqual(gen.array('objSlx').size, 4 * 2)
        self.assertEqual(gen.array('objSlu').size, 3)

    def test_backward_sensitivities_store_linear_terms_in_workspace(self):
        gen = make_generator(sensitivity_mode='backward')
        self.assertEqual(gen.array('objSlx').storage, StorageClass.WORKSPACE)
        self.assertEqual(gen.array('objSlx').size, 4 * 2)

    def test_given_linear_term_inlined(self):
        config, objective = make_problem()
        objective.linear_term_x = np.array([1.0, -2.0])
        objective.linear_term_u = np.zeros(1)
        gen = GaussNewtonGenerator(config, objective).setup()
        interp = gen.interpreter()
        q, r = np.zeros(2), np.zeros(1)
        interp.run('setStagef', q, r, 0)
        np.testing.assert_allclose(q, [1.0, -2.0])
        np.testing.assert_allclose(r, [0.0])
        self.assertFalse(gen.planner.has('objSlx'))

    def test_given_linear_term_with_lifted_adjoint_rejected(self):
        modes = [dict(sensitivity_mode='backward'),
                 dict(sensitivity_mode='inexact', lifted_gradient_update=True)]
        for options in modes:
            with self.subTest(**{k: str(v) for k, v in options.items()}):
                config, objective = make_problem(**options)
                objective.linear_term_x = np.array([1.0, -2.0])
                with self.assertRaises(ConfigurationError) as ctx:
                    GaussNewtonGenerator(config, objective).setup()
                self.assertEqual(ctx.exception.quantity, 'linear_term_x')

    def test_configuration_errors(self):
        config, objective = make_problem()
        objective.stage_function = ResidualFunction("evaluateStageCost", 4)
        with self.assertRaises(ConfigurationError):
            GaussNewtonGenerator(config, objective).setup()

        config, objective = make_problem()
        objective.jacobian_x = np.eye(3)
        with self.assertRaises(ConfigurationError) as ctx:
            GaussNewtonGenerator(config, objective).setup()
        self.assertEqual(ctx.exception.quantity, 'jacobian_x')

        with self.assertRaises(ConfigurationError) as ctx:
            make_generator(variable_weighting=True)
        self.assertEqual(ctx.exception.quantity, 'objS')


if __name__ == '__main__':
    unittest.main()
