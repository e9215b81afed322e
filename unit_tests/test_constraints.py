#!/usr/bin/env python3
"""
Unit test for the constraint assembler: box bounds, affine bounds, point constraints
"""

import unittest
import numpy as np
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen import (ConfigurationError, ConstraintSet, BoxBound, PathConstraint,
                         PointConstraint, StorageClass)
from rti_codegen.core import INFTY
from problem_fixtures import make_generator, residual_externals


class TestConstraintAssembler(unittest.TestCase):

    def setUp(self):
        self.N, self.NX, self.NU = 3, 2, 1

    def test_box_bound_size(self):
        for N, NX, NU in ((1, 1, 1), (3, 2, 1), (5, 3, 2)):
            for fixed in (True, False):
                with self.subTest(N=N, NX=NX, NU=NU, fixed=fixed):
                    gen = make_generator(N=N, NX=NX, NU=NU, initial_state_fixed=fixed)
                    for name in ('lbValues', 'ubValues', 'qpLb', 'qpUb'):
                        self.assertEqual(gen.array(name).size, N * NU + N * NX)

    def test_box_bound_stacking(self):
        constraints = ConstraintSet(
            control_bounds={0: BoxBound([-1.0], [1.0])},
            state_bounds={0: BoxBound([-7.0, -7.0], [7.0, 7.0]),
                          2: BoxBound(upper=[5.0, 6.0])},
        )
        gen = make_generator(constraints)
        lb = gen.array('lbValues').value.reshape(-1)
        ub = gen.array('ubValues').value.reshape(-1)
        # controls 0..N-1 first, then states 1..N; state bounds on node 0 are ignored
        self.assertEqual(lb[0], -1.0)
        self.assertEqual(ub[0], 1.0)
        self.assertEqual(lb[1], -INFTY)
        np.testing.assert_array_equal(ub[5:7], [5.0, 6.0])
        np.testing.assert_array_equal(lb[5:7], [-INFTY, -INFTY])
        self.assertNotIn(-7.0, lb)

    def test_box_bounds_out_of_horizon(self):
        with self.assertRaises(ConfigurationError):
            make_generator(ConstraintSet(control_bounds={3: BoxBound([-1.0], [1.0])}))
        with self.assertRaises(ConfigurationError):
            make_generator(ConstraintSet(state_bounds={4: BoxBound([-1.0, -1.0])}))
        with self.assertRaises(ConfigurationError):
            make_generator(ConstraintSet(control_bounds={0: BoxBound([-1.0, 0.0])}))

    def test_hardcoded_bounds_are_constants(self):
        constraints = ConstraintSet(control_bounds={n: BoxBound([-2.0], [2.0]) for n in range(3)})
        gen = make_generator(constraints)
        self.assertEqual(gen.array('lbValues').storage, StorageClass.CONSTANT)
        code = gen.generate()
        self.assertIn('static const real_t lbValues[9] = {', code.source)
        self.assertNotIn('lbValues', code.header)

    def test_runtime_bounds_set_in_initialize(self):
        constraints = ConstraintSet(control_bounds={n: BoxBound([-2.0], [2.0]) for n in range(3)})
        gen = make_generator(constraints, hardcode_constraints=False)
        self.assertEqual(gen.array('lbValues').storage, StorageClass.VARIABLE)
        code = gen.generate()
        self.assertIn('real_t lbValues[9];', code.header)
        self.assertNotIn('static const', code.source)

        interp = gen.interpreter()
        interp.run('initialize')
        lb = interp.get('lbValues').reshape(-1)
        np.testing.assert_array_equal(lb[:3], [-2.0, -2.0, -2.0])
        np.testing.assert_array_equal(lb[3:], np.full(6, -INFTY))

    def test_qp_relative_box_bounds(self):
        constraints = ConstraintSet(control_bounds={n: BoxBound([-2.0], [2.0]) for n in range(3)})
        gen = make_generator(constraints)
        interp = gen.interpreter()
        interp.run('initialize')
        interp.set('u', [[0.5], [1.0], [-1.0]])
        interp.run('evaluateConstraints')
        np.testing.assert_allclose(interp.get('qpLb').reshape(-1)[:3], [-2.5, -3.0, -1.0])
        np.testing.assert_allclose(interp.get('qpUb').reshape(-1)[:3], [1.5, 1.0, 3.0])

    def test_no_affine_constraints(self):
        gen = make_generator()
        assembler = gen.constraint_assembler
        self.assertEqual(assembler.qp_dim_h_tot, 0)
        self.assertEqual(assembler.qp_con_dim, [0, 0, 0, 0])
        self.assertEqual(gen.array('qpLbA').size, 1)
        self.assertFalse(gen.planner.has('lbAValues'))
        self.assertFalse(gen.planner.has('conValueIn'))
        self.assertEqual(gen.array('qpMu').size, 2 * 3 * (2 + 1))

    def test_point_constraint_dimension(self):
        width = (1 + self.NX + self.NU) * 2
        constraints = ConstraintSet(point_constraints={
            1: PointConstraint("pocNode1", width, [-1.0, -2.0], [1.0, 2.0])})
        gen = make_generator(constraints)
        assembler = gen.constraint_assembler
        self.assertEqual(assembler.point_dims, {1: 2})
        self.assertEqual(assembler.qp_con_dim, [0, 2, 0, 0])
        self.assertEqual(assembler.qp_dim_h, 2)
        self.assertEqual(assembler.qp_dim_hn, 0)
        self.assertEqual(gen.array('lbAValues').size, 2)
        self.assertEqual(gen.array('qpMu').size, 2 * 3 * 3 + 2 * 2)

    def test_terminal_point_constraint(self):
        constraints = ConstraintSet(point_constraints={
            3: PointConstraint("pocEnd", 1 + self.NX, [0.0], [0.0])})
        gen = make_generator(constraints)
        assembler = gen.constraint_assembler
        self.assertEqual(assembler.qp_dim_hn, 1)
        self.assertEqual(assembler.qp_dim_h_tot, 1)
        self.assertEqual(assembler.qp_con_dim, [0, 0, 0, 1])
        self.assertIsNone(assembler.pocEvHu)

    def test_ill_dividing_width_rejected(self):
        for node, width in ((1, 7), (3, 4), (0, -4)):
            with self.subTest(node=node, width=width):
                constraints = ConstraintSet(point_constraints={node: PointConstraint("poc", width)})
                with self.assertRaises(ConfigurationError) as ctx:
                    make_generator(constraints)
                self.assertEqual(ctx.exception.quantity, "poc")

    def test_zero_width_point_constraint_skipped(self):
        constraints = ConstraintSet(point_constraints={2: PointConstraint("pocEmpty", 0)})
        with self.assertLogs('rti_codegen.constraints', level='WARNING'):
            gen = make_generator(constraints)
        self.assertEqual(gen.constraint_assembler.qp_dim_h_tot, 0)
        self.assertNotIn('pocEmpty', [r.name for r in gen.routines])

    def test_affine_bound_size_and_order(self):
        width = (1 + self.NX + self.NU) * 2
        constraints = ConstraintSet(
            path=PathConstraint("evaluatePathConstraints", 1, [-1.0], [1.0]),
            point_constraints={
                1: PointConstraint("pocNode1", width, [-5.0, -6.0], [5.0, 6.0]),
                3: PointConstraint("pocEnd", 1 + self.NX, [-9.0], [9.0]),
            })
        gen = make_generator(constraints)
        assembler = gen.constraint_assembler
        self.assertEqual(assembler.qp_con_dim, [1, 3, 1, 1])
        self.assertEqual(assembler.qp_dim_h_tot, 3 * 1 + 2 + 1)
        lb = gen.array('lbAValues').value.reshape(-1)
        np.testing.assert_array_equal(lb, [-1.0, -1.0, -5.0, -6.0, -1.0, -9.0])
        for name in ('qpLbA', 'qpUbA', 'ubAValues'):
            self.assertEqual(gen.array(name).size, 6)
        self.assertIn('setStagePac', [r.name for r in gen.routines])

    def test_affine_evaluation(self):
        constraints = ConstraintSet(
            path=PathConstraint("evaluatePathConstraints", 1, [-1.0], [1.0],
                                jacobian_x=[[1.0, 0.0]], jacobian_u=[[0.0]]),
            point_constraints={3: PointConstraint("pocEnd", 1 + self.NX, [-9.0], [9.0])})
        gen = make_generator(constraints)

        def path(inputs, out):
            out[0] = inputs[0]

        def terminal(inputs, out):
            out[0] = inputs[0] + inputs[1]
            out[1:3] = [1.0, 1.0]

        interp = gen.interpreter({'evaluatePathConstraints': path, 'pocEnd': terminal})
        interp.run('initialize')
        np.testing.assert_array_equal(interp.get('pacEvHx'), np.tile([[1.0, 0.0]], (3, 1)))
        interp.set('x', [[0.5, 0.0], [0.25, 0.0], [-0.5, 0.0], [2.0, 3.0]])
        interp.run('evaluateConstraints')
        np.testing.assert_allclose(interp.get('pacEvH').reshape(-1), [0.5, 0.25, -0.5])
        np.testing.assert_allclose(interp.get('qpLbA').reshape(-1), [-1.5, -1.25, -0.5, -14.0])
        np.testing.assert_allclose(interp.get('qpUbA').reshape(-1), [0.5, 0.75, 1.5, 4.0])
        np.testing.assert_allclose(interp.get('pocEvHx').reshape(-1), [1.0, 1.0])

    def test_path_bounds_per_node(self):
        constraints = ConstraintSet(path=PathConstraint(
            "evaluatePathConstraints", 1, [-1.0, -2.0, -3.0], [1.0, 2.0, 3.0]))
        gen = make_generator(constraints)
        np.testing.assert_array_equal(gen.array('ubAValues').value.reshape(-1), [1.0, 2.0, 3.0])

        bad = ConstraintSet(path=PathConstraint("evaluatePathConstraints", 1, [-1.0, -2.0], [1.0, 2.0]))
        with self.assertRaises(ConfigurationError):
            make_generator(bad)

    def test_one_sided_path_constraint(self):
        constraints = ConstraintSet(path=PathConstraint("evaluatePathConstraints", 1, upper=[1.0]))
        gen = make_generator(constraints)
        np.testing.assert_array_equal(gen.array('lbAValues').value.reshape(-1), np.full(3, -INFTY))
        np.testing.assert_array_equal(gen.array('ubAValues').value.reshape(-1), np.ones(3))

        constraints = ConstraintSet(path=PathConstraint("evaluatePathConstraints", 1, lower=[-1.0]))
        gen = make_generator(constraints)
        np.testing.assert_array_equal(gen.array('ubAValues').value.reshape(-1), np.full(3, INFTY))


if __name__ == '__main__':
    unittest.main()
