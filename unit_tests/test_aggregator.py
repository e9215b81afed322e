#!/usr/bin/env python3
"""
Unit test for the declaration/emission aggregator
"""

import unittest
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen import (ConfigurationError, Dimensions, ProblemConfiguration, NamedArray,
                         ProgramAggregator, StorageClass)
from rti_codegen.ast_nodes import ConstantMatrix
from rti_codegen.routine import Routine


class TestProgramAggregator(unittest.TestCase):

    def setUp(self):
        dims = Dimensions(N=2, NX=2, NU=1, NY=3, NYN=2)
        self.agg = ProgramAggregator(ProblemConfiguration(dims))
        self.a = NamedArray('a', 2, 1, StorageClass.WORKSPACE)

    def _writer(self, array, name='writeA'):
        routine = Routine(name)
        routine.assign(array.whole(), ConstantMatrix([1.0, 2.0]))
        return routine.seal()

    def test_declared_once(self):
        self.agg.declare(self.a)
        with self.assertRaises(ConfigurationError):
            self.agg.declare(NamedArray('a', 2, 1, StorageClass.WORKSPACE))
        with self.assertRaises(ConfigurationError):
            self.agg.declare(NamedArray('tmp', 2, 1, StorageClass.LOCAL))

    def test_routines_sealed_and_unique(self):
        with self.assertRaises(ConfigurationError):
            self.agg.add_routine(Routine('open'))
        self.agg.add_routine(Routine('done').seal())
        with self.assertRaises(ConfigurationError):
            self.agg.add_routine(Routine('done').seal())

    def test_undeclared_array(self):
        self.agg.add_routine(self._writer(self.a))
        with self.assertRaises(ConfigurationError) as ctx:
            self.agg.validate()
        self.assertEqual(ctx.exception.quantity, 'a')
        self.agg.declare(self.a)
        self.agg.validate()

    def test_same_name_different_array(self):
        self.agg.declare(self.a)
        self.agg.add_routine(self._writer(NamedArray('a', 2, 1, StorageClass.WORKSPACE)))
        with self.assertRaises(ConfigurationError):
            self.agg.validate()

    def test_foreign_local(self):
        self.agg.add_routine(self._writer(NamedArray('tmp', 2, 1, StorageClass.LOCAL)))
        with self.assertRaises(ConfigurationError):
            self.agg.validate()

    def test_unregistered_call(self):
        callee = Routine('callee').seal()
        caller = Routine('caller')
        caller.call(callee)
        self.agg.add_routine(caller.seal())
        with self.assertRaises(ConfigurationError):
            self.agg.validate()
        self.agg.add_routine(callee)
        self.agg.validate()

    def test_declarations_grouped(self):
        self.agg.declare(self.a)
        self.agg.declare(NamedArray('x', 3, 2, StorageClass.VARIABLE))
        groups = self.agg.declarations()
        self.assertEqual([a.name for a in groups[StorageClass.WORKSPACE]], ['a'])
        self.assertEqual([a.name for a in groups[StorageClass.VARIABLE]], ['x'])
        self.assertEqual(groups[StorageClass.CONSTANT], [])

    def test_emit(self):
        self.agg.declare(self.a)
        self.agg.add_routine(self._writer(self.a))
        self.agg.define('N', 2)
        code = self.agg.emit('demo')
        self.assertEqual(code.header_name, 'demo.h')
        self.assertIn('#define RTI_N 2', code.header)
        self.assertIn('void rti_writeA(void);', code.header)
        self.assertIn('rtiWorkspace.a[1] = 2.0000000000000000e+00;', code.source)


if __name__ == '__main__':
    unittest.main()
