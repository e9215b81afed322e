"""
Reference interpreter: executes generated routines on numpy buffers.

Used to validate the assembled equations numerically without compiling the
emitted C. External routines (integrator, QP solver, residual functions) are
supplied as Python callables receiving numpy views for pointer parameters.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from .ast_nodes import *
from .core import ArrayView, NamedArray, StorageClass, ElementKind
from .routine import Routine

logger = logging.getLogger(__name__)


class Frame:
    def __init__(self):
        self.buffers: Dict[str, Optional[np.ndarray]] = {}
        self.indices: Dict[str, int] = {}


class ASTInterpreter(ASTVisitor):
    def __init__(self, arrays: Iterable[NamedArray], routines: Iterable[Routine],
                 externals: Optional[Dict[str, Callable]] = None):
        self.arrays = {array.name: array for array in arrays}
        self.routines = {routine.name: routine for routine in routines}
        self.externals = dict(externals or {})
        self.memory: Dict[str, np.ndarray] = {}
        for array in self.arrays.values():
            if array.is_given:
                self.memory[array.name] = np.array(array.value, dtype=float).reshape(-1)
            else:
                self.memory[array.name] = np.zeros(array.size)
        self.frames: List[Frame] = []

    # Module memory

    def get(self, name: str) -> np.ndarray:
        array = self.arrays[name]
        return self.memory[name].reshape(array.rows, array.cols).copy()

    def set(self, name: str, value):
        array = self.arrays[name]
        value = np.asarray(value, dtype=float).reshape(-1)
        if value.size != array.size:
            raise ValueError(f"{name}: expected {array.size} elements, got {value.size}")
        if array.storage == StorageClass.CONSTANT:
            raise ValueError(f"{name}: constant arrays are read-only")
        self.memory[name][:] = value

    def run(self, name: str, *args):
        """Call a routine by name; pointer arguments are numpy arrays (or None)"""
        routine = self.routines[name]
        values = []
        for param, arg in zip(routine.parameters, args):
            if param.array.is_scalar or arg is None:
                values.append(arg)
            else:
                values.append(np.asarray(arg, dtype=float).reshape(-1))
        return self._invoke(routine, values)

    # Execution

    @property
    def frame(self) -> Frame:
        return self.frames[-1]

    def _invoke(self, routine: Routine, args: list):
        if routine.external:
            function = self.externals.get(routine.name)
            if function is None:
                raise KeyError(f"No implementation for external routine {routine.name}")
            return function(*args)
        frame = Frame()
        for param, arg in zip(routine.parameters, args):
            if param.array.is_scalar:
                frame.buffers[param.array.name] = np.array([float(arg)])
            else:
                frame.buffers[param.array.name] = arg
        for array in routine.locals.values():
            if array.storage == StorageClass.CONSTANT:
                frame.buffers[array.name] = np.array(array.value, dtype=float).reshape(-1)
            else:
                frame.buffers[array.name] = np.zeros(array.size)
        self.frames.append(frame)
        try:
            for node in routine.statements:
                node.accept(self)
            if routine.return_value is None:
                return None
            value = frame.buffers[routine.return_value.name][0]
            return int(value) if routine.return_kind == ElementKind.INT else float(value)
        finally:
            self.frames.pop()

    def _buffer(self, array: NamedArray) -> Optional[np.ndarray]:
        if array.storage == StorageClass.LOCAL:
            return self.frame.buffers[array.name]
        return self.memory[array.name]

    def _index(self, index) -> int:
        if isinstance(index, int):
            return index
        if index.is_constant:
            return index.offset
        if index.base in self.frame.indices:
            value = self.frame.indices[index.base]
        else:
            value = int(self.frame.buffers[index.base][0])
        return index.substitute(value)

    def _matrix(self, expr) -> np.ndarray:
        if isinstance(expr, ArrayView):
            buffer = self._buffer(expr.array)
            rows, cols = expr.shape
            result = np.empty((rows, cols))
            for i in range(rows):
                for j in range(cols):
                    result[i, j] = buffer[self._index(expr.index_of(i, j))]
            return result
        if isinstance(expr, ConstantMatrix):
            return expr.value
        if isinstance(expr, MatrixProduct):
            return self._matrix(expr.left) @ self._matrix(expr.right)
        if isinstance(expr, MatrixSum):
            result = np.zeros(expr.shape)
            for sign, term in expr.terms:
                result += sign * self._matrix(term)
            return result
        raise TypeError(f"Unsupported matrix expression: {type(expr).__name__}")

    def _evaluate(self, node):
        return node.accept(self)

    def visit_binary_op(self, node: BinaryOp):
        left = self._evaluate(node.left)
        right = self._evaluate(node.right)
        if node.op == '*':
            return left * right
        elif node.op == '==':
            return int(left == right)
        elif node.op == '!=':
            return int(left != right)
        elif node.op == '&&':
            return int(bool(left) and bool(right))
        raise ValueError(f"Unknown binary operator: {node.op}")

    def visit_unary_op(self, node: UnaryOp):
        operand = self._evaluate(node.operand)
        if node.op == 'fabs':
            return abs(operand)
        raise ValueError(f"Unknown unary operator: {node.op}")

    def visit_array_access(self, node: ArrayAccess):
        buffer = self._buffer(node.array)
        if node.array.is_scalar:
            return buffer[0]
        if not node.indices:
            # pointer test against NULL
            return 0 if buffer is None else 1
        return buffer[self._index(node.indices[0])]

    def visit_array_view(self, node: ArrayView):
        """Pointer semantics: contiguous memory from the view's first element"""
        start = self._index(node.offset)
        return self._buffer(node.array)[start:start + node.size]

    def visit_literal(self, node: Literal):
        return node.value

    def visit_index_value(self, node: IndexValue):
        return self._index(node.index)

    def visit_constant_matrix(self, node: ConstantMatrix):
        return node.value

    def visit_matrix_product(self, node: MatrixProduct):
        return self._matrix(node)

    def visit_matrix_sum(self, node: MatrixSum):
        return self._matrix(node)

    def visit_assignment(self, node: Assignment):
        target = node.target
        buffer = self._buffer(target.array)
        position = 0 if target.array.is_scalar or not target.indices else self._index(target.indices[0])
        value = self._evaluate(node.value)
        if node.accumulate:
            buffer[position] += value
        else:
            buffer[position] = value

    def visit_matrix_assignment(self, node: MatrixAssignment):
        value = self._matrix(node.value)
        target = node.target
        buffer = self._buffer(target.array)
        rows, cols = target.shape
        for i in range(rows):
            for j in range(cols):
                position = self._index(target.index_of(i, j))
                if node.op == '=':
                    buffer[position] = value[i, j]
                elif node.op == '+=':
                    buffer[position] += value[i, j]
                else:
                    buffer[position] -= value[i, j]

    def visit_loop(self, node: Loop):
        indices = self.frame.indices
        for value in range(node.start, node.end, node.step):
            indices[node.var] = value
            for body_node in node.body:
                body_node.accept(self)
        indices.pop(node.var, None)

    def visit_comment(self, node: Comment):
        pass

    def visit_conditional_block(self, node: ConditionalBlock):
        if self._evaluate(node.condition):
            for body_node in node.body:
                body_node.accept(self)
        elif node.else_body:
            for else_node in node.else_body:
                else_node.accept(self)

    def visit_function_call(self, node: FunctionCall):
        args = []
        for param, arg in zip(node.routine.parameters, node.args):
            if not param.array.is_scalar and isinstance(arg, Literal):
                args.append(None)
            else:
                args.append(self._evaluate(arg))
        return self._invoke(node.routine, args)

    def visit_clear_storage(self, node: ClearStorage):
        for name, array in self.arrays.items():
            if array.storage == node.storage:
                self.memory[name][:] = 0.0
        logger.debug(f"Cleared {node.storage.value}")
