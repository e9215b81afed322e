"""Statement and expression nodes of generated routines"""

from dataclasses import dataclass, field
from typing import List, Optional, Union, Tuple, TYPE_CHECKING
from abc import ABC, abstractmethod

import numpy as np

from .core import ArrayView, NamedArray, IndexExpr, StorageClass, ConfigurationError

if TYPE_CHECKING:
    from .routine import Routine


class ASTNode(ABC):
    @abstractmethod
    def accept(self, visitor):
        pass


@dataclass
class BinaryOp(ASTNode):
    op: str
    left: ASTNode
    right: ASTNode

    def accept(self, visitor):
        return visitor.visit_binary_op(self)


@dataclass
class UnaryOp(ASTNode):
    op: str
    operand: ASTNode

    def accept(self, visitor):
        return visitor.visit_unary_op(self)


@dataclass
class ArrayAccess(ASTNode):
    array: NamedArray
    indices: List[Union[int, IndexExpr]] = field(default_factory=list)

    def accept(self, visitor):
        return visitor.visit_array_access(self)


@dataclass
class Assignment(ASTNode):
    target: ASTNode
    value: ASTNode
    accumulate: bool = False

    def accept(self, visitor):
        return visitor.visit_assignment(self)


@dataclass
class Loop(ASTNode):
    var: str
    start: Union[int, str]
    end: Union[int, str]
    body: List[ASTNode]
    step: int = 1

    def accept(self, visitor):
        return visitor.visit_loop(self)


@dataclass
class Literal(ASTNode):
    value: Union[int, float, str]

    def accept(self, visitor):
        return visitor.visit_literal(self)

    def __str__(self):
        return str(self.value)


@dataclass
class IndexValue(ASTNode):
    """Value of a loop or parameter index"""
    index: IndexExpr

    def accept(self, visitor):
        return visitor.visit_index_value(self)


@dataclass
class Comment(ASTNode):
    text: str

    def accept(self, visitor):
        return visitor.visit_comment(self)


@dataclass
class ConditionalBlock(ASTNode):
    condition: ASTNode
    body: List[ASTNode]
    else_body: Optional[List[ASTNode]] = None

    def accept(self, visitor):
        return visitor.visit_conditional_block(self)


@dataclass(eq=False)
class ConstantMatrix(ASTNode):
    """Compile-time matrix inlined into the expressions that read it"""
    value: np.ndarray

    def __post_init__(self):
        value = np.atleast_2d(np.array(self.value, dtype=float))
        if value.shape[0] == 1 and np.ndim(self.value) == 1:
            value = value.T
        value.setflags(write=False)
        self.value = value

    @property
    def shape(self) -> Tuple[int, int]:
        return self.value.shape

    @property
    def T(self) -> 'ConstantMatrix':
        return ConstantMatrix(self.value.T)

    def accept(self, visitor):
        return visitor.visit_constant_matrix(self)


@dataclass(eq=False)
class MatrixProduct(ASTNode):
    left: 'MatrixExpr'
    right: 'MatrixExpr'

    def __post_init__(self):
        if self.left.shape[1] != self.right.shape[0]:
            raise ConfigurationError(
                _describe(self.left),
                f"cannot multiply {self.left.shape} by {self.right.shape} ({_describe(self.right)})")

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.left.shape[0], self.right.shape[1])

    def accept(self, visitor):
        return visitor.visit_matrix_product(self)


@dataclass(eq=False)
class MatrixSum(ASTNode):
    """Signed sum of equally shaped operands"""
    terms: List[Tuple[int, 'MatrixExpr']]

    def __post_init__(self):
        shape = self.terms[0][1].shape
        for _, term in self.terms[1:]:
            if term.shape != shape:
                raise ConfigurationError(
                    _describe(term), f"shape {term.shape} does not match {shape}")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.terms[0][1].shape

    def accept(self, visitor):
        return visitor.visit_matrix_sum(self)


MatrixExpr = Union[ArrayView, ConstantMatrix, MatrixProduct, MatrixSum]


def difference(left: 'MatrixExpr', right: 'MatrixExpr') -> MatrixSum:
    return MatrixSum([(1, left), (-1, right)])


def _describe(expr) -> str:
    if isinstance(expr, ArrayView):
        return expr.array.name
    if isinstance(expr, ConstantMatrix):
        return "constant"
    return type(expr).__name__


@dataclass(eq=False)
class MatrixAssignment(ASTNode):
    """Element-wise ``target op value``; op is '=', '+=' or '-='"""
    target: ArrayView
    value: 'MatrixExpr'
    op: str = '='

    def __post_init__(self):
        if self.op not in ('=', '+=', '-='):
            raise ValueError(f"Unknown assignment operator: {self.op}")
        if self.target.array.storage == StorageClass.CONSTANT:
            raise ConfigurationError(self.target.array.name, "constant arrays cannot be assigned")
        if self.target.shape != self.value.shape:
            raise ConfigurationError(
                self.target.array.name,
                f"shape mismatch: target {self.target.shape}, value {self.value.shape} "
                f"({_describe(self.value)})")

    def accept(self, visitor):
        return visitor.visit_matrix_assignment(self)


@dataclass(eq=False)
class FunctionCall(ASTNode):
    routine: 'Routine'
    args: List[ASTNode]

    def accept(self, visitor):
        return visitor.visit_function_call(self)


@dataclass
class ClearStorage(ASTNode):
    """Zero every array of a module-level storage class"""
    storage: StorageClass

    def accept(self, visitor):
        return visitor.visit_clear_storage(self)


def iter_nodes(nodes):
    """Depth-first walk over statements and the expressions they hold"""
    for node in nodes:
        yield node
        if isinstance(node, Loop):
            yield from iter_nodes(node.body)
        elif isinstance(node, ConditionalBlock):
            yield from iter_nodes([node.condition])
            yield from iter_nodes(node.body)
            yield from iter_nodes(node.else_body or [])
        elif isinstance(node, Assignment):
            yield from iter_nodes([node.target, node.value])
        elif isinstance(node, BinaryOp):
            yield from iter_nodes([node.left, node.right])
        elif isinstance(node, UnaryOp):
            yield from iter_nodes([node.operand])
        elif isinstance(node, MatrixAssignment):
            yield from iter_nodes([node.target, node.value])
        elif isinstance(node, MatrixProduct):
            yield from iter_nodes([node.left, node.right])
        elif isinstance(node, MatrixSum):
            yield from iter_nodes([term for _, term in node.terms])
        elif isinstance(node, FunctionCall):
            yield from iter_nodes(node.args)


class ASTVisitor(ABC):
    @abstractmethod
    def visit_binary_op(self, node: BinaryOp): pass

    @abstractmethod
    def visit_unary_op(self, node: UnaryOp): pass

    @abstractmethod
    def visit_array_access(self, node: ArrayAccess): pass

    @abstractmethod
    def visit_array_view(self, node: ArrayView): pass

    @abstractmethod
    def visit_assignment(self, node: Assignment): pass

    @abstractmethod
    def visit_loop(self, node: Loop): pass

    @abstractmethod
    def visit_literal(self, node: Literal): pass

    @abstractmethod
    def visit_comment(self, node: Comment): pass

    @abstractmethod
    def visit_index_value(self, node: IndexValue): pass

    @abstractmethod
    def visit_conditional_block(self, node: ConditionalBlock): pass

    @abstractmethod
    def visit_constant_matrix(self, node: ConstantMatrix): pass

    @abstractmethod
    def visit_matrix_product(self, node: MatrixProduct): pass

    @abstractmethod
    def visit_matrix_sum(self, node: MatrixSum): pass

    @abstractmethod
    def visit_matrix_assignment(self, node: MatrixAssignment): pass

    @abstractmethod
    def visit_function_call(self, node: FunctionCall): pass

    @abstractmethod
    def visit_clear_storage(self, node: ClearStorage): pass
