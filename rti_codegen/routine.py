"""
Generated routines: parameter list, locals, ordered statements and return value
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from .core import (NamedArray, ArrayView, IndexExpr, StorageClass, ElementKind,
                   DataType, ConfigurationError)
from .ast_nodes import (ASTNode, Assignment, ArrayAccess, Comment, FunctionCall,
                        IndexValue, Literal, Loop, MatrixAssignment, iter_nodes)


@dataclass(frozen=True)
class Parameter:
    array: NamedArray
    read_only: bool = False


class StatementList:
    """Ordered statements; also used for loop bodies"""

    def __init__(self):
        self.statements: List[ASTNode] = []

    def add_statement(self, node: ASTNode) -> ASTNode:
        self.statements.append(node)
        return node

    def add_statements(self, nodes: List[ASTNode]):
        for node in nodes:
            self.add_statement(node)

    def assign(self, target: ArrayView, value, op: str = '=') -> MatrixAssignment:
        return self.add_statement(MatrixAssignment(target, value, op))

    def comment(self, text: str):
        return self.add_statement(Comment(text))

    def call(self, routine: 'Routine', *args) -> FunctionCall:
        return self.add_statement(make_call(routine, *args))

    def loop(self, var: str, start: int, end: int, body: 'StatementList') -> Loop:
        return self.add_statement(Loop(var, start, end, body.statements))


class Routine(StatementList):
    """A function of the generated module.

    Created empty by the component that owns it, populated during one
    assembly pass and sealed afterwards. External routines (integrator, QP
    solver, symbolic functions) carry an optional verbatim ``body_source``.
    """

    def __init__(self, name: str, doc: Optional[str] = None,
                 external: bool = False, body_source: Optional[str] = None):
        super().__init__()
        self.name = name
        self.doc = doc
        self.external = external
        self.body_source = body_source
        self.parameters: List[Parameter] = []
        self.locals: Dict[str, NamedArray] = {}
        self.return_value: Optional[NamedArray] = None
        self.return_kind: Optional[ElementKind] = None
        self._sealed = False

    def __repr__(self):
        return f"Routine({self.name}, params={[p.array.name for p in self.parameters]})"

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _check_open(self):
        if self._sealed:
            raise RuntimeError(f"Routine {self.name} is sealed")

    def seal(self) -> 'Routine':
        self._sealed = True
        return self

    def add_parameter(self, array: NamedArray, read_only: bool = False) -> NamedArray:
        self._check_open()
        if array.storage != StorageClass.LOCAL:
            raise ConfigurationError(array.name, "routine parameters must be local")
        if any(p.array.name == array.name for p in self.parameters):
            raise ConfigurationError(array.name, f"duplicate parameter of {self.name}")
        self.parameters.append(Parameter(array, read_only))
        return array

    def add_local(self, array: NamedArray) -> NamedArray:
        self._check_open()
        if array.storage not in (StorageClass.LOCAL, StorageClass.CONSTANT):
            raise ConfigurationError(array.name, "routine locals must be local or constant")
        if array.name in self.locals and self.locals[array.name] is not array:
            raise ConfigurationError(array.name, f"duplicate local of {self.name}")
        self.locals[array.name] = array
        return array

    def set_return(self, array: NamedArray):
        self._check_open()
        if not array.is_scalar:
            raise ConfigurationError(array.name, "return value must be a scalar")
        self.add_local(array)
        self.return_value = array
        self.return_kind = array.kind

    def set_return_kind(self, kind: ElementKind):
        """Return type of an external routine, which has no body to hold a value"""
        self._check_open()
        if not self.external:
            raise ConfigurationError(self.name, "only external routines return without a value")
        self.return_kind = kind

    def add_statement(self, node: ASTNode) -> ASTNode:
        self._check_open()
        return super().add_statement(node)

    def referenced_arrays(self) -> List[NamedArray]:
        """Arrays read or written by the body, in order of first use"""
        seen: Dict[int, NamedArray] = {}
        for node in iter_nodes(self.statements):
            array = None
            if isinstance(node, ArrayView):
                array = node.array
            elif isinstance(node, ArrayAccess):
                array = node.array
            if array is not None and id(array) not in seen:
                seen[id(array)] = array
        return list(seen.values())

    def called_routines(self) -> List['Routine']:
        called: Dict[str, Routine] = {}
        for node in iter_nodes(self.statements):
            if isinstance(node, FunctionCall):
                called.setdefault(node.routine.name, node.routine)
        return list(called.values())


def make_call(routine: Routine, *args) -> FunctionCall:
    """Build a call, checking arity and argument sizes against the parameters"""
    if len(args) != len(routine.parameters):
        raise ConfigurationError(
            routine.name, f"expected {len(routine.parameters)} arguments, got {len(args)}")
    nodes = []
    for param, arg in zip(routine.parameters, args):
        if param.array.is_scalar:
            nodes.append(_scalar_argument(arg))
            continue
        if arg is None:
            nodes.append(Literal(0))
            continue
        if isinstance(arg, NamedArray):
            arg = arg.whole()
        if not isinstance(arg, ArrayView):
            raise ConfigurationError(param.array.name, f"array argument expected for {routine.name}")
        if arg.size != param.array.size:
            raise ConfigurationError(
                param.array.name,
                f"{routine.name} expects {param.array.size} elements, "
                f"got {arg.size} from {arg.array.name}")
        nodes.append(arg)
    return FunctionCall(routine, nodes)


def _scalar_argument(arg) -> ASTNode:
    if isinstance(arg, bool):
        return Literal(int(arg))
    if isinstance(arg, int):
        return Literal(arg)
    if isinstance(arg, IndexExpr):
        return IndexValue(arg) if not arg.is_constant else Literal(arg.offset)
    if isinstance(arg, ASTNode):
        return arg
    raise ConfigurationError(str(arg), "unsupported scalar argument")


def scalar(name: str, kind: ElementKind = ElementKind.REAL, doc: Optional[str] = None) -> NamedArray:
    return NamedArray(name, 1, 1, StorageClass.LOCAL, kind, DataType.SCALAR, doc=doc)


def scalar_set(target: NamedArray, value: Union[int, float, ASTNode], accumulate: bool = False) -> Assignment:
    if not isinstance(value, ASTNode):
        value = Literal(value)
    return Assignment(ArrayAccess(target), value, accumulate)
