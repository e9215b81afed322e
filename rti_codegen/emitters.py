"""C code emitter: unrolls matrix statements into scalar C with constants folded"""

from typing import Dict, List, Optional, Tuple

from .ast_nodes import *
from .config import ProblemConfiguration
from .core import (ArrayView, IndexExpr, NamedArray, StorageClass, ElementKind,
                   extract_sparsity_pattern)
from .routine import Routine

# monomial (tuple of C element accesses) -> coefficient; () is the constant term
Poly = Dict[Tuple[str, ...], float]


def _accumulate(result: Poly, poly: Poly, sign: float = 1.0):
    for mono, coef in poly.items():
        value = result.get(mono, 0.0) + sign * coef
        if value == 0.0:
            result.pop(mono, None)
        else:
            result[mono] = value


def _multiply(left: Poly, right: Poly) -> Poly:
    result: Poly = {}
    for lmono, lcoef in left.items():
        for rmono, rcoef in right.items():
            _accumulate(result, {lmono + rmono: lcoef * rcoef})
    return result


class CCodeEmitter(ASTVisitor):
    def __init__(self, config: ProblemConfiguration):
        self.config = config
        self.prefix = config.module_name
        self.indent_level = 0
        self.code_lines = []
        self._patterns: Dict[int, Dict[Tuple[int, int], float]] = {}
        self._cache: Dict[Tuple[int, int, int], Poly] = {}

    @property
    def type_prefix(self) -> str:
        return self.prefix[0].upper() + self.prefix[1:]

    @property
    def variables_instance(self) -> str:
        return f"{self.prefix}Variables"

    @property
    def workspace_instance(self) -> str:
        return f"{self.prefix}Workspace"

    def emit(self, ast: List[ASTNode]) -> str:
        self.code_lines = []
        self.indent_level = 0
        for node in ast:
            node.accept(self)
        return '\n'.join(self.code_lines)

    def _indent(self) -> str:
        return '    ' * self.indent_level

    def _add_line(self, line: str):
        if line:
            self.code_lines.append(self._indent() + line)
        else:
            self.code_lines.append('')

    # Names and numbers

    def function_name(self, routine: Routine) -> str:
        return f"{self.prefix}_{routine.name}"

    def array_name(self, array: NamedArray) -> str:
        if array.storage == StorageClass.VARIABLE:
            return f"{self.variables_instance}.{array.name}"
        if array.storage == StorageClass.WORKSPACE:
            return f"{self.workspace_instance}.{array.name}"
        return array.name

    def element(self, array: NamedArray, index: IndexExpr) -> str:
        if array.is_scalar:
            return self.array_name(array)
        return f"{self.array_name(array)}[{index}]"

    def number(self, value: float) -> str:
        if self.config.precision == 'float':
            return f"{value:.8e}f"
        return f"{value:.16e}"

    def c_type(self, kind: Optional[ElementKind]) -> str:
        if kind is None:
            return "void"
        if kind == ElementKind.REAL:
            return "real_t"
        return "int"

    # Expression nodes

    def visit_binary_op(self, node: BinaryOp) -> str:
        left = self._evaluate_node(node.left)
        right = self._evaluate_node(node.right)
        return f"({left} {node.op} {right})"

    def visit_unary_op(self, node: UnaryOp) -> str:
        operand = self._evaluate_node(node.operand)
        return f"{node.op}({operand})"

    def visit_array_access(self, node: ArrayAccess) -> str:
        if not node.indices:
            return self.array_name(node.array)
        if node.array.is_scalar:
            return self.array_name(node.array)
        indices = ''.join(f"[{str(idx)}]" for idx in node.indices)
        return f"{self.array_name(node.array)}{indices}"

    def visit_array_view(self, node: ArrayView) -> str:
        """Pointer to the first element of the view"""
        if node.offset.is_constant and node.offset.offset == 0:
            return self.array_name(node.array)
        return f"&{self.array_name(node.array)}[{node.offset}]"

    def visit_literal(self, node: Literal) -> str:
        if isinstance(node.value, float):
            return self.number(node.value)
        return str(node)

    def visit_index_value(self, node: IndexValue) -> str:
        return str(node.index)

    def visit_constant_matrix(self, node: ConstantMatrix):
        return self._pattern(node)

    def visit_matrix_product(self, node: MatrixProduct):
        raise TypeError("matrix expressions are emitted through their assignment")

    def visit_matrix_sum(self, node: MatrixSum):
        raise TypeError("matrix expressions are emitted through their assignment")

    def _pattern(self, node: ConstantMatrix) -> Dict[Tuple[int, int], float]:
        key = id(node)
        if key not in self._patterns:
            self._patterns[key] = extract_sparsity_pattern(node.value, threshold=0.0)
        return self._patterns[key]

    def _element_poly(self, expr, i: int, j: int) -> Poly:
        """Element (i, j) of a matrix expression as a polynomial in array elements"""
        if isinstance(expr, ArrayView):
            return {(self.element(expr.array, expr.index_of(i, j)),): 1.0}
        if isinstance(expr, ConstantMatrix):
            value = self._pattern(expr).get((i, j))
            return {(): value} if value is not None else {}

        key = (id(expr), i, j)
        if key in self._cache:
            return self._cache[key]
        result: Poly = {}
        if isinstance(expr, MatrixProduct):
            for k in range(expr.left.shape[1]):
                left = self._element_poly(expr.left, i, k)
                if not left:
                    continue
                right = self._element_poly(expr.right, k, j)
                if right:
                    _accumulate(result, _multiply(left, right))
        elif isinstance(expr, MatrixSum):
            for sign, term in expr.terms:
                _accumulate(result, self._element_poly(term, i, j), float(sign))
        else:
            raise TypeError(f"Unsupported matrix expression: {type(expr).__name__}")
        self._cache[key] = result
        return result

    def _render(self, poly: Poly) -> str:
        if not poly:
            return self.number(0.0)
        parts = []
        for mono, coef in poly.items():
            magnitude = abs(coef)
            if not mono:
                body = self.number(magnitude)
            elif magnitude == 1.0:
                body = '*'.join(mono)
            else:
                body = f"{self.number(magnitude)}*{'*'.join(mono)}"
            if not parts:
                parts.append(f"-{body}" if coef < 0 else body)
            else:
                parts.append(f"{'-' if coef < 0 else '+'} {body}")
        return ' '.join(parts)

    # Statements

    def visit_assignment(self, node: Assignment):
        target = self._evaluate_node(node.target)
        value = self._evaluate_node(node.value)
        op = "+=" if node.accumulate else "="
        self._add_line(f"{target} {op} {value};")

    def visit_matrix_assignment(self, node: MatrixAssignment):
        self._cache = {}
        self._patterns = {}
        rows, cols = node.target.shape
        for i in range(rows):
            for j in range(cols):
                poly = self._element_poly(node.value, i, j)
                if node.op != '=' and not poly:
                    continue
                target = self.element(node.target.array, node.target.index_of(i, j))
                self._add_line(f"{target} {node.op} {self._render(poly)};")

    def visit_loop(self, node: Loop):
        self._add_line(f"for (int {node.var} = {node.start}; {node.var} < {node.end}; {node.var} += {node.step}) {{")
        self.indent_level += 1
        for body_node in node.body:
            body_node.accept(self)
        self.indent_level -= 1
        self._add_line("}")

    def visit_comment(self, node: Comment):
        self._add_line(f"// {node.text}")

    def visit_conditional_block(self, node: ConditionalBlock):
        """Conditional blocks (if/else)"""
        condition = self._evaluate_node(node.condition)
        self._add_line(f"if ({condition}) {{")
        self.indent_level += 1

        for body_node in node.body:
            body_node.accept(self)

        if node.else_body:
            self.indent_level -= 1
            self._add_line("} else {")
            self.indent_level += 1
            for else_node in node.else_body:
                else_node.accept(self)

        self.indent_level -= 1
        self._add_line("}")

    def _call(self, node: FunctionCall) -> str:
        args = ', '.join(self._evaluate_node(arg) for arg in node.args)
        return f"{self.function_name(node.routine)}({args})"

    def visit_function_call(self, node: FunctionCall):
        self._add_line(f"{self._call(node)};")

    def visit_clear_storage(self, node: ClearStorage):
        instance = (self.variables_instance if node.storage == StorageClass.VARIABLE
                    else self.workspace_instance)
        self._add_line(f"memset(&{instance}, 0, sizeof( {instance} ));")

    def _evaluate_node(self, node) -> str:
        if isinstance(node, Literal):
            return self.visit_literal(node)
        elif isinstance(node, ArrayAccess):
            return self.visit_array_access(node)
        elif isinstance(node, ArrayView):
            return self.visit_array_view(node)
        elif isinstance(node, IndexValue):
            return self.visit_index_value(node)
        elif isinstance(node, BinaryOp):
            return self.visit_binary_op(node)
        elif isinstance(node, UnaryOp):
            return self.visit_unary_op(node)
        elif isinstance(node, FunctionCall):
            return self._call(node)
        else:
            raise TypeError(f"Cannot evaluate {type(node).__name__} as an expression")

    # Declarations

    def signature(self, routine: Routine) -> str:
        params = []
        for param in routine.parameters:
            array = param.array
            if array.is_scalar:
                params.append(f"{self.c_type(array.kind)} {array.name}")
            elif param.read_only:
                params.append(f"const {self.c_type(array.kind)}* const {array.name}")
            else:
                params.append(f"{self.c_type(array.kind)}* const {array.name}")
        return f"{self.c_type(routine.return_kind)} {self.function_name(routine)}({', '.join(params) or 'void'})"

    def declaration(self, array: NamedArray, qualifier: str = "") -> str:
        if array.is_scalar:
            return f"{qualifier}{self.c_type(array.kind)} {array.name};"
        return f"{qualifier}{self.c_type(array.kind)} {array.name}[{array.size}];"

    def constant_definition(self, array: NamedArray) -> List[str]:
        values = [self.number(float(v)) for v in array.value.reshape(-1)]
        lines = [f"static const {self.c_type(array.kind)} {array.name}[{array.size}] = {{"]
        for start in range(0, len(values), 4):
            lines.append('    ' + ', '.join(values[start:start + 4]) + ',')
        lines[-1] = lines[-1].rstrip(',')
        lines.append("};")
        return lines

    def emit_routine(self, routine: Routine) -> str:
        """Function definition; empty for an external routine without a body"""
        self.code_lines = []
        self.indent_level = 0
        if routine.external and routine.body_source is None:
            return ''
        if routine.doc:
            self._add_line(f"/** {routine.doc} */")
        self._add_line(self.signature(routine))
        self._add_line("{")
        self.indent_level += 1
        if routine.external:
            for line in routine.body_source.strip('\n').splitlines():
                self._add_line(line.rstrip())
        else:
            for array in routine.locals.values():
                self._add_line(self.declaration(array))
            if routine.locals:
                self._add_line("")
            for node in routine.statements:
                node.accept(self)
            if routine.return_value is not None:
                self._add_line(f"return {routine.return_value.name};")
        self.indent_level -= 1
        self._add_line("}")
        return '\n'.join(self.code_lines)

    def emit_struct(self, name: str, arrays: List[NamedArray]) -> List[str]:
        lines = [f"typedef struct {self.type_prefix}{name}_", "{"]
        for array in arrays:
            line = '    ' + self.declaration(array)
            if array.doc:
                line += f" /**< {array.doc} */"
            lines.append(line)
        lines.append(f"}} {self.type_prefix}{name};")
        return lines

    def emit_header(self, defines: Dict[str, int], groups: Dict[StorageClass, List[NamedArray]],
                    routines: List[Routine], guard: str) -> str:
        lines = [f"#ifndef {guard}", f"#define {guard}", ""]
        macro = self.prefix.upper()
        for name, value in defines.items():
            lines.append(f"#define {macro}_{name} {value}")
        lines += ["", f"typedef {self.config.precision} real_t;", ""]
        lines += self.emit_struct("Variables", groups[StorageClass.VARIABLE])
        lines.append("")
        lines += self.emit_struct("Workspace", groups[StorageClass.WORKSPACE])
        lines += ["",
                  f"extern {self.type_prefix}Variables {self.variables_instance};",
                  f"extern {self.type_prefix}Workspace {self.workspace_instance};",
                  ""]
        for routine in routines:
            if routine.doc:
                lines.append(f"/** {routine.doc} */")
            lines.append(f"{self.signature(routine)};")
        lines += ["", f"#endif /* {guard} */", ""]
        return '\n'.join(lines)

    def emit_source(self, header_name: str, constants: List[NamedArray], routines: List[Routine]) -> str:
        lines = [f'#include "{header_name}"', "#include <math.h>", "#include <string.h>", "",
                 f"{self.type_prefix}Variables {self.variables_instance};",
                 f"{self.type_prefix}Workspace {self.workspace_instance};", ""]
        for array in constants:
            lines += self.constant_definition(array)
            lines.append("")
        for routine in routines:
            body = self.emit_routine(routine)
            if body:
                lines += [body, ""]
        return '\n'.join(lines)
