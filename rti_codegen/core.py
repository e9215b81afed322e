from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple, Union
from enum import Enum
import numpy as np


# Value substituted for a missing bound
INFTY = 1.0e12


class ConfigurationError(ValueError):
    """Generation-time error: the problem cannot be assembled as described."""

    def __init__(self, quantity: str, message: str):
        self.quantity = quantity
        super().__init__(f"{quantity}: {message}")


class DataType(Enum):
    SCALAR = "scalar"
    VECTOR = "vector"
    MATRIX = "matrix"


class ElementKind(Enum):
    REAL = "real"
    INT = "int"
    BOOL = "bool"


class StorageClass(Enum):
    VARIABLE = "variables"    # supplied by the caller every cycle
    WORKSPACE = "workspace"   # persists across calls, owned by the generated module
    LOCAL = "local"           # function scope
    CONSTANT = "constant"     # baked into the generated binary


@dataclass
class IndexExpr:
    base: str
    offset: int = 0
    scale: int = 1

    def __str__(self):
        if self.scale == 0 or not self.base:
            return str(self.offset)
        if self.offset == 0 and self.scale == 1:
            return self.base
        elif self.scale == 1:
            if self.offset > 0:
                return f"{self.base}+{self.offset}"
            else:
                return f"{self.base}{self.offset}"
        else:
            if self.offset == 0:
                return f"{self.scale}*{self.base}"
            elif self.offset > 0:
                return f"{self.scale}*{self.base}+{self.offset}"
            else:
                return f"{self.scale}*{self.base}{self.offset}"

    def __repr__(self):
        return str(self)

    def __add__(self, other: int) -> 'IndexExpr':
        return IndexExpr(self.base, self.offset + int(other), self.scale)

    __radd__ = __add__

    def __mul__(self, factor: int) -> 'IndexExpr':
        return IndexExpr(self.base, self.offset * int(factor), self.scale * int(factor))

    __rmul__ = __mul__

    @property
    def is_constant(self) -> bool:
        return self.scale == 0 or not self.base

    def substitute(self, value: int) -> int:
        if self.is_constant:
            return self.offset
        return self.scale * value + self.offset

    @staticmethod
    def constant(value: int) -> 'IndexExpr':
        return IndexExpr("", offset=value, scale=0)


Index = Union[int, IndexExpr]


def as_index(value: Index) -> IndexExpr:
    if isinstance(value, IndexExpr):
        return value
    return IndexExpr.constant(int(value))


@dataclass(frozen=True, eq=False)
class NamedArray:
    """A numeric quantity of the generated module.

    Storage class and given-ness are fixed at creation. ``value`` holds the
    compile-time content of a given array and is stored read-only.
    """
    name: str
    rows: int
    cols: int = 1
    storage: StorageClass = StorageClass.WORKSPACE
    kind: ElementKind = ElementKind.REAL
    dtype: Optional[DataType] = None
    value: Optional[np.ndarray] = None
    doc: Optional[str] = None

    def __post_init__(self):
        if self.rows <= 0 or self.cols <= 0:
            raise ConfigurationError(self.name, f"invalid shape {self.rows}x{self.cols}")
        if self.dtype is None:
            if self.cols == 1:
                dtype = DataType.VECTOR
            else:
                dtype = DataType.MATRIX
            object.__setattr__(self, 'dtype', dtype)
        elif self.dtype == DataType.SCALAR and (self.rows, self.cols) != (1, 1):
            raise ConfigurationError(self.name, "a scalar must be 1x1")
        if self.value is not None:
            value = np.array(self.value, dtype=float).reshape(self.rows, self.cols)
            value.setflags(write=False)
            object.__setattr__(self, 'value', value)

    @property
    def is_given(self) -> bool:
        return self.value is not None

    @property
    def is_scalar(self) -> bool:
        return self.dtype == DataType.SCALAR

    @property
    def size(self) -> int:
        return self.rows * self.cols

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    def whole(self) -> 'ArrayView':
        return ArrayView(self, IndexExpr.constant(0), self.rows, self.cols, self.cols)

    def flat(self) -> 'ArrayView':
        """The array as one column vector (row-major order)."""
        return self.vector(0, self.size)

    def vector(self, start: Index, length: int) -> 'ArrayView':
        """Column view of ``length`` consecutive elements."""
        return ArrayView(self, as_index(start), length, 1, 1)

    def rows_block(self, start: Index, count: int = 1) -> 'ArrayView':
        """``count`` full rows starting at row ``start``."""
        return ArrayView(self, as_index(start) * self.cols, count, self.cols, self.cols)

    def row(self, index: Index) -> 'ArrayView':
        """Row ``index`` as a column vector."""
        return self.vector(as_index(index) * self.cols, self.cols)

    def block(self, row: int, rows: int, col: int, cols: int) -> 'ArrayView':
        return ArrayView(self, IndexExpr.constant(row * self.cols + col), rows, cols, self.cols)

    def __repr__(self):
        return (f"NamedArray({self.name}, {self.rows}x{self.cols}, "
                f"{self.storage.value}, given={self.is_given})")


@dataclass
class ArrayView:
    """Strided sub-block of a NamedArray addressed by a (symbolic) flat offset."""
    array: NamedArray
    offset: IndexExpr
    rows: int
    cols: int
    stride: int
    transposed: bool = False

    @property
    def shape(self) -> Tuple[int, int]:
        if self.transposed:
            return (self.cols, self.rows)
        return (self.rows, self.cols)

    @property
    def size(self) -> int:
        return self.rows * self.cols

    @property
    def T(self) -> 'ArrayView':
        return ArrayView(self.array, self.offset, self.rows, self.cols, self.stride,
                         not self.transposed)

    def index_of(self, i: int, j: int) -> IndexExpr:
        if self.transposed:
            i, j = j, i
        return self.offset + (i * self.stride + j)

    def accept(self, visitor):
        return visitor.visit_array_view(self)


def extract_sparsity_pattern(matrix: np.ndarray, threshold: float = 1e-10) -> Dict[Tuple[int, int], float]:
    pattern = {}

    if matrix.ndim == 1:
        # Handle 1D arrays (column vectors)
        for i in range(matrix.shape[0]):
            if abs(matrix[i]) > threshold:
                pattern[(i, 0)] = float(matrix[i])
    else:
        # Handle 2D matrices
        rows, cols = matrix.shape
        for i in range(rows):
            for j in range(cols):
                if abs(matrix[i, j]) > threshold:
                    pattern[(i, j)] = float(matrix[i, j])
    return pattern


def get_sparsity_info(matrix: np.ndarray, threshold: float = 1e-10) -> Dict[str, Any]:
    total_elements = matrix.size
    nonzero_elements = int(np.sum(np.abs(matrix) > threshold))
    sparsity_ratio = 1.0 - (nonzero_elements / total_elements) if total_elements else 1.0

    return {
        'total_elements': total_elements,
        'nonzero_elements': nonzero_elements,
        'sparsity_ratio': sparsity_ratio,
        'shape': matrix.shape,
        'pattern': extract_sparsity_pattern(matrix, threshold)
    }
