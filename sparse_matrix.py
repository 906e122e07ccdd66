from numbers import Integral
from typing import (
    Any,
    Dict,
    Generic,
    Iterator,
    Mapping,
    Sequence,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from topology import CoordinateSpace

T = TypeVar("T")

Coordinates = Union[int, Sequence[int]]


class SparseMatrix(Generic[T]):
    """Container keyed by n-dimensional coordinates that stores only non-default entries.

    Coordinates are folded to a flat index with `CoordinateSpace`. A *row* is
    the block of entries sharing the first coordinate; inside a row an entry
    is addressed by its offset (for a 2-D matrix the offset is the second
    coordinate). Storing the default value removes the entry.
    """

    default: Any = None

    def __init__(self, dimensions: Sequence[int]) -> None:
        self.space = CoordinateSpace(dimensions)
        self.row_stride: int = self.space.size // self.space.dimensions[0]
        self._data: Dict[int, T] = {}
        self._rows: Dict[int, Set[int]] = {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(dimensions={self.dimensions}, entries={len(self)})"

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, coordinates: Coordinates) -> bool:
        return self._index(coordinates) in self._data

    @property
    def dimensions(self) -> Tuple[int, ...]:
        return self.space.dimensions

    @property
    def num_rows(self) -> int:
        return self.space.dimensions[0]

    def _index(self, coordinates: Coordinates) -> int:
        if isinstance(coordinates, Integral):
            return self.space.check_index(coordinates)
        return self.space.index_from_coordinates(coordinates)

    def _check_row(self, row: int) -> int:
        value = int(row)
        if value < 0 or value >= self.num_rows:
            raise IndexError(f"Row {value} out of range for {self.num_rows} rows.")
        return value

    def _coerce(self, value: Any) -> T:
        return value

    def _is_default(self, value: Any) -> bool:
        return value is None if self.default is None else value == self.default

    def _store(self, index: int, value: Any) -> None:
        row = index // self.row_stride
        if self._is_default(value):
            if self._data.pop(index, None) is not None:
                members = self._rows[row]
                members.discard(index)
                if not members:
                    del self._rows[row]
            return
        self._data[index] = self._coerce(value)
        self._rows.setdefault(row, set()).add(index)

    def get(self, coordinates: Coordinates) -> T:
        return self._data.get(self._index(coordinates), self.default)

    def set(self, coordinates: Coordinates, value: T) -> None:
        self._store(self._index(coordinates), value)

    def row(self, row: int) -> Dict[int, T]:
        """Return {offset: value} for the populated entries of `row`."""
        row = self._check_row(row)
        base = row * self.row_stride
        return {index - base: self._data[index] for index in sorted(self._rows.get(row, ()))}

    def clear_row(self, row: int) -> None:
        row = self._check_row(row)
        for index in self._rows.pop(row, ()):
            del self._data[index]

    def set_row(self, row: int, values: Mapping[int, T]) -> None:
        """Replace the contents of `row` with `values` ({offset: value})."""
        row = self._check_row(row)
        base = row * self.row_stride
        for offset in values:
            if offset < 0 or offset >= self.row_stride:
                raise IndexError(f"Offset {offset} out of range for row length {self.row_stride}.")
        self.clear_row(row)
        for offset, value in values.items():
            self._store(base + int(offset), value)

    def row_sum(self, row: int) -> Any:
        row = self._check_row(row)
        return sum((self._data[i] for i in self._rows.get(row, ())), self._zero())

    def row_max(self, row: int) -> Any:
        row = self._check_row(row)
        members = self._rows.get(row)
        if not members:
            return self.default
        return max(self._data[i] for i in members)

    def populated_rows(self) -> Iterator[int]:
        """Iterate over rows holding at least one entry, in ascending order."""
        return iter(sorted(self._rows))

    def items(self) -> Iterator[Tuple[int, T]]:
        """Iterate over (flat index, value) pairs in index order."""
        for index in sorted(self._data):
            yield index, self._data[index]

    def _zero(self) -> Any:
        return 0


class SparseDoubleMatrix(SparseMatrix[float]):
    """Sparse matrix of reals; absent entries read as 0.0."""

    default = 0.0

    def _coerce(self, value: Any) -> float:
        return float(value)

    def _zero(self) -> float:
        return 0.0


class SparseBinaryMatrix(SparseMatrix[int]):
    """Sparse matrix of 0/1 entries; only the 1s are stored."""

    default = 0

    def _coerce(self, value: Any) -> int:
        return int(value)

    def _store(self, index: int, value: Any) -> None:
        if value not in (0, 1, False, True):
            raise ValueError(f"Binary matrix accepts only 0 or 1, got {value!r}.")
        super()._store(index, value)


class SparseObjectMatrix(SparseMatrix[Any]):
    """Sparse matrix of arbitrary objects; absent entries read as None."""

    default = None

    def row_sum(self, row: int) -> Any:
        raise TypeError("Object matrices do not support row aggregation.")


class SparseMatrixView(Generic[T]):
    """Read-only window onto a `SparseMatrix`.

    Reads go to the live matrix, so the view always reflects its current
    contents. There is no way to write through it.
    """

    __slots__ = ("_matrix",)

    def __init__(self, matrix: SparseMatrix[T]) -> None:
        self._matrix = matrix

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._matrix!r})"

    def __len__(self) -> int:
        return len(self._matrix)

    def __contains__(self, coordinates: Coordinates) -> bool:
        return coordinates in self._matrix

    @property
    def dimensions(self) -> Tuple[int, ...]:
        return self._matrix.dimensions

    @property
    def num_rows(self) -> int:
        return self._matrix.num_rows

    def get(self, coordinates: Coordinates) -> T:
        return self._matrix.get(coordinates)

    def row(self, row: int) -> Dict[int, T]:
        return self._matrix.row(row)

    def row_sum(self, row: int) -> Any:
        return self._matrix.row_sum(row)

    def row_max(self, row: int) -> Any:
        return self._matrix.row_max(row)

    def populated_rows(self) -> Iterator[int]:
        return self._matrix.populated_rows()

    def items(self) -> Iterator[Tuple[int, T]]:
        return self._matrix.items()
