import itertools
from typing import Iterable, Sequence, Tuple

import numpy as np

from parameters import ConfigurationError


class CoordinateSpace:
    """Row-major coordinate math over a fixed dimension vector.

    Folds an n-dimensional coordinate into a flat index using strides, and
    back. Every sparse container and every neighborhood calculation goes
    through this class so stride math lives in one place.
    """

    def __init__(self, dimensions: Sequence[int]) -> None:
        dims = tuple(int(d) for d in dimensions)
        if not dims:
            raise ConfigurationError("Dimensions must not be empty.")
        if any(d <= 0 for d in dims):
            raise ConfigurationError(f"Dimensions must be positive, got {dims}.")
        self.dimensions: Tuple[int, ...] = dims

        strides = [1] * len(dims)
        for i in range(len(dims) - 2, -1, -1):
            strides[i] = strides[i + 1] * dims[i + 1]
        self.strides: Tuple[int, ...] = tuple(strides)
        self.size: int = strides[0] * dims[0]

    def __repr__(self) -> str:
        return f"CoordinateSpace(dimensions={self.dimensions})"

    @property
    def num_dimensions(self) -> int:
        return len(self.dimensions)

    def check_index(self, index: int) -> int:
        value = int(index)
        if value < 0 or value >= self.size:
            raise IndexError(f"Index {value} out of range for {self.size} elements.")
        return value

    def index_from_coordinates(self, coordinates: Sequence[int]) -> int:
        """Return the flat index of `coordinates`."""
        if len(coordinates) != len(self.dimensions):
            raise IndexError(
                f"Expected {len(self.dimensions)} coordinates, got {len(coordinates)}."
            )
        index = 0
        for coordinate, dimension, stride in zip(coordinates, self.dimensions, self.strides):
            coordinate = int(coordinate)
            if coordinate < 0 or coordinate >= dimension:
                raise IndexError(
                    f"Coordinate {tuple(coordinates)} out of range for dimensions {self.dimensions}."
                )
            index += coordinate * stride
        return index

    def coordinates_from_index(self, index: int) -> Tuple[int, ...]:
        """Return the n-dimensional coordinates of a flat index."""
        remainder = self.check_index(index)
        coordinates = []
        for stride in self.strides:
            coordinates.append(remainder // stride)
            remainder %= stride
        return tuple(coordinates)

    def neighborhood(self, center: int, radius: int, wrap_around: bool = False) -> np.ndarray:
        """Return the sorted flat indices within Chebyshev distance `radius` of `center`.

        Without wrapping the hypercube is truncated at the edges; with
        wrapping, coordinates past an edge continue on the opposite side.
        """
        center_coordinates = self.coordinates_from_index(center)
        radius = int(radius)
        axes: list = []
        for coordinate, dimension in zip(center_coordinates, self.dimensions):
            if wrap_around:
                if 2 * radius + 1 >= dimension:
                    axes.append(range(dimension))
                else:
                    axes.append([(coordinate + offset) % dimension
                                 for offset in range(-radius, radius + 1)])
            else:
                axes.append(range(max(0, coordinate - radius),
                                  min(dimension - 1, coordinate + radius) + 1))

        coordinates = np.array(list(itertools.product(*axes)), dtype=np.int64)
        indices = coordinates @ np.array(self.strides, dtype=np.int64)
        return np.unique(indices)


class Topology:
    """Column space and input space of a pooling session."""

    def __init__(self, column_dimensions: Sequence[int], input_dimensions: Sequence[int]) -> None:
        self.columns = CoordinateSpace(column_dimensions)
        self.inputs = CoordinateSpace(input_dimensions)

    def __repr__(self) -> str:
        return (f"Topology(column_dimensions={self.column_dimensions}, "
                f"input_dimensions={self.input_dimensions})")

    @property
    def column_dimensions(self) -> Tuple[int, ...]:
        return self.columns.dimensions

    @property
    def input_dimensions(self) -> Tuple[int, ...]:
        return self.inputs.dimensions

    @property
    def num_columns(self) -> int:
        return self.columns.size

    @property
    def num_inputs(self) -> int:
        return self.inputs.size

    def map_column(self, column: int) -> int:
        """Map a column index to the input index at the centre of its receptive field.

        Column coordinates are scaled linearly onto input coordinates, shifted
        by half a column's width so columns sit in the middle of their slice.
        If the two spaces differ in rank the flat indices are scaled instead.
        """
        column = self.columns.check_index(column)
        if self.columns.num_dimensions != self.inputs.num_dimensions:
            position = int((column + 0.5) * self.num_inputs / self.num_columns)
            return min(position, self.num_inputs - 1)

        column_coordinates = self.columns.coordinates_from_index(column)
        input_coordinates = []
        for coordinate, column_dim, input_dim in zip(column_coordinates,
                                                     self.columns.dimensions,
                                                     self.inputs.dimensions):
            position = int(input_dim * (coordinate / column_dim) + 0.5 * input_dim / column_dim)
            input_coordinates.append(min(position, input_dim - 1))
        return self.inputs.index_from_coordinates(input_coordinates)

    def input_neighborhood(self, center_input: int, radius: int, wrap_around: bool = False) -> np.ndarray:
        return self.inputs.neighborhood(center_input, radius, wrap_around)

    def column_neighborhood(self, center_column: int, radius: int, wrap_around: bool = False) -> np.ndarray:
        return self.columns.neighborhood(center_column, radius, wrap_around)

    def columns_per_input(self) -> float:
        """Average number of columns per input, per dimension.

        Missing dimensions of the lower-rank space count as size 1.
        """
        num_dims = max(self.columns.num_dimensions, self.inputs.num_dimensions)
        column_dims = np.ones(num_dims)
        column_dims[:self.columns.num_dimensions] = self.columns.dimensions
        input_dims = np.ones(num_dims)
        input_dims[:self.inputs.num_dimensions] = self.inputs.dimensions
        return float(np.mean(column_dims / input_dims))

    def input_span(self, inputs: Iterable[int]) -> float:
        """Extent of a set of inputs (max - min + 1), averaged over input dimensions."""
        coordinates = [self.inputs.coordinates_from_index(i) for i in inputs]
        if not coordinates:
            return 0.0
        coords = np.array(coordinates)
        return float(np.mean(coords.max(axis=0) - coords.min(axis=0) + 1))
