"""Memory and state of a spatial pooling session.

The lattice holds every structure the pooling procedures act on: potential
pools, permanences, the connected synapses derived from them, tie-breakers,
duty cycles, boost factors and the inhibition radius. The procedures
themselves live in `spatial_pooler`, so state and functions stay separate.

Matrices are indexed [column, input] on flattened column and input spaces,
irrespective of the topology of either.
"""
import logging
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Set

import numpy as np

from parameters import (
    DensityMode,
    SpatialPoolerParameters,
    check_parameters,
    parameter_dump,
)
from sparse_matrix import (
    SparseBinaryMatrix,
    SparseDoubleMatrix,
    SparseMatrixView,
    SparseObjectMatrix,
)
from topology import Topology

logger = logging.getLogger("htm.spatial_lattice")


class SpatialLattice:
    """State of one pooling session, created from a validated configuration."""

    version: float = 1.0

    def __init__(self, parameters: Optional[SpatialPoolerParameters] = None) -> None:
        self.parameters: SpatialPoolerParameters = check_parameters(
            parameters if parameters is not None else SpatialPoolerParameters()
        )
        p = self.parameters
        self.topology = Topology(p.column_dimensions, p.input_dimensions)
        self.num_columns: int = self.topology.num_columns
        self.num_inputs: int = self.topology.num_inputs
        self.density_mode: DensityMode = p.density_mode

        synapse_dims = (self.num_columns, self.num_inputs)
        # column -> frozenset of input indices, fixed once initialized
        self._potential_pools = SparseObjectMatrix((self.num_columns,))
        self._permanences = SparseDoubleMatrix(synapse_dims)
        self._tie_breaker = SparseDoubleMatrix(synapse_dims)
        self._connected_synapses = SparseBinaryMatrix(synapse_dims)
        self._connected_counts = np.zeros(self.num_columns, dtype=np.int64)

        self.inhibition_radius: int = 0
        self.overlap_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.active_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.min_overlap_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.min_active_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.boost_factors = np.ones(self.num_columns, dtype=np.float64)

        self.iteration_num: int = 0
        self.iteration_learn_num: int = 0

        if p.sp_verbosity > 0:
            self.print_parameters()

    def __repr__(self) -> str:
        return (f"SpatialLattice(columns={self.num_columns}, inputs={self.num_inputs}, "
                f"inhibition_radius={self.inhibition_radius})")

    # ----- Read accessors -----

    # Matrices are handed out as views, writes go through the accessors below.

    @property
    def potential_pools(self) -> SparseMatrixView:
        return SparseMatrixView(self._potential_pools)

    @property
    def permanences(self) -> SparseMatrixView:
        return SparseMatrixView(self._permanences)

    @property
    def tie_breaker(self) -> SparseMatrixView:
        return SparseMatrixView(self._tie_breaker)

    @property
    def connected_synapses(self) -> SparseMatrixView:
        """Connected synapses, derived from the permanences."""
        return SparseMatrixView(self._connected_synapses)

    @property
    def connected_counts(self) -> np.ndarray:
        """Number of connected synapses per column. Read only."""
        view = self._connected_counts.view()
        view.flags.writeable = False
        return view

    def _check_column(self, column: int) -> int:
        value = int(column)
        if value < 0 or value >= self.num_columns:
            raise IndexError(f"Column index {value} out of bounds for {self.num_columns} columns.")
        return value

    def get_potential_pool(self, column: int) -> FrozenSet[int]:
        pool = self._potential_pools.get(self._check_column(column))
        return pool if pool is not None else frozenset()

    def get_permanences(self, column: int) -> Dict[int, float]:
        """Return {input: permanence} for the stored synapses of `column`."""
        return self._permanences.row(self._check_column(column))

    def get_connected(self, column: int) -> Set[int]:
        """Return the inputs `column` is connected to."""
        return set(self._connected_synapses.row(self._check_column(column)))

    def column_tie_breaker(self, column: int, active_inputs: Iterable[int]) -> float:
        """Mean tie-breaker of `column` over the active inputs of its pool."""
        row = self._tie_breaker.row(self._check_column(column))
        values = [row[i] for i in active_inputs if i in row]
        if not values:
            return 0.0
        return float(np.mean(values))

    # ----- Write accessors -----

    def set_potential_pool(self, column: int, inputs: Iterable[int]) -> None:
        """Assign the potential pool of `column`.

        Meant for initialization. Stored permanences and tie-breakers that
        fall outside the new pool are dropped.
        """
        column = self._check_column(column)
        pool = frozenset(self.topology.inputs.check_index(i) for i in inputs)
        self._potential_pools.set(column, pool)

        stale = [i for i in self._permanences.row(column) if i not in pool]
        if stale:
            logger.debug("Dropping %d permanences outside the new pool of column %d", len(stale), column)
            kept = {i: v for i, v in self._permanences.row(column).items() if i in pool}
            self.update_permanences_for_column(column, kept)
        ties = self._tie_breaker.row(column)
        if any(i not in pool for i in ties):
            self._tie_breaker.set_row(column, {i: v for i, v in ties.items() if i in pool})

    def set_tie_breakers(self, column: int, values: Mapping[int, float]) -> None:
        column = self._check_column(column)
        pool = self.get_potential_pool(column)
        outside = [i for i in values if i not in pool]
        if outside:
            raise ValueError(f"Inputs {sorted(outside)} are not in the potential pool of column {column}.")
        self._tie_breaker.set_row(column, values)

    def update_permanences_for_column(self, column: int, permanences: Mapping[int, float]) -> None:
        """Store a column's permanences and re-derive its connected synapses.

        Values are clipped to [syn_perm_min, syn_perm_max] and dropped when
        at or below syn_perm_trim_threshold. Only inputs in the column's
        potential pool may carry a permanence.
        """
        column = self._check_column(column)
        p = self.parameters
        pool = self.get_potential_pool(column)

        row: Dict[int, float] = {}
        for idx, value in permanences.items():
            if idx not in pool:
                raise ValueError(f"Input {idx} is not in the potential pool of column {column}.")
            value = min(max(float(value), p.syn_perm_min), p.syn_perm_max)
            if value > p.syn_perm_trim_threshold:
                row[int(idx)] = value

        self._permanences.set_row(column, row)
        self._update_connected_for_column(column, row)

    def _update_connected_for_column(self, column: int, row: Mapping[int, float]) -> None:
        connected = {idx: 1 for idx, value in row.items()
                     if value >= self.parameters.syn_perm_connected}
        self._connected_synapses.set_row(column, connected)
        self._connected_counts[column] = len(connected)

    def set_inhibition_radius(self, radius: int) -> None:
        if radius < 0:
            raise ValueError("Inhibition radius must not be negative.")
        self.inhibition_radius = int(radius)

    def set_overlap_duty_cycles(self, duty_cycles: Iterable[float]) -> None:
        self.overlap_duty_cycles = self._column_array(duty_cycles)

    def set_active_duty_cycles(self, duty_cycles: Iterable[float]) -> None:
        self.active_duty_cycles = self._column_array(duty_cycles)

    def set_min_overlap_duty_cycles(self, duty_cycles: Iterable[float]) -> None:
        self.min_overlap_duty_cycles = self._column_array(duty_cycles)

    def set_min_active_duty_cycles(self, duty_cycles: Iterable[float]) -> None:
        self.min_active_duty_cycles = self._column_array(duty_cycles)

    def set_boost_factors(self, boost_factors: Iterable[float]) -> None:
        """Assign boost factors, clipped to [1.0, max_boost]."""
        values = self._column_array(boost_factors)
        self.boost_factors = np.clip(values, 1.0, self.parameters.max_boost)

    def _column_array(self, values: Iterable[float]) -> np.ndarray:
        if not isinstance(values, np.ndarray):
            values = list(values)
        array = np.array(values, dtype=np.float64).ravel()
        if array.shape[0] != self.num_columns:
            raise ValueError(f"Expected {self.num_columns} values, got {array.shape[0]}.")
        return array

    # ----- Diagnostics -----

    def parameter_dump(self) -> str:
        return parameter_dump(
            self.parameters,
            num_inputs=self.num_inputs,
            num_columns=self.num_columns,
            version=self.version,
        )

    def print_parameters(self) -> None:
        print(self.parameter_dump())
