import logging
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Union,
)

import numpy as np
from tqdm import tqdm

from parameters import FixedDensity, SpatialPoolerParameters
from spatial_lattice import SpatialLattice

logger = logging.getLogger("htm.spatial_pooler")

TIE_BREAKER_SCALE = 0.01  # Tie-breakers are drawn from [0, TIE_BREAKER_SCALE * syn_perm_active_inc)
MAX_LOCAL_DENSITY = 0.5  # Upper bound on the density derived from a target active count
COUNT_TOLERANCE = 1e-9  # density * size may land just below a whole count

InputVector = Union[np.ndarray, Sequence[int], Set[int], FrozenSet[int]]
ActiveColumnInput = Union[Set[int], Sequence[int], np.ndarray]


def kth_score(scores: np.ndarray, k: int) -> float:
    """Return the k-th highest value in `scores`.

    With k <= 0 nothing can qualify, so +inf is returned. With fewer scores
    than k the lowest score is returned.
    """
    if k <= 0 or scores.size == 0:
        return float("inf")
    if k >= scores.size:
        return float(scores.min())
    return float(np.partition(scores, scores.size - k)[scores.size - k])


def _is_binary(vector: np.ndarray) -> bool:
    return bool(np.all(np.logical_or(vector == 0, vector == 1)))


def update_duty_cycles_helper(duty_cycles: np.ndarray, new_input: np.ndarray, period: float) -> np.ndarray:
    """Exponential moving average with time constant `period`.

                    (period - 1) * duty_cycle + new_value
    duty_cycle := ---------------------------------------
                                 period
    """
    return (duty_cycles * (period - 1.0) + new_input) / period


class SpatialPooler:
    """Procedures that initialize, learn and adapt a `SpatialLattice`.

    The pooler owns the lattice and the seeded random generator of the
    session. Every stochastic step receives the generator explicitly, so a
    session is reproducible from its seed alone.
    """

    def __init__(
        self,
        parameters: Optional[SpatialPoolerParameters] = None,
        connect: bool = True,
    ) -> None:
        self.lattice = SpatialLattice(parameters)
        self.parameters = self.lattice.parameters
        self.rng = np.random.default_rng(self.parameters.seed)
        if connect:
            self.connect_and_configure_inputs()

    @property
    def num_columns(self) -> int:
        return self.lattice.num_columns

    @property
    def num_inputs(self) -> int:
        return self.lattice.num_inputs

    # ===== Initialization =====

    def connect_and_configure_inputs(self) -> None:
        """Build pools, initial permanences and tie-breakers, then seed the radius.

        Runs exactly once per session, before any learning.
        """
        lattice = self.lattice
        for column in range(self.num_columns):
            pool = self.map_potential(column, self.rng)
            lattice.set_potential_pool(column, pool)
            lattice.update_permanences_for_column(column, self.init_permanence(pool, self.rng))
            lattice.set_tie_breakers(column, self.init_tie_breakers(pool, self.rng))

        self.update_inhibition_radius()
        logger.info(
            "Initialized %d columns over %d inputs, %d synapses connected, inhibition radius %d",
            self.num_columns, self.num_inputs, int(lattice.connected_counts.sum()),
            lattice.inhibition_radius,
        )

    def map_potential(self, column: int, rng: np.random.Generator) -> np.ndarray:
        """Return the sorted input indices `column` may ever connect to.

        The candidates are the inputs within potential_radius of the column's
        centre in input space (the whole input space under global
        inhibition). potential_pct of them, rounded half up, are drawn
        without replacement.
        """
        p = self.parameters
        topology = self.lattice.topology
        if p.global_inhibition:
            candidates = np.arange(self.num_inputs)
        else:
            center = topology.map_column(column)
            candidates = topology.input_neighborhood(center, p.potential_radius, p.wrap_around)

        num_potential = int(candidates.size * p.potential_pct + 0.5)
        selected = rng.choice(candidates, size=num_potential, replace=False)
        return np.sort(selected)

    def init_permanence(self, potential: Iterable[int], rng: np.random.Generator) -> Dict[int, float]:
        """Draw initial permanences over a potential pool.

        A fraction init_connected_pct of the synapses start connected, in
        (syn_perm_connected, syn_perm_max]; the rest start in
        [syn_perm_min, syn_perm_connected). Clipping and trimming happen when
        the row is stored.
        """
        p = self.parameters
        inputs = [int(i) for i in potential]
        connected = rng.random(len(inputs)) < p.init_connected_pct
        draws = rng.random(len(inputs))

        permanences: Dict[int, float] = {}
        for idx, is_connected, draw in zip(inputs, connected, draws):
            if is_connected:
                value = p.syn_perm_max - (p.syn_perm_max - p.syn_perm_connected) * draw
            else:
                value = p.syn_perm_min + (p.syn_perm_connected - p.syn_perm_min) * draw
            permanences[idx] = float(value)
        return permanences

    def init_tie_breakers(self, potential: Iterable[int], rng: np.random.Generator) -> Dict[int, float]:
        inputs = [int(i) for i in potential]
        scale = TIE_BREAKER_SCALE * self.parameters.syn_perm_active_inc
        return {idx: float(value) for idx, value in zip(inputs, scale * rng.random(len(inputs)))
                if value > 0}

    # ===== Iteration =====

    def compute(
        self,
        input_vector: InputVector,
        learn: bool = True,
        active_columns: Optional[ActiveColumnInput] = None,
    ) -> np.ndarray:
        """Run one pooling iteration and return the sorted active column indices.

        `active_columns` lets an external inhibition stage choose the
        winners; otherwise the built-in global/local inhibition is used.
        """
        lattice = self.lattice
        active_inputs = self.active_input_indices(input_vector)

        lattice.iteration_num += 1
        if learn:
            lattice.iteration_learn_num += 1

        overlaps = self.calculate_overlap(active_inputs)

        if active_columns is None:
            if learn:
                boosted = overlaps * lattice.boost_factors
            else:
                boosted = overlaps.astype(np.float64)
            active = self.inhibit_columns(boosted, overlaps, active_inputs)
        else:
            active = self._validate_active_columns(active_columns)

        if learn:
            self.adapt_synapses(active_inputs, active)
            self.update_duty_cycles(overlaps, active)
            self.update_min_duty_cycles()
            self.update_boost_factors()
            self.bump_up_weak_columns()
            if lattice.iteration_learn_num % self.parameters.update_period == 0:
                self.update_inhibition_radius()

        return active

    def run(self, inputs: Iterable[InputVector], learn: bool = True, progress: bool = False) -> List[np.ndarray]:
        """Feed a sequence of inputs through `compute` and collect the active columns."""
        results: List[np.ndarray] = []
        for input_vector in tqdm(inputs, desc="Spatial pooling", disable=not progress):
            results.append(self.compute(input_vector, learn=learn))
        return results

    def active_input_indices(self, input_vector: InputVector) -> Set[int]:
        """Convert a dense binary vector or a collection of indices into active input indices.

        A numpy array is always a dense vector, flat or shaped like the
        input space, and must hold only 0/1 values. Sets are indices. Other
        sequences are read as a dense vector when they have one 0/1 entry
        per input, and as indices otherwise.
        """
        if isinstance(input_vector, (set, frozenset)):
            return {self._validate_input_index(idx) for idx in input_vector}

        if isinstance(input_vector, (str, bytes)):
            raise TypeError("Input vector must not be a string/bytes.")

        if isinstance(input_vector, np.ndarray):
            return self._dense_input_indices(input_vector)

        vector = np.asarray(input_vector)
        if vector.ndim > 1:
            return self._dense_input_indices(vector)
        if vector.size == self.num_inputs and _is_binary(vector):
            return set(map(int, np.flatnonzero(vector)))
        return {self._validate_input_index(idx) for idx in vector.tolist()}

    def _dense_input_indices(self, vector: np.ndarray) -> Set[int]:
        if vector.shape == self.lattice.topology.input_dimensions:
            vector = vector.ravel()
        if vector.shape != (self.num_inputs,):
            raise ValueError(f"Input of shape {vector.shape} does not match {self.lattice.topology.input_dimensions}.")
        if not _is_binary(vector):
            raise ValueError("Dense input vectors must hold only 0/1 values.")
        return set(map(int, np.flatnonzero(vector)))

    def _validate_input_index(self, idx: int) -> int:
        value = int(idx)
        if value < 0 or value >= self.num_inputs:
            raise ValueError(f"Input index {value} out of bounds for {self.num_inputs} inputs.")
        return value

    def _validate_active_columns(self, active_columns: ActiveColumnInput) -> np.ndarray:
        """Accept a set or sequence of column indices, or a boolean mask."""
        if isinstance(active_columns, (set, frozenset)):
            active_columns = sorted(active_columns)
        values = np.asarray(active_columns).ravel()
        if values.dtype == np.bool_:
            if values.size != self.num_columns:
                raise ValueError(f"Column mask of size {values.size} != {self.num_columns} columns.")
            values = np.flatnonzero(values)

        indices: Set[int] = set()
        for idx in values.tolist():
            value = int(idx)
            if value < 0 or value >= self.num_columns:
                raise ValueError(f"Column index {value} out of bounds for {self.num_columns} columns.")
            indices.add(value)
        return np.array(sorted(indices), dtype=np.int64)

    def calculate_overlap(self, active_inputs: Set[int]) -> np.ndarray:
        """Count each column's connected synapses on active inputs.

        Overlaps below stimulus_threshold are reported as 0.
        """
        connected = self.lattice.connected_synapses
        overlaps = np.zeros(self.num_columns, dtype=np.int64)
        for column in connected.populated_rows():
            overlaps[column] = sum(1 for idx in connected.row(column) if idx in active_inputs)
        overlaps[overlaps < self.parameters.stimulus_threshold] = 0
        return overlaps

    # ===== Inhibition =====

    def target_density(self) -> float:
        """Fraction of an inhibition area allowed to be active."""
        mode = self.lattice.density_mode
        if isinstance(mode, FixedDensity):
            return mode.density
        radius = self.lattice.inhibition_radius
        num_dims = len(self.lattice.topology.column_dimensions)
        inhibition_area = min((2 * radius + 1) ** num_dims, self.num_columns)
        return min(mode.count / inhibition_area, MAX_LOCAL_DENSITY)

    def _uses_global_neighborhood(self) -> bool:
        return (self.parameters.global_inhibition
                or self.lattice.inhibition_radius > max(self.lattice.topology.column_dimensions))

    def inhibit_columns(
        self,
        boosted_overlaps: np.ndarray,
        overlaps: Optional[np.ndarray] = None,
        active_inputs: Iterable[int] = (),
    ) -> np.ndarray:
        """Select the winning columns from (boosted) overlap scores.

        Tie-breakers are added to the scores so equal overlaps resolve the
        same way on every run. Only columns with a positive overlap can win.
        """
        if overlaps is None:
            overlaps = boosted_overlaps
        active_inputs = set(active_inputs)
        scores = np.asarray(boosted_overlaps, dtype=np.float64).copy()
        for column in np.flatnonzero(overlaps > 0):
            scores[column] += self.lattice.column_tie_breaker(column, active_inputs)

        density = self.target_density()
        if self._uses_global_neighborhood():
            return self._inhibit_columns_global(scores, overlaps, density)
        return self._inhibit_columns_local(scores, overlaps, density)

    def _inhibit_columns_global(self, scores: np.ndarray, overlaps: np.ndarray, density: float) -> np.ndarray:
        num_active = int(density * self.num_columns + COUNT_TOLERANCE)
        threshold = kth_score(scores, num_active)
        winners = np.flatnonzero((overlaps > 0) & (scores >= threshold))
        return winners.astype(np.int64)

    def _inhibit_columns_local(self, scores: np.ndarray, overlaps: np.ndarray, density: float) -> np.ndarray:
        p = self.parameters
        topology = self.lattice.topology
        radius = self.lattice.inhibition_radius
        winners: List[int] = []
        for column in np.flatnonzero(overlaps > 0):
            neighborhood = topology.column_neighborhood(column, radius, p.wrap_around)
            num_active = int(0.5 + density * neighborhood.size + COUNT_TOLERANCE)
            if scores[column] >= kth_score(scores[neighborhood], num_active):
                winners.append(int(column))
        return np.array(winners, dtype=np.int64)

    # ===== Learning =====

    def adapt_synapses(self, active_inputs: Set[int], active_columns: Iterable[int]) -> None:
        """Reinforce the potential synapses of the winning columns.

        Permanences of synapses on active inputs grow by syn_perm_active_inc,
        the others shrink by syn_perm_inactive_dec. Only the touched columns'
        connected synapses are re-derived.
        """
        p = self.parameters
        for column in active_columns:
            current = self.lattice.get_permanences(column)
            updated = {
                idx: current.get(idx, 0.0) + (p.syn_perm_active_inc if idx in active_inputs
                                              else -p.syn_perm_inactive_dec)
                for idx in self.lattice.get_potential_pool(column)
            }
            self.lattice.update_permanences_for_column(column, updated)

    def bump_up_weak_columns(self) -> None:
        """Raise every permanence of columns whose active duty cycle is below its minimum."""
        lattice = self.lattice
        increment = self.parameters.syn_perm_below_stimulus_inc
        weak_columns = np.flatnonzero(lattice.active_duty_cycles < lattice.min_active_duty_cycles)
        if weak_columns.size:
            logger.debug("Bumping up %d weak columns", weak_columns.size)
        for column in weak_columns:
            current = lattice.get_permanences(column)
            updated = {idx: current.get(idx, 0.0) + increment
                       for idx in lattice.get_potential_pool(column)}
            lattice.update_permanences_for_column(column, updated)

    # ===== Duty cycles & boosting =====

    def update_duty_cycles(self, overlaps: np.ndarray, active_columns: Iterable[int]) -> None:
        lattice = self.lattice
        period = self.parameters.duty_cycle_period

        overlap_array = np.zeros(self.num_columns, dtype=np.float64)
        overlap_array[overlaps > self.parameters.stimulus_threshold] = 1
        lattice.overlap_duty_cycles = update_duty_cycles_helper(
            lattice.overlap_duty_cycles, overlap_array, period)

        active_array = np.zeros(self.num_columns, dtype=np.float64)
        active_array[np.asarray(list(active_columns), dtype=np.int64)] = 1
        lattice.active_duty_cycles = update_duty_cycles_helper(
            lattice.active_duty_cycles, active_array, period)

    def update_min_duty_cycles(self) -> None:
        """Set each column's minimum duty cycles from the maxima of its neighborhood."""
        if self._uses_global_neighborhood():
            self._update_min_duty_cycles_global()
        else:
            self._update_min_duty_cycles_local()

    def _update_min_duty_cycles_global(self) -> None:
        p = self.parameters
        lattice = self.lattice
        lattice.min_overlap_duty_cycles = np.full(
            self.num_columns, p.min_pct_overlap_duty_cycles * lattice.overlap_duty_cycles.max())
        lattice.min_active_duty_cycles = np.full(
            self.num_columns, p.min_pct_active_duty_cycles * lattice.active_duty_cycles.max())

    def _update_min_duty_cycles_local(self) -> None:
        p = self.parameters
        lattice = self.lattice
        topology = lattice.topology
        min_overlap = np.zeros(self.num_columns, dtype=np.float64)
        min_active = np.zeros(self.num_columns, dtype=np.float64)
        for column in range(self.num_columns):
            neighborhood = topology.column_neighborhood(column, lattice.inhibition_radius, p.wrap_around)
            min_overlap[column] = p.min_pct_overlap_duty_cycles * lattice.overlap_duty_cycles[neighborhood].max()
            min_active[column] = p.min_pct_active_duty_cycles * lattice.active_duty_cycles[neighborhood].max()
        lattice.min_overlap_duty_cycles = min_overlap
        lattice.min_active_duty_cycles = min_active

    def update_boost_factors(self) -> None:
        """Recompute boost factors from the overlap duty cycles.

        A column at or above its minimum overlap duty cycle gets 1.0; below
        it the boost rises linearly to max_boost as the duty cycle reaches 0.

                  boost
                    ^
          max_boost |\\
                    | \\
                    |  \\
                1   |   \\_______________
                    +----|---------------> overlap duty cycle
                  min_overlap_duty_cycle
        """
        lattice = self.lattice
        max_boost = self.parameters.max_boost
        duty = lattice.overlap_duty_cycles
        minimum = lattice.min_overlap_duty_cycles

        below = duty < minimum
        boost = np.ones(self.num_columns, dtype=np.float64)
        boost[below] = max_boost + (1.0 - max_boost) * duty[below] / minimum[below]
        lattice.boost_factors = np.clip(boost, 1.0, max_boost)

    # ===== Inhibition radius =====

    def update_inhibition_radius(self) -> int:
        """Re-estimate the inhibition radius from the spread of connected synapses.

        The average receptive field span of columns with connected synapses
        is scaled by the number of columns per input. With no connected
        synapses anywhere the radius falls back to 1. Under global
        inhibition it covers the largest column dimension.
        """
        lattice = self.lattice
        topology = lattice.topology
        if self.parameters.global_inhibition:
            radius = max(topology.column_dimensions)
        else:
            connected = lattice.connected_synapses
            spans = [topology.input_span(connected.row(column))
                     for column in connected.populated_rows()]
            if not spans:
                radius = 1
            else:
                diameter = float(np.mean(spans)) * topology.columns_per_input()
                radius = int(max((diameter - 1.0) / 2.0, 1.0) + 0.5)

        lattice.set_inhibition_radius(radius)
        logger.debug("Inhibition radius updated to %d at iteration %d", radius, lattice.iteration_num)
        return radius
