"""
Unit tests for the SpatialPooler procedures.
Tests potential-pool mapping, permanence initialization and learning, the
inhibition radius estimate, duty cycles and boosting, and full iterations.
"""
import numpy as np
import pytest
import sys
import pathlib
sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent))

from spatial_lattice import SpatialLattice
from parameters import SpatialPoolerParameters
from spatial_pooler import (
    SpatialPooler,
    kth_score,
    update_duty_cycles_helper,
)


def small_params(**overrides) -> SpatialPoolerParameters:
    params = dict(
        input_dimensions=(100,),
        column_dimensions=(10,),
        potential_radius=16,
        potential_pct=0.5,
        seed=42,
    )
    params.update(overrides)
    return SpatialPoolerParameters(**params)


def single_column_pooler(**overrides) -> SpatialPooler:
    """Pooler over one column and ten inputs, left unconnected for manual setup."""
    params = dict(
        input_dimensions=(10,),
        column_dimensions=(1,),
        syn_perm_connected=0.10,
        syn_perm_active_inc=0.10,
        syn_perm_inactive_dec=0.01,
        syn_perm_trim_threshold=0.01,
    )
    params.update(overrides)
    return SpatialPooler(SpatialPoolerParameters(**params), connect=False)


def assert_lattice_invariants(lattice: SpatialLattice) -> None:
    p = lattice.parameters
    for column in range(lattice.num_columns):
        pool = lattice.get_potential_pool(column)
        perms = lattice.get_permanences(column)
        assert set(perms) <= pool
        for value in perms.values():
            assert p.syn_perm_min <= value <= p.syn_perm_max
            assert value > p.syn_perm_trim_threshold
        expected = {idx for idx, value in perms.items() if value >= p.syn_perm_connected}
        assert lattice.get_connected(column) == expected
        assert lattice.connected_counts[column] == len(expected)
        assert lattice.connected_synapses.row_sum(column) == lattice.connected_counts[column]
        assert set(lattice.tie_breaker.row(column)) <= pool
    assert np.all(lattice.boost_factors >= 1.0)
    assert np.all(lattice.boost_factors <= p.max_boost)


# ===== Potential pools and initialization =====

def test_potential_pool_size_and_window():
    sp = SpatialPooler(small_params())
    expected_size = int(0.5 * min(33, 100) + 0.5)
    for column in range(sp.num_columns):
        pool = sp.lattice.get_potential_pool(column)
        assert len(pool) == expected_size
        center = sp.lattice.topology.map_column(column)
        for idx in pool:
            distance = abs(idx - center)
            assert min(distance, 100 - distance) <= 16


def test_potential_pools_reproducible_with_same_seed():
    first = SpatialPooler(small_params())
    second = SpatialPooler(small_params())
    for column in range(first.num_columns):
        assert first.lattice.get_potential_pool(column) == second.lattice.get_potential_pool(column)


def test_sessions_with_same_seed_are_identical():
    params = small_params(input_dimensions=(8, 8), column_dimensions=(4, 4), potential_radius=3)
    first = SpatialPooler(params)
    second = SpatialPooler(params)
    assert list(first.lattice.potential_pools.items()) == list(second.lattice.potential_pools.items())
    assert list(first.lattice.permanences.items()) == list(second.lattice.permanences.items())
    assert list(first.lattice.tie_breaker.items()) == list(second.lattice.tie_breaker.items())
    assert first.lattice.inhibition_radius == second.lattice.inhibition_radius


def test_different_seed_changes_pools():
    first = SpatialPooler(small_params(seed=1))
    second = SpatialPooler(small_params(seed=2))
    pools_first = [first.lattice.get_potential_pool(c) for c in range(first.num_columns)]
    pools_second = [second.lattice.get_potential_pool(c) for c in range(second.num_columns)]
    assert pools_first != pools_second


def test_global_inhibition_pools_span_whole_input():
    sp = SpatialPooler(small_params(global_inhibition=True, potential_radius=2))
    for column in range(sp.num_columns):
        assert len(sp.lattice.get_potential_pool(column)) == 50
    assert sp.lattice.inhibition_radius == 10


def test_map_potential_without_wrapping_truncates():
    sp = SpatialPooler(small_params(wrap_around=False, potential_pct=1.0), connect=False)
    pool = sp.map_potential(0, np.random.default_rng(0))
    # centre of column 0 is input 5, window [0, 21]
    assert pool.tolist() == list(range(22))


def test_initial_state_satisfies_invariants():
    sp = SpatialPooler(small_params(input_dimensions=(8, 8), column_dimensions=(4, 4), potential_radius=3))
    assert_lattice_invariants(sp.lattice)
    assert sp.lattice.inhibition_radius >= 1


def test_all_synapses_start_connected():
    sp = SpatialPooler(small_params(init_connected_pct=1.0))
    for column in range(sp.num_columns):
        pool = sp.lattice.get_potential_pool(column)
        assert sp.lattice.connected_counts[column] == len(pool)
        for value in sp.lattice.get_permanences(column).values():
            assert 0.10 < value <= 1.0


def test_no_synapses_start_connected():
    sp = SpatialPooler(small_params(init_connected_pct=0.0))
    assert sp.lattice.connected_counts.sum() == 0
    for column in range(sp.num_columns):
        for value in sp.lattice.get_permanences(column).values():
            assert value < 0.10
    # nothing connected: the radius falls back to 1
    assert sp.lattice.inhibition_radius == 1


def test_tie_breakers_are_small():
    sp = SpatialPooler(small_params())
    values = [value for _, value in sp.lattice.tie_breaker.items()]
    assert values
    assert all(0.0 < value < 0.01 * 0.10 for value in values)


# ===== Permanence learning =====

def test_connected_row_derived_from_initial_permanences():
    sp = single_column_pooler()
    sp.lattice.set_potential_pool(0, {2, 5, 9})
    sp.lattice.update_permanences_for_column(0, {2: 0.05, 5: 0.12, 9: 0.08})
    assert sp.lattice.get_connected(0) == {5}
    assert sp.lattice.connected_counts[0] == 1


def test_adapt_synapses_moves_permanences_by_input():
    sp = single_column_pooler()
    sp.lattice.set_potential_pool(0, {2, 5, 9})
    sp.lattice.update_permanences_for_column(0, {2: 0.05, 5: 0.12, 9: 0.08})

    sp.adapt_synapses({2, 5}, [0])

    assert sp.lattice.get_permanences(0) == pytest.approx({2: 0.15, 5: 0.22, 9: 0.07})
    assert sp.lattice.get_connected(0) == {2, 5}
    assert sp.lattice.connected_counts[0] == 2


def test_repeated_inactivity_prunes_synapse():
    sp = single_column_pooler()
    sp.lattice.set_potential_pool(0, {2, 5, 9})
    sp.lattice.update_permanences_for_column(0, {2: 0.05, 5: 0.12, 9: 0.08})

    previous = 0.08
    for _ in range(10):
        sp.adapt_synapses({2, 5}, [0])
        perms = sp.lattice.get_permanences(0)
        if 9 in perms:
            assert perms[9] < previous
            assert perms[9] > 0.01
            previous = perms[9]
    perms = sp.lattice.get_permanences(0)
    assert 9 not in perms
    assert perms[2] == pytest.approx(1.0)
    assert perms[5] == pytest.approx(1.0)
    assert_lattice_invariants(sp.lattice)


def test_adapt_synapses_only_touches_active_columns():
    sp = SpatialPooler(small_params())
    before = {c: sp.lattice.get_permanences(c) for c in range(sp.num_columns)}
    sp.adapt_synapses(set(range(0, 100, 2)), [3])
    for column in range(sp.num_columns):
        if column != 3:
            assert sp.lattice.get_permanences(column) == before[column]
    assert sp.lattice.get_permanences(3) != before[3]
    assert_lattice_invariants(sp.lattice)


def test_bump_up_weak_columns():
    sp = single_column_pooler(syn_perm_trim_threshold=0.005)
    sp.lattice.set_potential_pool(0, {2, 5, 9})
    sp.lattice.update_permanences_for_column(0, {2: 0.05, 5: 0.12})
    sp.lattice.set_min_active_duty_cycles([0.1])

    sp.bump_up_weak_columns()

    assert sp.lattice.get_permanences(0) == pytest.approx({2: 0.06, 5: 0.13, 9: 0.01})


def test_bump_up_skips_healthy_columns():
    sp = single_column_pooler()
    sp.lattice.set_potential_pool(0, {2, 5})
    sp.lattice.update_permanences_for_column(0, {2: 0.05, 5: 0.12})
    sp.lattice.set_active_duty_cycles([0.2])
    sp.lattice.set_min_active_duty_cycles([0.1])
    sp.bump_up_weak_columns()
    assert sp.lattice.get_permanences(0) == pytest.approx({2: 0.05, 5: 0.12})


# ===== Inhibition radius =====

def test_inhibition_radius_without_connections_is_one():
    sp = SpatialPooler(small_params(), connect=False)
    assert sp.update_inhibition_radius() == 1
    assert sp.lattice.inhibition_radius == 1


def test_inhibition_radius_from_connected_span():
    sp = SpatialPooler(SpatialPoolerParameters(input_dimensions=(20,), column_dimensions=(10,),
                                               syn_perm_trim_threshold=0.01), connect=False)
    # column 0 connects to inputs 0..9: span 10, half a column per input
    sp.lattice.set_potential_pool(0, range(10))
    sp.lattice.update_permanences_for_column(0, {i: 0.5 for i in range(10)})
    # diameter = 10 * 0.5 = 5, radius = (5 - 1) / 2 = 2
    assert sp.update_inhibition_radius() == 2


def test_inhibition_radius_ignores_columns_without_connections():
    sp = SpatialPooler(SpatialPoolerParameters(input_dimensions=(20,), column_dimensions=(10,),
                                               syn_perm_trim_threshold=0.01), connect=False)
    sp.lattice.set_potential_pool(0, range(10))
    sp.lattice.update_permanences_for_column(0, {i: 0.5 for i in range(10)})
    sp.lattice.set_potential_pool(1, range(10))
    sp.lattice.update_permanences_for_column(1, {i: 0.05 for i in range(10)})
    assert sp.update_inhibition_radius() == 2


# ===== Duty cycles and boosting =====

def test_duty_cycle_moving_average():
    values = update_duty_cycles_helper(np.array([0.5, 0.0]), np.array([1.0, 1.0]), 10)
    assert values.tolist() == pytest.approx([0.55, 0.1])


def test_update_duty_cycles():
    sp = SpatialPooler(small_params(input_dimensions=(10,), column_dimensions=(4,), duty_cycle_period=10),
                       connect=False)
    sp.update_duty_cycles(np.array([0, 3, 0, 1]), [1])
    assert sp.lattice.overlap_duty_cycles.tolist() == pytest.approx([0.0, 0.1, 0.0, 0.1])
    assert sp.lattice.active_duty_cycles.tolist() == pytest.approx([0.0, 0.1, 0.0, 0.0])


def test_min_duty_cycles_local():
    sp = SpatialPooler(small_params(input_dimensions=(10,), column_dimensions=(5,), wrap_around=False,
                                    min_pct_overlap_duty_cycles=0.1, min_pct_active_duty_cycles=0.1),
                       connect=False)
    sp.lattice.set_inhibition_radius(1)
    sp.lattice.set_overlap_duty_cycles([0.0, 0.0, 1.0, 0.0, 0.0])
    sp.lattice.set_active_duty_cycles([0.5, 0.0, 0.0, 0.0, 0.0])
    sp.update_min_duty_cycles()
    assert sp.lattice.min_overlap_duty_cycles.tolist() == pytest.approx([0.0, 0.1, 0.1, 0.1, 0.0])
    assert sp.lattice.min_active_duty_cycles.tolist() == pytest.approx([0.05, 0.05, 0.0, 0.0, 0.0])


def test_min_duty_cycles_global():
    sp = SpatialPooler(small_params(input_dimensions=(10,), column_dimensions=(5,), global_inhibition=True,
                                    min_pct_overlap_duty_cycles=0.1, min_pct_active_duty_cycles=0.2),
                       connect=False)
    sp.lattice.set_overlap_duty_cycles([0.0, 0.0, 1.0, 0.0, 0.5])
    sp.lattice.set_active_duty_cycles([0.5, 0.0, 0.0, 0.0, 0.0])
    sp.update_min_duty_cycles()
    assert sp.lattice.min_overlap_duty_cycles.tolist() == pytest.approx([0.1] * 5)
    assert sp.lattice.min_active_duty_cycles.tolist() == pytest.approx([0.1] * 5)


def test_boost_factors_interpolate_linearly():
    sp = SpatialPooler(small_params(input_dimensions=(10,), column_dimensions=(5,), max_boost=10.0),
                       connect=False)
    sp.lattice.set_min_overlap_duty_cycles([0.1, 0.1, 0.1, 0.1, 0.0])
    sp.lattice.set_overlap_duty_cycles([0.0, 0.05, 0.1, 0.2, 0.0])
    sp.update_boost_factors()
    assert sp.lattice.boost_factors.tolist() == pytest.approx([10.0, 5.5, 1.0, 1.0, 1.0])


def test_boost_factor_non_increasing_in_duty_cycle():
    sp = SpatialPooler(small_params(input_dimensions=(10,), column_dimensions=(11,), max_boost=5.0),
                       connect=False)
    sp.lattice.set_min_overlap_duty_cycles([0.1] * 11)
    sp.lattice.set_overlap_duty_cycles(np.linspace(0.0, 0.2, 11))
    sp.update_boost_factors()
    boosts = sp.lattice.boost_factors
    assert np.all(np.diff(boosts) <= 1e-12)
    assert np.all((boosts >= 1.0) & (boosts <= 5.0))


# ===== Inhibition and iterations =====

def test_kth_score():
    scores = np.array([1.0, 5.0, 3.0, 4.0])
    assert kth_score(scores, 1) == 5.0
    assert kth_score(scores, 2) == 4.0
    assert kth_score(scores, 10) == 1.0
    assert kth_score(scores, 0) == float("inf")


def test_global_inhibition_selects_target_count():
    sp = SpatialPooler(small_params(input_dimensions=(40,), column_dimensions=(20,), global_inhibition=True,
                                    num_active_columns_per_inh_area=5))
    active = sp.compute(np.ones(40, dtype=int), learn=False)
    assert len(active) == 5
    overlaps = sp.calculate_overlap(set(range(40)))
    assert overlaps[active].min() >= np.sort(overlaps)[-5]


def test_local_inhibition_winners_have_overlap():
    sp = SpatialPooler(small_params(input_dimensions=(64,), column_dimensions=(32,), potential_radius=8,
                                    num_active_columns_per_inh_area=4))
    input_vector = np.ones(64, dtype=int)
    active = sp.compute(input_vector, learn=False)
    overlaps = sp.calculate_overlap(set(range(64)))
    assert len(active) > 0
    assert np.all(overlaps[active] > 0)
    assert list(active) == sorted(active)


def test_fixed_density_target():
    sp = SpatialPooler(small_params(local_area_density=0.2, num_active_columns_per_inh_area=-1),
                       connect=False)
    assert sp.target_density() == pytest.approx(0.2)


def test_target_count_density_is_capped():
    sp = SpatialPooler(small_params(num_active_columns_per_inh_area=10), connect=False)
    sp.lattice.set_inhibition_radius(1)
    assert sp.target_density() == pytest.approx(0.5)
    sp.lattice.set_inhibition_radius(4)
    assert sp.target_density() == pytest.approx(0.5)
    sp.lattice.set_inhibition_radius(20)
    assert sp.target_density() == pytest.approx(0.5)
    assert sp.target_density() <= 0.5


def test_target_count_density_below_cap():
    sp = SpatialPooler(small_params(column_dimensions=(40,), num_active_columns_per_inh_area=4),
                       connect=False)
    sp.lattice.set_inhibition_radius(9)
    # area 19, density 4 / 19
    assert sp.target_density() == pytest.approx(4 / 19)


def test_compute_with_external_winners():
    sp = SpatialPooler(small_params())
    active = sp.compute(set(range(0, 100, 3)), active_columns={3, 1})
    assert active.tolist() == [1, 3]
    assert sp.lattice.active_duty_cycles[1] > 0
    assert sp.lattice.active_duty_cycles[0] == 0
    with pytest.raises(ValueError):
        sp.compute(set(range(10)), active_columns=[10])


def test_compute_without_learning_leaves_state():
    sp = SpatialPooler(small_params())
    perms = list(sp.lattice.permanences.items())
    sp.compute(np.ones(100, dtype=int), learn=False)
    assert list(sp.lattice.permanences.items()) == perms
    assert sp.lattice.overlap_duty_cycles.sum() == 0
    assert sp.lattice.iteration_num == 1
    assert sp.lattice.iteration_learn_num == 0


def test_learning_iterations_keep_invariants():
    sp = SpatialPooler(small_params(input_dimensions=(8, 8), column_dimensions=(4, 4), potential_radius=3,
                                    num_active_columns_per_inh_area=3, update_period=5))
    rng = np.random.default_rng(7)
    for _ in range(20):
        input_vector = (rng.random((8, 8)) < 0.3).astype(int)
        sp.compute(input_vector)
        assert_lattice_invariants(sp.lattice)
    assert sp.lattice.iteration_learn_num == 20
    assert sp.lattice.overlap_duty_cycles.max() > 0


def test_inhibition_radius_updates_every_update_period():
    sp = SpatialPooler(small_params(input_dimensions=(64,), column_dimensions=(32,), potential_radius=8,
                                    update_period=2))
    sp.lattice.set_inhibition_radius(99)
    sp.compute(np.ones(64, dtype=int))
    assert sp.lattice.inhibition_radius == 99
    sp.compute(np.ones(64, dtype=int))
    assert sp.lattice.inhibition_radius < 99


def test_input_formats_agree():
    sp = SpatialPooler(small_params(input_dimensions=(4, 5), column_dimensions=(2,)), connect=False)
    dense = np.zeros((4, 5), dtype=int)
    dense[1, 2] = 1
    dense[3, 4] = 1
    expected = {7, 19}
    assert sp.active_input_indices(dense) == expected
    assert sp.active_input_indices(dense.ravel()) == expected
    assert sp.active_input_indices({7, 19}) == expected
    assert sp.active_input_indices([7, 19]) == expected


def test_invalid_inputs_rejected():
    sp = SpatialPooler(small_params(), connect=False)
    with pytest.raises(ValueError):
        sp.active_input_indices({100})
    with pytest.raises(TypeError):
        sp.active_input_indices("0101")
    with pytest.raises(ValueError):
        sp.active_input_indices(np.zeros((3, 3)))


def test_run_returns_one_result_per_input():
    sp = SpatialPooler(small_params())
    inputs = [set(range(i, 100, 5)) for i in range(4)]
    results = sp.run(inputs)
    assert len(results) == 4
    assert sp.lattice.iteration_learn_num == 4


def test_global_inhibition_count_survives_float_rounding():
    # 1 / 49 * 49 falls just short of 1.0 in floating point
    sp = SpatialPooler(SpatialPoolerParameters(input_dimensions=(98,), column_dimensions=(49,),
                                               global_inhibition=True, num_active_columns_per_inh_area=1))
    assert sp.target_density() * 49 < 1.0
    active = sp.compute(np.ones(98, dtype=int), learn=False)
    assert len(active) == 1


@pytest.mark.parametrize("num_columns", [3, 7, 49, 98])
def test_global_inhibition_selects_one_winner_per_target(num_columns):
    sp = SpatialPooler(SpatialPoolerParameters(input_dimensions=(98,), column_dimensions=(num_columns,),
                                               global_inhibition=True, num_active_columns_per_inh_area=1))
    assert len(sp.compute(np.ones(98, dtype=int), learn=False)) == 1


def test_duty_cycle_period_of_one_keeps_latest_value():
    values = update_duty_cycles_helper(np.array([0.3, 0.9]), np.array([1.0, 0.0]), 1)
    assert values.tolist() == pytest.approx([1.0, 0.0])


def test_dense_array_with_counts_is_rejected():
    sp = SpatialPooler(small_params(input_dimensions=(4, 5), column_dimensions=(2,)), connect=False)
    counts = np.zeros(20, dtype=int)
    counts[3] = 2
    with pytest.raises(ValueError):
        sp.active_input_indices(counts)
    with pytest.raises(ValueError):
        sp.active_input_indices(counts.reshape(4, 5))
    with pytest.raises(ValueError):
        sp.compute(counts)
    # arrays of the wrong length are not read as indices either
    with pytest.raises(ValueError):
        sp.active_input_indices(np.array([3, 7]))


def test_sequences_are_indices_unless_binary_per_input():
    sp = SpatialPooler(small_params(input_dimensions=(4,), column_dimensions=(2,)), connect=False)
    assert sp.active_input_indices([0, 1, 1, 0]) == {1, 2}
    assert sp.active_input_indices([3, 2, 1, 0]) == {0, 1, 2, 3}
    assert sp.active_input_indices((2,)) == {2}
    assert sp.active_input_indices([]) == set()


def test_radius_zero_pools_hold_the_centre_input():
    sp = SpatialPooler(small_params(potential_radius=0, potential_pct=0.5))
    for column in range(sp.num_columns):
        assert sp.lattice.get_potential_pool(column) == {10 * column + 5}
