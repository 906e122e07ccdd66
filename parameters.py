"""Configuration surface of the spatial pooler.

Members "local_area_density" & "num_active_columns_per_inh_area" are mutually
exclusive, specify exactly one of them and set the other to a negative value.
After validation the chosen one is available as a tagged value through
`SpatialPoolerParameters.density_mode`.
"""
import copy
from dataclasses import dataclass, fields
from math import prod
from typing import Optional, Sequence, Tuple, Union


class ConfigurationError(ValueError):
    """Raised when a pooling session is constructed with invalid settings."""


@dataclass(frozen=True)
class FixedDensity:
    """Keep a fixed fraction of each inhibition area active."""
    density: float


@dataclass(frozen=True)
class TargetCount:
    """Keep at most `count` columns active per inhibition area."""
    count: float


DensityMode = Union[FixedDensity, TargetCount]


@dataclass
class SpatialPoolerParameters:

    input_dimensions: Tuple[int, ...] = (32, 32)
    """
    * Member "input_dimensions" is the shape of the input space. The number of
    * inputs is the product of its entries.
    """
    column_dimensions: Tuple[int, ...] = (64, 64)
    """
    * Member "column_dimensions" is the shape of the column space. The number
    * of columns is the product of its entries.
    """
    potential_radius: int = 16
    """
    * Member "potential_radius" determines the extent of the input that each
    * column can potentially be connected to. A column has a max square
    * potential pool with sides of length 2 * potential_radius + 1.
    """
    potential_pct: float = 0.5
    """
    * Member "potential_pct" is the percent of the inputs, within a column's
    * potential radius, that a column can be connected to.
    """
    global_inhibition: bool = False
    """
    * Member "global_inhibition" selects the winning columns from the region
    * as a whole instead of from their local neighborhoods.
    """
    local_area_density: float = -1.0
    """
    * Member "local_area_density" is the desired density of active columns
    * within a local inhibition area.
    """
    num_active_columns_per_inh_area: float = 10.0
    """
    * Member "num_active_columns_per_inh_area" is an alternate way to control
    * the density of active columns: at most this many columns remain ON
    * within a local inhibition area.
    """
    stimulus_threshold: float = 0
    """
    * Member "stimulus_threshold" is the minimum overlap a column needs to be
    * considered during inhibition.
    """
    syn_perm_inactive_dec: float = 0.01
    """
    * Member "syn_perm_inactive_dec" is subtracted from the permanence of a
    * synapse whose input bit is off when its column learns.
    """
    syn_perm_active_inc: float = 0.10
    """
    * Member "syn_perm_active_inc" is added to the permanence of a synapse
    * whose input bit is on when its column learns.
    """
    syn_perm_connected: float = 0.10
    """
    * Member "syn_perm_connected" is the permanence at or above which a
    * synapse is connected.
    """
    syn_perm_below_stimulus_inc: Optional[float] = None
    """
    * Member "syn_perm_below_stimulus_inc" is added to every permanence of a
    * column whose active duty cycle falls below its minimum. Defaults to
    * syn_perm_connected / 10.
    """
    min_pct_overlap_duty_cycles: float = 0.001
    """
    * Member "min_pct_overlap_duty_cycles" scales the largest overlap duty
    * cycle of a neighborhood into each column's minimum overlap duty cycle.
    """
    min_pct_active_duty_cycles: float = 0.001
    """
    * Member "min_pct_active_duty_cycles" scales the largest active duty
    * cycle of a neighborhood into each column's minimum active duty cycle.
    """
    duty_cycle_period: int = 1000
    """
    * Member "duty_cycle_period" is the time constant of the duty cycle
    * moving averages.
    """
    max_boost: float = 10.0
    """
    * Member "max_boost" is the boost factor used when a column's overlap
    * duty cycle is 0.
    """
    sp_verbosity: int = 0
    """
    * Member "sp_verbosity" prints the parameters at construction when > 0.
    """
    seed: int = 42
    """
    * Member "seed" seeds the session's random generator. Two sessions with
    * the same seed and parameters build identical pools and permanences.
    """
    syn_perm_min: float = 0.0
    syn_perm_max: float = 1.0
    syn_perm_trim_threshold: Optional[float] = None
    """
    * Member "syn_perm_trim_threshold": permanences at or below it are
    * removed. Defaults to syn_perm_active_inc / 2.
    """
    update_period: int = 50
    """
    * Member "update_period" is the number of learning iterations between
    * inhibition radius updates.
    """
    init_connected_pct: float = 0.5
    """
    * Member "init_connected_pct" is the probability that a potential synapse
    * starts out connected.
    """
    wrap_around: bool = True
    """
    * Member "wrap_around" treats the input and column spaces as toroidal when
    * building neighborhoods.
    """

    @property
    def density_mode(self) -> DensityMode:
        if self.local_area_density > 0:
            return FixedDensity(self.local_area_density)
        return TargetCount(self.num_active_columns_per_inh_area)


def _check_dimensions(name: str, dimensions: Sequence[int]) -> Tuple[int, ...]:
    dims = tuple(int(d) for d in dimensions)
    if not dims:
        raise ConfigurationError(f"'{name}' must have at least one dimension.")
    if any(d <= 0 for d in dims):
        raise ConfigurationError(f"'{name}' must be positive, got {dims}.")
    return dims


def _min_candidates(args: SpatialPoolerParameters) -> int:
    """Smallest number of inputs any column can draw its potential pool from.

    Without wrapping a window centred on an edge keeps only radius + 1
    inputs per dimension.
    """
    if args.global_inhibition:
        return prod(args.input_dimensions)
    side = 2 * args.potential_radius + 1 if args.wrap_around else args.potential_radius + 1
    return prod(min(side, d) for d in args.input_dimensions)


def check_parameters(parameters: SpatialPoolerParameters) -> SpatialPoolerParameters:
    """Validate `parameters` and return a copy with derived defaults filled in."""
    args = copy.deepcopy(parameters)

    args.input_dimensions = _check_dimensions("input_dimensions", args.input_dimensions)
    args.column_dimensions = _check_dimensions("column_dimensions", args.column_dimensions)

    num_density_args = 0
    if args.local_area_density >= 0:
        num_density_args += 1
    if args.num_active_columns_per_inh_area >= 0:
        num_density_args += 1
    if num_density_args == 0:
        raise ConfigurationError(
            "Missing argument, need one of: 'local_area_density' or 'num_active_columns_per_inh_area'."
        )
    if num_density_args > 1:
        raise ConfigurationError(
            "Too many arguments, choose only one of: 'local_area_density' or 'num_active_columns_per_inh_area'."
        )
    if args.local_area_density >= 0 and not 0 < args.local_area_density <= 1:
        raise ConfigurationError("'local_area_density' must be in (0, 1].")
    if args.num_active_columns_per_inh_area == 0:
        raise ConfigurationError("'num_active_columns_per_inh_area' must be positive.")

    if not 0 < args.potential_pct <= 1:
        raise ConfigurationError("'potential_pct' must be in (0, 1].")
    if not 0 <= args.init_connected_pct <= 1:
        raise ConfigurationError("'init_connected_pct' must be in [0, 1].")
    if args.potential_radius < 0:
        raise ConfigurationError("'potential_radius' must not be negative.")
    if int(_min_candidates(args) * args.potential_pct + 0.5) == 0:
        raise ConfigurationError(
            "'potential_pct' is too small for 'potential_radius', potential pools would be empty."
        )

    if args.syn_perm_min >= args.syn_perm_max:
        raise ConfigurationError("'syn_perm_min' must be below 'syn_perm_max'.")
    if not args.syn_perm_min <= args.syn_perm_connected <= args.syn_perm_max:
        raise ConfigurationError("'syn_perm_connected' must lie within [syn_perm_min, syn_perm_max].")

    if args.duty_cycle_period < 1:
        raise ConfigurationError("'duty_cycle_period' must be at least 1.")
    if args.max_boost < 1.0:
        raise ConfigurationError("'max_boost' must be at least 1.0.")
    if args.update_period < 1:
        raise ConfigurationError("'update_period' must be at least 1.")

    if args.syn_perm_below_stimulus_inc is None:
        args.syn_perm_below_stimulus_inc = args.syn_perm_connected / 10.0
    if args.syn_perm_trim_threshold is None:
        args.syn_perm_trim_threshold = args.syn_perm_active_inc / 2.0

    return args


def parameter_dump(parameters: SpatialPoolerParameters, **extra: object) -> str:
    """Render name/value pairs for diagnostics. Not meant to be parsed."""
    lines = ["------------ SpatialPooler Parameters ------------------"]
    for name, value in extra.items():
        lines.append(f"{name:<32} = {value}")
    for f in fields(parameters):
        lines.append(f"{f.name:<32} = {getattr(parameters, f.name)}")
    lines.append(f"{'density_mode':<32} = {parameters.density_mode}")
    return "\n".join(lines)
