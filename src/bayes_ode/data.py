"""
Time-series loading and shaping for Bayesian ODE calibration.

Turns a raw delimited table (time, replicate id, observed variables, optional
replicate-level constants) into a validated ``ReplicateSet``.

Example CSV format for a two-replicate SIR experiment:
    time,replicate,S,I,R,N0
    0,A,990,10,0,1000
    1,A,984,14,2,1000
    ...
    0,B,1990,10,0,2000
    ...

Example CSV format for a single logistic culture (no replicate column):
    time,N
    0,10.2
    5,25.9
    ...
"""
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .core import ODESystem
from .exceptions import InsufficientData, ShapeMismatch, ValidationError


MIN_OBSERVATIONS = 2
DEFAULT_REPLICATE_ID = 'all'

ReplicateSelection = Union[str, Sequence[str]]


@dataclass(frozen=True, eq=False)
class TimeSeries:
    """Observations of one replicate on a strictly increasing time grid."""
    replicate_id: str
    time: np.ndarray
    values: np.ndarray  # [T, n_observed]
    observed_names: Tuple[str, ...]
    constants: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        rid = str(self.replicate_id)
        time = np.array(self.time, dtype=np.float64)
        values = np.array(self.values, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, None]
        names = tuple(self.observed_names)

        if time.ndim != 1:
            raise ValidationError("Time must be 1-D", stage='shape', replicate=rid)
        if values.ndim != 2 or values.shape[0] != len(time):
            raise ValidationError(f"Values must be [T, n_observed], got {values.shape} "
                                  f"for {len(time)} time points", stage='shape', replicate=rid)
        if values.shape[1] != len(names):
            raise ValidationError(f"{values.shape[1]} value columns for {len(names)} names",
                                  stage='shape', replicate=rid)
        if len(time) < MIN_OBSERVATIONS:
            raise InsufficientData(f"Replicate has {len(time)} observation(s); "
                                   f"at least {MIN_OBSERVATIONS} are required", replicate=rid)
        if np.any(np.diff(time) <= 0):
            raise ValidationError("Time points must be strictly increasing (duplicates found?)",
                                  stage='shape', replicate=rid)
        if not np.all(np.isfinite(time)) or not np.all(np.isfinite(values)):
            raise ValidationError("Non-finite time or observation values",
                                  stage='shape', replicate=rid)

        time.setflags(write=False)
        values.setflags(write=False)
        object.__setattr__(self, 'replicate_id', rid)
        object.__setattr__(self, 'time', time)
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'observed_names', names)
        object.__setattr__(self, 'constants',
                           MappingProxyType({k: float(v) for k, v in self.constants.items()}))

    @property
    def n_times(self) -> int:
        return len(self.time)

    @property
    def t0(self) -> float:
        return float(self.time[0])

    def column(self, name: str) -> np.ndarray:
        if name not in self.observed_names:
            raise ValidationError(f"'{name}' is not observed", replicate=self.replicate_id)
        return self.values[:, self.observed_names.index(name)]

    def first_observation(self) -> Dict[str, float]:
        return {name: float(v) for name, v in zip(self.observed_names, self.values[0])}


@dataclass(frozen=True, eq=False)
class ReplicateSet:
    """Ordered collection of replicates sharing the same observed variables."""
    replicates: Tuple[TimeSeries, ...]

    def __post_init__(self):
        reps = tuple(self.replicates)
        if not reps:
            raise ValidationError("A ReplicateSet needs at least one replicate", stage='shape')
        ids = [r.replicate_id for r in reps]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"Duplicate replicate ids: {ids}", stage='shape')
        names = reps[0].observed_names
        for rep in reps[1:]:
            if rep.observed_names != names:
                raise ValidationError(f"Observed variables {rep.observed_names} differ from "
                                      f"{names}", stage='shape', replicate=rep.replicate_id)
        object.__setattr__(self, 'replicates', reps)

    def __len__(self) -> int:
        return len(self.replicates)

    def __iter__(self) -> Iterator[TimeSeries]:
        return iter(self.replicates)

    def __getitem__(self, key: Union[int, str]) -> TimeSeries:
        if isinstance(key, (int, np.integer)):
            return self.replicates[key]
        for rep in self.replicates:
            if rep.replicate_id == key:
                return rep
        raise KeyError(f"Unknown replicate '{key}'. Available: {list(self.ids)}")

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(r.replicate_id for r in self.replicates)

    @property
    def observed_names(self) -> Tuple[str, ...]:
        return self.replicates[0].observed_names

    @property
    def is_multi_replicate(self) -> bool:
        return len(self.replicates) > 1

    @property
    def shared_time_grid(self) -> Optional[np.ndarray]:
        """The common time grid, or None if replicates are individually timed."""
        grid = self.replicates[0].time
        for rep in self.replicates[1:]:
            if rep.n_times != len(grid) or not np.allclose(rep.time, grid):
                return None
        return grid

    def select(self, replicates: ReplicateSelection) -> 'ReplicateSet':
        ids = _resolve_selection(replicates, self.ids)
        return ReplicateSet(tuple(self[rid] for rid in ids))

    def to_dataframe(self, time_col: str = 'time',
                     replicate_col: str = 'replicate') -> pd.DataFrame:
        frames = []
        for rep in self.replicates:
            df = pd.DataFrame(rep.values, columns=list(rep.observed_names))
            df.insert(0, replicate_col, rep.replicate_id)
            df.insert(0, time_col, rep.time)
            for name, value in rep.constants.items():
                df[name] = value
            frames.append(df)
        return pd.concat(frames, ignore_index=True)


def _resolve_selection(replicates: ReplicateSelection, available: Sequence[str]) -> List[str]:
    if isinstance(replicates, str):
        selected = list(available) if replicates == 'all' else [replicates]
    else:
        selected = [str(r) for r in replicates]
    if not selected:
        raise ValidationError("Empty replicate selection", stage='shape')
    for rid in selected:
        if rid not in available:
            raise ValidationError(f"Unknown replicate '{rid}'. Available: {list(available)}",
                                  stage='shape', replicate=rid)
    return selected


# ═══════════════════════════════════════════════════════════════
# Dataset Shaper
# ═══════════════════════════════════════════════════════════════

class DatasetShaper:
    """Load raw tabular time series and shape them into a ReplicateSet."""

    def __init__(self,
                 time_col: str = 'time',
                 replicate_col: Optional[str] = 'replicate',
                 observed_cols: Optional[Sequence[str]] = None,
                 constant_cols: Sequence[str] = (),
                 delimiter: str = ',',
                 verbose: bool = False):
        """
        Args:
            time_col: Name of the time column
            replicate_col: Name of the replicate-id column (None: single replicate)
            observed_cols: Observed variable columns (default: every other column)
            constant_cols: Replicate-level constant columns (e.g. total population)
            delimiter: Field delimiter (',', '\\t', r'\\s+', ...)
            verbose: Print a summary of the shaped data
        """
        self.time_col = time_col
        self.replicate_col = replicate_col
        self.observed_cols = list(observed_cols) if observed_cols is not None else None
        self.constant_cols = list(constant_cols)
        self.delimiter = delimiter
        self.verbose = verbose

    def load_csv(self, filename: Union[str, Path],
                 replicates: ReplicateSelection = 'all',
                 constants: Optional[Mapping[str, Mapping[str, float]]] = None,
                 shared_constants: Optional[Mapping[str, float]] = None,
                 multi_replicate: Optional[bool] = None) -> ReplicateSet:
        """Read a delimited file with a header row and shape it (see ``shape``)."""
        filepath = Path(filename)
        if not filepath.exists():
            raise FileNotFoundError(f"Data file not found: {filepath}")

        _engine = 'python' if len(self.delimiter) > 1 else 'c'
        df = pd.read_csv(filepath, sep=self.delimiter, engine=_engine)

        if self.verbose:
            print(f"[Data] Read {len(df)} rows from {filepath.name}")
        return self.shape(df, replicates=replicates, constants=constants,
                          shared_constants=shared_constants, multi_replicate=multi_replicate)

    def shape(self, frame: pd.DataFrame,
              replicates: ReplicateSelection = 'all',
              constants: Optional[Mapping[str, Mapping[str, float]]] = None,
              shared_constants: Optional[Mapping[str, float]] = None,
              multi_replicate: Optional[bool] = None) -> ReplicateSet:
        """Group rows by replicate, validate and build a ReplicateSet.

        Args:
            frame: Raw rows
            replicates: 'all', a single replicate id, or a list of ids
            constants: Per-replicate constants {replicate_id: {name: value}}
            shared_constants: Constants applied to every replicate
            multi_replicate: Require equal time-grid lengths across replicates
                (default: whenever more than one replicate is selected)

        Raises:
            InsufficientData: a selected replicate has fewer than 2 observations
            ShapeMismatch: several replicates with different numbers of time points
            ValidationError: missing columns, duplicate times, non-numeric values
        """
        if self.time_col not in frame.columns:
            raise ValidationError(f"Time column '{self.time_col}' not found. "
                                  f"Columns: {list(frame.columns)}", stage='shape')

        observed = self._observed_columns(frame)
        missing = [c for c in observed + self.constant_cols if c not in frame.columns]
        if missing:
            raise ValidationError(f"Columns not found: {missing}", stage='shape')

        if self.replicate_col and self.replicate_col in frame.columns:
            replicate_ids = frame[self.replicate_col].astype(str)
        else:
            replicate_ids = pd.Series(DEFAULT_REPLICATE_ID, index=frame.index)

        available = list(pd.unique(replicate_ids))
        selected = _resolve_selection(replicates, available)

        groups = {rid: frame[replicate_ids == rid] for rid in selected}

        # Too few observations is reported before any grid comparison
        for rid, rows in groups.items():
            if len(rows) < MIN_OBSERVATIONS:
                raise InsufficientData(f"Replicate has {len(rows)} observation(s); "
                                       f"at least {MIN_OBSERVATIONS} are required",
                                       replicate=rid)

        if multi_replicate is None:
            multi_replicate = len(groups) > 1
        if multi_replicate:
            lengths = {rid: len(rows) for rid, rows in groups.items()}
            if len(set(lengths.values())) > 1:
                raise ShapeMismatch(f"Multi-replicate fitting needs equal numbers of time "
                                    f"points per replicate, got {lengths}")

        series = []
        for rid, rows in groups.items():
            rows = rows.sort_values(self.time_col, kind='mergesort')
            try:
                time = rows[self.time_col].to_numpy(dtype=np.float64)
                values = rows[observed].to_numpy(dtype=np.float64)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Non-numeric time or observation values: {exc}",
                                      stage='shape', replicate=rid) from exc

            rep_constants = dict(shared_constants or {})
            rep_constants.update(self._column_constants(rows, rid))
            if constants is not None and rid in constants:
                rep_constants.update(constants[rid])

            series.append(TimeSeries(
                replicate_id=rid,
                time=time,
                values=values,
                observed_names=tuple(observed),
                constants=rep_constants,
            ))

        replicate_set = ReplicateSet(tuple(series))

        if self.verbose:
            grid = "shared" if replicate_set.shared_time_grid is not None else "individual"
            print(f"[Data] Shaped {len(replicate_set)} replicate(s) {list(replicate_set.ids)}")
            print(f"  Observed: {list(replicate_set.observed_names)}, "
                  f"{replicate_set[0].n_times} time points ({grid} grid)")

        return replicate_set

    def _observed_columns(self, frame: pd.DataFrame) -> List[str]:
        if self.observed_cols is not None:
            return list(self.observed_cols)
        skip = {self.time_col, self.replicate_col, *self.constant_cols}
        observed = [c for c in frame.columns if c not in skip]
        if not observed:
            raise ValidationError("No observed variable columns found", stage='shape')
        return observed

    def _column_constants(self, rows: pd.DataFrame, replicate_id: str) -> Dict[str, float]:
        result = {}
        for col in self.constant_cols:
            unique = pd.unique(rows[col])
            if len(unique) != 1:
                raise ValidationError(f"Constant column '{col}' varies within the replicate: "
                                      f"{list(unique)[:5]}", stage='shape',
                                      replicate=replicate_id)
            result[col] = float(unique[0])
        return result


# ═══════════════════════════════════════════════════════════════
# Synthetic data
# ═══════════════════════════════════════════════════════════════

def simulate_dataset(system: ODESystem,
                     params: Mapping[str, float],
                     y0: Sequence[float],
                     t: Sequence[float],
                     replicates: Optional[Mapping[str, Mapping[str, Any]]] = None,
                     observed: Optional[Sequence[str]] = None,
                     constant_names: Sequence[str] = (),
                     noise_sd: float = 0.0,
                     seed: Optional[int] = None,
                     output_path: Optional[Union[str, Path]] = None,
                     time_col: str = 'time',
                     replicate_col: str = 'replicate') -> pd.DataFrame:
    """Simulate a (possibly multi-replicate) dataset from known parameters.

    Useful for simulation-recovery checks and examples.

    Args:
        system: ODE system to integrate
        params: Parameter and constant values shared by all replicates
        y0: Initial state (default for every replicate)
        t: Observation grid
        replicates: {replicate_id: overrides}; overrides may contain 'y0' and
            any parameter/constant value. None gives a single replicate 'A'.
        observed: Observed names (states or derived); default: all states
        constant_names: Names from params/overrides written as constant columns
        noise_sd: Standard deviation of additive Gaussian observation noise
        seed: Seed for the noise generator
        output_path: If given, also write the table as CSV

    Returns:
        Long-format DataFrame with time, replicate, observed and constant columns
    """
    rng = np.random.default_rng(seed)
    observed = tuple(observed) if observed is not None else system.state_names
    replicates = replicates if replicates is not None else {'A': {}}
    t = np.asarray(t, dtype=np.float64)

    frames = []
    for rid, overrides in replicates.items():
        overrides = dict(overrides)
        rep_y0 = overrides.pop('y0', y0)
        rep_params = {**params, **overrides}

        states = system.solve(rep_y0, rep_params, t)
        values = system.observe(states, rep_params, observed)
        if noise_sd > 0:
            values = values + rng.normal(0.0, noise_sd, size=values.shape)

        df = pd.DataFrame(values, columns=list(observed))
        df.insert(0, replicate_col, str(rid))
        df.insert(0, time_col, t)
        for name in constant_names:
            df[name] = float(rep_params[name])
        frames.append(df)

    data = pd.concat(frames, ignore_index=True)

    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        data.to_csv(output_path, index=False)

    return data
