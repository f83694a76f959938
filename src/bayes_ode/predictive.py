"""
Bayesian ODE Workflow — Posterior and Prior Predictive Simulation
=================================================================
Simulates trajectories from parameter draws:

    posterior predictive: θ ~ pooled posterior samples (uniform over chains × draws)
    prior predictive:     θ ~ independent priors of every Parameter

Each draw is integrated once per replicate over a dense output grid, starting
from the draw's initial condition at the replicate's first observation time.

Draw i is a pure function of the i-th child of ``SeedSequence(seed)`` and the
read-only ModelSpec / ReplicateSet, so the ensemble is lazy, restartable and
safe to evaluate in a thread pool. An integration failure is recorded on
that trajectory and never stops the remaining draws.

License: MIT
"""

import threading
import time
from collections import deque

import numpy as np
import pandas as pd
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from tqdm import tqdm

from .core import ADAPTIVE_METHODS
from .data import ReplicateSet
from .exceptions import IntegrationFailure, ValidationError
from .model_spec import ModelSpec, ParameterRole
from .samples import PosteriorSamples


DEFAULT_QUANTILES = (0.025, 0.5, 0.975)


@dataclass
class PredictiveConfig:
    """Configuration for predictive simulation."""
    include_noise: bool = False     # Add observation noise from the drawn noise scale
    n_workers: int = 1              # Threads used by collect()
    timeout: Optional[float] = None  # Seconds per draw before it is marked failed
    ode_method: str = 'LSODA'
    rtol: float = 1e-6
    atol: float = 1e-8
    progressbar: bool = False
    verbose: bool = False

    def __post_init__(self):
        if self.n_workers < 1:
            raise ValidationError(f"n_workers must be >= 1, got {self.n_workers}",
                                  stage='predict')
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"timeout must be > 0, got {self.timeout}", stage='predict')
        if self.ode_method not in ADAPTIVE_METHODS:
            raise ValidationError(f"Unknown ODE method '{self.ode_method}'", stage='predict')


@dataclass(frozen=True, eq=False)
class PredictiveTrajectory:
    """One simulated trajectory of one replicate."""
    draw_index: int
    replicate_id: str
    time: np.ndarray
    states: Optional[np.ndarray]      # [T, n_states], None on failure
    observed: Optional[np.ndarray]    # [T, n_observed], None on failure
    parameters: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[IntegrationFailure] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


# ═══════════════════════════════════════════════════════════════
# Ensemble
# ═══════════════════════════════════════════════════════════════

class PredictiveEnsemble:
    """Lazy, finite, restartable sequence of predictive trajectories.

    Iteration yields draws in order, each draw contributing one trajectory
    per replicate: ``len(ensemble) == n_draws * n_replicates``.
    """

    def __init__(self, predictor: 'PosteriorPredictor', n_draws: int,
                 t_eval: Optional[np.ndarray], seed: Optional[int],
                 samples: Optional[PosteriorSamples] = None):
        self._predictor = predictor
        self.n_draws = int(n_draws)
        self.t_eval = t_eval
        self.seed = seed
        self.samples = samples
        self.kind = 'prior' if samples is None else 'posterior'
        self._seeds = np.random.SeedSequence(seed).spawn(self.n_draws)
        self._collected: Optional[List[PredictiveTrajectory]] = None

    @property
    def n_replicates(self) -> int:
        return len(self._predictor.replicate_set)

    def __len__(self) -> int:
        return self.n_draws * self.n_replicates

    def __iter__(self) -> Iterator[PredictiveTrajectory]:
        for i in range(self.n_draws):
            yield from self.simulate_draw(i)

    def simulate_draw(self, draw_index: int,
                      cancel: Optional[threading.Event] = None) -> List[PredictiveTrajectory]:
        """All replicate trajectories of one draw (deterministic per index)."""
        if not 0 <= draw_index < self.n_draws:
            raise IndexError(f"Draw {draw_index} out of range [0, {self.n_draws})")
        rng = np.random.default_rng(self._seeds[draw_index])
        return self._predictor._simulate(rng, draw_index, self.t_eval, self.samples, cancel)

    def collect(self, n_workers: Optional[int] = None,
                timeout: Optional[float] = None) -> List[PredictiveTrajectory]:
        """Evaluate every draw eagerly, optionally in a thread pool.

        A draw still running ``timeout`` seconds after it started is marked
        failed and its integration is cancelled; the remaining draws carry on
        with a fresh worker.
        """
        cfg = self._predictor.config
        n_workers = n_workers or cfg.n_workers
        timeout = timeout if timeout is not None else cfg.timeout

        with tqdm(total=self.n_draws, desc=f"{self.kind.capitalize()} predictive",
                  disable=not cfg.progressbar) as pbar:
            if n_workers == 1 and timeout is None:
                by_draw = {}
                for i in range(self.n_draws):
                    by_draw[i] = self.simulate_draw(i)
                    pbar.update(1)
            else:
                by_draw = self._collect_pooled(n_workers, timeout, pbar)

        results = [traj for i in range(self.n_draws) for traj in by_draw[i]]
        self._collected = results
        if cfg.verbose:
            n_failed = sum(t.failed for t in results)
            print(f"[Predictive] {len(results)} trajectories "
                  f"({self.n_draws} draws x {self.n_replicates} replicates), {n_failed} failed")
        return results

    def _collect_pooled(self, n_workers: int, timeout: Optional[float],
                        pbar) -> Dict[int, List[PredictiveTrajectory]]:
        # Abandoned draws keep a thread until they notice the cancel event,
        # so the pool may grow past n_workers; at most n_workers draws are live.
        max_threads = n_workers if timeout is None else n_workers + self.n_draws
        poll = None if timeout is None else min(0.05, timeout / 4)
        pending = deque(range(self.n_draws))
        running: Dict[Future, int] = {}
        started: Dict[int, float] = {}
        cancels: Dict[int, threading.Event] = {}
        by_draw: Dict[int, List[PredictiveTrajectory]] = {}

        def run(i):
            started[i] = time.monotonic()
            return self.simulate_draw(i, cancel=cancels[i])

        executor = ThreadPoolExecutor(max_workers=max_threads)
        try:
            while pending or running:
                while pending and len(running) < n_workers:
                    i = pending.popleft()
                    cancels[i] = threading.Event()
                    running[executor.submit(run, i)] = i

                done, _ = wait(running, timeout=poll, return_when=FIRST_COMPLETED)
                for future in done:
                    by_draw[running.pop(future)] = future.result()
                    pbar.update(1)

                if timeout is not None:
                    now = time.monotonic()
                    for future, i in list(running.items()):
                        if i in started and now - started[i] > timeout:
                            cancels[i].set()
                            del running[future]
                            by_draw[i] = self._timed_out(i, timeout)
                            pbar.update(1)
        finally:
            for event in cancels.values():
                event.set()
            executor.shutdown(wait=False, cancel_futures=True)
        return by_draw

    def _timed_out(self, draw_index: int, timeout: float) -> List[PredictiveTrajectory]:
        error = IntegrationFailure(f"Draw timed out after {timeout:g} s",
                                   draw_index=draw_index, stage='predict')
        rng = np.random.default_rng(self._seeds[draw_index])
        _, recorded = self._predictor._draw(rng, self.samples)
        return [PredictiveTrajectory(draw_index=draw_index, replicate_id=rep.replicate_id,
                                     time=self._predictor.output_grid(rep, self.t_eval),
                                     states=None, observed=None,
                                     parameters=recorded[rep.replicate_id][1], error=error)
                for rep in self._predictor.replicate_set]

    def _results(self) -> List[PredictiveTrajectory]:
        if self._collected is None:
            self.collect()
        return self._collected

    # ── aggregation ──

    @property
    def failures(self) -> List[PredictiveTrajectory]:
        return [t for t in self._results() if t.failed]

    def failure_fraction(self) -> float:
        """Fraction of draws with at least one failed replicate trajectory."""
        if self.n_draws == 0:
            return 0.0
        failed_draws = {t.draw_index for t in self.failures}
        return len(failed_draws) / self.n_draws

    def to_dataframe(self, replicate_col: str = 'replicate') -> pd.DataFrame:
        """Long table of successful trajectories.

        Columns: draw, replicate, time, one column per state and one
        '<name>_obs' column per observed variable.
        """
        spec = self._predictor.spec
        state_cols = list(spec.system.state_names)
        obs_cols = [f"{name}_obs" for name in spec.observed]
        frames = []
        for traj in self._results():
            if traj.failed:
                continue
            df = pd.DataFrame(np.hstack([traj.states, traj.observed]),
                              columns=state_cols + obs_cols)
            df.insert(0, 'time', traj.time)
            df.insert(0, replicate_col, traj.replicate_id)
            df.insert(0, 'draw', traj.draw_index)
            frames.append(df)
        if not frames:
            return pd.DataFrame(columns=['draw', replicate_col, 'time'] + state_cols + obs_cols)
        return pd.concat(frames, ignore_index=True)

    def quantiles(self, q: Sequence[float] = DEFAULT_QUANTILES) -> pd.DataFrame:
        """Per-time credible bands of the observed variables.

        Returns:
            DataFrame with replicate, time, variable and one column per
            quantile (e.g. 'q0.025'); failed trajectories are excluded.
        """
        q = [float(v) for v in q]
        if any(not 0.0 <= v <= 1.0 for v in q):
            raise ValueError(f"Quantiles must lie in [0, 1], got {q}")

        columns = ['replicate', 'time', 'variable'] + [f"q{v:g}" for v in q]
        names = self._predictor.spec.observed
        by_replicate: Dict[str, List[PredictiveTrajectory]] = {}
        for traj in self._results():
            if not traj.failed:
                by_replicate.setdefault(traj.replicate_id, []).append(traj)

        rows = []
        for rid, trajs in by_replicate.items():
            stacked = np.stack([t.observed for t in trajs])  # [n, T, n_obs]
            bands = np.quantile(stacked, q, axis=0)  # [n_q, T, n_obs]
            time = trajs[0].time
            for j, name in enumerate(names):
                for k, t in enumerate(time):
                    rows.append([rid, float(t), name] + [float(b) for b in bands[:, k, j]])
        return pd.DataFrame(rows, columns=columns)


# ═══════════════════════════════════════════════════════════════
# Predictor
# ═══════════════════════════════════════════════════════════════

class PosteriorPredictor:
    """Generate predictive ensembles for a ModelSpec and its replicates."""

    def __init__(self, spec: ModelSpec, replicate_set: ReplicateSet,
                 config: Optional[PredictiveConfig] = None):
        """
        Args:
            spec: Model specification
            replicate_set: Replicates providing t0, constants and first observations
            config: Simulation settings
        """
        spec.check_data(replicate_set)
        self.spec = spec
        self.replicate_set = replicate_set
        self.config = config or PredictiveConfig()

    def posterior_predictive(self, samples: PosteriorSamples, n_draws: int,
                             t_eval: Optional[Sequence[float]] = None,
                             seed: Optional[int] = None) -> PredictiveEnsemble:
        """Ensemble of ``n_draws`` draws picked uniformly from the pooled samples.

        ``t_eval=None`` uses each replicate's own observation grid.
        """
        missing = [n for n in self.spec.parameter_names if n not in samples]
        if missing:
            raise ValidationError(f"Samples lack quantities {missing}", stage='predict')
        if self.spec.per_replicate_parameters:
            for rid in self.replicate_set.ids:
                if rid not in samples.replicate_ids:
                    raise ValidationError(f"No posterior draws for replicate '{rid}'. "
                                          f"Sampled replicates: {list(samples.replicate_ids)}",
                                          stage='predict', replicate=rid)
        return self._ensemble(n_draws, t_eval, seed, samples)

    def prior_predictive(self, n_draws: int,
                         t_eval: Optional[Sequence[float]] = None,
                         seed: Optional[int] = None) -> PredictiveEnsemble:
        """Ensemble of ``n_draws`` draws from the priors (no fitting required)."""
        return self._ensemble(n_draws, t_eval, seed, None)

    def _ensemble(self, n_draws, t_eval, seed, samples) -> PredictiveEnsemble:
        if n_draws < 0:
            raise ValidationError(f"n_draws must be >= 0, got {n_draws}", stage='predict')
        if t_eval is not None:
            t_eval = np.array(t_eval, dtype=np.float64)
            if t_eval.ndim != 1 or len(t_eval) == 0:
                raise ValidationError("t_eval must be a non-empty 1-D grid", stage='predict')
            if np.any(np.diff(t_eval) <= 0):
                raise ValidationError("t_eval must be strictly increasing", stage='predict')
            for rep in self.replicate_set:
                if t_eval[0] < rep.t0:
                    raise ValidationError(f"t_eval starts at {t_eval[0]}, before the first "
                                          f"observation t0={rep.t0}", stage='predict',
                                          replicate=rep.replicate_id)
            t_eval.setflags(write=False)

        if self.config.verbose:
            source = 'posterior' if samples is not None else 'prior'
            print(f"[Predictive] {n_draws} {source} draws x {len(self.replicate_set)} "
                  f"replicate(s), seed={seed}")
        return PredictiveEnsemble(self, n_draws, t_eval, seed, samples)

    @staticmethod
    def output_grid(replicate, t_eval: Optional[np.ndarray]) -> np.ndarray:
        return replicate.time if t_eval is None else t_eval

    # ── one draw ──

    def _draw_values(self, rng: np.random.Generator,
                     samples: Optional[PosteriorSamples]) -> Dict[str, np.ndarray]:
        """Parameter values of one draw (per-replicate quantities as vectors)."""
        spec = self.spec
        if samples is not None:
            index = int(rng.integers(samples.n_samples))
            point = samples.point(index)
            return {name: np.asarray(point[name]) for name in spec.parameter_names}

        n_reps = len(self.replicate_set)
        values = {}
        for p in spec.estimated_parameters:
            size = n_reps if p.role is ParameterRole.PER_REPLICATE else None
            values[p.name] = np.asarray(p.prior.sample(rng, size=size), dtype=np.float64)
        if spec.noise.estimated:
            values[spec.noise.name] = spec.noise.sample_scale(rng, len(spec.observed))
        return values

    def _replicate_values(self, values: Mapping[str, np.ndarray], r: int,
                          samples: Optional[PosteriorSamples], replicate_id: str) -> Dict[str, float]:
        result = {}
        for p in self.spec.estimated_parameters:
            v = values[p.name]
            if p.role is ParameterRole.PER_REPLICATE:
                idx = samples.replicate_ids.index(replicate_id) if samples is not None else r
                v = v[idx]
            result[p.name] = float(v)
        return result

    def _noise_scale(self, values: Mapping[str, np.ndarray]) -> np.ndarray:
        noise = self.spec.noise
        if not noise.estimated:
            return np.full(len(self.spec.observed), float(noise.sigma))
        return np.broadcast_to(np.asarray(values[noise.name], dtype=np.float64),
                               (len(self.spec.observed),))

    def _draw(self, rng: np.random.Generator, samples: Optional[PosteriorSamples]):
        """Noise scale and per-replicate (values, recorded parameters) of one draw."""
        spec = self.spec
        values = self._draw_values(rng, samples)
        scale = self._noise_scale(values)
        per_replicate = {}
        for r, rep in enumerate(self.replicate_set):
            rep_values = self._replicate_values(values, r, samples, rep.replicate_id)
            recorded = dict(rep_values)
            if spec.noise.estimated:
                recorded[spec.noise.name] = (tuple(float(s) for s in scale)
                                             if spec.noise.per_variable else float(scale[0]))
            per_replicate[rep.replicate_id] = (rep_values, recorded)
        return scale, per_replicate

    def _simulate(self, rng: np.random.Generator, draw_index: int,
                  t_eval: Optional[np.ndarray],
                  samples: Optional[PosteriorSamples],
                  cancel: Optional[threading.Event] = None) -> List[PredictiveTrajectory]:
        spec = self.spec
        cfg = self.config
        scale, per_replicate = self._draw(rng, samples)

        trajectories = []
        for rep in self.replicate_set:
            rep_values, recorded = per_replicate[rep.replicate_id]
            constants = spec.replicate_constants(rep)
            params = spec.ode_parameters(rep_values, constants)
            grid = self.output_grid(rep, t_eval)

            try:
                y0 = [float(v) for v in
                      spec.initial_state(rep_values, constants, rep.first_observation())]
                states = spec.system.solve(y0, params, grid, t0=rep.t0,
                                           method=cfg.ode_method, rtol=cfg.rtol,
                                           atol=cfg.atol, draw_index=draw_index,
                                           cancel=cancel)
            except IntegrationFailure as exc:
                exc.draw_index = draw_index
                exc.stage = 'predict'
                exc.replicate = rep.replicate_id
                trajectories.append(PredictiveTrajectory(
                    draw_index=draw_index, replicate_id=rep.replicate_id, time=grid,
                    states=None, observed=None, parameters=recorded, error=exc))
                continue

            observed = spec.system.observe(states, params, spec.observed)
            if cfg.include_noise:
                observed = spec.noise.add_noise(observed, scale, rng)
            trajectories.append(PredictiveTrajectory(
                draw_index=draw_index, replicate_id=rep.replicate_id, time=grid,
                states=states, observed=observed, parameters=recorded))
        return trajectories
