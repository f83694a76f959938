"""
Bayesian ODE Workflow — Convergence Diagnostics
===============================================
Per-parameter convergence checks on a multi-chain posterior sample:

- R-hat (potential scale reduction): compares between-chain and within-chain
  variance. Target ≈ 1.0; values above ~1.01 indicate non-convergence.
- Effective sample size (bulk and tail): number of independent draws the
  autocorrelated chains are worth.

The statistics themselves come from ArviZ. This module turns them into
per-parameter verdicts and a run-level degraded flag when most chains or
predictive draws failed.

License: MIT
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import warnings

import arviz as az

from .exceptions import DegradedRunWarning
from .samples import PosteriorSamples


RHAT_METHODS = ('rank', 'split', 'folded', 'z_scale', 'identity')


@dataclass(frozen=True)
class ParameterDiagnostics:
    """Convergence statistics of one scalar component."""
    name: str
    rhat: float
    ess_bulk: float
    ess_tail: float
    converged: bool
    low_ess: bool


@dataclass(frozen=True)
class ConvergenceReport:
    """Raw statistics plus converged / degraded verdicts."""
    parameters: Dict[str, ParameterDiagnostics]
    rhat_threshold: float
    min_ess_ratio: float
    n_chains: int
    n_draws: int
    failed_chains: Tuple[int, ...] = ()
    failure_fraction: float = 0.0
    degraded: bool = False

    @property
    def converged(self) -> bool:
        return all(d.converged for d in self.parameters.values())

    @property
    def non_converged(self) -> List[str]:
        return [name for name, d in self.parameters.items() if not d.converged]

    def __getitem__(self, name: str) -> ParameterDiagnostics:
        return self.parameters[name]

    def to_dataframe(self) -> pd.DataFrame:
        rows = [{
            'parameter': d.name,
            'rhat': d.rhat,
            'ess_bulk': d.ess_bulk,
            'ess_tail': d.ess_tail,
            'converged': d.converged,
            'low_ess': d.low_ess,
        } for d in self.parameters.values()]
        return pd.DataFrame(rows, columns=['parameter', 'rhat', 'ess_bulk', 'ess_tail',
                                           'converged', 'low_ess'])

    def summary(self) -> str:
        total = self.n_chains * self.n_draws
        lines = [f"Convergence Diagnostics ({self.n_chains} chains x {self.n_draws} draws)",
                 f"  R-hat (target < {self.rhat_threshold}):"]
        for d in self.parameters.values():
            status = "✓" if d.converged else "✗ WARNING"
            lines.append(f"    {d.name}: {d.rhat:.4f} {status}")
        lines.append("  Effective Sample Size (ESS):")
        for d in self.parameters.values():
            status = "⚠ Low" if d.low_ess else "✓"
            ratio = d.ess_bulk / total if total else float('nan')
            lines.append(f"    {d.name}: {d.ess_bulk:.0f} ({ratio:.1%} of {total}) {status}")
        if self.degraded:
            lines.append(f"  ⚠ Degraded run: {self.failure_fraction:.0%} of units failed")
        return '\n'.join(lines)


def _statistic(values: np.ndarray, func, **kwargs) -> float:
    """ArviZ statistic on a [chain, draw] array; NaN when undefined (e.g. constant chains)."""
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        return float(func(values, **kwargs))


def diagnose(samples: PosteriorSamples,
             rhat_threshold: float = 1.01,
             min_ess_ratio: float = 0.1,
             method: str = 'rank',
             predictive=None,
             verbose: bool = False) -> ConvergenceReport:
    """Compute R-hat and ESS for every scalar component of ``samples``.

    Args:
        samples: Multi-chain posterior sample collection (not modified)
        rhat_threshold: Components with R-hat above this are not converged
        min_ess_ratio: Bulk ESS below this fraction of all draws is flagged low
        method: ArviZ R-hat variant (see RHAT_METHODS)
        predictive: Optional PredictiveEnsemble whose failed draws count
            towards the degraded-run check

    Returns:
        ConvergenceReport
    """
    if method not in RHAT_METHODS:
        raise ValueError(f"Unknown R-hat method '{method}'. Available: {RHAT_METHODS}")
    if rhat_threshold < 1.0:
        raise ValueError(f"rhat_threshold must be >= 1.0, got {rhat_threshold}")

    total = samples.n_samples
    parameters = {}
    for name in samples.parameter_names:
        for label, values in samples.components(name).items():
            rhat = _statistic(values, az.rhat, method=method)
            ess_bulk = _statistic(values, az.ess, method='bulk')
            ess_tail = _statistic(values, az.ess, method='tail')
            parameters[label] = ParameterDiagnostics(
                name=label,
                rhat=rhat,
                ess_bulk=ess_bulk,
                ess_tail=ess_tail,
                converged=bool(np.isfinite(rhat) and rhat <= rhat_threshold),
                low_ess=bool(not np.isfinite(ess_bulk) or ess_bulk < min_ess_ratio * total),
            )

    # Fraction of failed units: chains, and predictive draws when given
    fractions = [len(samples.failed_chains) / samples.n_chains]
    if predictive is not None:
        fractions.append(predictive.failure_fraction())
    failure_fraction = float(max(fractions))
    degraded = failure_fraction > 0.5

    report = ConvergenceReport(
        parameters=parameters,
        rhat_threshold=rhat_threshold,
        min_ess_ratio=min_ess_ratio,
        n_chains=samples.n_chains,
        n_draws=samples.n_draws,
        failed_chains=samples.failed_chains,
        failure_fraction=failure_fraction,
        degraded=degraded,
    )

    if degraded:
        warnings.warn(f"Degraded run: {failure_fraction:.0%} of chains/draws failed; "
                      f"results are of limited use", DegradedRunWarning)
    if verbose:
        print("\n[Diagnostics] " + report.summary())

    return report
