"""
Posterior sample collection produced by the calibrator.

Draws are stored per chain, ``(chain, draw)`` for shared quantities and
``(chain, draw, replicate)`` for per-replicate ones (``(chain, draw,
observed)`` for a per-variable noise scale). Arrays are read-only;
diagnostics and prediction never modify a collection.
"""
import json

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple

import arviz as az

from .exceptions import ValidationError


@dataclass(frozen=True, eq=False)
class PosteriorSamples:
    """Per-chain posterior draws plus sampler bookkeeping."""
    draws: Mapping[str, np.ndarray]
    replicate_ids: Tuple[str, ...] = ()
    log_posterior: Optional[np.ndarray] = None  # [chain, draw]
    acceptance_rate: Optional[np.ndarray] = None  # [chain]
    failed_chains: Tuple[int, ...] = ()
    inference_data: Optional[az.InferenceData] = None
    trailing_dims: Mapping[str, str] = field(default_factory=dict)  # name -> 'replicate' | 'observed'

    def __post_init__(self):
        if not self.draws:
            raise ValidationError("A posterior sample collection needs at least one quantity",
                                  stage='calibrate')
        frozen = {}
        shape = None
        for name, values in self.draws.items():
            arr = np.array(values, dtype=np.float64)
            if arr.ndim < 2:
                raise ValidationError(f"Draws of '{name}' must be [chain, draw, ...], "
                                      f"got shape {arr.shape}", stage='calibrate', parameter=name)
            if shape is None:
                shape = arr.shape[:2]
            elif arr.shape[:2] != shape:
                raise ValidationError(f"Draws of '{name}' have {arr.shape[:2]} chains x draws, "
                                      f"expected {shape}", stage='calibrate', parameter=name)
            arr.setflags(write=False)
            frozen[name] = arr
        object.__setattr__(self, 'draws', frozen)
        object.__setattr__(self, 'replicate_ids', tuple(self.replicate_ids))
        object.__setattr__(self, 'failed_chains', tuple(int(c) for c in self.failed_chains))
        object.__setattr__(self, 'trailing_dims', dict(self.trailing_dims))

        if self.log_posterior is not None:
            lp = np.array(self.log_posterior, dtype=np.float64)
            if lp.shape != shape:
                raise ValidationError(f"log_posterior has shape {lp.shape}, expected {shape}",
                                      stage='calibrate')
            lp.setflags(write=False)
            object.__setattr__(self, 'log_posterior', lp)
        if self.acceptance_rate is not None:
            acc = np.array(self.acceptance_rate, dtype=np.float64)
            acc.setflags(write=False)
            object.__setattr__(self, 'acceptance_rate', acc)

    # ── shape ──

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return tuple(self.draws)

    @property
    def n_chains(self) -> int:
        return next(iter(self.draws.values())).shape[0]

    @property
    def n_draws(self) -> int:
        """Kept draws per chain."""
        return next(iter(self.draws.values())).shape[1]

    @property
    def n_samples(self) -> int:
        return self.n_chains * self.n_draws

    def __getitem__(self, name: str) -> np.ndarray:
        return self.draws[name]

    def __contains__(self, name: str) -> bool:
        return name in self.draws

    # ── access ──

    def pooled(self, name: str) -> np.ndarray:
        """Draws of one quantity with chains concatenated: [n_samples, ...]."""
        arr = self.draws[name]
        return arr.reshape((self.n_samples,) + arr.shape[2:])

    def point(self, index: int) -> Dict[str, np.ndarray]:
        """All quantities at one pooled sample index (chain-major order)."""
        if not 0 <= index < self.n_samples:
            raise IndexError(f"Sample index {index} out of range [0, {self.n_samples})")
        chain, draw = divmod(int(index), self.n_draws)
        return {name: arr[chain, draw] for name, arr in self.draws.items()}

    def component_names(self, name: str) -> Tuple[str, ...]:
        """Labels of the scalar components of a quantity, e.g. ('I0[A]', 'I0[B]')."""
        arr = self.draws[name]
        if arr.ndim == 2:
            return (name,)
        labels = self._trailing_labels(name, arr.shape[2])
        return tuple(f"{name}[{label}]" for label in labels)

    def components(self, name: str) -> Dict[str, np.ndarray]:
        """Scalar [chain, draw] arrays per component of a quantity."""
        arr = self.draws[name]
        if arr.ndim == 2:
            return {name: arr}
        flat = arr.reshape(arr.shape[:2] + (-1,))
        return {label: flat[:, :, i] for i, label in enumerate(self.component_names(name))}

    def _trailing_labels(self, name: str, size: int) -> Sequence[str]:
        if self.trailing_dims.get(name, 'replicate') == 'replicate' \
                and len(self.replicate_ids) == size:
            return self.replicate_ids
        return [str(i) for i in range(size)]

    def drop_chains(self, chains: Sequence[int]) -> 'PosteriorSamples':
        """Collection without the given chains (e.g. keep only completed chains)."""
        keep = [c for c in range(self.n_chains) if c not in set(chains)]
        if not keep:
            raise ValidationError("Cannot drop every chain", stage='calibrate')
        return PosteriorSamples(
            draws={n: a[keep] for n, a in self.draws.items()},
            replicate_ids=self.replicate_ids,
            log_posterior=None if self.log_posterior is None else self.log_posterior[keep],
            acceptance_rate=None if self.acceptance_rate is None else self.acceptance_rate[keep],
            failed_chains=tuple(keep.index(c) for c in self.failed_chains if c in keep),
            trailing_dims=self.trailing_dims,
        )

    # ── export ──

    def to_dataframe(self) -> pd.DataFrame:
        """Posterior table: chain, draw, one column per scalar component."""
        chain_idx, draw_idx = np.meshgrid(np.arange(self.n_chains), np.arange(self.n_draws),
                                          indexing='ij')
        table = {'chain': chain_idx.ravel(), 'draw': draw_idx.ravel()}
        for name in self.draws:
            for label, values in self.components(name).items():
                table[label] = values.ravel()
        if self.log_posterior is not None:
            table['log_posterior'] = self.log_posterior.ravel()
        return pd.DataFrame(table)

    def to_inference_data(self, sample_stats: Optional[Mapping[str, np.ndarray]] = None,
                          from_draws: bool = False) -> az.InferenceData:
        """ArviZ view of the draws.

        The sampler's own InferenceData is returned when available, unless
        ``from_draws`` asks for a fresh one built from the stored arrays.
        """
        if self.inference_data is not None and not from_draws:
            return self.inference_data
        coords = {}
        dims = {}
        for name, arr in self.draws.items():
            if arr.ndim == 3:
                dim = self.trailing_dims.get(name, 'replicate')
                labels = list(self._trailing_labels(name, arr.shape[2]))
                if dim in coords and coords[dim] != labels:
                    dim = f"{name}_dim"
                coords[dim] = labels
                dims[name] = [dim]
        return az.from_dict(posterior={n: np.asarray(a) for n, a in self.draws.items()},
                            sample_stats=sample_stats, coords=coords, dims=dims)

    @classmethod
    def from_inference_data(cls, idata: az.InferenceData,
                            var_names: Sequence[str],
                            replicate_ids: Sequence[str] = (),
                            trailing_dims: Optional[Mapping[str, str]] = None,
                            **kwargs) -> 'PosteriorSamples':
        posterior = idata.posterior
        draws = {name: posterior[name].values for name in var_names}
        return cls(draws=draws, replicate_ids=tuple(replicate_ids), inference_data=idata,
                   trailing_dims=trailing_dims or {}, **kwargs)


def summarize_posterior(samples: PosteriorSamples,
                        credible_interval: float = 0.95) -> Dict[str, Dict[str, float]]:
    """Summary statistics per scalar component.

    Returns:
        {component: {'mean', 'median', 'std', 'ci_lower', 'ci_upper', 'rhat', 'ess'}}
    """
    if not 0 < credible_interval < 1:
        raise ValueError(f"credible_interval must be in (0, 1), got {credible_interval}")

    summary = {}
    for name in samples.parameter_names:
        for label, values in samples.components(name).items():
            pooled = values.ravel()
            hdi = az.hdi(pooled, hdi_prob=credible_interval)
            summary[label] = {
                'mean': float(np.mean(pooled)),
                'median': float(np.median(pooled)),
                'std': float(np.std(pooled, ddof=1)) if pooled.size > 1 else 0.0,
                'ci_lower': float(hdi[0]),
                'ci_upper': float(hdi[1]),
                'rhat': float(az.rhat(values)) if samples.n_draws >= 4 else float('nan'),
                'ess': float(az.ess(values)) if samples.n_draws >= 4 else float('nan'),
            }
    return summary


# Posterior attributes holding the bookkeeping of a saved collection
_METADATA_ATTRS = ('replicate_ids', 'failed_chains', 'acceptance_rate', 'trailing_dims')


def save_samples(samples: PosteriorSamples, filepath: str, verbose: bool = False) -> None:
    """Save the posterior draws and sampler bookkeeping to a netCDF file.

    Replicate ids, failed chains, acceptance rates and trailing dimensions go
    into the posterior attributes; the log posterior into ``sample_stats``.
    """
    sample_stats = None
    if samples.log_posterior is not None:
        sample_stats = {'log_posterior': np.asarray(samples.log_posterior)}
    idata = samples.to_inference_data(sample_stats=sample_stats, from_draws=True)

    acceptance = samples.acceptance_rate
    metadata = {
        'replicate_ids': list(samples.replicate_ids),
        'failed_chains': list(samples.failed_chains),
        'acceptance_rate': None if acceptance is None else [float(a) for a in acceptance],
        'trailing_dims': dict(samples.trailing_dims),
    }
    idata.posterior.attrs.update({f"bayes_ode_{k}": json.dumps(v) for k, v in metadata.items()})

    az.to_netcdf(idata, filepath)
    if verbose:
        print(f"[Bayesian] Trace saved to {filepath}")


def load_samples(filepath: str, var_names: Optional[Sequence[str]] = None,
                 replicate_ids: Sequence[str] = (), verbose: bool = False) -> PosteriorSamples:
    """Load draws saved with ``save_samples`` (or any ArviZ netCDF trace).

    ``replicate_ids`` overrides the stored ids; without either, the ids come
    from a ``replicate`` coordinate when the trace has one.
    """
    idata = az.from_netcdf(filepath)
    posterior = idata.posterior
    if var_names is None:
        var_names = [v for v in posterior.data_vars
                     if v not in ('log_likelihood', 'log_prior', 'log_posterior')]

    metadata = {key: json.loads(posterior.attrs[f"bayes_ode_{key}"])
                for key in _METADATA_ATTRS if f"bayes_ode_{key}" in posterior.attrs}
    if not replicate_ids:
        if 'replicate_ids' in metadata:
            replicate_ids = metadata['replicate_ids']
        elif 'replicate' in posterior.coords:
            replicate_ids = [str(v) for v in posterior.coords['replicate'].values]

    log_posterior = None
    if hasattr(idata, 'sample_stats') and 'log_posterior' in idata.sample_stats:
        log_posterior = idata.sample_stats['log_posterior'].values

    if verbose:
        print(f"[Bayesian] Trace loaded from {filepath}")
    return PosteriorSamples.from_inference_data(
        idata, var_names,
        replicate_ids=replicate_ids,
        trailing_dims=metadata.get('trailing_dims'),
        log_posterior=log_posterior,
        acceptance_rate=metadata.get('acceptance_rate'),
        failed_chains=metadata.get('failed_chains', ()),
    )
