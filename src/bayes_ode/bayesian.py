"""
Bayesian ODE Workflow — MCMC Calibration
========================================
Fits a ModelSpec to a ReplicateSet with PyMC and returns per-chain posterior
draws.

Mathematical Framework:
    Bayes' Theorem: P(θ|D) ∝ P(D|θ) × P(θ)

    θ = shared parameters, per-replicate parameters (e.g. free initial
        conditions) and the observation noise scale
    P(D|θ) = Π_replicates Π_t Π_vars  Noise(y_obs | ODE(θ, y0)(t), σ)

    The ODE is integrated with an adaptive-step solver (scipy solve_ivp)
    across the full observed span at every evaluated parameter point.

Robustness:
    A parameter point for which integration diverges (or exhausts its
    evaluation budget) gets log density -inf; every offered sampler rejects
    it and the run carries on. Only a failure at the starting point, or
    chains that never accept a single move, are reported as
    FatalIntegrationFailure.

Usage:
    calibrator = BayesianCalibrator(spec, CalibrationConfig(n_chains=4, seed=1))
    samples = calibrator.calibrate(replicate_set)
    summary = calibrator.summarize_posterior()

License: MIT
"""

import numpy as np
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union
import warnings

import pymc as pm
import pytensor.tensor as pt
from pymc.exceptions import SamplingError
from pytensor.graph.basic import Apply
from pytensor.graph.op import Op

from .core import ADAPTIVE_METHODS
from .data import ReplicateSet, TimeSeries
from .diagnostics import ConvergenceReport, diagnose
from .exceptions import FatalIntegrationFailure, IntegrationFailure, ValidationError
from .model_spec import ModelSpec, ParameterRole
from .samples import PosteriorSamples, load_samples, save_samples, summarize_posterior


SAMPLERS = ('DEMetropolisZ', 'Metropolis', 'Slice')


# ═══════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════

@dataclass
class CalibrationConfig:
    """Configuration for MCMC calibration."""
    n_chains: int = 4              # Number of independent MCMC chains
    n_draws: int = 2000            # Kept draws per chain (after warm-up)
    n_tune: int = 1000             # Warm-up / tuning steps per chain
    sampler: str = 'DEMetropolisZ'  # Gradient-free: 'DEMetropolisZ', 'Metropolis', 'Slice'
    seed: Optional[int] = 42       # Fixed seed gives reproducible draws

    # Starting points: None (sampler default), one dict, or one dict per chain
    initvals: Optional[Union[Dict[str, Any], Sequence[Dict[str, Any]]]] = None

    # ODE solver
    ode_method: str = 'LSODA'
    rtol: float = 1e-6
    atol: float = 1e-8

    # Computational
    cores: int = 4                 # Parallel chain processes
    progressbar: bool = True
    verbose: bool = True

    # Outputs and diagnostics
    compute_log_posterior: bool = True
    check_convergence: bool = True
    rhat_threshold: float = 1.01

    def __post_init__(self):
        if self.n_chains < 1:
            raise ValidationError(f"n_chains must be >= 1, got {self.n_chains}", stage='calibrate')
        if self.n_draws < 1:
            raise ValidationError(f"n_draws must be >= 1, got {self.n_draws}", stage='calibrate')
        if self.n_tune < 0:
            raise ValidationError(f"n_tune must be >= 0, got {self.n_tune}", stage='calibrate')
        if self.sampler not in SAMPLERS:
            raise ValidationError(f"Unknown sampler '{self.sampler}'. Available: {SAMPLERS}",
                                  stage='calibrate')
        if self.ode_method not in ADAPTIVE_METHODS:
            raise ValidationError(f"Unknown ODE method '{self.ode_method}'. "
                                  f"Available: {list(ADAPTIVE_METHODS)}", stage='calibrate')
        if isinstance(self.initvals, (list, tuple)) and len(self.initvals) != self.n_chains:
            raise ValidationError(f"{len(self.initvals)} initvals for {self.n_chains} chains",
                                  stage='calibrate')


# ═══════════════════════════════════════════════════════════════
# ODE solution as a PyTensor operation
# ═══════════════════════════════════════════════════════════════

class ODESolutionOp(Op):
    """Integrate one replicate's ODE inside the PyMC graph.

    Inputs:  theta [n_model_parameters] in ``spec.parameters`` order,
             y0    [n_states]
    Output:  [T, n_observed] predicted observations on the replicate's grid;
             all-NaN when integration fails; the model maps that to a log
             density of -inf so the proposal is rejected.

    No gradient is provided; use a gradient-free sampler.
    """

    def __init__(self, spec: ModelSpec, replicate: TimeSeries,
                 method: str = 'LSODA', rtol: float = 1e-6, atol: float = 1e-8):
        self.system = spec.system
        self.parameter_names = tuple(p.name for p in spec.parameters)
        self.observed = spec.observed
        self.constants = spec.replicate_constants(replicate)
        self.time = np.asarray(replicate.time, dtype=np.float64)
        self.replicate_id = replicate.replicate_id
        self.method = method
        self.rtol = rtol
        self.atol = atol

    def make_node(self, theta, y0):
        theta = pt.cast(pt.as_tensor_variable(theta), 'float64')
        y0 = pt.cast(pt.as_tensor_variable(y0), 'float64')
        return Apply(self, [theta, y0], [pt.dmatrix()])

    def perform(self, node, inputs, output_storage):
        theta, y0 = inputs
        output_storage[0][0] = self.simulate(theta, y0)

    def infer_shape(self, fgraph, node, input_shapes):
        return [(len(self.time), len(self.observed))]

    def simulate(self, theta: np.ndarray, y0: np.ndarray) -> np.ndarray:
        params = dict(zip(self.parameter_names, (float(v) for v in theta)))
        params.update(self.constants)
        try:
            states = self.system.solve(y0, params, self.time, method=self.method,
                                       rtol=self.rtol, atol=self.atol)
        except IntegrationFailure:
            return np.full((len(self.time), len(self.observed)), np.nan)
        return np.asarray(self.system.observe(states, params, self.observed), dtype=np.float64)


# ═══════════════════════════════════════════════════════════════
# Bayesian Calibrator — Main Class
# ═══════════════════════════════════════════════════════════════

class BayesianCalibrator:
    """Bayesian parameter estimation via MCMC for ODE population models.

    Shared parameters are scalar random variables; per-replicate parameters
    (including free initial conditions) are vectors over the ``replicate``
    dimension. Each replicate is integrated separately with its own
    constants and time grid.
    """

    def __init__(self, spec: ModelSpec, config: Optional[CalibrationConfig] = None):
        """
        Args:
            spec: Validated model specification
            config: MCMC configuration
        """
        self.spec = spec
        self.config = config or CalibrationConfig()

        # Model, samples and report (populated by calibrate)
        self.model: Optional[pm.Model] = None
        self.samples: Optional[PosteriorSamples] = None
        self.report: Optional[ConvergenceReport] = None

        if self.config.verbose:
            print(f"[Bayesian] Initialized with {len(spec.parameter_names)} estimated quantities")
            print(f"[Bayesian] Sampler: {self.config.sampler}, Chains: {self.config.n_chains}")

    def build_model(self, data: ReplicateSet) -> pm.Model:
        """Build the PyMC model with priors and per-replicate likelihoods."""
        spec = self.spec
        cfg = self.config
        coords = {'replicate': list(data.ids), 'observed': list(spec.observed)}

        with pm.Model(coords=coords) as model:
            # Priors
            rvs = {}
            for p in spec.estimated_parameters:
                dims = 'replicate' if p.role is ParameterRole.PER_REPLICATE else None
                rvs[p.name] = p.prior.to_pymc(p.name, dims=dims)

            # Observation noise
            if spec.noise.estimated:
                sigma = spec.noise.sigma.to_pymc(
                    spec.noise.name, dims='observed' if spec.noise.per_variable else None)
            else:
                sigma = float(spec.noise.sigma)

            # Likelihood, one ODE solve per replicate
            for r, rep in enumerate(data):
                values = {}
                for p in spec.estimated_parameters:
                    rv = rvs[p.name]
                    values[p.name] = rv[r] if p.role is ParameterRole.PER_REPLICATE else rv

                constants = spec.replicate_constants(rep)
                if spec.parameters:
                    theta = pt.stack([pt.cast(values[p.name], 'float64') for p in spec.parameters])
                else:
                    theta = pt.as_tensor_variable(np.zeros(0))
                y0_items = spec.initial_state(values, constants, rep.first_observation())
                y0 = pt.stack([pt.cast(pt.as_tensor_variable(v), 'float64') for v in y0_items])

                solution_op = ODESolutionOp(spec, rep, method=cfg.ode_method,
                                            rtol=cfg.rtol, atol=cfg.atol)
                predicted = solution_op(theta, y0)
                observed = spec.observations(rep)

                # Failed solves (and non-positive medians under lognormal noise) get
                # log density -inf so every sampler rejects them
                failed = pt.any(pt.isnan(predicted))
                if spec.noise.kind == 'lognormal':
                    failed = pt.or_(failed, pt.any(pt.le(predicted, 0.0)))
                pm.Potential(f"ode_ok_{r}", pt.switch(failed, -np.inf, 0.0))
                mu = pt.switch(failed, pt.ones_like(predicted), predicted)

                if spec.noise.kind == 'normal':
                    pm.Normal(f"obs_{r}", mu=mu, sigma=sigma, observed=observed)
                else:
                    pm.LogNormal(f"obs_{r}", mu=pt.log(mu), sigma=sigma, observed=observed)

        return model

    def _make_step(self):
        if self.config.sampler == 'DEMetropolisZ':
            return pm.DEMetropolisZ()
        if self.config.sampler == 'Metropolis':
            return pm.Metropolis()
        return pm.Slice()

    def calibrate(self, data: ReplicateSet) -> PosteriorSamples:
        """Run MCMC and return the posterior sample collection.

        Raises:
            ValidationError: data does not match the ModelSpec
            FatalIntegrationFailure: the sampler cannot start, or no chain
                ever accepted a move (partial samples attached)
        """
        cfg = self.config
        self.spec.check_data(data)
        self.model = self.build_model(data)

        if cfg.verbose:
            print(f"[Bayesian] Estimating {list(self.spec.parameter_names)} "
                  f"from {len(data)} replicate(s)")
            print(f"[Bayesian] Starting MCMC sampling...")
            print(f"  Chains: {cfg.n_chains}")
            print(f"  Draws per chain: {cfg.n_draws}")
            print(f"  Tuning steps: {cfg.n_tune}")

        with self.model:
            step = self._make_step()
            try:
                idata = pm.sample(
                    draws=cfg.n_draws,
                    tune=cfg.n_tune,
                    chains=cfg.n_chains,
                    cores=cfg.cores,
                    step=step,
                    initvals=cfg.initvals,
                    random_seed=cfg.seed,
                    progressbar=cfg.progressbar,
                    return_inferencedata=True,
                    compute_convergence_checks=False,
                )
            except SamplingError as exc:
                raise FatalIntegrationFailure(
                    f"Sampler could not start; the model is not finite at the initial point "
                    f"(check priors, initial values and ODE stability): {exc}") from exc

        var_names = list(self.spec.parameter_names)
        acceptance = self._movement_rate(idata, var_names)
        failed_chains = tuple(int(c) for c in np.flatnonzero(acceptance == 0.0))

        log_posterior = None
        if cfg.compute_log_posterior:
            log_posterior = self._log_posterior(idata)

        trailing = {self.spec.noise.name: 'observed'} if self.spec.noise.per_variable else {}
        samples = PosteriorSamples.from_inference_data(
            idata,
            var_names,
            replicate_ids=data.ids,
            trailing_dims=trailing,
            log_posterior=log_posterior,
            acceptance_rate=acceptance,
            failed_chains=failed_chains,
        )
        self.samples = samples

        if failed_chains:
            if len(failed_chains) == cfg.n_chains:
                raise FatalIntegrationFailure(
                    "No chain accepted a single proposal; the posterior could not be explored",
                    partial=samples)
            warnings.warn(f"Chains {list(failed_chains)} never moved; their draws are not usable. "
                          f"Use samples.drop_chains(samples.failed_chains) to discard them")

        if cfg.check_convergence:
            self.report = diagnose(samples, rhat_threshold=cfg.rhat_threshold,
                                   verbose=cfg.verbose)

        if cfg.verbose:
            print("[Bayesian] Sampling complete!")
        return samples

    @staticmethod
    def _movement_rate(idata, var_names: List[str]) -> np.ndarray:
        """Per-chain fraction of draws that differ from the previous draw."""
        posterior = idata.posterior
        moved = None
        for name in var_names:
            values = posterior[name].values
            flat = values.reshape(values.shape[:2] + (-1,))
            changed = np.any(flat[:, 1:] != flat[:, :-1], axis=-1)
            moved = changed if moved is None else (moved | changed)
        if moved is None or moved.shape[1] == 0:
            return np.ones(posterior.sizes['chain'])
        return moved.mean(axis=1)

    def _log_posterior(self, idata) -> np.ndarray:
        """Unnormalised log posterior per draw: PyMC log-likelihood + prior log density."""
        with self.model:
            pm.compute_log_likelihood(idata, extend_inferencedata=True, progressbar=False)

        loglik = 0.0
        for var in idata.log_likelihood.data_vars.values():
            extra = [d for d in var.dims if d not in ('chain', 'draw')]
            loglik = loglik + var.sum(dim=extra).values

        values = {name: idata.posterior[name].values for name in self.spec.parameter_names}
        return np.asarray(loglik + self.spec.log_prior(values), dtype=np.float64)

    def summarize_posterior(self,
                            samples: Optional[PosteriorSamples] = None,
                            credible_interval: float = 0.95) -> Dict:
        """Mean, median, std, HDI, R-hat and ESS per parameter component."""
        samples = samples or self.samples
        if samples is None:
            raise ValueError("No samples available. Run calibrate() first.")
        return summarize_posterior(samples, credible_interval)

    def save_trace(self, filepath: str):
        """Save the posterior draws to netCDF."""
        if self.samples is None:
            raise ValueError("No trace to save")
        save_samples(self.samples, filepath, verbose=self.config.verbose)

    @staticmethod
    def load_trace(filepath: str, var_names: Optional[Sequence[str]] = None) -> PosteriorSamples:
        """Load a saved trace."""
        return load_samples(filepath, var_names=var_names, verbose=True)
