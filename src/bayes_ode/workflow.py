"""
Complete calibration workflow: Time series -> MCMC -> Diagnostics -> Predictive

Runs the linear pipeline Shape → Specify → Calibrate → Diagnose → Predict and
prints a short report. A halted run raises the stage's error with the stage
name set and, when earlier stages produced anything usable, the partial
WorkflowResult attached as ``error.partial``.
"""
import pandas as pd
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from .bayesian import BayesianCalibrator, CalibrationConfig
from .data import DatasetShaper, ReplicateSet, ReplicateSelection
from .diagnostics import ConvergenceReport, diagnose
from .exceptions import BayesODEError
from .model_spec import ModelSpec
from .predictive import PosteriorPredictor, PredictiveConfig, PredictiveEnsemble
from .samples import PosteriorSamples, summarize_posterior


STAGES = ('shape', 'specify', 'calibrate', 'diagnose', 'predict')


@dataclass
class WorkflowConfig:
    """Settings for every stage of the pipeline."""
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    predictive: PredictiveConfig = field(default_factory=PredictiveConfig)
    replicates: ReplicateSelection = 'all'
    rhat_threshold: float = 1.01
    n_predictive_draws: int = 200      # 0 skips the predict stage
    t_eval: Optional[Sequence[float]] = None
    predictive_seed: Optional[int] = None
    credible_interval: float = 0.95
    verbose: bool = True


@dataclass
class WorkflowResult:
    """Outputs of every completed stage."""
    spec: ModelSpec
    replicate_set: Optional[ReplicateSet] = None
    samples: Optional[PosteriorSamples] = None
    report: Optional[ConvergenceReport] = None
    predictive: Optional[PredictiveEnsemble] = None
    summary: Dict[str, Dict[str, float]] = field(default_factory=dict)
    completed: list = field(default_factory=list)

    @property
    def last_stage(self) -> Optional[str]:
        return self.completed[-1] if self.completed else None

    @property
    def has_partial_results(self) -> bool:
        return bool(self.completed)


def run_workflow(data: Union[str, Path, pd.DataFrame, ReplicateSet],
                 spec: ModelSpec,
                 config: Optional[WorkflowConfig] = None,
                 shaper: Optional[DatasetShaper] = None) -> WorkflowResult:
    """Shape the data, calibrate ``spec``, diagnose and simulate predictions.

    Args:
        data: CSV path, raw DataFrame, or an already shaped ReplicateSet
        spec: Validated model specification
        config: Pipeline settings
        shaper: DatasetShaper used for paths and DataFrames (default: standard columns)

    Returns:
        WorkflowResult

    Raises:
        BayesODEError subclasses tagged with the failing stage
    """
    config = config or WorkflowConfig()
    shaper = shaper or DatasetShaper(verbose=config.verbose)
    result = WorkflowResult(spec=spec)
    stage = STAGES[0]

    if config.verbose:
        print("\n" + "=" * 70)
        print(f"CALIBRATION WORKFLOW: {spec.name}")
        print("=" * 70)

    try:
        # Step 1: Shape
        if config.verbose:
            print("\n[1/5] Shaping time series...")
        if isinstance(data, ReplicateSet):
            replicate_set = data.select(config.replicates)
        elif isinstance(data, pd.DataFrame):
            replicate_set = shaper.shape(data, replicates=config.replicates)
        else:
            replicate_set = shaper.load_csv(data, replicates=config.replicates)
        result.replicate_set = replicate_set
        result.completed.append(stage)

        # Step 2: Check the data against the model
        stage = 'specify'
        if config.verbose:
            print("\n[2/5] Checking model against data...")
            print(spec.describe())
        spec.check_data(replicate_set)
        result.completed.append(stage)

        # Step 3: Calibrate
        stage = 'calibrate'
        if config.verbose:
            print("\n[3/5] Running MCMC calibration...")
        # Diagnostics run once, at step 4
        calibrator = BayesianCalibrator(
            spec, replace(config.calibration, check_convergence=False))
        samples = calibrator.calibrate(replicate_set)
        result.samples = samples
        result.summary = summarize_posterior(samples, config.credible_interval)
        result.completed.append(stage)

        # Step 4: Diagnose
        stage = 'diagnose'
        if config.verbose:
            print("\n[4/5] Convergence diagnostics...")
        result.report = diagnose(samples, rhat_threshold=config.rhat_threshold,
                                 verbose=config.verbose)
        result.completed.append(stage)

        # Step 5: Predict
        stage = 'predict'
        if config.n_predictive_draws > 0:
            if config.verbose:
                print("\n[5/5] Posterior predictive simulation...")
            predictor = PosteriorPredictor(spec, replicate_set, config.predictive)
            ensemble = predictor.posterior_predictive(samples, config.n_predictive_draws,
                                                      t_eval=config.t_eval,
                                                      seed=config.predictive_seed)
            ensemble.collect()
            result.predictive = ensemble
            # Predictive failures count towards the degraded-run check
            result.report = diagnose(samples, rhat_threshold=config.rhat_threshold,
                                     predictive=ensemble)
        elif config.verbose:
            print("\n[5/5] Posterior predictive simulation skipped")
        result.completed.append(stage)

    except BayesODEError as exc:
        exc.stage = exc.stage or stage
        if exc.partial is None and result.has_partial_results:
            exc.partial = result
        if config.verbose:
            partial = "partial results attached" if exc.has_partial_results else "no results"
            print(f"\n✗ Workflow halted at stage '{exc.stage}': {exc.message} ({partial})")
        raise

    if config.verbose:
        print_report(result)

    return result


def print_report(result: WorkflowResult):
    """Print posterior summary, convergence verdict and predictive failures."""
    print("\n" + "=" * 70)
    print("CALIBRATION REPORT")
    print("=" * 70)
    if result.replicate_set is not None:
        print(f"Replicates: {list(result.replicate_set.ids)}")

    if result.summary:
        print("\nPosterior (mean ± std, HDI):")
        for name, stats in result.summary.items():
            print(f"  {name:15s}: {stats['mean']:10.4g} ± {stats['std']:<10.3g} "
                  f"[{stats['ci_lower']:.4g}, {stats['ci_upper']:.4g}]")

    if result.report is not None:
        verdict = "✓ converged" if result.report.converged else \
            f"✗ not converged: {result.report.non_converged}"
        print(f"\nConvergence: {verdict}")
        if result.report.degraded:
            print(f"  ⚠ Degraded run ({result.report.failure_fraction:.0%} failed)")

    if result.predictive is not None:
        print(f"\nPredictive: {result.predictive.n_draws} draws, "
              f"{len(result.predictive.failures)} failed trajectories")

    print("\n" + "=" * 70)
