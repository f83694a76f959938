"""
Bayesian ODE Workflow - MCMC calibration of ODE population models

Loads replicate time series, fits ODE models (logistic growth, competition,
predator-prey, SIR) by MCMC, checks convergence and simulates posterior and
prior predictive trajectories.
"""

__version__ = "0.1.0"

# Errors
from .exceptions import (
    BayesODEError,
    ValidationError,
    ShapeMismatch,
    InsufficientData,
    IntegrationFailure,
    FatalIntegrationFailure,
    DegradedRunWarning,
)

# ODE systems
from .core import (
    ODESystem,
    logistic_growth,
    lotka_volterra_competition,
    predator_prey,
    sir,
)

# Data loading
from .data import DatasetShaper, ReplicateSet, TimeSeries, simulate_dataset

# Model specification
from .model_spec import (
    PriorSpec,
    Parameter,
    ParameterRole,
    FixedInitial,
    FreeInitial,
    DerivedInitial,
    NoiseModel,
    ModelSpec,
    build_model_spec,
)
from .model_library import ModelLibrary, ModelPreset

# Posterior samples, diagnostics and prediction
from .samples import PosteriorSamples, summarize_posterior, save_samples, load_samples
from .diagnostics import ConvergenceReport, diagnose
from .predictive import (
    PosteriorPredictor,
    PredictiveConfig,
    PredictiveEnsemble,
    PredictiveTrajectory,
)

# MCMC calibration
from .bayesian import BayesianCalibrator, CalibrationConfig

# Workflow
from .workflow import WorkflowConfig, WorkflowResult, run_workflow

__all__ = [
    "BayesODEError",
    "ValidationError",
    "ShapeMismatch",
    "InsufficientData",
    "IntegrationFailure",
    "FatalIntegrationFailure",
    "DegradedRunWarning",
    "ODESystem",
    "logistic_growth",
    "lotka_volterra_competition",
    "predator_prey",
    "sir",
    "DatasetShaper",
    "ReplicateSet",
    "TimeSeries",
    "simulate_dataset",
    "PriorSpec",
    "Parameter",
    "ParameterRole",
    "FixedInitial",
    "FreeInitial",
    "DerivedInitial",
    "NoiseModel",
    "ModelSpec",
    "build_model_spec",
    "ModelLibrary",
    "ModelPreset",
    "PosteriorSamples",
    "summarize_posterior",
    "save_samples",
    "load_samples",
    "ConvergenceReport",
    "diagnose",
    "PosteriorPredictor",
    "PredictiveConfig",
    "PredictiveEnsemble",
    "PredictiveTrajectory",
    "BayesianCalibrator",
    "CalibrationConfig",
    "WorkflowConfig",
    "WorkflowResult",
    "run_workflow",
]
