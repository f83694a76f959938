"""
Pytest configuration and fixtures for reproducible testing.

This file provides centralized test configuration including:
- Random seed management for reproducibility
- The 'slow' marker for MCMC sampling tests
- Shared model specifications, datasets and synthetic posterior samples
"""
import pytest
import numpy as np

from bayes_ode.core import logistic_growth, sir
from bayes_ode.data import DatasetShaper, simulate_dataset
from bayes_ode.model_spec import (DerivedInitial, FreeInitial, NoiseModel, Parameter,
                                  PriorSpec, build_model_spec)
from bayes_ode.samples import PosteriorSamples


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: MCMC sampling tests (deselect with -m 'not slow')")


@pytest.fixture(scope="session", autouse=True)
def set_random_seeds():
    """Set the global NumPy seed once per session.

    Library code takes explicit seeds; this only pins ad-hoc test data.
    """
    np.random.seed(42)
    yield


@pytest.fixture(scope="function")
def reset_seeds():
    """Reset the global NumPy seed before a test that needs fresh random state."""
    np.random.seed(42)
    yield


# ─────────────────────────────────────────────────────────────
# Logistic growth
# ─────────────────────────────────────────────────────────────

LOGISTIC_TRUE = {'r': 0.2, 'K': 500.0}
LOGISTIC_N0 = 10.0


def lognormal_prior(median, sigma=0.5):
    return PriorSpec('lognormal', {'mu': float(np.log(median)), 'sigma': sigma})


@pytest.fixture
def logistic_frame():
    """Noise-free logistic growth r=0.2, K=500, N0=10 on t=0..50."""
    t = np.linspace(0.0, 50.0, 26)
    return simulate_dataset(logistic_growth(), LOGISTIC_TRUE, [LOGISTIC_N0], t)


@pytest.fixture
def logistic_data(logistic_frame):
    return DatasetShaper().shape(logistic_frame)


@pytest.fixture
def logistic_spec():
    """Logistic growth with free initial population N0 and normal noise."""
    return build_model_spec(
        system=logistic_growth(),
        parameters=[
            Parameter('r', lognormal_prior(0.3)),
            Parameter('K', lognormal_prior(400.0)),
        ],
        noise=NoiseModel('normal', PriorSpec('halfnormal', {'sigma': 10.0})),
        initial_conditions={'N': FreeInitial(lognormal_prior(10.0))},
    )


@pytest.fixture
def logistic_samples():
    """Synthetic 2-chain posterior around the true logistic parameters."""
    rng = np.random.default_rng(0)
    shape = (2, 50)
    return PosteriorSamples(
        draws={
            'r': rng.normal(0.2, 0.005, size=shape),
            'K': rng.normal(500.0, 5.0, size=shape),
            'N0': rng.normal(10.0, 0.2, size=shape + (1,)),
            'sigma': np.abs(rng.normal(2.0, 0.2, size=shape)),
        },
        replicate_ids=('A',),
    )


# ─────────────────────────────────────────────────────────────
# SIR with two replicates
# ─────────────────────────────────────────────────────────────

def _susceptible(initial, constants, first_observation):
    return constants['N0'] - initial['I']


@pytest.fixture
def sir_frame():
    """Two SIR replicates with different population sizes and initial infecteds."""
    t = np.arange(0.0, 30.0, 2.0)
    return simulate_dataset(
        sir('infected'),
        {'beta': 0.6, 'gamma': 0.15, 'N0': 1000.0},
        [990.0, 10.0],
        t,
        replicates={
            'A': {'N0': 1000.0, 'y0': [990.0, 10.0]},
            'B': {'N0': 2000.0, 'y0': [1985.0, 15.0]},
        },
        observed=('I', 'R'),
        constant_names=('N0',),
    )


@pytest.fixture
def sir_data(sir_frame):
    return DatasetShaper(constant_cols=['N0']).shape(sir_frame)


@pytest.fixture
def sir_spec():
    """SIR (gamma*I recovery), shared beta/gamma, per-replicate I0, N0 constant."""
    return build_model_spec(
        system=sir('infected'),
        parameters=[
            Parameter('beta', lognormal_prior(0.5)),
            Parameter('gamma', lognormal_prior(0.2)),
        ],
        noise=NoiseModel('normal', PriorSpec('halfnormal', {'sigma': 10.0})),
        initial_conditions={
            'S': DerivedInitial(_susceptible, "N0 - I0"),
            'I': FreeInitial(lognormal_prior(10.0, 1.0)),
        },
        observed=('I', 'R'),
        constants=('N0',),
    )
