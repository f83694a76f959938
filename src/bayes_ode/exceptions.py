"""
Bayesian ODE Workflow — Error Taxonomy
======================================
Every error raised by the pipeline carries the stage that produced it and,
when known, the offending replicate or parameter. Errors raised during
shaping or specification halt the run; per-draw integration failures are
recorded and never abort sibling work.

    BayesODEError
    ├── ValidationError (ValueError)
    │   ├── ShapeMismatch
    │   └── InsufficientData
    ├── IntegrationFailure (RuntimeError)        per draw, non-fatal
    └── FatalIntegrationFailure (RuntimeError)   systemic, aborts the run
"""

from typing import Any, Optional


class BayesODEError(Exception):
    """Base class for all pipeline errors."""

    default_stage: Optional[str] = None

    def __init__(self, message: str,
                 stage: Optional[str] = None,
                 replicate: Optional[str] = None,
                 parameter: Optional[str] = None,
                 partial: Any = None):
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.replicate = replicate
        self.parameter = parameter
        self.partial = partial

    @property
    def has_partial_results(self) -> bool:
        return self.partial is not None

    def __str__(self) -> str:
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.replicate is not None:
            context.append(f"replicate={self.replicate}")
        if self.parameter is not None:
            context.append(f"parameter={self.parameter}")
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ValidationError(BayesODEError, ValueError):
    """Malformed input or ModelSpec (bad arity, colliding names, bad priors)."""
    default_stage = 'specify'


class ShapeMismatch(ValidationError):
    """Replicate time grids are inconsistent for multi-replicate fitting."""
    default_stage = 'shape'


class InsufficientData(ValidationError):
    """A replicate has too few observations to be fitted."""
    default_stage = 'shape'


class IntegrationFailure(BayesODEError, RuntimeError):
    """The ODE solver could not complete for one parameter draw."""

    def __init__(self, message: str, draw_index: Optional[int] = None, **kwargs):
        kwargs.setdefault('stage', 'integrate')
        super().__init__(message, **kwargs)
        self.draw_index = draw_index


class FatalIntegrationFailure(BayesODEError, RuntimeError):
    """The calibrator cannot proceed at all (e.g. blow-up at every point)."""
    default_stage = 'calibrate'


class DegradedRunWarning(UserWarning):
    """Most chains or predictive draws failed; results are of limited use."""
