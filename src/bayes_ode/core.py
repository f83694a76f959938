"""
Bayesian ODE Workflow — Core ODE Engine
=======================================
Deterministic population models expressed as pure right-hand-side
functions, plus the adaptive-step integration every other stage relies on.

An ``ODESystem`` maps ``(t, y, params) -> dy/dt`` where ``params`` is a
mapping holding both estimated parameters and fixed replicate constants
(e.g. the total population ``N0`` of an SIR replicate). Systems may also
declare *derived* quantities, algebraic functions of the integrated states
that can be observed like a state (e.g. ``R = N0 - S - I``).

Built-in systems:
  - logistic_growth            dN/dt = r N (1 - N/K)
  - lotka_volterra_competition two competing species with carrying capacities
  - predator_prey              classic Lotka-Volterra predation
  - sir                        2-state S, I epidemic with R derived

License: MIT
"""

import threading

import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

from scipy.integrate import solve_ivp

from .exceptions import IntegrationFailure, ValidationError


RHSFunction = Callable[[float, np.ndarray, Mapping[str, float]], Sequence[float]]
DerivedFunction = Callable[[np.ndarray, Mapping[str, float]], np.ndarray]

# Adaptive-step solvers accepted by scipy.integrate.solve_ivp
ADAPTIVE_METHODS = ('LSODA', 'RK45', 'RK23', 'DOP853', 'Radau', 'BDF')

# A state beyond this multiple of the initial scale counts as a blow-up
DIVERGENCE_FACTOR = 1e9

# Right-hand-side evaluations allowed per solve
MAX_RHS_EVALS = 100_000


# ═══════════════════════════════════════════════════════════════
# ODE System
# ═══════════════════════════════════════════════════════════════

@dataclass(eq=False)
class ODESystem:
    """A named ODE right-hand side with declared state and parameter names.

    Usage:
        system = logistic_growth()
        states = system.solve(y0=[10.0], params={'r': 0.2, 'K': 500.0},
                              t_eval=np.linspace(0, 50, 51))
    """
    name: str
    state_names: Tuple[str, ...]
    parameter_names: Tuple[str, ...]
    rhs: RHSFunction
    derived: Dict[str, DerivedFunction] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        self.state_names = tuple(self.state_names)
        self.parameter_names = tuple(self.parameter_names)
        if not self.state_names:
            raise ValidationError(f"ODE system '{self.name}' declares no states")
        if len(set(self.state_names)) != len(self.state_names):
            raise ValidationError(f"ODE system '{self.name}' has duplicate state names: "
                                  f"{self.state_names}")
        clash = set(self.derived) & set(self.state_names)
        if clash:
            raise ValidationError(f"Derived quantities shadow states in '{self.name}': "
                                  f"{sorted(clash)}")

    @property
    def n_states(self) -> int:
        return len(self.state_names)

    @property
    def observable_names(self) -> Tuple[str, ...]:
        """States plus derived quantities, i.e. everything that can be observed."""
        return self.state_names + tuple(self.derived)

    def __call__(self, t: float, y: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
        return np.asarray(self.rhs(t, y, params), dtype=np.float64)

    def check_arity(self, params: Mapping[str, float]) -> None:
        """Probe the rhs at a unit state and verify len(dy/dt) == n_states."""
        trial = np.ones(self.n_states)
        try:
            dy = self(0.0, trial, params)
        except (KeyError, IndexError, TypeError, ValueError, ArithmeticError) as exc:
            raise ValidationError(
                f"Right-hand side of '{self.name}' failed on a trial state: {exc!r}"
            ) from exc

        if dy.ndim != 1 or dy.shape[0] != self.n_states:
            raise ValidationError(
                f"Right-hand side of '{self.name}' returns {dy.shape} derivatives "
                f"for {self.n_states} states"
            )

    def solve(self, y0: Sequence[float],
              params: Mapping[str, float],
              t_eval: Sequence[float],
              t0: Optional[float] = None,
              method: str = 'LSODA',
              rtol: float = 1e-6,
              atol: float = 1e-8,
              draw_index: Optional[int] = None,
              max_evals: int = MAX_RHS_EVALS,
              cancel: Optional[threading.Event] = None) -> np.ndarray:
        """Integrate from ``t0`` (default: ``t_eval[0]``) and evaluate at ``t_eval``.

        Integration stops with IntegrationFailure as soon as any state grows
        beyond ``DIVERGENCE_FACTOR`` times the initial scale, the right-hand
        side has been evaluated ``max_evals`` times, or ``cancel`` is set.

        Args:
            y0: Initial state at t0, length n_states
            params: Parameter and constant values referenced by the rhs
            t_eval: Strictly increasing output grid, t_eval[0] >= t0
            method: Adaptive solver name (see ADAPTIVE_METHODS)
            draw_index: Tag attached to IntegrationFailure for traceability
            max_evals: Right-hand-side evaluation budget
            cancel: Event checked before every rhs evaluation

        Returns:
            [T, n_states] array of states

        Raises:
            IntegrationFailure if the solver diverges or returns non-finite states.
        """
        if method not in ADAPTIVE_METHODS:
            raise ValidationError(f"Unknown ODE method '{method}'. "
                                  f"Available: {list(ADAPTIVE_METHODS)}")
        if max_evals < 1:
            raise ValidationError(f"max_evals must be >= 1, got {max_evals}")

        y0 = np.asarray(y0, dtype=np.float64)
        if y0.shape != (self.n_states,):
            raise ValidationError(f"'{self.name}' needs {self.n_states} initial conditions, "
                                  f"got shape {y0.shape}")

        t_eval = np.asarray(t_eval, dtype=np.float64)
        if t_eval.ndim != 1 or len(t_eval) == 0:
            raise ValidationError("t_eval must be a non-empty 1-D grid")
        if np.any(np.diff(t_eval) <= 0):
            raise ValidationError("t_eval must be strictly increasing")

        t_start = float(t_eval[0]) if t0 is None else float(t0)
        if t_eval[0] < t_start:
            raise ValidationError(f"t_eval starts at {t_eval[0]} before t0={t_start}")

        if not np.all(np.isfinite(y0)):
            raise IntegrationFailure(f"'{self.name}': non-finite initial state {y0}",
                                     draw_index=draw_index)

        # Degenerate span: nothing to integrate
        if t_eval[-1] == t_start:
            return np.tile(y0, (len(t_eval), 1))

        bound = DIVERGENCE_FACTOR * max(1.0, float(np.max(np.abs(y0))))
        n_evals = 0

        def fun(t, y):
            nonlocal n_evals
            if cancel is not None and cancel.is_set():
                raise IntegrationFailure(f"'{self.name}': integration cancelled",
                                         draw_index=draw_index)
            n_evals += 1
            if n_evals > max_evals:
                raise IntegrationFailure(f"'{self.name}': no solution after {max_evals} "
                                         f"right-hand-side evaluations", draw_index=draw_index)
            return self(t, y, params)

        def diverged(t, y):
            if not np.all(np.isfinite(y)):
                return -1.0
            return bound - float(np.max(np.abs(y)))

        diverged.terminal = True
        diverged.direction = -1

        with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
            try:
                sol = solve_ivp(
                    fun,
                    (t_start, float(t_eval[-1])),
                    y0,
                    method=method,
                    t_eval=t_eval,
                    rtol=rtol,
                    atol=atol,
                    events=diverged,
                )
            except (ValueError, ArithmeticError) as exc:
                raise IntegrationFailure(f"'{self.name}': solver raised {exc!r}",
                                         draw_index=draw_index) from exc

        if not sol.success:
            raise IntegrationFailure(f"'{self.name}': {sol.message}", draw_index=draw_index)
        if sol.status == 1:
            raise IntegrationFailure(f"'{self.name}': state exceeded {bound:.3g} at "
                                     f"t={sol.t_events[0][0]:.6g}", draw_index=draw_index)

        states = sol.y.T
        if states.shape[0] != len(t_eval) or not np.all(np.isfinite(states)):
            raise IntegrationFailure(f"'{self.name}': non-finite state during integration",
                                     draw_index=draw_index)
        return states

    def observe(self, states: np.ndarray,
                params: Mapping[str, float],
                names: Sequence[str]) -> np.ndarray:
        """Map integrated states [T, n_states] to observed columns [T, len(names)]."""
        n_time = states.shape[0]
        columns = []
        for name in names:
            if name in self.state_names:
                columns.append(states[:, self.state_names.index(name)])
            elif name in self.derived:
                value = np.asarray(self.derived[name](states, params), dtype=np.float64)
                columns.append(np.broadcast_to(value, (n_time,)))
            else:
                raise ValidationError(f"'{name}' is neither a state nor a derived quantity "
                                      f"of '{self.name}'")
        if not columns:
            return np.empty((n_time, 0))
        return np.column_stack(columns)


# ═══════════════════════════════════════════════════════════════
# Built-in population models
# ═══════════════════════════════════════════════════════════════

def logistic_growth() -> ODESystem:
    """Single population with intrinsic growth r and carrying capacity K."""
    def rhs(t, y, p):
        N = y[0]
        return [p['r'] * N * (1.0 - N / p['K'])]

    return ODESystem(
        name='logistic_growth',
        state_names=('N',),
        parameter_names=('r', 'K'),
        rhs=rhs,
        description="dN/dt = r N (1 - N/K)",
    )


def lotka_volterra_competition() -> ODESystem:
    """Two species competing for a shared resource."""
    def rhs(t, y, p):
        N1, N2 = y
        dN1 = p['r1'] * N1 * (1.0 - (N1 + p['a12'] * N2) / p['K1'])
        dN2 = p['r2'] * N2 * (1.0 - (N2 + p['a21'] * N1) / p['K2'])
        return [dN1, dN2]

    return ODESystem(
        name='lotka_volterra_competition',
        state_names=('N1', 'N2'),
        parameter_names=('r1', 'r2', 'K1', 'K2', 'a12', 'a21'),
        rhs=rhs,
        description="dNi/dt = ri Ni (1 - (Ni + aij Nj)/Ki)",
    )


def predator_prey() -> ODESystem:
    """Lotka-Volterra predation: prey grows at alpha, predators convert at delta."""
    def rhs(t, y, p):
        prey, predator = y
        dprey = p['alpha'] * prey - p['beta'] * prey * predator
        dpredator = p['delta'] * prey * predator - p['gamma'] * predator
        return [dprey, dpredator]

    return ODESystem(
        name='predator_prey',
        state_names=('prey', 'predator'),
        parameter_names=('alpha', 'beta', 'delta', 'gamma'),
        rhs=rhs,
        description="dH/dt = alpha H - beta H P ; dP/dt = delta H P - gamma P",
    )


SIR_RECOVERY_TERMS = ('infected', 'recovered')


def sir(recovery_term: str) -> ODESystem:
    """SIR epidemic integrated over (S, I); R = N0 - S - I is derived.

    ``N0`` is a replicate constant (total population) and is never estimated.

    The recovery flux must be chosen explicitly:
      - 'infected':  dI/dt = beta S I / N0 - gamma I   (textbook SIR)
      - 'recovered': dI/dt = beta S I / N0 - gamma R   (recovery driven by the
        removed compartment, R = N0 - S - I)
    """
    if recovery_term not in SIR_RECOVERY_TERMS:
        raise ValidationError(
            f"SIR recovery_term must be one of {SIR_RECOVERY_TERMS}, got {recovery_term!r}. "
            f"'recovered' reproduces gamma*R with R = N0 - S - I; "
            f"'infected' uses the textbook gamma*I",
            parameter='recovery_term',
        )

    def rhs(t, y, p):
        S, I = y
        N = p['N0']
        infection = p['beta'] * S * I / N
        removed = I if recovery_term == 'infected' else N - S - I
        return [-infection, infection - p['gamma'] * removed]

    def recovered(states, p):
        return p['N0'] - states[:, 0] - states[:, 1]

    return ODESystem(
        name=f'sir_{recovery_term}',
        state_names=('S', 'I'),
        parameter_names=('beta', 'gamma', 'N0'),
        rhs=rhs,
        derived={'R': recovered},
        description=f"SIR with recovery flux gamma*{'I' if recovery_term == 'infected' else 'R'}",
    )
