"""
Unit tests for ODE systems and adaptive integration
"""

import threading

import pytest
import numpy as np

from bayes_ode.core import (ODESystem, logistic_growth, lotka_volterra_competition,
                            predator_prey, sir)
from bayes_ode.exceptions import IntegrationFailure, ValidationError


def _logistic_exact(t, r, K, N0):
    return K / (1.0 + (K / N0 - 1.0) * np.exp(-r * t))


class TestODESystem:
    """Test ODE system declaration and arity checks."""

    def test_state_and_parameter_names(self):
        system = lotka_volterra_competition()
        assert system.n_states == 2
        assert system.state_names == ('N1', 'N2')
        assert 'a12' in system.parameter_names

    def test_arity_check_accepts_matching_rhs(self):
        system = predator_prey()
        system.check_arity({'alpha': 1.0, 'beta': 0.1, 'delta': 0.1, 'gamma': 1.0})

    def test_arity_check_rejects_wrong_length(self):
        """A rhs returning too many derivatives is a ValidationError."""
        system = ODESystem(
            name='bad',
            state_names=('x',),
            parameter_names=('a',),
            rhs=lambda t, y, p: [p['a'] * y[0], 0.0],
        )
        with pytest.raises(ValidationError, match="returns"):
            system.check_arity({'a': 1.0})

    def test_arity_check_rejects_failing_rhs(self):
        system = ODESystem(
            name='bad_index',
            state_names=('x', 'y'),
            parameter_names=('a',),
            rhs=lambda t, y, p: [y[0], y[2]],
        )
        with pytest.raises(ValidationError):
            system.check_arity({'a': 1.0})

    def test_duplicate_state_names_rejected(self):
        with pytest.raises(ValidationError):
            ODESystem('dup', ('x', 'x'), (), rhs=lambda t, y, p: [0.0, 0.0])

    def test_derived_cannot_shadow_state(self):
        with pytest.raises(ValidationError):
            ODESystem('shadow', ('x',), (), rhs=lambda t, y, p: [0.0],
                      derived={'x': lambda states, p: states[:, 0]})


class TestIntegration:
    """Test adaptive-step integration."""

    def test_logistic_matches_closed_form(self):
        t = np.linspace(0.0, 50.0, 51)
        states = logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, t)
        expected = _logistic_exact(t, 0.2, 500.0, 10.0)

        assert states.shape == (51, 1)
        np.testing.assert_allclose(states[:, 0], expected, rtol=1e-4)

    def test_integration_from_earlier_t0(self):
        """Output grid may start after t0; the state at t0 is the initial condition."""
        t = np.array([5.0, 10.0, 20.0])
        states = logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, t, t0=0.0)
        np.testing.assert_allclose(states[:, 0], _logistic_exact(t, 0.2, 500.0, 10.0),
                                   rtol=1e-4)

    def test_t_eval_before_t0_rejected(self):
        with pytest.raises(ValidationError):
            logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, [0.0, 1.0], t0=1.0)

    def test_non_increasing_grid_rejected(self):
        with pytest.raises(ValidationError):
            logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, [0.0, 2.0, 1.0])

    def test_unknown_method_rejected(self):
        with pytest.raises(ValidationError):
            logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, [0.0, 1.0],
                                    method='Euler')

    def test_wrong_initial_state_length(self):
        with pytest.raises(ValidationError):
            logistic_growth().solve([10.0, 1.0], {'r': 0.2, 'K': 500.0}, [0.0, 1.0])

    def test_single_point_grid_returns_initial_state(self):
        states = predator_prey().solve([30.0, 5.0],
                                       {'alpha': 1.0, 'beta': 0.1, 'delta': 0.1, 'gamma': 1.0},
                                       [0.0])
        np.testing.assert_array_equal(states, [[30.0, 5.0]])

    def test_blow_up_raises_integration_failure(self):
        """dy/dt = y^2 from y(0)=1 diverges at t=1."""
        system = ODESystem('blowup', ('y',), ('a',), rhs=lambda t, y, p: [p['a'] * y[0] ** 2])
        with pytest.raises(IntegrationFailure) as excinfo:
            system.solve([1.0], {'a': 1.0}, np.linspace(0.0, 2.0, 5),
                         method='RK45', draw_index=7)
        assert excinfo.value.draw_index == 7
        assert excinfo.value.stage == 'integrate'

    @pytest.mark.parametrize("method", ['LSODA', 'BDF', 'Radau', 'DOP853'])
    def test_blow_up_stops_every_method(self, method):
        """y(t) = 1/(1 - a t) reaches infinity at t=2 for a=0.5."""
        system = ODESystem('blowup', ('y',), ('a',), rhs=lambda t, y, p: [p['a'] * y[0] ** 2])
        with pytest.raises(IntegrationFailure):
            system.solve([1.0], {'a': 0.5}, np.linspace(0.0, 50.0, 11), method=method)

    def test_blow_up_with_default_method(self):
        system = ODESystem('blowup', ('y',), ('a',), rhs=lambda t, y, p: [p['a'] * y[0] ** 2])
        with pytest.raises(IntegrationFailure, match="exceeded|evaluations"):
            system.solve([1.0], {'a': 0.5}, np.linspace(0.0, 50.0, 11))

    def test_evaluation_budget(self):
        with pytest.raises(IntegrationFailure, match="5 right-hand-side evaluations"):
            logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0},
                                    np.linspace(0.0, 50.0, 11), max_evals=5)

    def test_cancelled_integration(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(IntegrationFailure, match="cancelled"):
            logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, [0.0, 10.0], cancel=cancel)

    def test_large_but_finite_solution_is_kept(self):
        """Exponential growth to ~1e8 stays below the divergence bound."""
        system = ODESystem('growth', ('y',), ('a',), rhs=lambda t, y, p: [p['a'] * y[0]])
        states = system.solve([1.0], {'a': 1.0}, np.linspace(0.0, 18.0, 7))
        assert states[-1, 0] == pytest.approx(np.exp(18.0), rel=1e-4)

    def test_non_finite_initial_state_is_integration_failure(self):
        with pytest.raises(IntegrationFailure):
            logistic_growth().solve([np.nan], {'r': 0.2, 'K': 500.0}, [0.0, 1.0])


class TestSIR:
    """Test the SIR system and its explicit recovery term."""

    def test_recovery_term_has_no_default(self):
        with pytest.raises(TypeError):
            sir()

    def test_unknown_recovery_term_rejected(self):
        with pytest.raises(ValidationError, match="recovery_term"):
            sir('removed')

    @pytest.mark.parametrize("term", ['infected', 'recovered'])
    def test_population_is_conserved(self, term):
        system = sir(term)
        params = {'beta': 0.5, 'gamma': 0.1, 'N0': 1000.0}
        t = np.linspace(0.0, 40.0, 41)
        states = system.solve([990.0, 10.0], params, t)
        observed = system.observe(states, params, ['S', 'I', 'R'])

        np.testing.assert_allclose(observed.sum(axis=1), 1000.0, rtol=1e-8)
        assert observed[0, 2] == pytest.approx(0.0, abs=1e-9)

    def test_recovery_terms_differ(self):
        params = {'beta': 0.5, 'gamma': 0.1, 'N0': 1000.0}
        t = np.linspace(0.0, 20.0, 11)
        a = sir('infected').solve([990.0, 10.0], params, t)
        b = sir('recovered').solve([990.0, 10.0], params, t)
        assert not np.allclose(a, b)

    def test_observe_unknown_name(self):
        system = sir('infected')
        states = np.ones((3, 2))
        with pytest.raises(ValidationError):
            system.observe(states, {'N0': 10.0}, ['X'])
