"""
Unit tests for the posterior sample collection, summaries and persistence
"""

import pytest
import numpy as np

from bayes_ode.exceptions import ValidationError
from bayes_ode.samples import PosteriorSamples, load_samples, save_samples, summarize_posterior


class TestPosteriorSamples:
    """Test access to per-chain draws."""

    def test_shape(self, logistic_samples):
        assert logistic_samples.n_chains == 2
        assert logistic_samples.n_draws == 50
        assert logistic_samples.n_samples == 100
        assert logistic_samples.parameter_names == ('r', 'K', 'N0', 'sigma')

    def test_draws_are_read_only(self, logistic_samples):
        with pytest.raises(ValueError):
            logistic_samples['r'][0, 0] = 1.0

    def test_inconsistent_chain_shapes_rejected(self):
        with pytest.raises(ValidationError):
            PosteriorSamples(draws={'a': np.zeros((2, 10)), 'b': np.zeros((2, 9))})

    def test_point_is_chain_major(self, logistic_samples):
        point = logistic_samples.point(53)
        assert point['r'] == logistic_samples['r'][1, 3]
        np.testing.assert_array_equal(point['N0'], logistic_samples['N0'][1, 3])
        with pytest.raises(IndexError):
            logistic_samples.point(100)

    def test_pooled(self, logistic_samples):
        pooled = logistic_samples.pooled('N0')
        assert pooled.shape == (100, 1)
        assert pooled[50, 0] == logistic_samples['N0'][1, 0, 0]

    def test_component_labels_use_replicate_ids(self, logistic_samples):
        assert logistic_samples.component_names('N0') == ('N0[A]',)
        assert logistic_samples.component_names('r') == ('r',)
        assert set(logistic_samples.components('N0')) == {'N0[A]'}

    def test_drop_chains(self):
        samples = PosteriorSamples(draws={'a': np.arange(30.0).reshape(3, 10)},
                                   failed_chains=(1,),
                                   acceptance_rate=[0.3, 0.0, 0.4])
        kept = samples.drop_chains(samples.failed_chains)
        assert kept.n_chains == 2
        assert kept.failed_chains == ()
        np.testing.assert_array_equal(kept['a'][1], np.arange(20.0, 30.0))
        np.testing.assert_array_equal(kept.acceptance_rate, [0.3, 0.4])
        with pytest.raises(ValidationError):
            samples.drop_chains([0, 1, 2])

    def test_to_dataframe(self, logistic_samples):
        df = logistic_samples.to_dataframe()
        assert len(df) == 100
        assert list(df.columns) == ['chain', 'draw', 'r', 'K', 'N0[A]', 'sigma']
        assert df['chain'].iloc[50] == 1 and df['draw'].iloc[50] == 0

    def test_log_posterior_shape_checked(self):
        with pytest.raises(ValidationError):
            PosteriorSamples(draws={'a': np.zeros((2, 10))}, log_posterior=np.zeros((2, 9)))


class TestSummaries:
    """Test posterior summaries and persistence."""

    def test_summary_statistics(self, logistic_samples):
        summary = summarize_posterior(logistic_samples, credible_interval=0.9)

        assert set(summary) == {'r', 'K', 'N0[A]', 'sigma'}
        r = summary['r']
        assert r['mean'] == pytest.approx(np.mean(logistic_samples['r']))
        assert r['ci_lower'] < r['median'] < r['ci_upper']
        assert np.isfinite(r['rhat']) and r['ess'] > 0

    def test_invalid_credible_interval(self, logistic_samples):
        with pytest.raises(ValueError):
            summarize_posterior(logistic_samples, credible_interval=1.5)

    def test_netcdf_round_trip(self, logistic_samples, tmp_path):
        path = tmp_path / 'trace.nc'
        save_samples(logistic_samples, str(path))
        loaded = load_samples(str(path), replicate_ids=('A',))

        assert set(loaded.parameter_names) == {'r', 'K', 'N0', 'sigma'}
        np.testing.assert_allclose(loaded['K'], logistic_samples['K'])
        assert loaded.component_names('N0') == ('N0[A]',)

    def test_netcdf_round_trip_keeps_bookkeeping(self, tmp_path):
        rng = np.random.default_rng(1)
        samples = PosteriorSamples(
            draws={
                'beta': rng.normal(0.6, 0.01, size=(2, 10)),
                'I0': rng.normal(10.0, 0.5, size=(2, 10, 2)),
                'sigma': np.abs(rng.normal(1.0, 0.1, size=(2, 10, 2))),
            },
            replicate_ids=('A', 'B'),
            log_posterior=np.linspace(-50.0, -40.0, 20).reshape(2, 10),
            acceptance_rate=[0.3, 0.0],
            failed_chains=(1,),
            trailing_dims={'sigma': 'observed'},
        )
        path = tmp_path / 'trace.nc'
        save_samples(samples, str(path))
        loaded = load_samples(str(path))

        assert loaded.replicate_ids == ('A', 'B')
        assert loaded.failed_chains == (1,)
        np.testing.assert_allclose(loaded.log_posterior, samples.log_posterior)
        np.testing.assert_allclose(loaded.acceptance_rate, [0.3, 0.0])
        assert loaded.trailing_dims == {'sigma': 'observed'}
        assert loaded.component_names('I0') == ('I0[A]', 'I0[B]')
        assert loaded.component_names('sigma') == ('sigma[0]', 'sigma[1]')

    def test_replicate_ids_from_coordinate(self, logistic_samples, tmp_path):
        """Traces written by other tools fall back to the 'replicate' coordinate."""
        path = tmp_path / 'trace.nc'
        logistic_samples.to_inference_data().to_netcdf(str(path))
        assert load_samples(str(path)).replicate_ids == ('A',)
