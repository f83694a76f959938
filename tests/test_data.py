"""Unit tests for DatasetShaper, ReplicateSet and synthetic data.

All tests are self-contained: they build small tables in memory or write
CSV files via pytest's tmp_path fixture.
"""
import numpy as np
import pandas as pd
import pytest
from pathlib import Path

from bayes_ode.core import logistic_growth
from bayes_ode.data import DatasetShaper, ReplicateSet, TimeSeries, simulate_dataset
from bayes_ode.exceptions import InsufficientData, ShapeMismatch, ValidationError


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _frame(lengths, start=0.0):
    """Long table with one replicate per entry of ``lengths``."""
    rows = []
    for i, n in enumerate(lengths):
        rid = chr(ord('A') + i)
        for k in range(n):
            rows.append({'time': start + k, 'replicate': rid, 'N': 10.0 + k + i})
    return pd.DataFrame(rows, columns=['time', 'replicate', 'N'])


def _write_csv(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


class TestLoadCSV:
    """Test reading delimited files."""

    def test_single_replicate_without_replicate_column(self, tmp_path):
        path = _write_csv(tmp_path / 'growth.csv', "time,N\n0,10\n5,25.5\n10,60\n")
        data = DatasetShaper().load_csv(path)

        assert len(data) == 1
        assert data.ids == ('all',)
        assert data.observed_names == ('N',)
        np.testing.assert_array_equal(data[0].time, [0.0, 5.0, 10.0])

    def test_tab_delimited_with_constants(self, tmp_path):
        text = ("time\treplicate\tI\tN0\n"
                "0\tA\t10\t1000\n1\tA\t14\t1000\n"
                "0\tB\t5\t500\n1\tB\t7\t500\n")
        path = _write_csv(tmp_path / 'sir.tsv', text)
        data = DatasetShaper(constant_cols=['N0'], delimiter='\t').load_csv(path)

        assert data.ids == ('A', 'B')
        assert data.observed_names == ('I',)
        assert data['B'].constants['N0'] == 500.0

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DatasetShaper().load_csv(tmp_path / 'missing.csv')

    def test_missing_time_column(self, tmp_path):
        path = _write_csv(tmp_path / 'bad.csv', "t,N\n0,1\n1,2\n")
        with pytest.raises(ValidationError, match="Time column"):
            DatasetShaper().load_csv(path)

    def test_select_single_replicate(self, tmp_path):
        path = tmp_path / 'reps.csv'
        _frame([3, 3]).to_csv(path, index=False)
        data = DatasetShaper().load_csv(path, replicates='B')
        assert data.ids == ('B',)

    def test_shared_constants_forwarded(self, tmp_path):
        path = tmp_path / 'reps.csv'
        _frame([3, 3]).to_csv(path, index=False)
        data = DatasetShaper().load_csv(path, shared_constants={'N0': 1000.0})
        assert data['A'].constants['N0'] == 1000.0
        assert data['B'].constants['N0'] == 1000.0


class TestShape:
    """Test grouping, validation and selection."""

    def test_rows_sorted_by_time(self):
        frame = _frame([4]).iloc[[2, 0, 3, 1]]
        data = DatasetShaper().shape(frame)
        np.testing.assert_array_equal(data[0].time, [0.0, 1.0, 2.0, 3.0])
        np.testing.assert_array_equal(data[0].column('N'), [10.0, 11.0, 12.0, 13.0])

    def test_insufficient_data_names_replicate(self):
        frame = _frame([3, 1])
        with pytest.raises(InsufficientData) as excinfo:
            DatasetShaper().shape(frame)
        assert excinfo.value.replicate == 'B'

    def test_insufficient_data_reported_before_shape_mismatch(self):
        """One replicate too short and lengths unequal: InsufficientData wins."""
        frame = _frame([1, 4])
        with pytest.raises(InsufficientData):
            DatasetShaper().shape(frame)

    def test_single_observation_single_replicate(self):
        with pytest.raises(InsufficientData):
            DatasetShaper().shape(_frame([1]))

    def test_unequal_lengths_raise_shape_mismatch(self):
        with pytest.raises(ShapeMismatch):
            DatasetShaper().shape(_frame([3, 4]))

    def test_single_selected_replicate_skips_length_check(self):
        data = DatasetShaper().shape(_frame([3, 4]), replicates='B')
        assert data[0].n_times == 4

    def test_multi_replicate_false_allows_unequal_lengths(self):
        data = DatasetShaper().shape(_frame([3, 4]), multi_replicate=False)
        assert [r.n_times for r in data] == [3, 4]
        assert data.shared_time_grid is None

    def test_equal_lengths_property(self):
        """Random replicate lengths: equal lengths pass, unequal always mismatch."""
        rng = np.random.default_rng(3)
        for _ in range(25):
            lengths = list(rng.integers(2, 6, size=3))
            frame = _frame(lengths)
            if len(set(lengths)) == 1:
                data = DatasetShaper().shape(frame)
                assert len({r.n_times for r in data}) == 1
            else:
                with pytest.raises(ShapeMismatch):
                    DatasetShaper().shape(frame)

    def test_duplicate_time_points(self):
        frame = _frame([3])
        frame.loc[1, 'time'] = 0.0
        with pytest.raises(ValidationError, match="strictly increasing"):
            DatasetShaper().shape(frame)

    def test_non_finite_observation(self):
        frame = _frame([3])
        frame.loc[1, 'N'] = np.nan
        with pytest.raises(ValidationError):
            DatasetShaper().shape(frame)

    def test_non_numeric_observation(self):
        frame = _frame([3])
        frame['N'] = frame['N'].astype(object)
        frame.loc[1, 'N'] = 'n/a'
        with pytest.raises(ValidationError):
            DatasetShaper().shape(frame)

    def test_unknown_replicate(self):
        with pytest.raises(ValidationError, match="Unknown replicate"):
            DatasetShaper().shape(_frame([3, 3]), replicates='Z')

    def test_missing_observed_column(self):
        with pytest.raises(ValidationError, match="Columns not found"):
            DatasetShaper(observed_cols=['N', 'M']).shape(_frame([3]))

    def test_varying_constant_column(self):
        frame = _frame([3])
        frame['N0'] = [100.0, 100.0, 200.0]
        with pytest.raises(ValidationError, match="varies"):
            DatasetShaper(constant_cols=['N0']).shape(frame)

    def test_constants_from_mapping(self):
        data = DatasetShaper().shape(_frame([3, 3]), constants={'A': {'N0': 50.0}},
                                     shared_constants={'N0': 10.0})
        assert data['A'].constants['N0'] == 50.0
        assert data['B'].constants['N0'] == 10.0

    def test_arrays_are_read_only(self):
        data = DatasetShaper().shape(_frame([3]))
        with pytest.raises(ValueError):
            data[0].values[0, 0] = 1.0


class TestReplicateSet:
    """Test the shaped container."""

    def test_lookup_and_iteration(self):
        data = DatasetShaper().shape(_frame([3, 3]))
        assert data.is_multi_replicate
        assert [r.replicate_id for r in data] == ['A', 'B']
        assert data['B'] is data[1]
        with pytest.raises(KeyError):
            data['Z']

    def test_shared_time_grid(self):
        data = DatasetShaper().shape(_frame([3, 3]))
        np.testing.assert_array_equal(data.shared_time_grid, [0.0, 1.0, 2.0])

    def test_to_dataframe_round_trip(self):
        frame = _frame([3, 3])
        data = DatasetShaper().shape(frame)
        again = DatasetShaper().shape(data.to_dataframe())
        assert again.ids == data.ids
        np.testing.assert_array_equal(again['B'].values, data['B'].values)

    def test_duplicate_ids_rejected(self):
        ts = TimeSeries('A', [0.0, 1.0], [[1.0], [2.0]], ('N',))
        with pytest.raises(ValidationError):
            ReplicateSet((ts, ts))

    def test_mismatched_observed_names_rejected(self):
        a = TimeSeries('A', [0.0, 1.0], [[1.0], [2.0]], ('N',))
        b = TimeSeries('B', [0.0, 1.0], [[1.0], [2.0]], ('M',))
        with pytest.raises(ValidationError):
            ReplicateSet((a, b))


class TestSimulateDataset:
    """Test synthetic data generation."""

    def test_noise_free_matches_solution(self):
        t = np.linspace(0.0, 20.0, 5)
        df = simulate_dataset(logistic_growth(), {'r': 0.2, 'K': 500.0}, [10.0], t)
        states = logistic_growth().solve([10.0], {'r': 0.2, 'K': 500.0}, t)

        assert list(df.columns) == ['time', 'replicate', 'N']
        np.testing.assert_allclose(df['N'], states[:, 0])

    def test_noise_is_seeded(self):
        t = np.linspace(0.0, 20.0, 5)
        a = simulate_dataset(logistic_growth(), {'r': 0.2, 'K': 500.0}, [10.0], t,
                             noise_sd=1.0, seed=4)
        b = simulate_dataset(logistic_growth(), {'r': 0.2, 'K': 500.0}, [10.0], t,
                             noise_sd=1.0, seed=4)
        pd.testing.assert_frame_equal(a, b)

    def test_replicate_overrides_and_csv(self, tmp_path):
        t = np.linspace(0.0, 10.0, 4)
        path = tmp_path / 'out' / 'sim.csv'
        df = simulate_dataset(logistic_growth(), {'r': 0.2, 'K': 500.0}, [10.0], t,
                              replicates={'A': {}, 'B': {'y0': [20.0], 'K': 300.0}},
                              constant_names=('K',), output_path=path)

        assert path.exists()
        assert set(df['replicate']) == {'A', 'B'}
        assert df.loc[df['replicate'] == 'B', 'K'].iloc[0] == 300.0
        assert df.loc[df['replicate'] == 'B', 'N'].iloc[0] == pytest.approx(20.0)
