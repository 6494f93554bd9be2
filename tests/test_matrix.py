"""
Tests for causal matrices and the lag / neighbour-count sweep.
"""

import numpy as np
import pytest

from infodyn.errors import ConfigurationError
from infodyn.matrix import (
    CausalMatrix,
    MatrixConfig,
    MatrixSweep,
    compute_causal_matrix,
    load_table,
    select_modes,
)


def driven_table(n=300, seed=42):
    """Column 0 drives column 1 one step later; column 2 is independent."""
    rng = np.random.default_rng(seed)
    data = rng.standard_normal((n, 3))
    data[1:, 1] += 1.5 * data[:-1, 0]
    return data


class TestMatrixConfig:
    def test_history_defaults_to_lag(self):
        config = MatrixConfig(lags=[1, 3])
        assert config.history_for(3) == 3
        assert MatrixConfig(history=2).history_for(3) == 2

    def test_run_name(self):
        config = MatrixConfig(n_permutations=100)
        assert config.run_name(2, 5) == "Lag2_Embed1_Length2_K5_100Permutations"

    def test_estimator_config_conditions_every_other_variable(self):
        est = MatrixConfig().estimator_config(lag=2, k=4, n_conditioning=3)
        assert est.lag == 2
        assert len(est.cond_embeddings) == 3
        assert est.cond_lags == [2, 2, 2]
        assert est.source_embedding.history == 2

    @pytest.mark.parametrize("kwargs", [
        {"lags": []},
        {"lags": [0]},
        {"neighbor_counts": [0]},
        {"n_permutations": 0},
        {"n_modes": 1},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            MatrixConfig(**kwargs)


class TestCausalMatrix:
    def test_small_run(self):
        """Shapes, zero diagonal, and the driven direction standing out."""
        config = MatrixConfig(n_permutations=5, seed=0)
        matrix = compute_causal_matrix(driven_table(), config)
        assert matrix.values.shape == (3, 3)
        assert np.all(np.diag(matrix.values) == 0.0)
        assert np.all(np.diag(matrix.p_values) == 1.0)
        assert matrix.values[0, 1] > 0.2
        assert matrix.values[0, 1] > matrix.values[1, 0] + 0.2
        assert matrix.p_values[0, 1] == 0.0
        assert matrix.significant(0.05)[0, 1]
        assert not matrix.significant(0.05)[1, 1]

    def test_reproducible_with_seed(self):
        data = driven_table(150)
        config = MatrixConfig(n_permutations=4, seed=3, kind="gaussian")
        a = compute_causal_matrix(data, config)
        b = compute_causal_matrix(data, config)
        assert np.array_equal(a.values, b.values)
        assert np.array_equal(a.effects, b.effects)

    def test_two_variables_have_no_conditioning(self):
        data = driven_table(200)[:, :2]
        matrix = compute_causal_matrix(data, MatrixConfig(n_permutations=3, seed=0, kind="gaussian"))
        assert matrix.values.shape == (2, 2)

    def test_modes_selected_from_the_front(self):
        config = MatrixConfig(n_permutations=3, seed=0, n_modes=2, kind="gaussian")
        matrix = compute_causal_matrix(driven_table(200), config)
        assert matrix.n_variables == 2

    def test_single_variable_rejected(self):
        with pytest.raises(ConfigurationError):
            compute_causal_matrix(np.zeros((100, 1)), MatrixConfig(n_permutations=2))

    @pytest.mark.parametrize("kind", ["gaussian", "kraskov"])
    def test_worker_count_does_not_change_matrix(self, kind):
        """Each pair draws from its own seeded stream, so a pool matches the serial run."""
        data = driven_table(150)
        serial = compute_causal_matrix(data, MatrixConfig(n_permutations=4, seed=9, kind=kind, n_workers=1))
        pooled = compute_causal_matrix(data, MatrixConfig(n_permutations=4, seed=9, kind=kind, n_workers=2))
        assert np.array_equal(serial.values, pooled.values)
        assert np.array_equal(serial.p_values, pooled.p_values)
        assert np.array_equal(serial.effects, pooled.effects)

    def test_save_and_load(self, tmp_path):
        config = MatrixConfig(n_permutations=3, seed=0, kind="gaussian")
        matrix = compute_causal_matrix(driven_table(150), config)
        path = matrix.save(tmp_path / "run")
        assert path.name == "run.npz"
        loaded = CausalMatrix.load(path)
        assert np.array_equal(loaded.values, matrix.values)
        assert loaded.lag == 1 and loaded.k == 4
        assert loaded.units == "nats"


class TestMatrixSweep:
    def test_writes_one_file_per_run_and_skips_existing(self, tmp_path):
        config = MatrixConfig(
            lags=[1, 2], neighbor_counts=[3], n_permutations=2, seed=0,
            kind="gaussian", output_dir=str(tmp_path),
        )
        sweep = MatrixSweep(config)
        results = sweep.run(driven_table(150), verbose=False)
        assert set(results) == {(1, 3), (2, 3)}
        assert (tmp_path / "Lag1_Embed1_Length1_K3_2Permutations.npz").exists()
        assert (tmp_path / "Lag2_Embed1_Length2_K3_2Permutations.npz").exists()

        again = sweep.run(driven_table(150), verbose=False)
        assert again == {}

    def test_verbose_progress(self, capsys):
        config = MatrixConfig(n_permutations=2, seed=0, kind="gaussian")
        MatrixSweep(config).run(driven_table(120), verbose=True)
        out = capsys.readouterr().out
        assert "Lag1_Embed1_Length1_K4_2Permutations" in out
        assert "0 -> 1" in out

    def test_save_config(self, tmp_path):
        sweep = MatrixSweep(MatrixConfig(lags=[1, 2]))
        sweep.save_config(str(tmp_path / "config.json"))
        assert '"lags"' in (tmp_path / "config.json").read_text()


class TestDataLoading:
    def test_csv(self, tmp_path):
        data = driven_table(20)
        np.savetxt(tmp_path / "data.csv", data, delimiter=",")
        assert np.allclose(load_table(tmp_path / "data.csv"), data)

    def test_npz_variable(self, tmp_path):
        np.savez(tmp_path / "data.npz", modes=np.ones((10, 3)), other=np.zeros(4))
        assert load_table(tmp_path / "data.npz", "modes").shape == (10, 3)
        with pytest.raises(ConfigurationError):
            load_table(tmp_path / "data.npz")

    def test_mat_variable(self, tmp_path):
        from scipy.io import savemat

        savemat(tmp_path / "data.mat", {"modes": np.ones((10, 3))})
        assert load_table(tmp_path / "data.mat").shape == (10, 3)

    def test_unsupported(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_table(tmp_path / "data.txt")

    def test_select_modes(self):
        data = np.arange(12.0).reshape(4, 3)
        assert select_modes(data, 2).tolist() == data[:, :2].tolist()
        with pytest.raises(ConfigurationError):
            select_modes(data, 4)
