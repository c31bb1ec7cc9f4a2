"""
Tests for per-view cross-validated model fitting.
"""

import numpy as np
import pandas as pd
import pytest

from nicheview.errors import ConfigurationError
from nicheview.training import (
    derive_seed,
    fit_fold,
    fit_view,
    fold_partitions,
    held_out_r2,
)


@pytest.fixture
def linear_data():
    rng = np.random.default_rng(11)
    n = 60
    idx = pd.Index([f"c{i}" for i in range(n)])
    X = pd.DataFrame({"x1": rng.normal(size=n), "x2": rng.normal(size=n)}, index=idx)
    y = pd.Series(2.0 * X["x1"] - 1.0 * X["x2"] + 3.0, index=idx, name="y")
    return X, y


class TestFoldPartitions:

    def test_partition_covers_each_row_once(self):
        parts = fold_partitions(23, 5, seed=1)
        assert len(parts) == 5
        test_rows = np.concatenate([te for _, te in parts])
        assert sorted(test_rows.tolist()) == list(range(23))
        for tr, te in parts:
            assert len(np.intersect1d(tr, te)) == 0
            assert len(tr) + len(te) == 23

    def test_deterministic_given_seed(self):
        a = fold_partitions(40, 4, seed=5)
        b = fold_partitions(40, 4, seed=5)
        c = fold_partitions(40, 4, seed=6)
        assert all(np.array_equal(x[1], y[1]) for x, y in zip(a, b))
        assert not all(np.array_equal(x[1], y[1]) for x, y in zip(a, c))

    @pytest.mark.parametrize("k", [1, 0, 41, 2.5, True])
    def test_invalid_fold_count(self, k):
        with pytest.raises(ConfigurationError):
            fold_partitions(40, k, seed=0)


class TestSeeds:

    def test_derive_seed_is_stable(self):
        assert derive_seed(42, "a", "intraview", 0) == derive_seed(42, "a", "intraview", 0)
        assert derive_seed(42, "a", "intraview", 0) != derive_seed(42, "a", "intraview", 1)
        assert 0 <= derive_seed(1, "x") < 2 ** 32


class TestHeldOutR2:

    def test_perfect(self):
        y = np.array([1.0, 2.0, 3.0])
        assert held_out_r2(y, y) == pytest.approx(1.0)

    def test_mean_prediction_is_zero(self):
        y = np.array([1.0, 2.0, 3.0])
        assert held_out_r2(y, np.full(3, 2.0)) == pytest.approx(0.0)

    def test_constant_truth_is_undefined(self):
        assert held_out_r2(np.ones(4), np.zeros(4)) is None

    def test_small_magnitude_truth_is_defined(self):
        y = np.linspace(0.0, 1.0, 20)
        ref = held_out_r2(y, 0.9 * y)
        assert held_out_r2(1e-7 * y, 0.9 * 1e-7 * y) == pytest.approx(ref)
        assert held_out_r2(1e-7 + 0.0 * y, y) is None

    def test_small_magnitude_predictor_kept(self, linear_data):
        X, y = linear_data
        small = X * 1e-7
        folds = fit_view(small, y, k_folds=3, model_kind="linear", seed=0)
        assert not any(f.failed for f in folds)
        assert all(f.importances["x1"] > 0 for f in folds)


class TestFitView:

    def test_linear_recovers_relation(self, linear_data):
        X, y = linear_data
        folds = fit_view(X, y, k_folds=5, model_kind="linear", seed=0)
        assert len(folds) == 5
        for f in folds:
            assert not f.failed
            assert f.r2 == pytest.approx(1.0, abs=1e-9)
        mean_imp = {p: np.mean([f.importances[p] for f in folds]) for p in ("x1", "x2")}
        assert mean_imp["x1"] > mean_imp["x2"]

    def test_ensemble_is_deterministic(self, linear_data):
        X, y = linear_data
        a = fit_view(X, y, k_folds=3, model_kind="ensemble", seed=3, n_trees=20)
        b = fit_view(X, y, k_folds=3, model_kind="ensemble", seed=3, n_trees=20)
        for fa, fb in zip(a, b):
            assert np.array_equal(fa.predictions, fb.predictions)
            assert fa.importances == fb.importances

    def test_ensemble_importances_sum_to_one(self, linear_data):
        X, y = linear_data
        folds = fit_view(X, y, k_folds=3, model_kind="ensemble", seed=3, n_trees=20)
        for f in folds:
            assert sum(f.importances.values()) == pytest.approx(1.0)

    def test_degenerate_predictor_dropped(self, linear_data):
        X, y = linear_data
        X = X.assign(const=1.0)
        folds = fit_view(X, y, k_folds=4, model_kind="linear", seed=0)
        assert not any(f.failed for f in folds)
        assert all(f.importances["const"] == 0.0 for f in folds)

    def test_all_predictors_degenerate(self, linear_data):
        X, y = linear_data
        const = pd.DataFrame({"k1": 1.0, "k2": 5.0}, index=X.index)
        folds = fit_view(const, y, k_folds=4, model_kind="linear", seed=0)
        assert all(f.failed for f in folds)
        assert all(f.r2 is None for f in folds)
        for f in folds:
            assert "constant" in f.reason
            assert np.allclose(f.predictions, f.predictions[0])

    def test_sentinel_rows_predicted_by_training_mean(self, linear_data):
        X, y = linear_data
        X = X.copy()
        X.iloc[:5] = np.nan
        parts = fold_partitions(len(X), 3, seed=0)
        folds = fit_view(X, y, model_kind="linear", seed=0, partitions=parts)
        nan_rows = set(range(5))
        for f, (train, test) in zip(folds, parts):
            assert not f.failed
            usable_train = [i for i in train if i not in nan_rows]
            mean = y.to_numpy()[usable_train].mean()
            for pos, pred in zip(f.test_positions, f.predictions):
                if pos in nan_rows:
                    assert pred == pytest.approx(mean)

    def test_constant_target_fold_r2_undefined(self, linear_data):
        X, _ = linear_data
        y = pd.Series(4.0, index=X.index, name="flat")
        folds = fit_view(X, y, k_folds=3, model_kind="linear", seed=0)
        assert all(f.r2 is None for f in folds)

    def test_index_mismatch(self, linear_data):
        X, y = linear_data
        with pytest.raises(ConfigurationError):
            fit_view(X, y.iloc[::-1], k_folds=3)

    def test_unknown_model(self, linear_data):
        X, y = linear_data
        with pytest.raises(ConfigurationError, match="model kind"):
            fit_view(X, y, k_folds=3, model_kind="boosting")


class TestFitFold:

    def test_no_predictors_is_a_failed_unit(self):
        y = np.arange(10, dtype=float)
        train, test = np.arange(0, 8), np.arange(8, 10)
        res = fit_fold(np.zeros((10, 0)), y, [], train, test, "t", "v", 0, model_kind="linear")
        assert res.failed
        assert res.predictions.tolist() == pytest.approx([y[train].mean()] * 2)
        assert res.key == ("t", "v", 0)
