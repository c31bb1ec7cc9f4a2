"""
Tests for params loading, run fingerprints and worker settings.
"""

import pytest

from nicheview.config import DEFAULT_PARAMS, WorkerPool, fingerprint_run, load_params_yaml
from nicheview.errors import ConfigurationError


class TestLoadParams:

    def test_partial_yaml_merges_over_defaults(self, tmp_path):
        p = tmp_path / "params.yaml"
        p.write_text("model:\n  kind: linear\nviews:\n  para:\n    family: linear\n")
        cfg = load_params_yaml(str(p))
        assert cfg["model"]["kind"] == "linear"
        assert cfg["model"]["k_folds"] == DEFAULT_PARAMS["model"]["k_folds"]
        assert cfg["views"]["para"]["family"] == "linear"
        assert cfg["views"]["para"]["bandwidths"] == DEFAULT_PARAMS["views"]["para"]["bandwidths"]
        # defaults are not mutated by the merge
        assert DEFAULT_PARAMS["model"]["kind"] == "ensemble"

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_params_yaml(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("model: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_params_yaml(str(p))

    def test_non_mapping_top_level(self, tmp_path):
        p = tmp_path / "list.yaml"
        p.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_params_yaml(str(p))


class TestFingerprint:

    def test_stable_and_sensitive(self):
        a = fingerprint_run({"model": {"kind": "linear", "seed": 1}, "targets": ["a"]})
        b = fingerprint_run({"targets": ["a"], "model": {"seed": 1, "kind": "linear"}})
        c = fingerprint_run({"model": {"kind": "linear", "seed": 2}, "targets": ["a"]})
        assert a == b
        assert a != c

    def test_ignores_unrelated_keys(self):
        base = {"model": {"kind": "linear"}}
        assert fingerprint_run(base) == fingerprint_run({**base, "io": {"out_dir": "elsewhere"}})


class TestWorkerPool:

    def test_from_params(self):
        pool = WorkerPool.from_params({"workers": {"n_jobs": 4, "backend": "threading"}})
        assert pool.n_jobs == 4
        assert pool.backend == "threading"
        assert pool.batch_size == "auto"

    def test_all_cores(self):
        assert WorkerPool(n_jobs=-1).n_jobs == -1

    @pytest.mark.parametrize("n_jobs", [0, -2, 1.5])
    def test_bad_n_jobs(self, n_jobs):
        with pytest.raises(ConfigurationError):
            WorkerPool(n_jobs=n_jobs)
