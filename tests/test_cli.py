"""
Tests for the command line interface.
"""

import os

import pytest
import yaml
from click.testing import CliRunner

from nicheview.cli import main


@pytest.fixture
def cli_inputs(tmp_path, grid_features, grid_coords):
    feats = tmp_path / "composition.csv"
    grid_features.to_csv(feats)
    coords = tmp_path / "coords.csv"
    grid_coords.reset_index().to_csv(coords, index=False)
    cfg = tmp_path / "params.yaml"
    cfg.write_text(yaml.safe_dump({
        "views": {"juxta": {"thresholds": [1.5]}, "para": {"bandwidths": [2.0], "family": "exponential"}},
        "model": {"kind": "linear", "k_folds": 3},
        "workers": {"n_jobs": 1, "backend": "sequential"},
    }))
    return feats, coords, cfg


class TestCli:

    def test_run_and_show(self, tmp_path, cli_inputs):
        feats, coords, cfg = cli_inputs
        out = tmp_path / "out"
        runner = CliRunner()
        res = runner.invoke(main, [
            "run", "--features", str(feats), "--coordinates", str(coords),
            "--out-dir", str(out), "--run-label", "demo", "--config", str(cfg), "--no-show-sample",
        ])
        assert res.exit_code == 0, res.output
        assert os.path.isfile(out / "demo" / "performance.parquet")
        assert os.path.isfile(out / "demo" / "nicheview.log")

        res = runner.invoke(main, ["show", "--out-dir", str(out), "--run-label", "demo", "--contributions"])
        assert res.exit_code == 0, res.output
        assert "Performance (demo)" in res.output

    def test_configuration_error_exits_nonzero(self, tmp_path, cli_inputs):
        feats, coords, cfg = cli_inputs
        res = CliRunner().invoke(main, [
            "run", "--features", str(feats), "--coordinates", str(coords),
            "--out-dir", str(tmp_path / "out"), "--run-label", "demo", "--config", str(cfg),
            "--k-folds", "1",
        ])
        assert res.exit_code == 1
        assert "Error" in res.output

    def test_show_missing_run(self, tmp_path):
        res = CliRunner().invoke(main, ["show", "--out-dir", str(tmp_path), "--run-label", "none"])
        assert res.exit_code == 1

    def test_feature_files_with_same_stem_rejected(self, tmp_path, cli_inputs):
        feats, coords, cfg = cli_inputs
        for sub in ("a", "b"):
            (tmp_path / sub).mkdir()
            (tmp_path / sub / "feat.csv").write_text(feats.read_text())
        out = tmp_path / "out"
        res = CliRunner().invoke(main, [
            "run", "--features", str(tmp_path / "a" / "feat.csv"), "--features", str(tmp_path / "b" / "feat.csv"),
            "--coordinates", str(coords), "--out-dir", str(out), "--run-label", "dup", "--config", str(cfg),
        ])
        assert res.exit_code == 1
        assert "Error" in res.output
        assert "feat" in res.output
        assert not os.path.isfile(out / "dup" / "performance.parquet")

    def test_invalid_config_file_reported(self, tmp_path, cli_inputs):
        feats, coords, _ = cli_inputs
        bad = tmp_path / "bad.yaml"
        bad.write_text("model: [unclosed\n")
        res = CliRunner().invoke(main, [
            "run", "--features", str(feats), "--coordinates", str(coords),
            "--out-dir", str(tmp_path / "out"), "--run-label", "demo", "--config", str(bad),
        ])
        assert res.exit_code == 1
        assert "Error" in res.output
        assert isinstance(res.exception, SystemExit)

    def test_non_numeric_config_value_reported(self, tmp_path, cli_inputs):
        feats, coords, _ = cli_inputs
        cfg = tmp_path / "params.yaml"
        cfg.write_text(yaml.safe_dump({
            "views": {"juxta": {"thresholds": ["near"]}},
            "model": {"kind": "linear", "k_folds": 3},
            "workers": {"backend": "sequential"},
        }))
        res = CliRunner().invoke(main, [
            "run", "--features", str(feats), "--coordinates", str(coords),
            "--out-dir", str(tmp_path / "out"), "--run-label", "demo", "--config", str(cfg),
        ])
        assert res.exit_code == 1
        assert isinstance(res.exception, SystemExit)
        assert "Error" in res.output
