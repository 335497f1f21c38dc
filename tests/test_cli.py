"""Tests for CLI commands."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from typer.testing import CliRunner

from budgetboost import Booster
from budgetboost.cli import app

runner = CliRunner(env={"NO_COLOR": "1"})


@pytest.fixture
def train_csv(tmp_path: Path) -> Path:
    """A small regression CSV with an integer-coded category column."""
    rng = np.random.default_rng(42)
    n = 120
    df = pd.DataFrame(
        {
            "x1": rng.standard_normal(n),
            "x2": rng.standard_normal(n),
            "color": rng.integers(0, 3, n),
        }
    )
    df["y"] = 2.0 * df["x1"] + df["color"] + rng.standard_normal(n) * 0.1
    path = tmp_path / "train.csv"
    df.to_csv(path, index=False)
    return path


@pytest.fixture
def model_path(train_csv: Path, tmp_path: Path) -> Path:
    """A model trained through the CLI."""
    path = tmp_path / "model.json"
    result = runner.invoke(
        app,
        ["train", str(train_csv), "--target", "y", "--output", str(path), "--iteration-limit", "5", "--budget", "2"],
    )
    assert result.exit_code == 0, result.stdout
    return path


class TestCliHelp:
    """Tests for CLI help output."""

    def test_main_help(self) -> None:
        """Every command is listed."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("train", "predict", "dump", "importance", "info"):
            assert command in result.stdout


class TestTrain:
    """Tests for the train command."""

    def test_train_saves_model(self, model_path: Path) -> None:
        """The saved file is a loadable booster that remembers its target."""
        booster = Booster.load_booster(model_path)
        assert booster.number_of_trees == 5
        assert booster.feature_names == ["x1", "x2", "color"]
        assert booster.get_metadata("target") == "y"

    def test_categorical_column(self, train_csv: Path, tmp_path: Path) -> None:
        """Named categorical columns are passed by index."""
        path = tmp_path / "cat.json"
        result = runner.invoke(
            app,
            ["train", str(train_csv), "-t", "y", "-o", str(path), "-c", "color", "--iteration-limit", "3"],
        )
        assert result.exit_code == 0, result.stdout
        assert Booster.load_booster(path).config.categorical_features == {2}

    def test_missing_target(self, train_csv: Path, tmp_path: Path) -> None:
        """An unknown target column is an error."""
        result = runner.invoke(app, ["train", str(train_csv), "-t", "label", "-o", str(tmp_path / "m.json")])
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_unknown_categorical(self, train_csv: Path, tmp_path: Path) -> None:
        """Unknown categorical columns are reported."""
        result = runner.invoke(
            app, ["train", str(train_csv), "-t", "y", "-o", str(tmp_path / "m.json"), "-c", "shape"]
        )
        assert result.exit_code == 1
        assert "shape" in result.stdout

    def test_invalid_budget(self, train_csv: Path, tmp_path: Path) -> None:
        """Invalid parameters exit with an error instead of a traceback."""
        result = runner.invoke(
            app, ["train", str(train_csv), "-t", "y", "-o", str(tmp_path / "m.json"), "--budget", "-1"]
        )
        assert result.exit_code == 1
        assert "budget" in result.stdout


class TestPredict:
    """Tests for the predict command."""

    def test_predict_to_stdout(self, model_path: Path, train_csv: Path) -> None:
        """One prediction per line; the target column is ignored."""
        result = runner.invoke(app, ["predict", str(model_path), str(train_csv)])
        assert result.exit_code == 0
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        assert len(lines) == 120
        float(lines[0])

    def test_predict_to_file(self, model_path: Path, train_csv: Path, tmp_path: Path) -> None:
        """Predictions can be written as CSV."""
        out = tmp_path / "preds.csv"
        result = runner.invoke(app, ["predict", str(model_path), str(train_csv), "--output", str(out)])
        assert result.exit_code == 0
        preds = pd.read_csv(out)
        assert list(preds.columns) == ["prediction"]
        assert len(preds) == 120

    def test_proba_requires_log_loss(self, model_path: Path, train_csv: Path) -> None:
        """Probabilities are refused for regression models."""
        result = runner.invoke(app, ["predict", str(model_path), str(train_csv), "--proba"])
        assert result.exit_code == 1
        assert "LogLoss" in result.stdout

    def test_missing_model(self, train_csv: Path, tmp_path: Path) -> None:
        """A missing model file is an error."""
        result = runner.invoke(app, ["predict", str(tmp_path / "absent.json"), str(train_csv)])
        assert result.exit_code == 1
        assert "Cannot read" in result.stdout


class TestInspect:
    """Tests for dump, importance and info."""

    def test_dump(self, model_path: Path) -> None:
        """All trees are printed."""
        result = runner.invoke(app, ["dump", str(model_path)])
        assert result.exit_code == 0
        assert "booster[0]" in result.stdout
        assert "booster[4]" in result.stdout

    def test_dump_single_tree(self, model_path: Path) -> None:
        """--tree restricts the output to one tree."""
        result = runner.invoke(app, ["dump", str(model_path), "--tree", "1"])
        assert result.exit_code == 0
        assert "booster[1]" in result.stdout
        assert "booster[0]" not in result.stdout

    def test_dump_tree_out_of_range(self, model_path: Path) -> None:
        """Out-of-range tree indices are rejected."""
        result = runner.invoke(app, ["dump", str(model_path), "--tree", "99"])
        assert result.exit_code == 1

    def test_importance(self, model_path: Path) -> None:
        """Importance is shown with column names."""
        result = runner.invoke(app, ["importance", str(model_path), "--method", "TotalGain"])
        assert result.exit_code == 0
        assert "x1" in result.stdout

    def test_importance_invalid_method(self, model_path: Path) -> None:
        """Unknown methods are rejected."""
        result = runner.invoke(app, ["importance", str(model_path), "--method", "Entropy"])
        assert result.exit_code == 1
        assert "Invalid importance method" in result.stdout

    def test_info(self, model_path: Path) -> None:
        """Model summary includes structure and metadata."""
        result = runner.invoke(app, ["info", str(model_path)])
        assert result.exit_code == 0
        assert "trees" in result.stdout
        assert "metadata.target" in result.stdout
