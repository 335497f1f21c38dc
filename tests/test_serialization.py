"""Tests for Booster JSON and file persistence."""

import json

import numpy as np
import pytest

from budgetboost import Booster, BoosterState, DeserializationError, IoError, NotFittedError


def make_regression_data(n_samples: int = 200, seed: int = 42) -> tuple[np.ndarray, np.ndarray]:
    """Regression data with missing values in one column."""
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n_samples, 3))  # noqa: N806
    y = X[:, 0] - X[:, 1] + rng.standard_normal(n_samples) * 0.1
    X[rng.random(n_samples) < 0.2, 1] = np.nan
    return X, y


class TestJsonRoundTrip:
    """Tests for json_dump / from_json."""

    def test_predictions_identical(self) -> None:
        """A reloaded model predicts bit-for-bit the same."""
        X, y = make_regression_data()  # noqa: N806
        model = Booster(objective="SquaredLoss", create_missing_branch=True).fit(X, y)
        loaded = Booster.from_json(model.json_dump())
        np.testing.assert_array_equal(loaded.predict(X), model.predict(X))
        assert loaded.text_dump() == model.text_dump()

    def test_state_and_config_preserved(self) -> None:
        """Configuration, lifecycle state and fitted attributes survive."""
        X, y = make_regression_data()  # noqa: N806
        model = Booster(
            objective="SquaredLoss",
            budget=0.8,
            missing=-1.0,
            monotone_constraints={0: 1},
            terminate_missing_features={1},
        ).fit(X, y)
        loaded = Booster.from_json(model.json_dump())
        assert loaded.get_params() == model.get_params()
        assert loaded.state is BoosterState.FIT
        assert loaded.n_features == 3
        assert loaded.base_score == model.base_score
        assert loaded.number_of_trees == model.number_of_trees

    def test_metadata_preserved(self) -> None:
        """Metadata is written with the model."""
        X, y = make_regression_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").fit(X, y)
        model.insert_metadata("version", "7")
        loaded = Booster.from_json(model.json_dump())
        assert loaded.get_metadata("version") == "7"

    def test_unfitted_round_trip(self) -> None:
        """An unfitted model reloads unfitted."""
        loaded = Booster.from_json(Booster(objective="HuberLoss", budget=1.1).json_dump())
        assert loaded.state is BoosterState.UNFIT
        assert loaded.config.budget == 1.1
        with pytest.raises(NotFittedError):
            loaded.predict(np.zeros((1, 3)))

    def test_bytes_input(self) -> None:
        """UTF-8 bytes are accepted."""
        X, y = make_regression_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").fit(X, y)
        loaded = Booster.from_json(model.json_dump().encode("utf-8"))
        np.testing.assert_array_equal(loaded.predict(X), model.predict(X))

    def test_feature_names_preserved(self) -> None:
        """Column names from a DataFrame are saved."""
        pd = pytest.importorskip("pandas")
        X, y = make_regression_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").fit(pd.DataFrame(X, columns=["a", "b", "c"]), y)
        assert Booster.from_json(model.json_dump()).feature_names == ["a", "b", "c"]

    def test_calibration_preserved(self) -> None:
        """Calibrated intervals survive a round trip."""
        X, y = make_regression_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").calibrate(X[:120], y[:120], X[120:], y[120:], alpha=[0.1, 0.3])
        loaded = Booster.from_json(model.json_dump())
        expected = model.predict_intervals(X[:10])
        actual = loaded.predict_intervals(X[:10])
        assert sorted(actual) == sorted(expected)
        for alpha in expected:
            np.testing.assert_array_equal(actual[alpha], expected[alpha])


class TestFiles:
    """Tests for save_booster / load_booster."""

    def test_file_round_trip(self, tmp_path) -> None:
        """Models written to disk load back identically."""
        X, y = make_regression_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").fit(X, y)
        path = tmp_path / "model.json"
        model.save_booster(path)
        assert json.loads(path.read_text())["model_type"] == "booster"
        np.testing.assert_array_equal(Booster.load_booster(path).predict(X), model.predict(X))

    def test_missing_file(self, tmp_path) -> None:
        """Unreadable paths raise IoError."""
        with pytest.raises(IoError):
            Booster.load_booster(tmp_path / "absent.json")

    def test_unwritable_path(self, tmp_path) -> None:
        """Unwritable paths raise IoError."""
        with pytest.raises(IoError):
            Booster().save_booster(tmp_path / "missing-dir" / "model.json")


class TestInvalidPayloads:
    """Tests for DeserializationError."""

    def test_garbage(self) -> None:
        """Non-JSON input is rejected."""
        with pytest.raises(DeserializationError):
            Booster.from_json("this is not a model")

    def test_invalid_params(self) -> None:
        """Stored parameters are validated on load."""
        payload = json.loads(Booster(objective="SquaredLoss").json_dump())
        payload["model"]["params"]["budget"] = -1.0
        with pytest.raises(DeserializationError, match="budget"):
            Booster.from_json(json.dumps(payload))

    def test_invalid_state(self) -> None:
        """Unknown lifecycle states are rejected."""
        payload = json.loads(Booster(objective="SquaredLoss").json_dump())
        payload["model"]["state"] = "sleeping"
        with pytest.raises(DeserializationError):
            Booster.from_json(json.dumps(payload))

    def test_missing_trees(self) -> None:
        """Structurally incomplete payloads are rejected."""
        payload = json.loads(Booster(objective="SquaredLoss").json_dump())
        del payload["model"]["ensemble"]
        with pytest.raises(DeserializationError, match="Invalid model payload"):
            Booster.from_json(json.dumps(payload))
