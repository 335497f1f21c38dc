"""Tests for the persistence schema module.

These tests validate the envelope format and the error mapping of the
persistence helpers, independently of training.
"""

import json
import math

import numpy as np
import pytest

from budgetboost import DeserializationError, IoError, persist
from budgetboost.conformal import CalibrationResult
from budgetboost.persist.schema import (
    FORMAT_VERSION,
    BoosterSchema,
    CalibrationSchema,
    EnsembleSchema,
    JsonEnvelope,
    NodeSchema,
)
from budgetboost.tree import Ensemble, Node, Tree


def make_ensemble() -> Ensemble:
    """One stump; its leaves keep NaN thresholds and infinite bounds."""
    root = Node(
        num=0,
        weight_value=0.1,
        hessian_sum=4.0,
        depth=0,
        split_value=0.5,
        split_feature=1,
        split_gain=2.0,
        missing_node=1,
        left_child=1,
        right_child=2,
        is_leaf=False,
    )
    left = Node(num=1, weight_value=-0.3, hessian_sum=2.0, depth=1)
    right = Node(num=2, weight_value=0.7, hessian_sum=2.0, depth=1)
    return Ensemble(base_score=0.25, trees=[Tree([root, left, right])])


class TestEnvelope:
    """Tests for the versioned envelope."""

    def test_dumps_envelope_fields(self) -> None:
        """The envelope carries format version and model type."""
        text = persist.dumps("ensemble", EnsembleSchema.from_ensemble(make_ensemble()))
        payload = json.loads(text)
        assert payload["format_version"] == FORMAT_VERSION
        assert payload["model_type"] == "ensemble"
        assert payload["model"]["base_score"] == 0.25

    def test_non_finite_values_survive(self) -> None:
        """Leaf thresholds (NaN) and bounds (inf) round-trip."""
        text = persist.dumps("ensemble", EnsembleSchema.from_ensemble(make_ensemble()))
        assert "NaN" in text
        assert "Infinity" in text
        loaded = persist.loads(text, EnsembleSchema, "ensemble").to_ensemble()
        leaf = loaded.trees[0].nodes[1]
        assert math.isnan(leaf.split_value)
        assert leaf.lower_bound == -math.inf

    def test_round_trip_predictions(self) -> None:
        """Loaded ensembles predict identically."""
        ensemble = make_ensemble()
        loaded = persist.loads(
            persist.dumps("ensemble", EnsembleSchema.from_ensemble(ensemble)), EnsembleSchema, "ensemble"
        ).to_ensemble()
        X = np.array([[0.0, 0.0], [0.0, 1.0], [0.0, math.nan]])  # noqa: N806
        np.testing.assert_array_equal(
            ensemble.predict_raw(X, np.isnan(X)), loaded.predict_raw(X, np.isnan(X))
        )

    def test_generic_envelope_parses(self) -> None:
        """JsonEnvelope can be parametrized with any schema."""
        text = persist.dumps("ensemble", EnsembleSchema.from_ensemble(make_ensemble()))
        envelope = JsonEnvelope[EnsembleSchema].model_validate(json.loads(text), strict=False)
        assert isinstance(envelope.model, EnsembleSchema)
        assert len(envelope.model.trees[0].nodes) == 3
        assert isinstance(envelope.model.trees[0].nodes[0], NodeSchema)


class TestLoadErrors:
    """Tests for DeserializationError mapping."""

    def test_not_json(self) -> None:
        """Malformed text is rejected."""
        with pytest.raises(DeserializationError, match="Malformed"):
            persist.loads("{not json", EnsembleSchema, "ensemble")

    def test_wrong_shape(self) -> None:
        """Valid JSON with the wrong structure is rejected."""
        with pytest.raises(DeserializationError, match="Invalid model payload"):
            persist.loads('{"format_version": 1}', EnsembleSchema, "ensemble")

    def test_wrong_version(self) -> None:
        """Other format versions are rejected."""
        payload = json.loads(persist.dumps("ensemble", EnsembleSchema.from_ensemble(make_ensemble())))
        payload["format_version"] = FORMAT_VERSION + 1
        with pytest.raises(DeserializationError, match="Unsupported format version"):
            persist.loads(json.dumps(payload), EnsembleSchema, "ensemble")

    def test_wrong_model_type(self) -> None:
        """A payload of another model type is rejected."""
        text = persist.dumps("ensemble", EnsembleSchema.from_ensemble(make_ensemble()))
        with pytest.raises(DeserializationError, match="Expected a 'booster' model"):
            persist.loads(text, EnsembleSchema, "booster")

    def test_model_type_checked_before_payload(self) -> None:
        """A payload of another model type is reported as such, not as a schema error."""
        text = persist.dumps("ensemble", EnsembleSchema.from_ensemble(make_ensemble()))
        with pytest.raises(DeserializationError, match="Expected a 'booster' model, got 'ensemble'"):
            persist.loads(text, BoosterSchema, "booster")

    def test_deserialization_error_is_value_error(self) -> None:
        """DeserializationError can be caught as ValueError."""
        with pytest.raises(ValueError):
            persist.loads("", EnsembleSchema, "ensemble")


class TestFiles:
    """Tests for file helpers."""

    def test_write_and_read(self, tmp_path) -> None:
        """Text round-trips through a file."""
        path = tmp_path / "model.json"
        persist.write_file(path, '{"a": 1}')
        assert persist.read_file(path) == '{"a": 1}'

    def test_read_missing_file(self, tmp_path) -> None:
        """Missing files raise IoError."""
        with pytest.raises(IoError, match="Cannot read"):
            persist.read_file(tmp_path / "absent.json")

    def test_write_into_missing_directory(self, tmp_path) -> None:
        """Unwritable paths raise IoError, which is an OSError."""
        with pytest.raises(OSError, match="Cannot write"):
            persist.write_file(tmp_path / "no" / "such" / "model.json", "{}")

    def test_read_binary_file(self, tmp_path) -> None:
        """Non UTF-8 content raises DeserializationError."""
        path = tmp_path / "model.json"
        path.write_bytes(b"\xff\xfe\x00\x81")
        with pytest.raises(DeserializationError, match="not UTF-8"):
            persist.read_file(path)


class TestCalibrationSchema:
    """Tests for calibration state."""

    def test_residual_round_trip(self) -> None:
        """Half-widths keyed by alpha survive, including infinite ones."""
        result = CalibrationResult(method="residual", half_widths={0.1: 1.5, 0.01: math.inf})
        schema = CalibrationSchema.from_result(result)
        assert schema.alphas == [0.01, 0.1]
        restored = persist.loads(persist.dumps("calibration", schema), CalibrationSchema, "calibration").to_result()
        assert restored.half_widths == {0.01: math.inf, 0.1: 1.5}
        assert restored.lower == {}

    def test_quantile_round_trip(self) -> None:
        """Quantile ensembles are stored per alpha."""
        result = CalibrationResult(
            method="quantile",
            half_widths={0.2: 0.5},
            lower={0.2: make_ensemble()},
            upper={0.2: make_ensemble()},
        )
        restored = CalibrationSchema.from_result(result).to_result()
        assert restored.method == "quantile"
        assert restored.upper[0.2].base_score == 0.25
