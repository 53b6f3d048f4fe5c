"""
Unit Tests for the Predictor
"""

from unittest.mock import MagicMock

import pytest
import torch

from modelmint.engine.errors import (
    DegenerateModel,
    InvalidEmbeddingShape,
    InvalidPrediction,
    ShapeMismatch
)
from modelmint.engine.head import HeadNetwork
from modelmint.engine.predictor import PREDICTION_KIND, Predictor
from modelmint.engine.sample_store import ClassEntry


def fixed_output_head(values):
    """Head mock whose forward pass always returns ``values``."""
    head = MagicMock(spec=HeadNetwork)
    head.num_classes = len(values)
    head.input_dim = 3
    head.device = torch.device('cpu')
    head.training = False
    head.side_effect = lambda x: torch.tensor([values], dtype=torch.float32)
    return head


def classes(*names):
    return [ClassEntry(id=f"class-{i + 1}", display_name=name) for i, name in enumerate(names)]


class TestPredictor:

    @pytest.fixture
    def predictor(self, arena):
        return Predictor(arena)

    def test_ranked_descending(self, predictor):
        head = fixed_output_head([0.2, 0.7, 0.1])

        ranked = predictor.predict([0.0, 0.0, 0.0], head, classes("a", "b", "c"))

        assert [r.class_name for r in ranked] == ["b", "a", "c"]
        assert ranked[0].score == pytest.approx(0.7)
        assert ranked[0].to_dict() == {'classId': 'class-2', 'className': 'b', 'score': ranked[0].score}

    def test_ties_keep_class_order(self, predictor):
        head = fixed_output_head([0.25, 0.25, 0.25, 0.25])

        ranked = predictor.predict([0.0, 0.0, 0.0], head, classes("w", "x", "y", "z"))

        assert [r.class_name for r in ranked] == ["w", "x", "y", "z"]

    def test_nan_output_is_invalid(self, predictor):
        head = fixed_output_head([float('nan'), 0.5])

        with pytest.raises(InvalidPrediction) as exc_info:
            predictor.predict([0.0, 0.0, 0.0], head, classes("a", "b"))

        assert exc_info.value.context['nan_positions'] == [0]

    def test_zero_sum_is_degenerate(self, predictor):
        head = fixed_output_head([0.0, 0.00001])

        with pytest.raises(DegenerateModel):
            predictor.predict([0.0, 0.0, 0.0], head, classes("a", "b"))

    def test_drift_is_renormalized(self, predictor):
        head = fixed_output_head([1.0, 3.0])

        ranked = predictor.predict([0.0, 0.0, 0.0], head, classes("a", "b"))

        assert ranked[0].score == pytest.approx(0.75)
        assert ranked[1].score == pytest.approx(0.25)

    def test_small_drift_kept_and_clamped(self, predictor):
        head = fixed_output_head([1.004, -0.001])

        ranked = predictor.predict([0.0, 0.0, 0.0], head, classes("a", "b"))

        assert ranked[0].score == 1.0
        assert ranked[1].score == 0.0

    def test_no_head_is_degenerate(self, predictor):
        with pytest.raises(DegenerateModel):
            predictor.predict([0.0], None, [])

    def test_class_count_must_match_head(self, predictor):
        head = fixed_output_head([0.5, 0.5])

        with pytest.raises(ShapeMismatch):
            predictor.predict([0.0, 0.0, 0.0], head, classes("a"))

    def test_embedding_length_must_match_head(self, predictor):
        head = fixed_output_head([0.5, 0.5])

        with pytest.raises(InvalidEmbeddingShape):
            predictor.predict([0.0, 0.0], head, classes("a", "b"))

    def test_uses_current_display_names(self, predictor):
        head = fixed_output_head([0.9, 0.1])
        entries = classes("before", "other")
        entries[0].display_name = "after"

        ranked = predictor.predict([0.0, 0.0, 0.0], head, entries)

        assert ranked[0].class_name == "after"

    def test_real_head_releases_prediction_tensors(self, predictor, arena):
        head = HeadNetwork(input_dim=3, num_classes=2, hidden_units=4, seed=0)

        for _ in range(5):
            predictor.predict(torch.randn(3), head, classes("a", "b"))

        assert arena.live_count(PREDICTION_KIND) == 0

    def test_zero_weight_linear_head_is_degenerate(self, predictor):
        head = HeadNetwork(input_dim=3, num_classes=2, hidden_units=4, output_activation="linear")
        with torch.no_grad():
            for parameter in head.parameters():
                parameter.zero_()

        with pytest.raises(DegenerateModel):
            predictor.predict(torch.ones(3), head, classes("a", "b"))
