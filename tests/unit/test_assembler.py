"""
Unit Tests for the Training Data Assembler
"""

import pytest
import torch

from modelmint.engine.assembler import TRAINING_KIND, TrainingDataAssembler
from modelmint.engine.errors import NoTrainingData, ShapeMismatch
from modelmint.engine.sample_store import ClassSnapshot


def snapshot(class_id, *vectors):
    return ClassSnapshot(id=class_id, display_name=class_id.upper(), embeddings=tuple(vectors))


class TestTrainingDataAssembler:

    @pytest.fixture
    def assembler(self, arena):
        return TrainingDataAssembler(arena)

    def test_matrix_shape_and_positional_labels(self, assembler):
        classes = [
            snapshot("a", torch.zeros(3), torch.zeros(3)),
            snapshot("b"),
            snapshot("c", torch.ones(3))
        ]

        data = assembler.assemble(classes)

        assert data.features.shape == (3, 3)
        assert data.labels.tolist() == [0, 0, 2]
        assert data.num_classes == 3
        assert data.class_ids == ("a", "b", "c")

    def test_no_samples_raises(self, assembler):
        with pytest.raises(NoTrainingData):
            assembler.assemble([snapshot("a"), snapshot("b")])

        with pytest.raises(NoTrainingData):
            assembler.assemble([])

    def test_minority_dimension_reported(self, assembler):
        classes = [
            snapshot("a", torch.zeros(4), torch.zeros(4)),
            snapshot("b", torch.zeros(4), torch.zeros(5))
        ]

        with pytest.raises(ShapeMismatch) as exc_info:
            assembler.assemble(classes)

        context = exc_info.value.context
        assert context['expected'] == 4
        assert context['offenders'] == [{'class_id': 'b', 'position': 1, 'dimension': 5}]

    def test_matrix_is_independent_copy(self, assembler):
        source = torch.zeros(2)
        data = assembler.assemble([snapshot("a", source)])
        source += 1

        assert data.features.sum().item() == 0

    def test_release_drops_training_tensors(self, assembler, arena):
        data = assembler.assemble([snapshot("a", torch.zeros(2))])
        assert arena.live_count(TRAINING_KIND) == 2

        data.release()

        assert arena.live_count(TRAINING_KIND) == 0

    def test_scope_releases_on_exit(self, assembler, arena):
        with arena.scope("training"):
            assembler.assemble([snapshot("a", torch.zeros(2))])
            assert arena.live_count(TRAINING_KIND) == 2

        assert arena.live_count(TRAINING_KIND) == 0
