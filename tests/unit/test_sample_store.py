"""
Unit Tests for the Sample Store

Covers class/sample lifecycle, id generation, embedding validation and
tensor ownership accounting.
"""

import numpy as np
import pytest
import torch

from modelmint.engine.errors import DuplicateClassName, InvalidEmbeddingShape, NotFound
from modelmint.engine.sample_store import EMBEDDING_KIND, SampleStore


class TestSampleStore:

    @pytest.fixture
    def store(self, arena):
        return SampleStore(arena)

    def test_default_names_and_monotonic_ids(self, store):
        first = store.add_class()
        second = store.add_class()
        store.delete_class(first.id)
        third = store.add_class()

        assert first.id == "class-1"
        assert first.display_name == "Class 1"
        assert second.display_name == "Class 2"
        # ids are never reused after a delete
        assert third.id == "class-3"
        assert third.display_name == "Class 3"
        assert [c.id for c in store.classes] == ["class-2", "class-3"]

    def test_duplicate_names_rejected_at_mutation(self, store):
        dogs = store.add_class("dogs")
        cats = store.add_class("cats")

        with pytest.raises(DuplicateClassName):
            store.add_class("dogs")
        with pytest.raises(DuplicateClassName) as exc_info:
            store.rename_class(cats.id, "dogs")

        assert exc_info.value.context == {'display_name': 'dogs'}
        assert cats.display_name == "cats"
        # Renaming a class to its own name is allowed
        store.rename_class(dogs.id, "dogs")

    def test_default_name_skips_names_taken_by_rename(self, store):
        first = store.add_class()
        store.rename_class(first.id, "Class 2")

        second = store.add_class()

        assert second.display_name == "Class 3"
        assert second.id == "class-3"

    def test_rename_keeps_id(self, store):
        entry = store.add_class("dogs")
        store.rename_class(entry.id, "puppies")

        assert store.get_class(entry.id).display_name == "puppies"

    def test_unknown_class_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.rename_class("class-99", "x")
        with pytest.raises(NotFound):
            store.add_sample("class-99", [1.0, 2.0])
        with pytest.raises(NotFound):
            store.delete_sample("class-99", "abc")

    def test_delete_unknown_class_is_noop(self, store):
        store.add_class("A")
        assert store.delete_class("class-42") is False
        assert len(store.classes) == 1

    def test_add_sample_accepts_tensor_numpy_and_list(self, store):
        entry = store.add_class()
        store.add_sample(entry.id, torch.ones(4))
        store.add_sample(entry.id, np.zeros(4, dtype=np.float64))
        store.add_sample(entry.id, [0.5, 0.5, 0.5, 0.5])

        assert entry.sample_count == 3
        assert all(s.embedding.dtype == torch.float32 for s in entry.samples)
        assert store.dimension == 4

    def test_batch_of_one_is_flattened(self, store):
        entry = store.add_class()
        sample = store.add_sample(entry.id, torch.ones(1, 6))

        assert sample.embedding.shape == (6,)

    def test_stored_embedding_is_a_copy(self, store):
        entry = store.add_class()
        source = torch.zeros(3)
        sample = store.add_sample(entry.id, source)
        source += 5

        assert torch.equal(sample.embedding, torch.zeros(3))

    def test_dimension_mismatch_rejected(self, store):
        entry = store.add_class()
        store.add_sample(entry.id, np.ones(4))

        with pytest.raises(InvalidEmbeddingShape) as exc_info:
            store.add_sample(entry.id, np.ones(5))

        assert exc_info.value.context['expected'] == 4
        assert exc_info.value.context['actual'] == 5
        assert entry.sample_count == 1

    @pytest.mark.parametrize("bad", [np.ones((2, 3)), np.ones(0), [1.0, float('nan')], "text"])
    def test_invalid_embeddings_rejected(self, store, bad):
        entry = store.add_class()
        with pytest.raises(InvalidEmbeddingShape):
            store.add_sample(entry.id, bad)

    def test_dimension_resets_when_empty(self, store):
        entry = store.add_class()
        sample = store.add_sample(entry.id, np.ones(4))
        store.delete_sample(entry.id, sample.id)

        assert store.dimension is None
        store.add_sample(entry.id, np.ones(7))
        assert store.dimension == 7

    def test_unknown_sample_raises_not_found(self, store):
        entry = store.add_class()
        store.add_sample(entry.id, np.ones(2))

        with pytest.raises(NotFound):
            store.delete_sample(entry.id, "missing")

    def test_delete_class_releases_embeddings(self, store, arena):
        entry = store.add_class()
        for _ in range(3):
            store.add_sample(entry.id, np.ones(4))
        assert arena.live_count(EMBEDDING_KIND) == 3

        store.delete_class(entry.id)

        assert arena.live_count(EMBEDDING_KIND) == 0

    def test_sample_added_inside_open_scope_is_not_released(self, store, arena):
        entry = store.add_class()

        with arena.scope("training.fit"):
            sample = store.add_sample(entry.id, np.ones(4))

        assert sample.handle.is_active
        assert arena.live_count(EMBEDDING_KIND) == store.total_samples == 1
        assert len(store.snapshot()[0].embeddings) == 1

    def test_snapshot_is_immutable_view(self, store):
        entry = store.add_class("A")
        store.add_sample(entry.id, np.ones(2))
        snapshot = store.snapshot()

        store.add_sample(entry.id, np.ones(2))
        store.rename_class(entry.id, "renamed")

        assert len(snapshot[0].embeddings) == 1
        assert snapshot[0].display_name == "A"

    def test_restore_regenerates_ids(self, store, arena):
        store.add_class("old")
        store.add_class("older")

        classes = store.restore([
            ("cats", [(np.ones(3), "img-1")]),
            ("dogs", [(np.zeros(3), None), (np.ones(3), None)])
        ])

        assert [c.id for c in classes] == ["class-1", "class-2"]
        assert [c.display_name for c in classes] == ["cats", "dogs"]
        assert classes[0].samples[0].media_ref == "img-1"
        assert arena.live_count(EMBEDDING_KIND) == 3

    def test_failed_restore_leaves_store_empty(self, store, arena):
        with pytest.raises(InvalidEmbeddingShape):
            store.restore([("a", [(np.ones(3), None)]), ("b", [(np.ones(4), None)])])

        assert store.classes == []
        assert arena.live_count(EMBEDDING_KIND) == 0
