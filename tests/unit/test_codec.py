"""
Unit Tests for the Persistence Codec and ModelBundle
"""

import copy
import json

import numpy as np
import pytest
import torch

from modelmint.engine.codec import CODEC_KIND, ModelBundle, PersistenceCodec
from modelmint.engine.errors import CorruptBundle, DuplicateClassName
from modelmint.engine.head import HeadNetwork
from modelmint.engine.sample_store import ClassEntry, SampleStore


class TestPersistenceCodec:

    @pytest.fixture
    def codec(self, arena):
        return PersistenceCodec(arena)

    @pytest.fixture
    def store(self, arena):
        store = SampleStore(arena)
        cats = store.add_class("cats")
        dogs = store.add_class("dogs")
        store.add_sample(cats.id, np.full(4, 0.5), media_ref="cat.png")
        store.add_sample(dogs.id, np.full(4, -0.5))
        store.add_sample(dogs.id, np.full(4, -0.25))
        return store

    @pytest.fixture
    def head(self):
        return HeadNetwork(input_dim=4, num_classes=2, hidden_units=3, seed=11)

    def test_bundle_shape(self, codec, head, store):
        bundle = codec.save(head, store.classes)
        data = bundle.to_dict()

        assert data['format'] == "modelmint-bundle"
        assert data['formatVersion'] == 1
        assert [w['name'] for w in data['headWeights']] == [
            "hidden.weight", "hidden.bias", "output.weight", "output.bias"
        ]
        assert data['headWeights'][0]['shape'] == [3, 4]
        assert data['classManifest'] == [
            {'id': 'class-1', 'name': 'cats', 'sampleCount': 1},
            {'id': 'class-2', 'name': 'dogs', 'sampleCount': 2}
        ]
        assert data['embeddingCache'][1]['classId'] == "dogs"
        assert data['embeddingCache'][0]['samples'][0]['mediaRef'] == "cat.png"
        assert data['metadata']['totalSamples'] == 3
        assert data['metadata']['modelInfo'] == {'inputShape': [None, 4], 'outputShape': [None, 2]}
        # Survives a JSON round trip
        json.loads(bundle.to_json())

    def test_save_releases_codec_tensors(self, codec, head, store, arena):
        codec.save(head, store.classes)

        assert arena.live_count(CODEC_KIND) == 0

    def test_load_restores_weights_and_order(self, codec, head, store):
        bundle = ModelBundle.from_json(codec.save(head, store.classes).to_json())

        decoded = codec.load(bundle)

        for (name, original), (_, restored) in zip(head.weight_items(), decoded.head.weight_items()):
            assert torch.equal(original, restored), name
        assert [c.name for c in decoded.classes] == ["cats", "dogs"]
        assert [len(c.samples) for c in decoded.classes] == [1, 2]
        assert decoded.classes[0].samples[0][1] == "cat.png"
        assert decoded.legacy is False

    def test_legacy_bundle_without_cache(self, codec, head, store):
        bundle = ModelBundle.from_json(
            codec.save(head, store.classes, include_embeddings=False).to_json()
        )

        decoded = codec.load(bundle)

        assert bundle.class_manifest[1]['sampleCount'] == 2
        assert decoded.legacy is True
        assert decoded.total_samples == 0
        assert [c.name for c in decoded.classes] == ["cats", "dogs"]

    def test_labels_metadata_accepted(self, codec, head, store):
        data = codec.save(head, store.classes).to_dict()
        del data['classManifest']
        data['embeddingCache'] = None
        data['metadata']['labels'] = ["cats", "dogs"]

        bundle = ModelBundle.from_dict(data)

        assert bundle.class_names == ["cats", "dogs"]
        assert codec.load(bundle).total_samples == 0

    def test_split_parts_round_trip(self, codec, head, store):
        bundle = codec.save(head, store.classes)
        model, metadata, embeddings = bundle.to_parts()

        rebuilt = ModelBundle.from_parts(model, metadata, embeddings)

        assert rebuilt.class_manifest == bundle.class_manifest
        assert rebuilt.embedding_cache == bundle.embedding_cache
        assert 'classes' not in rebuilt.metadata

    def test_save_requires_matching_class_count(self, codec, head, store):
        with pytest.raises(CorruptBundle):
            codec.save(head, store.classes[:1])

    def test_save_rejects_shared_display_names(self, codec, head):
        classes = [ClassEntry(id="class-1", display_name="pets"),
                   ClassEntry(id="class-2", display_name="pets")]

        with pytest.raises(DuplicateClassName) as exc_info:
            codec.save(head, classes)

        assert exc_info.value.context['duplicates'] == ["pets"]


class TestBundleValidation:

    @pytest.fixture
    def bundle_dict(self, arena):
        store = SampleStore(arena)
        for name, value in (("a", 1.0), ("b", -1.0)):
            entry = store.add_class(name)
            store.add_sample(entry.id, np.full(4, value))
        head = HeadNetwork(input_dim=4, num_classes=2, hidden_units=3, seed=1)
        return PersistenceCodec(arena).save(head, store.classes).to_dict()

    def load(self, arena, data):
        return PersistenceCodec(arena).load(ModelBundle.from_dict(data))

    def test_manifest_length_must_match_head(self, arena, bundle_dict):
        bundle_dict['classManifest'].append({'id': 'class-3', 'name': 'c', 'sampleCount': 0})

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_duplicate_names_rejected(self, arena, bundle_dict):
        bundle_dict['classManifest'][1]['name'] = 'a'

        with pytest.raises(CorruptBundle) as exc_info:
            self.load(arena, bundle_dict)

        assert exc_info.value.context['duplicates'] == ['a']

    def test_cache_group_must_name_manifest_class(self, arena, bundle_dict):
        bundle_dict['embeddingCache'][0]['classId'] = 'ghost'

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_sample_count_must_match_cache(self, arena, bundle_dict):
        bundle_dict['classManifest'][0]['sampleCount'] = 5

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_weight_shape_must_match_declared(self, arena, bundle_dict):
        bundle_dict['headWeights'][0]['shape'] = [4, 3]

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_weight_shape_must_match_topology(self, arena, bundle_dict):
        bundle_dict['headTopology']['layers'][0]['units'] = 5
        bundle_dict['headTopology']['layers'][1]['inputDim'] = 5

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_missing_weight_rejected(self, arena, bundle_dict):
        bundle_dict['headWeights'] = bundle_dict['headWeights'][:3]

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_cached_embedding_length_checked(self, arena, bundle_dict):
        sample = bundle_dict['embeddingCache'][0]['samples'][0]
        sample['embedding'] = {'shape': [3], 'dtype': 'float32', 'values': [1.0, 1.0, 1.0]}

        with pytest.raises(CorruptBundle):
            self.load(arena, bundle_dict)

    def test_bare_list_embedding_accepted(self, arena, bundle_dict):
        sample = bundle_dict['embeddingCache'][0]['samples'][0]
        sample['embedding'] = [1.0, 1.0, 1.0, 1.0]

        assert self.load(arena, bundle_dict).total_samples == 2

    @pytest.mark.parametrize("mutate", [
        lambda d: d.pop('headTopology'),
        lambda d: d.update(format='other'),
        lambda d: d.update(formatVersion=99),
        lambda d: d.update(classManifest=[{'sampleCount': 1}]),
    ])
    def test_structural_damage_rejected(self, bundle_dict, mutate):
        data = copy.deepcopy(bundle_dict)
        mutate(data)

        with pytest.raises(CorruptBundle):
            ModelBundle.from_dict(data)

    def test_invalid_json_rejected(self):
        with pytest.raises(CorruptBundle):
            ModelBundle.from_json("{not json")
