# /modelmint/src/modelmint/engine/codec.py

"""
Persistence Codec: head + class manifest + embedding cache <-> ModelBundle.

Every float tensor is written as a nested list with explicit ``shape`` and
``dtype`` so the bundle survives any JSON-capable store unchanged. The class
manifest order is the head's output-row order; ``load`` rebuilds classes in
exactly that order.

Embedding cache groups are keyed by class display name. Bundles without an
embedding cache restore every class with zero samples.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch

from ..utils.resource_manager import TensorArena
from .errors import CorruptBundle, DuplicateClassName
from .head import WEIGHT_ORDER, HeadNetwork
from .sample_store import ClassEntry


BUNDLE_FORMAT = "modelmint-bundle"
BUNDLE_FORMAT_VERSION = 1
CODEC_KIND = "codec"


def encode_array(tensor: torch.Tensor) -> Dict[str, Any]:
    """Nested-list form of a float tensor with shape metadata."""
    array = tensor.detach().to(device='cpu', dtype=torch.float32).numpy()
    return {
        'shape': list(array.shape),
        'dtype': 'float32',
        'values': array.tolist()
    }


def decode_array(encoded: Any, what: str) -> np.ndarray:
    """
    Inverse of ``encode_array``; bare nested lists are accepted as well.

    Raises:
        CorruptBundle: values are not numeric or disagree with the declared shape
    """
    if isinstance(encoded, dict):
        values = encoded.get('values')
        declared = encoded.get('shape')
        dtype = encoded.get('dtype', 'float32')
    else:
        values, declared, dtype = encoded, None, 'float32'

    if dtype not in ('float32', 'float64'):
        raise CorruptBundle(f"Unsupported dtype for {what}: {dtype}", {'array': what, 'dtype': dtype})

    try:
        array = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise CorruptBundle(f"Non-numeric values in {what}: {e}", {'array': what}) from e

    if declared is not None and list(array.shape) != list(declared):
        raise CorruptBundle(
            f"{what} has shape {list(array.shape)}, declared {list(declared)}",
            {'array': what, 'declared': list(declared), 'actual': list(array.shape)}
        )

    return array


@dataclass
class ModelBundle:
    """
    Serializable snapshot of a trained engine.
    """
    head_topology: Dict[str, Any]
    head_weights: List[Dict[str, Any]]
    class_manifest: List[Dict[str, Any]]
    embedding_cache: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    format_version: int = BUNDLE_FORMAT_VERSION

    @property
    def class_names(self) -> List[str]:
        return [entry['name'] for entry in self.class_manifest]

    @property
    def is_legacy(self) -> bool:
        """True for bundles saved without an embedding cache."""
        return self.embedding_cache is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format': BUNDLE_FORMAT,
            'formatVersion': self.format_version,
            'headTopology': self.head_topology,
            'headWeights': self.head_weights,
            'classManifest': self.class_manifest,
            'embeddingCache': self.embedding_cache,
            'metadata': self.metadata
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_parts(self) -> Tuple[Dict[str, Any], Dict[str, Any], Optional[List[Dict[str, Any]]]]:
        """Split into (model, metadata, embeddings) documents for durable stores."""
        model = {
            'format': BUNDLE_FORMAT,
            'formatVersion': self.format_version,
            'headTopology': self.head_topology,
            'headWeights': self.head_weights
        }
        metadata = dict(self.metadata)
        metadata['classes'] = self.class_manifest
        return model, metadata, self.embedding_cache

    @classmethod
    def from_dict(cls, data: Any) -> 'ModelBundle':
        """
        Raises:
            CorruptBundle: required sections are missing or malformed
        """
        if not isinstance(data, dict):
            raise CorruptBundle("Bundle must be a JSON object", {'type': type(data).__name__})

        bundle_format = data.get('format', BUNDLE_FORMAT)
        if bundle_format != BUNDLE_FORMAT:
            raise CorruptBundle(f"Unknown bundle format: {bundle_format}", {'format': bundle_format})

        version = data.get('formatVersion', BUNDLE_FORMAT_VERSION)
        if not isinstance(version, int) or version > BUNDLE_FORMAT_VERSION:
            raise CorruptBundle(f"Unsupported bundle version: {version}", {'formatVersion': version})

        topology = data.get('headTopology')
        weights = data.get('headWeights')
        if not isinstance(topology, dict) or not isinstance(weights, list):
            raise CorruptBundle("Bundle is missing head topology or weights",
                                {'keys': sorted(data.keys())})

        metadata = data.get('metadata') or {}
        if not isinstance(metadata, dict):
            raise CorruptBundle("Bundle metadata must be an object", {})

        manifest = data.get('classManifest')
        if manifest is None:
            manifest = _manifest_from_metadata(metadata)

        cache = data.get('embeddingCache')
        if cache is not None and not isinstance(cache, list):
            raise CorruptBundle("Embedding cache must be a list", {})

        return cls(
            head_topology=topology,
            head_weights=weights,
            class_manifest=_normalize_manifest(manifest),
            embedding_cache=cache,
            metadata={k: v for k, v in metadata.items() if k not in ('classes', 'labels')},
            format_version=version
        )

    @classmethod
    def from_json(cls, text: str) -> 'ModelBundle':
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise CorruptBundle(f"Bundle is not valid JSON: {e}", {}) from e
        return cls.from_dict(data)

    @classmethod
    def from_parts(cls, model: Dict[str, Any], metadata: Optional[Dict[str, Any]],
                   embeddings: Optional[List[Dict[str, Any]]]) -> 'ModelBundle':
        if not isinstance(model, dict):
            raise CorruptBundle("Model document must be a JSON object", {})
        data = dict(model)
        data['metadata'] = metadata or {}
        data['embeddingCache'] = embeddings
        return cls.from_dict(data)


def _manifest_from_metadata(metadata: Dict[str, Any]) -> Optional[List[Any]]:
    # Current metadata lists classes; older exports only carried label names
    if isinstance(metadata.get('classes'), list):
        return metadata['classes']
    if isinstance(metadata.get('labels'), list):
        return [{'name': label} for label in metadata['labels']]
    return None


def _normalize_manifest(manifest: Optional[List[Any]]) -> List[Dict[str, Any]]:
    if manifest is None:
        return []
    if not isinstance(manifest, list):
        raise CorruptBundle("Class manifest must be a list", {})

    normalized = []
    for position, entry in enumerate(manifest):
        if isinstance(entry, str):
            entry = {'name': entry}
        if not isinstance(entry, dict) or not isinstance(entry.get('name'), str):
            raise CorruptBundle(f"Class manifest entry {position} has no name", {'position': position})
        normalized.append({
            'id': entry.get('id'),
            'name': entry['name'],
            'sampleCount': entry.get('sampleCount')
        })
    return normalized


@dataclass
class RestoredClass:
    """One manifest class with its decoded embeddings."""
    name: str
    samples: List[Tuple[np.ndarray, Any]] = field(default_factory=list)


@dataclass
class DecodedBundle:
    """Result of ``PersistenceCodec.load``."""
    head: HeadNetwork
    classes: List[RestoredClass]
    legacy: bool = False

    @property
    def total_samples(self) -> int:
        return sum(len(c.samples) for c in self.classes)


class PersistenceCodec:
    """
    Converts between live engine state and ModelBundle.
    """

    def __init__(self, arena: TensorArena):
        self.arena = arena
        self.logger = logging.getLogger(__name__)

    def save(self, head: HeadNetwork, classes: Sequence[ClassEntry],
             include_embeddings: bool = True) -> ModelBundle:
        """
        Raises:
            CorruptBundle: class count differs from the head output width
            DuplicateClassName: two classes share a display name
        """
        if len(classes) != head.num_classes:
            raise CorruptBundle(
                f"Cannot save {len(classes)} classes against a head with {head.num_classes} outputs",
                {'class_count': len(classes), 'head_outputs': head.num_classes}
            )

        names = [entry.display_name for entry in classes]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise DuplicateClassName(
                "Cannot save classes that share a display name",
                {'duplicates': duplicates}
            )

        with self.arena.scope("codec.save"):
            weights = []
            for name, parameter in head.weight_items():
                copy = self.arena.register(parameter.detach().cpu().clone(), CODEC_KIND)
                encoded = encode_array(copy.tensor)
                encoded['name'] = name
                weights.append(encoded)

            cache = None
            if include_embeddings:
                cache = [
                    {
                        'classId': entry.display_name,
                        'samples': [
                            {'embedding': encode_array(sample.embedding), 'mediaRef': sample.media_ref}
                            for sample in entry.samples
                        ]
                    }
                    for entry in classes
                ]

        bundle = ModelBundle(
            head_topology=head.topology(),
            head_weights=weights,
            class_manifest=[
                {'id': entry.id, 'name': entry.display_name, 'sampleCount': entry.sample_count}
                for entry in classes
            ],
            embedding_cache=cache,
            metadata={
                'totalSamples': sum(entry.sample_count for entry in classes),
                'trainedAt': datetime.now(timezone.utc).isoformat(),
                'modelInfo': {
                    'inputShape': [None, head.input_dim],
                    'outputShape': [None, head.num_classes]
                }
            }
        )

        self.logger.info("bundle.encoded", extra={
            'num_classes': head.num_classes,
            'total_samples': bundle.metadata['totalSamples'],
            'with_embeddings': include_embeddings
        })
        return bundle

    def load(self, bundle: ModelBundle, device: Optional[torch.device] = None) -> DecodedBundle:
        """
        Rebuild the head and the manifest-ordered classes.

        Raises:
            CorruptBundle: any structural inconsistency between topology,
                weights, manifest and embedding cache
        """
        device = device or self.arena.device
        head = self._decode_head(bundle, device)

        manifest = bundle.class_manifest or [
            {'id': None, 'name': f"Class {i + 1}", 'sampleCount': None}
            for i in range(head.num_classes)
        ]
        if len(manifest) != head.num_classes:
            raise CorruptBundle(
                f"Manifest lists {len(manifest)} classes but the head has {head.num_classes} outputs",
                {'manifest_length': len(manifest), 'head_outputs': head.num_classes}
            )

        names = [entry['name'] for entry in manifest]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise CorruptBundle("Class manifest names are not unique", {'duplicates': duplicates})

        restored = [RestoredClass(name=name) for name in names]
        if not bundle.is_legacy:
            self._decode_cache(bundle.embedding_cache, restored, head.input_dim)
            self._check_sample_counts(manifest, restored)

        decoded = DecodedBundle(head=head, classes=restored, legacy=bundle.is_legacy)

        self.logger.info("bundle.decoded", extra={
            'num_classes': head.num_classes,
            'total_samples': decoded.total_samples,
            'legacy': decoded.legacy
        })
        return decoded

    @staticmethod
    def _check_sample_counts(manifest: List[Dict[str, Any]],
                             restored: List[RestoredClass]) -> None:
        for entry, restored_class in zip(manifest, restored):
            expected = entry.get('sampleCount')
            if expected is not None and expected != len(restored_class.samples):
                raise CorruptBundle(
                    f"Class '{entry['name']}' declares {expected} samples, cache holds "
                    f"{len(restored_class.samples)}",
                    {'class_name': entry['name'], 'declared': expected,
                     'restored': len(restored_class.samples)}
                )

    def _decode_head(self, bundle: ModelBundle, device: torch.device) -> HeadNetwork:
        try:
            head = HeadNetwork.from_topology(bundle.head_topology)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CorruptBundle(f"Invalid head topology: {e}", {}) from e

        by_name: Dict[str, Any] = {}
        for item in bundle.head_weights:
            if not isinstance(item, dict) or 'name' not in item:
                raise CorruptBundle("Weight entry without a name", {})
            by_name[item['name']] = item

        missing = [name for name in WEIGHT_ORDER if name not in by_name]
        if missing:
            raise CorruptBundle("Bundle is missing head weights", {'missing': missing})

        expected_shapes = {name: list(tensor.shape) for name, tensor in head.weight_items()}
        state = {}
        with self.arena.scope("codec.load"):
            for name in WEIGHT_ORDER:
                array = decode_array(by_name[name], name)
                if list(array.shape) != expected_shapes[name]:
                    raise CorruptBundle(
                        f"Weight {name} has shape {list(array.shape)}, topology requires "
                        f"{expected_shapes[name]}",
                        {'weight': name, 'expected': expected_shapes[name],
                         'actual': list(array.shape)}
                    )
                state[name] = self.arena.register(torch.from_numpy(array), CODEC_KIND).tensor

            head.load_state_dict(state)
            state.clear()

        head.eval()
        return head.to(device)

    def _decode_cache(self, cache: List[Dict[str, Any]], restored: List[RestoredClass],
                      input_dim: int) -> None:
        by_name = {c.name: c for c in restored}

        for group in cache:
            if not isinstance(group, dict):
                raise CorruptBundle("Embedding cache group must be an object", {})

            class_name = group.get('classId')
            target = by_name.get(class_name)
            if target is None:
                raise CorruptBundle(
                    f"Embedding cache names unknown class '{class_name}'",
                    {'class_name': class_name, 'manifest': list(by_name)}
                )

            for position, sample in enumerate(group.get('samples') or []):
                if not isinstance(sample, dict) or 'embedding' not in sample:
                    raise CorruptBundle(
                        f"Sample {position} of class '{class_name}' has no embedding",
                        {'class_name': class_name, 'position': position}
                    )

                array = decode_array(sample['embedding'], f"{class_name}[{position}]").reshape(-1)
                if array.shape[0] != input_dim:
                    raise CorruptBundle(
                        f"Cached embedding of length {array.shape[0]} does not fit head input {input_dim}",
                        {'class_name': class_name, 'position': position,
                         'expected': input_dim, 'actual': int(array.shape[0])}
                    )

                # Older caches stored the captured frame under "image"
                media_ref = sample.get('mediaRef', sample.get('image'))
                target.samples.append((array, media_ref))
