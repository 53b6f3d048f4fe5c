# /modelmint/src/modelmint/engine/sample_store.py

"""
Sample Store: per-class collections of labeled embeddings.

The store exclusively owns every sample embedding. Ownership moves from the
caller to the store on ``add_sample``; the store releases the tensor on
``delete_sample``, ``delete_class`` and ``clear``. The embedding dimension is
fixed by the first sample added and enforced for every later one.
"""

import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch

from ..utils.resource_manager import TensorArena, TensorHandle
from .errors import DuplicateClassName, InvalidEmbeddingShape, NotFound


EMBEDDING_KIND = "embedding"


@dataclass
class Sample:
    """One labeled example: a cached embedding plus a display-only media reference."""
    id: str
    handle: TensorHandle
    media_ref: Any = None

    @property
    def embedding(self) -> torch.Tensor:
        return self.handle.tensor

    @property
    def dimension(self) -> int:
        return int(self.handle.tensor.shape[0])


@dataclass
class ClassEntry:
    """A class with a stable id, a mutable display name and its samples."""
    id: str
    display_name: str
    samples: List[Sample] = field(default_factory=list)

    @property
    def sample_count(self) -> int:
        return len(self.samples)


@dataclass(frozen=True)
class ClassSnapshot:
    """Immutable view of one class taken at the start of assembly."""
    id: str
    display_name: str
    embeddings: Tuple[torch.Tensor, ...]


def coerce_embedding(embedding: Any, device: torch.device) -> torch.Tensor:
    """
    Convert an embedding to a 1-D float32 tensor owned by the engine.

    Accepts torch tensors, numpy arrays and float sequences. A ``[1, D]``
    batch of one is flattened to ``[D]``.
    """
    if isinstance(embedding, torch.Tensor):
        tensor = embedding.detach()
    else:
        try:
            tensor = torch.as_tensor(np.asarray(embedding, dtype=np.float32))
        except (TypeError, ValueError) as e:
            raise InvalidEmbeddingShape(
                f"Embedding is not a numeric vector: {e}",
                {'type': type(embedding).__name__}
            ) from e

    if tensor.dim() == 2 and tensor.shape[0] == 1:
        tensor = tensor.reshape(-1)

    if tensor.dim() != 1 or tensor.shape[0] == 0:
        raise InvalidEmbeddingShape(
            f"Embedding must be a non-empty 1-D vector, got shape {tuple(tensor.shape)}",
            {'shape': list(tensor.shape)}
        )

    tensor = tensor.to(device=device, dtype=torch.float32).clone()

    if not bool(torch.isfinite(tensor).all()):
        raise InvalidEmbeddingShape(
            "Embedding contains non-finite values",
            {'dimension': int(tensor.shape[0])}
        )

    return tensor


class SampleStore:
    """
    Owns classes and sample embeddings between training runs.
    """

    def __init__(self, arena: TensorArena):
        self.arena = arena
        self.logger = logging.getLogger(__name__)

        self._classes: List[ClassEntry] = []
        self._class_counter = itertools.count(1)
        self._dimension: Optional[int] = None

    @property
    def classes(self) -> List[ClassEntry]:
        """Current classes in positional (label) order."""
        return list(self._classes)

    @property
    def dimension(self) -> Optional[int]:
        """Embedding dimension established by the first sample, if any."""
        return self._dimension

    @property
    def total_samples(self) -> int:
        return sum(c.sample_count for c in self._classes)

    def get_class(self, class_id: str) -> ClassEntry:
        for entry in self._classes:
            if entry.id == class_id:
                return entry
        raise NotFound(f"Unknown class: {class_id}", {'class_id': class_id})

    def add_class(self, name: Optional[str] = None) -> ClassEntry:
        """
        Append a class. Unnamed classes are called ``Class N`` after their id.

        Raises:
            DuplicateClassName: another class already uses ``name``
        """
        if name is not None:
            self._check_name_free(name)

        number = next(self._class_counter)
        if name is None:
            # Skip numbers whose default name a rename already took
            while self._name_taken(f"Class {number}"):
                number = next(self._class_counter)
            name = f"Class {number}"

        entry = ClassEntry(id=f"class-{number}", display_name=name)
        self._classes.append(entry)

        self.logger.info("class.added", extra={
            'class_id': entry.id,
            'display_name': entry.display_name
        })
        return entry

    def rename_class(self, class_id: str, name: str) -> ClassEntry:
        entry = self.get_class(class_id)
        self._check_name_free(name, exclude=entry)
        entry.display_name = name

        self.logger.info("class.renamed", extra={'class_id': class_id, 'display_name': name})
        return entry

    def delete_class(self, class_id: str) -> bool:
        """
        Release every sample embedding of the class, then remove it.

        Unknown ids are a no-op; returns whether a class was removed.
        """
        for index, entry in enumerate(self._classes):
            if entry.id == class_id:
                break
        else:
            self.logger.debug("class.delete_ignored", extra={'class_id': class_id})
            return False

        released = len(entry.samples)
        for sample in entry.samples:
            self.arena.release(sample.handle)
        entry.samples = []
        del self._classes[index]

        self._reset_dimension_if_empty()

        self.logger.info("class.deleted", extra={
            'class_id': class_id,
            'released_embeddings': released
        })
        return True

    def add_sample(self, class_id: str, embedding: Any, media_ref: Any = None) -> Sample:
        """
        Store an embedding under a class.

        Raises:
            NotFound: unknown class id
            InvalidEmbeddingShape: embedding length differs from the store's dimension
        """
        entry = self.get_class(class_id)
        tensor = coerce_embedding(embedding, self.arena.device)
        dimension = int(tensor.shape[0])

        if self._dimension is not None and dimension != self._dimension:
            raise InvalidEmbeddingShape(
                f"Embedding length {dimension} does not match store dimension {self._dimension}",
                {'class_id': class_id, 'expected': self._dimension, 'actual': dimension}
            )

        sample = Sample(
            id=uuid.uuid4().hex,
            handle=self.arena.register(tensor, EMBEDDING_KIND, scoped=False),
            media_ref=media_ref
        )
        entry.samples.append(sample)
        self._dimension = dimension

        self.logger.debug("sample.added", extra={
            'class_id': class_id,
            'sample_id': sample.id,
            'dimension': dimension
        })
        return sample

    def delete_sample(self, class_id: str, sample_id: str) -> None:
        entry = self.get_class(class_id)

        for index, sample in enumerate(entry.samples):
            if sample.id == sample_id:
                self.arena.release(sample.handle)
                del entry.samples[index]
                break
        else:
            raise NotFound(
                f"Unknown sample {sample_id} in class {class_id}",
                {'class_id': class_id, 'sample_id': sample_id}
            )

        self._reset_dimension_if_empty()

        self.logger.debug("sample.deleted", extra={'class_id': class_id, 'sample_id': sample_id})

    def snapshot(self) -> List[ClassSnapshot]:
        """Freeze the current class list and embedding references."""
        return [
            ClassSnapshot(
                id=entry.id,
                display_name=entry.display_name,
                embeddings=tuple(sample.embedding for sample in entry.samples)
            )
            for entry in self._classes
        ]

    def restore(self, classes: Iterable[Tuple[str, Sequence[Tuple[Any, Any]]]]) -> List[ClassEntry]:
        """
        Replace all contents with restored classes, in the given order.

        Args:
            classes: ``(display_name, [(embedding, media_ref), ...])`` pairs

        Ids are regenerated as ``class-1..class-N``.
        """
        self.clear()
        self._class_counter = itertools.count(1)

        try:
            for name, samples in classes:
                entry = self.add_class(name)
                for embedding, media_ref in samples:
                    self.add_sample(entry.id, embedding, media_ref)
        except Exception:
            self.clear()
            raise

        return self.classes

    def clear(self) -> int:
        """Release every embedding and drop all classes."""
        released = 0
        for entry in self._classes:
            for sample in entry.samples:
                self.arena.release(sample.handle)
                released += 1
            entry.samples = []

        self._classes = []
        self._dimension = None

        if released:
            self.logger.info("sample_store.cleared", extra={'released_embeddings': released})
        return released

    def _name_taken(self, name: str, exclude: Optional[ClassEntry] = None) -> bool:
        return any(entry.display_name == name for entry in self._classes if entry is not exclude)

    def _check_name_free(self, name: str, exclude: Optional[ClassEntry] = None) -> None:
        # Bundles key cached embeddings by display name
        if self._name_taken(name, exclude):
            raise DuplicateClassName(
                f"Class name '{name}' is already in use",
                {'display_name': name}
            )

    def _reset_dimension_if_empty(self) -> None:
        if self.total_samples == 0:
            self._dimension = None
