# /modelmint/src/modelmint/engine/assembler.py

"""
Training Data Assembler

Flattens a class snapshot into one N x D feature matrix and an N-length label
vector. Labels are positional: the i-th class in the list gets label i, the
same order the head uses for its output rows.

The assembler copies embeddings into its own matrix and keeps no reference
to the source tensors.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import torch

from ..utils.resource_manager import TensorArena, TensorHandle
from .errors import NoTrainingData, ShapeMismatch
from .sample_store import ClassSnapshot


TRAINING_KIND = "training"


@dataclass
class AssembledData:
    """
    Feature matrix and labels for one training run.

    ``features``/``labels`` are arena-owned; release them with ``release()``
    or by assembling inside an ``arena.scope()``.
    """
    features_handle: TensorHandle
    labels_handle: TensorHandle
    class_ids: Tuple[str, ...]
    class_names: Tuple[str, ...]

    @property
    def features(self) -> torch.Tensor:
        return self.features_handle.tensor

    @property
    def labels(self) -> torch.Tensor:
        return self.labels_handle.tensor

    @property
    def num_samples(self) -> int:
        return int(self.features.shape[0])

    @property
    def dimension(self) -> int:
        return int(self.features.shape[1])

    @property
    def num_classes(self) -> int:
        return len(self.class_ids)

    def release(self) -> None:
        self.features_handle.cleanup()
        self.labels_handle.cleanup()


class TrainingDataAssembler:
    """
    Builds (X, y) from class snapshots with independent shape validation.
    """

    def __init__(self, arena: TensorArena):
        self.arena = arena
        self.logger = logging.getLogger(__name__)

    def assemble(self, classes: Sequence[ClassSnapshot]) -> AssembledData:
        """
        Raises:
            NoTrainingData: no samples across all classes
            ShapeMismatch: an embedding's length differs from the majority length
        """
        total = sum(len(c.embeddings) for c in classes)
        if total == 0:
            raise NoTrainingData(
                "No training samples available",
                {'class_count': len(classes)}
            )

        dimension = self._validate_dimensions(classes)

        rows: List[torch.Tensor] = []
        labels: List[int] = []
        for index, snapshot in enumerate(classes):
            for embedding in snapshot.embeddings:
                rows.append(embedding.reshape(-1))
                labels.append(index)

        # torch.stack always allocates a new tensor
        features = torch.stack(rows).to(device=self.arena.device, dtype=torch.float32)
        label_tensor = torch.tensor(labels, dtype=torch.long, device=self.arena.device)
        rows.clear()

        assembled = AssembledData(
            features_handle=self.arena.register(features, TRAINING_KIND),
            labels_handle=self.arena.register(label_tensor, TRAINING_KIND),
            class_ids=tuple(c.id for c in classes),
            class_names=tuple(c.display_name for c in classes)
        )

        self.logger.info("training_data.assembled", extra={
            'num_samples': total,
            'dimension': dimension,
            'num_classes': len(classes),
            'per_class': [len(c.embeddings) for c in classes]
        })
        return assembled

    def _validate_dimensions(self, classes: Sequence[ClassSnapshot]) -> int:
        counts: Counter = Counter()
        for snapshot in classes:
            for embedding in snapshot.embeddings:
                counts[self._dimension_of(embedding)] += 1

        majority, _ = counts.most_common(1)[0]
        if majority < 0:
            raise ShapeMismatch("Embeddings must be 1-D vectors", {'dimensions': dict(counts)})

        if len(counts) > 1:
            offenders = [
                {'class_id': snapshot.id, 'position': position, 'dimension': dim}
                for snapshot in classes
                for position, dim in enumerate(self._dimension_of(e) for e in snapshot.embeddings)
                if dim != majority
            ]
            raise ShapeMismatch(
                f"{len(offenders)} embedding(s) disagree with majority dimension {majority}",
                {'expected': majority, 'offenders': offenders}
            )

        return majority

    @staticmethod
    def _dimension_of(embedding: torch.Tensor) -> int:
        if embedding.dim() == 1:
            return int(embedding.shape[0])
        if embedding.dim() == 2 and embedding.shape[0] == 1:
            return int(embedding.shape[1])
        # Any other rank is never a valid row
        return -1
