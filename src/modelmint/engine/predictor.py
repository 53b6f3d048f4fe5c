# /modelmint/src/modelmint/engine/predictor.py

"""
Predictor: ranked class scores for a single embedding.

The head is borrowed read-only for the duration of one call. Every tensor
the forward pass allocates is released when the call returns or raises.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import torch

from ..config.engine_config import PredictionConfig
from ..utils.resource_manager import TensorArena
from .errors import DegenerateModel, InvalidEmbeddingShape, InvalidPrediction, ShapeMismatch
from .head import HeadNetwork
from .sample_store import ClassEntry, coerce_embedding


PREDICTION_KIND = "prediction"


@dataclass(frozen=True)
class PredictionEntry:
    """One ranked output: class identity at prediction time plus its score."""
    class_id: str
    class_name: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {'classId': self.class_id, 'className': self.class_name, 'score': self.score}


class Predictor:
    """
    Validates head output and ranks classes by score.
    """

    def __init__(self, arena: TensorArena, config: Optional[PredictionConfig] = None):
        self.arena = arena
        self.config = config or PredictionConfig()
        self.logger = logging.getLogger(__name__)

    def predict(self, embedding: Any, head: Optional[HeadNetwork],
                classes: Sequence[ClassEntry]) -> List[PredictionEntry]:
        """
        Score ``embedding`` against every class, highest first.

        Ties keep the original class order. Names are read from ``classes``
        at call time.

        Raises:
            DegenerateModel: no head, or the output sums to effectively zero
            InvalidPrediction: the output contains NaN
            InvalidEmbeddingShape: embedding length differs from the head input
            ShapeMismatch: class count differs from the head output width
        """
        if head is None:
            raise DegenerateModel("No trained head available; train before predicting", {})

        if len(classes) != head.num_classes:
            raise ShapeMismatch(
                f"Head has {head.num_classes} outputs but {len(classes)} classes exist",
                {'head_outputs': head.num_classes, 'class_count': len(classes)}
            )

        with self.arena.scope("prediction"):
            vector = self.arena.register(coerce_embedding(embedding, head.device), PREDICTION_KIND)

            if vector.tensor.shape[0] != head.input_dim:
                raise InvalidEmbeddingShape(
                    f"Embedding length {vector.tensor.shape[0]} does not match head input {head.input_dim}",
                    {'expected': head.input_dim, 'actual': int(vector.tensor.shape[0])}
                )

            was_training = head.training
            head.eval()
            try:
                with torch.no_grad():
                    output = self.arena.register(
                        head(vector.tensor.unsqueeze(0)).squeeze(0), PREDICTION_KIND
                    )
            finally:
                head.train(was_training)

            scores = self._validate_output(output.tensor.to(torch.float64).cpu().tolist())

        ranked = sorted(
            (PredictionEntry(entry.id, entry.display_name, score)
             for entry, score in zip(classes, scores)),
            key=lambda item: item.score,
            reverse=True
        )

        self.logger.debug("prediction.completed", extra={
            'top_class': ranked[0].class_id,
            'top_score': ranked[0].score
        })
        return ranked

    def _validate_output(self, raw: List[float]) -> List[float]:
        nan_positions = [i for i, value in enumerate(raw) if value != value]
        if nan_positions:
            raise InvalidPrediction(
                "Head output contains NaN",
                {'nan_positions': nan_positions, 'output_width': len(raw)}
            )

        total = sum(raw)
        if total < self.config.degenerate_sum_threshold:
            raise DegenerateModel(
                f"Head output sums to {total:.3g}; the head was never meaningfully trained",
                {'output_sum': total, 'threshold': self.config.degenerate_sum_threshold}
            )

        if abs(total - 1.0) > self.config.renormalize_tolerance:
            self.logger.warning("prediction.renormalized", extra={'output_sum': total})
            raw = [value / total for value in raw]

        return [min(1.0, max(0.0, value)) for value in raw]
