# /modelmint/src/modelmint/engine/errors.py

"""
Engine Error Taxonomy

Structured error values raised by the classifier engine. Every error carries a
``context`` dictionary so the host UI can decide on a corrective action
(add more samples, re-train, re-capture input) without parsing messages.

Validation errors (InvalidEmbeddingShape, ShapeMismatch, InvalidHyperparameter)
are raised before any tensor work begins. Runtime numeric errors
(TrainingFailed, InvalidPrediction, DegenerateModel) propagate unchanged.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for classifier engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    @property
    def kind(self) -> str:
        """Stable error kind name for host-side message lookup."""
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'context': self.context
        }


class InvalidEmbeddingShape(EngineError):
    """Raised when a sample embedding disagrees with the established dimension."""
    pass


class NoTrainingData(EngineError):
    """Raised when training is requested with zero samples."""
    pass


class ShapeMismatch(EngineError):
    """Raised when feature/label/head shapes are inconsistent."""
    pass


class InvalidHyperparameter(EngineError):
    """Raised when epochs, batch size or learning rate are out of range."""
    pass


class TrainingFailed(EngineError):
    """Raised when the optimization loop fails; the cause is chained."""
    pass


class TrainingInProgress(EngineError):
    """Raised when train is called while another invocation is in flight."""
    pass


class TrainingCancelled(EngineError):
    """Raised at an epoch boundary after cancellation was requested."""
    pass


class IncompatibleHeadShape(EngineError):
    """Raised when an existing head cannot accept the current embedding dimension."""
    pass


class InvalidPrediction(EngineError):
    """Raised when the head output contains NaN values."""
    pass


class DegenerateModel(EngineError):
    """Raised when the head output sums to effectively zero or no head exists."""
    pass


class NotFound(EngineError):
    """Raised when a class, sample or stored bundle does not exist."""
    pass


class CorruptBundle(EngineError):
    """Raised when a persisted bundle cannot be decoded or fails validation."""
    pass


class DuplicateClassName(EngineError):
    """Raised when a class would share its display name with another class."""
    pass
