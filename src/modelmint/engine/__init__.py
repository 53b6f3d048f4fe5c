# /modelmint/src/modelmint/engine/__init__.py

"""
Core Engine Components

- SampleStore: per-class embedding ownership
- TrainingDataAssembler: snapshot -> (X, y)
- ModelSurgeon: fresh / fine-tune / transplant decisions
- Trainer: cooperative async fitting with progress reporting
- Predictor: validated, ranked class scores
- PersistenceCodec: head + manifest + embeddings <-> ModelBundle
- ClassifierEngine: the Mutation API tying them together
"""

from .assembler import AssembledData, TrainingDataAssembler
from .classifier import ClassifierEngine
from .codec import ModelBundle, PersistenceCodec
from .errors import (
    EngineError,
    InvalidEmbeddingShape,
    NoTrainingData,
    ShapeMismatch,
    InvalidHyperparameter,
    TrainingFailed,
    TrainingInProgress,
    TrainingCancelled,
    IncompatibleHeadShape,
    InvalidPrediction,
    DegenerateModel,
    NotFound,
    DuplicateClassName,
    CorruptBundle
)
from .extractor import (
    CallableExtractor,
    ExtractorError,
    ExtractorNotReady,
    FeatureExtractor,
    NoFeatureDetected
)
from .head import HeadNetwork
from .predictor import PredictionEntry, Predictor
from .sample_store import ClassEntry, ClassSnapshot, Sample, SampleStore
from .surgeon import HeadState, HeadStateKind, ModelSurgeon, SurgeryPlan
from .trainer import (
    CallbackProgressSink,
    Hyperparameters,
    LoggingProgressSink,
    NullProgressSink,
    ProgressSink,
    Trainer,
    TrainingProgress,
    TrainingResult,
    TrainingStatus
)

__all__ = [
    "AssembledData",
    "TrainingDataAssembler",
    "ClassifierEngine",
    "ModelBundle",
    "PersistenceCodec",
    "EngineError",
    "InvalidEmbeddingShape",
    "NoTrainingData",
    "ShapeMismatch",
    "InvalidHyperparameter",
    "TrainingFailed",
    "TrainingInProgress",
    "TrainingCancelled",
    "IncompatibleHeadShape",
    "InvalidPrediction",
    "DegenerateModel",
    "NotFound",
    "DuplicateClassName",
    "CorruptBundle",
    "CallableExtractor",
    "ExtractorError",
    "ExtractorNotReady",
    "FeatureExtractor",
    "NoFeatureDetected",
    "HeadNetwork",
    "PredictionEntry",
    "Predictor",
    "ClassEntry",
    "ClassSnapshot",
    "Sample",
    "SampleStore",
    "HeadState",
    "HeadStateKind",
    "ModelSurgeon",
    "SurgeryPlan",
    "CallbackProgressSink",
    "Hyperparameters",
    "LoggingProgressSink",
    "NullProgressSink",
    "ProgressSink",
    "Trainer",
    "TrainingProgress",
    "TrainingResult",
    "TrainingStatus"
]
