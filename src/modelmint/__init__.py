# /modelmint/src/modelmint/__init__.py

"""
ModelMint Incremental Transfer-Learning Classifier Engine

Trains a small classification head on top of embeddings produced by a frozen
feature extractor, and keeps it trainable as classes and samples change.

Key Features:
- Per-class embedding cache with explicit tensor ownership
- Model surgery: adding or removing a class rebuilds only the output layer
- Cooperative async training with per-epoch progress and cancellation
- Validated, ranked predictions
- Bundles that round-trip head weights, class order and cached embeddings
  through filesystem or Redis storage

Core Components:
- ClassifierEngine: the Mutation API (classes, samples, train, predict, save, load)
- SampleStore, TrainingDataAssembler, ModelSurgeon, Trainer, Predictor, PersistenceCodec
"""

import logging

from .config.engine_config import (
    EngineConfig,
    HeadConfig,
    TrainingDefaults,
    PredictionConfig,
    ResourceConfig,
    StorageConfig,
    MonitoringConfig,
    ConfigurationError,
    load_engine_config
)
from .engine import (
    ClassifierEngine,
    ModelBundle,
    HeadStateKind,
    PredictionEntry,
    TrainingProgress,
    TrainingStatus,
    ProgressSink,
    CallbackProgressSink,
    LoggingProgressSink,
    NullProgressSink,
    FeatureExtractor,
    CallableExtractor,
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
    CorruptBundle,
    ExtractorError,
    NoFeatureDetected,
    ExtractorNotReady
)
from .storage import BundleKey, BundleStore, FilesystemBundleStore, RedisBundleStore
from .utils.logging import EngineLogger, setup_engine_logging
from .utils.resource_manager import TensorArena, MemoryReport

__version__ = "1.0.0"
__author__ = "ModelMint Development Team"

__all__ = [
    # Engine
    "ClassifierEngine",
    "ModelBundle",
    "HeadStateKind",
    "PredictionEntry",
    "TrainingProgress",
    "TrainingStatus",
    "ProgressSink",
    "CallbackProgressSink",
    "LoggingProgressSink",
    "NullProgressSink",
    "FeatureExtractor",
    "CallableExtractor",

    # Errors
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
    "ExtractorError",
    "NoFeatureDetected",
    "ExtractorNotReady",

    # Configuration
    "EngineConfig",
    "HeadConfig",
    "TrainingDefaults",
    "PredictionConfig",
    "ResourceConfig",
    "StorageConfig",
    "MonitoringConfig",
    "ConfigurationError",
    "load_engine_config",

    # Storage
    "BundleKey",
    "BundleStore",
    "FilesystemBundleStore",
    "RedisBundleStore",

    # Utilities
    "EngineLogger",
    "setup_engine_logging",
    "TensorArena",
    "MemoryReport",

    "create_engine"
]


def create_engine(config_path: str = None, environment: str = "development",
                  extractor: FeatureExtractor = None) -> ClassifierEngine:
    """
    Factory function to create a configured classifier engine.

    Args:
        config_path: Path to custom configuration file
        environment: Environment name (development, staging, production)
        extractor: Feature extractor used by ``embed``/``predict_input``

    Examples:
        # Development engine with defaults
        engine = create_engine()

        # Production engine with custom config
        engine = create_engine("config/custom.yaml", "production")
    """
    config = load_engine_config(config_path, environment)

    monitoring = config.monitoring
    setup_engine_logging(
        level=monitoring.log_level,
        log_format=monitoring.log_format,
        log_dir=monitoring.log_dir,
        enable_console=monitoring.enable_console,
        enable_file=monitoring.enable_file
    )

    return ClassifierEngine(config, extractor)


# Package-level logging setup
def setup_package_logging(level: str = "INFO") -> None:
    """Setup logging for the engine package."""
    setup_engine_logging(level)

    logger = logging.getLogger(__name__)
    logger.debug("modelmint.initialized", extra={"version": __version__})


# Initialize logging
setup_package_logging()
