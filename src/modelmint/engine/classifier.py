# /modelmint/src/modelmint/engine/classifier.py

"""
ClassifierEngine: the Mutation API over sample store, surgeon, trainer,
predictor and codec.

One training invocation runs at a time. Training snapshots the class list,
assembles an independent (X, y) copy, lets the surgeon pick the head to fit,
fits it cooperatively and installs it only on success. Sample and class
mutations stay available while a run is in flight.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional, Union

from ..config.engine_config import EngineConfig
from ..utils.logging import get_engine_logger, stage_logging
from ..utils.resource_manager import MemoryReport, TensorArena, select_device
from .assembler import TrainingDataAssembler
from .codec import ModelBundle, PersistenceCodec
from .errors import (
    CorruptBundle,
    DegenerateModel,
    EngineError,
    InvalidEmbeddingShape,
    TrainingInProgress
)
from .extractor import ExtractorNotReady, FeatureExtractor
from .predictor import PredictionEntry, Predictor
from .sample_store import ClassEntry, Sample, SampleStore
from .surgeon import HeadState, ModelSurgeon
from .trainer import (
    Hyperparameters,
    NullProgressSink,
    ProgressSink,
    Trainer,
    TrainingProgress,
    TrainingStatus
)


class ClassifierEngine:
    """
    Incremental transfer-learning classifier over cached embeddings.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 extractor: Optional[FeatureExtractor] = None):
        self.config = config or EngineConfig()
        self.extractor = extractor
        self.logger = get_engine_logger(__name__)

        device = select_device(self.config.resources.enable_gpu, self.config.resources.gpu_id)
        self.arena = TensorArena(device, self.config.resources.tensor_warning_threshold)

        self.sample_store = SampleStore(self.arena)
        self.assembler = TrainingDataAssembler(self.arena)
        self.surgeon = ModelSurgeon(self.config.head, device, seed=self.config.training.random_seed)
        self.trainer = Trainer(self.arena, self.config.training, self.config.head)
        self.predictor = Predictor(self.arena, self.config.prediction)
        self.codec = PersistenceCodec(self.arena)

        self._head_state = HeadState.no_head()
        self._is_training = False
        self._cancel_requested = False
        self._invocations = itertools.count(1)

    # Read-only state

    @property
    def classes(self) -> List[ClassEntry]:
        return self.sample_store.classes

    @property
    def training_progress(self) -> TrainingProgress:
        return self.trainer.progress.copy()

    @property
    def is_training(self) -> bool:
        return self._is_training

    @property
    def head_state(self) -> HeadState:
        return self._head_state

    @property
    def memory_report(self) -> MemoryReport:
        return self.arena.memory_report("engine")

    # Class and sample mutations

    def add_class(self, name: Optional[str] = None) -> ClassEntry:
        return self.sample_store.add_class(name)

    def rename_class(self, class_id: str, name: str) -> ClassEntry:
        return self.sample_store.rename_class(class_id, name)

    def delete_class(self, class_id: str) -> bool:
        return self.sample_store.delete_class(class_id)

    def add_sample(self, class_id: str, embedding: Any, media_ref: Any = None) -> Sample:
        return self.sample_store.add_sample(class_id, embedding, media_ref)

    def delete_sample(self, class_id: str, sample_id: str) -> None:
        self.sample_store.delete_sample(class_id, sample_id)

    def embed(self, raw_input: Any) -> Any:
        """
        Run the configured feature extractor; its errors propagate unchanged.
        """
        if self.extractor is None:
            raise ExtractorNotReady("No feature extractor configured", {})
        return self.extractor.embed(raw_input)

    # Training

    async def train(self, epochs: Optional[int] = None, batch_size: Optional[int] = None,
                    learning_rate: Optional[float] = None,
                    sink: Optional[ProgressSink] = None) -> TrainingProgress:
        """
        Fit the head on every stored sample.

        Omitted hyperparameters use the configured training defaults.

        Returns:
            Final Training Run State of this invocation

        Raises:
            TrainingInProgress: another invocation has not finished
            InvalidHyperparameter, NoTrainingData, ShapeMismatch: before any fitting
            TrainingFailed, TrainingCancelled: from the fit; the previous head stays installed
        """
        if self._is_training:
            raise TrainingInProgress("A training run is already in progress",
                                     {'epoch': self.trainer.progress.epoch})

        sink = sink or NullProgressSink()
        defaults = self.config.training
        params = Hyperparameters(
            epochs=defaults.epochs if epochs is None else epochs,
            batch_size=defaults.batch_size if batch_size is None else batch_size,
            learning_rate=defaults.learning_rate if learning_rate is None else learning_rate
        )

        self._is_training = True
        self._cancel_requested = False
        self.trainer.progress.reset()
        fit_started = False

        try:
            with self.logger.context(invocation=next(self._invocations)):
                params.validate()
                snapshot = self.sample_store.snapshot()

                with self.arena.scope("training"):
                    with stage_logging(self.logger, "assemble"):
                        data = self.assembler.assemble(snapshot)

                    with stage_logging(self.logger, "surgery"):
                        plan = self.surgeon.plan_with_fallback(
                            self._head_state, data.num_classes, data.dimension
                        )

                    fit_started = True
                    with stage_logging(self.logger, "fit", head_state=plan.kind.value):
                        await self.trainer.train(
                            data.features, data.labels, data.num_classes, params,
                            head=plan.head,
                            sink=sink,
                            should_cancel=lambda: self._cancel_requested,
                            freeze_hidden=plan.freeze_hidden
                        )

                self._head_state = self.surgeon.complete(plan)
                self.logger.info("engine.head_installed", extra={
                    'head_state': self._head_state.kind.value,
                    'num_classes': self._head_state.output_width,
                    'fell_back': plan.fell_back
                })
        except EngineError as e:
            if not fit_started:
                sink.on_training_end(TrainingStatus.FAILED, e)
            raise
        finally:
            self._is_training = False
            self._cancel_requested = False
            self._log_memory("train")

        return self.trainer.progress.copy()

    def train_blocking(self, **kwargs) -> TrainingProgress:
        """Run ``train`` to completion outside an event loop."""
        return asyncio.run(self.train(**kwargs))

    def cancel_training(self) -> bool:
        """
        Request cancellation at the next epoch boundary.

        Returns:
            Whether a run was in flight
        """
        if not self._is_training:
            return False
        self._cancel_requested = True
        self.logger.info("engine.cancel_requested", extra={'epoch': self.trainer.progress.epoch})
        return True

    # Prediction

    def predict(self, embedding: Any) -> List[PredictionEntry]:
        """
        Rank the current classes for one embedding.

        Raises:
            DegenerateModel: no head has been trained or loaded
        """
        return self.predictor.predict(embedding, self._head_state.head, self.sample_store.classes)

    def predict_input(self, raw_input: Any) -> List[PredictionEntry]:
        """Extract an embedding from ``raw_input`` and rank it."""
        return self.predict(self.embed(raw_input))

    # Persistence

    def save(self, include_embeddings: bool = True) -> ModelBundle:
        """
        Raises:
            DegenerateModel: there is no head to save
        """
        if not self._head_state.has_head:
            raise DegenerateModel("No trained head to save", {})

        bundle = self.codec.save(self._head_state.head, self.sample_store.classes,
                                 include_embeddings=include_embeddings)
        self.logger.info("bundle.saved", extra={
            'num_classes': len(bundle.class_manifest),
            'total_samples': bundle.metadata.get('totalSamples', 0)
        })
        return bundle

    def load(self, bundle: Union[ModelBundle, Dict[str, Any], str]) -> List[ClassEntry]:
        """
        Replace the head and all classes with the bundle contents.

        Raises:
            TrainingInProgress: a run is in flight
            CorruptBundle: the bundle fails validation; decode failures leave
                the engine unchanged
        """
        if self._is_training:
            raise TrainingInProgress("Cannot load a bundle while training", {})

        if isinstance(bundle, str):
            bundle = ModelBundle.from_json(bundle)
        elif isinstance(bundle, dict):
            bundle = ModelBundle.from_dict(bundle)

        decoded = self.codec.load(bundle, self.arena.device)

        try:
            classes = self.sample_store.restore(
                (restored.name, restored.samples) for restored in decoded.classes
            )
        except InvalidEmbeddingShape as e:
            self._head_state = HeadState.no_head()
            raise CorruptBundle(f"Cached embedding rejected: {e.message}", e.context) from e

        self._head_state = HeadState.fine_tune(decoded.head)

        self.logger.info("bundle.loaded", extra={
            'num_classes': len(classes),
            'total_samples': decoded.total_samples,
            'legacy': decoded.legacy
        })
        self._log_memory("load")
        return classes

    def save_to(self, store: Any, key: Any, include_embeddings: bool = True) -> ModelBundle:
        """Save and put the bundle into a durable store."""
        bundle = self.save(include_embeddings=include_embeddings)
        store.put(key, bundle)
        return bundle

    def load_from(self, store: Any, key: Any) -> List[ClassEntry]:
        """Fetch a bundle from a durable store and load it."""
        return self.load(store.get(key))

    def export_json(self, include_embeddings: bool = True) -> str:
        return self.save(include_embeddings).to_json()

    # Lifecycle

    def close(self) -> None:
        """Release every engine-owned tensor and drop the head."""
        self.cancel_training()
        released = self.sample_store.clear()
        released += self.arena.release_all()
        self._head_state = HeadState.no_head()
        self.logger.info("engine.closed", extra={'released_tensors': released})

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _log_memory(self, operation: str) -> None:
        if self.config.monitoring.log_memory_after_operations:
            self.arena.memory_report(operation)

    def __repr__(self) -> str:
        head = self._head_state
        return (f"ClassifierEngine(classes={len(self.sample_store.classes)}, "
                f"samples={self.sample_store.total_samples}, head={head.kind.value})")
