# /modelmint/src/modelmint/engine/trainer.py

"""
Trainer: fits the classification head on an assembled feature matrix.

Minimizes categorical cross-entropy with Adam over ``epochs`` passes of
shuffled mini-batches. After every epoch the trainer updates the Training Run
State, notifies the Progress Sink and awaits ``asyncio.sleep(0)`` so the host
event loop stays responsive. Cancellation takes effect only at an epoch
boundary.
"""

import asyncio
import logging
import math
import numbers
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import torch
import torch.nn.functional as F

from ..config.engine_config import HeadConfig, TrainingDefaults
from ..utils.resource_manager import TensorArena
from .errors import (
    EngineError,
    InvalidHyperparameter,
    ShapeMismatch,
    TrainingCancelled,
    TrainingFailed
)
from .head import HeadNetwork


# Probabilities are clipped to [eps, 1 - eps] before the log
PROBABILITY_EPSILON = 1e-7


def _is_count(value: Any) -> bool:
    # numpy integers register as numbers.Integral; bool is excluded
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


@dataclass(frozen=True)
class Hyperparameters:
    """Caller-supplied fitting parameters; never clamped."""
    epochs: int
    batch_size: int
    learning_rate: float

    def validate(self) -> None:
        """
        Raises:
            InvalidHyperparameter: on the first out-of-range value
        """
        if not _is_count(self.epochs) or self.epochs < 1:
            raise InvalidHyperparameter(f"epochs must be an integer >= 1: {self.epochs!r}",
                                        {'epochs': self.epochs})

        if not _is_count(self.batch_size) or self.batch_size < 1:
            raise InvalidHyperparameter(f"batchSize must be an integer >= 1: {self.batch_size!r}",
                                        {'batch_size': self.batch_size})

        rate = self.learning_rate
        if isinstance(rate, bool) or not isinstance(rate, numbers.Real) or not math.isfinite(rate) or rate <= 0:
            raise InvalidHyperparameter(f"learningRate must be a finite number > 0: {rate!r}",
                                        {'learning_rate': rate})

    @classmethod
    def from_mapping(cls, params: Optional[Mapping[str, Any]],
                     defaults: Optional[TrainingDefaults] = None) -> 'Hyperparameters':
        """Accepts snake_case or camelCase keys; missing keys use the defaults."""
        defaults = defaults or TrainingDefaults()
        params = dict(params or {})

        def pick(snake: str, camel: str, fallback: Any) -> Any:
            if snake in params:
                return params[snake]
            return params.get(camel, fallback)

        return cls(
            epochs=pick('epochs', 'epochs', defaults.epochs),
            batch_size=pick('batch_size', 'batchSize', defaults.batch_size),
            learning_rate=pick('learning_rate', 'learningRate', defaults.learning_rate)
        )


@dataclass
class TrainingProgress:
    """Training Run State: mutated once per epoch, reset per invocation."""
    epoch: int = 0
    loss: float = 0.0
    accuracy: float = 0.0

    def reset(self) -> None:
        self.epoch = 0
        self.loss = 0.0
        self.accuracy = 0.0

    def copy(self) -> 'TrainingProgress':
        return TrainingProgress(self.epoch, self.loss, self.accuracy)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TrainingStatus(Enum):
    """Terminal status reported to the progress sink."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProgressSink(ABC):
    """
    Receives per-epoch progress and exactly one terminal status per run.
    """

    @abstractmethod
    def on_epoch_end(self, progress: TrainingProgress) -> None:
        pass

    @abstractmethod
    def on_training_end(self, status: TrainingStatus,
                        error: Optional[BaseException] = None) -> None:
        pass


class NullProgressSink(ProgressSink):

    def on_epoch_end(self, progress: TrainingProgress) -> None:
        pass

    def on_training_end(self, status: TrainingStatus,
                        error: Optional[BaseException] = None) -> None:
        pass


class CallbackProgressSink(ProgressSink):
    """Adapts plain callables to the sink interface."""

    def __init__(self, on_epoch: Optional[Callable[[TrainingProgress], None]] = None,
                 on_end: Optional[Callable[[TrainingStatus, Optional[BaseException]], None]] = None):
        self._on_epoch = on_epoch
        self._on_end = on_end

    def on_epoch_end(self, progress: TrainingProgress) -> None:
        if self._on_epoch is not None:
            self._on_epoch(progress)

    def on_training_end(self, status: TrainingStatus,
                        error: Optional[BaseException] = None) -> None:
        if self._on_end is not None:
            self._on_end(status, error)


class LoggingProgressSink(ProgressSink):
    """Logs each epoch and the terminal status."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def on_epoch_end(self, progress: TrainingProgress) -> None:
        self.logger.info("training.epoch_completed", extra=progress.to_dict())

    def on_training_end(self, status: TrainingStatus,
                        error: Optional[BaseException] = None) -> None:
        extra = {'status': status.value}
        if error is not None:
            extra['error_type'] = type(error).__name__
            extra['error'] = str(error)
        self.logger.info("training.finished", extra=extra)


@dataclass
class TrainingResult:
    """Fitted head plus the per-epoch history of the run."""
    head: HeadNetwork
    history: List[TrainingProgress] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def final_progress(self) -> TrainingProgress:
        return self.history[-1] if self.history else TrainingProgress()


def categorical_crossentropy(probabilities: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    clipped = probabilities.clamp(PROBABILITY_EPSILON, 1.0 - PROBABILITY_EPSILON)
    return -(targets * torch.log(clipped)).sum(dim=1).mean()


class Trainer:
    """
    Fits a HeadNetwork to an assembled feature matrix.
    """

    def __init__(self, arena: TensorArena,
                 defaults: Optional[TrainingDefaults] = None,
                 head_config: Optional[HeadConfig] = None):
        self.arena = arena
        self.defaults = defaults or TrainingDefaults()
        self.head_config = head_config or HeadConfig()
        self.progress = TrainingProgress()
        self.logger = logging.getLogger(__name__)

    async def train(self, features: torch.Tensor, labels: torch.Tensor, num_classes: int,
                    hyperparameters: Any = None,
                    head: Optional[HeadNetwork] = None,
                    sink: Optional[ProgressSink] = None,
                    should_cancel: Optional[Callable[[], bool]] = None,
                    freeze_hidden: bool = False) -> TrainingResult:
        """
        Fit ``head`` (a new one when omitted) and return it.

        Args:
            features: N x D float matrix
            labels: N class indices, positional against the class list
            num_classes: output width; labels are one-hot encoded against it
            hyperparameters: Hyperparameters or mapping with epochs/batchSize/learningRate
            head: head to fit in place
            sink: progress sink notified per epoch and at the end
            should_cancel: polled at each epoch boundary
            freeze_hidden: keep the hidden layer's weights fixed

        Raises:
            InvalidHyperparameter, ShapeMismatch: before any tensor work
            TrainingCancelled: cancellation observed at an epoch boundary
            TrainingFailed: numeric failure; the cause is chained
        """
        sink = sink or NullProgressSink()
        params = hyperparameters if isinstance(hyperparameters, Hyperparameters) \
            else Hyperparameters.from_mapping(hyperparameters, self.defaults)

        self.progress.reset()

        try:
            params.validate()
            self._validate_shapes(features, labels, num_classes, head)
        except EngineError as e:
            sink.on_training_end(TrainingStatus.FAILED, e)
            raise

        if head is None:
            head = HeadNetwork(
                input_dim=int(features.shape[1]),
                num_classes=num_classes,
                hidden_units=self.head_config.hidden_units,
                hidden_activation=self.head_config.hidden_activation,
                output_activation=self.head_config.output_activation,
                seed=self.defaults.random_seed
            ).to(features.device)

        start_time = time.perf_counter()
        history: List[TrainingProgress] = []

        try:
            with self.arena.scope("training.fit"):
                await self._fit(head, features, labels, num_classes, params,
                                sink, should_cancel, freeze_hidden, history)
        except TrainingCancelled as e:
            self.logger.info("training.cancelled", extra={'epoch': self.progress.epoch})
            sink.on_training_end(TrainingStatus.CANCELLED, e)
            raise
        except TrainingFailed as e:
            self.logger.error("training.failed", extra={'error': e.message, **e.context})
            sink.on_training_end(TrainingStatus.FAILED, e)
            raise
        finally:
            if freeze_hidden:
                head.set_hidden_trainable(True)
            head.eval()

        duration = time.perf_counter() - start_time
        sink.on_training_end(TrainingStatus.COMPLETED)

        self.logger.info("training.completed", extra={
            'epochs': params.epochs,
            'loss': self.progress.loss,
            'accuracy': self.progress.accuracy,
            'duration_seconds': duration
        })
        return TrainingResult(head=head, history=history, duration_seconds=duration)

    async def _fit(self, head: HeadNetwork, features: torch.Tensor, labels: torch.Tensor,
                   num_classes: int, params: Hyperparameters, sink: ProgressSink,
                   should_cancel: Optional[Callable[[], bool]], freeze_hidden: bool,
                   history: List[TrainingProgress]) -> None:
        targets = self.arena.register(
            F.one_hot(labels, num_classes).to(features.dtype), "training"
        ).tensor

        head.set_hidden_trainable(not freeze_hidden)
        trainable = [p for p in head.parameters() if p.requires_grad]
        optimizer = torch.optim.Adam(trainable, lr=float(params.learning_rate))

        generator = torch.Generator()
        if self.defaults.random_seed is not None:
            generator.manual_seed(self.defaults.random_seed)

        num_samples = int(features.shape[0])
        head.train()

        for epoch in range(params.epochs):
            if should_cancel is not None and should_cancel():
                raise TrainingCancelled(
                    f"Training cancelled before epoch {epoch + 1}",
                    {'epoch': epoch, 'epochs': params.epochs}
                )

            if self.defaults.shuffle:
                order = torch.randperm(num_samples, generator=generator)
            else:
                order = torch.arange(num_samples)
            order = order.to(features.device)

            epoch_loss = 0.0
            correct = 0

            try:
                for start in range(0, num_samples, params.batch_size):
                    index = order[start:start + params.batch_size]
                    batch_x = features[index]
                    batch_targets = targets[index]

                    optimizer.zero_grad()
                    probabilities = head(batch_x)
                    loss = categorical_crossentropy(probabilities, batch_targets)

                    loss_value = float(loss.item())
                    if not math.isfinite(loss_value):
                        raise FloatingPointError(f"Non-finite loss: {loss_value}")

                    loss.backward()
                    optimizer.step()

                    epoch_loss += loss_value * int(index.shape[0])
                    correct += int((probabilities.argmax(dim=1) == labels[index]).sum().item())
            except (RuntimeError, FloatingPointError) as e:
                raise TrainingFailed(
                    f"Training failed at epoch {epoch + 1}: {e}",
                    {'epoch': epoch + 1, 'epochs': params.epochs, 'num_samples': num_samples}
                ) from e

            self.progress.epoch = epoch + 1
            self.progress.loss = epoch_loss / num_samples
            self.progress.accuracy = correct / num_samples
            history.append(self.progress.copy())

            self.logger.debug("training.epoch_completed", extra=self.progress.to_dict())
            sink.on_epoch_end(self.progress.copy())

            # Cooperative checkpoint: hand control back to the host loop
            await asyncio.sleep(0)

    @staticmethod
    def _validate_shapes(features: torch.Tensor, labels: torch.Tensor, num_classes: int,
                         head: Optional[HeadNetwork]) -> None:
        if features.dim() != 2:
            raise ShapeMismatch(f"Features must be a matrix, got shape {tuple(features.shape)}",
                                {'features_shape': list(features.shape)})

        if labels.dim() != 1 or labels.shape[0] != features.shape[0]:
            raise ShapeMismatch(
                f"Feature rows ({features.shape[0]}) and labels ({tuple(labels.shape)}) disagree",
                {'feature_rows': int(features.shape[0]), 'labels_shape': list(labels.shape)}
            )

        if features.shape[0] == 0:
            raise ShapeMismatch("Cannot train on an empty feature matrix", {'feature_rows': 0})

        if num_classes < 1:
            raise ShapeMismatch(f"Class count must be positive: {num_classes}",
                                {'num_classes': num_classes})

        if int(labels.min()) < 0 or int(labels.max()) >= num_classes:
            raise ShapeMismatch(
                f"Labels must lie in [0, {num_classes})",
                {'num_classes': num_classes, 'min_label': int(labels.min()),
                 'max_label': int(labels.max())}
            )

        if head is not None:
            if head.input_dim != features.shape[1]:
                raise ShapeMismatch(
                    f"Head expects {head.input_dim} features, matrix has {features.shape[1]}",
                    {'head_input_dim': head.input_dim, 'feature_dim': int(features.shape[1])}
                )
            if head.num_classes != num_classes:
                raise ShapeMismatch(
                    f"Head has {head.num_classes} outputs, {num_classes} classes requested",
                    {'head_outputs': head.num_classes, 'num_classes': num_classes}
                )
