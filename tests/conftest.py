"""
Shared Test Configuration and Fixtures for ModelMint

Provides deterministic embeddings, temporary directories and a small-head
engine factory so unit and integration suites train in milliseconds.
"""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Callable, List

import numpy as np
import pytest
import torch

sys.path.append(str(Path(__file__).parent.parent / "src"))

from modelmint.config.engine_config import EngineConfig, HeadConfig, MonitoringConfig, TrainingDefaults
from modelmint.engine.classifier import ClassifierEngine
from modelmint.utils.resource_manager import TensorArena


def make_embeddings(count: int, dim: int, center: float, seed: int) -> List[np.ndarray]:
    """Cluster of ``count`` float32 vectors around ``center``."""
    rng = np.random.default_rng(seed)
    return [
        (center + 0.1 * rng.standard_normal(dim)).astype(np.float32)
        for _ in range(count)
    ]


@pytest.fixture
def temp_dir():
    """Create temporary directory for test artifacts."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def arena():
    return TensorArena(torch.device('cpu'))


@pytest.fixture
def embedding_factory() -> Callable[..., List[np.ndarray]]:
    return make_embeddings


@pytest.fixture
def test_config() -> EngineConfig:
    """Small head, no memory logging."""
    return EngineConfig(
        head=HeadConfig(hidden_units=16),
        training=TrainingDefaults(epochs=5, batch_size=8, learning_rate=0.01),
        monitoring=MonitoringConfig(log_level="WARNING", log_memory_after_operations=False),
        environment="testing"
    )


@pytest.fixture
def engine_factory(test_config):
    engines = []

    def factory(config: EngineConfig = None) -> ClassifierEngine:
        engine = ClassifierEngine(config or test_config)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.close()


@pytest.fixture
def engine(engine_factory) -> ClassifierEngine:
    return engine_factory()


@pytest.fixture
def two_class_engine(engine, embedding_factory) -> ClassifierEngine:
    """Engine with classes A (around -1) and B (around +1), 10 samples each, dim 8."""
    a = engine.add_class("A")
    b = engine.add_class("B")
    for vector in embedding_factory(10, 8, -1.0, seed=1):
        engine.add_sample(a.id, vector)
    for vector in embedding_factory(10, 8, 1.0, seed=2):
        engine.add_sample(b.id, vector)
    return engine
