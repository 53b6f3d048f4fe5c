# /modelmint/src/modelmint/config/__init__.py

"""
Engine Configuration Management

Frozen dataclass configuration with YAML loading, environment overrides and
validation.
"""

from .engine_config import (
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

__all__ = [
    "EngineConfig",
    "HeadConfig",
    "TrainingDefaults",
    "PredictionConfig",
    "ResourceConfig",
    "StorageConfig",
    "MonitoringConfig",
    "ConfigurationError",
    "load_engine_config"
]
