# /modelmint/src/modelmint/config/engine_config.py

"""
Engine Configuration Management

Hierarchical configuration for the classifier engine with environment-specific
overrides and validation.

Key Features:
- YAML-based configuration with environment-specific overrides
- Frozen dataclasses with defaults and per-section ``validate()``
- Deep merging of file, environment defaults and ``MODELMINT_*`` variables
- Environment-aware loading (development, staging, production)
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


SUPPORTED_ACTIVATIONS = ("relu", "softmax", "sigmoid", "linear")


@dataclass(frozen=True)
class HeadConfig:
    """
    Architecture of the classification head.
    """
    hidden_units: int = 100
    hidden_activation: str = "relu"
    output_activation: str = "softmax"

    # Keep the transplanted hidden layer fixed while the new output layer is fit
    freeze_hidden_on_surgery: bool = True

    def validate(self) -> List[str]:
        errors = []

        if self.hidden_units <= 0:
            errors.append(f"Hidden units must be positive: {self.hidden_units}")

        if self.hidden_activation not in SUPPORTED_ACTIVATIONS:
            errors.append(f"Invalid hidden activation: {self.hidden_activation}")

        if self.output_activation not in SUPPORTED_ACTIVATIONS:
            errors.append(f"Invalid output activation: {self.output_activation}")

        return errors


@dataclass(frozen=True)
class TrainingDefaults:
    """
    Hyperparameters used when ``train`` is called without explicit values.
    """
    epochs: int = 50
    batch_size: int = 16
    learning_rate: float = 0.001
    shuffle: bool = True
    random_seed: Optional[int] = 42

    def validate(self) -> List[str]:
        errors = []

        if self.epochs < 1:
            errors.append(f"Default epochs must be >= 1: {self.epochs}")

        if self.batch_size < 1:
            errors.append(f"Default batch size must be >= 1: {self.batch_size}")

        if not self.learning_rate > 0:
            errors.append(f"Default learning rate must be positive: {self.learning_rate}")

        return errors


@dataclass(frozen=True)
class PredictionConfig:
    """
    Output validation thresholds for the predictor.
    """
    degenerate_sum_threshold: float = 1e-4
    renormalize_tolerance: float = 1e-2

    def validate(self) -> List[str]:
        errors = []

        if not 0 < self.degenerate_sum_threshold < 1:
            errors.append(f"Degenerate sum threshold must be in (0, 1): {self.degenerate_sum_threshold}")

        if not 0 < self.renormalize_tolerance < 1:
            errors.append(f"Renormalize tolerance must be in (0, 1): {self.renormalize_tolerance}")

        return errors


@dataclass(frozen=True)
class ResourceConfig:
    """
    Device selection and tensor accounting.
    """
    enable_gpu: bool = False
    gpu_id: int = 0
    tensor_warning_threshold: int = 100

    def validate(self) -> List[str]:
        errors = []

        if self.gpu_id < 0:
            errors.append(f"GPU ID must be non-negative: {self.gpu_id}")

        if self.tensor_warning_threshold <= 0:
            errors.append(f"Tensor warning threshold must be positive: {self.tensor_warning_threshold}")

        return errors


@dataclass(frozen=True)
class StorageConfig:
    """
    Durable bundle store settings.
    """
    backend: str = "filesystem"  # filesystem, redis
    base_dir: str = "data/bundles"

    redis_host: str = field(default_factory=lambda: os.getenv("REDIS_HOST", "localhost"))
    redis_port: int = field(default_factory=lambda: int(os.getenv("REDIS_PORT", "6379")))
    redis_password: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_PASSWORD"))
    redis_db: int = 3
    key_prefix: str = "modelmint:bundle"

    def validate(self) -> List[str]:
        errors = []

        valid_backends = ["filesystem", "redis"]
        if self.backend.lower() not in valid_backends:
            errors.append(f"Invalid storage backend: {self.backend}")

        if self.backend.lower() == "filesystem" and not self.base_dir:
            errors.append("Filesystem storage requires base_dir")

        if not 0 < self.redis_port < 65536:
            errors.append(f"Invalid Redis port: {self.redis_port}")

        if self.redis_db < 0:
            errors.append(f"Redis DB must be non-negative: {self.redis_db}")

        return errors


@dataclass(frozen=True)
class MonitoringConfig:
    """
    Logging configuration.
    """
    log_level: str = "INFO"
    log_format: str = "text"  # json, text
    log_dir: str = "logs/engine"
    enable_console: bool = True
    enable_file: bool = False
    log_memory_after_operations: bool = True

    def validate(self) -> List[str]:
        errors = []

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Invalid log level: {self.log_level}")

        valid_log_formats = ["json", "text"]
        if self.log_format.lower() not in valid_log_formats:
            errors.append(f"Invalid log format: {self.log_format}")

        return errors


@dataclass(frozen=True)
class EngineConfig:
    """
    Master engine configuration combining all section configurations.
    """
    head: HeadConfig = field(default_factory=HeadConfig)
    training: TrainingDefaults = field(default_factory=TrainingDefaults)
    prediction: PredictionConfig = field(default_factory=PredictionConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    environment: str = "development"
    version: str = "1.0.0"

    def validate(self) -> List[str]:
        """Validate complete engine configuration."""
        errors = []

        errors.extend(self.head.validate())
        errors.extend(self.training.validate())
        errors.extend(self.prediction.validate())
        errors.extend(self.resources.validate())
        errors.extend(self.storage.validate())
        errors.extend(self.monitoring.validate())

        if self.head.output_activation == "relu":
            errors.append("ReLU output activation cannot express a class distribution")

        return errors

    def is_production_environment(self) -> bool:
        return self.environment.lower() == "production"


class ConfigurationValidator:
    """
    Configuration validator with environment checks.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def validate_configuration(self, config: EngineConfig) -> Tuple[bool, List[str]]:
        """
        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = config.validate()
        errors.extend(self._validate_environment_compatibility(config))

        is_valid = len(errors) == 0

        if not is_valid:
            self.logger.error("configuration.validation_failed", extra={
                "error_count": len(errors),
                "errors": errors
            })

        return is_valid, errors

    def _validate_environment_compatibility(self, config: EngineConfig) -> List[str]:
        errors = []

        if config.is_production_environment():
            if config.monitoring.log_level.upper() == "DEBUG":
                errors.append("DEBUG logging not recommended in production")

        return errors


def load_engine_config(config_path: Optional[str] = None,
                       environment: str = "development") -> EngineConfig:
    """
    Load engine configuration with environment-specific overrides.

    Args:
        config_path: Path to a YAML configuration file
        environment: Environment name (development, staging, production)

    Returns:
        Validated EngineConfig object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = logging.getLogger(__name__)

    try:
        base_config = _load_base_config(config_path)
        env_config = _apply_environment_overrides(base_config, environment)
        config = _create_config_object(env_config, environment)

        validator = ConfigurationValidator()
        is_valid, errors = validator.validate_configuration(config)

        if not is_valid:
            raise ConfigurationError(f"Configuration validation failed: {errors}")

        logger.info("engine_config.loaded", extra={
            "environment": environment,
            "config_path": config_path
        })

        return config

    except ConfigurationError:
        raise
    except (TypeError, ValueError, OSError) as e:
        logger.error("engine_config.load_failed", extra={
            "environment": environment,
            "config_path": config_path,
            "error": str(e)
        })
        raise ConfigurationError(f"Failed to load engine configuration: {e}") from e


def _load_base_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load base configuration from YAML file."""
    if config_path is None:
        config_paths = [
            "config/engine/base.yaml",
            "modelmint.yaml"
        ]

        for path in config_paths:
            if Path(path).exists():
                config_path = path
                break
        else:
            return {}

    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_file}")

    return config


def _apply_environment_overrides(base_config: Dict[str, Any],
                                 environment: str) -> Dict[str, Any]:
    """Apply environment-specific configuration overrides."""
    env_defaults = {
        "development": {
            "monitoring": {
                "log_level": "DEBUG"
            }
        },
        "staging": {
            "monitoring": {
                "log_level": "INFO"
            }
        },
        "production": {
            "monitoring": {
                "log_level": "WARNING",
                "log_format": "json",
                "log_memory_after_operations": False
            },
            "storage": {
                "backend": "redis"
            }
        }
    }

    # File values win over environment defaults
    config = _deep_merge_dicts(env_defaults.get(environment.lower(), {}), base_config)

    return _apply_environment_variables(config)


def _deep_merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


_ENV_MAPPING = {
    "MODELMINT_LOG_LEVEL": ("monitoring", "log_level", str),
    "MODELMINT_LOG_FORMAT": ("monitoring", "log_format", str),
    "MODELMINT_ENABLE_GPU": ("resources", "enable_gpu", bool),
    "MODELMINT_HIDDEN_UNITS": ("head", "hidden_units", int),
    "MODELMINT_EPOCHS": ("training", "epochs", int),
    "MODELMINT_BATCH_SIZE": ("training", "batch_size", int),
    "MODELMINT_LEARNING_RATE": ("training", "learning_rate", float),
    "MODELMINT_STORAGE_BACKEND": ("storage", "backend", str),
    "MODELMINT_STORAGE_DIR": ("storage", "base_dir", str),
}


def _apply_environment_variables(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ``MODELMINT_*`` environment variable overrides."""
    config = dict(config)

    for env_var, (section, key, cast) in _ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        if cast is bool:
            converted: Any = value.lower() in ("true", "1", "yes", "on")
        else:
            converted = cast(value)

        section_values = dict(config.get(section) or {})
        section_values[key] = converted
        config[section] = section_values

    return config


def _create_config_object(config_dict: Dict[str, Any], environment: str) -> EngineConfig:
    """Create EngineConfig object from dictionary."""
    training_values = dict(config_dict.get("training", {}))
    learning_rate = training_values.get("learning_rate")
    if learning_rate is not None:
        training_values["learning_rate"] = float(learning_rate)
        if not math.isfinite(training_values["learning_rate"]):
            raise ConfigurationError(f"Learning rate must be finite: {learning_rate}")

    return EngineConfig(
        head=HeadConfig(**config_dict.get("head", {})),
        training=TrainingDefaults(**training_values),
        prediction=PredictionConfig(**config_dict.get("prediction", {})),
        resources=ResourceConfig(**config_dict.get("resources", {})),
        storage=StorageConfig(**config_dict.get("storage", {})),
        monitoring=MonitoringConfig(**config_dict.get("monitoring", {})),
        environment=environment,
        **config_dict.get("engine", {})
    )


class ConfigurationError(Exception):
    """Raised when engine configuration is invalid."""
    pass
