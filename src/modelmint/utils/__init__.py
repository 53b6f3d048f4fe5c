# /modelmint/src/modelmint/utils/__init__.py

"""
Engine Utilities

Supporting infrastructure for the classifier engine: structured logging and
tensor resource management.
"""

from .logging import EngineLogger, setup_engine_logging, get_engine_logger, stage_logging
from .resource_manager import (
    MemoryReport,
    ResourceHandle,
    ResourceReleasedError,
    TensorArena,
    TensorHandle,
    select_device
)

__all__ = [
    "EngineLogger",
    "setup_engine_logging",
    "get_engine_logger",
    "stage_logging",
    "MemoryReport",
    "ResourceHandle",
    "ResourceReleasedError",
    "TensorArena",
    "TensorHandle",
    "select_device"
]
