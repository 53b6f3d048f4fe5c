# /modelmint/src/modelmint/engine/extractor.py

"""
Feature Extractor boundary.

The engine consumes ``embed(raw_input) -> vector`` from a pluggable
extractor. Extractor failures are surfaced to the caller unchanged; the
engine never substitutes a default vector.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable

from .errors import EngineError


class ExtractorError(EngineError):
    """Base exception for feature extractor failures."""
    pass


class NoFeatureDetected(ExtractorError):
    """Raised when the input contains nothing to embed (e.g. no pose in frame)."""
    pass


class ExtractorNotReady(ExtractorError):
    """Raised when the extractor is called before it finished loading."""
    pass


class FeatureExtractor(ABC):
    """
    Produces a fixed-length float vector for one raw input.
    """

    @property
    def is_ready(self) -> bool:
        return True

    @abstractmethod
    def embed(self, raw_input: Any) -> Any:
        pass


class CallableExtractor(FeatureExtractor):
    """Wraps a plain function as an extractor."""

    def __init__(self, fn: Callable[[Any], Any], ready: bool = True):
        self._fn = fn
        self._ready = ready

    @property
    def is_ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> None:
        self._ready = True

    def embed(self, raw_input: Any) -> Any:
        if not self._ready:
            raise ExtractorNotReady("Feature extractor is still loading", {})
        return self._fn(raw_input)
