# /modelmint/src/modelmint/utils/resource_manager.py

"""
Tensor Resource Management

Explicit ownership and scoped release for every tensor the engine allocates:
one embedding per sample, feature/label matrices per training run, scratch
tensors per prediction and per save.

Key Features:
- Resource handles with cleanup on context exit
- Arena that counts live tensors per kind (embedding, training, prediction, codec)
- Scoped acquisition: everything registered inside ``arena.scope()`` is
  released on every exit path
- Device selection and CUDA cache release
- Memory reports with a high-tensor-count warning

Nothing here relies on the garbage collector to reclaim a buffer; a handle
drops its reference on ``cleanup()`` and the arena forgets it.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psutil
import torch


@dataclass
class MemoryReport:
    """
    Snapshot of engine-owned tensor usage.
    """
    timestamp: datetime
    live_tensors: int
    live_bytes: int
    by_kind: Dict[str, int]
    process_rss_mb: Optional[float] = None
    cuda_allocated_mb: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'live_tensors': self.live_tensors,
            'live_bytes': self.live_bytes,
            'by_kind': dict(self.by_kind),
            'process_rss_mb': self.process_rss_mb,
            'cuda_allocated_mb': self.cuda_allocated_mb
        }


class ResourceHandle(ABC):
    """
    Abstract base class for resource handles with automatic cleanup.
    """

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        self.acquired_at = datetime.now()
        self.is_active = True

    @abstractmethod
    def cleanup(self) -> None:
        """Release the resource."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
        self.is_active = False


class TensorHandle(ResourceHandle):
    """
    Exclusive owner of one tensor registered with a TensorArena.
    """

    def __init__(self, resource_id: str, tensor: torch.Tensor, kind: str,
                 arena: 'TensorArena'):
        super().__init__(resource_id)
        self.kind = kind
        self._tensor: Optional[torch.Tensor] = tensor
        self._arena = arena
        self.nbytes = tensor.element_size() * tensor.nelement()

    @property
    def tensor(self) -> torch.Tensor:
        if self._tensor is None:
            raise ResourceReleasedError(f"Tensor {self.resource_id} was already released")
        return self._tensor

    def cleanup(self) -> None:
        """Drop the tensor reference and unregister from the arena."""
        if not self.is_active:
            return

        self._tensor = None
        self.is_active = False
        self._arena._forget(self)


class TensorArena:
    """
    Registry of engine-owned tensors with scoped release.
    """

    def __init__(self, device: Optional[torch.device] = None,
                 warning_threshold: int = 100):
        self.device = device or torch.device('cpu')
        self.warning_threshold = warning_threshold
        self.logger = logging.getLogger(__name__)

        self._handles: Dict[str, TensorHandle] = {}
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._scopes: List[List[TensorHandle]] = []

    def register(self, tensor: torch.Tensor, kind: str, scoped: bool = True) -> TensorHandle:
        """
        Take ownership of a tensor.

        With ``scoped`` set and a ``scope()`` open, the handle is released
        when the innermost scope exits. Unscoped handles belong to the caller,
        who must release them; a training run awaiting between epochs keeps
        its scope open, so long-lived owners register with ``scoped=False``.
        """
        with self._lock:
            handle = TensorHandle(f"{kind}-{next(self._ids)}", tensor, kind, self)
            self._handles[handle.resource_id] = handle
            if scoped and self._scopes:
                self._scopes[-1].append(handle)

        return handle

    def release(self, handle: TensorHandle) -> None:
        """Release one caller-owned handle; releasing twice is a no-op."""
        handle.cleanup()

    def release_all(self, kind: Optional[str] = None) -> int:
        """Release every live handle (of one kind, if given)."""
        with self._lock:
            targets = [h for h in self._handles.values() if kind is None or h.kind == kind]

        for handle in targets:
            handle.cleanup()

        self._empty_device_cache()
        return len(targets)

    def _forget(self, handle: TensorHandle) -> None:
        with self._lock:
            self._handles.pop(handle.resource_id, None)

    @contextmanager
    def scope(self, name: str = "operation") -> Iterator['TensorArena']:
        """
        Release every tensor registered while the scope is open.
        """
        with self._lock:
            owned: List[TensorHandle] = []
            self._scopes.append(owned)

        try:
            yield self
        finally:
            with self._lock:
                # Identity match; two empty scopes compare equal
                self._scopes = [s for s in self._scopes if s is not owned]

            for handle in owned:
                handle.cleanup()

            if owned:
                self._empty_device_cache()
                self.logger.debug("tensor_scope.released", extra={
                    'scope': name,
                    'released_count': len(owned)
                })

    def live_count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            if kind is None:
                return len(self._handles)
            return sum(1 for h in self._handles.values() if h.kind == kind)

    def memory_report(self, context: str = "") -> MemoryReport:
        """Summarize live tensors; warns when the count is unusually high."""
        with self._lock:
            handles = list(self._handles.values())

        by_kind = Counter(h.kind for h in handles)

        try:
            rss_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        except psutil.Error:
            rss_mb = None

        cuda_mb = None
        if self.device.type == 'cuda':
            cuda_mb = torch.cuda.memory_allocated(self.device) / (1024 ** 2)

        report = MemoryReport(
            timestamp=datetime.now(),
            live_tensors=len(handles),
            live_bytes=sum(h.nbytes for h in handles),
            by_kind=dict(by_kind),
            process_rss_mb=rss_mb,
            cuda_allocated_mb=cuda_mb
        )

        if report.live_tensors > self.warning_threshold:
            self.logger.warning("tensor_arena.high_tensor_count", extra={
                'context': context,
                'live_tensors': report.live_tensors,
                'threshold': self.warning_threshold
            })
        else:
            self.logger.debug("tensor_arena.memory", extra={
                'context': context,
                'live_tensors': report.live_tensors,
                'live_bytes': report.live_bytes
            })

        return report

    def _empty_device_cache(self) -> None:
        if self.device.type == 'cuda' and torch.cuda.is_available():
            with torch.cuda.device(self.device):
                torch.cuda.empty_cache()


def select_device(enable_gpu: bool = False, gpu_id: int = 0) -> torch.device:
    """
    Pick the compute device for engine tensors.

    Falls back to CPU when GPU use is disabled or the requested CUDA device
    is not present.
    """
    logger = logging.getLogger(__name__)

    if enable_gpu and torch.cuda.is_available() and gpu_id < torch.cuda.device_count():
        device = torch.device(f'cuda:{gpu_id}')
        logger.info("device.selected", extra={'device': str(device)})
        return device

    if enable_gpu:
        logger.warning("device.gpu_unavailable", extra={'gpu_id': gpu_id})

    return torch.device('cpu')


class ResourceReleasedError(RuntimeError):
    """Raised when a released tensor handle is accessed."""
    pass
