# /modelmint/src/modelmint/storage/bundle_store.py

"""
Durable Bundle Stores

Persists ModelBundles keyed by an opaque (owner, project) pair.

- FilesystemBundleStore: one directory per key with model.json,
  metadata.json and an optional embeddings.json; every file is written to a
  temporary file first and moved into place atomically.
- RedisBundleStore: one Redis hash per key with ``model``, ``metadata`` and
  ``embeddings`` fields.

A bundle stored without embeddings reads back as a legacy bundle.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import redis

from ..config.engine_config import StorageConfig
from ..engine.codec import ModelBundle
from ..engine.errors import CorruptBundle, NotFound


MODEL_FILE = "model.json"
METADATA_FILE = "metadata.json"
EMBEDDINGS_FILE = "embeddings.json"

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class BundleKey:
    """Opaque storage key; the engine never interprets either part."""
    owner: str
    project: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.project}"


class BundleStore(ABC):
    """
    Durable Store boundary.
    """

    @abstractmethod
    def put(self, key: BundleKey, bundle: ModelBundle) -> None:
        pass

    @abstractmethod
    def get(self, key: BundleKey) -> ModelBundle:
        """
        Raises:
            NotFound: nothing stored under ``key``
            CorruptBundle: stored documents cannot be decoded
        """
        pass

    @abstractmethod
    def exists(self, key: BundleKey) -> bool:
        pass

    @abstractmethod
    def delete(self, key: BundleKey) -> bool:
        pass


def _decode_document(text: Any, document: str, key: BundleKey) -> Any:
    if isinstance(text, bytes):
        text = text.decode('utf-8')
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise CorruptBundle(
            f"Stored {document} for {key} is not valid JSON: {e}",
            {'key': str(key), 'document': document}
        ) from e


def _path_component(value: str) -> str:
    component = _UNSAFE_PATH_CHARS.sub("_", value)
    if component.strip(".") == "":
        component = component.replace(".", "_") or "_"
    return component


class FilesystemBundleStore(BundleStore):
    """
    Directory-per-key bundle store with atomic file replacement.
    """

    def __init__(self, base_dir: str = "data/bundles"):
        self.base_path = Path(base_dir)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def _key_dir(self, key: BundleKey) -> Path:
        return self.base_path / _path_component(key.owner) / _path_component(key.project)

    def put(self, key: BundleKey, bundle: ModelBundle) -> None:
        model, metadata, embeddings = bundle.to_parts()
        key_dir = self._key_dir(key)

        with self._lock:
            key_dir.mkdir(parents=True, exist_ok=True)

            self._write_atomic(key_dir / MODEL_FILE, model)
            self._write_atomic(key_dir / METADATA_FILE, metadata)

            embeddings_path = key_dir / EMBEDDINGS_FILE
            if embeddings is not None:
                self._write_atomic(embeddings_path, embeddings)
            elif embeddings_path.exists():
                embeddings_path.unlink()

        self.logger.info("bundle_store.put", extra={
            'key': str(key),
            'backend': 'filesystem',
            'with_embeddings': embeddings is not None
        })

    def get(self, key: BundleKey) -> ModelBundle:
        key_dir = self._key_dir(key)

        with self._lock:
            model_path = key_dir / MODEL_FILE
            metadata_path = key_dir / METADATA_FILE

            if not model_path.exists():
                raise NotFound(f"No bundle stored for {key}", {'key': str(key)})

            if not metadata_path.exists():
                raise CorruptBundle(
                    f"Bundle for {key} is missing {METADATA_FILE}",
                    {'key': str(key), 'missing': METADATA_FILE}
                )

            model = _decode_document(model_path.read_text(encoding='utf-8'), MODEL_FILE, key)
            metadata = _decode_document(metadata_path.read_text(encoding='utf-8'), METADATA_FILE, key)

            embeddings = None
            embeddings_path = key_dir / EMBEDDINGS_FILE
            if embeddings_path.exists():
                embeddings = _decode_document(
                    embeddings_path.read_text(encoding='utf-8'), EMBEDDINGS_FILE, key
                )

        self.logger.debug("bundle_store.get", extra={'key': str(key), 'backend': 'filesystem'})
        return ModelBundle.from_parts(model, metadata, embeddings)

    def exists(self, key: BundleKey) -> bool:
        return (self._key_dir(key) / MODEL_FILE).exists()

    def delete(self, key: BundleKey) -> bool:
        key_dir = self._key_dir(key)
        with self._lock:
            if not key_dir.exists():
                return False
            shutil.rmtree(key_dir)

        self.logger.info("bundle_store.deleted", extra={'key': str(key), 'backend': 'filesystem'})
        return True

    def _write_atomic(self, path: Path, document: Any) -> None:
        fd, temp_name = tempfile.mkstemp(suffix=".tmp", dir=path.parent)
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f)
            os.replace(temp_path, path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise


class RedisBundleStore(BundleStore):
    """
    One Redis hash per bundle key.
    """

    def __init__(self, client: Optional[redis.Redis] = None,
                 config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig(backend="redis")
        self.logger = logging.getLogger(__name__)

        if client is None:
            client = redis.Redis(
                host=self.config.redis_host,
                port=self.config.redis_port,
                password=self.config.redis_password,
                db=self.config.redis_db,
                decode_responses=True
            )
        self.client = client

    def _redis_key(self, key: BundleKey) -> str:
        return f"{self.config.key_prefix}:{key.owner}:{key.project}"

    def put(self, key: BundleKey, bundle: ModelBundle) -> None:
        model, metadata, embeddings = bundle.to_parts()
        redis_key = self._redis_key(key)

        fields: Dict[str, str] = {
            'model': json.dumps(model),
            'metadata': json.dumps(metadata)
        }
        if embeddings is not None:
            fields['embeddings'] = json.dumps(embeddings)

        try:
            pipe = self.client.pipeline()
            pipe.delete(redis_key)
            pipe.hset(redis_key, mapping=fields)
            pipe.execute()
        except redis.RedisError as e:
            self.logger.error("bundle_store.put_failed", extra={'key': str(key), 'error': str(e)})
            raise

        self.logger.info("bundle_store.put", extra={
            'key': str(key),
            'backend': 'redis',
            'with_embeddings': embeddings is not None
        })

    def get(self, key: BundleKey) -> ModelBundle:
        stored = self.client.hgetall(self._redis_key(key))
        if not stored:
            raise NotFound(f"No bundle stored for {key}", {'key': str(key)})

        stored = {
            (k.decode('utf-8') if isinstance(k, bytes) else k): v
            for k, v in stored.items()
        }

        if 'model' not in stored or 'metadata' not in stored:
            raise CorruptBundle(
                f"Bundle hash for {key} is incomplete",
                {'key': str(key), 'fields': sorted(stored)}
            )

        model = _decode_document(stored['model'], 'model', key)
        metadata = _decode_document(stored['metadata'], 'metadata', key)
        embeddings = None
        if 'embeddings' in stored:
            embeddings = _decode_document(stored['embeddings'], 'embeddings', key)

        self.logger.debug("bundle_store.get", extra={'key': str(key), 'backend': 'redis'})
        return ModelBundle.from_parts(model, metadata, embeddings)

    def exists(self, key: BundleKey) -> bool:
        return bool(self.client.exists(self._redis_key(key)))

    def delete(self, key: BundleKey) -> bool:
        removed = bool(self.client.delete(self._redis_key(key)))
        if removed:
            self.logger.info("bundle_store.deleted", extra={'key': str(key), 'backend': 'redis'})
        return removed


def create_bundle_store(config: Optional[StorageConfig] = None) -> BundleStore:
    """Build the store selected by ``config.backend``."""
    config = config or StorageConfig()
    if config.backend.lower() == "redis":
        return RedisBundleStore(config=config)
    return FilesystemBundleStore(config.base_dir)
