# /modelmint/src/modelmint/storage/__init__.py

"""
Durable storage for model bundles.
"""

from .bundle_store import (
    BundleKey,
    BundleStore,
    FilesystemBundleStore,
    RedisBundleStore,
    create_bundle_store
)

__all__ = [
    "BundleKey",
    "BundleStore",
    "FilesystemBundleStore",
    "RedisBundleStore",
    "create_bundle_store"
]
