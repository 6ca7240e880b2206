"""
JSON key-value persistence with per-key change notification.
"""

from .kv_store import (
    KeyValueStore,
    InMemoryStore,
    JsonFileStore,
    ChangeNotifier,
    NumpyEncoder,
)

__all__ = [
    'KeyValueStore',
    'InMemoryStore',
    'JsonFileStore',
    'ChangeNotifier',
    'NumpyEncoder',
]
