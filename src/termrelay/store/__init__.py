"""Stored connection lookup.

Public API:
    ConnectionStore -- Abstract base class
    InMemoryConnectionStore -- dict-backed store
    YamlConnectionStore -- store loaded from a YAML file
"""

from termrelay.store.base import ConnectionStore, InMemoryConnectionStore
from termrelay.store.yaml_store import StoreLoadError, YamlConnectionStore

__all__ = [
    "ConnectionStore",
    "InMemoryConnectionStore",
    "StoreLoadError",
    "YamlConnectionStore",
]
