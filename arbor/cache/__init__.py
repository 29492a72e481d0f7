"""Result cache: two namespaces over a key-value backend.

This package provides:
- CacheStore with raw-page and processed-result namespaces
- Filesystem, in-memory and null backends
- Zstd-compressed raw page envelopes
- Per-key single-flight coordination for threads and coroutines
"""

from arbor.cache.coordination import AsyncSingleFlight, SingleFlight
from arbor.cache.store import (
    CacheBackend,
    CacheStore,
    FileSystemBackend,
    MemoryBackend,
    Namespace,
    NullBackend,
)

__all__ = [
    "AsyncSingleFlight",
    "CacheBackend",
    "CacheStore",
    "FileSystemBackend",
    "MemoryBackend",
    "Namespace",
    "NullBackend",
    "SingleFlight",
]
