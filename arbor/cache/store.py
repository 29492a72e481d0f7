"""Two-namespace result cache.

The store keeps two independent key spaces:

- ``Namespace.RAW``: fetched pages (RawPage), keyed by the rendered cache
  key of the context that fetched them.
- ``Namespace.PROCESSED``: the ordered list of child contexts a handler
  returned for that key.

Each namespace is backed by a CacheBackend. The reference backend is the
filesystem, where a key containing ``/`` maps to nested directories::

    <root>/raw/<key>.page.zst
    <root>/processed/<key>.json

Writes are atomic per key: data goes to a temporary file next to the
target and is moved into place with os.replace(), so an interrupted run
never leaves a half-written entry that reads as complete.

Disabling a namespace swaps its backend for NullBackend. The other
namespace is unaffected.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Protocol, TypeVar

import zstandard as zstd

from arbor.cache.compression import pack_page, unpack_page
from arbor.cache.coordination import SingleFlight
from arbor.common.exceptions import (
    CacheError,
    CacheReadError,
    CacheWriteError,
    InvalidCacheKeyError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Namespace(str, Enum):
    """Cache key spaces."""

    RAW = "raw"
    PROCESSED = "processed"


class CacheBackend(Protocol):
    """Key-value contract every backend implements."""

    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> bool: ...


class NullBackend:
    """Backend for a disabled namespace: nothing is stored or found."""

    def get(self, key: str) -> Any | None:
        return None

    def put(self, key: str, value: Any) -> None:
        pass

    def delete(self, key: str) -> bool:
        return False


class MemoryBackend:
    """In-process backend. Not durable; useful for tests and embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _encode_processed(value: list[dict[str, Any]]) -> bytes:
    return json.dumps(value, ensure_ascii=False, indent=1).encode("utf-8")


def _decode_processed(data: bytes) -> list[dict[str, Any]]:
    value = json.loads(data)
    if not isinstance(value, list) or not all(
        isinstance(item, dict) for item in value
    ):
        raise ValueError("Processed entry is not a list of objects")
    return value


class FileSystemBackend:
    """Durable backend storing one file per key under a root directory.

    Args:
        root: Directory holding this namespace's entries. Created if
            missing.
        namespace: Namespace this backend serves (used in errors and to
            choose the serialization).
    """

    _SUFFIXES = {
        Namespace.RAW: ".page.zst",
        Namespace.PROCESSED: ".json",
    }

    def __init__(self, root: Path, namespace: Namespace) -> None:
        self.root = Path(root)
        self.namespace = namespace
        self.suffix = self._SUFFIXES[namespace]
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        """Map a key to its file, one directory level per ``/`` segment.

        Empty segments, as rendered from an empty field, are collapsed.

        Raises:
            InvalidCacheKeyError: For empty, absolute or traversing keys.
        """
        if PurePosixPath(key).is_absolute():
            raise InvalidCacheKeyError(
                self.namespace.value, key, "absolute key"
            )
        segments = [segment for segment in key.split("/") if segment]
        if not segments:
            raise InvalidCacheKeyError(self.namespace.value, key, "empty key")
        if any(segment in (".", "..") for segment in segments):
            raise InvalidCacheKeyError(
                self.namespace.value, key, "'.' or '..' segment"
            )
        *dirs, name = segments
        return self.root.joinpath(*dirs, name + self.suffix)

    def _serialize(self, value: Any) -> bytes:
        if self.namespace is Namespace.RAW:
            return pack_page(value)
        return _encode_processed(value)

    def _deserialize(self, data: bytes) -> Any:
        if self.namespace is Namespace.RAW:
            return unpack_page(data)
        return _decode_processed(data)

    def get(self, key: str) -> Any | None:
        path = self.path_for(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheReadError(self.namespace.value, key, str(e)) from e

        try:
            return self._deserialize(data)
        except (ValueError, KeyError, zstd.ZstdError) as e:
            raise CacheReadError(self.namespace.value, key, str(e)) from e

    def put(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        try:
            data = self._serialize(value)
        except (TypeError, ValueError) as e:
            raise CacheWriteError(self.namespace.value, key, str(e)) from e

        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=".tmp-", suffix=self.suffix
            )
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise CacheWriteError(self.namespace.value, key, str(e)) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning(f"Could not remove temp file {tmp_name}")

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CacheWriteError(self.namespace.value, key, str(e)) from e
        return True


class CacheStore:
    """Get/put access to both namespaces plus per-key coordination.

    Example::

        store = CacheStore.on_disk("cache", raw_enabled=False)
        store.put(Namespace.PROCESSED, "site/index", [{"a": 1}])
        store.get(Namespace.PROCESSED, "site/index")  # [{"a": 1}]
        store.get(Namespace.RAW, "site/index")        # None, disabled

    Args:
        raw: Backend for the raw-page namespace.
        processed: Backend for the processed-result namespace.
    """

    def __init__(
        self,
        raw: CacheBackend | None = None,
        processed: CacheBackend | None = None,
    ) -> None:
        self._backends: dict[Namespace, CacheBackend] = {
            Namespace.RAW: raw if raw is not None else NullBackend(),
            Namespace.PROCESSED: processed
            if processed is not None
            else NullBackend(),
        }
        self._flights = SingleFlight()

    @classmethod
    def on_disk(
        cls,
        root: Path | str,
        raw_enabled: bool = True,
        processed_enabled: bool = True,
    ) -> CacheStore:
        """Build a store backed by the filesystem under ``root``."""
        root = Path(root)
        return cls(
            raw=FileSystemBackend(root / Namespace.RAW.value, Namespace.RAW)
            if raw_enabled
            else NullBackend(),
            processed=FileSystemBackend(
                root / Namespace.PROCESSED.value, Namespace.PROCESSED
            )
            if processed_enabled
            else NullBackend(),
        )

    @classmethod
    def in_memory(
        cls, raw_enabled: bool = True, processed_enabled: bool = True
    ) -> CacheStore:
        return cls(
            raw=MemoryBackend() if raw_enabled else NullBackend(),
            processed=MemoryBackend() if processed_enabled else NullBackend(),
        )

    def backend(self, namespace: Namespace) -> CacheBackend:
        return self._backends[namespace]

    def enabled(self, namespace: Namespace) -> bool:
        return not isinstance(self._backends[namespace], NullBackend)

    def get(self, namespace: Namespace, key: str) -> Any | None:
        """Return the entry for ``key``, or None when absent.

        Raises:
            CacheReadError: If the entry exists but cannot be read.
        """
        value = self._backends[namespace].get(key)
        logger.debug(
            f"Cache {'hit' if value is not None else 'miss'}: "
            f"{namespace.value}/{key}",
            extra={"namespace": namespace.value, "key": key},
        )
        return value

    def put(self, namespace: Namespace, key: str, value: Any) -> None:
        """Insert or overwrite the entry for ``key``.

        Raises:
            CacheWriteError: If the entry cannot be written.
        """
        self._backends[namespace].put(key, value)

    def delete(self, namespace: Namespace, key: str) -> bool:
        """Remove an entry. Used for manual invalidation only."""
        return self._backends[namespace].delete(key)

    def get_or_compute(
        self,
        namespace: Namespace,
        key: str,
        compute: Callable[[], T],
        on_error: Callable[[CacheError], None] | None = None,
    ) -> T:
        """Return the cached value, computing and storing it on a miss.

        Concurrent callers for the same (namespace, key) share a single
        computation. Read failures are treated as misses and write failures
        leave the key uncached; both are passed to ``on_error`` when given,
        otherwise raised.
        """

        def load() -> T:
            try:
                cached = self.get(namespace, key)
            except CacheReadError as e:
                if on_error is None:
                    raise
                on_error(e)
                cached = None
            if cached is not None:
                return cached

            value = compute()
            try:
                self.put(namespace, key, value)
            except CacheWriteError as e:
                if on_error is None:
                    raise
                on_error(e)
            return value

        return self.single_flight(namespace, key, load)

    def single_flight(
        self, namespace: Namespace, key: str, fn: Callable[[], T]
    ) -> T:
        """Run ``fn`` with at most one concurrent call per (namespace, key).

        Threads racing on the same key wait for the first caller and share
        its result.
        """
        return self._flights.do((namespace, key), fn)
