"""Zstd compression for raw-page cache entries.

A raw entry is an envelope: one line of JSON metadata (url, status code,
headers), a newline, then the page bytes, all zstd-compressed. Keeping both
in a single file means one atomic write per key.
"""

from __future__ import annotations

import json

import zstandard as zstd

from arbor.data_types import RawPage

# Default compression level (3 is a good balance of speed/ratio)
DEFAULT_COMPRESSION_LEVEL = 3


def compress(data: bytes, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    """Compress data using zstd.

    Args:
        data: The data to compress.
        level: Compression level (1-22, default 3).

    Returns:
        Compressed data bytes.
    """
    return zstd.ZstdCompressor(level=level).compress(data)


def decompress(data: bytes) -> bytes:
    """Decompress zstd-compressed data."""
    return zstd.ZstdDecompressor().decompress(data)


def pack_page(page: RawPage, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    """Serialize and compress a RawPage."""
    header = json.dumps(page.metadata(), sort_keys=True).encode("utf-8")
    return compress(header + b"\n" + page.content, level)


def unpack_page(data: bytes) -> RawPage:
    """Decompress and deserialize a RawPage written by pack_page().

    Raises:
        ValueError: If the envelope is truncated or its header is not JSON.
        zstd.ZstdError: If the data is not valid zstd.
    """
    raw = decompress(data)
    header, sep, content = raw.partition(b"\n")
    if not sep:
        raise ValueError("Missing raw page header")
    meta = json.loads(header)
    return RawPage(
        url=meta["url"],
        content=content,
        status_code=meta.get("status_code", 200),
        headers=meta.get("headers") or {},
    )
