"""Run configuration.

Options are Pydantic models so that values coming from the CLI, from
handler declarations or from Python callers are validated the same way.

Example::

    from arbor.config import HttpOptions, ScrapeOptions

    options = ScrapeOptions(
        cache_dir="cache",
        raw_cache_enabled=False,
        http_options=HttpOptions(socket_timeout=10_000),
    )
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HttpOptions(BaseModel):
    """Options passed to the HTTP transport and the document parser.

    Attributes:
        auto_decode: Decode the body according to its media type (JSON to
            Python objects, plain text to str, HTML to an lxml tree). When
            off, every page is parsed as HTML.
        socket_timeout: Network timeout in milliseconds.
        decode_body_headers: Use the charset from the Content-Type header
            to decode the body. When off, the parser sniffs the bytes.
        follow_redirects: Follow HTTP redirects.
        headers: Extra request headers.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    auto_decode: bool = True
    socket_timeout: int = Field(default=5000, gt=0)
    decode_body_headers: bool = True
    follow_redirects: bool = True
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float:
        return self.socket_timeout / 1000

    def merged(self, overrides: Mapping[str, Any] | None) -> HttpOptions:
        """Return a copy with per-handler overrides applied and validated.

        Headers are merged rather than replaced.
        """
        if not overrides:
            return self
        data = self.model_dump()
        for name, value in overrides.items():
            if name == "headers":
                data["headers"] = {**data["headers"], **value}
            else:
                data[name] = value
        return HttpOptions.model_validate(data)


class ScrapeOptions(BaseModel):
    """Options for one scrape run.

    Attributes:
        processed_cache_enabled: Read and write handler results.
        raw_cache_enabled: Read and write fetched pages.
        cache_dir: Root directory of the filesystem cache.
        http_options: Defaults for every fetch. Handlers may override.
        require_url: Treat contexts without ``url`` as terminal, in
            addition to contexts without ``processor``.
        only: Restrict navigation to contexts whose fields match. Values
            are either a single allowed value or a list of them. Fields a
            context does not have are not checked.
        update: Bypass cache reads for handlers declared ``updatable``.
            Results are still written, refreshing the entries.
        retries: Extra attempts after a failed fetch.
        retry_base_delay: Base delay in seconds for exponential backoff.
        max_retry_delay: Cap on a single backoff delay, in seconds.
        num_workers: Concurrent workers for the async driver.
        output_buffer: Leaf contexts the async driver buffers before
            workers wait for the consumer.
    """

    model_config = ConfigDict(extra="forbid")

    processed_cache_enabled: bool = True
    raw_cache_enabled: bool = True
    cache_dir: Path = Path("arbor-cache")
    http_options: HttpOptions = Field(default_factory=HttpOptions)
    require_url: bool = True
    only: dict[str, Any] | None = None
    update: bool = False
    retries: int = Field(default=0, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    max_retry_delay: float = Field(default=60.0, ge=0)
    num_workers: int = Field(default=4, ge=1)
    output_buffer: int = Field(default=64, ge=1)
