"""Data types shared by the cache, the fetcher and the drivers.

Context is the unit of work and the unit of output: an immutable mapping of
field names to values with two reserved navigation fields, ``url`` and
``processor``. A context that still has both is expanded by the driver; one
that lacks them is a leaf and is emitted.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

URL = "url"
PROCESSOR = "processor"
RESERVED_FIELDS = frozenset({URL, PROCESSOR})


class Context(Mapping[str, Any]):
    """Immutable field mapping carried down a traversal path.

    Compares equal to any mapping with the same items, so tests and callers
    can use plain dicts::

        >>> Context(a=1).merge({"a": 2, "b": 3}) == {"a": 2, "b": 3}
        True
    """

    __slots__ = ("_fields",)

    def __init__(
        self, fields: Mapping[str, Any] | None = None, /, **kwargs: Any
    ) -> None:
        self._fields: dict[str, Any] = {**(fields or {}), **kwargs}

    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"Context({self._fields!r})"

    @property
    def url(self) -> str | None:
        return self._fields.get(URL)

    @property
    def processor(self) -> str | None:
        return self._fields.get(PROCESSOR)

    def is_terminal(self, require_url: bool = True) -> bool:
        """Whether this context is a leaf.

        A context without a processor is always a leaf. With require_url,
        a context without a url is one too.
        """
        if not self._fields.get(PROCESSOR):
            return True
        return require_url and not self._fields.get(URL)

    def merge(self, child: Mapping[str, Any]) -> Context:
        """Return the union of this context and ``child``, child winning.

        The navigation fields are not inherited: the result points at a
        page only if ``child`` does, so a child without them is a leaf.
        """
        inherited = {
            k: v for k, v in self._fields.items() if k not in RESERVED_FIELDS
        }
        return Context({**inherited, **deepcopy(dict(child))})

    def to_dict(self) -> dict[str, Any]:
        return deepcopy(self._fields)


def merge_context(parent: Context, child: Mapping[str, Any]) -> Context:
    """Merge a handler-produced child into its parent.

    A relative child ``url`` is resolved against the parent's URL before
    the merge; absolute URLs pass through unchanged.
    """
    child_url = child.get(URL)
    if isinstance(child_url, str) and parent.url:
        resolved = urljoin(parent.url, child_url)
        if resolved != child_url:
            child = {**child, URL: resolved}
    return parent.merge(child)


def matches_only(context: Mapping[str, Any], only: Mapping[str, Any]) -> bool:
    """Check a context against an ``only`` filter.

    Every filtered field the context has must equal the allowed value, or be
    one of the allowed values when a list, tuple or set is given.
    """
    for name, allowed in only.items():
        if name not in context:
            continue
        value = context[name]
        if isinstance(allowed, (list, tuple, set, frozenset)):
            if value not in allowed:
                return False
        elif value != allowed:
            return False
    return True


@dataclass(frozen=True)
class RawPage:
    """A fetched, unparsed page.

    Attributes:
        url: The URL that was requested.
        content: Response body.
        status_code: HTTP status code.
        headers: Response headers, lower-cased names.
    """

    url: str
    content: bytes
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def metadata(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status_code": self.status_code,
            "headers": self.headers,
        }


@dataclass
class RunStats:
    """Counters collected during one run."""

    network_fetches: int = 0
    raw_cache_hits: int = 0
    processed_cache_hits: int = 0
    handler_calls: int = 0
    emitted: int = 0
    errors: int = 0
    cycles_skipped: int = 0
    filtered: int = 0
