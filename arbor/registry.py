"""Handler registration.

A handler (also called a processor) is a named unit of work: a cache-key
template, a processing function and optional fetch overrides. Handlers are
registered once at import time and looked up by the ``processor`` field of
each context.

Example::

    from arbor import handler

    @handler("case-list", template="bugcourt/cases/:page")
    def case_list(document, context):
        for row in document.xpath("//tr[@class='case']"):
            yield {
                "docket": row.get("data-docket"),
                "url": row.xpath("./td/a/@href")[0],
                "processor": "case-detail",
            }

    @handler("case-detail", template="bugcourt/cases/:docket")
    def case_detail(document, context):
        return {"judge": document.findtext(".//span[@class='judge']")}

The processing function receives the parsed document and the current
context and returns only the new fields: a mapping, or an iterable of
mappings. Merging with the parent is the driver's job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from arbor.common.exceptions import (
    HandlerAlreadyRegisteredError,
    HandlerError,
    HandlerNotFoundError,
    HandlerResultError,
    InvalidHttpOptionsError,
)
from arbor.common.template import placeholders, render
from arbor.config import HttpOptions
from arbor.data_types import Context

logger = logging.getLogger(__name__)

ProcessFn = Callable[[Any, Context], Any]


def normalize_result(
    identifier: str, result: Any, url: str | None = None
) -> list[dict[str, Any]]:
    """Turn a processing function's return value into a list of dicts.

    A single mapping becomes a one-element list. Any other iterable is
    consumed and each element must be a mapping. Only the top level is
    normalized: nested values are kept as they are.

    Raises:
        HandlerResultError: For None, strings, bytes, non-iterables, or
            iterables containing something other than mappings.
    """
    if isinstance(result, Mapping):
        return [dict(result)]
    if result is None or isinstance(result, (str, bytes, bytearray)):
        raise HandlerResultError(identifier, result, url)
    if not isinstance(result, Iterable):
        raise HandlerResultError(identifier, result, url)

    children: list[dict[str, Any]] = []
    for item in result:
        if not isinstance(item, Mapping):
            raise HandlerResultError(identifier, item, url)
        children.append(dict(item))
    return children


@dataclass(frozen=True)
class Handler:
    """A registered handler.

    Attributes:
        identifier: Name used in the ``processor`` field of contexts.
        template: Cache-key template rendered against the context.
        process_fn: ``(document, context) -> mapping | iterable[mapping]``.
        http_options: Overrides applied on top of the run's HttpOptions.
        updatable: Whether ``update`` runs bypass the cache for this
            handler.
    """

    identifier: str
    template: str
    process_fn: ProcessFn = field(compare=False)
    http_options: Mapping[str, Any] = field(default_factory=dict)
    updatable: bool = False

    def cache_key(self, context: Mapping[str, Any]) -> str:
        """Render this handler's cache key for ``context``."""
        return render(self.template, context)

    def process(self, document: Any, context: Context) -> list[dict[str, Any]]:
        """Invoke the processing function and normalize its result.

        Raises:
            HandlerError: Wrapping any exception the function raises.
            HandlerResultError: If the result cannot be normalized.
        """
        try:
            # Generators run here, inside the try
            return normalize_result(
                self.identifier,
                self.process_fn(document, context),
                context.url,
            )
        except HandlerError:
            raise
        except Exception as e:
            raise HandlerError(
                self.identifier,
                f"Handler '{self.identifier}' failed: "
                f"{type(e).__name__}: {e}",
                context.url,
                {"error": repr(e)},
            ) from e


class HandlerRegistry:
    """Maps handler identifiers to Handler records.

    Registration is expected at startup. Drivers resolve from
    ``snapshot()``, taken when a run starts, so handlers registered later
    do not affect a run already in progress.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(
        self,
        identifier: str,
        template: str,
        process_fn: ProcessFn,
        http_options: Mapping[str, Any] | None = None,
        updatable: bool = False,
    ) -> Handler:
        """Register a handler.

        Args:
            identifier: Name contexts use in their ``processor`` field.
            template: Cache-key template. Validated eagerly so a malformed
                template fails at import time, not mid-run.
            process_fn: The processing function.
            http_options: Fetch overrides (see HttpOptions).
            updatable: Refresh this handler's entries on ``update`` runs.

        Returns:
            The registered Handler.

        Raises:
            HandlerAlreadyRegisteredError: If the identifier is taken.
            MalformedTemplateError: If the template is malformed.
            InvalidHttpOptionsError: If http_options names an unknown
                option or a value HttpOptions rejects.
        """
        if identifier in self._handlers:
            raise HandlerAlreadyRegisteredError(identifier)
        placeholders(template)
        try:
            HttpOptions().merged(http_options)
        except (ValidationError, TypeError) as e:
            raise InvalidHttpOptionsError(identifier, str(e)) from e

        registered = Handler(
            identifier=identifier,
            template=template,
            process_fn=process_fn,
            http_options=MappingProxyType(dict(http_options or {})),
            updatable=updatable,
        )
        self._handlers[identifier] = registered
        logger.debug(
            f"Registered handler '{identifier}' ({template})",
            extra={"processor": identifier, "template": template},
        )
        return registered

    def handler(
        self,
        identifier: str,
        *,
        template: str,
        http_options: Mapping[str, Any] | None = None,
        updatable: bool = False,
    ) -> Callable[[ProcessFn], ProcessFn]:
        """Decorator form of register(); returns the function unchanged."""

        def decorator(fn: ProcessFn) -> ProcessFn:
            self.register(
                identifier,
                template,
                fn,
                http_options=http_options,
                updatable=updatable,
            )
            return fn

        return decorator

    def resolve(self, identifier: str) -> Handler:
        """Look up a handler.

        Raises:
            HandlerNotFoundError: If nothing is registered under the name.
        """
        try:
            return self._handlers[identifier]
        except KeyError:
            raise HandlerNotFoundError(identifier) from None

    def snapshot(self) -> HandlerRegistry:
        """Return a registry holding a read-only copy of the handlers."""
        frozen = HandlerRegistry()
        frozen._handlers = MappingProxyType(dict(self._handlers))  # type: ignore[assignment]
        return frozen

    def list_handlers(self) -> list[Handler]:
        return sorted(self._handlers.values(), key=lambda h: h.identifier)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


default_registry = HandlerRegistry()


def handler(
    identifier: str,
    *,
    template: str,
    http_options: Mapping[str, Any] | None = None,
    updatable: bool = False,
) -> Callable[[ProcessFn], ProcessFn]:
    """Register a function on ``default_registry``."""
    return default_registry.handler(
        identifier,
        template=template,
        http_options=http_options,
        updatable=updatable,
    )
