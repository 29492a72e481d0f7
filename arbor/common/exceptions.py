"""Exception types for traversal errors.

Every error the engine reports per context derives from ScrapeError. None of
them abort a run on their own: the driver hands them to its on_error
callback and abandons only the subtree that failed.
"""

from typing import Any


class ScrapeError(Exception):
    """Base class for errors raised while expanding a context.

    Carries a human-readable message, the URL being processed when one is
    known, and a dict of extra details (template, key, status code, ...)
    that is rendered into the exception text.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the failure.
            url: The URL of the page being processed, if any.
            details: Optional dict of additional details.
        """
        self.message = message
        self.url = url
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.url:
            parts.append(f"URL: {self.url}")

        if self.details:
            parts.append("Details:")
            for key, value in self.details.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)


# =============================================================================
# Templates
# =============================================================================


class TemplateError(ScrapeError):
    """Base class for cache-key template failures."""

    def __init__(
        self,
        message: str,
        template: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.template = template
        super().__init__(
            message, details={"template": template, **(details or {})}
        )


class MissingFieldError(TemplateError):
    """Raised when a template names a field the context does not have.

    Attributes:
        template: The template being rendered.
        field: The placeholder name that could not be resolved.
    """

    def __init__(self, template: str, field: str) -> None:
        self.field = field
        super().__init__(
            f"Template references missing field '{field}'",
            template,
            {"field": field},
        )


class MalformedTemplateError(TemplateError):
    """Raised when a placeholder is not a valid field name.

    Field names are lower-case letters, digits and dashes. Something like
    ``:Name`` or ``:case_id`` is rejected rather than guessed at.
    """

    def __init__(self, template: str, placeholder: str) -> None:
        self.placeholder = placeholder
        super().__init__(
            f"Malformed placeholder '{placeholder}' "
            "(expected lower-case letters, digits or dashes)",
            template,
            {"placeholder": placeholder},
        )


# =============================================================================
# Handlers
# =============================================================================


class HandlerNotFoundError(ScrapeError):
    """Raised when a context names a processor that was never registered."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(
            f"No handler registered as '{identifier}'",
            details={"processor": identifier},
        )


class HandlerAlreadyRegisteredError(ScrapeError):
    """Raised when an identifier is registered twice."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(
            f"A handler is already registered as '{identifier}'",
            details={"processor": identifier},
        )


class InvalidHttpOptionsError(ScrapeError):
    """Raised at registration when a handler's fetch overrides are invalid."""

    def __init__(self, identifier: str, reason: str) -> None:
        self.identifier = identifier
        super().__init__(
            f"Handler '{identifier}' has invalid http_options",
            details={"processor": identifier, "reason": reason},
        )


class HandlerError(ScrapeError):
    """Raised when a processing function fails.

    The original exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        identifier: str,
        message: str,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.identifier = identifier
        super().__init__(
            message, url, {"processor": identifier, **(details or {})}
        )


class HandlerResultError(HandlerError):
    """Raised when a processing function returns something that is not a
    mapping or an iterable of mappings."""

    def __init__(
        self, identifier: str, result: Any, url: str | None = None
    ) -> None:
        self.result = result
        super().__init__(
            identifier,
            f"Handler '{identifier}' returned {type(result).__name__}, "
            "expected a mapping or an iterable of mappings",
            url,
            {"result_type": type(result).__name__},
        )


class DocumentParseError(ScrapeError):
    """Raised when fetched content cannot be parsed into a document."""

    def __init__(self, url: str, reason: str) -> None:
        self.reason = reason
        super().__init__(
            f"Failed to parse document: {reason}", url, {"error": reason}
        )


# =============================================================================
# Transient exceptions
# =============================================================================


class TransientException(ScrapeError):
    """Base class for errors that might resolve on retry.

    The driver decides whether to retry; components never retry internally.
    """


class FetchError(TransientException):
    """Raised when a page cannot be retrieved.

    Attributes:
        status_code: HTTP status code, or None for transport failures.
        reason: Short description of what went wrong.
    """

    def __init__(
        self, url: str, reason: str, status_code: int | None = None
    ) -> None:
        self.reason = reason
        self.status_code = status_code
        details: dict[str, Any] = {"reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(f"Failed to fetch page: {reason}", url, details)

    @property
    def retryable(self) -> bool:
        """Transport failures, 429 and 5xx are worth retrying; other
        4xx responses are not."""
        return (
            self.status_code is None
            or self.status_code == 429
            or self.status_code >= 500
        )


class RequestTimeoutException(FetchError):
    """Raised when a request exceeds the configured socket timeout."""

    def __init__(self, url: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(url, f"timed out after {timeout_seconds}s")


# =============================================================================
# Cache
# =============================================================================


class CacheError(ScrapeError):
    """Base class for cache store failures."""

    def __init__(
        self, message: str, namespace: str, key: str, reason: str = ""
    ) -> None:
        self.namespace = namespace
        self.key = key
        self.reason = reason
        details: dict[str, Any] = {"namespace": namespace, "key": key}
        if reason:
            details["error"] = reason
        super().__init__(message, details=details)


class CacheReadError(CacheError):
    """Raised when an existing cache entry cannot be read or decoded."""

    def __init__(self, namespace: str, key: str, reason: str = "") -> None:
        super().__init__("Failed to read cache entry", namespace, key, reason)


class CacheWriteError(CacheError):
    """Raised when a cache entry cannot be written.

    The key stays uncached, so the next run recomputes it.
    """

    def __init__(self, namespace: str, key: str, reason: str = "") -> None:
        super().__init__("Failed to write cache entry", namespace, key, reason)


class InvalidCacheKeyError(CacheError):
    """Raised when a key cannot be mapped to a storage location."""

    def __init__(self, namespace: str, key: str, reason: str) -> None:
        super().__init__("Invalid cache key", namespace, key, reason)


# =============================================================================
# Run-level
# =============================================================================


class SeedError(ScrapeError):
    """Raised when the seed is not a mapping or an iterable of mappings.

    Unlike the other errors this one aborts the run.
    """
