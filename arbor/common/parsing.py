"""Turning fetched pages into documents for handlers.

With ``auto_decode`` on, the Content-Type picks the representation:

- JSON media types (``application/json``, ``*+json``) become Python objects;
- other ``text/*`` types that are not HTML or XML become a str;
- everything else becomes an lxml HTML tree.

With ``auto_decode`` off every page is parsed as HTML.

When ``decode_body_headers`` is on, the charset from the Content-Type
header decides how bytes are decoded. Otherwise lxml sniffs the encoding
from the bytes (BOM, XML declaration, ``<meta charset>``) and text falls
back to UTF-8.
"""

from __future__ import annotations

import json
from email.message import Message
from typing import Any

from lxml import etree
from lxml import html as lxml_html

from arbor.common.exceptions import DocumentParseError
from arbor.config import HttpOptions
from arbor.data_types import RawPage


def content_type_parts(content_type: str) -> tuple[str, str | None]:
    """Split a Content-Type header into (media type, charset)."""
    if not content_type:
        return "", None
    message = Message()
    message["content-type"] = content_type
    charset = message.get_param("charset")
    return (
        message.get_content_type().lower(),
        str(charset) if charset else None,
    )


def _is_json(media_type: str) -> bool:
    return media_type == "application/json" or media_type.endswith("+json")


def _is_plain_text(media_type: str) -> bool:
    return (
        media_type.startswith("text/")
        and media_type != "text/html"
        and media_type != "text/xml"
    )


def parse_html(page: RawPage, charset: str | None = None) -> Any:
    """Parse page bytes into an lxml HTML element.

    Raw bytes are passed to lxml so it can detect the encoding itself unless
    a charset is given.

    Raises:
        DocumentParseError: If the content cannot be parsed.
    """
    try:
        parser = (
            lxml_html.HTMLParser(encoding=charset) if charset else None
        )
        return lxml_html.fromstring(
            page.content, base_url=page.url, parser=parser
        )
    except (
        etree.ParserError,
        etree.XMLSyntaxError,
        LookupError,
        ValueError,
    ) as e:
        raise DocumentParseError(page.url, str(e)) from e


def parse_document(page: RawPage, options: HttpOptions) -> Any:
    """Parse a RawPage according to the HTTP options.

    Args:
        page: The fetched page.
        options: Effective options for the handler that will consume it.

    Returns:
        An lxml element, a str, or a JSON value.

    Raises:
        DocumentParseError: If the page cannot be decoded or parsed.
    """
    media_type, charset = content_type_parts(page.content_type)
    if not options.decode_body_headers:
        charset = None

    if options.auto_decode and (
        _is_json(media_type) or _is_plain_text(media_type)
    ):
        try:
            text = page.content.decode(charset or "utf-8")
        except (LookupError, UnicodeDecodeError) as e:
            raise DocumentParseError(page.url, str(e)) from e
        if _is_plain_text(media_type):
            return text
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise DocumentParseError(page.url, str(e)) from e

    return parse_html(page, charset)
