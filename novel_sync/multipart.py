"""Encode and decode the multipart/related bodies used for drive uploads."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from .const import JSON_MIME_TYPE, MULTIPART_BOUNDARY
from .errors import DecodeError

CRLF = "\r\n"


def content_type_header(boundary: str = MULTIPART_BOUNDARY) -> str:
    return f"multipart/related; boundary={boundary}"


def encode_multipart(
    metadata: Mapping[str, Any],
    content: str,
    *,
    boundary: str = MULTIPART_BOUNDARY,
    content_type: str = JSON_MIME_TYPE,
) -> str:
    """Return a body made of a JSON metadata part followed by a content part."""

    delimiter = f"--{boundary}"
    return (
        f"{delimiter}{CRLF}"
        f"Content-Type: {JSON_MIME_TYPE}{CRLF}{CRLF}"
        f"{json.dumps(dict(metadata), ensure_ascii=False)}{CRLF}"
        f"{delimiter}{CRLF}"
        f"Content-Type: {content_type}{CRLF}{CRLF}"
        f"{content}{CRLF}"
        f"{delimiter}--"
    )


def decode_multipart(body: str | bytes, *, boundary: str = MULTIPART_BOUNDARY) -> tuple[dict[str, Any], str]:
    """Split a body produced by :func:`encode_multipart` into metadata and content."""

    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecodeError(f"multipart body is not UTF-8: {err}") from err
    delimiter = f"--{boundary}"
    text = body.lstrip(CRLF)
    closing = f"{CRLF}{delimiter}--"
    if not text.startswith(delimiter) or not text.rstrip(CRLF).endswith(closing):
        raise DecodeError("multipart body is missing its boundary delimiters")
    inner = text.rstrip(CRLF)[len(delimiter) : -len(closing)]
    parts = inner.split(f"{CRLF}{delimiter}")
    if len(parts) != 2:
        raise DecodeError(f"expected 2 multipart parts, found {len(parts)}")
    meta_part, content_part = (_part_body(part) for part in parts)
    try:
        metadata = json.loads(meta_part)
    except ValueError as err:
        raise DecodeError(f"multipart metadata is not JSON: {err}") from err
    if not isinstance(metadata, dict):
        raise DecodeError("multipart metadata must be a JSON object")
    return metadata, content_part


def _part_body(part: str) -> str:
    part = part.removeprefix(CRLF)
    headers, sep, payload = part.partition(CRLF * 2)
    if not sep or not headers.lower().startswith("content-type:"):
        raise DecodeError("multipart part is missing its Content-Type header")
    return payload


def encode_document(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def decode_document(text: str) -> Any:
    """Parse a downloaded JSON document; raises :class:`DecodeError` when malformed."""

    try:
        return json.loads(text)
    except ValueError as err:
        raise DecodeError(f"remote document is not valid JSON: {err}") from err


__all__ = [
    "content_type_header",
    "decode_document",
    "decode_multipart",
    "encode_document",
    "encode_multipart",
]
