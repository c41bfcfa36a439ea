"""Hide secrets before data leaves the process in diagnostics."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "**REDACTED**"


def redact(data: Mapping[str, Any], keys: Iterable[str]) -> dict[str, Any]:
    """Return a copy of ``data`` with non-empty values under ``keys`` replaced.

    Nested mappings and lists of mappings are walked as well. Empty values are
    left visible so a report still shows that a secret was never configured.
    """
    hidden = frozenset(keys)
    return {key: _redact_value(key, value, hidden) for key, value in data.items()}


def _redact_value(key: str, value: Any, hidden: frozenset[str]) -> Any:
    if key in hidden and value:
        return REDACTED
    if isinstance(value, Mapping):
        return redact(value, hidden)
    if isinstance(value, list):
        return [redact(item, hidden) if isinstance(item, Mapping) else item for item in value]
    return value
