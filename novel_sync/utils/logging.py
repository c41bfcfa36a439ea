from __future__ import annotations

import logging
import time
from collections import OrderedDict

_SEEN: OrderedDict[str, float] = OrderedDict()
_MAX_CODES = 512


def warn_once(logger: logging.Logger, code: str, message: str, window: float = 60) -> bool:
    """Log ``message`` at most once per ``window`` seconds for ``code``.

    Returns ``True`` when the warning was emitted. Codes are kept in
    least-recently-warned order and the oldest are dropped past ``_MAX_CODES``,
    so per-file codes (one per duplicate name) stay bounded.
    """
    now = time.monotonic()
    last = _SEEN.get(code)
    if last is not None and now - last <= window:
        return False
    _SEEN[code] = now
    _SEEN.move_to_end(code)
    while len(_SEEN) > _MAX_CODES:
        _SEEN.popitem(last=False)
    logger.warning("%s: %s", code, message)
    return True


def reset_warnings() -> None:
    """Forget every throttled code."""
    _SEEN.clear()
