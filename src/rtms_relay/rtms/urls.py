"""Server URL normalization.

Zoom delivers ``server_urls`` (in the rtms_started webhook and in the
signaling handshake response) in several shapes: a plain string, an
object with an ``all`` field, or a list of candidates.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def resolve_ws_url(server_urls: Any) -> str | None:
    """Pick a single WebSocket URL from a candidate value.

    Accepted shapes, in order of precedence:
    - a non-empty string, returned as is
    - a mapping with a non-empty ``"all"`` entry, or an object with an
      ``all`` attribute
    - a non-empty list or tuple, whose first element wins

    Anything else (None, empty values, unknown types) yields None. Never
    raises.
    """
    if not server_urls:
        return None
    if isinstance(server_urls, str):
        return server_urls
    if isinstance(server_urls, Mapping):
        candidate = server_urls.get("all")
    elif isinstance(server_urls, (list, tuple)):
        candidate = server_urls[0]
    else:
        candidate = getattr(server_urls, "all", None)

    if isinstance(candidate, str) and candidate:
        return candidate
    return None
