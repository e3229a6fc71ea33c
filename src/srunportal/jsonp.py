"""JSONP helpers for portal responses.

Every request carries ``callback=<token>`` and the gateway answers with
``<token>(<json>)``. Because the client chose the token it knows exactly how many
bytes to strip from each end, so no JSON-in-text scanning is needed.
"""

import json
import time
from typing import Any

from srunportal.protocol import ParseError

CALLBACK_PREFIX = "jsonp_"


def callback_token(now: float | None = None) -> str:
    """Return a fresh callback name: the fixed prefix plus a millisecond timestamp.

    Examples:
        >>> callback_token(1700000000.123)
        'jsonp_1700000000123'
    """
    if now is None:
        now = time.time()
    return f"{CALLBACK_PREFIX}{int(now * 1000)}"


def wrap(token: str, payload: bytes) -> bytes:
    """Wrap a JSON payload the way the gateway does.

    Examples:
        >>> wrap("cb", b'{"a":1}')
        b'cb({"a":1})'
    """
    return token.encode("ascii") + b"(" + payload + b")"


def unwrap(body: bytes, token: str) -> bytes:
    """Strip ``token(`` and the closing ``)`` from a JSONP body.

    Args:
        body (bytes): Response body.
        token (str): Callback name sent with the request.

    Returns:
        bytes: The raw JSON payload.

    Raises:
        ParseError: If the body is shorter than ``len(token) + 2`` or is not
            wrapped in the expected callback.

    Examples:
        >>> unwrap(b'jsonp_1({"error":"ok"})', "jsonp_1")
        b'{"error":"ok"}'
    """
    prefix = token.encode("ascii") + b"("
    if len(body) < len(prefix) + 1:
        raise ParseError(
            f"JSONP body too short: {len(body)} bytes for callback {token!r}"
        )
    if not body.startswith(prefix) or not body.endswith(b")"):
        raise ParseError(f"Body is not wrapped in callback {token!r}: {body[:60]!r}")
    return body[len(prefix) : -1]


def loads_object(payload: bytes) -> dict[str, Any]:
    """Decode a JSON payload that must be an object.

    Raises:
        ParseError: If the payload is not valid UTF-8 JSON or not an object.
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data
