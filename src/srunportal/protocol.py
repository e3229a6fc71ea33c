"""Shared protocol constants and the error hierarchy for the SRUN portal client.

Every portal endpoint answers a plain ``GET`` with a JSONP body of the form
``<callback>(<json>)``; the callback name is chosen by the client and echoed back.

This module raises nothing itself; it defines the errors raised elsewhere:

- ``TransportError`` for network/TLS failures (resolution, connect, timeouts,
  disconnects, OS errors). ``HttpConnectionError`` and ``TlsError`` narrow it.
- ``ProtocolError`` when the gateway violates HTTP framing.
- ``ParseError`` when a body is not a valid JSONP wrapper or JSON object.
- ``SrunError`` subclasses for failures of a protocol phase (challenge, login,
  logout, network).
- ``ConfigError`` for invalid or incomplete configuration.
"""

import argparse

PATH_GET_CHALLENGE = "/cgi-bin/get_challenge"
PATH_PORTAL = "/cgi-bin/srun_portal"
PATH_INFO = "/cgi-bin/rad_user_info"

SUCCESS_MARKER = "ok"
PASSWORD_TAG = "{MD5}"
INFO_TAG = "{SRBX1}"

DEFAULT_SERVER = "http://10.0.0.1"
DEFAULT_TIMEOUT = 10
DEFAULT_ENC = "srun_bx1"
DEFAULT_N = 200
DEFAULT_TYPE = 1
DEFAULT_ACID = 1
DEFAULT_OS = "Linux"
DEFAULT_OS_NAME = "Linux"
DEFAULT_RETRY_COUNT = 10
DEFAULT_RETRY_DELAY = 500  # milliseconds


class SrunPortalError(Exception):
    """Base class for every error raised by this package."""


class TransportError(SrunPortalError, RuntimeError):
    """Network/TLS error while connecting, sending or receiving."""


class HttpConnectionError(TransportError):
    """The gateway could not be resolved, bound to or connected to."""


class TlsError(TransportError):
    """TLS handshake failed or TLS support is unavailable."""


class ProtocolError(SrunPortalError, ValueError):
    """Gateway violated HTTP/1.1 response framing."""


class ParseError(SrunPortalError, ValueError):
    """Response body is not a valid JSONP wrapper or JSON document."""


class SrunError(SrunPortalError):
    """A portal protocol phase failed.

    The message is prefixed with the phase name so a caller printing the error
    can tell which step of the flow failed.
    """

    phase = "Srun"

    def __init__(self, message: str) -> None:
        super().__init__(f"{self.phase} error: {message}")
        self.reason = message


class ChallengeError(SrunError):
    phase = "Challenge"


class LoginError(SrunError):
    phase = "Login"


class LogoutError(SrunError):
    phase = "Logout"


class NetworkError(SrunError):
    phase = "Network"


class ConfigError(SrunError, ValueError):
    """Configuration is invalid or lacks a value an operation requires."""

    phase = "Config"


def _parse_positive_int(s: str) -> int:
    """Parse a CLI argument as a positive integer (> 0).

    Intended for use as an ``argparse`` ``type=...`` function.

    Args:
        s (str): Flag from the command line.

    Returns:
        (int): Parsed positive integer.

    Raises:
        argparse.ArgumentTypeError: If ``s`` is not an integer or is <= 0.

    Examples:
        >>> _parse_positive_int("6")
        6
    """
    try:
        n = int(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError("must be an integer") from e
    if n <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return n


def _parse_non_negative_int(s: str) -> int:
    """Parse a CLI argument as an integer >= 0.

    Examples:
        >>> _parse_non_negative_int("0")
        0
    """
    try:
        n = int(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError("must be an integer") from e
    if n < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return n


def _parse_bool(s: str) -> bool:
    """Parse a CLI boolean such as ``true``/``false``/``1``/``0``.

    Examples:
        >>> _parse_bool("True")
        True
        >>> _parse_bool("0")
        False
    """
    lowered = s.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError("must be true or false")
