"""Minimal HTTP/1.1 client written directly over sockets.

The portal only ever needs ``GET`` requests without a body, so this module does
not depend on an HTTP library: it opens one TCP connection (optionally wrapped
in TLS) per :class:`HttpClient` and sends requests over it one at a time.

Main pieces:
    CertVerification:
        Trust policy for HTTPS gateways (skip / system store / custom CA file).

    HttpClient:
        Resolve, bind, connect and optionally TLS-wrap one socket; issue requests.

    build_request:
        Render a minimal ``GET`` request with a URL-encoded query string.

    read_response:
        Incrementally frame one HTTP/1.1 response honoring ``Content-Length``.
"""

import enum
import errno
import logging
import re
import socket
from dataclasses import dataclass, field
from urllib.parse import urlencode

try:
    import ssl
except ImportError:  # interpreter built without OpenSSL
    ssl = None  # type: ignore[assignment]

from srunportal.protocol import (
    DEFAULT_TIMEOUT,
    HttpConnectionError,
    ProtocolError,
    TlsError,
    TransportError,
)

HAS_TLS = ssl is not None
CHUNK_SIZE = 8192
MAX_HEAD_SIZE = 64 * 1024
MAX_HEADERS = 64
_STATUS_LINE_RE = re.compile(rb"HTTP/1\.(\d) (\d{3})(?: (.*))?")

logger = logging.getLogger(__name__)


class CertMode(enum.Enum):
    SKIP = "skip"
    SYSTEM = "system"
    CUSTOM = "custom"


@dataclass(frozen=True)
class CertVerification:
    """Certificate trust policy used for HTTPS gateways.

    ``SKIP`` accepts any certificate (captive portals often serve self-signed or
    mismatched certificates), ``SYSTEM`` validates against the platform trust
    store and ``CUSTOM`` validates against the single CA file at ``ca_file``.
    """

    mode: CertMode = CertMode.SYSTEM
    ca_file: str | None = None

    @classmethod
    def from_setting(cls, value: str) -> "CertVerification":
        """Build a policy from a configuration string.

        Examples:
            >>> CertVerification.from_setting("skip").mode
            <CertMode.SKIP: 'skip'>
            >>> CertVerification.from_setting("/etc/ca.pem").ca_file
            '/etc/ca.pem'
        """
        if value == CertMode.SKIP.value:
            return cls(CertMode.SKIP)
        if value == CertMode.SYSTEM.value:
            return cls(CertMode.SYSTEM)
        return cls(CertMode.CUSTOM, value)

    def __str__(self) -> str:
        return self.ca_file if self.mode is CertMode.CUSTOM else self.mode.value


@dataclass
class HttpResponse:
    version: int
    status_code: int
    reason: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Return the first header called ``name`` (case-insensitive), if any."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def content_length(self) -> int:
        """Declared body length; a missing or unparseable value counts as 0."""
        value = self.header("Content-Length")
        if value is None:
            return 0
        try:
            length = int(value.strip())
        except ValueError:
            return 0
        return max(length, 0)


def build_request(
    method: str,
    path: str,
    host: str,
    query: list[tuple[str, str]] | None = None,
) -> bytes:
    """Render a minimal HTTP/1.1 request with no body.

    Args:
        method (str): HTTP method, e.g. ``"GET"``.
        path (str): Absolute path on the server.
        host (str): Value of the ``Host`` header.
        query (list[tuple[str, str]] | None): Ordered query parameters.

    Returns:
        bytes: The encoded request.

    Examples:
        >>> build_request("GET", "/a", "10.0.0.1", [("x", "1 2")])
        b'GET /a?x=1+2 HTTP/1.1\\r\\nHost: 10.0.0.1\\r\\nConnection: keep-alive\\r\\n\\r\\n'
    """
    target = f"{path}?{urlencode(query)}" if query else path
    request = (
        f"{method} {target} HTTP/1.1\r\n"
        f"Host: {host}\r\n"
        "Connection: keep-alive\r\n"
        "\r\n"
    )
    return request.encode("ascii")


def parse_head(buffer: bytes | bytearray) -> tuple[HttpResponse, int] | None:
    """Try to parse a complete status line and header block from ``buffer``.

    Returns:
        tuple[HttpResponse, int] | None: The response (with an empty body) and the
        length of the head including the blank line, or ``None`` while the head is
        still incomplete.

    Raises:
        ProtocolError: If the status line or a header line is malformed.
    """
    end = buffer.find(b"\r\n\r\n")
    if end < 0:
        return None

    lines = bytes(buffer[:end]).split(b"\r\n")
    match = _STATUS_LINE_RE.fullmatch(lines[0])
    if match is None:
        raise ProtocolError(f"Malformed status line: {lines[0][:80]!r}")

    if len(lines) - 1 > MAX_HEADERS:
        raise ProtocolError(f"Too many headers (> {MAX_HEADERS})")

    headers = []
    for line in lines[1:]:
        name, sep, value = line.partition(b":")
        if not sep or not name or name != name.strip():
            raise ProtocolError(f"Malformed header line: {line[:80]!r}")
        headers.append(
            (
                name.decode("ascii", errors="replace"),
                value.strip().decode("utf-8", errors="replace"),
            )
        )

    response = HttpResponse(
        version=int(match.group(1)),
        status_code=int(match.group(2)),
        reason=(match.group(3) or b"").decode("latin-1"),
        headers=headers,
    )
    return response, end + 4


def _recv_chunk(sock, size: int = CHUNK_SIZE) -> bytes:
    try:
        chunk = sock.recv(size)
    except TimeoutError as e:
        raise TransportError(f"Receive timeout: {e}") from e
    except OSError as e:
        raise TransportError(f"Receive failed: {type(e).__name__}: {e}") from e

    if not isinstance(chunk, bytes):
        raise ProtocolError(
            f"Receive failed: expected bytes, got {type(chunk).__name__}"
        )
    return chunk


def read_response(sock) -> HttpResponse:
    """Read one HTTP/1.1 response from ``sock``.

    Chunks are accumulated until the header block parses; the body is then read
    until ``Content-Length`` bytes are buffered or the peer closes the connection,
    in which case the partial body is returned. Chunked transfer encoding is not
    supported.

    Args:
        sock: Any object with a socket-like ``recv(n)`` method.

    Returns:
        HttpResponse: The parsed response. ``body`` holds every byte received
        after the header block.

    Raises:
        ProtocolError: If the peer closes before the header block is complete or
            the head is malformed or too large.
        TransportError: If receiving fails at the socket/TLS layer.

    Examples:
        >>> import socket
        >>> a, b = socket.socketpair()
        >>> try:
        ...     a.sendall(b"HTTP/1.1 200 OK\\r\\nContent-Length: 2\\r\\n\\r\\nhi")
        ...     read_response(b).body
        ... finally:
        ...     a.close(); b.close()
        b'hi'
    """
    buf = bytearray()
    while True:
        chunk = _recv_chunk(sock)
        if not chunk:
            raise ProtocolError("Connection closed before headers complete")
        buf += chunk

        parsed = parse_head(buf)
        if parsed is not None:
            break
        if len(buf) > MAX_HEAD_SIZE:
            raise ProtocolError("Response head too large")

    response, head_len = parsed
    content_length = response.content_length()
    while len(buf) - head_len < content_length:
        chunk = _recv_chunk(sock)
        if not chunk:
            logger.debug(
                f"Peer closed after {len(buf) - head_len} of {content_length} body bytes"
            )
            break
        buf += chunk

    response.body = bytes(buf[head_len:])
    return response


def resolve_address(host: str, port: int) -> tuple[str, int]:
    """Resolve ``host`` to the first IPv4 socket address.

    Raises:
        HttpConnectionError: If resolution fails or yields no IPv4 address.
    """
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise HttpConnectionError(f"Failed to resolve hostname {host!r}: {e}") from e
    if not infos:
        raise HttpConnectionError(f"Failed to resolve hostname {host!r}")
    address = infos[0][4]
    return address[0], address[1]


def create_tls_context(cert_verification: CertVerification):
    """Create a client ``ssl.SSLContext`` for the requested trust policy.

    Raises:
        TlsError: If TLS is unavailable or the custom CA file cannot be loaded.
    """
    if not HAS_TLS:
        raise TlsError("TLS support not available in this Python build")

    if cert_verification.mode is CertMode.SKIP:
        context = ssl.create_default_context()
        # accept self-signed and mismatched portal certificates
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif cert_verification.mode is CertMode.CUSTOM:
        try:
            context = ssl.create_default_context(
                ssl.Purpose.SERVER_AUTH, cafile=cert_verification.ca_file
            )
        except (OSError, ssl.SSLError) as e:
            raise TlsError(
                f"Failed to load CA certificate {cert_verification.ca_file!r}: {e}"
            ) from e
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
    else:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED

    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def open_socket(
    remote_addr: tuple[str, int],
    local_ip: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> socket.socket:
    """Open a TCP connection to ``remote_addr``, optionally bound to ``local_ip``.

    Raises:
        HttpConnectionError: If binding or connecting fails.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        # retries reconnect quickly from the same local address
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if local_ip is not None:
            sock.bind((local_ip, 0))
        sock.connect(remote_addr)
    except OSError as e:
        sock.close()
        host, port = remote_addr
        if e.errno == errno.EADDRNOTAVAIL:
            raise HttpConnectionError(
                f"Cannot bind to local address {local_ip!r}"
            ) from e
        elif e.errno == errno.EHOSTUNREACH:
            raise HttpConnectionError(f"Host unreachable: {host}:{port}") from e
        elif e.errno == errno.ENETUNREACH:
            raise HttpConnectionError(
                f"Network unreachable when connecting to {host}:{port}"
            ) from e
        else:
            raise HttpConnectionError(
                f"Failed to connect to {host}:{port}: {type(e).__name__}: {e}"
            ) from e
    return sock


class HttpClient:
    """One connection to the gateway, reused for every request of a user flow.

    The connection is opened by the constructor: the gateway address is either
    the pinned ``remote_addr`` or the first IPv4 result of resolving ``host``, the
    socket is bound to ``local_ip`` when given and, for HTTPS, a TLS handshake is
    performed with ``server_hostname=host``.

    Args:
        is_https (bool): Wrap the connection in TLS.
        host (str): Gateway hostname, used for ``Host`` and SNI.
        port (int): Gateway port.
        local_ip (str | None): Local IPv4 address to bind before connecting.
        remote_addr (tuple[str, int] | None): Pinned gateway address (skips DNS).
        cert_verification (CertVerification | None): HTTPS trust policy.
        timeout (float): Socket timeout in seconds.

    Raises:
        TlsError: If HTTPS is requested without TLS support, or the handshake fails.
        HttpConnectionError: If resolution, binding or connecting fails.
    """

    def __init__(
        self,
        is_https: bool,
        host: str,
        port: int,
        local_ip: str | None = None,
        remote_addr: tuple[str, int] | None = None,
        cert_verification: CertVerification | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if is_https and not HAS_TLS:
            raise TlsError("TLS support not available; refusing plaintext fallback")

        self.host = host
        self.port = port
        self.is_https = is_https

        # a bad trust policy must fail before any socket exists
        context = None
        if is_https:
            context = create_tls_context(cert_verification or CertVerification())

        target = remote_addr if remote_addr is not None else resolve_address(host, port)
        logger.debug(f"Connecting to {target[0]}:{target[1]} (local {local_ip})")
        sock = open_socket(target, local_ip, timeout)

        if context is not None:
            try:
                sock = context.wrap_socket(sock, server_hostname=host)
            except (ssl.SSLError, ssl.CertificateError, OSError) as e:
                sock.close()
                raise TlsError(f"TLS handshake with {host} failed: {e}") from e
            sock.settimeout(timeout)

        self.sock = sock

    def request(
        self,
        method: str,
        path: str,
        query: list[tuple[str, str]] | None = None,
    ) -> HttpResponse:
        """Send one request and block until its response is framed.

        Raises:
            TransportError: If sending or receiving fails.
            ProtocolError: If the response is not valid HTTP/1.1.
        """
        data = build_request(method, path, self.host, query)
        logger.debug(f"{method} {path} ({len(data)} bytes)")
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise TransportError(
                f"Send failed for {method} {path}: {type(e).__name__}: {e}"
            ) from e
        return read_response(self.sock)

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Error closing connection: {e}")

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
