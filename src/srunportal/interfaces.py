"""Local interface lookup.

IPv4 addresses come from the ``SIOCGIFADDR`` ioctl, so lookups only work on
Linux and similar POSIX systems, and only the primary IPv4 address of each
interface is reported. IPv6 addresses are listed from ``/proc/net/if_inet6``
for display; they are never used for binding.
"""

import ipaddress
import logging
import socket
import struct

from srunportal.protocol import ConfigError

SIOCGIFADDR = 0x8915
IFNAMSIZ = 16
IF_INET6 = "/proc/net/if_inet6"

logger = logging.getLogger(__name__)


def interface_ipv4(name: str) -> str | None:
    """Return the IPv4 address assigned to interface ``name``, or ``None``.

    Raises:
        ConfigError: If the platform has no ``fcntl`` (e.g. Windows).
    """
    try:
        from fcntl import ioctl
    except ImportError as e:
        raise ConfigError("Interface lookup is only supported on POSIX systems") from e

    request = struct.pack("256s", name[: IFNAMSIZ - 1].encode("utf-8"))
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            result = ioctl(sock.fileno(), SIOCGIFADDR, request)
        except OSError as e:
            logger.debug(f"No IPv4 address for interface {name!r}: {e}")
            return None
    return socket.inet_ntoa(result[20:24])


def list_interfaces() -> list[tuple[str, str]]:
    """Return ``(name, ipv4)`` for every interface that has an IPv4 address."""
    found = []
    for _, name in socket.if_nameindex():
        ip = interface_ipv4(name)
        if ip is not None:
            found.append((name, ip))
    return found


def local_ipv4_addresses() -> set[str]:
    return {ip for _, ip in list_interfaces()}


def list_ipv6_interfaces(path: str = IF_INET6) -> list[tuple[str, str]]:
    """Return ``(name, ipv6)`` for every IPv6 address, for display only.

    Reads the Linux ``/proc/net/if_inet6`` table; other platforms get ``[]``.
    """
    try:
        with open(path, encoding="ascii") as fh:
            lines = fh.read().splitlines()
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return []

    found = []
    for line in lines:
        fields = line.split()
        # address, index, prefix length, scope, flags, name
        if len(fields) != 6:
            continue
        try:
            ip = ipaddress.IPv6Address(int(fields[0], 16))
        except ValueError:
            continue
        found.append((fields[5], str(ip)))
    return found
