"""Configuration for the SRUN portal client.

A :class:`Config` holds the gateway address, the session parameters sent with
every request and the list of :class:`User` records to process. It is built from
an optional JSON file plus command-line overrides and then validated once by
:meth:`Config.check`, which also resolves each user's bind address.

Example file (``srunportal gen-config`` writes one)::

    {
      "server": "http://10.0.0.1",
      "server_ip": "10.0.0.1",
      "verify_cert": "system",
      "users": [{"username": "u", "password": "p", "ip": "10.1.2.3"}],
      "strict_bind": false,
      "acid": 1,
      ...
    }
"""

import argparse
import ipaddress
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from srunportal import interfaces
from srunportal.http import CertVerification
from srunportal.protocol import (
    DEFAULT_ACID,
    DEFAULT_ENC,
    DEFAULT_N,
    DEFAULT_OS,
    DEFAULT_OS_NAME,
    DEFAULT_RETRY_COUNT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SERVER,
    DEFAULT_TYPE,
    ConfigError,
)

DEFAULT_CONFIG_FILE = "./config.json"

logger = logging.getLogger(__name__)


@dataclass(repr=False)
class User:
    """Credentials of one portal account.

    ``bind_addr`` is not part of the file format; it is filled in by
    :meth:`Config.check` (from ``iface`` or ``ip``) or later by a status query.
    """

    username: str
    password: str
    ip: str | None = None
    iface: str | None = None
    bind_addr: str | None = None

    def __repr__(self) -> str:
        # never expose the password in logs
        return (
            f"User(username={self.username!r}, password='******', "
            f"ip={self.ip!r}, iface={self.iface!r}, bind_addr={self.bind_addr!r})"
        )

    @classmethod
    def from_dict(cls, data: Any) -> "User":
        if not isinstance(data, dict):
            raise ConfigError(f"User entry must be an object, got {type(data).__name__}")
        values = {}
        for key in ("username", "password"):
            value = data.get(key)
            if not isinstance(value, str):
                raise ConfigError(f"User field {key!r} must be a string")
            values[key] = value
        for key in ("ip", "iface"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"User field {key!r} must be a string")
            values[key] = value
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        data = {"username": self.username, "password": self.password}
        if self.ip is not None:
            data["ip"] = self.ip
        if self.iface is not None:
            data["iface"] = self.iface
        return data


# expected JSON types of the scalar settings
_SETTING_TYPES: dict[str, type] = {
    "server": str,
    "server_ip": str,
    "verify_cert": str,
    "strict_bind": bool,
    "enc": str,
    "n": int,
    "type": int,
    "acid": int,
    "double_stack": bool,
    "os": str,
    "os_name": str,
    "retry_count": int,
    "retry_delay": int,
}


@dataclass
class Config:
    """Resolved client configuration.

    ``retry_delay`` is in milliseconds. ``verify_cert`` is ``"skip"``,
    ``"system"`` or a path to a CA certificate (PEM).
    """

    server: str = DEFAULT_SERVER
    server_ip: str | None = None
    verify_cert: str = "system"
    users: list[User] = field(default_factory=list)
    strict_bind: bool = False
    enc: str = DEFAULT_ENC
    n: int = DEFAULT_N
    type: int = DEFAULT_TYPE
    acid: int = DEFAULT_ACID
    double_stack: bool = False
    os: str = DEFAULT_OS
    os_name: str = DEFAULT_OS_NAME
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_delay: int = DEFAULT_RETRY_DELAY

    @property
    def cert_verification(self) -> CertVerification:
        return CertVerification.from_setting(self.verify_cert)

    @classmethod
    def from_dict(cls, data: Any) -> "Config":
        """Build a config from decoded JSON; missing keys keep their defaults.

        Raises:
            ConfigError: If a known key has the wrong type.
        """
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a JSON object")

        config = cls()
        for key, value in data.items():
            if key == "users":
                if not isinstance(value, list):
                    raise ConfigError("'users' must be a list")
                config.users = [User.from_dict(u) for u in value]
            elif key in _SETTING_TYPES:
                if value is None and key == "server_ip":
                    continue
                expected = _SETTING_TYPES[key]
                # bool is an int subclass; keep the two apart
                if not isinstance(value, expected) or (
                    expected is int and isinstance(value, bool)
                ):
                    raise ConfigError(
                        f"{key!r} must be of type {expected.__name__}, "
                        f"got {type(value).__name__}"
                    )
                setattr(config, key, value)
            else:
                logger.debug(f"Ignoring unknown config key {key!r}")
        return config

    @classmethod
    def from_json_file(cls, path: str | Path) -> "Config":
        """Load a config from a JSON file.

        Raises:
            ConfigError: If the file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except OSError as e:
            raise ConfigError(f"Cannot read config file {str(path)!r}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Cannot parse config file {str(path)!r}: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_args(cls, ns: argparse.Namespace) -> "Config":
        """Load ``--config`` (if given) and apply command-line overrides.

        ``--username`` together with ``--password`` replaces the configured users.
        """
        config = cls.from_json_file(ns.config) if ns.config else cls()

        for key in _SETTING_TYPES:
            value = getattr(ns, key, None)
            if value is not None:
                setattr(config, key, value)

        if ns.username is not None and ns.password is not None:
            config.users = [
                User(
                    username=ns.username,
                    password=ns.password,
                    ip=ns.ip,
                    iface=ns.iface,
                )
            ]
        elif ns.username is not None or ns.password is not None:
            logger.warning("--username and --password must be given together; ignored")

        return config

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "users":
                data["users"] = [u.to_dict() for u in value]
            elif value is not None:
                data[f.name] = value
        return data

    def server_endpoint(self) -> tuple[bool, str, int]:
        """Return ``(is_https, host, port)`` parsed from ``server``.

        Examples:
            >>> Config(server="https://portal.example.edu").server_endpoint()
            (True, 'portal.example.edu', 443)
            >>> Config(server="http://10.0.0.1:8080/").server_endpoint()
            (False, '10.0.0.1', 8080)

        Raises:
            ConfigError: If the scheme is not http/https, the host is missing or
                not IDNA-encodable, or the port is invalid.
        """
        parsed = urlparse(self.server)
        if parsed.scheme not in ("http", "https"):
            raise ConfigError(f"Unsupported server scheme in {self.server!r}")
        if not parsed.hostname:
            raise ConfigError(f"No host in server address {self.server!r}")
        # Host header and SNI are ASCII only
        try:
            host = parsed.hostname.encode("idna").decode("ascii")
        except UnicodeError as e:
            raise ConfigError(f"Invalid host in server address {self.server!r}") from e
        is_https = parsed.scheme == "https"
        try:
            port = parsed.port
        except ValueError as e:
            raise ConfigError(f"Invalid port in server address {self.server!r}") from e
        if port is None:
            port = 443 if is_https else 80
        return is_https, host, port

    def check(self) -> None:
        """Validate the configuration and resolve every user's bind address.

        For each user: an ``iface`` wins and its IPv4 address becomes the bind
        address (a differing ``ip`` only triggers a warning); otherwise an ``ip``
        must be an IPv4 literal present on a local interface. With
        ``strict_bind`` every user must end up with a bind address.

        Raises:
            ConfigError: On the first validation failure.
        """
        self.server_endpoint()
        if self.server_ip is not None:
            _require_ipv4(self.server_ip, "server_ip")
        if self.retry_count < 1:
            raise ConfigError("retry_count must be at least 1")
        if self.retry_delay < 0:
            raise ConfigError("retry_delay must not be negative")

        if not self.users:
            raise ConfigError("No users configured")
        for user in self.users:
            if not user.username:
                raise ConfigError("Username cannot be empty")
            if not user.password:
                raise ConfigError("Password cannot be empty")

        local_addresses = None
        for user in self.users:
            if user.iface is not None:
                ip = interfaces.interface_ipv4(user.iface)
                if ip is None:
                    raise ConfigError(
                        f"Network interface {user.iface!r} not found or has no IPv4 address"
                    )
                if user.ip is not None and user.ip != ip:
                    logger.warning(
                        f"The specified IP {user.ip} for user {user.username} does not "
                        f"match the IP {ip} of interface {user.iface}, using interface IP"
                    )
                user.ip = ip
                user.bind_addr = ip
            elif user.ip is not None:
                ip = _require_ipv4(user.ip, f"IP of user {user.username}")
                if local_addresses is None:
                    local_addresses = interfaces.local_ipv4_addresses()
                if ip not in local_addresses:
                    raise ConfigError(f"IP address {ip} not found on any interface")
                user.bind_addr = ip

            if self.strict_bind and user.bind_addr is None:
                raise ConfigError("IP or Interface required when strict_bind enabled")


def _require_ipv4(value: str, what: str) -> str:
    try:
        address = ipaddress.ip_address(value)
    except ValueError as e:
        raise ConfigError(f"Invalid {what}: {value!r}") from e
    if address.version != 4:
        raise ConfigError(f"IPv6 addresses not supported ({what}: {value})")
    return str(address)


def example_config() -> Config:
    config = Config(server_ip="10.0.0.1")
    config.users.append(
        User(username="your_username", password="your_password", ip="your_ipv4_address")
    )
    config.users.append(
        User(
            username="your_username",
            password="your_password",
            iface="your_interface_name",
        )
    )
    return config


def generate_example_config(path: str | Path) -> None:
    """Write an example configuration file to ``path``.

    Raises:
        ConfigError: If the file cannot be written.
    """
    text = json.dumps(example_config().to_dict(), indent=2)
    try:
        Path(path).write_text(text + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot write config file {str(path)!r}: {e}") from e
