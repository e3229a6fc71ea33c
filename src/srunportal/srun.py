"""SRUN portal protocol: response models, signatures and the login state machine.

A login attempt runs::

    get_challenge -> param_i (info) -> hmac_md5 (hmd5) -> checksum -> srun_portal

and is retried with a *fresh* challenge until the portal answers ``res == "ok"``
and ``error == "ok"`` or the retry budget is spent. Status queries and logouts
are single requests.

Main pieces:
    ECode:
        The ``ecode`` field, which gateways send either as a number or as text.

    InfoResponse / ChallengeResponse / PortalResponse:
        Decoded JSON payloads of the three endpoints.

    hmac_md5 / checksum_input / checksum:
        The two signatures every login submission carries.

    SrunClient:
        ``check_status``, ``login`` and ``logout`` for one user over one connection.
"""

import hashlib
import hmac
import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Any

from srunportal.http import HttpClient
from srunportal.jsonp import callback_token, loads_object, unwrap
from srunportal.protocol import (
    PASSWORD_TAG,
    PATH_GET_CHALLENGE,
    PATH_INFO,
    PATH_PORTAL,
    SUCCESS_MARKER,
    ChallengeError,
    ConfigError,
    LoginError,
    LogoutError,
    NetworkError,
    ParseError,
    SrunPortalError,
)
from srunportal.xencode import param_i

logger = logging.getLogger(__name__)


def _text(data: dict[str, Any], key: str, default: str | None = "") -> str | None:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ParseError(f"Field {key!r} should be a string, got {type(value).__name__}")


def _number(data: dict[str, Any], key: str, kind: type = int):
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ParseError(f"Field {key!r} should be a number, got bool")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Field {key!r} should be a number, got {value!r}") from e


@dataclass(frozen=True)
class ECode:
    """Error code sent by the gateway as either a number or a string.

    The success check uses whichever representation the gateway sent.

    Examples:
        >>> ECode.parse(0).is_success()
        True
        >>> ECode.parse("E2901").is_success()
        False
    """

    value: int | str = 0

    @classmethod
    def parse(cls, raw: Any) -> "ECode":
        if raw is None:
            return cls()
        if isinstance(raw, bool):
            raise ParseError("Field 'ecode' should be a number or string, got bool")
        if isinstance(raw, int):
            return cls(raw)
        if isinstance(raw, float) and raw.is_integer():
            return cls(int(raw))
        if isinstance(raw, str):
            return cls(raw)
        raise ParseError(
            f"Field 'ecode' should be a number or string, got {type(raw).__name__}"
        )

    def is_success(self) -> bool:
        if isinstance(self.value, int):
            return self.value == 0
        return self.value in ("", "0", SUCCESS_MARKER, "E0000")

    def __str__(self) -> str:
        return str(self.value)


@dataclass
class InfoResponse:
    """Answer of ``rad_user_info``: is this IP online, and its usage counters."""

    online_ip: str = ""
    error: str = ""
    user_name: str | None = None
    user_mac: str | None = None
    real_name: str | None = None
    domain: str | None = None
    sysver: str | None = None
    srun_ver: str | None = None
    client_ip: str | None = None
    error_msg: str | None = None
    res: str | None = None
    bytes_in: int | None = None
    bytes_out: int | None = None
    all_bytes: int | None = None
    sum_bytes: int | None = None
    sum_seconds: int | None = None
    add_time: int | None = None
    remain_seconds: int | None = None
    keepalive_time: int | None = None
    checkout_date: int | None = None
    server_flag: int | None = None
    st: int | None = None
    user_balance: float | None = None
    user_charge: float | None = None
    wallet_balance: float | None = None
    ecode: ECode | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InfoResponse":
        return cls(
            online_ip=_text(data, "online_ip"),
            error=_text(data, "error"),
            user_name=_text(data, "user_name", None),
            user_mac=_text(data, "user_mac", None),
            real_name=_text(data, "real_name", None),
            domain=_text(data, "domain", None),
            sysver=_text(data, "sysver", None),
            srun_ver=_text(data, "srun_ver", None),
            client_ip=_text(data, "client_ip", None),
            error_msg=_text(data, "error_msg", None),
            res=_text(data, "res", None),
            bytes_in=_number(data, "bytes_in"),
            bytes_out=_number(data, "bytes_out"),
            all_bytes=_number(data, "all_bytes"),
            sum_bytes=_number(data, "sum_bytes"),
            sum_seconds=_number(data, "sum_seconds"),
            add_time=_number(data, "add_time"),
            remain_seconds=_number(data, "remain_seconds"),
            keepalive_time=_number(data, "keepalive_time"),
            checkout_date=_number(data, "checkout_date"),
            server_flag=_number(data, "ServerFlag"),
            st=_number(data, "st"),
            user_balance=_number(data, "user_balance", float),
            user_charge=_number(data, "user_charge", float),
            wallet_balance=_number(data, "wallet_balance", float),
            ecode=ECode.parse(data["ecode"]) if "ecode" in data else None,
        )


@dataclass
class ChallengeResponse:
    challenge: str | None = None
    client_ip: str = ""
    online_ip: str = ""
    ecode: ECode = ECode()
    error: str = ""
    error_msg: str = ""
    expire: str | None = None
    res: str = ""
    srun_ver: str = ""
    st: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChallengeResponse":
        return cls(
            challenge=_text(data, "challenge", None) or None,
            client_ip=_text(data, "client_ip"),
            online_ip=_text(data, "online_ip"),
            ecode=ECode.parse(data.get("ecode")),
            error=_text(data, "error"),
            error_msg=_text(data, "error_msg"),
            expire=_text(data, "expire", None),
            res=_text(data, "res"),
            srun_ver=_text(data, "srun_ver"),
            st=_number(data, "st"),
        )


@dataclass
class PortalResponse:
    """Answer of ``srun_portal`` to a login or logout submission."""

    res: str = ""
    error: str = ""
    ecode: ECode = ECode()
    error_msg: str = ""
    suc_msg: str = ""
    client_ip: str = ""
    online_ip: str = ""
    username: str = ""
    real_name: str = ""
    access_token: str = ""
    srun_ver: str = ""
    sysver: str = ""
    services_intf_server_ip: str = ""
    services_intf_server_port: str = ""
    server_flag: int | None = None
    checkout_date: int | None = None
    remain_flux: int | None = None
    remain_times: int | None = None
    wallet_balance: float | None = None
    st: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortalResponse":
        return cls(
            res=_text(data, "res"),
            error=_text(data, "error"),
            ecode=ECode.parse(data.get("ecode")),
            error_msg=_text(data, "error_msg"),
            suc_msg=_text(data, "suc_msg"),
            client_ip=_text(data, "client_ip"),
            online_ip=_text(data, "online_ip"),
            username=_text(data, "username"),
            real_name=_text(data, "real_name"),
            access_token=_text(data, "access_token"),
            srun_ver=_text(data, "srun_ver"),
            sysver=_text(data, "sysver"),
            services_intf_server_ip=_text(data, "ServicesIntfServerIP"),
            services_intf_server_port=_text(data, "ServicesIntfServerPort"),
            server_flag=_number(data, "ServerFlag"),
            checkout_date=_number(data, "checkout_date"),
            remain_flux=_number(data, "remain_flux"),
            remain_times=_number(data, "remain_times"),
            wallet_balance=_number(data, "wallet_balance", float),
            st=_number(data, "st"),
        )

    def is_success(self) -> bool:
        return self.res == SUCCESS_MARKER and self.error == SUCCESS_MARKER

    def describe_error(self) -> str:
        """Human-readable rejection reason, e.g. ``"login_error (E2901: ...)"``."""
        code = "" if self.ecode.is_success() else str(self.ecode)
        detail = ", ".join(part for part in (code, self.error_msg) if part)
        reason = self.error or self.res or "unknown error"
        return f"{reason} ({detail})" if detail else reason


def hmac_md5(challenge: str, password: str) -> str:
    """HMAC-MD5 of ``password`` keyed by ``challenge``, as lowercase hex.

    Examples:
        >>> len(hmac_md5("CH", "secret"))
        32
    """
    mac = hmac.new(challenge.encode("utf-8"), password.encode("utf-8"), hashlib.md5)
    return mac.hexdigest()


def checksum_input(
    challenge: str,
    username: str,
    hmd5: str,
    acid: str,
    ip: str,
    n: str,
    type_: str,
    info: str,
) -> str:
    """Join the signed fields with the challenge as separator.

    The leading empty field means the string starts with the challenge.

    Examples:
        >>> checksum_input("CH", "u1", "abc", "1", "10.0.0.5", "200", "1", "XYZ")
        'CHu1CHabcCH1CH10.0.0.5CH200CH1CHXYZ'
    """
    return challenge.join(["", username, hmd5, acid, ip, n, type_, info])


def checksum(
    challenge: str,
    username: str,
    hmd5: str,
    acid: str,
    ip: str,
    n: str,
    type_: str,
    info: str,
) -> str:
    """SHA-1 of :func:`checksum_input`, as lowercase hex."""
    data = checksum_input(challenge, username, hmd5, acid, ip, n, type_, info)
    return hashlib.sha1(data.encode("utf-8")).hexdigest()  # noqa: S324


def _timestamp() -> str:
    return str(int(time.time()))


def parse_ipv4(value: str) -> str:
    """Validate an IPv4 literal and return it in canonical form.

    Raises:
        ParseError: If ``value`` is not an IPv4 address.
    """
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError as e:
        raise ParseError(f"Not an IPv4 address: {value!r}") from e


class SrunClient:
    """Portal operations for one user over one gateway connection.

    The connection is opened here and reused by every request of the flow;
    retries fetch a new challenge, not a new connection.

    Args:
        config (Config): Resolved configuration (server, session parameters).
        user (User): The user this client acts for. ``bind_addr`` may be updated
            by :meth:`check_status`.

    Raises:
        ConfigError: If strict binding is on and the user has no bind address.
        TransportError: If the connection cannot be established.
    """

    def __init__(self, config, user) -> None:
        if config.strict_bind and user.bind_addr is None:
            raise ConfigError(
                f"IP or Interface required when strict_bind enabled ({user.username})"
            )

        self.config = config
        self.user = user

        is_https, host, port = config.server_endpoint()
        remote_addr = (config.server_ip, port) if config.server_ip else None
        local_ip = user.bind_addr if config.strict_bind else None
        self.client = HttpClient(
            is_https,
            host,
            port,
            local_ip=local_ip,
            remote_addr=remote_addr,
            cert_verification=config.cert_verification,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SrunClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _jsonp(
        self, path: str, query: list[tuple[str, str]] | None = None
    ) -> dict[str, Any]:
        token = callback_token()
        params = list(query or [])
        params.append(("callback", token))

        response = self.client.request("GET", path, params)
        if response.status_code != 200:
            logger.warning(
                f"{path} answered {response.status_code} {response.reason}; "
                f"parsing body anyway"
            )
        return loads_object(unwrap(response.body, token))

    def _require_bind_addr(self) -> str:
        if self.user.bind_addr is None:
            raise ConfigError("No IP address configured")
        return self.user.bind_addr

    def check_status(self) -> tuple[bool, InfoResponse]:
        """Ask the gateway whether this client is online.

        When the user has no bind address yet, the gateway's ``online_ip`` becomes
        the bind address and online-ness depends on ``error`` alone.

        Returns:
            tuple[bool, InfoResponse]: Online flag and the decoded report.

        Raises:
            TransportError, ProtocolError, ParseError: On any request failure.
        """
        info = InfoResponse.from_dict(self._jsonp(PATH_INFO))
        logger.debug(f"{info!r}")

        if self.user.bind_addr is not None:
            online = (
                info.error == SUCCESS_MARKER and info.online_ip == self.user.bind_addr
            )
        else:
            self.user.bind_addr = parse_ipv4(info.online_ip)
            logger.info(f"Inferred bind address {self.user.bind_addr} from gateway")
            online = info.error == SUCCESS_MARKER
        return online, info

    def get_challenge(self, ip: str) -> str:
        """Fetch a fresh challenge token for ``ip``.

        Raises:
            ChallengeError: If the gateway returned no challenge.
        """
        logger.info(f"Using online IP: {ip}")
        query = [
            ("username", self.user.username),
            ("ip", ip),
            ("_", _timestamp()),
        ]
        resp = ChallengeResponse.from_dict(self._jsonp(PATH_GET_CHALLENGE, query))
        logger.debug(f"{resp!r}")
        if resp.challenge is None:
            raise ChallengeError("Server returned no challenge token")
        return resp.challenge

    def _do_login(self, ip: str) -> PortalResponse:
        cfg = self.config
        challenge = self.get_challenge(ip)

        acid = str(cfg.acid)
        n = str(cfg.n)
        type_ = str(cfg.type)
        info = param_i(
            self.user.username, self.user.password, ip, acid, challenge, cfg.enc
        )
        hmd5 = hmac_md5(challenge, self.user.password)
        chksum = checksum(challenge, self.user.username, hmd5, acid, ip, n, type_, info)
        logger.debug(f"Challenge: {challenge}")
        logger.debug(f"HMD5: {hmd5}")
        logger.debug(f"Info: {info}")
        logger.debug(f"CheckSum: {chksum}")

        query = [
            ("action", "login"),
            ("username", self.user.username),
            ("password", PASSWORD_TAG + hmd5),
            ("ip", ip),
            ("ac_id", acid),
            ("n", n),
            ("type", type_),
            ("os", cfg.os),
            ("name", cfg.os_name),
            ("double_stack", "true" if cfg.double_stack else "false"),
            ("info", info),
            ("chksum", chksum),
            ("_", _timestamp()),
        ]
        resp = PortalResponse.from_dict(self._jsonp(PATH_PORTAL, query))
        logger.info(
            f"PortalResponse: res: {resp.res}, error: {resp.error}, "
            f"client_ip: {resp.client_ip}, online_ip: {resp.online_ip}"
        )
        logger.debug(f"{resp!r}")
        return resp

    def _do_logout(self, ip: str) -> PortalResponse:
        query = [
            ("action", "logout"),
            ("username", self.user.username),
            ("ip", ip),
            ("ac_id", str(self.config.acid)),
            ("_", _timestamp()),
        ]
        resp = PortalResponse.from_dict(self._jsonp(PATH_PORTAL, query))
        logger.info(
            f"PortalResponse: res: {resp.res}, error: {resp.error}, "
            f"client_ip: {resp.client_ip}, online_ip: {resp.online_ip}"
        )
        logger.debug(f"{resp!r}")
        return resp

    def login(self) -> PortalResponse:
        """Log the user in, retrying up to ``retry_count`` times.

        Each attempt uses a new challenge. Portal rejections and request failures
        are logged and retried; ``retry_delay`` milliseconds pass between attempts.

        Returns:
            PortalResponse: The successful portal answer.

        Raises:
            ConfigError: If no bind address is known (raised before any request).
            LoginError: If every attempt failed.
        """
        ip = self._require_bind_addr()
        retry_count = self.config.retry_count
        for attempt in range(1, retry_count + 1):
            logger.info(f"Login attempt {attempt}/{retry_count}")
            try:
                resp = self._do_login(ip)
            except SrunPortalError as e:
                logger.warning(f"Login error: {e}")
            else:
                if resp.is_success():
                    logger.info(f"Login successful: {resp.suc_msg}")
                    return resp
                logger.warning(f"Login failed: {resp.describe_error()}")

            if attempt < retry_count:
                time.sleep(self.config.retry_delay / 1000)

        raise LoginError("Exceeded maximum retry attempts")

    def logout(self) -> PortalResponse:
        """Log the user out with a single request.

        Raises:
            ConfigError: If no bind address is known.
            LogoutError: If the portal rejected the logout.
            NetworkError: If the request itself failed.
        """
        ip = self._require_bind_addr()
        logger.info("Logout.")
        try:
            resp = self._do_logout(ip)
        except SrunPortalError as e:
            logger.error(f"Logout error: {e}")
            raise NetworkError("Failed to communicate with server") from e

        if not resp.is_success():
            logger.warning(f"Logout failed: {resp.describe_error()}")
            raise LogoutError(
                f"Server rejected logout request: {resp.describe_error()}"
            )
        logger.info(f"Logout successful: {resp.suc_msg}")
        return resp
