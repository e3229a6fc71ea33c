"""Command-line entry point for the SRUN portal client.

Subcommands:
    login:
        Log every configured user in (skipped for users already online unless
        ``--force``).

    logout:
        Log every configured user out (skipped for users already offline unless
        ``--force``).

    status:
        Print each user's online status and usage counters.

    gen-config:
        Write an example JSON configuration file.

    interfaces:
        List local interface addresses (IPv4, then IPv6 for display).

Users are processed one after another; each gets its own connection and a
failure for one user does not stop the next.
"""

import argparse
import dataclasses
import logging
import sys
from collections.abc import Sequence
from datetime import datetime

from srunportal.config import DEFAULT_CONFIG_FILE, Config, User, generate_example_config
from srunportal.interfaces import list_interfaces, list_ipv6_interfaces
from srunportal.logging_utils import configure_logging
from srunportal.protocol import (
    ConfigError,
    SrunPortalError,
    _parse_bool,
    _parse_non_negative_int,
    _parse_positive_int,
)
from srunportal.srun import InfoResponse, SrunClient

MIB = 1024 * 1024

logger = logging.getLogger(__name__)


def build_client_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ``srunportal`` CLI.

    Global options go before the subcommand, e.g.
    ``srunportal -c config.json --force login``.

    Returns:
        argparse.ArgumentParser: Configured parser.

    Examples:
        >>> ns = build_client_parser().parse_args(["--acid", "5", "login"])
        >>> ns.command, ns.acid
        ('login', 5)
    """
    parser = argparse.ArgumentParser(
        prog="srunportal", description="SRUN captive-portal login client."
    )

    parser.add_argument("-c", "--config", help="config file path (JSON)")
    parser.add_argument(
        "-s", "--server", help="portal server URL (default: http://10.0.0.1)"
    )
    parser.add_argument(
        "--server-ip", help="portal server IPv4 address (skips DNS resolution)"
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="login/logout even if already in the desired state",
    )
    parser.add_argument(
        "--verify-cert",
        help="certificate verification: skip, system (default), or path to a CA cert",
    )

    parser.add_argument("-u", "--username", help="username")
    parser.add_argument("-p", "--password", help="password")
    parser.add_argument("--ip", help="IPv4 address to log in (and bind to)")
    parser.add_argument("--iface", help="network interface to take the IP from")
    parser.add_argument(
        "--strict-bind",
        type=_parse_bool,
        help="require a bind address for every user (true/false)",
    )

    parser.add_argument("--enc", help="srun enc parameter (default: srun_bx1)")
    parser.add_argument(
        "--n", type=_parse_non_negative_int, help="srun n parameter (default: 200)"
    )
    parser.add_argument(
        "--type",
        type=_parse_non_negative_int,
        help="srun type parameter (default: 1)",
    )
    parser.add_argument(
        "--acid",
        type=_parse_non_negative_int,
        help="srun ac_id parameter (default: 1)",
    )
    parser.add_argument(
        "--double-stack", type=_parse_bool, help="srun double_stack (true/false)"
    )
    parser.add_argument("--os", help="operating system sent to the portal")
    parser.add_argument("--os-name", help="operating system name sent to the portal")
    parser.add_argument(
        "--retry-count",
        type=_parse_positive_int,
        help="login attempts (default: 10)",
    )
    parser.add_argument(
        "--retry-delay",
        type=_parse_non_negative_int,
        help="delay between login attempts in ms (default: 500)",
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="also print INFO log messages to stderr",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("login", help="log in every configured user")
    sub.add_parser("logout", help="log out every configured user")
    sub.add_parser("status", help="show online status of every configured user")
    gen = sub.add_parser("gen-config", help="write an example config file")
    gen.add_argument(
        "--file",
        default=DEFAULT_CONFIG_FILE,
        help=f"output path (default: {DEFAULT_CONFIG_FILE})",
    )
    sub.add_parser("interfaces", help="list local interface addresses")

    return parser


def _fmt_mib(value: int | None) -> str:
    return "?" if value is None else f"{value // MIB}"


def format_status(online: bool, info: InfoResponse) -> list[str]:
    """Render a status report as human-readable lines.

    Examples:
        >>> format_status(False, InfoResponse(online_ip="10.0.0.5"))
        ['Not logged in. Current online IP: 10.0.0.5']
    """
    if not online:
        return [f"Not logged in. Current online IP: {info.online_ip}"]

    lines = [
        f"Already logged in at {info.online_ip} ({info.user_mac or '?'}) "
        f"as {info.user_name or '?'}."
    ]
    hours = "?" if info.sum_seconds is None else f"{info.sum_seconds // 3600}"
    lines.append(
        f"Bytes in: {_fmt_mib(info.bytes_in)} M, bytes out: {_fmt_mib(info.bytes_out)} M. "
        f"All bytes: {_fmt_mib(info.all_bytes)} M. Sum bytes: {_fmt_mib(info.sum_bytes)} M, "
        f"Sum Hours: {hours} H"
    )
    if info.add_time is not None:
        try:
            since = datetime.fromtimestamp(info.add_time).isoformat(sep=" ")
        except (ValueError, OverflowError, OSError):
            since = str(info.add_time)
        lines.append(f"Online since: {since}")
    return lines


def process_user(config: Config, user: User, action: str, force: bool = False) -> bool:
    """Run one action for one user over its own connection.

    The user record is copied, so a bind address learned from the gateway does
    not leak into the caller's config.

    Args:
        config (Config): Checked configuration.
        user (User): The user to process.
        action (str): ``"login"``, ``"logout"`` or ``"status"``.
        force (bool): Skip the "already in the desired state" shortcut.

    Returns:
        bool: True if the action succeeded (or was not needed).
    """
    user = dataclasses.replace(user)
    logger.info(f"{action.capitalize()} user: {user.username}")

    try:
        with SrunClient(config, user) as client:
            online, info = client.check_status()
            for line in format_status(online, info):
                logger.info(line)
                print(line)
            logger.debug(f"Srun version: {info.sysver}")

            if action == "login":
                if online and not force:
                    return True
                resp = client.login()
                print(f"Login successful for {user.username}: {resp.suc_msg}")
            elif action == "logout":
                if not online and not force:
                    return True
                resp = client.logout()
                print(f"Logout successful for {user.username}: {resp.suc_msg}")
    except SrunPortalError as e:
        logger.error(f"{action} failed for {user.username}: {e}")
        print(f"{user.username}: {e}", file=sys.stderr)
        return False

    return True


def run_users(config: Config, action: str, force: bool = False) -> int:
    """Process every configured user in order.

    Returns:
        int: 0 if every user succeeded, 1 otherwise.
    """
    failures = 0
    for user in config.users:
        if not process_user(config, user, action, force):
            failures += 1
    if failures:
        logger.warning(f"{failures} of {len(config.users)} user(s) failed")
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point for the CLI.

    Args:
        argv: sys.argv[1:] is used.

    Returns:
        Process exit code: 0 on success, 1 if an operation failed, 2 on a
        configuration error.

    Side effects:
        Opens network connections, prints to stdout/stderr.
    """
    parser = build_client_parser()
    ns = parser.parse_args(argv)

    configure_logging(level=ns.log_level, node="client", verbose=ns.verbose)

    if ns.command == "gen-config":
        logger.info(f"Generating example configuration file at {ns.file}")
        try:
            generate_example_config(ns.file)
        except ConfigError as e:
            logger.error(str(e))
            return 2
        print(f"Example configuration written to {ns.file}")
        return 0

    if ns.command == "interfaces":
        try:
            for name, ip in list_interfaces():
                print(f"(IPv4) {name}: {ip}")
            for name, ip in list_ipv6_interfaces():
                print(f"(IPv6) {name}: {ip}")
        except ConfigError as e:
            logger.error(str(e))
            return 2
        return 0

    try:
        config = Config.from_args(ns)
        config.check()
    except ConfigError as e:
        logger.critical(str(e))
        return 2
    logger.debug(f"{config!r}")

    return run_users(config, ns.command, ns.force)


if __name__ == "__main__":
    raise SystemExit(main())
