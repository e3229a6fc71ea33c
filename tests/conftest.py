import logging
import socket
from collections.abc import Callable
from typing import Any

import pytest

from srunportal.config import Config, User


@pytest.fixture
def readout(capsys) -> Callable[[], Any]:
    def _():
        return capsys.readouterr().out.replace("\r\n", "\n").rstrip("\n")

    return _


@pytest.fixture
def readerr(capsys) -> Callable[[], Any]:
    def _():
        return capsys.readouterr().err.replace("\r\n", "\n").rstrip("\n")

    return _


@pytest.fixture
def username():
    return "u1"


@pytest.fixture
def password():
    return "s3cret-pass"


@pytest.fixture
def challenge():
    return "8f2c5f6bbd1a4e53a7e1c46a0fc5f7e9a1d2c3b4e5f60718293a4b5c6d7e8f90"


@pytest.fixture
def bind_ip():
    return "10.0.0.5"


@pytest.fixture
def user(username, password, bind_ip):
    return User(username=username, password=password, ip=bind_ip, bind_addr=bind_ip)


@pytest.fixture
def config(user):
    return Config(
        server="http://portal.example.edu",
        users=[user],
        retry_count=3,
        retry_delay=500,
    )


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    return tmp_path / "state"


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield root
    finally:
        for h in list(root.handlers):
            if h not in handlers:
                root.removeHandler(h)
                h.close()
        for h in handlers:
            if h not in root.handlers:
                root.addHandler(h)
        root.setLevel(level)
        logging.captureWarnings(False)


@pytest.fixture(scope="function")
def socket_pair():
    s1, s2 = socket.socketpair()
    s1.settimeout(1.0)
    s2.settimeout(1.0)
    try:
        yield s1, s2
    finally:
        try:
            s1.close()
        except OSError as e:
            print(f"OSError: {e}")
        try:
            s2.close()
        except OSError as e:
            print(f"OSError: {e}")
