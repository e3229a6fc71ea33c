import json

import pytest

from srunportal import interfaces
from srunportal.client import build_client_parser
from srunportal.config import (
    Config,
    User,
    example_config,
    generate_example_config,
)
from srunportal.http import CertMode
from srunportal.protocol import ConfigError


@pytest.fixture
def local_ips(monkeypatch):
    addresses = {"127.0.0.1", "10.0.0.5"}
    monkeypatch.setattr(interfaces, "local_ipv4_addresses", lambda: set(addresses))
    return addresses


@pytest.fixture
def ifaces(monkeypatch):
    table = {"lo": "127.0.0.1", "eth0": "10.0.0.5"}
    monkeypatch.setattr(interfaces, "interface_ipv4", table.get)
    return table


class TestUser:
    def test_repr_masks_password(self, user, password):
        text = repr(user)
        assert password not in text
        assert "******" in text

    def test_from_dict(self):
        user = User.from_dict({"username": "a", "password": "b", "iface": "eth0"})
        assert (user.username, user.password, user.ip, user.iface) == (
            "a",
            "b",
            None,
            "eth0",
        )
        assert user.bind_addr is None

    @pytest.mark.parametrize(
        "data",
        [
            "alice",
            {"password": "b"},
            {"username": "a", "password": 1},
            {"username": "a", "password": "b", "ip": 10},
        ],
    )
    def test_from_dict_invalid(self, data):
        with pytest.raises(ConfigError):
            User.from_dict(data)

    def test_to_dict_omits_unset(self):
        assert User("a", "b").to_dict() == {"username": "a", "password": "b"}


class TestConfigLoading:
    def test_defaults(self):
        config = Config()
        assert config.server == "http://10.0.0.1"
        assert (config.enc, config.n, config.type, config.acid) == (
            "srun_bx1",
            200,
            1,
            1,
        )
        assert (config.retry_count, config.retry_delay) == (10, 500)
        assert not config.strict_bind
        assert not config.double_stack
        assert config.cert_verification.mode is CertMode.SYSTEM

    def test_from_dict(self):
        config = Config.from_dict(
            {
                "server": "https://portal.example.edu",
                "server_ip": None,
                "verify_cert": "skip",
                "users": [{"username": "a", "password": "b", "ip": "10.0.0.5"}],
                "acid": 5,
                "double_stack": True,
                "comment": "ignored",
            }
        )
        assert config.server == "https://portal.example.edu"
        assert config.server_ip is None
        assert config.cert_verification.mode is CertMode.SKIP
        assert config.users[0].ip == "10.0.0.5"
        assert config.acid == 5
        assert config.double_stack
        assert not hasattr(config, "comment")

    @pytest.mark.parametrize(
        "data, message",
        [
            ([], "JSON object"),
            ({"users": {}}, "'users' must be a list"),
            ({"acid": "5"}, "'acid' must be of type int"),
            ({"retry_count": True}, "'retry_count' must be of type int"),
            ({"strict_bind": "yes"}, "'strict_bind' must be of type bool"),
        ],
    )
    def test_from_dict_invalid(self, data, message):
        with pytest.raises(ConfigError, match=message):
            Config.from_dict(data)

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps({"server": "http://gw", "users": [{"username": "a", "password": "b"}]})
        )
        config = Config.from_json_file(path)
        assert config.server == "http://gw"
        assert [u.username for u in config.users] == ["a"]

    def test_from_json_file_missing(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read config file"):
            Config.from_json_file(tmp_path / "nope.json")

    def test_from_json_file_malformed(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Cannot parse config file"):
            Config.from_json_file(path)

    def test_generated_example_round_trips(self, tmp_path):
        path = tmp_path / "example.json"
        generate_example_config(path)
        loaded = Config.from_json_file(path)
        assert loaded.to_dict() == example_config().to_dict()
        assert len(loaded.users) == 2
        assert loaded.users[1].iface == "your_interface_name"

    def test_generate_example_config_unwritable(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot write config file"):
            generate_example_config(tmp_path / "missing" / "example.json")


class TestFromArgs:
    def test_cli_overrides_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "server": "http://gw",
                    "acid": 3,
                    "users": [{"username": "a", "password": "b"}],
                }
            )
        )
        ns = build_client_parser().parse_args(
            ["-c", str(path), "--acid", "9", "--retry-delay", "0", "login"]
        )

        config = Config.from_args(ns)

        assert config.server == "http://gw"
        assert config.acid == 9
        assert config.retry_delay == 0
        assert [u.username for u in config.users] == ["a"]

    def test_cli_user_replaces_file_users(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"users": [{"username": "a", "password": "b"}]}))
        ns = build_client_parser().parse_args(
            ["-c", str(path), "-u", "cli", "-p", "pw", "--iface", "eth0", "status"]
        )

        config = Config.from_args(ns)

        assert len(config.users) == 1
        assert (config.users[0].username, config.users[0].iface) == ("cli", "eth0")

    def test_lone_username_is_ignored(self, caplog):
        ns = build_client_parser().parse_args(["-u", "cli", "login"])
        config = Config.from_args(ns)
        assert config.users == []
        assert "must be given together" in caplog.text

    def test_bool_options(self):
        ns = build_client_parser().parse_args(
            ["--strict-bind", "true", "--double-stack", "0", "login"]
        )
        config = Config.from_args(ns)
        assert config.strict_bind is True
        assert config.double_stack is False


class TestServerEndpoint:
    @pytest.mark.parametrize(
        "server, expected",
        [
            ("http://10.0.0.1", (False, "10.0.0.1", 80)),
            ("https://portal.example.edu", (True, "portal.example.edu", 443)),
            ("http://gw:8080/", (False, "gw", 8080)),
            ("http://bücher.example", (False, "xn--bcher-kva.example", 80)),
        ],
    )
    def test_server_endpoint(self, server, expected):
        assert Config(server=server).server_endpoint() == expected

    @pytest.mark.parametrize(
        "server, message",
        [
            ("ftp://gw", "Unsupported server scheme"),
            ("10.0.0.1", "Unsupported server scheme"),
            ("http://", "No host"),
            ("http://gw:99999", "Invalid port"),
            ("http://" + "a" * 64 + ".example", "Invalid host"),
        ],
    )
    def test_server_endpoint_invalid(self, server, message):
        with pytest.raises(ConfigError, match=message):
            Config(server=server).server_endpoint()


class TestCheck:
    def test_ip_user(self, local_ips):
        config = Config(users=[User("a", "b", ip="10.0.0.5")])
        config.check()
        assert config.users[0].bind_addr == "10.0.0.5"

    def test_user_without_address(self, local_ips):
        config = Config(users=[User("a", "b")])
        config.check()
        assert config.users[0].bind_addr is None

    def test_iface_user(self, ifaces):
        config = Config(users=[User("a", "b", iface="eth0")])
        config.check()
        assert config.users[0].ip == "10.0.0.5"
        assert config.users[0].bind_addr == "10.0.0.5"

    def test_iface_wins_over_ip(self, ifaces, caplog):
        config = Config(users=[User("a", "b", ip="10.9.9.9", iface="eth0")])
        config.check()
        assert config.users[0].bind_addr == "10.0.0.5"
        assert "does not match" in caplog.text

    def test_unknown_iface(self, ifaces):
        config = Config(users=[User("a", "b", iface="wlan7")])
        with pytest.raises(ConfigError, match="'wlan7' not found"):
            config.check()

    def test_ip_not_local(self, local_ips):
        config = Config(users=[User("a", "b", ip="192.0.2.1")])
        with pytest.raises(ConfigError, match="not found on any interface"):
            config.check()

    @pytest.mark.parametrize(
        "ip, message",
        [("::1", "IPv6 addresses not supported"), ("10.0.0", "Invalid IP")],
    )
    def test_bad_user_ip(self, local_ips, ip, message):
        config = Config(users=[User("a", "b", ip=ip)])
        with pytest.raises(ConfigError, match=message):
            config.check()

    def test_strict_bind_requires_address(self, local_ips):
        config = Config(strict_bind=True, users=[User("a", "b")])
        with pytest.raises(ConfigError, match="required when strict_bind enabled"):
            config.check()

    @pytest.mark.parametrize(
        "config, message",
        [
            (Config(), "No users configured"),
            (Config(users=[User("", "b")]), "Username cannot be empty"),
            (Config(users=[User("a", "")]), "Password cannot be empty"),
            (Config(users=[User("a", "b")], retry_count=0), "retry_count"),
            (Config(users=[User("a", "b")], retry_delay=-1), "retry_delay"),
            (Config(users=[User("a", "b")], server_ip="gw"), "Invalid server_ip"),
            (Config(users=[User("a", "b")], server="gopher://gw"), "scheme"),
        ],
    )
    def test_invalid(self, local_ips, config, message):
        with pytest.raises(ConfigError, match=message) as e:
            config.check()
        assert str(e.value).startswith("Config error: ")
