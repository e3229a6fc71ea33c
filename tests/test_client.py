import json

import pytest
from _helpers import FakeGateway

from srunportal import client, srun
from srunportal.client import (
    MIB,
    build_client_parser,
    format_status,
    main,
    process_user,
    run_users,
)
from srunportal.config import Config, User
from srunportal.protocol import PATH_GET_CHALLENGE, PATH_INFO, PATH_PORTAL, TransportError
from srunportal.srun import InfoResponse

ONLINE = {
    "error": "ok",
    "online_ip": "10.0.0.5",
    "user_name": "u1",
    "user_mac": "aa:bb:cc:dd:ee:ff",
    "bytes_in": 3 * MIB,
    "bytes_out": MIB,
    "sum_seconds": 7200,
}
OFFLINE = {"error": "not_online_error", "online_ip": "10.0.0.5"}
CHALLENGE = {"challenge": "abc123", "res": "ok"}
ACCEPTED = {"res": "ok", "error": "ok", "suc_msg": "done"}


@pytest.fixture
def gateway(monkeypatch, sleeps):
    def _(routes):
        fake = FakeGateway(routes)
        monkeypatch.setattr(srun, "HttpClient", fake)
        return fake

    return _


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(srun.time, "sleep", calls.append)
    return calls


class TestParser:
    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_client_parser().parse_args([])

    def test_parser_defaults(self):
        ns = build_client_parser().parse_args(["status"])
        assert ns.command == "status"
        assert ns.log_level == "INFO"
        assert not ns.force
        assert not ns.verbose
        assert ns.acid is None
        assert ns.config is None

    @pytest.mark.parametrize(
        "argv",
        [
            ["--retry-count", "0", "login"],
            ["--retry-delay", "-1", "login"],
            ["--acid", "x", "login"],
            ["--double-stack", "maybe", "login"],
        ],
    )
    def test_parser_rejects_bad_values(self, argv):
        with pytest.raises(SystemExit):
            build_client_parser().parse_args(argv)

    def test_gen_config_file_option(self):
        ns = build_client_parser().parse_args(["gen-config", "--file", "x.json"])
        assert ns.file == "x.json"


class TestFormatStatus:
    def test_offline(self):
        assert format_status(False, InfoResponse(online_ip="10.0.0.5")) == [
            "Not logged in. Current online IP: 10.0.0.5"
        ]

    def test_online(self):
        lines = format_status(True, InfoResponse.from_dict(ONLINE))
        assert lines[0] == (
            "Already logged in at 10.0.0.5 (aa:bb:cc:dd:ee:ff) as u1."
        )
        assert lines[1].startswith("Bytes in: 3 M, bytes out: 1 M.")
        assert lines[1].endswith("Sum Hours: 2 H")
        assert len(lines) == 2

    def test_online_unknown_counters_and_add_time(self):
        info = InfoResponse(error="ok", online_ip="10.0.0.5", add_time=0)
        lines = format_status(True, info)
        assert lines[0] == "Already logged in at 10.0.0.5 (?) as ?."
        assert "Bytes in: ? M" in lines[1]
        assert lines[2].startswith("Online since: ")

    def test_online_add_time_out_of_range(self):
        info = InfoResponse(error="ok", online_ip="10.0.0.5", add_time=10**14)
        assert format_status(True, info)[2] == f"Online since: {10**14}"


class TestProcessUser:
    def test_login_skipped_when_online(self, gateway, config, user, readout):
        fake = gateway({PATH_INFO: [ONLINE]})

        assert process_user(config, user, "login")

        assert fake.paths() == [PATH_INFO]
        assert readout().startswith("Already logged in at 10.0.0.5")

    def test_login_forced_when_online(self, gateway, config, user, readout):
        fake = gateway(
            {PATH_INFO: [ONLINE], PATH_GET_CHALLENGE: [CHALLENGE], PATH_PORTAL: [ACCEPTED]}
        )

        assert process_user(config, user, "login", force=True)

        assert fake.paths() == [PATH_INFO, PATH_GET_CHALLENGE, PATH_PORTAL]
        assert readout().endswith("Login successful for u1: done")
        assert fake.closed

    def test_login_when_offline(self, gateway, config, user):
        fake = gateway(
            {PATH_INFO: [OFFLINE], PATH_GET_CHALLENGE: [CHALLENGE], PATH_PORTAL: [ACCEPTED]}
        )
        assert process_user(config, user, "login")
        assert fake.paths() == [PATH_INFO, PATH_GET_CHALLENGE, PATH_PORTAL]

    def test_logout_skipped_when_offline(self, gateway, config, user):
        fake = gateway({PATH_INFO: [OFFLINE]})
        assert process_user(config, user, "logout")
        assert fake.paths() == [PATH_INFO]

    def test_logout_when_online(self, gateway, config, user, readout):
        fake = gateway({PATH_INFO: [ONLINE], PATH_PORTAL: [ACCEPTED]})
        assert process_user(config, user, "logout")
        assert fake.paths() == [PATH_INFO, PATH_PORTAL]
        assert readout().endswith("Logout successful for u1: done")

    def test_status_only_queries(self, gateway, config, user):
        fake = gateway({PATH_INFO: [OFFLINE]})
        assert process_user(config, user, "status", force=True)
        assert fake.paths() == [PATH_INFO]

    def test_failure_is_reported(self, gateway, config, user, readerr):
        gateway({PATH_INFO: [TransportError("Receive timeout: timed out")]})

        assert not process_user(config, user, "status")

        assert "u1: Receive timeout: timed out" in readerr()

    def test_login_failure_is_reported(self, gateway, config, user, readerr):
        gateway(
            {
                PATH_INFO: [OFFLINE],
                PATH_GET_CHALLENGE: [CHALLENGE],
                PATH_PORTAL: [{"res": "login_error", "error": "login_error"}],
            }
        )
        assert not process_user(config, user, "login")
        assert "u1: Login error: Exceeded maximum retry attempts" in readerr()

    def test_inferred_bind_addr_does_not_leak(self, gateway, config):
        gateway({PATH_INFO: [OFFLINE]})
        user = User("u1", "pw")
        assert process_user(config, user, "status")
        assert user.bind_addr is None


class TestRunUsers:
    def test_one_failure_does_not_stop_others(self, gateway):
        fake = gateway({PATH_INFO: [TransportError("boom"), OFFLINE]})
        config = Config(
            server="http://portal.example.edu",
            users=[User("first", "pw"), User("second", "pw")],
        )

        assert run_users(config, "status") == 1
        assert fake.paths() == [PATH_INFO, PATH_INFO]

    def test_odd_add_time_does_not_stop_others(self, gateway):
        fake = gateway({PATH_INFO: [dict(ONLINE, add_time=10**14), OFFLINE]})
        config = Config(users=[User("first", "pw"), User("second", "pw")])

        assert run_users(config, "status") == 0
        assert fake.paths() == [PATH_INFO, PATH_INFO]

    def test_all_succeed(self, gateway):
        gateway({PATH_INFO: [OFFLINE]})
        config = Config(users=[User("first", "pw"), User("second", "pw")])
        assert run_users(config, "status") == 0


class TestMain:
    def test_gen_config(self, tmp_path, state_dir, restore_root_logging, readout):
        path = tmp_path / "generated.json"

        assert main(["gen-config", "--file", str(path)]) == 0

        data = json.loads(path.read_text())
        assert data["server"] == "http://10.0.0.1"
        assert len(data["users"]) == 2
        assert readout() == f"Example configuration written to {path}"
        assert (state_dir / "srunportal" / "logs" / "client.log").exists()

    def test_gen_config_unwritable(self, tmp_path, state_dir, restore_root_logging):
        assert main(["gen-config", "--file", str(tmp_path / "no" / "x.json")]) == 2

    def test_interfaces(self, monkeypatch, state_dir, restore_root_logging, readout):
        monkeypatch.setattr(
            client, "list_interfaces", lambda: [("lo", "127.0.0.1"), ("eth0", "10.0.0.5")]
        )
        monkeypatch.setattr(client, "list_ipv6_interfaces", lambda: [("lo", "::1")])
        assert main(["interfaces"]) == 0
        assert readout() == (
            "(IPv4) lo: 127.0.0.1\n(IPv4) eth0: 10.0.0.5\n(IPv6) lo: ::1"
        )

    def test_config_error(self, state_dir, restore_root_logging, readerr):
        assert main(["login"]) == 2
        assert "No users configured" in readerr()

    def test_login(self, gateway, state_dir, restore_root_logging, readout):
        fake = gateway(
            {PATH_INFO: [OFFLINE], PATH_GET_CHALLENGE: [CHALLENGE], PATH_PORTAL: [ACCEPTED]}
        )

        rc = main(["-s", "http://portal.example.edu", "-u", "u1", "-p", "pw", "login"])

        assert rc == 0
        assert fake.init_args == (False, "portal.example.edu", 80)
        assert fake.paths() == [PATH_INFO, PATH_GET_CHALLENGE, PATH_PORTAL]
        assert "Login successful for u1: done" in readout()

    def test_status_failure_exit_code(self, gateway, state_dir, restore_root_logging):
        gateway({PATH_INFO: [TransportError("boom")]})
        assert main(["-u", "u1", "-p", "pw", "status"]) == 1
