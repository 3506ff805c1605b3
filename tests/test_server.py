import io
import socket
import threading
import time

import pytest

from fslatency.datablock import VERSION_MAJOR, DataBlock, MessageBlock, Timespec
from fslatency.server import (
    Server,
    format_alarm_status,
    format_normal_status,
    graphite_lines,
    main,
    parse_args,
)
from fslatency.server_state import AlarmCounts, ConfigError, ServerConfig, StatNumbers


def _message(hostname="host-a", text="disk", major=VERSION_MAJOR):
    block = DataBlock(
        measurementcount=10,
        starttime=Timespec(100, 0),
        endtime=Timespec(101, 0),
        min=0.5,
        max=1.5,
        sumx=10.0,
        sumxx=11.0,
    )
    blocks = (block,) + tuple(DataBlock() for _ in range(7))
    return MessageBlock(hostname=hostname, text=text, blocks=blocks, major=major)


def test_parse_args_defaults_match_config():
    assert parse_args([]) == ServerConfig()


def test_parse_args_values():
    config = parse_args(
        ["--port", "1234", "--maxclient", "7", "--latencythresholdfactor", "2.5", "--debug"]
    )
    assert config.port == 1234
    assert config.maxclient == 7
    assert config.latencythresholdfactor == 2.5
    assert config.debug == 1


def test_parse_args_debug_level():
    assert parse_args(["--debug=3"]).debug == 3


def test_parse_args_graphite_options():
    config = parse_args(["--graphitebase", "metric.base", "--graphiteip", "127.0.0.1"])
    assert config.graphitebase == "metric.base"
    assert config.graphiteip == "127.0.0.1"
    assert config.graphiteport == 2003


@pytest.mark.parametrize(
    "argv",
    [
        ["--port", "0"],
        ["--maxclient", "0"],
        ["--udptimeout", "700"],
        ["--udptimeout", "1"],
        ["--rollingwindow", "7"],
        ["--latencythresholdfactor", "-1"],
        ["--bogus"],
    ],
)
def test_parse_args_rejects_invalid(argv):
    with pytest.raises(ConfigError):
        parse_args(argv)


def test_format_normal_status():
    stat = StatNumbers(count=10, minx=-1.0, maxx=2.0, mean=0.5, std=0.25)
    line = format_normal_status("2025-01-31T14:45:20+0100", 3, stat)
    assert line == (
        "2025-01-31T14:45:20+0100 Status: normal. Clients: 3 "
        "ln_ltncy:(N:10 min:-1.000000 max:2.000000 avg:0.500000 std:0.250000)"
    )


def test_format_alarm_status():
    stat = StatNumbers(count=10, minx=-1.0, maxx=2.0, mean=0.5, std=0.25)
    counts = AlarmCounts(alarmed=2, low=1, high=1, empty=0, udp_timeout=1)
    line = format_alarm_status("T", 4, counts, stat)
    assert line == (
        "T ALARM Clients: 4 w/alarms: 2 (ltncy lo:1 ltncy hi:1 stuck:0 lost:1) "
        "ln_ltncy:(N:10 min:-1.000000 max:2.000000 avg:0.500000 std:0.250000)"
    )


def test_graphite_lines():
    lines = graphite_lines("base", 5, AlarmCounts(alarmed=1), StatNumbers(), 1700000000)
    assert len(lines) == 11
    assert lines[0] == "base.totalclients 5 1700000000"
    assert all(line.startswith("base.") for line in lines)
    assert all(line.endswith(" 1700000000") for line in lines)
    assert "base.alarmedclients 1 1700000000" in lines


def test_main_version(capsys):
    assert main(["--version"]) == 0
    assert "fslatency_server 0.4" in capsys.readouterr().err


def test_main_invalid_bind():
    assert main(["--bind", "not-an-ip"]) == 2


def test_main_invalid_option():
    assert main(["--port", "0"]) == 2


def test_handle_datagram_registers_client():
    server = Server(ServerConfig(), out=io.StringIO())
    assert server.handle_datagram(_message().pack()) == 0
    assert server.handle_datagram(_message().pack()) == 0
    assert server.handle_datagram(_message(hostname="host-b").pack()) == 1
    assert server.state.client_count() == 2


def test_handle_datagram_drops_wrong_size():
    server = Server(ServerConfig(), out=io.StringIO())
    assert server.handle_datagram(b"short") is None
    assert server.state.client_count() == 0


def test_handle_datagram_drops_wrong_version():
    server = Server(ServerConfig(), out=io.StringIO())
    assert server.handle_datagram(_message(major=VERSION_MAJOR + 1).pack()) is None
    assert server.state.client_count() == 0


def test_handle_datagram_drops_when_full():
    server = Server(ServerConfig(maxclient=1), out=io.StringIO())
    assert server.handle_datagram(_message(hostname="one").pack()) == 0
    assert server.handle_datagram(_message(hostname="two").pack()) is None
    assert server.state.client_count() == 1


def test_serve_forever_receives_udp():
    server = Server(
        ServerConfig(bind="127.0.0.1", port=0, statusperiod=1000, alarmstatusperiod=1000),
        out=io.StringIO(),
    )
    server.start()
    runner = threading.Thread(target=server.serve_forever, daemon=True)
    runner.start()
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(_message().pack(), server.server_address)
        deadline = time.monotonic() + 5
        while server.state.client_count() == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
        assert server.state.client_count() == 1
    finally:
        server.stop()
        runner.join(5)
    assert not runner.is_alive()


def test_server_address_available_only_after_start():
    server = Server(
        ServerConfig(bind="127.0.0.1", port=0, statusperiod=1000, alarmstatusperiod=1000),
        out=io.StringIO(),
    )
    with pytest.raises(RuntimeError):
        getattr(server, "server_address")
    server.start()
    try:
        host, port = server.server_address
        assert host == "127.0.0.1"
        assert port > 0
    finally:
        server.stop()