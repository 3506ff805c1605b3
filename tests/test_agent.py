import math
import os
import socket
import threading
import time

import pytest

from fslatency.agent import (
    AgentError,
    AgentOptions,
    Measurement,
    MeasurementBuffer,
    MessageHistory,
    EXT4_SUPER_MAGIC,
    XFS_SUPER_MAGIC,
    datasender_loop,
    is_known_local_fs,
    main,
    measure_once,
    measuring_loop,
    open_measuring_file,
    parse_args,
    summarize,
    timestamp_line,
)
from fslatency.datablock import (
    DATABLOCK_ARRAY_LEN,
    EXTREME_BIG_INTERVAL,
    MESSAGE_SIZE,
    DataBlock,
    MessageBlock,
    Timespec,
)


def _m(beg_sec, beg_nsec, end_sec, end_nsec):
    return Measurement(Timespec(beg_sec, beg_nsec), Timespec(end_sec, end_nsec))


def test_known_local_filesystems():
    assert is_known_local_fs(EXT4_SUPER_MAGIC) is True
    assert is_known_local_fs(XFS_SUPER_MAGIC) is True
    assert is_known_local_fs(0x6969) is False


def test_parse_args_defaults():
    opts = parse_args(["--serverip", "127.0.0.1", "--file", "/tmp/probe"])
    assert opts.serverip == "127.0.0.1"
    assert opts.filename == "/tmp/probe"
    assert opts.serverport == "57005"
    assert opts.text == ""
    assert opts.hostname == socket.gethostname()
    assert (opts.nocheckfs, opts.nomemlock, opts.debug) == (False, False, False)


def test_parse_args_flags():
    opts = parse_args(
        ["--serverip=10.0.0.1", "--file=f", "--text", "disk", "--nocheckfs", "--nomemlock"]
    )
    assert opts.text == "disk"
    assert opts.nocheckfs is True
    assert opts.nomemlock is True


def test_parse_args_missing_serverip():
    with pytest.raises(AgentError) as info:
        parse_args(["--file", "f"])
    assert info.value.exit_code == 2


def test_parse_args_missing_file():
    with pytest.raises(AgentError) as info:
        parse_args(["--serverip", "127.0.0.1"])
    assert info.value.exit_code == 2
    assert "--file" in str(info.value)


def test_parse_args_unknown_option():
    with pytest.raises(AgentError) as info:
        parse_args(["--bogus"])
    assert info.value.show_usage is True


def test_parse_args_version():
    assert parse_args(["--version"]).show_version is True


def test_summarize_empty():
    block = summarize([])
    assert block.measurementcount == 0
    assert block.min == EXTREME_BIG_INTERVAL
    assert block.max == -EXTREME_BIG_INTERVAL
    assert block.sumx == 0.0 and block.sumxx == 0.0
    assert block.starttime.is_zero() and block.endtime.is_zero()


def test_summarize_one_millisecond_is_zero_log():
    block = summarize([_m(1, 0, 1, 1_000_000)])
    assert block.measurementcount == 1
    assert block.min == pytest.approx(0.0, abs=1e-9)
    assert block.max == pytest.approx(0.0, abs=1e-9)


def test_summarize_invariants():
    items = [_m(10, 0, 10, 2_000_000), _m(11, 0, 11, 30_000_000), _m(12, 0, 12, 500_000)]
    block = summarize(items)
    assert block.measurementcount == 3
    assert block.starttime == items[0].begtime
    assert block.endtime == items[-1].endtime
    assert block.min < block.max
    logs = sorted(math.log(i.elapsed * 1000) for i in items)
    assert block.min == pytest.approx(logs[0])
    assert block.max == pytest.approx(logs[-1])
    assert block.sumx == pytest.approx(sum(logs))
    assert block.sumxx == pytest.approx(sum(v * v for v in logs))


def test_summarize_zero_elapsed():
    block = summarize([_m(5, 0, 5, 0)])
    assert block.min == -math.inf


def test_timestamp_line_layout():
    line = timestamp_line(Timespec(1738000000, 123456789))
    assert line == b"1738000000.12345678           \n\x00"
    assert len(line) == 32


def test_timestamp_line_short_seconds():
    line = timestamp_line(Timespec(5, 0))
    assert len(line) == 32
    assert line.startswith(b"        5.00000000")


def test_buffer_drain_order_and_empty():
    buffer = MeasurementBuffer()
    items = [_m(i, 0, i, 1) for i in range(3)]
    for item in items:
        buffer.add(item)
    assert len(buffer) == 3
    assert buffer.drain() == items
    assert buffer.drain() == []


def test_buffer_keeps_newest_when_full():
    buffer = MeasurementBuffer(2)
    items = [_m(i, 0, i, 1) for i in range(3)]
    for item in items:
        buffer.add(item)
    assert buffer.drain() == items[1:]


def test_buffer_rejects_bad_capacity():
    with pytest.raises(ValueError):
        MeasurementBuffer(0)


def test_history_initial_and_push():
    history = MessageHistory("host", "text", Timespec(0, 1))
    assert history.message().blocks == tuple(DataBlock() for _ in range(DATABLOCK_ARRAY_LEN))
    a = summarize([_m(1, 0, 1, 1000)])
    b = summarize([_m(2, 0, 2, 1000)])
    history.push(a)
    history.push(b)
    msg = history.message()
    assert msg.blocks[0] == b
    assert msg.blocks[1] == a
    assert msg.hostname == "host"
    assert msg.is_compatible()


def test_history_drops_oldest():
    history = MessageHistory("h", "", Timespec())
    blocks = [summarize([_m(i + 1, 0, i + 1, 1000)]) for i in range(DATABLOCK_ARRAY_LEN + 1)]
    for block in blocks:
        history.push(block)
    msg = history.message()
    assert len(msg.blocks) == DATABLOCK_ARRAY_LEN
    assert msg.blocks == tuple(reversed(blocks[1:]))


def test_measure_once_writes_record(tmp_path):
    path = tmp_path / "probe"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o600)
    try:
        m = measure_once(fd)
        measure_once(fd)
    finally:
        os.close(fd)
    data = path.read_bytes()
    assert len(data) == 32
    assert m.endtime >= m.begtime


def test_measure_once_bad_fd():
    r, w = os.pipe()
    os.close(w)
    os.close(r)
    with pytest.raises(AgentError):
        measure_once(r)


def test_open_measuring_file_creates(tmp_path):
    path = tmp_path / "probe"
    fd = open_measuring_file(str(path), False)
    try:
        assert path.is_file()
        measure_once(fd)
    finally:
        os.close(fd)
    assert len(path.read_bytes()) == 32


def test_open_measuring_file_directory(tmp_path):
    with pytest.raises(AgentError) as info:
        open_measuring_file(str(tmp_path), False)
    assert info.value.exit_code == 1


def test_measuring_loop_collects(tmp_path):
    fd = os.open(tmp_path / "probe", os.O_WRONLY | os.O_CREAT, 0o600)
    buffer = MeasurementBuffer()
    stop = threading.Event()
    thread = threading.Thread(target=measuring_loop, args=(fd, buffer, stop))
    thread.start()
    deadline = time.monotonic() + 5
    while len(buffer) < 2 and time.monotonic() < deadline:
        time.sleep(0.05)
    stop.set()
    thread.join(5)
    os.close(fd)
    items = buffer.drain()
    assert len(items) >= 2
    assert all(i.endtime >= i.begtime for i in items)


def test_datasender_loop_sends_message():
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    receiver.settimeout(5)
    sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sender.connect(receiver.getsockname())
    buffer = MeasurementBuffer()
    buffer.add(_m(1, 0, 1, 1_000_000))
    options = AgentOptions(serverip="127.0.0.1", filename="f", hostname="probe", text="disk")
    stop = threading.Event()
    thread = threading.Thread(
        target=datasender_loop, args=(sender, options, buffer, Timespec(0, 1), stop)
    )
    thread.start()
    try:
        data = receiver.recv(MESSAGE_SIZE + 16)
    finally:
        stop.set()
        thread.join(5)
        sender.close()
        receiver.close()
    msg = MessageBlock.unpack(data)
    assert msg.hostname == "probe"
    assert msg.text == "disk"
    assert msg.blocks[0].measurementcount == 1
    assert msg.blocks[1] == DataBlock()


def test_main_version():
    assert main(["--version"]) == 0


def test_main_missing_file():
    assert main(["--serverip", "127.0.0.1"]) == 2


def test_main_unknown_option_prints_usage(capsys):
    assert main(["--bogus"]) == 2
    assert "Usage: fslatency" in capsys.readouterr().out


@pytest.mark.parametrize("port", ["0", "abc", "65536"])
def test_main_invalid_port(port, tmp_path):
    code = main(["--serverip", "127.0.0.1", "--serverport", port, "--file", str(tmp_path / "f")])
    assert code == 2


def test_main_invalid_ip(tmp_path, capsys):
    code = main(["--serverip", "999.1.1.1", "--file", str(tmp_path / "f")])
    assert code == 2
    assert "invalid serverip" in capsys.readouterr().err