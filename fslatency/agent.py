"""Measuring agent: times synchronous writes to a file and reports them over UDP."""

from __future__ import annotations

import argparse
import math
import os
import re
import socket
import stat
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Iterable, NoReturn, Optional, Sequence

from fslatency.datablock import (
    DATABLOCK_ARRAY_LEN,
    EXTREME_BIG_INTERVAL,
    TEXT_LEN,
    VERSION_MAJOR,
    VERSION_MINOR,
    DataBlock,
    MessageBlock,
    Timespec,
)

AGENT_VERSION_MAJOR = 0
AGENT_VERSION_MINOR = 3

DEFAULT_SERVER_PORT = "57005"
BUFFER_CAPACITY = 503
MEASURING_PERIOD = 0.1
SENDING_PERIOD = 1.0
LINE_LEN = 32

_NANOS_PER_SECOND = 1_000_000_000

# Filesystem magic numbers, see statfs(2).
BTRFS_SUPER_MAGIC = 0x9123683E
BTRFS_TEST_MAGIC = 0x73727279
EXT_SUPER_MAGIC = 0x137D
EXT2_OLD_SUPER_MAGIC = 0xEF51
EXT2_SUPER_MAGIC = 0xEF53
EXT3_SUPER_MAGIC = 0xEF53
EXT4_SUPER_MAGIC = 0xEF53
HFS_SUPER_MAGIC = 0x4244
HPFS_SUPER_MAGIC = 0xF995E849
JFFS2_SUPER_MAGIC = 0x72B6
JFS_SUPER_MAGIC = 0x3153464A
MINIX_SUPER_MAGIC = 0x137F
MINIX_SUPER_MAGIC2 = 0x138F
MINIX2_SUPER_MAGIC = 0x2468
MINIX2_SUPER_MAGIC2 = 0x2478
MINIX3_SUPER_MAGIC = 0x4D5A
MSDOS_SUPER_MAGIC = 0x4D44
NTFS_SB_MAGIC = 0x5346544E
REISERFS_SUPER_MAGIC = 0x52654973
XFS_SUPER_MAGIC = 0x58465342
VXFS_SUPER_MAGIC = 0xA501FCF5
ZFS_SUPER_MAGIC = 0x2FC12FC1

KNOWN_LOCAL_FS = frozenset(
    {
        BTRFS_SUPER_MAGIC,
        BTRFS_TEST_MAGIC,
        EXT_SUPER_MAGIC,
        EXT2_OLD_SUPER_MAGIC,
        EXT2_SUPER_MAGIC,
        EXT3_SUPER_MAGIC,
        EXT4_SUPER_MAGIC,
        HFS_SUPER_MAGIC,
        HPFS_SUPER_MAGIC,
        JFFS2_SUPER_MAGIC,
        JFS_SUPER_MAGIC,
        MINIX_SUPER_MAGIC,
        MINIX_SUPER_MAGIC2,
        MINIX2_SUPER_MAGIC,
        MINIX2_SUPER_MAGIC2,
        MINIX3_SUPER_MAGIC,
        MSDOS_SUPER_MAGIC,
        NTFS_SB_MAGIC,
        REISERFS_SUPER_MAGIC,
        XFS_SUPER_MAGIC,
        VXFS_SUPER_MAGIC,
        ZFS_SUPER_MAGIC,
    }
)

# Mount table type names and the magic number the kernel reports for them.
_FS_TYPE_MAGIC = {
    "btrfs": BTRFS_SUPER_MAGIC,
    "ext": EXT_SUPER_MAGIC,
    "ext2": EXT2_SUPER_MAGIC,
    "ext3": EXT3_SUPER_MAGIC,
    "ext4": EXT4_SUPER_MAGIC,
    "hfs": HFS_SUPER_MAGIC,
    "hpfs": HPFS_SUPER_MAGIC,
    "jffs2": JFFS2_SUPER_MAGIC,
    "jfs": JFS_SUPER_MAGIC,
    "minix": MINIX_SUPER_MAGIC,
    "msdos": MSDOS_SUPER_MAGIC,
    "vfat": MSDOS_SUPER_MAGIC,
    "ntfs": NTFS_SB_MAGIC,
    "reiserfs": REISERFS_SUPER_MAGIC,
    "xfs": XFS_SUPER_MAGIC,
    "vxfs": VXFS_SUPER_MAGIC,
    "zfs": ZFS_SUPER_MAGIC,
}

USAGE = (
    "Usage: fslatency --serverip a.b.c.d [--serverport PORT] --file PATH\n"
    "   [--text NAME] [--nocheckfs] [--nomemlock] [--debug] [--version]"
)


class AgentError(Exception):
    """A fatal agent error, carrying the process exit code."""

    def __init__(self, message: str, exit_code: int = 2, show_usage: bool = False) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.show_usage = show_usage


@dataclass
class AgentOptions:
    """Command-line settings of the agent."""

    serverip: Optional[str] = None
    serverport: str = DEFAULT_SERVER_PORT
    text: str = ""
    filename: Optional[str] = None
    hostname: str = ""
    nocheckfs: bool = False
    nomemlock: bool = False
    debug: bool = False
    show_version: bool = False


@dataclass(frozen=True)
class Measurement:
    """Start and end time of one synchronous write."""

    begtime: Timespec
    endtime: Timespec

    @property
    def elapsed(self) -> float:
        """Duration of the write in seconds."""
        return (self.endtime.sec - self.begtime.sec) + (
            self.endtime.nsec - self.begtime.nsec
        ) / _NANOS_PER_SECOND


class MeasurementBuffer:
    """Thread-safe bounded buffer of measurements; the oldest are dropped when full."""

    def __init__(self, capacity: int = BUFFER_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._items: deque[Measurement] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def add(self, measurement: Measurement) -> None:
        """Append a measurement."""
        with self._lock:
            self._items.append(measurement)

    def drain(self) -> list[Measurement]:
        """Remove and return every buffered measurement, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items


class MessageHistory:
    """The last data blocks sent, newest first, wrapped into outgoing messages."""

    def __init__(self, hostname: str, text: str, precision: Timespec) -> None:
        self.hostname = hostname
        self.text = text
        self.precision = precision
        self._blocks: deque[DataBlock] = deque(
            (DataBlock() for _ in range(DATABLOCK_ARRAY_LEN)), maxlen=DATABLOCK_ARRAY_LEN
        )

    def push(self, block: DataBlock) -> None:
        """Put ``block`` in front, dropping the oldest one."""
        self._blocks.appendleft(block)

    def message(self) -> MessageBlock:
        """The message to send for the current history."""
        return MessageBlock(
            hostname=self.hostname,
            text=self.text,
            precision=self.precision,
            blocks=tuple(self._blocks),
        )


def is_known_local_fs(f_type: int) -> bool:
    """True if ``f_type`` is the magic number of a known local filesystem."""
    return f_type in KNOWN_LOCAL_FS


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise AgentError(f"unkown command line option ({message})", show_usage=True)


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="fslatency", add_help=False)
    parser.add_argument("--serverip")
    parser.add_argument("--serverport", default=DEFAULT_SERVER_PORT)
    parser.add_argument("--text", default="")
    parser.add_argument("--file", dest="filename")
    parser.add_argument("--nocheckfs", action="store_true")
    parser.add_argument("--nomemlock", action="store_true")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--version", dest="show_version", action="store_true")
    return parser


def parse_args(argv: Optional[Sequence[str]]) -> AgentOptions:
    """Parse the command line; raise AgentError on invalid or missing options."""
    args = _build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))
    if args.show_version:
        return AgentOptions(show_version=True)
    if args.serverip is None:
        raise AgentError("you must specify a --serverip  (IPv4 dotted form)")
    if args.filename is None:
        raise AgentError("you must specify a --file  (filepath to a local filesystem)")
    try:
        hostname = socket.gethostname()
    except OSError as exc:
        raise AgentError(f"cannot get hostname: {exc}", exit_code=3) from exc
    options = AgentOptions(
        serverip=args.serverip,
        serverport=args.serverport,
        text=args.text,
        filename=args.filename,
        hostname=hostname,
        nocheckfs=args.nocheckfs,
        nomemlock=args.nomemlock,
        debug=args.debug,
    )
    if len(options.text) > TEXT_LEN:
        print(f"Warning: too long --text. Truncated to {TEXT_LEN} char.", file=sys.stderr)
    if options.debug:
        print("DEBUG Options:")
        print(f"    --serverip {options.serverip}")
        print(f"    --serverport {options.serverport}")
        print(f'    --text "{options.text}"')
        print(f'    --file "{options.filename}"')
        print(f"    --nocheckfs {int(options.nocheckfs)}")
        print(f"    --nomemlock {int(options.nomemlock)}")
        print(f"    --debug {int(options.debug)}")
        print(f"  hostname {options.hostname}")
    return options


def _log_ms(seconds: float) -> float:
    value = seconds * 1000
    if value > 0:
        return math.log(value)
    return -math.inf if value == 0 else math.nan


def summarize(measurements: Iterable[Measurement]) -> DataBlock:
    """Condense measurements into a data block of ln(latency in ms) statistics."""
    items = list(measurements)
    mint = EXTREME_BIG_INTERVAL
    maxt = -EXTREME_BIG_INTERVAL
    sumx = sumxx = 0.0
    for item in items:
        value = _log_ms(item.elapsed)
        if mint > value:
            mint = value
        if maxt < value:
            maxt = value
        sumx += value
        sumxx += value * value
    if items:
        starttime, endtime = items[0].begtime, items[-1].endtime
    else:
        starttime = endtime = Timespec()
    return DataBlock(
        measurementcount=len(items),
        starttime=starttime,
        endtime=endtime,
        min=mint,
        max=maxt,
        sumx=sumx,
        sumxx=sumxx,
    )


def timestamp_line(begtime: Timespec) -> bytes:
    """The fixed 32-byte record written to the measuring file."""
    line = f"{begtime.sec:9d}.{begtime.nsec // 10:08d}           \n".encode("ascii") + b"\0"
    return line[:LINE_LEN].ljust(LINE_LEN, b"\0")


def _now() -> Timespec:
    return Timespec(*divmod(time.time_ns(), _NANOS_PER_SECOND))


def measure_once(fd: int) -> Measurement:
    """Rewrite the record at the start of ``fd``, fsync it and time the whole."""
    begtime = _now()
    line = timestamp_line(begtime)
    try:
        os.lseek(fd, 0, os.SEEK_SET)
    except OSError as exc:
        raise AgentError(f"cannot lseek: {exc}") from exc
    try:
        os.write(fd, line)
    except OSError as exc:
        raise AgentError(f"cannot write: {exc}") from exc
    try:
        os.fsync(fd)
    except OSError as exc:
        raise AgentError(f"cannot fsync: {exc}") from exc
    return Measurement(begtime, _now())


def _unescape_mount_field(field: str) -> str:
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def _filesystem_type(path: str, mounts_file: str = "/proc/self/mounts") -> str:
    real = os.path.realpath(path)
    best_mount: Optional[str] = None
    best_type = ""
    with open(mounts_file, encoding="utf-8", errors="surrogateescape") as mounts:
        for line in mounts:
            fields = line.split()
            if len(fields) < 3:
                continue
            mountpoint = _unescape_mount_field(fields[1])
            prefix = mountpoint.rstrip("/") + "/"
            if real != mountpoint and not real.startswith(prefix):
                continue
            if best_mount is None or len(mountpoint) >= len(best_mount):
                best_mount, best_type = mountpoint, fields[2]
    if best_mount is None:
        raise OSError(f"no mount point found for {real}")
    return best_type


def open_measuring_file(path: str, check_fs: bool) -> int:
    """Open (creating if needed) the measuring file for synchronous writes."""
    flags = (
        os.O_WRONLY
        | os.O_CREAT
        | getattr(os, "O_SYNC", 0)
        | getattr(os, "O_DSYNC", 0)
        | getattr(os, "O_NOATIME", 0)
    )
    try:
        fd = os.open(path, flags, 0o700)
    except OSError as exc:
        raise AgentError(f"File cannot create for write: {exc}", exit_code=1) from exc
    try:
        try:
            mode = os.fstat(fd).st_mode
        except OSError as exc:
            raise AgentError(f"File cannot fstat: {exc}") from exc
        if not stat.S_ISREG(mode):
            raise AgentError("The file is not a regular file.")
        if check_fs:
            try:
                fstype = _filesystem_type(path)
            except OSError as exc:
                raise AgentError(f"cannot determine filesystem type: {exc}") from exc
            magic = _FS_TYPE_MAGIC.get(fstype)
            if magic is None or not is_known_local_fs(magic):
                raise AgentError(
                    f"unkown filesystem type {fstype}. This program is only for testing "
                    "local filesystems. No NFS, CIFS nor tmpfs nor fuse."
                )
    except AgentError:
        os.close(fd)
        raise
    return fd


def measuring_loop(fd: int, buffer: MeasurementBuffer, stop: threading.Event) -> None:
    """Measure a write every tenth of a second until ``stop`` is set."""
    while not stop.is_set():
        buffer.add(measure_once(fd))
        stop.wait(MEASURING_PERIOD)


def datasender_loop(
    sock: socket.socket,
    options: AgentOptions,
    buffer: MeasurementBuffer,
    precision: Timespec,
    stop: threading.Event,
) -> None:
    """Every second, summarize the buffer and send the message history."""
    history = MessageHistory(options.hostname, options.text, precision)
    while not stop.wait(SENDING_PERIOD):
        block = summarize(buffer.drain())
        history.push(block)
        if options.debug:
            print(block.describe(), file=sys.stderr)
        try:
            sock.send(history.message().pack())
        except OSError as exc:
            if options.debug:
                print(f"Warning: error in udp send(): {exc}", file=sys.stderr)


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def _server_address(options: AgentOptions) -> tuple[str, int]:
    port = _atoi(options.serverport) & 0xFFFF
    if port == 0:
        raise AgentError(f'invalid serverport "{options.serverport}"')
    try:
        packed = socket.inet_aton(options.serverip or "")
    except OSError:
        raise AgentError(f'invalid serverip "{options.serverip}"') from None
    return socket.inet_ntoa(packed), port


def _report(exc: AgentError) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    if exc.show_usage:
        print(USAGE)


def _run_measuring(fd: int, buffer: MeasurementBuffer, stop: threading.Event) -> None:
    try:
        measuring_loop(fd, buffer, stop)
    except AgentError as exc:
        _report(exc)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the agent; return the process exit code."""
    try:
        options = parse_args(argv)
    except AgentError as exc:
        _report(exc)
        return exc.exit_code
    if options.show_version:
        print(
            f"fslatency {AGENT_VERSION_MAJOR}.{AGENT_VERSION_MINOR}. "
            f"UDP version {VERSION_MAJOR}.{VERSION_MINOR}",
            file=sys.stderr,
        )
        return 0

    try:
        address = _server_address(options)
    except AgentError as exc:
        _report(exc)
        return exc.exit_code

    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as exc:
        print(f"Error: cannot allocate socket: {exc}", file=sys.stderr)
        return 1
    with sock:
        try:
            sock.connect(address)
        except OSError as exc:
            print(f"Error: cannot connect to remote server: {exc}", file=sys.stderr)
            return 1
        try:
            fd = open_measuring_file(options.filename or "", not options.nocheckfs)
        except AgentError as exc:
            _report(exc)
            return exc.exit_code
        try:
            return _run(fd, sock, options)
        finally:
            os.close(fd)


def _run(fd: int, sock: socket.socket, options: AgentOptions) -> int:
    buffer = MeasurementBuffer(BUFFER_CAPACITY)
    stop = threading.Event()
    if options.debug:
        print("Info: infinite measuring loop starts. Press ctrl-c when bored")
    measuring = threading.Thread(
        target=_run_measuring, args=(fd, buffer, stop), name="measuring", daemon=True
    )
    measuring.start()
    if options.debug:
        print("DEBUG measuring thread started")

    precision = Timespec.from_seconds(time.clock_getres(time.CLOCK_REALTIME))
    if options.debug:
        print(f"DEBUG Time measuring precision: {precision.nsec} nanoseconds")
    sender = threading.Thread(
        target=datasender_loop,
        args=(sock, options, buffer, precision, stop),
        name="datasender",
        daemon=True,
    )
    sender.start()
    if options.debug:
        print("DEBUG datasender thread started")
    # --nomemlock is accepted, but the interpreter offers no way to pin its memory.

    try:
        while measuring.is_alive():
            measuring.join(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        stop.set()
        measuring.join(2 * SENDING_PERIOD)
        sender.join(2 * SENDING_PERIOD)
    return 0


if __name__ == "__main__":
    sys.exit(main())