"""Collecting server: receives agent datagrams, raises alarms and reports status."""

from __future__ import annotations

import argparse
import logging
import re
import socket
import sys
import threading
import time
from typing import Callable, NoReturn, Optional, Sequence, TextIO

from fslatency.datablock import (
    MESSAGE_SIZE,
    VERSION_MAJOR,
    VERSION_MINOR,
    MessageBlock,
    MessageFormatError,
)
from fslatency.nameregistry import RegistryFullError
from fslatency.server_state import (
    AlarmCounts,
    ConfigError,
    ServerConfig,
    ServerState,
    StatNumbers,
)

SERVER_VERSION_MAJOR = 0
SERVER_VERSION_MINOR = 4

TIMEFORMAT = "%Y-%m-%dT%H:%M:%S%z"
HOUSEKEEPING_PERIOD = 1.0
GRAPHITE_PERIOD = 60.0
_POLL = 0.5

USAGE = (
    "Usage: fslatency_server [--bind a.b.c.d] [--port PORT] [--maxclient 509]\n"
    "   [--timetoforget 600] [--udptimeout 3] [--alarmstatusperiod 1]\n"
    "   [--statusperiod 300] [--alarmtimeout 8] [--latencythresholdfactor 15.0]\n"
    "   [--rollingwindow 60] [--minimummeasurementcount 60]\n"
    "   [--graphitebase metric.path.base --graphiteip 1.2.3.4 [--graphiteport 2003]]\n"
    "   [--nomemlock] [--debug[=1]] [--version]"
)

logger = logging.getLogger("fslatency.server")


class _UsageError(ConfigError):
    """An unknown or malformed command-line option."""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise _UsageError(f"unkown command line option ({message})")


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def _atof(text: str) -> float:
    match = re.match(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", text)
    return float(match.group(1)) if match else 0.0


def _ushort(text: str) -> int:
    return _atoi(text) & 0xFFFF


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="fslatency_server", add_help=False)
    parser.add_argument("--bind", default="0.0.0.0")
    parser.add_argument("--port", type=_ushort, default=57005)
    parser.add_argument("--maxclient", type=_atoi, default=509)
    parser.add_argument("--timetoforget", type=_atoi, default=600)
    parser.add_argument("--udptimeout", type=_atoi, default=3)
    parser.add_argument("--alarmtimeout", type=_atoi, default=8)
    parser.add_argument("--statusperiod", type=_atoi, default=300)
    parser.add_argument("--alarmstatusperiod", type=_atoi, default=1)
    parser.add_argument("--latencythresholdfactor", type=_atof, default=15.0)
    parser.add_argument("--rollingwindow", type=_atoi, default=60)
    parser.add_argument("--minimummeasurementcount", type=_atoi, default=60)
    parser.add_argument("--graphitebase")
    parser.add_argument("--graphiteip")
    parser.add_argument("--graphiteport", type=_ushort, default=2003)
    parser.add_argument("--nomemlock", action="store_true")
    parser.add_argument("--debug", nargs="?", const="1", default=None)
    parser.add_argument("--version", dest="show_version", action="store_true")
    return parser


def _parse(argv: Optional[Sequence[str]]) -> tuple[ServerConfig, bool]:
    args = _build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))
    config = ServerConfig(
        bind=args.bind,
        port=args.port,
        maxclient=args.maxclient,
        timetoforget=args.timetoforget,
        udptimeout=args.udptimeout,
        alarmtimeout=args.alarmtimeout,
        statusperiod=args.statusperiod,
        alarmstatusperiod=args.alarmstatusperiod,
        latencythresholdfactor=args.latencythresholdfactor,
        rollingwindow=args.rollingwindow,
        minimummeasurementcount=args.minimummeasurementcount,
        graphitebase=args.graphitebase,
        graphiteip=args.graphiteip,
        graphiteport=args.graphiteport,
        nomemlock=args.nomemlock,
        debug=0 if args.debug is None else _atoi(args.debug),
    )
    return config, args.show_version


def _validate(config: ServerConfig) -> ServerConfig:
    for warning in config.validate():
        print(f"Warning: {warning}", file=sys.stderr)
    if config.debug:
        lines = [
            "DEBUG Options:",
            f"    --bind                    {config.bind}",
            f"    --port                    {config.port}",
            f"    --maxclient               {config.maxclient}",
            f"    --timetoforget            {config.timetoforget}",
            f"    --udptimeout              {config.udptimeout}",
            f"    --alarmtimeout            {config.alarmtimeout}",
            f"    --statusperiod            {config.statusperiod}",
            f"    --alarmstatusperiod       {config.alarmstatusperiod}",
            f"    --latencythresholdfactor  {config.latencythresholdfactor:f}",
            f"    --rollingwindow           {config.rollingwindow}",
            f"    --graphitebase            {config.graphitebase}",
            f"    --graphiteip              {config.graphiteip}",
            f"    --graphiteport            {config.graphiteport}",
            f"    --nomemlock {int(config.nomemlock)}",
            f"    --debug {config.debug}",
        ]
        print("\n".join(lines), file=sys.stderr)
    return config


def parse_args(argv: Optional[Sequence[str]]) -> ServerConfig:
    """Parse and validate the command line; raise ConfigError when it is invalid."""
    config, _ = _parse(argv)
    return _validate(config)


def format_normal_status(timestamp: str, clients: int, stat: StatNumbers) -> str:
    """The periodic status line printed while no alarm is active."""
    return (
        f"{timestamp} Status: normal. Clients: {clients} "
        f"ln_ltncy:(N:{stat.count} min:{stat.minx:f} max:{stat.maxx:f} "
        f"avg:{stat.mean:f} std:{stat.std:f})"
    )


def format_alarm_status(
    timestamp: str, clients: int, counts: AlarmCounts, stat: StatNumbers
) -> str:
    """The periodic status line printed while an alarm is active."""
    return (
        f"{timestamp} ALARM Clients: {clients} w/alarms: {counts.alarmed} "
        f"(ltncy lo:{counts.low} ltncy hi:{counts.high} stuck:{counts.empty} "
        f"lost:{counts.udp_timeout}) "
        f"ln_ltncy:(N:{stat.count} min:{stat.minx:f} max:{stat.maxx:f} "
        f"avg:{stat.mean:f} std:{stat.std:f})"
    )


def graphite_lines(
    base: str, clients: int, counts: AlarmCounts, stat: StatNumbers, curtime: int
) -> list[str]:
    """Metric lines in the graphite plaintext format, without line terminators."""
    return [
        f"{base}.totalclients {clients} {curtime}",
        f"{base}.alarmedclients {counts.alarmed} {curtime}",
        f"{base}.latencylow {counts.low} {curtime}",
        f"{base}.latencyhigh {counts.high} {curtime}",
        f"{base}.stuckedclients {counts.empty} {curtime}",
        f"{base}.lostclients {counts.udp_timeout} {curtime}",
        f"{base}.ln_latency.datapoints {stat.count} {curtime}",
        f"{base}.ln_latency.min {stat.minx:f} {curtime}",
        f"{base}.ln_latency.max {stat.maxx:f} {curtime}",
        f"{base}.ln_latency.mean {stat.mean:f} {curtime}",
        f"{base}.ln_latency.std {stat.std:f} {curtime}",
    ]


def _timestamp(now: float) -> str:
    return time.strftime(TIMEFORMAT, time.localtime(now))


class Server:
    """Receives agent datagrams and runs the alarm and reporting threads."""

    def __init__(self, config: ServerConfig, out: Optional[TextIO] = None) -> None:
        self.config = config
        self.state = ServerState(config)
        self._out = out
        self._out_lock = threading.Lock()
        self._stop = threading.Event()
        self._sock: Optional[socket.socket] = None
        self._threads: list[threading.Thread] = []

    @property
    def server_address(self) -> tuple[str, int]:
        """The address the receiving socket is bound to."""
        if self._sock is None:
            raise RuntimeError("server is not started")
        return self._sock.getsockname()

    def _write(self, text: str) -> None:
        out = self._out if self._out is not None else sys.stdout
        with self._out_lock:
            out.write(text)
            out.flush()

    def start(self) -> None:
        """Bind the UDP socket and start the background threads."""
        if self._sock is not None:
            raise RuntimeError("server is already started")
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.config.bind, self.config.port))
        except OSError:
            sock.close()
            raise
        sock.settimeout(_POLL)
        self._sock = sock
        self._stop.clear()
        loops: list[tuple[str, Callable[[], None]]] = [
            ("statistical_alarmer", self._periodic(self.state.statistical_pass)),
            ("timetoforget", self._periodic(self.state.forget_pass)),
            ("alarmsilencer", self._periodic(self.state.silence_pass)),
            ("udptimeout", self._periodic(self.state.udp_timeout_pass)),
            ("alarmstatus", self._alarmstatus_loop),
            ("normalstatus", self._normalstatus_loop),
        ]
        if self.config.graphitebase is not None:
            loops.append(("graphite", self._graphite_loop))
        for name, target in loops:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
            if self.config.debug > 2:
                logger.debug("DEBUG thread start: %s", name)

    def stop(self) -> None:
        """Stop every thread and close the socket."""
        self._stop.set()
        for thread in self._threads:
            thread.join(2 * _POLL + HOUSEKEEPING_PERIOD)
        self._threads.clear()
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _periodic(self, work: Callable[[], object]) -> Callable[[], None]:
        def loop() -> None:
            while not self._stop.is_set():
                work()
                if self._stop.wait(HOUSEKEEPING_PERIOD):
                    break

        return loop

    def _normalstatus_loop(self) -> None:
        while not self._stop.wait(self.config.statusperiod):
            while not self.state.wait_for_normal(timeout=_POLL):
                if self._stop.is_set():
                    return
            line = format_normal_status(
                _timestamp(time.time()), self.state.client_count(), self.state.global_stat
            )
            self._write(line + "\n")

    def _alarmstatus_loop(self) -> None:
        while not self._stop.wait(self.config.alarmstatusperiod):
            while not self.state.wait_for_alarm(timeout=_POLL):
                if self._stop.is_set():
                    return
            line = format_alarm_status(
                _timestamp(time.time()),
                self.state.client_count(),
                self.state.alarm_counts(),
                self.state.global_stat,
            )
            self._write(line + "\n")

    def _graphite_loop(self) -> None:
        base = self.config.graphitebase or ""
        while not self._stop.wait(GRAPHITE_PERIOD):
            lines = graphite_lines(
                base,
                self.state.client_count(),
                self.state.alarm_counts(),
                self.state.global_stat,
                int(time.time()),
            )
            payload = "".join(line + "\n" for line in lines)
            if self.config.graphiteip is None:
                self._write(payload)
                continue
            address = (self.config.graphiteip, self.config.graphiteport)
            try:
                with socket.create_connection(address, timeout=10) as conn:
                    if self.config.debug > 1:
                        logger.debug("DEBUG graphite connection established to %s:%d", *address)
                    conn.sendall(payload.encode("ascii"))
                    conn.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                print(f"Error: cannot connect to graphite: {exc}", file=sys.stderr)

    def handle_datagram(self, data: bytes) -> Optional[int]:
        """Process one received datagram; return the client id, or None if dropped."""
        if len(data) != MESSAGE_SIZE:
            if self.config.debug:
                logger.debug("DEBUG received packed dropped because of wrong size.")
            return None
        message = MessageBlock.unpack(data)
        if self.config.debug > 2:
            logger.debug(
                "Received:\n  hostname %s\n  text %s\n  version: %d.%d\n"
                "  precision: %d.%09d sec\n%s\n%s",
                message.hostname,
                message.text,
                message.major,
                message.minor,
                message.precision.sec,
                message.precision.nsec,
                message.blocks[0].describe(),
                message.blocks[1].describe(),
            )
        try:
            return self.state.receive(message)
        except MessageFormatError as exc:
            if self.config.debug:
                logger.debug("DEBUG received packed dropped: %s", exc)
            return None
        except RegistryFullError:
            logger.warning(
                "Warning: received packed from hostname=%s text=%s is dropped "
                "because nameregistry is full.",
                message.hostname,
                message.text,
            )
            return None

    def serve_forever(self) -> None:
        """Receive datagrams until stop() is called."""
        while not self._stop.is_set():
            sock = self._sock
            if sock is None:
                return
            try:
                data = sock.recv(MESSAGE_SIZE + 1)
            except socket.timeout:
                continue
            except OSError:
                if self._stop.is_set():
                    return
                raise
            self.handle_datagram(data)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the server; return the process exit code."""
    try:
        config, show_version = _parse(argv)
        if show_version:
            print(
                f"fslatency_server {SERVER_VERSION_MAJOR}.{SERVER_VERSION_MINOR}. "
                f"UDP version {VERSION_MAJOR}.{VERSION_MINOR}",
                file=sys.stderr,
            )
            return 0
        _validate(config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if isinstance(exc, _UsageError):
            print(USAGE)
        return 2

    logging.basicConfig(
        stream=sys.stderr,
        format="%(message)s",
        level=logging.DEBUG if config.debug else logging.INFO,
    )

    if config.graphitebase is not None and config.graphiteip is not None:
        try:
            socket.inet_aton(config.graphiteip)
        except OSError:
            print(f'Error: invalid graphiteip "{config.graphiteip}"', file=sys.stderr)
            return 2
    try:
        socket.inet_aton(config.bind)
    except OSError:
        print(f'Error: invalid bindip "{config.bind}"', file=sys.stderr)
        return 2

    try:
        server = Server(config)
    except ValueError:
        print("Error: cannot initialize databases", file=sys.stderr)
        return 1
    try:
        server.start()
    except OSError as exc:
        print(f"Error: cannot bind: {exc}", file=sys.stderr)
        return 1
    if config.debug > 2:
        logger.debug("DEBUG initialization done for %d clients", config.maxclient)
    # --nomemlock is accepted, but the interpreter offers no way to pin its memory.
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())