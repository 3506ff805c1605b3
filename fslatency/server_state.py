"""Server side bookkeeping: client registry, rolling statistics and alarm states."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import IntFlag
from typing import Callable, Optional

from fslatency.datablock import (
    EXTREME_BIG_INTERVAL,
    NAME_KEY_LEN,
    DataBlock,
    MessageBlock,
    MessageFormatError,
)
from fslatency.nameregistry import NameRegistry

logger = logging.getLogger("fslatency.server")


class Alarm(IntFlag):
    """Alarm bits kept for every client."""

    NOALARM = 0
    STATISTICAL_LOW = 1
    STATISTICAL_HIGH = 2
    EMPTY_DATABLOCK = 4
    UDP_TIMEOUT = 8


class ConfigError(ValueError):
    """Raised when the server settings are inconsistent."""


@dataclass
class ServerConfig:
    """Settings of the collecting server."""

    bind: str = "0.0.0.0"
    port: int = 57005
    maxclient: int = 509
    timetoforget: int = 600
    udptimeout: int = 3
    alarmtimeout: int = 8
    statusperiod: int = 300
    alarmstatusperiod: int = 1
    latencythresholdfactor: float = 15.0
    rollingwindow: int = 60
    minimummeasurementcount: int = 60
    graphitebase: Optional[str] = None
    graphiteip: Optional[str] = None
    graphiteport: int = 2003
    nomemlock: bool = False
    debug: int = 0

    def validate(self) -> list[str]:
        """Raise ConfigError on invalid settings; return warnings for dubious ones."""
        if self.port == 0:
            raise ConfigError("invalid port number")
        if self.maxclient == 0:
            raise ConfigError("invalid maxclient number")
        if self.timetoforget < 3 or self.udptimeout >= self.timetoforget:
            raise ConfigError(
                "invalid timetoforget number (min 3 and must be greather than udptimeout)"
            )
        if self.udptimeout < 2:
            raise ConfigError("invalid udptimeout number (min 2)")
        if self.alarmtimeout == 0:
            raise ConfigError("invalid alarmtimeout number")
        if self.statusperiod == 0:
            raise ConfigError("invalid statusperiod number")
        if self.alarmstatusperiod == 0:
            raise ConfigError("invalid alarmstatusperiod number")
        if not self.latencythresholdfactor > 0.0:
            raise ConfigError("invalid latencythresholdfactor value (must be positive float)")
        if self.rollingwindow < 8:
            raise ConfigError("invalid rollingwindow number. Min 8.")
        if (self.rollingwindow - 1) * 9 < self.minimummeasurementcount:
            raise ConfigError(
                "minimummeasurementcount is too high or rollingwindow is too low."
            )
        warnings = []
        if self.graphitebase is not None and self.graphiteip is None:
            warnings.append(
                "you shuld specify graphite server ip address (--graphiteip). "
                "Printing to stdout."
            )
        if self.graphitebase is None and self.graphiteip is not None:
            warnings.append(
                "you should not specify --graphiteip when no graphite base string "
                "(--graphitebase)"
            )
        return warnings


def _ieee_div(numerator: float, denominator: float) -> float:
    try:
        return numerator / denominator
    except ZeroDivisionError:
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)


def standard_deviation(count: int, sumx: float, sumxx: float) -> float:
    """Sample standard deviation from count, sum and sum of squares (NaN if undefined)."""
    variance = _ieee_div(sumxx - _ieee_div(sumx * sumx, float(count)), count - 1.0)
    if math.isnan(variance) or variance < 0:
        return math.nan
    return math.sqrt(variance)


@dataclass
class StatNumbers:
    """Cumulated ln(latency) statistics over a set of data blocks."""

    count: int = 0
    minx: float = EXTREME_BIG_INTERVAL
    maxx: float = -EXTREME_BIG_INTERVAL
    sumx: float = 0.0
    sumxx: float = 0.0
    mean: float = 0.0
    std: float = 0.0

    def add_block(self, block: DataBlock) -> bool:
        """Take ``block`` into account; blocks with an invalid minimum are skipped."""
        if not block.min <= EXTREME_BIG_INTERVAL:
            return False
        self.count += block.measurementcount
        if block.min < self.minx:
            self.minx = block.min
        if block.max > self.maxx:
            self.maxx = block.max
        self.sumx += block.sumx
        self.sumxx += block.sumxx
        return True

    def merge(self, other: StatNumbers) -> None:
        """Add the sums and extremes of ``other`` to these."""
        self.count += other.count
        self.sumx += other.sumx
        self.sumxx += other.sumxx
        if self.minx > other.minx:
            self.minx = other.minx
        if self.maxx < other.maxx:
            self.maxx = other.maxx

    def finalize(self) -> StatNumbers:
        """Compute mean and standard deviation from the sums; return self."""
        self.mean = _ieee_div(self.sumx, float(self.count))
        self.std = standard_deviation(self.count, self.sumx, self.sumxx)
        return self


class ClientStatus:
    """Alarm state and the rolling window of data blocks of one client slot."""

    def __init__(self, rollingwindow: int) -> None:
        self.alarm = Alarm.NOALARM
        self.lastalarmtime = 0.0
        self.lastarrival = 0.0
        self.blocks: deque[DataBlock] = deque(maxlen=rollingwindow)
        self.lock = threading.Lock()

    @property
    def occupied(self) -> bool:
        return self.lastarrival != 0.0

    def _clear_locked(self) -> None:
        self.alarm = Alarm.NOALARM
        self.lastalarmtime = 0.0
        self.lastarrival = 0.0
        self.blocks.clear()

    def clear(self) -> None:
        """Reset the slot to its unused state."""
        with self.lock:
            self._clear_locked()


@dataclass(frozen=True)
class AlarmCounts:
    """Number of clients carrying each kind of alarm."""

    alarmed: int = 0
    low: int = 0
    high: int = 0
    empty: int = 0
    udp_timeout: int = 0


class ServerState:
    """Everything the server knows about its clients, safe to share between threads."""

    def __init__(self, config: ServerConfig, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock
        self._registry = NameRegistry(config.maxclient, NAME_KEY_LEN)
        self._clients = [ClientStatus(config.rollingwindow) for _ in range(config.maxclient)]
        self._addremove_lock = threading.Lock()
        self._alarm_lock = threading.Lock()
        self._alarm_cond = threading.Condition(self._alarm_lock)
        self._normal_cond = threading.Condition(self._alarm_lock)
        self._global_alarm = False
        self._stat_lock = threading.Lock()
        self._global_stat = StatNumbers()

    @property
    def clients(self) -> tuple[ClientStatus, ...]:
        return tuple(self._clients)

    @property
    def alarm_active(self) -> bool:
        with self._alarm_lock:
            return self._global_alarm

    @property
    def global_stat(self) -> StatNumbers:
        with self._stat_lock:
            return StatNumbers(**vars(self._global_stat))

    def wait_for_alarm(self, timeout: Optional[float] = None) -> bool:
        """Block until the global alarm is on; return whether it is."""
        with self._alarm_cond:
            self._alarm_cond.wait_for(lambda: self._global_alarm, timeout)
            return self._global_alarm

    def wait_for_normal(self, timeout: Optional[float] = None) -> bool:
        """Block until the global status is normal; return whether it is."""
        with self._normal_cond:
            self._normal_cond.wait_for(lambda: not self._global_alarm, timeout)
            return not self._global_alarm

    def _alarm_set(self, msgid: int, alarm: Alarm, now: float) -> None:
        # Must be called with the client's lock held.
        status = self._clients[msgid]
        status.alarm |= alarm
        status.lastalarmtime = now
        if self.config.debug > 1:
            logger.debug("DEBUG alarm set for msgid=%d", msgid)
        with self._alarm_lock:
            if not self._global_alarm:
                if self.config.debug:
                    logger.debug(
                        "DEBUG Global alarm status set. msgid=%d alarm_name=%d",
                        msgid,
                        int(alarm),
                    )
                self._global_alarm = True
                self._alarm_cond.notify_all()

    def _alarm_unset(self, msgid: int, alarm: Alarm) -> None:
        self._clients[msgid].alarm &= ~alarm

    def _alarm_clear(self, msgid: int) -> None:
        status = self._clients[msgid]
        status.alarm = Alarm.NOALARM
        status.lastalarmtime = 0.0

    def receive(self, message: MessageBlock, rectime: Optional[float] = None) -> int:
        """Record an arrived message and return the client's id.

        Raises MessageFormatError for a foreign magic or version and
        RegistryFullError when a new client does not fit.
        """
        if not message.is_compatible():
            raise MessageFormatError(
                f"wrong magic or version {message.major}.{message.minor}"
            )
        now = self._clock() if rectime is None else rectime
        key = message.name_key()
        with self._addremove_lock:
            msgid = self._registry.find(key)
            if msgid is None:
                msgid = self._registry.add(key)
                logger.info(
                    "Info: client added. msgid=%d hostname=%s text=%s",
                    msgid,
                    message.hostname,
                    message.text,
                )
                status = self._clients[msgid]
                with status.lock:
                    status.lastarrival = now
                    self._alarm_clear(msgid)
                    for block in reversed(message.blocks):
                        if block.measurementcount != 0:
                            status.blocks.append(block)
                return msgid

            if self.config.debug > 1:
                logger.debug("DEBUG known client msgid=%d", msgid)
            status = self._clients[msgid]
            with status.lock:
                status.lastarrival = now
                if not status.blocks:
                    logger.warning(
                        "Warning: Why is the buffer for the known client empty? msgid=%d",
                        msgid,
                    )
                    newest = message.blocks[0]
                    if newest.measurementcount != 0:
                        status.blocks.append(newest)
                else:
                    last_start = status.blocks[-1].starttime
                    # Out-of-order blocks are dropped; repeated ones fill in lost packets.
                    for block in reversed(message.blocks):
                        if block.starttime > last_start:
                            status.blocks.append(block)
                    if message.blocks[0].min == EXTREME_BIG_INTERVAL:
                        self._alarm_set(msgid, Alarm.EMPTY_DATABLOCK, now)
                    else:
                        self._alarm_unset(msgid, Alarm.EMPTY_DATABLOCK)
                if self.config.debug > 1:
                    logger.debug(
                        "DEBUG receiver: this msgid=%d 's ringbufer size: %d of %d",
                        msgid,
                        len(status.blocks),
                        status.blocks.maxlen,
                    )
            return msgid

    def _statistical_check(self, msgid: int, cumulative: StatNumbers) -> None:
        status = self._clients[msgid]
        with status.lock:
            if not status.blocks:
                return
            stat = StatNumbers()
            for block in status.blocks:
                if not stat.add_block(block) and self.config.debug:
                    logger.debug("DEBUG empty datablock arrived for statisctic alarmer.")
            cumulative.merge(stat)
            if stat.count <= self.config.minimummeasurementcount:
                if self.config.debug > 1:
                    logger.debug(
                        "DEBUG statistic (low on N) msgid=%d sumN=%d min=%f max=%f",
                        msgid,
                        stat.count,
                        stat.minx,
                        stat.maxx,
                    )
                return
            stat.finalize()
            spread = stat.std * self.config.latencythresholdfactor
            last = status.blocks[-1]
            now = self._clock()
            if last.min < stat.mean - spread:
                self._alarm_set(msgid, Alarm.STATISTICAL_LOW, now)
            else:
                self._alarm_unset(msgid, Alarm.STATISTICAL_LOW)
            if last.max > stat.mean + spread:
                self._alarm_set(msgid, Alarm.STATISTICAL_HIGH, now)
            else:
                self._alarm_unset(msgid, Alarm.STATISTICAL_HIGH)

    def statistical_pass(self) -> StatNumbers:
        """Check every client's newest block against its rolling statistics.

        Returns the statistics cumulated over all clients, which also become
        the new global statistics.
        """
        cumulative = StatNumbers()
        for msgid in range(len(self._clients)):
            self._statistical_check(msgid, cumulative)
        cumulative.finalize()
        with self._stat_lock:
            self._global_stat = cumulative
        return StatNumbers(**vars(cumulative))

    def udp_timeout_pass(self, now: Optional[float] = None) -> list[int]:
        """Set the timeout alarm of clients that went silent; return their ids."""
        now = self._clock() if now is None else now
        deadline = now - self.config.udptimeout
        lost = []
        for msgid, status in enumerate(self._clients):
            if not status.occupied or status.lastarrival > deadline:
                continue
            with status.lock:
                if status.lastarrival > deadline:
                    self._alarm_unset(msgid, Alarm.UDP_TIMEOUT)
                    continue
                if self.config.debug > 1:
                    logger.debug("DEBUG udptimeout, msgid=%d", msgid)
                self._alarm_set(msgid, Alarm.UDP_TIMEOUT, now)
                lost.append(msgid)
        return lost

    def forget_pass(self, now: Optional[float] = None) -> list[int]:
        """Remove clients not heard of for timetoforget seconds; return their ids."""
        now = self._clock() if now is None else now
        deadline = now - self.config.timetoforget
        removed = []
        for msgid, status in enumerate(self._clients):
            if not status.occupied or status.lastarrival > deadline:
                continue
            with self._addremove_lock:
                if status.lastarrival > deadline:
                    continue
                try:
                    name = self._registry.get_by_id(msgid)
                except KeyError:
                    logger.error(
                        "Error: programing flow error: namedb does not contain an entry "
                        "for statusdb msgid=%d. Clear this orphaned statusdb entry.",
                        msgid,
                    )
                    status.clear()
                    continue
                hostname = name[: NAME_KEY_LEN // 2].rstrip(b"\0").decode("utf-8", "replace")
                text = name[NAME_KEY_LEN // 2:].rstrip(b"\0").decode("utf-8", "replace")
                logger.info(
                    "Notice: timetoforget, client removed from database. "
                    "msgid=%d hostname=%s text=%s",
                    msgid,
                    hostname,
                    text,
                )
                status.clear()
                self._registry.remove_by_id(msgid)
                removed.append(msgid)
        return removed

    def silence_pass(self, now: Optional[float] = None) -> bool:
        """Clear alarms older than alarmtimeout; return whether any alarm remains."""
        now = self._clock() if now is None else now
        deadline = now - self.config.alarmtimeout
        some_alarm = False
        for msgid, status in enumerate(self._clients):
            if not status.occupied:
                continue
            with status.lock:
                if status.lastalarmtime > deadline:
                    some_alarm = True
                    continue
                if self.config.debug > 1 and status.alarm:
                    logger.debug("DEBUG alarm status cleared for msgid=%d", msgid)
                self._alarm_clear(msgid)
        with self._alarm_lock:
            if not some_alarm and self._global_alarm:
                logger.info("Info: global status set to normal.")
                self._global_alarm = False
                self._normal_cond.notify_all()
            return self._global_alarm

    def alarm_counts(self) -> AlarmCounts:
        """Count the clients carrying each alarm."""
        alarms = [status.alarm for status in self._clients]
        return AlarmCounts(
            alarmed=sum(1 for alarm in alarms if alarm),
            low=sum(1 for alarm in alarms if alarm & Alarm.STATISTICAL_LOW),
            high=sum(1 for alarm in alarms if alarm & Alarm.STATISTICAL_HIGH),
            empty=sum(1 for alarm in alarms if alarm & Alarm.EMPTY_DATABLOCK),
            udp_timeout=sum(1 for alarm in alarms if alarm & Alarm.UDP_TIMEOUT),
        )

    def client_count(self) -> int:
        """Number of registered clients."""
        return self._registry.used