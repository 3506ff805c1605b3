# fslatency

Measure filesystem write latency over long periods, from many hosts, and
raise an alarm when a disk stalls or behaves unusually.

The package has two commands:

- `fslatency`: the agent. It runs on each monitored host. Ten times a
  second it rewrites a 32-byte record at the start of a file opened for
  synchronous writes, calls `fsync`, and times the whole. Every second it
  condenses the measurements into a datablock and sends it to the server
  over UDP.
- `fslatency-server`: the collector. It receives the datablocks from all
  agents, keeps a rolling window of them per client, raises alarms, and
  prints status lines to standard output. Optionally it sends metrics in
  Graphite's plaintext format.

## Installation

```
pip install .
```

The package has no dependencies outside the standard library. The tests
use pytest (`pip install .[test]`).

## Running the agent

```
fslatency --serverip 192.0.2.10 --file /var/tmp/fslatency.dat
```

| Option | Meaning |
| --- | --- |
| `--serverip a.b.c.d` | IPv4 address of the server (required) |
| `--serverport PORT` | UDP port of the server, default 57005 |
| `--file PATH` | file to write; created if missing, must be a regular file (required) |
| `--text NAME` | free text sent with the hostname; longer than 64 characters gives a warning and is truncated |
| `--nocheckfs` | skip the check that the file lives on a known local filesystem |
| `--nomemlock` | accepted for compatibility; has no effect |
| `--debug` | print the options and every datablock sent |
| `--version` | print the agent and protocol versions to standard error and exit |

Unless `--nocheckfs` is given, the agent looks up the file's mount in
`/proc/self/mounts` and refuses to run unless it is a known local
filesystem (btrfs, ext2/3/4, hfs, hpfs, jffs2, jfs, minix, msdos/vfat,
ntfs, reiserfs, xfs, vxfs, zfs). Network and virtual filesystems such as
NFS, CIFS, tmpfs and FUSE are rejected.

Each UDP packet carries the last eight one-second datablocks, newest first,
so the server can fill in data from lost packets and drop out-of-order
ones. A datablock holds the number of measurements, the start and end time
of the interval, and the minimum, maximum, sum and sum of squares of the
natural logarithm of each write time in milliseconds. An interval with no
completed measurement is sent with a minimum of 1e9.

Errors are printed to standard error; invalid options exit with status 2.
Stop the agent with Ctrl-C.

## Running the server

```
fslatency-server --port 57005
```

| Option | Default | Meaning |
| --- | --- | --- |
| `--bind a.b.c.d` | 0.0.0.0 | address to listen on |
| `--port PORT` | 57005 | UDP port |
| `--maxclient N` | 509 | maximum number of clients tracked |
| `--timetoforget S` | 600 | seconds of silence before a client is forgotten (min 3, above `--udptimeout`) |
| `--udptimeout S` | 3 | seconds of silence before a client is reported lost (min 2) |
| `--alarmtimeout S` | 8 | seconds an alarm stays on after it was last raised |
| `--statusperiod S` | 300 | seconds between normal status lines |
| `--alarmstatusperiod S` | 1 | seconds between alarm status lines |
| `--latencythresholdfactor F` | 15.0 | standard deviations from the mean that count as abnormal |
| `--rollingwindow N` | 60 | datablocks kept per client (min 8) |
| `--minimummeasurementcount N` | 60 | measurements needed before statistical alarms; at most 9 × (rollingwindow − 1) |
| `--graphitebase PATH` | none | metric prefix; enables Graphite output |
| `--graphiteip a.b.c.d` | none | Graphite server; standard output if omitted |
| `--graphiteport PORT` | 2003 | Graphite plaintext port |
| `--nomemlock` | | accepted for compatibility; has no effect |
| `--debug[=LEVEL]` | | debug messages to standard error; higher levels say more |
| `--version` | | print the server and protocol versions to standard error and exit |

Every second the server checks each client:

- **ltncy lo / ltncy hi**: once a client's rolling window holds more than
  `--minimummeasurementcount` measurements, its newest datablock's minimum
  or maximum is compared with the window's mean ± factor × standard
  deviation.
- **stuck**: the newest datablock of a known client had no measurement.
- **lost**: no packet for `--udptimeout` seconds.

Alarms are cleared once none has been raised for `--alarmtimeout` seconds;
clients silent for `--timetoforget` seconds are removed.

While everything is normal the server prints a line every status period:

```
2025-01-31T14:45:20+0100 Status: normal. Clients: 3 ln_ltncy:(N:1800 min:0.410000 max:2.100000 avg:0.950000 std:0.210000)
```

While any alarm is on it prints instead, every alarm status period:

```
2025-01-31T14:45:21+0100 ALARM Clients: 3 w/alarms: 1 (ltncy lo:0 ltncy hi:1 stuck:0 lost:0) ln_ltncy:(N:1800 min:0.410000 max:9.300000 avg:0.990000 std:0.400000)
```

With `--graphitebase` set, every minute the server sends
`<base>.totalclients`, `.alarmedclients`, `.latencylow`, `.latencyhigh`,
`.stuckedclients`, `.lostclients`, `.ln_latency.datapoints`,
`.ln_latency.min`, `.ln_latency.max`, `.ln_latency.mean` and
`.ln_latency.std`, over a new TCP connection to `--graphiteip`, or to
standard output when no address is given.

Stop the server with Ctrl-C.

## Library use

- `fslatency.datablock`: the wire format. `Timespec`, `DataBlock` and
  `MessageBlock` with `pack()` / `unpack()`; `MessageFormatError` for bytes
  of the wrong size.
- `fslatency.nameregistry`: `NameRegistry`, a fixed-capacity table mapping
  fixed-length byte names to ids (`find`, `add`, `find_or_add`, `remove`,
  `remove_by_id`, `get_by_id`, `clear`); `RegistryFullError` when full.
- `fslatency.agent`: `summarize()` turns `Measurement`s into a
  `DataBlock`; `MeasurementBuffer`, `MessageHistory`, `measure_once()`,
  `open_measuring_file()` and `is_known_local_fs()` are the agent's parts.
- `fslatency.server_state`: the server's alarm logic without sockets or
  threads. `ServerState(ServerConfig(...))` with `receive()`,
  `statistical_pass()`, `udp_timeout_pass()`, `forget_pass()`,
  `silence_pass()`, `alarm_counts()` and `client_count()`; time can be
  passed in explicitly for testing.
- `fslatency.server`: `Server` (`start()`, `serve_forever()`, `stop()`,
  `handle_datagram()`), and the formatters `format_normal_status()`,
  `format_alarm_status()` and `graphite_lines()`.

## Limitations

- Neither command locks its memory into RAM; `--nomemlock` is accepted but
  changes nothing, so under heavy disk trouble the process itself may be
  paged out.
- The filesystem check reads `/proc/self/mounts` and therefore works only
  on Linux; elsewhere use `--nocheckfs`.
- Only IPv4 addresses are accepted for the server and Graphite.