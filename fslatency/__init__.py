"""Filesystem write latency agent, UDP wire format, and collecting server with alarms."""

__version__ = "0.4.0"