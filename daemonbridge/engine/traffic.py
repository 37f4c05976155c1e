"""Process-wide socket traffic counters."""
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass


@dataclass
class TrafficCounters:
    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_count: int = 0
    rx_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


_lock = threading.Lock()
_counters = TrafficCounters()


def record_tx(nbytes: int) -> None:
    with _lock:
        _counters.tx_bytes += nbytes
        _counters.tx_count += 1


def record_rx(nbytes: int) -> None:
    with _lock:
        _counters.rx_bytes += nbytes
        _counters.rx_count += 1


def get_traffic_counters() -> TrafficCounters:
    """Copy of the current counters."""
    with _lock:
        return TrafficCounters(**asdict(_counters))


def reset_traffic_counters() -> None:
    global _counters
    with _lock:
        _counters = TrafficCounters()
