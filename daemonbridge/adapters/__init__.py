"""Adapters package - host-facing event plumbing.

Turns engine emissions into named events that UI host clients
subscribe to.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "HostEvent",
]

from daemonbridge.adapters.event_bus import EventBus
from daemonbridge.adapters.events import HostEvent
