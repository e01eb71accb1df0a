"""Adapters package - Bridge between the engine and observing clients.

This package contains the typed event vocabulary and the event bridge
that fans session events out to live observers.
"""
from __future__ import annotations

__all__ = [
    "EventBridge",
    "Observer",
    "event_to_dict",
    "dict_to_event",
]

from companion.adapters.event_bridge import EventBridge, Observer
from companion.adapters.events import dict_to_event, event_to_dict
