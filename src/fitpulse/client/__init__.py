# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Client-side event buffering with offline resilience."""

from fitpulse.client.buffer import PENDING_EVENTS_KEY, BufferConfig, EventBuffer
from fitpulse.client.storage import JsonFileStorage, KeyValueStorage, MemoryStorage
from fitpulse.client.transport import EventTransport, HttpTransport, TransportError

__all__ = [
    "PENDING_EVENTS_KEY",
    "BufferConfig",
    "EventBuffer",
    "EventTransport",
    "HttpTransport",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "TransportError",
]
