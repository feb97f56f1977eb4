"""
Identifier generation

Task ids and event ids are time-ordered UUIDv7-style strings, so tasks sort
in creation order even when compared as plain strings.
"""

import secrets
import threading
import time
from typing import Protocol


class IdFactory(Protocol):
    """Protocol for ID generation strategies"""

    def generate(self) -> str:
        ...


def generate_id() -> str:
    """
    Generate a UUIDv7-like identifier

    First 48 bits: Unix timestamp in milliseconds, then the version nibble,
    the variant bits and 74 random bits.

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF
    rand_a = secrets.randbits(12)
    rand_b = secrets.randbits(62)

    return (
        f"{timestamp_48 >> 16:08x}-"
        f"{timestamp_48 & 0xFFFF:04x}-"
        f"{0x7000 | rand_a:04x}-"
        f"{0x8000 | ((rand_b >> 48) & 0x3FFF):04x}-"
        f"{rand_b & 0xFFFFFFFFFFFF:012x}"
    )


class DefaultIdFactory:
    """Default ID factory using UUIDv7-like generation"""

    def generate(self) -> str:
        return generate_id()


class SequentialIdFactory:
    """
    Deterministic ID factory for tests and replay demos

    Produces "<prefix>-1", "<prefix>-2", ... in call order.
    """

    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self._counter = 0
        self._lock = threading.Lock()

    def generate(self) -> str:
        with self._lock:
            self._counter += 1
            return f"{self.prefix}-{self._counter}"
