"""
Time-ordered record ids.

UUIDv7 layout: 48-bit unix milliseconds, version nibble, 12-bit sequence,
variant bits, 62 random bits. Ids created by one process sort in creation
order, including ids minted within the same millisecond.
"""

from __future__ import annotations

import os
import threading
import time
import uuid

__all__ = ["new_id", "id_timestamp"]

_lock = threading.Lock()
_last_ms = 0
_seq = 0


def new_id() -> str:
    global _last_ms, _seq
    with _lock:
        ms = time.time_ns() // 1_000_000
        if ms <= _last_ms:
            _seq += 1
            if _seq > 0xFFF:
                # sequence exhausted, borrow the next millisecond
                _last_ms += 1
                _seq = 0
            ms = _last_ms
        else:
            _last_ms = ms
            _seq = 0
        seq = _seq

    rand = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)
    value = (ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= seq << 64
    value |= 0b10 << 62
    value |= rand
    return str(uuid.UUID(int=value))


def id_timestamp(record_id: str) -> float:
    """Unix seconds encoded in a time-ordered id."""
    return (uuid.UUID(record_id).int >> 80) / 1000.0
