"""
ID generation using UUIDv7 (time-ordered UUIDs)

Tender and proposal ids sort by creation time, so listing tenders by id
gives creation order for free.
"""

import secrets
import time


def generate_id(prefix: str | None = None) -> str:
    """
    Generate a UUIDv7-like identifier (time-ordered UUID)

    Layout: 48 bits of Unix milliseconds, version nibble 7, 12 random
    bits, variant 10, then 62 random bits.

    Args:
        prefix: Optional type tag, e.g. "tnd" gives "tnd_01908e9a-..."

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF
    rand_a = secrets.randbits(12)
    rand_b = secrets.randbits(62)

    value = (timestamp_48 << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
    hex_str = f"{value:032x}"
    uuid_str = (
        f"{hex_str[0:8]}-{hex_str[8:12]}-{hex_str[12:16]}-"
        f"{hex_str[16:20]}-{hex_str[20:32]}"
    )

    if prefix:
        return f"{prefix}_{uuid_str}"
    return uuid_str
