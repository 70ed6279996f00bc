"""The 128-byte header that precedes every screen-mirroring TCP payload."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Optional

HEADER_SIZE = 128

_SECOND_IN_NSECS = 1_000_000_000


class PayloadType(enum.IntEnum):
    """Payload kinds identified by byte 4 of the header."""

    VIDEO = 0x00
    CODEC = 0x01
    OLD_PROTOCOL = 0x02
    STREAMING_REPORT = 0x05


@dataclass(frozen=True)
class MirrorHeader:
    """Fields read from a mirroring packet header."""

    payload_size: int
    type_byte: int
    description: str
    ntp_timestamp_raw: int
    ntp_timestamp_remote: int
    packet: bytes

    @property
    def payload_type(self) -> Optional[PayloadType]:
        """The known payload type, or None when byte 4 is unrecognised."""
        try:
            return PayloadType(self.type_byte)
        except ValueError:
            return None


def _timestamp_to_nanos(timestamp: int) -> int:
    seconds = (timestamp >> 32) & 0xFFFFFFFF
    fraction = timestamp & 0xFFFFFFFF
    return seconds * _SECOND_IN_NSECS + ((fraction * _SECOND_IN_NSECS) >> 32)


def parse_header(packet: bytes) -> MirrorHeader:
    """Parse a 128-byte mirroring header.

    The payload size and timestamp are little-endian; the timestamp holds
    whole seconds in its upper 32 bits and a binary fraction in the lower.
    """
    packet = bytes(packet)
    if len(packet) != HEADER_SIZE:
        raise ValueError(f"mirror header must be {HEADER_SIZE} bytes, got {len(packet)}")
    (payload_size,) = struct.unpack_from("<I", packet, 0)
    (raw,) = struct.unpack_from("<Q", packet, 8)
    description = "".join(f"{b:02x} " for b in packet[4:8])
    return MirrorHeader(
        payload_size=payload_size,
        type_byte=packet[4],
        description=description,
        ntp_timestamp_raw=raw,
        ntp_timestamp_remote=_timestamp_to_nanos(raw),
        packet=packet,
    )