"""Parsing of RTSP request details handled directly by the connection."""

from __future__ import annotations

import logging
import plistlib
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

AUDIO_STREAM_TYPE = 96
VIDEO_STREAM_TYPE = 110
NO_SEQ = -1

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class TeardownRequest:
    """Which streams a TEARDOWN request asks to stop.

    When neither stream type is named, the whole session is torn down.
    """

    teardown_96: bool = False
    teardown_110: bool = False

    @property
    def destroys_sessions(self) -> bool:
        """True when no stream type was named, so every session goes."""
        return not (self.teardown_96 or self.teardown_110)


def parse_flush_seq(rtp_info: Optional[str]) -> int:
    """Read the next sequence number from a FLUSH request's RTP-Info header.

    Returns -1 when the header is absent or does not start with ``seq=``.
    The number is read like ``strtol``: leading digits only, 0 if none.
    """
    if rtp_info is None or not rtp_info.startswith("seq="):
        return NO_SEQ
    match = _LEADING_INT.match(rtp_info, 4)
    return int(match.group(1)) if match else 0


def parse_teardown(data: Optional[bytes]) -> TeardownRequest:
    """Read the stream types from a TEARDOWN request's binary plist body.

    A missing or unreadable body names no streams. Only the first entry of
    the ``streams`` array is consulted.
    """
    if not data:
        return TeardownRequest()
    try:
        root = plistlib.loads(bytes(data), fmt=plistlib.FMT_BINARY)
    except Exception as exc:  # plistlib raises several error types on bad input
        logger.debug("unreadable TEARDOWN body: %s", exc)
        return TeardownRequest()
    logger.debug("TEARDOWN body: %r", root)
    if not isinstance(root, dict):
        return TeardownRequest()
    streams = root.get("streams")
    if not isinstance(streams, list) or not streams:
        return TeardownRequest()
    first = streams[0]
    stream_type = first.get("type") if isinstance(first, dict) else None
    result = TeardownRequest(
        teardown_96=stream_type == AUDIO_STREAM_TYPE,
        teardown_110=stream_type == VIDEO_STREAM_TYPE,
    )
    logger.debug(
        "TEARDOWN request, 96=%d, 110=%d", result.teardown_96, result.teardown_110
    )
    return result


def format_address(address: bytes) -> str:
    """Format a raw 4-byte IPv4 or 16-byte IPv6 address for logging.

    IPv6 addresses are written in full, eight groups of four hex digits.
    """
    address = bytes(address)
    if len(address) == 4:
        return ".".join(str(b) for b in address)
    if len(address) == 16:
        return ":".join(address[i:i + 2].hex() for i in range(0, 16, 2))
    raise ValueError(f"address must be 4 or 16 bytes, got {len(address)}")