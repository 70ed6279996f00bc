"""Wire formats of the RTP audio control channel."""

from __future__ import annotations

import struct
from dataclasses import dataclass

CONTROL_TYPE_SYNC = 0x54
CONTROL_TYPE_RESEND_REQUEST = 0x55
CONTROL_TYPE_RESEND_REPLY = 0x56

SYNC_PACKET_MIN_LEN = 20
RESEND_REPLY_MIN_LEN = 8
NO_DATA_MARKER = b"\x00\x68\x34\x00"
NO_DATA_PACKET_LEN = 16

_SEQ_MASK = 0xFFFF


@dataclass(frozen=True)
class SyncPacket:
    """A sync packet pairing an RTP time with the client's NTP clock.

    ``next_rtp`` is the RTP time of the next audio to be played.
    """

    sync_rtp: int
    ntp_timestamp_raw: int
    next_rtp: int


def build_resend_request(our_seqnum: int, seqnum: int, count: int) -> bytes:
    """Build the 8-byte request asking the client to resend ``count`` packets."""
    return struct.pack(
        ">BBHHH",
        0x80,
        CONTROL_TYPE_RESEND_REQUEST | 0x80,
        our_seqnum & _SEQ_MASK,
        seqnum & _SEQ_MASK,
        count & _SEQ_MASK,
    )


def parse_sync_packet(packet: bytes) -> SyncPacket:
    """Read a type 0x54 sync packet from the control channel.

    Raises ValueError when the packet is not a sync packet or is too short.
    """
    packet = bytes(packet)
    if len(packet) < SYNC_PACKET_MIN_LEN:
        raise ValueError(f"sync packet too short: {len(packet)} bytes")
    packet_type = packet[1] & 0x7F
    if packet_type != CONTROL_TYPE_SYNC:
        raise ValueError(f"not a sync packet: type 0x{packet_type:02x}")
    sync_rtp, ntp_raw, next_rtp = struct.unpack_from(">IQI", packet, 4)
    return SyncPacket(sync_rtp=sync_rtp, ntp_timestamp_raw=ntp_raw, next_rtp=next_rtp)


def is_no_data_packet(packet: bytes) -> bool:
    """True for the 16-byte packets whose payload is only the no-data marker."""
    packet = bytes(packet)
    return len(packet) == NO_DATA_PACKET_LEN and packet[12:16] == NO_DATA_MARKER


class NoDataEstimator:
    """Estimates the local-to-RTP offset from no-data packets before the first sync.

    Each frame arrives in several copies; a frame is counted only when its
    sequence number differs from the one seen two packets earlier.
    """

    def __init__(self) -> None:
        self.sync_adjustment = 0.0
        self.rtp_count = 0
        self._seqnum1 = 0
        self._seqnum2 = 0

    def update(self, sync_ntp: int, sync_rtp: int, seqnum: int, clock_rate: float) -> float:
        """Fold one no-data packet into the running mean and return it.

        ``sync_ntp`` is local time since the stream started and ``sync_rtp``
        the RTP time since the first packet, both in their own units.
        """
        seqnum &= _SEQ_MASK
        if self.rtp_count == 0:
            self.sync_adjustment = float(sync_ntp)
            self.rtp_count = 1
            self._seqnum1 = seqnum
            self._seqnum2 = seqnum
        if self._seqnum2 != seqnum:
            self.rtp_count += 1
            self.sync_adjustment += (
                float(sync_ntp) - clock_rate * sync_rtp - self.sync_adjustment
            ) / self.rtp_count
        self._seqnum2 = self._seqnum1
        self._seqnum1 = seqnum
        return self.sync_adjustment