"""Mapping between the client's RTP audio clock and its NTP clock."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SECOND_IN_NSECS = 1_000_000_000
SYNC_DATA_COUNT = 8

_UINT32_MASK = 0xFFFFFFFF
_UINT64_MASK = (1 << 64) - 1


@dataclass
class _SyncPoint:
    ntp_time: int = 0
    rtp_time: int = 0


class RtpClock:
    """Extends 32-bit RTP timestamps to 64 bits and fits them to NTP time.

    The fit is ``ntp = clock_rate * rtp + sync_offset``, where the rate is
    the whole number of nanoseconds per sample and the offset is averaged
    over the last eight sync points.
    """

    def __init__(self, sample_rate: int = 44100) -> None:
        if sample_rate <= 0:
            raise ValueError(f"sample rate must be positive, got {sample_rate}")
        self.clock_rate = float(SECOND_IN_NSECS // sample_rate)
        self.sync_offset = 0
        self._sync_data = [_SyncPoint() for _ in range(SYNC_DATA_COUNT)]
        self._sync_index = 0
        self.rtp_time = 0
        self.rtp_start_time = 0
        self.started = False

    def reset(self) -> None:
        """Forget sync points and restart the 64-bit RTP epoch."""
        for point in self._sync_data:
            point.ntp_time = 0
        self.started = False

    def extend(self, rtp32: int) -> int:
        """Return the 64-bit RTP time for a 32-bit RTP timestamp.

        The first call places the timestamp in epoch 1; later calls move by
        the shorter way round the 32-bit circle from the previous time.
        """
        rtp32 &= _UINT32_MASK
        if self.started:
            current = self.rtp_time & _UINT32_MASK
            forward = (rtp32 - current) & _UINT32_MASK
            backward = (current - rtp32) & _UINT32_MASK
            if forward <= backward:
                self.rtp_time = (self.rtp_time + forward) & _UINT64_MASK
            else:
                self.rtp_time = (self.rtp_time - backward) & _UINT64_MASK
        else:
            self.rtp_time = (1 << 32) + rtp32
            self.rtp_start_time = self.rtp_time
            self.started = True
        return self.rtp_time

    def sync(self, ntp_time: int, rtp_time: int) -> int:
        """Record a sync point and refit the offset; return the correction."""
        offset = float(ntp_time) - self.clock_rate * rtp_time
        correction = 0

        self._sync_index = (self._sync_index + 1) % SYNC_DATA_COUNT
        latest = self._sync_index
        self._sync_data[latest] = _SyncPoint(ntp_time=ntp_time, rtp_time=rtp_time)

        valid = 0
        ntp_sum = 0
        rtp_sum = 0
        for index, point in enumerate(self._sync_data):
            if point.ntp_time == 0:
                continue
            valid += 1
            if index == latest:
                continue
            ntp_sum = (ntp_sum + ntp_time - point.ntp_time) & _UINT64_MASK
            rtp_sum = (rtp_sum + rtp_time - point.rtp_time) & _UINT64_MASK

        if valid > 1:
            correction -= self.sync_offset
            offset += (float(ntp_sum) - self.clock_rate * rtp_sum) / valid
        self.sync_offset = int(offset)
        correction += self.sync_offset

        logger.debug(
            "dataset %d sync correction=%d, rtp_sync_offset=%d",
            valid,
            correction,
            self.sync_offset,
        )
        return correction

    def ntp_for_rtp(self, rtp_time: int) -> int:
        """The client NTP time, in nanoseconds, for a 64-bit RTP time."""
        return (self.sync_offset + int(self.clock_rate * rtp_time)) & _UINT64_MASK