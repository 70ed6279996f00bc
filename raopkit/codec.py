"""Codec (SPS/PPS) packets and frame sizes reported by a mirroring client."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

from .nal import NAL_START_CODE

logger = logging.getLogger(__name__)

CODEC_HEADER_SIZE = 6
VIDEO_SIZE_MIN_LEN = 64


@dataclass(frozen=True)
class CodecInfo:
    """The parameter sets carried by an unencrypted codec packet."""

    header: bytes
    sps: bytes
    pps: bytes
    remainder: bytes

    @property
    def sps_pps(self) -> bytes:
        """SPS and PPS as two Annex B NAL units, ready to prepend to a frame."""
        return NAL_START_CODE + self.sps + NAL_START_CODE + self.pps


@dataclass(frozen=True)
class VideoSize:
    """Frame dimensions read from a codec packet's header."""

    width_source: float
    height_source: float
    width: float
    height: float


def parse_codec_packet(payload: bytes) -> CodecInfo:
    """Read the SPS and PPS from a codec packet payload.

    The payload holds six header bytes, a big-endian SPS length at offset 6,
    the SPS, a PPS count byte, a big-endian PPS length and the PPS.
    Raises ValueError when the payload is too short for the lengths given.
    """
    payload = bytes(payload)
    size = len(payload)
    if size < 8:
        raise ValueError(f"codec payload too short: {size} bytes")
    (sps_size,) = struct.unpack_from(">h", payload, 6)
    if sps_size < 0 or sps_size + 11 > size:
        raise ValueError(f"SPS of {sps_size} bytes does not fit a payload of {size} bytes")
    (pps_size,) = struct.unpack_from(">h", payload, sps_size + 9)
    remainder_size = size - sps_size - pps_size - 11
    if pps_size < 0 or remainder_size < 0:
        logger.error("pps_sps error: packet remainder size = %d < 0", remainder_size)
        raise ValueError(f"PPS of {pps_size} bytes does not fit a payload of {size} bytes")
    pps_start = sps_size + 11
    info = CodecInfo(
        header=payload[:CODEC_HEADER_SIZE],
        sps=payload[8:8 + sps_size],
        pps=payload[pps_start:pps_start + pps_size],
        remainder=payload[pps_start + pps_size:],
    )
    logger.debug("SPS NAL size = %d, PPS NAL size = %d, remainder size = %d",
                 sps_size, pps_size, remainder_size)
    return info


def parse_video_size(packet: bytes) -> VideoSize:
    """Read the source and display sizes from a codec packet's 128-byte header.

    The values are little-endian floats; the source size sits at offsets 40
    and 44 and the display size at 56 and 60.
    """
    packet = bytes(packet)
    if len(packet) < VIDEO_SIZE_MIN_LEN:
        raise ValueError(f"header too short for video size: {len(packet)} bytes")
    width, height = struct.unpack_from("<ff", packet, 16)
    width_source, height_source = struct.unpack_from("<ff", packet, 40)
    if width != width_source or height != height_source:
        logger.debug(
            "unexpected: data %f, %f != width_source = %f, height_source = %f",
            width, height, width_source, height_source,
        )
    extra_w, extra_h = struct.unpack_from("<ff", packet, 48)
    logger.debug("unidentified extra header data %f, %f", extra_w, extra_h)
    display_w, display_h = struct.unpack_from("<ff", packet, 56)
    return VideoSize(
        width_source=width_source,
        height_source=height_source,
        width=display_w,
        height=display_h,
    )