"""Conversion of length-prefixed NAL units to Annex B byte-stream format."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

NAL_START_CODE = b"\x00\x00\x00\x01"

_H265_FIRST_BYTES = (0x28, 0x02)  # IDR type 20 and non-IDR type 1


@dataclass(frozen=True)
class NalConversion:
    """Result of converting one decrypted video payload.

    When ``valid`` is false the first byte of ``data`` is set to 1 so that
    a decoder rejects it as not H.264.
    """

    data: bytes
    nal_count: int
    valid: bool
    h265_detected: bool


def _log_nal(nalu_type: int, ref_idc: int, nc_len: int, offset: int, size: int, count: int) -> None:
    if nalu_type in (1, 5, 14):
        return
    if nalu_type in (2, 3, 4):
        logger.info(
            "unexpected partitioned VCL NAL unit: nalu_type = %d, ref_idc = %d, nalu_size = %d, "
            "processed bytes %d, payloadsize = %d nalus_count = %d",
            nalu_type, ref_idc, nc_len, offset, size, count,
        )
    elif nalu_type == 6:
        logger.debug("SEI NAL size = %d", nc_len)
    elif nalu_type == 7:
        logger.debug("SPS NAL size = %d", nc_len)
    elif nalu_type == 8:
        logger.debug("PPS NAL size = %d", nc_len)
    else:
        logger.info(
            "unexpected non-VCL NAL unit: nalu_type = %d, ref_idc = %d, nalu_size = %d, "
            "processed bytes %d, payloadsize = %d nalus_count = %d",
            nalu_type, ref_idc, nc_len, offset, size, count,
        )


def convert_nal_units(payload: bytes) -> NalConversion:
    """Replace each 4-byte big-endian NAL length prefix with a start code."""
    data = bytearray(payload)
    size = len(data)
    offset = 0
    count = 0
    valid = True
    h265 = False

    while offset < size:
        if offset + 4 > size:
            valid = False
            break
        nc_len = int.from_bytes(data[offset:offset + 4], "big", signed=True)
        if nc_len < 0:
            valid = False
            break
        data[offset:offset + 4] = NAL_START_CODE
        offset += 4
        count += 1
        if offset >= size or data[offset] & 0x80:
            # forbidden_zero_bit set, or no NAL header byte at all
            valid = False
            break
        first = data[offset]
        nalu_type = first & 0x1F
        ref_idc = first >> 5
        if offset + 1 < size and data[offset + 1] == 0x01 and first in _H265_FIRST_BYTES:
            h265 = True
            break
        _log_nal(nalu_type, ref_idc, nc_len, offset, size, count)
        offset += nc_len

    if h265:
        logger.error("unsupported h265 video detected")
        return NalConversion(data=bytes(data), nal_count=count, valid=False, h265_detected=True)

    if offset != size:
        valid = False
    if not valid:
        logger.debug("nalu marked as invalid")
        if data:
            data[0] = 1
    return NalConversion(data=bytes(data), nal_count=count, valid=valid, h265_detected=False)