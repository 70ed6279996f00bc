import struct

import pytest

from raopkit.mirror_header import HEADER_SIZE, PayloadType, parse_header


def make_header(payload_size, type_bytes, timestamp):
    packet = bytearray(HEADER_SIZE)
    struct.pack_into("<I", packet, 0, payload_size)
    packet[4:8] = type_bytes
    struct.pack_into("<Q", packet, 8, timestamp)
    return bytes(packet)


def test_payload_size_round_trip():
    header = parse_header(make_header(4321, b"\x00\x10\x00\x00", 0))
    assert header.payload_size == 4321


def test_timestamp_raw_round_trip():
    raw = (7 << 32) | 12345
    header = parse_header(make_header(0, b"\x00\x00\x00\x00", raw))
    assert header.ntp_timestamp_raw == raw


def test_whole_seconds_convert_to_nanoseconds():
    header = parse_header(make_header(0, b"\x00\x00\x00\x00", 3 << 32))
    assert header.ntp_timestamp_remote == 3 * 1_000_000_000


def test_half_second_fraction():
    header = parse_header(make_header(0, b"\x00\x00\x00\x00", (5 << 32) | (1 << 31)))
    assert header.ntp_timestamp_remote == 5_500_000_000


def test_description_lists_bytes_four_to_seven():
    header = parse_header(make_header(0, b"\x01\x00\x16\x01", 0))
    assert header.description == "01 00 16 01 "


@pytest.mark.parametrize(
    "type_byte, expected",
    [
        (0x00, PayloadType.VIDEO),
        (0x01, PayloadType.CODEC),
        (0x02, PayloadType.OLD_PROTOCOL),
        (0x05, PayloadType.STREAMING_REPORT),
    ],
)
def test_known_payload_types(type_byte, expected):
    header = parse_header(make_header(0, bytes([type_byte, 0, 0, 0]), 0))
    assert header.payload_type is expected
    assert header.type_byte == type_byte


def test_unknown_payload_type_is_none():
    header = parse_header(make_header(0, b"\x07\x00\x00\x00", 0))
    assert header.payload_type is None


def test_packet_is_kept():
    packet = make_header(10, b"\x01\x00\x00\x00", 99)
    assert parse_header(packet).packet == packet


def test_short_packet_rejected():
    with pytest.raises(ValueError):
        parse_header(b"\x00" * 64)