import ipaddress
import plistlib

import pytest

from raopkit.requests import (
    TeardownRequest,
    format_address,
    parse_flush_seq,
    parse_teardown,
)


def _plist(obj):
    return plistlib.dumps(obj, fmt=plistlib.FMT_BINARY)


def test_flush_seq_reads_number():
    assert parse_flush_seq("seq=1234;rtptime=5678") == 1234


def test_flush_seq_absent_header():
    assert parse_flush_seq(None) == -1


def test_flush_seq_without_seq_prefix():
    assert parse_flush_seq("rtptime=5678") == -1


def test_flush_seq_without_digits_is_zero():
    assert parse_flush_seq("seq=abc") == 0


def test_teardown_audio_stream():
    result = parse_teardown(_plist({"streams": [{"type": 96}]}))
    assert result == TeardownRequest(teardown_96=True, teardown_110=False)
    assert not result.destroys_sessions


def test_teardown_video_stream():
    result = parse_teardown(_plist({"streams": [{"type": 110}]}))
    assert result == TeardownRequest(teardown_96=False, teardown_110=True)


def test_teardown_without_streams_destroys_sessions():
    result = parse_teardown(_plist({"other": 1}))
    assert result.destroys_sessions
    assert result == TeardownRequest()


def test_teardown_empty_body():
    assert parse_teardown(b"").destroys_sessions


def test_teardown_unreadable_body():
    assert parse_teardown(b"not a plist at all").destroys_sessions


def test_teardown_uses_first_stream_only():
    result = parse_teardown(_plist({"streams": [{"type": 110}, {"type": 96}]}))
    assert result.teardown_110
    assert not result.teardown_96


def test_format_ipv4():
    assert format_address(bytes([192, 168, 1, 2])) == "192.168.1.2"


def test_format_ipv6_round_trip():
    original = ipaddress.ip_address("fe80::1:2")
    text = format_address(original.packed)
    assert ipaddress.ip_address(text) == original
    assert len(text.split(":")) == 8


def test_format_bad_length():
    with pytest.raises(ValueError):
        format_address(b"\x01\x02\x03")