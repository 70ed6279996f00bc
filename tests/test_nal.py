from raopkit.nal import NAL_START_CODE, convert_nal_units


def prefixed(nal):
    return len(nal).to_bytes(4, "big") + nal


def test_single_nal_gets_start_code():
    nal = b"\x65\xaa\xbb"
    result = convert_nal_units(prefixed(nal))
    assert result.data == NAL_START_CODE + nal
    assert result.nal_count == 1
    assert result.valid is True
    assert result.h265_detected is False


def test_several_nals_all_converted():
    nals = [b"\x06\x05\x01", b"\x65\x88", b"\x41\x9a\x00\x10"]
    payload = b"".join(prefixed(n) for n in nals)
    result = convert_nal_units(payload)
    assert result.data == b"".join(NAL_START_CODE + n for n in nals)
    assert result.nal_count == 3
    assert result.valid


def test_length_preserved():
    payload = prefixed(b"\x65" * 20) + prefixed(b"\x41" * 7)
    assert len(convert_nal_units(payload).data) == len(payload)


def test_empty_payload_is_valid():
    result = convert_nal_units(b"")
    assert result.data == b""
    assert result.nal_count == 0
    assert result.valid


def test_forbidden_zero_bit_marks_invalid():
    result = convert_nal_units(prefixed(b"\xe5\x00"))
    assert result.valid is False
    assert result.data[0] == 1
    assert result.nal_count == 1


def test_length_overrun_marks_invalid():
    payload = (10).to_bytes(4, "big") + b"\x65\x00"
    result = convert_nal_units(payload)
    assert result.valid is False
    assert result.data[0] == 1


def test_negative_length_marks_invalid():
    payload = b"\xff\xff\xff\xff\x65\x00"
    result = convert_nal_units(payload)
    assert result.valid is False
    assert result.nal_count == 0
    assert result.data[0] == 1


def test_truncated_prefix_marks_invalid():
    payload = prefixed(b"\x65\x01") + b"\x00\x00"
    result = convert_nal_units(payload)
    assert result.valid is False
    assert result.nal_count == 1


def test_h265_idr_detected():
    result = convert_nal_units(prefixed(b"\x28\x01\xaf"))
    assert result.h265_detected is True
    assert result.valid is False


def test_h265_non_idr_detected():
    result = convert_nal_units(prefixed(b"\x02\x01\x00"))
    assert result.h265_detected is True


def test_h264_with_second_byte_one_is_not_h265():
    result = convert_nal_units(prefixed(b"\x65\x01\x00"))
    assert result.h265_detected is False
    assert result.valid is True


def test_input_not_modified():
    payload = prefixed(b"\x65\x00")
    original = bytes(payload)
    convert_nal_units(payload)
    assert payload == original