import queue
import socket
import struct
import time

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from raopkit.ntp import SECONDS_FROM_1900_TO_1970, SECOND_IN_NSECS, NtpClient
from raopkit.rtp import AudioStream
from raopkit.rtp_packets import NO_DATA_MARKER, build_resend_request
from raopkit.stream import Callbacks

AES_KEY = bytes(range(16))
AES_IV = bytes(range(16, 32))
PLAIN = bytes(range(100, 120))


def encrypt(plain):
    n = len(plain) // 16 * 16
    enc = Cipher(algorithms.AES(AES_KEY), modes.CBC(AES_IV)).encryptor()
    return enc.update(plain[:n]) + enc.finalize() + plain[n:]


def data_packet(seq, ts, plain=PLAIN):
    return bytes([0x80, 0x60]) + struct.pack(">HI", seq, ts) + bytes(4) + encrypt(plain)


def sync_packet(sync_rtp, seconds, next_rtp):
    raw = (SECONDS_FROM_1900_TO_1970 + seconds) << 32
    return bytes([0x80, 0xD4, 0x00, 0x04]) + struct.pack(">IQI", sync_rtp, raw, next_rtp)


def make_stream(ct=8, **cbs):
    ntp = NtpClient(None, "127.0.0.1", 7010)
    return AudioStream(Callbacks(**cbs), ntp, "127.0.0.1", AES_KEY, AES_IV, ct=ct), ntp


def wait_until(predicate, timeout=3.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_unsynced_data_packet_is_decrypted_and_delivered():
    seen = []
    stream, ntp = make_stream(audio_process=lambda n, f: seen.append((n, f)))
    frames = stream.handle_data_packet(data_packet(1, 1000))
    assert len(frames) == 1
    frame = frames[0]
    assert frame.data == PLAIN
    assert frame.seqnum == 1
    assert frame.rtp_time == (1 << 32) + 1000
    assert frame.sync_status == 0
    assert frame.ct == 8
    assert frame.ntp_time_remote == ntp.convert_local_time(frame.ntp_time_local)
    assert seen == [(ntp, frame)]


def test_short_packet_is_ignored():
    stream, _ = make_stream()
    assert stream.handle_data_packet(b"\x80\x60\x00") == []
    assert stream.buffer.is_empty


def test_no_data_packet_is_not_buffered():
    stream, _ = make_stream()
    packet = bytes([0x80, 0x60]) + struct.pack(">HI", 3, 500) + bytes(4) + NO_DATA_MARKER
    assert stream.handle_data_packet(packet) == []
    assert stream.buffer.is_empty


def test_sync_then_data_uses_clock_fit():
    stream, _ = make_stream()
    assert stream.handle_control_packet(sync_packet(1000, 100, 1000 + 7497)) is True
    assert stream.have_synced
    frames = stream.handle_data_packet(data_packet(7, 1480))
    assert len(frames) == 1
    frame = frames[0]
    assert frame.sync_status == 1
    assert frame.ntp_time_remote == stream.clock.ntp_for_rtp(frame.rtp_time)
    assert frame.ntp_time_local == frame.ntp_time_remote
    assert frame.ntp_time_remote == 100 * SECOND_IN_NSECS + 480 * 22675


def test_alac_waits_for_first_sync():
    stream, _ = make_stream(ct=2)
    format_packet = bytes([0x80, 0x60]) + struct.pack(">HI", 0, 100) + bytes(4) + bytes(32)
    assert stream.handle_data_packet(format_packet) == []
    assert stream.buffer.is_empty
    assert stream.handle_data_packet(data_packet(1, 452)) == []
    assert not stream.buffer.is_empty
    stream.handle_control_packet(sync_packet(452, 50, 452 + 77175))
    frames = stream.handle_data_packet(data_packet(2, 804))
    assert [f.seqnum for f in frames] == [1, 2]
    assert all(f.sync_status == 1 for f in frames)
    assert all(f.ct == 2 for f in frames)


def test_resent_packet_is_buffered_in_order():
    stream, _ = make_stream()
    resend = bytes([0x80, 0xD6, 0x00, 0x01]) + data_packet(5, 2000)
    assert stream.handle_control_packet(resend) is True
    frames = stream.handle_data_packet(data_packet(6, 2480))
    assert [f.seqnum for f in frames] == [5, 6]


def test_unknown_control_packet():
    stream, _ = make_stream()
    assert stream.handle_control_packet(bytes([0x80, 0xD0, 0, 0])) is False


def test_invalid_remote_address():
    ntp = NtpClient(None, "127.0.0.1", 7010)
    with pytest.raises(ValueError):
        AudioStream(None, ntp, b"\x01\x02\x03\x04\x05", AES_KEY, AES_IV)


def test_process_events_when_not_running():
    stream, _ = make_stream()
    stream.set_volume(-10.0)
    assert stream.process_events() is False
    assert stream.is_running() is False


@pytest.fixture
def running():
    events = queue.Queue()
    cbs = dict(
        audio_set_volume=lambda v: events.put(("volume", v)),
        audio_flush=lambda: events.put(("flush",)),
        audio_set_metadata=lambda d: events.put(("metadata", d)),
        audio_set_coverart=lambda d: events.put(("coverart", d)),
        audio_remote_control_id=lambda a, b: events.put(("dacp", a, b)),
        audio_set_progress=lambda s, c, e: events.put(("progress", s, c, e)),
        audio_process=lambda n, f: events.put(("audio", f)),
    )
    stream, _ = make_stream(**cbs)
    ports = stream.start_audio(0, 0, 0, 8, 44100)
    yield stream, ports, events
    stream.stop()


def test_start_returns_bound_ports_and_stop(running):
    stream, ports, _ = running
    assert all(p > 0 for p in ports)
    assert stream.start_audio(0, 0, 0, 8, 44100) == ports
    assert stream.is_running()
    stream.stop()
    assert stream.is_running() is False


def test_volume_is_clamped(running):
    stream, _, events = running
    stream.set_volume(5.0)
    assert events.get(timeout=3) == ("volume", 0.0)
    stream.set_volume(-200.0)
    assert events.get(timeout=3) == ("volume", -144.0)


def test_queued_events_reach_callbacks(running):
    stream, _, events = running
    stream.set_metadata(b"meta")
    assert events.get(timeout=3) == ("metadata", b"meta")
    stream.set_coverart(b"art")
    assert events.get(timeout=3) == ("coverart", b"art")
    stream.remote_control_id("ABCDEF", "12345")
    assert events.get(timeout=3) == ("dacp", "ABCDEF", "12345")
    stream.set_progress(1, 2, 3)
    assert events.get(timeout=3) == ("progress", 1, 2, 3)
    stream.flush(10)
    assert events.get(timeout=3) == ("flush",)


def test_audio_over_udp(running):
    stream, (_, data_port), events = running
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
        client.sendto(data_packet(9, 3000), ("127.0.0.1", data_port))
        kind, frame = events.get(timeout=3)
    assert kind == "audio"
    assert frame.seqnum == 9
    assert frame.data == PLAIN


def test_resend_request_sent_for_gap():
    stream, _ = make_stream()
    control_port, data_port = stream.start_audio(1, 0, 0, 8, 44100)
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.settimeout(3)
            client.sendto(sync_packet(3000, 10, 3480), ("127.0.0.1", control_port))
            assert wait_until(lambda: stream.have_synced)
            client.sendto(data_packet(10, 3000), ("127.0.0.1", data_port))
            client.sendto(data_packet(12, 3960), ("127.0.0.1", data_port))
            request, _ = client.recvfrom(64)
        assert request == build_resend_request(0, 11, 1)
    finally:
        stream.stop()