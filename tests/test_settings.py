import pytest

from raopkit.settings import ServerSettings, UnknownSettingError


def test_defaults():
    s = ServerSettings()
    assert (s.width, s.height, s.refresh_rate, s.max_fps) == (1920, 1080, 60, 30)
    assert s.audio_delay_micros == 250000
    assert s.use_pin is False


@pytest.mark.parametrize(
    "item, attr, value",
    [
        ("width", "width", 1280),
        ("height", "height", 720),
        ("refreshRate", "refresh_rate", 50),
        ("maxFPS", "max_fps", 24),
        ("overscanned", "overscanned", 1),
        ("clientFPSdata", "client_fps_data", 1),
        ("max_ntp_timeouts", "max_ntp_timeouts", 5),
        ("audio_delay_micros", "audio_delay_micros", 100000),
    ],
)
def test_values_stored_as_given(item, attr, value):
    s = ServerSettings()
    assert s.set_plist(item, value) is True
    assert getattr(s, attr) == value


def test_width_truncated_to_16_bits():
    s = ServerSettings()
    assert s.set_plist("width", 65536) is False
    assert s.width == 0


def test_max_fps_truncated_to_8_bits():
    s = ServerSettings()
    assert s.set_plist("maxFPS", 256) is False
    assert s.max_fps == 0


def test_overscanned_normalised():
    s = ServerSettings()
    assert s.set_plist("overscanned", 5) is False
    assert s.overscanned == 1


def test_negative_timeouts_clamped():
    s = ServerSettings()
    assert s.set_plist("max_ntp_timeouts", -3) is False
    assert s.max_ntp_timeouts == 0


def test_audio_delay_out_of_range_keeps_previous():
    s = ServerSettings()
    assert s.set_plist("audio_delay_micros", 20_000_000) is False
    assert s.audio_delay_micros == 250000
    assert s.set_plist("audio_delay_micros", -1) is False
    assert s.audio_delay_micros == 250000


def test_pin_enables_pin():
    s = ServerSettings()
    assert s.set_plist("pin", 1234) is True
    assert s.pin == 1234
    assert s.use_pin is True


def test_unknown_setting_raises():
    with pytest.raises(UnknownSettingError):
        ServerSettings().set_plist("colour", 1)


def test_udp_ports():
    s = ServerSettings()
    s.set_udp_ports([7011, 6001, 6000])
    assert (s.timing_lport, s.control_lport, s.data_lport) == (7011, 6001, 6000)


def test_tcp_ports():
    s = ServerSettings()
    s.set_tcp_ports((7100, 7000))
    assert (s.mirror_data_lport, s.port) == (7100, 7000)


@pytest.mark.parametrize("ports", [[], [1, 2], [1, 2, 3, 4]])
def test_udp_ports_wrong_count(ports):
    with pytest.raises(ValueError):
        ServerSettings().set_udp_ports(ports)


def test_tcp_ports_wrong_count():
    with pytest.raises(ValueError):
        ServerSettings().set_tcp_ports([1, 2, 3])