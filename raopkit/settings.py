"""Server settings advertised to clients and the local port assignments."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

SECOND_IN_USECS = 1_000_000
MAX_AUDIO_DELAY_MICROS = 10 * SECOND_IN_USECS


class UnknownSettingError(ValueError):
    """Raised for a setting name the server does not know."""


@dataclass
class ServerSettings:
    """Display parameters, timing options, pairing pin and local ports."""

    width: int = 1920
    height: int = 1080
    refresh_rate: int = 60
    max_fps: int = 30
    overscanned: int = 0
    client_fps_data: int = 0
    max_ntp_timeouts: int = 0
    audio_delay_micros: int = 250_000
    pin: int = 0
    use_pin: bool = False
    port: int = 0
    timing_lport: int = 0
    control_lport: int = 0
    data_lport: int = 0
    mirror_data_lport: int = 0

    def set_plist(self, item: str, value: int) -> bool:
        """Set a setting by its plist name.

        Returns True if the value was stored as given and False if it was
        truncated, clamped or rejected in favour of the current value.
        Raises UnknownSettingError for an unknown name.
        """
        if item == "width":
            self.width = value & 0xFFFF
            return self.width == value
        if item == "height":
            self.height = value & 0xFFFF
            return self.height == value
        if item == "refreshRate":
            self.refresh_rate = value & 0xFF
            return self.refresh_rate == value
        if item == "maxFPS":
            self.max_fps = value & 0xFF
            return self.max_fps == value
        if item == "overscanned":
            self.overscanned = 1 if value else 0
            return self.overscanned == value
        if item == "clientFPSdata":
            self.client_fps_data = 1 if value else 0
            return self.client_fps_data == value
        if item == "max_ntp_timeouts":
            self.max_ntp_timeouts = max(value, 0)
            return self.max_ntp_timeouts == value
        if item == "audio_delay_micros":
            if 0 <= value <= MAX_AUDIO_DELAY_MICROS:
                self.audio_delay_micros = value
            return self.audio_delay_micros == value
        if item == "pin":
            self.pin = value & 0xFFFF
            self.use_pin = True
            return True
        raise UnknownSettingError(f"unknown setting: {item!r}")

    def set_udp_ports(self, ports: Sequence[int]) -> None:
        """Set the timing, control and data UDP ports, in that order."""
        if len(ports) != 3:
            raise ValueError(f"expected 3 UDP ports, got {len(ports)}")
        self.timing_lport, self.control_lport, self.data_lport = ports

    def set_tcp_ports(self, ports: Sequence[int]) -> None:
        """Set the mirroring data and RTSP TCP ports, in that order."""
        if len(ports) != 2:
            raise ValueError(f"expected 2 TCP ports, got {len(ports)}")
        self.mirror_data_lport, self.port = ports