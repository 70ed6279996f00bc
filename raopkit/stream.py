"""Decoded stream frames and the callback set used by the receiver."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Callable, Optional


@dataclass
class AudioFrame:
    """One decrypted audio packet, ready for decoding."""

    data: bytes
    ct: int
    sync_status: int
    ntp_time_local: int
    ntp_time_remote: int
    rtp_time: int
    seqnum: int

    @property
    def data_len(self) -> int:
        return len(self.data)


@dataclass
class VideoFrame:
    """One H.264 access unit in byte-stream format."""

    nal_count: int
    data: bytes
    ntp_time_local: int
    ntp_time_remote: int

    @property
    def data_len(self) -> int:
        return len(self.data)


_Callback = Optional[Callable[..., Any]]


@dataclass
class Callbacks:
    """Hooks the receiver calls as streams are set up, played and torn down.

    ``audio_process`` and ``video_process`` are required by a server; the
    rest are optional and skipped when unset.
    """

    audio_process: _Callback = None
    video_process: _Callback = None
    video_pause: _Callback = None
    video_resume: _Callback = None
    conn_init: _Callback = None
    conn_destroy: _Callback = None
    conn_reset: _Callback = None
    conn_teardown: _Callback = None
    audio_flush: _Callback = None
    video_flush: _Callback = None
    audio_set_volume: _Callback = None
    audio_set_metadata: _Callback = None
    audio_set_coverart: _Callback = None
    audio_remote_control_id: _Callback = None
    audio_set_progress: _Callback = None
    audio_get_format: _Callback = None
    video_report_size: _Callback = None
    report_client_request: _Callback = None
    display_pin: _Callback = None
    register_client: _Callback = None
    check_register: _Callback = None
    export_dacp: _Callback = None

    def invoke(self, name: str, *args: Any) -> Any:
        """Call the named callback if it is set and return its result.

        Returns None when the callback is unset; raises ValueError for a
        name that is not a known callback.
        """
        if name not in {f.name for f in fields(self)}:
            raise ValueError(f"unknown callback: {name!r}")
        callback = getattr(self, name)
        if callback is None:
            return None
        return callback(*args)