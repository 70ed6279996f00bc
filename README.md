# raopkit

Receiver-side pieces of an AirPlay server: the RTP audio stream, NTP-style
clock synchronisation with the sending device, and the TCP screen-mirroring
video stream. The streams take in what a client sends and hand audio frames
and H.264 access units to callbacks you supply.

## Installation

```
pip install .
```

For development with the test suite:

```
pip install .[test]
pytest
```

## Modules

- `raopkit.stream`: `AudioFrame` and `VideoFrame`, the records passed to your
  code, and `Callbacks`, a dataclass of optional hooks (`audio_process`,
  `video_process`, `video_pause`, `video_resume`, `conn_reset`,
  `audio_flush`, `audio_set_volume`, `audio_set_metadata`,
  `audio_set_coverart`, `audio_remote_control_id`, `audio_set_progress`,
  `video_report_size` and others). `Callbacks.invoke(name, *args)` calls a
  hook if it is set, returns `None` if it is not, and raises `ValueError` for
  a name that is not a hook.
- `raopkit.ntp`: `NtpClient` polls the client's timing port from a
  background thread every three seconds and keeps the offset between the
  local and remote clocks (`sync_offset`, `sync_delay`, `sync_dispersion`).
  It converts between the two clocks with `get_remote_time`,
  `convert_remote_time` and `convert_local_time`, and `process_response`
  folds a single timing reply into the estimate. After
  `max_ntp_timeouts` consecutive unanswered requests the thread stops and
  calls `conn_reset`. Helpers: `ntp_timestamp_to_nano_seconds`,
  `local_time_ns`, `build_request`, and the `TimingProtocol` enum.
- `raopkit.buffer`: `AudioBuffer`, a 32-entry reordering buffer. It decrypts
  each payload with AES-128-CBC (a trailing partial block stays in the
  clear), skips empty-marker, late and repeated packets, and through
  `handle_resends` reports the run of missing packets at its head.
  `AudioPacket` is what `dequeue` returns.
- `raopkit.rtp_clock`: `RtpClock` extends 32-bit RTP timestamps to 64 bits
  (`extend`), fits RTP time to the client's NTP time from sync points
  (`sync`) and maps RTP time to NTP time (`ntp_for_rtp`).
- `raopkit.rtp_packets`: `parse_sync_packet` / `SyncPacket`,
  `build_resend_request`, `is_no_data_packet`, and `NoDataEstimator`, which
  estimates timing from the no-data packets sent before the first sync.
- `raopkit.rtp`: `AudioStream`, the UDP audio receiver. `start_audio` binds
  the control and data sockets and returns the ports bound; `set_volume`
  (clamped to -144..0 dB), `set_metadata`, `set_coverart`,
  `remote_control_id`, `set_progress` and `flush` queue events that the
  worker thread hands to the callbacks. `handle_control_packet` and
  `handle_data_packet` can also be fed packets directly.
- `raopkit.mirror_header`: `parse_header` reads the 128-byte header before
  each mirroring payload into a `MirrorHeader`; `PayloadType` names the
  known kinds.
- `raopkit.nal`: `convert_nal_units` replaces 4-byte length prefixes with
  Annex B start codes and reports validity and H.265 content in a
  `NalConversion`.
- `raopkit.codec`: `parse_codec_packet` reads SPS and PPS into a
  `CodecInfo`; `parse_video_size` reads the frame sizes into a `VideoSize`.
- `raopkit.mirror`: `MirrorStream`, the TCP mirroring receiver.
  `start_mirror` listens and returns the bound port; `handle_packet` turns
  one header and payload into a `VideoFrame` (prepending the last SPS/PPS
  when its timestamp matches), reports sizes, and with
  `show_client_fps_data` keeps the client's streaming report plist in
  `client_report`.
- `raopkit.requests`: `parse_flush_seq` reads the sequence number from a
  FLUSH request's `RTP-Info` header (-1 if absent), `parse_teardown` reads a
  TEARDOWN body into a `TeardownRequest`, and `format_address` formats a raw
  IPv4 or IPv6 address.
- `raopkit.settings`: `ServerSettings` holds the display and timing values
  (width 1920, height 1080, refresh rate 60, max FPS 30, audio delay
  250000 µs by default), the pairing pin and local ports. `set_plist(item,
  value)` takes the plist name (`width`, `height`, `refreshRate`, `maxFPS`,
  `overscanned`, `clientFPSdata`, `max_ntp_timeouts`, `audio_delay_micros`,
  `pin`), returns `True` if the value was stored as given and `False` if it
  was truncated, clamped or refused, and raises `UnknownSettingError` for
  any other name.

## Example

```python
from raopkit.ntp import NtpClient
from raopkit.rtp import AudioStream
from raopkit.settings import ServerSettings
from raopkit.stream import Callbacks

frames = []
callbacks = Callbacks(audio_process=lambda ntp, frame: frames.append(frame))

settings = ServerSettings()
settings.set_plist("width", 1280)      # True
settings.set_plist("refreshRate", 300)  # False: stored as 300 & 0xFF
settings.set_udp_ports([7011, 6001, 6000])

ntp = NtpClient(callbacks, "192.0.2.10", timing_rport=7010)
audio = AudioStream(callbacks, ntp, "192.0.2.10", aes_key=bytes(16), aes_iv=bytes(16))
control_port, data_port = audio.start_audio(
    control_rport=6001, control_lport=0, data_lport=0, ct=8, sample_rate=44100
)
# ... exchange the ports with the client, then later:
audio.stop()
```

## What the package does not do

It is a set of stream receivers, not a complete AirPlay server. It has no
RTSP server and no request dispatch, no pairing or pin handshake, no
service advertisement, and no key exchange: the AES key and IV for audio
must come from elsewhere, and `MirrorStream` takes a `decrypt` callable for
video payloads rather than decrypting them itself (without one, payloads are
taken as already clear). It does not decode audio or video; it only delivers
frames to your callbacks. There is no command-line program.