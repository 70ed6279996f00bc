"""Receiving the RTP audio stream: data, sync and resend traffic."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .buffer import HEADER_SIZE, PACKET_MAX_LEN, AudioBuffer
from .ntp import SECOND_IN_NSECS, NtpClient, local_time_ns
from .rtp_clock import RtpClock
from .rtp_packets import (
    CONTROL_TYPE_RESEND_REPLY,
    CONTROL_TYPE_SYNC,
    RESEND_REPLY_MIN_LEN,
    SYNC_PACKET_MIN_LEN,
    NoDataEstimator,
    build_resend_request,
    is_no_data_packet,
    parse_sync_packet,
)
from .stream import AudioFrame, Callbacks

logger = logging.getLogger(__name__)

NO_FLUSH = -42
DELAY_AAC = 0.275
CT_ALAC = 2
CT_AAC_ELD = 8
ALAC_FORMAT_PACKET_LEN = 44
MIN_VOLUME = -144.0
MAX_VOLUME = 0.0
SELECT_TIMEOUT = 0.005

_UINT32_MASK = 0xFFFFFFFF
_UINT64_MASK = (1 << 64) - 1
_SEQ_MASK = 0xFFFF

_IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _parse_remote(remote: Union[str, bytes]) -> _IpAddress:
    if isinstance(remote, (bytes, bytearray)):
        if len(remote) not in (4, 16):
            raise ValueError(f"remote address must be 4 or 16 bytes, got {len(remote)}")
        remote = bytes(remote)
    try:
        return ipaddress.ip_address(remote)
    except ValueError as exc:
        raise ValueError(f"invalid remote address: {remote!r}") from exc


@dataclass
class _PendingEvents:
    volume: float = 0.0
    volume_changed: bool = False
    flush: int = NO_FLUSH
    metadata: Optional[bytes] = None
    coverart: Optional[bytes] = None
    dacp_id: Optional[str] = None
    active_remote_header: Optional[str] = None
    progress: Optional[Tuple[int, int, int]] = None


class AudioStream:
    """An RTP audio session: a data socket, a control socket and a worker thread.

    Volume, metadata, cover art, remote-control ids, progress and flush
    requests are queued by the RTSP side and delivered to the callbacks
    from the worker thread.
    """

    def __init__(
        self,
        callbacks: Optional[Callbacks],
        ntp: NtpClient,
        remote: Union[str, bytes],
        aes_key: bytes,
        aes_iv: bytes,
        ct: int = CT_AAC_ELD,
        sample_rate: int = 44100,
    ) -> None:
        self._callbacks = callbacks if callbacks is not None else Callbacks()
        self._ntp = ntp
        self._remote_ip = _parse_remote(remote)
        self.buffer = AudioBuffer(aes_key, aes_iv)
        self.clock = RtpClock(sample_rate)
        self.ct = ct

        self._lock = threading.Lock()
        self._events = _PendingEvents()
        self._running = False
        self._joined = True
        self._thread: Optional[threading.Thread] = None

        self._csock: Optional[socket.socket] = None
        self._dsock: Optional[socket.socket] = None
        self.control_rport = 0
        self.control_lport = 0
        self.data_lport = 0
        self._control_addr: Optional[tuple] = None
        self._control_seqnum = 0

        self._reset_stream_state()

    def _reset_stream_state(self) -> None:
        self._have_synced = False
        self._no_data_yet = True
        self._estimator = NoDataEstimator()
        self._ntp_start_time = local_time_ns()
        self._no_resend = self.control_rport == 0
        self._control_addr = None
        self.clock.reset()

    @property
    def have_synced(self) -> bool:
        """True once a sync packet has tied RTP time to the client clock."""
        return self._have_synced

    def start_audio(
        self, control_rport: int, control_lport: int, data_lport: int, ct: int, sample_rate: int
    ) -> Tuple[int, int]:
        """Open the control and data sockets and start receiving.

        Returns the local control and data ports actually bound.
        """
        logger.info("starting audio")
        with self._lock:
            if self._running or not self._joined:
                return self.control_lport, self.data_lport
            if sample_rate <= 0:
                raise ValueError(f"sample rate must be positive, got {sample_rate}")
            self.ct = ct
            self.clock.clock_rate = float(SECOND_IN_NSECS // sample_rate)
            self.control_rport = control_rport
            family = socket.AF_INET6 if self._remote_ip.version == 6 else socket.AF_INET
            csock, cport = self._open_socket(family, control_lport)
            try:
                dsock, dport = self._open_socket(family, data_lport)
            except OSError:
                csock.close()
                raise
            self._csock, self._dsock = csock, dsock
            self.control_lport, self.data_lport = cport, dport
            logger.debug("local control port UDP %d, data port UDP %d", cport, dport)
            self._reset_stream_state()
            self._running = True
            self._joined = False
            self._thread = threading.Thread(target=self._run, name="rtp-audio", daemon=True)
            self._thread.start()
        return self.control_lport, self.data_lport

    @staticmethod
    def _open_socket(family: int, port: int) -> Tuple[socket.socket, int]:
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind(("::" if family == socket.AF_INET6 else "", port))
        except OSError:
            sock.close()
            logger.error("initializing sockets failed")
            raise
        return sock, sock.getsockname()[1]

    def set_volume(self, volume: float) -> None:
        """Queue a volume change, clamped to -144..0 dB."""
        volume = min(MAX_VOLUME, max(MIN_VOLUME, float(volume)))
        with self._lock:
            self._events.volume = volume
            self._events.volume_changed = True

    def set_metadata(self, data: bytes) -> None:
        """Queue track metadata; empty data is ignored."""
        if not data:
            return
        with self._lock:
            self._events.metadata = bytes(data)

    def set_coverart(self, data: bytes) -> None:
        """Queue cover art; empty data is ignored."""
        if not data:
            return
        with self._lock:
            self._events.coverart = bytes(data)

    def remote_control_id(self, dacp_id: Optional[str], active_remote_header: Optional[str]) -> None:
        """Queue the DACP id and Active-Remote header; both must be given."""
        if not dacp_id or not active_remote_header:
            return
        with self._lock:
            self._events.dacp_id = dacp_id
            self._events.active_remote_header = active_remote_header

    def set_progress(self, start: int, curr: int, end: int) -> None:
        """Queue playback progress as RTP times."""
        with self._lock:
            self._events.progress = (start & _UINT32_MASK, curr & _UINT32_MASK, end & _UINT32_MASK)

    def flush(self, next_seq: int) -> None:
        """Queue a flush request."""
        with self._lock:
            self._events.flush = next_seq

    def process_events(self) -> bool:
        """Deliver queued events to the callbacks.

        Returns False, delivering nothing, once the stream is not running.
        """
        with self._lock:
            if not self._running:
                return False
            events = self._events
            self._events = _PendingEvents(volume=events.volume)

        if events.volume_changed:
            self._callbacks.invoke("audio_set_volume", events.volume)
        if events.flush != NO_FLUSH:
            self._callbacks.invoke("audio_flush")
        if events.metadata is not None:
            self._callbacks.invoke("audio_set_metadata", events.metadata)
        if events.coverart is not None:
            self._callbacks.invoke("audio_set_coverart", events.coverart)
        if events.dacp_id and events.active_remote_header:
            self._callbacks.invoke("audio_remote_control_id", events.dacp_id, events.active_remote_header)
        if events.progress is not None:
            self._callbacks.invoke("audio_set_progress", *events.progress)
        return True

    def handle_control_packet(self, packet: bytes) -> bool:
        """Handle a packet from the control channel.

        Resent audio packets are put in the buffer and sync packets update
        the clock fit. Returns False for packets of any other kind.
        """
        packet = bytes(packet)
        if len(packet) < 2:
            return False
        type_c = packet[1] & 0x7F
        logger.debug("control type 0x%02x, packetlen = %d", type_c, len(packet))

        if type_c == CONTROL_TYPE_RESEND_REPLY and len(packet) >= RESEND_REPLY_MIN_LEN:
            resent = packet[4:]
            seqnum = int.from_bytes(resent[2:4], "big")
            if len(resent) < HEADER_SIZE:
                logger.debug("received empty resent audio packet, seqnum=%u", seqnum)
                return True
            rtp_time = self.clock.extend(int.from_bytes(resent[4:8], "big"))
            ntp_time = self.clock.ntp_for_rtp(rtp_time) if self._have_synced else 0
            logger.debug("resent audio packet: seqnum=%u", seqnum)
            self.buffer.enqueue(resent, ntp_time, rtp_time, True)
            return True

        if type_c == CONTROL_TYPE_SYNC and len(packet) >= SYNC_PACKET_MIN_LEN:
            sync = parse_sync_packet(packet)
            sync_rtp64 = self.clock.extend(sync.sync_rtp)
            if not self._have_synced:
                logger.debug("first audio rtp sync")
                self._have_synced = True
            sync_ntp_remote = self._ntp.remote_timestamp_to_nano_seconds(sync.ntp_timestamp_raw)
            self.clock.sync(sync_ntp_remote, sync_rtp64)
            return True

        logger.debug("unknown udp control packet: %s", packet.hex())
        return False

    def handle_data_packet(self, packet: bytes) -> List[AudioFrame]:
        """Buffer one audio data packet and deliver every frame now in order.

        Returns the frames passed to the ``audio_process`` callback.
        """
        packet = bytes(packet)
        if len(packet) < HEADER_SIZE:
            logger.debug("received short data packet with length %d", len(packet))
            return []

        rtp_time = self.clock.extend(int.from_bytes(packet[4:8], "big"))
        if self.ct == CT_ALAC and len(packet) == ALAC_FORMAT_PACKET_LEN:
            return []

        ntp_time = 0
        if self._have_synced:
            ntp_time = self.clock.ntp_for_rtp(rtp_time)
        elif is_no_data_packet(packet):
            if self._no_data_yet:
                sync_ntp = local_time_ns() - self._ntp_start_time
                sync_rtp = rtp_time - self.clock.rtp_start_time
                seqnum = int.from_bytes(packet[2:4], "big")
                self._estimator.update(sync_ntp, sync_rtp, seqnum, self.clock.clock_rate)
            return []
        else:
            self._no_data_yet = False

        self.buffer.enqueue(packet, ntp_time, rtp_time, True)

        if self.ct == CT_ALAC and not self._have_synced:
            return []

        frames = []
        while (entry := self.buffer.dequeue(self._no_resend)) is not None:
            frame = self._make_frame(entry.payload, entry.seqnum, entry.rtp_timestamp, entry.ntp_timestamp)
            self._callbacks.invoke("audio_process", self._ntp, frame)
            frames.append(frame)

        if not self._no_resend:
            self.buffer.handle_resends(self._request_resend)
        return frames

    def _make_frame(self, payload: bytes, seqnum: int, rtp_time: int, ntp_time: int) -> AudioFrame:
        if self._have_synced:
            remote = ntp_time or self.clock.ntp_for_rtp(rtp_time)
            local = self._ntp.convert_remote_time(remote)
            status = 1
        else:
            elapsed = (
                self.clock.clock_rate * (rtp_time - self.clock.rtp_start_time)
                + self._estimator.sync_adjustment
                + DELAY_AAC * SECOND_IN_NSECS
            )
            local = (self._ntp_start_time + int(elapsed)) & _UINT64_MASK
            remote = self._ntp.convert_local_time(local)
            status = 0
        return AudioFrame(
            data=payload,
            ct=self.ct,
            sync_status=status,
            ntp_time_local=local,
            ntp_time_remote=remote,
            rtp_time=rtp_time,
            seqnum=seqnum,
        )

    def _request_resend(self, seqnum: int, count: int) -> None:
        logger.debug("resend request %d %d", seqnum, count)
        our_seqnum = self._control_seqnum
        self._control_seqnum = (self._control_seqnum + 1) & _SEQ_MASK
        if self._csock is None or self._control_addr is None:
            logger.warning("resend failed: control address unknown")
            return
        try:
            self._csock.sendto(build_resend_request(our_seqnum, seqnum, count), self._control_addr)
        except OSError as exc:
            logger.warning("resend failed: %s", exc)

    def _run(self) -> None:
        csock, dsock = self._csock, self._dsock
        while self.process_events():
            try:
                readable, _, _ = select.select([csock, dsock], [], [], SELECT_TIMEOUT)
            except (OSError, ValueError):
                logger.error("error in select")
                break
            if csock in readable:
                try:
                    packet, addr = csock.recvfrom(PACKET_MAX_LEN)
                except OSError:
                    packet = b""
                else:
                    if packet and self._control_addr is None:
                        self._control_addr = addr
                try:
                    self.handle_control_packet(packet)
                except ValueError as exc:
                    logger.warning("bad control packet: %s", exc)
            if dsock in readable:
                try:
                    packet = dsock.recv(PACKET_MAX_LEN)
                except OSError:
                    continue
                try:
                    self.handle_data_packet(packet)
                except ValueError as exc:
                    logger.warning("bad data packet: %s", exc)
        with self._lock:
            self._running = False
        logger.debug("audio thread exiting")

    def stop(self) -> None:
        """Stop the worker thread, close the sockets and empty the buffer."""
        with self._lock:
            if self._joined:
                return
            self._running = False
        if self._thread is not None:
            self._thread.join()
        for sock in (self._csock, self._dsock):
            if sock is not None:
                sock.close()
        self._csock = self._dsock = None
        self.buffer.flush(-1)
        with self._lock:
            self._joined = True

    def is_running(self) -> bool:
        """True while the worker thread is receiving."""
        with self._lock:
            return self._running