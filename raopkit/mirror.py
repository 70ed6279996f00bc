"""Receiving the screen-mirroring video stream over TCP."""

from __future__ import annotations

import ipaddress
import logging
import plistlib
import select
import socket
import threading
from typing import Any, Callable, Optional, Union

from .codec import parse_codec_packet, parse_video_size
from .mirror_header import HEADER_SIZE, MirrorHeader, PayloadType, parse_header
from .nal import convert_nal_units
from .ntp import NtpClient
from .stream import Callbacks, VideoFrame

logger = logging.getLogger(__name__)

REPORT_TRAILER_SIZE = 25000
SELECT_TIMEOUT = 0.005
RECV_TIMEOUT = 0.1
KEEPALIVE_IDLE = 60
KEEPALIVE_INTERVAL = 10
KEEPALIVE_COUNT = 6

Decryptor = Callable[[bytes], bytes]


def _parse_remote(remote: Union[str, bytes]) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
    if isinstance(remote, (bytes, bytearray)):
        if len(remote) not in (4, 16):
            raise ValueError(f"remote address must be 4 or 16 bytes, got {len(remote)}")
        remote = bytes(remote)
    try:
        return ipaddress.ip_address(remote)
    except ValueError as exc:
        raise ValueError(f"invalid remote address: {remote!r}") from exc


class MirrorStream:
    """A mirroring session: accepts the client's TCP stream and delivers H.264.

    ``decrypt`` turns an encrypted video payload into clear NAL data of the
    same length; when it is None payloads are taken as already clear.
    """

    def __init__(
        self,
        callbacks: Optional[Callbacks],
        ntp: NtpClient,
        remote: Union[str, bytes],
        decrypt: Optional[Decryptor] = None,
    ) -> None:
        self._callbacks = callbacks if callbacks is not None else Callbacks()
        self._ntp = ntp
        self._remote_ip = _parse_remote(remote)
        self._decrypt = decrypt
        self.show_client_fps_data = False
        self.client_report: Any = None
        self.mirror_data_lport = 0

        self._sps_pps: Optional[bytes] = None
        self._sps_pps_timestamp = 0

        self._lock = threading.Lock()
        self._running = False
        self._joined = True
        self._thread: Optional[threading.Thread] = None
        self._listener: Optional[socket.socket] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def handle_packet(self, header: MirrorHeader, payload: bytes) -> Optional[VideoFrame]:
        """Handle one header and its payload.

        Returns the frame delivered to ``video_process`` for video packets
        and None for every other kind. Raises ValueError for a malformed
        codec packet.
        """
        payload = bytes(payload)
        kind = header.payload_type
        if kind is PayloadType.VIDEO:
            return self._handle_video(header, payload)
        if kind is PayloadType.CODEC:
            self._handle_codec(header, payload)
            return None
        if kind is PayloadType.OLD_PROTOCOL:
            logger.debug(
                "old-protocol once-per-second packet: payload_size %d header %s ts_raw = %d",
                len(payload), header.description, header.ntp_timestamp_raw,
            )
        if kind in (PayloadType.OLD_PROTOCOL, PayloadType.STREAMING_REPORT):
            self._handle_report(header, payload)
            return None
        logger.warning(
            "unexpected TCP packet from client, size %d, %s ts_raw = %d",
            len(payload), header.description, header.ntp_timestamp_raw,
        )
        return None

    def _handle_video(self, header: MirrorHeader, payload: bytes) -> Optional[VideoFrame]:
        local = self._ntp.convert_remote_time(header.ntp_timestamp_remote)
        if self._sps_pps is not None and header.ntp_timestamp_raw != self._sps_pps_timestamp:
            logger.debug(
                "prepended sps_pps timestamp %d does not match video timestamp %d, discarding",
                self._sps_pps_timestamp, header.ntp_timestamp_raw,
            )
            self._sps_pps = None
        prefix = self._sps_pps
        self._sps_pps = None

        decrypted = self._decrypt(payload) if self._decrypt is not None else payload
        if len(decrypted) != len(payload):
            raise ValueError("decryption changed the payload length")
        conversion = convert_nal_units(decrypted)
        if conversion.h265_detected:
            return None

        body = bytearray(conversion.data)
        if prefix is not None and not conversion.valid and body:
            # only the first byte of the whole frame marks it invalid
            body[0] = 0 if conversion.nal_count else decrypted[0]
        data = bytearray(prefix or b"") + body
        if not conversion.valid and data:
            data[0] = 1

        frame = VideoFrame(
            nal_count=conversion.nal_count + (2 if prefix is not None else 0),
            data=bytes(data),
            ntp_time_local=local,
            ntp_time_remote=header.ntp_timestamp_remote,
        )
        self._callbacks.invoke("video_resume")
        self._callbacks.invoke("video_process", self._ntp, frame)
        return frame

    def _handle_codec(self, header: MirrorHeader, payload: bytes) -> None:
        logger.debug(
            "unencrypted codec packet: payload_size %d header %s",
            len(payload), header.description,
        )
        if not payload:
            logger.debug("discard codec packet with no payload")
            return
        size = parse_video_size(header.packet)
        self._callbacks.invoke(
            "video_report_size", size.width_source, size.height_source, size.width, size.height
        )
        info = parse_codec_packet(payload)
        self._sps_pps = info.sps_pps
        self._sps_pps_timestamp = header.ntp_timestamp_raw
        self._callbacks.invoke("video_pause")

    def _handle_report(self, header: MirrorHeader, payload: bytes) -> None:
        logger.debug(
            "video streaming performance info: payload_size %d header %s",
            len(payload), header.description,
        )
        if not payload or not self.show_client_fps_data:
            return
        plist_size = len(payload)
        if plist_size > REPORT_TRAILER_SIZE:
            plist_size -= REPORT_TRAILER_SIZE
            logger.debug("video_info packet had 25kB trailer")
        try:
            report = plistlib.loads(payload[:plist_size], fmt=plistlib.FMT_BINARY)
        except Exception as exc:  # plistlib raises several error types on bad input
            logger.warning("unreadable streaming report: %s", exc)
            return
        self.client_report = report
        logger.info("%r", report)

    def start_mirror(self, mirror_data_lport: int, show_client_fps_data: bool) -> int:
        """Listen for the client's video connection; return the bound port."""
        logger.info("starting mirroring")
        self.show_client_fps_data = bool(show_client_fps_data)
        with self._lock:
            if self._running or not self._joined:
                return self.mirror_data_lport
            family = socket.AF_INET6 if self._remote_ip.version == 6 else socket.AF_INET
            listener = socket.socket(family, socket.SOCK_STREAM)
            try:
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                listener.bind(("::" if family == socket.AF_INET6 else "", mirror_data_lport))
                listener.listen(1)
            except OSError:
                listener.close()
                logger.error("initializing sockets failed")
                raise
            self._listener = listener
            self.mirror_data_lport = listener.getsockname()[1]
            logger.debug("local data port TCP %d", self.mirror_data_lport)
            self._running = True
            self._joined = False
            self._thread = threading.Thread(target=self._run, name="rtp-mirror", daemon=True)
            self._thread.start()
        return self.mirror_data_lport

    def stop(self) -> None:
        """Stop the worker thread and close the listening socket."""
        with self._lock:
            if self._joined:
                return
            self._running = False
        if self._thread is not None:
            self._thread.join()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        with self._lock:
            self._joined = True

    @staticmethod
    def _configure_connection(conn: socket.socket) -> None:
        conn.settimeout(RECV_TIMEOUT)
        try:
            conn.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        except OSError as exc:
            logger.warning("could not set stream socket keepalive: %s", exc)
        idle = getattr(socket, "TCP_KEEPIDLE", getattr(socket, "TCP_KEEPALIVE", None))
        options = (
            (idle, KEEPALIVE_IDLE),
            (getattr(socket, "TCP_KEEPINTVL", None), KEEPALIVE_INTERVAL),
            (getattr(socket, "TCP_KEEPCNT", None), KEEPALIVE_COUNT),
        )
        for option, value in options:
            if option is None:
                continue
            try:
                conn.setsockopt(socket.IPPROTO_TCP, option, value)
            except OSError as exc:
                logger.warning("could not set stream socket keepalive option: %s", exc)

    def _recv_exact(self, conn: socket.socket, size: int) -> Optional[bytes]:
        """Read exactly ``size`` bytes; None if stopped, EOFError if closed."""
        received = bytearray()
        while len(received) < size:
            if not self.running:
                return None
            try:
                chunk = conn.recv(size - len(received))
            except socket.timeout:
                continue
            if not chunk:
                raise EOFError(len(received))
            received += chunk
        return bytes(received)

    def _run(self) -> None:
        listener = self._listener
        conn: Optional[socket.socket] = None
        conn_reset = False
        try:
            while self.running:
                if conn is None:
                    try:
                        ready, _, _ = select.select([listener], [], [], SELECT_TIMEOUT)
                    except (OSError, ValueError):
                        logger.error("error in select")
                        break
                    if not ready:
                        continue
                    try:
                        conn, _ = listener.accept()
                    except OSError as exc:
                        logger.error("error in accept: %s", exc)
                        break
                    logger.debug("accepted client")
                    self._configure_connection(conn)
                    continue

                try:
                    raw = self._recv_exact(conn, HEADER_SIZE)
                except EOFError as exc:
                    logger.debug("tcp socket is closed, got %s bytes of 128 byte header", exc)
                    conn.close()
                    conn = None
                    continue
                except ConnectionResetError:
                    conn_reset = True
                    break
                except OSError as exc:
                    logger.error("error in header recv: %s", exc)
                    break
                if raw is None:
                    break
                header = parse_header(raw)

                try:
                    payload = self._recv_exact(conn, header.payload_size)
                except EOFError:
                    logger.error("tcp socket is closed")
                    break
                except ConnectionResetError:
                    conn_reset = True
                    break
                except OSError as exc:
                    logger.error("error in recv: %s", exc)
                    break
                if payload is None:
                    break

                try:
                    self.handle_packet(header, payload)
                except ValueError as exc:
                    logger.warning("bad mirroring packet: %s", exc)
        finally:
            if conn is not None:
                conn.close()
            with self._lock:
                self._running = False
        logger.debug("exiting TCP thread")
        if conn_reset:
            self._callbacks.invoke("conn_reset", 0, False)