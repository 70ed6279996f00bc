"""NTP-style clock synchronisation with the sending device."""

from __future__ import annotations

import enum
import ipaddress
import logging
import select
import socket
import struct
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

from .stream import Callbacks

logger = logging.getLogger(__name__)

SECOND_IN_NSECS = 1_000_000_000
SECONDS_FROM_1900_TO_1970 = 2_208_988_800

DATA_COUNT = 8
PHI_PPM = 15
R_RHO = (1 << 32) // 1000
S_RHO = (1 << 32) // 1000
MAX_DISTANCE = (1500 << 32) // 1000
MAX_DISPERSION = 16 << 32

REQUEST_HEADER = b"\x80\xd2\x00\x07"
REQUEST_SIZE = 32
RESPONSE_MIN_SIZE = 32
RECEIVE_TIMEOUT = 0.3
POLL_INTERVAL = 3.0

_UINT64_MASK = (1 << 64) - 1
_TWO_POW_N = tuple(2 ** (n + 1) for n in range(DATA_COUNT))


class TimingProtocol(enum.Enum):
    """How the client's clock timestamps are based."""

    NTP = 0
    TP_NONE = 1
    TP_OTHER = 2
    TP_UNSPECIFIED = 3


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _fixed_to_nanos(seconds: int, fraction: int) -> int:
    return (seconds * SECOND_IN_NSECS + ((fraction * SECOND_IN_NSECS) >> 32)) & _UINT64_MASK


def ntp_timestamp_to_nano_seconds(ntp_timestamp: int, account_for_epoch_diff: bool) -> int:
    """Convert a 32.32 fixed-point timestamp to nanoseconds.

    With ``account_for_epoch_diff`` the seconds are taken to count from 1900
    and are moved to the Unix epoch.
    """
    seconds = (ntp_timestamp >> 32) & 0xFFFFFFFF
    if account_for_epoch_diff:
        seconds -= SECONDS_FROM_1900_TO_1970
    return _fixed_to_nanos(seconds, ntp_timestamp & 0xFFFFFFFF)


def local_time_ns() -> int:
    """The local wall clock as nanoseconds since the Unix epoch."""
    return time.time_ns()


def _encode_ntp_timestamp(nanos: int) -> bytes:
    seconds = nanos // SECOND_IN_NSECS + SECONDS_FROM_1900_TO_1970
    fraction = ((nanos % SECOND_IN_NSECS) << 32) // SECOND_IN_NSECS
    return struct.pack(">II", seconds & 0xFFFFFFFF, fraction & 0xFFFFFFFF)


def build_request(send_time: int) -> bytes:
    """Build a 32-byte timing request carrying ``send_time`` at offset 24."""
    return REQUEST_HEADER + bytes(20) + _encode_ntp_timestamp(send_time)


@dataclass
class _Sample:
    time: int
    dispersion: int
    delay: int
    offset: int


class NtpClient:
    """Keeps the local clock's offset to the client's clock up to date.

    A background thread polls the client every few seconds; the offset
    from the sample with the smallest round-trip delay among the last
    eight is used.
    """

    def __init__(
        self,
        callbacks: Optional[Callbacks],
        remote: Union[str, bytes],
        timing_rport: int,
        time_protocol: TimingProtocol = TimingProtocol.NTP,
    ) -> None:
        self._callbacks = callbacks if callbacks is not None else Callbacks()
        self.time_protocol = time_protocol
        self.timing_rport = timing_rport
        self._remote_ip = self._parse_remote(remote)
        if self._remote_ip.version == 6:
            self._remote_addr: tuple = (str(self._remote_ip), timing_rport, 0, 0)
        else:
            self._remote_addr = (str(self._remote_ip), timing_rport)

        now = local_time_ns()
        self._data = [
            _Sample(time=now, dispersion=MAX_DISPERSION, delay=MAX_DISPERSION, offset=0)
            for _ in range(DATA_COUNT)
        ]
        self._data_index = 0

        self._sync_lock = threading.Lock()
        self._sync_offset = 0
        self._sync_dispersion = 0
        self._sync_delay = 0

        self._run_lock = threading.Lock()
        self._running = False
        self._joined = True
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sock: Optional[socket.socket] = None
        self.timing_lport = 0
        self._max_ntp_timeouts = 0

    @staticmethod
    def _parse_remote(remote: Union[str, bytes]) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
        if isinstance(remote, (bytes, bytearray)) and len(remote) not in (4, 16):
            raise ValueError(f"remote address must be 4 or 16 bytes, got {len(remote)}")
        try:
            return ipaddress.ip_address(bytes(remote) if isinstance(remote, bytearray) else remote)
        except ValueError as exc:
            raise ValueError(f"invalid remote address: {remote!r}") from exc

    @property
    def sync_offset(self) -> int:
        with self._sync_lock:
            return self._sync_offset

    @property
    def sync_delay(self) -> int:
        with self._sync_lock:
            return self._sync_delay

    @property
    def sync_dispersion(self) -> int:
        with self._sync_lock:
            return self._sync_dispersion

    @property
    def running(self) -> bool:
        with self._run_lock:
            return self._running

    def remote_timestamp_to_nano_seconds(self, timestamp: int) -> int:
        """Convert a client timestamp to nanoseconds on the client's clock."""
        return ntp_timestamp_to_nano_seconds(timestamp, self.time_protocol is TimingProtocol.NTP)

    def get_remote_time(self) -> int:
        """The current time on the client's clock, in nanoseconds."""
        return (local_time_ns() + self.sync_offset) & _UINT64_MASK

    def convert_remote_time(self, remote_time: int) -> int:
        """Local wall clock time for a point in client clock time."""
        return (remote_time - self.sync_offset) & _UINT64_MASK

    def convert_local_time(self, local_time: int) -> int:
        """Client clock time for a point in local wall clock time."""
        return (local_time + self.sync_offset) & _UINT64_MASK

    def process_response(self, response: bytes, receive_time: int) -> int:
        """Fold one timing reply into the estimate and return the correction."""
        response = bytes(response)
        if len(response) < RESPONSE_MIN_SIZE:
            raise ValueError(f"timing response too short: {len(response)} bytes")
        t3 = receive_time
        (origin,) = struct.unpack_from(">Q", response, 8)
        (received,) = struct.unpack_from(">Q", response, 16)
        (transmitted,) = struct.unpack_from(">Q", response, 24)
        t0 = ntp_timestamp_to_nano_seconds(origin, True)
        t1 = self.remote_timestamp_to_nano_seconds(received)
        t2 = self.remote_timestamp_to_nano_seconds(transmitted)
        logger.debug("timing reply t0=%d t1=%d t2=%d t3=%d", t0, t1, t2, t3)

        self._data_index = (self._data_index + 1) % DATA_COUNT
        self._data[self._data_index] = _Sample(
            time=t3,
            offset=_tdiv((t1 - t0) + (t2 - t3), 2),
            delay=(t3 - t0) - (t2 - t1),
            dispersion=R_RHO + S_RHO + _tdiv((t3 - t0) * PHI_PPM, SECOND_IN_NSECS),
        )

        by_delay = sorted(self._data, key=lambda s: s.delay)
        offset = by_delay[0].offset
        delay = by_delay[-1].delay
        dispersion = sum(
            _tdiv(s.dispersion + _tdiv((t3 - s.time) * PHI_PPM, SECOND_IN_NSECS), weight)
            for s, weight in zip(self._data, _TWO_POW_N)
        )

        with self._sync_lock:
            correction = offset - self._sync_offset
            self._sync_offset = offset
            self._sync_dispersion = dispersion
            self._sync_delay = delay
        logger.debug("sync correction = %d", correction)
        return correction

    def start(self, timing_lport: int, max_ntp_timeouts: int) -> int:
        """Open the timing socket, start polling and return the local port."""
        self._max_ntp_timeouts = max_ntp_timeouts
        self.timing_lport = timing_lport
        with self._run_lock:
            if self._running or not self._joined:
                return self.timing_lport
            family = socket.AF_INET6 if self._remote_ip.version == 6 else socket.AF_INET
            sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                sock.bind(("::" if family == socket.AF_INET6 else "", timing_lport))
                sock.settimeout(RECEIVE_TIMEOUT)
            except OSError:
                sock.close()
                logger.error("initializing timing socket failed")
                raise
            self._sock = sock
            self.timing_lport = sock.getsockname()[1]
            logger.debug("local timing port UDP %d", self.timing_lport)
            self._running = True
            self._joined = False
            self._wake.clear()
            self._thread = threading.Thread(target=self._run, name="ntp-timing", daemon=True)
            self._thread.start()
        return self.timing_lport

    def stop(self) -> None:
        """Stop polling, join the thread and close the socket."""
        with self._run_lock:
            if self._joined:
                return
            self._running = False
        self._wake.set()
        if self._thread is not None:
            self._thread.join()
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        with self._run_lock:
            self._joined = True
        logger.debug("stopped timing thread")

    def _flush_socket(self) -> None:
        sock = self._sock
        while True:
            try:
                ready, _, _ = select.select([sock], [], [], 0)
                if not ready:
                    return
                sock.recvfrom(1)
            except (OSError, ValueError):
                return

    def _run(self) -> None:
        timeout_counter = 0
        conn_reset = False
        while True:
            with self._run_lock:
                if not self._running:
                    break
            self._flush_socket()
            send_time = local_time_ns()
            try:
                self._sock.sendto(build_request(send_time), self._remote_addr)
            except OSError:
                logger.error("error sending timing request")
            else:
                try:
                    response, _ = self._sock.recvfrom(128)
                except OSError:
                    timeout_counter += 1
                    level = logging.DEBUG if timeout_counter == 1 else logging.ERROR
                    logger.log(
                        level,
                        "timing receive timeout %d (limit %d)",
                        timeout_counter,
                        self._max_ntp_timeouts,
                    )
                    if timeout_counter == self._max_ntp_timeouts:
                        conn_reset = True
                        break
                else:
                    receive_time = local_time_ns()
                    timeout_counter = 0
                    try:
                        self.process_response(response, receive_time)
                    except ValueError as exc:
                        logger.warning("ignoring timing reply: %s", exc)
            self._wake.wait(POLL_INTERVAL)

        with self._run_lock:
            self._running = False
        logger.debug("timing thread exiting")
        if conn_reset:
            self._callbacks.invoke("conn_reset", timeout_counter, False)