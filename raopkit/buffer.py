"""Reordering and decryption buffer for incoming RTP audio packets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

BUFFER_LENGTH = 32
PACKET_MAX_LEN = 32768
HEADER_SIZE = 12
AES_KEY_LEN = 16
AES_IV_LEN = 16
EMPTY_PACKET_MARKER = b"\x00\x68\x34\x00"

_SEQ_MASK = 0xFFFF


def _seq_cmp(s1: int, s2: int) -> int:
    """Signed 16-bit distance from ``s2`` to ``s1``, honouring wrap-around."""
    diff = (s1 - s2) & _SEQ_MASK
    return diff - 0x10000 if diff >= 0x8000 else diff


@dataclass
class AudioPacket:
    """A decrypted audio payload with its RTP header values."""

    seqnum: int
    rtp_timestamp: int
    ntp_timestamp: int
    payload: bytes


class AudioBuffer:
    """Holds up to 32 packets so late or resent packets can be put in order.

    Every payload is decrypted with AES-128-CBC, starting afresh from the
    session key and IV for each packet; a trailing partial block is left
    in the clear.
    """

    def __init__(self, aes_key: bytes, aes_iv: bytes) -> None:
        if len(aes_key) != AES_KEY_LEN:
            raise ValueError(f"AES key must be {AES_KEY_LEN} bytes, got {len(aes_key)}")
        if len(aes_iv) != AES_IV_LEN:
            raise ValueError(f"AES IV must be {AES_IV_LEN} bytes, got {len(aes_iv)}")
        self._cipher = Cipher(algorithms.AES(bytes(aes_key)), modes.CBC(bytes(aes_iv)))
        self._entries: List[Optional[AudioPacket]] = [None] * BUFFER_LENGTH
        self._is_empty = True
        self._first_seqnum = 0
        self._last_seqnum = 0

    @property
    def is_empty(self) -> bool:
        return self._is_empty

    @property
    def first_seqnum(self) -> int:
        return self._first_seqnum

    @property
    def last_seqnum(self) -> int:
        return self._last_seqnum

    def decrypt(self, data: bytes, payload_size: int) -> bytes:
        """Decrypt the ``payload_size`` bytes that follow the 12-byte RTP header."""
        data = bytes(data)
        if payload_size < 0 or len(data) < HEADER_SIZE + payload_size:
            raise ValueError(
                f"packet of {len(data)} bytes cannot hold a payload of {payload_size} bytes"
            )
        encrypted_len = payload_size // 16 * 16
        payload = data[HEADER_SIZE:HEADER_SIZE + payload_size]
        decryptor = self._cipher.decryptor()
        clear = decryptor.update(payload[:encrypted_len]) + decryptor.finalize()
        return clear + payload[encrypted_len:]

    def enqueue(self, data: bytes, ntp_timestamp: int, rtp_timestamp: int, use_seqnum: bool) -> bool:
        """Store one RTP packet; return False if it was skipped.

        Empty marker packets, late packets and resends of packets already
        held are skipped. Raises ValueError for a packet of invalid length.
        """
        data = bytes(data)
        if len(data) < HEADER_SIZE or len(data) > PACKET_MAX_LEN:
            raise ValueError(f"invalid audio packet length {len(data)}")
        if len(data) == 16 and data[12:16] == EMPTY_PACKET_MARKER:
            return False
        payload_size = len(data) - HEADER_SIZE

        if use_seqnum:
            seqnum = int.from_bytes(data[2:4], "big")
        else:
            seqnum = self._first_seqnum

        if not self._is_empty and _seq_cmp(seqnum, self._first_seqnum) < 0:
            return False

        if _seq_cmp(seqnum, (self._first_seqnum + BUFFER_LENGTH) & _SEQ_MASK) >= 0:
            self.flush(seqnum)

        slot = seqnum % BUFFER_LENGTH
        existing = self._entries[slot]
        if existing is not None and existing.seqnum == seqnum:
            return False

        self._entries[slot] = AudioPacket(
            seqnum=seqnum,
            rtp_timestamp=rtp_timestamp,
            ntp_timestamp=ntp_timestamp,
            payload=self.decrypt(data, payload_size),
        )

        if self._is_empty:
            self._first_seqnum = seqnum
            self._last_seqnum = seqnum
            self._is_empty = False
        if _seq_cmp(seqnum, self._last_seqnum) > 0:
            self._last_seqnum = seqnum
        return True

    def dequeue(self, no_resend: bool) -> Optional[AudioPacket]:
        """Take the next packet in sequence, or None if none can be taken now.

        Unless ``no_resend`` is set, a missing packet is waited for while the
        buffer still has room; once it is full the gap is skipped.
        """
        entry_count = _seq_cmp(self._last_seqnum, self._first_seqnum) + 1
        if self._is_empty or entry_count <= 0:
            return None

        slot = self._first_seqnum % BUFFER_LENGTH
        entry = self._entries[slot]
        if not no_resend and entry is None and entry_count < BUFFER_LENGTH:
            return None

        self._first_seqnum = (self._first_seqnum + 1) & _SEQ_MASK
        if entry is None:
            return None
        self._entries[slot] = None
        return entry

    def handle_resends(self, resend_cb: Callable[[int, int], object]) -> None:
        """Ask for the packets missing at the head of the buffer.

        ``resend_cb`` is called with the first missing sequence number and
        the number of consecutive packets missing from there.
        """
        if _seq_cmp(self._first_seqnum, self._last_seqnum) >= 0:
            return
        logger.debug(
            "handle_resends first_seqnum=%u last_seqnum=%u",
            self._first_seqnum,
            self._last_seqnum,
        )
        seqnum = self._first_seqnum
        while _seq_cmp(seqnum, self._last_seqnum) < 0:
            if self._entries[seqnum % BUFFER_LENGTH] is not None:
                break
            seqnum = (seqnum + 1) & _SEQ_MASK
        count = _seq_cmp(seqnum, self._first_seqnum)
        if count == 0:
            return
        resend_cb(self._first_seqnum, count)

    def flush(self, next_seq: int) -> None:
        """Drop every held packet and restart at ``next_seq``.

        A ``next_seq`` outside 0..65535 marks the buffer empty instead.
        """
        self._entries = [None] * BUFFER_LENGTH
        if next_seq < 0 or next_seq > _SEQ_MASK:
            self._is_empty = True
        else:
            self._first_seqnum = next_seq
            self._last_seqnum = (next_seq - 1) & _SEQ_MASK