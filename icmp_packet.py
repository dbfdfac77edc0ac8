"""
icmp_packet.py - ICMP echo packet encoding and decoding.

Builds the 24-byte echo requests sent by heaping and decodes the raw IPv4
datagrams read back from the ICMP socket into reply or unreachable events.
"""

import socket
import struct
import time
from typing import NamedTuple

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACH = 3
ICMP_ECHO_REQUEST = 8
ICMP_CODE = 0

ICMP_MINLEN = 8        # type, code, checksum, id, seq
TIMESTAMP = struct.Struct("!qq")
PACKET_SIZE = ICMP_MINLEN + TIMESTAMP.size

_HEADER = struct.Struct("!BBHHH")


class EchoReply(NamedTuple):
    """An echo reply to one of our own requests."""

    host: str
    elapsed_ms: int
    sequence: int

    def __str__(self) -> str:
        return f"{self.host}: {self.elapsed_ms} ms (seq={self.sequence})"


class Unreachable(NamedTuple):
    """A destination-unreachable error quoting one of our own requests."""

    host: str

    def __str__(self) -> str:
        return f"{self.host}: unreachable"


def _fold(total: int) -> int:
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def _sum_words(data: bytes, start: int) -> int:
    total = 0
    end = len(data) - (len(data) - start) % 2
    for i in range(start, end, 2):
        total += (data[i] << 8) + data[i + 1]
    if end < len(data):
        total += data[end] << 8
    return total


def icmp_checksum(data: bytes) -> int:
    """Compute the checksum of an ICMP message, skipping its checksum field.

    The type/code word is added, bytes 2-3 are ignored and every word from
    offset 4 onwards is summed, so the result can be computed over a packet
    whose checksum field still holds an old value.

    Args:
        data: ICMP header and payload.

    Returns:
        16-bit checksum as an integer.
    """
    if len(data) < 4:
        return _fold(_sum_words(data, 0))
    return _fold((data[0] << 8) + data[1] + _sum_words(data, 4))


def internet_checksum(data: bytes) -> int:
    """Compute the Internet checksum (RFC 1071) over all of *data*.

    Over a packet carrying a correct checksum the result is 0.
    """
    return _fold(_sum_words(data, 0))


def timestamp_now() -> tuple[int, int]:
    """Return the wall clock as ``(seconds, microseconds)``."""
    return divmod(time.time_ns() // 1000, 1_000_000)


def elapsed_ms(now: tuple[int, int], then: tuple[int, int]) -> int:
    """Return whole milliseconds from *then* to *now*.

    Args:
        now:  Later ``(seconds, microseconds)`` pair.
        then: Earlier ``(seconds, microseconds)`` pair.

    Returns:
        ``seconds * 1000 + microseconds // 1000`` of the difference, with
        one second borrowed when the microseconds underflow.
    """
    sec = now[0] - then[0]
    usec = now[1] - then[1]
    if usec < 0:
        sec -= 1
        usec += 1_000_000
    return sec * 1000 + usec // 1000


def build_echo_request(
    identifier: int,
    sequence: int,
    send_time: tuple[int, int],
    size: int = PACKET_SIZE,
) -> bytes:
    """Build one ICMP echo request stamped with *send_time*.

    Args:
        identifier: Run identifier, truncated to 16 bits.
        sequence:   Sequence number, truncated to 16 bits.
        send_time:  ``(seconds, microseconds)`` written into the payload.
        size:       Total packet size; bytes after the timestamp are
                    filled with their own offset.

    Returns:
        The encoded packet with its checksum filled in.
    """
    if size < PACKET_SIZE:
        raise ValueError(f"echo request needs at least {PACKET_SIZE} bytes, got {size}")

    packet = bytearray(size)
    _HEADER.pack_into(packet, 0, ICMP_ECHO_REQUEST, ICMP_CODE, 0,
                      identifier & 0xFFFF, sequence & 0xFFFF)
    TIMESTAMP.pack_into(packet, ICMP_MINLEN, *send_time)
    for n in range(PACKET_SIZE, size):
        packet[n] = n & 0xFF

    struct.pack_into("!H", packet, 2, icmp_checksum(packet))
    return bytes(packet)


def _ip_header_len(packet: bytes, offset: int = 0) -> int:
    return (packet[offset] & 0x0F) << 2


def decode(
    packet: bytes,
    source: str,
    identifier: int,
    now: tuple[int, int] | None = None,
) -> EchoReply | Unreachable | None:
    """Decode a raw IPv4 datagram read from the ICMP socket.

    Args:
        packet:     Datagram including its IP header.
        source:     Address the datagram came from.
        identifier: Run identifier our requests carry.
        now:        Receive time; defaults to :func:`timestamp_now`.

    Returns:
        An :class:`EchoReply` or :class:`Unreachable` for packets that
        answer one of our requests, otherwise ``None``.
    """
    if not packet:
        return None
    hl = _ip_header_len(packet)
    if len(packet) < hl + ICMP_MINLEN:
        return None

    icmp_type, _code, _cksum, ident, seq = _HEADER.unpack_from(packet, hl)

    if icmp_type == ICMP_ECHO_REPLY and ident == identifier & 0xFFFF:
        if len(packet) < hl + PACKET_SIZE:
            return None
        sent = TIMESTAMP.unpack_from(packet, hl + ICMP_MINLEN)
        return EchoReply(source, elapsed_ms(now or timestamp_now(), sent), seq)

    if icmp_type == ICMP_DEST_UNREACH:
        # The error quotes the original IP header and 8 bytes of our ICMP header.
        orig = hl + ICMP_MINLEN
        if len(packet) <= orig:
            return None
        ohl = _ip_header_len(packet, orig)
        if len(packet) < orig + ohl + ICMP_MINLEN or ohl < 20:
            return None
        orig_type, _code, _cksum, orig_ident, _seq = _HEADER.unpack_from(packet, orig + ohl)
        if orig_type == ICMP_ECHO_REQUEST and orig_ident == identifier & 0xFFFF:
            return Unreachable(socket.inet_ntoa(packet[orig + 16:orig + 20]))

    return None
