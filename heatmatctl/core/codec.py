"""Control packet encoding.

Every packet is four bytes ``[value, checksum, value, checksum]`` where the
checksum is the one's complement of the value. The pair is repeated for the
left/right zones of the vendor's two-zone format; single-zone mats ignore the
second pair but still expect it on the wire.
"""

from __future__ import annotations

from heatmatctl.core.errors import CorruptedPacketError

PACKET_LENGTH = 4


def checksum(value: int) -> int:
    return (0xFF - value) & 0xFF


def encode(level: int) -> bytes:
    if not 0 <= level <= 0xFF:
        raise ValueError(f"Level {level} does not fit in a single byte")
    chk = checksum(level)
    return bytes((level, chk, level, chk))


def decode(payload: bytes | bytearray) -> int:
    """Return the level carried by ``payload``.

    Payloads shorter than four bytes are rejected rather than guessed at.
    """
    if len(payload) < PACKET_LENGTH:
        raise CorruptedPacketError(
            f"Packet {bytes(payload).hex() or '<empty>'} is shorter than {PACKET_LENGTH} bytes"
        )
    value, chk = payload[0], payload[1]
    if chk != checksum(value):
        raise CorruptedPacketError(
            f"Checksum mismatch in packet {bytes(payload).hex()}: expected {checksum(value):02x}, got {chk:02x}"
        )
    return value


def is_valid(payload: bytes | bytearray) -> bool:
    try:
        decode(payload)
    except CorruptedPacketError:
        return False
    return True
