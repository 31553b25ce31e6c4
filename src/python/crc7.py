"""
CRC-7 checksum used by the `Pololu Maestro serial protocol
<https://www.pololu.com/docs/0J40/5.d>`_.

The lookup table is built once at import time and never modified, so it can
be read from any thread without locking.
"""

from typing import Iterable, Tuple

CRC7_POLY = 0x91


def _crc_for_byte(value: int) -> int:
    for _ in range(8):
        if value & 1:
            value ^= CRC7_POLY
        value >>= 1

    return value


CRC7_TABLE: Tuple[int, ...] = tuple(_crc_for_byte(i) for i in range(256))


def crc7(crc: int, data: Iterable[int]) -> int:
    """
    Folds `data` into the running checksum `crc`.

    :param crc: The previous checksum value; use 0 to start a new checksum.
    :param data: The bytes to checksum.
    :return: The updated checksum. Callers sending it on the wire must mask it
        to 7 bits.
    """

    for byte in data:
        crc = CRC7_TABLE[crc ^ byte]

    return crc
