#!/usr/bin/env python3
"""
modbus_checksum.py - CRC checksum engine for frame integrity checks

Every supported algorithm is described by its catalogue parameters
(width, poly, init, refin, refout, xorout) and computed with one generic
table-driven routine. Tables are built once at import time and are
read-only afterwards, so checksum functions can be shared between threads.

Usage:
    from modbus_checksum import resolve

    checksum_fn, digest_width = resolve('CRC-16/MODBUS')
    digest = checksum_fn(frame[:-digest_width])
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Tuple

from modbus_errors import UnknownAlgorithm


class ChecksumAlgorithm(Enum):
    CRC16_MODBUS = 'CRC-16/MODBUS'
    CRC16_ARC = 'CRC-16/ARC'
    CRC16_XMODEM = 'CRC-16/XMODEM'
    CRC16_CCITT_FALSE = 'CRC-16/CCITT-FALSE'
    CRC16_KERMIT = 'CRC-16/KERMIT'
    CRC16_X25 = 'CRC-16/X-25'
    CRC32 = 'CRC-32'
    CRC32_BZIP2 = 'CRC-32/BZIP2'
    CRC32_MPEG2 = 'CRC-32/MPEG-2'
    CRC32C = 'CRC-32C'
    CRC64_ECMA = 'CRC-64/ECMA-182'
    CRC64_ISO = 'CRC-64/GO-ISO'
    CRC64_XZ = 'CRC-64/XZ'

    @classmethod
    def from_name(cls, name: str) -> 'ChecksumAlgorithm':
        """Look up an algorithm by canonical name, member name or alias."""
        if isinstance(name, cls):
            return name
        algorithm = _ALIASES.get(_normalize(name))
        if algorithm is None:
            raise UnknownAlgorithm(name)
        return algorithm


@dataclass(frozen=True)
class CrcParams:
    """Catalogue parameters of one CRC variant."""
    width: int
    poly: int
    init: int
    refin: bool
    refout: bool
    xorout: int
    check: int  # CRC of b'123456789'

    @property
    def digest_width(self) -> int:
        return self.width // 8

    @property
    def mask(self) -> int:
        return (1 << self.width) - 1


_ONES64 = 0xFFFFFFFFFFFFFFFF

CRC_CATALOGUE: Dict[ChecksumAlgorithm, CrcParams] = {
    ChecksumAlgorithm.CRC16_MODBUS: CrcParams(16, 0x8005, 0xFFFF, True, True, 0x0000, 0x4B37),
    ChecksumAlgorithm.CRC16_ARC: CrcParams(16, 0x8005, 0x0000, True, True, 0x0000, 0xBB3D),
    ChecksumAlgorithm.CRC16_XMODEM: CrcParams(16, 0x1021, 0x0000, False, False, 0x0000, 0x31C3),
    ChecksumAlgorithm.CRC16_CCITT_FALSE: CrcParams(16, 0x1021, 0xFFFF, False, False, 0x0000, 0x29B1),
    ChecksumAlgorithm.CRC16_KERMIT: CrcParams(16, 0x1021, 0x0000, True, True, 0x0000, 0x2189),
    ChecksumAlgorithm.CRC16_X25: CrcParams(16, 0x1021, 0xFFFF, True, True, 0xFFFF, 0x906E),
    ChecksumAlgorithm.CRC32: CrcParams(32, 0x04C11DB7, 0xFFFFFFFF, True, True, 0xFFFFFFFF, 0xCBF43926),
    ChecksumAlgorithm.CRC32_BZIP2: CrcParams(32, 0x04C11DB7, 0xFFFFFFFF, False, False, 0xFFFFFFFF, 0xFC891918),
    ChecksumAlgorithm.CRC32_MPEG2: CrcParams(32, 0x04C11DB7, 0xFFFFFFFF, False, False, 0x00000000, 0x0376E6E7),
    ChecksumAlgorithm.CRC32C: CrcParams(32, 0x1EDC6F41, 0xFFFFFFFF, True, True, 0xFFFFFFFF, 0xE3069283),
    ChecksumAlgorithm.CRC64_ECMA: CrcParams(64, 0x42F0E1EBA9EA3693, 0, False, False, 0, 0x6C40DF5F0B497347),
    ChecksumAlgorithm.CRC64_ISO: CrcParams(64, 0x000000000000001B, _ONES64, True, True, _ONES64, 0xB90956C775A41001),
    ChecksumAlgorithm.CRC64_XZ: CrcParams(64, 0x42F0E1EBA9EA3693, _ONES64, True, True, _ONES64, 0x995DC9BBDF1939FA),
}


def _normalize(name) -> str:
    return re.sub(r'[\s\-_/]', '', str(name).upper())


def _reflect(value: int, width: int) -> int:
    """Reverse the low `width` bits of value."""
    result = 0
    for _ in range(width):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def _build_table(params: CrcParams) -> Tuple[int, ...]:
    """Build the 256-entry lookup table for one parameter set."""
    table = []
    if params.refin:
        poly = _reflect(params.poly, params.width)
        for i in range(256):
            crc = i
            for _ in range(8):
                crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
            table.append(crc)
    else:
        top_bit = 1 << (params.width - 1)
        for i in range(256):
            crc = i << (params.width - 8)
            for _ in range(8):
                if crc & top_bit:
                    crc = ((crc << 1) ^ params.poly) & params.mask
                else:
                    crc = (crc << 1) & params.mask
            table.append(crc)
    return tuple(table)


class CrcFunction:
    """
    Callable computing one CRC variant.

    Stateless between calls: the register lives in a local variable and
    the lookup table is an immutable tuple.
    """

    __slots__ = ('algorithm', 'params', '_table')

    def __init__(self, algorithm: ChecksumAlgorithm):
        self.algorithm = algorithm
        self.params = CRC_CATALOGUE[algorithm]
        self._table = _build_table(self.params)

    def __call__(self, data: bytes) -> int:
        p = self.params
        table = self._table

        if p.refin:
            crc = _reflect(p.init, p.width)
            for byte in data:
                crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
        else:
            shift = p.width - 8
            mask = p.mask
            crc = p.init
            for byte in data:
                crc = ((crc << 8) & mask) ^ table[((crc >> shift) ^ byte) & 0xFF]

        if p.refin != p.refout:
            crc = _reflect(crc, p.width)
        return (crc ^ p.xorout) & p.mask

    @property
    def digest_width(self) -> int:
        return self.params.digest_width

    def __repr__(self) -> str:
        return f"CrcFunction({self.algorithm.value})"


# Dispatch table: one entry per algorithm, built once
_CHECKSUM_FUNCTIONS: Dict[ChecksumAlgorithm, CrcFunction] = {
    algorithm: CrcFunction(algorithm) for algorithm in ChecksumAlgorithm
}

_ALIASES: Dict[str, ChecksumAlgorithm] = {}
for _algorithm in ChecksumAlgorithm:
    _ALIASES[_normalize(_algorithm.value)] = _algorithm
    _ALIASES[_normalize(_algorithm.name)] = _algorithm
_ALIASES.update({
    _normalize('MODBUS'): ChecksumAlgorithm.CRC16_MODBUS,
    _normalize('CRC16'): ChecksumAlgorithm.CRC16_MODBUS,
    _normalize('CRC-16/CCITT'): ChecksumAlgorithm.CRC16_CCITT_FALSE,
    _normalize('CRC-16/IBM-3740'): ChecksumAlgorithm.CRC16_CCITT_FALSE,
    _normalize('CRC-32/IEEE'): ChecksumAlgorithm.CRC32,
    _normalize('CRC-32/ISO-HDLC'): ChecksumAlgorithm.CRC32,
    _normalize('CRC-32/CASTAGNOLI'): ChecksumAlgorithm.CRC32C,
    _normalize('CRC-64/ISO'): ChecksumAlgorithm.CRC64_ISO,
    _normalize('CRC-64/ECMA'): ChecksumAlgorithm.CRC64_ECMA,
    _normalize('CRC-64/GO-ECMA'): ChecksumAlgorithm.CRC64_XZ,
})


def resolve(algorithm_id) -> Tuple[Callable[[bytes], int], int]:
    """
    Resolve an algorithm identifier to (checksum_fn, digest_width_bytes).

    Raises:
        UnknownAlgorithm: identifier is not a supported algorithm or alias
    """
    algorithm = ChecksumAlgorithm.from_name(algorithm_id)
    fn = _CHECKSUM_FUNCTIONS[algorithm]
    return fn, fn.digest_width


def crc(algorithm_id, data: bytes) -> int:
    """Convenience: compute a digest in one call."""
    fn, _ = resolve(algorithm_id)
    return fn(data)


def algorithm_names() -> List[str]:
    """Canonical names of all supported algorithms."""
    return [algorithm.value for algorithm in ChecksumAlgorithm]
