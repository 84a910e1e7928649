#!/usr/bin/env python3
"""
modbus_decoder.py - Frame decoder for Modbus-style telemetry responses

Decodes one raw frame against a FrameLayout:

    +---------+----------+--------------+----------------------+--------+
    | device  | function | length field | data (address units) | digest |
    | 1 byte  | 1 byte   | 1/2/4/8 B    | fields at offsets    | 2/4/8B |
    +---------+----------+--------------+----------------------+--------+

Order of work: check that every slice fits in the frame, verify the
trailing digest, read the header bytes and the length field, then extract
every field at
    length.byte_offset + length.width + address * bytes_per_address
and hand its raw value to the field's transform.

A decode either returns every field or raises a DecodeError; there are no
partial results. The length field is reported but does not bound field
extraction: fields are addressed absolutely.

Usage:
    from modbus_decoder import FrameDecoder

    decoder = FrameDecoder(layout)
    frame = decoder.decode(payload_bytes)
    frame.data       # {'temp': 20.0}
    frame.metadata   # {'device_address': 1, 'function_code': 3, ...}
"""

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from modbus_checksum import resolve
from modbus_errors import (
    BufferTooShort, ChecksumMismatch, EvalError,
    FieldDecodeFailed, LengthFieldWidthUnsupported,
)
from modbus_layout import FieldSpec, FrameLayout, LENGTH_FIELD_WIDTHS, build_layout
from modbus_transform import apply_transform


@dataclass
class DecodedFrame:
    """
    Result of decoding one frame.

    checksum_passed is True when the trailing digest verified, and None when
    the layout disables verification. A failed verification never produces
    a DecodedFrame; it raises ChecksumMismatch, whose metadata carries
    checksum_passed=False.
    """
    data: Dict[str, Any]
    units: Dict[str, str] = field(default_factory=dict)
    device_address: int = 0
    function_code: int = 0
    payload_length: int = 0
    checksum_passed: Optional[bool] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        """Diagnostic tags for the outgoing message."""
        return {
            'device_address': self.device_address,
            'function_code': self.function_code,
            'payload_length': self.payload_length,
            'checksum_passed': self.checksum_passed,
        }

    def annotated(self) -> Dict[str, Dict[str, Any]]:
        """Field values with their unit labels: {name: {'value': v, 'unit': u}}."""
        result = {}
        for name, value in self.data.items():
            entry = {'value': value}
            if name in self.units:
                entry['unit'] = self.units[name]
            result[name] = entry
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data': dict(self.data),
            'units': dict(self.units),
            'metadata': self.metadata,
        }


class FrameDecoder:
    """
    Decoder bound to one FrameLayout.

    Holds only the layout and the resolved checksum function, both
    read-only, so one instance may decode frames from several threads.
    """

    def __init__(self, layout: FrameLayout):
        self.layout = layout
        self.name = layout.name

        if layout.checksum.enabled:
            self._checksum_fn, self._digest_width = resolve(layout.checksum.algorithm)
        else:
            self._checksum_fn, self._digest_width = None, 0

        # (context, end) of every slice, in the order decode reads them
        self._slices = [('header', 2), ('length', layout.length_field.end)]
        self._slices.extend((f.name, layout.field_offset(f) + f.width) for f in layout.fields)
        if self._digest_width:
            self._slices.append(('checksum', self._digest_width))
        self._min_length = layout.min_frame_length

    def _check_bounds(self, buf: bytes):
        """Raise BufferTooShort naming the first slice that overflows."""
        if len(buf) >= self._min_length:
            return
        for context, end in self._slices:
            if end > len(buf):
                raise BufferTooShort(context, end, len(buf))

    def _read_uint(self, buf: bytes, pos: int, size: int, big_endian: bool) -> int:
        return int.from_bytes(buf[pos:pos + size], 'big' if big_endian else 'little')

    def _verify_checksum(self, buf: bytes) -> bool:
        """Compare the trailing digest against the digest of everything before it."""
        width = self._digest_width
        body, trailer = buf[:-width], buf[-width:]
        received = int.from_bytes(trailer, 'big' if self.layout.checksum.big_endian else 'little')
        expected = self._checksum_fn(body)
        if expected != received:
            raise ChecksumMismatch(self.layout.checksum.algorithm.value, expected, received)
        return True

    def _read_length(self, buf: bytes) -> int:
        length_field = self.layout.length_field
        if length_field.width not in LENGTH_FIELD_WIDTHS:
            raise LengthFieldWidthUnsupported(length_field.width)
        return self._read_uint(buf, length_field.byte_offset, length_field.width,
                               length_field.big_endian)

    def _read_field(self, buf: bytes, pos: int, field_spec: FieldSpec) -> float:
        """Read a field's raw value; integers are widened to float."""
        size = field_spec.width
        data = buf[pos:pos + size]
        raw_type = field_spec.raw_type

        if raw_type.is_float:
            fmt = ('>' if field_spec.big_endian else '<') + ('f' if size == 4 else 'd')
            return struct.unpack(fmt, data)[0]

        byteorder = 'big' if field_spec.big_endian else 'little'
        return float(int.from_bytes(data, byteorder, signed=raw_type.signed))

    def decode(self, payload: Union[bytes, bytearray, memoryview]) -> DecodedFrame:
        """
        Decode one frame.

        Args:
            payload: Full frame, trailing digest included when enabled

        Returns:
            DecodedFrame with one entry per layout field

        Raises:
            BufferTooShort: a header, length, field or digest slice lies
                past the end of the frame
            ChecksumMismatch: digest verification failed
            LengthFieldWidthUnsupported: layout has a bad length width
            FieldDecodeFailed: a field could not be decoded or transformed
        """
        buf = bytes(payload)

        self._check_bounds(buf)

        checksum_passed = None
        if self._checksum_fn is not None:
            checksum_passed = self._verify_checksum(buf)

        result = DecodedFrame(
            data={},
            device_address=self._read_uint(buf, 0, 1, True),
            function_code=self._read_uint(buf, 1, 1, True),
            payload_length=self._read_length(buf),
            checksum_passed=checksum_passed,
        )

        base = self.layout.data_offset
        bytes_per_address = self.layout.bytes_per_address
        for field_spec in self.layout.fields:
            pos = base + field_spec.address * bytes_per_address
            raw_value = self._read_field(buf, pos, field_spec)
            try:
                value = apply_transform(field_spec, raw_value)
            except EvalError as e:
                raise FieldDecodeFailed(field_spec.name, str(e)) from e
            result.data[field_spec.name] = value
            if field_spec.unit:
                result.units[field_spec.name] = field_spec.unit

        return result


def decode(layout: FrameLayout, payload: bytes) -> DecodedFrame:
    """Decode one frame against a layout."""
    return FrameDecoder(layout).decode(payload)


def decode_payload(config: Union[Dict[str, Any], FrameLayout], payload: bytes) -> Dict[str, Any]:
    """Convenience function: decode and return only the field values."""
    layout = config if isinstance(config, FrameLayout) else build_layout(config)
    return FrameDecoder(layout).decode(payload).data
