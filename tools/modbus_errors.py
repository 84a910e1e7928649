#!/usr/bin/env python3
"""
modbus_errors.py - Error types for Modbus frame layouts and decoding

Two families:
    ConfigError  - raised while building a FrameLayout; fatal at startup
    DecodeError  - raised while decoding one frame; the caller drops or
                   routes that message and keeps going

Both derive from ValueError so callers that only care about "bad schema"
or "bad payload" can keep catching ValueError.
"""

from typing import Any, Dict, Optional


class ConfigError(ValueError):
    """Layout configuration could not be turned into a FrameLayout."""


class InvalidConfig(ConfigError):
    """Malformed or incomplete layout configuration."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnknownAlgorithm(InvalidConfig):
    """Checksum algorithm name is not in the supported set."""

    def __init__(self, name: Any):
        super().__init__(f"Unknown checksum algorithm: {name!r}")
        self.name = name


class EvalError(ValueError):
    """A value evaluator (expression, lookup) could not produce a result."""


class DecodeError(ValueError):
    """
    A single frame could not be decoded.

    Attributes:
        context: where it failed - 'header', 'length', 'checksum' or the
                 name of the field being decoded ('frame' when no single
                 slice is to blame)
        metadata: diagnostic tags that are still meaningful for the failed
                  frame (only checksum mismatches set any)
    """

    def __init__(self, message: str, context: str = 'frame',
                 metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context
        self.metadata = dict(metadata or {})


class BufferTooShort(DecodeError):
    """A slice required by the layout falls outside the frame."""

    def __init__(self, context: str, need: int, have: int):
        super().__init__(
            f"Buffer too short for {context}: need {need} bytes, have {have}",
            context=context,
        )
        self.need = need
        self.have = have


class ChecksumMismatch(DecodeError):
    """Computed digest differs from the digest carried by the frame."""

    def __init__(self, algorithm: str, expected: int, received: int):
        super().__init__(
            f"{algorithm} mismatch: computed 0x{expected:X}, frame carries 0x{received:X}",
            context='checksum',
            metadata={'checksum_passed': False},
        )
        self.algorithm = algorithm
        self.expected = expected
        self.received = received


class LengthFieldWidthUnsupported(DecodeError):
    """Length field width is not 1, 2, 4 or 8 bytes."""

    def __init__(self, width: int):
        super().__init__(
            f"Unsupported length field width: {width} (must be 1, 2, 4 or 8)",
            context='length',
        )
        self.width = width


class FieldDecodeFailed(DecodeError):
    """A field's raw value could not be decoded or transformed."""

    def __init__(self, field_name: str, reason: str):
        super().__init__(f"Error decoding {field_name}: {reason}", context=field_name)
        self.field_name = field_name
        self.reason = reason
