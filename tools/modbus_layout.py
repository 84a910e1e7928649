#!/usr/bin/env python3
"""
modbus_layout.py - Frame layout model built from a declarative config

Turns a layout config (dict, or YAML file) into an immutable FrameLayout:
frame geometry, the length subfield, the checksum, and the ordered list of
fields to extract. Built once at startup; never mutated afterwards.

Config format (defaults shown):

    name: boiler_sensor
    bytes_per_address: 2
    data_length:
      starting_address: 2     # byte offset of the length subfield
      num_bytes: 2            # 1, 2, 4 or 8
      big_endian: true
    checksum:
      enabled: true
      algorithm: CRC-16/MODBUS
      big_endian: true
    fields:
      - name: temp
        attributes:
          starting_address: 0 # address units, not bytes
          raw_type: UInt16
          big_endian: true
        properties:
          scale: 0.1
          unit: C

Fields may also be flat: {name, starting_address, raw_type, scale, ...}.

Usage:
    from modbus_layout import build_layout, load_layout

    layout = build_layout(config_dict)
    layout = load_layout('layouts/boiler_sensor.yaml')
"""

import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from modbus_checksum import ChecksumAlgorithm, resolve
from modbus_errors import EvalError, InvalidConfig
from modbus_transform import ExpressionEvaluator, LookupEvaluator, ValueEvaluator


LENGTH_FIELD_WIDTHS = (1, 2, 4, 8)

DEFAULT_BYTES_PER_ADDRESS = 2


class RawType(Enum):
    INT8 = 'int8'
    UINT8 = 'uint8'
    INT16 = 'int16'
    UINT16 = 'uint16'
    INT32 = 'int32'
    UINT32 = 'uint32'
    INT64 = 'int64'
    UINT64 = 'uint64'
    FLOAT32 = 'float32'
    FLOAT64 = 'float64'

    @property
    def width(self) -> int:
        return _TYPE_INFO[self][0]

    @property
    def signed(self) -> bool:
        return _TYPE_INFO[self][1]

    @property
    def is_float(self) -> bool:
        return self in (RawType.FLOAT32, RawType.FLOAT64)

    @classmethod
    def from_name(cls, name: str) -> 'RawType':
        raw_type = RAW_TYPE_ALIASES.get(str(name).strip().lower())
        if raw_type is None:
            raise InvalidConfig(f"Unknown raw type: {name!r}")
        return raw_type


# (size_bytes, signed)
_TYPE_INFO = {
    RawType.INT8: (1, True), RawType.UINT8: (1, False),
    RawType.INT16: (2, True), RawType.UINT16: (2, False),
    RawType.INT32: (4, True), RawType.UINT32: (4, False),
    RawType.INT64: (8, True), RawType.UINT64: (8, False),
    RawType.FLOAT32: (4, True), RawType.FLOAT64: (8, True),
}

# Canonical int16/uint16, short forms s16/i16/u16, and the
# Int16/UInt16/Float32 spellings once lowercased
RAW_TYPE_ALIASES = {
    'int8': RawType.INT8, 's8': RawType.INT8, 'i8': RawType.INT8,
    'uint8': RawType.UINT8, 'u8': RawType.UINT8,
    'int16': RawType.INT16, 's16': RawType.INT16, 'i16': RawType.INT16,
    'uint16': RawType.UINT16, 'u16': RawType.UINT16,
    'int32': RawType.INT32, 's32': RawType.INT32, 'i32': RawType.INT32,
    'uint32': RawType.UINT32, 'u32': RawType.UINT32,
    'int64': RawType.INT64, 's64': RawType.INT64, 'i64': RawType.INT64,
    'uint64': RawType.UINT64, 'u64': RawType.UINT64,
    'float32': RawType.FLOAT32, 'f32': RawType.FLOAT32, 'float': RawType.FLOAT32,
    'float64': RawType.FLOAT64, 'f64': RawType.FLOAT64, 'double': RawType.FLOAT64,
}


@dataclass(frozen=True)
class LengthField:
    """Where the payload length subfield sits in the frame."""
    byte_offset: int = 2
    width: int = 2
    big_endian: bool = True

    @property
    def end(self) -> int:
        return self.byte_offset + self.width


@dataclass(frozen=True)
class ChecksumSpec:
    """Trailing digest configuration."""
    enabled: bool = True
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.CRC16_MODBUS
    big_endian: bool = True

    @property
    def digest_width(self) -> int:
        """Trailing digest size in bytes (0 when verification is off)."""
        if not self.enabled:
            return 0
        return resolve(self.algorithm)[1]


@dataclass(frozen=True)
class FieldSpec:
    """One named value extracted from the frame."""
    name: str
    address: int
    raw_type: RawType
    big_endian: bool = True
    scale: float = 1.0
    expression: Optional[str] = None
    lookup: Optional[Mapping[int, Any]] = None
    unit: Optional[str] = None
    value_type: Optional[str] = None
    evaluator: Optional[ValueEvaluator] = field(default=None, compare=False, repr=False)

    @property
    def width(self) -> int:
        return self.raw_type.width


@dataclass(frozen=True)
class FrameLayout:
    """Validated, immutable frame schema."""
    fields: Tuple[FieldSpec, ...]
    bytes_per_address: int = DEFAULT_BYTES_PER_ADDRESS
    length_field: LengthField = field(default_factory=LengthField)
    checksum: ChecksumSpec = field(default_factory=ChecksumSpec)
    name: str = 'modbus'

    @property
    def data_offset(self) -> int:
        """Byte offset where address 0 of the data section starts."""
        return self.length_field.byte_offset + self.length_field.width

    def field_offset(self, field_spec: FieldSpec) -> int:
        return self.data_offset + field_spec.address * self.bytes_per_address

    @property
    def data_end(self) -> int:
        """End of the furthest header, length or field slice."""
        end = max(2, self.length_field.end)
        for f in self.fields:
            end = max(end, self.field_offset(f) + f.width)
        return end

    @property
    def min_frame_length(self) -> int:
        """
        Shortest frame every slice of this layout fits into.

        The trailing digest is read from the end of the frame, so it may
        overlap field slices; it only raises the minimum when it is wider
        than everything else.
        """
        return max(self.data_end, self.checksum.digest_width)

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


# =============================================================================
# Construction
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_int(value: Any, path: str, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfig(f"{path}: must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidConfig(f"{path}: must be >= {minimum}, got {value}")
    return value


def _require_bool(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise InvalidConfig(f"{path}: must be true or false, got {value!r}")
    return value


def _section(config: Dict[str, Any], key: str) -> Dict[str, Any]:
    section = config.get(key)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise InvalidConfig(f"'{key}' must be an object")
    return section


def _big_endian(spec: Dict[str, Any], path: str) -> bool:
    """Read endianness from `big_endian: bool` or `endian: big|little`."""
    if 'big_endian' in spec:
        return _require_bool(spec['big_endian'], f"{path}.big_endian")
    if 'endian' in spec:
        endian = spec['endian']
        if endian not in ('big', 'little'):
            raise InvalidConfig(f"{path}.endian: must be 'big' or 'little', got {endian!r}")
        return endian == 'big'
    return True


def _build_length_field(config: Dict[str, Any]) -> LengthField:
    spec = _section(config, 'data_length')
    byte_offset = _require_int(spec.get('starting_address', 2), 'data_length.starting_address')
    width = _require_int(spec.get('num_bytes', 2), 'data_length.num_bytes')
    if width not in LENGTH_FIELD_WIDTHS:
        raise InvalidConfig(f"data_length.num_bytes: unsupported width {width} (must be 1, 2, 4 or 8)")
    return LengthField(byte_offset=byte_offset, width=width,
                       big_endian=_big_endian(spec, 'data_length'))


def _build_checksum(config: Dict[str, Any]) -> ChecksumSpec:
    if 'checksum' in config:
        spec = _section(config, 'checksum')
        path = 'checksum'
        algorithm = ChecksumAlgorithm.from_name(spec.get('algorithm', ChecksumAlgorithm.CRC16_MODBUS.value))
    else:
        # Legacy block: crc16 {enabled, big_endian} is always the Modbus variant
        spec = _section(config, 'crc16')
        path = 'crc16'
        algorithm = ChecksumAlgorithm.CRC16_MODBUS
    return ChecksumSpec(
        enabled=_require_bool(spec.get('enabled', True), f"{path}.enabled"),
        algorithm=algorithm,
        big_endian=_big_endian(spec, path),
    )


def _merge_field(fld: Dict[str, Any], path: str) -> Dict[str, Any]:
    """Flatten {attributes: {...}, properties: {...}} over the flat keys."""
    merged = {k: v for k, v in fld.items() if k not in ('attributes', 'properties')}
    for key in ('attributes', 'properties'):
        nested = fld.get(key)
        if nested is None:
            continue
        if not isinstance(nested, dict):
            raise InvalidConfig(f"{path}.{key}: must be an object")
        merged.update(nested)
    return merged


def _build_field(fld: Any, path: str) -> FieldSpec:
    if not isinstance(fld, dict):
        raise InvalidConfig(f"{path}: must be an object")
    spec = _merge_field(fld, path)

    name = spec.get('name')
    if not isinstance(name, str) or not name:
        raise InvalidConfig(f"{path}: missing required 'name'")
    path = f"{path} ({name})"

    address = spec.get('starting_address', spec.get('address'))
    if address is None:
        raise InvalidConfig(f"{path}: missing required 'starting_address'")
    address = _require_int(address, f"{path}.starting_address")

    raw_type_name = spec.get('raw_type', spec.get('type'))
    if raw_type_name is None:
        raise InvalidConfig(f"{path}: missing required 'raw_type'")
    try:
        raw_type = RawType.from_name(raw_type_name)
    except InvalidConfig as e:
        raise InvalidConfig(f"{path}: {e.reason}") from e

    scale = spec.get('scale', 1.0)
    if not _is_number(scale):
        raise InvalidConfig(f"{path}.scale: must be a number, got {scale!r}")

    expression = spec.get('expression')
    lookup = spec.get('lookup', spec.get('values'))
    if isinstance(lookup, list):
        lookup = dict(enumerate(lookup))
    if expression is not None and lookup is not None:
        raise InvalidConfig(f"{path}: 'expression' and 'lookup' are mutually exclusive")
    if 'scale' in spec and (expression is not None or lookup is not None):
        remap = 'expression' if expression is not None else 'lookup'
        warnings.warn(
            f"Field '{name}': both 'scale' and '{remap}' given; scale is ignored",
            UserWarning,
            stacklevel=3,
        )

    evaluator = None
    try:
        if expression is not None:
            evaluator = ExpressionEvaluator(expression)
        elif lookup is not None:
            evaluator = LookupEvaluator(lookup)
            lookup = evaluator.table
    except EvalError as e:
        raise InvalidConfig(f"{path}: {e}") from e

    value_type = spec.get('value_type')
    if value_type is not None:
        value_type = str(value_type).lower()
        if value_type not in ('int', 'float'):
            raise InvalidConfig(f"{path}.value_type: must be 'int' or 'float', got {spec['value_type']!r}")

    unit = spec.get('unit')
    if unit is not None and not isinstance(unit, str):
        raise InvalidConfig(f"{path}.unit: must be a string")

    return FieldSpec(
        name=name,
        address=address,
        raw_type=raw_type,
        big_endian=_big_endian(spec, path),
        scale=float(scale),
        expression=expression,
        lookup=lookup,
        unit=unit,
        value_type=value_type,
        evaluator=evaluator,
    )


def build_layout(raw_config: Dict[str, Any]) -> FrameLayout:
    """
    Validate a layout config and build the immutable FrameLayout.

    Raises:
        InvalidConfig: config is malformed or incomplete
        UnknownAlgorithm: checksum algorithm is not supported
    """
    if not isinstance(raw_config, dict):
        raise InvalidConfig("Layout config must be an object")

    bytes_per_address = _require_int(
        raw_config.get('bytes_per_address', DEFAULT_BYTES_PER_ADDRESS),
        'bytes_per_address', minimum=1,
    )
    length_field = _build_length_field(raw_config)
    checksum = _build_checksum(raw_config)

    fields_def = raw_config.get('fields')
    if fields_def is None:
        raise InvalidConfig("Missing required 'fields' array")
    if not isinstance(fields_def, list):
        raise InvalidConfig("'fields' must be an array")
    if len(fields_def) == 0:
        raise InvalidConfig("'fields' array must not be empty")

    fields = []
    seen = set()
    for i, fld in enumerate(fields_def):
        field_spec = _build_field(fld, f"fields[{i}]")
        if field_spec.name in seen:
            raise InvalidConfig(f"fields[{i}]: duplicate field name '{field_spec.name}'")
        seen.add(field_spec.name)
        fields.append(field_spec)

    name = raw_config.get('name', 'modbus')
    return FrameLayout(
        fields=tuple(fields),
        bytes_per_address=bytes_per_address,
        length_field=length_field,
        checksum=checksum,
        name=str(name),
    )


def load_config(path) -> Dict[str, Any]:
    """Read a layout YAML file into a dict."""
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except OSError as e:
        raise InvalidConfig(f"Cannot read layout file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise InvalidConfig(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(config, dict):
        raise InvalidConfig(f"Layout file {path} must contain an object")
    return config


def load_layout(path) -> FrameLayout:
    """Load and build a layout from a YAML file."""
    return build_layout(load_config(path))
