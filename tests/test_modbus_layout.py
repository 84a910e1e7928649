"""
Tests for the frame layout model: config validation, defaults and geometry.
"""

import dataclasses
import sys
import warnings
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from modbus_checksum import ChecksumAlgorithm
from modbus_errors import ConfigError, InvalidConfig, UnknownAlgorithm
from modbus_layout import (
    ChecksumSpec, FieldSpec, FrameLayout, LengthField, RawType,
    build_layout, load_config, load_layout,
)
from modbus_transform import ExpressionEvaluator, LookupEvaluator


def minimal(**overrides):
    config = {'fields': [{'name': 'v', 'starting_address': 0, 'raw_type': 'u16'}]}
    config.update(overrides)
    return config


class TestDefaults:
    """Omitted keys fall back to the Modbus RTU defaults."""

    def test_minimal_config(self):
        layout = build_layout(minimal())
        assert layout.name == 'modbus'
        assert layout.bytes_per_address == 2
        assert layout.length_field == LengthField(byte_offset=2, width=2, big_endian=True)
        assert layout.checksum == ChecksumSpec(
            enabled=True, algorithm=ChecksumAlgorithm.CRC16_MODBUS, big_endian=True)

    def test_field_defaults(self):
        f = build_layout(minimal()).fields[0]
        assert f.name == 'v'
        assert f.address == 0
        assert f.raw_type is RawType.UINT16
        assert f.big_endian is True
        assert f.scale == 1.0
        assert f.expression is None
        assert f.lookup is None
        assert f.unit is None
        assert f.evaluator is None

    def test_boiler_config(self, boiler_config):
        layout = build_layout(boiler_config)
        assert layout.name == 'boiler_sensor'
        assert layout.field_names == ['temp']
        temp = layout.fields[0]
        assert temp.scale == 0.1
        assert temp.unit == 'C'


class TestGeometry:
    """Offsets and minimum frame length."""

    def test_data_offset(self):
        layout = build_layout(minimal(data_length={'starting_address': 2, 'num_bytes': 1}))
        assert layout.data_offset == 3

    def test_field_offset_uses_bytes_per_address(self):
        layout = build_layout({
            'bytes_per_address': 4,
            'fields': [
                {'name': 'a', 'starting_address': 0, 'raw_type': 'u8'},
                {'name': 'b', 'starting_address': 3, 'raw_type': 'u8'},
            ],
        })
        assert layout.field_offset(layout.fields[0]) == 4
        assert layout.field_offset(layout.fields[1]) == 4 + 3 * 4

    def test_min_frame_length_boiler(self, boiler_config):
        # 2 header + 2 length + 2 temp; the CRC may overlap temp
        layout = build_layout(boiler_config)
        assert layout.data_end == 6
        assert layout.min_frame_length == 6

    def test_min_frame_length_uses_furthest_field(self):
        layout = build_layout({
            'checksum': {'algorithm': 'CRC-32'},
            'fields': [
                {'name': 'far', 'starting_address': 5, 'raw_type': 'float64'},
                {'name': 'near', 'starting_address': 0, 'raw_type': 'u8'},
            ],
        })
        # data at 4, far at 4 + 10 = 14, 8 bytes wide
        assert layout.min_frame_length == 14 + 8

    def test_min_frame_length_wide_digest(self):
        layout = build_layout(minimal(
            data_length={'starting_address': 2, 'num_bytes': 1},
            checksum={'algorithm': 'CRC-64/XZ'},
            fields=[{'name': 'v', 'starting_address': 0, 'raw_type': 'u8'}],
        ))
        assert layout.data_end == 4
        assert layout.min_frame_length == 8

    def test_min_frame_length_without_checksum(self):
        layout = build_layout(minimal(checksum={'enabled': False}))
        assert layout.min_frame_length == 6

    def test_min_frame_length_covers_header(self):
        layout = build_layout(minimal(
            data_length={'starting_address': 0, 'num_bytes': 1},
            bytes_per_address=1,
            checksum={'enabled': False},
            fields=[{'name': 'v', 'starting_address': 0, 'raw_type': 'u8'}],
        ))
        assert layout.min_frame_length == 2

    def test_digest_width_disabled(self):
        assert ChecksumSpec(enabled=False).digest_width == 0
        assert ChecksumSpec(algorithm=ChecksumAlgorithm.CRC64_XZ).digest_width == 8


class TestRawTypes:
    """Raw type names and aliases."""

    @pytest.mark.parametrize('name,raw_type', [
        ('UInt16', RawType.UINT16),
        ('Int16', RawType.INT16),
        ('u16', RawType.UINT16),
        ('s16', RawType.INT16),
        ('i32', RawType.INT32),
        ('uint64', RawType.UINT64),
        ('Float32', RawType.FLOAT32),
        ('float', RawType.FLOAT32),
        ('f64', RawType.FLOAT64),
        ('double', RawType.FLOAT64),
        ('int8', RawType.INT8),
        ('u8', RawType.UINT8),
    ])
    def test_aliases(self, name, raw_type):
        assert RawType.from_name(name) is raw_type

    @pytest.mark.parametrize('raw_type,width,signed', [
        (RawType.INT8, 1, True),
        (RawType.UINT16, 2, False),
        (RawType.INT32, 4, True),
        (RawType.UINT64, 8, False),
        (RawType.FLOAT32, 4, True),
        (RawType.FLOAT64, 8, True),
    ])
    def test_width_and_sign(self, raw_type, width, signed):
        assert raw_type.width == width
        assert raw_type.signed == signed

    def test_is_float(self):
        assert RawType.FLOAT32.is_float
        assert RawType.FLOAT64.is_float
        assert not RawType.UINT32.is_float

    @pytest.mark.parametrize('name', ['u24', 'bool', 'string', ''])
    def test_unknown_type(self, name):
        with pytest.raises(InvalidConfig):
            RawType.from_name(name)


class TestFieldForms:
    """Nested attributes/properties and flat field definitions."""

    def test_nested_equals_flat(self):
        nested = build_layout({'fields': [{
            'name': 't',
            'attributes': {'starting_address': 1, 'raw_type': 'Int16', 'big_endian': False},
            'properties': {'scale': 0.5, 'unit': 'C'},
        }]})
        flat = build_layout({'fields': [{
            'name': 't', 'starting_address': 1, 'raw_type': 'Int16',
            'big_endian': False, 'scale': 0.5, 'unit': 'C',
        }]})
        assert nested == flat

    def test_short_key_aliases(self):
        layout = build_layout({'fields': [{'name': 't', 'address': 3, 'type': 'u8', 'endian': 'little'}]})
        f = layout.fields[0]
        assert f.address == 3
        assert f.raw_type is RawType.UINT8
        assert f.big_endian is False

    def test_endian_string(self):
        layout = build_layout(minimal(data_length={'endian': 'little'}))
        assert layout.length_field.big_endian is False

    def test_lookup_builds_evaluator(self):
        layout = build_layout({'fields': [{
            'name': 'mode', 'starting_address': 0, 'raw_type': 'u16',
            'lookup': {'0': 'off', 1: 'on'},
        }]})
        f = layout.fields[0]
        assert isinstance(f.evaluator, LookupEvaluator)
        assert dict(f.lookup) == {0: 'off', 1: 'on'}

    def test_lookup_list_form(self):
        layout = build_layout({'fields': [{
            'name': 'mode', 'starting_address': 0, 'raw_type': 'u16',
            'lookup': ['off', 'on'],
        }]})
        assert dict(layout.fields[0].lookup) == {0: 'off', 1: 'on'}

    def test_expression_builds_evaluator(self):
        layout = build_layout({'fields': [{
            'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'expression': 'x / 10',
        }]})
        assert isinstance(layout.fields[0].evaluator, ExpressionEvaluator)

    def test_value_type_case_insensitive(self):
        layout = build_layout({'fields': [{
            'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'value_type': 'Int',
        }]})
        assert layout.fields[0].value_type == 'int'

    def test_scale_with_expression_warns(self):
        config = {'fields': [{
            'name': 'v', 'starting_address': 0, 'raw_type': 'u16',
            'scale': 0.1, 'expression': 'x * 2',
        }]}
        with pytest.warns(UserWarning, match='scale is ignored'):
            build_layout(config)

    def test_scale_with_lookup_warns(self):
        config = {'fields': [{
            'name': 'v', 'starting_address': 0, 'raw_type': 'u8',
            'scale': 0.1, 'lookup': {1: 'hot'},
        }]}
        with pytest.warns(UserWarning, match="'lookup' given; scale is ignored"):
            layout = build_layout(config)
        assert isinstance(layout.fields[0].evaluator, LookupEvaluator)

    def test_lookup_without_scale_does_not_warn(self):
        config = {'fields': [{
            'name': 'v', 'starting_address': 0, 'raw_type': 'u8', 'lookup': {1: 'hot'},
        }]}
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            build_layout(config)


class TestChecksumConfig:
    """checksum block, and the older crc16 block."""

    def test_algorithm_by_alias(self):
        layout = build_layout(minimal(checksum={'algorithm': 'crc32c'}))
        assert layout.checksum.algorithm is ChecksumAlgorithm.CRC32C
        assert layout.checksum.digest_width == 4

    def test_disabled(self):
        layout = build_layout(minimal(checksum={'enabled': False}))
        assert layout.checksum.enabled is False

    def test_little_endian_digest(self):
        layout = build_layout(minimal(checksum={'big_endian': False}))
        assert layout.checksum.big_endian is False

    def test_legacy_crc16_block(self):
        layout = build_layout(minimal(crc16={'enabled': True, 'big_endian': False}))
        assert layout.checksum.algorithm is ChecksumAlgorithm.CRC16_MODBUS
        assert layout.checksum.big_endian is False

    def test_legacy_crc16_disabled(self):
        layout = build_layout(minimal(crc16={'enabled': False}))
        assert layout.checksum.enabled is False

    def test_checksum_block_wins_over_crc16(self):
        layout = build_layout(minimal(
            checksum={'algorithm': 'CRC-32'},
            crc16={'enabled': False},
        ))
        assert layout.checksum.enabled is True
        assert layout.checksum.algorithm is ChecksumAlgorithm.CRC32

    def test_unknown_algorithm(self):
        with pytest.raises(UnknownAlgorithm):
            build_layout(minimal(checksum={'algorithm': 'CRC-7'}))


class TestInvalidConfig:
    """Every malformed config is rejected with InvalidConfig."""

    @pytest.mark.parametrize('config', [
        None,
        [],
        'fields',
        {},
        {'fields': None},
        {'fields': {}},
        {'fields': []},
        {'fields': ['temp']},
    ])
    def test_bad_top_level(self, config):
        with pytest.raises(InvalidConfig):
            build_layout(config)

    @pytest.mark.parametrize('field_def', [
        {'starting_address': 0, 'raw_type': 'u16'},
        {'name': '', 'starting_address': 0, 'raw_type': 'u16'},
        {'name': 'v', 'raw_type': 'u16'},
        {'name': 'v', 'starting_address': -1, 'raw_type': 'u16'},
        {'name': 'v', 'starting_address': 1.5, 'raw_type': 'u16'},
        {'name': 'v', 'starting_address': True, 'raw_type': 'u16'},
        {'name': 'v', 'starting_address': 0},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u24'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'scale': 'big'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'big_endian': 'yes'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'endian': 'middle'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'value_type': 'str'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'unit': 5},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'expression': 'x +'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'expression': '__import__("os")'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'expression': 'x.__class__'},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'lookup': {}},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16', 'lookup': {'one': 'a'}},
        {'name': 'v', 'starting_address': 0, 'raw_type': 'u16',
         'expression': 'x', 'lookup': {0: 'a'}},
        {'name': 'v', 'attributes': 'bad', 'properties': {}},
    ])
    def test_bad_field(self, field_def):
        with pytest.raises(InvalidConfig):
            build_layout({'fields': [field_def]})

    def test_duplicate_field_name(self):
        with pytest.raises(InvalidConfig, match='duplicate'):
            build_layout({'fields': [
                {'name': 'v', 'starting_address': 0, 'raw_type': 'u16'},
                {'name': 'v', 'starting_address': 1, 'raw_type': 'u16'},
            ]})

    @pytest.mark.parametrize('num_bytes', [0, 3, 5, 16])
    def test_unsupported_length_width(self, num_bytes):
        with pytest.raises(InvalidConfig):
            build_layout(minimal(data_length={'num_bytes': num_bytes}))

    @pytest.mark.parametrize('value', [0, -2, 'two', 1.5])
    def test_bad_bytes_per_address(self, value):
        with pytest.raises(InvalidConfig):
            build_layout(minimal(bytes_per_address=value))

    def test_bad_section_type(self):
        with pytest.raises(InvalidConfig):
            build_layout(minimal(checksum='CRC-32'))

    def test_bad_enabled_flag(self):
        with pytest.raises(InvalidConfig):
            build_layout(minimal(checksum={'enabled': 'yes'}))

    def test_config_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            build_layout({'fields': []})
        assert issubclass(InvalidConfig, ConfigError)

    def test_error_names_the_field(self):
        with pytest.raises(InvalidConfig, match=r'fields\[1\] \(bad\)'):
            build_layout({'fields': [
                {'name': 'ok', 'starting_address': 0, 'raw_type': 'u16'},
                {'name': 'bad', 'starting_address': 1, 'raw_type': 'u99'},
            ]})


class TestImmutability:
    """Built layouts cannot be changed."""

    def test_layout_frozen(self, boiler_config):
        layout = build_layout(boiler_config)
        with pytest.raises(dataclasses.FrozenInstanceError):
            layout.bytes_per_address = 1

    def test_field_frozen(self, boiler_config):
        f = build_layout(boiler_config).fields[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            f.scale = 2.0

    def test_fields_is_tuple(self, boiler_config):
        assert isinstance(build_layout(boiler_config).fields, tuple)

    def test_lookup_read_only(self):
        layout = build_layout({'fields': [{
            'name': 'mode', 'starting_address': 0, 'raw_type': 'u16', 'lookup': {0: 'off'},
        }]})
        with pytest.raises(TypeError):
            layout.fields[0].lookup[1] = 'on'

    def test_config_not_retained(self, boiler_config):
        layout = build_layout(boiler_config)
        boiler_config['fields'][0]['properties']['scale'] = 100
        assert layout.fields[0].scale == 0.1


class TestLoadLayout:
    """YAML layout files."""

    @pytest.mark.parametrize('filename', [
        'boiler_sensor.yaml',
        'inverter_status.yaml',
        'legacy_holding_register.yaml',
    ])
    def test_sample_layouts_load(self, layouts_dir, filename):
        layout = load_layout(layouts_dir / filename)
        assert isinstance(layout, FrameLayout)
        assert all(isinstance(f, FieldSpec) for f in layout.fields)

    def test_boiler_layout_file_matches_fixture(self, layouts_dir, boiler_config):
        assert load_layout(layouts_dir / 'boiler_sensor.yaml') == build_layout(boiler_config)

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidConfig, match='Cannot read'):
            load_config(tmp_path / 'nope.yaml')

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('fields: [\n')
        with pytest.raises(InvalidConfig, match='Invalid YAML'):
            load_config(path)

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text('- a\n- b\n')
        with pytest.raises(InvalidConfig):
            load_config(path)
