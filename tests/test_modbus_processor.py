"""
Tests for the pipeline processor: message tagging, failure routing, logging.
"""

import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from modbus_errors import BufferTooShort, ChecksumMismatch, InvalidConfig
from modbus_layout import build_layout
from modbus_processor import Message, ModbusProcessor


class TestProcess:
    """Single message decode."""

    def test_structured_and_tags(self, boiler_config, boiler_frame):
        processor = ModbusProcessor(boiler_config)
        out = processor.process(Message(boiler_frame))
        assert len(out) == 1
        message = out[0]
        assert message.structured == {'temp': 20.0}
        assert message.metadata == {
            'device_address': 1,
            'function_code': 3,
            'payload_length': 2,
            'checksum_passed': True,
        }
        assert not message.failed

    def test_existing_metadata_kept(self, boiler_config, boiler_frame):
        message = Message(boiler_frame, metadata={'topic': 'plant/boiler'})
        ModbusProcessor(boiler_config).process(message)
        assert message.metadata['topic'] == 'plant/boiler'
        assert message.metadata['device_address'] == 1

    def test_annotate_units(self, boiler_config, boiler_frame):
        processor = ModbusProcessor(boiler_config, annotate_units=True)
        message = processor.process(Message(boiler_frame))[0]
        assert message.structured == {'temp': {'value': 20.0, 'unit': 'C'}}

    def test_accepts_built_layout(self, boiler_config, boiler_frame):
        layout = build_layout(boiler_config)
        processor = ModbusProcessor(layout)
        assert processor.layout is layout
        assert processor.process(Message(boiler_frame))[0].structured == {'temp': 20.0}

    def test_checksum_mismatch_tags_and_raises(self, boiler_config, boiler_frame):
        message = Message(boiler_frame[:-1] + b'\x00')
        with pytest.raises(ChecksumMismatch):
            ModbusProcessor(boiler_config).process(message)
        assert message.metadata == {'checksum_passed': False}
        assert message.structured is None

    def test_short_frame_raises(self, boiler_config):
        message = Message(b'\x01\x03')
        with pytest.raises(BufferTooShort):
            ModbusProcessor(boiler_config).process(message)
        assert message.metadata == {}

    def test_failure_logged(self, boiler_config, caplog):
        with caplog.at_level(logging.WARNING, logger='modbus_processor'):
            with pytest.raises(BufferTooShort):
                ModbusProcessor(boiler_config).process(Message(b''))
        assert 'boiler_sensor' in caplog.text
        assert 'cannot decode' in caplog.text

    def test_bad_config_fails_at_construction(self):
        with pytest.raises(InvalidConfig):
            ModbusProcessor({'fields': []})


class TestProcessBatch:
    """Batch decode: failures are flagged, not raised."""

    def test_mixed_batch(self, boiler_config, boiler_frame):
        processor = ModbusProcessor(boiler_config)
        messages = [
            Message(boiler_frame),
            Message(boiler_frame[:-1] + b'\x00'),
            Message(b''),
            Message(boiler_frame),
        ]
        out = processor.process_batch(messages)
        assert len(out) == 4
        assert [m.failed for m in out] == [False, True, True, False]
        assert out[0].structured == {'temp': 20.0}
        assert out[1].metadata['checksum_passed'] is False
        assert 'mismatch' in out[1].error
        assert 'too short' in out[2].error
        assert out[3].structured == {'temp': 20.0}

    def test_order_preserved(self, boiler_config, frame_builder):
        processor = ModbusProcessor(boiler_config)
        frames = [frame_builder(bytes([1, 3, 0, 2, 0, raw])) for raw in (10, 20, 30)]
        out = processor.process_batch(Message(f) for f in frames)
        assert [m.structured['temp'] for m in out] == pytest.approx([1.0, 2.0, 3.0])

    def test_empty_batch(self, boiler_config):
        assert ModbusProcessor(boiler_config).process_batch([]) == []


class TestFromFile:
    """Processor built from a layout file."""

    def test_from_file(self, layouts_dir, boiler_frame):
        processor = ModbusProcessor.from_file(layouts_dir / 'boiler_sensor.yaml')
        assert processor.layout.name == 'boiler_sensor'
        assert processor.process(Message(boiler_frame))[0].structured == {'temp': 20.0}

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidConfig):
            ModbusProcessor.from_file(tmp_path / 'missing.yaml')

    def test_unverified_layout_tags_none(self, layouts_dir):
        processor = ModbusProcessor.from_file(layouts_dir / 'inverter_status.yaml')
        frame = bytes.fromhex('11 04 14 00 80 66 43 42 48 00 00 00 01 00 00 FF FF CF C7 00 01 86 A0')
        message = processor.process(Message(frame))[0]
        assert message.metadata['checksum_passed'] is None
        assert message.metadata['device_address'] == 0x11
        assert not message.failed
