"""
pytest configuration and fixtures for frame decoder tests.

Provides reusable fixtures for:
- Layout configs (the boiler sensor layout and the sample layout files)
- Frame builders that append a correct trailing digest
- Hypothesis property-based testing configuration
"""

import os
import sys
from pathlib import Path

import pytest
from hypothesis import settings, Verbosity, Phase

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

from modbus_checksum import resolve

LAYOUTS_DIR = Path(__file__).parent.parent / "layouts"


# Configure Hypothesis profiles

# Default profile: balanced speed and coverage
settings.register_profile(
    "default",
    max_examples=100,
    deadline=None,  # CRC tables are pure Python
)

# CI profile: more thorough testing
settings.register_profile(
    "ci",
    max_examples=500,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)

# Dev profile: fast iteration
settings.register_profile(
    "dev",
    max_examples=10,
    deadline=None,
)

# Debug profile: verbose output
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))


def append_digest(body: bytes, algorithm='CRC-16/MODBUS', big_endian: bool = True) -> bytes:
    """Return body followed by its digest."""
    checksum_fn, width = resolve(algorithm)
    return body + checksum_fn(body).to_bytes(width, 'big' if big_endian else 'little')


@pytest.fixture
def boiler_config():
    """
    The boiler sensor layout: one UInt16 temperature in tenths of a degree.

    Usage:
        def test_decode(boiler_config):
            layout = build_layout(boiler_config)
    """
    return {
        'name': 'boiler_sensor',
        'bytes_per_address': 2,
        'data_length': {'starting_address': 2, 'num_bytes': 2, 'big_endian': True},
        'checksum': {'enabled': True, 'algorithm': 'CRC-16/MODBUS', 'big_endian': True},
        'fields': [
            {
                'name': 'temp',
                'attributes': {'starting_address': 0, 'raw_type': 'UInt16', 'big_endian': True},
                'properties': {'scale': 0.1, 'unit': 'C'},
            },
        ],
    }


@pytest.fixture
def boiler_frame():
    """Nominal boiler frame: device 1, function 3, temp 200 tenths."""
    return bytes.fromhex("01 03 00 02 00 C8 9C E5")


@pytest.fixture
def frame_builder():
    """
    Provide the digest helper to tests.

    Usage:
        def test_frame(frame_builder):
            frame = frame_builder(bytes([1, 3, 0, 2, 0, 200]))
    """
    return append_digest


@pytest.fixture
def layouts_dir():
    return LAYOUTS_DIR


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
