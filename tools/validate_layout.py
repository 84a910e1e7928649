#!/usr/bin/env python3
"""
validate_layout.py - Validate a frame layout and run its test vectors

Usage:
    python tools/validate_layout.py layouts/boiler_sensor.yaml
    python tools/validate_layout.py layouts/boiler_sensor.yaml --verbose
    python tools/validate_layout.py layouts/boiler_sensor.yaml --json
    python tools/validate_layout.py layouts/boiler_sensor.yaml --describe

Test vectors live next to the layout in the same YAML file:

    test_vectors:
      - name: nominal
        payload: "01 03 00 02 00 C8 9C E5"
        expected: {temp: 20.0}
        expected_metadata: {device_address: 1, checksum_passed: true}
      - name: corrupted
        payload: "01 03 00 02 00 C9 9C E5"
        error: ChecksumMismatch
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import modbus_errors
from modbus_decoder import FrameDecoder
from modbus_errors import ConfigError, DecodeError
from modbus_layout import FrameLayout, build_layout, load_config


@dataclass
class VectorResult:
    """Result of a single test vector."""
    name: str
    passed: bool
    description: str = ""
    payload_hex: str = ""
    expected: Dict[str, Any] = field(default_factory=dict)
    actual: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'passed': self.passed,
            'description': self.description,
            'payload': self.payload_hex,
            'expected': self.expected,
            'actual': self.actual,
            'errors': self.errors,
        }


@dataclass
class ValidationResult:
    """Result of layout validation."""
    layout_valid: bool
    layout_errors: List[str] = field(default_factory=list)
    test_results: List[VectorResult] = field(default_factory=list)
    layout: Optional[FrameLayout] = None

    @property
    def tests_passed(self) -> int:
        return sum(1 for t in self.test_results if t.passed)

    @property
    def tests_failed(self) -> int:
        return sum(1 for t in self.test_results if not t.passed)

    @property
    def total_tests(self) -> int:
        return len(self.test_results)

    @property
    def all_passed(self) -> bool:
        return self.layout_valid and self.tests_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'layout_valid': self.layout_valid,
            'layout_errors': self.layout_errors,
            'tests_passed': self.tests_passed,
            'tests_failed': self.tests_failed,
            'total_tests': self.total_tests,
            'all_passed': self.all_passed,
            'test_results': [t.to_dict() for t in self.test_results],
        }


def parse_payload(payload: Any) -> bytes:
    """Parse payload from hex string, list of ints or bytes."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)

    if isinstance(payload, list):
        return bytes(payload)

    if isinstance(payload, str):
        # Remove spaces, 0x prefixes
        clean = payload.replace(' ', '').replace('0x', '').replace('0X', '').replace(',', '')
        return bytes.fromhex(clean)

    raise ValueError(f"Cannot parse payload: {payload!r}")


def values_match(expected: Any, actual: Any, tolerance: float = 0.001) -> Tuple[bool, str]:
    """Compare expected and actual values with tolerance for floats."""
    if expected is None and actual is None:
        return True, ""

    if expected is None or actual is None:
        return False, f"expected {expected}, got {actual}"

    if isinstance(expected, bool) or isinstance(actual, bool):
        if expected is not actual:
            return False, f"expected {expected}, got {actual}"
        return True, ""

    if isinstance(expected, (int, float)) and isinstance(actual, (int, float)):
        if abs(expected - actual) > tolerance:
            return False, f"expected {expected}, got {actual} (diff: {abs(expected - actual)})"
        return True, ""

    if isinstance(expected, str) and isinstance(actual, str):
        if expected != actual:
            return False, f"expected '{expected}', got '{actual}'"
        return True, ""

    if type(expected) != type(actual):
        return False, f"type mismatch: expected {type(expected).__name__}, got {type(actual).__name__}"

    if expected != actual:
        return False, f"expected {expected}, got {actual}"

    return True, ""


def validate_test_vectors(config: Dict[str, Any]) -> List[str]:
    """Check the shape of the test_vectors block."""
    errors = []
    vectors = config.get('test_vectors')
    if vectors is None:
        return errors
    if not isinstance(vectors, list):
        return ["'test_vectors' must be an array"]

    for i, tv in enumerate(vectors):
        if not isinstance(tv, dict):
            errors.append(f"Test vector {i}: must be an object")
            continue

        label = tv.get('name', '?')
        if 'name' not in tv:
            errors.append(f"Test vector {i}: missing 'name'")
        if 'payload' not in tv:
            errors.append(f"Test vector {i} ({label}): missing 'payload'")
        if not any(key in tv for key in ('expected', 'expected_metadata', 'error')):
            errors.append(f"Test vector {i} ({label}): needs 'expected', 'expected_metadata' or 'error'")
        if 'error' in tv:
            error_cls = getattr(modbus_errors, str(tv['error']), None)
            if not (isinstance(error_cls, type) and issubclass(error_cls, DecodeError)):
                errors.append(f"Test vector {i} ({label}): unknown error kind '{tv['error']}'")

    return errors


def _compare(expected: Dict[str, Any], actual: Dict[str, Any], what: str,
             errors: List[str]) -> None:
    for key, expected_value in expected.items():
        if key not in actual:
            errors.append(f"Missing {what} in output: '{key}'")
            continue
        match, msg = values_match(expected_value, actual[key])
        if not match:
            errors.append(f"{key}: {msg}")


def run_test_vector(decoder: FrameDecoder, tv: Dict[str, Any]) -> VectorResult:
    """Run a single test vector and return result."""
    result = VectorResult(
        name=tv.get('name', 'unnamed'),
        passed=False,
        description=tv.get('description', ''),
        expected=tv.get('expected', {}),
    )

    try:
        payload = parse_payload(tv.get('payload', ''))
        result.payload_hex = payload.hex().upper()
    except ValueError as e:
        result.errors.append(f"Failed to parse payload: {e}")
        return result

    expected_error = tv.get('error')
    try:
        frame = decoder.decode(payload)
    except DecodeError as e:
        if expected_error is None:
            result.errors.append(f"Decode failed: {e}")
        elif type(e).__name__ != expected_error:
            result.errors.append(f"expected {expected_error}, got {type(e).__name__}: {e}")
        _compare(tv.get('expected_metadata', {}), e.metadata, 'metadata', result.errors)
        result.passed = len(result.errors) == 0
        return result

    if expected_error is not None:
        result.errors.append(f"expected {expected_error}, but frame decoded")
    result.actual = frame.data
    _compare(tv.get('expected', {}), frame.data, 'field', result.errors)
    _compare(tv.get('expected_metadata', {}), frame.metadata, 'metadata', result.errors)

    result.passed = len(result.errors) == 0
    return result


def validate_layout(config: Dict[str, Any]) -> ValidationResult:
    """Validate layout and run all test vectors."""
    result = ValidationResult(layout_valid=True)

    try:
        result.layout = build_layout(config)
    except ConfigError as e:
        result.layout_errors.append(str(e))

    result.layout_errors.extend(validate_test_vectors(config))
    if result.layout_errors:
        result.layout_valid = False
        return result

    decoder = FrameDecoder(result.layout)
    for tv in config.get('test_vectors') or []:
        result.test_results.append(run_test_vector(decoder, tv))

    return result


def describe_layout(layout: FrameLayout) -> List[str]:
    """Human-readable frame geometry, one line per item."""
    lf = layout.length_field
    lines = [
        f"Layout: {layout.name}",
        f"Bytes per address: {layout.bytes_per_address}",
        f"Length field: offset={lf.byte_offset} width={lf.width} "
        f"{'big' if lf.big_endian else 'little'}-endian",
    ]
    if layout.checksum.enabled:
        lines.append(f"Checksum: {layout.checksum.algorithm.value} "
                     f"({layout.checksum.digest_width} bytes, "
                     f"{'big' if layout.checksum.big_endian else 'little'}-endian)")
    else:
        lines.append("Checksum: disabled")
    lines.append(f"Minimum frame length: {layout.min_frame_length} bytes")
    lines.append("Fields:")
    for f in layout.fields:
        if f.expression is not None:
            transform = f"expression={f.expression!r}"
        elif f.lookup is not None:
            transform = f"lookup({len(f.lookup)} entries)"
        elif f.scale != 1.0:
            transform = f"scale={f.scale:g}"
        else:
            transform = ""
        unit = f" [{f.unit}]" if f.unit else ""
        lines.append(f"  {f.name:20s} addr={f.address:3d} offset={layout.field_offset(f):3d} "
                     f"{f.raw_type.value:8s} {'BE' if f.big_endian else 'LE'} {transform}{unit}".rstrip())
    return lines


def print_results(result: ValidationResult, verbose: bool = False):
    """Print validation results to console."""
    if result.layout_valid:
        print("Layout: VALID")
    else:
        print("Layout: INVALID")
        for error in result.layout_errors:
            print(f"  - {error}")
        return

    if result.total_tests == 0:
        print("\nNo test vectors found in layout.")
        return

    print(f"\nTest Vectors: {result.tests_passed}/{result.total_tests} passed")
    print("-" * 50)

    for tr in result.test_results:
        status = "PASS" if tr.passed else "FAIL"
        symbol = "✓" if tr.passed else "✗"
        print(f"{symbol} {tr.name}: {status}")

        if verbose or not tr.passed:
            if tr.description:
                print(f"    Description: {tr.description}")
            if tr.payload_hex:
                print(f"    Payload: {tr.payload_hex}")
            for error in tr.errors:
                print(f"    ERROR: {error}")
            if verbose and tr.passed:
                print(f"    Expected: {tr.expected}")
                print(f"    Actual: {tr.actual}")
            print()

    print("-" * 50)
    if result.all_passed:
        print(f"PASSED: All {result.total_tests} tests passed")
    else:
        print(f"FAILED: {result.tests_failed} of {result.total_tests} tests failed")


def main():
    parser = argparse.ArgumentParser(
        description='Validate a Modbus frame layout and run its test vectors'
    )
    parser.add_argument('layout', help='Path to layout YAML file')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Show detailed output for all tests')
    parser.add_argument('--json', action='store_true',
                        help='Output results as JSON')
    parser.add_argument('--describe', action='store_true',
                        help='Print frame geometry for the layout')
    args = parser.parse_args()

    try:
        config = load_config(args.layout)
    except ConfigError as e:
        print(f"Error loading layout: {e}", file=sys.stderr)
        sys.exit(1)

    result = validate_layout(config)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(f"Validating: {args.layout}")
        print("=" * 50)
        if args.describe and result.layout is not None:
            print("\n".join(describe_layout(result.layout)))
            print()
        print_results(result, args.verbose)

    sys.exit(0 if result.all_passed else 1)


if __name__ == '__main__':
    main()
