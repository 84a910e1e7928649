#!/usr/bin/env python3
"""
fuzz_decoder.py - Fuzz test the Modbus frame decoder

Checks that the decoder only ever fails with a DecodeError, and that
decoding the same bytes twice gives the same answer.

Usage:
    python tools/fuzz_decoder.py layouts/boiler_sensor.yaml                # 10 second fuzz
    python tools/fuzz_decoder.py layouts/boiler_sensor.yaml --duration 60  # 1 minute fuzz
    python tools/fuzz_decoder.py layouts/boiler_sensor.yaml --seed 12345   # Reproducible
    python tools/fuzz_decoder.py --layout-fuzz                             # Fuzz layout builder
"""

import argparse
import random
import sys
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import yaml

from modbus_checksum import resolve
from modbus_decoder import FrameDecoder
from modbus_errors import ConfigError, DecodeError
from modbus_layout import build_layout, load_config
from validate_layout import parse_payload


@dataclass
class FuzzStats:
    """Statistics from a fuzz run."""
    total_inputs: int = 0
    decode_success: int = 0
    decode_error: int = 0
    crashes: int = 0
    duration_sec: float = 0.0
    seed: int = 0
    crash_inputs: List[Any] = field(default_factory=list)

    @property
    def inputs_per_sec(self) -> float:
        if self.duration_sec > 0:
            return self.total_inputs / self.duration_sec
        return 0.0


class _Fuzzer:
    """Seeded input generation and the timed run loop shared by both fuzzers."""

    def __init__(self, seed: Optional[int] = None):
        if seed is None:
            seed = random.randint(0, 2**32)
        self.rng = random.Random(seed)
        self.stats = FuzzStats(seed=seed)

    @property
    def seed(self) -> int:
        return self.stats.seed

    def fuzz_one(self, item: Any) -> bool:
        raise NotImplementedError

    def _loop(self, generators: List[Callable[[], Any]], duration_sec: float,
              max_inputs: Optional[int]) -> FuzzStats:
        started = time.time()
        deadline = started + duration_sec
        while time.time() < deadline:
            if max_inputs is not None and self.stats.total_inputs >= max_inputs:
                break
            self.fuzz_one(self.rng.choice(generators)())
        self.stats.duration_sec = time.time() - started
        return self.stats


class DecoderFuzzer(_Fuzzer):
    """Fuzz tester for the frame decoder."""

    def __init__(self, config: Dict[str, Any], seed: Optional[int] = None):
        super().__init__(seed)
        self.config = config
        self.layout = build_layout(config)
        self.decoder = FrameDecoder(self.layout)

    def generate_random_bytes(self, min_len: int = 0, max_len: int = 255) -> bytes:
        """Generate random byte sequence."""
        length = self.rng.randint(min_len, max_len)
        return bytes(self.rng.randint(0, 255) for _ in range(length))

    def generate_valid_frame(self) -> bytes:
        """Random body covering every field, with a correct digest appended."""
        checksum = self.layout.checksum
        body_len = self.layout.data_end
        body = self.generate_random_bytes(body_len, body_len)
        if not checksum.enabled:
            return body
        checksum_fn, width = resolve(checksum.algorithm)
        digest = checksum_fn(body).to_bytes(width, 'big' if checksum.big_endian else 'little')
        return body + digest

    def generate_truncated(self, valid_frame: bytes) -> bytes:
        """Generate truncated version of valid frame."""
        if len(valid_frame) == 0:
            return b''
        cut_point = self.rng.randint(0, len(valid_frame) - 1)
        return valid_frame[:cut_point]

    def generate_extended(self, valid_frame: bytes) -> bytes:
        """Generate extended version of valid frame."""
        return valid_frame + self.generate_random_bytes(1, 50)

    def generate_bitflip(self, valid_frame: bytes) -> bytes:
        """Flip random bits in valid frame."""
        if len(valid_frame) == 0:
            return b''
        data = bytearray(valid_frame)
        num_flips = self.rng.randint(1, max(1, len(data) // 2))
        for _ in range(num_flips):
            pos = self.rng.randint(0, len(data) - 1)
            bit = self.rng.randint(0, 7)
            data[pos] ^= (1 << bit)
        return bytes(data)

    def get_valid_frames(self) -> List[bytes]:
        """Valid frames from test vectors plus a few synthesized ones."""
        frames = []
        for tv in self.config.get('test_vectors') or []:
            if not isinstance(tv, dict) or tv.get('error'):
                continue
            try:
                frames.append(parse_payload(tv.get('payload', '')))
            except ValueError:
                pass
        frames.extend(self.generate_valid_frame() for _ in range(5))
        return frames

    def _outcome(self, payload: bytes):
        try:
            return ('ok', repr(self.decoder.decode(payload).to_dict()))
        except DecodeError as e:
            return ('error', type(e).__name__, str(e))

    def fuzz_one(self, payload: bytes) -> bool:
        """
        Fuzz with one frame.
        Returns True if decoder handled it safely, False if crash.
        """
        self.stats.total_inputs += 1
        try:
            first = self._outcome(payload)
            second = self._outcome(payload)
        except Exception:
            # Anything but a DecodeError escaping is a crash
            self.stats.crashes += 1
            self.stats.crash_inputs.append(payload)
            return False

        if first != second:
            self.stats.crashes += 1
            self.stats.crash_inputs.append(payload)
            return False

        if first[0] == 'ok':
            self.stats.decode_success += 1
        else:
            self.stats.decode_error += 1
        return True

    def run(self, duration_sec: float = 10.0, max_inputs: Optional[int] = None) -> FuzzStats:
        """Run fuzzing for specified duration (or input count)."""
        valid_frames = self.get_valid_frames()
        generators = [
            lambda: self.generate_random_bytes(0, 255),
            lambda: self.generate_random_bytes(0, 10),  # Short
            lambda: self.generate_random_bytes(100, 255),  # Long
            lambda: self.rng.choice(valid_frames),
            lambda: self.generate_truncated(self.rng.choice(valid_frames)),
            lambda: self.generate_extended(self.rng.choice(valid_frames)),
            lambda: self.generate_bitflip(self.rng.choice(valid_frames)),
            lambda: bytes(self.rng.randint(1, 50)),  # All zeros
            lambda: bytes([0xFF] * self.rng.randint(1, 50)),
            lambda: b'',
        ]
        return self._loop(generators, duration_sec, max_inputs)


class LayoutFuzzer(_Fuzzer):
    """Fuzz tester for the layout builder."""

    def generate_malformed_yaml(self) -> str:
        """Generate malformed YAML."""
        cases = [
            "{{{{",  # Invalid syntax
            "fields: [",  # Unclosed bracket
            "fields: null",
            "fields: 123",
            "fields:\n  - name: x\n    raw_type: u16",  # Missing address
            "fields:\n  - starting_address: 0\n    raw_type: u16",  # Missing name
            "data_length: {num_bytes: 3}\nfields:\n  - {name: x, starting_address: 0, raw_type: u8}",
            "checksum: {algorithm: CRC-7}\nfields:\n  - {name: x, starting_address: 0, raw_type: u8}",
            "",
            "---\n" * 100,
        ]
        return self.rng.choice(cases)

    def generate_random_field(self) -> Dict[str, Any]:
        """Field with randomly chosen (often wrong) values."""
        return {
            'name': self.rng.choice(['a', 'b', '', None, 7]),
            'starting_address': self.rng.choice([0, 1, -1, 'x', None, 2.5]),
            'raw_type': self.rng.choice(['u8', 'Int16', 'Float32', 'u24', '', None]),
            'scale': self.rng.choice([0.1, 1, 'big', None]),
            'expression': self.rng.choice([None, 'x * 2', 'x +', '__import__("os")', 'x.__class__']),
        }

    def generate_random_layout(self) -> Dict[str, Any]:
        return {
            'bytes_per_address': self.rng.choice([1, 2, 0, -1, 'two']),
            'data_length': {'starting_address': self.rng.choice([0, 2, -2]),
                            'num_bytes': self.rng.choice([1, 2, 3, 4, 8, 16])},
            'checksum': {'enabled': self.rng.choice([True, False, 'yes']),
                         'algorithm': self.rng.choice(['CRC-16/MODBUS', 'CRC32', 'CRC-7', None])},
            'fields': [self.generate_random_field() for _ in range(self.rng.randint(0, 4))],
        }

    def fuzz_one(self, config: Any) -> bool:
        """Try to build a layout from config."""
        self.stats.total_inputs += 1
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore')
                if isinstance(config, str):
                    config = yaml.safe_load(config)
                build_layout(config)
            self.stats.decode_success += 1
            return True
        except (ConfigError, yaml.YAMLError):
            self.stats.decode_error += 1
            return True
        except Exception:
            self.stats.crashes += 1
            self.stats.crash_inputs.append(config)
            return False

    def run(self, duration_sec: float = 10.0, max_inputs: Optional[int] = None) -> FuzzStats:
        """Run layout fuzzing."""
        generators = [
            self.generate_malformed_yaml,
            self.generate_random_layout,
            lambda: None,
            lambda: [],
            lambda: "string",
            lambda: 12345,
        ]
        return self._loop(generators, duration_sec, max_inputs)


def print_stats(stats: FuzzStats, name: str):
    """Print fuzzing statistics."""
    print(f"\n{name} Fuzzing Results")
    print("=" * 50)
    print(f"Seed: {stats.seed}")
    print(f"Duration: {stats.duration_sec:.1f}s")
    print(f"Total inputs: {stats.total_inputs}")
    print(f"Rate: {stats.inputs_per_sec:.0f} inputs/sec")
    print(f"Decode success: {stats.decode_success}")
    print(f"Decode errors: {stats.decode_error} (expected)")
    print(f"Crashes: {stats.crashes}")

    if stats.crashes > 0:
        print("\nCRASH INPUTS (reproducible with --seed):")
        for i, item in enumerate(stats.crash_inputs[:5]):
            shown = item.hex() if isinstance(item, bytes) else repr(item)
            print(f"  {i+1}: {shown}")
        print(f"\nFAILED: {name} crashed on malformed input!")
    else:
        print("\nPASSED: No crashes detected")


def main():
    parser = argparse.ArgumentParser(
        description='Fuzz test the Modbus frame decoder'
    )
    parser.add_argument('layout', nargs='?', help='Path to layout YAML file')
    parser.add_argument('-d', '--duration', type=float, default=10.0,
                        help='Fuzz duration in seconds (default: 10)')
    parser.add_argument('-s', '--seed', type=int,
                        help='Random seed for reproducibility')
    parser.add_argument('--layout-fuzz', action='store_true',
                        help='Also fuzz the layout builder')
    args = parser.parse_args()

    exit_code = 0

    if args.layout:
        try:
            config = load_config(args.layout)
            fuzzer = DecoderFuzzer(config, seed=args.seed)
        except ConfigError as e:
            print(f"Error loading layout: {e}", file=sys.stderr)
            sys.exit(1)

        print(f"Fuzzing decoder: {args.layout}")
        stats = fuzzer.run(args.duration)
        print_stats(stats, "Decoder")
        if stats.crashes > 0:
            exit_code = 1

    if args.layout_fuzz or not args.layout:
        print("\nFuzzing layout builder...")
        fuzzer = LayoutFuzzer(seed=args.seed)
        stats = fuzzer.run(args.duration)
        print_stats(stats, "Layout Builder")
        if stats.crashes > 0:
            exit_code = 1

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
