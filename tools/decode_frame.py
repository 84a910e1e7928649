#!/usr/bin/env python3
"""
decode_frame.py - Decode Modbus frames from the command line

Usage:
    python tools/decode_frame.py layouts/boiler_sensor.yaml "01 03 00 02 00 C8 9C E5"
    python tools/decode_frame.py layouts/boiler_sensor.yaml --stdin < frames.txt
    python tools/decode_frame.py layouts/boiler_sensor.yaml 0103000200C89CE5 --json

Frames are hex strings; spaces, commas and 0x prefixes are ignored. With
--stdin, one frame per line (blank lines and lines starting with # skipped).
Exit code is 1 if any frame failed to decode.
"""

import argparse
import json
import logging
import sys
from typing import Iterator, List

from modbus_errors import ConfigError
from modbus_processor import Message, ModbusProcessor
from validate_layout import parse_payload

logger = logging.getLogger(__name__)


def iter_frames(hex_frames: List[str], use_stdin: bool) -> Iterator[str]:
    for frame in hex_frames:
        yield frame
    if use_stdin:
        for line in sys.stdin:
            line = line.strip()
            if line and not line.startswith('#'):
                yield line


def format_message(message: Message) -> str:
    """One-line summary of a processed message."""
    if message.failed:
        return f"ERROR: {message.error}"
    meta = message.metadata
    tags = (f"device={meta['device_address']} function=0x{meta['function_code']:02X} "
            f"length={meta['payload_length']} checksum={meta['checksum_passed']}")
    fields_str = ", ".join(f"{k}={v}" for k, v in (message.structured or {}).items())
    return f"[{tags}] {fields_str}"


def main():
    parser = argparse.ArgumentParser(
        description='Decode Modbus frames with a layout file'
    )
    parser.add_argument('layout', help='Path to layout YAML file')
    parser.add_argument('frames', nargs='*', help='Frames as hex strings')
    parser.add_argument('--stdin', action='store_true',
                        help='Also read frames from stdin, one per line')
    parser.add_argument('--json', action='store_true',
                        help='Output one JSON object per frame')
    parser.add_argument('--units', action='store_true',
                        help='Annotate values with their units')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    try:
        processor = ModbusProcessor.from_file(args.layout, annotate_units=args.units)
    except ConfigError as e:
        print(f"Error loading layout: {e}", file=sys.stderr)
        sys.exit(1)

    failures = 0
    for text in iter_frames(args.frames, args.stdin):
        try:
            payload = parse_payload(text)
        except ValueError as e:
            logger.error("not a hex frame: %r (%s)", text, e)
            failures += 1
            continue

        message = processor.process_batch([Message(payload)])[0]
        if message.failed:
            failures += 1

        if args.json:
            print(json.dumps({
                'frame': payload.hex().upper(),
                'data': message.structured,
                'metadata': message.metadata,
                'error': message.error,
            }, default=str))
        else:
            print(f"{payload.hex().upper()}: {format_message(message)}")

    sys.exit(1 if failures else 0)


if __name__ == '__main__':
    main()
