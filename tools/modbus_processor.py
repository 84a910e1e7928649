#!/usr/bin/env python3
"""
modbus_processor.py - Pipeline step that decodes Modbus frames in messages

The surrounding pipeline owns transport, batching, retries and routing.
This step only needs a message carrying raw bytes, somewhere to put the
decoded fields and diagnostic tags, and a way to flag a failed message.

Usage:
    from modbus_processor import Message, ModbusProcessor

    processor = ModbusProcessor.from_file('layouts/boiler_sensor.yaml')
    out = processor.process_batch([Message(frame_bytes)])
    out[0].structured   # {'temp': 20.0}
    out[0].metadata     # {'device_address': 1, ..., 'checksum_passed': True}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from modbus_decoder import FrameDecoder
from modbus_errors import DecodeError
from modbus_layout import FrameLayout, build_layout, load_layout

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """A pipeline message: raw content plus metadata."""
    content: bytes
    metadata: Dict[str, Any] = field(default_factory=dict)
    structured: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ModbusProcessor:
    """
    Decode the content of each message with one fixed layout.

    Args:
        config: layout config dict, or an already built FrameLayout
        annotate_units: emit {name: {'value': v, 'unit': u}} instead of
            plain {name: value}
    """

    def __init__(self, config: Union[Dict[str, Any], FrameLayout],
                 annotate_units: bool = False):
        layout = config if isinstance(config, FrameLayout) else build_layout(config)
        self.decoder = FrameDecoder(layout)
        self.annotate_units = annotate_units
        logger.debug("modbus processor '%s' ready: %d fields, checksum=%s",
                     layout.name, len(layout.fields),
                     layout.checksum.algorithm.value if layout.checksum.enabled else 'off')

    @classmethod
    def from_file(cls, path, annotate_units: bool = False) -> 'ModbusProcessor':
        return cls(load_layout(path), annotate_units=annotate_units)

    @property
    def layout(self) -> FrameLayout:
        return self.decoder.layout

    def process(self, message: Message) -> List[Message]:
        """
        Decode one message in place.

        Raises:
            DecodeError: the frame could not be decoded; message.metadata
                already carries any tags the error provides
        """
        try:
            frame = self.decoder.decode(message.content)
        except DecodeError as e:
            message.metadata.update(e.metadata)
            logger.warning("%s: cannot decode %d-byte frame (%s): %s",
                           self.decoder.name, len(message.content), e.context, e)
            raise

        message.structured = frame.annotated() if self.annotate_units else dict(frame.data)
        message.metadata.update(frame.metadata)
        logger.debug("%s: decoded %d fields from device %d",
                     self.decoder.name, len(frame.data), frame.device_address)
        return [message]

    def process_batch(self, messages: Iterable[Message]) -> List[Message]:
        """Decode every message; failed ones are returned with `error` set."""
        out: List[Message] = []
        for message in messages:
            try:
                out.extend(self.process(message))
            except DecodeError as e:
                message.error = str(e)
                out.append(message)
        return out
