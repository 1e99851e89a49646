from __future__ import annotations

import asyncio
import json
import struct
from typing import Optional

import msgpack
import structlog

from .messages import Message, parse_message

logger = structlog.get_logger()

# 10MB max frame size
MAX_FRAME_SIZE = 10 * 1024 * 1024


class ProtocolError(Exception):
    """Protocol-level error."""

    pass


class FrameReader:
    """Reads length-prefixed frames: [4 bytes big-endian length][data]."""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self._reader = reader

    async def read_frame(self, timeout: Optional[float] = None) -> bytes:
        """Read a complete frame.

        Raises:
            ProtocolError: If the stream ends mid-frame or the frame is too large
            asyncio.TimeoutError: If timeout is exceeded
        """
        try:
            header = await asyncio.wait_for(self._reader.readexactly(4), timeout=timeout)
        except asyncio.IncompleteReadError as e:
            raise ProtocolError("Connection closed while reading frame length") from e

        length = struct.unpack(">I", header)[0]
        if length > MAX_FRAME_SIZE:
            raise ProtocolError(f"Frame too large: {length} bytes")

        try:
            return await asyncio.wait_for(self._reader.readexactly(length), timeout=timeout)
        except asyncio.IncompleteReadError as e:
            raise ProtocolError("Connection closed while reading frame data") from e


class FrameWriter:
    """Writes length-prefixed frames with backpressure."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._closed = False

    async def write_frame(self, data: bytes) -> None:
        if self._closed:
            raise ProtocolError("Connection closed")
        if len(data) > MAX_FRAME_SIZE:
            raise ProtocolError(f"Frame too large: {len(data)} bytes")

        async with self._write_lock:
            self._writer.write(struct.pack(">I", len(data)) + data)
            await self._writer.drain()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, BrokenPipeError):
                pass


class MessageTransport:
    """High-level message transport using framed protocol."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        use_msgpack: bool = True,
    ) -> None:
        self._frame_reader = FrameReader(reader)
        self._frame_writer = FrameWriter(writer)
        self._use_msgpack = use_msgpack
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def encode(self, message: Message) -> bytes:
        data_dict = message.model_dump(mode="json")
        if self._use_msgpack:
            return msgpack.packb(data_dict, use_bin_type=True)
        return json.dumps(data_dict).encode("utf-8")

    def decode(self, frame: bytes) -> Message:
        try:
            if self._use_msgpack:
                data_dict = msgpack.unpackb(frame, raw=False, strict_map_key=False)
            else:
                data_dict = json.loads(frame.decode("utf-8"))
        except (ValueError, msgpack.ExtraData) as e:
            raise ProtocolError(f"Undecodable frame: {e}") from e
        if not isinstance(data_dict, dict):
            raise ProtocolError(f"Expected a mapping, got {type(data_dict).__name__}")
        try:
            return parse_message(data_dict)
        except ValueError as e:
            raise ProtocolError(str(e)) from e

    async def send_message(self, message: Message) -> None:
        """Send a message.

        Raises:
            ProtocolError: If transport is closed
        """
        if self._closed:
            raise ProtocolError("Transport closed")
        data = self.encode(message)
        await self._frame_writer.write_frame(data)
        logger.debug("Sent message", type=message.type, id=message.id, size=len(data))

    async def receive_message(self, timeout: Optional[float] = None) -> Message:
        """Receive a message.

        Raises:
            ProtocolError: If transport is closed or message is invalid
            asyncio.TimeoutError: If timeout is exceeded
        """
        if self._closed:
            raise ProtocolError("Transport closed")
        frame = await self._frame_reader.read_frame(timeout=timeout)
        message = self.decode(frame)
        logger.debug("Received message", type=message.type, id=message.id)
        return message

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._frame_writer.close()
