"""Message transports: one JSON-RPC message per line."""

from __future__ import annotations

import asyncio
import json
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from .errors import ProtocolViolation, TransportError
from ._logging import get_logger

logger = get_logger(__name__)

# Large enough for a long forecast in a single line.
STREAM_LIMIT = 4 * 1024 * 1024


class Transport(ABC):
    """Bidirectional stream of decoded JSON messages."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Send one message; raise TransportError if the peer is gone."""

    @abstractmethod
    async def receive(self) -> Optional[Dict[str, Any]]:
        """Return the next message, or None once the peer closed the stream.

        Raises ProtocolViolation for a frame that is not a JSON object.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying stream; safe to call twice."""


def decode_frame(line: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolViolation(f"Parse error: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolViolation("Parse error: message must be a JSON object")
    return message


def encode_frame(message: Dict[str, Any]) -> bytes:
    return json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


class StreamTransport(Transport):
    """Newline-delimited JSON over an asyncio reader/writer pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise TransportError("Transport is closed")
        try:
            self._writer.write(encode_frame(message))
            await self._writer.drain()
        except (ConnectionError, BrokenPipeError) as exc:
            raise TransportError(f"Connection lost while sending: {exc}") from exc

    async def receive(self) -> Optional[Dict[str, Any]]:
        while True:
            try:
                line = await self._reader.readline()
            except (ConnectionError, asyncio.LimitOverrunError, ValueError) as exc:
                raise TransportError(f"Connection lost while receiving: {exc}") from exc
            if not line:
                return None
            if line.strip():
                return decode_frame(line)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, BrokenPipeError):
            logger.debug("Peer already gone while closing transport")


async def open_stdio_transport() -> StreamTransport:
    """Wrap this process's stdin/stdout as a transport."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    write_transport, write_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)
    return StreamTransport(reader, writer)


class MemoryTransport(Transport):
    """In-process transport end; create connected ends with ``memory_transport_pair``."""

    def __init__(self, inbox: "asyncio.Queue[Optional[Dict[str, Any]]]", outbox: "asyncio.Queue[Optional[Dict[str, Any]]]") -> None:
        self._inbox = inbox
        self._outbox = outbox
        self._closed = False

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise TransportError("Transport is closed")
        # Round-trip through the codec so both ends see wire-shaped data.
        await self._outbox.put(decode_frame(encode_frame(message)))

    async def receive(self) -> Optional[Dict[str, Any]]:
        if self._closed:
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._outbox.put(None)
        await self._inbox.put(None)


def memory_transport_pair() -> Tuple[MemoryTransport, MemoryTransport]:
    """Return two connected transport ends (client, server)."""
    a_to_b: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
    b_to_a: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
    return MemoryTransport(b_to_a, a_to_b), MemoryTransport(a_to_b, b_to_a)
