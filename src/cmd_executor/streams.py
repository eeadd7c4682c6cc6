"""Output sinks for supervised processes.

The executor pumps each output pipe in its own task and feeds raw chunks to a
sink:
- BufferSink: collects bytes for one-shot runs and enforces max_buffer
- HandlerSink: decodes incrementally and delivers text to a caller handler

Sinks are fed in pipe order per stream. stdout and stderr are fed from
separate tasks, so their relative order is not defined.
"""

from __future__ import annotations

import codecs
import inspect
import logging
from typing import Callable, Protocol

from .errors import CallbackFailed
from .types import ChunkHandler, StreamTag

__all__ = ["OutputSink", "BufferSink", "HandlerSink"]

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    async def feed(self, stream: StreamTag, chunk: bytes) -> None: ...

    async def close(self, stream: StreamTag) -> None: ...


class BufferSink:
    """Collects both streams in memory.

    When either stream grows past max_buffer, on_overflow is called once with
    the stream tag and further data is discarded.
    """

    def __init__(
        self,
        max_buffer: int,
        on_overflow: Callable[[StreamTag], None] | None = None,
    ) -> None:
        self.max_buffer = max_buffer
        self._on_overflow = on_overflow
        self._buffers: dict[StreamTag, bytearray] = {
            StreamTag.STDOUT: bytearray(),
            StreamTag.STDERR: bytearray(),
        }
        self.overflowed: StreamTag | None = None

    async def feed(self, stream: StreamTag, chunk: bytes) -> None:
        if self.overflowed is not None:
            return
        buffer = self._buffers[stream]
        buffer += chunk
        if len(buffer) > self.max_buffer:
            self.overflowed = stream
            logger.debug(f"{stream.value} exceeded max_buffer={self.max_buffer}")
            if self._on_overflow:
                self._on_overflow(stream)

    async def close(self, stream: StreamTag) -> None:
        pass

    def text(self, stream: StreamTag, encoding: str) -> str:
        """Decode the collected bytes of one stream."""
        return bytes(self._buffers[stream]).decode(encoding, errors="replace")


class HandlerSink:
    """Delivers decoded chunks to a caller-supplied handler.

    The handler may be a plain function or return an awaitable; awaiting it
    applies backpressure to this stream only. Exceptions from the handler are
    wrapped in CallbackFailed and passed to on_error, and delivery continues.
    """

    def __init__(
        self,
        handler: ChunkHandler,
        encoding: str,
        on_error: Callable[[CallbackFailed], None],
    ) -> None:
        self._handler = handler
        self._on_error = on_error
        # One decoder per stream so split multibyte sequences survive
        self._decoders = {
            tag: codecs.getincrementaldecoder(encoding)(errors="replace")
            for tag in StreamTag
        }
        self.delivered = 0

    async def feed(self, stream: StreamTag, chunk: bytes) -> None:
        text = self._decoders[stream].decode(chunk)
        if text:
            await self._deliver(stream, text)

    async def close(self, stream: StreamTag) -> None:
        tail = self._decoders[stream].decode(b"", final=True)
        if tail:
            await self._deliver(stream, tail)

    async def _deliver(self, stream: StreamTag, text: str) -> None:
        self.delivered += 1
        try:
            result = self._handler(text, stream)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._on_error(CallbackFailed(e, stream.value))
