"""Length-prefixed framing over the orchestrator's byte streams."""

from __future__ import annotations

import logging
import struct
import sys
from typing import BinaryIO

from minion.errors import MalformedMessage, ProtocolClosed

LOGGER = logging.getLogger(__name__)

_HEADER = struct.Struct(">I")
DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024


class FramedTransport:
    """Blocking frame exchange: a 4-byte big-endian length, then the payload."""

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        *,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.max_frame_bytes = max_frame_bytes

    @classmethod
    def from_stdio(cls, *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> FramedTransport:
        return cls(sys.stdin.buffer, sys.stdout.buffer, max_frame_bytes=max_frame_bytes)

    def send(self, payload: bytes) -> None:
        if len(payload) > self.max_frame_bytes:
            raise ValueError(
                f"frame of {len(payload)} bytes exceeds limit of {self.max_frame_bytes}"
            )
        try:
            self.writer.write(_HEADER.pack(len(payload)))
            self.writer.write(payload)
            self.writer.flush()
        except (BrokenPipeError, ConnectionError, ValueError) as exc:
            # ValueError: write to a closed file object.
            raise ProtocolClosed(f"orchestrator channel closed while sending: {exc}") from exc
        LOGGER.debug("frame_sent", extra={"frame_bytes": len(payload)})

    def receive(self) -> bytes:
        """Block until a whole frame arrives; raises ProtocolClosed at end-of-stream."""
        header = self._read_exactly(_HEADER.size, allow_eof=True)
        (length,) = _HEADER.unpack(header)
        if length > self.max_frame_bytes:
            raise MalformedMessage(
                f"declared frame length {length} exceeds limit of {self.max_frame_bytes}"
            )
        payload = self._read_exactly(length, allow_eof=False)
        LOGGER.debug("frame_received", extra={"frame_bytes": length})
        return payload

    def _read_exactly(self, size: int, *, allow_eof: bool) -> bytes:
        chunks: list[bytes] = []
        remaining = size
        while remaining > 0:
            try:
                chunk = self.reader.read(remaining)
            except (ConnectionError, ValueError) as exc:
                raise ProtocolClosed(f"orchestrator channel closed: {exc}") from exc
            if not chunk:
                if allow_eof and remaining == size:
                    raise ProtocolClosed("orchestrator channel reached end of stream")
                raise ProtocolClosed(
                    f"orchestrator channel closed mid-frame ({size - remaining}/{size} bytes)"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)
