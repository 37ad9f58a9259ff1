from __future__ import annotations

import io
import struct

import pytest

from minion.errors import MalformedMessage, ProtocolClosed
from minion.protocol.transport import FramedTransport


def _transport(incoming: bytes = b"", **kwargs: object) -> tuple[FramedTransport, io.BytesIO]:
    writer = io.BytesIO()
    return FramedTransport(io.BytesIO(incoming), writer, **kwargs), writer  # type: ignore[arg-type]


class TrickleReader(io.RawIOBase):
    """Hands out at most one byte per read, like a slow pipe."""

    def __init__(self, data: bytes) -> None:
        self._data = data

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        chunk, self._data = self._data[:1], self._data[1:]
        return chunk


def test_send_writes_length_prefixed_frame() -> None:
    transport, writer = _transport()

    transport.send(b'{"a":1}')

    assert writer.getvalue() == b"\x00\x00\x00\x07" + b'{"a":1}'


def test_frames_are_received_in_order() -> None:
    stream = struct.pack(">I", 3) + b"one" + struct.pack(">I", 0) + struct.pack(">I", 5) + b"three"
    transport, _ = _transport(stream)

    assert transport.receive() == b"one"
    assert transport.receive() == b""
    assert transport.receive() == b"three"
    with pytest.raises(ProtocolClosed, match="end of stream"):
        transport.receive()


def test_receive_reassembles_partial_reads() -> None:
    payload = "héllo".encode("utf-8")
    reader = TrickleReader(struct.pack(">I", len(payload)) + payload)
    transport = FramedTransport(reader, io.BytesIO())  # type: ignore[arg-type]

    assert transport.receive() == payload


def test_eof_before_any_frame_is_protocol_closed() -> None:
    transport, _ = _transport()

    with pytest.raises(ProtocolClosed):
        transport.receive()


@pytest.mark.parametrize(
    "stream",
    [b"\x00\x00", struct.pack(">I", 10) + b"short"],
)
def test_truncated_frame_is_protocol_closed(stream: bytes) -> None:
    transport, _ = _transport(stream)

    with pytest.raises(ProtocolClosed, match="mid-frame"):
        transport.receive()


def test_oversized_declared_length_is_malformed() -> None:
    transport, _ = _transport(struct.pack(">I", 0xFFFFFFFF), max_frame_bytes=1024)

    with pytest.raises(MalformedMessage, match="exceeds limit"):
        transport.receive()


def test_oversized_outgoing_frame_is_refused() -> None:
    transport, writer = _transport(max_frame_bytes=4)

    with pytest.raises(ValueError):
        transport.send(b"too long")
    assert writer.getvalue() == b""


def test_send_on_closed_channel_is_protocol_closed() -> None:
    transport, writer = _transport()
    writer.close()

    with pytest.raises(ProtocolClosed):
        transport.send(b"{}")


def test_broken_pipe_is_protocol_closed() -> None:
    class BrokenWriter(io.BytesIO):
        def write(self, data: bytes) -> int:  # type: ignore[override]
            raise BrokenPipeError(32, "Broken pipe")

    transport = FramedTransport(io.BytesIO(), BrokenWriter())

    with pytest.raises(ProtocolClosed, match="Broken pipe"):
        transport.send(b"{}")
