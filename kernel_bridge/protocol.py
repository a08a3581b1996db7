"""Wire formats shared by the supervisor and the child process.

Records travel over the FIFO as a 4-byte big-endian length followed by the
UTF-8 JSON encoding of a `DisplayRecord`.
"""

from __future__ import annotations

import struct
from typing import Any, BinaryIO

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "HEARTBEAT_PING_ADDRESS",
    "HEARTBEAT_PONG_ADDRESS",
    "MAX_FRAME_SIZE",
    "MIME_INPUT_REQUEST",
    "PIPE_BACK_ENV",
    "PIPE_ENV",
    "CommMsgContent",
    "CommOpenContent",
    "DisplayRecord",
    "InputRequest",
    "ProtocolError",
    "RecordDecoder",
    "encode_record",
    "input_request_record",
]

# Environment variables handed to the child process.
PIPE_ENV = "KERNEL_BRIDGE_PIPE"
PIPE_BACK_ENV = "KERNEL_BRIDGE_PIPE_BACK"

# Reserved MIME key marking a record as a request for user input.
MIME_INPUT_REQUEST = "application/x-kernel-bridge-input"

# Protocol private addresses on the control channel.
HEARTBEAT_PING_ADDRESS = "#heartbeat/ping"
HEARTBEAT_PONG_ADDRESS = "#heartbeat/pong"

MAX_FRAME_SIZE = 64 * 1024 * 1024

_HEADER = struct.Struct(">I")


class ProtocolError(ValueError):
    """Raised when a FIFO stream does not hold a well-formed record."""


class InputRequest(BaseModel):
    prompt: str
    password: bool = False


class DisplayRecord(BaseModel):
    """Content to display, keyed by MIME type.

    A non-empty `display_id` updates a previously displayed artifact in place.
    """

    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    display_id: str = ""

    @property
    def is_input_request(self) -> bool:
        return MIME_INPUT_REQUEST in self.data


class CommOpenContent(BaseModel):
    target_name: str
    comm_id: str


class CommMsgContent(BaseModel):
    comm_id: str
    data: dict[str, Any] = Field(default_factory=dict)


def input_request_record(prompt: str, *, password: bool = False) -> DisplayRecord:
    request = InputRequest(prompt=prompt, password=password)
    return DisplayRecord(data={MIME_INPUT_REQUEST: request.model_dump()})


def encode_record(record: DisplayRecord) -> bytes:
    body = record.model_dump_json().encode("utf-8")
    if len(body) > MAX_FRAME_SIZE:
        raise ProtocolError(f"record of {len(body)} bytes exceeds the frame limit")
    return _HEADER.pack(len(body)) + body


class RecordDecoder:
    """Decode one record at a time from a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def decode(self) -> DisplayRecord:
        """Return the next record.

        Raises `EOFError` if the stream ends cleanly between records and
        `ProtocolError` for anything else that is not a valid frame.
        """

        header = self._read_exact(_HEADER.size)
        if not header:
            raise EOFError("end of record stream")
        if len(header) < _HEADER.size:
            raise ProtocolError("truncated frame header")
        (size,) = _HEADER.unpack(header)
        if size > MAX_FRAME_SIZE:
            raise ProtocolError(f"frame of {size} bytes exceeds the frame limit")
        body = self._read_exact(size)
        if len(body) < size:
            raise ProtocolError(f"truncated frame: expected {size} bytes, got {len(body)}")
        try:
            return DisplayRecord.model_validate_json(body)
        except ValidationError as exc:
            raise ProtocolError(f"invalid record: {exc}") from exc

    def _read_exact(self, size: int) -> bytes:
        chunks: list[bytes] = []
        remaining = size
        while remaining:
            chunk = self._stream.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)
