"""Display rich content from a program running under the kernel bridge."""

from __future__ import annotations

import base64
import os
import sys
import threading
from collections.abc import Mapping
from typing import Any, BinaryIO, TextIO
from uuid import uuid4

from kernel_bridge.protocol import (
    PIPE_ENV,
    DisplayRecord,
    encode_record,
    input_request_record,
)

__all__ = [
    "PipeUnavailableError",
    "PipeWriter",
    "display",
    "display_html",
    "display_markdown",
    "display_png",
    "display_text",
    "is_available",
    "new_display_id",
    "request_input",
    "update_display",
]


class PipeUnavailableError(RuntimeError):
    """Raised when the program was not started by the kernel bridge."""


class PipeWriter:
    """Write records to the supervisor's pipe, opening it on first use."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self._handle: BinaryIO | None = None
        self._lock = threading.Lock()

    def write(self, record: DisplayRecord) -> None:
        frame = encode_record(record)
        with self._lock:
            handle = self._ensure_open()
            handle.write(frame)
            handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None

    def _ensure_open(self) -> BinaryIO:
        if self._handle is None:
            path = self.path or os.environ.get(PIPE_ENV)
            if not path:
                raise PipeUnavailableError(
                    f"${PIPE_ENV} is not set, not running under the kernel bridge"
                )
            self._handle = open(path, "wb", buffering=0)  # noqa: SIM115
        return self._handle


_writer = PipeWriter()


def is_available() -> bool:
    return bool(os.environ.get(PIPE_ENV))


def new_display_id() -> str:
    """Return an id that can be passed to `display` and later to `update_display`."""

    return f"kernel_bridge_{uuid4().hex}"


def display(
    data: Mapping[str, Any],
    *,
    metadata: Mapping[str, Any] | None = None,
    display_id: str | None = None,
) -> None:
    _writer.write(
        DisplayRecord(data=dict(data), metadata=dict(metadata or {}), display_id=display_id or "")
    )


def update_display(display_id: str, data: Mapping[str, Any]) -> None:
    if not display_id:
        raise ValueError("update_display requires a display_id")
    display(data, display_id=display_id)


def display_html(html: str, *, display_id: str | None = None) -> None:
    display({"text/html": html}, display_id=display_id)


def display_markdown(markdown: str, *, display_id: str | None = None) -> None:
    display({"text/markdown": markdown}, display_id=display_id)


def display_text(text: str, *, display_id: str | None = None) -> None:
    display({"text/plain": text}, display_id=display_id)


def display_png(image: bytes, *, display_id: str | None = None) -> None:
    display({"image/png": base64.b64encode(image).decode("ascii")}, display_id=display_id)


def request_input(prompt: str, *, password: bool = False, stdin: TextIO | None = None) -> str:
    """Ask the front-end for a line of input and read the answer from stdin."""

    _writer.write(input_request_record(prompt, password=password))
    line = (stdin or sys.stdin).readline()
    return line.rstrip("\n")
