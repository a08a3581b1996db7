"""Named pipes connecting a running child process back to the supervisor.

The child finds the pipe paths in `$KERNEL_BRIDGE_PIPE` (records towards the
supervisor) and `$KERNEL_BRIDGE_PIPE_BACK` (reserved for the other direction),
and writes length-prefixed records to the first one to display rich content or
to ask for user input. Input typed by the user is written to the child's stdin.

Opening a FIFO for reading blocks until a writer attaches. The child may never
open it (it may not use the client library, or it may fail to start), so the
teardown path attaches a throwaway writer whenever the reader is still blocked
when the child is done.
"""

from __future__ import annotations

import errno
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable, MutableMapping
from contextlib import suppress
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

from pydantic import ValidationError

from kernel_bridge.config import PipeSettings
from kernel_bridge.host import STREAM_STDERR, DisplayData, HostMessage
from kernel_bridge.protocol import (
    MIME_INPUT_REQUEST,
    PIPE_BACK_ENV,
    PIPE_ENV,
    DisplayRecord,
    InputRequest,
    ProtocolError,
    RecordDecoder,
)

__all__ = ["PipeBridge", "ResourceError"]

logger = logging.getLogger("kernel_bridge.runner.pipes")

_UNBLOCK_RETRY_INTERVAL = 0.01


class ResourceError(RuntimeError):
    """Raised when the named pipes cannot be created."""


class PipeBridge:
    """FIFO transport for a single child process.

    `done` fires once when the child exits (or is known not to run); every
    thread started here reacts to it by closing its handles and exiting. The
    bridge is single use.
    """

    def __init__(
        self,
        host: HostMessage,
        settings: PipeSettings | None = None,
        *,
        done: threading.Event | None = None,
    ) -> None:
        self.host = host
        self.settings = settings or PipeSettings()
        self.done = done or threading.Event()
        self.reader_path: Path | None = None
        self.writer_path: Path | None = None
        self.reader_handle: BinaryIO | None = None

        self._stdin: BinaryIO | None = None
        self._stdin_lock = threading.Lock()

        # Coordinates the blocking open-for-read with the teardown path.
        self._fifo_lock = threading.Lock()
        self._opening = False
        self._opened = False
        self._abandoned = False
        self._reader_exited = False
        self._decoding = False
        self._removed = False

        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()

    # --------------------------------------------------------------- lifecycle
    @property
    def is_done(self) -> bool:
        return self.done.is_set()

    @property
    def removed(self) -> bool:
        return self._removed

    def mark_done(self) -> None:
        self.done.set()

    def attach_stdin(self, handle: BinaryIO | None) -> None:
        with self._stdin_lock:
            self._stdin = handle

    def setup(self, env: MutableMapping[str, str]) -> None:
        """Create both FIFOs, export their paths into `env` and start listening."""

        if self.reader_path is not None:
            raise RuntimeError("PipeBridge.setup() called twice")
        directory = Path(self.settings.directory or tempfile.gettempdir())
        try:
            self.reader_path = self._create_fifo(directory)
            self.writer_path = self._create_fifo(directory)
        except OSError as exc:
            self._remove_paths()
            raise ResourceError(f"failed to create named pipes in {directory}: {exc}") from exc
        env[PIPE_ENV] = str(self.reader_path)
        env[PIPE_BACK_ENV] = str(self.writer_path)
        self.open_pipe_reader()

    def open_pipe_reader(self) -> None:
        """Start the reader and the cleanup threads."""

        self._start_thread(self._cleanup_when_done, "pipe-cleanup")
        self._start_thread(self._read_pipe, "pipe-reader")

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every thread of the bridge. Returns False on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        joined: set[threading.Thread] = set()
        while True:
            with self._threads_lock:
                pending = [t for t in self._threads if t not in joined]
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
                if thread.is_alive():
                    return False
                joined.add(thread)

    # ------------------------------------------------------------ pipe threads
    def _cleanup_when_done(self) -> None:
        self.done.wait()
        self._unblock_reader()
        with self._fifo_lock:
            # A reader inside its open removes the fifos itself, after decoding.
            reader_gone = self._abandoned or self._reader_exited
        if reader_gone:
            self._release_fifos()

    def _unblock_reader(self) -> None:
        while True:
            with self._fifo_lock:
                if self._opened or self._reader_exited:
                    return
                if not self._opening:
                    self._abandoned = True
                    return
                try:
                    fd = os.open(self.reader_path, os.O_WRONLY | os.O_NONBLOCK)
                except OSError as exc:
                    if exc.errno != errno.ENXIO:
                        logger.warning("Failed to unblock reader of %s: %s", self.reader_path, exc)
                        return
                else:
                    # Attaching and detaching lets the pending open-for-read return.
                    os.close(fd)
                    return
            # ENXIO: the reader has not reached the open call yet.
            time.sleep(_UNBLOCK_RETRY_INTERVAL)

    def _read_pipe(self) -> None:
        with self._fifo_lock:
            if self.done.is_set() or self._abandoned:
                self._reader_exited = True
                skip = True
            else:
                self._opening = True
                skip = False
        if skip:
            self._release_fifos()
            return

        try:
            # Blocks until the child (or the cleanup thread) opens the other end.
            handle = open(self.reader_path, "rb", buffering=0)  # noqa: SIM115
        except OSError as exc:
            logger.warning("Failed to open pipe %s for reading: %s", self.reader_path, exc)
            with self._fifo_lock:
                self._reader_exited = True
            self._release_fifos()
            return

        with self._fifo_lock:
            self._opened = True
            self._decoding = True
        self.reader_handle = handle
        decoder = self._start_thread(self._decode_and_release, "pipe-decoder")

        self.done.wait()
        decoder.join(self.settings.drain_timeout)
        handle.close()
        self._release_fifos()

    def _decode_and_release(self) -> None:
        try:
            self.decode_loop()
        finally:
            with self._fifo_lock:
                self._decoding = False
            self._release_fifos()

    def _release_fifos(self) -> None:
        with self._fifo_lock:
            if self._removed or self._decoding or not self.done.is_set():
                return
            self._removed = True
        self._remove_paths()

    # ---------------------------------------------------------------- decoding
    def decode_loop(self) -> None:
        """Decode records until the stream ends, dispatching each one."""

        handle = self.reader_handle
        if handle is None:
            return
        decoder = RecordDecoder(handle)
        while True:
            try:
                record = decoder.decode()
            except EOFError:
                return
            except ProtocolError as exc:
                logger.info("Named pipe: failed to parse message: %s", exc)
                return
            except ValueError as exc:
                if not handle.closed:
                    logger.info("Named pipe: failed to read message: %s", exc)
                return
            except OSError as exc:
                if exc.errno not in (errno.EBADF, errno.EPIPE):
                    logger.info("Named pipe: failed to read message: %s", exc)
                return

            if record.is_input_request:
                try:
                    request = InputRequest.model_validate(record.data[MIME_INPUT_REQUEST])
                except ValidationError as exc:
                    self.report_cell_error(
                        f"A {MIME_INPUT_REQUEST} record was sent without a valid input request: {exc}"
                    )
                    continue
                self.dispatch_input_request(request)
                continue

            self.dispatch_display_data(record)

    def dispatch_display_data(self, record: DisplayRecord) -> None:
        display = DisplayData(data=dict(record.data), metadata=dict(record.metadata))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Display data with MIME types %s", sorted(display.data))
        try:
            if record.display_id:
                display.transient["display_id"] = record.display_id
                self.host.publish_update_display_data(display)
            else:
                self.host.publish_data(display)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to display data (ignoring): %s", exc)

    def dispatch_input_request(self, request: InputRequest) -> None:
        logger.debug("Received input request %r", request)

        def _on_response(value: str) -> None:
            payload = f"{value}\n".encode()
            # Written from another thread, in case the child never reads its stdin.
            self._start_thread(self._write_stdin, "pipe-stdin", payload)

        try:
            self.host.prompt_input(request.prompt, request.password, _on_response)
        except Exception as exc:  # noqa: BLE001
            self.report_cell_error(exc)

    def report_cell_error(self, err: BaseException | str) -> None:
        """Report an error to both the notebook and the local log."""

        text = str(err)
        logger.error("%s", text)
        try:
            self.host.publish_write_stream(STREAM_STDERR, text if text.endswith("\n") else text + "\n")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to report cell error")

    # ----------------------------------------------------------------- helpers
    def _write_stdin(self, payload: bytes) -> None:
        with self._stdin_lock:
            stdin = self._stdin
        if self.is_done or stdin is None:
            return
        try:
            stdin.write(payload)
            stdin.flush()
        except (OSError, ValueError) as exc:
            # The child may have closed its stdin already.
            logger.warning("Failed to write to stdin of cell: %s", exc)

    def _start_thread(
        self, target: Callable[..., None], name: str, *args: object
    ) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._threads_lock:
            self._threads.append(thread)
        thread.start()
        return thread

    @staticmethod
    def _create_fifo(directory: Path) -> Path:
        path = directory / f"kernel_bridge_pipe_{uuid4().hex}"
        os.mkfifo(path, 0o600)
        return path

    def _remove_paths(self) -> None:
        for path in (self.reader_path, self.writer_path):
            if path is not None:
                with suppress(FileNotFoundError):
                    path.unlink()
