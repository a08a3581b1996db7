"""Run a child process wired to the supervisor through a `PipeBridge`."""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import threading
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from kernel_bridge.config import PipeSettings
from kernel_bridge.host import STREAM_STDERR, STREAM_STDOUT, HostMessage
from kernel_bridge.runner.pipes import PipeBridge

__all__ = [
    "CellExecutor",
    "CommandExecutionError",
    "ExecutionResult",
    "ExecutionStatus",
]

logger = logging.getLogger("kernel_bridge.runner.executor")

# Extra time, on top of the decoder drain timeout, given to the bridge threads.
_JOIN_GRACE = 1.0


class ExecutionStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class ExecutionResult:
    """Details about the finished child process."""

    exit_code: int | None
    status: ExecutionStatus
    timed_out: bool = False


class CommandExecutionError(RuntimeError):
    """Raised when the child process cannot be spawned."""


class CellExecutor:
    """Spawn a child, stream its output to the host and serve its pipe requests."""

    def __init__(
        self,
        host: HostMessage,
        *,
        settings: PipeSettings | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.host = host
        self.settings = settings or PipeSettings()
        self.base_env = dict(base_env or os.environ)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        bridge = PipeBridge(self.host, self.settings)
        child_env = self._build_env(env)
        bridge.setup(child_env)

        try:
            process = subprocess.Popen(  # noqa: S603
                list(argv),
                cwd=str(cwd) if cwd is not None else None,
                env=child_env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            bridge.mark_done()
            bridge.join(self.settings.drain_timeout + _JOIN_GRACE)
            self._write_stream(STREAM_STDERR, f"Failed to start command: {exc}\n")
            raise CommandExecutionError(str(exc)) from exc

        bridge.attach_stdin(process.stdin)
        threads: list[threading.Thread] = []
        for pipe, label in ((process.stdout, STREAM_STDOUT), (process.stderr, STREAM_STDERR)):
            if pipe is not None:
                t = threading.Thread(target=self._pump, args=(pipe, label), daemon=True)
                t.start()
                threads.append(t)

        timed_out = False
        try:
            exit_code: int | None = process.wait(timeout=timeout)
            status = ExecutionStatus.SUCCEEDED if exit_code == 0 else ExecutionStatus.FAILED
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            self._write_stream(STREAM_STDERR, "Command exceeded timeout; process killed\n")
            exit_code = None
            status = ExecutionStatus.CANCELLED
            timed_out = True
        finally:
            bridge.mark_done()
            for thread in threads:
                thread.join()
            if process.stdin is not None:
                with suppress(OSError):
                    process.stdin.close()
            if not bridge.join(self.settings.drain_timeout + _JOIN_GRACE):
                logger.warning("Pipe threads still running after the child exited")
        return ExecutionResult(exit_code=exit_code, status=status, timed_out=timed_out)

    # ----------------------------------------------------------------- helpers
    def _pump(self, pipe: BinaryIO, label: str) -> None:
        with pipe:
            for line in iter(pipe.readline, b""):
                self._write_stream(label, line.decode("utf-8", errors="replace"))

    def _write_stream(self, stream: str, text: str) -> None:
        try:
            self.host.publish_write_stream(stream, text)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to publish %s output (ignoring): %s", stream, exc)

    def _build_env(self, overrides: Mapping[str, str] | None) -> dict[str, str]:
        env: dict[str, str] = dict(self.base_env)
        if overrides:
            env.update({k: str(v) for k, v in overrides.items()})
        env.setdefault("PYTHONUNBUFFERED", "1")
        return env
