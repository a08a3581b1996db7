from __future__ import annotations

import io
import logging
import os
import time
from pathlib import Path

import pytest

from kernel_bridge.config import PipeSettings
from kernel_bridge.protocol import (
    MIME_INPUT_REQUEST,
    PIPE_BACK_ENV,
    PIPE_ENV,
    DisplayRecord,
    InputRequest,
    encode_record,
    input_request_record,
)
from kernel_bridge.runner import PipeBridge, ResourceError, pipes
from tests.conftest import FakeHost, wait_for


@pytest.fixture()
def bridge(tmp_path: Path, host: FakeHost) -> PipeBridge:
    return PipeBridge(host, PipeSettings(directory=tmp_path, drain_timeout=0.5))


def _write(env: dict[str, str], *records: DisplayRecord, raw: bytes = b"") -> None:
    # Blocks until the bridge opens the reading end.
    with open(env[PIPE_ENV], "wb") as pipe:
        for record in records:
            pipe.write(encode_record(record))
        pipe.write(raw)


def _finish(bridge: PipeBridge) -> None:
    bridge.mark_done()
    assert bridge.join(timeout=5)


def test_setup_creates_fifos_and_exports_paths(bridge: PipeBridge, tmp_path: Path) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    try:
        reader, writer = Path(env[PIPE_ENV]), Path(env[PIPE_BACK_ENV])
        assert reader.parent == tmp_path
        assert reader != writer
        assert reader.is_fifo()
        assert writer.is_fifo()
        assert reader.stat().st_mode & 0o777 == 0o600
    finally:
        _finish(bridge)


def test_setup_failure_raises_resource_error(host: FakeHost, tmp_path: Path) -> None:
    bridge = PipeBridge(host, PipeSettings(directory=tmp_path / "missing"))
    env: dict[str, str] = {}
    with pytest.raises(ResourceError):
        bridge.setup(env)
    assert env == {}


def test_done_before_writer_attaches_unblocks_reader(bridge: PipeBridge) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    time.sleep(0.1)  # let the reader block on open
    _finish(bridge)
    assert bridge.reader_handle is not None
    assert bridge.removed
    assert not Path(env[PIPE_ENV]).exists()
    assert not Path(env[PIPE_BACK_ENV]).exists()


def test_done_immediately_after_setup_does_not_hang(bridge: PipeBridge) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    _finish(bridge)
    assert bridge.removed
    assert not Path(env[PIPE_ENV]).exists()


def test_already_done_never_opens_the_reader(bridge: PipeBridge, tmp_path: Path) -> None:
    bridge.mark_done()
    env: dict[str, str] = {}
    bridge.setup(env)
    assert bridge.join(timeout=5)
    assert bridge.reader_handle is None
    assert list(tmp_path.iterdir()) == []


def test_decodes_each_record_then_stops_at_eof(bridge: PipeBridge, host: FakeHost) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    records = [DisplayRecord(data={"text/plain": f"line {i}"}) for i in range(5)]
    _write(env, *records)
    assert wait_for(lambda: len(host.displays) == 5)
    assert not bridge.removed, "fifos stay until the child is done"
    _finish(bridge)
    assert [d.data for d in host.displays] == [r.data for r in records]
    assert host.updates == []
    assert host.streams == []
    assert bridge.removed


def test_display_id_updates_in_place(bridge: PipeBridge, host: FakeHost) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    _write(
        env,
        DisplayRecord(
            data={"text/html": "<b>50%</b>"},
            metadata={"isolated": True},
            display_id="progress",
        ),
    )
    assert wait_for(lambda: len(host.updates) == 1)
    _finish(bridge)
    update = host.updates[0]
    assert update.display_id == "progress"
    assert update.metadata == {"isolated": True}
    assert host.displays == []


def test_display_failures_do_not_stop_decoding(bridge: PipeBridge, host: FakeHost) -> None:
    host.fail_display = True
    env: dict[str, str] = {}
    bridge.setup(env)
    _write(env, DisplayRecord(data={"text/plain": "a"}), DisplayRecord(data={"text/plain": "b"}))
    assert wait_for(lambda: len(host.displays) == 2)
    _finish(bridge)


def test_input_request_writes_response_to_stdin(bridge: PipeBridge, host: FakeHost) -> None:
    read_fd, write_fd = os.pipe()
    host.responses.append("alice")
    env: dict[str, str] = {}
    bridge.setup(env)
    with os.fdopen(read_fd, "rb") as child_stdin, os.fdopen(write_fd, "wb") as stdin:
        bridge.attach_stdin(stdin)
        _write(env, input_request_record("name?", password=True))
        assert child_stdin.readline() == b"alice\n"
        _finish(bridge)
    assert host.prompts == [("name?", True)]


def test_input_response_after_done_is_not_written(bridge: PipeBridge, host: FakeHost) -> None:
    read_fd, write_fd = os.pipe()
    env: dict[str, str] = {}
    bridge.setup(env)
    with os.fdopen(read_fd, "rb") as child_stdin, os.fdopen(write_fd, "wb") as stdin:
        bridge.attach_stdin(stdin)
        _write(env, input_request_record("later?"))
        assert wait_for(lambda: host.prompts == [("later?", False)])
        _finish(bridge)
        host.responses.append("too late")
        bridge.dispatch_input_request(InputRequest(prompt="again?"))
        assert bridge.join(timeout=5)
        stdin.close()
        assert child_stdin.read() == b""


def test_malformed_input_request_is_reported_and_decoding_continues(
    bridge: PipeBridge, host: FakeHost
) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    _write(
        env,
        DisplayRecord(data={MIME_INPUT_REQUEST: {"password": "not-a-bool"}}),
        DisplayRecord(data={"text/plain": "still here"}),
    )
    assert wait_for(lambda: len(host.displays) == 1)
    _finish(bridge)
    assert MIME_INPUT_REQUEST in host.stream_text("stderr")
    assert host.prompts == []


def test_prompt_failure_is_reported_to_the_cell(bridge: PipeBridge, host: FakeHost) -> None:
    host.fail_prompt = True
    env: dict[str, str] = {}
    bridge.setup(env)
    _write(env, input_request_record("name?"))
    assert wait_for(lambda: "prompt failed" in host.stream_text("stderr"))
    _finish(bridge)


def test_corrupted_stream_ends_decoding(bridge: PipeBridge, host: FakeHost) -> None:
    env: dict[str, str] = {}
    bridge.setup(env)
    _write(
        env,
        raw=b"\x00\x00\x00\x05hello" + encode_record(DisplayRecord(data={"text/plain": "x"})),
    )
    _finish(bridge)
    assert host.displays == []
    assert bridge.removed


def test_fifos_survive_until_records_opened_late_are_dispatched(
    monkeypatch: pytest.MonkeyPatch, bridge: PipeBridge, host: FakeHost
) -> None:
    real_open = open

    def slow_open(*args, **kwargs):
        handle = real_open(*args, **kwargs)
        time.sleep(0.3)  # done fires before the reader records the open
        return handle

    monkeypatch.setattr(pipes, "open", slow_open, raising=False)
    env: dict[str, str] = {}
    bridge.setup(env)
    reader = Path(env[PIPE_ENV])

    existed_at_dispatch: list[bool] = []
    publish_data = host.publish_data

    def recording_publish(display):
        existed_at_dispatch.append(reader.exists())
        publish_data(display)

    monkeypatch.setattr(host, "publish_data", recording_publish)

    _write(env, DisplayRecord(data={"text/plain": "late"}))
    bridge.mark_done()
    time.sleep(0.1)
    assert reader.exists()
    assert not bridge.removed

    assert bridge.join(timeout=5)
    assert existed_at_dispatch == [True]
    assert bridge.removed
    assert not reader.exists()


class _BrokenStream(io.BytesIO):
    def read(self, size: int | None = -1) -> bytes:
        raise ValueError("unexpected value")


def test_decode_value_error_on_open_handle_is_logged(
    bridge: PipeBridge, caplog: pytest.LogCaptureFixture
) -> None:
    bridge.reader_handle = _BrokenStream()
    with caplog.at_level(logging.INFO, logger="kernel_bridge.runner.pipes"):
        bridge.decode_loop()
    assert "unexpected value" in caplog.text


def test_decode_stops_quietly_on_closed_handle(
    bridge: PipeBridge, caplog: pytest.LogCaptureFixture
) -> None:
    handle = io.BytesIO(encode_record(DisplayRecord(data={"text/plain": "x"})))
    handle.close()
    bridge.reader_handle = handle
    with caplog.at_level(logging.INFO, logger="kernel_bridge.runner.pipes"):
        bridge.decode_loop()
    assert caplog.records == []
