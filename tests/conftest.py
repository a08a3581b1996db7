"""Shared pytest fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from kernel_bridge.host import DisplayData, InputCallback


class FakeHost:
    """Records every call made on the host messaging capability."""

    def __init__(self, content: Any = None) -> None:
        self.content = content
        self.replies: list[tuple[str, dict[str, Any]]] = []
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.displays: list[DisplayData] = []
        self.updates: list[DisplayData] = []
        self.streams: list[tuple[str, str]] = []
        self.prompts: list[tuple[str, bool]] = []
        self.responses: list[str] = []
        self.fail_reply = False
        self.fail_publish = False
        self.fail_display = False
        self.fail_update = False
        self.fail_prompt = False
        self._lock = threading.Lock()

    def reply(self, msg_type: str, content: Mapping[str, Any]) -> None:
        if self.fail_reply:
            raise RuntimeError("reply failed")
        self.replies.append((msg_type, dict(content)))

    def publish(self, msg_type: str, content: Mapping[str, Any]) -> None:
        if self.fail_publish:
            raise RuntimeError("publish failed")
        self.published.append((msg_type, dict(content)))

    def prompt_input(self, prompt: str, password: bool, on_response: InputCallback) -> None:
        if self.fail_prompt:
            raise RuntimeError("prompt failed")
        self.prompts.append((prompt, password))
        with self._lock:
            response = self.responses.pop(0) if self.responses else None
        if response is not None:
            on_response(response)

    def publish_data(self, data: DisplayData) -> None:
        self.displays.append(data)
        if self.fail_display:
            raise RuntimeError("display failed")

    def publish_update_display_data(self, data: DisplayData) -> None:
        self.updates.append(data)
        if self.fail_update:
            raise RuntimeError("update failed")

    def publish_write_stream(self, stream: str, text: str) -> None:
        self.streams.append((stream, text))

    def stream_text(self, stream: str) -> str:
        return "".join(text for name, text in self.streams if name == stream)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def host() -> FakeHost:
    return FakeHost()
