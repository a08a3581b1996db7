"""Capabilities consumed from the host messaging system."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "STREAM_STDERR",
    "STREAM_STDOUT",
    "DisplayData",
    "HostMessage",
    "InputCallback",
]

STREAM_STDOUT = "stdout"
STREAM_STDERR = "stderr"

InputCallback = Callable[[str], None]


@dataclass(slots=True)
class DisplayData:
    """Rich display payload, shaped like Jupyter's `display_data` content."""

    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    transient: dict[str, Any] = field(default_factory=dict)

    @property
    def display_id(self) -> str:
        return str(self.transient.get("display_id", ""))

    def to_content(self) -> dict[str, Any]:
        return {
            "data": dict(self.data),
            "metadata": dict(self.metadata),
            "transient": dict(self.transient),
        }


@runtime_checkable
class HostMessage(Protocol):
    """The inbound message being handled, and the ways to answer it.

    Every method is synchronous and raises on failure.
    """

    @property
    def content(self) -> Any: ...

    def reply(self, msg_type: str, content: Mapping[str, Any]) -> None: ...

    def publish(self, msg_type: str, content: Mapping[str, Any]) -> None: ...

    def prompt_input(self, prompt: str, password: bool, on_response: InputCallback) -> None: ...

    def publish_data(self, data: DisplayData) -> None: ...

    def publish_update_display_data(self, data: DisplayData) -> None: ...

    def publish_write_stream(self, stream: str, text: str) -> None: ...
