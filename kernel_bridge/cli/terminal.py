"""A `HostMessage` that renders to the terminal instead of a notebook front-end."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

import click

from kernel_bridge.host import STREAM_STDERR, DisplayData, InputCallback

__all__ = ["TerminalHost"]

logger = logging.getLogger("kernel_bridge.cli")

_TEXT_MIME_TYPES = ("text/plain", "text/markdown", "text/html")


class TerminalHost:
    def __init__(
        self,
        content: Any = None,
        *,
        prompt: Callable[..., str] = click.prompt,
    ) -> None:
        self._content = content if content is not None else {}
        self._prompt = prompt

    @property
    def content(self) -> Any:
        return self._content

    def reply(self, msg_type: str, content: Mapping[str, Any]) -> None:
        logger.debug("reply %s: %s", msg_type, content)

    def publish(self, msg_type: str, content: Mapping[str, Any]) -> None:
        logger.debug("publish %s: %s", msg_type, content)

    def prompt_input(self, prompt: str, password: bool, on_response: InputCallback) -> None:
        value = self._prompt(prompt, default="", hide_input=password, show_default=False)
        on_response(value)

    def publish_data(self, data: DisplayData) -> None:
        click.echo(_render(data))

    def publish_update_display_data(self, data: DisplayData) -> None:
        click.echo(f"[{data.display_id}] {_render(data)}")

    def publish_write_stream(self, stream: str, text: str) -> None:
        click.echo(text, nl=False, err=stream == STREAM_STDERR)


def _render(data: DisplayData) -> str:
    for mime_type in _TEXT_MIME_TYPES:
        value = data.data.get(mime_type)
        if isinstance(value, str):
            return value
    kinds = ", ".join(sorted(data.data)) or "empty"
    return f"<display: {kinds}>"
