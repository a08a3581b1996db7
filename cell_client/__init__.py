"""Library for programs executed under the kernel bridge.

Records are written to the named pipe given in `$KERNEL_BRIDGE_PIPE`.
"""

from .writer import (
    PipeUnavailableError,
    PipeWriter,
    display,
    display_html,
    display_markdown,
    display_png,
    display_text,
    is_available,
    new_display_id,
    request_input,
    update_display,
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
