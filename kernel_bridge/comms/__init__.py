"""Control channel to the front-end: bootstrap, open/close handshake and heartbeat."""

from .bootstrap import render_bootstrap_html, render_bootstrap_javascript
from .channel import CommChannel, CommError

__all__ = [
    "CommChannel",
    "CommError",
    "render_bootstrap_html",
    "render_bootstrap_javascript",
]
