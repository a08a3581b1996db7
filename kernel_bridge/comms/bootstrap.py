"""Javascript handed to the front-end to open the control channel."""

from __future__ import annotations

import json

from kernel_bridge.protocol import HEARTBEAT_PING_ADDRESS, HEARTBEAT_PONG_ADDRESS

__all__ = ["render_bootstrap_html", "render_bootstrap_javascript"]

_TEMPLATE = """
(function () {
    const targetName = %(target_name)s;
    const pingAddress = %(ping)s;
    const pongAddress = %(pong)s;

    function commManager() {
        if (window.Jupyter && window.Jupyter.notebook && window.Jupyter.notebook.kernel) {
            return window.Jupyter.notebook.kernel.comm_manager;
        }
        if (window.kernelBridgeCommManager) {
            return window.kernelBridgeCommManager;
        }
        return null;
    }

    const manager = commManager();
    if (manager === null) {
        console.error("kernel-bridge: no comm manager available, control channel not opened");
        return;
    }
    const comm = manager.new_comm(targetName, {});
    comm.on_msg(function (msg) {
        const data = (msg.content && msg.content.data) || {};
        if (data.address === pingAddress) {
            comm.send({address: pongAddress, value: true});
        } else if (data.open_ack) {
            console.debug("kernel-bridge: control channel acknowledged");
        }
    });
    comm.on_close(function () {
        console.debug("kernel-bridge: control channel closed by the kernel");
    });
})();
"""


def render_bootstrap_javascript(target_name: str) -> str:
    return _TEMPLATE % {
        "target_name": json.dumps(target_name),
        "ping": json.dumps(HEARTBEAT_PING_ADDRESS),
        "pong": json.dumps(HEARTBEAT_PONG_ADDRESS),
    }


def render_bootstrap_html(target_name: str) -> str:
    """Wrap the bootstrap javascript in a `<script>` block for `text/html` output."""

    return f"<script>{render_bootstrap_javascript(target_name)}</script>"
