"""Liveness state machine for the front-end control channel.

The front-end is reached through "custom messages" (`comm_open`, `comm_msg`,
`comm_close`) carried by the host's messaging transport. The channel is
established by publishing a transient bootstrap script; once the front-end
opens the channel the script is erased and a heartbeat keeps track of whether
the other side is still there (e.g. the browser may have been reloaded).
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from kernel_bridge.comms.bootstrap import render_bootstrap_html
from kernel_bridge.config import CommSettings
from kernel_bridge.host import DisplayData, HostMessage
from kernel_bridge.latch import Latch
from kernel_bridge.protocol import (
    HEARTBEAT_PING_ADDRESS,
    HEARTBEAT_PONG_ADDRESS,
    CommMsgContent,
    CommOpenContent,
)

__all__ = ["CommChannel", "CommError"]

logger = logging.getLogger("kernel_bridge.comms")


class CommError(RuntimeError):
    """Raised when a message cannot be delivered on the control channel."""


class CommChannel:
    """Control channel state. There is one per supervisor.

    A single lock protects every field. It is held for the whole of each public
    method, except while waiting for a heartbeat reply.
    """

    def __init__(
        self,
        settings: CommSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or CommSettings()
        self._clock = clock
        self._lock = threading.Lock()

        self.installed = False
        self.transient_token = ""
        self.opened = False
        self.channel_id = ""
        self.last_activity = 0.0
        self.pending_heartbeat: Latch[bool] | None = None
        self._heartbeat_timer: threading.Timer | None = None

    # ------------------------------------------------------------------ public
    def ensure_installed(self, msg: HostMessage) -> bool:
        """Install the bootstrap script in the front-end, unless it is alive already.

        Returns True if the channel is installed when the call returns.
        """

        with self._lock:
            if self.installed:
                if self._clock() - self.last_activity <= self.settings.heartbeat_threshold:
                    logger.debug("comms: bootstrap already installed")
                    return True

                if self.opened and self.channel_id:
                    logger.debug("comms: confirming installation with heartbeat")
                    try:
                        alive = self._send_heartbeat_ping_locked(
                            msg, self.settings.heartbeat_timeout
                        )
                    except CommError as exc:
                        logger.warning("comms: %s", exc)
                        alive = False
                    if alive:
                        logger.debug("comms: heartbeat pong received, all good")
                        return True
                    logger.debug("comms: heartbeat timed out and not heard back")

                # Likely a stale connection (e.g. the browser reloaded): reset and reinstall.
                self.channel_id = ""
                self.opened = False
                self.installed = False

            return self._install_locked(msg)

    def handle_open(self, msg: HostMessage) -> None:
        """Handle a `comm_open` event.

        Events not addressed to us are ignored without raising.
        """

        with self._lock:
            try:
                content = CommOpenContent.model_validate(msg.content)
            except ValidationError as exc:
                logger.debug("comms: ignored comm_open, incomplete content: %s", exc)
                return
            if content.target_name != self.settings.target_name:
                logger.debug(
                    "comms: ignored comm_open, unknown target_name %r", content.target_name
                )
                return
            if not content.comm_id:
                logger.debug("comms: ignored comm_open, comm_id not set")
                return

            if self.opened:
                self._close_locked(msg)

            self._erase_bootstrap_locked(msg)
            self.channel_id = content.comm_id
            self.opened = True
            self.last_activity = self._clock()
            self._send_locked(msg, {"open_ack": True})

    def handle_message(self, msg: HostMessage) -> None:
        """Handle a `comm_msg` event: heartbeat traffic is consumed here, the rest is dropped."""

        with self._lock:
            try:
                content = CommMsgContent.model_validate(msg.content)
            except ValidationError as exc:
                logger.warning("comms: ignored comm_msg, malformed content: %s", exc)
                return
            # Before an open `channel_id` is "", so only an empty comm_id matches.
            if content.comm_id != self.channel_id:
                logger.warning(
                    "comms: ignored comm_msg, comm_id %r differs from the established one %r",
                    content.comm_id,
                    self.channel_id,
                )
                return

            self.last_activity = self._clock()

            address = content.data.get("address")
            if not isinstance(address, str):
                logger.warning("comms: comm_msg did not set a \"data/address\" field")
                return

            if address in (HEARTBEAT_PONG_ADDRESS, HEARTBEAT_PING_ADDRESS):
                self._handle_pong_locked()
            else:
                logger.warning(
                    "comms: comm_msg to address %r dropped, since there were no recipients",
                    address,
                )

    def close(self, msg: HostMessage) -> None:
        """Close the channel with the front-end, sending `comm_close`."""

        with self._lock:
            self._close_locked(msg)

    def send(self, msg: HostMessage, data: Mapping[str, Any]) -> None:
        with self._lock:
            self._send_locked(msg, data)

    def send_heartbeat_and_wait(self, msg: HostMessage, timeout: float) -> bool:
        """Ping the front-end and wait for the pong.

        Returns True if the pong arrived, False if `timeout` (in seconds) expired.
        If a ping is already outstanding it is joined, and the first caller's timeout
        applies instead.
        """

        with self._lock:
            return self._send_heartbeat_ping_locked(msg, timeout)

    # ----------------------------------------------------------------- helpers
    def _install_locked(self, msg: HostMessage) -> bool:
        token = uuid4().hex
        self.transient_token = token
        bootstrap = DisplayData(
            data={"text/html": render_bootstrap_html(self.settings.target_name)},
            transient={"display_id": token},
        )
        try:
            msg.publish_update_display_data(bootstrap)
        except Exception:  # noqa: BLE001
            logger.error("comms: widgets won't work without the control channel")
            logger.exception("comms: failed to publish bootstrap script")
            return False
        self.installed = True
        self.last_activity = self._clock()
        logger.debug("comms: bootstrap script installed, waiting for the channel to open")
        return True

    def _erase_bootstrap_locked(self, msg: HostMessage) -> None:
        if not self.transient_token:
            return
        erase = DisplayData(data={"text/html": ""}, transient={"display_id": self.transient_token})
        try:
            msg.publish_update_display_data(erase)
        except Exception as exc:  # noqa: BLE001
            logger.warning("comms: failed to erase bootstrap script: %s", exc)

    def _close_locked(self, msg: HostMessage) -> None:
        if not self.opened:
            logger.debug("comms: close requested but channel was not opened")
            return
        logger.debug("comms: closing channel %s", self.channel_id)
        content = {"comm_id": self.channel_id}
        self.channel_id = ""
        self.opened = False
        self.installed = False
        try:
            msg.reply("comm_close", content)
        except Exception as exc:
            raise CommError(f"failed to send comm_close: {exc}") from exc

    def _send_locked(self, msg: HostMessage, data: Mapping[str, Any]) -> None:
        content = {"comm_id": self.channel_id, "data": dict(data)}
        logger.debug("comms: send %s", content)
        try:
            msg.publish("comm_msg", content)
        except Exception as exc:
            raise CommError(f"failed to send comm_msg: {exc}") from exc

    def _send_heartbeat_ping_locked(self, msg: HostMessage, timeout: float) -> bool:
        latch = self.pending_heartbeat
        if latch is not None:
            logger.warning("comms: heartbeat ping requested, but one is already running (reused)")
        else:
            logger.debug("comms: sending heartbeat ping")
            try:
                self._send_locked(msg, {"address": HEARTBEAT_PING_ADDRESS, "value": True})
            except CommError as exc:
                raise CommError(f"failed to send heartbeat ping: {exc}") from exc
            latch = Latch[bool]()
            timer = threading.Timer(timeout, latch.trigger, args=(False,))
            timer.daemon = True
            self.pending_heartbeat = latch
            self._heartbeat_timer = timer
            timer.start()

        self._lock.release()
        try:
            alive = latch.wait()
        finally:
            self._lock.acquire()

        # Another ping may have been started in between.
        if self.pending_heartbeat is latch:
            self.pending_heartbeat = None
            self._heartbeat_timer = None
        return alive

    def _handle_pong_locked(self) -> None:
        latch = self.pending_heartbeat
        if latch is None:
            logger.warning("comms: heartbeat pong received but no one listening")
            return
        if latch.trigger(True):
            logger.debug("comms: heartbeat pong received, latch triggered")
            if self._heartbeat_timer is not None:
                self._heartbeat_timer.cancel()
        else:
            logger.debug("comms: late heartbeat pong ignored")
