"""Settings for the control channel and the child pipes (parsed from TOML)."""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

__all__ = [
    "BridgeSettings",
    "CommSettings",
    "PipeSettings",
    "load_settings",
]

_ENV_CONFIG = "KERNEL_BRIDGE_CONFIG"
_ENV_TARGET_NAME = "KERNEL_BRIDGE_TARGET_NAME"
_ENV_PIPE_DIR = "KERNEL_BRIDGE_PIPE_DIR"


@dataclass(slots=True)
class CommSettings:
    """Control channel tuning."""

    target_name: str = "gonb_comm"
    heartbeat_timeout: float = 0.5
    heartbeat_threshold: float = 1.0


@dataclass(slots=True)
class PipeSettings:
    """Where FIFOs are created and how long teardown waits for the decoder."""

    directory: Path | None = None
    drain_timeout: float = 1.0


@dataclass(slots=True)
class BridgeSettings:
    comm: CommSettings = field(default_factory=CommSettings)
    pipes: PipeSettings = field(default_factory=PipeSettings)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> BridgeSettings:
        comm_data = data.get("comm", {})
        pipe_data = data.get("pipes", {})
        defaults = CommSettings()
        comm = CommSettings(
            target_name=str(comm_data.get("target_name", defaults.target_name)),
            heartbeat_timeout=float(
                comm_data.get("heartbeat_timeout", defaults.heartbeat_timeout)
            ),
            heartbeat_threshold=float(
                comm_data.get("heartbeat_threshold", defaults.heartbeat_threshold)
            ),
        )
        directory = pipe_data.get("directory")
        pipes = PipeSettings(
            directory=Path(directory) if directory else None,
            drain_timeout=float(pipe_data.get("drain_timeout", PipeSettings().drain_timeout)),
        )
        return cls(comm=comm, pipes=pipes)

    @classmethod
    def from_toml(cls, path: Path) -> BridgeSettings:
        data = tomllib.loads(Path(path).read_text("utf-8"))
        return cls.from_mapping(data)


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> BridgeSettings:
    """Load settings from `path` (or `$KERNEL_BRIDGE_CONFIG`) plus environment overrides."""

    env = os.environ if environ is None else environ
    if path is None and env.get(_ENV_CONFIG):
        path = Path(env[_ENV_CONFIG])
    settings = BridgeSettings.from_toml(path) if path is not None else BridgeSettings()

    target_name = env.get(_ENV_TARGET_NAME)
    if target_name:
        settings.comm = replace(settings.comm, target_name=target_name)
    pipe_dir = env.get(_ENV_PIPE_DIR)
    if pipe_dir:
        settings.pipes = replace(settings.pipes, directory=Path(pipe_dir))
    return settings
