"""Supervisor-side transport for notebook kernels: control channel and child pipes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
