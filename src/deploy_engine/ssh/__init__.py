"""SSH utilities for the deployment engine."""

from .session import SSHConnectionError, SSHSession, encode_command, wrap_script

__all__ = [
    "SSHConnectionError",
    "SSHSession",
    "encode_command",
    "wrap_script",
]
