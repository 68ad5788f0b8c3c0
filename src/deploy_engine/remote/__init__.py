"""Script execution on target hosts."""

from .executor import SSH_CONNECTION_FAILED, RemoteExecutor

__all__ = ["RemoteExecutor", "SSH_CONNECTION_FAILED"]
