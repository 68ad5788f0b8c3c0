"""Git operations helpers."""

from ..errors import GitAuthError, GitCommandError, GitConflictError
from .acquirer import SourceAcquirer, deep_clean, force_remove
from .manager import GitRepositoryManager
from .urls import build_authenticated_url, redact_url

__all__ = [
    "GitAuthError",
    "GitCommandError",
    "GitConflictError",
    "GitRepositoryManager",
    "SourceAcquirer",
    "build_authenticated_url",
    "deep_clean",
    "force_remove",
    "redact_url",
]
