"""Exception hierarchy for the deployment engine."""

from __future__ import annotations

from typing import Optional, Sequence


class DeployEngineError(RuntimeError):
    """Base class for every error raised by the engine."""


class DeploymentNotFoundError(DeployEngineError):
    """Raised when a deployment record cannot be loaded."""


class HostNotFoundError(DeployEngineError):
    """Raised when a target host id has no host record."""


class UnsupportedAuthModeError(DeployEngineError):
    """Raised when a host's auth mode is unknown or lacks its secret."""


class CredentialDecryptError(DeployEngineError):
    """Raised when an encrypted credential blob cannot be decrypted."""


class BuildError(DeployEngineError):
    """Raised when the local build script fails."""


class ScriptTimeoutError(DeployEngineError):
    """Raised when a script exceeds its timeout."""

    def __init__(self, timeout: float, what: str = "Script") -> None:
        self.timeout = timeout
        super().__init__(f"{what} timed out after {timeout:g} seconds")


class SourceAcquisitionError(DeployEngineError):
    """Raised when every step of the clone ladder failed."""


class GitCommandError(DeployEngineError):
    """Raised when a git command fails."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int,
        stderr: str,
        message: Optional[str] = None,
    ) -> None:
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            message
            or f"Git command {' '.join(self.command)} failed with code {exit_code}: {stderr}"
        )


class GitAuthError(GitCommandError):
    """Git rejected the supplied credentials (or required some)."""


class GitConflictError(GitCommandError):
    """The clone target already exists and is not empty."""


class JenkinsError(DeployEngineError):
    """Base class for Jenkins backend failures."""


class JenkinsConfigError(JenkinsError):
    """No usable Jenkins server or job configuration."""


class JenkinsAPIError(JenkinsError):
    """Raised when the Jenkins REST API answers with an error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")
