"""Core data model shared by the engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from .errors import UnsupportedAuthModeError

DEFAULT_SCRIPT_TIMEOUT = 300
DEFAULT_BRANCH = "main"


class AuthMode(Enum):
    """How a target host is reached."""

    LOCAL = "local"
    PASSWORD = "password"
    KEY = "key"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AuthMode":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise UnsupportedAuthModeError(f"Unsupported auth mode: {value!r}") from None


class DeploymentState(Enum):
    """Execution states of a single DeploymentExecutor run."""

    PREPARING = "preparing"
    ACQUIRING = "acquiring"
    BUILDING = "building"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (DeploymentState.SUCCEEDED, DeploymentState.FAILED)


class DeploymentStatus(Enum):
    """Status field of a persisted deployment record."""

    PENDING = "pending"
    APPROVED = "approved"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class HostInfo:
    """Resolved connection facts for one target host."""

    host_id: str
    address: str
    username: str
    auth_mode: AuthMode
    port: int = 22
    name: str = ""
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = field(default=None, repr=False)

    @property
    def display_name(self) -> str:
        return self.name or self.host_id

    @property
    def target(self) -> str:
        return f"{self.username}@{self.address}:{self.port}"

    @property
    def is_local(self) -> bool:
        return self.auth_mode is AuthMode.LOCAL


@dataclass(frozen=True)
class UsernamePasswordCredential:
    username: str
    password: str = field(repr=False)

    type: ClassVar[str] = "username_password"


@dataclass(frozen=True)
class TokenCredential:
    token: str = field(repr=False)

    type: ClassVar[str] = "token"


@dataclass(frozen=True)
class SSHKeyCredential:
    private_key: str = field(repr=False)
    username: str = "git"

    type: ClassVar[str] = "ssh"


GitCredential = Union[UsernamePasswordCredential, TokenCredential, SSHKeyCredential]


@dataclass(frozen=True)
class DeploymentConfig:
    """Immutable input of one execution."""

    deployment_id: str
    hosts: Tuple[str, ...] = ()
    repository_url: Optional[str] = None
    branch: str = DEFAULT_BRANCH
    build_script: Optional[str] = None
    deploy_script: Optional[str] = None
    environment: Mapping[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_SCRIPT_TIMEOUT
    stop_on_first_failure: bool = False
    git_credential: Optional[GitCredential] = None
    use_remote_project: bool = False
    remote_project_path: Optional[str] = None
    jenkins_jobs: Tuple[str, ...] = ()

    @property
    def is_jenkins(self) -> bool:
        return bool(self.jenkins_jobs)

    @property
    def remote_project_mode(self) -> bool:
        return self.use_remote_project and bool(self.remote_project_path)


@dataclass
class ScriptResult:
    """Outcome of one script run, local or remote."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def summary(self) -> str:
        if self.timed_out:
            return "timed out"
        return f"exit code {self.exit_code}"


@dataclass
class HostResult:
    host_id: str
    success: bool
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"host_id": self.host_id, "success": self.success, "message": self.message}


@dataclass
class DeploymentResult:
    """Outcome of one execution; always produced, even on total failure."""

    success: bool
    logs: str
    duration: float
    state: DeploymentState
    error: Optional[str] = None
    host_results: List[HostResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "logs": self.logs,
            "duration": round(self.duration, 3),
            "state": self.state.value,
            "error": self.error,
            "host_results": [item.to_dict() for item in self.host_results],
        }
