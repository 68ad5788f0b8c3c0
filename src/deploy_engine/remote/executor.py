"""Run scripts on a target host, whatever its auth mode."""

from __future__ import annotations

import shutil
import socket
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

import paramiko

from ..errors import UnsupportedAuthModeError
from ..local import LineCallback, LocalSession
from ..models import DEFAULT_SCRIPT_TIMEOUT, AuthMode, HostInfo, ScriptResult
from ..ssh import SSHConnectionError, SSHSession
from ..utils.logging import get_logger

logger = get_logger(__name__)

# exit code reported when the SSH connection itself failed, as ssh(1) does
SSH_CONNECTION_FAILED = 255


class RemoteExecutor:
    """Dispatches a script to LocalSession or SSHSession based on ``host.auth_mode``.

    A non-zero exit is reported in the ScriptResult and never retried.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 30,
        kill_grace_period: float = 5,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.kill_grace_period = kill_grace_period
        self.client_factory = client_factory

    def run(
        self,
        host: HostInfo,
        script: str,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = DEFAULT_SCRIPT_TIMEOUT,
        cwd: Optional[Union[str, Path]] = None,
        *,
        on_line: Optional[LineCallback] = None,
    ) -> ScriptResult:
        if host.auth_mode is AuthMode.LOCAL:
            session = LocalSession(kill_grace_period=self.kill_grace_period)
            return session.run(script, cwd=cwd, env=env, timeout=timeout, on_line=on_line)

        if host.auth_mode not in (AuthMode.PASSWORD, AuthMode.KEY):
            raise UnsupportedAuthModeError(f"Unsupported auth mode: {host.auth_mode}")

        try:
            with self._ssh(host) as session:
                return session.run_script(
                    script,
                    env=env,
                    cwd=str(cwd) if cwd else None,
                    timeout=timeout,
                    on_line=on_line,
                )
        except (SSHConnectionError, paramiko.SSHException, socket.error) as exc:
            logger.error("SSH to %s failed: %s", host.target, exc)
            return ScriptResult(stdout="", stderr=str(exc), exit_code=SSH_CONNECTION_FAILED)

    def upload_directory(self, host: HostInfo, local_dir: Path, remote_dir: str) -> int:
        """Replace ``remote_dir`` on ``host`` with the contents of ``local_dir``."""
        if host.auth_mode is AuthMode.LOCAL:
            target = Path(remote_dir)
            if target.exists():
                shutil.rmtree(target)
            shutil.copytree(local_dir, target, symlinks=True, ignore=shutil.ignore_patterns(".git"))
            return sum(1 for path in target.rglob("*") if path.is_file())
        with self._ssh(host) as session:
            return session.upload_directory(Path(local_dir), remote_dir)

    def _ssh(self, host: HostInfo) -> SSHSession:
        return SSHSession(
            host,
            connect_timeout=self.connect_timeout,
            client_factory=self.client_factory,
        )
