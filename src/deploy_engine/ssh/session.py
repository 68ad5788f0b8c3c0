"""SSH session management built on Paramiko."""

from __future__ import annotations

import base64
import os
import posixpath
import shlex
import time
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

import paramiko

from ..errors import UnsupportedAuthModeError
from ..models import DEFAULT_SCRIPT_TIMEOUT, AuthMode, HostInfo, ScriptResult
from ..utils.logging import get_logger

logger = get_logger(__name__)

LineCallback = Callable[[str, str], None]


class SSHConnectionError(RuntimeError):
    """Raised when an SSH connection cannot be established."""

    pass


def wrap_script(
    script: str,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> str:
    """Prefix ``script`` with quoted exports and an optional ``cd``."""
    lines = [f"export {key}={shlex.quote(str(value))}" for key, value in (env or {}).items()]
    if cwd:
        lines.append(f"cd {shlex.quote(cwd)} || exit 1")
    lines.append(script)
    return "\n".join(lines) + "\n"


def encode_command(script: str) -> str:
    """``echo <b64> | base64 -d | bash``; no quoting issues whatever the script holds."""
    payload = base64.b64encode(script.encode("utf-8")).decode("ascii")
    return f"echo {payload} | base64 -d | bash"


class _LineBuffer:
    def __init__(self, name: str, callback: Optional[LineCallback]) -> None:
        self.name = name
        self.callback = callback
        self.chunks: List[str] = []
        self._pending = ""

    def feed(self, data: bytes) -> None:
        text = data.decode("utf-8", errors="replace")
        self.chunks.append(text)
        if self.callback is None:
            return
        self._pending += text
        *complete, self._pending = self._pending.split("\n")
        for line in complete:
            self.callback(line.rstrip("\r"), self.name)

    def flush(self) -> None:
        if self.callback is not None and self._pending:
            self.callback(self._pending.rstrip("\r"), self.name)
        self._pending = ""

    @property
    def text(self) -> str:
        return "".join(self.chunks).strip()


class SSHSession:
    """High-level wrapper around paramiko.SSHClient for one HostInfo."""

    def __init__(
        self,
        host: HostInfo,
        *,
        connect_timeout: float = 30,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        if host.auth_mode is AuthMode.LOCAL:
            raise UnsupportedAuthModeError(f"Host {host.host_id} is local, not reachable over SSH")
        self.host = host
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def connect(self) -> None:
        if self._client:
            return
        client = self._client_factory()
        # 不校验、不保存主机指纹
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs = {
            "hostname": self.host.address,
            "port": self.host.port,
            "username": self.host.username,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
            "look_for_keys": False,
            "allow_agent": False,
        }
        if self.host.auth_mode is AuthMode.PASSWORD:
            if not self.host.password:
                raise UnsupportedAuthModeError(f"Host {self.host.host_id} has no password")
            connect_kwargs["password"] = self.host.password
        else:
            if not self.host.key_path:
                raise UnsupportedAuthModeError(f"Host {self.host.host_id} has no key path")
            connect_kwargs["key_filename"] = os.path.expanduser(self.host.key_path)
        try:
            client.connect(**connect_kwargs)
        except Exception as exc:  # pragma: no cover - network errors hard to simulate
            client.close()
            raise SSHConnectionError(f"{self.host.target}: {exc}") from exc
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run_script(
        self,
        script: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_SCRIPT_TIMEOUT,
        on_line: Optional[LineCallback] = None,
    ) -> ScriptResult:
        """
        Execute a bash script on the remote host.

        The script is shipped base64 encoded so that quoting inside it never
        interacts with the remote login shell.

        Args:
            script: Script text.
            env: Variables exported before the script runs.
            cwd: Remote directory to ``cd`` into first.
            timeout: Seconds before the channel is closed and the run reported as timed out.
            on_line: Receives each output line as it arrives.
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        command = encode_command(wrap_script(script, env, cwd))
        _, stdout, _ = self._client.exec_command(command)
        channel = stdout.channel

        out = _LineBuffer("stdout", on_line)
        err = _LineBuffer("stderr", on_line)
        start_time = time.monotonic()
        timed_out = False

        while not channel.exit_status_ready():
            self._drain(channel, out, err)
            if timeout is not None and time.monotonic() - start_time > timeout:
                timed_out = True
                channel.close()
                break
            time.sleep(self.poll_interval)

        if timed_out:
            logger.warning("Remote script on %s exceeded %ss", self.host.target, timeout)
            exit_code = -1
        else:
            # 读取剩余输出
            self._drain(channel, out, err)
            exit_code = channel.recv_exit_status()
        out.flush()
        err.flush()
        return ScriptResult(
            stdout=out.text,
            stderr=err.text,
            exit_code=exit_code,
            timed_out=timed_out,
        )

    @staticmethod
    def _drain(channel, out: _LineBuffer, err: _LineBuffer) -> None:
        while channel.recv_ready():
            out.feed(channel.recv(4096))
        while channel.recv_stderr_ready():
            err.feed(channel.recv_stderr(4096))

    def upload_directory(
        self,
        local_dir: Path,
        remote_dir: str,
        *,
        exclude: Sequence[str] = (".git",),
    ) -> int:
        """Mirror ``local_dir`` into ``remote_dir`` over SFTP; returns the file count.

        ``remote_dir`` is wiped and recreated first so stale files never survive.
        """
        quoted = shlex.quote(remote_dir)
        prepare = self.run_script(f"rm -rf {quoted} && mkdir -p {quoted}")
        if not prepare.ok:
            raise SSHConnectionError(
                f"Could not prepare {remote_dir} on {self.host.target}: {prepare.stderr}"
            )
        assert self._client is not None
        local_dir = Path(local_dir)
        uploaded = 0
        sftp = self._client.open_sftp()
        try:
            for relative_dir, files in _walk(local_dir, exclude):
                target_dir = posixpath.join(remote_dir, *relative_dir.parts) if relative_dir.parts else remote_dir
                if relative_dir.parts:
                    sftp.mkdir(target_dir)
                for name in files:
                    source = local_dir / relative_dir / name
                    target = posixpath.join(target_dir, name)
                    sftp.put(str(source), target)
                    sftp.chmod(target, source.stat().st_mode & 0o777)
                    uploaded += 1
        finally:
            sftp.close()
        return uploaded


def _walk(root: Path, exclude: Iterable[str]) -> Iterable[Tuple[Path, List[str]]]:
    skipped = set(exclude)
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in skipped)
        relative = Path(current).relative_to(root)
        regular: List[str] = []
        for name in sorted(files):
            if name in skipped:
                continue
            path = Path(current) / name
            # symlinks and sockets are not transferred
            if path.is_file() and not path.is_symlink():
                regular.append(name)
        yield relative, regular
