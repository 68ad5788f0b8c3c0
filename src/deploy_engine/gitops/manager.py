"""Git-based repository management."""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path
from typing import List, Mapping, Optional

from ..errors import GitAuthError, GitCommandError, GitConflictError
from .urls import redact_url

AUTH_ERROR_MARKERS = (
    "authentication failed",
    "permission denied",
    "access denied",
    "could not read username",
    "invalid username or password",
)
_HTTP_AUTH_STATUS = re.compile(r"\b40[13]\b")
CONFLICT_MARKER = "already exists and is not an empty directory"


def classify_git_error(command: List[str], exit_code: int, stderr: str) -> GitCommandError:
    """Map git's stderr to the typed error hierarchy (done once, here)."""
    # "Cloning into '<path>'" lines carry no error text
    lowered = "\n".join(
        line for line in stderr.lower().splitlines() if not line.startswith("cloning into")
    )
    shown = [redact_url(part) for part in command]
    if CONFLICT_MARKER in lowered:
        return GitConflictError(shown, exit_code, stderr)
    if any(marker in lowered for marker in AUTH_ERROR_MARKERS) or _HTTP_AUTH_STATUS.search(lowered):
        return GitAuthError(shown, exit_code, stderr)
    return GitCommandError(shown, exit_code, stderr)


class GitRepositoryManager:
    """Wraps `git` CLI commands for cloning and updating repositories."""

    def __init__(self, git_binary: str = "git", timeout: Optional[float] = None) -> None:
        self.git_binary = git_binary
        self.timeout = timeout

    def clone(
        self,
        repo_url: str,
        target_dir: Path,
        branch: str,
        *,
        depth: Optional[int] = 1,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Shallow, single-branch clone of ``branch`` into ``target_dir``.

        Raises GitConflictError without invoking git when the target exists
        and is not empty.
        """
        target_dir = Path(target_dir)
        if target_dir.exists() and any(target_dir.iterdir()):
            raise GitConflictError(
                ["clone", redact_url(repo_url), str(target_dir)],
                128,
                f"fatal: destination path '{target_dir}' {CONFLICT_MARKER}.",
            )
        target_dir.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone", "--branch", branch, "--single-branch"]
        if depth:
            args.append(f"--depth={depth}")
        args += [repo_url, str(target_dir)]
        self._run(args, cwd=target_dir.parent, env=env)

    def head_summary(self, repo_dir: Path) -> str:
        """One-line description of HEAD (``git log -1 --oneline``)."""
        return self._run(["log", "-1", "--oneline"], cwd=repo_dir).strip()

    def head_sha(self, repo_dir: Path) -> str:
        return self._run(["rev-parse", "HEAD"], cwd=repo_dir).strip()

    def update_checkout(
        self,
        repo_dir: Path,
        repo_url: str,
        branch: str,
        *,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Bring an existing checkout to ``origin/<branch>`` and drop local changes."""
        self._run(["remote", "set-url", "origin", repo_url], cwd=repo_dir, env=env)
        self._run(["fetch", "--depth=1", "origin", branch], cwd=repo_dir, env=env)
        self._run(["reset", "--hard", "FETCH_HEAD"], cwd=repo_dir, env=env)
        self._run(["clean", "-fd"], cwd=repo_dir, env=env)

    def is_repository(self, path: Path) -> bool:
        return (Path(path) / ".git").exists()

    def _run(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> str:
        command = [self.git_binary] + args
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        # 固定英文输出，禁止交互式密码提示
        full_env["LC_ALL"] = "C"
        full_env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            process = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                check=False,
                env=full_env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(
                [redact_url(part) for part in command],
                -1,
                f"timed out after {self.timeout} seconds",
            ) from exc
        except OSError as exc:
            raise GitCommandError([redact_url(part) for part in command], -1, f"could not run git: {exc}") from exc
        if process.returncode != 0:
            raise classify_git_error(command, process.returncode, redact_url(process.stderr.strip()))
        return process.stdout
