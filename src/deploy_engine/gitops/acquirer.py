"""Fetch repository source into the persistent code cache."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Dict, Iterator, Optional

from ..errors import GitAuthError, GitCommandError, GitConflictError, SourceAcquisitionError
from ..models import DEFAULT_BRANCH, GitCredential, SSHKeyCredential
from ..paths import repo_cache_name
from .manager import GitRepositoryManager
from .urls import build_authenticated_url, redact_url

logger = logging.getLogger(__name__)


def force_remove(path: Path) -> None:
    """Remove ``path`` entirely, falling back to a deep clean on permission errors."""
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError:
        deep_clean(path)
        if path.exists() and not any(path.iterdir()):
            path.rmdir()


def deep_clean(path: Path) -> None:
    """Empty ``path``: make everything writable, delete recursively, then entry by entry."""
    if not path.exists():
        return
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            with contextlib.suppress(OSError):
                entry = os.path.join(root, name)
                if not os.path.islink(entry):
                    os.chmod(entry, os.stat(entry).st_mode | stat.S_IRWXU)
    try:
        shutil.rmtree(path)
        return
    except OSError as exc:
        logger.debug("Recursive delete of %s failed (%s), deleting entries one by one", path, exc)

    leftovers = []
    for entry in path.iterdir():
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError:
            leftovers.append(entry.name)
    if leftovers:
        logger.warning("Could not remove from %s: %s", path, ", ".join(leftovers))


@contextlib.contextmanager
def ssh_key_environment(credential: Optional[GitCredential]) -> Iterator[Dict[str, str]]:
    """Yield git env vars for an SSH key credential; the key file is removed afterwards."""
    if not isinstance(credential, SSHKeyCredential):
        yield {}
        return
    fd, key_path = tempfile.mkstemp(prefix="deploy-engine-key-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(credential.private_key.rstrip("\n") + "\n")
        os.chmod(key_path, 0o600)
        yield {
            "GIT_SSH_COMMAND": (
                f"ssh -i {key_path} -o StrictHostKeyChecking=no "
                "-o UserKnownHostsFile=/dev/null -o IdentitiesOnly=yes"
            )
        }
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(key_path)


class SourceAcquirer:
    """Clones a repository into ``<projects_root>/<repo name>`` with recovery.

    An existing checkout is fetched and hard reset in place first; if that
    fails it is removed and the clone ladder runs: authenticated clone; on an
    auth rejection retry with the bare URL; on a directory conflict deep clean
    and retry once; anything else is raised as SourceAcquisitionError.
    """

    def __init__(
        self,
        projects_root: Path,
        git: Optional[GitRepositoryManager] = None,
        log=None,
    ) -> None:
        self.projects_root = Path(projects_root)
        self.git = git or GitRepositoryManager()
        # anything with info()/warning(): a DeploymentLog or a logging.Logger
        self.log = log or logger

    def code_dir_for(self, repository_url: Optional[str]) -> Path:
        return self.projects_root / repo_cache_name(repository_url)

    def acquire(
        self,
        url: str,
        branch: Optional[str] = None,
        credential: Optional[GitCredential] = None,
        *,
        target_dir: Optional[Path] = None,
    ) -> Path:
        branch = branch or DEFAULT_BRANCH
        target = Path(target_dir) if target_dir else self.code_dir_for(url)
        authenticated_url = build_authenticated_url(url, credential)

        self.log.info(f"Fetching {redact_url(url)} (branch {branch}) into {target}")
        with ssh_key_environment(credential) as env:
            if self._update_existing(authenticated_url, target, branch, env):
                self._log_head(target)
                return target
            if target.exists():
                self.log.info(f"Removing previous checkout at {target}")
                force_remove(target)

            try:
                self.git.clone(authenticated_url, target, branch, env=env)
            except GitAuthError as exc:
                self.log.warning(f"Authenticated clone rejected: {exc.stderr or exc}")
                if credential is None:
                    raise SourceAcquisitionError(f"Clone of {redact_url(url)} failed: {exc}") from exc
                self.log.info("Retrying clone without credentials")
                force_remove(target)
                self._clone_or_raise(url, target, branch, {})
            except GitConflictError:
                self.log.warning(f"Target directory {target} is not empty, deep cleaning")
                deep_clean(target)
                self.log.info("Deep clean finished, retrying authenticated clone")
                self._clone_or_raise(authenticated_url, target, branch, env)
            except GitCommandError as exc:
                raise SourceAcquisitionError(f"Clone of {redact_url(url)} failed: {exc}") from exc

        self._log_head(target)
        return target

    def _update_existing(self, url: str, target: Path, branch: str, env: Dict[str, str]) -> bool:
        if not self.git.is_repository(target):
            return False
        self.log.info(f"Updating existing checkout at {target}")
        try:
            self.git.update_checkout(target, url, branch, env=env)
        except GitCommandError as exc:
            self.log.warning(f"Incremental update failed, cloning again: {exc}")
            return False
        return True

    def _log_head(self, target: Path) -> None:
        try:
            self.log.info(f"Latest commit: {self.git.head_summary(target)}")
        except GitCommandError as exc:
            self.log.warning(f"Could not read latest commit: {exc}")

    def _clone_or_raise(self, url: str, target: Path, branch: str, env: Dict[str, str]) -> None:
        try:
            self.git.clone(url, target, branch, env=env)
        except GitCommandError as exc:
            raise SourceAcquisitionError(f"Clone of {redact_url(url)} failed: {exc}") from exc
