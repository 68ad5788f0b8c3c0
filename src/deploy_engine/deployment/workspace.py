"""Working directories and the shared code cache."""

from __future__ import annotations

import contextlib
import fcntl
import json
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional

from ..paths import PROJECTS_DIRNAME, RUNS_DIRNAME, get_workspace_dir, repo_cache_name, run_dir_name


@dataclass
class WorkspaceContext:
    """Directories prepared for a single deployment run."""

    deployment_id: str
    root: Path
    working_dir: Path
    logs_dir: Path
    code_dir: Path
    metadata_file: Path
    repository_url: Optional[str] = None

    @property
    def cache_name(self) -> str:
        return self.code_dir.name


class WorkspaceManager:
    """Handles per-deployment working dirs and per-repository code dirs.

    Layout under ``root``::

        runs/<deployment id>/       removed after every run
            logs/
            metadata.json
        projects/<repo name>/       survives runs
        projects/.<repo name>.lock
    """

    _locks: Dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, root: Path) -> None:
        self.root = get_workspace_dir(root)
        self.projects_root = self.root / PROJECTS_DIRNAME
        self.runs_root = self.root / RUNS_DIRNAME

    def prepare(self, deployment_id: str, repository_url: Optional[str] = None) -> WorkspaceContext:
        working_dir = self.runs_root / run_dir_name(deployment_id)
        if working_dir.exists():
            shutil.rmtree(working_dir)
        logs_dir = working_dir / "logs"
        logs_dir.mkdir(parents=True)

        code_dir = self.projects_root / repo_cache_name(repository_url)
        code_dir.mkdir(parents=True, exist_ok=True)

        metadata_file = working_dir / "metadata.json"
        metadata = {
            "deployment_id": deployment_id,
            "repository_url": repository_url,
            "created_at": int(time.time()),
            "code_dir": str(code_dir),
        }
        metadata_file.write_text(json.dumps(metadata, indent=2), encoding="utf-8")

        return WorkspaceContext(
            deployment_id=deployment_id,
            root=self.root,
            working_dir=working_dir,
            logs_dir=logs_dir,
            code_dir=code_dir,
            metadata_file=metadata_file,
            repository_url=repository_url,
        )

    @contextlib.contextmanager
    def repository_lock(self, context: WorkspaceContext) -> Iterator[None]:
        """Serialize access to one code dir across threads and processes."""
        if not context.repository_url:
            yield
            return
        self.projects_root.mkdir(parents=True, exist_ok=True)
        lock_path = self.projects_root / f".{context.cache_name}.lock"
        with self._locks_guard:
            thread_lock = self._locks.setdefault(str(lock_path.resolve()), threading.Lock())
        with thread_lock, open(lock_path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def ensure_code_dir(self, context: WorkspaceContext) -> None:
        context.code_dir.mkdir(parents=True, exist_ok=True)

    def cleanup(self, context: WorkspaceContext) -> None:
        """Remove the working dir; the code cache is left in place."""
        if context.working_dir.exists():
            shutil.rmtree(context.working_dir, ignore_errors=True)

    def update_metadata(self, context: WorkspaceContext, **fields: object) -> None:
        payload = self.read_metadata(context)
        payload.update(fields)
        context.metadata_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def read_metadata(self, context: WorkspaceContext) -> dict:
        if context.metadata_file.exists():
            return json.loads(context.metadata_file.read_text(encoding="utf-8"))
        return {}
