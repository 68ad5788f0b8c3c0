"""Unified path constants for the deployment engine.

All data is stored under the .deploy-engine directory:
- .deploy-engine/deployments/runs/<id>/    # per-deployment working directories
- .deploy-engine/deployments/projects/     # persistent code cache, one dir per repository
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

BASE_DIR = Path(".deploy-engine")

WORKSPACE_DIR = BASE_DIR / "deployments"
PROJECTS_DIRNAME = "projects"
RUNS_DIRNAME = "runs"
DEFAULT_PROJECT_NAME = "default"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")


def get_workspace_dir(root: Optional[Path] = None) -> Path:
    """Return (and create) the deployments root."""
    path = Path(root) if root else WORKSPACE_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def repo_cache_name(repository_url: Optional[str]) -> str:
    """Sanitized directory name of the code cache for a repository URL.

    ``https://github.com/example/my.app.git`` -> ``my_app``
    """
    if not repository_url:
        return DEFAULT_PROJECT_NAME
    cleaned = repository_url.strip().rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[:-4]
    # scp-like urls: git@host:group/repo
    last = re.split(r"[/:]", cleaned)[-1]
    return _UNSAFE_CHARS.sub("_", last) or "unknown"


def run_dir_name(deployment_id: str) -> str:
    """Directory name of a deployment's working dir; never a path."""
    name = _UNSAFE_CHARS.sub("_", str(deployment_id).strip())
    if not name.strip("_"):
        raise ValueError(f"Invalid deployment id: {deployment_id!r}")
    return name
