"""Configuration loading utilities for the deployment engine."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .paths import WORKSPACE_DIR

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/deploy_engine.json")


@dataclass
class PathsConfig:
    """Where working directories and the code cache live."""

    workspace_root: str = str(WORKSPACE_DIR)


@dataclass
class ExecutionConfig:
    """Settings for local/remote script execution."""

    script_timeout: float = 300          # per-script timeout (seconds)
    kill_grace_period: float = 5         # SIGTERM -> SIGKILL delay
    verify_processes: str = "node|nginx|apache|java"
    default_branch: str = "main"


@dataclass
class SSHConfig:
    """SSH connection settings."""

    connect_timeout: float = 30
    remote_artifact_root: str = "/tmp"


@dataclass
class SchedulerConfig:
    """Scheduled deployment polling."""

    interval: float = 60
    max_workers: int = 4


@dataclass
class JenkinsConfig:
    """Jenkins backend settings."""

    request_timeout: float = 30
    poll_interval: float = 5
    trigger_delay: float = 1             # pause between consecutive job triggers


@dataclass
class SecurityConfig:
    """Key used to decrypt stored git credentials (hex encoded, 32 bytes)."""

    encryption_key: Optional[str] = None


@dataclass
class AppConfig:
    """Top-level configuration."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    jenkins: JenkinsConfig = field(default_factory=JenkinsConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str, klass):
            data = payload.get(name, {}) or {}
            # 过滤掉以下划线开头的注释字段
            data = {k: v for k, v in data.items() if not k.startswith("_")}
            return klass(**{**klass().__dict__, **data})

        return cls(
            paths=section("paths", PathsConfig),
            execution=section("execution", ExecutionConfig),
            ssh=section("ssh", SSHConfig),
            scheduler=section("scheduler", SchedulerConfig),
            jenkins=section("jenkins", JenkinsConfig),
            security=section("security", SecurityConfig),
        )


def _apply_env_overrides(config: AppConfig) -> None:
    env_root = os.getenv("DEPLOY_ENGINE_WORKSPACE_ROOT")
    if env_root:
        config.paths.workspace_root = env_root

    env_timeout = os.getenv("DEPLOY_ENGINE_SCRIPT_TIMEOUT")
    if env_timeout:
        config.execution.script_timeout = float(env_timeout)

    env_connect = os.getenv("DEPLOY_ENGINE_SSH_CONNECT_TIMEOUT")
    if env_connect:
        config.ssh.connect_timeout = float(env_connect)

    env_interval = os.getenv("DEPLOY_ENGINE_SCHEDULER_INTERVAL")
    if env_interval:
        config.scheduler.interval = float(env_interval)

    env_key = os.getenv("DEPLOY_ENGINE_ENCRYPTION_KEY")
    if env_key:
        config.security.encryption_key = env_key


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - DEPLOY_ENGINE_WORKSPACE_ROOT: root of working dirs and code cache
    - DEPLOY_ENGINE_SCRIPT_TIMEOUT: default per-script timeout in seconds
    - DEPLOY_ENGINE_SSH_CONNECT_TIMEOUT: SSH connect timeout in seconds
    - DEPLOY_ENGINE_SCHEDULER_INTERVAL: scheduled deployment poll interval
    - DEPLOY_ENGINE_ENCRYPTION_KEY: hex key for stored git credentials

    An explicitly given path must exist; without one, a missing default file
    yields the built-in defaults.
    """

    if path and not Path(path).is_file():
        raise FileNotFoundError(f"Could not find configuration file: {path}")

    candidate = Path(path) if path else _DEFAULT_CONFIG_PATH
    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        config = AppConfig.from_dict(data)
    else:
        config = AppConfig()

    _apply_env_overrides(config)
    return config
