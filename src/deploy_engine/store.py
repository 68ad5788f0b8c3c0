"""Persistence seams consumed by the engine.

The relational schema lives outside this package; the engine only talks to
the abstract stores below.  ``InMemoryStore`` backs tests and embedding, and
``JsonFileStore`` persists the same data to a JSON document for the CLI.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import DeploymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class DeploymentRecord:
    """A deployment row as the engine sees it."""

    id: str
    name: str = ""
    status: DeploymentStatus = DeploymentStatus.PENDING
    owner_id: Optional[str] = None
    environment: str = "dev"
    version: str = ""
    build_number: Optional[int] = None
    project_name: str = ""
    repository_url: Optional[str] = None
    branch: str = "main"
    build_script: Optional[str] = None
    deploy_script: Optional[str] = None
    hosts: List[str] = field(default_factory=list)
    env_vars: Dict[str, str] = field(default_factory=dict)
    stop_on_first_failure: bool = False
    use_remote_project: bool = False
    remote_project_path: Optional[str] = None
    git_credential_id: Optional[str] = None
    timeout: Optional[float] = None
    jenkins_jobs: List[str] = field(default_factory=list)
    jenkins_job_name: Optional[str] = None
    jenkins_queue_id: Optional[int] = None
    jenkins_queue_url: Optional[str] = None
    jenkins_build_number: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    logs: str = ""

    @property
    def is_jenkins(self) -> bool:
        return bool(self.jenkins_jobs)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for key in ("scheduled_at", "started_at", "completed_at"):
            value = getattr(self, key)
            payload[key] = value.isoformat() if value else None
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        known = {f.name for f in fields(cls)}
        payload = {k: v for k, v in data.items() if k in known}
        payload["status"] = DeploymentStatus(payload.get("status", "pending"))
        for key in ("scheduled_at", "started_at", "completed_at"):
            payload[key] = _parse_datetime(payload.get(key))
        return cls(**payload)


@dataclass
class HostRecord:
    """A server row. ``auth_type`` may be empty on legacy rows."""

    id: str
    address: str
    name: str = ""
    port: Optional[int] = 22
    username: Optional[str] = None
    auth_type: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None
    status: str = "online"


@dataclass
class CredentialRecord:
    """A stored git credential; ``encrypted_credentials`` is opaque here."""

    id: str
    auth_type: str
    encrypted_credentials: str = field(repr=False)
    owner_id: Optional[str] = None
    name: str = ""
    platform: str = "custom"
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialRecord":
        payload = dict(data)
        if "created_at" in payload:
            payload["created_at"] = _parse_datetime(payload["created_at"]) or utcnow()
        return cls(**payload)


@dataclass
class JenkinsServerRecord:
    id: str
    server_url: str
    name: str = ""
    username: Optional[str] = None
    api_token: Optional[str] = field(default=None, repr=False)
    is_active: bool = True


class DeploymentStore(ABC):
    """Deployment records: status, streamed logs, Jenkins linkage."""

    @abstractmethod
    def get_deployment(self, deployment_id: str) -> Optional[DeploymentRecord]:
        ...

    @abstractmethod
    def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        *,
        error: Optional[str] = None,
        duration: Optional[float] = None,
        logs: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    def append_log(self, deployment_id: str, line: str) -> None:
        ...

    @abstractmethod
    def save_jenkins_queue(
        self, deployment_id: str, job_name: str, queue_id: int, queue_url: str
    ) -> None:
        ...

    @abstractmethod
    def save_jenkins_build(self, deployment_id: str, build_number: int) -> None:
        ...

    @abstractmethod
    def list_due_scheduled(self, now: datetime) -> List[DeploymentRecord]:
        """Approved deployments whose scheduled time has elapsed."""

    @abstractmethod
    def claim_scheduled(self, deployment_id: str, now: datetime) -> bool:
        """Atomically clear the scheduled time and mark the record deploying.

        Returns False when another poller already claimed it.
        """


class HostStore(ABC):
    @abstractmethod
    def get_host(self, host_id: str) -> Optional[HostRecord]:
        ...


class CredentialStore(ABC):
    @abstractmethod
    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    def find_credentials(self, owner_id: Optional[str]) -> List[CredentialRecord]:
        """All credentials owned by ``owner_id`` (all owners when None)."""


class JenkinsServerStore(ABC):
    @abstractmethod
    def get_active_jenkins_server(self) -> Optional[JenkinsServerRecord]:
        ...


class InMemoryStore(DeploymentStore, HostStore, CredentialStore, JenkinsServerStore):
    """Thread-safe in-process implementation of every store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.deployments: Dict[str, DeploymentRecord] = {}
        self.hosts: Dict[str, HostRecord] = {}
        self.credentials: Dict[str, CredentialRecord] = {}
        self.jenkins_servers: List[JenkinsServerRecord] = []

    # -- population helpers -------------------------------------------------

    def add_deployment(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._lock:
            self.deployments[record.id] = record
            self._changed()
        return record

    def add_host(self, record: HostRecord) -> HostRecord:
        with self._lock:
            self.hosts[record.id] = record
            self._changed()
        return record

    def add_credential(self, record: CredentialRecord) -> CredentialRecord:
        with self._lock:
            self.credentials[record.id] = record
            self._changed()
        return record

    def add_jenkins_server(self, record: JenkinsServerRecord) -> JenkinsServerRecord:
        with self._lock:
            self.jenkins_servers.append(record)
            self._changed()
        return record

    # -- DeploymentStore ----------------------------------------------------

    def get_deployment(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            return self.deployments.get(deployment_id)

    def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        *,
        error: Optional[str] = None,
        duration: Optional[float] = None,
        logs: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self.deployments.get(deployment_id)
            if record is None:
                return
            record.status = status
            if status is DeploymentStatus.DEPLOYING:
                record.started_at = utcnow()
                record.completed_at = None
                record.error = None
            elif status in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED):
                record.completed_at = utcnow()
            if error is not None:
                record.error = error
            if duration is not None:
                record.duration = duration
            if logs is not None:
                record.logs = logs
            self._changed()

    def append_log(self, deployment_id: str, line: str) -> None:
        with self._lock:
            record = self.deployments.get(deployment_id)
            if record is None:
                return
            record.logs += line if line.endswith("\n") else line + "\n"
            self._changed()

    def save_jenkins_queue(
        self, deployment_id: str, job_name: str, queue_id: int, queue_url: str
    ) -> None:
        with self._lock:
            record = self.deployments.get(deployment_id)
            if record is None:
                return
            record.jenkins_job_name = job_name
            record.jenkins_queue_id = queue_id
            record.jenkins_queue_url = queue_url
            record.jenkins_build_number = None
            self._changed()

    def save_jenkins_build(self, deployment_id: str, build_number: int) -> None:
        with self._lock:
            record = self.deployments.get(deployment_id)
            if record is None:
                return
            record.jenkins_build_number = build_number
            self._changed()

    def list_due_scheduled(self, now: datetime) -> List[DeploymentRecord]:
        with self._lock:
            return [
                record
                for record in self.deployments.values()
                if record.status is DeploymentStatus.APPROVED
                and record.scheduled_at is not None
                and record.scheduled_at <= now
            ]

    def claim_scheduled(self, deployment_id: str, now: datetime) -> bool:
        with self._lock:
            record = self.deployments.get(deployment_id)
            if (
                record is None
                or record.status is not DeploymentStatus.APPROVED
                or record.scheduled_at is None
                or record.scheduled_at > now
            ):
                return False
            record.scheduled_at = None
            record.status = DeploymentStatus.DEPLOYING
            record.started_at = now
            record.logs += f"[{now.isoformat()}] Scheduled time reached, starting deployment\n"
            self._changed()
            return True

    # -- HostStore / CredentialStore / JenkinsServerStore ------------------

    def get_host(self, host_id: str) -> Optional[HostRecord]:
        with self._lock:
            return self.hosts.get(host_id)

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        with self._lock:
            return self.credentials.get(credential_id)

    def find_credentials(self, owner_id: Optional[str]) -> List[CredentialRecord]:
        with self._lock:
            return [
                record
                for record in self.credentials.values()
                if owner_id is None or record.owner_id == owner_id
            ]

    def get_active_jenkins_server(self) -> Optional[JenkinsServerRecord]:
        with self._lock:
            for record in self.jenkins_servers:
                if record.is_active:
                    return record
            return None

    def _changed(self) -> None:
        """Hook for subclasses that persist on every mutation."""


class JsonFileStore(InMemoryStore):
    """InMemoryStore mirrored to a JSON document.

    Layout::

        {"deployments": [...], "hosts": [...], "credentials": [...],
         "jenkins_servers": [...]}
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._loading = False
        if self.path.is_file():
            self._load()

    def _load(self) -> None:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self._loading = True
        try:
            for item in data.get("deployments", []):
                self.add_deployment(DeploymentRecord.from_dict(item))
            for item in data.get("hosts", []):
                self.add_host(HostRecord(**item))
            for item in data.get("credentials", []):
                self.add_credential(CredentialRecord.from_dict(item))
            for item in data.get("jenkins_servers", []):
                self.add_jenkins_server(JenkinsServerRecord(**item))
        finally:
            self._loading = False

    def save(self) -> None:
        with self._lock:
            payload = {
                "deployments": [record.to_dict() for record in self.deployments.values()],
                "hosts": [asdict(record) for record in self.hosts.values()],
                "credentials": [
                    {**asdict(record), "created_at": record.created_at.isoformat()}
                    for record in self.credentials.values()
                ],
                "jenkins_servers": [asdict(record) for record in self.jenkins_servers],
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(self.path)

    def _changed(self) -> None:
        if not self._loading:
            self.save()
