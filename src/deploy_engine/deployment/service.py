"""Glue between stored deployment records and the executor."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional

import paramiko

from ..config import AppConfig
from ..credentials import CredentialResolver
from ..errors import DeploymentNotFoundError
from ..gitops import GitRepositoryManager
from ..hosts import HostResolver
from ..jenkins import JenkinsBridge, create_jenkins_client
from ..models import DeploymentConfig, DeploymentResult, DeploymentStatus
from ..remote import RemoteExecutor
from ..store import CredentialStore, DeploymentRecord, DeploymentStore, HostStore, JenkinsServerStore
from ..utils.logging import get_logger
from .executor import DeploymentExecutor
from .workspace import WorkspaceManager

logger = get_logger(__name__)


class DeploymentService:
    """Loads a deployment record, runs it, and drives its status.

    pending/approved -> deploying -> success | failed
    """

    def __init__(
        self,
        deployments: DeploymentStore,
        hosts: HostStore,
        credentials: CredentialStore,
        jenkins_servers: JenkinsServerStore,
        config: Optional[AppConfig] = None,
        *,
        ssh_client_factory: Callable[[], paramiko.SSHClient] | None = None,
        jenkins_client_factory: Callable = create_jenkins_client,
        git: Optional[GitRepositoryManager] = None,
    ) -> None:
        self.config = config or AppConfig()
        self.deployments = deployments
        self.workspace = WorkspaceManager(Path(self.config.paths.workspace_root))
        self.hosts = HostResolver(hosts)
        self.credentials = CredentialResolver(credentials, self.config.security.encryption_key)
        self.remote = RemoteExecutor(
            connect_timeout=self.config.ssh.connect_timeout,
            kill_grace_period=self.config.execution.kill_grace_period,
            client_factory=ssh_client_factory,
        )
        self.jenkins = JenkinsBridge(
            jenkins_servers,
            deployments,
            client_factory=jenkins_client_factory,
            request_timeout=self.config.jenkins.request_timeout,
            trigger_delay=self.config.jenkins.trigger_delay,
            poll_interval=self.config.jenkins.poll_interval,
        )
        self.git = git or GitRepositoryManager()

    @classmethod
    def from_store(cls, store, config: Optional[AppConfig] = None, **kwargs) -> "DeploymentService":
        """Build a service over one object implementing every store (e.g. InMemoryStore)."""
        return cls(store, store, store, store, config, **kwargs)

    def build_config(self, record: DeploymentRecord) -> DeploymentConfig:
        credential = None
        if record.repository_url:
            credential = self.credentials.resolve(
                record.repository_url,
                owner_id=record.owner_id,
                credential_id=record.git_credential_id,
            )
        return DeploymentConfig(
            deployment_id=record.id,
            hosts=tuple(record.hosts),
            repository_url=record.repository_url or None,
            branch=record.branch or self.config.execution.default_branch,
            build_script=record.build_script or None,
            deploy_script=record.deploy_script or None,
            environment=self._environment(record),
            timeout=record.timeout or self.config.execution.script_timeout,
            stop_on_first_failure=record.stop_on_first_failure,
            git_credential=credential,
            use_remote_project=record.use_remote_project,
            remote_project_path=record.remote_project_path,
            jenkins_jobs=tuple(record.jenkins_jobs),
        )

    def execute(self, deployment_id: str) -> DeploymentResult:
        record = self.deployments.get_deployment(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(f"Deployment not found: {deployment_id}")

        self.deployments.update_status(deployment_id, DeploymentStatus.DEPLOYING)
        logger.info("Starting deployment %s (%s)", deployment_id, record.name or record.project_name)
        deployment_config = self.build_config(record)

        executor = DeploymentExecutor(
            self.workspace,
            self.hosts,
            self.remote,
            jenkins=self.jenkins,
            git=self.git,
            log_sink=lambda line: self.deployments.append_log(deployment_id, line),
            on_failure=self.mark_failed,
            verify_processes=self.config.execution.verify_processes,
            remote_artifact_root=self.config.ssh.remote_artifact_root,
            kill_grace_period=self.config.execution.kill_grace_period,
        )
        result = executor.execute(deployment_config)

        status = DeploymentStatus.SUCCESS if result.success else DeploymentStatus.FAILED
        self.deployments.update_status(
            deployment_id, status, error=result.error, duration=result.duration
        )
        logger.info("Deployment %s finished: %s", deployment_id, status.value)
        return result

    def mark_failed(self, deployment_id: str, error: str) -> None:
        self.deployments.update_status(deployment_id, DeploymentStatus.FAILED, error=error)

    @staticmethod
    def _environment(record: DeploymentRecord) -> Dict[str, str]:
        env = {key: str(value) for key, value in record.env_vars.items()}
        env.update(
            {
                "DEPLOYMENT_ID": record.id,
                "PROJECT_NAME": record.project_name or record.name or "unknown",
                "ENVIRONMENT": record.environment,
                "VERSION": record.version or "",
                "BUILD_NUMBER": str(record.build_number) if record.build_number is not None else "",
            }
        )
        return env
