"""Jenkins as an alternate deployment backend."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import DeploymentNotFoundError, JenkinsAPIError, JenkinsConfigError, ScriptTimeoutError
from ..store import DeploymentRecord, DeploymentStore, JenkinsServerStore
from .client import JenkinsClient, create_jenkins_client

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
SUCCESS = "success"
FAILED = "failed"


@dataclass
class JenkinsExecution:
    job_name: str
    order: int
    status: str
    queue_id: int = 0
    queue_url: str = ""
    error: Optional[str] = None


@dataclass
class JenkinsTriggerResult:
    server_url: str
    executions: List[JenkinsExecution] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.executions) and all(item.status == QUEUED for item in self.executions)

    @property
    def failed_jobs(self) -> List[str]:
        return [item.job_name for item in self.executions if item.status == FAILED]


@dataclass
class JenkinsBuildStatus:
    state: str
    job_name: str
    queue_id: Optional[int] = None
    build_number: Optional[int] = None
    result: Optional[str] = None
    building: bool = False
    duration: Optional[float] = None
    url: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in (SUCCESS, FAILED)

    @property
    def success(self) -> bool:
        return self.state == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "job_name": self.job_name,
            "queue_id": self.queue_id,
            "build_number": self.build_number,
            "result": self.result,
            "building": self.building,
            "duration": self.duration,
            "url": self.url,
        }


class JenkinsBridge:
    """Triggers Jenkins jobs for a deployment and follows queue -> build -> result.

    Queue coordinates are written to the deployment record right after each
    trigger, so later polls never re-submit a job.
    """

    def __init__(
        self,
        servers: JenkinsServerStore,
        deployments: DeploymentStore,
        *,
        client_factory: Callable[..., JenkinsClient] = create_jenkins_client,
        request_timeout: float = 30,
        trigger_delay: float = 1,
        poll_interval: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.servers = servers
        self.deployments = deployments
        self.client_factory = client_factory
        self.request_timeout = request_timeout
        self.trigger_delay = trigger_delay
        self.poll_interval = poll_interval
        self._sleep = sleep

    def client(self) -> JenkinsClient:
        server = self.servers.get_active_jenkins_server()
        if server is None:
            raise JenkinsConfigError("No active Jenkins server is configured")
        if not server.username or not server.api_token:
            raise JenkinsConfigError(
                f"Jenkins server {server.name or server.server_url} has incomplete credentials"
            )
        return self.client_factory(
            server.server_url,
            f"{server.username}:{server.api_token}",
            timeout=self.request_timeout,
        )

    def trigger(
        self,
        deployment_id: str,
        job_names: Sequence[str],
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        log=None,
    ) -> JenkinsTriggerResult:
        """Validate ``job_names`` against the live job list and queue them in order.

        Raises:
            JenkinsConfigError: no server, incomplete credentials, or no runnable job.
            JenkinsAPIError: the job list could not be fetched.
        """
        log = log or logger
        if not job_names:
            raise JenkinsConfigError("Deployment has no Jenkins jobs configured")

        client = self.client()
        available = {job.name for job in client.get_jobs()}
        log.info(f"Jenkins server {client.base_url} lists {len(available)} job(s)")

        result = JenkinsTriggerResult(server_url=client.base_url)
        runnable = []
        for name in job_names:
            if name in available:
                runnable.append(name)
            else:
                log.warning(f"Jenkins job not found on server, skipping: {name}")
                result.skipped.append(name)
        if not runnable:
            raise JenkinsConfigError("None of the configured Jenkins jobs exist on the server")

        for order, name in enumerate(runnable):
            try:
                ref = client.build_job(name, parameters)
            except JenkinsAPIError as exc:
                log.error(f"Failed to queue Jenkins job {name}: {exc}")
                result.executions.append(JenkinsExecution(name, order, FAILED, error=str(exc)))
            else:
                self.deployments.save_jenkins_queue(deployment_id, name, ref.queue_id, ref.queue_url)
                log.info(f"Queued Jenkins job {name}: queue item {ref.queue_id} ({ref.queue_url})")
                result.executions.append(
                    JenkinsExecution(name, order, QUEUED, ref.queue_id, ref.queue_url)
                )
            if order < len(runnable) - 1:
                self._sleep(self.trigger_delay)
        return result

    def poll(self, deployment_id: str) -> JenkinsBuildStatus:
        record = self._record(deployment_id)
        client = self.client()
        job_name = record.jenkins_job_name or ""
        status = JenkinsBuildStatus(state=QUEUED, job_name=job_name, queue_id=record.jenkins_queue_id)

        build_number = record.jenkins_build_number
        if build_number is None:
            item = client.get_queue_item(record.jenkins_queue_id)
            if item.get("cancelled"):
                status.state, status.result = FAILED, "CANCELLED"
                return status
            number = (item.get("executable") or {}).get("number")
            if number is None:
                return status
            build_number = int(number)
            self.deployments.save_jenkins_build(deployment_id, build_number)

        build = client.get_build(job_name, build_number)
        status.build_number = build_number
        status.building = bool(build.get("building"))
        status.result = build.get("result")
        status.url = build.get("url")
        if build.get("duration") is not None:
            status.duration = build["duration"] / 1000.0
        if status.result and not status.building:
            status.state = SUCCESS if status.result == "SUCCESS" else FAILED
        else:
            status.state = RUNNING
        return status

    def wait(
        self,
        deployment_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> JenkinsBuildStatus:
        """Poll until the build is terminal; raises ScriptTimeoutError after ``timeout``."""
        interval = self.poll_interval if interval is None else interval
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            status = self.poll(deployment_id)
            if status.terminal:
                return status
            if deadline is not None and time.monotonic() >= deadline:
                raise ScriptTimeoutError(timeout, what="Jenkins build")
            self._sleep(interval)

    def fetch_log(self, deployment_id: str) -> str:
        """Console text of the build, or an empty string while it is still queued."""
        record = self._record(deployment_id)
        build_number = record.jenkins_build_number
        if build_number is None:
            build_number = self.poll(deployment_id).build_number
        if build_number is None:
            return ""
        return self.client().get_build_log(record.jenkins_job_name or "", build_number)

    def _record(self, deployment_id: str) -> DeploymentRecord:
        record = self.deployments.get_deployment(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(f"Deployment not found: {deployment_id}")
        if not record.jenkins_job_name or record.jenkins_queue_id is None:
            raise JenkinsConfigError(f"Deployment {deployment_id} has no Jenkins queue item")
        return record
