"""Deployment state machine: prepare, acquire, build, deploy, verify, clean up."""

from __future__ import annotations

import contextlib
import shlex
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

import paramiko

from ..errors import (
    BuildError,
    DeployEngineError,
    HostNotFoundError,
    JenkinsConfigError,
    ScriptTimeoutError,
    SourceAcquisitionError,
)
from ..gitops import GitRepositoryManager, SourceAcquirer, build_authenticated_url, deep_clean
from ..hosts import HostResolver
from ..jenkins import JenkinsBridge
from ..local import LocalSession
from ..models import (
    DeploymentConfig,
    DeploymentResult,
    DeploymentState,
    HostInfo,
    HostResult,
    SSHKeyCredential,
)
from ..remote import RemoteExecutor
from ..ssh import SSHConnectionError
from ..utils.logging import get_logger
from .log import DeploymentLog, LogSink
from .workspace import WorkspaceContext, WorkspaceManager

logger = get_logger(__name__)

FailureHook = Callable[[str, str], None]

JENKINS_PARAMETER_KEYS = ("DEPLOYMENT_ID", "ENVIRONMENT", "VERSION", "BUILD_NUMBER")
# sent when the deployment has no version or build number
JENKINS_PARAMETER_FALLBACK = "latest"
VERIFY_TIMEOUT = 30


class DeploymentExecutor:
    """Runs one DeploymentConfig to a terminal state.

    ``state`` and ``host_results`` may be read from another thread while
    ``execute`` runs.  The working directory is removed on every exit path;
    the repository's code dir is kept for the next run.
    """

    def __init__(
        self,
        workspace: WorkspaceManager,
        hosts: HostResolver,
        remote: Optional[RemoteExecutor] = None,
        *,
        jenkins: Optional[JenkinsBridge] = None,
        git: Optional[GitRepositoryManager] = None,
        log_sink: Optional[LogSink] = None,
        on_failure: Optional[FailureHook] = None,
        verify_processes: str = "node|nginx|apache|java",
        remote_artifact_root: str = "/tmp",
        kill_grace_period: float = 5,
    ) -> None:
        self.workspace = workspace
        self.hosts = hosts
        self.remote = remote or RemoteExecutor(kill_grace_period=kill_grace_period)
        self.jenkins = jenkins
        self.git = git or GitRepositoryManager()
        self.log_sink = log_sink
        self.on_failure = on_failure
        self.verify_processes = verify_processes
        self.remote_artifact_root = remote_artifact_root.rstrip("/") or "/"
        self.local = LocalSession(kill_grace_period=kill_grace_period)

        self._lock = threading.Lock()
        self._state = DeploymentState.PREPARING
        self._host_results: List[HostResult] = []
        self._log: Optional[DeploymentLog] = None

    @property
    def state(self) -> DeploymentState:
        with self._lock:
            return self._state

    @property
    def host_results(self) -> List[HostResult]:
        with self._lock:
            return list(self._host_results)

    @property
    def log(self) -> Optional[DeploymentLog]:
        return self._log

    def execute(self, config: DeploymentConfig) -> DeploymentResult:
        started = time.monotonic()
        log = DeploymentLog(config.deployment_id, sink=self.log_sink)
        with self._lock:
            self._host_results = []
            self._log = log
        error: Optional[str] = None
        context: Optional[WorkspaceContext] = None

        repo_lock = contextlib.ExitStack()
        try:
            self._enter(DeploymentState.PREPARING, log)
            context = self._prepare(config, log)

            if config.is_jenkins:
                log.info("Jenkins-backed deployment, source and build are handled by Jenkins")
            else:
                repo_lock.enter_context(self.workspace.repository_lock(context))
                if config.repository_url:
                    self._enter(DeploymentState.ACQUIRING, log)
                    self._acquire(config, context, log)

                self._enter(DeploymentState.BUILDING, log)
                self._build(config, context, log)

            self._enter(DeploymentState.DEPLOYING, log)
            self._deploy(config, context, log)

            self._enter(DeploymentState.VERIFYING, log)
            self._verify(config, log)

            failed = [item for item in self.host_results if not item.success]
            if failed:
                error = "Deployment failed on: " + ", ".join(
                    f"{item.host_id} ({item.message})" for item in failed
                )
                log.error(error)
        except DeployEngineError as exc:
            error = str(exc)
            log.error(f"Deployment aborted: {error}")
            self._notify_failure(config.deployment_id, error)
        except Exception as exc:
            logger.exception("Unexpected error in deployment %s", config.deployment_id)
            error = f"{type(exc).__name__}: {exc}"
            log.error(f"Deployment aborted by unexpected error: {error}")
            self._notify_failure(config.deployment_id, error)
        finally:
            repo_lock.close()
            self._enter(DeploymentState.CLEANING_UP, log)
            self._cleanup(context, log)

        final = DeploymentState.FAILED if error else DeploymentState.SUCCEEDED
        duration = time.monotonic() - started
        self._enter(final, log)
        log.info(f"Deployment {'succeeded' if not error else 'failed'} in {duration:.1f}s")
        return DeploymentResult(
            success=error is None,
            logs=log.render(),
            duration=duration,
            state=final,
            error=error,
            host_results=self.host_results,
        )

    # -- stages ------------------------------------------------------------

    def _prepare(self, config: DeploymentConfig, log: DeploymentLog) -> WorkspaceContext:
        context = self.workspace.prepare(config.deployment_id, config.repository_url)
        log.info(f"Working directory: {context.working_dir}")
        log.info(f"Code directory: {context.code_dir}")
        log.info(f"Log directory: {context.logs_dir}")
        return context

    def _acquire(self, config: DeploymentConfig, context: WorkspaceContext, log: DeploymentLog) -> None:
        acquirer = SourceAcquirer(self.workspace.projects_root, git=self.git, log=log)
        try:
            acquirer.acquire(
                config.repository_url,
                config.branch,
                config.git_credential,
                target_dir=context.code_dir,
            )
        except SourceAcquisitionError as exc:
            log.warning(f"Source acquisition failed, continuing with an empty code directory: {exc}")
            deep_clean(context.code_dir)
            self.workspace.ensure_code_dir(context)
        else:
            self.workspace.update_metadata(context, commit=self._safe_head(context))

    def _safe_head(self, context: WorkspaceContext) -> Optional[str]:
        with contextlib.suppress(DeployEngineError):
            return self.git.head_sha(context.code_dir)
        return None

    def _build(self, config: DeploymentConfig, context: WorkspaceContext, log: DeploymentLog) -> None:
        if not config.build_script:
            log.info("No build script configured, skipping build")
            return
        log.info(f"Running build script in {context.code_dir}")
        result = self.local.run(
            config.build_script,
            cwd=context.code_dir,
            env=config.environment,
            timeout=config.timeout,
            on_line=log.output_callback(),
        )
        if result.timed_out:
            raise ScriptTimeoutError(config.timeout, what="Build script")
        if not result.ok:
            raise BuildError(f"Build script failed with {result.summary()}: {_tail(result.stderr)}")
        log.info("Build finished")

    def _deploy(self, config: DeploymentConfig, context: WorkspaceContext, log: DeploymentLog) -> None:
        if config.is_jenkins:
            self._deploy_jenkins(config, log)
            return
        if not config.hosts:
            log.info("No target hosts configured, skipping deployment")
            return
        if not config.deploy_script:
            log.info("No deploy script configured, skipping deployment")
            return

        total = len(config.hosts)
        for index, host_id in enumerate(config.hosts, start=1):
            log.info(f"Deploying to host {index}/{total}", host_id=host_id)
            result = self._deploy_to_host(config, context, host_id, log)
            with self._lock:
                self._host_results.append(result)
            if result.success:
                log.info(result.message, host_id=host_id)
            else:
                log.error(result.message, host_id=host_id)
                if config.stop_on_first_failure:
                    log.warning(f"Stopping after first failure, {total - index} host(s) not attempted")
                    break

    def _deploy_to_host(
        self,
        config: DeploymentConfig,
        context: WorkspaceContext,
        host_id: str,
        log: DeploymentLog,
    ) -> HostResult:
        try:
            host = self.hosts.resolve(host_id)
        except HostNotFoundError as exc:
            return HostResult(host_id, False, str(exc))

        env = self._host_environment(config, host)
        output = log.output_callback(host_id)
        try:
            if host.is_local:
                log.info(f"Running deploy script locally in {context.code_dir}", host_id=host_id)
                result = self.remote.run(
                    host, config.deploy_script, env, config.timeout, context.code_dir, on_line=output
                )
            elif config.remote_project_mode:
                workdir = config.remote_project_path
                failure = self._update_remote_project(config, host, log)
                if failure is not None:
                    return failure
                log.info(f"Running deploy script on {host.target} in {workdir}", host_id=host_id)
                result = self.remote.run(
                    host, config.deploy_script, env, config.timeout, workdir, on_line=output
                )
            else:
                workdir = f"{self.remote_artifact_root}/deployment-{config.deployment_id}"
                log.info(f"Uploading {context.code_dir} to {host.target}:{workdir}", host_id=host_id)
                count = self.remote.upload_directory(host, context.code_dir, workdir)
                log.info(f"Uploaded {count} file(s)", host_id=host_id)
                log.info(f"Running deploy script on {host.target} in {workdir}", host_id=host_id)
                result = self.remote.run(
                    host, config.deploy_script, env, config.timeout, workdir, on_line=output
                )
        except (SSHConnectionError, paramiko.SSHException, socket.error) as exc:
            return HostResult(host_id, False, f"Connection to {host.target} failed: {exc}")

        if result.ok:
            return HostResult(host_id, True, "Deploy script completed")
        detail = _tail(result.stderr) or _tail(result.stdout)
        return HostResult(host_id, False, f"Deploy script failed with {result.summary()}: {detail}")

    def _update_remote_project(
        self,
        config: DeploymentConfig,
        host: HostInfo,
        log: DeploymentLog,
    ) -> Optional[HostResult]:
        path = shlex.quote(config.remote_project_path)
        prepared = self.remote.run(host, f"test -d {path} || mkdir -p {path}", timeout=config.timeout)
        if not prepared.ok:
            return HostResult(host.host_id, False, f"Could not prepare remote project dir: {prepared.stderr}")
        if not config.repository_url:
            return None

        if isinstance(config.git_credential, SSHKeyCredential):
            log.warning("SSH key credentials are not forwarded to remote hosts", host_id=host.host_id)
        url = shlex.quote(build_authenticated_url(config.repository_url, config.git_credential))
        branch = shlex.quote(config.branch)
        script = (
            f"if git -C {path} status --porcelain >/dev/null 2>&1; then\n"
            f"  cd {path} && git remote set-url origin {url} && git fetch origin {branch}"
            f" && git reset --hard origin/{branch} && git clean -fd\n"
            f"else\n"
            f"  find {path} -mindepth 1 -delete && git clone -b {branch} {url} {path}\n"
            f"fi\n"
            f"git -C {path} log -1 --oneline"
        )
        log.info(f"Updating remote checkout at {config.remote_project_path}", host_id=host.host_id)
        result = self.remote.run(host, script, timeout=config.timeout, on_line=log.output_callback(host.host_id))
        if not result.ok:
            return HostResult(
                host.host_id, False, f"Remote code update failed with {result.summary()}: {_tail(result.stderr)}"
            )
        return None

    def _deploy_jenkins(self, config: DeploymentConfig, log: DeploymentLog) -> None:
        if self.jenkins is None:
            raise JenkinsConfigError("Deployment is Jenkins-backed but no Jenkins backend is configured")
        parameters = {
            key: config.environment[key] for key in JENKINS_PARAMETER_KEYS if key in config.environment
        }
        parameters["DEPLOYMENT_ID"] = config.deployment_id
        for key in ("VERSION", "BUILD_NUMBER"):
            parameters[key] = parameters.get(key) or JENKINS_PARAMETER_FALLBACK
        outcome = self.jenkins.trigger(config.deployment_id, config.jenkins_jobs, parameters, log=log)
        with self._lock:
            for execution in outcome.executions:
                message = (
                    f"Queued as item {execution.queue_id}"
                    if execution.error is None
                    else f"Trigger failed: {execution.error}"
                )
                self._host_results.append(
                    HostResult(f"jenkins:{execution.job_name}", execution.error is None, message)
                )

    def _verify(self, config: DeploymentConfig, log: DeploymentLog) -> None:
        if config.is_jenkins:
            return
        probe = f'ps aux | grep -v grep | grep -E "({self.verify_processes})" | wc -l'
        for item in self.host_results:
            if not item.success:
                continue
            try:
                host = self.hosts.resolve(item.host_id)
                result = self.remote.run(host, probe, timeout=VERIFY_TIMEOUT)
            except DeployEngineError as exc:
                log.warning(f"Verification skipped: {exc}", host_id=item.host_id)
                continue
            if result.ok:
                log.info(f"Matching processes running: {result.stdout.strip() or '0'}", host_id=item.host_id)
            else:
                log.warning("Could not verify running processes", host_id=item.host_id)

    def _cleanup(self, context: Optional[WorkspaceContext], log: DeploymentLog) -> None:
        if context is None:
            return
        self.workspace.cleanup(context)
        log.info(f"Removed working directory {context.working_dir}")

    # -- helpers -------------------------------------------------------------

    def _enter(self, state: DeploymentState, log: DeploymentLog) -> None:
        with self._lock:
            self._state = state
        log.stage = state

    def _notify_failure(self, deployment_id: str, error: str) -> None:
        if self.on_failure is None:
            return
        try:
            self.on_failure(deployment_id, error)
        except Exception:
            logger.exception("on_failure hook raised for deployment %s", deployment_id)

    @staticmethod
    def _host_environment(config: DeploymentConfig, host: HostInfo) -> Dict[str, str]:
        env = dict(config.environment)
        env.update(
            {
                "DEPLOYMENT_ID": config.deployment_id,
                "HOST_NAME": host.display_name,
                "HOST_IP": host.address,
                "HOST_PORT": str(host.port),
                "HOST_USER": host.username,
            }
        )
        return env


def _tail(text: str, lines: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])
