"""Jenkins backend: REST client and deployment bridge."""

from .bridge import (
    FAILED,
    QUEUED,
    RUNNING,
    SUCCESS,
    JenkinsBridge,
    JenkinsBuildStatus,
    JenkinsExecution,
    JenkinsTriggerResult,
)
from .client import JenkinsClient, JenkinsJob, JenkinsQueueRef, create_jenkins_client

__all__ = [
    "FAILED",
    "QUEUED",
    "RUNNING",
    "SUCCESS",
    "JenkinsBridge",
    "JenkinsBuildStatus",
    "JenkinsClient",
    "JenkinsExecution",
    "JenkinsJob",
    "JenkinsQueueRef",
    "JenkinsTriggerResult",
    "create_jenkins_client",
]
