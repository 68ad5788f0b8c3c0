"""Deployment execution: state machine, workspace, log and service glue."""

from .executor import DeploymentExecutor
from .log import DeploymentLog, LogEvent
from .service import DeploymentService
from .workspace import WorkspaceContext, WorkspaceManager

__all__ = [
    "DeploymentExecutor",
    "DeploymentLog",
    "DeploymentService",
    "LogEvent",
    "WorkspaceContext",
    "WorkspaceManager",
]
