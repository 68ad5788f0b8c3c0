"""Structured deployment log."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..gitops.urls import redact_url
from ..models import DeploymentState

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]


@dataclass(frozen=True)
class LogEvent:
    message: str
    level: int = logging.INFO
    stage: Optional[DeploymentState] = None
    host_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def render(self) -> str:
        parts = [f"[{self.timestamp.isoformat(timespec='milliseconds')}]"]
        if self.level >= logging.WARNING:
            parts.append(logging.getLevelName(self.level))
        if self.stage is not None:
            parts.append(f"[{self.stage.value}]")
        if self.host_id:
            parts.append(f"[{self.host_id}]")
        parts.append(self.message)
        return " ".join(parts)


class DeploymentLog:
    """Collects LogEvents for one deployment.

    Every event is mirrored to the stdlib logger and, when a sink is set,
    pushed as a rendered line (used to stream into the deployment record).
    Messages pass through URL redaction so tokens never reach the log.
    """

    def __init__(self, deployment_id: str, sink: Optional[LogSink] = None) -> None:
        self.deployment_id = deployment_id
        self.sink = sink
        self.stage: Optional[DeploymentState] = None
        self._events: List[LogEvent] = []
        self._lock = threading.Lock()

    def emit(self, level: int, message: str, *, host_id: Optional[str] = None) -> LogEvent:
        event = LogEvent(
            message=redact_url(message),
            level=level,
            stage=self.stage,
            host_id=host_id,
        )
        with self._lock:
            self._events.append(event)
        line = event.render()
        logger.log(level, "[deployment %s] %s", self.deployment_id, line)
        if self.sink is not None:
            try:
                self.sink(line)
            except Exception:  # sink errors are logged, never raised
                logger.exception("Log sink failed for deployment %s", self.deployment_id)
        return event

    def info(self, message: str, *, host_id: Optional[str] = None) -> LogEvent:
        return self.emit(logging.INFO, message, host_id=host_id)

    def warning(self, message: str, *, host_id: Optional[str] = None) -> LogEvent:
        return self.emit(logging.WARNING, message, host_id=host_id)

    def error(self, message: str, *, host_id: Optional[str] = None) -> LogEvent:
        return self.emit(logging.ERROR, message, host_id=host_id)

    def output_callback(self, host_id: Optional[str] = None) -> Callable[[str, str], None]:
        """Line callback for script runners: stdout at INFO, stderr at WARNING."""

        def forward(line: str, stream: str) -> None:
            if not line.strip():
                return
            level = logging.WARNING if stream == "stderr" else logging.INFO
            self.emit(level, line, host_id=host_id)

        return forward

    @property
    def events(self) -> List[LogEvent]:
        with self._lock:
            return list(self._events)

    def render(self) -> str:
        return "\n".join(event.render() for event in self.events)
