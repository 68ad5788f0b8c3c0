"""Thin Jenkins REST API client."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, urlsplit

import requests

from ..errors import JenkinsAPIError

logger = logging.getLogger(__name__)

JOBS_TREE = "jobs[name,displayName,description,url,buildable,color,inQueue,lastBuild[number,result]]"
_QUEUE_ID = re.compile(r"/queue/item/(\d+)/?")


@dataclass
class JenkinsJob:
    name: str
    url: str = ""
    display_name: str = ""
    buildable: bool = True
    color: str = ""

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "JenkinsJob":
        return cls(
            name=payload.get("name", ""),
            url=payload.get("url", ""),
            display_name=payload.get("displayName") or payload.get("name", ""),
            buildable=payload.get("buildable", True) is not False,
            color=payload.get("color") or "",
        )


@dataclass
class JenkinsQueueRef:
    queue_id: int
    queue_url: str


def job_path(job_name: str) -> str:
    """``folder/app`` -> ``/job/folder/job/app``."""
    return "".join(f"/job/{quote(part, safe='')}" for part in job_name.strip("/").split("/"))


class JenkinsClient:
    """Talks to one Jenkins server with HTTP basic auth (user + API token)."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        api_token: Optional[str] = None,
        *,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_token:
            self.session.auth = (username or "", api_token)
        self.session.headers.setdefault("Accept", "application/json")

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise JenkinsAPIError(0, f"{method} {url} failed: {exc}") from exc
        if response.status_code >= 400:
            message = response.reason or ""
            try:
                message = response.json().get("message") or message
            except ValueError:
                body = (response.text or "").strip()
                if body:
                    message = f"{message} - {body[:200]}"
            raise JenkinsAPIError(response.status_code, message)
        return response

    def _json(self, path: str) -> Dict[str, Any]:
        response = self._request("GET", path)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def test_connection(self) -> Dict[str, Any]:
        """Return ``{"success": bool, "version"|"error": ..., "jobs": n}``; never raises."""
        try:
            response = self._request("GET", "/api/json")
            payload = response.json() if response.content else {}
        except (JenkinsAPIError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {
            "success": True,
            "version": response.headers.get("X-Jenkins", "unknown"),
            "jobs": len(payload.get("jobs", [])),
        }

    def get_jobs(self) -> List[JenkinsJob]:
        payload = self._json(f"/api/json?tree={JOBS_TREE}")
        return [JenkinsJob.from_api(item) for item in payload.get("jobs", [])]

    def build_job(
        self,
        job_name: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> JenkinsQueueRef:
        """Queue a build; parameterized when ``parameters`` is non-empty."""
        endpoint = "buildWithParameters" if parameters else "build"
        data = {key: str(value) for key, value in (parameters or {}).items()}
        response = self._request("POST", f"{job_path(job_name)}/{endpoint}", data=data)
        location = response.headers.get("Location")
        if not location:
            raise JenkinsAPIError(response.status_code, f"No queue location returned for {job_name}")
        match = _QUEUE_ID.search(urlsplit(location).path)
        queue_id = int(match.group(1)) if match else 0
        logger.info("Queued Jenkins job %s as queue item %s", job_name, queue_id)
        return JenkinsQueueRef(queue_id=queue_id, queue_url=location)

    def get_queue_item(self, queue_id: int) -> Dict[str, Any]:
        return self._json(f"/queue/item/{queue_id}/api/json")

    def get_build(self, job_name: str, build_number: int) -> Dict[str, Any]:
        return self._json(f"{job_path(job_name)}/{build_number}/api/json")

    def get_build_log(self, job_name: str, build_number: int) -> str:
        response = self._request("GET", f"{job_path(job_name)}/{build_number}/consoleText")
        return response.text

    def stop_build(self, job_name: str, build_number: int) -> None:
        self._request("POST", f"{job_path(job_name)}/{build_number}/stop")


def create_jenkins_client(
    server_url: str,
    auth_token: Optional[str] = None,
    *,
    timeout: float = 30,
    session: Optional[requests.Session] = None,
) -> JenkinsClient:
    """Build a client from a server (or job) URL and a ``user:token`` string.

    A token without a colon is used as the password of an anonymous user.
    """
    parts = urlsplit(server_url)
    # keep a context path such as https://ci.example.com/jenkins, drop any /job/... suffix
    context_path = parts.path.split("/job/", 1)[0].rstrip("/")
    base_url = f"{parts.scheme}://{parts.netloc}{context_path}"

    username: Optional[str] = None
    token: Optional[str] = None
    if auth_token:
        if ":" in auth_token:
            username, token = auth_token.split(":", 1)
        else:
            token = auth_token
    return JenkinsClient(base_url, username, token, timeout=timeout, session=session)
