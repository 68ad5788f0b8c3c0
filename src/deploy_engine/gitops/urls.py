"""Repository URL helpers."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ..models import GitCredential, SSHKeyCredential, TokenCredential, UsernamePasswordCredential

# username/password pair some clients store instead of a real secret
PLACEHOLDER_CREDENTIALS = ("git", "token")

_USERINFO = re.compile(r"(://)[^/@\s]+@")


def is_http_url(url: str) -> bool:
    return urlsplit(url).scheme.lower() in ("http", "https")


def build_authenticated_url(url: str, credential: Optional[GitCredential]) -> str:
    """Embed ``credential`` in an HTTP(S) clone URL.

    SSH credentials and non-HTTP transports leave the URL untouched; those are
    handled through ``GIT_SSH_COMMAND`` instead.
    """
    if credential is None or isinstance(credential, SSHKeyCredential) or not is_http_url(url):
        return url

    parts = urlsplit(url)
    host = parts.hostname or ""

    if isinstance(credential, UsernamePasswordCredential):
        if (credential.username, credential.password) == PLACEHOLDER_CREDENTIALS:
            return url
        user, password = credential.username, credential.password
    elif isinstance(credential, TokenCredential):
        if "github.com" in host:
            user, password = credential.token, "x-oauth-basic"
        elif "gitlab" in host:
            user, password = "oauth2", credential.token
        else:
            user, password = "git", credential.token
    else:
        return url

    netloc = f"{quote(user, safe='')}:{quote(password, safe='')}@{host}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact_url(text: str) -> str:
    """Mask the user-info of every URL in ``text`` (a URL, git stderr, a log line)."""
    return _USERINFO.sub(r"\1***@", text)
