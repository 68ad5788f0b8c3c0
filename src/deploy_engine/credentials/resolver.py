"""Pick and decrypt the git credential for a repository."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from ..errors import CredentialDecryptError
from ..models import (
    GitCredential,
    SSHKeyCredential,
    TokenCredential,
    UsernamePasswordCredential,
)
from ..store import CredentialRecord, CredentialStore
from .crypto import decrypt_credentials

logger = logging.getLogger(__name__)

PLATFORMS = ("github", "gitlab", "bitbucket")


def detect_platform(repository_url: Optional[str]) -> str:
    """Classify a repository URL by hostname substring.

    >>> detect_platform("https://github.com/acme/app.git")
    'github'
    >>> detect_platform("git@git.internal:acme/app.git")
    'custom'
    """
    if not repository_url:
        return "custom"
    parsed = urlparse(repository_url)
    host = parsed.hostname or ""
    if not host:
        # scp-like syntax: user@host:path
        host = repository_url.split("@", 1)[-1].split(":", 1)[0]
    host = host.lower()
    for platform in PLATFORMS:
        if platform in host:
            return platform
    return "custom"


def credential_from_payload(auth_type: str, payload: Dict[str, Any]) -> Optional[GitCredential]:
    """Build a typed credential, or None when the payload is incomplete."""
    kind = (auth_type or "").lower()
    if kind == "token" and payload.get("token"):
        return TokenCredential(token=payload["token"])
    if kind == "username_password" and payload.get("username") and payload.get("password"):
        return UsernamePasswordCredential(
            username=payload["username"], password=payload["password"]
        )
    if kind in ("ssh", "ssh_key") and payload.get("privateKey"):
        return SSHKeyCredential(
            private_key=payload["privateKey"], username=payload.get("username") or "git"
        )
    return None


class CredentialResolver:
    """Resolves the credential used to clone a repository.

    Order: explicit credential id, then the owner's default credential for the
    detected platform, then any default credential of the owner.  Inactive
    records are never used.  A record that cannot be decrypted, or whose
    payload is incomplete, yields ``None`` rather than a partial credential.
    """

    def __init__(self, store: CredentialStore, encryption_key: Optional[str] = None) -> None:
        self.store = store
        self.encryption_key = encryption_key

    def resolve(
        self,
        repository_url: Optional[str],
        owner_id: Optional[str] = None,
        credential_id: Optional[str] = None,
    ) -> Optional[GitCredential]:
        record = self._select(repository_url, owner_id, credential_id)
        if record is None:
            logger.info("No git credential found for %s", repository_url)
            return None
        return self._decode(record)

    def _select(
        self,
        repository_url: Optional[str],
        owner_id: Optional[str],
        credential_id: Optional[str],
    ) -> Optional[CredentialRecord]:
        if credential_id:
            record = self.store.get_credential(credential_id)
            if record is not None and record.is_active:
                return record
            logger.warning("Credential %s is missing or inactive", credential_id)
            return None

        if owner_id is None:
            return None

        defaults = _newest_first(
            record
            for record in self.store.find_credentials(owner_id)
            if record.is_active and record.is_default
        )
        platform = detect_platform(repository_url)
        for record in defaults:
            if record.platform == platform:
                return record
        return defaults[0] if defaults else None

    def _decode(self, record: CredentialRecord) -> Optional[GitCredential]:
        try:
            payload = decrypt_credentials(record.encrypted_credentials, self.encryption_key)
        except CredentialDecryptError as exc:
            logger.warning("Could not decrypt git credential %s: %s", record.id, exc)
            return None
        credential = credential_from_payload(record.auth_type, payload)
        if credential is None:
            logger.warning("Git credential %s (%s) is incomplete", record.id, record.auth_type)
            return None
        logger.info("Using %s git credential %s", credential.type, record.id)
        return credential


def _newest_first(records: Iterable[CredentialRecord]) -> List[CredentialRecord]:
    return sorted(records, key=lambda record: record.created_at, reverse=True)
