"""Turn stored host records into immutable HostInfo values."""

from __future__ import annotations

import logging

from .errors import HostNotFoundError, UnsupportedAuthModeError
from .models import AuthMode, HostInfo
from .store import HostRecord, HostStore

logger = logging.getLogger(__name__)


def infer_auth_mode(record: HostRecord) -> AuthMode:
    """Explicit auth type wins; otherwise key path -> key, password -> password, else local."""
    if record.auth_type:
        return AuthMode.parse(record.auth_type)
    if record.key_path:
        return AuthMode.KEY
    if record.password:
        return AuthMode.PASSWORD
    return AuthMode.LOCAL


def host_info_from_record(record: HostRecord) -> HostInfo:
    mode = infer_auth_mode(record)
    if mode is AuthMode.PASSWORD and not record.password:
        raise UnsupportedAuthModeError(
            f"Host {record.id} uses password authentication but has no password"
        )
    if mode is AuthMode.KEY and not record.key_path:
        raise UnsupportedAuthModeError(
            f"Host {record.id} uses key authentication but has no key path"
        )
    return HostInfo(
        host_id=record.id,
        name=record.name,
        address=record.address,
        port=record.port or 22,
        username=record.username or "root",
        auth_mode=mode,
        password=record.password,
        key_path=record.key_path,
    )


class HostResolver:
    """Loads hosts from a HostStore; the auth mode is fixed here, once."""

    def __init__(self, store: HostStore) -> None:
        self.store = store

    def resolve(self, host_id: str) -> HostInfo:
        record = self.store.get_host(host_id)
        if record is None:
            raise HostNotFoundError(f"Host not found: {host_id}")
        info = host_info_from_record(record)
        logger.debug("Resolved host %s as %s (%s)", host_id, info.target, info.auth_mode.value)
        return info
