"""Git credential lookup and decryption."""

from .crypto import decrypt_credentials, encrypt_credentials, generate_encryption_key
from .resolver import CredentialResolver, credential_from_payload, detect_platform

__all__ = [
    "CredentialResolver",
    "credential_from_payload",
    "decrypt_credentials",
    "detect_platform",
    "encrypt_credentials",
    "generate_encryption_key",
]
