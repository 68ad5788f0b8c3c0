"""Encryption of stored git credential payloads.

Blob format: ``hex(iv) + hex(ciphertext)`` where the ciphertext is the
AES-256-CBC encryption (PKCS7 padded) of the UTF-8 JSON payload and the IV is
16 random bytes.  The key is 32 bytes, supplied hex encoded.
"""

from __future__ import annotations

import json
import os
import secrets
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import CredentialDecryptError

KEY_LENGTH = 32
IV_LENGTH = 16
KEY_ENV_VAR = "DEPLOY_ENGINE_ENCRYPTION_KEY"


def generate_encryption_key() -> str:
    return secrets.token_hex(KEY_LENGTH)


def load_key(key: Optional[str] = None) -> bytes:
    """Decode the hex key, falling back to the environment."""
    raw = key or os.getenv(KEY_ENV_VAR)
    if not raw:
        raise CredentialDecryptError(f"No encryption key configured (set {KEY_ENV_VAR})")
    try:
        decoded = bytes.fromhex(raw.strip())
    except ValueError as exc:
        raise CredentialDecryptError("Encryption key is not valid hex") from exc
    if len(decoded) != KEY_LENGTH:
        raise CredentialDecryptError(
            f"Encryption key must be {KEY_LENGTH} bytes, got {len(decoded)}"
        )
    return decoded


def encrypt_credentials(payload: Dict[str, Any], key: Optional[str] = None) -> str:
    secret = load_key(key)
    iv = os.urandom(IV_LENGTH)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    plaintext = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(secret), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return iv.hex() + ciphertext.hex()


def decrypt_credentials(blob: str, key: Optional[str] = None) -> Dict[str, Any]:
    """Decrypt a stored blob into its JSON payload.

    Raises:
        CredentialDecryptError: on a malformed blob, a wrong key, or a payload
            that is not a JSON object.
    """
    if not blob or not isinstance(blob, str):
        raise CredentialDecryptError("Invalid encrypted credential format")
    if len(blob) < IV_LENGTH * 2:
        raise CredentialDecryptError("Encrypted credential is too short")

    secret = load_key(key)
    try:
        iv = bytes.fromhex(blob[: IV_LENGTH * 2])
        ciphertext = bytes.fromhex(blob[IV_LENGTH * 2 :])
        decryptor = Cipher(algorithms.AES(secret), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        payload = json.loads(plaintext.decode("utf-8"))
    except ValueError as exc:
        # bad hex, bad padding (usually a key mismatch) and bad JSON all land here
        raise CredentialDecryptError(f"Failed to decrypt credentials: {exc}") from exc

    if not isinstance(payload, dict):
        raise CredentialDecryptError("Decrypted credential payload is not an object")
    return payload
