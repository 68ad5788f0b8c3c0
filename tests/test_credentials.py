import unittest
from datetime import timedelta

from deploy_engine.credentials import (
    CredentialResolver,
    decrypt_credentials,
    detect_platform,
    encrypt_credentials,
    generate_encryption_key,
)
from deploy_engine.errors import CredentialDecryptError
from deploy_engine.models import SSHKeyCredential, TokenCredential, UsernamePasswordCredential
from deploy_engine.store import CredentialRecord, InMemoryStore, utcnow

KEY = "0f" * 32


class CryptoTests(unittest.TestCase):
    def test_encrypt_then_decrypt(self) -> None:
        blob = encrypt_credentials({"token": "ghp_abc"}, KEY)
        self.assertEqual(decrypt_credentials(blob, KEY), {"token": "ghp_abc"})
        # fresh IV every time
        self.assertNotEqual(blob, encrypt_credentials({"token": "ghp_abc"}, KEY))

    def test_wrong_key_fails(self) -> None:
        blob = encrypt_credentials({"token": "ghp_abc"}, KEY)
        with self.assertRaises(CredentialDecryptError):
            decrypt_credentials(blob, generate_encryption_key())

    def test_malformed_blobs_fail(self) -> None:
        for blob in ("", "abc", "zz" * 40):
            with self.assertRaises(CredentialDecryptError):
                decrypt_credentials(blob, KEY)

    def test_key_validation(self) -> None:
        with self.assertRaises(CredentialDecryptError):
            encrypt_credentials({}, "ab" * 10)
        with self.assertRaises(CredentialDecryptError):
            encrypt_credentials({}, "not hex")


class PlatformDetectionTests(unittest.TestCase):
    def test_detect_platform(self) -> None:
        self.assertEqual(detect_platform("https://github.com/a/b.git"), "github")
        self.assertEqual(detect_platform("https://gitlab.example.com/a/b.git"), "gitlab")
        self.assertEqual(detect_platform("git@bitbucket.org:a/b.git"), "bitbucket")
        self.assertEqual(detect_platform("https://git.example.com/a/b.git"), "custom")
        self.assertEqual(detect_platform(None), "custom")


class CredentialResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryStore()
        self.resolver = CredentialResolver(self.store, KEY)

    def _add(self, cred_id: str, auth_type: str, payload: dict, **kwargs) -> CredentialRecord:
        return self.store.add_credential(
            CredentialRecord(
                id=cred_id,
                auth_type=auth_type,
                encrypted_credentials=encrypt_credentials(payload, KEY),
                **kwargs,
            )
        )

    def test_explicit_id_wins(self) -> None:
        self._add("c1", "username_password", {"username": "bob", "password": "pw"}, owner_id="u1")
        self._add("c2", "token", {"token": "t"}, owner_id="u1", platform="github", is_default=True)
        credential = self.resolver.resolve("https://github.com/a/b.git", owner_id="u1", credential_id="c1")
        self.assertEqual(credential, UsernamePasswordCredential("bob", "pw"))

    def test_inactive_explicit_id_yields_none(self) -> None:
        self._add("c1", "token", {"token": "t"}, is_active=False)
        self.assertIsNone(self.resolver.resolve("https://github.com/a/b.git", credential_id="c1"))

    def test_platform_default_preferred(self) -> None:
        now = utcnow()
        self._add("gl", "token", {"token": "gitlab"}, owner_id="u1", platform="gitlab", is_default=True, created_at=now)
        self._add(
            "gh",
            "token",
            {"token": "github"},
            owner_id="u1",
            platform="github",
            is_default=True,
            created_at=now - timedelta(days=1),
        )
        credential = self.resolver.resolve("https://github.com/a/b.git", owner_id="u1")
        self.assertEqual(credential, TokenCredential("github"))

        # no platform match: newest default
        credential = self.resolver.resolve("https://git.example.com/a/b.git", owner_id="u1")
        self.assertEqual(credential, TokenCredential("gitlab"))

    def test_non_default_credentials_are_not_picked(self) -> None:
        self._add("c1", "token", {"token": "t"}, owner_id="u1", platform="github")
        self.assertIsNone(self.resolver.resolve("https://github.com/a/b.git", owner_id="u1"))

    def test_ssh_credential(self) -> None:
        self._add("c1", "ssh_key", {"privateKey": "-----BEGIN KEY-----"}, owner_id="u1", is_default=True)
        credential = self.resolver.resolve("git@github.com:a/b.git", owner_id="u1")
        self.assertIsInstance(credential, SSHKeyCredential)
        self.assertEqual(credential.username, "git")

    def test_decrypt_failure_is_treated_as_absent(self) -> None:
        self.store.add_credential(
            CredentialRecord(
                id="c1",
                auth_type="token",
                encrypted_credentials=encrypt_credentials({"token": "t"}, generate_encryption_key()),
                owner_id="u1",
                is_default=True,
            )
        )
        with self.assertLogs("deploy_engine.credentials.resolver", level="WARNING"):
            self.assertIsNone(self.resolver.resolve("https://github.com/a/b.git", owner_id="u1"))

    def test_incomplete_payload_is_treated_as_absent(self) -> None:
        self._add("c1", "username_password", {"username": "bob"}, owner_id="u1", is_default=True)
        self.assertIsNone(self.resolver.resolve("https://github.com/a/b.git", owner_id="u1"))


if __name__ == "__main__":
    unittest.main()
