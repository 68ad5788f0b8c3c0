import base64
import os
import tempfile
import unittest
from pathlib import Path

from deploy_engine.errors import UnsupportedAuthModeError
from deploy_engine.models import AuthMode, HostInfo
from deploy_engine.ssh import SSHConnectionError, SSHSession, encode_command, wrap_script


def _decode(command: str) -> str:
    payload = command.split()[1]
    return base64.b64decode(payload).decode("utf-8")


class FakeChannel:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", status: int = 0, finishes: bool = True) -> None:
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self._status = status
        self._finishes = finishes
        self.closed = False

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, size: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        return self._finishes

    def recv_exit_status(self) -> int:
        return self._status

    def close(self) -> None:
        self.closed = True


class FakeStream:
    def __init__(self, channel: FakeChannel) -> None:
        self.channel = channel


class FakeSFTP:
    def __init__(self) -> None:
        self.dirs: list[str] = []
        self.files: dict[str, str] = {}
        self.modes: dict[str, int] = {}
        self.closed = False

    def mkdir(self, path: str) -> None:
        self.dirs.append(path)

    def put(self, local: str, remote: str) -> None:
        self.files[remote] = Path(local).read_text(encoding="utf-8")

    def chmod(self, path: str, mode: int) -> None:
        self.modes[path] = mode

    def close(self) -> None:
        self.closed = True


class FakeSSHClient:
    def __init__(self, channels=None) -> None:
        self.connected = False
        self.closed = False
        self.commands: list[str] = []
        self.channels = list(channels or [])
        self.sftp = FakeSFTP()

    def set_missing_host_key_policy(self, policy) -> None:  # pragma: no cover - noop
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connected = True
        self.kwargs = kwargs

    def exec_command(self, command: str, timeout=None):
        self.commands.append(command)
        channel = self.channels.pop(0) if self.channels else FakeChannel(b"ok\n")
        return (None, FakeStream(channel), FakeStream(channel))

    def open_sftp(self) -> FakeSFTP:
        return self.sftp

    def close(self) -> None:
        self.closed = True


def _host(**overrides) -> HostInfo:
    values = dict(
        host_id="h1",
        address="example.com",
        username="deploy",
        auth_mode=AuthMode.PASSWORD,
        port=2222,
        password="secret",
    )
    values.update(overrides)
    return HostInfo(**values)


class ScriptEncodingTests(unittest.TestCase):
    def test_wrap_script_quotes_env_and_cwd(self) -> None:
        wrapped = wrap_script("echo $A", {"A": "x y'z"}, "/srv/my app")
        self.assertIn("export A='x y'\"'\"'z'", wrapped)
        self.assertIn("cd '/srv/my app' || exit 1", wrapped)
        self.assertTrue(wrapped.endswith("echo $A\n"))

    def test_encode_command_is_base64_pipeline(self) -> None:
        script = "echo \"it's\"\nprintf '%s' \"$HOME\""
        command = encode_command(script)
        self.assertTrue(command.startswith("echo "))
        self.assertTrue(command.endswith(" | base64 -d | bash"))
        self.assertEqual(_decode(command), script)


class SSHSessionTests(unittest.TestCase):
    def test_run_script_uses_client_factory(self) -> None:
        client = FakeSSHClient([FakeChannel(b"line one\nline two\n", b"warn\n", status=0)])
        session = SSHSession(_host(), client_factory=lambda: client)
        lines = []
        with session:
            result = session.run_script(
                "echo test",
                env={"APP": "demo"},
                cwd="/srv/app",
                on_line=lambda line, stream: lines.append((stream, line)),
            )
        self.assertTrue(result.ok)
        self.assertEqual(result.stdout, "line one\nline two")
        self.assertEqual(result.stderr, "warn")
        self.assertIn(("stdout", "line two"), lines)
        self.assertIn(("stderr", "warn"), lines)
        self.assertTrue(client.closed)

        self.assertEqual(client.kwargs["hostname"], "example.com")
        self.assertEqual(client.kwargs["port"], 2222)
        self.assertEqual(client.kwargs["password"], "secret")
        self.assertFalse(client.kwargs["look_for_keys"])

        script = _decode(client.commands[0])
        self.assertIn("export APP=demo", script)
        self.assertIn("cd /srv/app || exit 1", script)
        self.assertIn("echo test", script)

    def test_key_auth_passes_key_filename(self) -> None:
        client = FakeSSHClient()
        session = SSHSession(
            _host(auth_mode=AuthMode.KEY, password=None, key_path="~/.ssh/id_ed25519"),
            client_factory=lambda: client,
        )
        session.connect()
        self.assertEqual(client.kwargs["key_filename"], os.path.expanduser("~/.ssh/id_ed25519"))
        self.assertNotIn("password", client.kwargs)

    def test_non_zero_exit(self) -> None:
        client = FakeSSHClient([FakeChannel(b"", b"boom\n", status=2)])
        result = SSHSession(_host(), client_factory=lambda: client).run_script("false")
        self.assertFalse(result.ok)
        self.assertEqual(result.exit_code, 2)
        self.assertEqual(result.stderr, "boom")

    def test_timeout_closes_channel(self) -> None:
        channel = FakeChannel(b"partial\n", finishes=False)
        client = FakeSSHClient([channel])
        session = SSHSession(_host(), client_factory=lambda: client, poll_interval=0.01)
        result = session.run_script("sleep 100", timeout=0.05)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.exit_code, -1)
        self.assertTrue(channel.closed)
        self.assertEqual(result.stdout, "partial")

    def test_local_host_is_rejected(self) -> None:
        with self.assertRaises(UnsupportedAuthModeError):
            SSHSession(_host(auth_mode=AuthMode.LOCAL))

    def test_missing_password_is_rejected(self) -> None:
        session = SSHSession(_host(password=None), client_factory=FakeSSHClient)
        with self.assertRaises(UnsupportedAuthModeError):
            session.connect()

    def test_upload_directory_mirrors_tree(self) -> None:
        client = FakeSSHClient()
        session = SSHSession(_host(), client_factory=lambda: client)
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "app.sh").write_text("#!/bin/sh\n", encoding="utf-8")
            os.chmod(root / "app.sh", 0o755)
            (root / "conf").mkdir()
            (root / "conf" / "settings.ini").write_text("a=1", encoding="utf-8")
            (root / ".git").mkdir()
            (root / ".git" / "HEAD").write_text("ref", encoding="utf-8")

            with session:
                count = session.upload_directory(root, "/tmp/deployment-1")

        self.assertEqual(count, 2)
        self.assertIn("rm -rf /tmp/deployment-1 && mkdir -p /tmp/deployment-1", _decode(client.commands[0]))
        self.assertEqual(client.sftp.dirs, ["/tmp/deployment-1/conf"])
        self.assertEqual(client.sftp.files["/tmp/deployment-1/conf/settings.ini"], "a=1")
        self.assertEqual(client.sftp.modes["/tmp/deployment-1/app.sh"], 0o755)
        self.assertFalse(any(".git" in path for path in client.sftp.files))
        self.assertTrue(client.sftp.closed)

    def test_upload_directory_fails_when_remote_dir_cannot_be_prepared(self) -> None:
        client = FakeSSHClient([FakeChannel(b"", b"read-only file system\n", status=1)])
        session = SSHSession(_host(), client_factory=lambda: client)
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SSHConnectionError):
                session.upload_directory(Path(tmp), "/readonly/x")


if __name__ == "__main__":
    unittest.main()
