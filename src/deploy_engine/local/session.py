"""Local script execution session."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import IO, Callable, List, Mapping, Optional, Union

from ..models import DEFAULT_SCRIPT_TIMEOUT, ScriptResult
from ..utils.logging import get_logger

logger = get_logger(__name__)

# (line, stream_name) where stream_name is "stdout" or "stderr"
LineCallback = Callable[[str, str], None]


class LocalSession:
    """
    Runs bash scripts on the current machine.

    Each script runs in its own process group so a timeout can take down the
    whole tree: SIGTERM first, SIGKILL once the grace period has passed.
    """

    def __init__(
        self,
        working_dir: Optional[Union[str, Path]] = None,
        *,
        shell: str = "bash",
        kill_grace_period: float = 5,
    ) -> None:
        self.working_dir = str(working_dir) if working_dir else None
        self.shell = shell
        self.kill_grace_period = kill_grace_period

    def __enter__(self) -> "LocalSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def run(
        self,
        script: str,
        *,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = DEFAULT_SCRIPT_TIMEOUT,
        on_line: Optional[LineCallback] = None,
    ) -> ScriptResult:
        """
        Execute ``script`` with ``bash -c``.

        Args:
            script: Script text; may span several lines.
            cwd: Working directory (defaults to the session's).
            env: Extra variables merged over the current environment.
            timeout: Seconds before the process group is terminated. None waits forever.
            on_line: Called with every output line as it arrives.

        Returns:
            ScriptResult; on timeout ``timed_out`` is set and ``exit_code`` is -1.
        """
        full_env = os.environ.copy()
        if env:
            full_env.update({key: str(value) for key, value in env.items()})
        workdir = str(cwd) if cwd else self.working_dir

        try:
            process = subprocess.Popen(
                [self.shell, "-c", script],
                cwd=workdir,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Failed to start %s in %s: %s", self.shell, workdir, exc)
            return ScriptResult(stdout="", stderr=str(exc), exit_code=-1)

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(
                target=_pump, args=(process.stdout, stdout_lines, "stdout", on_line), daemon=True
            ),
            threading.Thread(
                target=_pump, args=(process.stderr, stderr_lines, "stderr", on_line), daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("Script exceeded %ss, terminating process group %s", timeout, process.pid)
            self._terminate(process)

        for reader in readers:
            reader.join(timeout=5)

        return ScriptResult(
            stdout="".join(stdout_lines).strip(),
            stderr="".join(stderr_lines).strip(),
            exit_code=-1 if timed_out else process.returncode,
            timed_out=timed_out,
        )

    def _terminate(self, process: subprocess.Popen) -> None:
        self._signal_group(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.kill_grace_period)
            return
        except subprocess.TimeoutExpired:
            pass
        self._signal_group(process, signal.SIGKILL)
        process.wait()

    @staticmethod
    def _signal_group(process: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass


def _pump(
    stream: IO[str],
    sink: List[str],
    name: str,
    on_line: Optional[LineCallback],
) -> None:
    for line in stream:
        sink.append(line)
        if on_line is not None:
            on_line(line.rstrip("\n"), name)
    stream.close()
