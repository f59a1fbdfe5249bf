"""
Local execution backend: the file and process operations tools run through.

Paths are resolved against a working directory and may not escape it.
Commands run in their own process group so a timeout or a cancelled run can
kill the whole tree.
"""

import logging
import os
import pathlib
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# on_output(line, is_stderr), called from the pipe reader threads
OutputCallback = Callable[[str, bool], None]


class Backend(ABC):
    """What a tool may do to the machine. LocalBackend is the only implementation."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        ...

    @abstractmethod
    def read_file(self, path: str) -> str:
        ...

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Create or overwrite, making parent directories."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        ...

    @abstractmethod
    def run_command_stream(
        self,
        command: str,
        cwd: str = ".",
        timeout: int = 30,
        on_output: Optional[OutputCallback] = None,
        cancel: Optional[Any] = None,
    ) -> Tuple[str, str, int]:
        """Run a shell command to completion and return (stdout, stderr, returncode).

        timeout=0 means no deadline. `cancel` is anything with is_set().
        Return code -1 means timed out, -2 means cancelled.
        """

    def cancel_running_commands(self) -> int:
        return 0

    @abstractmethod
    def search(self, pattern: str, path: str, include: Optional[str] = None) -> str:
        """Regex search; returns path:line:text lines relative to the working directory."""

    @abstractmethod
    def glob_find(self, pattern: str, cwd: str = ".") -> List[str]:
        ...

    def resolve_path(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(self.working_directory, path))


_HAS_RIPGREP: Optional[bool] = None


def _has_ripgrep() -> bool:
    global _HAS_RIPGREP
    if _HAS_RIPGREP is None:
        try:
            subprocess.run(["rg", "--version"], capture_output=True, check=True)
            _HAS_RIPGREP = True
        except (subprocess.CalledProcessError, FileNotFoundError):
            _HAS_RIPGREP = False
    return _HAS_RIPGREP


class LocalBackend(Backend):
    """Backend that operates on the local filesystem.

    Safe to share between threads: each command owns its own Popen and the
    set of running processes is lock-guarded.
    """

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._processes_lock = threading.Lock()
        self._active_processes: set = set()

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def read_file(self, path: str) -> str:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def file_exists(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.exists(full)

    def is_dir(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.isdir(full)

    def run_command_stream(
        self,
        command: str,
        cwd: str = ".",
        timeout: int = 30,
        on_output: Optional[OutputCallback] = None,
        cancel: Optional[Any] = None,
    ) -> Tuple[str, str, int]:
        full_cwd = self.resolve_path(cwd) if cwd != "." else self._working_directory
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=full_cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            start_new_session=True,  # own process group for clean kill
        )
        with self._processes_lock:
            self._active_processes.add(proc)

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def _reader(pipe, is_stderr: bool):
            for line in iter(pipe.readline, ""):
                (stderr_lines if is_stderr else stdout_lines).append(line)
                if on_output:
                    try:
                        on_output(line, is_stderr)
                    except Exception:
                        logger.exception("Command output callback failed")

        t_out = threading.Thread(target=_reader, args=(proc.stdout, False), daemon=True)
        t_err = threading.Thread(target=_reader, args=(proc.stderr, True), daemon=True)
        t_out.start()
        t_err.start()

        deadline = time.monotonic() + timeout if timeout else None
        rc: Optional[int] = None
        try:
            while rc is None:
                try:
                    rc = proc.wait(timeout=0.1)
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        self._kill_process(proc)
                        proc.wait()
                        rc = -2
                        stderr_lines.append("Command cancelled\n")
                    elif deadline is not None and time.monotonic() >= deadline:
                        self._kill_process(proc)
                        proc.wait()
                        rc = -1
                        timeout_msg = f"Command timed out after {timeout}s\n"
                        stderr_lines.append(timeout_msg)
                        if on_output:
                            on_output(timeout_msg, True)
        finally:
            with self._processes_lock:
                self._active_processes.discard(proc)
            t_out.join(timeout=1.0)
            t_err.join(timeout=1.0)
            for pipe in (proc.stdout, proc.stderr):
                if pipe:
                    pipe.close()

        return "".join(stdout_lines), "".join(stderr_lines), rc

    def cancel_running_commands(self) -> int:
        with self._processes_lock:
            procs = [p for p in self._active_processes if p.poll() is None]
        for proc in procs:
            self._kill_process(proc)
        return len(procs)

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        """Kill a process and its entire process group."""
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass

    def search(self, pattern: str, path: str, include: Optional[str] = None) -> str:
        search_path = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(search_path)

        if _has_ripgrep():
            cmd = ["rg", "--line-number", "--no-heading", "--color=never", "-m", "100"]
            if include:
                cmd.extend(["--glob", include])
            cmd.extend(["--", pattern, search_path])
        else:
            cmd = ["grep", "-rnE", "--color=never"]
            if include:
                cmd.extend(["--include", include])
            cmd.extend(["--", pattern, search_path])

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=15,
                                cwd=self._working_directory)
        output = result.stdout.strip() if result.stdout else ""
        prefix = self._working_directory + os.sep
        return "\n".join(
            line[len(prefix):] if line.startswith(prefix) else line
            for line in output.splitlines()
        )

    def glob_find(self, pattern: str, cwd: str = ".") -> List[str]:
        base = pathlib.Path(self.resolve_path(cwd) if cwd != "." else self._working_directory)
        matches = []
        for p in sorted(base.glob(pattern)):
            matches.append(str(p.relative_to(base)))
        return matches
