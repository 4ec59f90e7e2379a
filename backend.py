"""
Backend abstraction for workspace file and command operations.
The orchestrator treats this as the external workspace manager: it only
reads files, writes files, deletes files and runs commands through it.
"""

import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type, ext?, size?}."""

    @abstractmethod
    def read_file(self, path: str, strict: bool = False) -> str:
        """Read file content as text. With strict=True, undecodable bytes raise UnicodeDecodeError."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def is_file(self, path: str) -> bool:
        """Check if a path is a file."""

    @abstractmethod
    def remove_file(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    def cancel_running_command(self) -> bool:
        """Kill the currently running command, if any. Returns True if killed."""
        return False

    def read_file_or_none(self, path: str, strict: bool = False) -> Optional[str]:
        """Read a file, or None when it does not exist (used for snapshots)."""
        if not self.is_file(path):
            return None
        return self.read_file(path, strict=strict)

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(self.working_directory, path))

    def _ensure_under_working(self, resolved: str) -> None:
        """Raise ValueError if resolved path escapes the working directory. Overridden by backends."""


# ============================================================
# Local Backend
# ============================================================

class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._active_process: Optional[subprocess.Popen] = None

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        # Symlinks are resolved on both sides so a link cannot lead out of the workspace
        real = os.path.realpath(resolved)
        wd = os.path.realpath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _full(self, path: str) -> str:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return full

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self._full(path) if path else self._working_directory
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.isdir(child):
                entries.append({"name": name, "type": "directory"})
            elif os.path.isfile(child):
                _, ext = os.path.splitext(name)
                entries.append({
                    "name": name, "type": "file",
                    "ext": ext.lstrip("."),
                    "size": os.path.getsize(child),
                })
        return entries

    def read_file(self, path: str, strict: bool = False) -> str:
        # newline="" keeps CRLF intact, so a snapshot restores the exact text
        errors = "strict" if strict else "replace"
        with open(self._full(path), "r", encoding="utf-8", errors=errors, newline="") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        """Write through a temp file and os.replace so a failed write never leaves half a file."""
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        tmp_path = f"{full}.{os.getpid()}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            if os.path.exists(full):
                os.chmod(tmp_path, os.stat(full).st_mode & 0o7777)
            os.replace(tmp_path, full)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def file_exists(self, path: str) -> bool:
        return os.path.exists(self._full(path))

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self._full(path))

    def is_file(self, path: str) -> bool:
        return os.path.isfile(self._full(path))

    def remove_file(self, path: str) -> None:
        os.remove(self._full(path))

    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        full_cwd = self._full(cwd) if cwd not in (".", "") else self._working_directory
        proc = subprocess.Popen(
            command, shell=True, cwd=full_cwd,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            preexec_fn=os.setsid,  # create process group for clean kill
        )
        # Track the process so it can be killed on cancel
        self._active_process = proc
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        finally:
            self._active_process = None
        return stdout or "", stderr or "", proc.returncode

    def cancel_running_command(self) -> bool:
        """Kill the currently running subprocess, if any. Returns True if killed."""
        proc = self._active_process
        if proc and proc.poll() is None:
            logger.info(f"Killing running command pid={proc.pid}")
            self._kill_process(proc)
            return True
        return False

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
