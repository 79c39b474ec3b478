"""Spawning and supervising backend daemons.

This uses the :mod:`mirakuru` library to start and kill the daemon process
and its process group.
"""
import errno
import os
import socket
import subprocess
import threading
from contextlib import closing
from pathlib import Path
from typing import IO, List, Optional

import gevent
import mirakuru
import structlog

from chain_forge.constants import EARLY_EXIT_GRACE, LOCALHOST
from chain_forge.exceptions import NodeManagementError
from chain_forge.utils.logs import collect_error_lines

log = structlog.get_logger(__name__)

try:
    import resource
except ImportError:  # Windows
    resource = None


def unused_port(host: str = LOCALHOST) -> int:
    """Ask the OS for a port nobody is listening on."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        return sock.getsockname()[1]


def port_in_use(port: int, host: str = "0.0.0.0") -> bool:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as ex:
            if ex.errno in (errno.EADDRINUSE, errno.EACCES):
                return True
            raise
    return False


def daemon_preexec(open_files_limit: Optional[int] = None):
    """Build a `preexec_fn` moving the child into its own session.

    If `open_files_limit` is given, the child's soft RLIMIT_NOFILE is raised
    towards it, bounded by the hard limit.
    """

    def preexec():
        os.setsid()
        if open_files_limit is None or resource is None:
            return
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
        target = open_files_limit
        if hard != resource.RLIM_INFINITY:
            target = min(open_files_limit, hard)
        if target > soft:
            try:
                resource.setrlimit(resource.RLIMIT_NOFILE, (target, hard))
            except (ValueError, OSError):
                # Best effort, the daemon reports its own limits.
                pass

    return preexec


class DaemonExecutor(mirakuru.SimpleExecutor):
    """Mirakuru Executor Subclass with a few customizations.

    Allows redirecting stdout and stderr when calling :meth:`.start`, and
    passing a custom `preexec_fn` which must call :func:`os.setsid`, since
    mirakuru signals the whole process group.
    """

    def start(self, stdout=subprocess.PIPE, stderr=subprocess.PIPE, preexec_fn=os.setsid):
        if self.process is None:
            command = self.command
            if not self._shell:
                command = self.command_parts

            env = os.environ.copy()
            env[mirakuru.base.ENV_UUID] = self._uuid
            self.process = subprocess.Popen(
                command,
                shell=self._shell,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                universal_newlines=True,
                env=env,
                preexec_fn=preexec_fn,
            )

        self._set_timeout()
        return self

    @property
    def returncode(self) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.poll()


class ProcessSupervisor:
    """Owns at most one daemon process.

    The handle is guarded by a lock, since an explicit :meth:`stop` and the
    interpreter exit backstop may race.
    """

    def __init__(self, label: str, verbose: bool = False, open_files_limit: Optional[int] = None):
        self.label = label
        self.verbose = verbose
        self.open_files_limit = open_files_limit
        self._lock = threading.Lock()
        self._executor: Optional[DaemonExecutor] = None
        self._log_files: List[IO] = []
        self.stdout_log: Optional[Path] = None
        self.stderr_log: Optional[Path] = None

    @staticmethod
    def preflight_port(port: int, label: str) -> None:
        """Fail if `port` is already bound by another process."""
        if port_in_use(port):
            raise NodeManagementError(
                f"{label} port {port} is already in use. "
                f"Check for other running validators or services."
            )

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            if self._executor is None or self._executor.process is None:
                return None
            return self._executor.process.pid

    def is_running(self) -> bool:
        """Return True while we hold a process handle."""
        with self._lock:
            return self._executor is not None

    def spawn(self, command: List[str], log_dir: Path) -> None:
        """Launch `command`, writing its output into `log_dir` unless in verbose mode."""
        with self._lock:
            if self._executor is not None:
                raise NodeManagementError(f"{self.label} is already running")

            stdout = stderr = None
            if not self.verbose:
                log_dir.mkdir(parents=True, exist_ok=True)
                self.stdout_log = log_dir.joinpath(f"{self.label}_stdout.log")
                self.stderr_log = log_dir.joinpath(f"{self.label}_stderr.log")
                stdout = open(self.stdout_log, "a")
                stderr = open(self.stderr_log, "a")
                self._log_files = [stdout, stderr]

            executor = DaemonExecutor(command)
            try:
                executor.start(
                    stdout=stdout,
                    stderr=stderr,
                    preexec_fn=daemon_preexec(self.open_files_limit),
                )
            except OSError as e:
                self._close_log_files()
                raise NodeManagementError(f"Failed to start {self.label}: {e}") from e

            self._executor = executor
            log.info("Spawned daemon", label=self.label, pid=executor.process.pid)

    def check_early_exit(self, grace: float = EARLY_EXIT_GRACE, diagnostic_log: Path = None):
        """Wait `grace` seconds and fail if the daemon already died.

        The error carries panic/error lines of `diagnostic_log` if any,
        otherwise the exit code and where to look for output.
        """
        gevent.sleep(grace)

        with self._lock:
            executor = self._executor
            if executor is None:
                raise NodeManagementError(f"{self.label} is not running")
            returncode = executor.returncode
            if returncode is None:
                return
            self._executor = None
            self._close_log_files()

        error_lines = collect_error_lines(diagnostic_log) if diagnostic_log else []
        if error_lines:
            details = "\n".join(error_lines)
            raise NodeManagementError(f"{self.label} exited immediately:\n{details}")

        location = diagnostic_log or self.stderr_log or "the console output"
        raise NodeManagementError(
            f"{self.label} exited immediately with {returncode}. Check {location} for details."
        )

    def stop(self) -> bool:
        """Kill the daemon and wait for it. Returns False if there was nothing to stop.

        The handle is released even if killing fails.
        """
        with self._lock:
            executor, self._executor = self._executor, None
            if executor is None:
                return False
            try:
                executor.kill(wait=True)
            except (OSError, mirakuru.exceptions.ExecutorError) as e:
                log.warning("Failed to kill daemon", label=self.label, error=str(e))
            finally:
                self._close_log_files()
        log.info("Stopped daemon", label=self.label)
        return True

    def _close_log_files(self):
        for log_file in self._log_files:
            log_file.close()
        self._log_files = []
