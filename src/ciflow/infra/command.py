"""Subprocess command runner with logging."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from ciflow.exceptions import ErrorKind

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        exit_code: Exit code of the process (-1 if it could not be started).
        stdout: Captured stdout.
        stderr: Captured stderr (launch errors are reported here too).
        duration_ms: Wall-clock duration in milliseconds.
        command: The command that was run.
        cwd: Working directory where command ran.
        error_kind: Failure kind, or None when the command exited 0.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    command: list[str] | None = None
    cwd: Path | None = None
    error_kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        """Check if the command succeeded."""
        return self.error_kind is None and self.exit_code == 0

    def stderr_tail(self, lines: int = 20) -> str:
        """Get the last lines of stderr.

        Args:
            lines: Number of lines to return.

        Returns:
            Last N lines of stderr.
        """
        if not self.stderr:
            return ""
        return "\n".join(self.stderr.splitlines()[-lines:])


class CommandRunner:
    """Runs subprocess commands with consistent logging.

    Every external tool a pipeline invokes goes through this class. ``run``
    never raises for process-level problems: launch failures, non-zero
    exits and timeouts all come back as a ``CommandResult``.

    Each command is started in its own session so that a timeout or an
    abort can terminate the whole process group.

    Example:
        >>> runner = CommandRunner()
        >>> result = runner.run(["echo", "hello"], cwd=Path("/tmp"))
        >>> result.exit_code
        0
        >>> result.stdout
        'hello\\n'
    """

    def __init__(
        self,
        dry_run: bool = False,
        heartbeat_interval: int = 30,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        """Initialize the command runner.

        Args:
            dry_run: If True, commands are logged but not executed.
            heartbeat_interval: Interval in seconds for heartbeat logging (0 to disable).
            kill_grace_seconds: Seconds to wait after SIGTERM before SIGKILL.
        """
        self.dry_run = dry_run
        self.heartbeat_interval = heartbeat_interval
        self.kill_grace_seconds = kill_grace_seconds
        self._lock = threading.Lock()
        self._active: subprocess.Popen[str] | None = None
        self._cancelled = False

    @staticmethod
    def _heartbeat_logger(
        log: structlog.BoundLogger, stop_event: threading.Event, interval: int
    ) -> None:
        """Log heartbeat messages while a command is running.

        Args:
            log: Logger instance.
            stop_event: Event to signal when to stop.
            interval: Interval in seconds between heartbeats.
        """
        elapsed = 0
        while not stop_event.wait(timeout=interval):
            elapsed += interval
            log.info("Command still running", elapsed_seconds=elapsed)

    def run(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command and capture its output in memory.

        Args:
            command: Command and arguments to run.
            cwd: Working directory for the command.
            env: Environment overrides (merged over the current environment).
            timeout: Timeout in seconds.

        Returns:
            CommandResult with exit code, output and failure kind.
        """
        log = logger.bind(command=command, cwd=str(cwd) if cwd else None)
        log.info("Running command")
        start = time.perf_counter()

        if not command:
            log.error("Command could not be started", error="empty command")
            return CommandResult(
                exit_code=-1,
                stderr=f"{ErrorKind.LAUNCH_FAILURE.value}: empty command",
                command=command,
                cwd=cwd,
                error_kind=ErrorKind.LAUNCH_FAILURE,
            )

        if self.dry_run:
            log.info("Dry run - skipping execution")
            return CommandResult(exit_code=0, command=command, cwd=cwd)

        # Built per call so overrides never leak into the orchestrator's own environment
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=full_env,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            log.error("Command could not be started", error=str(e))
            return CommandResult(
                exit_code=-1,
                stderr=f"{ErrorKind.LAUNCH_FAILURE.value}: {e}",
                duration_ms=self._elapsed_ms(start),
                command=command,
                cwd=cwd,
                error_kind=ErrorKind.LAUNCH_FAILURE,
            )

        with self._lock:
            self._active = process
            self._cancelled = False

        # Start heartbeat logging if enabled and timeout is long enough
        stop_heartbeat = threading.Event()
        heartbeat_thread = None
        if self.heartbeat_interval > 0 and (
            timeout is None or timeout > self.heartbeat_interval
        ):
            heartbeat_thread = threading.Thread(
                target=self._heartbeat_logger,
                args=(log, stop_heartbeat, self.heartbeat_interval),
                daemon=True,
            )
            heartbeat_thread.start()

        timed_out = False
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            log.error("Command timed out", timeout=timeout)
            timed_out = True
            self._terminate(process, log)
            stdout, stderr = process.communicate()
        except BaseException:
            # Interrupted (e.g. KeyboardInterrupt): never leave the child behind
            self._terminate(process, log)
            raise
        finally:
            if heartbeat_thread:
                stop_heartbeat.set()
                heartbeat_thread.join(timeout=1)
            with self._lock:
                self._active = None
                cancelled = self._cancelled

        stdout = stdout or ""
        stderr = stderr or ""
        exit_code = process.returncode
        duration_ms = self._elapsed_ms(start)

        error_kind: ErrorKind | None = None
        if timed_out:
            error_kind = ErrorKind.TIMEOUT
            stderr += f"\n{ErrorKind.TIMEOUT.value}: command exceeded {timeout}s"
        elif cancelled:
            error_kind = ErrorKind.ABORTED
        elif exit_code != 0:
            error_kind = ErrorKind.NON_ZERO_EXIT

        log.info(
            "Command completed",
            returncode=exit_code,
            duration_ms=duration_ms,
            error_kind=error_kind.value if error_kind else None,
        )

        return CommandResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            command=command,
            cwd=cwd,
            error_kind=error_kind,
        )

    def terminate_active(self) -> bool:
        """Terminate the in-flight command, if any.

        Safe to call from a signal handler or another thread.

        Returns:
            True if a running process was signalled.
        """
        with self._lock:
            process = self._active
            if process is None:
                return False
            self._cancelled = True

        log = logger.bind(pid=process.pid)
        log.warning("Terminating in-flight command")
        self._terminate(process, log)
        return True

    def _terminate(
        self, process: subprocess.Popen[str], log: structlog.BoundLogger
    ) -> None:
        """Send SIGTERM to the process group, then SIGKILL after the grace period."""
        if process.poll() is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
            try:
                process.wait(timeout=self.kill_grace_seconds)
            except subprocess.TimeoutExpired:
                log.warning("Force killing command", pid=process.pid)
                os.killpg(process.pid, signal.SIGKILL)
                process.wait(timeout=2)
        except (ProcessLookupError, PermissionError) as e:
            log.warning("Failed to signal process group", error=str(e))

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)
