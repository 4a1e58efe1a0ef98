"""Build/test validation through external processes.

Commands run in their own process group under an enforced timeout. On
timeout or cancellation the whole group is killed and reaped before the
result is returned, so nothing is left running behind a retry or abort.
Any non-zero exit is a failure regardless of output.
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union, TYPE_CHECKING

from ..errors import ValidationError

if TYPE_CHECKING:
    from ..config import MigrationConfig
    from ..context import SessionContext

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

# Output kept per command (tail)
MAX_CAPTURED_OUTPUT = 20_000


@dataclass
class CommandResult:
    """Exit code and captured output of one external command."""
    command: List[str]
    exit_code: Optional[int]
    output: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


@dataclass
class ValidationOutcome:
    """Build then test results for one validation attempt."""
    build: Optional[CommandResult] = None
    test: Optional[CommandResult] = None
    checks: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in (self.build, self.test) if r is not None)

    @property
    def cancelled(self) -> bool:
        return any(r.cancelled for r in (self.build, self.test) if r is not None)

    @property
    def failed_phase(self) -> Optional[str]:
        if self.build is not None and not self.build.success:
            return "build"
        if self.test is not None and not self.test.success:
            return "test"
        return None

    def raise_for_failure(self, stage_id: str) -> None:
        """Raise ValidationError when the attempt did not pass."""
        phase = self.failed_phase
        if phase is None:
            return
        result = self.build if phase == "build" else self.test
        if result.timed_out:
            reason = f"{phase} timed out after {result.duration_seconds:.1f}s"
        elif result.cancelled:
            reason = f"{phase} cancelled"
        else:
            reason = f"{phase} exited with code {result.exit_code}"
        raise ValidationError(
            f"Stage {stage_id}: {reason}", stage_id, phase,
            details=result.output[-2000:],
        )


def to_argv(command: Command) -> List[str]:
    if isinstance(command, str):
        return shlex.split(command)
    return list(command)


class CommandRunner:
    """Run one external command with timeout and cancellation.

    Args:
        poll_interval: Seconds between timeout/cancellation checks
    """

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval

    def run(
        self,
        command: Command,
        cwd: str,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> CommandResult:
        argv = to_argv(command)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            logger.warning(f"Cannot start {argv[:1]}: {e}")
            return CommandResult(argv, None, f"Cannot start command: {e}", 0.0)

        deadline = start + timeout
        timed_out = cancelled = False
        output = ""

        while True:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                output = self._kill(proc)
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                output = self._kill(proc)
                break
            try:
                output, _ = proc.communicate(timeout=min(self.poll_interval, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        duration = time.monotonic() - start
        if timed_out:
            logger.warning(f"Command timed out after {timeout}s and was killed: {' '.join(argv)}")
        elif cancelled:
            logger.warning(f"Command cancelled and killed: {' '.join(argv)}")

        return CommandResult(
            command=argv,
            exit_code=proc.returncode,
            output=(output or "")[-MAX_CAPTURED_OUTPUT:],
            duration_seconds=duration,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> str:
        """Kill the process group and reap the child."""
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        try:
            output, _ = proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            output, _ = proc.communicate()
        return output or ""


class StageValidator:
    """Run the project's build then test checks for a stage.

    At most one validation runs at a time per validator (one per session):
    the phase is guarded by a single-slot semaphore.
    """

    def __init__(
        self,
        project_root: str,
        build_command: Command = "",
        test_command: Command = "",
        build_timeout: float = 120.0,
        test_timeout: float = 300.0,
        runner: Optional[CommandRunner] = None,
        context: Optional["SessionContext"] = None,
    ):
        self.project_root = project_root
        self.build_command = build_command
        self.test_command = test_command
        self.build_timeout = build_timeout
        self.test_timeout = test_timeout
        self._runner = runner or CommandRunner()
        self._context = context
        self._log = context.logger if context else logger
        self._slot = threading.BoundedSemaphore(1)

    @classmethod
    def from_config(
        cls,
        project_root: str,
        config: "MigrationConfig",
        context: Optional["SessionContext"] = None,
        runner: Optional[CommandRunner] = None,
    ) -> "StageValidator":
        return cls(
            project_root,
            build_command=config.build_command,
            test_command=config.test_command,
            build_timeout=config.build_timeout,
            test_timeout=config.test_timeout,
            runner=runner,
            context=context,
        )

    def validate(self, stage_id: str, cancel_event: Optional[threading.Event] = None) -> ValidationOutcome:
        """Run build, then test if the build passed."""
        outcome = ValidationOutcome()
        with self._slot:
            if self._context:
                self._context.incr("validations")

            if self.build_command:
                self._log.info(f"Stage {stage_id}: running build")
                outcome.build = self._runner.run(
                    self.build_command, self.project_root, self.build_timeout, cancel_event,
                )
                outcome.checks.append("build")
                if not outcome.build.success:
                    return outcome

            if self.test_command:
                self._log.info(f"Stage {stage_id}: running tests")
                outcome.test = self._runner.run(
                    self.test_command, self.project_root, self.test_timeout, cancel_event,
                )
                outcome.checks.append("test")

        return outcome
