from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
from typing import Any, Callable, Iterable, Mapping, TypeVar

import yaml

from .errors import ExternalCommandError, OperationCancelledError, PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    command: list[str],
    *,
    operation: str | None = None,
    timeout_seconds: float | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
) -> CommandResult:
    """Run an external management command and capture stdout and stderr together.

    A non-zero exit raises ``ExternalCommandError`` carrying the captured output
    verbatim unless ``check`` is false.
    """
    if not command:
        raise ValueError("command must not be empty")
    label = operation or shlex.join(command)

    binary = shutil.which(command[0])
    if binary is None:
        raise ExternalCommandError(
            operation=label,
            output=f"{command[0]} is required but was not found in PATH",
            command=command,
        )

    environment = None
    if env:
        environment = os.environ.copy()
        environment.update(env)

    logger.debug("Running %s", shlex.join(command))
    try:
        completed = subprocess.run(
            [binary, *command[1:]],
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout_seconds,
            env=environment,
        )
    except subprocess.TimeoutExpired as error:
        partial = error.output if isinstance(error.output, str) else ""
        raise ExternalCommandError(
            operation=label,
            output=f"{partial}\ncommand exceeded {timeout_seconds}s timeout",
            command=command,
        ) from error

    result = CommandResult(command=tuple(command), returncode=completed.returncode, output=completed.stdout or "")
    if check and not result.ok:
        raise ExternalCommandError(
            operation=label,
            output=result.output,
            returncode=result.returncode,
            command=command,
        )
    return result


@dataclass(frozen=True)
class Kubectl:
    kubeconfig_path: str | None = None
    context: str | None = None

    def base_command(self) -> list[str]:
        command = ["kubectl"]
        kubeconfig_path = self.kubeconfig_path.strip() if self.kubeconfig_path else None
        if kubeconfig_path:
            command.extend(["--kubeconfig", str(Path(kubeconfig_path).expanduser())])
        if self.context:
            command.extend(["--context", self.context])
        return command

    def run(self, *args: str, operation: str | None = None, timeout_seconds: float | None = None) -> CommandResult:
        return run_command(
            [*self.base_command(), *args],
            operation=operation or f"kubectl {' '.join(args)}",
            timeout_seconds=timeout_seconds,
        )

    def apply_manifests(self, documents: Iterable[dict[str, Any]], *, operation: str) -> CommandResult:
        """Render documents to a temporary manifest, apply it, then remove the file."""
        rendered = yaml.safe_dump_all(list(documents), sort_keys=False)
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", prefix="nevm-", delete=False) as handle:
            handle.write(rendered)
            manifest_path = Path(handle.name)
        try:
            return self.run("apply", "-f", str(manifest_path), operation=operation)
        finally:
            manifest_path.unlink(missing_ok=True)


def poll_until(
    check: Callable[[int], T | None],
    *,
    subject: str,
    interval_seconds: float,
    max_attempts: int,
    cancel_event: threading.Event | None = None,
) -> T:
    """Call ``check`` until it returns a value, at most ``max_attempts`` times.

    ``check`` receives the 1-based attempt number and returns ``None`` to keep
    waiting. Cancellation is observed before each attempt and while sleeping.
    """
    if max_attempts <= 0:
        raise ValueError("max_attempts must be positive")

    event = cancel_event or threading.Event()
    for attempt in range(1, max_attempts + 1):
        if event.is_set():
            raise OperationCancelledError(subject)
        value = check(attempt)
        if value is not None:
            return value
        if attempt < max_attempts and event.wait(interval_seconds):
            raise OperationCancelledError(subject)

    raise PollTimeoutError(subject=subject, attempts=max_attempts)


def sleep_unless_cancelled(seconds: float, *, subject: str, cancel_event: threading.Event | None = None) -> None:
    if seconds <= 0:
        return
    event = cancel_event or threading.Event()
    if event.wait(seconds):
        raise OperationCancelledError(subject)
