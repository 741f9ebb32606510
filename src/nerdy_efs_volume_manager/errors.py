from __future__ import annotations

from typing import Sequence


class VolumeManagerError(RuntimeError):
    """Base class for every error raised by the volume manager."""


class NotFoundError(VolumeManagerError):
    """Raised when no matching file system, claim, volume, consumer, or vault exists."""


class ValidationError(VolumeManagerError, ValueError):
    """Raised for malformed ids, ARNs, or request fields."""


class ExternalCommandError(VolumeManagerError):
    def __init__(
        self,
        *,
        operation: str,
        output: str = "",
        returncode: int | None = None,
        command: Sequence[str] | None = None,
    ) -> None:
        self.operation = operation
        self.output = output.strip()
        self.returncode = returncode
        self.command = tuple(command or ())
        detail = f"{operation} failed"
        if returncode is not None:
            detail = f"{detail} (exit status {returncode})"
        if self.output:
            detail = f"{detail}: {self.output}"
        super().__init__(detail)


class PollTimeoutError(VolumeManagerError, TimeoutError):
    """The poll budget ran out. The remote operation may still complete later."""

    def __init__(self, *, subject: str, attempts: int, last_observed: str | None = None) -> None:
        self.subject = subject
        self.attempts = attempts
        self.last_observed = last_observed
        message = f"timed out waiting for {subject} after {attempts} attempts"
        if last_observed:
            message = f"{message} (last observed: {last_observed})"
        super().__init__(message)


class OperationCancelledError(VolumeManagerError):
    def __init__(self, subject: str) -> None:
        self.subject = subject
        super().__init__(f"cancelled while waiting for {subject}")


class JobStartError(VolumeManagerError):
    """Raised when a backup or restore job cannot be submitted."""


class JobFailedError(VolumeManagerError):
    def __init__(self, *, job_kind: str, job_id: str, state: str, status_message: str | None) -> None:
        self.job_kind = job_kind
        self.job_id = job_id
        self.state = state
        self.status_message = (status_message or "").strip()
        message = f"{job_kind} job {job_id} ended in state {state}"
        if self.status_message:
            message = f"{message}: {self.status_message}"
        super().__init__(message)


class PartialFailure(VolumeManagerError):
    def __init__(self, *, action: str, succeeded: int, total: int, failures: dict[str, str]) -> None:
        self.action = action
        self.succeeded = succeeded
        self.total = total
        self.failures = dict(failures)
        details = "; ".join(f"{item}: {reason}" for item, reason in sorted(self.failures.items()))
        message = f"{action} {succeeded}/{total}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
