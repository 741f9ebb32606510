from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .aws import validate_file_system_id
from .errors import ValidationError


class JobState(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    ABORTING = "ABORTING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    ABORTED = "ABORTED"
    EXPIRED = "EXPIRED"

    @classmethod
    def parse(cls, value: str | None) -> JobState:
        normalized = (value or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError as error:
            raise ValidationError(f"unknown job state: {value!r}") from error

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES

    @property
    def is_failure(self) -> bool:
        return self in FAILED_JOB_STATES


TERMINAL_JOB_STATES = frozenset(
    {JobState.COMPLETED, JobState.PARTIAL, JobState.FAILED, JobState.ABORTED, JobState.EXPIRED}
)
FAILED_JOB_STATES = frozenset({JobState.PARTIAL, JobState.FAILED, JobState.ABORTED, JobState.EXPIRED})


class BackupConfigPolicy(str, Enum):
    ALWAYS = "always"
    ASK = "ask"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: str | None) -> BackupConfigPolicy:
        normalized = (value or "").strip().lower()
        if normalized in {"ask-first", "ask_first", "prompt"}:
            return cls.ASK
        try:
            return cls(normalized or cls.ASK.value)
        except ValueError as error:
            raise ValidationError(f"unknown backup config policy: {value!r}") from error


@dataclass(frozen=True)
class BackupJob:
    id: str
    resource_arn: str
    vault_name: str
    state: JobState
    status_message: str = ""


@dataclass(frozen=True)
class RestoreJob:
    id: str
    source_recovery_point_arn: str
    state: JobState
    created_resource_arn: str | None = None
    status_message: str = ""


@dataclass(frozen=True)
class RecoveryPoint:
    arn: str
    vault_name: str
    created_at: datetime | None
    status: str
    expiry_at: datetime | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> RecoveryPoint:
        lifecycle = item.get("CalculatedLifecycle") or {}
        return cls(
            arn=str(item.get("RecoveryPointArn", "")),
            vault_name=str(item.get("BackupVaultName", "")),
            created_at=_as_datetime(item.get("CreationDate")),
            status=str(item.get("Status", "") or ""),
            expiry_at=_as_datetime(lifecycle.get("DeleteAt")),
        )

    @property
    def is_completed(self) -> bool:
        return self.status.strip().upper() == JobState.COMPLETED.value


@dataclass(frozen=True)
class AttachRequest:
    region: str
    namespace: str
    target_file_system_id: str | None = None
    target_claim_names: tuple[str, ...] = ()
    target_consumer_names: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.namespace.strip():
            raise ValidationError("namespace is required")
        if not self.target_file_system_id and not self.target_claim_names and not self.target_consumer_names:
            raise ValidationError("at least one of file system id, claim names, or consumer names must be provided")
        if self.target_file_system_id:
            validate_file_system_id(self.target_file_system_id)

    @classmethod
    def from_inputs(
        cls,
        *,
        region: str,
        namespace: str,
        file_system_id: str | None = None,
        claims_csv: str | None = None,
        consumers_csv: str | None = None,
    ) -> AttachRequest:
        normalized_id = (file_system_id or "").strip() or None
        return cls(
            region=region.strip(),
            namespace=namespace.strip(),
            target_file_system_id=validate_file_system_id(normalized_id) if normalized_id else None,
            target_claim_names=split_csv(claims_csv),
            target_consumer_names=split_csv(consumers_csv),
        )


@dataclass(frozen=True)
class ClaimRebindOutcome:
    claim_name: str
    volume_name: str | None
    succeeded: bool
    message: str = ""


@dataclass(frozen=True)
class RebindResult:
    namespace: str
    file_system_id: str
    outcomes: tuple[ClaimRebindOutcome, ...] = ()
    unmatched_aliases: tuple[str, ...] = ()

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def summary(self) -> str:
        return f"recreated {self.success_count}/{self.total} claims with {self.file_system_id}"


@dataclass(frozen=True)
class MountTarget:
    mount_target_id: str
    subnet_id: str
    availability_zone: str = ""
    security_groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class VerificationReport:
    claim_name: str
    passed: bool
    phase: str
    data_directory: str | None = None
    file_count: int | None = None
    data_file_count: int | None = None
    failures: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    log: str = ""


@dataclass
class AttachResult:
    namespace: str
    file_system_id: str | None
    state: str = "Init"
    rebind: RebindResult | None = None
    verification: VerificationReport | None = None
    restarted_consumers: list[str] = field(default_factory=list)
    snapshot_job_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == "Done"


@dataclass(frozen=True)
class RestoreOutcome:
    region: str
    namespace: str
    recovery_point_arn: str
    job_id: str
    new_file_system_id: str
    status: str
    attach: AttachResult | None = None


def split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _as_datetime(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None
