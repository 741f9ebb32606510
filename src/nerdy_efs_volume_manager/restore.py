from __future__ import annotations

from datetime import UTC, datetime
import logging
import threading
from typing import Any, Callable
import uuid

from .aws import (
    AwsClients,
    aws_call,
    build_efs_arn,
    detect_account_id,
    error_code,
    file_system_id_from_arn,
    is_not_found,
    validate_recovery_point_arn,
)
from .commands import poll_until
from .errors import (
    ExternalCommandError,
    JobFailedError,
    JobStartError,
    NotFoundError,
    VolumeManagerError,
    error_message,
)
from .metadata import JobHistoryStore
from .models import AttachResult, JobState, RecoveryPoint, RestoreJob, RestoreOutcome
from .resolver import StorageIdentityResolver
from .snapshot import ProgressReporter, interpolate_progress

logger = logging.getLogger(__name__)

EFS_KMS_KEY_ALIAS = "alias/aws/elasticfilesystem"
THROUGHPUT_RATE_LIMIT_CODES = frozenset({"TooManyRequests", "ThroughputLimitExceeded"})
DEFAULT_ATTACH_TARGETS = ("op-geth", "op-node")

STATUS_COMPLETED = "COMPLETED"
STATUS_COMPLETED_WITH_ATTACH = "COMPLETED_WITH_ATTACH"
STATUS_COMPLETED_WITH_ATTACH_ERROR = "COMPLETED_WITH_ATTACH_ERROR"

THROUGHPUT_UPDATED = "updated"
THROUGHPUT_ALREADY_ELASTIC = "already-elastic"
THROUGHPUT_RATE_LIMITED = "rate-limited"

AttachRunner = Callable[[str], AttachResult]


def find_restore_role(aws: AwsClients, *, namespace: str, account_id: str | None = None) -> str:
    """Return the first existing IAM role usable by AWS Backup for a restore.

    Falls back to ``{namespace}-backup-restore-role`` when none of the known
    roles can be read. Account detection failures propagate.
    """
    account = account_id or detect_account_id(aws)
    candidates = (
        f"{namespace}-backup-service-role",
        "AWSBackupDefaultServiceRole",
        "AWSServiceRoleForBackup",
    )
    for role_name in candidates:
        try:
            response = aws_call(
                operation=f"iam get-role {role_name}",
                func=lambda role_name=role_name: aws.iam.get_role(RoleName=role_name),
            )
        except ExternalCommandError as error:
            logger.debug("Restore role %s unavailable: %s", role_name, error)
            continue
        arn = str(response.get("Role", {}).get("Arn", "")).strip()
        if arn:
            return arn

    fallback = f"arn:aws:iam::{account}:role/{namespace}-backup-restore-role"
    logger.warning("No suitable IAM role found, using namespace-based role: %s", fallback)
    return fallback


def list_recovery_points(
    aws: AwsClients,
    resolver: StorageIdentityResolver,
    *,
    namespace: str,
    limit: int = 20,
    completed_only: bool = True,
) -> list[RecoveryPoint]:
    """Recovery points of the file system bound to ``namespace``, newest first."""
    file_system_id = resolver.resolve(namespace)
    resource_arn = build_efs_arn(aws.region, detect_account_id(aws), file_system_id)
    pages = aws_call(
        operation=f"backup list-recovery-points-by-resource {resource_arn}",
        func=lambda: list(
            aws.backup.get_paginator("list_recovery_points_by_resource").paginate(ResourceArn=resource_arn)
        ),
    )
    points = [RecoveryPoint.from_api(item) for page in pages for item in page.get("RecoveryPoints", [])]
    if completed_only:
        points = [point for point in points if point.is_completed]
    oldest = datetime.min.replace(tzinfo=UTC)
    points.sort(key=lambda point: point.created_at or oldest, reverse=True)
    return points[:limit] if limit > 0 else points


def format_relative_time(moment: datetime | None, *, now: datetime | None = None) -> str:
    if moment is None:
        return ""
    reference = now or datetime.now(tz=UTC)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    delta = reference - moment
    future = delta.total_seconds() < 0
    seconds = abs(int(delta.total_seconds()))
    days, remainder = divmod(seconds, 86400)
    hours = remainder // 3600
    minutes = seconds // 60

    if days > 0:
        amount = f"{days} days"
    elif hours > 0:
        amount = f"{hours} hours"
    elif minutes > 0 or future:
        amount = f"{minutes} minutes"
    else:
        return "(just now)"
    return f"(in {amount})" if future else f"({amount} ago)"


class RestoreJobController:
    def __init__(
        self,
        *,
        aws: AwsClients,
        history: JobHistoryStore | None = None,
        poll_interval_seconds: float = 30,
        max_attempts: int = 120,
    ) -> None:
        self.aws = aws
        self.history = history
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts

    def describe_recovery_point(self, vault_name: str, recovery_point_arn: str) -> dict[str, Any]:
        return aws_call(
            operation=f"backup describe-recovery-point in {vault_name}",
            func=lambda: self.aws.backup.describe_recovery_point(
                BackupVaultName=vault_name,
                RecoveryPointArn=recovery_point_arn,
            ),
        )

    def find_vault_for_recovery_point(self, recovery_point_arn: str) -> str:
        vault_names: list[str] = []
        for page in aws_call(
            operation="backup list-backup-vaults",
            func=lambda: list(self.aws.backup.get_paginator("list_backup_vaults").paginate()),
        ):
            vault_names.extend(
                vault["BackupVaultName"] for vault in page.get("BackupVaultList", []) if vault.get("BackupVaultName")
            )

        for vault_name in vault_names:
            try:
                self.describe_recovery_point(vault_name, recovery_point_arn)
            except ExternalCommandError as error:
                if not is_not_found(error):
                    logger.debug("Vault %s did not answer for %s: %s", vault_name, recovery_point_arn, error)
                continue
            return vault_name
        raise NotFoundError(f"recovery point not found or not accessible in any vault: {recovery_point_arn}")

    def start_restore(
        self,
        *,
        recovery_point_arn: str,
        iam_role_arn: str,
        vault_name: str | None = None,
    ) -> str:
        """Submit a restore of ``recovery_point_arn`` into a brand-new file system."""
        arn = validate_recovery_point_arn(recovery_point_arn)
        try:
            if vault_name:
                self.describe_recovery_point(vault_name, arn)
                vault = vault_name
            else:
                vault = self.find_vault_for_recovery_point(arn)
        except (NotFoundError, ExternalCommandError) as error:
            raise JobStartError(f"cannot restore {arn}: {error_message(error)}") from error

        token = uuid.uuid4().hex
        metadata = {
            "file-system-id": self._source_file_system_id(vault, arn) or f"fs-restored-{token[:12]}",
            "newfilesystem": "true",
            "creationtoken": f"restore-{token}",
            "kmskeyid": EFS_KMS_KEY_ALIAS,
            "performancemode": "generalPurpose",
            "encrypted": "true",
        }
        try:
            response = aws_call(
                operation="backup start-restore-job",
                func=lambda: self.aws.backup.start_restore_job(
                    RecoveryPointArn=arn,
                    IamRoleArn=iam_role_arn,
                    Metadata=metadata,
                    IdempotencyToken=token,
                ),
            )
        except ExternalCommandError as error:
            raise JobStartError(f"failed to start restore job: {error_message(error)}") from error

        job_id = str(response.get("RestoreJobId", "")).strip()
        if not job_id:
            raise JobStartError("backup service accepted the restore but returned no job id")
        logger.info("Restore job %s started from %s (vault %s)", job_id, arn, vault)
        return job_id

    def describe_job(self, job_id: str) -> RestoreJob:
        response = aws_call(
            operation=f"backup describe-restore-job {job_id}",
            func=lambda: self.aws.backup.describe_restore_job(RestoreJobId=job_id),
        )
        return RestoreJob(
            id=job_id,
            source_recovery_point_arn=str(response.get("RecoveryPointArn", "")),
            state=JobState.parse(response.get("Status")),
            created_resource_arn=response.get("CreatedResourceArn") or None,
            status_message=str(response.get("StatusMessage", "") or ""),
        )

    def await_completion(
        self,
        job_id: str,
        *,
        namespace: str = "",
        cancel_event: threading.Event | None = None,
        progress: ProgressReporter | None = None,
    ) -> str:
        """Wait for the restore and return the new file-system id.

        An empty string means the job created something other than a file
        system and there is nothing to attach.
        """
        logger.info("Monitoring restore job %s", job_id)

        def _check(attempt: int) -> RestoreJob | None:
            try:
                job = self.describe_job(job_id)
            except VolumeManagerError as error:
                logger.warning("Failed to describe restore job (attempt %d/%d): %s", attempt, self.max_attempts, error)
                return None
            logger.info("Restore job %s status: %s", job_id, job.state.value)
            if progress is not None:
                progress(f"Restoring: {job.state.value}", interpolate_progress(attempt, self.max_attempts))
            return job if job.state.is_terminal else None

        job = poll_until(
            _check,
            subject=f"restore job {job_id}",
            interval_seconds=self.poll_interval_seconds,
            max_attempts=self.max_attempts,
            cancel_event=cancel_event,
        )
        if self.history is not None:
            self.history.record_restore_job(job, namespace=namespace, region=self.aws.region)
        if job.state.is_failure:
            raise JobFailedError(
                job_kind="restore",
                job_id=job_id,
                state=job.state.value,
                status_message=job.status_message or "checker failed",
            )

        logger.info("Restore completed. CreatedResourceArn: %s", job.created_resource_arn)
        file_system_id = file_system_id_from_arn(job.created_resource_arn)
        if not file_system_id:
            logger.info("Restore job %s did not produce a file system; nothing to attach", job_id)
            return ""

        try:
            outcome = self.set_throughput_elastic(file_system_id)
        except VolumeManagerError as error:
            logger.warning("Failed to set EFS ThroughputMode to elastic: %s", error)
        else:
            if outcome == THROUGHPUT_RATE_LIMITED:
                logger.warning("EFS %s keeps its current throughput mode until the 24 hour limit passes", file_system_id)
            else:
                logger.info("ThroughputMode for %s is elastic", file_system_id)
        if progress is not None:
            progress("Restore completed", 100.0)
        return file_system_id

    def set_throughput_elastic(self, file_system_id: str) -> str:
        if not file_system_id.strip():
            raise VolumeManagerError("empty file system id")
        response = aws_call(
            operation=f"efs describe-file-systems {file_system_id}",
            func=lambda: self.aws.efs.describe_file_systems(FileSystemId=file_system_id),
        )
        file_systems = response.get("FileSystems", [])
        if not file_systems:
            raise NotFoundError(f"EFS {file_system_id} not found")
        current = file_systems[0]
        state = current.get("LifeCycleState")
        if state != "available":
            raise VolumeManagerError(f"EFS {file_system_id} is not in available state (current: {state})")
        if current.get("ThroughputMode") == "elastic":
            return THROUGHPUT_ALREADY_ELASTIC

        try:
            aws_call(
                operation=f"efs update-file-system {file_system_id}",
                func=lambda: self.aws.efs.update_file_system(FileSystemId=file_system_id, ThroughputMode="elastic"),
            )
        except ExternalCommandError as error:
            if error_code(error) in THROUGHPUT_RATE_LIMIT_CODES or "rate" in error.output.lower():
                logger.warning(
                    "EFS throughput mode change rate limited (24-hour restriction). EFS %s will remain in %s mode",
                    file_system_id,
                    current.get("ThroughputMode"),
                )
                return THROUGHPUT_RATE_LIMITED
            raise
        return THROUGHPUT_UPDATED

    def tag_file_system_name(self, file_system_id: str, name: str) -> None:
        file_system_id = file_system_id.strip()
        name = name.strip()
        if not file_system_id or not name:
            return
        aws_call(
            operation=f"efs tag-resource {file_system_id}",
            func=lambda: self.aws.efs.tag_resource(ResourceId=file_system_id, Tags=[{"Key": "Name", "Value": name}]),
        )

    def _source_file_system_id(self, vault_name: str, recovery_point_arn: str) -> str | None:
        try:
            response = aws_call(
                operation="backup get-recovery-point-restore-metadata",
                func=lambda: self.aws.backup.get_recovery_point_restore_metadata(
                    BackupVaultName=vault_name,
                    RecoveryPointArn=recovery_point_arn,
                ),
            )
        except ExternalCommandError as error:
            logger.debug("No restore metadata for %s: %s", recovery_point_arn, error)
            return None
        value = (response.get("RestoreMetadata") or {}).get("file-system-id")
        return str(value).strip() if value else None


def restore_and_attach(
    controller: RestoreJobController,
    *,
    namespace: str,
    recovery_point_arn: str,
    iam_role_arn: str | None = None,
    attach: AttachRunner | None = None,
    cancel_event: threading.Event | None = None,
    progress: ProgressReporter | None = None,
) -> RestoreOutcome:
    """Restore into a new file system and optionally hand it to ``attach``.

    Attach errors are reported in the outcome status; the restore itself has
    already succeeded at that point.
    """
    role_arn = iam_role_arn or find_restore_role(controller.aws, namespace=namespace)
    if progress is not None:
        progress("Starting restore job...", 5.0)
    job_id = controller.start_restore(recovery_point_arn=recovery_point_arn, iam_role_arn=role_arn)
    new_file_system_id = controller.await_completion(
        job_id,
        namespace=namespace,
        cancel_event=cancel_event,
        progress=progress,
    )

    outcome_kwargs = {
        "region": controller.aws.region,
        "namespace": namespace,
        "recovery_point_arn": recovery_point_arn,
        "job_id": job_id,
        "new_file_system_id": new_file_system_id,
    }
    if not new_file_system_id:
        return RestoreOutcome(status=STATUS_COMPLETED, **outcome_kwargs)

    logger.info("Restore completed. New EFS: %s", new_file_system_id)
    try:
        controller.tag_file_system_name(new_file_system_id, namespace)
    except VolumeManagerError as error:
        logger.warning("Failed to tag EFS %s with Name=%s: %s", new_file_system_id, namespace, error)
    else:
        logger.info("Tagged EFS %s with Name=%s", new_file_system_id, namespace)

    if attach is None:
        logger.info("Attach the restored EFS later with file system id %s", new_file_system_id)
        return RestoreOutcome(status=STATUS_COMPLETED, **outcome_kwargs)

    try:
        attach_result = attach(new_file_system_id)
    except VolumeManagerError as error:
        logger.error("Attach of restored EFS %s failed: %s", new_file_system_id, error)
        return RestoreOutcome(status=STATUS_COMPLETED_WITH_ATTACH_ERROR, **outcome_kwargs)

    status = STATUS_COMPLETED_WITH_ATTACH if attach_result.succeeded else STATUS_COMPLETED_WITH_ATTACH_ERROR
    return RestoreOutcome(status=status, attach=attach_result, **outcome_kwargs)
