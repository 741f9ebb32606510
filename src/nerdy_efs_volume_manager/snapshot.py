from __future__ import annotations

import logging
import threading
from typing import Callable

from .aws import AwsClients, aws_call, build_efs_arn, detect_account_id, is_not_found
from .commands import poll_until
from .errors import ExternalCommandError, JobFailedError, JobStartError, VolumeManagerError, error_message
from .metadata import JobHistoryStore
from .models import BackupJob, JobState
from .resolver import StorageIdentityResolver

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[str, float], None]
CompletionCallback = Callable[[BackupJob | None, BaseException | None], None]


def default_vault_name(namespace: str) -> str:
    return f"{namespace}-backup-vault"


def default_backup_role_arn(account_id: str, namespace: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{namespace}-backup-service-role"


class BackupJobController:
    def __init__(
        self,
        *,
        aws: AwsClients,
        history: JobHistoryStore | None = None,
        poll_interval_seconds: float = 10,
        max_attempts: int = 60,
    ) -> None:
        self.aws = aws
        self.history = history
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts

    def start_snapshot(
        self,
        *,
        account_id: str,
        file_system_id: str,
        vault_name: str,
        iam_role_arn: str,
    ) -> str:
        """Start an on-demand backup job into an existing vault and return its id."""
        try:
            aws_call(
                operation=f"backup describe-backup-vault {vault_name}",
                func=lambda: self.aws.backup.describe_backup_vault(BackupVaultName=vault_name),
            )
        except ExternalCommandError as error:
            if is_not_found(error):
                raise JobStartError(
                    f"backup vault {vault_name} does not exist in {self.aws.region}; "
                    "vaults are provisioned with the backup plan and are never created here"
                ) from error
            raise JobStartError(f"backup vault {vault_name} is not addressable: {error_message(error)}") from error

        resource_arn = build_efs_arn(self.aws.region, account_id, file_system_id)
        try:
            response = aws_call(
                operation="backup start-backup-job",
                func=lambda: self.aws.backup.start_backup_job(
                    BackupVaultName=vault_name,
                    ResourceArn=resource_arn,
                    IamRoleArn=iam_role_arn,
                ),
            )
        except ExternalCommandError as error:
            logger.error(
                "Failed to start backup job for %s (vault %s, role %s): %s",
                resource_arn,
                vault_name,
                iam_role_arn,
                error,
            )
            raise JobStartError(f"failed to start backup job: {error_message(error)}") from error

        job_id = str(response.get("BackupJobId", "")).strip()
        if not job_id:
            raise JobStartError("backup service accepted the request but returned no job id")
        logger.info("On-demand backup %s started for %s", job_id, resource_arn)
        return job_id

    def describe_job(self, job_id: str) -> BackupJob:
        response = aws_call(
            operation=f"backup describe-backup-job {job_id}",
            func=lambda: self.aws.backup.describe_backup_job(BackupJobId=job_id),
        )
        return BackupJob(
            id=job_id,
            resource_arn=str(response.get("ResourceArn", "")),
            vault_name=str(response.get("BackupVaultName", "")),
            state=JobState.parse(response.get("State")),
            status_message=str(response.get("StatusMessage", "") or ""),
        )

    def await_completion(
        self,
        job_id: str,
        *,
        namespace: str = "",
        poll_interval_seconds: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
        progress: ProgressReporter | None = None,
    ) -> BackupJob:
        """Poll until the job is terminal.

        COMPLETED is returned; FAILED, ABORTED and EXPIRED raise ``JobFailedError``;
        running out of attempts raises ``PollTimeoutError`` and the job may still finish.
        """
        attempts = max_attempts or self.max_attempts
        logger.info("Monitoring backup job %s", job_id)

        def _check(attempt: int) -> BackupJob | None:
            try:
                job = self.describe_job(job_id)
            except VolumeManagerError as error:
                logger.warning("Failed to check backup status (attempt %d/%d): %s", attempt, attempts, error)
                return None
            logger.info("Backup job %s status: %s", job_id, job.state.value)
            if progress is not None:
                progress(f"Backup in progress: {job.state.value}", interpolate_progress(attempt, attempts))
            return job if job.state.is_terminal else None

        job = poll_until(
            _check,
            subject=f"backup job {job_id}",
            interval_seconds=self.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds,
            max_attempts=attempts,
            cancel_event=cancel_event,
        )
        if self.history is not None:
            self.history.record_backup_job(job, namespace=namespace, region=self.aws.region)
        if job.state.is_failure:
            raise JobFailedError(job_kind="backup", job_id=job_id, state=job.state.value, status_message=job.status_message)
        if progress is not None:
            progress("Backup completed successfully", 100.0)
        logger.info("Backup job %s completed successfully", job_id)
        return job

    def monitor_in_background(
        self,
        job_id: str,
        *,
        namespace: str = "",
        cancel_event: threading.Event | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> threading.Thread:
        """Watch a job on a daemon thread. Outcomes are logged and passed to ``on_complete`` only."""

        def _watch() -> None:
            try:
                job = self.await_completion(job_id, namespace=namespace, cancel_event=cancel_event)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("Backup monitoring for %s failed: %s", job_id, error_message(error))
                _notify(on_complete, None, error)
                return
            logger.info("Backup job %s completed successfully", job_id)
            _notify(on_complete, job, None)

        thread = threading.Thread(target=_watch, name=f"backup-monitor-{job_id}", daemon=True)
        thread.start()
        return thread

    def snapshot_namespace(
        self,
        *,
        namespace: str,
        resolver: StorageIdentityResolver,
        wait: bool = True,
        cancel_event: threading.Event | None = None,
        progress: ProgressReporter | None = None,
    ) -> BackupJob | str:
        """Back up the file system currently bound to ``namespace``.

        Returns the completed job when ``wait`` is true, else the job id with a
        background monitor attached.
        """
        file_system_id = resolver.resolve(namespace)
        account_id = detect_account_id(self.aws)
        if progress is not None:
            progress("Starting backup job...", 10.0)
        job_id = self.start_snapshot(
            account_id=account_id,
            file_system_id=file_system_id,
            vault_name=default_vault_name(namespace),
            iam_role_arn=default_backup_role_arn(account_id, namespace),
        )
        if not wait:
            self.monitor_in_background(job_id, namespace=namespace, cancel_event=cancel_event)
            return job_id
        return self.await_completion(job_id, namespace=namespace, cancel_event=cancel_event, progress=progress)


def initialize_backup(
    controller: BackupJobController,
    resolver: StorageIdentityResolver,
    *,
    namespace: str,
    chain_name: str = "",
    cancel_event: threading.Event | None = None,
) -> str:
    """Kick off the first recovery point for a freshly provisioned namespace."""
    logger.info("Initializing backup system (chain: %s, ns: %s, region: %s)", chain_name, namespace, controller.aws.region)
    job_id = controller.snapshot_namespace(namespace=namespace, resolver=resolver, wait=False, cancel_event=cancel_event)
    logger.info("Initial backup job initiated: %s", job_id)
    return str(job_id)


def _notify(callback: CompletionCallback | None, job: BackupJob | None, error: BaseException | None) -> None:
    if callback is None:
        return
    try:
        callback(job, error)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Backup completion callback raised")


def interpolate_progress(attempt: int, max_attempts: int) -> float:
    return min(90.0, 10.0 + (attempt / max_attempts) * 80.0)
