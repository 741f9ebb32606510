from __future__ import annotations

from pathlib import Path
import threading
from unittest.mock import Mock

from botocore.exceptions import ClientError
import pytest

from nerdy_efs_volume_manager.aws import AwsClients
from nerdy_efs_volume_manager.errors import JobFailedError, JobStartError, PollTimeoutError
from nerdy_efs_volume_manager.metadata import JobHistoryStore
from nerdy_efs_volume_manager.models import JobState
from nerdy_efs_volume_manager.snapshot import (
    BackupJobController,
    default_backup_role_arn,
    default_vault_name,
    initialize_backup,
    interpolate_progress,
)


def _aws(backup: Mock | None = None) -> AwsClients:
    sts = Mock()
    sts.get_caller_identity.return_value = {"Account": "123456789012"}
    return AwsClients(region="us-east-1", backup=backup or Mock(), efs=Mock(), ec2=Mock(), sts=sts, iam=Mock())


def _controller(backup: Mock, *, history: JobHistoryStore | None = None, max_attempts: int = 5) -> BackupJobController:
    return BackupJobController(aws=_aws(backup), history=history, poll_interval_seconds=0, max_attempts=max_attempts)


def test_default_names_follow_namespace_conventions() -> None:
    assert default_vault_name("chain1") == "chain1-backup-vault"
    assert default_backup_role_arn("123", "chain1") == "arn:aws:iam::123:role/chain1-backup-service-role"


def test_start_snapshot_with_missing_vault_raises_without_creating_it() -> None:
    backup = Mock()
    backup.describe_backup_vault.side_effect = ClientError(
        {"Error": {"Code": "ResourceNotFoundException", "Message": "missing"}},
        "DescribeBackupVault",
    )

    with pytest.raises(JobStartError, match="chain1-backup-vault does not exist"):
        _controller(backup).start_snapshot(
            account_id="123",
            file_system_id="fs-aaaa",
            vault_name="chain1-backup-vault",
            iam_role_arn="arn:aws:iam::123:role/r",
        )

    backup.start_backup_job.assert_not_called()
    backup.create_backup_vault.assert_not_called()


def test_start_snapshot_submits_efs_arn_and_returns_job_id() -> None:
    backup = Mock()
    backup.start_backup_job.return_value = {"BackupJobId": "job-1"}

    job_id = _controller(backup).start_snapshot(
        account_id="123",
        file_system_id="fs-aaaa",
        vault_name="chain1-backup-vault",
        iam_role_arn="arn:aws:iam::123:role/r",
    )

    assert job_id == "job-1"
    backup.start_backup_job.assert_called_once_with(
        BackupVaultName="chain1-backup-vault",
        ResourceArn="arn:aws:elasticfilesystem:us-east-1:123:file-system/fs-aaaa",
        IamRoleArn="arn:aws:iam::123:role/r",
    )


def test_start_snapshot_without_job_id_raises_job_start_error() -> None:
    backup = Mock()
    backup.start_backup_job.return_value = {}

    with pytest.raises(JobStartError, match="returned no job id"):
        _controller(backup).start_snapshot(
            account_id="123", file_system_id="fs-aaaa", vault_name="v", iam_role_arn="arn:aws:iam::123:role/r"
        )


def test_await_completion_tolerates_describe_errors_and_records_history(tmp_path: Path) -> None:
    backup = Mock()
    backup.describe_backup_job.side_effect = [
        ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "DescribeBackupJob"),
        {"State": "RUNNING"},
        {"State": "COMPLETED", "ResourceArn": "arn:efs", "BackupVaultName": "chain1-backup-vault"},
    ]
    history = JobHistoryStore(tmp_path / "jobs.db")
    history.initialize()
    progress = Mock()

    job = _controller(backup, history=history).await_completion("job-1", namespace="chain1", progress=progress)

    assert job.state is JobState.COMPLETED
    assert history.get_recent_jobs(namespace="chain1")[0]["job_id"] == "job-1"
    progress.assert_called_with("Backup completed successfully", 100.0)


@pytest.mark.parametrize("state", ["FAILED", "ABORTED", "EXPIRED", "PARTIAL"])
def test_await_completion_with_failure_state_raises_job_failed(state: str) -> None:
    backup = Mock()
    backup.describe_backup_job.return_value = {"State": state, "StatusMessage": "access denied"}

    with pytest.raises(JobFailedError) as error:
        _controller(backup).await_completion("job-2")

    assert error.value.state == state
    assert "access denied" in str(error.value)


def test_await_completion_with_running_job_times_out() -> None:
    backup = Mock()
    backup.describe_backup_job.return_value = {"State": "RUNNING"}

    with pytest.raises(PollTimeoutError):
        _controller(backup, max_attempts=3).await_completion("job-3")

    assert backup.describe_backup_job.call_count == 3


def test_await_completion_keeps_polling_through_aborting() -> None:
    backup = Mock()
    backup.describe_backup_job.side_effect = [{"State": "ABORTING"}, {"State": "ABORTED"}]

    with pytest.raises(JobFailedError) as error:
        _controller(backup).await_completion("job-4")

    assert error.value.state == "ABORTED"
    assert backup.describe_backup_job.call_count == 2


def test_monitor_in_background_hands_failed_job_to_callback_without_raising() -> None:
    backup = Mock()
    backup.describe_backup_job.side_effect = [
        ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "DescribeBackupJob"),
        {"State": "FAILED", "StatusMessage": "role cannot read EFS"},
    ]
    outcomes: list[tuple[object, BaseException | None]] = []

    thread = _controller(backup).monitor_in_background(
        "job-5", namespace="chain1", on_complete=lambda job, error: outcomes.append((job, error))
    )
    thread.join(5)

    assert not thread.is_alive()
    assert thread.daemon
    assert len(outcomes) == 1
    job, error = outcomes[0]
    assert job is None
    assert isinstance(error, JobFailedError)
    assert "role cannot read EFS" in str(error)


def test_monitor_in_background_survives_raising_callback() -> None:
    backup = Mock()
    backup.describe_backup_job.return_value = {"State": "RUNNING"}
    seen: list[BaseException | None] = []

    def _callback(job, error):
        seen.append(error)
        raise RuntimeError("console already closed")

    thread = _controller(backup, max_attempts=2).monitor_in_background("job-6", on_complete=_callback)
    thread.join(5)

    assert not thread.is_alive()
    assert isinstance(seen[0], PollTimeoutError)


def test_initialize_backup_returns_job_id_and_monitors_in_background() -> None:
    backup = Mock()
    backup.start_backup_job.return_value = {"BackupJobId": "job-init"}
    backup.describe_backup_job.return_value = {"State": "COMPLETED"}
    resolver = Mock()
    resolver.resolve.return_value = "fs-aaaa"
    controller = _controller(backup)
    finished = threading.Event()
    original = controller.monitor_in_background

    def _monitor(job_id, **kwargs):
        thread = original(job_id, **kwargs, on_complete=lambda _job, _error: finished.set())
        return thread

    controller.monitor_in_background = _monitor  # type: ignore[method-assign]

    job_id = initialize_backup(controller, resolver, namespace="chain1", chain_name="chain1")

    assert job_id == "job-init"
    assert finished.wait(5)
    backup.start_backup_job.assert_called_once()
    assert backup.start_backup_job.call_args.kwargs["BackupVaultName"] == "chain1-backup-vault"


def test_interpolate_progress_stays_between_ten_and_ninety() -> None:
    assert interpolate_progress(0, 10) == 10.0
    assert interpolate_progress(5, 10) == 50.0
    assert interpolate_progress(20, 10) == 90.0
