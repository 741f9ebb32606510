from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

from botocore.exceptions import ClientError
import pytest

from nerdy_efs_volume_manager.aws import AwsClients
from nerdy_efs_volume_manager.errors import (
    ExternalCommandError,
    JobFailedError,
    JobStartError,
    NotFoundError,
    PollTimeoutError,
    ValidationError,
)
from nerdy_efs_volume_manager.metadata import JobHistoryStore
from nerdy_efs_volume_manager.models import AttachResult
from nerdy_efs_volume_manager.restore import (
    STATUS_COMPLETED,
    STATUS_COMPLETED_WITH_ATTACH,
    STATUS_COMPLETED_WITH_ATTACH_ERROR,
    THROUGHPUT_ALREADY_ELASTIC,
    THROUGHPUT_RATE_LIMITED,
    THROUGHPUT_UPDATED,
    RestoreJobController,
    find_restore_role,
    format_relative_time,
    list_recovery_points,
    restore_and_attach,
)

RECOVERY_POINT_ARN = "arn:aws:backup:us-east-1:123456789012:recovery-point:rp-1"
NEW_FS_ARN = "arn:aws:elasticfilesystem:us-east-1:123456789012:file-system/fs-bbbb"


def _client_error(code: str, message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "Operation")


def _aws(*, backup: Mock | None = None, efs: Mock | None = None, iam: Mock | None = None) -> AwsClients:
    sts = Mock()
    sts.get_caller_identity.return_value = {"Account": "123456789012"}
    return AwsClients(
        region="us-east-1",
        backup=backup or Mock(),
        efs=efs or Mock(),
        ec2=Mock(),
        sts=sts,
        iam=iam or Mock(),
    )


def _vault_paginator(backup: Mock, vaults: list[str]) -> None:
    paginator = Mock()
    paginator.paginate.return_value = [{"BackupVaultList": [{"BackupVaultName": name} for name in vaults]}]
    backup.get_paginator.return_value = paginator


def _efs(*, throughput_mode: str = "bursting", state: str = "available") -> Mock:
    efs = Mock()
    efs.describe_file_systems.return_value = {
        "FileSystems": [{"FileSystemId": "fs-bbbb", "LifeCycleState": state, "ThroughputMode": throughput_mode}]
    }
    return efs


def _controller(aws: AwsClients, *, history: JobHistoryStore | None = None, max_attempts: int = 5) -> RestoreJobController:
    return RestoreJobController(aws=aws, history=history, poll_interval_seconds=0, max_attempts=max_attempts)


def test_find_restore_role_prefers_namespace_service_role() -> None:
    iam = Mock()
    iam.get_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/chain1-backup-service-role"}}

    assert find_restore_role(_aws(iam=iam), namespace="chain1") == "arn:aws:iam::123456789012:role/chain1-backup-service-role"
    iam.get_role.assert_called_once_with(RoleName="chain1-backup-service-role")


def test_find_restore_role_falls_through_to_default_backup_role() -> None:
    iam = Mock()
    iam.get_role.side_effect = [
        _client_error("NoSuchEntity"),
        {"Role": {"Arn": "arn:aws:iam::123456789012:role/AWSBackupDefaultServiceRole"}},
    ]

    assert find_restore_role(_aws(iam=iam), namespace="chain1").endswith("role/AWSBackupDefaultServiceRole")


def test_find_restore_role_without_any_role_returns_namespace_restore_role() -> None:
    iam = Mock()
    iam.get_role.side_effect = _client_error("NoSuchEntity")

    role = find_restore_role(_aws(iam=iam), namespace="chain1")

    assert role == "arn:aws:iam::123456789012:role/chain1-backup-restore-role"
    assert iam.get_role.call_count == 3


def test_list_recovery_points_returns_completed_points_newest_first() -> None:
    now = datetime(2026, 10, 19, tzinfo=UTC)
    backup = Mock()
    paginator = Mock()
    paginator.paginate.return_value = [
        {
            "RecoveryPoints": [
                {"RecoveryPointArn": "rp-old", "Status": "COMPLETED", "CreationDate": now - timedelta(days=5)},
                {"RecoveryPointArn": "rp-partial", "Status": "PARTIAL", "CreationDate": now},
                {"RecoveryPointArn": "rp-new", "Status": "COMPLETED", "CreationDate": now - timedelta(days=1)},
            ]
        }
    ]
    backup.get_paginator.return_value = paginator
    resolver = Mock()
    resolver.resolve.return_value = "fs-aaaa"

    points = list_recovery_points(_aws(backup=backup), resolver, namespace="chain1")

    assert [point.arn for point in points] == ["rp-new", "rp-old"]
    paginator.paginate.assert_called_once_with(
        ResourceArn="arn:aws:elasticfilesystem:us-east-1:123456789012:file-system/fs-aaaa"
    )


@pytest.mark.parametrize(
    ("moment", "expected"),
    [
        (datetime(2026, 10, 16, 12, 0, tzinfo=UTC), "(3 days ago)"),
        (datetime(2026, 10, 19, 9, 0, tzinfo=UTC), "(3 hours ago)"),
        (datetime(2026, 10, 19, 11, 50, tzinfo=UTC), "(10 minutes ago)"),
        (datetime(2026, 10, 19, 11, 59, 50, tzinfo=UTC), "(just now)"),
        (datetime(2026, 10, 26, 12, 0, tzinfo=UTC), "(in 7 days)"),
        (None, ""),
    ],
)
def test_format_relative_time_renders_past_and_future(moment: datetime | None, expected: str) -> None:
    assert format_relative_time(moment, now=datetime(2026, 10, 19, 12, 0, tzinfo=UTC)) == expected


def test_find_vault_for_recovery_point_skips_vaults_without_the_point() -> None:
    backup = Mock()
    _vault_paginator(backup, ["chain1-old-vault", "chain1-backup-vault"])
    backup.describe_recovery_point.side_effect = [_client_error("ResourceNotFoundException"), {}]

    vault = _controller(_aws(backup=backup)).find_vault_for_recovery_point(RECOVERY_POINT_ARN)

    assert vault == "chain1-backup-vault"


def test_find_vault_for_recovery_point_without_match_raises_not_found() -> None:
    backup = Mock()
    _vault_paginator(backup, ["chain1-backup-vault"])
    backup.describe_recovery_point.side_effect = _client_error("AccessDeniedException")

    with pytest.raises(NotFoundError, match="not found or not accessible"):
        _controller(_aws(backup=backup)).find_vault_for_recovery_point(RECOVERY_POINT_ARN)


def test_start_restore_requests_new_file_system_with_source_metadata() -> None:
    backup = Mock()
    backup.get_recovery_point_restore_metadata.return_value = {"RestoreMetadata": {"file-system-id": "fs-aaaa"}}
    backup.start_restore_job.return_value = {"RestoreJobId": "restore-1"}

    job_id = _controller(_aws(backup=backup)).start_restore(
        recovery_point_arn=RECOVERY_POINT_ARN,
        iam_role_arn="arn:aws:iam::123456789012:role/r",
        vault_name="chain1-backup-vault",
    )

    assert job_id == "restore-1"
    kwargs = backup.start_restore_job.call_args.kwargs
    assert kwargs["RecoveryPointArn"] == RECOVERY_POINT_ARN
    assert kwargs["Metadata"]["file-system-id"] == "fs-aaaa"
    assert kwargs["Metadata"]["newfilesystem"] == "true"
    assert kwargs["Metadata"]["encrypted"] == "true"
    assert kwargs["Metadata"]["creationtoken"] == f"restore-{kwargs['IdempotencyToken']}"


def test_start_restore_without_source_metadata_uses_placeholder_id() -> None:
    backup = Mock()
    backup.get_recovery_point_restore_metadata.side_effect = _client_error("InvalidRequestException")
    backup.start_restore_job.return_value = {"RestoreJobId": "restore-2"}

    _controller(_aws(backup=backup)).start_restore(
        recovery_point_arn=RECOVERY_POINT_ARN,
        iam_role_arn="arn:aws:iam::123456789012:role/r",
        vault_name="chain1-backup-vault",
    )

    assert backup.start_restore_job.call_args.kwargs["Metadata"]["file-system-id"].startswith("fs-restored-")


def test_start_restore_with_malformed_arn_raises_validation_error() -> None:
    with pytest.raises(ValidationError):
        _controller(_aws()).start_restore(recovery_point_arn="rp-1", iam_role_arn="arn:aws:iam::1:role/r")


def test_start_restore_with_unknown_vault_raises_job_start_error() -> None:
    backup = Mock()
    _vault_paginator(backup, [])

    with pytest.raises(JobStartError, match="cannot restore"):
        _controller(_aws(backup=backup)).start_restore(
            recovery_point_arn=RECOVERY_POINT_ARN,
            iam_role_arn="arn:aws:iam::1:role/r",
        )

    backup.start_restore_job.assert_not_called()


def test_start_restore_with_unreachable_given_vault_raises_before_submitting() -> None:
    backup = Mock()
    backup.describe_recovery_point.side_effect = _client_error("ResourceNotFoundException")

    with pytest.raises(JobStartError, match="describe-recovery-point in chain9-backup-vault"):
        _controller(_aws(backup=backup)).start_restore(
            recovery_point_arn=RECOVERY_POINT_ARN,
            iam_role_arn="arn:aws:iam::1:role/r",
            vault_name="chain9-backup-vault",
        )

    backup.describe_recovery_point.assert_called_once_with(
        BackupVaultName="chain9-backup-vault", RecoveryPointArn=RECOVERY_POINT_ARN
    )
    backup.start_restore_job.assert_not_called()


def test_await_completion_returns_new_file_system_and_sets_elastic_throughput(tmp_path: Path) -> None:
    backup = Mock()
    backup.describe_restore_job.side_effect = [
        {"Status": "PENDING"},
        {"Status": "RUNNING"},
        {"Status": "COMPLETED", "CreatedResourceArn": NEW_FS_ARN, "RecoveryPointArn": RECOVERY_POINT_ARN},
    ]
    efs = _efs()
    history = JobHistoryStore(tmp_path / "jobs.db")
    history.initialize()

    file_system_id = _controller(_aws(backup=backup, efs=efs), history=history).await_completion(
        "restore-1",
        namespace="chain1",
    )

    assert file_system_id == "fs-bbbb"
    efs.update_file_system.assert_called_once_with(FileSystemId="fs-bbbb", ThroughputMode="elastic")
    assert history.get_recent_jobs(namespace="chain1")[0]["job_kind"] == "restore"


def test_await_completion_with_non_file_system_resource_returns_empty_string() -> None:
    backup = Mock()
    backup.describe_restore_job.return_value = {
        "Status": "COMPLETED",
        "CreatedResourceArn": "arn:aws:ec2:us-east-1:1:volume/vol-1",
    }
    efs = _efs()

    assert _controller(_aws(backup=backup, efs=efs)).await_completion("restore-1") == ""
    efs.update_file_system.assert_not_called()


def test_await_completion_with_failed_job_uses_default_reason() -> None:
    backup = Mock()
    backup.describe_restore_job.return_value = {"Status": "FAILED"}

    with pytest.raises(JobFailedError, match="checker failed"):
        _controller(_aws(backup=backup)).await_completion("restore-1")


def test_await_completion_with_running_job_times_out() -> None:
    backup = Mock()
    backup.describe_restore_job.return_value = {"Status": "RUNNING"}

    with pytest.raises(PollTimeoutError):
        _controller(_aws(backup=backup), max_attempts=3).await_completion("restore-1")


def test_await_completion_with_throughput_error_still_returns_file_system() -> None:
    backup = Mock()
    backup.describe_restore_job.return_value = {"Status": "COMPLETED", "CreatedResourceArn": NEW_FS_ARN}
    efs = _efs(state="creating")

    assert _controller(_aws(backup=backup, efs=efs)).await_completion("restore-1") == "fs-bbbb"


def test_set_throughput_elastic_reports_each_outcome() -> None:
    assert _controller(_aws(efs=_efs(throughput_mode="elastic"))).set_throughput_elastic("fs-bbbb") == THROUGHPUT_ALREADY_ELASTIC
    assert _controller(_aws(efs=_efs())).set_throughput_elastic("fs-bbbb") == THROUGHPUT_UPDATED

    limited = _efs()
    limited.update_file_system.side_effect = _client_error("TooManyRequests", "throughput mode changed recently")
    assert _controller(_aws(efs=limited)).set_throughput_elastic("fs-bbbb") == THROUGHPUT_RATE_LIMITED


def test_set_throughput_elastic_with_other_error_raises() -> None:
    efs = _efs()
    efs.update_file_system.side_effect = _client_error("AccessDenied", "no")

    with pytest.raises(ExternalCommandError):
        _controller(_aws(efs=efs)).set_throughput_elastic("fs-bbbb")


def _restore_ready_backup() -> Mock:
    backup = Mock()
    backup.get_recovery_point_restore_metadata.return_value = {"RestoreMetadata": {}}
    backup.start_restore_job.return_value = {"RestoreJobId": "restore-1"}
    backup.describe_restore_job.return_value = {"Status": "COMPLETED", "CreatedResourceArn": NEW_FS_ARN}
    _vault_paginator(backup, ["chain1-backup-vault"])
    backup.describe_recovery_point.return_value = {}
    return backup


def test_restore_and_attach_without_attach_tags_file_system_and_completes() -> None:
    efs = _efs()
    controller = _controller(_aws(backup=_restore_ready_backup(), efs=efs))

    outcome = restore_and_attach(
        controller,
        namespace="chain1",
        recovery_point_arn=RECOVERY_POINT_ARN,
        iam_role_arn="arn:aws:iam::1:role/r",
    )

    assert outcome.status == STATUS_COMPLETED
    assert outcome.new_file_system_id == "fs-bbbb"
    efs.tag_resource.assert_called_once_with(ResourceId="fs-bbbb", Tags=[{"Key": "Name", "Value": "chain1"}])


def test_restore_and_attach_with_successful_attach_reports_attach_status() -> None:
    efs = _efs()
    efs.tag_resource.side_effect = _client_error("AccessDenied")
    controller = _controller(_aws(backup=_restore_ready_backup(), efs=efs))
    attach = Mock(return_value=AttachResult(namespace="chain1", file_system_id="fs-bbbb", state="Done"))

    outcome = restore_and_attach(
        controller,
        namespace="chain1",
        recovery_point_arn=RECOVERY_POINT_ARN,
        iam_role_arn="arn:aws:iam::1:role/r",
        attach=attach,
    )

    attach.assert_called_once_with("fs-bbbb")
    assert outcome.status == STATUS_COMPLETED_WITH_ATTACH
    assert outcome.attach is not None


def test_restore_and_attach_with_attach_error_keeps_restore_result() -> None:
    controller = _controller(_aws(backup=_restore_ready_backup(), efs=_efs()))
    attach = Mock(side_effect=NotFoundError("no StatefulSet found matching pattern: op-geth"))

    outcome = restore_and_attach(
        controller,
        namespace="chain1",
        recovery_point_arn=RECOVERY_POINT_ARN,
        iam_role_arn="arn:aws:iam::1:role/r",
        attach=attach,
    )

    assert outcome.status == STATUS_COMPLETED_WITH_ATTACH_ERROR
    assert outcome.new_file_system_id == "fs-bbbb"
    assert outcome.job_id == "restore-1"


def test_restore_and_attach_with_non_file_system_result_skips_attach() -> None:
    backup = _restore_ready_backup()
    backup.describe_restore_job.return_value = {"Status": "COMPLETED", "CreatedResourceArn": "arn:aws:s3:::bucket"}
    attach = Mock()
    controller = _controller(_aws(backup=backup, efs=_efs()))

    outcome: Any = restore_and_attach(
        controller,
        namespace="chain1",
        recovery_point_arn=RECOVERY_POINT_ARN,
        iam_role_arn="arn:aws:iam::1:role/r",
        attach=attach,
    )

    assert outcome.status == STATUS_COMPLETED
    assert outcome.new_file_system_id == ""
    attach.assert_not_called()
