from __future__ import annotations

from unittest.mock import Mock

from botocore.exceptions import ClientError
import pytest

from nerdy_efs_volume_manager.aws import (
    AwsClients,
    aws_call,
    build_efs_arn,
    detect_account_id,
    error_code,
    file_system_id_from_arn,
    is_not_found,
    load_aws_clients,
    validate_file_system_id,
    validate_recovery_point_arn,
)
from nerdy_efs_volume_manager.errors import ExternalCommandError, ValidationError


def _client_error(code: str, message: str = "boom", operation: str = "DescribeFileSystems") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def _aws(**overrides: Mock) -> AwsClients:
    values = {name: Mock() for name in ("backup", "efs", "ec2", "sts", "iam")}
    values.update(overrides)
    return AwsClients(region="us-east-1", **values)


def test_aws_call_wraps_client_error_and_keeps_error_code() -> None:
    def _fail() -> None:
        raise _client_error("FileSystemNotFound", "File system 'fs-1' does not exist.")

    with pytest.raises(ExternalCommandError) as error:
        aws_call(operation="efs describe-file-systems", func=_fail)

    assert "FileSystemNotFound: File system 'fs-1' does not exist." in str(error.value)
    assert error_code(error.value) == "FileSystemNotFound"
    assert is_not_found(error.value)


def test_error_code_with_plain_error_returns_empty_string() -> None:
    assert error_code(RuntimeError("nope")) == ""
    assert not is_not_found(RuntimeError("nope"))


def test_detect_account_id_returns_caller_account() -> None:
    sts = Mock()
    sts.get_caller_identity.return_value = {"Account": "123456789012"}

    assert detect_account_id(_aws(sts=sts)) == "123456789012"


def test_detect_account_id_without_account_raises() -> None:
    sts = Mock()
    sts.get_caller_identity.return_value = {}

    with pytest.raises(ExternalCommandError, match="caller identity has no account id"):
        detect_account_id(_aws(sts=sts))


def test_load_aws_clients_without_region_raises_validation_error() -> None:
    with pytest.raises(ValidationError, match="AWS region is required"):
        load_aws_clients(region="  ")


def test_build_efs_arn_formats_file_system_arn() -> None:
    assert (
        build_efs_arn("us-east-1", "123456789012", "fs-0abc")
        == "arn:aws:elasticfilesystem:us-east-1:123456789012:file-system/fs-0abc"
    )


@pytest.mark.parametrize("value", ["fs-0123abcd", "  fs-9zz  "])
def test_validate_file_system_id_accepts_well_formed_ids(value: str) -> None:
    assert validate_file_system_id(value) == value.strip()


def test_validate_file_system_id_without_prefix_raises_with_hint() -> None:
    with pytest.raises(ValidationError, match="should start with 'fs-'"):
        validate_file_system_id("0123abcd")


def test_validate_file_system_id_with_uppercase_raises() -> None:
    with pytest.raises(ValidationError):
        validate_file_system_id("fs-ABC")


def test_validate_recovery_point_arn_rejects_non_backup_arn() -> None:
    with pytest.raises(ValidationError, match="invalid recovery point ARN"):
        validate_recovery_point_arn("arn:aws:elasticfilesystem:us-east-1:1:file-system/fs-1")


def test_validate_recovery_point_arn_accepts_backup_arn() -> None:
    arn = "arn:aws:backup:us-east-1:123456789012:recovery-point:abc-123"

    assert validate_recovery_point_arn(arn) == arn


def test_file_system_id_from_arn_extracts_id_or_returns_empty() -> None:
    assert file_system_id_from_arn("arn:aws:elasticfilesystem:us-east-1:1:file-system/fs-0fe") == "fs-0fe"
    assert file_system_id_from_arn("arn:aws:ec2:us-east-1:1:volume/vol-1") == ""
    assert file_system_id_from_arn(None) == ""
