from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Callable, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ExternalCommandError, ValidationError

T = TypeVar("T")

FILE_SYSTEM_ID_PATTERN = re.compile(r"^fs-[0-9a-z]+$")
RECOVERY_POINT_ARN_PREFIX = "arn:aws:backup:"
FILE_SYSTEM_ARN_MARKER = ":file-system/"
NOT_FOUND_CODES = frozenset(
    {
        "ResourceNotFoundException",
        "FileSystemNotFound",
        "MountTargetNotFound",
        "NoSuchEntity",
        "NoSuchEntityException",
    }
)


@dataclass(frozen=True)
class AwsClients:
    region: str
    backup: Any
    efs: Any
    ec2: Any
    sts: Any
    iam: Any


def load_aws_clients(*, region: str, profile_name: str | None = None) -> AwsClients:
    if not region or not region.strip():
        raise ValidationError("AWS region is required")
    session = boto3.Session(region_name=region.strip(), profile_name=profile_name or None)
    return AwsClients(
        region=region.strip(),
        backup=session.client("backup"),
        efs=session.client("efs"),
        ec2=session.client("ec2"),
        sts=session.client("sts"),
        iam=session.client("iam"),
    )


def aws_call(*, operation: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ClientError as error:
        raise ExternalCommandError(operation=operation, output=_client_error_text(error)) from error
    except BotoCoreError as error:
        raise ExternalCommandError(operation=operation, output=str(error)) from error


def error_code(error: BaseException) -> str:
    cause = error.__cause__ if isinstance(error, ExternalCommandError) else error
    if isinstance(cause, ClientError):
        return str(cause.response.get("Error", {}).get("Code", ""))
    return ""


def is_not_found(error: BaseException) -> bool:
    return error_code(error) in NOT_FOUND_CODES


def detect_account_id(clients: AwsClients) -> str:
    identity = aws_call(operation="sts get-caller-identity", func=clients.sts.get_caller_identity)
    account_id = str(identity.get("Account", "")).strip()
    if not account_id:
        raise ExternalCommandError(operation="sts get-caller-identity", output="caller identity has no account id")
    return account_id


def build_efs_arn(region: str, account_id: str, file_system_id: str) -> str:
    return f"arn:aws:elasticfilesystem:{region}:{account_id}:file-system/{file_system_id}"


def is_file_system_id(value: str | None) -> bool:
    return bool(value) and FILE_SYSTEM_ID_PATTERN.match(value.strip()) is not None


def validate_file_system_id(value: str) -> str:
    normalized = value.strip()
    if not normalized.startswith("fs-"):
        raise ValidationError(f"invalid EFS ID format: {value} (should start with 'fs-')")
    if not is_file_system_id(normalized):
        raise ValidationError(f"invalid EFS ID format: {value}")
    return normalized


def validate_recovery_point_arn(value: str) -> str:
    normalized = value.strip()
    if not normalized.startswith(RECOVERY_POINT_ARN_PREFIX) or ":recovery-point:" not in normalized:
        raise ValidationError(f"invalid recovery point ARN: {value}")
    return normalized


def file_system_id_from_arn(resource_arn: str | None) -> str:
    """Return the file-system id in an EFS ARN, or "" when the ARN is not a file system."""
    if not resource_arn or FILE_SYSTEM_ARN_MARKER not in resource_arn:
        return ""
    candidate = resource_arn.rsplit("/", 1)[-1].strip()
    return candidate if is_file_system_id(candidate) else ""


def _client_error_text(error: ClientError) -> str:
    details = error.response.get("Error", {})
    code = details.get("Code") or "Unknown"
    message = (details.get("Message") or "").strip()
    return f"{code}: {message}" if message else code
