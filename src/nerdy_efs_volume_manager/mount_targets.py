from __future__ import annotations

import logging

from .aws import AwsClients, aws_call, error_code
from .errors import ExternalCommandError, ValidationError, VolumeManagerError
from .models import MountTarget

logger = logging.getLogger(__name__)

ALREADY_EXISTS_CODES = frozenset({"MountTargetConflict"})


class MountTargetValidationError(VolumeManagerError):
    def __init__(self, file_system_id: str, issues: list[str]) -> None:
        self.file_system_id = file_system_id
        self.issues = list(issues)
        super().__init__(f"EFS {file_system_id} mount target validation issues: {'; '.join(self.issues)}")


def describe_mount_targets(aws: AwsClients, file_system_id: str) -> list[MountTarget]:
    response = aws_call(
        operation=f"efs describe-mount-targets {file_system_id}",
        func=lambda: aws.efs.describe_mount_targets(FileSystemId=file_system_id),
    )
    targets: list[MountTarget] = []
    for item in response.get("MountTargets", []):
        targets.append(
            MountTarget(
                mount_target_id=str(item.get("MountTargetId", "") or "").strip(),
                subnet_id=str(item.get("SubnetId", "") or "").strip(),
                availability_zone=str(item.get("AvailabilityZoneName", "") or ""),
            )
        )
    return targets


def mount_target_security_groups(aws: AwsClients, mount_target_id: str) -> tuple[str, ...]:
    response = aws_call(
        operation=f"efs describe-mount-target-security-groups {mount_target_id}",
        func=lambda: aws.efs.describe_mount_target_security_groups(MountTargetId=mount_target_id),
    )
    return tuple(group for group in response.get("SecurityGroups", []) if group)


def replicate_mount_targets(aws: AwsClients, source_file_system_id: str, target_file_system_id: str) -> list[str]:
    """Copy subnet and security group placement from one file system to another.

    Per-subnet failures, including mount targets that already exist, are
    logged and skipped. Returns the subnets that received a new mount target.
    """
    source = source_file_system_id.strip()
    target = target_file_system_id.strip()
    if not source or not target or source == target:
        return []

    source_targets = describe_mount_targets(aws, source)
    if not source_targets:
        logger.info("No mount targets found on source EFS %s; skipping replication", source)
        return []

    created: list[str] = []
    for mount_target in source_targets:
        if not mount_target.subnet_id or not mount_target.mount_target_id:
            continue
        try:
            groups = mount_target_security_groups(aws, mount_target.mount_target_id)
        except ExternalCommandError as error:
            logger.warning("Failed to get security groups for %s: %s", mount_target.mount_target_id, error)
            continue
        if not groups:
            logger.warning(
                "No security groups for %s; skipping subnet %s", mount_target.mount_target_id, mount_target.subnet_id
            )
            continue

        try:
            aws_call(
                operation=f"efs create-mount-target {target} {mount_target.subnet_id}",
                func=lambda mount_target=mount_target, groups=groups: aws.efs.create_mount_target(
                    FileSystemId=target,
                    SubnetId=mount_target.subnet_id,
                    SecurityGroups=list(groups),
                ),
            )
        except ExternalCommandError as error:
            if error_code(error) in ALREADY_EXISTS_CODES:
                logger.info("Mount target for subnet %s already exists on %s", mount_target.subnet_id, target)
            else:
                logger.warning("create-mount-target failed for subnet %s: %s", mount_target.subnet_id, error)
            continue
        logger.info(
            "Created mount target on subnet %s (AZ %s) for %s",
            mount_target.subnet_id,
            mount_target.availability_zone,
            target,
        )
        created.append(mount_target.subnet_id)
    return created


def validate_mount_targets(aws: AwsClients, file_system_id: str) -> list[MountTarget]:
    """Check that ``file_system_id`` is reachable from the cluster's subnets.

    Every problem found is collected and raised together as a
    ``MountTargetValidationError``.
    """
    if not file_system_id.strip():
        raise ValidationError("empty file system id")

    mount_targets = describe_mount_targets(aws, file_system_id)
    if not mount_targets:
        raise MountTargetValidationError(file_system_id, [f"no mount targets found on EFS {file_system_id}"])

    issues: list[str] = []
    validated: list[MountTarget] = []
    for mount_target in mount_targets:
        if not mount_target.subnet_id or not mount_target.mount_target_id:
            issues.append(
                f"invalid mount target entry (id={mount_target.mount_target_id} subnet={mount_target.subnet_id})"
            )
            continue

        try:
            subnets = aws_call(
                operation=f"ec2 describe-subnets {mount_target.subnet_id}",
                func=lambda mount_target=mount_target: aws.ec2.describe_subnets(SubnetIds=[mount_target.subnet_id]),
            ).get("Subnets", [])
        except ExternalCommandError as error:
            issues.append(f"failed to check subnet state for {mount_target.subnet_id}: {error.output or error}")
        else:
            state = subnets[0].get("State") if subnets else "missing"
            if state != "available":
                issues.append(f"subnet {mount_target.subnet_id} state is {state} (expected available)")

        try:
            groups = mount_target_security_groups(aws, mount_target.mount_target_id)
        except ExternalCommandError as error:
            issues.append(f"failed to get security groups for mount target {mount_target.mount_target_id}: {error}")
            continue
        if not groups:
            issues.append(f"no security groups associated with mount target {mount_target.mount_target_id}")
            continue
        logger.info("Mount target %s has security groups: %s", mount_target.mount_target_id, ", ".join(groups))
        validated.append(
            MountTarget(
                mount_target_id=mount_target.mount_target_id,
                subnet_id=mount_target.subnet_id,
                availability_zone=mount_target.availability_zone,
                security_groups=groups,
            )
        )

    if issues:
        raise MountTargetValidationError(file_system_id, issues)
    return validated
