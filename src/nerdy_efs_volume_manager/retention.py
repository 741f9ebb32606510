"""Removal of expired recovery points, orphaned file systems and namespace vaults.

The three passes are independent and best-effort: one pass failing is logged
and recorded in the report, then the next pass runs. Nothing is removed while
the namespace's bound file system is unknown, and its vault is never a candidate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import logging
import threading
from typing import Callable, Iterable

from .aws import AwsClients, aws_call, build_efs_arn, detect_account_id
from .commands import poll_until, sleep_unless_cancelled
from .errors import NotFoundError, OperationCancelledError, VolumeManagerError, error_message
from .models import RecoveryPoint
from .resolver import NamespacePrefixOwnership, Ownership, StorageIdentityResolver
from .snapshot import default_vault_name

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7
MOUNT_TARGET_DRAIN_ATTEMPTS = 6
CLEANUP_PASSES = ("recovery_points", "file_systems", "vaults")


@dataclass
class RetentionReport:
    namespace: str
    current_file_system_id: str | None = None
    deleted_recovery_points: list[str] = field(default_factory=list)
    deleted_file_systems: list[str] = field(default_factory=list)
    deleted_vaults: list[str] = field(default_factory=list)
    protected_vaults: list[str] = field(default_factory=list)
    skipped_passes: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


def select_expired_recovery_points(
    points: Iterable[RecoveryPoint],
    *,
    now: datetime,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> list[RecoveryPoint]:
    """Return points created strictly before ``now - retention_days``. Undated points are kept."""
    cutoff = now - timedelta(days=retention_days)
    return [point for point in points if point.created_at is not None and point.created_at < cutoff]


class RetentionReaper:
    def __init__(
        self,
        *,
        aws: AwsClients,
        resolver: StorageIdentityResolver,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        mount_target_propagation_seconds: float = 10,
        vault_propagation_seconds: float = 5,
        ownership_factory: Callable[[str], Ownership] = NamespacePrefixOwnership,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if retention_days < 0:
            raise ValueError("retention_days must be >= 0")
        self.aws = aws
        self.resolver = resolver
        self.retention_days = retention_days
        self.mount_target_propagation_seconds = mount_target_propagation_seconds
        self.vault_propagation_seconds = vault_propagation_seconds
        self.ownership_factory = ownership_factory
        self.clock = clock or (lambda: datetime.now(tz=UTC))

    def run(self, namespace: str, *, cancel_event: threading.Event | None = None) -> RetentionReport:
        logger.info("Cleaning up unused backup resources for %s", namespace)
        report = RetentionReport(namespace=namespace)
        ownership = self.ownership_factory(namespace)

        current_known = True
        try:
            report.current_file_system_id = self.resolver.resolve(namespace)
        except NotFoundError:
            logger.info("No EFS volume is bound in %s", namespace)
        except VolumeManagerError as error:
            current_known = False
            report.failures["resolve"] = error_message(error)
            logger.warning("Could not detect the current EFS for %s: %s", namespace, error)

        if not current_known:
            logger.warning("Skipping cleanup passes because the bound file system is unknown")
            return report
        if not report.current_file_system_id:
            logger.info("Could not detect current EFS ID in %s, skipping EFS and vault cleanup", namespace)
            report.skipped_passes = list(CLEANUP_PASSES)
            return report

        try:
            protected = self.protected_vaults(namespace, report.current_file_system_id)
        except VolumeManagerError as error:
            report.failures["protected_vaults"] = error_message(error)
            logger.warning("Could not list vaults holding %s: %s", report.current_file_system_id, error)
            protected = None
        if protected is not None:
            report.protected_vaults = sorted(protected)

        passes: list[tuple[str, Callable[[], None]]] = [
            ("recovery_points", lambda: self.delete_expired_recovery_points(report, ownership)),
            ("file_systems", lambda: self.delete_unused_file_systems(report, ownership, cancel_event=cancel_event)),
        ]
        if protected is None:
            report.skipped_passes.append("vaults")
        else:
            passes.append(
                (
                    "vaults",
                    lambda: self.delete_namespace_vaults(report, ownership, protected, cancel_event=cancel_event),
                )
            )
        for name, run_pass in passes:
            try:
                run_pass()
            except OperationCancelledError:
                raise
            except VolumeManagerError as error:
                report.failures[name] = error_message(error)
                logger.warning("Cleanup pass %s failed: %s", name, error)

        logger.info(
            "Backup resources cleanup completed: %d recovery points, %d file systems, %d vaults deleted",
            len(report.deleted_recovery_points),
            len(report.deleted_file_systems),
            len(report.deleted_vaults),
        )
        return report

    def delete_expired_recovery_points(self, report: RetentionReport, ownership: Ownership) -> None:
        if not report.current_file_system_id:
            logger.info("Skipping recovery point cleanup: no bound file system")
            return
        account_id = detect_account_id(self.aws)
        resource_arn = build_efs_arn(self.aws.region, account_id, report.current_file_system_id)
        points = self._recovery_points_for_resource(resource_arn)
        expired: list[RecoveryPoint] = []
        for point in select_expired_recovery_points(points, now=self.clock(), retention_days=self.retention_days):
            if not ownership.owns(point.vault_name):
                logger.info(
                    "Keeping recovery point %s: vault %s is not owned by %s", point.arn, point.vault_name, report.namespace
                )
                continue
            expired.append(point)
        if not expired:
            logger.info("No old recovery points found to cleanup")
            return

        for point in expired:
            logger.info("Deleting old recovery point: %s (created: %s)", point.arn, point.created_at)
            try:
                aws_call(
                    operation=f"backup delete-recovery-point {point.arn}",
                    func=lambda point=point: self.aws.backup.delete_recovery_point(
                        BackupVaultName=point.vault_name,
                        RecoveryPointArn=point.arn,
                    ),
                )
            except VolumeManagerError as error:
                logger.warning("Failed to delete recovery point %s: %s", point.arn, error)
                continue
            report.deleted_recovery_points.append(point.arn)

    def delete_unused_file_systems(
        self,
        report: RetentionReport,
        ownership: Ownership,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        candidates: list[str] = []
        for page in aws_call(
            operation="efs describe-file-systems",
            func=lambda: list(self.aws.efs.get_paginator("describe_file_systems").paginate()),
        ):
            for file_system in page.get("FileSystems", []):
                file_system_id = file_system.get("FileSystemId")
                if not file_system_id or file_system_id == report.current_file_system_id:
                    continue
                if not ownership.owns(file_system.get("Name")):
                    continue
                if file_system.get("LifeCycleState") != "available":
                    continue
                candidates.append(file_system_id)

        if not candidates:
            logger.info("No unused EFS filesystems found to cleanup")
            return

        for file_system_id in candidates:
            logger.info("Deleting unused EFS: %s", file_system_id)
            try:
                self._delete_mount_targets(file_system_id)
                self._wait_for_mount_targets_drained(file_system_id, cancel_event=cancel_event)
                aws_call(
                    operation=f"efs delete-file-system {file_system_id}",
                    func=lambda file_system_id=file_system_id: self.aws.efs.delete_file_system(
                        FileSystemId=file_system_id
                    ),
                )
            except OperationCancelledError:
                raise
            except VolumeManagerError as error:
                logger.warning("Failed to delete EFS %s: %s", file_system_id, error)
                continue
            report.deleted_file_systems.append(file_system_id)

    def delete_namespace_vaults(
        self,
        report: RetentionReport,
        ownership: Ownership,
        protected: set[str],
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        vault_names: list[str] = []
        for page in aws_call(
            operation="backup list-backup-vaults",
            func=lambda: list(self.aws.backup.get_paginator("list_backup_vaults").paginate()),
        ):
            for vault in page.get("BackupVaultList", []):
                name = vault.get("BackupVaultName")
                if ownership.owns(name) and name not in protected:
                    vault_names.append(name)

        if not vault_names:
            logger.info("No unprotected backup vaults found for namespace %s", report.namespace)
            return

        for vault_name in vault_names:
            logger.info("Processing backup vault: %s", vault_name)
            try:
                self._empty_vault(vault_name)
                sleep_unless_cancelled(
                    self.vault_propagation_seconds,
                    subject=f"recovery point deletion in {vault_name}",
                    cancel_event=cancel_event,
                )
                aws_call(
                    operation=f"backup delete-backup-vault {vault_name}",
                    func=lambda vault_name=vault_name: self.aws.backup.delete_backup_vault(BackupVaultName=vault_name),
                )
            except OperationCancelledError:
                raise
            except VolumeManagerError as error:
                logger.warning("Failed to delete backup vault %s: %s", vault_name, error)
                continue
            report.deleted_vaults.append(vault_name)

    def protected_vaults(self, namespace: str, current_file_system_id: str) -> set[str]:
        """The namespace vault plus every vault holding a recovery point of the bound file system."""
        account_id = detect_account_id(self.aws)
        resource_arn = build_efs_arn(self.aws.region, account_id, current_file_system_id)
        protected = {point.vault_name for point in self._recovery_points_for_resource(resource_arn) if point.vault_name}
        protected.add(default_vault_name(namespace))
        return protected

    def _recovery_points_for_resource(self, resource_arn: str) -> list[RecoveryPoint]:
        pages = aws_call(
            operation=f"backup list-recovery-points-by-resource {resource_arn}",
            func=lambda: list(
                self.aws.backup.get_paginator("list_recovery_points_by_resource").paginate(ResourceArn=resource_arn)
            ),
        )
        return [RecoveryPoint.from_api(item) for page in pages for item in page.get("RecoveryPoints", [])]

    def _delete_mount_targets(self, file_system_id: str) -> None:
        for mount_target_id in self._mount_target_ids(file_system_id):
            logger.info("Deleting mount target: %s", mount_target_id)
            try:
                aws_call(
                    operation=f"efs delete-mount-target {mount_target_id}",
                    func=lambda mount_target_id=mount_target_id: self.aws.efs.delete_mount_target(
                        MountTargetId=mount_target_id
                    ),
                )
            except VolumeManagerError as error:
                logger.warning("Failed to delete mount target %s: %s", mount_target_id, error)

    def _wait_for_mount_targets_drained(
        self,
        file_system_id: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        poll_until(
            lambda _attempt: True if not self._mount_target_ids(file_system_id) else None,
            subject=f"mount target removal on {file_system_id}",
            interval_seconds=self.mount_target_propagation_seconds,
            max_attempts=MOUNT_TARGET_DRAIN_ATTEMPTS,
            cancel_event=cancel_event,
        )

    def _mount_target_ids(self, file_system_id: str) -> list[str]:
        response = aws_call(
            operation=f"efs describe-mount-targets {file_system_id}",
            func=lambda: self.aws.efs.describe_mount_targets(FileSystemId=file_system_id),
        )
        return [item["MountTargetId"] for item in response.get("MountTargets", []) if item.get("MountTargetId")]

    def _empty_vault(self, vault_name: str) -> None:
        pages = aws_call(
            operation=f"backup list-recovery-points-by-backup-vault {vault_name}",
            func=lambda: list(
                self.aws.backup.get_paginator("list_recovery_points_by_backup_vault").paginate(
                    BackupVaultName=vault_name
                )
            ),
        )
        arns = [item["RecoveryPointArn"] for page in pages for item in page.get("RecoveryPoints", [])]
        if not arns:
            logger.info("No recovery points found in vault: %s", vault_name)
            return
        failed: list[str] = []
        for arn in arns:
            try:
                aws_call(
                    operation=f"backup delete-recovery-point {arn}",
                    func=lambda arn=arn: self.aws.backup.delete_recovery_point(
                        BackupVaultName=vault_name,
                        RecoveryPointArn=arn,
                    ),
                )
            except VolumeManagerError as error:
                logger.warning("Failed to delete recovery point %s: %s", arn, error)
                failed.append(arn)
        logger.info("Deleted %d recovery points from vault: %s", len(arns) - len(failed), vault_name)
