"""Rebinding of claims to a different EFS file system.

A volume's CSI handle cannot be changed in place, so every claim is moved by
retiring its volume/claim pair and creating a new pair with the same names.
The steps run in a fixed order per claim:

1. terminate pods mounting the claim
2. delete the claim (without waiting)
3. delete the volume and wait for both objects to disappear
4. apply the new volume, then the new claim bound to it
5. wait for the claim to report ``Bound``

If step 4 fails, the pair is re-created on its previous handle so the claim
stays addressable by the same alias.

The control plane refuses to remove a volume still bound to a claim, which is
why the claim goes first.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Sequence

from .commands import Kubectl, poll_until
from .errors import NotFoundError, OperationCancelledError, PartialFailure, VolumeManagerError, error_message
from .k8s import (
    KubernetesClients,
    bound_volume_name,
    claim_phase,
    delete_claim,
    delete_pod,
    delete_volume,
    find_claim_consumer_pods,
    list_claim_names,
    read_claim,
    read_volume,
    volume_handle,
)
from .models import ClaimRebindOutcome, RebindResult
from .resolver import file_system_id_from_handle

logger = logging.getLogger(__name__)

EFS_CSI_DRIVER = "efs.csi.aws.com"
DEFAULT_STORAGE_CLASS = "efs-sc"
DEFAULT_CAPACITY = "500Gi"
DEFAULT_ACCESS_MODES = ("ReadWriteMany",)
AUTO_SELECTED_CLAIM_MARKERS = ("op-geth", "op-node")


def resolve_claim_aliases(available: Sequence[str], aliases: Sequence[str]) -> tuple[list[str], list[str]]:
    """Map aliases to claim names: exact match first, then the first name containing the alias.

    Returns ``(resolved, unmatched)``. With no aliases, claims containing
    ``op-geth`` or ``op-node`` are selected.
    """
    if not aliases:
        return [name for name in available if any(marker in name for marker in AUTO_SELECTED_CLAIM_MARKERS)], []

    resolved: list[str] = []
    unmatched: list[str] = []
    for raw in aliases:
        alias = raw.strip()
        if not alias:
            continue
        match = alias if alias in available else next((name for name in available if alias in name), None)
        if match is None:
            unmatched.append(alias)
            continue
        if match not in resolved:
            resolved.append(match)
    return resolved, unmatched


def build_volume_manifest(
    *,
    volume_name: str,
    file_system_id: str,
    capacity: str = DEFAULT_CAPACITY,
    storage_class: str = DEFAULT_STORAGE_CLASS,
    access_modes: Sequence[str] = DEFAULT_ACCESS_MODES,
    volume_mode: str = "Filesystem",
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolume",
        "metadata": {"name": volume_name, "labels": {"app": volume_name}},
        "spec": {
            "capacity": {"storage": capacity},
            "volumeMode": volume_mode,
            "accessModes": list(access_modes),
            "persistentVolumeReclaimPolicy": "Retain",
            "storageClassName": storage_class,
            "csi": {"driver": EFS_CSI_DRIVER, "volumeHandle": file_system_id},
        },
    }


def build_claim_manifest(
    *,
    claim_name: str,
    namespace: str,
    volume_name: str,
    capacity: str = DEFAULT_CAPACITY,
    storage_class: str = DEFAULT_STORAGE_CLASS,
    access_modes: Sequence[str] = DEFAULT_ACCESS_MODES,
    volume_mode: str = "Filesystem",
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": claim_name, "namespace": namespace},
        "spec": {
            "storageClassName": storage_class,
            "accessModes": list(access_modes),
            "resources": {"requests": {"storage": capacity}},
            "selector": {"matchLabels": {"app": volume_name}},
            "volumeMode": volume_mode,
            "volumeName": volume_name,
        },
    }


class VolumeRebindEngine:
    def __init__(
        self,
        clients: KubernetesClients,
        kubectl: Kubectl,
        *,
        bind_poll_interval_seconds: float = 1,
        bind_max_attempts: int = 30,
        delete_poll_interval_seconds: float = 2,
        delete_max_attempts: int = 30,
    ) -> None:
        self.clients = clients
        self.kubectl = kubectl
        self.bind_poll_interval_seconds = bind_poll_interval_seconds
        self.bind_max_attempts = bind_max_attempts
        self.delete_poll_interval_seconds = delete_poll_interval_seconds
        self.delete_max_attempts = delete_max_attempts

    def rebind(
        self,
        namespace: str,
        target_file_system_id: str,
        claim_names: Sequence[str] = (),
        *,
        cancel_event: threading.Event | None = None,
    ) -> RebindResult:
        """Point each claim at ``target_file_system_id``.

        Claims are handled one at a time and a failing claim does not stop the
        rest. Raises ``PartialFailure`` when no claim could be moved.
        """
        logger.info("Updating PV volume handles in %s to EFS: %s", namespace, target_file_system_id)
        available = list_claim_names(self.clients, namespace)
        targets, unmatched = resolve_claim_aliases(available, claim_names)
        for alias in unmatched:
            logger.warning("PVC alias '%s' did not match any PVC in namespace %s", alias, namespace)
        if not targets:
            raise NotFoundError(f"no target PVCs found to update in namespace {namespace}")

        outcomes: list[ClaimRebindOutcome] = []
        for claim_name in targets:
            try:
                outcome = self._rebind_claim(namespace, claim_name, target_file_system_id, cancel_event=cancel_event)
            except OperationCancelledError:
                raise
            except VolumeManagerError as error:
                logger.error("Failed to rebind PVC %s: %s", claim_name, error)
                outcome = ClaimRebindOutcome(
                    claim_name=claim_name,
                    volume_name=None,
                    succeeded=False,
                    message=error_message(error),
                )
            outcomes.append(outcome)

        result = RebindResult(
            namespace=namespace,
            file_system_id=target_file_system_id,
            outcomes=tuple(outcomes),
            unmatched_aliases=tuple(unmatched),
        )
        if result.success_count == 0:
            raise PartialFailure(
                action=f"recreated claims with {target_file_system_id}",
                succeeded=0,
                total=result.total,
                failures={outcome.claim_name: outcome.message for outcome in outcomes},
            )
        logger.info("Successfully %s", result.summary)
        return result

    def _rebind_claim(
        self,
        namespace: str,
        claim_name: str,
        target_file_system_id: str,
        *,
        cancel_event: threading.Event | None,
    ) -> ClaimRebindOutcome:
        claim = read_claim(self.clients, namespace, claim_name)
        if claim is None:
            raise NotFoundError(f"PVC {namespace}/{claim_name} not found")
        volume_name = bound_volume_name(claim)
        if not volume_name:
            raise NotFoundError(f"PVC {claim_name} has no volumeName")

        old_volume = read_volume(self.clients, volume_name)
        old_handle = volume_handle(old_volume)
        if (
            file_system_id_from_handle(old_handle) == target_file_system_id
            and claim_phase(claim) == "Bound"
        ):
            logger.info("PVC %s is already bound to %s on %s", claim_name, volume_name, target_file_system_id)
            return ClaimRebindOutcome(claim_name, volume_name, True, "already bound")

        spec_fields = _preserved_volume_fields(old_volume)
        logger.info("Processing PVC: %s (PV: %s)", claim_name, volume_name)

        for pod_name in find_claim_consumer_pods(self.clients, namespace, claim_name):
            logger.info("Deleting pod %s that uses PVC %s", pod_name, claim_name)
            delete_pod(self.clients, namespace, pod_name)

        logger.info("Deleting PVC %s", claim_name)
        delete_claim(self.clients, namespace, claim_name)
        logger.info("Deleting old PV %s", volume_name)
        delete_volume(self.clients, volume_name)
        poll_until(
            lambda _attempt: (
                True
                if read_claim(self.clients, namespace, claim_name) is None and read_volume(self.clients, volume_name) is None
                else None
            ),
            subject=f"removal of PVC {claim_name} and PV {volume_name}",
            interval_seconds=self.delete_poll_interval_seconds,
            max_attempts=self.delete_max_attempts,
            cancel_event=cancel_event,
        )

        try:
            self._apply_pair(namespace, claim_name, volume_name, target_file_system_id, spec_fields)
        except OperationCancelledError:
            raise
        except VolumeManagerError as error:
            note = self._restore_previous_pair(
                namespace, claim_name, volume_name, old_handle, spec_fields, cancel_event=cancel_event
            )
            raise VolumeManagerError(f"{error_message(error)}; {note}") from error

        logger.info("Waiting for PVC %s to be bound", claim_name)
        poll_until(
            lambda _attempt: True if claim_phase(read_claim(self.clients, namespace, claim_name)) == "Bound" else None,
            subject=f"PVC {claim_name} to be Bound",
            interval_seconds=self.bind_poll_interval_seconds,
            max_attempts=self.bind_max_attempts,
            cancel_event=cancel_event,
        )
        logger.info("PVC %s and PV %s recreated with EFS %s", claim_name, volume_name, target_file_system_id)
        return ClaimRebindOutcome(claim_name, volume_name, True)

    def _apply_pair(
        self,
        namespace: str,
        claim_name: str,
        volume_name: str,
        handle: str,
        spec_fields: dict[str, Any],
    ) -> None:
        self.kubectl.apply_manifests(
            [build_volume_manifest(volume_name=volume_name, file_system_id=handle, **spec_fields)],
            operation=f"create PV {volume_name}",
        )
        self.kubectl.apply_manifests(
            [
                build_claim_manifest(
                    claim_name=claim_name,
                    namespace=namespace,
                    volume_name=volume_name,
                    **spec_fields,
                )
            ],
            operation=f"create PVC {namespace}/{claim_name}",
        )

    def _restore_previous_pair(
        self,
        namespace: str,
        claim_name: str,
        volume_name: str,
        old_handle: str | None,
        spec_fields: dict[str, Any],
        *,
        cancel_event: threading.Event | None,
    ) -> str:
        """Put the retired claim back on its old volume handle so a later run can find it again."""
        if not old_handle:
            logger.error("PV %s had no volume handle; PVC %s cannot be restored", volume_name, claim_name)
            return f"PVC {claim_name} was removed and could not be restored (PV {volume_name} had no handle)"
        logger.warning("Restoring PVC %s and PV %s on previous handle %s", claim_name, volume_name, old_handle)
        try:
            if delete_volume(self.clients, volume_name):
                poll_until(
                    lambda _attempt: True if read_volume(self.clients, volume_name) is None else None,
                    subject=f"removal of partially created PV {volume_name}",
                    interval_seconds=self.delete_poll_interval_seconds,
                    max_attempts=self.delete_max_attempts,
                    cancel_event=cancel_event,
                )
            self._apply_pair(namespace, claim_name, volume_name, old_handle, spec_fields)
        except OperationCancelledError:
            raise
        except VolumeManagerError as error:
            logger.error("Failed to restore PVC %s on %s: %s", claim_name, old_handle, error)
            return f"restoring PVC {claim_name} on {old_handle} failed: {error_message(error)}"
        return f"PVC {claim_name} restored on previous handle {old_handle}"


def _preserved_volume_fields(volume: object | None) -> dict[str, Any]:
    spec = getattr(volume, "spec", None)
    capacity = getattr(spec, "capacity", None) or {}
    return {
        "capacity": capacity.get("storage") or DEFAULT_CAPACITY,
        "storage_class": getattr(spec, "storage_class_name", None) or DEFAULT_STORAGE_CLASS,
        "access_modes": tuple(getattr(spec, "access_modes", None) or DEFAULT_ACCESS_MODES),
        "volume_mode": getattr(spec, "volume_mode", None) or "Filesystem",
    }
