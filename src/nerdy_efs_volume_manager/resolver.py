"""Storage identity and ownership lookups.

Claims are namespace scoped while volumes are cluster scoped, so the file
system bound to a namespace is found through its claims first and through a
cluster-wide volume scan when the namespace has no matching claim yet.

Nothing in the provider marks a file system or vault as belonging to a
namespace. Ownership is inferred from names and kept behind ``Ownership`` so a
tag-based scheme can replace it without touching callers.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

from .aws import is_file_system_id
from .errors import NotFoundError
from .k8s import KubernetesClients, bound_volume_name, k8s_call, read_volume, volume_handle

logger = logging.getLogger(__name__)


class Ownership(Protocol):
    def owns(self, name: str | None) -> bool: ...


@dataclass(frozen=True)
class NamespacePrefixOwnership:
    """A name belongs to ``namespace`` when it equals it or starts with ``namespace-``."""

    namespace: str
    separator: str = "-"

    def __post_init__(self) -> None:
        if not self.namespace.strip():
            raise ValueError("namespace must not be empty")

    @property
    def prefix(self) -> str:
        return f"{self.namespace}{self.separator}"

    def owns(self, name: str | None) -> bool:
        if not name:
            return False
        return name == self.namespace or name.startswith(self.prefix)


def file_system_id_from_handle(handle: str | None) -> str | None:
    """Extract ``fs-...`` from a CSI volume handle such as ``fs-1234::fsap-5678``."""
    if not handle:
        return None
    candidate = handle.strip().split(":", 1)[0]
    return candidate if is_file_system_id(candidate) else None


class StorageIdentityResolver:
    def __init__(self, clients: KubernetesClients) -> None:
        self.clients = clients

    def resolve(self, namespace: str) -> str:
        file_system_id = self._resolve_from_claims(namespace)
        if file_system_id:
            return file_system_id

        file_system_id = self._resolve_from_all_volumes()
        if file_system_id:
            logger.info("No claim in %s references an EFS volume; using cluster-wide volume %s", namespace, file_system_id)
            return file_system_id

        raise NotFoundError(f"failed to detect EFS FileSystemId from PVs for namespace {namespace}")

    def _resolve_from_claims(self, namespace: str) -> str | None:
        claims = k8s_call(
            operation=f"list PVCs in namespace '{namespace}'",
            hint="Check namespace spelling and RBAC verbs for persistentvolumeclaims.",
            func=lambda: self.clients.core_api.list_namespaced_persistent_volume_claim(namespace=namespace).items,
        )
        for claim in claims:
            volume_name = bound_volume_name(claim)
            if not volume_name:
                continue
            file_system_id = file_system_id_from_handle(volume_handle(read_volume(self.clients, volume_name)))
            if file_system_id:
                return file_system_id
        return None

    def _resolve_from_all_volumes(self) -> str | None:
        volumes = k8s_call(
            operation="list PVs",
            hint="Verify RBAC allows list on persistentvolumes.",
            func=lambda: self.clients.core_api.list_persistent_volume().items,
        )
        for volume in volumes:
            file_system_id = file_system_id_from_handle(volume_handle(volume))
            if file_system_id:
                return file_system_id
        return None
