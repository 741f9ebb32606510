from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import ExternalCommandError, NotFoundError

T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
    )


def k8s_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise ExternalCommandError(
            operation=operation,
            output=_format_api_exception_message(hint=hint, error=error),
        ) from error


def list_claim_names(clients: KubernetesClients, namespace: str) -> list[str]:
    claims = k8s_call(
        operation=f"list PVCs in namespace '{namespace}'",
        hint="Check namespace spelling and RBAC verbs for persistentvolumeclaims.",
        func=lambda: clients.core_api.list_namespaced_persistent_volume_claim(namespace=namespace).items,
    )
    return [claim.metadata.name for claim in claims if claim.metadata and claim.metadata.name]


def read_claim(clients: KubernetesClients, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None:
    try:
        return clients.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace)
    except ApiException as error:
        if error.status == 404:
            return None
        raise ExternalCommandError(
            operation=f"read PVC '{namespace}/{name}'",
            output=_format_api_exception_message(hint="Verify RBAC allows get on PVCs.", error=error),
        ) from error


def read_volume(clients: KubernetesClients, name: str) -> client.V1PersistentVolume | None:
    try:
        return clients.core_api.read_persistent_volume(name=name)
    except ApiException as error:
        if error.status == 404:
            return None
        raise ExternalCommandError(
            operation=f"read PV '{name}'",
            output=_format_api_exception_message(hint="Verify RBAC allows get on PVs.", error=error),
        ) from error


def claim_phase(claim: object | None) -> str:
    status = getattr(claim, "status", None)
    return getattr(status, "phase", None) or "Unknown"


def bound_volume_name(claim: object | None) -> str | None:
    spec = getattr(claim, "spec", None)
    name = getattr(spec, "volume_name", None)
    return name.strip() if isinstance(name, str) and name.strip() else None


def volume_handle(volume: object | None) -> str | None:
    spec = getattr(volume, "spec", None)
    csi = getattr(spec, "csi", None)
    handle = getattr(csi, "volume_handle", None)
    return handle.strip() if isinstance(handle, str) and handle.strip() else None


def find_claim_consumer_pods(clients: KubernetesClients, namespace: str, claim_name: str) -> list[str]:
    pods = k8s_call(
        operation=f"list Pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods and confirm the namespace still exists.",
        func=lambda: clients.core_api.list_namespaced_pod(namespace=namespace).items,
    )
    names: list[str] = []
    for pod in pods:
        pod_name = pod.metadata.name if pod.metadata else None
        if not pod_name:
            continue
        for volume in (pod.spec.volumes if pod.spec else None) or []:
            pvc_source = volume.persistent_volume_claim
            if pvc_source and pvc_source.claim_name == claim_name:
                names.append(pod_name)
                break
    return names


def find_stateful_set(clients: KubernetesClients, namespace: str, pattern: str) -> str:
    """Return the deployed StatefulSet whose name contains ``pattern``.

    Generated names embed a timestamp, e.g. ``op-geth`` matches
    ``chain1-1700000000-stack-op-geth``. An exact match wins over containment.
    """
    stateful_sets = k8s_call(
        operation=f"list StatefulSets in namespace '{namespace}'",
        hint="Check RBAC verbs for statefulsets.",
        func=lambda: clients.apps_api.list_namespaced_stateful_set(namespace=namespace).items,
    )
    names = [item.metadata.name for item in stateful_sets if item.metadata and item.metadata.name]
    if pattern in names:
        return pattern
    for name in names:
        if pattern in name:
            return name
    raise NotFoundError(f"no StatefulSet found matching pattern: {pattern}")


def delete_pod(clients: KubernetesClients, namespace: str, name: str) -> bool:
    return _delete_ignoring_missing(
        operation=f"delete Pod '{namespace}/{name}'",
        func=lambda: clients.core_api.delete_namespaced_pod(
            name=name,
            namespace=namespace,
            body=client.V1DeleteOptions(),
        ),
    )


def delete_claim(clients: KubernetesClients, namespace: str, name: str) -> bool:
    # Returns without waiting for finalizers; the volume deletion that follows is what must succeed.
    return _delete_ignoring_missing(
        operation=f"delete PVC '{namespace}/{name}'",
        func=lambda: clients.core_api.delete_namespaced_persistent_volume_claim(
            name=name,
            namespace=namespace,
            body=client.V1DeleteOptions(),
        ),
    )


def delete_volume(clients: KubernetesClients, name: str) -> bool:
    return _delete_ignoring_missing(
        operation=f"delete PV '{name}'",
        func=lambda: clients.core_api.delete_persistent_volume(name=name, body=client.V1DeleteOptions()),
    )


def _delete_ignoring_missing(*, operation: str, func: Callable[[], object]) -> bool:
    try:
        func()
    except ApiException as error:
        if error.status == 404:
            return False
        raise ExternalCommandError(
            operation=operation,
            output=_format_api_exception_message(hint="Verify RBAC allows delete.", error=error),
        ) from error
    return True


def _format_api_exception_message(*, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    body = (error.body or "").strip() if isinstance(error.body, str) else ""
    message = f"API status {status} ({reason}). {hint}"
    return f"{message} {body}" if body else message


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
