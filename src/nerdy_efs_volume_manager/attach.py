"""Attach orchestration: switch a namespace's workloads onto another EFS.

The workflow is a fixed sequence of states. Each state declares whether a
failure ends the run (``MANDATORY``) or is logged and skipped
(``BEST_EFFORT``). ``BackupConfig`` is governed by ``BackupConfigPolicy``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
import logging
import shutil
import threading
from typing import Callable

import requests

from .aws import AwsClients, detect_account_id
from .commands import Kubectl, run_command
from .config import DEFAULT_BACKUP_PV_PVC_URL
from .errors import ExternalCommandError, NotFoundError, OperationCancelledError, VolumeManagerError, error_message
from .k8s import KubernetesClients, find_stateful_set, k8s_call
from .models import AttachRequest, AttachResult, BackupConfigPolicy
from .mount_targets import replicate_mount_targets, validate_mount_targets
from .rebind import VolumeRebindEngine
from .resolver import StorageIdentityResolver
from .snapshot import BackupJobController, ProgressReporter
from .verify import DataIntegrityVerifier

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]


class AttachState(str, Enum):
    INIT = "Init"
    REPLICATE_MOUNT_TARGETS = "ReplicateMountTargets"
    VALIDATE_MOUNT_TARGETS = "ValidateMountTargets"
    VERIFY_DATA = "VerifyData"
    BACKUP_CONFIG = "BackupConfig"
    REBIND = "Rebind"
    RESTART_CONSUMERS = "RestartConsumers"
    SNAPSHOT_NEW = "SnapshotNew"
    DONE = "Done"
    FAILED = "Failed"


class StepPolicy(str, Enum):
    MANDATORY = "mandatory"
    BEST_EFFORT = "best-effort"


@dataclass(frozen=True)
class AttachStep:
    state: AttachState
    policy: StepPolicy
    progress: float


ATTACH_STEPS: tuple[AttachStep, ...] = (
    AttachStep(AttachState.INIT, StepPolicy.MANDATORY, 5.0),
    AttachStep(AttachState.REPLICATE_MOUNT_TARGETS, StepPolicy.BEST_EFFORT, 15.0),
    AttachStep(AttachState.VALIDATE_MOUNT_TARGETS, StepPolicy.BEST_EFFORT, 25.0),
    AttachStep(AttachState.VERIFY_DATA, StepPolicy.BEST_EFFORT, 35.0),
    AttachStep(AttachState.BACKUP_CONFIG, StepPolicy.MANDATORY, 45.0),
    AttachStep(AttachState.REBIND, StepPolicy.MANDATORY, 60.0),
    AttachStep(AttachState.RESTART_CONSUMERS, StepPolicy.MANDATORY, 80.0),
    AttachStep(AttachState.SNAPSHOT_NEW, StepPolicy.BEST_EFFORT, 95.0),
)


class AttachFailedError(VolumeManagerError):
    def __init__(self, *, state: AttachState, result: AttachResult, cause: BaseException) -> None:
        self.state = state
        self.result = result
        super().__init__(f"attach failed during {state.value}: {error_message(cause)}")


def validate_attach_prerequisites(clients: KubernetesClients, aws: AwsClients) -> None:
    """Fail early when kubectl, the cluster, or AWS credentials are unusable."""
    if shutil.which("kubectl") is None:
        raise NotFoundError("kubectl is not installed or not accessible in PATH")
    k8s_call(
        operation="list namespaces",
        hint="Cannot access Kubernetes cluster; check kubeconfig and RBAC.",
        func=lambda: clients.core_api.list_namespace(limit=1),
    )
    detect_account_id(aws)


def restart_consumers(
    clients: KubernetesClients,
    kubectl: Kubectl,
    namespace: str,
    consumer_names: tuple[str, ...] | list[str],
    *,
    rollout_timeout_seconds: int = 600,
    cancel_event: threading.Event | None = None,
) -> list[str]:
    """Restart StatefulSets one after another, waiting for each rollout to settle."""
    restarted: list[str] = []
    for raw in consumer_names:
        name = raw.strip()
        if not name:
            continue
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"restart of StatefulSet {name}")
        actual = find_stateful_set(clients, namespace, name)
        logger.info("Restarting StatefulSet %s (actual: %s)", name, actual)
        kubectl.run("-n", namespace, "rollout", "restart", f"statefulset/{actual}")
        logger.info("Waiting for StatefulSet %s rollout (timeout: %ds)", actual, rollout_timeout_seconds)
        kubectl.run(
            "-n",
            namespace,
            "rollout",
            "status",
            f"statefulset/{actual}",
            f"--timeout={rollout_timeout_seconds}s",
            timeout_seconds=rollout_timeout_seconds + 30,
        )
        logger.info("StatefulSet %s rollout completed successfully", actual)
        restarted.append(actual)
    return restarted


class VolumeDefinitionBackup:
    """Saves the namespace's PV/PVC definitions with the published helper script."""

    script_name = "backup_pv_pvc.sh"

    def __init__(
        self,
        *,
        scripts_dir: Path,
        script_url: str = DEFAULT_BACKUP_PV_PVC_URL,
        session: requests.Session | None = None,
        download_timeout_seconds: float = 30,
    ) -> None:
        self.scripts_dir = Path(scripts_dir)
        self.script_url = script_url
        self.session = session or requests.Session()
        self.download_timeout_seconds = download_timeout_seconds

    @property
    def script_path(self) -> Path:
        return self.scripts_dir / self.script_name

    def ensure_script(self) -> Path:
        path = self.script_path
        if path.is_file():
            return path
        logger.info("Backup script not found. Downloading from %s", self.script_url)
        try:
            response = self.session.get(self.script_url, timeout=self.download_timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as error:
            raise ExternalCommandError(
                operation=f"download backup script from {self.script_url}",
                output=str(error),
            ) from error
        self.scripts_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(response.text)
        path.chmod(0o755)
        return path

    def run(self, namespace: str) -> str:
        script = self.ensure_script()
        logger.info("Running PV/PVC backup script for namespace %s", namespace)
        result = run_command(
            ["bash", str(script)],
            operation="PV/PVC backup script",
            env={"NAMESPACE": namespace},
        )
        output = result.output.strip()
        if output:
            logger.info("%s", output)
        return output


class AttachOrchestrator:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        aws: AwsClients,
        kubectl: Kubectl,
        resolver: StorageIdentityResolver,
        rebind_engine: VolumeRebindEngine,
        verifier: DataIntegrityVerifier | None = None,
        backup_controller: BackupJobController | None = None,
        definition_backup: VolumeDefinitionBackup | None = None,
        backup_config_policy: BackupConfigPolicy = BackupConfigPolicy.ASK,
        confirm: ConfirmCallback | None = None,
        rollout_timeout_seconds: int = 600,
        prerequisites: Callable[[], None] | None = None,
        steps: tuple[AttachStep, ...] = ATTACH_STEPS,
    ) -> None:
        self.clients = clients
        self.aws = aws
        self.kubectl = kubectl
        self.resolver = resolver
        self.rebind_engine = rebind_engine
        self.verifier = verifier
        self.backup_controller = backup_controller
        self.definition_backup = definition_backup
        self.backup_config_policy = backup_config_policy
        self.confirm = confirm
        self.rollout_timeout_seconds = rollout_timeout_seconds
        self.prerequisites = prerequisites or (lambda: validate_attach_prerequisites(clients, aws))
        self.steps = steps

    def run(
        self,
        request: AttachRequest,
        *,
        cancel_event: threading.Event | None = None,
        progress: ProgressReporter | None = None,
    ) -> AttachResult:
        """Walk the attach states in order.

        Best-effort failures are appended to ``result.warnings``. A mandatory
        failure moves the result to ``Failed`` and raises ``AttachFailedError``.
        """
        result = AttachResult(namespace=request.namespace, file_system_id=request.target_file_system_id)
        context: dict[str, str | None] = {"source_file_system_id": None}
        logger.info("Verifying restored data and switching workloads in %s", request.namespace)

        for step in self.steps:
            if cancel_event is not None and cancel_event.is_set():
                result.state = AttachState.FAILED.value
                raise AttachFailedError(
                    state=step.state,
                    result=result,
                    cause=OperationCancelledError(step.state.value),
                )
            result.state = step.state.value
            handler = self._handlers()[step.state]
            if progress is not None:
                progress(f"{step.state.value}...", step.progress)
            try:
                handler(request, result, context, cancel_event)
            except VolumeManagerError as error:
                if step.policy is StepPolicy.BEST_EFFORT and not isinstance(error, OperationCancelledError):
                    message = f"{step.state.value}: {error_message(error)}"
                    logger.warning("%s failed, continuing: %s", step.state.value, error)
                    result.warnings.append(message)
                    continue
                logger.error("%s failed: %s", step.state.value, error)
                result.state = AttachState.FAILED.value
                raise AttachFailedError(state=step.state, result=result, cause=error) from error

        result.state = AttachState.DONE.value
        if progress is not None:
            progress("Attach completed", 100.0)
        logger.info("Backup attach completed successfully")
        return result

    def _handlers(self) -> dict[AttachState, Callable[..., None]]:
        return {
            AttachState.INIT: self._init,
            AttachState.REPLICATE_MOUNT_TARGETS: self._replicate_mount_targets,
            AttachState.VALIDATE_MOUNT_TARGETS: self._validate_mount_targets,
            AttachState.VERIFY_DATA: self._verify_data,
            AttachState.BACKUP_CONFIG: self._backup_config,
            AttachState.REBIND: self._rebind,
            AttachState.RESTART_CONSUMERS: self._restart_consumers,
            AttachState.SNAPSHOT_NEW: self._snapshot_new,
        }

    def _init(self, request, result, context, cancel_event) -> None:
        self.prerequisites()
        if request.target_file_system_id:
            context["source_file_system_id"] = self.resolver.resolve(request.namespace)
            logger.info("Source EFS in %s: %s", request.namespace, context["source_file_system_id"])

    def _replicate_mount_targets(self, request, result, context, cancel_event) -> None:
        target = request.target_file_system_id
        if not target:
            return
        source = context.get("source_file_system_id")
        if not source:
            raise NotFoundError(f"no source EFS in {request.namespace}; mount targets were not replicated")
        replicate_mount_targets(self.aws, source, target)
        logger.info("Replicated mount targets from %s to %s (region: %s)", source, target, self.aws.region)

    def _validate_mount_targets(self, request, result, context, cancel_event) -> None:
        if not request.target_file_system_id:
            return
        validate_mount_targets(self.aws, request.target_file_system_id)
        logger.info("Mount targets validated for %s", request.target_file_system_id)

    def _verify_data(self, request, result, context, cancel_event) -> None:
        if self.verifier is None:
            return
        report = self.verifier.verify(request.namespace, cancel_event=cancel_event)
        result.verification = report
        if not report.passed:
            result.warnings.append(f"VerifyData: {'; '.join(report.failures) or report.phase}")

    def _backup_config(self, request, result, context, cancel_event) -> None:
        if not request.target_file_system_id or self.definition_backup is None:
            return
        policy = self.backup_config_policy
        if policy is BackupConfigPolicy.SKIP:
            logger.info("Skipped PV/PVC backup by policy")
            return
        if policy is BackupConfigPolicy.ASK:
            if self.confirm is None or not self.confirm("Run PV/PVC backup before changes?"):
                logger.info("Skipped PV/PVC backup by user choice")
                return
        self.definition_backup.run(request.namespace)

    def _rebind(self, request, result, context, cancel_event) -> None:
        if not request.target_file_system_id:
            logger.info("Skipped PV update (no file system id provided)")
            return
        if not request.target_claim_names:
            logger.info("No claim targets given; skipping rebind")
            return
        result.rebind = self.rebind_engine.rebind(
            request.namespace,
            request.target_file_system_id,
            request.target_claim_names,
            cancel_event=cancel_event,
        )

    def _restart_consumers(self, request, result, context, cancel_event) -> None:
        if not request.target_consumer_names:
            return
        result.restarted_consumers = restart_consumers(
            self.clients,
            self.kubectl,
            request.namespace,
            request.target_consumer_names,
            rollout_timeout_seconds=self.rollout_timeout_seconds,
            cancel_event=cancel_event,
        )

    def _snapshot_new(self, request, result, context, cancel_event) -> None:
        if not request.target_file_system_id or self.backup_controller is None:
            return
        logger.info("Creating recovery point for attached EFS")
        job = self.backup_controller.snapshot_namespace(
            namespace=request.namespace,
            resolver=self.resolver,
            wait=False,
            cancel_event=cancel_event,
        )
        result.snapshot_job_id = str(job)
        logger.info("Recovery point job started: %s", result.snapshot_job_id)
