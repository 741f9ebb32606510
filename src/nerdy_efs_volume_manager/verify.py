from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
import re
import threading

from kubernetes import client
from kubernetes.client import ApiException

from .commands import poll_until
from .errors import ExternalCommandError, NotFoundError, PollTimeoutError, error_message
from .k8s import KubernetesClients, k8s_call, list_claim_names
from .models import VerificationReport

logger = logging.getLogger(__name__)

VERIFY_POD_PREFIX = "nevm-verify"
MOUNT_PATH = "/data"

# The checks stop at the first missing marker or empty directory.
VERIFY_SCRIPT = """\
ls "$MOUNT_PATH" >/dev/null 2>&1 || { echo "FAIL: volume not accessible at $MOUNT_PATH"; exit 1; }

DATA_DIR=""
for candidate in "$MOUNT_PATH"/*"$IDENTITY_SUFFIX"; do
  if [ -d "$candidate/$DATA_SUBPATH" ]; then
    DATA_DIR="$candidate/$DATA_SUBPATH"
    break
  fi
done
if [ -z "$DATA_DIR" ] && [ -d "$MOUNT_PATH/$FALLBACK_DIR" ]; then
  DATA_DIR="$MOUNT_PATH/$FALLBACK_DIR"
fi
if [ -z "$DATA_DIR" ]; then
  echo "FAIL: no data directory found"
  exit 1
fi
echo "DATA_DIR=$DATA_DIR"

file_count=$(find "$DATA_DIR" -type f 2>/dev/null | wc -l)
echo "FILE_COUNT=$file_count"
if [ "$file_count" -eq 0 ]; then
  echo "FAIL: data directory is empty"
  exit 1
fi

for marker in $MARKERS; do
  if ! ls "$DATA_DIR/$marker"* >/dev/null 2>&1; then
    echo "FAIL: $marker file missing"
    exit 1
  fi
  echo "MARKER=$marker"
done

data_files=0
for ext in $DATA_EXTENSIONS; do
  found=$(find "$DATA_DIR" -type f -name "*.$ext" 2>/dev/null | wc -l)
  data_files=$((data_files + found))
done
echo "DATA_FILE_COUNT=$data_files"
if [ "$data_files" -eq 0 ]; then
  echo "FAIL: no data files found"
  exit 1
fi

if [ -f "$DATA_DIR/LOCK" ]; then
  echo "WARN: LOCK file exists, database may be in use"
fi
echo "OK"
"""

_LINE_PATTERN = re.compile(r"^(DATA_DIR|FILE_COUNT|DATA_FILE_COUNT)=(.*)$")


@dataclass(frozen=True)
class VerificationProfile:
    """Where the data lives on the volume and what a healthy copy contains."""

    claim_marker: str = "op-geth"
    identity_suffix: str = "-op-geth"
    data_subpath: str = "geth/chaindata"
    fallback_dir: str = "chaindata"
    markers: tuple[str, ...] = ("CURRENT", "MANIFEST-")
    data_extensions: tuple[str, ...] = ("sst", "ldb")

    def environment(self) -> dict[str, str]:
        return {
            "MOUNT_PATH": MOUNT_PATH,
            "IDENTITY_SUFFIX": self.identity_suffix,
            "DATA_SUBPATH": self.data_subpath,
            "FALLBACK_DIR": self.fallback_dir,
            "MARKERS": " ".join(self.markers),
            "DATA_EXTENSIONS": " ".join(self.data_extensions),
        }


def parse_verification_log(claim_name: str, phase: str, log: str) -> VerificationReport:
    values: dict[str, str] = {}
    failures: list[str] = []
    warnings: list[str] = []
    for raw_line in log.splitlines():
        line = raw_line.strip()
        if line.startswith("FAIL:"):
            failures.append(line[5:].strip())
            continue
        if line.startswith("WARN:"):
            warnings.append(line[5:].strip())
            continue
        match = _LINE_PATTERN.match(line)
        if match:
            values[match.group(1)] = match.group(2).strip()

    return VerificationReport(
        claim_name=claim_name,
        passed=phase == "Succeeded" and not failures,
        phase=phase,
        data_directory=values.get("DATA_DIR"),
        file_count=_as_int(values.get("FILE_COUNT")),
        data_file_count=_as_int(values.get("DATA_FILE_COUNT")),
        failures=tuple(failures),
        warnings=tuple(warnings),
        log=log,
    )


class DataIntegrityVerifier:
    def __init__(
        self,
        clients: KubernetesClients,
        *,
        helper_image: str = "alpine:3.20",
        profile: VerificationProfile | None = None,
        poll_interval_seconds: float = 2,
        max_attempts: int = 90,
    ) -> None:
        self.clients = clients
        self.helper_image = helper_image
        self.profile = profile or VerificationProfile()
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts

    def find_target_claim(self, namespace: str) -> str:
        for name in list_claim_names(self.clients, namespace):
            if self.profile.claim_marker in name:
                return name
        raise NotFoundError(f"no {self.profile.claim_marker} PVC found in namespace {namespace}")

    def verify(
        self,
        namespace: str,
        claim_name: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> VerificationReport:
        """Run the inspection pod against a claim and report what it saw.

        A failed pod or a timeout produces a report with ``passed=False``;
        only problems launching the pod raise.
        """
        target = claim_name or self.find_target_claim(namespace)
        logger.info("Checking EFS data using PVC %s", target)

        pod_name = _verify_pod_name(target)
        self._create_pod(namespace, pod_name, target)
        try:
            try:
                phase = poll_until(
                    lambda attempt: self._terminal_phase(namespace, pod_name, attempt),
                    subject=f"verification pod {namespace}/{pod_name}",
                    interval_seconds=self.poll_interval_seconds,
                    max_attempts=self.max_attempts,
                    cancel_event=cancel_event,
                )
            except PollTimeoutError as error:
                logger.warning("Verification pod did not finish: %s", error)
                return VerificationReport(
                    claim_name=target,
                    passed=False,
                    phase="Timeout",
                    failures=(error_message(error),),
                )

            report = parse_verification_log(target, phase, self._read_log(namespace, pod_name))
        finally:
            try:
                self._delete_pod(namespace, pod_name)
            except ExternalCommandError as error:
                logger.warning("Failed to remove verification pod: %s", error)

        if report.passed:
            logger.info("EFS data verification completed successfully: %s", report.data_directory)
        else:
            logger.warning("EFS data verification failed: %s", "; ".join(report.failures) or report.phase)
        for warning in report.warnings:
            logger.warning("EFS data verification: %s", warning)
        return report

    def _terminal_phase(self, namespace: str, pod_name: str, attempt: int) -> str | None:
        try:
            pod = self.clients.core_api.read_namespaced_pod(name=pod_name, namespace=namespace)
        except ApiException as error:
            logger.info("Pod status check failed: %s", error.reason or error.status)
            return None
        phase = getattr(getattr(pod, "status", None), "phase", None) or "Unknown"
        if phase in {"Succeeded", "Failed"}:
            return phase
        logger.info("Verification pod is %s (attempt %d/%d)", phase.lower(), attempt, self.max_attempts)
        return None

    def _read_log(self, namespace: str, pod_name: str) -> str:
        try:
            return self.clients.core_api.read_namespaced_pod_log(name=pod_name, namespace=namespace) or ""
        except ApiException as error:
            logger.warning("Could not retrieve verification logs: %s", error.reason or error.status)
            return ""

    def _create_pod(self, namespace: str, pod_name: str, claim_name: str) -> None:
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=pod_name,
                labels={
                    "app.kubernetes.io/name": "nerdy-efs-volume-manager",
                    "app.kubernetes.io/component": "verify-helper",
                },
            ),
            spec=client.V1PodSpec(
                restart_policy="Never",
                containers=[
                    client.V1Container(
                        name="verify",
                        image=self.helper_image,
                        command=["/bin/sh", "-c", VERIFY_SCRIPT],
                        env=[client.V1EnvVar(name=key, value=value) for key, value in self.profile.environment().items()],
                        volume_mounts=[client.V1VolumeMount(name="target", mount_path=MOUNT_PATH, read_only=True)],
                    )
                ],
                volumes=[
                    client.V1Volume(
                        name="target",
                        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                            claim_name=claim_name,
                            read_only=True,
                        ),
                    )
                ],
            ),
        )
        k8s_call(
            operation=f"create verification pod in namespace '{namespace}'",
            hint="Verify RBAC allows create on pods.",
            func=lambda: self.clients.core_api.create_namespaced_pod(namespace=namespace, body=pod),
        )

    def _delete_pod(self, namespace: str, pod_name: str) -> None:
        try:
            self.clients.core_api.delete_namespaced_pod(
                name=pod_name,
                namespace=namespace,
                grace_period_seconds=0,
                body=client.V1DeleteOptions(),
            )
        except ApiException as error:
            if error.status == 404:
                return
            raise ExternalCommandError(
                operation=f"delete verification pod in namespace '{namespace}'",
                output=f"API status {error.status} ({error.reason})",
            ) from error


def _as_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _verify_pod_name(claim_name: str) -> str:
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S")
    base = f"{VERIFY_POD_PREFIX}-{claim_name}".lower()
    normalized = re.sub(r"-+", "-", re.sub(r"[^a-z0-9-]", "-", base)).strip("-")
    return f"{normalized[: 62 - len(timestamp)].rstrip('-')}-{timestamp}"
