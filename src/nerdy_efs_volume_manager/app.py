from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
import os

import streamlit as st
import yaml

from nerdy_efs_volume_manager.attach import (
    AttachFailedError,
    AttachOrchestrator,
    VolumeDefinitionBackup,
)
from nerdy_efs_volume_manager.aws import AwsClients, load_aws_clients
from nerdy_efs_volume_manager.commands import Kubectl
from nerdy_efs_volume_manager.config import AppConfig, configure_logging, ensure_directories
from nerdy_efs_volume_manager.errors import VolumeManagerError
from nerdy_efs_volume_manager.k8s import KubernetesClients, load_kubernetes_clients, persist_kubeconfig_content
from nerdy_efs_volume_manager.metadata import JobHistoryStore
from nerdy_efs_volume_manager.models import AttachRequest, AttachResult, BackupConfigPolicy, RecoveryPoint
from nerdy_efs_volume_manager.rebind import VolumeRebindEngine
from nerdy_efs_volume_manager.resolver import StorageIdentityResolver
from nerdy_efs_volume_manager.restore import (
    DEFAULT_ATTACH_TARGETS,
    RestoreJobController,
    format_relative_time,
    list_recovery_points,
    restore_and_attach,
)
from nerdy_efs_volume_manager.retention import RetentionReaper, RetentionReport
from nerdy_efs_volume_manager.snapshot import BackupJobController, initialize_backup
from nerdy_efs_volume_manager.verify import DataIntegrityVerifier

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_ERROR_HINTS: tuple[tuple[str, str], ...] = (
    (
        "timed out waiting for",
        "The remote job may still finish. Check its state in AWS Backup before retrying.",
    ),
    (
        "AccessDenied",
        "Verify the AWS role has backup, elasticfilesystem, and iam:GetRole permissions.",
    ),
    (
        "backup vault",
        "Provision the namespace backup vault with the backup plan before taking snapshots.",
    ),
    (
        "recreated claims",
        "No claim moved to the new file system. Inspect PVC events and pod mounts in the namespace.",
    ),
    (
        "failed to detect EFS",
        "Confirm the namespace has a PVC bound to an EFS CSI volume.",
    ),
    (
        "rollout status",
        "Inspect StatefulSet events; pods may be failing to mount the new file system.",
    ),
)


@dataclass(frozen=True)
class ConsoleServices:
    resolver: StorageIdentityResolver
    history: JobHistoryStore
    backup: BackupJobController
    restore: RestoreJobController
    reaper: RetentionReaper
    attach: AttachOrchestrator


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "aws": None,
        "recovery_points": [],
        "last_attach_result": None,
        "last_restore_outcome": None,
        "last_retention_report": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_services(
    *,
    config: AppConfig,
    clients: KubernetesClients,
    aws: AwsClients,
    connection: dict[str, Any],
    confirm_definition_backup: bool,
) -> ConsoleServices:
    history = JobHistoryStore(config.metadata_db_path)
    history.initialize()
    kubectl = Kubectl(kubeconfig_path=connection.get("kubeconfig_path"), context=connection.get("context"))
    resolver = StorageIdentityResolver(clients)
    backup = BackupJobController(
        aws=aws,
        history=history,
        poll_interval_seconds=config.backup_poll_interval_seconds,
        max_attempts=config.backup_max_attempts,
    )
    attach = AttachOrchestrator(
        clients=clients,
        aws=aws,
        kubectl=kubectl,
        resolver=resolver,
        rebind_engine=VolumeRebindEngine(
            clients,
            kubectl,
            bind_poll_interval_seconds=config.bind_poll_interval_seconds,
            bind_max_attempts=config.bind_max_attempts,
            delete_poll_interval_seconds=config.volume_delete_settle_seconds,
        ),
        verifier=DataIntegrityVerifier(
            clients,
            helper_image=config.helper_image,
            poll_interval_seconds=config.verify_poll_interval_seconds,
            max_attempts=config.verify_max_attempts,
        ),
        backup_controller=backup,
        definition_backup=VolumeDefinitionBackup(scripts_dir=config.scripts_dir, script_url=config.backup_pv_pvc_url),
        backup_config_policy=BackupConfigPolicy.parse(config.backup_config_policy),
        confirm=lambda _question: confirm_definition_backup,
        rollout_timeout_seconds=config.rollout_timeout_seconds,
    )
    return ConsoleServices(
        resolver=resolver,
        history=history,
        backup=backup,
        restore=RestoreJobController(
            aws=aws,
            history=history,
            poll_interval_seconds=config.restore_poll_interval_seconds,
            max_attempts=config.restore_max_attempts,
        ),
        reaper=RetentionReaper(
            aws=aws,
            resolver=resolver,
            retention_days=config.retention_days,
            mount_target_propagation_seconds=config.mount_target_propagation_seconds,
            vault_propagation_seconds=config.vault_propagation_seconds,
        ),
        attach=attach,
    )


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for marker, hint in _ERROR_HINTS:
        if marker in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect the application logs for the failing operation."


def _build_recovery_point_rows(points: list[RecoveryPoint], *, now=None) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for point in points:
        created = point.created_at.isoformat() if point.created_at else "unknown"
        expires = "Never"
        if point.expiry_at is not None:
            expires = f"{point.expiry_at.isoformat()} {format_relative_time(point.expiry_at, now=now)}"
        rows.append(
            {
                "recovery_point_arn": point.arn,
                "vault": point.vault_name,
                "created": f"{created} {format_relative_time(point.created_at, now=now)}".strip(),
                "expires": expires,
                "status": point.status or "unknown",
            }
        )
    return rows


def _build_attach_rows(result: AttachResult) -> list[dict[str, str]]:
    rows = [
        {"field": "state", "value": result.state},
        {"field": "file_system_id", "value": result.file_system_id or "(unchanged)"},
    ]
    if result.rebind is not None:
        rows.append({"field": "rebind", "value": result.rebind.summary})
        for outcome in result.rebind.outcomes:
            status = "ok" if outcome.succeeded else f"failed: {outcome.message}"
            rows.append({"field": f"claim {outcome.claim_name}", "value": status})
    if result.verification is not None:
        verdict = "passed" if result.verification.passed else f"not passed ({result.verification.phase})"
        rows.append({"field": "verification", "value": verdict})
    if result.restarted_consumers:
        rows.append({"field": "restarted", "value": ", ".join(result.restarted_consumers)})
    if result.snapshot_job_id:
        rows.append({"field": "snapshot_job_id", "value": result.snapshot_job_id})
    for warning in result.warnings:
        rows.append({"field": "warning", "value": warning})
    return rows


def _build_retention_rows(report: RetentionReport) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for arn in report.deleted_recovery_points:
        rows.append({"kind": "recovery point", "name": arn, "result": "deleted"})
    for file_system_id in report.deleted_file_systems:
        rows.append({"kind": "file system", "name": file_system_id, "result": "deleted"})
    for vault in report.deleted_vaults:
        rows.append({"kind": "vault", "name": vault, "result": "deleted"})
    for vault in report.protected_vaults:
        rows.append({"kind": "vault", "name": vault, "result": "kept (in use by the bound file system)"})
    for name in report.skipped_passes:
        rows.append({"kind": "pass", "name": name, "result": "skipped"})
    for name, message in sorted(report.failures.items()):
        rows.append({"kind": "pass", "name": name, "result": _actionable_next_step(message)})
    return rows


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        state = str(row.get("state", ""))
        message = str(row.get("status_message", "") or "")
        actionable_message = f"{str(row.get('job_kind', 'job')).capitalize()} job completed successfully."
        if state != "COMPLETED":
            actionable_message = _actionable_next_step(message or f"job ended in state {state}")

        rendered_rows.append(
            {
                "job_kind": str(row.get("job_kind", "")),
                "job_id": str(row.get("job_id", "")),
                "namespace": str(row.get("namespace", "") or ""),
                "state": state,
                "created_resource_arn": str(row.get("created_resource_arn", "") or ""),
                "observed_at": str(row.get("observed_at", "")),
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_workflow_rows(
    *,
    connected: bool,
    recovery_point_count: int,
    restored: bool,
    attached: bool,
) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    list_state = "done" if recovery_point_count > 0 else ("active" if connected else "blocked")
    restore_state = "done" if restored else ("active" if recovery_point_count > 0 else "blocked")
    attach_state = "done" if attached else ("active" if connected else "blocked")
    review_state = "done" if restored or attached else ("active" if connected else "blocked")

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster and AWS region from the sidebar.",
        },
        {
            "step": "2. Recovery points",
            "state": _WORKFLOW_STATE_LABELS[list_state],
            "description": "List recovery points of the namespace's current EFS.",
        },
        {
            "step": "3. Restore",
            "state": _WORKFLOW_STATE_LABELS[restore_state],
            "description": "Restore a recovery point into a new EFS.",
        },
        {
            "step": "4. Attach",
            "state": _WORKFLOW_STATE_LABELS[attach_state],
            "description": "Rebind claims to the new EFS and restart StatefulSets.",
        },
        {
            "step": "5. Review",
            "state": _WORKFLOW_STATE_LABELS[review_state],
            "description": "Inspect the latest run and recent job history.",
        },
    ]


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _validate_target_inputs(*, region_input: str, namespace_input: str) -> list[str]:
    errors: list[str] = []
    if not region_input.strip():
        errors.append("AWS region is required.")
    if not namespace_input.strip():
        errors.append("Namespace is required.")
    return errors


def _default_auth_mode() -> str:
    configured_default = os.getenv("NEVM_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _auth_mode_guidance(auth_mode: str) -> str:
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        return (
            "Primary mode for in-cluster deployments. Uses ServiceAccount credentials from the running pod "
            "(no kubeconfig file path required)."
        )
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return "Use for local runs or remote cluster targets. Provide a readable kubeconfig file path."
    return (
        "Use only for short-lived troubleshooting. Paste a full kubeconfig with apiVersion, clusters, "
        "contexts, and users."
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        missing_fields_csv = ", ".join(missing_fields)
        return f"{source_label} is missing required field(s): {missing_fields_csv}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _progress_reporter(placeholder):
    def _report(message: str, percent: float) -> None:
        placeholder.progress(min(max(percent, 0.0), 100.0) / 100.0, text=message)

    return _report


def main() -> None:
    st.set_page_config(page_title="Nerdy EFS Volume Manager", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    ensure_directories(base_config)
    configure_logging(base_config.log_level)

    st.title("Nerdy EFS Volume Manager")
    st.caption("Back up, restore, and reattach EFS volumes of blockchain node namespaces.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.clients is not None),
            recovery_point_count=len(st.session_state.recovery_points),
            restored=st.session_state.last_restore_outcome is not None,
            attached=st.session_state.last_attach_result is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    default_auth_mode = _default_auth_mode()
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(default_auth_mode),
    )
    st.sidebar.caption(_auth_mode_guidance(auth_mode))
    context = st.sidebar.text_input(
        "Kubernetes context (optional)",
        value=base_config.context or "",
        help=(
            "Ignored for in-cluster service account mode."
            if auth_mode == _AUTH_MODE_IN_CLUSTER
            else "Optional kubeconfig context override."
        ),
    )

    kubeconfig_path_input = base_config.kubeconfig_path or "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value=kubeconfig_path_input)
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    st.sidebar.header("Target")
    region_input = st.sidebar.text_input("AWS region", value=base_config.region)
    namespace_input = st.sidebar.text_input("Namespace", value=base_config.namespace)
    st.sidebar.caption(f"Job history DB (always local): {base_config.metadata_db_path}")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        target_errors = _validate_target_inputs(region_input=region_input, namespace_input=namespace_input)
        if connection_error:
            st.sidebar.error(connection_error)
        elif target_errors:
            for error in target_errors:
                st.sidebar.error(error)
        else:
            try:
                kubeconfig_path: str | None = None
                in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER

                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=in_cluster,
                )
                aws = load_aws_clients(region=region_input)

                st.session_state.connected = True
                st.session_state.clients = clients
                st.session_state.aws = aws
                st.session_state.connection = {
                    "auth_mode": auth_mode,
                    "kubeconfig_path": kubeconfig_path,
                    "context": context or None,
                    "in_cluster": in_cluster,
                    "namespace": namespace_input.strip(),
                }
                st.session_state.recovery_points = []
                st.success("Connected to Kubernetes cluster and AWS.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.clients = None
                st.session_state.aws = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.aws = None
        st.session_state.connection = {}
        st.session_state.recovery_points = []

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to start backup and restore operations.")
        return

    namespace = st.session_state.connection.get("namespace", "")
    confirm_definition_backup = st.sidebar.checkbox(
        "Back up PV/PVC definitions before attach",
        value=True,
        help="Used when the backup config policy is 'ask'.",
    )
    services = _build_services(
        config=base_config,
        clients=st.session_state.clients,
        aws=st.session_state.aws,
        connection=st.session_state.connection,
        confirm_definition_backup=confirm_definition_backup,
    )

    st.subheader("Current Storage")
    try:
        st.metric("Bound EFS", services.resolver.resolve(namespace))
    except VolumeManagerError as error:
        st.warning(_actionable_next_step(str(error)))

    if st.button("Take snapshot now"):
        placeholder = st.progress(0.0, text="Starting backup job...")
        try:
            job = services.backup.snapshot_namespace(
                namespace=namespace,
                resolver=services.resolver,
                progress=_progress_reporter(placeholder),
            )
            st.success(f"Backup job {job.id} completed.")
        except VolumeManagerError as error:
            st.error(_actionable_next_step(str(error)))

    if st.button(
        "Initialize backups",
        help="Start the first recovery point of a newly provisioned namespace and monitor it in the background.",
    ):
        try:
            job_id = initialize_backup(services.backup, services.resolver, namespace=namespace, chain_name=namespace)
            st.info(f"Initial backup job {job_id} started. Its outcome appears in Recent Job History.")
        except VolumeManagerError as error:
            st.error(_actionable_next_step(str(error)))

    st.subheader("Recovery Points")
    if st.button("Refresh recovery points"):
        with st.spinner("Listing recovery points..."):
            try:
                st.session_state.recovery_points = list_recovery_points(
                    services.restore.aws,
                    services.resolver,
                    namespace=namespace,
                )
                if not st.session_state.recovery_points:
                    st.warning("No completed recovery points found for the current EFS.")
            except VolumeManagerError as error:
                st.error(_actionable_next_step(str(error)))

    points: list[RecoveryPoint] = st.session_state.recovery_points
    if points:
        st.dataframe(_build_recovery_point_rows(points), use_container_width=True, hide_index=True)
        selected_arn = st.selectbox("Recovery point to restore", options=[point.arn for point in points])
        attach_after_restore = st.checkbox(
            f"Attach restored EFS to {', '.join(DEFAULT_ATTACH_TARGETS)} after restore",
            value=False,
        )
        if st.button("Restore selected recovery point"):
            placeholder = st.progress(0.0, text="Starting restore job...")

            def _attach(file_system_id: str) -> AttachResult:
                request = AttachRequest(
                    region=services.restore.aws.region,
                    namespace=namespace,
                    target_file_system_id=file_system_id,
                    target_claim_names=DEFAULT_ATTACH_TARGETS,
                    target_consumer_names=DEFAULT_ATTACH_TARGETS,
                )
                return services.attach.run(request)

            try:
                outcome = restore_and_attach(
                    services.restore,
                    namespace=namespace,
                    recovery_point_arn=selected_arn,
                    attach=_attach if attach_after_restore else None,
                    progress=_progress_reporter(placeholder),
                )
                st.session_state.last_restore_outcome = outcome
                if outcome.attach is not None:
                    st.session_state.last_attach_result = outcome.attach
                st.success(f"Restore {outcome.job_id}: {outcome.status} (new EFS {outcome.new_file_system_id or 'n/a'})")
            except VolumeManagerError as error:
                st.error(_actionable_next_step(str(error)))
    else:
        st.info("Click 'Refresh recovery points' to load recovery points for this namespace.")

    st.subheader("Attach")
    attach_file_system_id = st.text_input("New EFS id (fs-...)", value="")
    attach_claims = st.text_input("Claims (comma-separated)", value=",".join(DEFAULT_ATTACH_TARGETS))
    attach_consumers = st.text_input("StatefulSets (comma-separated)", value=",".join(DEFAULT_ATTACH_TARGETS))
    if st.button("Run attach"):
        placeholder = st.progress(0.0, text="Preparing attach...")
        try:
            request = AttachRequest.from_inputs(
                region=services.restore.aws.region,
                namespace=namespace,
                file_system_id=attach_file_system_id,
                claims_csv=attach_claims,
                consumers_csv=attach_consumers,
            )
            st.session_state.last_attach_result = services.attach.run(
                request,
                progress=_progress_reporter(placeholder),
            )
            st.success("Attach completed.")
        except AttachFailedError as error:
            st.session_state.last_attach_result = error.result
            st.error(_actionable_next_step(str(error)))
        except VolumeManagerError as error:
            st.error(_actionable_next_step(str(error)))

    if st.session_state.last_attach_result is not None:
        st.markdown("**Latest Attach Run**")
        st.dataframe(
            _build_attach_rows(st.session_state.last_attach_result),
            use_container_width=True,
            hide_index=True,
        )

    st.subheader("Cleanup")
    st.caption(
        f"Deletes recovery points older than {base_config.retention_days} days, unused '{namespace}-' file "
        "systems, and namespace vaults that hold no backups of the current EFS."
    )
    if st.button("Run cleanup"):
        with st.spinner("Cleaning up unused backup resources..."):
            st.session_state.last_retention_report = services.reaper.run(namespace)
    if st.session_state.last_retention_report is not None:
        retention_rows = _build_retention_rows(st.session_state.last_retention_report)
        if retention_rows:
            st.dataframe(retention_rows, use_container_width=True, hide_index=True)
        else:
            st.info("Nothing to clean up.")

    st.subheader("Recent Job History")
    history_rows = _build_history_rows(services.history.get_recent_jobs(namespace=namespace, limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No job history yet. Completed backup and restore jobs appear here.")


if __name__ == "__main__":
    main()
