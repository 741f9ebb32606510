from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os

DEFAULT_BACKUP_PV_PVC_URL = (
    "https://raw.githubusercontent.com/tokamak-network/trh-sdk/main/scripts/backup_pv_pvc.sh"
)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    region: str = os.getenv("NEVM_REGION", os.getenv("AWS_REGION", ""))
    namespace: str = os.getenv("NEVM_NAMESPACE", "")
    kubeconfig_path: str | None = os.getenv("NEVM_KUBECONFIG") or None
    context: str | None = os.getenv("NEVM_CONTEXT") or None
    in_cluster: bool = _env_flag("NEVM_IN_CLUSTER")
    metadata_db_path: Path = Path(os.getenv("NEVM_METADATA_DB_PATH", "./data/jobs.db"))
    scripts_dir: Path = Path(os.getenv("NEVM_SCRIPTS_DIR", "./scripts"))
    backup_pv_pvc_url: str = os.getenv("BACKUP_PV_PVC_URL", "").strip() or DEFAULT_BACKUP_PV_PVC_URL
    backup_config_policy: str = os.getenv("NEVM_BACKUP_CONFIG_POLICY", "ask")
    helper_image: str = os.getenv("NEVM_HELPER_IMAGE", "alpine:3.20")
    log_level: str = os.getenv("NEVM_LOG_LEVEL", "INFO")

    restore_poll_interval_seconds: float = float(os.getenv("NEVM_RESTORE_POLL_INTERVAL_SECONDS", "30"))
    restore_max_attempts: int = int(os.getenv("NEVM_RESTORE_MAX_ATTEMPTS", "120"))
    backup_poll_interval_seconds: float = float(os.getenv("NEVM_BACKUP_POLL_INTERVAL_SECONDS", "10"))
    backup_max_attempts: int = int(os.getenv("NEVM_BACKUP_MAX_ATTEMPTS", "60"))
    bind_poll_interval_seconds: float = float(os.getenv("NEVM_BIND_POLL_INTERVAL_SECONDS", "1"))
    bind_max_attempts: int = int(os.getenv("NEVM_BIND_MAX_ATTEMPTS", "30"))
    verify_poll_interval_seconds: float = float(os.getenv("NEVM_VERIFY_POLL_INTERVAL_SECONDS", "2"))
    verify_max_attempts: int = int(os.getenv("NEVM_VERIFY_MAX_ATTEMPTS", "90"))
    rollout_timeout_seconds: int = int(os.getenv("NEVM_ROLLOUT_TIMEOUT_SECONDS", "600"))

    retention_days: int = int(os.getenv("NEVM_RETENTION_DAYS", "7"))
    mount_target_propagation_seconds: float = float(os.getenv("NEVM_MOUNT_TARGET_PROPAGATION_SECONDS", "10"))
    vault_propagation_seconds: float = float(os.getenv("NEVM_VAULT_PROPAGATION_SECONDS", "5"))
    volume_delete_settle_seconds: float = float(os.getenv("NEVM_VOLUME_DELETE_SETTLE_SECONDS", "2"))


def ensure_directories(config: AppConfig) -> None:
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str | int = "INFO") -> None:
    resolved = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root = logging.getLogger()
    root.setLevel(resolved)
    if not any(getattr(handler, "_nevm_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._nevm_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
