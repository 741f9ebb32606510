from __future__ import annotations

from pathlib import Path
import subprocess
import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import yaml

from nerdy_efs_volume_manager import commands
from nerdy_efs_volume_manager.commands import Kubectl, poll_until, run_command, sleep_unless_cancelled
from nerdy_efs_volume_manager.errors import ExternalCommandError, OperationCancelledError, PollTimeoutError


def test_run_command_with_missing_binary_raises_external_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(commands.shutil, "which", lambda _name: None)

    with pytest.raises(ExternalCommandError, match="kubectl is required but was not found in PATH"):
        run_command(["kubectl", "version"])


def test_run_command_with_non_zero_exit_carries_output_verbatim(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(commands.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(
        commands.subprocess,
        "run",
        Mock(return_value=SimpleNamespace(returncode=1, stdout="error: no such resource\n")),
    )

    with pytest.raises(ExternalCommandError) as error:
        run_command(["kubectl", "get", "pvc"], operation="list claims")

    assert error.value.returncode == 1
    assert error.value.output == "error: no such resource"
    assert "list claims failed (exit status 1)" in str(error.value)


def test_run_command_without_check_returns_failed_result(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(commands.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(commands.subprocess, "run", Mock(return_value=SimpleNamespace(returncode=3, stdout="partial")))

    result = run_command(["bash", "script.sh"], check=False)

    assert not result.ok
    assert result.output == "partial"


def test_run_command_merges_extra_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    run = Mock(return_value=SimpleNamespace(returncode=0, stdout=""))
    monkeypatch.setattr(commands.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(commands.subprocess, "run", run)
    monkeypatch.setenv("EXISTING_VALUE", "kept")

    run_command(["bash", "backup.sh"], env={"NAMESPACE": "chain1"})

    environment = run.call_args.kwargs["env"]
    assert environment["NAMESPACE"] == "chain1"
    assert environment["EXISTING_VALUE"] == "kept"


def test_run_command_with_timeout_raises_external_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(commands.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(
        commands.subprocess,
        "run",
        Mock(side_effect=subprocess.TimeoutExpired(cmd="kubectl", timeout=5, output="waiting")),
    )

    with pytest.raises(ExternalCommandError, match="exceeded 5s timeout"):
        run_command(["kubectl", "rollout", "status"], timeout_seconds=5)


def test_kubectl_base_command_includes_kubeconfig_and_context() -> None:
    kubectl = Kubectl(kubeconfig_path="/tmp/kubeconfig", context="prod")

    assert kubectl.base_command() == ["kubectl", "--kubeconfig", "/tmp/kubeconfig", "--context", "prod"]


def test_kubectl_apply_manifests_writes_documents_and_removes_file(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def _fake_run(command, **_kwargs):
        manifest_path = Path(command[-1])
        captured["path"] = manifest_path
        captured["documents"] = list(yaml.safe_load_all(manifest_path.read_text(encoding="utf-8")))
        return SimpleNamespace(returncode=0, stdout="persistentvolume/pv created")

    monkeypatch.setattr(commands.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(commands.subprocess, "run", _fake_run)

    result = Kubectl().apply_manifests(
        [{"kind": "PersistentVolume", "metadata": {"name": "pv-a"}}],
        operation="apply volume",
    )

    assert result.ok
    assert captured["documents"] == [{"kind": "PersistentVolume", "metadata": {"name": "pv-a"}}]
    assert not Path(str(captured["path"])).exists()


def test_poll_until_returns_first_non_none_value() -> None:
    values = iter([None, None, "Bound"])

    result = poll_until(lambda _attempt: next(values), subject="claim", interval_seconds=0, max_attempts=5)

    assert result == "Bound"


def test_poll_until_with_exhausted_attempts_raises_poll_timeout() -> None:
    attempts: list[int] = []

    def _check(attempt: int) -> None:
        attempts.append(attempt)
        return None

    with pytest.raises(PollTimeoutError) as error:
        poll_until(_check, subject="restore job", interval_seconds=0, max_attempts=3)

    assert attempts == [1, 2, 3]
    assert error.value.attempts == 3
    assert "timed out waiting for restore job" in str(error.value)


def test_poll_until_with_cancelled_event_raises_before_checking() -> None:
    event = threading.Event()
    event.set()
    check = Mock(return_value="never")

    with pytest.raises(OperationCancelledError):
        poll_until(check, subject="backup job", interval_seconds=0, max_attempts=3, cancel_event=event)

    check.assert_not_called()


def test_poll_until_with_non_positive_attempts_raises_value_error() -> None:
    with pytest.raises(ValueError):
        poll_until(lambda _attempt: None, subject="x", interval_seconds=0, max_attempts=0)


def test_sleep_unless_cancelled_with_set_event_raises() -> None:
    event = threading.Event()
    event.set()

    with pytest.raises(OperationCancelledError, match="vault propagation"):
        sleep_unless_cancelled(5, subject="vault propagation", cancel_event=event)


def test_sleep_unless_cancelled_with_zero_seconds_returns_immediately() -> None:
    sleep_unless_cancelled(0, subject="noop")
