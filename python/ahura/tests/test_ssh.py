import asyncio
import base64
import os
import stat
from typing import Any, Dict, List

import pytest

from ahura.errors import ProvisionTimeoutError, RemoteCommandError
from ahura.models.ssh import KeyAuth, PasswordAuth
from ahura.utils import ssh as ssh_mod
from ahura.utils.async_command_runner import (
    CommandError,
    CommandOutput,
    CommandTimeoutError,
)
from ahura.utils.ssh import (
    SSHExecutor,
    build_escalated_command,
    build_ssh_argv,
    write_private_file,
)

PASSWORD = PasswordAuth(user="ubuntu", password="hunter2-secret")
KEY = KeyAuth(user="ubuntu", private_key_path="/keys/id_ed25519")
ROOT_KEY = KeyAuth(user="root", private_key_path="/keys/id_ed25519")


def test_password_login_keeps_secret_out_of_argv() -> None:
    argv, env = build_ssh_argv("10.0.0.1", PASSWORD, port=2222)

    assert argv[:3] == ["sshpass", "-e", "ssh"]
    assert argv[-1] == "ubuntu@10.0.0.1"
    assert "2222" in argv
    assert env == {"SSHPASS": "hunter2-secret"}
    assert not any("hunter2" in part for part in argv)


def test_key_login_uses_batch_mode() -> None:
    argv, env = build_ssh_argv(
        "10.0.0.1", KEY, known_hosts_file="/var/lib/ahura/known_hosts"
    )

    assert argv[:3] == ["ssh", "-i", "/keys/id_ed25519"]
    assert "BatchMode=yes" in argv
    assert "StrictHostKeyChecking=accept-new" in argv
    assert "UserKnownHostsFile=/var/lib/ahura/known_hosts" in argv
    assert env == {}


def test_escalation_wrappers() -> None:
    root_cmd, root_stdin = build_escalated_command(ROOT_KEY, "whoami")
    assert root_cmd.startswith("bash -c ")
    assert root_stdin is None

    key_cmd, key_stdin = build_escalated_command(KEY, "whoami")
    assert key_cmd.startswith("sudo -n bash -c ")
    assert key_stdin is None

    pw_cmd, pw_stdin = build_escalated_command(PASSWORD, "whoami")
    assert pw_cmd.startswith("sudo -S -p '' bash -c ")
    assert pw_stdin == "hunter2-secret\n"
    assert "hunter2" not in pw_cmd
    # Unread password input must not reach the script.
    assert pw_cmd.index("exec </dev/null") < pw_cmd.index("whoami")

    plain_cmd, plain_stdin = build_escalated_command(PASSWORD, "true", escalate=False)
    assert plain_cmd.startswith("bash -c ")
    assert plain_stdin is None

    assert "DEBIAN_FRONTEND=noninteractive" in key_cmd


class RecordingRunner:
    def __init__(self, result: Any = None, stdout: str = "done") -> None:
        self.result = result
        self.stdout = stdout
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, command: List[str], **kwargs: Any) -> CommandOutput:
        self.calls.append({"command": command, **kwargs})
        if isinstance(self.result, Exception):
            raise self.result
        return CommandOutput(stdout=self.stdout, stderr="", return_code=0)


def test_execute_passes_secrets_via_env_and_stdin(monkeypatch: Any) -> None:
    runner = RecordingRunner()
    monkeypatch.setattr(ssh_mod, "run_command", runner)
    executor = SSHExecutor(default_timeout=42.0)

    output = asyncio.run(executor.execute("10.0.0.1", PASSWORD, "apt-get update"))

    assert output.stdout == "done"
    call = runner.calls[0]
    assert call["env"] == {"SSHPASS": "hunter2-secret"}
    assert call["input_data"] == "hunter2-secret\n"
    assert call["timeout"] == 42.0
    assert not any("hunter2" in part for part in call["command"])
    assert "apt-get update" in call["command"][-1]


def test_execute_maps_failures(monkeypatch: Any) -> None:
    executor = SSHExecutor()
    monkeypatch.setattr(
        ssh_mod,
        "run_command",
        RecordingRunner(
            CommandError("failed", 3, "sudo: hunter2-secret rejected")
        ),
    )
    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(executor.execute("10.0.0.1", PASSWORD, "false", label="step"))
    err = excinfo.value
    assert (err.host, err.exit_status, err.label) == ("10.0.0.1", 3, "step")
    assert "hunter2" not in str(err)
    assert "hunter2" not in err.stderr

    monkeypatch.setattr(
        ssh_mod,
        "run_command",
        RecordingRunner(CommandTimeoutError("Timed out", 1.0)),
    )
    with pytest.raises(ProvisionTimeoutError):
        asyncio.run(executor.execute("10.0.0.1", KEY, "sleep 10", timeout=1.0))


def test_copy_file_is_byte_exact_and_owner_only(monkeypatch: Any, tmp_path: Any) -> None:
    blob = b"apiVersion: v1\nkind: Config\n\n  \n"
    runner = RecordingRunner(stdout=base64.b64encode(blob).decode())
    monkeypatch.setattr(ssh_mod, "run_command", runner)
    target = tmp_path / "a" / "b" / "c-1.yaml"

    path = asyncio.run(
        SSHExecutor().copy_file(
            "10.0.0.1", KEY, "/etc/kubernetes/admin.conf", str(target)
        )
    )

    assert path == str(target)
    assert target.read_bytes() == blob
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
    assert "base64 -w0 /etc/kubernetes/admin.conf" in runner.calls[0]["command"][-1]


def test_copy_file_rejects_garbled_output(monkeypatch: Any, tmp_path: Any) -> None:
    monkeypatch.setattr(ssh_mod, "run_command", RecordingRunner(stdout="not base64!"))
    target = tmp_path / "c-1.yaml"

    with pytest.raises(RemoteCommandError):
        asyncio.run(
            SSHExecutor().copy_file(
                "10.0.0.1", KEY, "/etc/kubernetes/admin.conf", str(target)
            )
        )
    assert not target.exists()


def test_write_private_file_never_reuses_a_loose_file(tmp_path: Any) -> None:
    target = tmp_path / "c-1.yaml"
    target.write_text("old")
    os.chmod(target, 0o644)
    old_view = tmp_path / "old-view"
    os.link(target, old_view)

    asyncio.run(write_private_file(str(target), "secret-kubeconfig"))

    assert target.read_text() == "secret-kubeconfig"
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
    # The world-readable inode never received the new content.
    assert old_view.read_text() == "old"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["c-1.yaml", "old-view"]
