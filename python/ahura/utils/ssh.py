"""
ahura/utils/ssh.py

Remote execution over the system `ssh` client.

  - build_ssh_argv: local argv + spawn-time env for one credential.
  - build_escalated_command: wraps a script in `bash -c`, adding sudo where needed.
  - SSHExecutor.execute: run a script on a host and capture its output.
  - SSHExecutor.copy_file: fetch a remote file into a local owner-only file.

Every script runs under `bash -c` with DEBIAN_FRONTEND=noninteractive. Escalation:
  - root login: no wrapper.
  - password login: `sudo -S -p ''`, with the password written to stdin.
  - key login: `sudo -n` (passwordless sudo required).

Passwords never reach argv: the SSH login password goes through `sshpass -e`
and the SSHPASS variable, and the sudo password through stdin.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import shlex
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os
from typing_extensions import Protocol

from ahura.errors import ProvisionTimeoutError, RemoteCommandError
from ahura.models.settings import ProvisionerSettings
from ahura.models.ssh import AuthCredential, KeyAuth, PasswordAuth, RemoteOutput
from ahura.utils.async_command_runner import (
    CommandError,
    CommandTimeoutError,
    run_command,
)

logger = logging.getLogger(__name__)

NONINTERACTIVE_PREFIX = "export DEBIAN_FRONTEND=noninteractive; "
DETACH_STDIN = "exec </dev/null; "


class RemoteExecutor(Protocol):
    async def execute(
        self,
        host: str,
        credential: AuthCredential,
        command: str,
        *,
        timeout: Optional[float] = None,
        escalate: bool = True,
        sensitive: bool = True,
        label: Optional[str] = None,
    ) -> RemoteOutput: ...

    async def copy_file(
        self,
        host: str,
        credential: AuthCredential,
        remote_path: str,
        local_path: str,
        *,
        timeout: Optional[float] = None,
        mode: int = 0o600,
    ) -> str: ...


def build_ssh_argv(
    host: str,
    credential: AuthCredential,
    *,
    port: int = 22,
    connect_timeout: int = 20,
    known_hosts_file: Optional[str] = None,
) -> Tuple[List[str], Dict[str, str]]:
    """
    Build the local argv (without the remote command) and the extra environment
    for reaching `host` with `credential`.

    Returns:
        (argv, env): `env` holds SSHPASS for password logins and is empty otherwise.
    """
    options = [
        "-p",
        str(port),
        "-o",
        f"ConnectTimeout={connect_timeout}",
        "-o",
        "ServerAliveInterval=30",
        "-o",
        "ServerAliveCountMax=4",
        "-o",
        "LogLevel=ERROR",
    ]
    if known_hosts_file:
        options += [
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"UserKnownHostsFile={known_hosts_file}",
        ]
    else:
        options += [
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]
    target = f"{credential.user}@{host}"

    if isinstance(credential, KeyAuth):
        argv = [
            "ssh",
            "-i",
            credential.private_key_path,
            "-o",
            "BatchMode=yes",
            "-o",
            "IdentitiesOnly=yes",
            *options,
            target,
        ]
        return argv, {}

    argv = [
        "sshpass",
        "-e",
        "ssh",
        "-o",
        "PubkeyAuthentication=no",
        "-o",
        "PreferredAuthentications=password,keyboard-interactive",
        "-o",
        "NumberOfPasswordPrompts=1",
        *options,
        target,
    ]
    return argv, {"SSHPASS": credential.password.get_secret_value()}


def build_escalated_command(
    credential: AuthCredential, script: str, *, escalate: bool = True
) -> Tuple[str, Optional[str]]:
    """
    Wrap `script` for execution on the remote side.

    Returns:
        (remote_command, stdin_data): stdin_data is the sudo password followed
        by a newline for password logins that escalate, else None.
    """
    wrapped = shlex.quote(NONINTERACTIVE_PREFIX + script)
    if not escalate or credential.is_root:
        return f"bash -c {wrapped}", None
    if isinstance(credential, PasswordAuth):
        # NOPASSWD sudo leaves the password line unread; detach it from the script.
        detached = shlex.quote(DETACH_STDIN + NONINTERACTIVE_PREFIX + script)
        return (
            f"sudo -S -p '' bash -c {detached}",
            credential.password.get_secret_value() + "\n",
        )
    return f"sudo -n bash -c {wrapped}", None


def redact(text: str, credential: AuthCredential) -> str:
    """Remove the credential's password from text before it leaves this module."""
    if isinstance(credential, PasswordAuth):
        secret = credential.password.get_secret_value()
        if secret:
            return text.replace(secret, "********")
    return text


class SSHExecutor:
    """
    Runs scripts on remote hosts through the local `ssh` binary.

    Every call opens a fresh connection; nothing is pooled. A call either
    returns the captured output or raises:
      - RemoteCommandError for a non-zero exit (ssh's own 255 included);
      - ProvisionTimeoutError when the call exceeds its timeout.
    """

    def __init__(
        self,
        *,
        port: int = 22,
        connect_timeout: int = 20,
        known_hosts_file: Optional[str] = None,
        default_timeout: float = 120.0,
    ) -> None:
        self._port = port
        self._connect_timeout = connect_timeout
        self._known_hosts_file = known_hosts_file
        self._default_timeout = default_timeout

    @classmethod
    def from_settings(cls, settings: ProvisionerSettings) -> SSHExecutor:
        return cls(
            port=settings.ssh_port,
            connect_timeout=settings.connect_timeout,
            known_hosts_file=settings.known_hosts_file,
            default_timeout=settings.command_timeout,
        )

    async def execute(
        self,
        host: str,
        credential: AuthCredential,
        command: str,
        *,
        timeout: Optional[float] = None,
        escalate: bool = True,
        sensitive: bool = True,
        label: Optional[str] = None,
    ) -> RemoteOutput:
        """
        Run `command` (a bash script) on `host`.

        Args:
            host: Target address.
            credential: Login credential; also decides the escalation wrapper.
            command: Script text, run with `bash -c`.
            timeout: Ceiling in seconds; defaults to the executor's default.
            escalate: Run as root (via sudo when the login user is not root).
            sensitive: If False, the script is logged at debug level.
            label: Short step name used in logs and errors.

        Raises:
            RemoteCommandError: The command exited non-zero.
            ProvisionTimeoutError: The command did not finish in time.
        """
        ceiling = timeout if timeout is not None else self._default_timeout
        step = label or "remote command"
        argv, env = build_ssh_argv(
            host,
            credential,
            port=self._port,
            connect_timeout=self._connect_timeout,
            known_hosts_file=self._known_hosts_file,
        )
        remote_command, stdin_data = build_escalated_command(
            credential, command, escalate=escalate
        )
        if sensitive:
            logger.debug("Running %s on %s", step, host)
        else:
            logger.debug("Running %s on %s: %s", step, host, command)

        try:
            output = await run_command(
                argv + [remote_command],
                sensitive=True,
                env=env or None,
                input_data=stdin_data,
                timeout=ceiling,
            )
        except CommandTimeoutError as exc:
            raise ProvisionTimeoutError(
                f"{step} on {host} timed out after {ceiling}s", ceiling
            ) from exc
        except CommandError as exc:
            raise RemoteCommandError(
                host,
                exc.return_code,
                redact(exc.stderr, credential),
                label=label,
            ) from None

        return RemoteOutput(
            stdout=output.stdout, stderr=redact(output.stderr, credential)
        )

    async def copy_file(
        self,
        host: str,
        credential: AuthCredential,
        remote_path: str,
        local_path: str,
        *,
        timeout: Optional[float] = None,
        mode: int = 0o600,
    ) -> str:
        """
        Read `remote_path` as root and write it byte for byte to `local_path`
        with `mode`, creating parent directories. Returns the local path.

        The file travels base64-encoded so output stripping cannot alter it.
        """
        output = await self.execute(
            host,
            credential,
            f"base64 -w0 {shlex.quote(remote_path)}",
            timeout=timeout,
            label=f"fetch {remote_path}",
        )
        try:
            content = base64.b64decode(output.stdout, validate=True)
        except binascii.Error:
            raise RemoteCommandError(
                host, 0, f"{remote_path} came back garbled", label="fetch"
            ) from None
        await write_private_file(local_path, content, mode=mode)
        return local_path


async def write_private_file(
    path: str, content: Union[str, bytes], *, mode: int = 0o600
) -> None:
    """
    Write `content` to `path` with `mode`. The data goes to a fresh temp file
    that already has `mode`, which then replaces `path`, so an existing file
    with looser permissions never holds the new content.
    """
    parent = Path(path).parent
    await aiofiles.os.makedirs(str(parent), exist_ok=True)
    tmp_path = f"{path}.{os.getpid()}.tmp"
    if await aiofiles.os.path.exists(tmp_path):
        await aiofiles.os.remove(tmp_path)

    def _opener(file: str, flags: int) -> int:
        fd = os.open(file, flags | os.O_EXCL, mode)
        os.fchmod(fd, mode)
        return fd

    data = content.encode("utf-8") if isinstance(content, str) else content
    try:
        async with aiofiles.open(tmp_path, "wb", opener=_opener) as f:
            await f.write(data)
        await aiofiles.os.replace(tmp_path, path)
    except BaseException:
        if await aiofiles.os.path.exists(tmp_path):
            await aiofiles.os.remove(tmp_path)
        raise
