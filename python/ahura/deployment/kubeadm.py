"""
Control-plane and join operations for a kubeadm cluster, run over SSH.

All kubectl calls use the cluster admin kubeconfig on the control-plane host.
Init and join are guarded by the files they produce, so repeating a step on a
host where it already succeeded is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import textwrap
from typing import Dict, Optional

from ahura.errors import (
    ConnectivityError,
    ProvisioningError,
    ProvisionTimeoutError,
    RemoteCommandError,
)
from ahura.models.ssh import AuthCredential
from ahura.utils.async_retry import async_retry
from ahura.utils.readiness import SleepFunc, poll_until
from ahura.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
KUBECTL = f"kubectl --kubeconfig={ADMIN_CONF}"


async def _file_exists(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    path: str,
    label: str,
) -> bool:
    try:
        await executor.execute(
            host, credential, f"test -f {shlex.quote(path)}", label=label
        )
    except RemoteCommandError:
        return False
    return True


async def kubeadm_init(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    pod_cidr: str,
    kubernetes_version: str,
    timeout: Optional[float] = None,
) -> bool:
    """
    Initialize the control plane, then install the admin kubeconfig for root
    and for the sudo user.

    Returns:
        True if `kubeadm init` ran, False if the host was already initialized.
    """
    initialized = await _file_exists(
        executor, host, credential, ADMIN_CONF, "check-init"
    )
    if initialized:
        logger.info("Control plane on %s already initialized; skipping init", host)
    else:
        cmd = (
            f"kubeadm init --pod-network-cidr={shlex.quote(pod_cidr)}"
            f" --kubernetes-version={shlex.quote(kubernetes_version)}"
        )
        await executor.execute(
            host, credential, cmd, timeout=timeout, label="kubeadm-init"
        )
        logger.info("kubeadm init completed on %s (%s)", host, kubernetes_version)

    script = textwrap.dedent(
        """\
        set -e
        mkdir -p /root/.kube
        install -m 0600 /etc/kubernetes/admin.conf /root/.kube/config
        if [ -n "${SUDO_USER:-}" ] && [ "$SUDO_USER" != root ]; then
          home="$(getent passwd "$SUDO_USER" | cut -d: -f6)"
          mkdir -p "$home/.kube"
          install -m 0600 -o "$SUDO_USER" -g "$(id -gn "$SUDO_USER")" \\
            /etc/kubernetes/admin.conf "$home/.kube/config"
        fi
        """
    )
    await executor.execute(
        host, credential, script, timeout=timeout, label="install-admin-kubeconfig"
    )
    return not initialized


async def wait_for_api(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    timeout: float,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    sleep: SleepFunc = asyncio.sleep,
) -> int:
    """
    Poll the API server's /readyz endpoint through kubectl on the control plane.

    Raises:
        ProvisionTimeoutError: If the API is not ready within `timeout` seconds.
    """

    async def _ready() -> bool:
        try:
            output = await executor.execute(
                host,
                credential,
                f"{KUBECTL} get --raw=/readyz",
                timeout=min(30.0, timeout),
                label="api-ready",
            )
        except ProvisioningError as exc:
            logger.debug("API on %s not ready yet: %s", host, exc)
            return False
        return output.stdout.strip() == "ok"

    attempts = await poll_until(
        _ready,
        timeout=timeout,
        base_delay=base_delay,
        max_delay=max_delay,
        sleep=sleep,
    )
    if attempts is None:
        raise ProvisionTimeoutError(
            f"API server on {host} not ready within {timeout}s", timeout
        )
    return attempts


async def install_cni(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    manifest_url: str,
    timeout: Optional[float] = None,
) -> None:
    await executor.execute(
        host,
        credential,
        f"{KUBECTL} apply -f {shlex.quote(manifest_url)}",
        timeout=timeout,
        label="cni-apply",
    )


def parse_join_command(output: str) -> Optional[str]:
    """Return the first line starting with 'kubeadm join', if any."""
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("kubeadm join"):
            return line
    return None


@async_retry(
    retries=5, delay=2.0, backoff=2.0, max_delay=10.0, retry_on=(RemoteCommandError,)
)
async def get_join_command(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    timeout: Optional[float] = None,
) -> str:
    """
    Mint a fresh bootstrap token on the control plane and return the complete
    `kubeadm join ...` command. Retried on transient failure.
    """
    output = await executor.execute(
        host,
        credential,
        "kubeadm token create --print-join-command",
        timeout=timeout,
        label="join-token",
    )
    join = parse_join_command(output.stdout)
    if join is None:
        raise RemoteCommandError(
            host, 0, "output contained no 'kubeadm join' command", label="join-token"
        )
    return join


async def check_api_reachable(
    executor: RemoteExecutor,
    worker_host: str,
    credential: AuthCredential,
    api_host: str,
    api_port: int,
    *,
    timeout: float,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    sleep: SleepFunc = asyncio.sleep,
) -> None:
    """
    Verify from the worker that a TCP connection to the API endpoint succeeds.

    Raises:
        ConnectivityError: If the worker cannot reach api_host:api_port in time.
    """
    probe = (
        f"timeout 5 bash -c "
        f"{shlex.quote(f'</dev/tcp/{api_host}/{api_port}')}"
    )

    async def _reachable() -> bool:
        try:
            await executor.execute(
                worker_host,
                credential,
                probe,
                timeout=min(15.0, timeout),
                escalate=False,
                label="api-reach",
            )
        except ProvisioningError as exc:
            logger.debug(
                "%s cannot reach %s:%d yet: %s", worker_host, api_host, api_port, exc
            )
            return False
        return True

    attempts = await poll_until(
        _reachable,
        timeout=timeout,
        base_delay=base_delay,
        max_delay=max_delay,
        sleep=sleep,
    )
    if attempts is None:
        raise ConnectivityError(
            f"{worker_host} cannot reach the API server at {api_host}:{api_port}",
            worker_host,
        )


async def join_worker(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    join_command: str,
    *,
    timeout: Optional[float] = None,
) -> bool:
    """
    Join a worker. Returns False without running anything if the host already
    has a kubelet kubeconfig from an earlier join.
    """
    if await _file_exists(executor, host, credential, KUBELET_CONF, "check-join"):
        logger.info("%s has already joined; skipping", host)
        return False
    await executor.execute(
        host, credential, join_command, timeout=timeout, label="kubeadm-join"
    )
    return True


async def enable_control_plane_scheduling(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    timeout: Optional[float] = None,
) -> None:
    """Single-node clusters: let workloads run on the control plane."""
    script = textwrap.dedent(
        f"""\
        {KUBECTL} taint nodes --all node-role.kubernetes.io/control-plane- || true
        {KUBECTL} taint nodes --all node-role.kubernetes.io/master- || true
        {KUBECTL} label nodes --all node-role.kubernetes.io/worker= --overwrite || true
        """
    )
    await executor.execute(
        host, credential, script, timeout=timeout, label="untaint-control-plane"
    )


async def repair_control_plane(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    sandbox_image: str,
    timeout: Optional[float] = None,
) -> None:
    """
    Converge the control plane's runtime configuration:
      - containerd uses the systemd cgroup driver and the expected sandbox image;
      - containerd and kubelet are restarted;
      - control-plane images are pulled.
    Runs unconditionally; every step is safe to repeat.
    """
    image = sandbox_image.replace("#", "")
    script = textwrap.dedent(
        rf"""
        set -e
        if [ -f /etc/containerd/config.toml ]; then
          sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
          sed -i -E 's#^(\s*sandbox_image\s*=\s*).*#\1"{image}"#' /etc/containerd/config.toml
        fi
        systemctl restart containerd
        systemctl restart kubelet
        kubeadm config images pull
        """
    ).lstrip()
    await executor.execute(
        host, credential, script, timeout=timeout, label="repair-control-plane"
    )


async def label_node(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    node_name: str,
    labels: Dict[str, str],
    *,
    timeout: Optional[float] = None,
) -> None:
    pairs = " ".join(shlex.quote(f"{k}={v}") for k, v in sorted(labels.items()))
    await executor.execute(
        host,
        credential,
        f"{KUBECTL} label node {shlex.quote(node_name)} {pairs} --overwrite",
        timeout=timeout,
        label="label-node",
    )
