"""
Node-level preparation for kubeadm on Debian/Ubuntu (APT-based) hosts.

Every step is idempotent and safe to re-run on a host that has already been
prepared:
  1) Disable swap now and across reboots.
  2) Load and persist the overlay and br_netfilter kernel modules.
  3) Configure bridge netfilter and IP-forwarding sysctls.
  4) Install containerd if missing and force the systemd cgroup driver.
  5) Install kubelet, kubeadm and kubectl for the cluster's series if missing
     and hold them at that version.

Plus the identify helpers used before bootstrap: set_hostname and probe_host_info.
"""

from __future__ import annotations

import logging
import shlex
import textwrap
from typing import List, Optional, Tuple

from ahura.errors import RemoteCommandError
from ahura.models.cluster import NodeSpec
from ahura.models.ssh import AuthCredential
from ahura.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)


async def set_hostname(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    hostname: str,
    *,
    timeout: Optional[float] = None,
) -> None:
    """Set the static hostname and make it resolve locally. No-op if already set."""
    name = shlex.quote(hostname)
    script = textwrap.dedent(
        f"""\
        set -e
        if [ "$(hostnamectl --static 2>/dev/null || hostname)" != {name} ]; then
          hostnamectl set-hostname {name}
        fi
        grep -qE "^127\\.0\\.1\\.1\\s+{hostname}(\\s|$)" /etc/hosts || \\
          echo "127.0.1.1 {hostname}" >> /etc/hosts
        """
    )
    await executor.execute(
        host, credential, script, timeout=timeout, label="set-hostname"
    )


async def probe_host_info(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    timeout: Optional[float] = None,
) -> Tuple[str, int, int]:
    """
    Read the hostname, vCPU count and RAM (MiB) of a host.

    Raises:
        RemoteCommandError: If the command fails or prints something unexpected.
    """
    script = (
        'echo "$(hostnamectl --static 2>/dev/null || hostname) '
        "$(nproc) "
        "$(awk '/MemTotal/ {print int($2/1024)}' /proc/meminfo)\""
    )
    output = await executor.execute(
        host,
        credential,
        script,
        timeout=timeout,
        escalate=False,
        label="host-info",
    )
    parts = output.stdout.split()
    try:
        hostname, cpu, memory_mb = parts[-3], int(parts[-2]), int(parts[-1])
    except (IndexError, ValueError):
        raise RemoteCommandError(
            host,
            None,
            f"unexpected host info output: {output.stdout!r}",
            label="host-info",
        ) from None
    return hostname.lower(), cpu, memory_mb


def sizing_shortfalls(node: NodeSpec, cpu: int, memory_mb: int) -> List[str]:
    """Human-readable differences between declared and observed size."""
    issues: List[str] = []
    if node.cpu is not None and cpu < node.cpu:
        issues.append(f"cpu {cpu} < declared {node.cpu}")
    if node.memory_mb is not None and memory_mb < node.memory_mb:
        issues.append(f"memory {memory_mb}MiB < declared {node.memory_mb}MiB")
    return issues


async def bootstrap_node(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    *,
    series: str,
    timeout: Optional[float] = None,
) -> None:
    """
    Prepare one host for kubeadm. Every step is guarded so re-running on a
    prepared host makes no changes beyond re-asserting configuration.

    Args:
        executor: Remote executor.
        host: Target address.
        credential: Login credential for the job.
        series: Kubernetes package series, e.g. "v1.31".
        timeout: Ceiling for each remote call.
    """
    await _disable_swap(executor, host, credential, timeout)
    await _load_kernel_modules(executor, host, credential, timeout)
    await _configure_sysctl(executor, host, credential, timeout)
    await _install_containerd(executor, host, credential, timeout)
    await _install_kube_tools(executor, host, credential, series, timeout)
    logger.info("Bootstrapped %s (series %s)", host, series)


async def _disable_swap(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    timeout: Optional[float],
) -> None:
    """
    Permanently disable swap:
      - swapoff -a
      - comment out active swap lines in /etc/fstab
    Safe if already disabled.
    """
    script = r"swapoff -a && sed -i.bak -E '/^[^#].*\sswap\s/s/^/#/' /etc/fstab"
    await executor.execute(
        host, credential, script, timeout=timeout, label="disable-swap"
    )


async def _load_kernel_modules(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    timeout: Optional[float],
) -> None:
    """
    Ensure overlay and br_netfilter are loaded, and persist them in
    /etc/modules-load.d/k8s.conf.
    """
    script = textwrap.dedent(
        """\
        set -e
        printf 'overlay\\nbr_netfilter\\n' > /etc/modules-load.d/k8s.conf
        modprobe overlay
        modprobe br_netfilter
        """
    )
    await executor.execute(
        host, credential, script, timeout=timeout, label="kernel-modules"
    )


async def _configure_sysctl(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    timeout: Optional[float],
) -> None:
    """
    Overwrite /etc/sysctl.d/99-kubernetes-cri.conf and apply sysctl --system.
    """
    content = textwrap.dedent(
        """\
        net.bridge.bridge-nf-call-iptables = 1
        net.bridge.bridge-nf-call-ip6tables = 1
        net.ipv4.ip_forward = 1
        """
    )
    script = (
        f"printf %s {shlex.quote(content)} > /etc/sysctl.d/99-kubernetes-cri.conf"
        " && sysctl --system >/dev/null"
    )
    await executor.execute(host, credential, script, timeout=timeout, label="sysctl")


async def _install_containerd(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    timeout: Optional[float],
) -> None:
    """
    Install containerd.io from the Docker repository if not present, then make
    sure its config uses the systemd cgroup driver. Safe to re-run.
    """
    try:
        await executor.execute(
            host,
            credential,
            "command -v containerd",
            timeout=timeout,
            escalate=False,
            label="check-containerd",
        )
    except RemoteCommandError:
        script = textwrap.dedent(
            """\
            set -eux
            apt-get update -y
            apt-get install -y ca-certificates curl gnupg
            install -m 0755 -d /etc/apt/keyrings
            curl -fsSL https://download.docker.com/linux/ubuntu/gpg | gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg
            codename="$(. /etc/os-release && echo "$VERSION_CODENAME")"
            arch="$(dpkg --print-architecture)"
            echo "deb [arch=$arch signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/ubuntu $codename stable" >/etc/apt/sources.list.d/docker.list
            apt-get update -y
            apt-get install -y containerd.io
            """
        )
        await executor.execute(
            host, credential, script, timeout=timeout, label="install-containerd"
        )

    script = textwrap.dedent(
        """\
        set -e
        mkdir -p /etc/containerd
        if [ ! -s /etc/containerd/config.toml ] || grep -q '^disabled_plugins.*cri' /etc/containerd/config.toml; then
          containerd config default > /etc/containerd/config.toml
        fi
        sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
        systemctl enable containerd
        systemctl restart containerd
        """
    )
    await executor.execute(
        host, credential, script, timeout=timeout, label="configure-containerd"
    )


async def _install_kube_tools(
    executor: RemoteExecutor,
    host: str,
    credential: AuthCredential,
    series: str,
    timeout: Optional[float],
) -> None:
    """
    Install kubelet, kubeadm and kubectl from pkgs.k8s.io for `series` if kubeadm
    is not present, and hold them. kubelet is always enabled.
    """
    try:
        await executor.execute(
            host,
            credential,
            "command -v kubeadm",
            timeout=timeout,
            escalate=False,
            label="check-kubeadm",
        )
    except RemoteCommandError:
        repo = f"https://pkgs.k8s.io/core:/stable:/{series}/deb/"
        keyring = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
        script = textwrap.dedent(
            f"""\
            set -eux
            apt-get update -y
            apt-get install -y apt-transport-https ca-certificates curl gpg
            install -m 0755 -d /etc/apt/keyrings
            curl -fsSL {repo}Release.key | gpg --dearmor --yes -o {keyring}
            echo "deb [signed-by={keyring}] {repo} /" >/etc/apt/sources.list.d/kubernetes.list
            apt-get update -y
            apt-get install -y kubelet kubeadm kubectl
            apt-mark hold kubelet kubeadm kubectl
            """
        )
        await executor.execute(
            host, credential, script, timeout=timeout, label="install-kube-tools"
        )

    await executor.execute(
        host,
        credential,
        "systemctl enable --now kubelet",
        timeout=timeout,
        label="enable-kubelet",
    )
