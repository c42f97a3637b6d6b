"""
Provisions a kubeadm cluster on existing machines. Each phase starts only after
the previous one succeeded:

  1) Validate: exactly one control-plane node, before touching any host.
  2) Identify: wait for SSH on every node, set declared hostnames, probe size.
  3) Bootstrap: prepare every node concurrently (swap, modules, sysctl,
     containerd, kube tools). One failure cancels the rest.
  4) Init: `kubeadm init` on the control plane.             -> create=true
  5) API wait: poll /readyz until the API server answers.
  6) Network: apply the Calico manifest.                     -> connect=true
  7) Join: mint a join command and join workers one at a time, each after
     checking it can reach the API endpoint. A single-node cluster instead
     removes the control-plane taint.
  8) Repair: re-assert runtime config, restart services, pull images,
     wait for the API again, then label nodes.
  9) Kubeconfig: copy admin.conf to {kubeconfig_dir}/{cluster_id}.yaml.
                                                             -> verify=true, ready
 10) Inventory: mark the consumed addresses used.
 11) Complete.

Status reporting is best-effort: a reporter failure is logged and the pipeline
carries on. Every other failure stops the job where it happened. Nothing is
rolled back, and nothing is retried at the pipeline level.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar

from ahura.deployment.kubeadm import (
    ADMIN_CONF,
    check_api_reachable,
    enable_control_plane_scheduling,
    get_join_command,
    install_cni,
    join_worker,
    kubeadm_init,
    label_node,
    repair_control_plane,
    wait_for_api,
)
from ahura.deployment.node_setup import (
    bootstrap_node,
    probe_host_info,
    set_hostname,
    sizing_shortfalls,
)
from ahura.errors import (
    InventoryError,
    ProvisioningError,
    ProvisionTimeoutError,
)
from ahura.models.cluster import (
    NodeSpec,
    PipelinePhase,
    ProvisioningJob,
    ProvisionResult,
    ResolvedNode,
)
from ahura.models.settings import ProvisionerSettings
from ahura.models.ssh import AuthCredential
from ahura.models.status import ClusterStatus, Phase
from ahura.services.inventory import InventoryAllocator
from ahura.services.status import StatusReporter
from ahura.utils.readiness import NodeReadinessProber, SleepFunc
from ahura.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLUSTER_LABEL = "ahura.cloud/cluster"
REGION_LABEL = "topology.kubernetes.io/region"


async def _with_timeout(
    phase: PipelinePhase, awaitable: Awaitable[T], timeout: float
) -> T:
    """Await `awaitable`, raising ProvisionTimeoutError once `timeout` elapses."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except ProvisionTimeoutError:
        raise
    except asyncio.TimeoutError:
        raise ProvisionTimeoutError(
            f"Phase {phase.value} exceeded its {timeout}s ceiling", timeout
        ) from None


async def _gather_or_cancel(awaitables: Iterable[Awaitable[T]]) -> List[T]:
    """Run concurrently; on the first failure cancel the others and re-raise."""
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class ClusterBootstrapOrchestrator:
    """
    Drives one ProvisioningJob from a validated ClusterSpec to a running cluster.

    Args:
        executor: Runs commands on the nodes.
        reporter: Persists phase flags; failures are non-fatal.
        allocator: Marks addresses used at the end. None skips that phase.
        settings: Timeouts, defaults and paths.
        prober: Node readiness prober; built from `executor` when omitted.
        sleep: Sleep used by the API and reachability polls.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        reporter: StatusReporter,
        allocator: Optional[InventoryAllocator] = None,
        settings: Optional[ProvisionerSettings] = None,
        prober: Optional[NodeReadinessProber] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._executor = executor
        self._reporter = reporter
        self._allocator = allocator
        self._settings = settings or ProvisionerSettings()
        self._prober = prober or NodeReadinessProber.from_settings(
            executor, self._settings
        )
        self._sleep = sleep

    async def run(self, job: ProvisioningJob) -> ProvisionResult:
        """
        Execute every phase for `job` and return the kubeconfig path and the
        resolved node map.

        Raises:
            ClusterValidationError: Bad topology; no host was contacted.
            ConnectivityError: A node never became reachable, or a worker
                could not reach the API endpoint.
            RemoteCommandError: A remote step failed.
            ProvisionTimeoutError: A phase exceeded its ceiling.
            InventoryError: The addresses could not be marked used.
        """
        s = self._settings
        spec = job.spec
        cluster_id = spec.cluster_id
        cred = spec.auth
        phases: List[PipelinePhase] = []

        # 1) Validate
        cp_name, cp_node = spec.control_plane()
        cp_host = cp_node.host
        workers = spec.workers()
        phases.append(PipelinePhase.VALIDATE)
        logger.info(
            "[%s] provisioning %d node(s); control plane %s (%s)",
            cluster_id,
            len(spec.nodes),
            cp_name,
            cp_host,
        )
        await self._ensure_status_record(job)

        # 2) Identify & size
        identify_ceiling = s.probe_timeout + 2 * s.command_timeout
        resolved_list = await _with_timeout(
            PipelinePhase.IDENTIFY,
            _gather_or_cancel(
                self._identify_node(name, node, cred)
                for name, node in spec.nodes.items()
            ),
            identify_ceiling,
        )
        resolved: Dict[str, ResolvedNode] = {r.name: r for r in resolved_list}
        phases.append(PipelinePhase.IDENTIFY)

        # 3) Parallel bootstrap
        series = spec.cluster.series(s.default_k8s_series)
        logger.info("[%s] bootstrapping all nodes (%s)", cluster_id, series)
        await _with_timeout(
            PipelinePhase.BOOTSTRAP,
            _gather_or_cancel(
                bootstrap_node(
                    self._executor,
                    node.host,
                    cred,
                    series=series,
                    timeout=s.bootstrap_timeout,
                )
                for node in spec.nodes.values()
            ),
            s.bootstrap_timeout,
        )
        phases.append(PipelinePhase.BOOTSTRAP)

        # 4) Control-plane init
        await _with_timeout(
            PipelinePhase.INIT,
            kubeadm_init(
                self._executor,
                cp_host,
                cred,
                pod_cidr=spec.cluster.pod_cidr or s.default_pod_cidr,
                kubernetes_version=spec.cluster.kubeadm_version(s.default_k8s_series),
                timeout=s.init_timeout,
            ),
            s.init_timeout,
        )
        phases.append(PipelinePhase.INIT)
        await self._report(cluster_id, "create", status="creating")

        # 5) API readiness
        await self._wait_for_api(cp_host, cred)
        phases.append(PipelinePhase.API_READY)

        # 6) Network plugin
        await _with_timeout(
            PipelinePhase.NETWORK,
            install_cni(
                self._executor,
                cp_host,
                cred,
                manifest_url=s.calico_url,
                timeout=s.cni_timeout,
            ),
            s.cni_timeout,
        )
        phases.append(PipelinePhase.NETWORK)
        await self._report(cluster_id, "connect")

        # 7) Join workers, or open the control plane to workloads
        if workers:
            await self._join_workers(cp_host, cred, workers)
        else:
            logger.info(
                "[%s] single-node cluster; removing control-plane taint", cluster_id
            )
            await enable_control_plane_scheduling(
                self._executor, cp_host, cred, timeout=s.command_timeout
            )
        phases.append(PipelinePhase.JOIN)

        # 8) Repair / converge
        await _with_timeout(
            PipelinePhase.REPAIR,
            repair_control_plane(
                self._executor,
                cp_host,
                cred,
                sandbox_image=s.sandbox_image,
                timeout=s.repair_timeout,
            ),
            s.repair_timeout,
        )
        await self._wait_for_api(cp_host, cred)
        await self._label_nodes(
            cp_host, cred, spec.cluster.name, spec.cluster.location, resolved
        )
        phases.append(PipelinePhase.REPAIR)

        # 9) Kubeconfig
        kubeconfig_path = os.path.join(s.kubeconfig_dir, f"{cluster_id}.yaml")
        await _with_timeout(
            PipelinePhase.KUBECONFIG,
            self._executor.copy_file(
                cp_host,
                cred,
                ADMIN_CONF,
                kubeconfig_path,
                timeout=s.kubeconfig_timeout,
            ),
            s.kubeconfig_timeout,
        )
        phases.append(PipelinePhase.KUBECONFIG)
        logger.info("[%s] kubeconfig written to %s", cluster_id, kubeconfig_path)
        await self._report(cluster_id, "verify", status="ready")

        # 10) Inventory
        await self._mark_used(cluster_id, job.addresses)
        phases.append(PipelinePhase.INVENTORY)

        # 11) Complete
        phases.append(PipelinePhase.COMPLETE)
        logger.info("[%s] cluster is ready", cluster_id)
        return ProvisionResult(
            cluster_id=cluster_id,
            kubeconfig_path=kubeconfig_path,
            control_plane=cp_host,
            nodes=resolved,
            phases=phases,
        )

    async def _identify_node(
        self, name: str, node: NodeSpec, cred: AuthCredential
    ) -> ResolvedNode:
        s = self._settings
        await self._prober.wait_until_ready(node.host, cred, timeout=s.probe_timeout)
        if node.hostname:
            await set_hostname(
                self._executor,
                node.host,
                cred,
                node.hostname,
                timeout=s.command_timeout,
            )
        hostname, cpu, memory_mb = await probe_host_info(
            self._executor, node.host, cred, timeout=s.command_timeout
        )
        for issue in sizing_shortfalls(node, cpu, memory_mb):
            logger.warning("Node %s (%s) is undersized: %s", name, node.host, issue)
        return ResolvedNode(
            name=name,
            host=node.host,
            role=node.role,
            hostname=hostname,
            cpu=cpu,
            memory_mb=memory_mb,
        )

    async def _wait_for_api(self, cp_host: str, cred: AuthCredential) -> None:
        s = self._settings
        await wait_for_api(
            self._executor,
            cp_host,
            cred,
            timeout=s.api_ready_timeout,
            base_delay=s.poll_base_delay,
            max_delay=s.poll_max_delay,
            sleep=self._sleep,
        )

    async def _join_workers(
        self,
        cp_host: str,
        cred: AuthCredential,
        workers: List[Tuple[str, NodeSpec]],
    ) -> None:
        s = self._settings
        join_command = await _with_timeout(
            PipelinePhase.JOIN,
            get_join_command(
                self._executor,
                cp_host,
                cred,
                timeout=min(s.command_timeout, s.join_token_timeout),
            ),
            s.join_token_timeout,
        )
        for name, node in workers:
            await check_api_reachable(
                self._executor,
                node.host,
                cred,
                cp_host,
                s.api_port,
                timeout=s.api_reach_timeout,
                base_delay=s.poll_base_delay,
                max_delay=s.poll_max_delay,
                sleep=self._sleep,
            )
            await _with_timeout(
                PipelinePhase.JOIN,
                join_worker(
                    self._executor,
                    node.host,
                    cred,
                    join_command,
                    timeout=s.join_timeout,
                ),
                s.join_timeout,
            )
            logger.info("Worker %s (%s) joined", name, node.host)

    async def _label_nodes(
        self,
        cp_host: str,
        cred: AuthCredential,
        cluster_name: str,
        location: str,
        resolved: Dict[str, ResolvedNode],
    ) -> None:
        labels = {CLUSTER_LABEL: cluster_name, REGION_LABEL: location}
        for node in resolved.values():
            try:
                await label_node(
                    self._executor,
                    cp_host,
                    cred,
                    node.hostname,
                    labels,
                    timeout=self._settings.command_timeout,
                )
            except ProvisioningError as exc:
                logger.warning("Could not label node %s: %s", node.hostname, exc)

    async def _mark_used(self, cluster_id: str, addresses: List[str]) -> None:
        if self._allocator is None:
            logger.info("[%s] no inventory configured; addresses left as-is", cluster_id)
            return
        try:
            await self._allocator.mark_used(addresses)
        except InventoryError:
            raise
        except Exception as exc:
            raise InventoryError(
                f"Cluster {cluster_id} is ready but {addresses} could not be "
                f"marked used: {exc}"
            ) from exc

    async def _ensure_status_record(self, job: ProvisioningJob) -> None:
        spec = job.spec
        try:
            if await self._reporter.read(spec.cluster_id) is None:
                await self._reporter.create(
                    spec.cluster_id,
                    spec.cluster.name,
                    {name: node.host for name, node in spec.nodes.items()},
                )
        except Exception as exc:
            logger.warning(
                "[%s] status record unavailable: %s", spec.cluster_id, exc
            )

    async def _report(
        self,
        cluster_id: str,
        phase: Phase,
        status: Optional[ClusterStatus] = None,
    ) -> None:
        try:
            await self._reporter.update_phase(cluster_id, phase, True, status)
        except Exception as exc:
            logger.warning(
                "[%s] could not record %s=true (status %s): %s",
                cluster_id,
                phase,
                status,
                exc,
            )
