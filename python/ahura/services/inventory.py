"""
ahura/services/inventory.py

Machine inventory allocation. A machine moves free -> reserved when it is
picked for a job and reserved -> used once the job has consumed it. The
free -> reserved step is an atomic claim, so two concurrent planners can never
be handed the same address. A reservation that cannot be completed releases
whatever it already claimed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence

import aiohttp
from pydantic import BaseModel, Field
from typing_extensions import Protocol

from ahura.errors import InventoryError, ResourceInsufficientError
from ahura.models.cluster import make_node_keys
from ahura.services.postgrest import AsyncPostgrestClient

logger = logging.getLogger(__name__)

MachineStatus = Literal["free", "reserved", "used"]


class SizingCriteria(BaseModel):
    """Minimum size a machine must have to be picked."""

    cpu: int = Field(default=1, ge=1)
    ram_gb: int = Field(default=1, ge=1)
    storage_gb: int = Field(default=0, ge=0)


class InventoryMachine(BaseModel):
    address: str
    location: str
    cpu: int
    ram_gb: int
    storage_gb: int = 0
    status: MachineStatus = "free"
    created_at: float = 0.0

    def satisfies(self, location: str, criteria: SizingCriteria) -> bool:
        return (
            self.location == location
            and self.cpu >= criteria.cpu
            and self.ram_gb >= criteria.ram_gb
            and self.storage_gb >= criteria.storage_gb
        )


class InventoryAllocator(Protocol):
    async def reserve(
        self, location: str, criteria: SizingCriteria, count: int
    ) -> List[str]: ...

    async def mark_used(self, addresses: Sequence[str]) -> List[str]: ...

    async def release(self, addresses: Sequence[str]) -> List[str]: ...


class InMemoryInventory:
    """Inventory held in process, guarded by one lock."""

    def __init__(self, machines: Iterable[InventoryMachine] = ()) -> None:
        self.machines: Dict[str, InventoryMachine] = {m.address: m for m in machines}
        self._lock = asyncio.Lock()

    async def reserve(
        self, location: str, criteria: SizingCriteria, count: int
    ) -> List[str]:
        if count < 1:
            raise ValueError("count must be at least 1")
        async with self._lock:
            candidates = sorted(
                (
                    m
                    for m in self.machines.values()
                    if m.status == "free" and m.satisfies(location, criteria)
                ),
                key=lambda m: m.created_at,
            )
            if len(candidates) < count:
                raise ResourceInsufficientError(
                    f"Need {count} free machine(s) in {location}, "
                    f"found {len(candidates)}",
                    requested=count,
                    available=len(candidates),
                )
            picked = candidates[:count]
            for m in picked:
                self.machines[m.address] = m.model_copy(update={"status": "reserved"})
            return [m.address for m in picked]

    async def mark_used(self, addresses: Sequence[str]) -> List[str]:
        async with self._lock:
            unknown = [a for a in addresses if a not in self.machines]
            if unknown:
                raise InventoryError(f"Unknown address(es): {unknown}")
            changed = []
            for address in addresses:
                machine = self.machines[address]
                if machine.status != "used":
                    self.machines[address] = machine.model_copy(
                        update={"status": "used"}
                    )
                    changed.append(address)
            return changed

    async def release(self, addresses: Sequence[str]) -> List[str]:
        async with self._lock:
            changed = []
            for address in addresses:
                machine = self.machines.get(address)
                if machine is not None and machine.status == "reserved":
                    self.machines[address] = machine.model_copy(
                        update={"status": "free"}
                    )
                    changed.append(address)
            return changed


def _in_list(addresses: Sequence[str]) -> str:
    return "in.(" + ",".join(f'"{a}"' for a in addresses) + ")"


class PostgrestInventory:
    """
    Inventory in the `vms` table. Columns used: ip_address, location, cpu,
    ram (GB), storage (GB), status, created_at.

    Each candidate is claimed with a conditional PATCH (`status=eq.free`); a
    row someone else claimed first comes back empty and is skipped.
    """

    def __init__(self, client: AsyncPostgrestClient, table: str = "vms") -> None:
        self._client = client
        self._table = table

    async def reserve(
        self, location: str, criteria: SizingCriteria, count: int
    ) -> List[str]:
        if count < 1:
            raise ValueError("count must be at least 1")
        filters = {
            "location": f"eq.{location}",
            "status": "eq.free",
            "cpu": f"gte.{criteria.cpu}",
            "ram": f"gte.{criteria.ram_gb}",
            "storage": f"gte.{criteria.storage_gb}",
        }
        claimed: List[str] = []
        try:
            rows = await self._client.select(
                self._table, filters, order="created_at.asc"
            )
            for row in rows:
                if len(claimed) == count:
                    break
                won = await self._client.update(
                    self._table,
                    {"status": "reserved"},
                    {"ip_address": f"eq.{row['ip_address']}", "status": "eq.free"},
                )
                if won:
                    claimed.append(str(row["ip_address"]))
        except (RuntimeError, aiohttp.ClientError, ValueError, KeyError) as exc:
            if claimed:
                try:
                    await self.release(claimed)
                except InventoryError as release_exc:
                    logger.error(
                        "Could not release %s after failed reservation: %s",
                        claimed,
                        release_exc,
                    )
            raise InventoryError(f"Reservation in {location} failed: {exc}") from exc

        if len(claimed) < count:
            if claimed:
                await self.release(claimed)
            raise ResourceInsufficientError(
                f"Need {count} free machine(s) in {location}, claimed {len(claimed)}",
                requested=count,
                available=len(claimed),
            )
        return claimed

    async def _transition(
        self, addresses: Sequence[str], to_status: str, from_filter: str
    ) -> List[str]:
        if not addresses:
            return []
        try:
            rows = await self._client.update(
                self._table,
                {"status": to_status},
                {"ip_address": _in_list(addresses), "status": from_filter},
            )
        except (RuntimeError, aiohttp.ClientError, ValueError) as exc:
            raise InventoryError(
                f"Cannot mark {list(addresses)} {to_status}: {exc}"
            ) from exc
        return [str(r.get("ip_address")) for r in rows]

    async def mark_used(self, addresses: Sequence[str]) -> List[str]:
        return await self._transition(addresses, "used", "in.(free,reserved)")

    async def release(self, addresses: Sequence[str]) -> List[str]:
        return await self._transition(addresses, "free", "eq.reserved")


async def build_job_payload(
    allocator: InventoryAllocator,
    *,
    cluster_id: str,
    name: str,
    location: str,
    workers: int,
    criteria: SizingCriteria,
    auth: Dict[str, Any],
    version: Optional[str] = None,
    pod_cidr: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Reserve one control-plane and `workers` worker machines and return a job
    payload for them. The first address is the control plane.
    """
    addresses = await allocator.reserve(location, criteria, workers + 1)
    keys = make_node_keys(workers)
    nodes = {
        key: {
            "host": address,
            "role": "control-plane" if key.startswith("cp-") else "worker",
            "cpu": criteria.cpu,
            "memory_mb": criteria.ram_gb * 1024,
        }
        for key, address in zip(keys, addresses)
    }
    cluster: Dict[str, Any] = {"name": name, "location": location}
    if version:
        cluster["version"] = version
    if pod_cidr:
        cluster["pod_cidr"] = pod_cidr
    logger.info("Reserved %s for cluster %s", addresses, cluster_id)
    return {
        "clusterId": cluster_id,
        "provider": "existing",
        "cluster": cluster,
        "auth": auth,
        "nodes": nodes,
        "addresses": addresses,
    }
