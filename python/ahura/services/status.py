"""
ahura/services/status.py

Status reporters persist ClusterPhaseStatus records. All implementations go
through ClusterPhaseStatus.advanced, so flags never regress and the status only
moves forward. Failures surface as PersistenceError; the pipeline treats those
as non-fatal.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import aiofiles.os
import aiohttp
from typing_extensions import Protocol

from ahura.errors import PersistenceError
from ahura.models.settings import ProvisionerSettings
from ahura.models.status import ClusterPhaseStatus, ClusterStatus, Phase
from ahura.services.postgrest import AsyncPostgrestClient

logger = logging.getLogger(__name__)


class StatusReporter(Protocol):
    async def create(
        self, cluster_id: str, name: str, nodes: Dict[str, str]
    ) -> ClusterPhaseStatus: ...

    async def update_phase(
        self,
        cluster_id: str,
        phase: Phase,
        value: bool = True,
        status: Optional[ClusterStatus] = None,
    ) -> ClusterPhaseStatus: ...

    async def read(self, cluster_id: str) -> Optional[ClusterPhaseStatus]: ...


class InMemoryStatusReporter:
    """Keeps records in a dict. Used for dry runs and tests."""

    def __init__(self) -> None:
        self.records: Dict[str, ClusterPhaseStatus] = {}
        self._lock = asyncio.Lock()

    async def create(
        self, cluster_id: str, name: str, nodes: Dict[str, str]
    ) -> ClusterPhaseStatus:
        async with self._lock:
            existing = self.records.get(cluster_id)
            if existing is not None:
                return existing
            record = ClusterPhaseStatus(cluster_id=cluster_id, name=name, nodes=nodes)
            self.records[cluster_id] = record
            return record

    async def update_phase(
        self,
        cluster_id: str,
        phase: Phase,
        value: bool = True,
        status: Optional[ClusterStatus] = None,
    ) -> ClusterPhaseStatus:
        async with self._lock:
            current = self.records.get(cluster_id)
            if current is None:
                raise PersistenceError(f"No status record for cluster {cluster_id}")
            updated = current.advanced(phase, value, status)
            self.records[cluster_id] = updated
            return updated

    async def read(self, cluster_id: str) -> Optional[ClusterPhaseStatus]:
        return self.records.get(cluster_id)


class FileStatusReporter:
    """
    One JSON document per cluster under `state_dir`. Writes go to a temporary
    file that is then renamed over the record.
    """

    def __init__(self, state_dir: str) -> None:
        self._dir = Path(state_dir)
        self._lock = asyncio.Lock()

    def path_for(self, cluster_id: str) -> Path:
        return self._dir / f"{cluster_id}.json"

    async def _load(self, cluster_id: str) -> Optional[ClusterPhaseStatus]:
        path = self.path_for(cluster_id)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}") from exc
        try:
            return ClusterPhaseStatus.model_validate_json(raw)
        except ValueError as exc:
            raise PersistenceError(f"Corrupt status record {path}: {exc}") from exc

    async def _store(self, record: ClusterPhaseStatus) -> None:
        path = self.path_for(record.cluster_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            await aiofiles.os.makedirs(str(self._dir), exist_ok=True)
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(record.model_dump_json(indent=2))
            await aiofiles.os.replace(str(tmp), str(path))
        except OSError as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc

    async def create(
        self, cluster_id: str, name: str, nodes: Dict[str, str]
    ) -> ClusterPhaseStatus:
        async with self._lock:
            existing = await self._load(cluster_id)
            if existing is not None:
                return existing
            record = ClusterPhaseStatus(cluster_id=cluster_id, name=name, nodes=nodes)
            await self._store(record)
            return record

    async def update_phase(
        self,
        cluster_id: str,
        phase: Phase,
        value: bool = True,
        status: Optional[ClusterStatus] = None,
    ) -> ClusterPhaseStatus:
        async with self._lock:
            current = await self._load(cluster_id)
            if current is None:
                raise PersistenceError(f"No status record for cluster {cluster_id}")
            updated = current.advanced(phase, value, status)
            await self._store(updated)
            return updated

    async def read(self, cluster_id: str) -> Optional[ClusterPhaseStatus]:
        return await self._load(cluster_id)


_PHASE_COLUMNS: Dict[str, str] = {
    "create": "create_status",
    "connect": "connect_status",
    "verify": "verify_status",
}


def _row_to_status(row: Dict[str, Any]) -> ClusterPhaseStatus:
    return ClusterPhaseStatus(
        cluster_id=row["cluster_id"],
        name=row.get("cluster_name") or "",
        create=bool(row.get("create_status")),
        connect=bool(row.get("connect_status")),
        verify=bool(row.get("verify_status")),
        status=row.get("status") or "pending",
        nodes=row.get("node_config") or {},
    )


class PostgrestStatusReporter:
    """
    Stores status in the `clusters` table. Columns used: cluster_id,
    cluster_name, create_status, connect_status, verify_status, status,
    node_config.
    """

    def __init__(self, client: AsyncPostgrestClient, table: str = "clusters") -> None:
        self._client = client
        self._table = table

    async def read(self, cluster_id: str) -> Optional[ClusterPhaseStatus]:
        try:
            rows = await self._client.select(
                self._table, {"cluster_id": f"eq.{cluster_id}"}, limit=1
            )
        except (RuntimeError, aiohttp.ClientError, ValueError) as exc:
            raise PersistenceError(f"Cannot read status of {cluster_id}: {exc}") from exc
        return _row_to_status(rows[0]) if rows else None

    async def create(
        self, cluster_id: str, name: str, nodes: Dict[str, str]
    ) -> ClusterPhaseStatus:
        existing = await self.read(cluster_id)
        if existing is not None:
            return existing
        record = ClusterPhaseStatus(cluster_id=cluster_id, name=name, nodes=nodes)
        row = {
            "cluster_id": cluster_id,
            "cluster_name": name,
            "create_status": False,
            "connect_status": False,
            "verify_status": False,
            "status": record.status,
            "node_config": nodes,
        }
        try:
            await self._client.insert(self._table, row)
        except (RuntimeError, aiohttp.ClientError, ValueError) as exc:
            raise PersistenceError(f"Cannot create status of {cluster_id}: {exc}") from exc
        return record

    async def update_phase(
        self,
        cluster_id: str,
        phase: Phase,
        value: bool = True,
        status: Optional[ClusterStatus] = None,
    ) -> ClusterPhaseStatus:
        current = await self.read(cluster_id)
        if current is None:
            raise PersistenceError(f"No status record for cluster {cluster_id}")
        updated = current.advanced(phase, value, status)

        # Only ever write true flags and forward statuses.
        values: Dict[str, Any] = {}
        if updated.flag(phase) and not current.flag(phase):
            values[_PHASE_COLUMNS[phase]] = True
        if updated.status != current.status:
            values["status"] = updated.status
        if not values:
            return current
        try:
            await self._client.update(
                self._table, values, {"cluster_id": f"eq.{cluster_id}"}
            )
        except (RuntimeError, aiohttp.ClientError, ValueError) as exc:
            raise PersistenceError(
                f"Cannot update {phase} of {cluster_id}: {exc}"
            ) from exc
        return updated


def build_status_reporter(
    settings: ProvisionerSettings,
    client: Optional[AsyncPostgrestClient] = None,
) -> StatusReporter:
    """Pick the reporter named by `settings.status_backend`."""
    if settings.status_backend == "memory":
        return InMemoryStatusReporter()
    if settings.status_backend == "file":
        return FileStatusReporter(os.path.join(settings.state_dir, "status"))
    return PostgrestStatusReporter(client or AsyncPostgrestClient.from_settings(settings))
