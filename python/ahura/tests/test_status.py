import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from ahura.errors import PersistenceError
from ahura.models.status import ClusterPhaseStatus, PollSnapshot, merge_observed
from ahura.services.status import (
    FileStatusReporter,
    InMemoryStatusReporter,
    PostgrestStatusReporter,
)


def test_flags_are_sticky() -> None:
    record = ClusterPhaseStatus(cluster_id="c-1").advanced("create")
    assert record.create

    again = record.advanced("create", value=False)
    assert again.create


def test_status_only_moves_forward() -> None:
    record = ClusterPhaseStatus(cluster_id="c-1")
    record = record.advanced("create", status="creating")
    record = record.advanced("verify", status="ready")
    assert record.status == "ready"

    assert record.advanced("connect", status="creating").status == "ready"
    assert record.advanced("connect", status="pending").status == "ready"


def test_terminal_status_is_kept() -> None:
    failed = ClusterPhaseStatus(cluster_id="c-1", status="failed")
    assert failed.advanced("verify", status="ready").status == "failed"


def test_unknown_phase_is_rejected() -> None:
    with pytest.raises(ValueError):
        ClusterPhaseStatus(cluster_id="c-1").advanced("deploy")  # type: ignore[arg-type]


def test_poll_response_shape() -> None:
    record = ClusterPhaseStatus(cluster_id="c-1", create=True, status="creating")
    assert record.to_poll_response().model_dump() == {
        "createStatus": True,
        "connectStatus": False,
        "verifyStatus": False,
        "status": "creating",
    }


def test_merge_observed_never_regresses() -> None:
    seen = PollSnapshot(createStatus=True, connectStatus=True, status="creating")
    stale = PollSnapshot(createStatus=True, status="pending")

    merged = merge_observed(seen, stale)

    assert merged.createStatus and merged.connectStatus
    assert not merged.verifyStatus
    assert merged.status == "creating"
    assert merge_observed(None, stale) == stale


def test_in_memory_reporter_requires_record() -> None:
    reporter = InMemoryStatusReporter()
    with pytest.raises(PersistenceError):
        asyncio.run(reporter.update_phase("missing", "create"))


def test_file_reporter_persists_records(tmp_path: Any) -> None:
    async def scenario() -> Tuple[Optional[ClusterPhaseStatus], ClusterPhaseStatus]:
        reporter = FileStatusReporter(str(tmp_path / "status"))
        await reporter.create("c-1", "demo", {"cp-1": "10.0.0.1"})
        await reporter.update_phase("c-1", "create", status="creating")
        await reporter.update_phase("c-1", "connect")
        # A second create must not reset the record.
        again = await reporter.create("c-1", "demo", {})
        fresh = FileStatusReporter(str(tmp_path / "status"))
        return await fresh.read("c-1"), again

    record, again = asyncio.run(scenario())

    assert record is not None
    assert (record.create, record.connect, record.verify) == (True, True, False)
    assert record.status == "creating"
    assert record.nodes == {"cp-1": "10.0.0.1"}
    assert again.create
    stored = json.loads((tmp_path / "status" / "c-1.json").read_text())
    assert stored["cluster_id"] == "c-1"


def test_file_reporter_missing_and_corrupt(tmp_path: Any) -> None:
    reporter = FileStatusReporter(str(tmp_path))
    assert asyncio.run(reporter.read("nope")) is None

    (tmp_path / "bad.json").write_text("{not json")
    with pytest.raises(PersistenceError):
        asyncio.run(reporter.read("bad"))


class FakePostgrest:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.rows = rows or []
        self.updates: List[Tuple[Dict[str, Any], Dict[str, str]]] = []
        self.inserts: List[Dict[str, Any]] = []
        self.fail = False

    async def select(
        self, table: str, filters: Optional[Dict[str, str]] = None, **_: Any
    ) -> List[Dict[str, Any]]:
        if self.fail:
            raise RuntimeError("PostgREST select failed: 503, {}")
        wanted = (filters or {}).get("cluster_id", "eq.")[3:]
        return [r for r in self.rows if r["cluster_id"] == wanted]

    async def insert(self, table: str, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.inserts.append(row)
        self.rows.append(dict(row))
        return [row]

    async def update(
        self, table: str, values: Dict[str, Any], filters: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        self.updates.append((values, filters))
        for row in self.rows:
            if f"eq.{row['cluster_id']}" == filters["cluster_id"]:
                row.update(values)
        return self.rows


def test_postgrest_reporter_writes_only_forward_changes() -> None:
    client = FakePostgrest()
    reporter = PostgrestStatusReporter(client)  # type: ignore[arg-type]

    async def scenario() -> ClusterPhaseStatus:
        await reporter.create("c-1", "demo", {"cp-1": "10.0.0.1"})
        await reporter.update_phase("c-1", "create", status="creating")
        await reporter.update_phase("c-1", "create", value=False, status="pending")
        return await reporter.update_phase("c-1", "verify", status="ready")

    record = asyncio.run(scenario())

    assert client.inserts[0]["cluster_name"] == "demo"
    assert client.updates == [
        ({"create_status": True, "status": "creating"}, {"cluster_id": "eq.c-1"}),
        ({"verify_status": True, "status": "ready"}, {"cluster_id": "eq.c-1"}),
    ]
    assert record.status == "ready"
    assert all(v is not False for values, _ in client.updates for v in values.values())


def test_postgrest_reporter_wraps_errors() -> None:
    client = FakePostgrest()
    client.fail = True
    reporter = PostgrestStatusReporter(client)  # type: ignore[arg-type]
    with pytest.raises(PersistenceError):
        asyncio.run(reporter.read("c-1"))
