import asyncio
import json
import sys
from typing import Any, Dict, List

import pytest
import yaml

from ahura.cli import provision
from ahura.errors import ClusterValidationError
from ahura.models.cluster import ProvisioningJob
from ahura.services.inventory import InMemoryInventory, InventoryMachine
from ahura.services.status import FileStatusReporter


def test_load_job_file_reads_yaml_and_json(
    tmp_path: Any, password_payload: Dict[str, Any]
) -> None:
    as_yaml = tmp_path / "job.yaml"
    as_yaml.write_text(yaml.safe_dump(password_payload))
    as_json = tmp_path / "job.json"
    as_json.write_text(json.dumps(password_payload))

    assert asyncio.run(provision.load_job_file(str(as_yaml))) == password_payload
    assert asyncio.run(provision.load_job_file(str(as_json))) == password_payload


def test_load_job_file_rejects_non_mappings(tmp_path: Any) -> None:
    listing = tmp_path / "job.yml"
    listing.write_text("- a\n- b\n")
    broken = tmp_path / "job.json"
    broken.write_text("{")

    for path in (listing, broken):
        with pytest.raises(ClusterValidationError):
            asyncio.run(provision.load_job_file(str(path)))


def test_status_prints_poll_response(
    tmp_path: Any, monkeypatch: Any, capsys: Any
) -> None:
    async def seed() -> None:
        reporter = FileStatusReporter(str(tmp_path / "status"))
        await reporter.create("c-1", "demo", {"cp-1": "10.0.0.1"})
        await reporter.update_phase("c-1", "create", status="creating")

    asyncio.run(seed())
    monkeypatch.setenv("AHURA_STATE_DIR", str(tmp_path))
    monkeypatch.setattr(
        sys,
        "argv",
        ["ahura-provision", "status", "--cluster-id", "c-1", "--status-backend", "file"],
    )

    provision.main()

    printed = json.loads(capsys.readouterr().out.strip())
    assert printed == {
        "createStatus": True,
        "connectStatus": False,
        "verifyStatus": False,
        "status": "creating",
    }


def test_errors_exit_non_zero(tmp_path: Any, monkeypatch: Any, capsys: Any) -> None:
    monkeypatch.setenv("AHURA_STATE_DIR", str(tmp_path))
    monkeypatch.setattr(
        sys,
        "argv",
        ["ahura-provision", "status", "--cluster-id", "nope", "--status-backend", "file"],
    )

    with pytest.raises(SystemExit) as excinfo:
        provision.main()

    assert excinfo.value.code == 1
    assert "No status record for cluster nope" in capsys.readouterr().err


def test_plan_refuses_to_print_passwords(monkeypatch: Any, capsys: Any) -> None:
    monkeypatch.setenv("PLAN_PW", "s3cret")
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "ahura-provision",
            "plan",
            "--cluster-id",
            "c-2",
            "--name",
            "demo",
            "--location",
            "fra1",
            "--user",
            "ubuntu",
            "--password-env",
            "PLAN_PW",
        ],
    )

    with pytest.raises(SystemExit):
        provision.main()

    captured = capsys.readouterr()
    assert "--output is required" in captured.err
    assert "s3cret" not in captured.out + captured.err


def _plan_argv(cluster_id: str, output: str) -> List[str]:
    return [
        "ahura-provision",
        "plan",
        "--cluster-id",
        cluster_id,
        "--name",
        "demo",
        "--location",
        "fra1",
        "--workers",
        "1",
        "--user",
        "ubuntu",
        "--key-path",
        "/keys/id_ed25519",
        "--output",
        output,
    ]


def _fra1_inventory() -> InMemoryInventory:
    return InMemoryInventory(
        [
            InventoryMachine(address="10.0.0.1", location="fra1", cpu=4, ram_gb=8),
            InventoryMachine(address="10.0.0.2", location="fra1", cpu=4, ram_gb=8),
        ]
    )


def test_plan_writes_a_valid_job(tmp_path: Any, monkeypatch: Any) -> None:
    inventory = _fra1_inventory()
    monkeypatch.setattr(provision, "PostgrestInventory", lambda client: inventory)
    output = tmp_path / "jobs" / "c-3.json"
    monkeypatch.setattr(sys, "argv", _plan_argv("c-3", str(output)))

    provision.main()

    job = ProvisioningJob.from_payload(json.loads(output.read_text()))
    assert job.spec.cluster_id == "c-3"
    assert job.addresses == ["10.0.0.1", "10.0.0.2"]
    assert {m.status for m in inventory.machines.values()} == {"reserved"}


def test_plan_releases_machines_when_the_job_is_invalid(
    tmp_path: Any, monkeypatch: Any, capsys: Any
) -> None:
    inventory = _fra1_inventory()
    monkeypatch.setattr(provision, "PostgrestInventory", lambda client: inventory)
    output = tmp_path / "bad.json"
    monkeypatch.setattr(sys, "argv", _plan_argv("team/c-3", str(output)))

    with pytest.raises(SystemExit):
        provision.main()

    assert {m.status for m in inventory.machines.values()} == {"free"}
    assert not output.exists()
    assert "Released" in capsys.readouterr().err
