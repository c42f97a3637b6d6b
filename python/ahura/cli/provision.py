#!/usr/bin/env python3
"""
ahura/cli/provision.py

Command-line entry point for provisioning kubeadm clusters on existing machines.
Example usage:

    python -m ahura.cli.provision run --job cluster.yaml
    python -m ahura.cli.provision status --cluster-id c-42 --watch
    AHURA_PLAN_PASSWORD=... python -m ahura.cli.provision plan \
        --cluster-id c-42 --name demo --location fra1 --workers 2 \
        --user ubuntu --password-env AHURA_PLAN_PASSWORD --output c-42.json

Configuration comes from AHURA_* environment variables (see ProvisionerSettings);
a few flags override them. Passwords are never accepted as flags.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import aiofiles
import yaml

from ahura.deployment.pipeline import ClusterBootstrapOrchestrator
from ahura.errors import ClusterValidationError
from ahura.models.cluster import ProvisioningJob
from ahura.models.settings import ProvisionerSettings
from ahura.models.status import PollSnapshot, merge_observed
from ahura.services.inventory import (
    InventoryAllocator,
    PostgrestInventory,
    SizingCriteria,
    build_job_payload,
)
from ahura.services.postgrest import AsyncPostgrestClient
from ahura.services.status import build_status_reporter
from ahura.utils.ssh import SSHExecutor, write_private_file


async def load_job_file(path: str) -> Dict[str, Any]:
    """Read a job payload from a JSON or YAML file."""
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        raw = await f.read()
    try:
        if path.endswith((".yaml", ".yml")):
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
    except (yaml.YAMLError, ValueError) as exc:
        raise ClusterValidationError(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ClusterValidationError(f"{path} does not contain a mapping")
    return data


def _settings_from_args(args: argparse.Namespace) -> ProvisionerSettings:
    overrides: Dict[str, Any] = {}
    if getattr(args, "kubeconfig_dir", None):
        overrides["kubeconfig_dir"] = args.kubeconfig_dir
    if getattr(args, "status_backend", None):
        overrides["status_backend"] = args.status_backend
    if getattr(args, "inventory_backend", None) in ("memory", "postgrest"):
        overrides["inventory_backend"] = args.inventory_backend
    return ProvisionerSettings(**overrides)


async def _run_job(args: argparse.Namespace) -> None:
    """
    Handler for the 'run' subcommand:
      1) Load and validate the job payload
      2) Run every provisioning phase
      3) Print the kubeconfig path
    """
    settings = _settings_from_args(args)
    job = ProvisioningJob.from_payload(await load_job_file(args.job))

    async with AsyncPostgrestClient.from_settings(settings) as client:
        allocator: Optional[InventoryAllocator] = None
        if args.inventory_backend != "none" and settings.inventory_backend == "postgrest":
            allocator = PostgrestInventory(client)
        orchestrator = ClusterBootstrapOrchestrator(
            executor=SSHExecutor.from_settings(settings),
            reporter=build_status_reporter(settings, client),
            allocator=allocator,
            settings=settings,
        )
        result = await orchestrator.run(job)

    print(f"Cluster {result.cluster_id} is ready.")
    print(f"Kubeconfig: {result.kubeconfig_path}")
    for name, node in result.nodes.items():
        print(f"  {name}: {node.host} {node.role} {node.hostname}")


async def _show_status(args: argparse.Namespace) -> None:
    """
    Handler for the 'status' subcommand. With --watch, keeps polling and merges
    each read into what was already seen until the cluster is ready.
    """
    settings = _settings_from_args(args)
    async with AsyncPostgrestClient.from_settings(settings) as client:
        reporter = build_status_reporter(settings, client)
        seen: Optional[PollSnapshot] = None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.timeout
        while True:
            record = await reporter.read(args.cluster_id)
            if record is None:
                raise RuntimeError(f"No status record for cluster {args.cluster_id}")
            seen = merge_observed(seen, record.to_poll_response())
            print(json.dumps(seen.model_dump()))
            if not args.watch or seen.status in ("ready", "failed", "deleted"):
                return
            if loop.time() >= deadline:
                raise RuntimeError(f"Cluster {args.cluster_id} not ready in time")
            await asyncio.sleep(args.interval)


async def _plan(args: argparse.Namespace) -> None:
    """
    Handler for the 'plan' subcommand: reserve machines from the inventory and
    write a job payload for them.
    """
    if args.key_path:
        auth: Dict[str, Any] = {
            "method": "key",
            "user": args.user,
            "private_key_path": args.key_path,
        }
    else:
        password = os.environ.get(args.password_env or "")
        if not password:
            raise RuntimeError(
                "Either --key-path or --password-env naming a set variable is required."
            )
        if not args.output:
            raise RuntimeError("--output is required for password credentials.")
        auth = {"method": "password", "user": args.user, "password": password}

    settings = _settings_from_args(args)
    async with AsyncPostgrestClient.from_settings(settings) as client:
        inventory = PostgrestInventory(client)
        payload = await build_job_payload(
            inventory,
            cluster_id=args.cluster_id,
            name=args.name,
            location=args.location,
            workers=args.workers,
            criteria=SizingCriteria(
                cpu=args.cpu, ram_gb=args.ram_gb, storage_gb=args.storage_gb
            ),
            auth=auth,
            version=args.version,
        )
        # The reservation only stands once the job is valid and written out.
        try:
            job = ProvisioningJob.from_payload(payload)
            text = json.dumps(job.to_payload(), indent=2)
            if args.output:
                await write_private_file(args.output, text + "\n")
        except Exception:
            released = await inventory.release(payload["addresses"])
            print(f"Released {released} after a failed plan.", file=sys.stderr)
            raise

    if args.output:
        print(f"Wrote job for {job.spec.cluster_id} to {args.output}")
    else:
        print(text)


def main() -> None:
    """
    Entry point for the provisioning CLI.
    Subcommands:
      - run: provision a cluster from a job file
      - status: print (or watch) a cluster's phase status
      - plan: reserve machines and write a job file
    """
    parser = argparse.ArgumentParser(
        prog="ahura.cli.provision",
        description="Provision kubeadm clusters on existing machines over SSH.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Provision a cluster from a job file.")
    run_parser.add_argument("--job", required=True, help="JSON or YAML job payload.")
    run_parser.add_argument(
        "--kubeconfig-dir", default=None, help="Where to write <cluster_id>.yaml."
    )
    run_parser.add_argument(
        "--status-backend",
        choices=["memory", "file", "postgrest"],
        default=None,
        help="Override AHURA_STATUS_BACKEND.",
    )
    run_parser.add_argument(
        "--inventory-backend",
        choices=["none", "postgrest"],
        default="postgrest",
        help="Mark addresses used in the inventory (default: postgrest).",
    )
    run_parser.set_defaults(func=_run_job)

    status_parser = subparsers.add_parser("status", help="Show a cluster's status.")
    status_parser.add_argument("--cluster-id", required=True)
    status_parser.add_argument(
        "--status-backend",
        choices=["memory", "file", "postgrest"],
        default=None,
        help="Override AHURA_STATUS_BACKEND.",
    )
    status_parser.add_argument(
        "--watch", action="store_true", help="Poll until the cluster is ready."
    )
    status_parser.add_argument("--interval", type=float, default=5.0)
    status_parser.add_argument("--timeout", type=float, default=3600.0)
    status_parser.set_defaults(func=_show_status)

    plan_parser = subparsers.add_parser(
        "plan", help="Reserve machines and write a job payload."
    )
    plan_parser.add_argument("--cluster-id", required=True)
    plan_parser.add_argument("--name", required=True)
    plan_parser.add_argument("--location", required=True)
    plan_parser.add_argument("--workers", type=int, default=0)
    plan_parser.add_argument("--cpu", type=int, default=2)
    plan_parser.add_argument("--ram-gb", type=int, default=4)
    plan_parser.add_argument("--storage-gb", type=int, default=0)
    plan_parser.add_argument("--version", default=None, help="e.g. 1.31 or v1.31.2")
    plan_parser.add_argument("--user", required=True)
    g_auth = plan_parser.add_mutually_exclusive_group(required=True)
    g_auth.add_argument("--key-path", default=None, help="Private key for the user.")
    g_auth.add_argument(
        "--password-env",
        default=None,
        help="Name of the environment variable holding the password.",
    )
    plan_parser.add_argument("--output", default=None, help="Write the payload here.")
    plan_parser.set_defaults(func=_plan)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"Provisioning CLI error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
