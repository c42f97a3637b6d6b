"""
ahura/models/status.py

Persisted per-cluster phase status and the polling snapshot derived from it.

The three phase flags (create, connect, verify) are sticky: once true they are
never written back to false. The overall status only moves forward along
pending -> creating -> ready; "failed" and "deleted" are terminal and only
ever set from outside the pipeline.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Phase = Literal["create", "connect", "verify"]
ClusterStatus = Literal["pending", "creating", "ready", "failed", "deleted"]

PHASES: List[Phase] = ["create", "connect", "verify"]

_STATUS_ORDER: Dict[str, int] = {"pending": 0, "creating": 1, "ready": 2}
_TERMINAL = ("failed", "deleted")


class PollSnapshot(BaseModel):
    """The shape returned to pollers of cluster status."""

    createStatus: bool = False
    connectStatus: bool = False
    verifyStatus: bool = False
    status: ClusterStatus = "pending"


class ClusterPhaseStatus(BaseModel):
    """
    One status record per cluster.

    Attributes:
        cluster_id: Unique cluster identifier.
        name: Human-readable cluster name.
        create: Control plane initialized.
        connect: Network plugin applied.
        verify: Kubeconfig retrieved.
        status: Overall lifecycle status.
        nodes: Node name -> address, as recorded at creation.
    """

    cluster_id: str
    name: str = ""
    create: bool = False
    connect: bool = False
    verify: bool = False
    status: ClusterStatus = "pending"
    nodes: Dict[str, str] = Field(default_factory=dict)

    def flag(self, phase: Phase) -> bool:
        return bool(getattr(self, phase))

    def advanced(
        self,
        phase: Phase,
        value: bool = True,
        status: Optional[ClusterStatus] = None,
    ) -> ClusterPhaseStatus:
        """
        Return a copy with `phase` set and `status` applied, never regressing.

        A flag already true stays true even when `value` is False. A status
        update is applied only if it moves forward; terminal statuses are kept.
        """
        if phase not in PHASES:
            raise ValueError(f"Unknown phase {phase!r}")
        updates: Dict[str, object] = {phase: self.flag(phase) or bool(value)}
        if status is not None:
            updates["status"] = advance_status(self.status, status)
        return self.model_copy(update=updates)

    def to_poll_response(self) -> PollSnapshot:
        return PollSnapshot(
            createStatus=self.create,
            connectStatus=self.connect,
            verifyStatus=self.verify,
            status=self.status,
        )


def advance_status(current: ClusterStatus, requested: ClusterStatus) -> ClusterStatus:
    """Forward-only status transition; terminal values win."""
    if current in _TERMINAL:
        return current
    if requested in _TERMINAL:
        return requested
    if _STATUS_ORDER[requested] > _STATUS_ORDER[current]:
        return requested
    return current


def merge_observed(previous: Optional[PollSnapshot], current: PollSnapshot) -> PollSnapshot:
    """
    Merge a fresh poll into what the caller has already seen. Flags are ORed so
    a stale read cannot make a completed phase appear to regress.
    """
    if previous is None:
        return current
    return PollSnapshot(
        createStatus=previous.createStatus or current.createStatus,
        connectStatus=previous.connectStatus or current.connectStatus,
        verifyStatus=previous.verifyStatus or current.verifyStatus,
        status=advance_status(previous.status, current.status),
    )
