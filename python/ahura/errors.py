"""
ahura/errors.py

Error taxonomy for cluster provisioning. Every error raised out of the pipeline
derives from ProvisioningError so callers can catch the whole family at once.

Fatal errors (the job stops immediately, no rollback):
  - ClusterValidationError: the job was rejected before any remote command ran.
  - ConnectivityError: a host never became reachable or could not reach the API.
  - RemoteCommandError: a remote command exited non-zero.
  - ResourceInsufficientError: the inventory could not satisfy a reservation.
  - ProvisionTimeoutError: a phase exceeded its wall-clock ceiling.
  - InventoryError: consumed addresses could not be marked used.

Non-fatal:
  - PersistenceError: the status reporter failed; the pipeline logs and continues.
"""

from __future__ import annotations

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""


class ClusterValidationError(ProvisioningError):
    """The job payload or cluster topology is invalid."""


class ConnectivityError(ProvisioningError):
    """A node could not be reached within its time budget.

    Attributes:
        host (str): The address that could not be reached.
    """

    def __init__(self, message: str, host: str) -> None:
        super().__init__(message)
        self.host = host


class RemoteCommandError(ProvisioningError):
    """A remote command exited with a non-accepted status.

    Attributes:
        host (str): Address the command ran on.
        label (Optional[str]): Short name of the step, e.g. "kubeadm-init".
        exit_status (Optional[int]): Exit status, if one was reported.
        stderr (str): Captured stderr, never containing credentials.
    """

    def __init__(
        self,
        host: str,
        exit_status: Optional[int],
        stderr: str = "",
        label: Optional[str] = None,
    ) -> None:
        step = f" ({label})" if label else ""
        message = f"Remote command{step} on {host} failed with exit status {exit_status}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)
        self.host = host
        self.label = label
        self.exit_status = exit_status
        self.stderr = stderr


class ResourceInsufficientError(ProvisioningError):
    """Fewer matching free machines than requested."""

    def __init__(self, message: str, requested: int, available: int) -> None:
        super().__init__(message)
        self.requested = requested
        self.available = available


class ProvisionTimeoutError(ProvisioningError, TimeoutError):
    """A phase or remote operation exceeded its ceiling."""

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class PersistenceError(ProvisioningError):
    """The status store could not be read or written."""


class InventoryError(ProvisioningError):
    """The inventory store rejected a reservation or release."""
