"""
ahura/utils/readiness.py

Bounded polling with capped exponential backoff, and the node readiness prober
built on top of it. A node is ready when its SSH port accepts a TCP connection
and a trivial command (`true`) succeeds under the job's credential.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ahura.errors import ConnectivityError, ProvisioningError
from ahura.models.settings import ProvisionerSettings
from ahura.models.ssh import AuthCredential
from ahura.utils.async_retry import backoff_delays
from ahura.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    timeout: float,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    factor: float = 2.0,
    sleep: SleepFunc = asyncio.sleep,
    clock: Optional[Callable[[], float]] = None,
) -> Optional[int]:
    """
    Call `check` until it returns True or `timeout` seconds have elapsed.

    Waits between attempts follow `backoff_delays(base_delay, factor, max_delay)`
    and are shortened so the total never exceeds the budget. An attempt still
    running at the deadline is cancelled.

    Returns:
        The number of attempts made when `check` succeeded, or None on timeout.
    """
    now = clock or asyncio.get_running_loop().time
    deadline = now() + timeout
    delays = backoff_delays(base_delay, factor, max_delay)
    attempt = 0

    while True:
        remaining = deadline - now()
        if remaining <= 0:
            return None
        attempt += 1
        try:
            ok = await asyncio.wait_for(check(), timeout=remaining)
        except asyncio.TimeoutError:
            return None
        if ok:
            return attempt

        remaining = deadline - now()
        if remaining <= 0:
            return None
        await sleep(min(next(delays), remaining))


class NodeReadinessProber:
    """
    Waits for a freshly handed-over machine to accept SSH logins.

    Args:
        executor: Used for the login check.
        port: SSH port to probe.
        base_delay, max_delay: Backoff schedule between attempts.
        connect_timeout: Ceiling for one TCP connect.
        login_timeout: Ceiling for one `true` login check.
        sleep, clock: Injectable for tests.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        port: int = 22,
        base_delay: float = 1.0,
        max_delay: float = 8.0,
        connect_timeout: float = 5.0,
        login_timeout: float = 30.0,
        sleep: SleepFunc = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._executor = executor
        self._port = port
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._connect_timeout = connect_timeout
        self._login_timeout = login_timeout
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls, executor: RemoteExecutor, settings: ProvisionerSettings
    ) -> NodeReadinessProber:
        return cls(
            executor,
            port=settings.ssh_port,
            base_delay=settings.poll_base_delay,
            max_delay=settings.poll_max_delay,
            login_timeout=float(settings.connect_timeout) + 10.0,
        )

    async def check_port(self, host: str) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, self._port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def check_login(self, host: str, credential: AuthCredential) -> bool:
        try:
            await self._executor.execute(
                host,
                credential,
                "true",
                timeout=self._login_timeout,
                escalate=False,
                label="ssh-check",
            )
        except ProvisioningError as exc:
            logger.debug("Login check on %s failed: %s", host, exc)
            return False
        return True

    async def probe(self, host: str, credential: AuthCredential) -> bool:
        if not await self.check_port(host):
            return False
        return await self.check_login(host, credential)

    async def wait_until_ready(
        self, host: str, credential: AuthCredential, timeout: float = 60.0
    ) -> int:
        """
        Block until `host` is reachable and accepts `credential`.

        Returns:
            The number of probe attempts it took.

        Raises:
            ConnectivityError: If the host is not ready within `timeout` seconds.
        """
        attempts = await poll_until(
            lambda: self.probe(host, credential),
            timeout=timeout,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            sleep=self._sleep,
            clock=self._clock,
        )
        if attempts is None:
            raise ConnectivityError(
                f"{host} did not accept SSH logins within {timeout}s", host
            )
        logger.info("%s is reachable over SSH after %d attempt(s)", host, attempts)
        return attempts
