import asyncio
from itertools import islice
from typing import Any, List

import pytest

from ahura.errors import ConnectivityError, RemoteCommandError
from ahura.models.ssh import KeyAuth
from ahura.utils.async_retry import async_retry, backoff_delays
from ahura.utils.readiness import NodeReadinessProber, poll_until

from ahura.tests.fakes import FakeExecutor

KEY = KeyAuth(user="ubuntu", private_key_path="/keys/id_ed25519")


class FakeClock:
    """Virtual time: sleeping advances the clock instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_backoff_schedule_is_capped() -> None:
    assert list(islice(backoff_delays(1, 2, 8), 6)) == [1, 2, 4, 8, 8, 8]
    assert list(islice(backoff_delays(0.5, 3, 2), 3)) == [0.5, 1.5, 2]
    with pytest.raises(ValueError):
        next(backoff_delays(1, 0.5, 8))


def test_poll_until_stays_within_budget() -> None:
    clock = FakeClock()

    async def never() -> bool:
        return False

    result = asyncio.run(
        poll_until(never, timeout=20, sleep=clock.sleep, clock=clock)
    )

    assert result is None
    assert clock.sleeps == [1, 2, 4, 8, 5]
    assert sum(clock.sleeps) <= 20


def test_poll_until_reports_attempts() -> None:
    clock = FakeClock()
    answers = iter([False, False, True])

    async def third_time() -> bool:
        return next(answers)

    assert asyncio.run(
        poll_until(third_time, timeout=60, sleep=clock.sleep, clock=clock)
    ) == 3
    assert clock.sleeps == [1, 2]


def test_poll_until_cancels_a_hung_check() -> None:
    async def hung() -> bool:
        await asyncio.sleep(10)
        return True

    assert asyncio.run(poll_until(hung, timeout=0.1)) is None


def _prober(
    executor: Any, clock: FakeClock, port_open: bool = True, sleep: Any = None
) -> NodeReadinessProber:
    prober = NodeReadinessProber(executor, sleep=sleep or clock.sleep, clock=clock)

    async def check_port(host: str) -> bool:
        return port_open

    prober.check_port = check_port  # type: ignore[method-assign]
    return prober


def test_prober_waits_for_login() -> None:
    clock = FakeClock()
    executor = FakeExecutor(fail={("10.0.0.1", "ssh-check")})

    async def sshd_comes_up(seconds: float) -> None:
        executor.fail.clear()
        await clock.sleep(seconds)

    prober = _prober(executor, clock, sleep=sshd_comes_up)

    attempts = asyncio.run(prober.wait_until_ready("10.0.0.1", KEY, 60))

    assert attempts == 2
    assert clock.sleeps == [1]
    check = executor.calls[0]
    assert check.label == "ssh-check"
    assert check.command == "true"
    assert check.escalate is False


def test_prober_gives_up_with_connectivity_error() -> None:
    clock = FakeClock()
    executor = FakeExecutor()
    prober = _prober(executor, clock, port_open=False)

    with pytest.raises(ConnectivityError) as excinfo:
        asyncio.run(prober.wait_until_ready("10.0.0.7", KEY, timeout=30))

    assert excinfo.value.host == "10.0.0.7"
    assert executor.calls == []
    assert sum(clock.sleeps) <= 30


def test_check_port_against_a_real_listener() -> None:
    async def scenario() -> List[bool]:
        async def handle(reader: Any, writer: Any) -> None:
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        open_prober = NodeReadinessProber(FakeExecutor(), port=port)
        async with server:
            up = await open_prober.check_port("127.0.0.1")
        server.close()
        await server.wait_closed()
        down = await open_prober.check_port("127.0.0.1")
        return [up, down]

    assert asyncio.run(scenario()) == [True, False]


def test_async_retry_only_retries_listed_errors() -> None:
    calls: List[str] = []

    @async_retry(retries=3, delay=0, retry_on=(RemoteCommandError,))
    async def flaky(kind: str) -> str:
        """Fails twice."""
        calls.append(kind)
        if len(calls) < 3:
            raise RemoteCommandError("10.0.0.1", 1, "not yet")
        return "ok"

    assert asyncio.run(flaky("a")) == "ok"
    assert calls == ["a", "a", "a"]
    assert flaky.__name__ == "flaky"
    assert flaky.__doc__ == "Fails twice."

    @async_retry(retries=5, delay=0, retry_on=(RemoteCommandError,))
    async def broken() -> None:
        calls.append("broken")
        raise KeyError("boom")

    calls.clear()
    with pytest.raises(KeyError):
        asyncio.run(broken())
    assert calls == ["broken"]


def test_async_retry_gives_up_after_all_attempts() -> None:
    attempts: List[int] = []

    @async_retry(retries=2, delay=0, noisy=True)
    async def always_fails() -> None:
        attempts.append(1)
        raise RuntimeError("down")

    with pytest.raises(RuntimeError, match="down"):
        asyncio.run(always_fails())
    assert len(attempts) == 2
