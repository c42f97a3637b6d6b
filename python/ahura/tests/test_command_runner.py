import asyncio

import pytest

from ahura.utils.async_command_runner import (
    CommandError,
    CommandTimeoutError,
    run_command,
)


def test_captures_stdout_and_stderr() -> None:
    out = asyncio.run(run_command(["sh", "-c", "echo hello; echo oops >&2"]))
    assert out.stdout == "hello"
    assert out.stderr == "oops"
    assert out.return_code == 0


def test_failure_hides_details_when_sensitive() -> None:
    with pytest.raises(CommandError) as excinfo:
        asyncio.run(run_command(["sh", "-c", "echo token-123 >&2; exit 4"]))
    assert excinfo.value.return_code == 4
    assert excinfo.value.stderr == "token-123"
    assert "token-123" not in str(excinfo.value)


def test_failure_shows_details_when_not_sensitive() -> None:
    with pytest.raises(CommandError) as excinfo:
        asyncio.run(
            run_command(["sh", "-c", "echo broken >&2; exit 2"], sensitive=False)
        )
    assert "broken" in str(excinfo.value)


def test_input_data_and_env() -> None:
    out = asyncio.run(
        run_command(
            ["sh", "-c", 'read line; echo "$line-$EXTRA"'],
            input_data="from-stdin\n",
            env={"EXTRA": "from-env"},
        )
    )
    assert out.stdout == "from-stdin-from-env"


def test_successful_return_codes() -> None:
    out = asyncio.run(
        run_command(["sh", "-c", "exit 3"], successful_return_codes=[0, 3])
    )
    assert out.return_code == 3


def test_error_parser_short_message() -> None:
    def parser(stderr: str) -> str:
        return "dpkg lock held" if "lock" in stderr else ""

    with pytest.raises(CommandError, match="dpkg lock held"):
        asyncio.run(
            run_command(
                ["sh", "-c", "echo 'could not get lock' >&2; exit 100"],
                error_parser=parser,
            )
        )


def test_timeout_kills_the_process() -> None:
    with pytest.raises(CommandTimeoutError) as excinfo:
        asyncio.run(run_command(["sleep", "5"], timeout=0.2))
    assert excinfo.value.timeout == 0.2


def test_retries_until_success(tmp_path) -> None:
    marker = tmp_path / "count"
    script = (
        f'n=$(cat {marker} 2>/dev/null || echo 0); n=$((n+1)); echo $n > {marker}; '
        '[ "$n" -ge 3 ]'
    )
    out = asyncio.run(run_command(["sh", "-c", script], retries=3, retry_delay=0))
    assert out.return_code == 0
    assert marker.read_text().strip() == "3"
