from unittest.mock import AsyncMock, MagicMock

import pytest

from mesh_dispatch.exceptions import ClientFailure, DispatchError, ServerFailure, TransportFailure
from mesh_dispatch.retry import RetryScheduler, retry_delays


@pytest.fixture
def scheduler(sleeps):
    return RetryScheduler(sleep=sleeps)


def test_retry_delays_are_gaps_between_checkpoints():
    assert retry_delays([1, 5, 15, 25]) == [1, 4, 10, 10]
    assert retry_delays([0, 2]) == [0, 2]
    assert retry_delays([]) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("schedule", [[1, 5, 15, 25], [1], [0, 2], [2, 3, 10]])
async def test_retryable_failures_use_whole_schedule(scheduler, sleeps, schedule):
    last = ServerFailure("still down")
    attempt = AsyncMock(side_effect=[TransportFailure("refused")] * len(schedule) + [last])

    with pytest.raises(ServerFailure) as exc_info:
        await scheduler.execute(attempt, schedule, "users")

    assert exc_info.value is last
    assert attempt.call_count == len(schedule) + 1
    assert sleeps.delays == retry_delays(schedule)


@pytest.mark.asyncio
async def test_success_after_retries(scheduler, sleeps):
    attempt = AsyncMock(side_effect=[ServerFailure("down"), ServerFailure("down"), {"ok": True}])

    result = await scheduler.execute(attempt, [1, 5, 15, 25], "users")

    assert result == {"ok": True}
    assert attempt.call_count == 3
    assert sleeps.delays == [1, 4]


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(scheduler, sleeps):
    attempt = AsyncMock(side_effect=ClientFailure("bad request", status_code=400))

    with pytest.raises(ClientFailure):
        await scheduler.execute(attempt, [1, 5, 15, 25], "users")

    assert attempt.call_count == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_empty_schedule_attempts_once(scheduler, sleeps):
    attempt = AsyncMock(side_effect=ServerFailure("down"))

    with pytest.raises(ServerFailure):
        await scheduler.execute(attempt, [], "users")

    assert attempt.call_count == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_once_only_ignores_schedule(scheduler, sleeps):
    attempt = AsyncMock(side_effect=ServerFailure("down"))

    with pytest.raises(ServerFailure):
        await scheduler.execute(attempt, [1, 5], "users", once_only=True)

    assert attempt.call_count == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_terminal(scheduler):
    attempt = AsyncMock(side_effect=KeyError("port"))

    with pytest.raises(DispatchError) as exc_info:
        await scheduler.execute(attempt, [1, 5], "users")

    assert exc_info.value.noretry
    assert isinstance(exc_info.value.__cause__, KeyError)
    assert attempt.call_count == 1


@pytest.mark.asyncio
async def test_retry_hook_is_called(sleeps):
    on_retry = MagicMock()
    scheduler = RetryScheduler(sleep=sleeps, on_retry=on_retry)
    error = ServerFailure("down")
    attempt = AsyncMock(side_effect=[error, "done"])

    await scheduler.execute(attempt, [3], "users")

    on_retry.assert_called_once_with("users", 1, 3, error)
