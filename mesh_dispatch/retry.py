import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from .exceptions import DispatchError

logger = logging.getLogger(__name__)


def retry_delays(schedule: Sequence[float]) -> List[float]:
    """Gaps between attempts for a schedule of cumulative checkpoints.

    >>> retry_delays([1, 5, 15, 25])
    [1, 4, 10, 10]
    """
    delays = []
    previous = 0
    for checkpoint in schedule:
        delays.append(checkpoint - previous)
        previous = checkpoint
    return delays


class RetryScheduler:
    """
    Run one logical call until it succeeds, fails terminally, or the
    schedule runs out. Attempts are strictly sequential.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Optional[Callable[[str, int, float, DispatchError], None]] = None,
    ):
        self._sleep = sleep
        self._on_retry = on_retry

    async def execute(
        self,
        attempt: Callable[[], Awaitable[Any]],
        schedule: Sequence[float],
        operation_name: str,
        once_only: bool = False,
    ) -> Any:
        delays = [] if once_only else retry_delays(schedule)
        index = 0

        while True:
            try:
                result = await attempt()
            except DispatchError as e:
                error = e
            except Exception as e:
                error = DispatchError(str(e) or e.__class__.__name__, retryable=False)
                error.__cause__ = e
            else:
                if index > 0:
                    logger.info("Call to %s succeeded on attempt %d", operation_name, index + 1)
                return result

            if index >= len(delays) or not error.retryable:
                if index > 0:
                    logger.error("Call to %s failed after %d attempts: %s", operation_name, index + 1, error)
                raise error

            delay = delays[index]
            logger.warning(
                "Attempt %d failed for %s. Retrying in %.2fs. Error: %s",
                index + 1, operation_name, delay, error,
            )
            if self._on_retry:
                self._on_retry(operation_name, index + 1, delay, error)
            await self._sleep(delay)
            index += 1
