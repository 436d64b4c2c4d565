import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    factor: float = 2.0,
    retry_exceptions: tuple[type[BaseException], ...] = (Exception,),
    action_name: str = "请求",
) -> T:
    delay = initial_delay
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except retry_exceptions as exc:  # type: ignore[misc]
            if attempt >= attempts:
                raise
            logger.warning(
                "%s失败，%.1f 秒后重试 (%s/%s): %s",
                action_name,
                delay,
                attempt,
                attempts,
                exc,
            )
            await asyncio.sleep(delay)
            delay = min(delay * factor, max_delay)
    raise RuntimeError(f"{action_name}重试次数无效: {attempts}")
