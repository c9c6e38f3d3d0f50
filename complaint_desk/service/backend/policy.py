import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

import complaint_desk.config.config as configs
from complaint_desk.service.errors import BackendUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackendPolicy:
    """Bounded timeout for every backend call, plus a retry budget for reads only."""

    def __init__(
        self,
        timeout: float = configs.BACKEND_TIMEOUT_SECONDS,
        fetch_attempts: int = configs.BACKEND_FETCH_ATTEMPTS,
        retry_wait: float = configs.BACKEND_RETRY_WAIT_SECONDS,
    ):
        self.timeout = timeout
        self.fetch_attempts = max(1, fetch_attempts)
        self.retry_wait = retry_wait

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        name = getattr(fn, "__name__", repr(fn))
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("backend call timed out op=%s timeout=%s", name, self.timeout)
            raise BackendUnavailableError(f"backend did not answer within {self.timeout}s", details={"op": name}) from exc
        except SQLAlchemyError as exc:
            logger.exception("backend call failed op=%s", name)
            raise BackendUnavailableError("backend request failed", details={"op": name}) from exc

    async def fetch(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.fetch_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=2),
            retry=retry_if_exception_type(BackendUnavailableError),
            reraise=True,
        ):
            with attempt:
                return await self.call(fn, *args, **kwargs)
