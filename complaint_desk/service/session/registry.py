import asyncio
import logging
import time
from collections.abc import Callable
from typing import Optional

import complaint_desk.config.config as configs
from complaint_desk.model.auth.principal import Principal
from complaint_desk.service.backend.policy import BackendPolicy
from complaint_desk.service.backend.sql_backend import SqlBackend
from complaint_desk.service.complaint.data_service import ComplaintDataService

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Holds one data service per logged-in user id.

    Sessions nobody has touched for ``idle_seconds`` are stopped on the next
    ``get`` (or an explicit ``evict_idle``), so clients that never log out do
    not keep their subscriptions open forever.
    """

    def __init__(
        self,
        backend: SqlBackend,
        policy: Optional[BackendPolicy] = None,
        idle_seconds: float = configs.SESSION_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.policy = policy
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._services: dict[str, ComplaintDataService] = {}
        self._last_seen: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._services

    async def get(self, principal: Principal) -> ComplaintDataService:
        async with self._lock:
            idle = self._pop_idle(keep=principal.id)
            self._last_seen[principal.id] = self._clock()
            service = self._services.get(principal.id)
            if service is None:
                service = ComplaintDataService(self.backend, self.policy)
                self._services[principal.id] = service
            if service.principal != principal:
                # new session, or the provider reports a different name/role
                await service.start(principal)
        await self._stop_all(idle)
        return service

    async def evict_idle(self) -> int:
        async with self._lock:
            idle = self._pop_idle()
        await self._stop_all(idle)
        return len(idle)

    async def close(self, user_id: str) -> bool:
        async with self._lock:
            service = self._services.pop(user_id, None)
            self._last_seen.pop(user_id, None)
        if service is None:
            return False
        await service.stop()
        return True

    async def close_all(self) -> None:
        async with self._lock:
            services, self._services = list(self._services.values()), {}
            self._last_seen = {}
        await self._stop_all(services)

    def _pop_idle(self, keep: Optional[str] = None) -> list[ComplaintDataService]:
        cutoff = self._clock() - self.idle_seconds
        expired = [uid for uid, seen in self._last_seen.items() if seen < cutoff and uid != keep]
        idle = []
        for user_id in expired:
            del self._last_seen[user_id]
            service = self._services.pop(user_id, None)
            if service is not None:
                logger.info("evicting idle session user=%s", user_id)
                idle.append(service)
        return idle

    async def _stop_all(self, services: list[ComplaintDataService]) -> None:
        for service in services:
            try:
                await service.stop()
            except Exception:
                logger.exception("failed to stop session user=%s", service.principal.id if service.principal else None)
