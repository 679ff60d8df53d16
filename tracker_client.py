"""
Everything a view needs to talk to the Study Tracker: one coordinator per
entity type, all sharing one cache store.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from api_client import TrackerApi
from config import CACHE_TTL_SECONDS
from data_cache import CacheCoordinator, CacheStore, CollectionCoordinator, ProfileCoordinator, default_store

logger = logging.getLogger(__name__)


class TrackerClient:
    def __init__(
        self,
        api: TrackerApi,
        store: Optional[CacheStore] = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.cache = store if store is not None else default_store()
        opts = {"store": self.cache, "ttl": ttl, "clock": clock}

        self.subjects = CollectionCoordinator(
            "subjects", api.list_subjects, api.create_subject, api.update_subject, api.delete_subject, **opts
        )
        self.tasks = CollectionCoordinator(
            "tasks", api.list_tasks, api.create_task, api.update_task, api.delete_task, **opts
        )
        self.profile = ProfileCoordinator("profile", api.get_profile, api.update_profile, **opts)
        self.analytics = CacheCoordinator("analytics", api.get_analytics, **opts)

        # deleting a subject also deletes its tasks on the server
        self.subjects.invalidates(self.tasks, self.analytics)
        self.tasks.invalidates(self.analytics)

    @property
    def signed_in(self) -> bool:
        return self.api.token is not None

    async def sign_up(self, email: str, password: str, name: str) -> Dict[str, Any]:
        return await self.api.signup(email, password, name)

    async def sign_in(self, email: str, password: str) -> None:
        token = await self.api.login(email, password)
        self.cache.clear()
        self.api.token = token

    def sign_out(self) -> None:
        """Forget the token and every cached value, in-flight requests included."""
        self.api.token = None
        self.cache.clear()
        logger.info("signed out, cache cleared")

    async def aclose(self) -> None:
        await self.api.aclose()
