"""
Background preload orchestrator.

Warms every domain for a user right after unlock, using only their public
address and the active network, and publishes progress as PreloadStatus.
"""

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable

from .config import NetworkContext
from .coordinator import SyncError
from .models import PreloadStatus, SyncStatus
from .session import DomainServices, SessionRegistry
from .store import KeyValueStore, get_json, set_json
from .utils.feed import Channel, Listener, Subscription

logger = logging.getLogger(__name__)

STATUS_KEY = "preload:status"


class BackgroundPreloadOrchestrator:
    """Runs one sync per domain concurrently and tracks per-domain readiness."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            registry: Session registry resolving the network's domain services
            store: Persistence for the preload status
            clock: Time source in seconds
        """
        self.registry = registry
        self.store = store
        self.clock = clock

        self.is_preloading = False
        self.status_feed: Channel[PreloadStatus] = Channel("preload-status")
        self._status: PreloadStatus | None = None

        self._switch_token = registry.switches.subscribe(self._on_network_switch)

    def on_status_change(self, callback: Listener) -> Subscription:
        return self.status_feed.subscribe(callback)

    async def get_status(self) -> PreloadStatus:
        """Current status with ``cache_age`` derived from the last completion."""
        status = await self._load()
        if status.last_completed_at is None:
            return status
        return dataclasses.replace(status, cache_age=max(0.0, self.clock() - status.last_completed_at))

    async def start_preloading(self, user_key: str, network: NetworkContext) -> PreloadStatus | None:
        """
        Sync and warm every domain for a user.

        Returns:
            Final status, or None if a preload was already running
        """
        if self.is_preloading:
            logger.debug("Preload already running, request ignored")
            return None

        self.is_preloading = True
        try:
            session = await self.registry.get(network)
            status = await self._load()
            await self._update(dataclasses.replace(
                status,
                is_running=True,
                domain_ready={name: False for name in session.domains},
            ))

            logger.info(
                f"Preloading {len(session.domains)} domains for {user_key[:10]}... "
                f"on {network.network_key}"
            )
            started = self.clock()
            outcomes = await asyncio.gather(
                *(self._preload_domain(user_key, services) for services in session.domains.values())
            )

            status = await self._load()
            completed_at = self.clock() if any(outcomes) else status.last_completed_at
            await self._update(dataclasses.replace(
                status,
                is_running=False,
                last_completed_at=completed_at,
            ))

            ready = sum(1 for ok in outcomes if ok)
            logger.info(
                f"Preload finished in {self.clock() - started:.2f}s: "
                f"{ready}/{len(outcomes)} domains ready"
            )
            return await self.get_status()
        finally:
            self.is_preloading = False

    async def reset(self) -> None:
        """Forget the persisted status (logout or network switch)."""
        await self.store.remove(STATUS_KEY)
        self._status = PreloadStatus()
        await self.status_feed.publish(self._status)

    async def _preload_domain(self, user_key: str, services: DomainServices) -> bool:
        domain = services.schema.domain
        coordinator = services.coordinator
        try:
            result = await coordinator.sync(user_key)
            if result.status is SyncStatus.IN_PROGRESS:
                await coordinator.wait_for(user_key)
        except SyncError as e:
            logger.error(f"Preload of {domain} failed: {e}")
            return False

        await self._warm(user_key, services)

        status = await self._load()
        await self._update(dataclasses.replace(
            status,
            domain_ready={**status.domain_ready, domain: True},
        ))
        logger.info(f"{domain} ready for {user_key[:10]}...")
        return True

    async def _warm(self, user_key: str, services: DomainServices) -> None:
        records = services.records
        oracle = records.oracle
        if oracle is None:
            return

        # User-level lists first; they can make indexed records resolvable
        record_ids: list[str] = []
        if hasattr(oracle, "user_record_ids"):
            record_ids.extend(oracle.user_record_ids(user_key))
        record_ids.extend(await services.coordinator.known_records(user_key))

        warmed = 0
        for record_id in record_ids:
            if not records.can_read(record_id):
                continue
            try:
                await records.read(record_id)
                warmed += 1
            except Exception as e:
                logger.warning(f"Could not warm {record_id}: {e}")

        logger.debug(f"Warmed {warmed}/{len(record_ids)} {services.schema.domain} records")

    async def _load(self) -> PreloadStatus:
        if self._status is None:
            data = await get_json(self.store, STATUS_KEY)
            self._status = PreloadStatus.from_dict(data) if data is not None else PreloadStatus()
            # A run interrupted by a restart is not running anymore
            if self._status.is_running and not self.is_preloading:
                self._status = dataclasses.replace(self._status, is_running=False)
        return self._status

    async def _update(self, status: PreloadStatus) -> None:
        self._status = status
        await set_json(self.store, STATUS_KEY, status.to_dict())
        await self.status_feed.publish(await self.get_status())

    async def _on_network_switch(self, previous: NetworkContext) -> None:
        logger.info(f"Network {previous.network_key} left, clearing preload status")
        await self.reset()

    def close(self) -> None:
        self._switch_token()
