"""
Sync engine service.

Wires configuration, persistence, sessions, preload, live subscriptions and
the quota engine together and runs them for one user.
"""

import asyncio
import logging

from .config import SyncConfig
from .models import EventRecord, PreloadStatus
from .preload import BackgroundPreloadOrchestrator
from .price_feed import NativePriceFeed
from .quota import GasSponsorshipQuotaEngine
from .session import (
    OracleFactory,
    SessionRegistry,
    SourceFactory,
    default_oracle_factory,
    default_source_factory,
)
from .store import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .utils.feed import Subscription

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Main service that keeps one user's records fresh.

    This class focuses on coordination and lifecycle management, delegating
    scanning to the coordinators and pushes to the subscription managers.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(
        self,
        config: SyncConfig,
        store: KeyValueStore | None = None,
        source_factory: SourceFactory = default_source_factory,
        oracle_factory: OracleFactory = default_oracle_factory,
    ) -> None:
        """
        Initialize the sync engine.

        Args:
            config: Engine configuration
            store: Persistence backend (defaults to the configured JSON file or memory)
            source_factory: Builds the event log source for a network
            oracle_factory: Builds the state oracle for a domain
        """
        self.config = config
        if store is None:
            store = JsonFileKeyValueStore(config.store_path) if config.store_path else MemoryKeyValueStore()
        self.store = store

        self.registry = SessionRegistry(
            config,
            store,
            source_factory=source_factory,
            oracle_factory=oracle_factory,
        )
        self.preload = BackgroundPreloadOrchestrator(self.registry, store)
        self.quota = GasSponsorshipQuotaEngine(store, config.policy)
        self.price_feed = NativePriceFeed(timeout=config.fetch.request_timeout)

        self.running = False
        self.shutdown_event = asyncio.Event()
        self._tokens: list[Subscription] = []

    @classmethod
    def from_env(cls) -> "SyncEngine":
        """
        Create a SyncEngine instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = SyncConfig.from_env()
        config.log_config()
        return cls(config)

    async def sync_once(self, user_key: str) -> PreloadStatus | None:
        """Run one preload pass for the user on the configured network."""
        return await self.preload.start_preloading(user_key, self.config.network)

    async def follow(self, user_key: str) -> None:
        """Subscribe to live events of every domain for the user."""
        session = await self.registry.get(self.config.network)
        for services in session.domains.values():
            async def on_event(record: EventRecord, services=services) -> None:
                affected = record.record_ids()
                await services.records.invalidate(affected)
                logger.info(
                    f"Live {record.event_type.value} at block {record.block_number} "
                    f"(tx {record.transaction_hash[:10]}...), {len(affected)} records refreshed"
                )

            self._tokens.append(services.subscriptions.subscribe(user_key, on_event))

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            if self.registry.current is None:
                continue
            for name, stats in self.registry.current.get_stats().items():
                processor = stats['processor']
                logger.info(
                    f"Status [{name}]: live={stats['live']} "
                    f"parsed={processor['parsed']} parse_errors={processor['parse_errors']} "
                    f"cache_size={stats['cache']['size']}"
                )

    async def run(self, user_key: str, live: bool = True) -> None:
        """Preload the user's domains, then follow live events until stopped."""
        self.running = True
        logger.info(f"Sync engine starting for {user_key[:10]}...")

        status_task: asyncio.Task | None = None
        try:
            status = await self.sync_once(user_key)
            if status is not None:
                logger.info(f"Domains ready: {status.domain_ready}")

            if not live:
                return

            await self.follow(user_key)
            status_task = asyncio.create_task(self._periodic_status_logger())
            logger.info("Following live events, waiting for updates...")
            await self.shutdown_event.wait()

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            for token in self._tokens:
                token()
            self._tokens.clear()
            self.registry.close()
            if status_task is not None and not status_task.done():
                status_task.cancel()
                try:
                    await status_task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling
            logger.info("Sync engine stopped")

    def stop(self) -> None:
        """Stop the sync engine."""
        self.running = False
        self.shutdown_event.set()
