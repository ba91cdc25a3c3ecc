"""
Sync sessions keyed by network.

A session wires the per-domain services (fetcher, live subscriptions, record
cache, coordinator) for one NetworkContext. The registry keeps at most one
session alive and tears the previous one down on a network switch.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .cache import EntityCache, RecordCache
from .config import FetchConfig, NetworkContext, SyncConfig
from .coordinator import IncrementalSyncCoordinator, WatermarkStore
from .event_processor import EventProcessor
from .events import SCHEMAS, EventSchema
from .fetcher import HistoricalEventFetcher
from .store import KeyValueStore
from .subscription import LiveSubscriptionManager
from .utils.contract_utility import ContractUtility
from .utils.event_source import EventLogSource, Web3EventLogSource
from .utils.feed import Channel
from .utils.state_oracle import ORACLES, StateOracle

logger = logging.getLogger(__name__)

SourceFactory = Callable[[NetworkContext, FetchConfig], EventLogSource]
OracleFactory = Callable[[str, NetworkContext, FetchConfig], StateOracle]


def default_source_factory(network: NetworkContext, fetch: FetchConfig) -> EventLogSource:
    return Web3EventLogSource(network, request_timeout=fetch.request_timeout)


def default_oracle_factory(domain: str, network: NetworkContext, fetch: FetchConfig) -> StateOracle:
    assert network.contract_address is not None
    utility = ContractUtility(network.rpc_url, request_timeout=fetch.request_timeout)
    return ORACLES[domain].from_utility(utility, network.contract_address)


@dataclass(slots=True)
class DomainServices:
    """Everything needed to sync one domain on one network."""
    schema: EventSchema
    processor: EventProcessor
    fetcher: HistoricalEventFetcher
    subscriptions: LiveSubscriptionManager
    records: RecordCache
    coordinator: IncrementalSyncCoordinator

    @property
    def oracle(self) -> StateOracle | None:
        return self.records.oracle


class SyncSession:
    """Per-network container of domain services."""

    def __init__(
        self,
        network: NetworkContext,
        config: SyncConfig,
        store: KeyValueStore,
        source_factory: SourceFactory = default_source_factory,
        oracle_factory: OracleFactory = default_oracle_factory,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.network = network
        self.store = store

        source = source_factory(network, config.fetch) if network.is_enabled else None

        self.domains: dict[str, DomainServices] = {}
        for domain, schema in SCHEMAS.items():
            oracle = oracle_factory(domain, network, config.fetch) if network.is_enabled else None
            processor = EventProcessor(schema, network.contract_address)
            fetcher = HistoricalEventFetcher(source, processor, config.fetch)
            cache = EntityCache(
                store,
                namespace=f"{network.network_key}:{domain}",
                max_size=config.cache.max_size,
                default_ttl=config.cache.record_ttl,
                clock=clock,
            )
            records = RecordCache(cache, oracle)
            self.domains[domain] = DomainServices(
                schema=schema,
                processor=processor,
                fetcher=fetcher,
                subscriptions=LiveSubscriptionManager(source, processor, fetcher.block_timestamp),
                records=records,
                coordinator=IncrementalSyncCoordinator(
                    fetcher,
                    records,
                    WatermarkStore(store, network.network_key, domain),
                ),
            )

        state = "enabled" if network.is_enabled else "disabled"
        logger.info(f"Sync session for {network.network_key} created ({state})")

    def domain(self, name: str) -> DomainServices:
        return self.domains[name]

    def close(self) -> None:
        """Stop every live stream of this session; safe to call repeatedly."""
        for services in self.domains.values():
            services.subscriptions.unsubscribe()

    def get_stats(self) -> dict:
        return {
            name: {
                'live': services.subscriptions.is_active(),
                'processor': services.processor.get_stats(),
                'cache': services.records.cache.get_stats(),
            }
            for name, services in self.domains.items()
        }


class SessionRegistry:
    """Hands out the session for the active network, building it on first use."""

    def __init__(
        self,
        config: SyncConfig,
        store: KeyValueStore,
        source_factory: SourceFactory = default_source_factory,
        oracle_factory: OracleFactory = default_oracle_factory,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.source_factory = source_factory
        self.oracle_factory = oracle_factory
        self.clock = clock

        self.current: SyncSession | None = None
        # Published with the previous network whenever the active network changes
        self.switches: Channel[NetworkContext] = Channel("network-switch")

    async def get(self, network: NetworkContext) -> SyncSession:
        if self.current is not None and self.current.network == network:
            return self.current

        previous = self.current
        if previous is not None:
            logger.info(f"Switching network from {previous.network.network_key} to {network.network_key}")
            previous.close()

        self.current = SyncSession(
            network,
            self.config,
            self.store,
            source_factory=self.source_factory,
            oracle_factory=self.oracle_factory,
            clock=self.clock,
        )

        if previous is not None:
            await self.switches.publish(previous.network)
        return self.current

    def close(self) -> None:
        if self.current is not None:
            self.current.close()
            self.current = None
