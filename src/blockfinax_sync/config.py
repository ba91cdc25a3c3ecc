#!/usr/bin/env python3
"""Configuration management for the BlockFinaX sync engine.

This module provides type-safe configuration dataclasses with validation
for the sync engine. Configuration is loaded from environment variables
with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)


# Diamond deployments hosting the trade finance and treasury facets
KNOWN_DEPLOYMENTS: dict[int, str] = {
    11155111: "0xA4d19a7b133d2A9fAce5b1ad407cA7b9D4Ee9284",  # Ethereum Sepolia
    4202: "0xE133CD2eE4d835AC202942Baff2B1D6d47862d34",  # Lisk Sepolia
    84532: "0xb899A968e785dD721dbc40e71e2FAEd7B2d84711",  # Base Sepolia
}


@dataclass(frozen=True, slots=True)
class NetworkContext:
    """Identifies which event log source a sync session targets.

    A context without a contract address falls back to the known deployment
    for its chain. When there is none, the context is disabled: every
    component built from it degrades to a no-op instead of failing per call.

    Attributes:
        chain_id: Chain ID of the network
        rpc_url: HTTP(S) RPC endpoint
        contract_address: Checksummed diamond address, or None when disabled
        ws_url: WebSocket endpoint for live subscriptions (derived if omitted)
    """

    chain_id: int
    rpc_url: str
    contract_address: str | None = None
    ws_url: str | None = None

    def __post_init__(self) -> None:
        """Validate network configuration."""
        if self.chain_id <= 0:
            raise ValueError(f"Chain ID must be positive, got {self.chain_id}")

        if not self.rpc_url:
            raise ValueError("RPC URL is required (RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        address = self.contract_address or KNOWN_DEPLOYMENTS.get(self.chain_id)
        if address is None:
            logger.warning(
                f"No contract deployed for chain {self.chain_id}. "
                "Event sync is disabled for this network."
            )
            return

        if not Web3.is_address(address):
            raise ValueError(f"Invalid contract address: {address}")

        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(self, 'contract_address', Web3.to_checksum_address(address))

        if self.ws_url is None:
            object.__setattr__(self, 'ws_url', _convert_to_websocket_url(self.rpc_url))

    @property
    def is_enabled(self) -> bool:
        """Whether a contract is available to sync from on this network."""
        return self.contract_address is not None

    @property
    def network_key(self) -> str:
        """Stable key used to namespace persisted state for this network."""
        address = (self.contract_address or "disabled").lower()
        return f"{self.chain_id}:{address}"


def _convert_to_websocket_url(http_url: str) -> str:
    """Convert HTTP RPC URL to WebSocket URL."""
    if http_url.startswith("https://"):
        return http_url.replace("https://", "wss://", 1)
    if http_url.startswith("http://"):
        return http_url.replace("http://", "ws://", 1)
    return http_url


@dataclass(frozen=True, slots=True)
class FetchConfig:
    """Configuration for historical event scanning."""
    # Provider-imposed span limit; free tiers allow as little as 10 blocks
    max_query_span: int = 10
    max_range: int = 2000  # blocks scanned on first run or after long absence
    retry_count: int = 3  # attempts per window query
    retry_backoff: float = 1.0  # seconds, multiplied by the attempt number
    progress_interval: int = 10  # windows between progress notifications
    request_timeout: int = 30  # HTTP request timeout in seconds

    def __post_init__(self) -> None:
        """Validate fetch configuration."""
        if self.max_query_span <= 0:
            raise ValueError(f"Max query span must be positive, got {self.max_query_span}")
        if self.max_query_span > 10_000:
            raise ValueError(f"Max query span too high (max 10000), got {self.max_query_span}")

        if self.max_range <= 0:
            raise ValueError(f"Max range must be positive, got {self.max_range}")

        if self.retry_count <= 0:
            raise ValueError(f"Retry count must be positive, got {self.retry_count}")
        if self.retry_count > 10:
            raise ValueError(f"Retry count too high (max 10), got {self.retry_count}")

        if self.retry_backoff < 0:
            raise ValueError(f"Retry backoff must be non-negative, got {self.retry_backoff}")

        if self.progress_interval <= 0:
            raise ValueError(f"Progress interval must be positive, got {self.progress_interval}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the read-through record cache."""
    record_ttl: float = 30.0  # seconds a single-record read stays fresh
    max_size: int = 200  # in-memory entries before LRU eviction

    def __post_init__(self) -> None:
        """Validate cache configuration."""
        if self.record_ttl <= 0:
            raise ValueError(f"Record TTL must be positive, got {self.record_ttl}")
        if self.max_size <= 0:
            raise ValueError(f"Cache max size must be positive, got {self.max_size}")


@dataclass(frozen=True, slots=True)
class SponsorshipPolicy:
    """Gas sponsorship budgets and eligibility.

    Replaced wholesale at runtime; never persisted, read on every decision.
    """

    per_user_daily_limit_usd: Decimal = Decimal("0.50")
    global_daily_limit_usd: Decimal = Decimal("50.00")
    max_sponsored_value_usd: Decimal = Decimal("100.00")
    eligible_operations: frozenset[str] = frozenset(
        {"transfer", "approve", "stake", "unstake", "swap", "claim"}
    )

    def __post_init__(self) -> None:
        """Normalize amounts to Decimal and validate limits."""
        for name in ('per_user_daily_limit_usd', 'global_daily_limit_usd', 'max_sponsored_value_usd'):
            raw = getattr(self, name)
            try:
                value = Decimal(str(raw).strip())
            except InvalidOperation:
                raise ValueError(f"{name} must be a decimal amount, got {raw!r}") from None
            if not value.is_finite():
                raise ValueError(f"{name} must be finite, got {value}")
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
            object.__setattr__(self, name, value)

        object.__setattr__(self, 'eligible_operations', frozenset(self.eligible_operations))


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Main configuration for the sync engine.

    Attributes:
        network: Network the session targets
        fetch: Historical scan settings
        cache: Record cache settings
        policy: Gas sponsorship policy
        store_path: JSON file backing persisted state (None keeps it in memory)
    """

    network: NetworkContext
    fetch: FetchConfig = field(default_factory=FetchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    policy: SponsorshipPolicy = field(default_factory=SponsorshipPolicy)
    store_path: str | None = None

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load configuration from environment variables.

        Returns:
            SyncConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        rpc_url = os.environ.get("RPC_URL", "")
        if not rpc_url:
            raise ValueError(
                "RPC_URL environment variable is required. "
                "Example: https://rpc.sepolia-api.lisk.com"
            )

        chain_id = int(os.environ.get("CHAIN_ID", "4202"))

        network = NetworkContext(
            chain_id=chain_id,
            rpc_url=rpc_url,
            contract_address=os.environ.get("CONTRACT_ADDRESS") or None,
            ws_url=os.environ.get("WS_URL") or None,
        )

        fetch_config = FetchConfig(
            max_query_span=int(os.environ.get("MAX_QUERY_SPAN", "10")),
            max_range=int(os.environ.get("MAX_RANGE", "2000")),
            retry_count=int(os.environ.get("RETRY_COUNT", "3")),
            retry_backoff=float(os.environ.get("RETRY_BACKOFF", "1.0")),
            progress_interval=int(os.environ.get("PROGRESS_INTERVAL", "10")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
        )

        cache_config = CacheConfig(
            record_ttl=float(os.environ.get("RECORD_TTL", "30")),
            max_size=int(os.environ.get("CACHE_MAX_SIZE", "200")),
        )

        policy = SponsorshipPolicy(
            per_user_daily_limit_usd=os.environ.get("PER_USER_DAILY_LIMIT_USD", "0.50"),
            global_daily_limit_usd=os.environ.get("GLOBAL_DAILY_LIMIT_USD", "50.00"),
            max_sponsored_value_usd=os.environ.get("MAX_SPONSORED_VALUE_USD", "100.00"),
        )

        return cls(
            network=network,
            fetch=fetch_config,
            cache=cache_config,
            policy=policy,
            store_path=os.environ.get("STORE_PATH") or None,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("BlockFinaX Sync Configuration")
        logger.info("=" * 60)

        logger.info("Network:")
        logger.info(f"  Chain ID: {self.network.chain_id}")
        logger.info(f"  RPC URL: {self.network.rpc_url}")
        logger.info(f"  WS URL: {self.network.ws_url or '[NONE]'}")
        logger.info(f"  Contract: {self.network.contract_address or '[DISABLED]'}")

        logger.info("Fetch Settings:")
        logger.info(f"  Max Query Span: {self.fetch.max_query_span} blocks")
        logger.info(f"  Max Range: {self.fetch.max_range} blocks")
        logger.info(f"  Retry Count: {self.fetch.retry_count}")
        logger.info(f"  Request Timeout: {self.fetch.request_timeout} seconds")

        logger.info("Cache Settings:")
        logger.info(f"  Record TTL: {self.cache.record_ttl} seconds")
        logger.info(f"  Max Size: {self.cache.max_size}")

        logger.info("Sponsorship Policy:")
        logger.info(f"  Per User Daily Limit: ${self.policy.per_user_daily_limit_usd}")
        logger.info(f"  Global Daily Limit: ${self.policy.global_daily_limit_usd}")
        logger.info(f"  Max Sponsored Value: ${self.policy.max_sponsored_value_usd}")

        logger.info(f"Store: {self.store_path or '[IN MEMORY]'}")
        logger.info("=" * 60)
