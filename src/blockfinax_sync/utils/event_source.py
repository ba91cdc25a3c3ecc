"""
Event log source backed by a web3 RPC endpoint.

Historical queries and block lookups go over HTTP; live logs are streamed over
WebSocket with automatic reconnection.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from web3 import AsyncWeb3, Web3
from web3.providers import WebSocketProvider
from web3.types import HexBytes
from web3.utils.subscriptions import LogsSubscription, LogsSubscriptionContext

from ..config import NetworkContext

RawLog = Mapping[str, Any]
LogCallback = Callable[[RawLog], Awaitable[None]]


class ConnectionState(Enum):
    """Connection state for the live log stream."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LogFilter:
    """Address plus the set of event signatures to match (OR-ed in topic 0)."""
    address: str
    event_topics: tuple[str, ...]

    def to_params(self, from_block: int, to_block: int) -> dict[str, Any]:
        return {
            "address": self.address,
            "topics": [list(self.event_topics)],
            "fromBlock": from_block,
            "toBlock": to_block,
        }

    def narrowed(self, topic: str) -> "LogFilter":
        """Filter matching a single event signature."""
        return LogFilter(address=self.address, event_topics=(topic,))


@runtime_checkable
class EventLogSource(Protocol):
    """Append-only, rate-limited source of contract logs."""

    supports_filter_union: bool

    async def get_current_height(self) -> int: ...

    async def query_events(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[RawLog]: ...

    async def get_block_timestamp(self, block_number: int) -> int: ...

    async def stream_logs(self, log_filter: LogFilter, on_log: LogCallback) -> None: ...


class Web3EventLogSource:
    """
    Event log source talking to an EVM node through web3.

    Features:
    - ``eth_getLogs`` with a union of event topics per query
    - WebSocket ``logs`` subscription with exponential reconnect backoff
    """

    supports_filter_union = True

    def __init__(
        self,
        network: NetworkContext,
        request_timeout: int = 30,
        max_retries: int = 5,
    ) -> None:
        """
        Initialize the Web3EventLogSource.

        Args:
            network: Network to read logs from
            request_timeout: HTTP request timeout in seconds
            max_retries: Maximum WebSocket reconnection attempts
        """
        self.network = network
        self.websocket_url = network.ws_url
        self.max_retries = max_retries

        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                network.rpc_url,
                request_kwargs={"timeout": request_timeout},
            )
        )

        # Connection state
        self.connection_state = ConnectionState.DISCONNECTED
        self.async_w3: AsyncWeb3 | None = None
        self._on_log: LogCallback | None = None

        # Retry configuration
        self.base_delay = 1
        self.max_delay = 60

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def get_current_height(self) -> int:
        return await self.w3.eth.block_number

    async def query_events(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[RawLog]:
        logs = await self.w3.eth.get_logs(log_filter.to_params(from_block, to_block))
        return list(logs)

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.w3.eth.get_block(block_number)
        return int(block["timestamp"])

    async def stream_logs(self, log_filter: LogFilter, on_log: LogCallback) -> None:
        """Stream matching logs into ``on_log`` until cancelled.

        Raises:
            ConnectionError: If the WebSocket cannot be (re)established
        """
        if not self.websocket_url:
            raise ConnectionError(f"No WebSocket URL configured for chain {self.network.chain_id}")

        self._on_log = on_log
        retry_count = 0

        try:
            while retry_count < self.max_retries:
                try:
                    self.connection_state = ConnectionState.CONNECTING
                    self.logger.info(f"Connecting to WebSocket: {self.websocket_url}")

                    async with AsyncWeb3(
                        WebSocketProvider(
                            self.websocket_url,
                            request_timeout=60,
                            subscription_response_queue_size=10000,
                        )
                    ) as w3:
                        self.async_w3 = w3
                        self.connection_state = ConnectionState.CONNECTED
                        self.logger.info("WebSocket connected successfully")
                        retry_count = 0

                        logs_subscription = LogsSubscription(
                            label=f"{log_filter.address}-logs",
                            address=Web3.to_checksum_address(log_filter.address),
                            topics=[list(log_filter.event_topics)],
                            handler=self._log_handler,
                        )

                        self.logger.info(
                            f"Subscribing to {len(log_filter.event_topics)} event types on {log_filter.address}"
                        )

                        await w3.subscription_manager.subscribe([logs_subscription])
                        await w3.subscription_manager.handle_subscriptions()

                except (ConnectionError, OSError) as e:
                    retry_count += 1
                    delay = min(self.base_delay * (2 ** retry_count), self.max_delay)

                    self.logger.warning(
                        f"WebSocket connection failed (attempt {retry_count}/{self.max_retries}): {e}"
                    )

                    if retry_count < self.max_retries:
                        self.logger.info(f"Retrying in {delay} seconds...")
                        self.connection_state = ConnectionState.RECONNECTING
                        await asyncio.sleep(delay)
                    else:
                        self.logger.error("Max WebSocket retries reached")
                        self.connection_state = ConnectionState.FAILED
                        raise
        finally:
            if self.connection_state is not ConnectionState.FAILED:
                self.connection_state = ConnectionState.DISCONNECTED
            self.async_w3 = None
            self._on_log = None

    async def _log_handler(self, handler_context: LogsSubscriptionContext) -> None:
        """
        Handler for LogsSubscription events using the subscription manager.

        Args:
            handler_context: Context containing the log receipt and subscription details
        """
        log_receipt = handler_context.result
        try:
            event_data = normalize_log(log_receipt)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Malformed log pushed by subscription: {e}")
            return

        if self._on_log:
            await self._on_log(event_data)


def normalize_log(log_receipt: Any) -> dict[str, Any]:
    """Convert a log receipt (dict-like or attribute style) into a plain dict."""
    if hasattr(log_receipt, 'get') and callable(log_receipt.get):
        read = log_receipt.get
    else:
        def read(key: str, default: Any = None) -> Any:
            return getattr(log_receipt, key, default)

    return {
        'address': read('address'),
        'blockHash': read('blockHash'),
        'blockNumber': to_int(read('blockNumber', 0)),
        'data': read('data'),
        'logIndex': to_int(read('logIndex', 0)),
        'topics': list(read('topics', []) or []),
        'transactionHash': read('transactionHash'),
        'transactionIndex': to_int(read('transactionIndex', 0)),
    }


def to_int(value: Any) -> int:
    """
    Parse a quantity that may arrive as int, hex string or bytes.

    Providers differ in whether they format log fields before handing them
    out, e.g. ``26`` versus ``"0x1a"``.
    """
    match value:
        case None:
            return 0
        case bool():
            return int(value)
        case int():
            return value
        case bytes() | bytearray():
            return int.from_bytes(value, byteorder='big')
        case str():
            hex_str = value[2:] if value.startswith('0x') else value
            return int(hex_str, 16) if hex_str else 0
        case _:
            raise TypeError(f"Cannot parse {type(value).__name__} as integer")


def to_hex(value: Any) -> str:
    """Render a hash or topic as a lowercase 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray, HexBytes)):
        return '0x' + bytes(value).hex()
    if isinstance(value, str):
        return value.lower() if value.startswith('0x') else '0x' + value.lower()
    raise TypeError(f"Cannot render {type(value).__name__} as hex")
