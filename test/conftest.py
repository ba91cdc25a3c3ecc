"""Shared fixtures and fakes for the sync engine tests."""

import asyncio
from typing import Any

import pytest
from eth_abi import encode
from web3 import Web3
from web3.types import HexBytes

from blockfinax_sync.config import FetchConfig, NetworkContext
from blockfinax_sync.event_processor import EventProcessor
from blockfinax_sync.events import TRADE_SCHEMA, TREASURY_SCHEMA
from blockfinax_sync.store import MemoryKeyValueStore
from blockfinax_sync.utils.contract_utility import ContractUtility
from blockfinax_sync.utils.event_source import LogFilter, to_hex

CONTRACT = "0xE133CD2eE4d835AC202942Baff2B1D6d47862d34"
USER = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"
THIRD = "0x3333333333333333333333333333333333333333"

BASE_TIMESTAMP = 1_700_000_000


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def pga_record_id(pga_id: str) -> str:
    """Record id of a guarantee as seen through its indexed (hashed) event topic."""
    return f"pga:{to_hex(Web3.keccak(text=pga_id))}"


def _event_abi(contract_name: str, event_name: str) -> dict[str, Any]:
    for item in ContractUtility.get_contract_abi(contract_name):
        if item.get("type") == "event" and item["name"] == event_name:
            return item
    raise KeyError(event_name)


def make_log(
    event_name: str,
    args: dict[str, Any],
    block_number: int,
    tx: int | str,
    log_index: int = 0,
    contract_name: str = "TradeFinanceFacet",
    address: str = CONTRACT,
) -> dict[str, Any]:
    """ABI-encode a log exactly as a node would return it from eth_getLogs."""
    abi = _event_abi(contract_name, event_name)
    signature = f"{event_name}({','.join(item['type'] for item in abi['inputs'])})"

    topics = [HexBytes(Web3.keccak(text=signature))]
    data_types: list[str] = []
    data_values: list[Any] = []
    for item in abi["inputs"]:
        value = args[item["name"]]
        if item["indexed"]:
            if item["type"] == "string":
                topics.append(HexBytes(Web3.keccak(text=value)))
            else:
                topics.append(HexBytes(encode([item["type"]], [value])))
        else:
            data_types.append(item["type"])
            data_values.append(value)

    return {
        "address": address,
        "blockHash": HexBytes(b"\x0b" * 32),
        "blockNumber": block_number,
        "data": HexBytes(encode(data_types, data_values)),
        "logIndex": log_index,
        "removed": False,
        "topics": topics,
        "transactionHash": HexBytes(tx_hash(tx) if isinstance(tx, int) else tx),
        "transactionIndex": 0,
    }


def pga_created(pga_id: str, buyer: str, seller: str, block: int, tx: int, log_index: int = 0) -> dict[str, Any]:
    return make_log(
        "PGACreated",
        {
            "pgaId": pga_id,
            "buyer": buyer,
            "seller": seller,
            "tradeValue": 10_000,
            "guaranteeAmount": 1_000,
            "collateralAmount": 100,
            "duration": 30,
            "metadataURI": "ipfs://metadata",
            "votingDeadline": BASE_TIMESTAMP + 86_400,
            "createdAt": BASE_TIMESTAMP,
        },
        block,
        tx,
        log_index,
    )


def collateral_paid(pga_id: str, buyer: str, block: int, tx: int, log_index: int = 0) -> dict[str, Any]:
    return make_log(
        "CollateralPaid",
        {"pgaId": pga_id, "buyer": buyer, "collateralAmount": 100, "timestamp": BASE_TIMESTAMP},
        block,
        tx,
        log_index,
    )


def pga_vote_cast(pga_id: str, voter: str, block: int, tx: int, log_index: int = 0) -> dict[str, Any]:
    return make_log(
        "PGAVoteCast",
        {"pgaId": pga_id, "voter": voter, "support": True, "votingPower": 5, "timestamp": BASE_TIMESTAMP},
        block,
        tx,
        log_index,
    )


def staked(staker: str, amount: int, block: int, tx: int, log_index: int = 0) -> dict[str, Any]:
    return make_log(
        "Staked",
        {
            "staker": staker,
            "amount": amount,
            "votingPower": amount,
            "currentApr": 12,
            "deadline": BASE_TIMESTAMP + 86_400,
            "isFinancier": False,
        },
        block,
        tx,
        log_index,
        contract_name="TreasuryFacet",
    )


class FakeEventSource:
    """In-memory event log source with failure injection."""

    def __init__(self, height: int = 0, logs: list[dict[str, Any]] | None = None, union: bool = True) -> None:
        self.height = height
        self.logs = list(logs or [])
        self.supports_filter_union = union
        self.queries: list[tuple[tuple[str, ...], int, int]] = []
        self.timestamp_lookups: list[int] = []
        self.failures_remaining = 0
        self.fail_ranges: set[tuple[int, int]] = set()
        self.streams: list[tuple[LogFilter, Any]] = []
        self.stream_started = asyncio.Event()
        self.stream_cancelled = False

    async def get_current_height(self) -> int:
        return self.height

    async def query_events(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[dict[str, Any]]:
        self.queries.append((log_filter.event_topics, from_block, to_block))
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ConnectionError("rate limited")
        if (from_block, to_block) in self.fail_ranges:
            raise ConnectionError(f"provider rejected {from_block}-{to_block}")
        topics = set(log_filter.event_topics)
        return [
            log for log in self.logs
            if from_block <= log["blockNumber"] <= to_block and to_hex(log["topics"][0]) in topics
        ]

    async def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_lookups.append(block_number)
        return BASE_TIMESTAMP + block_number

    async def stream_logs(self, log_filter: LogFilter, on_log) -> None:
        stream = (log_filter, on_log)
        self.streams.append(stream)
        self.stream_started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.stream_cancelled = True
            raise
        finally:
            self.streams.remove(stream)

    async def push(self, raw_log: dict[str, Any]) -> None:
        """Deliver a log to every open stream whose filter matches it."""
        assert self.streams, "no open stream"
        topic = to_hex(raw_log["topics"][0])
        for log_filter, on_log in list(self.streams):
            if topic in log_filter.event_topics:
                await on_log(raw_log)


class FakeOracle:
    """State oracle answering from a dict and counting reads."""

    def __init__(self, records: dict[str, dict[str, Any]] | None = None) -> None:
        self.records = records or {}
        self.reads: list[str] = []

    def can_read(self, record_id: str) -> bool:
        return record_id in self.records

    def user_record_ids(self, user_key: str) -> list[str]:
        return []

    async def read_record(self, record_id: str) -> dict[str, Any]:
        self.reads.append(record_id)
        if record_id not in self.records:
            raise LookupError(record_id)
        return dict(self.records[record_id])


class FakeClock:
    def __init__(self, now: float = float(BASE_TIMESTAMP)) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def network():
    return NetworkContext(chain_id=4202, rpc_url="https://rpc.sepolia-api.lisk.com")


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def trade_processor():
    return EventProcessor(TRADE_SCHEMA, CONTRACT)


@pytest.fixture
def treasury_processor():
    return EventProcessor(TREASURY_SCHEMA, CONTRACT)


@pytest.fixture
def fetch_config():
    return FetchConfig(max_query_span=10, max_range=2000, retry_count=3, retry_backoff=1.0)
