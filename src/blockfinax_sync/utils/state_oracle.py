"""
Read access to current contract state, addressed by record id.

Record ids have the form ``<kind>:<key>`` (``pga:<id>``, ``stake:<address>``)
or just ``<kind>`` for singletons (``config``).
"""

import logging
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from web3 import Web3
from web3.contract import AsyncContract

from ..events import abi_name_to_field, normalize_arg
from .contract_utility import ContractUtility
from .event_source import to_hex

logger = logging.getLogger(__name__)


def split_record_id(record_id: str) -> tuple[str, str | None]:
    kind, _, key = record_id.partition(":")
    return kind, key or None


@runtime_checkable
class StateOracle(Protocol):
    """Source of truth for the current value of an application record."""

    def can_read(self, record_id: str) -> bool: ...

    async def read_record(self, record_id: str) -> dict[str, Any]: ...


class ContractStateOracle:
    """
    State oracle performing view calls on the diamond contract.

    Subclasses declare the record kinds they serve by implementing
    ``_read_<kind>(key)`` coroutines.
    """

    kinds: frozenset[str] = frozenset()
    # Records worth warming for any user: per-user kinds and singletons
    user_kinds: tuple[str, ...] = ()
    shared_records: tuple[str, ...] = ()
    contract_name: str = ""

    def __init__(self, contract: AsyncContract) -> None:
        self.contract = contract
        self._outputs: dict[str, list[dict[str, Any]]] = {
            item["name"]: item.get("outputs", [])
            for item in contract.abi
            if item.get("type") == "function"
        }

    @classmethod
    def from_utility(cls, utility: ContractUtility, address: str) -> "ContractStateOracle":
        return cls(utility.get_contract(cls.contract_name, address))

    def user_record_ids(self, user_key: str) -> list[str]:
        return [f"{kind}:{user_key.lower()}" for kind in self.user_kinds] + list(self.shared_records)

    def can_read(self, record_id: str) -> bool:
        kind, key = split_record_id(record_id)
        if kind not in self.kinds:
            return False
        return key is not None or kind in self.shared_records

    async def read_record(self, record_id: str) -> dict[str, Any]:
        """
        Read the current value of a record from chain.

        Raises:
            LookupError: If the record kind is not served by this oracle
        """
        kind, key = split_record_id(record_id)
        if kind not in self.kinds:
            raise LookupError(f"{self.__class__.__name__} cannot read {record_id}")
        reader = getattr(self, f"_read_{kind}")
        return await reader(key)

    async def _call(self, fn_name: str, *args: Any) -> dict[str, Any]:
        result = await getattr(self.contract.functions, fn_name)(*args).call()
        outputs = self._outputs.get(fn_name, [])

        if len(outputs) == 1:
            result = [result]

        record: dict[str, Any] = {}
        for index, (output, value) in enumerate(zip(outputs, result)):
            name = abi_name_to_field(output.get("name", "")).lstrip("_") or f"value_{index}"
            record[name] = _to_plain(value)
        return record


class TradeStateOracle(ContractStateOracle):
    """Reads guarantees (``pga:<id>``) and a user's guarantee lists (``pgas:<address>``)."""

    kinds = frozenset({"pga", "pgas"})
    user_kinds = ("pgas",)
    contract_name = "TradeFinanceFacet"

    def __init__(self, contract: AsyncContract) -> None:
        super().__init__(contract)
        # Events carry keccak(pgaId) for indexed ids; map them back to the plain id
        self._pga_ids: dict[str, str] = {}

    def remember_pga_ids(self, pga_ids: list[str]) -> None:
        for pga_id in pga_ids:
            self._pga_ids[to_hex(Web3.keccak(text=pga_id))] = pga_id
        logger.debug(f"Tracking {len(self._pga_ids)} guarantee ids")

    def resolve_pga_id(self, key: str) -> str | None:
        if key in self._pga_ids:
            return self._pga_ids[key]
        if _is_topic_hash(key):
            return None
        return key

    def can_read(self, record_id: str) -> bool:
        kind, key = split_record_id(record_id)
        if kind == "pga":
            return key is not None and self.resolve_pga_id(key) is not None
        return super().can_read(record_id)

    async def _read_pga(self, key: str | None) -> dict[str, Any]:
        pga_id = self.resolve_pga_id(key or "")
        if not pga_id:
            raise LookupError(f"Unknown guarantee id {key}")
        return await self._call("getPGA", pga_id)

    async def _read_pgas(self, key: str | None) -> dict[str, Any]:
        if not key:
            raise LookupError("Guarantee list requires an address")
        address = Web3.to_checksum_address(key)
        as_buyer = (await self._call("getPGAsByBuyer", address))["value_0"]
        as_seller = (await self._call("getPGAsBySeller", address))["value_0"]
        self.remember_pga_ids(as_buyer + as_seller)
        return {"as_buyer": as_buyer, "as_seller": as_seller}


class TreasuryStateOracle(ContractStateOracle):
    """Reads stakes (``stake:<address>``) and the staking configuration (``config``)."""

    kinds = frozenset({"stake", "config"})
    user_kinds = ("stake",)
    shared_records = ("config",)
    contract_name = "TreasuryFacet"

    async def _read_stake(self, key: str | None) -> dict[str, Any]:
        if not key:
            raise LookupError("Stake record requires an address")
        return await self._call("getStake", Web3.to_checksum_address(key))

    async def _read_config(self, key: str | None) -> dict[str, Any]:
        return await self._call("getStakingConfig")


ORACLES: Mapping[str, type[ContractStateOracle]] = {
    "trade": TradeStateOracle,
    "treasury": TreasuryStateOracle,
}


def _is_topic_hash(key: str) -> bool:
    return key.startswith("0x") and len(key) == 66


def _to_plain(value: Any) -> Any:
    """Make view call results JSON-serializable."""
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    return normalize_arg(value)
