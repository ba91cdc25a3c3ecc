#!/usr/bin/env python3
"""Tests for contract utilities and the contract-backed state oracles."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import AsyncWeb3

from blockfinax_sync.utils.contract_utility import ContractUtility
from blockfinax_sync.utils.state_oracle import (
    ORACLES,
    TradeStateOracle,
    TreasuryStateOracle,
    split_record_id,
)

from conftest import CONTRACT, USER, pga_record_id


def mock_contract(contract_name, results):
    """Contract double whose view functions return canned results."""
    contract = MagicMock()
    contract.abi = ContractUtility.get_contract_abi(contract_name)
    for fn_name, result in results.items():
        getattr(contract.functions, fn_name).return_value.call = AsyncMock(return_value=result)
    return contract


class TestContractUtility:
    """Tests for ContractUtility."""

    def test_requires_rpc_url(self):
        with pytest.raises(ValueError, match="RPC URL is required"):
            ContractUtility("")

    def test_abi_loading(self):
        abi = ContractUtility.get_contract_abi("TradeFinanceFacet")

        events = {item["name"] for item in abi if item["type"] == "event"}
        assert "PGACreated" in events
        assert len(events) == 12

    def test_missing_abi(self):
        with pytest.raises(FileNotFoundError):
            ContractUtility.get_contract_abi("Missing")

    def test_codec_contract(self):
        contract = ContractUtility.codec_contract("TreasuryFacet", CONTRACT.lower())

        assert contract.address == CONTRACT
        assert contract.events.Staked().topic is not None

    def test_async_contract_is_lazy(self):
        utility = ContractUtility("https://rpc.sepolia-api.lisk.com", request_timeout=5)
        assert utility._w3 is None

        contract = utility.get_contract("TreasuryFacet", CONTRACT)

        assert isinstance(utility.w3, AsyncWeb3)
        assert contract.address == CONTRACT


class TestRecordIds:
    @pytest.mark.parametrize("record_id,expected", [
        ("pga:PGA-1", ("pga", "PGA-1")),
        ("stake:0xabc", ("stake", "0xabc")),
        ("config", ("config", None)),
    ])
    def test_split_record_id(self, record_id, expected):
        assert split_record_id(record_id) == expected

    def test_oracle_registry(self):
        assert ORACLES == {"trade": TradeStateOracle, "treasury": TreasuryStateOracle}


class TestTradeStateOracle:
    """Tests for TradeStateOracle."""

    @pytest.mark.asyncio
    async def test_read_guarantee_lists_learns_ids(self):
        """Test that reading a user's lists makes hashed guarantee ids resolvable."""
        oracle = TradeStateOracle(mock_contract("TradeFinanceFacet", {
            "getPGAsByBuyer": ["PGA-1"],
            "getPGAsBySeller": ["PGA-2"],
        }))
        hashed = pga_record_id("PGA-1")

        assert not oracle.can_read(hashed)

        record = await oracle.read_record(f"pgas:{USER.lower()}")

        assert record == {"as_buyer": ["PGA-1"], "as_seller": ["PGA-2"]}
        assert oracle.can_read(hashed)
        assert oracle.resolve_pga_id(hashed.split(":", 1)[1]) == "PGA-1"
        oracle.contract.functions.getPGAsByBuyer.assert_called_with(USER)

    @pytest.mark.asyncio
    async def test_read_guarantee(self):
        abi = ContractUtility.get_contract_abi("TradeFinanceFacet")
        outputs = next(item["outputs"] for item in abi if item.get("name") == "getPGA")
        values = list(range(len(outputs)))
        oracle = TradeStateOracle(mock_contract("TradeFinanceFacet", {"getPGA": values}))

        record = await oracle.read_record("pga:PGA-7")

        oracle.contract.functions.getPGA.assert_called_with("PGA-7")
        assert len(record) == len(outputs)
        assert record["pga_id"] == 0

    @pytest.mark.asyncio
    async def test_unresolvable_hash(self):
        oracle = TradeStateOracle(mock_contract("TradeFinanceFacet", {}))

        with pytest.raises(LookupError, match="Unknown guarantee id"):
            await oracle.read_record(pga_record_id("PGA-404"))

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        oracle = TradeStateOracle(mock_contract("TradeFinanceFacet", {}))

        assert not oracle.can_read("stake:0x11")
        with pytest.raises(LookupError, match="cannot read"):
            await oracle.read_record("stake:0x11")

    def test_user_record_ids(self):
        oracle = TradeStateOracle(mock_contract("TradeFinanceFacet", {}))

        assert oracle.user_record_ids(USER) == [f"pgas:{USER.lower()}"]


class TestTreasuryStateOracle:
    """Tests for TreasuryStateOracle."""

    @pytest.mark.asyncio
    async def test_read_stake(self):
        oracle = TreasuryStateOracle(mock_contract("TreasuryFacet", {
            "getStake": (500, 1_700_000_000, 500, True, 7, 0, 1_700_086_400, False),
        }))

        record = await oracle.read_record(f"stake:{USER.lower()}")

        oracle.contract.functions.getStake.assert_called_with(USER)
        assert record == {
            "amount": 500,
            "timestamp": 1_700_000_000,
            "voting_power": 500,
            "active": True,
            "pending_rewards": 7,
            "time_until_unlock": 0,
            "deadline": 1_700_086_400,
            "financier_status": False,
        }

    @pytest.mark.asyncio
    async def test_read_config(self):
        oracle = TreasuryStateOracle(mock_contract("TreasuryFacet", {"getStakingConfig": tuple(range(9))}))

        record = await oracle.read_record("config")

        assert record["initial_apr"] == 0
        assert record["min_normal_staker_lock_duration"] == 8

    def test_user_record_ids_include_shared(self):
        oracle = TreasuryStateOracle(mock_contract("TreasuryFacet", {}))

        assert oracle.user_record_ids(USER) == [f"stake:{USER.lower()}", "config"]
        assert oracle.can_read("config")
        assert not oracle.can_read("stake")
