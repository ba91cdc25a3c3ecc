import json
from pathlib import Path
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract, Contract


class ContractUtility:
    """
    Utility for contract ABI loading and read-only contract access.

    Event decoding only needs the ABI, so contracts can be built without a
    provider (``codec_contract``); state reads go through an ``AsyncWeb3``
    HTTP connection created on first use.
    """

    CONTRACTS_DIR: Path = Path(__file__).parent.parent / "contracts"

    def __init__(self, rpc_url: str, request_timeout: int = 30) -> None:
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: RPC URL for the network (required)
            request_timeout: HTTP request timeout in seconds
        """
        if not rpc_url:
            raise ValueError("RPC URL is required")

        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self._w3: AsyncWeb3 | None = None

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            self._w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self.rpc_url,
                    request_kwargs={"timeout": self.request_timeout},
                )
            )
        return self._w3

    @classmethod
    def get_contract_abi(cls, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        contract_path: Path = (cls.CONTRACTS_DIR / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data: dict[str, Any] = json.load(file)

        return contract_data["abi"]

    @classmethod
    def codec_contract(cls, contract_name: str, address: str | None = None) -> Contract:
        """Build a provider-less contract used only to decode logs."""
        abi = cls.get_contract_abi(contract_name)
        if address is None:
            return Web3().eth.contract(abi=abi)
        return Web3().eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def get_contract(self, contract_name: str, address: str) -> AsyncContract:
        """Build an async contract bound to the RPC connection for view calls."""
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )
