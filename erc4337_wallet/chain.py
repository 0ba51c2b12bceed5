"""
Read-only access to an EVM node
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
]


@dataclass
class FeeData:
    base_fee_per_gas: int
    max_priority_fee_per_gas: int
    max_fee_per_gas: int


class ChainReader:
    """Balance, allowance, receipt and fee queries against one node"""

    def __init__(self, web3: AsyncWeb3):
        self.web3 = web3
        self._chain_id: Optional[int] = None

    @classmethod
    def from_provider(cls, provider: Union[str, Any]) -> "ChainReader":
        """Connect to an rpc url, or wrap an already built async provider"""
        if isinstance(provider, str):
            provider = AsyncWeb3.AsyncHTTPProvider(provider)
        return cls(AsyncWeb3(provider))

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self.web3.eth.chain_id
        return self._chain_id

    async def get_balance(self, address: str) -> int:
        """Native balance in wei"""
        return await self.web3.eth.get_balance(Web3.to_checksum_address(address))

    async def get_token_balance(self, token_address: str, address: str) -> int:
        """ERC-20 balance in the token's base unit"""
        token = self._token(token_address)
        return await token.functions.balanceOf(Web3.to_checksum_address(address)).call()

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        token = self._token(token_address)
        return await token.functions.allowance(
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender)
        ).call()

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[Any]:
        """Receipt of a mined transaction, or None if it is not known yet"""
        try:
            return await self.web3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return None

    async def get_fee_data(self) -> FeeData:
        """EIP-1559 fee data: max fee is twice the base fee plus the priority fee"""
        block = await self.web3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            gas_price = await self.web3.eth.gas_price
            return FeeData(base_fee_per_gas=gas_price, max_priority_fee_per_gas=0, max_fee_per_gas=gas_price)

        # web3 falls back to fee history when eth_maxPriorityFeePerGas is unsupported
        priority_fee = await self.web3.eth.max_priority_fee

        return FeeData(
            base_fee_per_gas=base_fee,
            max_priority_fee_per_gas=priority_fee,
            max_fee_per_gas=base_fee * 2 + priority_fee
        )

    async def call(self, to: str, data: bytes) -> bytes:
        """Raw eth_call against the latest block"""
        result = await self.web3.eth.call({"to": Web3.to_checksum_address(to), "data": HexBytes(data)})
        return bytes(result)

    async def get_code(self, address: str) -> bytes:
        return bytes(await self.web3.eth.get_code(Web3.to_checksum_address(address)))

    def _token(self, token_address: str):
        return self.web3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
