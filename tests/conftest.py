"""
Shared fakes and fixtures for the wallet tests
"""

import asyncio
from typing import Dict, List, Optional

import pytest
from web3 import Web3

from erc4337_wallet.chain import FeeData
from erc4337_wallet.config import ENTRYPOINT_V07, PaymasterToken, WalletConfig
from erc4337_wallet.user_operations import SafeOperation, SignedUserOperation, UserOperation

# Hardhat / Anvil default mnemonic and its first two accounts
MNEMONIC = "test test test test test test test test test test test junk"
OWNER_ADDRESS_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OWNER_ADDRESS_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

TOKEN_ADDRESS = Web3.to_checksum_address("0x" + "11" * 20)
OTHER_TOKEN_ADDRESS = Web3.to_checksum_address("0x" + "22" * 20)
PAYMASTER_ADDRESS = Web3.to_checksum_address("0x" + "33" * 20)
RECIPIENT_ADDRESS = Web3.to_checksum_address("0x" + "44" * 20)
SAFE_ADDRESS = Web3.to_checksum_address("0x" + "55" * 20)
SPENDER_ADDRESS = Web3.to_checksum_address("0x" + "66" * 20)

USER_OPERATION_HASH = "0x" + "ab" * 32
TRANSACTION_HASH = "0x" + "cd" * 32

# 40k + 30k + 20k + 7k + 3k = 100k gas at 10 wei/gas, 1 native unit = 2 token units
GAS_LIMITS = {
    "call_gas_limit": 40_000,
    "verification_gas_limit": 30_000,
    "pre_verification_gas": 20_000,
    "paymaster_verification_gas_limit": 7_000,
    "paymaster_post_op_gas_limit": 3_000,
}
MAX_FEE_PER_GAS = 10
EXCHANGE_RATE = 2 * 10**18


class FakeChain:
    """In-memory stand-in for ChainReader"""

    def __init__(self, chain_id: int = 84532, max_fee_per_gas: int = 1_000):
        self.chain_id = chain_id
        self.max_fee_per_gas = max_fee_per_gas
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[tuple, int] = {}
        self.allowances: Dict[tuple, int] = {}
        self.receipts: Dict[str, dict] = {}
        self.call_results: Dict[str, bytes] = {}
        self.code: Dict[str, bytes] = {}

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def get_token_balance(self, token_address: str, address: str) -> int:
        return self.token_balances.get((Web3.to_checksum_address(token_address), address), 0)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return self.allowances.get((Web3.to_checksum_address(token_address), owner, spender), 0)

    async def get_transaction_receipt(self, transaction_hash: str):
        return self.receipts.get(transaction_hash)

    async def get_fee_data(self) -> FeeData:
        return FeeData(
            base_fee_per_gas=self.max_fee_per_gas // 2,
            max_priority_fee_per_gas=0,
            max_fee_per_gas=self.max_fee_per_gas
        )

    async def call(self, to: str, data: bytes) -> bytes:
        return self.call_results[Web3.to_checksum_address(to)]

    async def get_code(self, address: str) -> bytes:
        return self.code.get(address, b"")


class FakeEngine:
    """Protocol engine that records every call instead of talking to a bundler"""

    def __init__(self, exchange_rate: int = EXCHANGE_RATE):
        self.exchange_rate = exchange_rate
        self.created: List[dict] = []
        self.signed: List[SafeOperation] = []
        self.submitted: List[SignedUserOperation] = []
        self.create_errors: List[Optional[Exception]] = []
        self.submit_error: Optional[Exception] = None
        self.transaction_hashes: Dict[str, str] = {}

    async def get_address(self) -> str:
        return SAFE_ADDRESS

    async def create_operation(
        self,
        transactions,
        *,
        fee_estimator,
        paymaster_token_address,
        amount_to_approve=None,
        valid_until=0,
    ) -> SafeOperation:
        self.created.append({
            "transactions": list(transactions),
            "paymaster_token_address": paymaster_token_address,
            "amount_to_approve": amount_to_approve,
            "valid_until": valid_until,
        })
        if self.create_errors:
            error = self.create_errors.pop(0)
            if error is not None:
                raise error

        return SafeOperation(
            user_operation=UserOperation(
                sender=SAFE_ADDRESS,
                nonce=len(self.submitted),
                call_data=b"\x01",
                max_fee_per_gas=MAX_FEE_PER_GAS,
                max_priority_fee_per_gas=1,
                paymaster=PAYMASTER_ADDRESS,
                **GAS_LIMITS
            ),
            entry_point=ENTRYPOINT_V07,
            valid_until=valid_until,
        )

    async def sign_operation(self, operation: SafeOperation, signer) -> SignedUserOperation:
        typed_data = {
            "types": {
                "EIP712Domain": [{"name": "chainId", "type": "uint256"}],
                "Operation": [{"name": "nonce", "type": "uint256"}],
            },
            "primaryType": "Operation",
            "domain": {"chainId": 1},
            "message": {"nonce": operation.user_operation.nonce},
        }
        signature = await signer.sign_typed_data(typed_data)
        self.signed.append(operation)
        return SignedUserOperation(safe_operation=operation, signature=signature)

    async def submit_operation(self, signed_operation: SignedUserOperation) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(signed_operation)
        return USER_OPERATION_HASH

    async def get_token_exchange_rate(self, token_address: str) -> int:
        return self.exchange_rate

    async def resolve_transaction_hash(self, user_operation_hash: str) -> Optional[str]:
        return self.transaction_hashes.get(user_operation_hash)


class CountingEngineFactory:
    """Engine factory that counts how often an engine gets built"""

    def __init__(self, engine: FakeEngine, delay: float = 0):
        self.engine = engine
        self.delay = delay
        self.calls: List[str] = []

    async def __call__(self, owner_address, config, chain):
        self.calls.append(owner_address)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.engine


def make_config(**overrides) -> WalletConfig:
    options = dict(
        chain_id=84532,
        bundler_url="https://bundler.example/rpc",
        paymaster_url="https://paymaster.example/rpc",
        paymaster_address=PAYMASTER_ADDRESS,
        paymaster_token=PaymasterToken(TOKEN_ADDRESS),
    )
    options.update(overrides)
    return WalletConfig(**options)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def engine_factory(engine):
    return CountingEngineFactory(engine)
