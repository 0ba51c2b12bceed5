"""
Interface between the smart accounts and an ERC-4337 protocol engine
"""

from typing import Awaitable, Callable, Optional, Protocol, Sequence

from erc4337_wallet.chain import ChainReader
from erc4337_wallet.config import WalletConfig
from erc4337_wallet.fee_estimator import FeeEstimator
from erc4337_wallet.user_operations import SafeOperation, SignedUserOperation, Transaction


class Signer(Protocol):
    async def sign_typed_data(self, typed_data: dict) -> bytes:
        ...


class AccountAbstractionEngine(Protocol):
    """Assembles, signs, submits and tracks UserOperations for one smart account.

    The engine holds no key material: signing always goes through a Signer
    passed in by the caller.
    """

    async def get_address(self) -> str:
        ...

    async def create_operation(
        self,
        transactions: Sequence[Transaction],
        *,
        fee_estimator: FeeEstimator,
        paymaster_token_address: str,
        amount_to_approve: Optional[int] = None,
        valid_until: int = 0,
    ) -> SafeOperation:
        ...

    async def sign_operation(self, operation: SafeOperation, signer: Signer) -> SignedUserOperation:
        ...

    async def submit_operation(self, signed_operation: SignedUserOperation) -> str:
        ...

    async def get_token_exchange_rate(self, token_address: str) -> int:
        ...

    async def resolve_transaction_hash(self, user_operation_hash: str) -> Optional[str]:
        ...


# (owner_address, config, chain) -> engine; may do network round trips
EngineFactory = Callable[[str, WalletConfig, ChainReader], Awaitable[AccountAbstractionEngine]]
