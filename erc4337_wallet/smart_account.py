"""
Smart account orchestration: fee quoting, sending and transfers paid in a paymaster token
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

from web3 import Web3

from erc4337_wallet.chain import ChainReader
from erc4337_wallet.config import (
    FEE_TOLERANCE_COEFFICIENT,
    MAX_UINT256,
    OPERATION_VALIDITY_SECONDS,
    USDT_MAINNET_ADDRESS,
    OperationConfig,
    WalletConfig,
)
from erc4337_wallet.engine import AccountAbstractionEngine, EngineFactory
from erc4337_wallet.exceptions import (
    AllowanceResetRequiredError,
    ConfigurationError,
    DisposedAccountError,
    FeeCeilingExceededError,
    PaymasterRepaymentError,
    PaymasterSimulationError,
    is_sponsor_insufficiency,
)
from erc4337_wallet.fee_estimator import FeeEstimator
from erc4337_wallet.keys import KeyedAccount, KeyPair
from erc4337_wallet.safe4337 import Safe4337Pack
from erc4337_wallet.user_operations import (
    ApproveOptions,
    SafeOperation,
    Transaction,
    TransactionLike,
    TransferOptions,
    as_transactions,
    get_approve_transaction,
    get_transfer_transaction,
)

logger = logging.getLogger(__name__)

# Exchange rates are 1e18 fixed-point
EXCHANGE_RATE_SCALE = 10**18

ETHEREUM_MAINNET_CHAIN_ID = 1


@dataclass(frozen=True)
class FeeQuote:
    """Fee in the paymaster token's base unit"""
    fee: int


@dataclass(frozen=True)
class OperationResult:
    """Submitted operation hash and the fee quoted right before submission"""
    hash: str
    fee: int


def ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def apply_fee_tolerance(fee: int) -> int:
    """Paymaster approval for a quoted fee: ceil(fee * 120 / 100)"""
    return ceil_div(fee * FEE_TOLERANCE_COEFFICIENT, 100)


class ReadOnlySmartAccount:
    """A Safe smart account that can be inspected and quoted, but not spent from.

    ``address`` is the owner's address; the Safe address is derived from it
    by the protocol engine and resolved on first use.
    """

    def __init__(
        self,
        address: str,
        config: WalletConfig,
        *,
        chain: Optional[ChainReader] = None,
        fee_estimator: Optional[FeeEstimator] = None,
        engine_factory: Optional[EngineFactory] = None,
        engine: Optional[AccountAbstractionEngine] = None,
    ):
        self._config = config
        self._owner_address = Web3.to_checksum_address(address)

        if chain is None and config.provider:
            chain = ChainReader.from_provider(config.provider)
        self._chain = chain

        if fee_estimator is None and chain is not None:
            fee_estimator = FeeEstimator(chain)
        self._fee_estimator = fee_estimator

        self._engine_factory = engine_factory or Safe4337Pack.init
        self._engine = engine
        self._engine_lock = asyncio.Lock()
        self._chain_id: Optional[int] = None

    @property
    def config(self) -> WalletConfig:
        return self._config

    @property
    def owner_address(self) -> str:
        return self._owner_address

    @property
    def chain(self) -> Optional[ChainReader]:
        return self._chain

    async def get_address(self) -> str:
        """The smart account's checksummed address"""
        engine = await self._get_engine()
        return await engine.get_address()

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            chain = self._require_chain("read the chain id")
            self._chain_id = await chain.get_chain_id()
        return self._chain_id

    async def get_balance(self) -> int:
        """Native balance in wei"""
        chain = self._require_chain("retrieve the balance")
        return await chain.get_balance(await self.get_address())

    async def get_token_balance(self, token_address: str) -> int:
        """Token balance in the token's base unit"""
        chain = self._require_chain("retrieve token balances")
        return await chain.get_token_balance(token_address, await self.get_address())

    async def get_paymaster_token_balance(self) -> int:
        return await self.get_token_balance(self._config.paymaster_token.address)

    async def get_allowance(self, token_address: str, spender: str) -> int:
        """How much of a token the spender may pull from this account"""
        chain = self._require_chain("retrieve allowances")
        return await chain.get_allowance(token_address, await self.get_address(), spender)

    async def quote_send_transaction(
        self,
        tx: Union[TransactionLike, Sequence[TransactionLike]],
        config: Optional[OperationConfig] = None,
    ) -> FeeQuote:
        """Quote the paymaster-token fee of sending one transaction or a batch"""
        options = (config or OperationConfig()).resolve(self._config)
        fee = await self._get_user_operation_gas_cost(
            as_transactions(tx),
            paymaster_token_address=options.paymaster_token.address,
            amount_to_approve=MAX_UINT256,
        )
        return FeeQuote(fee=fee)

    async def quote_transfer(self, options: TransferOptions, config: Optional[OperationConfig] = None) -> FeeQuote:
        return await self.quote_send_transaction(get_transfer_transaction(options), config)

    async def get_transaction_receipt(self, user_operation_hash: str) -> Optional[Any]:
        """Receipt of the transaction that included an operation, or None if not included yet"""
        chain = self._require_chain("retrieve receipts")
        engine = await self._get_engine()

        transaction_hash = await engine.resolve_transaction_hash(user_operation_hash)
        if not transaction_hash:
            return None
        return await chain.get_transaction_receipt(transaction_hash)

    async def _get_engine(self) -> AccountAbstractionEngine:
        """Build the protocol engine once per account, even under concurrent first use"""
        if self._engine is None:
            chain = self._require_chain("resolve the smart account")
            async with self._engine_lock:
                if self._engine is None:
                    self._engine = await self._engine_factory(self._owner_address, self._config, chain)
                    logger.info(f"Protocol engine ready for owner {self._owner_address}")
        return self._engine

    def _require_chain(self, action: str) -> ChainReader:
        if self._chain is None:
            raise ConfigurationError(f"The wallet must be connected to a provider to {action}.")
        return self._chain

    async def _create_operation(
        self,
        transactions: List[Transaction],
        paymaster_token_address: str,
        amount_to_approve: int,
        valid_until: int = 0,
    ) -> SafeOperation:
        """Assembly step shared by quoting and sending"""
        engine = await self._get_engine()
        address = await engine.get_address()
        logger.info(f"Assembling UserOperation for {address} with {len(transactions)} call(s)")
        return await engine.create_operation(
            transactions,
            fee_estimator=self._fee_estimator,
            paymaster_token_address=paymaster_token_address,
            amount_to_approve=amount_to_approve,
            valid_until=valid_until,
        )

    async def _get_user_operation_gas_cost(
        self,
        transactions: List[Transaction],
        paymaster_token_address: str,
        amount_to_approve: int,
    ) -> int:
        """Gas cost of a sponsored operation, in the paymaster token's base unit (rounded up)"""
        engine = await self._get_engine()
        try:
            operation = await self._create_operation(transactions, paymaster_token_address, amount_to_approve)
            user_op = operation.user_operation

            gas = (
                user_op.call_gas_limit
                + user_op.verification_gas_limit
                + user_op.pre_verification_gas
                + user_op.paymaster_verification_gas_limit
                + user_op.paymaster_post_op_gas_limit
            )
            gas_cost = gas * user_op.max_fee_per_gas

            exchange_rate = await engine.get_token_exchange_rate(paymaster_token_address)
        except Exception as e:
            if is_sponsor_insufficiency(e):
                raise PaymasterSimulationError() from e
            raise

        fee = ceil_div(gas_cost * exchange_rate, EXCHANGE_RATE_SCALE)
        logger.info(f"Quoted fee: {fee} (gas={gas}, maxFeePerGas={user_op.max_fee_per_gas}, rate={exchange_rate})")
        return fee


class SmartAccount:
    """A Safe smart account controlled by one BIP-44 owner key.

    Read operations are delegated to a ReadOnlySmartAccount bound to the same
    owner; sending adds the owner's signature. Concurrent sends on one account
    are not serialized here: callers that need strict nonce ordering must
    await each send before starting the next.
    """

    def __init__(
        self,
        seed: Union[str, bytes, bytearray],
        path: str,
        config: WalletConfig,
        *,
        chain: Optional[ChainReader] = None,
        fee_estimator: Optional[FeeEstimator] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self._owner = KeyedAccount(seed, path)
        self._account = ReadOnlySmartAccount(
            self._owner.address,
            config,
            chain=chain,
            fee_estimator=fee_estimator,
            engine_factory=engine_factory,
        )

    @property
    def config(self) -> WalletConfig:
        return self._account.config

    @property
    def index(self) -> int:
        """Address index of the derivation path"""
        return self._owner.index

    @property
    def path(self) -> str:
        """Full BIP-44 derivation path"""
        return self._owner.path

    @property
    def owner_address(self) -> str:
        return self._owner.address

    @property
    def key_pair(self) -> KeyPair:
        return self._owner.key_pair

    async def get_address(self) -> str:
        return await self._account.get_address()

    async def get_balance(self) -> int:
        return await self._account.get_balance()

    async def get_token_balance(self, token_address: str) -> int:
        return await self._account.get_token_balance(token_address)

    async def get_paymaster_token_balance(self) -> int:
        return await self._account.get_paymaster_token_balance()

    async def get_allowance(self, token_address: str, spender: str) -> int:
        return await self._account.get_allowance(token_address, spender)

    async def quote_send_transaction(
        self,
        tx: Union[TransactionLike, Sequence[TransactionLike]],
        config: Optional[OperationConfig] = None,
    ) -> FeeQuote:
        return await self._account.quote_send_transaction(tx, config)

    async def quote_transfer(self, options: TransferOptions, config: Optional[OperationConfig] = None) -> FeeQuote:
        return await self._account.quote_transfer(options, config)

    async def get_transaction_receipt(self, user_operation_hash: str) -> Optional[Any]:
        return await self._account.get_transaction_receipt(user_operation_hash)

    async def sign(self, message: str) -> str:
        return await self._owner.sign(message)

    async def verify(self, message: str, signature: str) -> bool:
        return await self._owner.verify(message, signature)

    async def send_transaction(
        self,
        tx: Union[TransactionLike, Sequence[TransactionLike]],
        config: Optional[OperationConfig] = None,
    ) -> OperationResult:
        """Send one transaction, or a batch executed atomically in one operation"""
        return await self._send(as_transactions(tx), config, enforce_max_fee=False)

    async def transfer(self, options: TransferOptions, config: Optional[OperationConfig] = None) -> OperationResult:
        """Transfer a token, refusing to proceed if the fee reaches transfer_max_fee"""
        return await self._send([get_transfer_transaction(options)], config, enforce_max_fee=True)

    async def approve(self, options: ApproveOptions) -> OperationResult:
        """Approve a spender for an amount of tokens.

        USDT on Ethereum mainnet only accepts a new non-zero allowance when the
        current one is zero, so that case is checked before building the call.
        """
        self._ensure_not_disposed()
        if self._account.chain is None:
            raise ConfigurationError("The wallet must be connected to a provider to approve funds.")

        chain_id = await self._account.get_chain_id()
        if chain_id == ETHEREUM_MAINNET_CHAIN_ID and options.token.lower() == USDT_MAINNET_ADDRESS.lower():
            current_allowance = await self.get_allowance(options.token, options.spender)
            if current_allowance > 0 and int(options.amount) > 0:
                raise AllowanceResetRequiredError(options.token, options.spender, current_allowance)

        return await self.send_transaction(get_approve_transaction(options))

    async def to_read_only_account(self) -> ReadOnlySmartAccount:
        """Read-only handle bound to this account's resolved smart account address"""
        engine = await self._account._get_engine()
        return ReadOnlySmartAccount(
            self._owner.address,
            self._account.config,
            chain=self._account.chain,
            fee_estimator=self._account._fee_estimator,
            engine_factory=self._account._engine_factory,
            engine=engine,
        )

    def dispose(self) -> None:
        """Erase the owner's private key from memory"""
        self._owner.dispose()

    async def _send(
        self,
        transactions: List[Transaction],
        config: Optional[OperationConfig],
        enforce_max_fee: bool,
    ) -> OperationResult:
        self._ensure_not_disposed()
        options = (config or OperationConfig()).resolve(self._account.config)
        token_address = options.paymaster_token.address

        fee = await self._account._get_user_operation_gas_cost(
            transactions,
            paymaster_token_address=token_address,
            amount_to_approve=MAX_UINT256,
        )

        if enforce_max_fee and options.transfer_max_fee is not None and fee >= options.transfer_max_fee:
            raise FeeCeilingExceededError(fee, options.transfer_max_fee)

        user_operation_hash = await self._send_user_operation(
            transactions,
            paymaster_token_address=token_address,
            amount_to_approve=apply_fee_tolerance(fee),
        )
        return OperationResult(hash=user_operation_hash, fee=fee)

    async def _send_user_operation(
        self,
        transactions: List[Transaction],
        paymaster_token_address: str,
        amount_to_approve: int,
    ) -> str:
        engine = await self._account._get_engine()
        valid_until = int(time.time()) + OPERATION_VALIDITY_SECONDS

        try:
            operation = await self._account._create_operation(
                transactions, paymaster_token_address, amount_to_approve, valid_until
            )
            signed_operation = await engine.sign_operation(operation, self._owner)
            user_operation_hash = await engine.submit_operation(signed_operation)
        except Exception as e:
            if is_sponsor_insufficiency(e):
                raise PaymasterRepaymentError() from e
            raise

        logger.info(f"UserOperation submitted: {user_operation_hash} (approved {amount_to_approve})")
        return user_operation_hash

    def _ensure_not_disposed(self) -> None:
        if self._owner.is_disposed:
            raise DisposedAccountError("The wallet account has been disposed.")
