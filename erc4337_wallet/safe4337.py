"""
Safe smart accounts operated through the Safe4337Module (EntryPoint v0.7)
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

from eth_abi import decode, encode
from hexbytes import HexBytes
from web3 import Web3

from erc4337_wallet.bundler import BundlerClient, PaymasterClient
from erc4337_wallet.chain import ChainReader
from erc4337_wallet.config import SALT_NONCE, WalletConfig, get_safe_deployment
from erc4337_wallet.engine import Signer
from erc4337_wallet.exceptions import ConfigurationError
from erc4337_wallet.fee_estimator import FeeEstimator
from erc4337_wallet.user_operations import (
    SafeOperation,
    SignedUserOperation,
    Transaction,
    UserOperation,
    encode_call_data,
    encode_erc20_approve,
    encode_safe_signature,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SETUP_SELECTOR = Web3.keccak(text="setup(address[],uint256,address,bytes,address,address,uint256,address)")[:4]
ENABLE_MODULES_SELECTOR = Web3.keccak(text="enableModules(address[])")[:4]
CREATE_PROXY_WITH_NONCE_SELECTOR = Web3.keccak(text="createProxyWithNonce(address,bytes,uint256)")[:4]
PROXY_CREATION_CODE_SELECTOR = Web3.keccak(text="proxyCreationCode()")[:4]
GET_NONCE_SELECTOR = Web3.keccak(text="getNonce(address,uint192)")[:4]

# Well-formed r || s || v placeholder; the module reports a failed check instead of reverting
DUMMY_ECDSA_SIGNATURE = b"\xff" * 64 + b"\x1c"

SAFE_OPERATION_TYPE = [
    {"name": "safe", "type": "address"},
    {"name": "nonce", "type": "uint256"},
    {"name": "initCode", "type": "bytes"},
    {"name": "callData", "type": "bytes"},
    {"name": "verificationGasLimit", "type": "uint128"},
    {"name": "callGasLimit", "type": "uint128"},
    {"name": "preVerificationGas", "type": "uint256"},
    {"name": "maxPriorityFeePerGas", "type": "uint128"},
    {"name": "maxFeePerGas", "type": "uint128"},
    {"name": "paymasterAndData", "type": "bytes"},
    {"name": "validAfter", "type": "uint48"},
    {"name": "validUntil", "type": "uint48"},
    {"name": "entryPoint", "type": "address"},
]


def encode_safe_initializer(owners: Sequence[str], threshold: int, deployment: Dict[str, str]) -> bytes:
    """Safe.setup() calldata enabling the 4337 module and using it as fallback handler"""
    module = deployment["safe_4337_module"]
    enable_modules = ENABLE_MODULES_SELECTOR + encode(["address[]"], [[module]])
    return SETUP_SELECTOR + encode(
        ["address[]", "uint256", "address", "bytes", "address", "address", "uint256", "address"],
        [
            [Web3.to_checksum_address(owner) for owner in owners],
            threshold,
            deployment["safe_module_setup"],
            enable_modules,
            module,
            ZERO_ADDRESS,
            0,
            ZERO_ADDRESS,
        ]
    )


def predict_safe_address(
    factory: str,
    singleton: str,
    initializer: bytes,
    salt_nonce: int,
    proxy_creation_code: bytes
) -> str:
    """CREATE2 address of a proxy deployed by SafeProxyFactory.createProxyWithNonce"""
    salt = Web3.keccak(Web3.keccak(initializer) + salt_nonce.to_bytes(32, "big"))
    deployment_code = proxy_creation_code + encode(["uint256"], [int(singleton, 16)])
    digest = Web3.keccak(b"\xff" + bytes(HexBytes(factory)) + salt + Web3.keccak(deployment_code))
    return Web3.to_checksum_address("0x" + digest[12:].hex())


class Safe4337Pack:
    """Builds, signs and submits UserOperations for one counterfactual Safe"""

    def __init__(
        self,
        config: WalletConfig,
        chain: ChainReader,
        bundler: BundlerClient,
        paymaster: PaymasterClient,
        deployment: Dict[str, str],
        address: str,
        initializer: bytes,
    ):
        self.config = config
        self.chain = chain
        self.bundler = bundler
        self.paymaster = paymaster
        self.deployment = deployment
        self.address = address
        self.initializer = initializer
        self._deployed = False

    @classmethod
    async def init(cls, owner_address: str, config: WalletConfig, chain: ChainReader) -> "Safe4337Pack":
        """Resolve the Safe address for a single owner; costs a few node round trips"""
        deployment = get_safe_deployment(config.safe_modules_version)

        chain_id = await chain.get_chain_id()
        if chain_id != config.chain_id:
            raise ConfigurationError(
                f"Provider is connected to chain {chain_id}, but the wallet is configured for {config.chain_id}"
            )

        initializer = encode_safe_initializer([owner_address], 1, deployment)
        factory = deployment["safe_proxy_factory"]
        (proxy_creation_code,) = decode(["bytes"], await chain.call(factory, PROXY_CREATION_CODE_SELECTOR))
        address = predict_safe_address(
            factory, deployment["safe_singleton"], initializer, SALT_NONCE, proxy_creation_code
        )
        logger.info(f"Safe account for owner {owner_address}: {address}")

        return cls(
            config=config,
            chain=chain,
            bundler=BundlerClient(config.bundler_url, config.entry_point_address),
            paymaster=PaymasterClient(config.paymaster_url, config.entry_point_address, config.chain_id),
            deployment=deployment,
            address=address,
            initializer=initializer,
        )

    async def get_address(self) -> str:
        return self.address

    async def create_operation(
        self,
        transactions: Sequence[Transaction],
        *,
        fee_estimator: FeeEstimator,
        paymaster_token_address: str,
        amount_to_approve: Optional[int] = None,
        valid_until: int = 0,
    ) -> SafeOperation:
        """Assemble an unsigned, gas-estimated and paymaster-sponsored operation"""
        transactions = list(transactions)
        if amount_to_approve is not None:
            # The paymaster pulls its fee in the token, so it must be approved in the same batch
            transactions.insert(0, Transaction(
                to=paymaster_token_address,
                value=0,
                data=encode_erc20_approve(self.config.paymaster_address, amount_to_approve)
            ))

        nonce = await self._get_nonce()
        factory, factory_data = await self._get_factory_fields()
        gas_prices = await fee_estimator.estimate_gas_prices()

        operation = SafeOperation(
            user_operation=UserOperation(
                sender=self.address,
                nonce=nonce,
                call_data=encode_call_data(transactions, self.deployment["multi_send"]),
                max_fee_per_gas=gas_prices.max_fee_per_gas,
                max_priority_fee_per_gas=gas_prices.max_priority_fee_per_gas,
                factory=factory,
                factory_data=factory_data,
            ),
            entry_point=self.config.entry_point_address,
            valid_until=valid_until,
        )
        return await self._estimate_gas(operation, paymaster_token_address)

    async def sign_operation(self, operation: SafeOperation, signer: Signer) -> SignedUserOperation:
        owner_signature = await signer.sign_typed_data(self.get_typed_data(operation))
        return SignedUserOperation(
            safe_operation=operation,
            signature=encode_safe_signature(operation.valid_after, operation.valid_until, owner_signature)
        )

    async def submit_operation(self, signed_operation: SignedUserOperation) -> str:
        return await self.bundler.send_user_operation(signed_operation)

    async def get_token_exchange_rate(self, token_address: str) -> int:
        return await self.paymaster.get_token_exchange_rate(token_address)

    async def resolve_transaction_hash(self, user_operation_hash: str) -> Optional[str]:
        record = await self.bundler.get_user_operation_by_hash(user_operation_hash)
        if not record:
            return None
        return record.get("transactionHash")

    def get_typed_data(self, operation: SafeOperation) -> dict:
        """EIP-712 SafeOp payload verified by the Safe4337Module"""
        user_op = operation.user_operation
        return {
            "types": {
                "EIP712Domain": [
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "SafeOp": SAFE_OPERATION_TYPE,
            },
            "primaryType": "SafeOp",
            "domain": {
                "chainId": self.config.chain_id,
                "verifyingContract": self.deployment["safe_4337_module"],
            },
            "message": {
                "safe": user_op.sender,
                "nonce": user_op.nonce,
                "initCode": user_op.init_code,
                "callData": user_op.call_data,
                "verificationGasLimit": user_op.verification_gas_limit,
                "callGasLimit": user_op.call_gas_limit,
                "preVerificationGas": user_op.pre_verification_gas,
                "maxPriorityFeePerGas": user_op.max_priority_fee_per_gas,
                "maxFeePerGas": user_op.max_fee_per_gas,
                "paymasterAndData": user_op.paymaster_and_data,
                "validAfter": operation.valid_after,
                "validUntil": operation.valid_until,
                "entryPoint": operation.entry_point,
            },
        }

    async def _estimate_gas(self, operation: SafeOperation, token_address: str) -> SafeOperation:
        """Paymaster stub data -> bundler gas estimate -> final paymaster data"""
        stub = await self.paymaster.get_paymaster_stub_data(operation.user_operation, token_address)
        operation = operation.with_user_operation(**_paymaster_fields(stub))

        dummy_signature = encode_safe_signature(
            operation.valid_after, operation.valid_until, DUMMY_ECDSA_SIGNATURE
        )
        estimate = await self.bundler.estimate_user_operation_gas(operation.user_operation, dummy_signature)
        operation = operation.with_user_operation(
            call_gas_limit=int(estimate["callGasLimit"], 16),
            verification_gas_limit=int(estimate["verificationGasLimit"], 16),
            pre_verification_gas=int(estimate["preVerificationGas"], 16),
            **_paymaster_fields(estimate)
        )

        sponsorship = await self.paymaster.get_paymaster_data(operation.user_operation, token_address)
        operation = operation.with_user_operation(**_paymaster_fields(sponsorship))

        user_op = operation.user_operation
        logger.info(
            f"Estimated UserOperation: callGasLimit={user_op.call_gas_limit}, "
            f"verificationGasLimit={user_op.verification_gas_limit}, "
            f"preVerificationGas={user_op.pre_verification_gas}, "
            f"paymaster={user_op.paymaster}"
        )
        return operation

    async def _get_nonce(self) -> int:
        """Current nonce for the Safe from the EntryPoint (key 0)"""
        data = GET_NONCE_SELECTOR + encode(["address", "uint192"], [self.address, 0])
        (nonce,) = decode(["uint256"], await self.chain.call(self.config.entry_point_address, data))
        logger.info(f"Current nonce: {nonce}")
        return nonce

    async def _get_factory_fields(self) -> Tuple[Optional[str], bytes]:
        """Factory and factory data for the first operation of an undeployed Safe"""
        if not self._deployed:
            self._deployed = len(await self.chain.get_code(self.address)) > 0
        if self._deployed:
            return None, b""

        factory_data = CREATE_PROXY_WITH_NONCE_SELECTOR + encode(
            ["address", "bytes", "uint256"],
            [self.deployment["safe_singleton"], self.initializer, SALT_NONCE]
        )
        return self.deployment["safe_proxy_factory"], factory_data


def _paymaster_fields(result: Dict) -> Dict:
    """Map paymaster fields of a JSON-RPC result onto UserOperation attributes"""
    fields = {}
    if result.get("paymaster"):
        fields["paymaster"] = Web3.to_checksum_address(result["paymaster"])
    if "paymasterData" in result:
        fields["paymaster_data"] = bytes(HexBytes(result["paymasterData"]))
    if result.get("paymasterVerificationGasLimit"):
        fields["paymaster_verification_gas_limit"] = int(result["paymasterVerificationGasLimit"], 16)
    if result.get("paymasterPostOpGasLimit"):
        fields["paymaster_post_op_gas_limit"] = int(result["paymasterPostOpGasLimit"], 16)
    return fields
