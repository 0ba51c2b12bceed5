"""
Tests for the Safe4337Module protocol engine
"""

import time

import pytest
from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from erc4337_wallet.config import ENTRYPOINT_V07, SALT_NONCE, SAFE_DEPLOYMENTS
from erc4337_wallet.exceptions import ConfigurationError
from erc4337_wallet.fee_estimator import FeeEstimator
from erc4337_wallet.keys import KeyedAccount
from erc4337_wallet.safe4337 import (
    CREATE_PROXY_WITH_NONCE_SELECTOR,
    Safe4337Pack,
    encode_safe_initializer,
    predict_safe_address,
)
from erc4337_wallet.user_operations import (
    DELEGATE_CALL,
    ERC20_APPROVE_SELECTOR,
    Transaction,
    encode_multi_send,
)

from tests.conftest import (
    MNEMONIC,
    OWNER_ADDRESS_0,
    OWNER_ADDRESS_1,
    PAYMASTER_ADDRESS,
    RECIPIENT_ADDRESS,
    TOKEN_ADDRESS,
    USER_OPERATION_HASH,
    TRANSACTION_HASH,
    FakeChain,
    make_config,
)

DEPLOYMENT = SAFE_DEPLOYMENTS["0.3.0"]
# Stand-in proxy creation code; only its hash matters for address prediction
PROXY_CREATION_CODE = bytes.fromhex("608060405234801561001057600080fd5b50")


class FakeBundler:
    def __init__(self):
        self.estimated = []
        self.sent = []
        self.records = {}

    async def estimate_user_operation_gas(self, user_operation, dummy_signature):
        self.estimated.append((user_operation, dummy_signature))
        return {
            "callGasLimit": hex(40_000),
            "verificationGasLimit": hex(30_000),
            "preVerificationGas": hex(20_000),
            "paymasterVerificationGasLimit": hex(7_000),
            "paymasterPostOpGasLimit": hex(3_000),
        }

    async def send_user_operation(self, signed_operation):
        self.sent.append(signed_operation)
        return USER_OPERATION_HASH

    async def get_user_operation_by_hash(self, user_operation_hash):
        return self.records.get(user_operation_hash)


class FakePaymaster:
    def __init__(self):
        self.calls = []

    async def get_paymaster_stub_data(self, user_operation, token_address):
        self.calls.append(("stub", token_address))
        return {
            "paymaster": PAYMASTER_ADDRESS,
            "paymasterData": "0x00",
            "paymasterVerificationGasLimit": hex(50_000),
            "paymasterPostOpGasLimit": hex(50_000),
        }

    async def get_paymaster_data(self, user_operation, token_address):
        self.calls.append(("data", token_address))
        return {"paymaster": PAYMASTER_ADDRESS, "paymasterData": "0xc0ffee"}

    async def get_token_exchange_rate(self, token_address):
        return 2 * 10**18


@pytest.fixture
def safe_chain():
    chain = FakeChain(chain_id=84532, max_fee_per_gas=10)
    chain.call_results[DEPLOYMENT["safe_proxy_factory"]] = encode(["bytes"], [PROXY_CREATION_CODE])
    chain.call_results[ENTRYPOINT_V07] = encode(["uint256"], [7])
    return chain


async def make_pack(chain, owner=OWNER_ADDRESS_0):
    pack = await Safe4337Pack.init(owner, make_config(), chain)
    pack.bundler = FakeBundler()
    pack.paymaster = FakePaymaster()
    return pack


class TestAddressPrediction:
    def test_prediction_is_deterministic_per_owner(self):
        def predict(owner):
            initializer = encode_safe_initializer([owner], 1, DEPLOYMENT)
            return predict_safe_address(
                DEPLOYMENT["safe_proxy_factory"], DEPLOYMENT["safe_singleton"],
                initializer, SALT_NONCE, PROXY_CREATION_CODE
            )

        assert predict(OWNER_ADDRESS_0) == predict(OWNER_ADDRESS_0)
        assert predict(OWNER_ADDRESS_0) != predict(OWNER_ADDRESS_1)
        assert Web3.is_checksum_address(predict(OWNER_ADDRESS_0))

    @pytest.mark.asyncio
    async def test_init_resolves_address(self, safe_chain):
        pack = await make_pack(safe_chain)
        initializer = encode_safe_initializer([OWNER_ADDRESS_0], 1, DEPLOYMENT)
        expected = predict_safe_address(
            DEPLOYMENT["safe_proxy_factory"], DEPLOYMENT["safe_singleton"],
            initializer, SALT_NONCE, PROXY_CREATION_CODE
        )
        assert await pack.get_address() == expected

    @pytest.mark.asyncio
    async def test_init_rejects_chain_mismatch(self, safe_chain):
        safe_chain.chain_id = 1
        with pytest.raises(ConfigurationError, match="chain 1"):
            await Safe4337Pack.init(OWNER_ADDRESS_0, make_config(), safe_chain)


class TestCreateOperation:
    @pytest.mark.asyncio
    async def test_undeployed_account_with_paymaster_approval(self, safe_chain):
        pack = await make_pack(safe_chain)
        transfer = Transaction(to=TOKEN_ADDRESS, data=b"\x01\x02")

        operation = await pack.create_operation(
            [transfer],
            fee_estimator=FeeEstimator(safe_chain),
            paymaster_token_address=TOKEN_ADDRESS,
            amount_to_approve=1234,
            valid_until=99,
        )
        user_op = operation.user_operation

        assert user_op.sender == pack.address
        assert user_op.nonce == 7
        assert user_op.max_fee_per_gas == 10
        assert operation.valid_until == 99
        assert operation.entry_point == ENTRYPOINT_V07

        # Counterfactual deployment through the proxy factory
        assert user_op.factory == DEPLOYMENT["safe_proxy_factory"]
        assert user_op.factory_data[:4] == CREATE_PROXY_WITH_NONCE_SELECTOR

        # Estimated limits replace the stub ones and final paymaster data is applied
        assert user_op.call_gas_limit == 40_000
        assert user_op.paymaster_verification_gas_limit == 7_000
        assert user_op.paymaster_post_op_gas_limit == 3_000
        assert user_op.paymaster == PAYMASTER_ADDRESS
        assert user_op.paymaster_data == bytes.fromhex("c0ffee")
        assert pack.paymaster.calls == [("stub", TOKEN_ADDRESS), ("data", TOKEN_ADDRESS)]

        # approve(paymaster, amount) runs first in a MultiSend batch
        to, _, data, operation_type = decode(["address", "uint256", "bytes", "uint8"], user_op.call_data[4:])
        assert to.lower() == DEPLOYMENT["multi_send"].lower()
        assert operation_type == DELEGATE_CALL
        approve_data = ERC20_APPROVE_SELECTOR + encode(["address", "uint256"], [PAYMASTER_ADDRESS, 1234])
        assert data == encode_multi_send([Transaction(to=TOKEN_ADDRESS, data=approve_data), transfer])

    @pytest.mark.asyncio
    async def test_deployed_account_without_approval(self, safe_chain):
        pack = await make_pack(safe_chain)
        safe_chain.code[pack.address] = b"\x60\x80"

        operation = await pack.create_operation(
            [Transaction(to=RECIPIENT_ADDRESS, value=1)],
            fee_estimator=FeeEstimator(safe_chain),
            paymaster_token_address=TOKEN_ADDRESS,
        )

        assert operation.user_operation.factory is None
        assert operation.user_operation.init_code == b""
        _, dummy_signature = pack.bundler.estimated[0]
        assert len(dummy_signature) == 12 + 65


class TestSigning:
    @pytest.mark.asyncio
    async def test_signature_recovers_to_owner(self, safe_chain):
        owner = KeyedAccount(MNEMONIC, "0'/0/0")
        pack = await make_pack(safe_chain, owner.address)
        valid_until = int(time.time()) + 120
        operation = await pack.create_operation(
            [Transaction(to=RECIPIENT_ADDRESS)],
            fee_estimator=FeeEstimator(safe_chain),
            paymaster_token_address=TOKEN_ADDRESS,
            valid_until=valid_until,
        )

        signed = await pack.sign_operation(operation, owner)

        assert int.from_bytes(signed.signature[:6], "big") == 0
        assert int.from_bytes(signed.signature[6:12], "big") == valid_until
        message = encode_typed_data(full_message=pack.get_typed_data(operation))
        assert Account.recover_message(message, signature=signed.signature[12:]) == owner.address

    @pytest.mark.asyncio
    async def test_submit_and_resolve(self, safe_chain):
        pack = await make_pack(safe_chain)
        operation = await pack.create_operation(
            [Transaction(to=RECIPIENT_ADDRESS)],
            fee_estimator=FeeEstimator(safe_chain),
            paymaster_token_address=TOKEN_ADDRESS,
        )
        signed = await pack.sign_operation(operation, KeyedAccount(MNEMONIC, "0'/0/0"))

        assert await pack.submit_operation(signed) == USER_OPERATION_HASH
        assert await pack.resolve_transaction_hash(USER_OPERATION_HASH) is None

        pack.bundler.records[USER_OPERATION_HASH] = {"transactionHash": TRANSACTION_HASH}
        assert await pack.resolve_transaction_hash(USER_OPERATION_HASH) == TRANSACTION_HASH
