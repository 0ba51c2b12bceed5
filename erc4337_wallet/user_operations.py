"""
UserOperation types and calldata encoding for Safe smart accounts
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Sequence, Union

from eth_abi import encode
from eth_abi.packed import encode_packed
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)

# Safe operation types
CALL = 0
DELEGATE_CALL = 1

# Function selectors
EXECUTE_USER_OP_SELECTOR = Web3.keccak(text="executeUserOp(address,uint256,bytes,uint8)")[:4]
MULTI_SEND_SELECTOR = Web3.keccak(text="multiSend(bytes)")[:4]
ERC20_TRANSFER_SELECTOR = Web3.keccak(text="transfer(address,uint256)")[:4]
ERC20_APPROVE_SELECTOR = Web3.keccak(text="approve(address,uint256)")[:4]


@dataclass(frozen=True)
class Transaction:
    """A single call executed by the smart account"""
    to: str
    value: int = 0
    data: bytes = b""

    def __post_init__(self):
        object.__setattr__(self, "to", Web3.to_checksum_address(self.to))
        object.__setattr__(self, "value", int(self.value))
        object.__setattr__(self, "data", bytes(HexBytes(self.data or b"")))


TransactionLike = Union[Transaction, Mapping]


@dataclass(frozen=True)
class TransferOptions:
    token: str
    recipient: str
    amount: int


@dataclass(frozen=True)
class ApproveOptions:
    token: str
    spender: str
    amount: int


def as_transactions(tx: Union[TransactionLike, Sequence[TransactionLike]]) -> List[Transaction]:
    """Normalize one transaction or a batch of them into a list of Transaction"""
    items = list(tx) if isinstance(tx, (list, tuple)) else [tx]
    if not items:
        raise ValueError("At least one transaction is required")
    return [
        item if isinstance(item, Transaction)
        else Transaction(to=item["to"], value=item.get("value", 0), data=item.get("data", b""))
        for item in items
    ]


def encode_erc20_transfer(recipient: str, amount: int) -> bytes:
    return ERC20_TRANSFER_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(recipient), int(amount)]
    )


def encode_erc20_approve(spender: str, amount: int) -> bytes:
    return ERC20_APPROVE_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(spender), int(amount)]
    )


def get_transfer_transaction(options: TransferOptions) -> Transaction:
    """Build the token transfer(recipient, amount) call"""
    logger.info(f"Created token transfer: {options.amount} of {options.token} to {options.recipient}")
    return Transaction(
        to=options.token,
        value=0,
        data=encode_erc20_transfer(options.recipient, options.amount)
    )


def get_approve_transaction(options: ApproveOptions) -> Transaction:
    return Transaction(
        to=options.token,
        value=0,
        data=encode_erc20_approve(options.spender, options.amount)
    )


def encode_execute_user_op(to: str, value: int, data: bytes, operation: int = CALL) -> bytes:
    """Encode Safe4337Module executeUserOp(address,uint256,bytes,uint8) calldata"""
    return EXECUTE_USER_OP_SELECTOR + encode(
        ["address", "uint256", "bytes", "uint8"],
        [Web3.to_checksum_address(to), value, data, operation]
    )


def encode_multi_send(transactions: Sequence[Transaction]) -> bytes:
    """Encode MultiSend multiSend(bytes) calldata for a batch of plain calls"""
    packed = b"".join(
        encode_packed(
            ["uint8", "address", "uint256", "uint256", "bytes"],
            [CALL, tx.to, tx.value, len(tx.data), tx.data]
        )
        for tx in transactions
    )
    return MULTI_SEND_SELECTOR + encode(["bytes"], [packed])


def encode_call_data(transactions: Sequence[Transaction], multi_send_address: str) -> bytes:
    """Single calls go straight through executeUserOp; batches delegatecall MultiSend"""
    if len(transactions) == 1:
        tx = transactions[0]
        return encode_execute_user_op(tx.to, tx.value, tx.data, CALL)
    return encode_execute_user_op(multi_send_address, 0, encode_multi_send(transactions), DELEGATE_CALL)


@dataclass
class UserOperation:
    """ERC-4337 UserOperation (EntryPoint v0.7, unpacked)"""
    sender: str
    nonce: int
    call_data: bytes
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    factory: Optional[str] = None
    factory_data: bytes = b""
    paymaster: Optional[str] = None
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0
    paymaster_data: bytes = b""

    @property
    def init_code(self) -> bytes:
        if not self.factory:
            return b""
        return bytes(HexBytes(self.factory)) + self.factory_data

    @property
    def paymaster_and_data(self) -> bytes:
        if not self.paymaster:
            return b""
        return (
            bytes(HexBytes(self.paymaster))
            + self.paymaster_verification_gas_limit.to_bytes(16, "big")
            + self.paymaster_post_op_gas_limit.to_bytes(16, "big")
            + self.paymaster_data
        )


@dataclass
class SafeOperation:
    """UserOperation plus the Safe validity window"""
    user_operation: UserOperation
    entry_point: str
    valid_after: int = 0
    valid_until: int = 0

    def with_user_operation(self, **changes) -> "SafeOperation":
        return replace(self, user_operation=replace(self.user_operation, **changes))


@dataclass
class SignedUserOperation:
    """Wrapper holding a SafeOperation and its signature"""
    safe_operation: SafeOperation
    signature: bytes


def encode_safe_signature(valid_after: int, valid_until: int, signatures: bytes) -> bytes:
    """Safe4337Module signature layout: uint48 validAfter || uint48 validUntil || owner signatures"""
    return encode_packed(["uint48", "uint48", "bytes"], [valid_after, valid_until, signatures])


def _hex(value: Optional[bytes]) -> str:
    return "0x" + value.hex() if value else "0x"


def convert_user_operation_to_bundler_format(
    user_op: Union[UserOperation, SignedUserOperation],
    signature: bytes = None
) -> Dict:
    """Convert a UserOperation to the bundler JSON-RPC format (EntryPoint v0.7)"""
    # Handle SignedUserOperation wrapper
    if isinstance(user_op, SignedUserOperation):
        op = user_op.safe_operation.user_operation
        signature = user_op.signature
    else:
        op = user_op

    rpc_dict = {
        "sender": op.sender,
        "nonce": hex(op.nonce),
        "callData": _hex(op.call_data),
        "callGasLimit": hex(op.call_gas_limit),
        "verificationGasLimit": hex(op.verification_gas_limit),
        "preVerificationGas": hex(op.pre_verification_gas),
        "maxFeePerGas": hex(op.max_fee_per_gas),
        "maxPriorityFeePerGas": hex(op.max_priority_fee_per_gas),
        "signature": _hex(signature),
    }

    # Factory fields only for accounts that are not deployed yet
    if op.factory:
        rpc_dict.update({
            "factory": op.factory,
            "factoryData": _hex(op.factory_data)
        })

    if op.paymaster:
        rpc_dict.update({
            "paymaster": op.paymaster,
            "paymasterVerificationGasLimit": hex(op.paymaster_verification_gas_limit),
            "paymasterPostOpGasLimit": hex(op.paymaster_post_op_gas_limit),
            "paymasterData": _hex(op.paymaster_data)
        })

    return rpc_dict
