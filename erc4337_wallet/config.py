"""
Configuration for ERC-4337 smart wallet operations
"""

import os
from dataclasses import dataclass
from typing import Any, Optional, Union

from web3 import Web3

from erc4337_wallet.exceptions import ConfigurationError

# Network constants
ENTRYPOINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

# Fixed salt so that one owner always maps to one Safe address
SALT_NONCE = 0x69B348339EEA4ED93F9D11931C3B894C8F9D8C7663A053024B11CB7EB4E5A1F6

DEFAULT_SAFE_MODULES_VERSION = "0.3.0"

# Paymaster approval headroom, in percent of the quoted fee
FEE_TOLERANCE_COEFFICIENT = 120

# Seconds a submitted operation stays valid
OPERATION_VALIDITY_SECONDS = 2 * 60

USDT_MAINNET_ADDRESS = "0xdAC17F958D2ee523a2206206994597C13D831ec7"

MAX_UINT256 = 2**256 - 1

# Safe 4337 module deployments (EntryPoint v0.7), keyed by module version
SAFE_DEPLOYMENTS = {
    "0.3.0": {
        "safe_4337_module": "0x75cf11467937ce3F2f357CE24ffc3DBF8fD5c226",
        "safe_module_setup": "0x2dd68b007B46fBe91B9A7c3EDa5A7a1063cB5b47",
        "safe_singleton": "0x29fcB43b46531BcA003ddC8FCB67FFE91900C762",
        "safe_proxy_factory": "0x4e1DCf7AD4e460CfD30791CCC4F9c8a4f820ec67",
        "multi_send": "0x38869bf66a61cF6bDB996A6aE40D5853Fd43B526",
    },
}


@dataclass(frozen=True)
class PaymasterToken:
    """ERC-20 token used to pay the paymaster"""
    address: str

    def __post_init__(self):
        object.__setattr__(self, "address", Web3.to_checksum_address(self.address))


@dataclass(frozen=True)
class WalletConfig:
    """Configuration shared by every account derived from one wallet"""

    chain_id: int
    bundler_url: str
    paymaster_url: str
    paymaster_address: str
    paymaster_token: Union[PaymasterToken, str]
    provider: Union[str, Any, None] = None
    entry_point_address: str = ENTRYPOINT_V07
    safe_modules_version: str = DEFAULT_SAFE_MODULES_VERSION
    transfer_max_fee: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ConfigurationError(f"Invalid chain id: {self.chain_id!r}")
        if not self.bundler_url:
            raise ConfigurationError("A bundler url is required")
        if not self.paymaster_url:
            raise ConfigurationError("A paymaster url is required")
        if not self.paymaster_address or not Web3.is_address(self.paymaster_address):
            raise ConfigurationError(f"Invalid paymaster address: {self.paymaster_address!r}")
        if isinstance(self.paymaster_token, str):
            object.__setattr__(self, "paymaster_token", PaymasterToken(self.paymaster_token))
        object.__setattr__(self, "paymaster_address", Web3.to_checksum_address(self.paymaster_address))
        object.__setattr__(self, "entry_point_address", Web3.to_checksum_address(self.entry_point_address))
        if self.transfer_max_fee is not None:
            object.__setattr__(self, "transfer_max_fee", int(self.transfer_max_fee))

    @classmethod
    def from_env(cls) -> "WalletConfig":
        """Build the configuration from environment variables"""
        transfer_max_fee = os.environ.get("TRANSFER_MAX_FEE")
        return cls(
            chain_id=int(_require_env("CHAIN_ID")),
            provider=os.environ.get("RPC_URL"),
            bundler_url=_require_env("BUNDLER_URL"),
            paymaster_url=_require_env("PAYMASTER_URL"),
            paymaster_address=_require_env("PAYMASTER_ADDRESS"),
            paymaster_token=PaymasterToken(_require_env("PAYMASTER_TOKEN_ADDRESS")),
            entry_point_address=os.environ.get("ENTRY_POINT_ADDRESS", ENTRYPOINT_V07),
            safe_modules_version=os.environ.get("SAFE_MODULES_VERSION", DEFAULT_SAFE_MODULES_VERSION),
            transfer_max_fee=int(transfer_max_fee) if transfer_max_fee else None,
        )


@dataclass(frozen=True)
class OperationConfig:
    """Per-call overrides; unset fields fall back to the account's WalletConfig"""
    paymaster_token: Union[PaymasterToken, str, None] = None
    transfer_max_fee: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.paymaster_token, str):
            object.__setattr__(self, "paymaster_token", PaymasterToken(self.paymaster_token))

    def resolve(self, config: WalletConfig) -> "OperationConfig":
        return OperationConfig(
            paymaster_token=self.paymaster_token or config.paymaster_token,
            transfer_max_fee=(
                self.transfer_max_fee if self.transfer_max_fee is not None else config.transfer_max_fee
            ),
        )


def get_safe_deployment(version: str) -> dict:
    """Return Safe contract addresses for a module version"""
    if version not in SAFE_DEPLOYMENTS:
        raise ConfigurationError(
            f"Unsupported safe modules version '{version}'. Available: {list(SAFE_DEPLOYMENTS)}"
        )
    return SAFE_DEPLOYMENTS[version]


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigurationError(f"{name} environment variable is required")
    return value
