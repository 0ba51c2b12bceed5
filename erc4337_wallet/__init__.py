"""
ERC-4337 Smart Wallet

Derives Safe smart accounts from one BIP-39 seed and sends UserOperations
through a bundler, with gas quoted and paid in an ERC-20 paymaster token.
"""

# Wallet and accounts
from erc4337_wallet.wallet_manager import FeeRates, WalletManager
from erc4337_wallet.smart_account import FeeQuote, OperationResult, ReadOnlySmartAccount, SmartAccount

# Configuration
from erc4337_wallet.config import OperationConfig, PaymasterToken, WalletConfig

# Individual components for advanced usage
from erc4337_wallet.bundler import BundlerClient, PaymasterClient
from erc4337_wallet.chain import ChainReader
from erc4337_wallet.engine import AccountAbstractionEngine
from erc4337_wallet.fee_estimator import FeeEstimator
from erc4337_wallet.keys import KeyedAccount
from erc4337_wallet.safe4337 import Safe4337Pack
from erc4337_wallet.user_operations import ApproveOptions, Transaction, TransferOptions

__version__ = "1.0.0"

__all__ = [
    "WalletManager",
    "FeeRates",
    "SmartAccount",
    "ReadOnlySmartAccount",
    "FeeQuote",
    "OperationResult",
    "WalletConfig",
    "PaymasterToken",
    "OperationConfig",
    "BundlerClient",
    "PaymasterClient",
    "ChainReader",
    "AccountAbstractionEngine",
    "FeeEstimator",
    "KeyedAccount",
    "Safe4337Pack",
    "Transaction",
    "TransferOptions",
    "ApproveOptions",
]
