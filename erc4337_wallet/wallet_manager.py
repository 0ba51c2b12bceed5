"""
Wallet manager: derives and caches smart accounts from one seed
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from erc4337_wallet.chain import ChainReader
from erc4337_wallet.config import WalletConfig
from erc4337_wallet.engine import EngineFactory
from erc4337_wallet.exceptions import ConfigurationError, DisposedAccountError
from erc4337_wallet.fee_estimator import FeeEstimator
from erc4337_wallet.keys import to_seed_bytes
from erc4337_wallet.smart_account import SmartAccount

logger = logging.getLogger(__name__)

# Fee rate tiers, in percent of the node's max fee per gas
FEE_RATE_NORMAL_MULTIPLIER = 110
FEE_RATE_FAST_MULTIPLIER = 200


@dataclass(frozen=True)
class FeeRates:
    """Fee rates in wei per gas"""
    normal: int
    fast: int


class WalletManager:
    """Deterministic, memoized mapping from BIP-44 paths to smart accounts"""

    def __init__(
        self,
        seed: Union[str, bytes, bytearray],
        config: WalletConfig,
        *,
        chain: Optional[ChainReader] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self._seed: Optional[bytearray] = bytearray(to_seed_bytes(seed))
        self._config = config

        if chain is None and config.provider:
            chain = ChainReader.from_provider(config.provider)
        self._chain = chain
        self._fee_estimator = FeeEstimator(chain) if chain is not None else None
        self._engine_factory = engine_factory

        self._accounts: Dict[str, SmartAccount] = {}

    @property
    def config(self) -> WalletConfig:
        return self._config

    async def get_account(self, index: int = 0) -> SmartAccount:
        """Account at m/44'/60'/0'/0/{index}"""
        return await self.get_account_by_path(f"0'/0/{index}")

    async def get_account_by_path(self, path: str) -> SmartAccount:
        """Account at m/44'/60'/{path}; the same path always returns the same instance"""
        if path not in self._accounts:
            if self._seed is None:
                raise DisposedAccountError("The wallet has been disposed.")
            self._accounts[path] = SmartAccount(
                bytes(self._seed),
                path,
                self._config,
                chain=self._chain,
                fee_estimator=self._fee_estimator,
                engine_factory=self._engine_factory,
            )
            logger.info(f"Derived account {path}")
        return self._accounts[path]

    async def get_fee_rates(self) -> FeeRates:
        """Normal and fast fee rates derived from the node's current max fee per gas"""
        if self._chain is None:
            raise ConfigurationError("The wallet must be connected to a provider to get fee rates.")

        fee_data = await self._chain.get_fee_data()
        return FeeRates(
            normal=fee_data.max_fee_per_gas * FEE_RATE_NORMAL_MULTIPLIER // 100,
            fast=fee_data.max_fee_per_gas * FEE_RATE_FAST_MULTIPLIER // 100
        )

    def dispose(self) -> None:
        """Dispose every derived account and erase the seed"""
        for account in self._accounts.values():
            account.dispose()
        self._accounts.clear()

        if self._seed is not None:
            for i in range(len(self._seed)):
                self._seed[i] = 0
            self._seed = None
