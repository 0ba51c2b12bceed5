"""
Gas price estimation for UserOperations
"""

import logging
from dataclasses import dataclass

from erc4337_wallet.chain import ChainReader

logger = logging.getLogger(__name__)


@dataclass
class GasPrices:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


class FeeEstimator:
    """Supplies max fee and priority fee per gas from the connected node"""

    def __init__(self, chain: ChainReader):
        self.chain = chain

    async def estimate_gas_prices(self) -> GasPrices:
        fee_data = await self.chain.get_fee_data()
        logger.info(
            f"Gas prices: maxFeePerGas={fee_data.max_fee_per_gas}, "
            f"maxPriorityFeePerGas={fee_data.max_priority_fee_per_gas}"
        )
        return GasPrices(
            max_fee_per_gas=fee_data.max_fee_per_gas,
            max_priority_fee_per_gas=fee_data.max_priority_fee_per_gas
        )
