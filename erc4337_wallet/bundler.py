"""
Bundler and paymaster JSON-RPC clients
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from erc4337_wallet.exceptions import BundlerError, JsonRpcError, PaymasterError
from erc4337_wallet.user_operations import SignedUserOperation, UserOperation, convert_user_operation_to_bundler_format

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over HTTP"""

    error_class = JsonRpcError

    def __init__(self, url: str):
        self.url = url

    async def request(self, method: str, params: List) -> Any:
        """Run the blocking HTTP call off the event loop"""
        return await asyncio.to_thread(self._make_request, method, params)

    def _make_request(self, method: str, params: List) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": 1
        }

        response = requests.post(
            self.url,
            json=payload,
            headers={'Content-Type': 'application/json'},
            timeout=REQUEST_TIMEOUT
        )

        # Bundlers may report AA errors with a non-200 status, so read the body first
        try:
            result = response.json()
        except ValueError:
            logger.error(f"HTTP error: {response.status_code}")
            response.raise_for_status()
            raise

        if 'error' in result:
            error = result['error']
            message = error.get('message', 'Unknown error')
            logger.error(f"{method} failed: {message}")
            raise self.error_class(message, code=error.get('code'), data=error.get('data'))

        response.raise_for_status()
        return result.get('result')


class BundlerClient(JsonRpcClient):
    """Client for interacting with ERC-4337 bundlers"""

    error_class = BundlerError

    def __init__(self, url: str, entry_point_address: str):
        super().__init__(url)
        self.entry_point_address = entry_point_address

    async def estimate_user_operation_gas(self, user_operation: UserOperation, dummy_signature: bytes) -> Dict:
        """Estimate gas limits for a UserOperation signed with a placeholder signature"""
        user_op_dict = convert_user_operation_to_bundler_format(user_operation, dummy_signature)
        return await self.request("eth_estimateUserOperationGas", [user_op_dict, self.entry_point_address])

    async def send_user_operation(self, signed_user_op: SignedUserOperation) -> str:
        """Send a SignedUserOperation to the bundler and return its hash"""
        logger.info("Sending UserOperation to bundler...")

        user_op_dict = convert_user_operation_to_bundler_format(signed_user_op)
        user_operation_hash = await self.request("eth_sendUserOperation", [user_op_dict, self.entry_point_address])

        logger.info(f"UserOperation sent successfully: {user_operation_hash}")
        return user_operation_hash

    async def get_user_operation_by_hash(self, user_operation_hash: str) -> Optional[Dict]:
        """Return the bundler's record of an operation, or None if it is unknown"""
        return await self.request("eth_getUserOperationByHash", [user_operation_hash])


class PaymasterClient(JsonRpcClient):
    """Client for ERC-7677 paymaster services with ERC-20 token quotes"""

    error_class = PaymasterError

    def __init__(self, url: str, entry_point_address: str, chain_id: int):
        super().__init__(url)
        self.entry_point_address = entry_point_address
        self.chain_id = chain_id

    async def get_paymaster_stub_data(self, user_operation: UserOperation, token_address: str) -> Dict:
        """Placeholder paymaster fields and gas limits used while estimating"""
        return await self.request("pm_getPaymasterStubData", self._params(user_operation, token_address))

    async def get_paymaster_data(self, user_operation: UserOperation, token_address: str) -> Dict:
        """Final paymaster fields for an estimated UserOperation"""
        return await self.request("pm_getPaymasterData", self._params(user_operation, token_address))

    async def get_token_exchange_rate(self, token_address: str) -> int:
        """Token units per native unit, as a 1e18 fixed-point integer"""
        result = await self.request(
            "pimlico_getTokenQuotes",
            [{"tokens": [token_address]}, self.entry_point_address, hex(self.chain_id)]
        )
        quotes = result.get("quotes", []) if result else []
        if not quotes:
            raise PaymasterError(f"No exchange rate quoted for token {token_address}")
        return int(quotes[0]["exchangeRate"], 16)

    def _params(self, user_operation: UserOperation, token_address: str) -> List:
        return [
            convert_user_operation_to_bundler_format(user_operation),
            self.entry_point_address,
            hex(self.chain_id),
            {"token": token_address}
        ]
