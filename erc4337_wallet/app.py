"""
Smart Wallet HTTP Service

A small Flask service over one WalletManager that exposes:
1. Account, balance and fee-rate lookups
2. Fee quotes for token transfers paid in the paymaster token
3. Token transfers, accepted only with an operator Ed25519 request signature
"""

import asyncio
import concurrent.futures
import logging
import os
import threading
import time
from typing import Any, Coroutine, Dict, Optional

from flask import Flask, Response, abort, jsonify, request
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from web3 import Web3

from erc4337_wallet.config import WalletConfig
from erc4337_wallet.exceptions import (
    AllowanceResetRequiredError,
    ConfigurationError,
    FeeCeilingExceededError,
    InsufficientSponsorFundsError,
    JsonRpcError,
    WalletCallTimeoutError,
    WalletError,
)
from erc4337_wallet.user_operations import TransferOptions
from erc4337_wallet.wallet_manager import WalletManager

logger = logging.getLogger(__name__)

# Constants
SIGNATURE_HEADER = "X-Signature-Ed25519"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

# Signed requests older than this are rejected
MAX_REQUEST_AGE_SECONDS = 300

# Upper bound for one wallet call issued from a request
WALLET_CALL_TIMEOUT = 120

# Server defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080


def get_operator_public_key() -> str:
    """Get the operator's Ed25519 public key from environment variable"""
    key = os.environ.get('OPERATOR_PUBLIC_KEY')
    if not key:
        raise ConfigurationError("OPERATOR_PUBLIC_KEY environment variable is required")
    return key


def verify_request_signature(public_key: str, signature: str, timestamp: str, body: str) -> None:
    """Verify an operator request signature over timestamp + body"""
    try:
        age = abs(time.time() - int(timestamp))
    except ValueError:
        abort(400, description="Invalid request timestamp")
    if age > MAX_REQUEST_AGE_SECONDS:
        logger.warning("Stale request timestamp")
        abort(401, description="Request timestamp too old")

    try:
        verify_key = VerifyKey(key=bytes.fromhex(public_key))
        signed_message = f"{timestamp}{body}".encode("utf-8")
        verify_key.verify(smessage=signed_message, signature=bytes.fromhex(signature))
    except (BadSignatureError, ValueError):
        logger.warning("Invalid request signature")
        abort(401, description="Invalid request signature")


def parse_transfer_request(payload: Optional[Dict[str, Any]]) -> TransferOptions:
    """Parse and validate {token, recipient, amount}"""
    if not payload:
        abort(400, description="JSON body required")

    token = payload.get("token")
    recipient = payload.get("recipient")
    if not token or not Web3.is_address(token):
        abort(400, description="Invalid token address")
    if not recipient or not Web3.is_address(recipient):
        abort(400, description="Invalid recipient address")

    try:
        amount = int(payload.get("amount"))
    except (TypeError, ValueError):
        abort(400, description="Amount must be an integer in the token's base unit")
    if amount <= 0:
        abort(400, description="Amount must be greater than 0")

    return TransferOptions(token=token, recipient=recipient, amount=amount)


def error_status(error: WalletError) -> int:
    """HTTP status for a wallet error"""
    if isinstance(error, (FeeCeilingExceededError, AllowanceResetRequiredError, InsufficientSponsorFundsError)):
        return 422
    if isinstance(error, WalletCallTimeoutError):
        return 504
    if isinstance(error, JsonRpcError):
        return 502
    if isinstance(error, ConfigurationError):
        return 503
    return 400


class WalletLoop:
    """Runs wallet coroutines on one dedicated event loop thread"""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()

    def run(self, coroutine: Coroutine, timeout: float = WALLET_CALL_TIMEOUT) -> Any:
        """Wait for a coroutine; on timeout it is cancelled so it cannot submit later"""
        future = asyncio.run_coroutine_threadsafe(coroutine, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.error(f"Wallet call cancelled after {timeout}s")
            raise WalletCallTimeoutError(
                f"Wallet call timed out after {timeout}s; submission state unknown, check the account before retrying"
            )

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)


class WalletRequestHandler:
    """Handles HTTP requests against one wallet"""

    def __init__(
        self,
        manager: Optional[WalletManager] = None,
        operator_public_key: Optional[str] = None,
        call_timeout: float = WALLET_CALL_TIMEOUT,
    ):
        self.app = Flask(__name__)
        self.manager = manager or WalletManager(_require_seed_phrase(), WalletConfig.from_env())
        self.operator_public_key = operator_public_key or get_operator_public_key()
        self.call_timeout = call_timeout
        self.wallet_loop = WalletLoop()
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up Flask routes"""
        self.app.route("/health", methods=["GET"])(self.health_check)
        self.app.route("/fee-rates", methods=["GET"])(self.get_fee_rates)
        self.app.route("/accounts/<int:index>", methods=["GET"])(self.get_account)
        self.app.route("/accounts/<int:index>/quote-transfer", methods=["POST"])(self.quote_transfer)
        self.app.route("/accounts/<int:index>/transfer", methods=["POST"])(self.transfer)
        self.app.route("/operations/<user_operation_hash>/receipt", methods=["GET"])(self.get_receipt)
        self.app.register_error_handler(WalletError, self.handle_wallet_error)

    def health_check(self):
        """Dead-simple health check endpoint"""
        return "OK", 200

    def get_fee_rates(self):
        fee_rates = self.wallet_loop.run(self.manager.get_fee_rates(), self.call_timeout)
        return jsonify({"normal": str(fee_rates.normal), "fast": str(fee_rates.fast)})

    def get_account(self, index: int):
        return jsonify(self.wallet_loop.run(self._describe_account(index), self.call_timeout))

    def quote_transfer(self, index: int):
        options = parse_transfer_request(request.get_json(silent=True))
        quote = self.wallet_loop.run(self._quote_transfer(index, options), self.call_timeout)
        return jsonify({"fee": str(quote.fee)})

    def transfer(self, index: int):
        """Execute a token transfer; requires an operator signature"""
        verify_request_signature(
            self.operator_public_key,
            request.headers.get(SIGNATURE_HEADER, ""),
            request.headers.get(TIMESTAMP_HEADER, ""),
            request.get_data(as_text=True)
        )
        options = parse_transfer_request(request.get_json(silent=True))
        logger.info(f"Transfer of {options.amount} {options.token} to {options.recipient} from account {index}")

        result = self.wallet_loop.run(self._transfer(index, options), self.call_timeout)
        return jsonify({"hash": result.hash, "fee": str(result.fee), "status": "submitted"})

    def get_receipt(self, user_operation_hash: str):
        index = request.args.get("account", default=0, type=int)
        receipt = self.wallet_loop.run(self._get_receipt(index, user_operation_hash), self.call_timeout)
        if receipt is None:
            return jsonify({"hash": user_operation_hash, "status": "pending"})
        return Response(Web3.to_json(receipt), mimetype="application/json")

    def handle_wallet_error(self, error: WalletError):
        logger.error(f"Wallet error: {error}")
        return jsonify({"error": str(error), "type": type(error).__name__}), error_status(error)

    async def _describe_account(self, index: int) -> Dict[str, Any]:
        account = await self.manager.get_account(index)
        return {
            "index": index,
            "path": account.path,
            "owner": account.owner_address,
            "address": await account.get_address(),
            "balance": str(await account.get_balance()),
            "paymaster_token_balance": str(await account.get_paymaster_token_balance()),
        }

    async def _quote_transfer(self, index: int, options: TransferOptions):
        account = await self.manager.get_account(index)
        return await account.quote_transfer(options)

    async def _transfer(self, index: int, options: TransferOptions):
        account = await self.manager.get_account(index)
        return await account.transfer(options)

    async def _get_receipt(self, index: int, user_operation_hash: str):
        account = await self.manager.get_account(index)
        return await account.get_transaction_receipt(user_operation_hash)

    def run(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        """Run the Flask application"""
        self.app.run(host=host, port=port)


def _require_seed_phrase() -> str:
    seed_phrase = os.environ.get("WALLET_SEED_PHRASE")
    if not seed_phrase:
        raise ConfigurationError("WALLET_SEED_PHRASE environment variable is required")
    return seed_phrase


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    handler = WalletRequestHandler()
    handler.run(host=os.environ.get("HOST", DEFAULT_HOST), port=int(os.environ.get("PORT", DEFAULT_PORT)))


if __name__ == "__main__":
    main()
