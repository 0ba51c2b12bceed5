"""
Error types raised by the ERC-4337 smart wallet
"""

from typing import Any, Optional

# Revert code of the EntryPoint when the paymaster's postOp cannot charge the account
SPONSOR_REPAYMENT_MARKER = "AA50"


class WalletError(Exception):
    """Base class for wallet errors"""
    pass


class ConfigurationError(WalletError, ValueError):
    """The wallet is missing configuration or a chain connection"""
    pass


class DisposedAccountError(WalletError):
    """The account's private key has been erased"""
    pass


class InsufficientSponsorFundsError(WalletError):
    """The smart account cannot cover the paymaster's worst-case charge"""
    pass


class PaymasterSimulationError(InsufficientSponsorFundsError):
    """Detected while quoting, before anything was signed"""

    def __init__(self, message: str = "Simulation failed: not enough funds in the safe account to repay the paymaster."):
        super().__init__(message)


class PaymasterRepaymentError(InsufficientSponsorFundsError):
    """Detected while assembling, signing or submitting a real operation"""

    def __init__(self, message: str = "Not enough funds on the safe account to repay the paymaster."):
        super().__init__(message)


class FeeCeilingExceededError(WalletError):
    """The quoted fee reached the configured transfer_max_fee"""

    def __init__(self, fee: int, max_fee: int):
        super().__init__(
            f"Exceeded maximum fee cost for transfer operation: fee {fee} >= max fee {max_fee}."
        )
        self.fee = fee
        self.max_fee = max_fee


class AllowanceResetRequiredError(WalletError):
    """USDT requires resetting a non-zero allowance to zero first"""

    def __init__(self, token: str, spender: str, current_allowance: int):
        super().__init__(
            "USDT requires the current allowance to be reset to 0 before setting a new non-zero value. "
            'Please send an "approve" transaction with an amount of 0 first.'
        )
        self.token = token
        self.spender = spender
        self.current_allowance = current_allowance


class WalletCallTimeoutError(WalletError):
    """A wallet call was cancelled after its deadline; an operation may or may not have been submitted"""
    pass


class JsonRpcError(WalletError):
    """Error object returned by a JSON-RPC service"""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class BundlerError(JsonRpcError):
    pass


class PaymasterError(JsonRpcError):
    pass


def is_sponsor_insufficiency(error: Exception) -> bool:
    """Whether an engine error reports that the paymaster could not be repaid"""
    return SPONSOR_REPAYMENT_MARKER in str(error)
