"""
BIP-44 owner keys for smart accounts
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

from erc4337_wallet.exceptions import DisposedAccountError

logger = logging.getLogger(__name__)

# m / purpose' / coin_type'
BIP44_ETH_PREFIX = "m/44'/60'/"


@dataclass
class KeyPair:
    public_key: bytes
    private_key: Optional[bytes]


def to_seed_bytes(seed: Union[str, bytes, bytearray]) -> bytes:
    """Turn a BIP-39 mnemonic (or raw seed bytes) into seed bytes"""
    if isinstance(seed, str):
        return seed_from_mnemonic(seed, passphrase="")
    return bytes(seed)


class KeyedAccount:
    """One keypair derived at one BIP-44 path"""

    def __init__(self, seed: Union[str, bytes, bytearray], path: str):
        self._path = BIP44_ETH_PREFIX + path
        self._private_key: Optional[bytearray] = bytearray(key_from_seed(to_seed_bytes(seed), self._path))

        key = keys.PrivateKey(bytes(self._private_key))
        self._public_key = key.public_key.to_bytes()
        self._address = key.public_key.to_checksum_address()

    @property
    def path(self) -> str:
        return self._path

    @property
    def index(self) -> int:
        return int(self._path.split("/")[-1].rstrip("'"))

    @property
    def address(self) -> str:
        return self._address

    @property
    def key_pair(self) -> KeyPair:
        private_key = bytes(self._private_key) if self._private_key is not None else None
        return KeyPair(public_key=self._public_key, private_key=private_key)

    @property
    def is_disposed(self) -> bool:
        return self._private_key is None

    async def sign(self, message: str) -> str:
        """Sign a message (EIP-191 personal_sign) and return the hex signature"""
        signed = Account.sign_message(encode_defunct(text=message), private_key=self._require_key())
        return "0x" + bytes(signed.signature).hex()

    async def verify(self, message: str, signature: str) -> bool:
        """Check that a signature over message was produced by this key"""
        try:
            signer = Account.recover_message(encode_defunct(text=message), signature=signature)
        except (BadSignature, ValidationError, ValueError):
            return False
        return signer == self._address

    async def sign_typed_data(self, typed_data: dict) -> bytes:
        """Sign EIP-712 typed data and return the 65-byte r || s || v signature"""
        signed = Account.sign_typed_data(self._require_key(), full_message=typed_data)
        return bytes(signed.signature)

    def dispose(self) -> None:
        """Overwrite the private key in memory; safe to call more than once"""
        if self._private_key is None:
            return
        for i in range(len(self._private_key)):
            self._private_key[i] = 0
        self._private_key = None
        logger.info(f"Disposed owner key for {self._path}")

    def _require_key(self) -> bytes:
        if self._private_key is None:
            raise DisposedAccountError("The wallet account has been disposed.")
        return bytes(self._private_key)
