"""Wallet identities with an explicit signing capability.

Read-only paths accept any ``LedgerIdentity``; authorizing paths call
``require_signer`` first, so a missing signer fails before anything is built.
"""

from pathlib import Path

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from app.errors import SignerUnavailable
from app.services.derivation import parse_pubkey


class LedgerIdentity:
    """A wallet known only by its public key."""

    can_sign: bool = False
    can_read_only: bool = True

    def __init__(self, pubkey: "str | Pubkey") -> None:
        self.pubkey = parse_pubkey(pubkey, "wallet")

    async def sign_message(self, message: bytes) -> Signature:
        raise SignerUnavailable(f"Wallet {self.pubkey} has no signer attached")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.pubkey})"


class KeypairSigner(LedgerIdentity):
    """Signs with a local keypair (scripts, operator wallets, tests)."""

    can_sign = True

    def __init__(self, keypair: Keypair) -> None:
        super().__init__(keypair.pubkey())
        self._keypair = keypair

    @classmethod
    def generate(cls) -> "KeypairSigner":
        return cls(Keypair())

    @classmethod
    def from_seed(cls, seed: bytes) -> "KeypairSigner":
        return cls(Keypair.from_seed(seed))

    @classmethod
    def from_secret_key(cls, secret: bytes) -> "KeypairSigner":
        """64-byte Solana secret key: 32-byte seed followed by the public key."""
        if len(secret) != 64:
            raise ValueError(f"Secret key must be 64 bytes, got {len(secret)}")
        signer = cls.from_seed(secret[:32])
        if bytes(signer.pubkey) != secret[32:]:
            raise ValueError("Secret key does not match its embedded public key")
        return signer

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairSigner":
        return cls.from_secret_key(bytes(Keypair.from_base58_string(secret)))

    @classmethod
    def from_json_file(cls, path: str | Path) -> "KeypairSigner":
        """Load a Solana CLI keypair file (JSON array of 64 bytes)."""
        return cls.from_secret_key(bytes(Keypair.from_json(Path(path).read_text())))

    async def sign_message(self, message: bytes) -> Signature:
        return self._keypair.sign_message(message)


def as_identity(value: "LedgerIdentity | str | Pubkey") -> LedgerIdentity:
    if isinstance(value, LedgerIdentity):
        return value
    return LedgerIdentity(value)


def require_signer(identity: "LedgerIdentity | str | Pubkey | None") -> LedgerIdentity:
    if identity is None:
        raise SignerUnavailable()
    identity = as_identity(identity)
    if not identity.can_sign:
        raise SignerUnavailable(f"Wallet {identity.pubkey} cannot authorize transactions")
    return identity
