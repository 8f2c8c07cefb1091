"""Ed25519 wallet signature utilities using PyNaCl.

Wallet addresses are base58 Ed25519 public keys, and signatures are base58
encoded, so any Solana wallet's ``signMessage`` can authenticate requests.
"""

import hashlib
import secrets
from datetime import UTC, datetime

import base58
from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey
from solders.pubkey import Pubkey


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 keypair. Returns (private_key_hex, wallet_address)."""
    signing_key = SigningKey.generate()
    private_hex = signing_key.encode(encoder=HexEncoder).decode()
    return private_hex, wallet_address(private_hex)


def wallet_address(private_key_hex: str) -> str:
    """Base58 wallet address for a hex-encoded Ed25519 seed."""
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    return str(Pubkey(bytes(signing_key.verify_key)))


def build_signature_message(
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bytes:
    """Build the message to sign: timestamp\\nmethod\\npath\\nsha256(body)."""
    body_hash = hashlib.sha256(body).hexdigest()
    return f"{timestamp}\n{method}\n{path}\n{body_hash}".encode()


def sign_request(
    private_key_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> str:
    """Sign a request and return the base58 signature."""
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    signed = signing_key.sign(build_signature_message(timestamp, method, path, body))
    return base58.b58encode(signed.signature).decode()


def verify_signature(
    wallet: str,
    signature_b58: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bool:
    """Verify a wallet's signature over a request. Returns False on any failure."""
    try:
        verify_key = VerifyKey(bytes(Pubkey.from_string(wallet)))
        signature = base58.b58decode(signature_b58)
        verify_key.verify(build_signature_message(timestamp, method, path, body), signature)
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def generate_nonce() -> str:
    """Generate a cryptographically secure nonce."""
    return secrets.token_hex(16)


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 30) -> bool:
    """Check if a timezone-aware ISO timestamp is within the allowed window."""
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    return abs((datetime.now(UTC) - ts).total_seconds()) <= max_age_seconds
