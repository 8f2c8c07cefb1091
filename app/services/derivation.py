"""Deterministic escrow address derivation.

The settlement program derives each escrow account as a program-derived
address over ``[b"escrow", payer, sha256(job_id)]``. Anything that differs
here (digest, seed order, tag) silently yields a different, empty address,
so this module is covered by golden vectors in tests/test_derivation.py.
"""

import hashlib
from functools import lru_cache

from solders.pubkey import Pubkey

from app.config import settings
from app.errors import InvalidInput

ESCROW_SEED = b"escrow"
MAX_JOB_ID_BYTES = 50


@lru_cache(maxsize=8)
def program_id_from_string(value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as exc:
        raise InvalidInput(f"Invalid program id: {value}") from exc


def default_program_id() -> Pubkey:
    return program_id_from_string(settings.escrow_program_id)


def parse_pubkey(value: "str | Pubkey", field: str = "public key") -> Pubkey:
    """Accept a base58 string or a Pubkey; raise InvalidInput otherwise."""
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(value)
    except (ValueError, TypeError) as exc:
        raise InvalidInput(f"Invalid {field}: {value!r}") from exc


def validate_job_id(job_id: str) -> bytes:
    """Return the UTF-8 bytes of a job id, enforcing the program's bound."""
    if not isinstance(job_id, str) or not job_id:
        raise InvalidInput("Job id must be a non-empty string")
    raw = job_id.encode("utf-8")
    if len(raw) > MAX_JOB_ID_BYTES:
        raise InvalidInput(
            f"Job id is {len(raw)} bytes, maximum is {MAX_JOB_ID_BYTES}"
        )
    return raw


def hash_job_id(job_id: str) -> bytes:
    """32-byte SHA-256 digest of the job id, used as the third seed."""
    return hashlib.sha256(validate_job_id(job_id)).digest()


def escrow_seeds(payer: "str | Pubkey", job_id: str) -> list[bytes]:
    return [ESCROW_SEED, bytes(parse_pubkey(payer, "payer")), hash_job_id(job_id)]


def derive_escrow_address(
    payer: "str | Pubkey",
    job_id: str,
    program_id: Pubkey | None = None,
) -> tuple[Pubkey, int]:
    """Return (escrow address, bump) for a payer and job id."""
    return Pubkey.find_program_address(
        escrow_seeds(payer, job_id), program_id or default_program_id()
    )
