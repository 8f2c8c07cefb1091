"""Wire format of the escrow settlement program (Anchor, Borsh encoded).

Instruction data is an 8-byte discriminator, ``sha256("global:<name>")[:8]``,
followed by the Borsh-encoded arguments. Escrow accounts start with
``sha256("account:Escrow")[:8]``.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

from construct import Array, Bytes, ConstructError, Flag, Int8ul, Int32ul, Int64ul, PascalString, Struct
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from app.errors import PROGRAM_ERRORS, EscrowError, EscrowNotFound, InsufficientBalance, LedgerRejected

MILESTONE_COUNT = 3
LAMPORTS_PER_SOL = 1_000_000_000


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


CREATE_JOB_ESCROW = "create_job_escrow"
APPROVE_MILESTONE = "approve_milestone"
CLAIM_MILESTONE = "claim_milestone"
CANCEL_JOB = "cancel_job"

INSTRUCTION_DISCRIMINATORS: dict[str, bytes] = {
    name: _discriminator("global", name)
    for name in (CREATE_JOB_ESCROW, APPROVE_MILESTONE, CLAIM_MILESTONE, CANCEL_JOB)
}
ESCROW_ACCOUNT_DISCRIMINATOR = _discriminator("account", "Escrow")

# Borsh: little-endian integers, u32 length-prefixed strings, one byte per bool
BorshString = PascalString(Int32ul, "utf8")

ESCROW_ACCOUNT_LAYOUT = Struct(
    "recruiter" / Bytes(32),
    "freelancer" / Bytes(32),
    "job_id" / BorshString,
    "milestone_amounts" / Array(MILESTONE_COUNT, Int64ul),
    "milestones_approved" / Array(MILESTONE_COUNT, Flag),
    "milestones_claimed" / Array(MILESTONE_COUNT, Flag),
    "bump" / Int8ul,
)

CREATE_JOB_ESCROW_ARGS = Struct(
    "job_id" / BorshString,
    "freelancer" / Bytes(32),
    "milestone_amounts" / Array(MILESTONE_COUNT, Int64ul),
)
MILESTONE_INDEX_ARGS = Struct("milestone_index" / Int8ul)


@dataclass(frozen=True)
class EscrowAccountState:
    """Decoded escrow account plus the account's lamport balance."""

    address: Pubkey
    payer: Pubkey
    payee: Pubkey
    job_id: str
    milestone_amounts: tuple[int, ...]
    approved: tuple[bool, ...]
    claimed: tuple[bool, ...]
    bump: int
    lamports: int
    owner: Pubkey | None = None

    @property
    def total_amount(self) -> int:
        return sum(self.milestone_amounts)


@dataclass(frozen=True)
class EscrowInstruction:
    """One escrow program call in domain terms.

    ``signer`` is the wallet that must authorize it; ``args`` holds the
    decoded arguments (job_id/payee/milestone_amounts or milestone_index).
    """

    name: str
    escrow: Pubkey
    signer: Pubkey
    args: dict[str, Any] = field(default_factory=dict)

    def data(self) -> bytes:
        prefix = INSTRUCTION_DISCRIMINATORS[self.name]
        if self.name == CREATE_JOB_ESCROW:
            return prefix + CREATE_JOB_ESCROW_ARGS.build({
                "job_id": self.args["job_id"],
                "freelancer": bytes(self.args["payee"]),
                "milestone_amounts": list(self.args["milestone_amounts"]),
            })
        if self.name in (APPROVE_MILESTONE, CLAIM_MILESTONE):
            return prefix + MILESTONE_INDEX_ARGS.build(
                {"milestone_index": self.args["milestone_index"]}
            )
        return prefix

    def accounts(self) -> list[AccountMeta]:
        escrow = AccountMeta(self.escrow, is_signer=False, is_writable=True)
        if self.name == CREATE_JOB_ESCROW:
            return [
                escrow,
                AccountMeta(self.signer, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ]
        # approve only reads the recruiter; claim and cancel move lamports to the signer
        return [
            escrow,
            AccountMeta(self.signer, is_signer=True, is_writable=self.name != APPROVE_MILESTONE),
        ]

    def to_instruction(self, program_id: Pubkey) -> Instruction:
        return Instruction(program_id, self.data(), self.accounts())


def create_job_escrow(
    escrow: Pubkey, payer: Pubkey, job_id: str, payee: Pubkey, amounts: list[int]
) -> EscrowInstruction:
    return EscrowInstruction(
        CREATE_JOB_ESCROW, escrow, payer,
        {"job_id": job_id, "payee": payee, "milestone_amounts": tuple(amounts)},
    )


def approve_milestone(escrow: Pubkey, payer: Pubkey, index: int) -> EscrowInstruction:
    return EscrowInstruction(APPROVE_MILESTONE, escrow, payer, {"milestone_index": index})


def claim_milestone(escrow: Pubkey, payee: Pubkey, index: int) -> EscrowInstruction:
    return EscrowInstruction(CLAIM_MILESTONE, escrow, payee, {"milestone_index": index})


def cancel_job(escrow: Pubkey, payer: Pubkey) -> EscrowInstruction:
    return EscrowInstruction(CANCEL_JOB, escrow, payer)


def decode_escrow_account(
    address: Pubkey, data: bytes, lamports: int, owner: Pubkey | None = None
) -> EscrowAccountState:
    if data[:8] != ESCROW_ACCOUNT_DISCRIMINATOR:
        raise EscrowNotFound(f"Account {address} is not an escrow account")
    try:
        parsed = ESCROW_ACCOUNT_LAYOUT.parse(data[8:])
    except ConstructError as exc:
        raise EscrowNotFound(f"Account {address} does not decode as an escrow account") from exc
    return EscrowAccountState(
        address=address,
        payer=Pubkey(parsed.recruiter),
        payee=Pubkey(parsed.freelancer),
        job_id=parsed.job_id,
        milestone_amounts=tuple(int(a) for a in parsed.milestone_amounts),
        approved=tuple(bool(a) for a in parsed.milestones_approved),
        claimed=tuple(bool(c) for c in parsed.milestones_claimed),
        bump=int(parsed.bump),
        lamports=lamports,
        owner=owner,
    )


_CUSTOM_ERROR = re.compile(r"custom program error: (0x[0-9a-fA-F]+)")
_ANCHOR_ERROR = re.compile(r"Error Number: (\d+)")
# Custom(6003) in Rust debug output, {"Custom": 6003} in JSON, InstructionErrorCustom(code=6003) from solders
_INSTRUCTION_ERROR = re.compile(r"""Custom['"]?\s*[:(]\s*(?:code=)?(\d+)""")


def program_error_code(message: str) -> int | None:
    """Extract an Anchor custom error code from an RPC error message or logs."""
    match = _ANCHOR_ERROR.search(message)
    if match:
        return int(match.group(1))
    match = _CUSTOM_ERROR.search(message)
    if match:
        return int(match.group(1), 16)
    match = _INSTRUCTION_ERROR.search(message)
    if match:
        return int(match.group(1))
    return None


def program_error(message: str) -> EscrowError:
    """Map a failed transaction's message to the matching typed error."""
    code = program_error_code(message)
    if code is not None and code in PROGRAM_ERRORS:
        return PROGRAM_ERRORS[code](f"Settlement program error {code}: {message}")
    lowered = message.lower()
    if "insufficient lamports" in lowered or "insufficient funds" in lowered:
        return InsufficientBalance(message)
    return LedgerRejected(message)
