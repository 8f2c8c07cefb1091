"""Ledger operations client for the escrow settlement program.

``EscrowLedgerClient`` owns the preflight rules, amount conversion and the
retry policy; a ``LedgerGateway`` does the actual RPC. Every gateway call is
wrapped in a timeout and retried with exponential backoff on transient
failure. Signing is never retried: a prepared transaction is re-sent
byte-for-byte, so a resend cannot double-apply.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, TypeVar

from solders.hash import Hash
from solders.pubkey import Pubkey

from app.config import settings
from app.errors import (
    AccessDenied,
    CannotCancelAfterApproval,
    EscrowNotFound,
    InsufficientBalance,
    InvalidInput,
    LedgerUnreachable,
    MilestoneAlreadyApproved,
    MilestoneAlreadyClaimed,
    MilestoneNotApproved,
)
from app.services import program
from app.services.derivation import default_program_id, derive_escrow_address
from app.services.program import (
    LAMPORTS_PER_SOL,
    MILESTONE_COUNT,
    EscrowAccountState,
    EscrowInstruction,
)
from app.services.signer import LedgerIdentity, as_identity, require_signer

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_lamports(amount: Any) -> int:
    """Convert a SOL amount to lamports. Sub-lamport precision is rejected."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInput(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise InvalidInput(f"Invalid amount: {amount!r}")
    lamports = value * LAMPORTS_PER_SOL
    if lamports != lamports.to_integral_value():
        raise InvalidInput(f"Amount {amount} has more than 9 decimal places")
    return int(lamports)


def from_lamports(lamports: int) -> Decimal:
    return Decimal(lamports) / LAMPORTS_PER_SOL


def validate_milestone_amounts(amounts: Sequence[Any]) -> list[int]:
    if amounts is None or len(amounts) != MILESTONE_COUNT:
        raise InvalidInput(f"Exactly {MILESTONE_COUNT} milestone amounts are required")
    lamports = [to_lamports(a) for a in amounts]
    if any(a <= 0 for a in lamports):
        raise InvalidInput("All milestone amounts must be greater than 0")
    return lamports


def validate_milestone_index(index: Any) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < MILESTONE_COUNT:
        raise InvalidInput(f"Milestone index must be 0..{MILESTONE_COUNT - 1}, got {index!r}")
    return index


def derived_status(approved: bool, claimed: bool) -> str:
    if claimed:
        return "claimed"
    if approved:
        return "approved"
    return "pending"


@dataclass(frozen=True)
class PreparedTransaction:
    signature: str
    raw: bytes
    instruction: EscrowInstruction


@dataclass(frozen=True)
class LedgerMilestone:
    index: int
    amount: Decimal
    amount_lamports: int
    approved: bool
    claimed: bool
    derived_status: str


@dataclass(frozen=True)
class FundResult:
    address: str
    tx_ref: str
    bump: int


@dataclass(frozen=True)
class FundingVerification:
    verified: bool
    balance: Decimal
    milestones: list[LedgerMilestone]
    account: EscrowAccountState


@dataclass(frozen=True)
class CancelResult:
    tx_ref: str
    refunded: Decimal


class LedgerGateway(Protocol):
    """RPC surface the client needs from the settlement ledger."""

    async def get_balance(self, address: Pubkey) -> int: ...

    async def get_escrow(self, address: Pubkey) -> EscrowAccountState | None: ...

    async def latest_blockhash(self) -> Hash: ...

    async def prepare(
        self, instruction: EscrowInstruction, signer: LedgerIdentity, blockhash: Hash
    ) -> PreparedTransaction: ...

    async def send(self, prepared: PreparedTransaction) -> str: ...

    async def confirm(self, signature: str) -> None: ...

    async def signature_status(self, signature: str) -> bool | None: ...


def milestones_of(account: EscrowAccountState) -> list[LedgerMilestone]:
    return [
        LedgerMilestone(
            index=i,
            amount=from_lamports(amount),
            amount_lamports=amount,
            approved=account.approved[i],
            claimed=account.claimed[i],
            derived_status=derived_status(account.approved[i], account.claimed[i]),
        )
        for i, amount in enumerate(account.milestone_amounts)
    ]


class EscrowLedgerClient:
    def __init__(
        self,
        gateway: LedgerGateway,
        program_id: Pubkey | None = None,
        *,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
    ) -> None:
        self.gateway = gateway
        self.program_id = program_id or default_program_id()
        self.timeout = timeout if timeout is not None else settings.ledger_timeout_seconds
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.ledger_max_attempts)
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.ledger_backoff_base_seconds
        )

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------

    async def _call(self, label: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run a gateway call with a timeout and bounded retries."""
        for attempt in range(1, self.max_attempts):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except (LedgerUnreachable, asyncio.TimeoutError) as exc:
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "Ledger %s attempt %d/%d failed (%s), retrying in %.2fs",
                    label, attempt, self.max_attempts, exc, delay,
                )
                await asyncio.sleep(delay)
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout)
        except (LedgerUnreachable, asyncio.TimeoutError) as exc:
            raise LedgerUnreachable(
                f"Ledger {label} failed after {self.max_attempts} attempts: {exc}"
            ) from exc

    async def _execute(self, instruction: EscrowInstruction, signer: LedgerIdentity) -> str:
        blockhash = await self._call("blockhash", self.gateway.latest_blockhash)
        prepared = await self.gateway.prepare(instruction, signer, blockhash)
        await self._call("send", lambda: self.gateway.send(prepared))
        await self._call("confirm", lambda: self.gateway.confirm(prepared.signature))
        logger.info(
            "Confirmed %s on escrow %s (tx: %s)",
            instruction.name, instruction.escrow, prepared.signature,
        )
        return prepared.signature

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def escrow_address(self, payer: "LedgerIdentity | str | Pubkey", job_id: str) -> tuple[Pubkey, int]:
        return derive_escrow_address(as_identity(payer).pubkey, job_id, self.program_id)

    async def fetch_escrow(
        self, payer: "LedgerIdentity | str | Pubkey", job_id: str
    ) -> EscrowAccountState:
        address, _ = self.escrow_address(payer, job_id)
        account = await self._call("get_escrow", lambda: self.gateway.get_escrow(address))
        if account is None:
            raise EscrowNotFound(f"No escrow account for job {job_id} at {address}")
        return account

    async def verify_funding(
        self,
        payer: "LedgerIdentity | str | Pubkey",
        job_id: str,
        expected_total: Any = None,
    ) -> FundingVerification:
        account = await self.fetch_escrow(payer, job_id)
        verified = account.lamports >= account.total_amount
        if expected_total is not None:
            verified = verified and account.lamports >= to_lamports(expected_total)
        return FundingVerification(
            verified=verified,
            balance=from_lamports(account.lamports),
            milestones=milestones_of(account),
            account=account,
        )

    async def status(
        self, payer: "LedgerIdentity | str | Pubkey", job_id: str
    ) -> list[LedgerMilestone]:
        return milestones_of(await self.fetch_escrow(payer, job_id))

    async def verify_signature(self, tx_ref: str) -> bool:
        """True iff the transaction landed on the ledger without error."""
        if not tx_ref:
            return False
        return await self._call(
            "signature_status", lambda: self.gateway.signature_status(tx_ref)
        ) is True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def fund(
        self,
        payer: "LedgerIdentity | None",
        job_id: str,
        payee: "LedgerIdentity | str | Pubkey",
        amounts: Sequence[Any],
    ) -> FundResult:
        """Create the escrow account and lock all milestone amounts in one transaction."""
        signer = require_signer(payer)
        lamports = validate_milestone_amounts(amounts)
        payee_key = as_identity(payee).pubkey
        address, bump = self.escrow_address(signer, job_id)
        total = sum(lamports)

        balance = await self._call("get_balance", lambda: self.gateway.get_balance(signer.pubkey))
        required = total + to_lamports(settings.funding_fee_buffer)
        if balance < required:
            raise InsufficientBalance(
                f"Insufficient balance: {from_lamports(balance)} SOL < "
                f"{from_lamports(required)} SOL (stake plus fee buffer)"
            )

        instruction = program.create_job_escrow(address, signer.pubkey, job_id, payee_key, lamports)
        tx_ref = await self._execute(instruction, signer)

        account = await self._call("get_escrow", lambda: self.gateway.get_escrow(address))
        if account is None:
            raise EscrowNotFound(f"Escrow account {address} missing after confirmed funding")
        floor = total - to_lamports(settings.funding_rent_tolerance)
        if account.lamports < floor:
            raise InsufficientBalance(
                f"Escrow {address} holds {from_lamports(account.lamports)} SOL, "
                f"expected at least {from_lamports(total)} SOL"
            )

        logger.info(
            "Funded escrow %s for job %s with %s SOL", address, job_id, from_lamports(total)
        )
        return FundResult(address=str(address), tx_ref=tx_ref, bump=bump)

    async def approve(self, payer: "LedgerIdentity | None", job_id: str, index: int) -> str:
        signer = require_signer(payer)
        index = validate_milestone_index(index)
        account = await self.fetch_escrow(signer, job_id)
        if account.payer != signer.pubkey:
            raise AccessDenied("Only the payer can approve milestones")
        if account.approved[index]:
            raise MilestoneAlreadyApproved(f"Milestone {index} is already approved")
        return await self._execute(
            program.approve_milestone(account.address, signer.pubkey, index), signer
        )

    async def claim(
        self,
        payee: "LedgerIdentity | None",
        job_id: str,
        payer: "LedgerIdentity | str | Pubkey",
        index: int,
    ) -> str:
        signer = require_signer(payee)
        index = validate_milestone_index(index)
        account = await self.fetch_escrow(payer, job_id)
        if account.payee != signer.pubkey:
            raise AccessDenied("Only the payee can claim milestones")
        if account.claimed[index]:
            raise MilestoneAlreadyClaimed(f"Milestone {index} is already claimed")
        if not account.approved[index]:
            raise MilestoneNotApproved(f"Milestone {index} is not approved")
        return await self._execute(
            program.claim_milestone(account.address, signer.pubkey, index), signer
        )

    async def cancel(self, payer: "LedgerIdentity | None", job_id: str) -> CancelResult:
        """Close the escrow and refund the unclaimed balance to the payer."""
        signer = require_signer(payer)
        account = await self.fetch_escrow(signer, job_id)
        if account.payer != signer.pubkey:
            raise AccessDenied("Only the payer can cancel the escrow")
        if any(account.approved):
            raise CannotCancelAfterApproval()
        unclaimed = sum(
            amount for amount, claimed in zip(account.milestone_amounts, account.claimed)
            if not claimed
        )
        tx_ref = await self._execute(program.cancel_job(account.address, signer.pubkey), signer)
        return CancelResult(tx_ref=tx_ref, refunded=from_lamports(unclaimed))
