"""Solana RPC gateway for the escrow program.

Wraps ``solana.rpc.async_api.AsyncClient``. Transport failures and RPC-level
errors on reads surface as ``LedgerUnreachable`` so the client's retry policy
applies; a rejected ``sendTransaction`` is mapped to the program's typed errors.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from app.errors import EscrowError, EscrowNotFound, InvalidInput, LedgerUnreachable
from app.services.ledger import PreparedTransaction
from app.services.program import (
    EscrowAccountState,
    EscrowInstruction,
    decode_escrow_account,
    program_error,
)
from app.services.signer import LedgerIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def _confirmation_rank(status: TransactionConfirmationStatus | None) -> int:
    if status == TransactionConfirmationStatus.Finalized:
        return COMMITMENT_RANK["finalized"]
    if status == TransactionConfirmationStatus.Confirmed:
        return COMMITMENT_RANK["confirmed"]
    return COMMITMENT_RANK["processed"]


def _error_text(exc: RPCException) -> str:
    """The node's error message followed by the simulation error and logs."""
    error = exc.args[0] if exc.args else None
    if error is None or isinstance(error, str):
        return str(exc)
    parts = [getattr(error, "message", None) or str(error)]
    data = getattr(error, "data", None)
    if getattr(data, "err", None) is not None:
        parts.append(str(data.err))
    parts.extend(getattr(data, "logs", None) or [])
    return "\n".join(parts)


def _transaction_failure(err: Any) -> EscrowError:
    """Map a landed transaction's error to the matching typed error."""
    code = getattr(getattr(err, "err", None), "code", None)
    if isinstance(code, int):
        return program_error(f"custom program error: {code:#x}")
    return program_error(str(err))


def _parse_signature(signature: str) -> Signature:
    try:
        return Signature.from_string(signature)
    except (ValueError, TypeError) as exc:
        raise InvalidInput(f"Invalid transaction signature: {signature!r}") from exc


class SolanaGateway:
    def __init__(
        self,
        client: AsyncClient,
        program_id: Pubkey,
        commitment: str = "confirmed",
        *,
        confirm_attempts: int = 20,
        confirm_interval: float = 0.5,
    ) -> None:
        if commitment not in COMMITMENT_RANK:
            raise ValueError(f"Unknown commitment level: {commitment}")
        self.client = client
        self.program_id = program_id
        self.commitment = Commitment(commitment)
        self.confirm_attempts = confirm_attempts
        self.confirm_interval = confirm_interval

    async def _rpc(self, method: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except (SolanaRpcException, httpx.HTTPError, OSError) as exc:
            raise LedgerUnreachable(f"RPC {method} failed: {exc}") from exc

    async def _read(self, method: str, call: Awaitable[T]) -> T:
        try:
            return await self._rpc(method, call)
        except RPCException as exc:
            raise LedgerUnreachable(f"RPC {method} failed: {_error_text(exc)}") from exc

    async def get_balance(self, address: Pubkey) -> int:
        resp = await self._read(
            "getBalance", self.client.get_balance(address, commitment=self.commitment)
        )
        return resp.value

    async def get_escrow(self, address: Pubkey) -> EscrowAccountState | None:
        resp = await self._read(
            "getAccountInfo",
            self.client.get_account_info(address, commitment=self.commitment, encoding="base64"),
        )
        account = resp.value
        if account is None:
            return None
        if account.owner != self.program_id:
            raise EscrowNotFound(
                f"Account {address} is owned by {account.owner}, not the settlement program"
            )
        return decode_escrow_account(address, bytes(account.data), account.lamports, account.owner)

    async def latest_blockhash(self) -> Hash:
        resp = await self._read(
            "getLatestBlockhash", self.client.get_latest_blockhash(commitment=self.commitment)
        )
        return resp.value.blockhash

    async def prepare(
        self, instruction: EscrowInstruction, signer: LedgerIdentity, blockhash: Hash
    ) -> PreparedTransaction:
        message = Message.new_with_blockhash(
            [instruction.to_instruction(self.program_id)], signer.pubkey, blockhash
        )
        signature = await signer.sign_message(bytes(message))
        transaction = Transaction.populate(message, [signature])
        return PreparedTransaction(
            signature=str(signature), raw=bytes(transaction), instruction=instruction
        )

    async def send(self, prepared: PreparedTransaction) -> str:
        opts = TxOpts(skip_confirmation=True, preflight_commitment=self.commitment)
        try:
            resp = await self._rpc(
                "sendTransaction", self.client.send_raw_transaction(prepared.raw, opts=opts)
            )
        except RPCException as exc:
            message = _error_text(exc)
            if "already been processed" in message:
                # A previous attempt landed; the resend carried the same bytes.
                return prepared.signature
            raise program_error(message) from exc
        return str(resp.value)

    async def _status(self, signature: str) -> Any:
        resp = await self._read(
            "getSignatureStatuses",
            self.client.get_signature_statuses(
                [_parse_signature(signature)], search_transaction_history=True
            ),
        )
        return resp.value[0]

    async def confirm(self, signature: str) -> None:
        wanted = COMMITMENT_RANK[self.commitment]
        for attempt in range(self.confirm_attempts):
            status = await self._status(signature)
            if status is not None:
                if status.err is not None:
                    logger.warning("Transaction %s failed on-chain: %s", signature, status.err)
                    raise _transaction_failure(status.err)
                if _confirmation_rank(status.confirmation_status) >= wanted:
                    return
            if attempt + 1 < self.confirm_attempts:
                await asyncio.sleep(self.confirm_interval)
        raise LedgerUnreachable(f"Transaction {signature} not confirmed at {self.commitment}")

    async def signature_status(self, signature: str) -> bool | None:
        status = await self._status(signature)
        if status is None:
            return None
        return status.err is None
