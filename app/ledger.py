from collections.abc import AsyncGenerator

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment

from app.config import settings
from app.services.derivation import default_program_id
from app.services.ledger import EscrowLedgerClient
from app.services.solana_rpc import SolanaGateway

solana_client = AsyncClient(
    settings.resolved_rpc_url,
    commitment=Commitment(settings.solana_commitment),
    timeout=settings.ledger_timeout_seconds,
)


def build_ledger_client(client: AsyncClient = solana_client) -> EscrowLedgerClient:
    gateway = SolanaGateway(client, default_program_id(), commitment=settings.solana_commitment)
    return EscrowLedgerClient(gateway)


async def get_ledger() -> AsyncGenerator[EscrowLedgerClient, None]:
    yield build_ledger_client()
