"""Test configuration and fixtures.

Supports parallel execution via pytest-xdist (pytest -n auto).
Each test gets its own SQLite database file under tmp_path, an in-memory
fakeredis instance and a fake ledger, so tests never share state.
"""

import json
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

import app.models.escrow  # noqa: F401 - register tables
import app.models.notification  # noqa: F401
from app.config import settings
from app.database import Base, get_db
from app.ledger import get_ledger
from app.main import app
from app.models.job import Job, JobStage, JobStatus
from app.models.profile import Profile, ProfileRole
from app.models.project import Project
from app.redis import get_redis
from app.services.ledger import EscrowLedgerClient
from app.services.signer import KeypairSigner
from app.utils.crypto import generate_keypair, generate_nonce, sign_request
from tests.fake_ledger import FakeLedger


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[fake_aioredis.FakeRedis, None]:
    client = fake_aioredis.FakeRedis()
    yield client
    await client.flushall()
    await client.aclose()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def ledger(fake_ledger: FakeLedger) -> EscrowLedgerClient:
    return EscrowLedgerClient(fake_ledger, timeout=2.0, max_attempts=3, backoff_base=0)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    redis: fake_aioredis.FakeRedis,
    ledger: EscrowLedgerClient,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and ledger dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[fake_aioredis.FakeRedis, None]:
        yield redis

    async def override_get_ledger() -> AsyncGenerator[EscrowLedgerClient, None]:
        yield ledger

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_ledger] = override_get_ledger

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Wallet:
    """A test party: Ed25519 seed, profile and matching ledger signer."""

    def __init__(self, role: ProfileRole, name: str) -> None:
        self.private_key, self.address = generate_keypair()
        self.signer = KeypairSigner.from_seed(bytes.fromhex(self.private_key))
        self.profile_id = uuid.uuid4()
        self.profile = Profile(
            profile_id=self.profile_id,
            wallet_address=self.address,
            display_name=name,
            role=role,
        )


async def make_wallet(db: AsyncSession, role: ProfileRole, name: str = "Test User") -> Wallet:
    wallet = Wallet(role, name)
    db.add(wallet.profile)
    await db.commit()
    return wallet


async def make_job(
    db: AsyncSession,
    payer: Wallet,
    total: str = "5.0",
    stages: tuple[tuple[str, str], ...] = (("Design", "1.5"), ("Build", "2.0"), ("Launch", "1.5")),
) -> Job:
    job = Job(
        job_id=uuid.uuid4(),
        payer_id=payer.profile_id,
        title="Landing page",
        total_payment=Decimal(total),
        status=JobStatus.OPEN,
        stages=[
            JobStage(stage_id=uuid.uuid4(), stage_number=i, name=name, payment=Decimal(amount))
            for i, (name, amount) in enumerate(stages, start=1)
        ],
    )
    db.add(job)
    await db.commit()
    return job


def make_auth_headers(
    wallet: Wallet,
    method: str,
    path: str,
    body: bytes = b"",
) -> dict[str, str]:
    """Build signed auth headers for a request."""
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(wallet.private_key, timestamp, method, path, body)
    return {
        "Authorization": f"WalletSig {wallet.address}:{signature}",
        "X-Timestamp": timestamp,
        "X-Nonce": generate_nonce(),
    }


async def signed(
    client: AsyncClient,
    wallet: Wallet,
    method: str,
    path: str,
    data: dict | None = None,
) -> Response:
    """Send a signed request with the exact body bytes that were signed."""
    body = b"" if data is None else json.dumps(data, separators=(",", ":")).encode()
    headers = make_auth_headers(wallet, method, path, body)
    if data is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(method, path, content=body, headers=headers)


async def fund_and_verify(
    client: AsyncClient,
    fake_ledger: FakeLedger,
    ledger: EscrowLedgerClient,
    payer: Wallet,
    payee: Wallet,
    job: Job,
    amounts: tuple[str, ...] = ("1.5", "2.0", "1.5"),
) -> dict:
    """Fund the escrow on the fake ledger and report it to the API."""
    fake_ledger.airdrop(payer.signer.pubkey, 100)
    funded = await ledger.fund(payer.signer, str(job.job_id), payee.address, list(amounts))
    resp = await signed(client, payer, "POST", "/escrow/verify", {
        "job_id": str(job.job_id),
        "escrow_address": funded.address,
        "tx_ref": funded.tx_ref,
        "payee_id": str(payee.profile_id),
        "total_staked": str(sum(Decimal(a) for a in amounts)),
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


async def project_for(db: AsyncSession, job_id: uuid.UUID) -> Project:
    """Load a job's project fresh from the database."""
    from sqlalchemy import select

    result = await db.execute(
        select(Project).where(Project.job_id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()
