"""Wallet signature verification dependency for FastAPI."""

import uuid

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models.profile import Profile, ProfileStatus
from app.redis import get_redis
from app.utils.crypto import is_timestamp_valid, verify_signature

AUTH_SCHEME = "WalletSig "


class AuthenticatedWallet:
    """Container for the verified caller context."""

    def __init__(self, profile: Profile) -> None:
        self.profile = profile
        self.profile_id: uuid.UUID = profile.profile_id
        self.wallet_address: str = profile.wallet_address


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedWallet:
    """Verify the wallet's Ed25519 signature on an incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    # Authorization: WalletSig <wallet_address>:<signature>
    if not auth_header.startswith(AUTH_SCHEME):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")

    wallet, sep, signature = auth_header[len(AUTH_SCHEME):].partition(":")
    if not sep or not wallet or not signature:
        raise HTTPException(status_code=403, detail="Malformed authorization header")

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    # Replay protection
    if nonce:
        fresh = await redis.set(f"nonce:{nonce}", "1", nx=True, ex=settings.nonce_ttl_seconds)
        if not fresh:
            raise HTTPException(status_code=403, detail="Nonce already used")

    result = await db.execute(select(Profile).where(Profile.wallet_address == wallet))
    profile = result.scalar_one_or_none()
    if profile is None:
        raise HTTPException(status_code=403, detail="Wallet not registered")
    if profile.status != ProfileStatus.ACTIVE:
        raise HTTPException(status_code=403, detail="Profile is not active")

    body = await request.body()
    if not verify_signature(wallet, signature, timestamp, request.method.upper(), request.url.path, body):
        raise HTTPException(status_code=403, detail="Invalid signature")

    return AuthenticatedWallet(profile)
