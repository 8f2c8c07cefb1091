"""Tests for the escrow, job settlement and project endpoints."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.job import Job, JobStatus
from app.models.profile import ProfileRole
from app.services.sync_queue import SYNC_KEY
from tests.conftest import fund_and_verify, make_job, make_wallet, signed
from tests.fake_ledger import random_signature


async def _parties(db):
    payer = await make_wallet(db, ProfileRole.RECRUITER, "Payer")
    payee = await make_wallet(db, ProfileRole.FREELANCER, "Payee")
    job = await make_job(db, payer)
    return payer, payee, job


def _verify_body(job, payee, address: str, tx_ref: str, total: str = "5.0") -> dict:
    return {
        "job_id": str(job.job_id),
        "escrow_address": address,
        "tx_ref": tx_ref,
        "payee_id": str(payee.profile_id),
        "total_staked": total,
    }


# --- POST /escrow/verify ---

@pytest.mark.asyncio
async def test_verify_creates_project(client, db, session_factory, redis, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    body = await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)

    assert body["created"] is True
    project = body["project"]
    assert project["status"] == "active"
    assert project["current_stage"] == 1
    assert [m["name"] for m in project["milestones"]] == ["Design", "Build", "Launch"]
    assert [Decimal(m["payment_amount"]) for m in project["milestones"]] == [
        Decimal("1.5"), Decimal("2.0"), Decimal("1.5"),
    ]
    assert Decimal(project["staking"]["total_staked"]) == Decimal("5.0")
    assert Decimal(project["staking"]["total_released"]) == 0

    async with session_factory() as session:
        result = await session.execute(select(Job.status).where(Job.job_id == job.job_id))
        assert result.scalar_one() == JobStatus.ACTIVE

    assert await redis.zscore(SYNC_KEY, project["project_id"]) is not None


@pytest.mark.asyncio
async def test_verify_is_idempotent(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    first = await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)

    resp = await signed(client, payer, "POST", "/escrow/verify", _verify_body(
        job, payee, first["escrow_address"], first["project"]["staking"]["funding_signature"],
    ))
    assert resp.status_code == 200
    assert resp.json()["created"] is False
    assert resp.json()["project"]["project_id"] == first["project"]["project_id"]


@pytest.mark.asyncio
async def test_verify_rejects_mismatched_address(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    fake_ledger.airdrop(payer.signer.pubkey, 100)
    funded = await ledger.fund(payer.signer, str(job.job_id), payee.address, ["1.5", "2.0", "1.5"])
    other, _ = ledger.escrow_address(payer.address, "some-other-job")

    resp = await signed(client, payer, "POST", "/escrow/verify", _verify_body(
        job, payee, str(other), funded.tx_ref,
    ))
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_input"


@pytest.mark.asyncio
async def test_verify_rejects_total_mismatch(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    fake_ledger.airdrop(payer.signer.pubkey, 100)
    funded = await ledger.fund(payer.signer, str(job.job_id), payee.address, ["1.5", "2.0", "1.5"])

    resp = await signed(client, payer, "POST", "/escrow/verify", _verify_body(
        job, payee, funded.address, funded.tx_ref, total="6.0",
    ))
    assert resp.status_code == 422
    assert "mismatch" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_verify_requires_confirmed_signature(client, db, ledger) -> None:
    payer, payee, job = await _parties(db)
    address, _ = ledger.escrow_address(payer.address, str(job.job_id))

    resp = await signed(client, payer, "POST", "/escrow/verify", _verify_body(
        job, payee, str(address), random_signature(),
    ))
    assert resp.status_code == 400
    assert resp.json()["code"] == "unconfirmed_ledger_operation"


@pytest.mark.asyncio
async def test_verify_only_by_payer(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    address, _ = ledger.escrow_address(payer.address, str(job.job_id))

    resp = await signed(client, payee, "POST", "/escrow/verify", _verify_body(
        job, payee, str(address), fake_ledger.landed_signature(),
    ))
    assert resp.status_code == 403
    assert resp.json()["code"] == "access_denied"


# --- GET /escrow/status/{job_id} ---

@pytest.mark.asyncio
async def test_escrow_status(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)

    resp = await signed(client, payee, "GET", f"/escrow/status/{job.job_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["project_status"] == "active"
    assert Decimal(body["total_staked"]) == Decimal("5.0")
    assert Decimal(body["remaining"]) == Decimal("5.0")
    assert len(body["milestones"]) == 3

    outsider = await make_wallet(db, ProfileRole.FREELANCER, "Outsider")
    resp = await signed(client, outsider, "GET", f"/escrow/status/{job.job_id}")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_escrow_status_unknown_job(client, db) -> None:
    payer, _, job = await _parties(db)
    resp = await signed(client, payer, "GET", f"/escrow/status/{job.job_id}")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "No project exists for this job", "code": "not_found"}


# --- POST /jobs/{job_id}/sync-blockchain ---

@pytest.mark.asyncio
async def test_sync_blockchain_applies_ledger_flags(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    body = await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)
    fake_ledger.set_flag(ledger.escrow_address(payer.address, str(job.job_id))[0], "approved", 0)

    resp = await signed(client, payee, "POST", f"/jobs/{job.job_id}/sync-blockchain")
    assert resp.status_code == 200
    result = resp.json()
    assert result["status"] == "outdated"
    assert result["project_id"] == body["project"]["project_id"]
    stage_one = result["updates_applied"]["milestones"][0]
    assert stage_one["stage_number"] == 1
    assert stage_one["changes"]["approved"] == {"from": False, "to": True}

    resp = await signed(client, payee, "POST", f"/jobs/{job.job_id}/sync-blockchain")
    assert resp.json()["status"] == "synced"
    assert resp.json()["updates_applied"] == {}


@pytest.mark.asyncio
async def test_sync_blockchain_parties_only(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)
    outsider = await make_wallet(db, ProfileRole.RECRUITER, "Outsider")

    resp = await signed(client, outsider, "POST", f"/jobs/{job.job_id}/sync-blockchain")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_sync_blockchain_ledger_down(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)
    fake_ledger.fail_next["get_escrow"] = 10

    resp = await signed(client, payer, "POST", f"/jobs/{job.job_id}/sync-blockchain")
    assert resp.status_code == 503
    assert resp.json()["code"] == "ledger_unreachable"


# --- POST /jobs/{job_id}/fix-milestone-payments ---

@pytest.mark.asyncio
async def test_fix_milestone_payments_already_correct(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)

    resp = await signed(client, payer, "POST", f"/jobs/{job.job_id}/fix-milestone-payments")
    assert resp.status_code == 200
    assert resp.json()["status"] == "already_correct"
    assert Decimal(resp.json()["total"]) == Decimal("5.0")

    resp = await signed(client, payee, "POST", f"/jobs/{job.job_id}/fix-milestone-payments")
    assert resp.status_code == 403


# --- POST /jobs/{job_id}/cancel ---

@pytest.mark.asyncio
async def test_cancel_records_refund(client, db, session_factory, redis, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    body = await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)
    cancelled = await ledger.cancel(payer.signer, str(job.job_id))
    assert cancelled.refunded == Decimal("5")

    resp = await signed(client, payer, "POST", f"/jobs/{job.job_id}/cancel", {"tx_ref": cancelled.tx_ref})
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "cancelled"
    assert await redis.zscore(SYNC_KEY, body["project"]["project_id"]) is None

    async with session_factory() as session:
        result = await session.execute(select(Job.status).where(Job.job_id == job.job_id))
        assert result.scalar_one() == JobStatus.CANCELLED

    # the same confirmed cancellation can be reported twice
    resp = await signed(client, payer, "POST", f"/jobs/{job.job_id}/cancel", {"tx_ref": cancelled.tx_ref})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_cancel_refused_while_escrow_open(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)

    resp = await signed(client, payer, "POST", f"/jobs/{job.job_id}/cancel", {
        "tx_ref": fake_ledger.landed_signature(),
    })
    assert resp.status_code == 400
    assert resp.json()["code"] == "unconfirmed_ledger_operation"


@pytest.mark.asyncio
async def test_cancel_refused_after_approval(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    body = await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)
    milestone_id = body["project"]["milestones"][0]["milestone_id"]

    resp = await signed(client, payee, "PUT", f"/projects/milestone/{milestone_id}/submit", {
        "description": "Designs attached",
    })
    assert resp.status_code == 200, resp.text
    resp = await signed(client, payer, "PUT", f"/projects/milestone/{milestone_id}/review", {
        "action": "approve",
    })
    assert resp.status_code == 200, resp.text

    resp = await signed(client, payer, "POST", f"/jobs/{job.job_id}/cancel", {
        "tx_ref": fake_ledger.landed_signature(),
    })
    assert resp.status_code == 409
    assert resp.json()["code"] == "cannot_cancel_after_approval"


# --- GET /projects/{project_id} ---

@pytest.mark.asyncio
async def test_get_project(client, db, fake_ledger, ledger) -> None:
    payer, payee, job = await _parties(db)
    body = await fund_and_verify(client, fake_ledger, ledger, payer, payee, job)
    project_id = body["project"]["project_id"]

    resp = await signed(client, payer, "GET", f"/projects/{project_id}")
    assert resp.status_code == 200
    assert resp.json()["escrow_address"] == body["escrow_address"]
    assert resp.json()["staking"]["payer_wallet"] == payer.address

    outsider = await make_wallet(db, ProfileRole.RECRUITER, "Outsider")
    resp = await signed(client, outsider, "GET", f"/projects/{project_id}")
    assert resp.status_code == 403
