"""Worker endpoints, mounted under /api/worker."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_market_service.routers.validation import (
    authenticate,
    get_object_storage,
    get_settlement,
    get_task_manager,
    get_wallet_auth,
    read_json_body,
)
from task_market_service.schemas import ERROR_RESPONSES, BalanceResponse
from task_market_service.services.wallet_auth import parse_sign_in

router = APIRouter(prefix="/api/worker", responses=ERROR_RESPONSES)

NAMESPACE = "worker"


# === POST /wallet-nonce — Issue Sign-in Challenge ===


@router.post("/wallet-nonce")
async def wallet_nonce(request: Request) -> dict[str, Any]:
    """Return the challenge message the wallet must sign."""
    data = await read_json_body(request)
    message = await run_in_threadpool(
        get_wallet_auth().issue_challenge,
        NAMESPACE,
        data.get("publicKey"),
    )
    return {"success": True, "message": message}


# === POST /wallet-signin — Verify Signature and Issue Credential ===


@router.post("/wallet-signin")
async def wallet_signin(request: Request) -> dict[str, Any]:
    """Sign in with a signed challenge, or by address when legacy sign-in is enabled."""
    data = await read_json_body(request)
    sign_in = parse_sign_in(data)
    result = await run_in_threadpool(get_wallet_auth().sign_in, NAMESPACE, sign_in)
    account = result["account"]
    return {
        "success": True,
        "message": "Login successful",
        "token": result["token"],
        "worker": {
            "id": account["id"],
            "walletAddress": account["wallet_address"],
            "pendingBalance": account["pending_balance"],
            "lockedBalance": account["locked_balance"],
        },
    }


# === POST /submission-presigned-url — Presigned Submission Upload ===


@router.post("/submission-presigned-url")
async def submission_presigned_url(request: Request) -> dict[str, Any]:
    """Issue a presigned PUT URL for a submission ZIP under submissions/."""
    authenticate(request, NAMESPACE)
    data = await read_json_body(request)
    result = await run_in_threadpool(
        get_object_storage().presign_upload,
        "submissions",
        data.get("fileName"),
        data.get("contentType"),
    )
    return {"success": True, "message": "Pre-signed URL generated successfully", **result}


# === POST /submission-from-s3 — Submit Work ===


@router.post("/submission-from-s3")
async def create_submission(request: Request) -> dict[str, Any]:
    """Record a submission and credit the reward to the pending balance."""
    worker_id = authenticate(request, NAMESPACE)
    data = await read_json_body(request)
    result = await run_in_threadpool(
        get_task_manager().create_submission,
        worker_id,
        data.get("taskId"),
        data.get("fileUrl"),
    )
    return {"success": True, "message": "Submission created successfully", **result}


# === GET /alltask — All Tasks With Submission Flag ===


@router.get("/alltask")
async def list_all_tasks(request: Request) -> dict[str, Any]:
    """List every task with whether the caller has already submitted."""
    worker_id = authenticate(request, NAMESPACE)
    tasks = await run_in_threadpool(get_task_manager().list_all_tasks, worker_id)
    return {"success": True, "tasks": tasks}


# === GET /tasks — All Tasks ===


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List every task with its submission count."""
    authenticate(request, NAMESPACE)
    tasks = await run_in_threadpool(get_task_manager().list_open_tasks)
    return {"success": True, "tasks": tasks}


# === GET /submissions — Own Submissions ===


@router.get("/submissions")
async def list_submissions(request: Request) -> dict[str, Any]:
    """List the caller's submissions, newest first."""
    worker_id = authenticate(request, NAMESPACE)
    submissions = await run_in_threadpool(
        get_task_manager().list_submissions_for_worker,
        worker_id,
    )
    return {"success": True, "submissions": submissions}


# === GET /profile — Worker Profile ===


@router.get("/profile")
async def profile(request: Request) -> dict[str, Any]:
    """Return the caller's profile with submission and balance stats."""
    worker_id = authenticate(request, NAMESPACE)
    worker = await run_in_threadpool(get_task_manager().worker_profile, worker_id)
    return {"success": True, "worker": worker}


# === GET /balance — Balance Pair ===


@router.get("/balance", response_model=BalanceResponse)
async def balance(request: Request) -> dict[str, Any]:
    """Return the caller's pending and locked balance in lamports."""
    worker_id = authenticate(request, NAMESPACE)
    current = await run_in_threadpool(get_settlement().get_balance, worker_id)
    return {"success": True, "balance": current}


# === POST /payout — Pay Out Pending Balance ===


@router.post("/payout")
async def payout(request: Request) -> dict[str, Any]:
    """Move the pending balance to locked and transfer it on-chain."""
    worker_id = authenticate(request, NAMESPACE)
    result = await get_settlement().payout(worker_id)
    return {"success": True, "message": "Payout processed successfully", **result}


# === GET /payouts — Payout History ===


@router.get("/payouts")
async def list_payouts(request: Request) -> dict[str, Any]:
    """List the caller's payout attempts, newest first."""
    worker_id = authenticate(request, NAMESPACE)
    payouts = await run_in_threadpool(get_settlement().list_payouts, worker_id)
    return {"success": True, "payouts": payouts}


# === POST /payouts/{payout_id}/retry — Retry or Reconcile Payout ===


@router.post("/payouts/{payout_id}/retry")
async def retry_payout(request: Request, payout_id: str) -> dict[str, Any]:
    """Re-attempt a failed payout, or settle one whose transfer was left unconfirmed."""
    worker_id = authenticate(request, NAMESPACE)
    result = await get_settlement().retry_payout(worker_id, payout_id)
    return {"success": True, "message": "Payout processed successfully", **result}
