"""User (task poster) endpoints, mounted under /api/user."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_market_service.routers.validation import (
    authenticate,
    get_object_storage,
    get_task_manager,
    get_wallet_auth,
    read_json_body,
)
from task_market_service.schemas import ERROR_RESPONSES
from task_market_service.services.wallet_auth import parse_sign_in

router = APIRouter(prefix="/api/user", responses=ERROR_RESPONSES)

NAMESPACE = "user"


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
    """Verify the signed challenge and return a user credential."""
    data = await read_json_body(request)
    sign_in = parse_sign_in(data)
    result = await run_in_threadpool(get_wallet_auth().sign_in, NAMESPACE, sign_in)
    account = result["account"]
    return {
        "success": True,
        "message": "Login successful",
        "token": result["token"],
        "user": {"id": account["id"], "walletAddress": account["wallet_address"]},
    }


# === POST /upload-presigned-url — Presigned Task Upload ===


@router.post("/upload-presigned-url")
async def upload_presigned_url(request: Request) -> dict[str, Any]:
    """Issue a presigned PUT URL for a task ZIP under uploads/."""
    authenticate(request, NAMESPACE)
    data = await read_json_body(request)
    result = await run_in_threadpool(
        get_object_storage().presign_upload,
        "uploads",
        data.get("fileName"),
        data.get("contentType"),
    )
    return {"success": True, "message": "Pre-signed URL generated successfully", **result}


# === POST /task-from-s3 — Create Task ===


@router.post("/task-from-s3")
async def create_task(request: Request) -> dict[str, Any]:
    """Create a task referencing an uploaded ZIP."""
    user_id = authenticate(request, NAMESPACE)
    data = await read_json_body(request)
    task = await run_in_threadpool(
        get_task_manager().create_task,
        user_id,
        data.get("title"),
        data.get("description"),
        data.get("amount"),
        data.get("fileUrl"),
    )
    return {"success": True, "message": "Task created successfully", "task": task}


# === GET /task — List Own Tasks ===


@router.get("/task")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List the caller's tasks with their submissions, newest first."""
    user_id = authenticate(request, NAMESPACE)
    tasks = await run_in_threadpool(get_task_manager().list_tasks_for_owner, user_id)
    return {"success": True, "tasks": tasks}


# === POST /task/{task_id}/complete — Approve Task ===


@router.post("/task/{task_id}/complete")
async def complete_task(request: Request, task_id: str) -> dict[str, Any]:
    """Mark an in-progress task as completed."""
    user_id = authenticate(request, NAMESPACE)
    task = await run_in_threadpool(get_task_manager().complete_task, user_id, task_id)
    return {"success": True, "message": "Task completed", "task": task}


# === POST /payments — Record Payment ===


@router.post("/payments")
async def record_payment(request: Request) -> dict[str, Any]:
    """Record a funding payment given in SOL."""
    user_id = authenticate(request, NAMESPACE)
    data = await read_json_body(request)
    payment = await run_in_threadpool(
        get_task_manager().record_payment,
        user_id,
        data.get("amount"),
    )
    return {"success": True, "message": "Payment recorded successfully", "payment": payment}


# === GET /profile — User Profile ===


@router.get("/profile")
async def profile(request: Request) -> dict[str, Any]:
    """Return the caller's profile with task and payment stats."""
    user_id = authenticate(request, NAMESPACE)
    user = await run_in_threadpool(get_task_manager().user_profile, user_id)
    return {"success": True, "user": user}
