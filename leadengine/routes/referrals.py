# leadengine/routes/referrals.py
"""Admin referral endpoints (create, status transition, delete)."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from leadengine import ledger
from leadengine.auth import require_admin_token

router = APIRouter(prefix="/api/admin/referrals", tags=["referrals"], dependencies=[Depends(require_admin_token)])


class ReferralCreate(BaseModel):
    partner_id: Optional[str] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    notes: Optional[str] = None
    credit_amount: Optional[Any] = None


class ReferralTransition(BaseModel):
    referral_id: Optional[str] = None
    status: Optional[str] = None
    previous_status: Optional[str] = None


@router.post("")
async def create_referral(body: ReferralCreate):
    referral = await run_in_threadpool(
        ledger.create_referral,
        body.partner_id,
        body.client_name,
        body.client_phone,
        body.notes,
        body.credit_amount,
    )
    return JSONResponse(status_code=201, content={"success": True, "referral": referral})


@router.patch("")
async def transition_referral(body: ReferralTransition):
    result = await run_in_threadpool(
        ledger.transition_referral,
        body.referral_id,
        body.status,
        body.previous_status,
    )
    return {"success": True, **result}


@router.delete("")
async def delete_referral(id: Optional[str] = Query(default=None)):
    deleted = await run_in_threadpool(ledger.delete_referral, id)
    return {"success": True, "deleted": deleted}
