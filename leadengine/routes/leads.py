# leadengine/routes/leads.py
"""
Lead endpoints. ``POST /api/leads`` doubles as the missed-call webhook; the
telephony payload is recognised by shape.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from leadengine import leads
from leadengine.auth import require_admin_token, require_webhook_token
from leadengine.errors import ValidationError

router = APIRouter(prefix="/api/leads", tags=["leads"])


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    return body


@router.post("", dependencies=[Depends(require_webhook_token)])
async def create_lead(request: Request):
    body = await _json_body(request)

    if leads.is_missed_call_payload(body):
        await run_in_threadpool(leads.ingest_missed_call, body)
        return Response(status_code=200)

    lead, created = await run_in_threadpool(leads.create_lead, body)
    if not created:
        return {"message": "Duplicate lead within 24 hours", "lead_id": lead["id"]}
    return JSONResponse(status_code=201, content={"success": True, "lead": lead})


@router.get("", dependencies=[Depends(require_admin_token)])
async def list_leads(status: Optional[str] = Query(default=None), source: Optional[str] = Query(default=None)):
    return {"leads": await run_in_threadpool(leads.list_leads, status, source)}


@router.patch("", dependencies=[Depends(require_admin_token)])
async def update_lead(request: Request):
    body = await _json_body(request)
    lead_id = body.pop("id", None)
    lead = await run_in_threadpool(leads.update_lead, lead_id, body)
    return {"success": True, "lead": lead}


@router.delete("", dependencies=[Depends(require_admin_token)])
async def delete_lead(id: Optional[str] = Query(default=None)):
    deleted = await run_in_threadpool(leads.delete_lead, id)
    return {"success": True, "deleted": deleted}
