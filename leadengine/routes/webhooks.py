# leadengine/routes/webhooks.py
"""
📥 Inbound SMS Webhook
----------------------
Provider posts form-encoded ``From`` / ``Body`` / ``MessageSid``; we always
answer with an empty TwiML envelope so the provider sends nothing itself.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool

from leadengine.auth import require_webhook_token
from leadengine.conversations import TWIML_EMPTY, handle_inbound_sms
from leadengine.runtime import get_logger

logger = get_logger("webhooks")

router = APIRouter(prefix="/twilio", tags=["webhooks"])


@router.post("/sms-incoming", dependencies=[Depends(require_webhook_token)])
async def sms_incoming(request: Request):
    form = await request.form()
    payload = {
        "From": form.get("From"),
        "Body": form.get("Body"),
        "MessageSid": form.get("MessageSid") or form.get("SmsSid"),
    }
    result = await run_in_threadpool(handle_inbound_sms, payload)
    logger.info("Inbound SMS handled: %s", result)
    return Response(content=TWIML_EMPTY, media_type="text/xml")
