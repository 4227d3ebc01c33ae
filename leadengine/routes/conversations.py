# leadengine/routes/conversations.py
"""Operator console endpoints for SMS conversations."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from leadengine import conversations
from leadengine.auth import require_admin_token

router = APIRouter(prefix="/api/conversations", tags=["conversations"], dependencies=[Depends(require_admin_token)])


class ConversationPatch(BaseModel):
    status: Optional[str] = None
    ai_enabled: Optional[bool] = None


class OperatorReply(BaseModel):
    message: Optional[str] = None


@router.get("")
async def list_conversations(status: Optional[str] = Query(default=None)):
    return {"conversations": await run_in_threadpool(conversations.list_conversations, status)}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str):
    return {"conversation": await run_in_threadpool(conversations.get_conversation, conversation_id)}


@router.patch("/{conversation_id}")
async def update_conversation(conversation_id: str, body: ConversationPatch):
    convo = await run_in_threadpool(
        conversations.update_conversation, conversation_id, body.status, body.ai_enabled
    )
    return {"success": True, "conversation": convo}


@router.post("/{conversation_id}/reply")
async def reply(conversation_id: str, body: OperatorReply):
    message = await run_in_threadpool(conversations.operator_reply, conversation_id, body.message or "")
    return {"success": True, "message": message}
