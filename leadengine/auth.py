"""Token-based auth dependencies for webhook, cron and admin routes."""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from leadengine.config import settings
from leadengine.runtime import get_logger

logger = get_logger("auth")


def _token_from_authorization(header: str | None) -> str | None:
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _matches(provided: str | None, expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided, expected)


async def require_cron_secret(request: Request) -> None:
    """Scheduler routes: ``Authorization: Bearer <CRON_SECRET>``. Unset secret rejects everything."""
    expected = settings().CRON_SECRET
    if not expected:
        logger.warning("CRON_SECRET not configured; rejecting %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")

    provided = _token_from_authorization(request.headers.get("Authorization"))
    if not _matches(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_webhook_token(request: Request) -> None:
    expected = settings().WEBHOOK_TOKEN
    if not expected:
        return  # no auth configured

    provided = request.query_params.get("token")
    provided = provided or request.headers.get("x-webhook-token")
    provided = provided or _token_from_authorization(request.headers.get("Authorization"))

    if not _matches(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook token")


async def require_admin_token(request: Request) -> None:
    expected = settings().ADMIN_API_TOKEN
    if not expected:
        return

    provided = _token_from_authorization(request.headers.get("Authorization"))
    provided = provided or request.headers.get("x-admin-token")

    if not _matches(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
