"""Error taxonomy shared by the domain modules and the HTTP layer."""

from __future__ import annotations

from typing import Any, Optional


class LeadEngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code = 500

    def __init__(self, message: str, *, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(LeadEngineError):
    """Missing or malformed field on a primary write; nothing was persisted."""

    status_code = 400


class NotFoundError(LeadEngineError):
    """A referenced lead, partner, referral or conversation does not exist."""

    status_code = 404


class PersistenceError(LeadEngineError):
    """The store rejected a read or write after retries."""

    status_code = 500


class UpstreamError(LeadEngineError):
    """An outbound collaborator (SMS, LLM, push) failed."""

    status_code = 502


class SmsGatewayError(UpstreamError):
    """Carries HTTP metadata and response body from the SMS provider."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=body)
        self.http_status = status_code
        self.body = body
        self.payload = payload

    def __str__(self) -> str:
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


class AIResponderError(UpstreamError):
    pass


class PushError(UpstreamError):
    pass
