from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from sessiongate.apps.api.deps import get_inbound
from sessiongate.apps.api.rate_limit import rate_limit_headers
from sessiongate.services.inbound import InboundEvent, InboundProcessor


router = APIRouter(prefix="/whatsapp", tags=["webhooks"])


def _int_field(value: object) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


def _optional(form, key: str) -> str | None:
    value = form.get(key)
    if value is None:
        return None
    value = str(value)
    return value or None


def event_from_form(form) -> InboundEvent:
    # Field names follow the provider's form-encoded callback.
    return InboundEvent(
        from_number=str(form.get("From") or ""),
        to_number=str(form.get("To") or ""),
        message_sid=_optional(form, "MessageSid"),
        body=_optional(form, "Body"),
        profile_name=_optional(form, "ProfileName"),
        button_payload=_optional(form, "ButtonPayload"),
        button_text=_optional(form, "ButtonText"),
        latitude=_optional(form, "Latitude"),
        longitude=_optional(form, "Longitude"),
        address=_optional(form, "Address"),
        num_media=_int_field(form.get("NumMedia")),
        media_url=_optional(form, "MediaUrl0"),
        media_content_type=_optional(form, "MediaContentType0"),
    )


@router.post("/webhook")
async def inbound_webhook(
    request: Request,
    processor: InboundProcessor = Depends(get_inbound),
) -> JSONResponse:
    form = await request.form()
    event = event_from_form(form)
    if not event.from_number or not event.to_number:
        return JSONResponse(
            status_code=400,
            content={"detail": {"code": "BAD_REQUEST", "message": "From and To are required"}},
        )
    outcome = await processor.process(event)
    headers = rate_limit_headers(outcome.rate_limit) if outcome.rate_limit is not None else None
    if outcome.rate_limit is not None and not outcome.rate_limit.allowed:
        headers = dict(headers or {})
        headers["Retry-After"] = str(max(1, math.ceil(outcome.rate_limit.retry_after_ms / 1000.0)))
    return JSONResponse(
        status_code=outcome.status_code,
        content={
            "success": outcome.success,
            "reason": outcome.reason,
            "session_id": outcome.session_id,
            "new_session": outcome.new_session,
            **outcome.details,
        },
        headers=headers,
    )
