from __future__ import annotations

import json
import logging
from typing import Any, Mapping

import httpx

from sessiongate.core.config import get_settings
from sessiongate.core.errors import ProviderConfigError, ProviderSendError


logger = logging.getLogger(__name__)


class TwilioWhatsAppProvider:
    """Send WhatsApp messages through the Twilio Messages REST API."""

    def __init__(
        self,
        *,
        account_sid: str | None = None,
        auth_token: str | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._account_sid = account_sid or settings.twilio_account_sid
        self._auth_token = auth_token or settings.twilio_auth_token
        self._base_url = (base_url or settings.twilio_api_base_url).rstrip("/")
        self._timeout_s = timeout_s if timeout_s is not None else settings.ext_call_timeout_ms / 1000.0
        # Injected transports let tests stub HTTP without network access.
        self._transport = transport

    def _messages_url(self) -> str:
        if not self._account_sid or not self._auth_token:
            raise ProviderConfigError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required")
        return f"{self._base_url}/Accounts/{self._account_sid}/Messages.json"

    async def send_freeform(self, *, from_address: str, to_address: str, body: str) -> str:
        return await self._create({"From": from_address, "To": to_address, "Body": body})

    async def send_template(
        self,
        *,
        from_address: str,
        to_address: str,
        template_sid: str,
        variables: Mapping[str, str] | None = None,
    ) -> str:
        form = {"From": from_address, "To": to_address, "ContentSid": template_sid}
        if variables:
            form["ContentVariables"] = json.dumps(dict(variables), ensure_ascii=False)
        return await self._create(form)

    async def _create(self, form: dict[str, str]) -> str:
        url = self._messages_url()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s,
                auth=(self._account_sid or "", self._auth_token or ""),
                transport=self._transport,
            ) as client:
                response = await client.post(url, data=form)
        except httpx.HTTPError as exc:
            raise ProviderSendError(f"provider request failed: {exc}") from exc

        payload = _json_or_empty(response)
        if response.status_code >= 400:
            code = payload.get("code")
            message = payload.get("message") or response.text or "provider error"
            logger.warning(
                "provider_send_rejected status=%d code=%s", response.status_code, code
            )
            raise ProviderSendError(
                str(message),
                code=str(code) if code is not None else None,
                status=response.status_code,
            )
        sid = payload.get("sid")
        if not sid:
            raise ProviderSendError("provider response missing message sid", status=response.status_code)
        return str(sid)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
