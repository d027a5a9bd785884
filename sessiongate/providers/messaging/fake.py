from __future__ import annotations

from dataclasses import dataclass, field
from itertools import count
from typing import Mapping

from sessiongate.core.errors import ProviderSendError


@dataclass
class SentMessage:
    kind: str
    from_address: str
    to_address: str
    body: str | None = None
    template_sid: str | None = None
    variables: dict[str, str] = field(default_factory=dict)
    sid: str = ""


class FakeMessagingProvider:
    """Record sends in memory; queued errors are raised in order per send kind."""

    def __init__(self) -> None:
        # Deterministic sids keep tests stable without external calls.
        self.sent: list[SentMessage] = []
        self.freeform_errors: list[Exception] = []
        self.template_errors: list[Exception] = []
        self._ids = count(1)

    def fail_next_freeform(self, code: str | None = None, message: str = "rejected") -> None:
        self.freeform_errors.append(ProviderSendError(message, code=code, status=400))

    def fail_next_template(self, code: str | None = None, message: str = "rejected") -> None:
        self.template_errors.append(ProviderSendError(message, code=code, status=400))

    def _next_sid(self) -> str:
        return f"SMfake{next(self._ids):06d}"

    async def send_freeform(self, *, from_address: str, to_address: str, body: str) -> str:
        if self.freeform_errors:
            raise self.freeform_errors.pop(0)
        sid = self._next_sid()
        self.sent.append(SentMessage("freeform", from_address, to_address, body=body, sid=sid))
        return sid

    async def send_template(
        self,
        *,
        from_address: str,
        to_address: str,
        template_sid: str,
        variables: Mapping[str, str] | None = None,
    ) -> str:
        if self.template_errors:
            raise self.template_errors.pop(0)
        sid = self._next_sid()
        self.sent.append(
            SentMessage(
                "template",
                from_address,
                to_address,
                template_sid=template_sid,
                variables=dict(variables or {}),
                sid=sid,
            )
        )
        return sid
