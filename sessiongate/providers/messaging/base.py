from __future__ import annotations

from typing import Mapping, Protocol


class MessagingProvider(Protocol):
    # Both calls return the provider message id or raise ProviderSendError.
    async def send_freeform(self, *, from_address: str, to_address: str, body: str) -> str:
        ...

    async def send_template(
        self,
        *,
        from_address: str,
        to_address: str,
        template_sid: str,
        variables: Mapping[str, str] | None = None,
    ) -> str:
        ...
