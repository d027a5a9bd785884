from __future__ import annotations

from sessiongate.core.config import get_settings
from sessiongate.providers.messaging.base import MessagingProvider
from sessiongate.providers.messaging.fake import FakeMessagingProvider
from sessiongate.providers.messaging.twilio_whatsapp import TwilioWhatsAppProvider


_provider: MessagingProvider | None = None


def get_messaging_provider() -> MessagingProvider:
    global _provider
    if _provider is None:
        settings = get_settings()
        name = (settings.messaging_provider or "twilio").lower()
        if name == "fake":
            _provider = FakeMessagingProvider()
        else:
            _provider = TwilioWhatsAppProvider()
    return _provider


def reset_messaging_provider() -> None:
    global _provider
    _provider = None
