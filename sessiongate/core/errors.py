from __future__ import annotations


# Provider error code for a free-form send outside the customer service window.
SESSION_EXPIRED_CODE = "63016"


class SessionGateError(Exception):
    """Base error for SessionGate."""


class InputValidationError(SessionGateError):
    """Caller supplied input that cannot be sent."""


class InvalidRecipientError(InputValidationError):
    """Recipient address does not standardize to a phone number."""


class EmptyMessageError(InputValidationError):
    """Message body is empty after trimming."""


class TenantNotFoundError(SessionGateError):
    """No tenant matches the supplied id or number."""


class ProviderConfigError(SessionGateError):
    """Missing or invalid messaging provider configuration."""


class TemplateNotConfiguredError(ProviderConfigError):
    """No usable template is configured for an out-of-window send."""


class ProviderSendError(SessionGateError):
    """Messaging provider rejected or failed a send."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status

    @property
    def is_session_expired(self) -> bool:
        return self.code == SESSION_EXPIRED_CODE


class QuotaExceededError(SessionGateError):
    """Tenant has used its effective monthly conversation limit."""

    def __init__(self, message: str, *, status: object | None = None) -> None:
        super().__init__(message)
        # Carries the QuotaStatus that triggered the rejection.
        self.status = status


class StoreError(SessionGateError):
    """Row or counter store failure."""


class RelationNotFoundError(StoreError):
    """Queried table does not exist yet."""


class InvalidTransitionError(SessionGateError):
    """Delivery state machine transition is not allowed."""


class DeliveryRecordError(SessionGateError):
    """Provider accepted the message but its delivery record could not be written."""

    def __init__(self, message: str, *, provider_sid: str) -> None:
        super().__init__(message)
        self.provider_sid = provider_sid
