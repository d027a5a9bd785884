"""Delivery channel state machine and versioned outbound metadata.

Every outbound attempt starts UNDETERMINED, picks FREEFORM or TEMPLATE, and
ends SENT or FAILED. A free-form send rejected for an expired session window
moves to TEMPLATE_AFTER_FALLBACK exactly once; there is no path back to
FREEFORM, so the fallback cannot loop.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from sessiongate.core.errors import InvalidTransitionError


METADATA_VERSION = 1


class Channel(str, Enum):
    FREEFORM = "freeform"
    TEMPLATE = "template"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryState(str, Enum):
    UNDETERMINED = "undetermined"
    FREEFORM = "freeform"
    TEMPLATE = "template"
    TEMPLATE_AFTER_FALLBACK = "template_after_fallback"
    SENT = "sent"
    FAILED = "failed"


VALID_TRANSITIONS: dict[DeliveryState, tuple[DeliveryState, ...]] = {
    DeliveryState.UNDETERMINED: (DeliveryState.FREEFORM, DeliveryState.TEMPLATE),
    DeliveryState.FREEFORM: (
        DeliveryState.SENT,
        DeliveryState.FAILED,
        DeliveryState.TEMPLATE_AFTER_FALLBACK,
    ),
    DeliveryState.TEMPLATE: (DeliveryState.SENT, DeliveryState.FAILED),
    DeliveryState.TEMPLATE_AFTER_FALLBACK: (DeliveryState.SENT, DeliveryState.FAILED),
    DeliveryState.SENT: (),
    DeliveryState.FAILED: (),
}

TERMINAL_STATES = frozenset({DeliveryState.SENT, DeliveryState.FAILED})


def can_transition(from_state: DeliveryState, to_state: DeliveryState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, ())


def transition(from_state: DeliveryState, to_state: DeliveryState) -> DeliveryState:
    """Return ``to_state`` or raise InvalidTransitionError."""
    if from_state in TERMINAL_STATES:
        raise InvalidTransitionError(f"Delivery already ended as {from_state.value}")
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(f"Invalid transition: {from_state.value} -> {to_state.value}")
    return to_state


def channel_for_state(state: DeliveryState) -> Channel:
    # Fallback sends are recorded on the template channel.
    if state == DeliveryState.FREEFORM:
        return Channel.FREEFORM
    return Channel.TEMPLATE


def status_for_state(state: DeliveryState) -> DeliveryStatus:
    if state == DeliveryState.SENT:
        return DeliveryStatus.SENT
    if state == DeliveryState.FAILED:
        return DeliveryStatus.FAILED
    return DeliveryStatus.PENDING


@dataclass(frozen=True)
class SessionWindowEvidence:
    # What the channel decision was based on.
    last_inbound_at: datetime | None
    checked_at: datetime
    window_hours: int
    forced: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "last_inbound_at": self.last_inbound_at.isoformat() if self.last_inbound_at else None,
            "checked_at": self.checked_at.isoformat(),
            "window_hours": self.window_hours,
            "forced": self.forced,
        }


@dataclass(frozen=True)
class PendingMeta:
    evidence: SessionWindowEvidence
    version: int = METADATA_VERSION
    kind: str = field(default="pending", init=False)

    def to_json(self) -> dict[str, Any]:
        return {"version": self.version, "kind": self.kind, "evidence": self.evidence.to_json()}


@dataclass(frozen=True)
class FallbackMeta:
    evidence: SessionWindowEvidence
    reason: str = "session_window_expired"
    provider_error_code: str | None = None
    version: int = METADATA_VERSION
    kind: str = field(default="fallback", init=False)

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "kind": self.kind,
            "reason": self.reason,
            "provider_error_code": self.provider_error_code,
            "evidence": self.evidence.to_json(),
        }


@dataclass(frozen=True)
class SentMeta:
    evidence: SessionWindowEvidence
    deferred: bool = False
    cache_entry_id: str | None = None
    fallback: bool = False
    version: int = METADATA_VERSION
    kind: str = field(default="sent", init=False)

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "kind": self.kind,
            "deferred": self.deferred,
            "cache_entry_id": self.cache_entry_id,
            "fallback": self.fallback,
            "evidence": self.evidence.to_json(),
        }


@dataclass(frozen=True)
class FailedMeta:
    evidence: SessionWindowEvidence
    last_error: str
    error_code: str | None = None
    fallback: bool = False
    version: int = METADATA_VERSION
    kind: str = field(default="failed", init=False)

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "kind": self.kind,
            "last_error": self.last_error,
            "error_code": self.error_code,
            "fallback": self.fallback,
            "evidence": self.evidence.to_json(),
        }


DeliveryMeta = Union[PendingMeta, FallbackMeta, SentMeta, FailedMeta]


@dataclass(frozen=True)
class NotifyResult:
    # Outcome of one send_notification call.
    id: str | None
    channel: Channel
    status: DeliveryStatus
    deferred: bool = False
    coalesced: bool = False
    outbound_message_id: str | None = None

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["channel"] = self.channel.value
        data["status"] = self.status.value
        return data
