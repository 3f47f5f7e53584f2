# src/lockdrop/schemas/events.py
"""Ledger event schemas.

Payloads are validated with Pydantic on the way in and out of the event log;
`LedgerEvent` is the immutable envelope handed to consumers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from lockdrop.models import LedgerEventRecord
from lockdrop.utils.hash import chain_digest


class EventType(str, Enum):
    """Kinds of entries the stake ledger emits."""

    STAKED = "Staked"
    UNSTAKED = "Unstaked"
    VAULT_SET = "VaultSet"
    MIGRATED = "Migrated"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class StakedPayload(_Payload):
    """Value locked for ``account`` by ``depositor``."""

    account: str
    amount: int = Field(..., gt=0)
    depositor: str


class UnstakedPayload(_Payload):
    """Value released from ``account`` to ``recipient``."""

    account: str
    amount: int = Field(..., gt=0)
    recipient: str


class VaultSetPayload(_Payload):
    """Vault destination configured by the owner."""

    vault_address: str


class MigratedPayload(_Payload):
    """Whole balance of ``account`` moved into the vault."""

    account: str
    amount: int = Field(..., gt=0)
    shares_received: int = Field(..., ge=0)


EventPayload = StakedPayload | UnstakedPayload | VaultSetPayload | MigratedPayload

PAYLOAD_TYPES: dict[EventType, type[_Payload]] = {
    EventType.STAKED: StakedPayload,
    EventType.UNSTAKED: UnstakedPayload,
    EventType.VAULT_SET: VaultSetPayload,
    EventType.MIGRATED: MigratedPayload,
}


def parse_payload(event_type: EventType, data: dict[str, Any]) -> EventPayload:
    """Validate a raw payload mapping against the schema for ``event_type``."""
    return PAYLOAD_TYPES[event_type].model_validate(data)  # type: ignore[return-value]


@dataclass(frozen=True)
class LedgerEvent:
    """Ordered, immutable record of one ledger mutation."""

    sequence: int
    event_type: EventType
    timestamp: int
    payload: EventPayload
    prev_digest: str
    digest: str

    @property
    def account(self) -> str | None:
        """Return the account the event concerns, if any."""
        return getattr(self.payload, "account", None)

    @staticmethod
    def body(
        sequence: int,
        event_type: EventType,
        timestamp: int,
        payload: EventPayload,
    ) -> dict[str, Any]:
        """Return the canonical mapping hashed into the event chain."""
        return {
            "sequence": sequence,
            "type": event_type.value,
            "timestamp": timestamp,
            "payload": payload.model_dump(),
        }

    @classmethod
    def create(
        cls,
        *,
        sequence: int,
        timestamp: int,
        payload: EventPayload,
        prev_digest: str,
    ) -> LedgerEvent:
        """Build the next event of the chain, computing its digest."""
        event_type = event_type_of(payload)
        digest = chain_digest(prev_digest, cls.body(sequence, event_type, timestamp, payload))
        return cls(
            sequence=sequence,
            event_type=event_type,
            timestamp=timestamp,
            payload=payload,
            prev_digest=prev_digest,
            digest=digest,
        )

    @classmethod
    def from_record(cls, record: LedgerEventRecord) -> LedgerEvent:
        """Rehydrate an event from its stored row."""
        event_type = EventType(record.event_type)
        return cls(
            sequence=int(record.sequence),
            event_type=event_type,
            timestamp=int(record.timestamp),
            payload=parse_payload(event_type, dict(record.payload)),
            prev_digest=record.prev_digest,
            digest=record.digest,
        )

    def to_record(self) -> LedgerEventRecord:
        """Return a new ORM row for this event."""
        return LedgerEventRecord(
            sequence=self.sequence,
            event_type=self.event_type.value,
            account=self.account,
            payload=self.payload.model_dump(),
            timestamp=self.timestamp,
            prev_digest=self.prev_digest,
            digest=self.digest,
        )

    def verify_digest(self) -> bool:
        """Return True if the stored digest matches the event contents."""
        body = self.body(self.sequence, self.event_type, self.timestamp, self.payload)
        return chain_digest(self.prev_digest, body) == self.digest


def event_type_of(payload: EventPayload) -> EventType:
    """Return the event type matching a payload instance."""
    for event_type, payload_type in PAYLOAD_TYPES.items():
        if isinstance(payload, payload_type):
            return event_type
    raise TypeError(f"Unsupported event payload: {type(payload).__name__}")
