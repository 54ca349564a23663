"""Structured event stream for clearing runs.

The clearing engine reports what it does (phase boundaries, tier
allocations, caps reached, reputation changes) as ``AuctionEvent`` values
sent to an injected ``EventSink``. Sinks decide what to keep:

- ``NullEventSink`` drops everything (default).
- ``RecordingEventSink`` keeps events in memory, restricted to a set of
  debug vote accounts for validator-scoped events.
- ``StructlogEventSink`` forwards events to a structlog logger.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import structlog


class EventKind(StrEnum):
    """Kinds of events emitted during a clearing run."""

    PHASE_STARTED = "PHASE_STARTED"
    PHASE_FINISHED = "PHASE_FINISHED"
    STAKE_ASSIGNED = "STAKE_ASSIGNED"
    CAP_REACHED = "CAP_REACHED"
    TIER_STARTED = "TIER_STARTED"
    CLEARING_PRICE_SET = "CLEARING_PRICE_SET"
    EXPECTED_BID_SET = "EXPECTED_BID_SET"
    REPUTATION_UPDATED = "REPUTATION_UPDATED"
    REPUTATION_RESCALED = "REPUTATION_RESCALED"
    STATE_RESET = "STATE_RESET"


@dataclass(frozen=True)
class AuctionEvent:
    """One thing that happened during clearing."""

    kind: EventKind
    message: str
    vote_account: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    """Receiver of auction events."""

    def emit(self, event: AuctionEvent) -> None: ...


class NullEventSink:
    """Discards every event."""

    def emit(self, event: AuctionEvent) -> None:
        return None


class RecordingEventSink:
    """Keeps events in memory.

    Run-level events (no vote account) are always kept; validator-scoped
    events only for ``vote_accounts``, so an empty set keeps none of them.
    """

    def __init__(self, vote_accounts: Iterable[str] = ()) -> None:
        self.vote_accounts = set(vote_accounts)
        self.events: list[AuctionEvent] = []

    def emit(self, event: AuctionEvent) -> None:
        if event.vote_account is not None and event.vote_account not in self.vote_accounts:
            return
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[AuctionEvent]:
        return [e for e in self.events if e.kind == kind]

    def for_validator(self, vote_account: str) -> list[AuctionEvent]:
        return [e for e in self.events if e.vote_account == vote_account]


class StructlogEventSink:
    """Forwards events to structlog; validator-scoped events at debug level."""

    def __init__(self, logger: Any = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger("stake_auction")

    def emit(self, event: AuctionEvent) -> None:
        log = self._logger.debug if event.vote_account is not None else self._logger.info
        log(
            event.message,
            kind=event.kind.value,
            vote_account=event.vote_account,
            **event.fields,
        )
