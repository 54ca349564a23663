"""Tests for auction event sinks."""

from stake_auction.engine.events import (
    AuctionEvent,
    EventKind,
    NullEventSink,
    RecordingEventSink,
    StructlogEventSink,
)


class _FakeLogger:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []

    def debug(self, message: str, **kw) -> None:
        self.calls.append(("debug", message, kw))

    def info(self, message: str, **kw) -> None:
        self.calls.append(("info", message, kw))


def _validator_event(vote_account: str) -> AuctionEvent:
    return AuctionEvent(
        kind=EventKind.STAKE_ASSIGNED, message="received stake", vote_account=vote_account,
    )


class TestRecordingEventSink:
    def test_no_debug_accounts_keeps_only_run_events(self) -> None:
        sink = RecordingEventSink()
        sink.emit(_validator_event("a"))
        sink.emit(_validator_event("b"))
        sink.emit(AuctionEvent(kind=EventKind.STATE_RESET, message="reset"))
        assert [e.kind for e in sink.events] == [EventKind.STATE_RESET]
        assert sink.for_validator("a") == []

    def test_filters_validator_events(self) -> None:
        sink = RecordingEventSink(["a"])
        sink.emit(_validator_event("a"))
        sink.emit(_validator_event("b"))
        sink.emit(AuctionEvent(kind=EventKind.STATE_RESET, message="reset"))
        assert [e.vote_account for e in sink.events] == ["a", None]
        assert len(sink.for_validator("a")) == 1
        assert len(sink.of_kind(EventKind.STATE_RESET)) == 1


class TestNullEventSink:
    def test_discards(self) -> None:
        assert NullEventSink().emit(_validator_event("a")) is None


class TestStructlogEventSink:
    def test_levels_and_fields(self) -> None:
        logger = _FakeLogger()
        sink = StructlogEventSink(logger)
        sink.emit(_validator_event("a"))
        sink.emit(AuctionEvent(
            kind=EventKind.CLEARING_PRICE_SET, message="cleared", fields={"clearing_pmpe": 1.2},
        ))
        (level_a, _, fields_a), (level_b, message_b, fields_b) = logger.calls
        assert level_a == "debug"
        assert fields_a["vote_account"] == "a"
        assert level_b == "info"
        assert message_b == "cleared"
        assert fields_b["clearing_pmpe"] == 1.2
        assert fields_b["kind"] == "CLEARING_PRICE_SET"
