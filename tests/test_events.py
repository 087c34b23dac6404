from __future__ import annotations

import logging

import pytest

from flotilla.events import EventBus, EventRecorder


def test_subscribers_receive_events_in_order() -> None:
    bus = EventBus()
    first = EventRecorder()
    second = EventRecorder()
    bus.subscribe(first)
    bus.subscribe(second)

    bus.publish("task:start", session_id="worker-1", area="api")
    event = bus.publish("task:complete", session_id="worker-1")

    assert [e.type for e in first.events] == ["task:start", "task:complete"]
    assert second.events[-1] is event
    assert first.of_type("task:start")[0].data == {"area": "api"}


def test_failing_subscriber_is_isolated(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    recorder = EventRecorder()

    def broken(_event) -> None:
        raise RuntimeError("observer bug")

    bus.subscribe(broken)
    bus.subscribe(recorder)

    with caplog.at_level(logging.ERROR, logger="flotilla.events"):
        bus.publish("merge:completed")

    assert len(recorder.events) == 1
    assert "Event subscriber failed" in caplog.text


def test_unsubscribe_and_recorder_limit() -> None:
    bus = EventBus()
    recorder = EventRecorder(limit=2)
    unsubscribe = bus.subscribe(recorder)

    for index in range(3):
        bus.publish("iteration:start", iteration=index)
    unsubscribe()
    bus.publish("iteration:start", iteration=99)

    assert [event.data["iteration"] for event in recorder.events] == [1, 2]
