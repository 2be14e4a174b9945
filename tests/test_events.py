"""Tests for the progress event emitter."""
from web_navigator.events import EventEmitter, StepCompleted


def test_broken_listener_does_not_stop_others():
    emitter = EventEmitter()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    emitter.subscribe(broken)
    emitter.subscribe(received.append)
    event = StepCompleted("s1", 1, 4, 120)
    emitter.emit(event)
    assert received == [event]

    emitter.unsubscribe(received.append)
    emitter.emit(event)
    assert received == [event]
