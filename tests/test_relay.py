"""Tests for the event bus and the transcript relay."""

from fakes import EventRecorder

from huddle.events import EventBus, TranscriptUpdate, VolumeUpdate
from huddle.relay import TranscriptRelay


class TestEventBus:
  def test_listeners_called_in_order(self):
    bus = EventBus()
    seen = []
    bus.subscribe(lambda e: seen.append(("a", e.type)))
    bus.subscribe(lambda e: seen.append(("b", e.type)))

    bus.emit(VolumeUpdate(volumes=[1]))

    assert seen == [("a", "VOLUME_UPDATE"), ("b", "VOLUME_UPDATE")]

  def test_failing_listener_does_not_break_others(self):
    bus = EventBus()
    seen = []

    def broken(event):
      raise RuntimeError("listener bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    bus.emit(TranscriptUpdate(text="still delivered"))

    assert seen == [TranscriptUpdate(text="still delivered")]

  def test_unsubscribe(self):
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    bus.emit(TranscriptUpdate(text="nobody listens"))

    assert seen == []


class TestTranscriptRelay:
  def test_publish_forwards_in_order(self):
    events = EventRecorder()
    relay = TranscriptRelay(events)
    fragments = []
    relay.subscribe(fragments.append)

    relay.publish("live_1", "first")
    relay.publish("live_1", "second")

    assert [f.text for f in fragments] == ["first", "second"]
    assert all(f.session_id == "live_1" for f in fragments)
    assert [e.text for e in events.of_type("TRANSCRIPT_UPDATE")] == ["first", "second"]

  def test_empty_text_is_skipped(self):
    events = EventRecorder()
    relay = TranscriptRelay(events)

    assert relay.publish("live_1", "") is None
    assert relay.publish("live_1", "   ") is None
    assert events.events == []

  def test_received_at_is_set(self):
    fragment = TranscriptRelay().publish("live_1", "hello")

    assert fragment is not None
    assert fragment.received_at > 0

  def test_failing_subscriber_is_skipped(self):
    events = EventRecorder()
    relay = TranscriptRelay(events)

    def broken(fragment):
      raise ValueError("boom")

    relay.subscribe(broken)
    relay.publish("live_1", "text")

    assert len(events.of_type("TRANSCRIPT_UPDATE")) == 1
