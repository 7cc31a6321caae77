"""Tests for the session state machine, driven entirely by fakes."""

import asyncio
import re

import pytest
from fakes import FakeBackend, FakeChannelFactory, FakeTrack, fast_config, make_rig, wait_until

from huddle.audio.types import CaptureMode, SourceKind
from huddle.errors import AcquisitionError, RecordingError
from huddle.session import ALL_SOURCES_ENDED, SessionParams, SessionState, new_session_id
from huddle.transport.base import ChannelState, TransportKind


def test_session_id_format():
  assert re.fullmatch(r"live_\d{13}_[0-9a-f]{6}", new_session_id())


class TestLifecycle:
  """Start, stream and stop on a healthy socket."""

  async def test_streams_over_the_socket(self):
    rig = make_rig()
    session = rig.session()

    await session.start()

    assert session.state is SessionState.ACTIVE
    assert session.transport_kind is TransportKind.LOW_LATENCY_SOCKET
    assert session.capture_mode is CaptureMode.PRIMARY
    assert [h.kind for h in session.handles] == [SourceKind.LOOPBACK, SourceKind.MICROPHONE]
    assert session.recorder.cadence == 0.05

    await wait_until(lambda: len(rig.channels.delivered()) >= 3)
    result = await session.stop()

    sequence = [c.sequence_no for c in rig.channels.delivered()]
    assert sequence == list(range(1, len(sequence) + 1))
    assert rig.channels.delivered()[-1].final
    assert result.success
    assert result.session_id == session.id
    assert result.chunks_produced == len(sequence)
    assert result.transport is TransportKind.LOW_LATENCY_SOCKET
    assert session.state is SessionState.CLOSED
    assert rig.channels.finalizer_instance.notified == [session.id]

  async def test_stop_releases_everything(self):
    rig = make_rig()
    session = rig.session()
    await session.start()

    await session.stop()

    assert all(h.released for h in session.handles)
    assert [t.stop_calls for t in rig.backend.tracks] == [1, 1]
    assert [a.released for a in rig.backend.anchors] == [1]
    assert session.bus.closed
    assert session.transport_state is ChannelState.CLOSED
    assert not rig.volume.running
    assert rig.backend.remote_subscribers == 0

  async def test_volume_updates_while_active(self):
    rig = make_rig()
    session = rig.session()
    await session.start()

    await wait_until(lambda: rig.events.of_type("VOLUME_UPDATE"))
    await session.stop()

    assert all(len(e.volumes) == 15 for e in rig.events.of_type("VOLUME_UPDATE"))

  async def test_cannot_start_twice(self):
    rig = make_rig()
    session = rig.session()
    await session.start()

    with pytest.raises(RuntimeError):
      await session.start()
    await session.stop()


class TestStop:
  async def test_stop_twice_finalizes_once(self):
    rig = make_rig()
    session = rig.session()
    await session.start()

    first = await session.stop()
    second = await session.stop()

    assert first == second
    assert rig.channels.finalizer_instance.notified == [session.id]
    assert [t.stop_calls for t in rig.backend.tracks] == [1, 1]

  async def test_concurrent_stops_share_one_result(self):
    rig = make_rig()
    session = rig.session()
    await session.start()

    first, second = await asyncio.gather(session.stop(), session.stop())

    assert first == second
    assert len(rig.channels.finalizer_instance.notified) == 1

  async def test_stop_while_opening_transport(self):
    """A stop during start waits for it to settle, and no chunk is ever produced."""
    rig = make_rig(channels=FakeChannelFactory(socket_delay=0.1))
    session = rig.session()
    starting = asyncio.create_task(session.start())
    await wait_until(lambda: session.state is SessionState.OPENING_TRANSPORT)

    result = await session.stop()
    await starting

    assert session.state is SessionState.CLOSED
    assert session.recorder is None
    assert result.chunks_produced == 0
    assert rig.channels.delivered() == []
    assert all(h.released for h in session.handles)
    assert rig.channels.finalizer_instance.notified == [session.id]

  async def test_finalize_failure_still_closes(self):
    rig = make_rig(channels=FakeChannelFactory(finalize_fails=True))
    session = rig.session()
    await session.start()

    result = await session.stop()

    assert result.success
    assert session.state is SessionState.CLOSED

  async def test_on_closed_called_once(self):
    rig = make_rig()
    closed = []
    session = rig.session(on_closed=closed.append)
    await session.start()

    await session.stop()
    await session.stop()

    assert closed == [session]


class TestTransportSelection:
  """Socket first, buffered HTTP when the socket cannot be used."""

  async def test_falls_back_to_buffered_uploads(self):
    rig = make_rig(channels=FakeChannelFactory(socket_ok=False))
    session = rig.session()

    await session.start()

    assert session.transport_kind is TransportKind.BUFFERED_HTTP
    assert session.transport_history == [
      TransportKind.LOW_LATENCY_SOCKET,
      TransportKind.BUFFERED_HTTP,
    ]
    assert session.recorder.cadence == 0.25

    await asyncio.sleep(0.1)
    assert rig.channels.delivered() == []

    result = await session.stop()

    [final] = rig.channels.delivered()
    assert final.final
    assert final.sequence_no == 1
    assert final.transport is TransportKind.BUFFERED_HTTP
    assert 0 < final.duration < 0.25
    assert result.transport is TransportKind.BUFFERED_HTTP

  async def test_slow_handshake_then_buffered_cadence(self):
    rig = make_rig(channels=FakeChannelFactory(socket_ok=False, socket_delay=0.15))
    session = rig.session(SessionParams(source_id="tab-1", include_microphone=False))
    loop = asyncio.get_running_loop()

    await session.start()
    active_at = loop.time()

    assert session.transport_kind is TransportKind.BUFFERED_HTTP
    await asyncio.sleep(0.1)
    assert session.bus.backlog_frames < 0.05 * 16000
    assert rig.channels.delivered() == []

    await wait_until(lambda: len(rig.channels.delivered()) >= 1)

    first = rig.channels.delivered()[0]
    assert loop.time() - active_at >= 0.2
    assert not first.final
    assert first.sequence_no == 1
    assert first.duration == pytest.approx(0.25, abs=0.01)
    await session.stop()

  async def test_stop_after_slow_handshake_delivers_all_audio(self):
    rig = make_rig(channels=FakeChannelFactory(socket_ok=False, socket_delay=0.18))
    session = rig.session(SessionParams(source_id="tab-1", include_microphone=False))
    loop = asyncio.get_running_loop()

    await session.start()
    active_at = loop.time()
    await asyncio.sleep(0.4)
    assert session.bus.backlog_frames < 0.05 * 16000
    active_duration = loop.time() - active_at

    result = await session.stop()

    delivered = rig.channels.delivered()
    assert result.success
    assert delivered[-1].final
    assert sum(c.duration for c in delivered) == pytest.approx(active_duration, abs=0.08)
    assert sum(c.duration for c in delivered) == pytest.approx(
      session.bus.frames_mixed / 16000
    )
    assert session.bus.backlog_frames == 0

  async def test_no_transport_at_all(self):
    rig = make_rig(channels=FakeChannelFactory(socket_ok=False, http_ok=False))
    session = rig.session()

    with pytest.raises(RecordingError, match="No transport"):
      await session.start()

    assert session.state is SessionState.CLOSED
    assert len(rig.events.of_type("RECORDING_ERROR")) == 1
    assert all(h.released for h in session.handles)
    assert rig.channels.finalizer_instance.notified == []

  async def test_lost_socket_downgrades_to_buffered(self):
    rig = make_rig()
    session = rig.session()
    await session.start()
    await wait_until(lambda: len(rig.channels.delivered()) >= 2)
    socket = rig.channels.created[0]

    socket.lose()
    await wait_until(lambda: session.transport_kind is TransportKind.BUFFERED_HTTP)

    assert session.state is SessionState.ACTIVE
    assert session.recorder.cadence == 0.25
    await wait_until(lambda: socket.state is ChannelState.CLOSED)

    await session.stop()

    assert session.transport_history == [
      TransportKind.LOW_LATENCY_SOCKET,
      TransportKind.BUFFERED_HTTP,
    ]
    buffered = rig.channels.created[1]
    assert buffered.chunks
    assert all(c.transport is TransportKind.BUFFERED_HTTP for c in buffered.chunks)
    sequence = [c.sequence_no for c in rig.channels.delivered()]
    assert all(a < b for a, b in zip(sequence, sequence[1:]))
    assert not rig.events.of_type("RECORDING_ERROR")

  async def test_failed_delivery_is_counted_and_skipped(self):
    rig = make_rig(channels=FakeChannelFactory(fail_sequences={2}))
    session = rig.session()
    await session.start()
    await wait_until(lambda: len(rig.channels.delivered()) >= 3)

    result = await session.stop()

    socket = rig.channels.created[0]
    assert 2 not in socket.sequence_numbers
    assert socket.sequence_numbers[:2] == [1, 3]
    assert socket.retry_count == 1
    assert result.success


class TestSources:
  async def test_missing_microphone_is_a_warning(self):
    rig = make_rig(backend=FakeBackend(fail_microphone=True))
    session = rig.session()

    await session.start()

    assert session.state is SessionState.ACTIVE
    assert [h.kind for h in session.handles] == [SourceKind.LOOPBACK]
    assert len(rig.events.of_type("RECORDING_WARNING")) == 1
    assert rig.events.of_type("RECORDING_ERROR") == []
    await session.stop()

  async def test_picker_fallback_is_recorded(self):
    rig = make_rig(backend=FakeBackend(fail_primary=True))
    session = rig.session()

    await session.start()

    assert session.capture_mode is CaptureMode.ALTERNATE
    await session.stop()

  async def test_acquisition_failure_closes_the_session(self):
    rig = make_rig(backend=FakeBackend(fail_primary=True, fail_alternate=True))
    closed = []
    session = rig.session(on_closed=closed.append)

    with pytest.raises(AcquisitionError):
      await session.start()

    assert session.state is SessionState.CLOSED
    assert rig.channels.created == []
    assert len(rig.events.of_type("RECORDING_ERROR")) == 1
    assert closed == [session]
    result = await session.stop()
    assert not result.success
    assert "User cancelled the picker" in result.error
    assert rig.channels.finalizer_instance.notified == []

  async def test_one_source_ending_keeps_recording(self):
    rig = make_rig()
    session = rig.session()
    await session.start()
    primary, microphone = session.handles

    microphone.track.end()

    assert session.state is SessionState.ACTIVE
    assert session.bus.input_ids == [primary.id]
    assert microphone.released
    await session.stop()

  async def test_all_sources_ending_stops_the_session(self):
    rig = make_rig()
    session = rig.session(SessionParams(source_id="tab-1", include_microphone=False))
    await session.start()

    rig.backend.tracks[0].end()
    await wait_until(lambda: session.state is SessionState.CLOSED)

    [error] = rig.events.of_type("RECORDING_ERROR")
    assert error.error == ALL_SOURCES_ENDED
    assert session.result.error == ALL_SOURCES_ENDED
    assert rig.backend.anchors[0].released == 1
    assert rig.channels.finalizer_instance.notified == [session.id]

  async def test_remote_peer_tracks_join_the_mix(self):
    rig = make_rig()
    session = rig.session()
    await session.start()
    peer = FakeTrack("peer-1", generate=True)

    rig.backend.add_remote_track(peer)

    remote = session.handles[-1]
    assert remote.kind is SourceKind.REMOTE_PEER
    assert remote.id in session.bus.input_ids
    await session.stop()
    assert peer.stop_calls == 0
    assert rig.backend.remote_subscribers == 0


class TestRecorderFailure:
  async def test_encoder_failure_finalizes(self):
    rig = make_rig(config=fast_config(format="NOT_A_FORMAT"))
    session = rig.session()

    with pytest.raises(RecordingError):
      await session.start()

    assert session.state is SessionState.CLOSED
    assert len(rig.events.of_type("RECORDING_ERROR")) == 1
    assert rig.channels.created[0].state is ChannelState.CLOSED
    assert all(h.released for h in session.handles)
    assert session.result.error is not None
