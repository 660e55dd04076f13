"""Tests for AudioGraph lifecycle and OSC handler methods.

These tests call methods directly; OSC sends are recorded by the
connected_graph fixture instead of going to scsynth.
"""

import time

import pytest

from sc_scope.capture import CaptureError, InputStream
from sc_scope.config import ANALYSIS_WINDOW, SOUNDING_LEVEL, SPECTRUM, WAVEFORM
from sc_scope.graph import _ChunkWaiter, make_slots, unroll_window
from sc_scope.protocol import ReleaseAll, SnapshotItem, SourceAdded, SourceFailed
from sc_scope.types import EnvelopeParams, InputDescriptor, ToneDescriptor


def addresses(graph):
    return [address for address, _ in graph.sent]


def added_handle(graph):
    assert isinstance(graph.events[-1], SourceAdded)
    return graph.events[-1].handle


class TestMakeSlots:
    """Tests for the slot pool layout."""

    def test_slots_do_not_share_resources(self):
        slots = make_slots(8)
        buffers = [b for s in slots for b in (s.wave_buf, s.fft_buf)]
        assert len(set(buffers)) == 16
        assert len({s.bus for s in slots}) == 8
        assert len({s.phase_bus for s in slots}) == 8


class TestCreateTone:
    """Tests for tone graph creation."""

    def test_builds_three_nodes_in_a_group(self, connected_graph):
        success, _ = connected_graph.create(0, ToneDescriptor(frequency=261.63, wave_shape="square"))

        assert success is True
        assert addresses(connected_graph) == ["/g_new", "/s_new", "/s_new", "/s_new", "/n_set"]
        handle = added_handle(connected_graph)
        ref = handle.graph_ref
        assert handle.source_id == 0

        producer = connected_graph.sent[1][1]
        assert producer[:4] == ["scope_osc", ref.producer_id, 0, ref.group_id]
        assert producer[producer.index("freq") + 1] == 261.63
        assert producer[producer.index("shape") + 1] == 1  # square
        assert producer[producer.index("out") + 1] == ref.slot.bus

        gain = connected_graph.sent[2][1]
        assert gain[0] == "scope_gain"
        assert gain[gain.index("amp") + 1] == 0.0

        tap = connected_graph.sent[3][1]
        assert tap[0] == "scope_tap"
        assert tap[tap.index("waveBuf") + 1] == ref.slot.wave_buf
        assert tap[tap.index("fftBuf") + 1] == ref.slot.fft_buf
        assert tap[tap.index("phaseBus") + 1] == ref.slot.phase_bus

    def test_attack_ramps_to_sounding_level(self, connected_graph):
        envelope = EnvelopeParams(attack_seconds=0.25)
        connected_graph.create(3, ToneDescriptor(frequency=440.0, envelope=envelope))

        ref = added_handle(connected_graph).graph_ref
        assert connected_graph.sent[-1] == ("/n_set", [ref.gain_id, "lag", 0.25, "amp", SOUNDING_LEVEL])

    def test_instances_are_unique(self, connected_graph):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        connected_graph.create(1, ToneDescriptor(frequency=550.0))

        first, second = [e.handle for e in connected_graph.events]
        assert first.instance != second.instance
        assert first.graph_ref.slot != second.graph_ref.slot
        assert connected_graph.live_count() == 2

    def test_requires_connection(self, graph):
        events = []
        graph.on_event = events.append

        success, message = graph.create(0, ToneDescriptor(frequency=440.0))

        assert success is False
        assert "Not connected" in message
        assert events == [SourceFailed(0, "Not connected to scsynth")]

    def test_rejects_bad_frequency(self, connected_graph):
        success, _ = connected_graph.create(0, ToneDescriptor(frequency=0.0))

        assert success is False
        assert isinstance(connected_graph.events[-1], SourceFailed)
        assert connected_graph.sent == []

    def test_rejects_unknown_shape(self, connected_graph):
        success, message = connected_graph.create(0, ToneDescriptor(frequency=440.0, wave_shape="noise"))

        assert success is False
        assert "noise" in message

    def test_slot_pool_exhaustion(self, connected_graph):
        for i in range(4):
            connected_graph.create(i, ToneDescriptor(frequency=440.0))

        success, _ = connected_graph.create(4, ToneDescriptor(frequency=440.0))

        assert success is False
        assert connected_graph.events[-1].source_id == 4
        assert isinstance(connected_graph.events[-1], SourceFailed)
        assert "No free graph slots" in connected_graph.get_logs(category="fail")[-1].message

    def test_send_failure_returns_slot(self, graph, mocker):
        graph._reply_server = mocker.MagicMock()
        mocker.patch.object(graph, "_send_message", return_value=False)
        events = []
        graph.on_event = events.append

        success, _ = graph.create(0, ToneDescriptor(frequency=440.0))

        assert success is False
        assert isinstance(events[-1], SourceFailed)
        assert len(graph._free_slots) == 4
        assert graph.live_count() == 0


class TestCreateInput:
    """Tests for the captured-input path."""

    def test_runs_off_the_calling_thread(self, connected_graph, mocker):
        thread_cls = mocker.patch("sc_scope.graph.threading.Thread")

        success, _ = connected_graph.create(-1, InputDescriptor())

        assert success is True
        thread_cls.assert_called_once()
        assert thread_cls.call_args.kwargs["target"] == connected_graph._activate_input
        thread_cls.return_value.start.assert_called_once()
        assert connected_graph.events == []  # nothing until the device answers

    def test_wires_input_at_sounding_level(self, connected_graph):
        connected_graph._capture = lambda channel: InputStream("Built-in Mic", channel, 48000.0)

        connected_graph._activate_input(-1, InputDescriptor(channel=1))

        handle = added_handle(connected_graph)
        assert handle.source_id == -1
        producer = connected_graph.sent[1][1]
        assert producer[0] == "scope_input"
        assert producer[producer.index("channel") + 1] == 1
        gain = connected_graph.sent[2][1]
        assert gain[gain.index("amp") + 1] == SOUNDING_LEVEL
        # No attack ramp
        assert "/n_set" not in addresses(connected_graph)

    def test_capture_failure_emits_failed(self, connected_graph):
        def deny(channel):
            raise CaptureError("permission denied")

        connected_graph._capture = deny

        connected_graph._activate_input(-1, InputDescriptor())

        assert len(connected_graph.events) == 1
        assert isinstance(connected_graph.events[0], SourceFailed)
        assert "permission denied" in connected_graph.events[0].reason
        assert connected_graph.sent == []
        assert connected_graph.live_count() == 0

    def test_unexpected_capture_error_emits_failed(self, connected_graph):
        def broken(channel):
            raise RuntimeError("backend crashed")

        connected_graph._capture = broken

        connected_graph._activate_input(-1, InputDescriptor())

        assert len(connected_graph.events) == 1
        assert isinstance(connected_graph.events[0], SourceFailed)
        assert "backend crashed" in connected_graph.events[0].reason

    def test_build_error_emits_failed(self, connected_graph, mocker):
        connected_graph._capture = lambda channel: InputStream("Built-in Mic", channel, 48000.0)
        mocker.patch.object(connected_graph, "_build", side_effect=KeyError("slot"))

        connected_graph._activate_input(-1, InputDescriptor())

        assert [type(e) for e in connected_graph.events] == [SourceFailed]


class TestRelease:
    """Tests for release and teardown."""

    @pytest.fixture
    def timer_cls(self, mocker):
        return mocker.patch("sc_scope.graph.threading.Timer")

    def test_ramps_to_zero_and_schedules_teardown(self, connected_graph, timer_cls):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        handle = added_handle(connected_graph)

        success, _ = connected_graph.release(handle, EnvelopeParams(release_seconds=0.5))

        assert success is True
        assert connected_graph.sent[-1] == ("/n_set", [handle.graph_ref.gain_id, "lag", 0.5, "amp", 0.0])
        timer_cls.assert_called_once_with(0.5, connected_graph._teardown, args=(handle.graph_ref,))
        timer_cls.return_value.start.assert_called_once()
        # Still live until the fade has finished
        assert connected_graph.live_count() == 1

    def test_second_release_is_noop(self, connected_graph, timer_cls):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        handle = added_handle(connected_graph)
        connected_graph.release(handle)
        sent_before = len(connected_graph.sent)

        success, _ = connected_graph.release(handle)

        assert success is False
        assert timer_cls.call_count == 1
        assert len(connected_graph.sent) == sent_before

    def test_teardown_frees_group_and_slot(self, connected_graph, timer_cls):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        handle = added_handle(connected_graph)
        connected_graph.release(handle)

        connected_graph._teardown(handle.graph_ref)

        assert connected_graph.sent[-1] == ("/n_free", [handle.graph_ref.group_id])
        assert connected_graph.live_count() == 0
        assert len(connected_graph._free_slots) == 4
        assert connected_graph._releasing == {}

    def test_teardown_twice_is_noop(self, connected_graph, timer_cls):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        connected_graph._teardown(ref)
        sent_before = len(connected_graph.sent)

        connected_graph._teardown(ref)

        assert len(connected_graph.sent) == sent_before
        assert len(connected_graph._free_slots) == 4

    def test_release_after_teardown_is_noop(self, connected_graph, timer_cls):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        handle = added_handle(connected_graph)
        connected_graph._teardown(handle.graph_ref)

        success, _ = connected_graph.release(handle)

        assert success is False
        timer_cls.assert_not_called()

    def test_real_timer_tears_down(self, connected_graph):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        handle = added_handle(connected_graph)

        connected_graph.release(handle, EnvelopeParams(release_seconds=0.01))

        deadline = time.monotonic() + 2.0
        while connected_graph.live_count() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert connected_graph.live_count() == 0
        assert ("/n_free", [handle.graph_ref.group_id]) in connected_graph.sent

    def test_free_all_skips_fades(self, connected_graph, timer_cls):
        for i in range(3):
            connected_graph.create(i, ToneDescriptor(frequency=440.0))
        connected_graph.release(connected_graph.events[0].handle)

        success, message = connected_graph.free_all()

        assert success is True
        assert "3" in message
        timer_cls.return_value.cancel.assert_called_once()
        assert connected_graph.live_count() == 0
        assert addresses(connected_graph).count("/n_free") == 3

    def test_slot_reused_after_teardown(self, connected_graph, timer_cls):
        for i in range(4):
            connected_graph.create(i, ToneDescriptor(frequency=440.0))
        connected_graph._teardown(connected_graph.events[0].handle.graph_ref)

        success, _ = connected_graph.create(9, ToneDescriptor(frequency=440.0))

        assert success is True
        assert added_handle(connected_graph).source_id == 9


class TestExtractSnapshot:
    """Tests for tap buffer reads."""

    def test_reads_waveform_in_chunks(self, connected_graph):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        samples = [((i % 100) - 50) / 50 for i in range(ANALYSIS_WINDOW)]
        connected_graph.buffers[ref.slot.wave_buf] = samples
        connected_graph.controls[ref.slot.phase_bus] = 0.0

        analyses = connected_graph.extract_snapshot([SnapshotItem(0, ref)], WAVEFORM)

        assert len(analyses) == 1
        assert analyses[0].source_id == 0
        assert analyses[0].instance == ref.instance
        assert list(analyses[0].data) == samples
        assert addresses(connected_graph).count("/b_getn") > 1

    def test_window_starts_at_write_position(self, connected_graph):
        """The circular buffer comes back oldest sample first."""
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        samples = [float(i) for i in range(ANALYSIS_WINDOW)]
        connected_graph.buffers[ref.slot.wave_buf] = samples
        connected_graph.controls[ref.slot.phase_bus] = 1000.0

        data = connected_graph.extract_snapshot([SnapshotItem(0, ref)], WAVEFORM)[0].data

        assert len(data) == ANALYSIS_WINDOW
        # Oldest sample (at the write position) first, newest (just before it) last
        assert data[0] == 1000.0
        assert data[-1] == 999.0
        assert list(data) == samples[1000:] + samples[:1000]

    def test_tap_paused_while_reading(self, connected_graph):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        connected_graph.buffers[ref.slot.wave_buf] = [0.0] * ANALYSIS_WINDOW
        connected_graph.controls[ref.slot.phase_bus] = 12.0

        connected_graph.extract_snapshot([SnapshotItem(0, ref)], WAVEFORM)

        reads = connected_graph.sent[5:]
        assert reads[0] == ("/n_run", [ref.tap_id, 0])
        assert reads[1] == ("/c_get", [ref.slot.phase_bus])
        assert {a for a, _ in reads[2:-1]} == {"/b_getn"}
        assert reads[-1] == ("/n_run", [ref.tap_id, 1])
        assert connected_graph.live_count() == 1

    def test_spectrum_has_half_window_bins(self, connected_graph):
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        connected_graph.buffers[ref.slot.fft_buf] = [0.0] * ANALYSIS_WINDOW

        analyses = connected_graph.extract_snapshot([SnapshotItem(0, ref)], SPECTRUM)

        assert len(analyses[0].data) == ANALYSIS_WINDOW // 2
        assert all(db == -100.0 for db in analyses[0].data)
        assert connected_graph.sent[-1] == ("/n_run", [ref.tap_id, 1])

    def test_one_entry_per_item(self, connected_graph, mocker):
        mocker.patch("sc_scope.graph.threading.Timer")
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        connected_graph.create(1, ToneDescriptor(frequency=550.0))
        first, second = [e.handle.graph_ref for e in connected_graph.events]
        connected_graph.buffers[first.slot.wave_buf] = [0.25] * ANALYSIS_WINDOW
        connected_graph.buffers[second.slot.wave_buf] = [0.5] * ANALYSIS_WINDOW
        connected_graph.controls[first.slot.phase_bus] = 0.0
        connected_graph.controls[second.slot.phase_bus] = 0.0
        connected_graph._teardown(second)

        analyses = connected_graph.extract_snapshot(
            [SnapshotItem(0, first), SnapshotItem(1, second)], WAVEFORM
        )

        assert [a.source_id for a in analyses] == [0, 1]
        assert len(analyses[0].data) == ANALYSIS_WINDOW
        assert analyses[1].data == ()  # torn down, not read

    def test_missing_write_position_yields_empty_data(self, connected_graph, mocker):
        mocker.patch("sc_scope.graph.SNAPSHOT_TIMEOUT", 0.01)
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        connected_graph.buffers[ref.slot.wave_buf] = [0.0] * ANALYSIS_WINDOW

        analyses = connected_graph.extract_snapshot([SnapshotItem(0, ref)], WAVEFORM)

        assert analyses[0].data == ()
        assert "/b_getn" not in addresses(connected_graph)
        assert connected_graph._control_waiters == {}
        assert connected_graph.sent[-1] == ("/n_run", [ref.tap_id, 1])

    def test_timeout_yields_empty_data(self, connected_graph, mocker):
        mocker.patch("sc_scope.graph.SNAPSHOT_TIMEOUT", 0.01)
        connected_graph.create(0, ToneDescriptor(frequency=440.0))
        ref = added_handle(connected_graph).graph_ref
        connected_graph.controls[ref.slot.phase_bus] = 0.0

        analyses = connected_graph.extract_snapshot([SnapshotItem(0, ref)], WAVEFORM)

        assert analyses[0].data == ()
        assert connected_graph._buffer_waiters == {}


class TestUnrollWindow:
    """Tests for unroll_window."""

    def test_rotates_at_write_position(self):
        assert unroll_window([4.0, 5.0, 1.0, 2.0, 3.0], 2) == [1.0, 2.0, 3.0, 4.0, 5.0]

    def test_zero_position_keeps_order(self):
        assert unroll_window([1.0, 2.0, 3.0], 0) == [1.0, 2.0, 3.0]

    def test_position_wraps(self):
        assert unroll_window([3.0, 1.0, 2.0], 4) == [1.0, 2.0, 3.0]

    def test_empty(self):
        assert unroll_window([], 7) == []


class TestHandleControlValue:
    """Tests for _handle_control_value handler."""

    def test_wakes_waiter(self, graph):
        waiter = _ChunkWaiter()
        graph._control_waiters[1000] = [waiter]

        graph._handle_control_value("/c_set", 1000, 317.0)

        assert waiter.event.is_set()
        assert waiter.values == [317.0]
        assert graph._control_waiters == {}

    def test_multiple_pairs(self, graph):
        first, second = _ChunkWaiter(), _ChunkWaiter()
        graph._control_waiters[1000] = [first]
        graph._control_waiters[1001] = [second]

        graph._handle_control_value("/c_set", 1000, 1.0, 1001, 2.0)

        assert first.values == [1.0]
        assert second.values == [2.0]

    def test_logs_invalid_value(self, graph):
        graph._handle_control_value("/c_set", "bus", 1.0)
        assert graph.get_logs(category="fail")

    def test_ignores_short_args(self, graph):
        graph._handle_control_value("/c_set", 1000)
        assert graph.get_logs() == []


class TestHandleBufferData:
    """Tests for _handle_buffer_data handler."""

    def test_wakes_waiter(self, graph):
        waiter = _ChunkWaiter()
        graph._buffer_waiters[(900, 0)] = [waiter]

        graph._handle_buffer_data("/b_setn", 900, 0, 3, 0.1, 0.2, 0.3, 0.4)

        assert waiter.event.is_set()
        assert waiter.values == [0.1, 0.2, 0.3]
        assert (900, 0) not in graph._buffer_waiters

    def test_ignores_unrequested_data(self, graph):
        graph._handle_buffer_data("/b_setn", 901, 0, 2, 0.1, 0.2)
        assert graph._buffer_waiters == {}

    def test_ignores_short_args(self, graph):
        graph._handle_buffer_data("/b_setn", 900, 0)
        assert graph.get_logs() == []

    def test_logs_invalid_data(self, graph):
        graph._handle_buffer_data("/b_setn", "nine", 0, 1, 0.5)
        assert graph.get_logs(category="fail")


class TestHandleStatusReply:
    """Tests for _handle_status_reply handler."""

    def test_parses_full_status(self, graph):
        graph._handle_status_reply("/status.reply", 1, 100, 10, 5, 200, 15.5, 25.3, 48000, 48000.0)

        assert graph.status.running is True
        assert graph.status.num_synths == 10
        assert graph.status.sample_rate == 48000.0
        assert graph._status_event.is_set()

    def test_ignores_short_args(self, graph):
        original_status = graph.status

        graph._handle_status_reply("/status.reply", 1, 2, 3)

        assert graph.status == original_status
        assert graph._status_event.is_set()


class TestLogHandlers:
    """Tests for /done, /fail, /n_go and /n_end handlers."""

    def test_done(self, graph):
        graph._handle_done("/done", "/b_alloc", 900)
        logs = graph.get_logs(category="done")
        assert "/b_alloc completed" in logs[0].message

    def test_fail(self, graph):
        graph._handle_fail("/fail", "/s_new", "SynthDef not found")
        logs = graph.get_logs(category="fail")
        assert "SynthDef not found" in logs[0].message

    def test_node_go_and_end(self, graph):
        graph._handle_node_go("/n_go", 1000, 0, -1, -1, 1)
        graph._handle_node_end("/n_end", 1000, 0, -1, -1)
        logs = graph.get_logs(category="node")
        assert "group" in logs[0].message
        assert "ended" in logs[1].message

    def test_node_go_short_args(self, graph):
        graph._handle_node_go("/n_go", 1000)
        assert graph.get_logs() == []

    def test_log_limit_and_clear(self, graph):
        for i in range(10):
            graph._handle_done("/done", f"/cmd{i}")
        assert len(graph.get_logs(limit=3)) == 3
        assert graph.get_logs(limit=3)[-1].message.startswith("/cmd9")

        graph.clear_logs()
        assert graph.get_logs() == []


class TestConnection:
    """Tests for connection state without a server."""

    def test_status_when_disconnected(self, graph):
        assert graph.get_status().running is False
        assert graph.is_connected() is False

    def test_disconnect_frees_buffers(self, connected_graph, mocker):
        server = connected_graph._reply_server
        stop = mocker.patch.object(connected_graph._sclang, "stop")

        connected_graph.disconnect()

        stop.assert_called_once()
        server.shutdown.assert_called_once()
        assert addresses(connected_graph).count("/b_free") == 8
        assert connected_graph.is_connected() is False

    def test_disconnect_invalidates_handles(self, connected_graph, mocker):
        mocker.patch.object(connected_graph._sclang, "stop")
        connected_graph.create(0, ToneDescriptor(frequency=440.0))

        connected_graph.disconnect()

        assert isinstance(connected_graph.events[-1], ReleaseAll)
        assert connected_graph.live_count() == 0
