"""Pytest fixtures for sc-scope tests."""

import pytest
from unittest.mock import Mock

from sc_scope.graph import AudioGraph, make_slots
from sc_scope.runtime import ScopeRuntime
from sc_scope.types import AudioSourceHandle, GraphRef


def _make_handle(source_id: int, instance: int = 1) -> AudioSourceHandle:
    """A handle for a graph that only exists on paper."""
    slot = make_slots(1)[0]
    ref = GraphRef(
        instance=instance,
        slot=slot,
        group_id=2000 + instance * 10,
        producer_id=2001 + instance * 10,
        gain_id=2002 + instance * 10,
        tap_id=2003 + instance * 10,
    )
    return AudioSourceHandle(source_id, ref)


@pytest.fixture
def make_handle():
    """Factory for handles: make_handle(source_id, instance=1)."""
    return _make_handle


@pytest.fixture
def graph():
    """Provide a fresh, unconnected AudioGraph with a four-slot pool."""
    return AudioGraph(slots=make_slots(4))


@pytest.fixture
def connected_graph(graph, mocker):
    """An AudioGraph whose OSC sends are recorded instead of sent."""
    graph._reply_server = mocker.MagicMock()
    sent = []
    buffers = {}
    controls = {}

    def record(address, args):
        sent.append((address, list(args)))
        # Answer buffer reads the way scsynth does, synchronously
        if address == "/b_getn" and args[0] in buffers:
            bufnum, start, count = args
            graph._handle_buffer_data("/b_setn", bufnum, start, count, *buffers[bufnum][start:start + count])
        elif address == "/c_get" and args[0] in controls:
            graph._handle_control_value("/c_set", args[0], controls[args[0]])
        return True

    mocker.patch.object(graph, "_send_message", side_effect=record)
    graph.sent = sent
    graph.buffers = buffers
    graph.controls = controls
    graph.events = []
    graph.on_event = graph.events.append
    return graph


@pytest.fixture
def mock_graph():
    return Mock(spec=AudioGraph)


@pytest.fixture
def mock_worker():
    return Mock()


@pytest.fixture
def scope_runtime(mock_graph, mock_worker):
    """A stopped runtime driven with drain(), with no frame delay."""
    return ScopeRuntime(mock_graph, mock_worker, frame_interval=0)


@pytest.fixture
def mock_runtime(mocker):
    """Provide a mock ScopeRuntime patched into the tools module."""
    mock = Mock(spec=ScopeRuntime)
    mocker.patch('sc_scope.tools.runtime', mock)
    return mock


@pytest.fixture
def mock_audio_graph(mocker):
    """Provide a mock AudioGraph patched into the tools module."""
    mock = Mock(spec=AudioGraph)
    mocker.patch('sc_scope.tools.audio_graph', mock)
    return mock
