"""Scope state: the registry of sounding sources, their waveforms, zoom and viewport.

``transition`` is the only way state changes. It takes the current state and
one event and returns the next state plus the commands to run; the input
state is never mutated, so whoever reads a snapshot for painting always sees
a consistent record.

Per-id lifecycle:

    absent --toggle--> pending --SourceAdded--> live --toggle--> absent
                          |                                  (graph releasing)
                       toggle
                          v
                   pending (cancelled) --SourceAdded--> absent (released at once)

Analysis replies are folded in only for ids that are live with the same
graph instance. Anything else is a stale reply and is dropped, which makes
the fold safe to apply in any order relative to removals.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Mapping, Optional

from .config import (
    DEFAULT_ANALYSIS_KINDS,
    DEFAULT_WAVE_SHAPE,
    MIC_SOURCE_ID,
    SPECTRUM,
    WAVE_SHAPES,
    WAVEFORM,
)
from .decimate import decimate, target_length
from .protocol import (
    AnalysisReply,
    Command,
    CreateSource,
    Event,
    ReleaseAll,
    ReleaseSource,
    RequestSnapshot,
    SetWaveShape,
    SnapshotItem,
    SnapshotRequest,
    SourceAdded,
    SourceFailed,
    ToggleKey,
    ToggleMic,
    ViewportMeasured,
    ZoomChange,
    ZoomStart,
    ZoomStop,
)
from .types import (
    AudioSourceHandle,
    InputDescriptor,
    ToneDescriptor,
    ViewportGeometry,
    ZoomState,
)
from .utils import interval_to_frequency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceEntry:
    """A live source and the last analysis received for it."""
    handle: AudioSourceHandle
    raw: tuple[float, ...] = ()       # last time-domain window, kept for re-decimation
    waveform: tuple[float, ...] = ()  # decimated display points
    spectrum: tuple[float, ...] = ()  # dB per bin


@dataclass(frozen=True)
class AppState:
    sources: Mapping[int, SourceEntry] = field(default_factory=dict)
    pending: Mapping[int, bool] = field(default_factory=dict)  # id -> cancelled
    zoom: ZoomState = field(default_factory=ZoomState)
    viewport: Optional[ViewportGeometry] = None
    wave_shape: str = DEFAULT_WAVE_SHAPE
    kinds: tuple[str, ...] = DEFAULT_ANALYSIS_KINDS
    in_flight: frozenset = frozenset()
    next_request_id: int = 1

    def is_live(self, source_id: int) -> bool:
        return source_id in self.sources

    def is_pending(self, source_id: int) -> bool:
        return source_id in self.pending

    def display_length(self, available: int) -> int:
        """Points to show for a raw window of ``available`` samples."""
        if self.viewport is None:
            return available
        return target_length(self.viewport.width_px, self.zoom.factor)


Transition = tuple[AppState, list[Command]]


def tone_descriptor(source_id: int, wave_shape: str = DEFAULT_WAVE_SHAPE) -> ToneDescriptor:
    """Descriptor for the note with interval index ``source_id``."""
    return ToneDescriptor(frequency=interval_to_frequency(source_id), wave_shape=wave_shape)


def _without(mapping: Mapping, key) -> dict:
    result = dict(mapping)
    result.pop(key, None)
    return result


def _with(mapping: Mapping, key, value) -> dict:
    result = dict(mapping)
    result[key] = value
    return result


def _request_snapshots(state: AppState) -> Transition:
    """Ask for every enabled analysis kind that has no request in flight."""
    if not state.sources:
        return state, []
    items = tuple(
        SnapshotItem(source_id, entry.handle.graph_ref)
        for source_id, entry in sorted(state.sources.items())
    )
    commands: list[Command] = []
    in_flight = set(state.in_flight)
    request_id = state.next_request_id
    for kind in state.kinds:
        if kind in in_flight:
            continue
        commands.append(RequestSnapshot(SnapshotRequest(kind, items, request_id)))
        in_flight.add(kind)
        request_id += 1
    return replace(state, in_flight=frozenset(in_flight), next_request_id=request_id), commands


def _redecimate(state: AppState) -> AppState:
    """Recompute display points from stored raw windows after a zoom or resize."""
    sources = {}
    for source_id, entry in state.sources.items():
        if entry.raw:
            points = decimate(entry.raw, state.display_length(len(entry.raw)))
            entry = replace(entry, waveform=tuple(points))
        sources[source_id] = entry
    return replace(state, sources=sources)


def _toggle(state: AppState, source_id: int, descriptor) -> Transition:
    entry = state.sources.get(source_id)
    if entry is not None:
        return (
            replace(state, sources=_without(state.sources, source_id)),
            [ReleaseSource(entry.handle, descriptor.envelope)],
        )
    if source_id in state.pending:
        # Flip the cancel mark; the handle is released on arrival while set
        cancelled = not state.pending[source_id]
        return replace(state, pending=_with(state.pending, source_id, cancelled)), []
    return (
        replace(state, pending=_with(state.pending, source_id, False)),
        [CreateSource(source_id, descriptor)],
    )


def _on_toggle_key(state: AppState, event: ToggleKey) -> Transition:
    if event.source_id < 0:
        logger.warning("Ignoring toggle for invalid note id %s", event.source_id)
        return state, []
    return _toggle(state, event.source_id, tone_descriptor(event.source_id, state.wave_shape))


def _on_toggle_mic(state: AppState, event: ToggleMic) -> Transition:
    return _toggle(state, MIC_SOURCE_ID, InputDescriptor())


def _on_source_added(state: AppState, event: SourceAdded) -> Transition:
    source_id = event.source_id
    cancelled = state.pending.get(source_id, False)
    state = replace(state, pending=_without(state.pending, source_id))

    if cancelled:
        logger.debug("Source %s was toggled off while pending, releasing", source_id)
        return state, [ReleaseSource(event.handle)]

    existing = state.sources.get(source_id)
    if existing is not None:
        if existing.handle.instance == event.handle.instance:
            return state, []
        # A second graph for an id that is already sounding would leak
        logger.warning("Source %s is already live, releasing duplicate graph", source_id)
        return state, [ReleaseSource(event.handle)]

    state = replace(state, sources=_with(state.sources, source_id, SourceEntry(event.handle)))
    return _request_snapshots(state)


def _on_source_failed(state: AppState, event: SourceFailed) -> Transition:
    if event.source_id in state.pending:
        logger.info("Source %s failed to start: %s", event.source_id, event.reason)
    return replace(state, pending=_without(state.pending, event.source_id)), []


def _on_analysis_reply(state: AppState, event: AnalysisReply) -> Transition:
    sources = dict(state.sources)
    for analysis in event.analyses:
        entry = sources.get(analysis.source_id)
        if entry is None or (
            analysis.instance is not None and analysis.instance != entry.handle.instance
        ):
            logger.debug("Dropping stale %s for source %s", event.kind, analysis.source_id)
            continue
        if not analysis.data:
            continue
        if event.kind == WAVEFORM:
            raw = tuple(analysis.data)
            points = decimate(raw, state.display_length(len(raw)))
            sources[analysis.source_id] = replace(entry, raw=raw, waveform=tuple(points))
        elif event.kind == SPECTRUM:
            sources[analysis.source_id] = replace(entry, spectrum=tuple(analysis.data))

    state = replace(state, sources=sources, in_flight=state.in_flight - {event.kind})
    return _request_snapshots(state)


def _on_zoom_start(state: AppState, event: ZoomStart) -> Transition:
    return replace(state, zoom=replace(state.zoom, drag_origin=event.point)), []


def _on_zoom_change(state: AppState, event: ZoomChange) -> Transition:
    origin = state.zoom.drag_origin
    if origin is None or state.viewport is None or state.viewport.width_px <= 0:
        return state, []
    factor = (event.point.x - origin.x) / state.viewport.width_px
    if factor <= 0:
        return state, []
    return _redecimate(replace(state, zoom=replace(state.zoom, factor=factor))), []


def _on_zoom_stop(state: AppState, event: ZoomStop) -> Transition:
    return replace(state, zoom=replace(state.zoom, drag_origin=None)), []


def _on_viewport_measured(state: AppState, event: ViewportMeasured) -> Transition:
    return _redecimate(replace(state, viewport=event.geometry)), []


def _on_set_wave_shape(state: AppState, event: SetWaveShape) -> Transition:
    if event.shape not in WAVE_SHAPES:
        logger.warning("Ignoring unknown wave shape %r", event.shape)
        return state, []
    return replace(state, wave_shape=event.shape), []


def _on_release_all(state: AppState, event: ReleaseAll) -> Transition:
    commands: list[Command] = [
        ReleaseSource(entry.handle) for _, entry in sorted(state.sources.items())
    ]
    pending = {source_id: True for source_id in state.pending}
    return replace(state, sources={}, pending=pending), commands


_HANDLERS: dict[type, Callable] = {
    ToggleKey: _on_toggle_key,
    ToggleMic: _on_toggle_mic,
    SourceAdded: _on_source_added,
    SourceFailed: _on_source_failed,
    AnalysisReply: _on_analysis_reply,
    ZoomStart: _on_zoom_start,
    ZoomChange: _on_zoom_change,
    ZoomStop: _on_zoom_stop,
    ViewportMeasured: _on_viewport_measured,
    SetWaveShape: _on_set_wave_shape,
    ReleaseAll: _on_release_all,
}


def transition(state: AppState, event: Event) -> Transition:
    """Apply one event. Returns (next_state, commands)."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        logger.warning("Ignoring unknown event %r", event)
        return state, []
    return handler(state, event)
