"""Commands and events exchanged between the scope state, audio graph and worker.

Every external occurrence (a key toggle, a graph coming alive, an analysis
reply) is an event value consumed one at a time by ``state.transition``.
Transitions answer with command values that the runtime hands to the audio
graph or the analysis worker. Payloads coming from outside the process are
plain dicts and go through ``decode_event``.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .config import ANALYSIS_KINDS, WAVE_SHAPES
from .types import (
    AudioSourceHandle,
    EnvelopeParams,
    GraphRef,
    InputDescriptor,
    Point,
    ToneDescriptor,
    ViewportGeometry,
)


class ProtocolError(ValueError):
    """A payload doesn't match the expected schema."""


# Analysis records

@dataclass(frozen=True)
class SnapshotItem:
    source_id: int
    graph_ref: GraphRef


@dataclass(frozen=True)
class SnapshotRequest:
    kind: str
    items: tuple[SnapshotItem, ...]
    request_id: Optional[int] = None


@dataclass(frozen=True)
class Analysis:
    """Samples read from one source's tap.

    ``instance`` identifies the graph the samples came from; None means the
    sender didn't say and only the id is checked.
    """
    source_id: int
    data: tuple[float, ...]
    instance: Optional[int] = None


# Events

@dataclass(frozen=True)
class ToggleKey:
    source_id: int


@dataclass(frozen=True)
class ToggleMic:
    pass


@dataclass(frozen=True)
class SourceAdded:
    source_id: int
    handle: AudioSourceHandle


@dataclass(frozen=True)
class SourceFailed:
    source_id: int
    reason: str = ""


@dataclass(frozen=True)
class AnalysisReply:
    kind: str
    analyses: tuple[Analysis, ...]
    request_id: Optional[int] = None


@dataclass(frozen=True)
class ZoomStart:
    point: Point


@dataclass(frozen=True)
class ZoomChange:
    point: Point


@dataclass(frozen=True)
class ZoomStop:
    pass


@dataclass(frozen=True)
class ViewportMeasured:
    geometry: ViewportGeometry


@dataclass(frozen=True)
class SetWaveShape:
    shape: str


@dataclass(frozen=True)
class ReleaseAll:
    pass


Event = Union[
    ToggleKey, ToggleMic, SourceAdded, SourceFailed, AnalysisReply,
    ZoomStart, ZoomChange, ZoomStop, ViewportMeasured, SetWaveShape, ReleaseAll,
]


# Commands

@dataclass(frozen=True)
class CreateSource:
    source_id: int
    descriptor: Union[ToneDescriptor, InputDescriptor]


@dataclass(frozen=True)
class ReleaseSource:
    handle: AudioSourceHandle
    envelope: EnvelopeParams = field(default_factory=EnvelopeParams)


@dataclass(frozen=True)
class RequestSnapshot:
    request: SnapshotRequest


Command = Union[CreateSource, ReleaseSource, RequestSnapshot]


# Decoding

def _field(payload: dict, key: str, kinds: tuple, optional: bool = False) -> Any:
    if key not in payload:
        if optional:
            return None
        raise ProtocolError(f"Missing field '{key}'")
    value = payload[key]
    # bool is an int subclass but never a valid number here
    if isinstance(value, bool) or not isinstance(value, kinds):
        raise ProtocolError(
            f"Field '{key}' has type {type(value).__name__}, expected "
            + " or ".join(k.__name__ for k in kinds)
        )
    return value


def _finite(value: Any, what: str) -> float:
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number):
        raise ProtocolError(f"{what} must be a finite number, got {value!r}")
    return number


def _number(payload: dict, key: str, optional: bool = False) -> Optional[float]:
    value = _field(payload, key, (int, float), optional=optional)
    if value is None:
        return None
    return _finite(value, f"Field '{key}'")


def _point(payload: dict) -> Point:
    x = _number(payload, "x")
    y = _number(payload, "y", optional=True)
    return Point(x, y or 0.0)


def _geometry(payload: dict) -> ViewportGeometry:
    width = _number(payload, "width")
    height = _number(payload, "height")
    if width < 0 or height < 0:
        raise ProtocolError(f"Negative viewport size {width}x{height}")
    return ViewportGeometry(width, height)


def _analysis(entry: Any) -> Analysis:
    if not isinstance(entry, dict):
        raise ProtocolError(f"Analysis entry must be an object, got {type(entry).__name__}")
    source_id = _field(entry, "id", (int,))
    data = _field(entry, "data", (list, tuple))
    for value in data:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ProtocolError(f"Analysis data for id {source_id} contains {value!r}")
    samples = tuple(_finite(v, f"Analysis data for id {source_id}") for v in data)
    instance = _field(entry, "instance", (int,), optional=True)
    return Analysis(source_id, samples, instance)


def _snapshot_reply(payload: dict) -> AnalysisReply:
    kind = _field(payload, "kind", (str,))
    if kind not in ANALYSIS_KINDS:
        raise ProtocolError(f"Unknown analysis kind '{kind}'")
    analyses = _field(payload, "analyses", (list, tuple))
    request_id = _field(payload, "request_id", (int,), optional=True)
    return AnalysisReply(kind, tuple(_analysis(a) for a in analyses), request_id)


def _toggle_key(payload: dict) -> ToggleKey:
    source_id = _field(payload, "id", (int,))
    if source_id < 0:
        raise ProtocolError(f"Note id must be non-negative, got {source_id}")
    return ToggleKey(source_id)


def _wave_shape(payload: dict) -> SetWaveShape:
    shape = _field(payload, "shape", (str,))
    if shape not in WAVE_SHAPES:
        raise ProtocolError(f"Unknown wave shape '{shape}' (use {', '.join(WAVE_SHAPES)})")
    return SetWaveShape(shape)


_DECODERS = {
    "toggle_key": _toggle_key,
    "toggle_mic": lambda p: ToggleMic(),
    "zoom_start": lambda p: ZoomStart(_point(p)),
    "zoom_change": lambda p: ZoomChange(_point(p)),
    "zoom_stop": lambda p: ZoomStop(),
    "viewport_measured": lambda p: ViewportMeasured(_geometry(p)),
    "resized": lambda p: ViewportMeasured(_geometry(p)),
    "set_wave_shape": _wave_shape,
    "release_all": lambda p: ReleaseAll(),
    "snapshot_reply": _snapshot_reply,
}


def decode_event(payload: Any) -> Event:
    """Decode a plain structured record into an event.

    Source handles are opaque and never cross a payload, so SourceAdded and
    SourceFailed are only produced in-process by the audio graph.

    Raises:
        ProtocolError: unknown type, missing field, or wrong field type.
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"Payload must be an object, got {type(payload).__name__}")
    event_type = _field(payload, "type", (str,))
    decoder = _DECODERS.get(event_type)
    if decoder is None:
        raise ProtocolError(f"Unknown event type '{event_type}'")
    return decoder(payload)
