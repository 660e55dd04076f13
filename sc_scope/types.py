"""Data types for sc-scope."""

from dataclasses import dataclass, field
from typing import Optional

from .config import DEFAULT_ATTACK, DEFAULT_RELEASE, DEFAULT_WAVE_SHAPE


@dataclass
class LogEntry:
    """A log entry from the audio graph."""
    timestamp: float
    category: str  # 'fail', 'done', 'node', 'info'
    message: str


@dataclass
class ServerStatus:
    """SuperCollider server status information."""
    running: bool = False
    num_ugens: int = 0
    num_synths: int = 0
    num_groups: int = 0
    num_synthdefs: int = 0
    avg_cpu: float = 0.0
    peak_cpu: float = 0.0
    sample_rate: float = 0.0


@dataclass(frozen=True)
class EnvelopeParams:
    """Attack/release gain ramp times in seconds."""
    attack_seconds: float = DEFAULT_ATTACK
    release_seconds: float = DEFAULT_RELEASE


@dataclass(frozen=True)
class ToneDescriptor:
    """A synthesized tone source."""
    frequency: float
    wave_shape: str = DEFAULT_WAVE_SHAPE
    envelope: EnvelopeParams = field(default_factory=EnvelopeParams)


@dataclass(frozen=True)
class InputDescriptor:
    """A captured input source (microphone). No attack ramp is applied."""
    channel: int = 0
    envelope: EnvelopeParams = field(default_factory=EnvelopeParams)


@dataclass(frozen=True)
class GraphSlot:
    """Pre-allocated server resources for one source.

    A private audio bus, the time-domain and FFT buffers, and the control
    bus where the tap publishes its write position.
    """
    index: int
    bus: int
    wave_buf: int
    fft_buf: int
    phase_bus: int


@dataclass(frozen=True)
class GraphRef:
    """Opaque token for one live graph instance.

    Only AudioGraph interprets the node and buffer numbers. Everyone else
    compares ``instance`` to tell graph instances apart, since source ids
    are reused once a graph has been torn down.
    """
    instance: int
    slot: GraphSlot
    group_id: int
    producer_id: int
    gain_id: int
    tap_id: int


@dataclass(frozen=True)
class AudioSourceHandle:
    """Non-owning reference from a source id to its graph."""
    source_id: int
    graph_ref: GraphRef

    @property
    def instance(self) -> int:
        return self.graph_ref.instance


@dataclass(frozen=True)
class Point:
    x: float
    y: float = 0.0


@dataclass(frozen=True)
class ViewportGeometry:
    """Size of the waveform display surface in pixels."""
    width_px: float
    height_px: float


@dataclass(frozen=True)
class ZoomState:
    """Horizontal zoom. ``drag_origin`` is set only while a drag is active."""
    factor: float = 1.0
    drag_origin: Optional[Point] = None
