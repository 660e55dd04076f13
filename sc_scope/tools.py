"""MCP tool definitions for sc-scope."""

from datetime import datetime
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .config import MIC_SOURCE_ID, WAVE_SHAPES
from .graph import AudioGraph
from .runtime import ScopeRuntime
from .utils import freq_to_note, interval_to_frequency
from .worker import AnalysisWorker

# Process-wide audio graph and worker, created once and never replaced
audio_graph = AudioGraph()
analysis_worker = AnalysisWorker(audio_graph)
runtime = ScopeRuntime(audio_graph, analysis_worker)

# Create MCP server
mcp = FastMCP("sc-scope")


def _source_label(source_id: int) -> str:
    if source_id == MIC_SOURCE_ID:
        return "mic"
    freq = interval_to_frequency(source_id)
    note, octave, _ = freq_to_note(freq)
    return f"{note}{octave} ({freq:.2f} Hz)"


def _post(payload: dict, done: str) -> str:
    if not runtime.post_payload(payload):
        return f"Rejected {payload.get('type', 'event')}: invalid arguments"
    return done


@mcp.tool()
def scope_connect() -> str:
    """Connect to the SuperCollider server (scsynth) and start the scope event loop.

    Make sure the SuperCollider server is booted first.
    """
    success, message = audio_graph.connect()
    if success:
        runtime.start()
    return message


@mcp.tool()
def scope_status() -> str:
    """Get SuperCollider server status and the number of live source graphs."""
    status = audio_graph.get_status()
    if not status.running:
        return "SuperCollider server is not running. Use scope_connect first (and make sure the server is booted)."

    return f"""SuperCollider Server Status:
- Sample Rate: {status.sample_rate} Hz
- Synths: {status.num_synths}
- Groups: {status.num_groups}
- CPU (avg): {status.avg_cpu:.2f}%
- CPU (peak): {status.peak_cpu:.2f}%
- Live source graphs: {audio_graph.live_count()}"""


@mcp.tool()
def scope_toggle_key(interval: int) -> str:
    """Start the note for a key, or release it if it is already sounding.

    Args:
        interval: Semitone index of the key (0 = C4, 12 = C5, ...)
    """
    return _post({"type": "toggle_key", "id": interval}, f"Toggled key {interval}")


@mcp.tool()
def scope_toggle_mic() -> str:
    """Start listening to the microphone, or stop if it is already on."""
    return _post({"type": "toggle_mic"}, "Toggled microphone")


@mcp.tool()
def scope_set_wave_shape(shape: str) -> str:
    """Set the oscillator shape used for keys started from now on.

    Args:
        shape: One of sine, square, sawtooth, triangle
    """
    return _post({"type": "set_wave_shape", "shape": shape}, f"Wave shape set to {shape}")


@mcp.tool()
def scope_set_viewport(width: float, height: float) -> str:
    """Report the size of the waveform display in pixels.

    Zooming stays disabled until a size is known.
    """
    return _post(
        {"type": "viewport_measured", "width": width, "height": height},
        f"Viewport set to {width:g}x{height:g}",
    )


@mcp.tool()
def scope_zoom_start(x: float, y: float = 0.0) -> str:
    """Begin a zoom drag at a point on the display."""
    return _post({"type": "zoom_start", "x": x, "y": y}, f"Zoom drag started at x={x:g}")


@mcp.tool()
def scope_zoom_change(x: float, y: float = 0.0) -> str:
    """Move the zoom drag. The zoom factor becomes drag distance / display width."""
    return _post({"type": "zoom_change", "x": x, "y": y}, f"Zoom drag moved to x={x:g}")


@mcp.tool()
def scope_zoom_stop() -> str:
    """End the zoom drag."""
    return _post({"type": "zoom_stop"}, "Zoom drag stopped")


@mcp.tool()
def scope_release_all() -> str:
    """Release every sounding source (and cancel any still starting)."""
    return _post({"type": "release_all"}, "Releasing all sources")


@mcp.tool()
def scope_list_sources() -> str:
    """List sounding and starting sources, the zoom factor and the viewport."""
    state = runtime.snapshot()

    lines = []
    if state.sources:
        lines.append(f"Sources ({len(state.sources)} live):")
        for source_id, entry in sorted(state.sources.items()):
            lines.append(
                f"  [{source_id}] {_source_label(source_id)} - {len(entry.waveform)} points"
            )
    else:
        lines.append("No live sources")

    if state.pending:
        starting = ", ".join(
            f"{sid}{' (cancelled)' if cancelled else ''}" for sid, cancelled in sorted(state.pending.items())
        )
        lines.append(f"Starting: {starting}")

    viewport = (
        f"{state.viewport.width_px:g}x{state.viewport.height_px:g}" if state.viewport else "unknown"
    )
    lines.append(f"Wave shape: {state.wave_shape} (options: {', '.join(WAVE_SHAPES)})")
    lines.append(f"Zoom: {state.zoom.factor:.3f}x, viewport: {viewport}")
    return "\n".join(lines)


@mcp.tool()
def scope_get_waveform(source_id: int, max_points: Optional[int] = 64) -> str:
    """Get the latest display points for a source.

    Args:
        source_id: Key interval, or -1 for the microphone
        max_points: Maximum number of points to return (default 64, None for all)
    """
    state = runtime.snapshot()
    entry = state.sources.get(source_id)
    if entry is None:
        return f"Source {source_id} is not sounding"
    if not entry.waveform:
        return f"No waveform received yet for source {source_id}"

    points = entry.waveform if max_points is None else entry.waveform[:max(0, max_points)]
    values = ", ".join(f"{v:.4f}" for v in points)
    return (
        f"Waveform for {_source_label(source_id)}: {len(entry.waveform)} points "
        f"(min {min(entry.waveform):.4f}, max {max(entry.waveform):.4f})\n[{values}]"
    )


@mcp.tool()
def scope_get_logs(limit: int = 20, category: Optional[str] = None) -> str:
    """Get recent audio graph log messages.

    Args:
        limit: Maximum number of entries (default 20)
        category: Filter by 'fail', 'done', 'node' or 'info'
    """
    limit = min(limit, 500)
    entries = audio_graph.get_logs(limit=limit, category=category)
    if not entries:
        return "No log entries" + (f" in category '{category}'" if category else "")

    lines = []
    for entry in entries:
        ts = datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S.%f")[:-3]
        lines.append(f"[{ts}] [{entry.category.upper()}] {entry.message}")
    return "\n".join(lines)


@mcp.tool()
def scope_clear_logs() -> str:
    """Clear the audio graph log buffer."""
    audio_graph.clear_logs()
    return "Log buffer cleared"
