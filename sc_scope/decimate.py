"""Waveform decimation for display."""

from typing import Sequence


def find_anchor(raw: Sequence[float]) -> int:
    """Return the index of the first interior local minimum of ``raw``.

    A sample is a local minimum when it is <= both of its neighbours. The
    first and last samples have only one neighbour and never qualify. When
    no sample qualifies the anchor is 0.
    """
    for i in range(1, len(raw) - 1):
        if raw[i] <= raw[i - 1] and raw[i] <= raw[i + 1]:
            return i
    return 0


def decimate(raw: Sequence[float], target_length: int) -> list[float]:
    """Trim a time-domain buffer to at most ``target_length`` display points.

    The window starts at the first local minimum so that successive frames
    of a periodic signal start at the same phase and the trace doesn't
    jitter. No padding: if fewer samples remain they are returned as is.

    Example:
        >>> decimate([0.5, 0.5, -0.2, 0.1, 0.9, 0.1], 3)
        [-0.2, 0.1, 0.9]
    """
    target_length = max(0, int(target_length))
    if target_length == 0:
        return []
    start = find_anchor(raw)
    return list(raw[start:start + target_length])


def target_length(width_px: float, zoom_factor: float) -> int:
    """Number of display points for a viewport width at a zoom factor."""
    return max(0, int(width_px * zoom_factor))
