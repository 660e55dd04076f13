"""Utility functions for sc-scope."""

import math
import os
import signal
import subprocess
import time
from typing import Sequence

from .config import INTERVAL_OFFSET, MIN_DECIBELS, REFERENCE_FREQUENCY

# Note names for source labels
NOTE_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']


def interval_to_frequency(interval: int) -> float:
    """Frequency of a note id (semitone interval index).

    Interval 0 is three semitones above the 220Hz reference, i.e. C4.
    """
    return REFERENCE_FREQUENCY * 2 ** ((interval + INTERVAL_OFFSET) / 12)


def freq_to_note(freq: float) -> tuple[str, int, float]:
    """Convert frequency to note name, octave, and cents deviation.

    Returns (note_name, octave, cents) e.g., ('A', 4, 0.0) for 440Hz
    """
    if freq <= 0:
        return ('?', 0, 0.0)

    # A4 = 440Hz = MIDI note 69
    midi_note = 12 * math.log2(freq / 440.0) + 69
    midi_rounded = round(midi_note)
    cents = (midi_note - midi_rounded) * 100

    return (NOTE_NAMES[midi_rounded % 12], (midi_rounded // 12) - 1, cents)


def amp_to_db(amp: float) -> float:
    """Convert linear amplitude to decibels."""
    if amp <= 0:
        return -float('inf')
    return 20 * math.log10(amp)


def fft_to_decibels(packed: Sequence[float], floor: float = MIN_DECIBELS) -> list[float]:
    """Convert an scsynth FFT buffer to per-bin magnitudes in dB.

    scsynth packs a cartesian frame of N floats as
    [dc, nyquist, re1, im1, re2, im2, ...], giving N/2 bins. Magnitudes are
    normalised by N and floored at ``floor``.
    """
    size = len(packed)
    if size < 2:
        return []
    bins = [abs(packed[0])]
    for k in range(1, size // 2):
        bins.append(math.hypot(packed[2 * k], packed[2 * k + 1]))
    return [max(amp_to_db(mag / size), floor) for mag in bins]


def kill_process_on_port(port: int) -> bool:
    """Kill any other process using the specified UDP port.

    Returns True if lsof reported a process on the port.
    """
    try:
        result = subprocess.run(
            ["lsof", "-t", "-i", f"UDP:{port}"],
            capture_output=True,
            text=True,
            timeout=5
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False

    if result.returncode != 0 or not result.stdout.strip():
        return False

    my_pid = os.getpid()
    for pid_str in result.stdout.split():
        try:
            pid = int(pid_str)
            if pid != my_pid:
                os.kill(pid, signal.SIGTERM)
                time.sleep(0.1)
        except (ValueError, ProcessLookupError, PermissionError):
            pass
    return True
