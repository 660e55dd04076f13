"""Capture-device access for the microphone source.

scsynth reads the hardware input itself; this module only checks that the
platform can actually give us an input device (and, on systems that gate
microphone access, triggers the permission check) before a graph is wired
to it.
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# PortAudio is a native library; sounddevice raises OSError when it is missing
try:
    import sounddevice as sd

    SOUNDDEVICE_AVAILABLE = True
except (ImportError, OSError):
    SOUNDDEVICE_AVAILABLE = False
    sd = None  # type: ignore


class CaptureError(Exception):
    """Permission denied, no input device, or no audio backend."""


@dataclass(frozen=True)
class InputStream:
    """The capture device a microphone source reads from."""
    device: str
    channel: int
    sample_rate: float


def acquire_input_stream(channel: int = 0) -> InputStream:
    """Check the default input device and return a handle to it.

    Blocks while the platform answers, so callers run it off the event loop.

    Raises:
        CaptureError: if no usable input device is available.
    """
    if not SOUNDDEVICE_AVAILABLE:
        raise CaptureError("sounddevice/PortAudio is not available")

    try:
        info = sd.query_devices(kind="input")
    except (sd.PortAudioError, ValueError) as e:
        raise CaptureError(f"No input device: {e}") from e

    max_channels = int(info.get("max_input_channels", 0))
    if channel >= max_channels:
        raise CaptureError(
            f"Input device '{info.get('name', '?')}' has {max_channels} channel(s), "
            f"channel {channel} requested"
        )

    try:
        sd.check_input_settings(channels=channel + 1)
    except (sd.PortAudioError, ValueError) as e:
        raise CaptureError(f"Input device refused: {e}") from e

    stream = InputStream(
        device=str(info.get("name", "")),
        channel=channel,
        sample_rate=float(info.get("default_samplerate", 0.0)),
    )
    logger.info("Using input device %s (channel %d)", stream.device, channel)
    return stream
