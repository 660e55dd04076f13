"""Configuration constants for sc-scope."""

# Network configuration
SCSYNTH_HOST = "127.0.0.1"
SCSYNTH_PORT = 57110
REPLY_PORT = 57131  # Fixed port for OSC replies (orphaned processes are killed on connect)
STATUS_TIMEOUT = 1.0  # Seconds to wait for /status.reply

# Source ids
MIC_SOURCE_ID = -1  # Note ids are interval indices and never negative

# Tone recipe: frequency = REFERENCE_FREQUENCY * 2 ** ((interval + INTERVAL_OFFSET) / 12)
REFERENCE_FREQUENCY = 220.0
INTERVAL_OFFSET = 3

# Oscillator shapes, in the order the scope_osc SynthDef selects them
WAVE_SHAPES = ("sine", "square", "sawtooth", "triangle")
DEFAULT_WAVE_SHAPE = "sine"

# Envelope
DEFAULT_ATTACK = 0.1  # seconds, tones only
DEFAULT_RELEASE = 0.5  # seconds, tones and captured input
SOUNDING_LEVEL = 0.5

# Analysis
ANALYSIS_WINDOW = 2048  # Time-domain frames per tap; spectrum has half as many bins
SNAPSHOT_CHUNK = 512  # Floats per /b_getn request (keeps replies well under the UDP limit)
SNAPSHOT_TIMEOUT = 0.5  # Seconds to wait for all chunks of one buffer
MIN_DECIBELS = -100.0
WAVEFORM = "waveform"
SPECTRUM = "spectrum"
ANALYSIS_KINDS = (WAVEFORM, SPECTRUM)
DEFAULT_ANALYSIS_KINDS = (WAVEFORM,)
ANALYSIS_WORKERS = 2

# Paint cadence (one frame per display refresh)
FRAME_INTERVAL = 1.0 / 60.0

# Graph slot pool: each live source owns one private bus and two buffers
MAX_SOURCES = 16
PRIVATE_BUS_BASE = 64  # First audio bus above the hardware I/O buses
BUFFER_BASE = 900
PHASE_BUS_BASE = 1000  # Control buses carrying each tap's write position

# sclang discovery, checked after PATH
SCLANG_SEARCH_PATHS = {
    "Darwin": [
        "/Applications/SuperCollider.app/Contents/MacOS/sclang",
        "/Applications/SuperCollider/SuperCollider.app/Contents/MacOS/sclang",
        "~/Applications/SuperCollider.app/Contents/MacOS/sclang",
    ],
    "Linux": [
        "/usr/bin/sclang",
        "/usr/local/bin/sclang",
        "/opt/SuperCollider/bin/sclang",
    ],
    "Windows": [
        r"C:\Program Files\SuperCollider\sclang.exe",
        r"C:\Program Files (x86)\SuperCollider\sclang.exe",
    ],
}
SCLANG_STARTUP_DELAY = 2.0  # Seconds for class library compile and SynthDef load

# SuperCollider code that loads the scope SynthDefs into the running scsynth.
# Every source is a group of three nodes sharing one private bus:
#   producer (scope_osc / scope_input) -> bus -> scope_gain -> main out
#                                         bus -> scope_tap (analysis buffers)
SCLANG_INIT_CODE = r'''
Server.default = Server.remote(\scsynth, NetAddr("127.0.0.1", 57110));
s = Server.default;

fork {
    0.5.wait;

    // Oscillator producer: shape 0 = sine, 1 = square, 2 = sawtooth, 3 = triangle
    SynthDef(\scope_osc, {
        arg out = 64, freq = 440, shape = 0;
        var sig = Select.ar(shape, [
            SinOsc.ar(freq),
            Pulse.ar(freq, 0.5),
            Saw.ar(freq),
            LFTri.ar(freq)
        ]);
        Out.ar(out, sig);
    }).add;

    // Captured input producer
    SynthDef(\scope_input, {
        arg out = 64, channel = 0;
        Out.ar(out, SoundIn.ar(channel));
    }).add;

    // Gain stage: linear ramp to amp over lag seconds
    SynthDef(\scope_gain, {
        arg in = 64, out = 0, amp = 0, lag = 0;
        var sig = In.ar(in) * VarLag.kr(amp, lag, warp: \lin);
        Out.ar(out, sig ! 2);
    }).add;

    // Analysis tap: circular time-domain window plus FFT frames.
    // phaseBus holds the next write position, i.e. the oldest sample.
    SynthDef(\scope_tap, {
        arg in = 64, waveBuf = 0, fftBuf = 1, phaseBus = 1000;
        var sig = In.ar(in);
        var frames = BufFrames.kr(waveBuf);
        var phase = Phasor.ar(0, 1, 0, frames);
        BufWr.ar(sig, waveBuf, phase);
        // A2K takes the first sample of the block; the block writes BlockSize more
        Out.kr(phaseBus, (A2K.kr(phase) + BlockSize.ir) % frames);
        FFT(fftBuf, sig);
    }).add;

    "sc-scope SynthDefs loaded".postln;
};

{ inf.wait }.defer;
'''
