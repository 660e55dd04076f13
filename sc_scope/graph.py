"""Live audio graphs on scsynth, one per sounding source.

Each source is a group of three nodes sharing a private audio bus:

    producer (scope_osc or scope_input) -> bus -> scope_gain -> main output
                                           bus -> scope_tap -> wave/FFT buffers

AudioGraph is the only thing that creates, ramps or frees these nodes.
Everything else holds AudioSourceHandle values and asks for a release.
Creation results are reported through ``on_event`` (SourceAdded or
SourceFailed), never returned, because the microphone path completes on a
background thread.
"""

import sys
import threading
import time
from collections import deque
from typing import Callable, Optional, Sequence

from pythonosc import dispatcher, osc_message_builder, osc_server

from .capture import CaptureError, InputStream, acquire_input_stream
from .config import (
    ANALYSIS_WINDOW,
    BUFFER_BASE,
    MAX_SOURCES,
    PHASE_BUS_BASE,
    PRIVATE_BUS_BASE,
    REPLY_PORT,
    SCLANG_INIT_CODE,
    SCSYNTH_HOST,
    SCSYNTH_PORT,
    SNAPSHOT_CHUNK,
    SNAPSHOT_TIMEOUT,
    SOUNDING_LEVEL,
    SPECTRUM,
    STATUS_TIMEOUT,
    WAVE_SHAPES,
    WAVEFORM,
)
from .protocol import Analysis, Event, ReleaseAll, SnapshotItem, SourceAdded, SourceFailed
from .sclang import SclangProcess
from .types import (
    AudioSourceHandle,
    EnvelopeParams,
    GraphRef,
    GraphSlot,
    InputDescriptor,
    LogEntry,
    ServerStatus,
    ToneDescriptor,
)
from .utils import fft_to_decibels, kill_process_on_port


class ReuseAddrOSCUDPServer(osc_server.ThreadingOSCUDPServer):
    """OSC server that allows address reuse for faster reconnection."""
    allow_reuse_address = True


class _ChunkWaiter:
    """One pending /b_getn or /c_get read, completed by the matching /b_setn or /c_set reply."""

    def __init__(self):
        self.event = threading.Event()
        self.values: list[float] = []


def make_slots(count: int = MAX_SOURCES) -> list[GraphSlot]:
    """The fixed pool of per-source buses and buffers."""
    return [
        GraphSlot(
            index=i,
            bus=PRIVATE_BUS_BASE + i,
            wave_buf=BUFFER_BASE + 2 * i,
            fft_buf=BUFFER_BASE + 2 * i + 1,
            phase_bus=PHASE_BUS_BASE + i,
        )
        for i in range(count)
    ]


def unroll_window(samples: Sequence[float], write_pos: int) -> list[float]:
    """Reorder a circular buffer oldest sample first, given the next write position."""
    if not samples:
        return []
    start = int(write_pos) % len(samples)
    return list(samples[start:]) + list(samples[:start])


class AudioGraph:
    """Owns every live source graph on scsynth."""

    def __init__(
        self,
        capture: Callable[[int], InputStream] = acquire_input_stream,
        slots: Optional[Sequence[GraphSlot]] = None,
    ):
        self.status = ServerStatus()
        self.on_event: Optional[Callable[[Event], None]] = None
        self._capture = capture
        self._status_event = threading.Event()
        self._reply_server: osc_server.ThreadingOSCUDPServer | None = None
        self._scsynth_addr = (SCSYNTH_HOST, SCSYNTH_PORT)
        self._sclang = SclangProcess(SCLANG_INIT_CODE)

        # Use time-based starting ID to avoid collision across restarts
        self._node_id = 1_000_000 + (int(time.time() * 1000) & 0xFFFFF) * 1000
        self._node_lock = threading.Lock()

        # Graph bookkeeping, guarded by _graph_lock
        self._slots = list(slots) if slots is not None else make_slots()
        self._free_slots: list[GraphSlot] = list(self._slots)
        self._live: dict[int, GraphRef] = {}  # instance -> ref
        self._releasing: dict[int, threading.Timer] = {}  # instance -> teardown timer
        self._instance = 0
        self._graph_lock = threading.Lock()

        # Reads in flight: buffers keyed by (bufnum, start frame), control buses by index
        self._buffer_waiters: dict[tuple[int, int], list[_ChunkWaiter]] = {}
        self._control_waiters: dict[int, list[_ChunkWaiter]] = {}
        self._buffer_lock = threading.Lock()
        # A tap is paused while it is read, one reader per slot at a time
        self._tap_locks = {slot.index: threading.Lock() for slot in self._slots}

        # Server log capture
        self._log_buffer: deque[LogEntry] = deque(maxlen=500)
        self._log_lock = threading.Lock()

    # Messaging and logging

    def _send_message(self, address: str, args: list) -> bool:
        """Send an OSC message to scsynth using the reply server's socket.

        Returns True if message was sent, False otherwise.
        """
        if not self._reply_server:
            return False
        try:
            builder = osc_message_builder.OscMessageBuilder(address=address)
            for arg in args:
                builder.add_arg(arg)
            msg = builder.build()
            self._reply_server.socket.sendto(msg.dgram, self._scsynth_addr)
            return True
        except OSError as e:
            sys.stderr.write(f"[SC] Failed to send {address}: {e}\n")
            return False

    def _add_log(self, category: str, message: str):
        """Add an entry to the log buffer (thread-safe)."""
        entry = LogEntry(timestamp=time.time(), category=category, message=message)
        with self._log_lock:
            self._log_buffer.append(entry)

    def _emit(self, event: Event):
        if self.on_event is not None:
            self.on_event(event)

    def _fail(self, source_id: int, reason: str):
        self._add_log("fail", f"Source {source_id}: {reason}")
        sys.stderr.write(f"[SC] Source {source_id}: {reason}\n")
        self._emit(SourceFailed(source_id, reason))

    # OSC reply handlers

    def _handle_status_reply(self, address: str, *args):
        """Handle /status.reply from scsynth."""
        if len(args) >= 9:
            self.status = ServerStatus(
                running=True,
                num_ugens=args[1],
                num_synths=args[2],
                num_groups=args[3],
                num_synthdefs=args[4],
                avg_cpu=args[5],
                peak_cpu=args[6],
                sample_rate=args[8],
            )
        self._status_event.set()

    def _handle_done(self, address: str, *args):
        """Handle /done messages."""
        if args:
            self._add_log("done", f"{args[0]} completed" + (f" {args[1:]}" if len(args) > 1 else ""))

    def _handle_fail(self, address: str, *args):
        """Handle /fail messages."""
        msg = f"FAIL: {' '.join(str(a) for a in args)}"
        self._add_log("fail", msg)
        sys.stderr.write(f"[SC] {msg}\n")

    def _handle_node_go(self, address: str, *args):
        """Handle /n_go messages (node started)."""
        if len(args) >= 4:
            is_group = args[4] if len(args) > 4 else -1
            node_type = "group" if is_group == 1 else "synth"
            self._add_log("node", f"Node {args[0]} ({node_type}) started in group {args[1]}")

    def _handle_node_end(self, address: str, *args):
        """Handle /n_end messages (node freed)."""
        if args:
            self._add_log("node", f"Node {args[0]} ended")

    def _handle_buffer_data(self, address: str, *args):
        """Handle /b_setn replies to /b_getn.

        Expected args: [bufnum, start, count, value0, value1, ...]
        """
        if len(args) < 3:
            return
        try:
            key = (int(args[0]), int(args[1]))
            count = int(args[2])
            values = [float(v) for v in args[3:3 + count]]
        except (TypeError, ValueError) as e:
            self._add_log("fail", f"Invalid buffer data: {e}")
            return

        with self._buffer_lock:
            waiters = self._buffer_waiters.pop(key, [])
        for waiter in waiters:
            waiter.values = values
            waiter.event.set()

    def _handle_control_value(self, address: str, *args):
        """Handle /c_set replies to /c_get.

        Expected args: [bus, value, bus, value, ...]
        """
        for i in range(0, len(args) - 1, 2):
            try:
                bus, value = int(args[i]), float(args[i + 1])
            except (TypeError, ValueError) as e:
                self._add_log("fail", f"Invalid control value: {e}")
                return
            with self._buffer_lock:
                waiters = self._control_waiters.pop(bus, [])
            for waiter in waiters:
                waiter.values = [value]
                waiter.event.set()

    # Connection

    def connect(self) -> tuple[bool, str]:
        """Connect to scsynth, allocate the slot buffers and start sclang for SynthDefs."""
        if self._reply_server:
            if self.get_status().running:
                return True, f"Already connected to scsynth on port {SCSYNTH_PORT}"
            # The server went away; its nodes went with it
            self.disconnect()

        disp = dispatcher.Dispatcher()
        disp.map("/status.reply", self._handle_status_reply)
        disp.map("/done", self._handle_done)
        disp.map("/fail", self._handle_fail)
        disp.map("/n_go", self._handle_node_go)
        disp.map("/n_end", self._handle_node_end)
        disp.map("/b_setn", self._handle_buffer_data)
        disp.map("/c_set", self._handle_control_value)

        try:
            # Try to bind, killing orphaned processes if needed
            for attempt in range(2):
                try:
                    self._reply_server = ReuseAddrOSCUDPServer((SCSYNTH_HOST, REPLY_PORT), disp)
                    break
                except OSError as e:
                    if e.errno in (48, 98) and attempt == 0:  # Address already in use
                        kill_process_on_port(REPLY_PORT)
                        time.sleep(0.2)
                    else:
                        raise
        except OSError as e:
            return False, f"Failed to connect: {e}"

        thread = threading.Thread(target=self._reply_server.serve_forever, daemon=True)
        thread.start()

        if not self.get_status().running:
            return False, "scsynth not responding. Make sure the SuperCollider server is running."

        self._send_message("/notify", [1])
        for slot in self._slots:
            self._send_message("/b_alloc", [slot.wave_buf, ANALYSIS_WINDOW, 1])
            self._send_message("/b_alloc", [slot.fft_buf, ANALYSIS_WINDOW, 1])
        self._add_log("info", f"Connected to scsynth on port {SCSYNTH_PORT}, {len(self._slots)} slots")

        sclang_ok, sclang_msg = self._sclang.start()
        if sclang_ok:
            return True, f"Connected to scsynth on port {SCSYNTH_PORT}. {sclang_msg}"
        # Still usable if the SynthDefs were loaded by an earlier session
        return True, f"Connected to scsynth on port {SCSYNTH_PORT}. Warning: {sclang_msg} (SynthDefs may be missing)"

    def is_connected(self) -> bool:
        return self._reply_server is not None

    def get_status(self) -> ServerStatus:
        """Query server status."""
        if not self._reply_server:
            return ServerStatus(running=False)

        self._status_event.clear()
        if not self._send_message("/status", []):
            return ServerStatus(running=False)
        if self._status_event.wait(timeout=STATUS_TIMEOUT):
            return self.status
        return ServerStatus(running=False)

    def disconnect(self):
        """Free every graph, stop sclang and close the reply server.

        Handles held elsewhere are stale afterwards, so a ReleaseAll is emitted.
        """
        self._emit(ReleaseAll())
        self.free_all()
        self._sclang.stop()
        if self._reply_server:
            for slot in self._slots:
                self._send_message("/b_free", [slot.wave_buf])
                self._send_message("/b_free", [slot.fft_buf])
            self._reply_server.shutdown()
            self._reply_server = None

    # Graph lifecycle

    def _next_node_id(self) -> int:
        """Get next available node ID (thread-safe)."""
        with self._node_lock:
            self._node_id += 1
            return self._node_id

    def live_count(self) -> int:
        with self._graph_lock:
            return len(self._live)

    def create(self, source_id: int, descriptor: ToneDescriptor | InputDescriptor) -> tuple[bool, str]:
        """Start building a graph for ``source_id``.

        Tones are wired immediately and ramp from silence to the sounding
        level over the attack time. Captured input first acquires the
        device on a background thread and then goes straight to the
        sounding level. The outcome arrives as SourceAdded or SourceFailed.
        """
        if not self._reply_server:
            self._fail(source_id, "Not connected to scsynth")
            return False, "Not connected to scsynth. Call scope_connect first."

        if isinstance(descriptor, InputDescriptor):
            threading.Thread(
                target=self._activate_input, args=(source_id, descriptor), daemon=True
            ).start()
            return True, f"Acquiring input device for source {source_id}"

        if descriptor.frequency <= 0:
            self._fail(source_id, f"Frequency must be positive, got {descriptor.frequency}")
            return False, f"Frequency must be positive, got {descriptor.frequency}"
        if descriptor.wave_shape not in WAVE_SHAPES:
            self._fail(source_id, f"Unknown wave shape '{descriptor.wave_shape}'")
            return False, f"Unknown wave shape '{descriptor.wave_shape}'"

        params = ["freq", float(descriptor.frequency), "shape", WAVE_SHAPES.index(descriptor.wave_shape)]
        ref = self._build(source_id, "scope_osc", params, initial_amp=0.0)
        if ref is None:
            return False, f"Failed to create source {source_id}"

        self._send_message("/n_set", [
            ref.gain_id, "lag", float(descriptor.envelope.attack_seconds), "amp", SOUNDING_LEVEL,
        ])
        self._emit(SourceAdded(source_id, AudioSourceHandle(source_id, ref)))
        return True, f"Playing {descriptor.frequency:.2f}Hz {descriptor.wave_shape} (source {source_id})"

    def _activate_input(self, source_id: int, descriptor: InputDescriptor):
        """Acquire the capture device and wire it (runs off the event loop)."""
        try:
            stream = self._capture(descriptor.channel)
            ref = self._build(source_id, "scope_input", ["channel", stream.channel], initial_amp=SOUNDING_LEVEL)
        except CaptureError as e:
            self._fail(source_id, f"Input unavailable: {e}")
            return
        except Exception as e:
            # Otherwise the source would stay pending forever
            self._fail(source_id, f"Input activation failed: {e!r}")
            return
        if ref is None:
            return
        self._add_log("info", f"Source {source_id} listening to '{stream.device}'")
        self._emit(SourceAdded(source_id, AudioSourceHandle(source_id, ref)))

    def _build(self, source_id: int, synthdef: str, params: list, initial_amp: float) -> Optional[GraphRef]:
        """Create the group and its three nodes. Emits SourceFailed and returns None on failure."""
        with self._graph_lock:
            if not self._free_slots:
                slot = None
            else:
                slot = self._free_slots.pop(0)
                self._instance += 1
                instance = self._instance
        if slot is None:
            self._fail(source_id, f"No free graph slots ({len(self._slots)} sources already live)")
            return None

        ref = GraphRef(
            instance=instance,
            slot=slot,
            group_id=self._next_node_id(),
            producer_id=self._next_node_id(),
            gain_id=self._next_node_id(),
            tap_id=self._next_node_id(),
        )
        # add actions: 0 = head, 1 = tail. Readers go after the producer.
        sent = (
            self._send_message("/g_new", [ref.group_id, 0, 0])
            and self._send_message("/s_new", [synthdef, ref.producer_id, 0, ref.group_id, "out", slot.bus] + params)
            and self._send_message("/s_new", [
                "scope_gain", ref.gain_id, 1, ref.group_id,
                "in", slot.bus, "out", 0, "amp", float(initial_amp), "lag", 0.0,
            ])
            and self._send_message("/s_new", [
                "scope_tap", ref.tap_id, 1, ref.group_id,
                "in", slot.bus, "waveBuf", slot.wave_buf, "fftBuf", slot.fft_buf,
                "phaseBus", slot.phase_bus,
            ])
        )
        if not sent:
            self._send_message("/n_free", [ref.group_id])
            with self._graph_lock:
                self._free_slots.append(slot)
            self._fail(source_id, "Failed to send OSC message to scsynth")
            return None

        with self._graph_lock:
            self._live[ref.instance] = ref
        self._add_log("node", f"Source {source_id} graph {ref.instance} started (group {ref.group_id})")
        return ref

    def release(self, handle: AudioSourceHandle, envelope: Optional[EnvelopeParams] = None) -> tuple[bool, str]:
        """Fade a source out and free its nodes once the fade has finished.

        Calling this again for the same graph, or for one already torn
        down, does nothing.
        """
        envelope = envelope or EnvelopeParams()
        ref = handle.graph_ref
        release_seconds = max(0.0, float(envelope.release_seconds))

        with self._graph_lock:
            if ref.instance not in self._live or ref.instance in self._releasing:
                return False, f"Source {handle.source_id} is not live"
            timer = threading.Timer(release_seconds, self._teardown, args=(ref,))
            timer.daemon = True
            self._releasing[ref.instance] = timer

        self._send_message("/n_set", [ref.gain_id, "lag", release_seconds, "amp", 0.0])
        timer.start()
        return True, f"Releasing source {handle.source_id} over {release_seconds}s"

    def _teardown(self, ref: GraphRef):
        """Free a released graph and return its slot."""
        with self._graph_lock:
            if self._live.pop(ref.instance, None) is None:
                return
            self._releasing.pop(ref.instance, None)
            self._free_slots.append(ref.slot)
        self._send_message("/n_free", [ref.group_id])
        self._add_log("node", f"Graph {ref.instance} torn down (group {ref.group_id})")

    def free_all(self) -> tuple[bool, str]:
        """Free every graph immediately, skipping release fades."""
        with self._graph_lock:
            refs = list(self._live.values())
            timers = list(self._releasing.values())
        for timer in timers:
            timer.cancel()
        for ref in refs:
            self._teardown(ref)
        return True, f"Freed {len(refs)} graph(s)"

    # Snapshots

    def _read_buffer(self, bufnum: int, frames: int, timeout: Optional[float] = None) -> Optional[list[float]]:
        """Read ``frames`` floats from a server buffer in chunks.

        Returns None if any chunk fails to arrive in time.
        """
        if timeout is None:
            timeout = SNAPSHOT_TIMEOUT
        waiters = []
        with self._buffer_lock:
            for start in range(0, frames, SNAPSHOT_CHUNK):
                waiter = _ChunkWaiter()
                self._buffer_waiters.setdefault((bufnum, start), []).append(waiter)
                waiters.append((start, waiter))

        for start, _ in waiters:
            count = min(SNAPSHOT_CHUNK, frames - start)
            self._send_message("/b_getn", [bufnum, start, count])

        deadline = time.monotonic() + timeout
        values: list[float] = []
        complete = True
        for start, waiter in waiters:
            if not waiter.event.wait(timeout=max(0.0, deadline - time.monotonic())):
                complete = False
                break
            values.extend(waiter.values)

        if not complete:
            # Drop our waiters so a late reply doesn't hold on to them
            with self._buffer_lock:
                for start, waiter in waiters:
                    pending = self._buffer_waiters.get((bufnum, start))
                    if pending and waiter in pending:
                        pending.remove(waiter)
                        if not pending:
                            del self._buffer_waiters[(bufnum, start)]
            return None
        return values

    def _read_control(self, bus: int, timeout: Optional[float] = None) -> Optional[float]:
        """Read one control bus value, or None if the reply doesn't arrive in time."""
        if timeout is None:
            timeout = SNAPSHOT_TIMEOUT
        waiter = _ChunkWaiter()
        with self._buffer_lock:
            self._control_waiters.setdefault(bus, []).append(waiter)

        self._send_message("/c_get", [bus])
        if waiter.event.wait(timeout=timeout):
            return waiter.values[0]

        with self._buffer_lock:
            pending = self._control_waiters.get(bus)
            if pending and waiter in pending:
                pending.remove(waiter)
                if not pending:
                    del self._control_waiters[bus]
        return None

    def _read_tap(self, ref: GraphRef, kind: str) -> list[float]:
        """Read one tap with the tap node paused, so every chunk comes from the same moment.

        The time-domain buffer is circular; it is returned oldest sample
        first, starting at the write position the tap publishes.
        """
        with self._tap_locks[ref.slot.index]:
            # scsynth handles messages in order: the pause lands before the reads
            self._send_message("/n_run", [ref.tap_id, 0])
            try:
                if kind == WAVEFORM:
                    write_pos = self._read_control(ref.slot.phase_bus)
                    if write_pos is None:
                        return []
                    samples = self._read_buffer(ref.slot.wave_buf, ANALYSIS_WINDOW)
                    return unroll_window(samples, int(write_pos)) if samples else []
                packed = self._read_buffer(ref.slot.fft_buf, ANALYSIS_WINDOW)
                return fft_to_decibels(packed) if packed else []
            finally:
                self._send_message("/n_run", [ref.tap_id, 1])

    def extract_snapshot(self, items: Sequence[SnapshotItem], kind: str) -> list[Analysis]:
        """Read each item's tap. Only the tap's run state is touched, and only while reading.

        Returns one Analysis per item. Graphs that are gone, or whose
        buffers don't answer in time, get empty data.
        """
        analyses = []
        for item in items:
            ref = item.graph_ref
            with self._graph_lock:
                live = ref.instance in self._live

            data: list[float] = []
            if live:
                if kind in (WAVEFORM, SPECTRUM):
                    data = self._read_tap(ref, kind)
                else:
                    self._add_log("fail", f"Unknown analysis kind '{kind}'")

            analyses.append(Analysis(item.source_id, tuple(data), ref.instance))
        return analyses

    # Logs

    def get_logs(self, limit: int = 50, category: Optional[str] = None) -> list[LogEntry]:
        """Get recent log entries.

        Args:
            limit: Maximum number of entries to return (default 50)
            category: Filter by category ('fail', 'done', 'node', 'info') or None for all

        Returns:
            List of LogEntry objects, most recent last
        """
        with self._log_lock:
            entries = list(self._log_buffer)

        if category:
            entries = [e for e in entries if e.category == category]

        return entries[-limit:]

    def clear_logs(self):
        """Clear the log buffer."""
        with self._log_lock:
            self._log_buffer.clear()
