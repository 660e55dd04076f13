"""Event loop tying the scope state to the audio graph and the analysis worker.

One consumer thread owns the state. Tool calls, graph callbacks and worker
replies only ever ``post`` events; the consumer applies them one at a time
with ``state.transition`` and runs the resulting commands. Nothing else
writes the state, so no lock is needed around it.
"""

import logging
import queue
import threading
import time
from typing import Any, Optional

from .config import DEFAULT_ANALYSIS_KINDS, FRAME_INTERVAL
from .protocol import (
    AnalysisReply,
    Command,
    CreateSource,
    Event,
    ProtocolError,
    ReleaseSource,
    RequestSnapshot,
    decode_event,
)
from .state import AppState, transition

logger = logging.getLogger(__name__)

_STOP = object()


class ScopeRuntime:
    """Single-writer event loop for the scope state."""

    def __init__(
        self,
        graph,
        worker,
        kinds: tuple[str, ...] = DEFAULT_ANALYSIS_KINDS,
        frame_interval: float = FRAME_INTERVAL,
    ):
        self._graph = graph
        self._worker = worker
        self._frame_interval = frame_interval
        self._state = AppState(kinds=tuple(kinds))
        self._events: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        graph.on_event = self.post

    def snapshot(self) -> AppState:
        """Current state, for painting. Immutable; safe to read from any thread."""
        return self._state

    def post(self, event: Event):
        """Queue an event for the consumer thread."""
        self._events.put(event)

    def post_payload(self, payload: Any) -> bool:
        """Decode and queue a plain payload. Malformed payloads are dropped."""
        try:
            event = decode_event(payload)
        except ProtocolError as e:
            logger.warning("Dropping malformed payload %r: %s", payload, e)
            return False
        self.post(event)
        return True

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running():
            return
        self._thread = threading.Thread(target=self._run, name="scope-runtime", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        if not self.is_running():
            return
        self._events.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    def drain(self) -> int:
        """Apply every queued event on the calling thread. Only for a stopped runtime.

        Returns the number of events applied.
        """
        if self.is_running():
            raise RuntimeError("drain() called while the runtime thread is running")
        applied = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return applied
            if event is _STOP:
                continue
            self._apply(event)
            applied += 1

    def _run(self):
        while True:
            event = self._events.get()
            if event is _STOP:
                return
            self._apply(event)

    def _apply(self, event: Event):
        try:
            state, commands = transition(self._state, event)
        except Exception:
            logger.exception("Transition for %r failed, state unchanged", event)
            return
        self._state = state
        for command in commands:
            try:
                self._dispatch(command)
            except Exception:
                logger.exception("Command %r failed", command)
                if isinstance(command, RequestSnapshot):
                    # No reply will come; an empty one clears the in-flight mark
                    request = command.request
                    self._deliver_on_next_frame(AnalysisReply(request.kind, (), request.request_id))

    def _dispatch(self, command: Command):
        if isinstance(command, CreateSource):
            self._graph.create(command.source_id, command.descriptor)
        elif isinstance(command, ReleaseSource):
            self._graph.release(command.handle, command.envelope)
        elif isinstance(command, RequestSnapshot):
            self._worker.submit(command.request, self._deliver_on_next_frame)
        else:
            logger.warning("Ignoring unknown command %r", command)

    def _deliver_on_next_frame(self, reply: AnalysisReply):
        """Hold a worker reply until the next frame boundary, then post it."""
        if self._frame_interval > 0:
            time.sleep(self._frame_interval - (time.monotonic() % self._frame_interval))
        self.post(reply)
