"""Background snapshot extraction.

Reading tap buffers means a round trip to scsynth per chunk, so it runs on
a small thread pool instead of the event loop. Each request is handled on
its own with nothing shared between calls: overlapping requests for the
same sources are fine, and replies may come back in any order.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from .config import ANALYSIS_WORKERS
from .protocol import Analysis, AnalysisReply, SnapshotRequest

logger = logging.getLogger(__name__)


class AnalysisWorker:
    """Runs ``graph.extract_snapshot`` for batched requests off the event loop."""

    def __init__(self, graph, max_workers: int = ANALYSIS_WORKERS):
        self._graph = graph
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="scope-analysis"
        )

    def analyze(self, request: SnapshotRequest) -> AnalysisReply:
        """Extract one batch. Always answers, with empty data on failure."""
        try:
            analyses = self._graph.extract_snapshot(request.items, request.kind)
        except Exception:
            logger.exception("Snapshot request %s (%s) failed", request.request_id, request.kind)
            analyses = [
                Analysis(item.source_id, (), item.graph_ref.instance) for item in request.items
            ]
        return AnalysisReply(request.kind, tuple(analyses), request.request_id)

    def submit(self, request: SnapshotRequest, reply_to: Callable[[AnalysisReply], None]) -> Future:
        """Queue a request; ``reply_to`` is called from a worker thread with the reply."""
        return self._executor.submit(self._run, request, reply_to)

    def _run(self, request: SnapshotRequest, reply_to: Callable[[AnalysisReply], None]) -> AnalysisReply:
        reply = self.analyze(request)
        reply_to(reply)
        return reply

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
