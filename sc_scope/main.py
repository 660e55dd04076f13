"""Main entry point for the sc-scope MCP server."""

import atexit
import logging
import signal
import sys

from .tools import analysis_worker, audio_graph, mcp, runtime


def _cleanup():
    """Stop the event loop, then the worker, then free the graphs."""
    runtime.stop()
    analysis_worker.shutdown(wait=False)
    audio_graph.disconnect()


def _signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    _cleanup()
    sys.exit(0)


# Register cleanup handlers
atexit.register(_cleanup)
signal.signal(signal.SIGTERM, _signal_handler)
signal.signal(signal.SIGINT, _signal_handler)


def main():
    """Main entry point."""
    # stdout carries the MCP stdio transport
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="[%(name)s] %(levelname)s: %(message)s",
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
