"""sc-scope - live synth voices and waveform scope on SuperCollider."""

__all__ = ["main"]


def main():
    """Main entry point - lazy import to avoid eager dependency loading."""
    from .main import main as _main
    return _main()
