"""Persistent sclang process that loads the scope SynthDefs."""

import os
import platform
import shutil
import subprocess
import tempfile
import time
from typing import Optional

from .config import SCLANG_SEARCH_PATHS, SCLANG_STARTUP_DELAY


def find_sclang() -> Optional[str]:
    """Find the sclang executable: PATH first, then the platform's usual install locations."""
    sclang_path = shutil.which("sclang")
    if sclang_path:
        return sclang_path

    for path in SCLANG_SEARCH_PATHS.get(platform.system(), []):
        expanded = os.path.expanduser(path)
        if os.path.isfile(expanded):
            return expanded

    return None


class SclangProcess:
    """An sclang interpreter running an init file until stopped."""

    def __init__(self, init_code: str, startup_delay: float = SCLANG_STARTUP_DELAY):
        self.init_code = init_code
        self.startup_delay = startup_delay
        self._process: Optional[subprocess.Popen] = None
        self._init_file: Optional[str] = None

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> tuple[bool, str]:
        """(Re)start sclang with the init code. Returns (success, message)."""
        self.stop()

        sclang = find_sclang()
        if not sclang:
            return False, "sclang not found"

        try:
            # sclang has no -e flag, so the code goes through a file
            with tempfile.NamedTemporaryFile(mode='w', suffix='.scd', delete=False) as f:
                f.write(self.init_code)
                self._init_file = f.name

            # DEVNULL: sclang output can fill a pipe buffer and deadlock
            self._process = subprocess.Popen(
                [sclang, self._init_file],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            time.sleep(self.startup_delay)

            if self._process.poll() is not None:
                exit_code = self._process.returncode
                self._process = None
                self._remove_init_file()
                return False, f"sclang exited unexpectedly with code {exit_code}"

            return True, "sclang started with scope SynthDefs"

        except OSError as e:
            self._process = None
            self._remove_init_file()
            return False, f"Failed to start sclang: {e}"

    def stop(self):
        """Terminate sclang (kill it if it doesn't exit) and remove the init file."""
        proc = self._process
        self._process = None
        if proc:
            try:
                proc.terminate()
                proc.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                proc.kill()
                try:
                    proc.wait(timeout=1.0)
                except subprocess.TimeoutExpired:
                    pass  # Process truly stuck, nothing more we can do
        self._remove_init_file()

    def _remove_init_file(self):
        if self._init_file:
            try:
                os.unlink(self._init_file)
            except OSError:
                pass
            self._init_file = None
