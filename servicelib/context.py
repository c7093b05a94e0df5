"""Per-test ownership of spawned service processes.

A ``TestContext`` replaces the shell-era global pid file: every process
started through ``servicelib.launcher`` is registered here, and
``teardown()`` terminates all of them. Use the context as a context manager
(or through the ``test_context`` pytest fixture) so teardown runs on every
exit path.
"""

import subprocess
from logging import getLogger
from pathlib import Path
from typing import List, Optional

from .protocol import ManagedProcess, TlsMaterial

logger = getLogger(__name__)


class TestContext:
    """Scratch directory, settings and process registry for one test."""

    # Not a test class, despite the name
    __test__ = False

    def __init__(self, scratch_dir: Path, config=None,
                 tls: Optional[TlsMaterial] = None,
                 pid_file: Optional[Path] = None,
                 stop_timeout: float = 5.0):
        self.scratch_dir = Path(scratch_dir)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        self.config = config
        self.tls = tls
        self.pid_file = Path(pid_file) if pid_file else None
        self.stop_timeout = stop_timeout
        self._processes: List[ManagedProcess] = []

    @property
    def processes(self) -> List[ManagedProcess]:
        """Processes registered so far, in launch order."""
        return list(self._processes)

    def get(self, name: str) -> Optional[ManagedProcess]:
        """Return the most recently registered process with this name."""
        for proc in reversed(self._processes):
            if proc.name == name:
                return proc
        return None

    def register(self, proc: ManagedProcess) -> None:
        """Record a spawned process so teardown will kill it."""
        self._processes.append(proc)
        if self.pid_file:
            with open(self.pid_file, "a") as f:
                f.write(f"{proc.pid}\n")
        logger.debug(f"registered {proc.name} pid={proc.pid}")

    def stop(self, proc: ManagedProcess) -> Optional[int]:
        """Terminate one process and reap it.

        Returns:
            The exit status, or None if it could not be determined.
        """
        if proc in self._processes:
            self._processes.remove(proc)

        if proc.process is None:
            logger.debug(f"{proc.name} has no process handle, not signalling pid {proc.pid}")
            return None

        exit_code = proc.process.poll()
        if exit_code is not None:
            return exit_code

        proc.process.terminate()
        try:
            return proc.process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"{proc.name} (pid {proc.pid}) ignored SIGTERM, killing")
            proc.process.kill()
            return proc.process.wait()

    def teardown(self) -> None:
        """Terminate every registered process. Safe to call more than once."""
        for proc in reversed(list(self._processes)):
            exit_code = self.stop(proc)
            logger.debug(f"stopped {proc.name} pid={proc.pid} exit={exit_code}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.teardown()
        return False
