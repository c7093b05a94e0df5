"""Core types shared by the service launcher and the readiness poller.

This module defines the records that describe a launched service, the TLS
material handed to servers and probes, and the abstract interfaces that
readiness probes and clocks implement. Concrete probes live in
``servicelib.readiness``.
"""

import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple


@dataclass
class TlsMaterial:
    """PEM files used for mutually-authenticated TLS.

    The test certificate doubles as its own CA, so ``ca`` usually points at
    the same file as ``certificate``.
    """
    certificate: Path
    private_key: Path
    ca: Path
    ticket_seeds: Optional[Path] = None

    @classmethod
    def from_directory(cls, cert_dir: Path) -> "TlsMaterial":
        """Build TLS material from a directory holding the test certificates.

        Expects ``testcert.crt``, ``testcert.key`` and ``server.pem.seeds``.
        """
        cert_dir = Path(cert_dir)
        cert = cert_dir / "testcert.crt"
        return cls(
            certificate=cert,
            private_key=cert_dir / "testcert.key",
            ca=cert,
            ticket_seeds=cert_dir / "server.pem.seeds",
        )

    @property
    def client_cert(self) -> Tuple[str, str]:
        """The (cert, key) pair in the form requests expects."""
        return (str(self.certificate), str(self.private_key))


@dataclass
class ManagedProcess:
    """A background service whose pid is tracked for teardown."""
    name: str
    pid: int
    log_file: Path
    port: Optional[int] = None
    process: Optional[subprocess.Popen] = field(default=None, repr=False)

    def is_running(self) -> bool:
        """Check if the service process is still running."""
        if self.process is None:
            return False
        return self.process.poll() is None

    def get_log_contents(self) -> str:
        """Read the service log file contents."""
        if self.log_file.exists():
            return self.log_file.read_text(errors="replace")
        return ""


class ReadinessProbe(ABC):
    """A single readiness signal that can be evaluated repeatedly.

    A probe must never raise for "not ready yet" conditions such as a
    refused connection or a missing log line; it returns False instead.
    """

    @abstractmethod
    def check(self) -> bool:
        """Evaluate the probe once.

        Returns:
            True if the service is ready.
        """
        pass

    def describe(self) -> str:
        """Short human-readable description used in error messages."""
        return type(self).__name__


class Clock(ABC):
    """Time source used by the poller, replaceable in tests."""

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        pass

    @abstractmethod
    def monotonic(self) -> float:
        pass


class SystemClock(Clock):
    """Clock backed by the real ``time`` module."""

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


@dataclass
class ReadinessCheck:
    """Parameters for one ``wait_until_ready`` call."""
    probe: ReadinessProbe
    timeout: float
    poll_interval: float = 0.1
    # Log dumped to diagnostics when the check times out
    log_file: Optional[Path] = None
    description: str = ""

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.timeout < 0:
            raise ValueError(f"timeout must not be negative, got {self.timeout}")
        if isinstance(self.log_file, str):
            self.log_file = Path(self.log_file)
        if not self.description:
            self.description = self.probe.describe()
