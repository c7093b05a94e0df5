"""Pytest configuration and fixtures for the Mononoke test harness.

This module provides fixtures for:
- A per-test scratch directory and TestContext whose processes are always
  killed at teardown, pass or fail
- Harness configuration and TLS material
- A running Mononoke server (skipped when the binary is not available)

Usage:
    # Unit tests only (no binaries needed)
    pytest -m "not integration"

    # Against a real server
    pytest --mononoke-server=/path/to/mononoke --cert-dir=/path/to/certs

Binary Resolution:
    The Mononoke server binary is found in this order:
    1. --mononoke-server CLI option
    2. MONONOKE_SERVER environment variable
    3. Configuration file ([binaries] mononoke_server)
"""

import shutil
import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Generator

import pytest

from harness.config import Config, get_config
from servicelib.context import TestContext
from servicelib.protocol import Clock, ManagedProcess, TlsMaterial
from servicelib import services


# ============================================================================
# Configuration
# ============================================================================

def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--mononoke-server",
        action="store",
        default=None,
        help="Path to the Mononoke server binary to test"
    )
    parser.addoption(
        "--cert-dir",
        action="store",
        default=None,
        help="Directory with testcert.crt, testcert.key and server.pem.seeds"
    )
    parser.addoption(
        "--start-timeout",
        action="store",
        type=float,
        default=None,
        help="Seconds to wait for services to start (default: from config)"
    )
    parser.addoption(
        "--keep-artifacts",
        action="store_true",
        default=False,
        help="Keep scratch directories (logs, configs, databases) after test run"
    )
    parser.addoption(
        "--no-logs-on-failure",
        action="store_true",
        default=False,
        help="Do not append service logs to the report of a failed test"
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that need real Mononoke binaries"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# ============================================================================
# Harness Fixtures
# ============================================================================

@pytest.fixture(scope='session')
def harness_config(request) -> Config:
    """Harness configuration with command-line overrides applied."""
    config = get_config()

    server = request.config.getoption("--mononoke-server")
    if server:
        config.binaries["mononoke_server"] = Path(server).resolve()

    cert_dir = request.config.getoption("--cert-dir")
    if cert_dir:
        config.cert_dir = Path(cert_dir).resolve()

    start_timeout = request.config.getoption("--start-timeout")
    if start_timeout is not None:
        config.start_timeout = start_timeout

    return config


@pytest.fixture(scope='session')
def tls_material(harness_config) -> TlsMaterial:
    """TLS material from the configured certificate directory."""
    if harness_config.cert_dir is None:
        pytest.skip(
            "Test certificates not found. Options:\n"
            "  - Specify --cert-dir=<path>\n"
            "  - Set TESTDIR or MONONOKE_CERT_DIR environment variable\n"
            "  - Configure [paths] cert_dir in ~/.config/mononoke-tests/config.toml"
        )
    tls = TlsMaterial.from_directory(harness_config.cert_dir)
    if not tls.certificate.exists() or not tls.private_key.exists():
        pytest.skip(f"Test certificates missing in {harness_config.cert_dir}")
    return tls


@pytest.fixture
def scratch_dir(request) -> Generator[Path, None, None]:
    """Per-test scratch directory ($TESTTMP in the shell suite)."""
    keep_artifacts = request.config.getoption("--keep-artifacts")
    path = Path(tempfile.mkdtemp(prefix='mononoke_test_'))
    yield path

    if keep_artifacts:
        artifacts_dir = get_config().artifacts_dir
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        target = artifacts_dir / f"{request.node.name}_{path.name}"
        shutil.move(str(path), str(target))
    else:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def test_context(scratch_dir, harness_config) -> Generator[TestContext, None, None]:
    """A TestContext without TLS; every process it launches is killed at the end."""
    with TestContext(scratch_dir, config=harness_config,
                     pid_file=scratch_dir / "daemon_pids") as context:
        yield context


@pytest.fixture
def tls_context(scratch_dir, harness_config, tls_material) -> Generator[TestContext, None, None]:
    """A TestContext with TLS material, for talking to real servers."""
    with TestContext(scratch_dir, config=harness_config, tls=tls_material,
                     pid_file=scratch_dir / "daemon_pids") as context:
        yield context


class FakeClock(Clock):
    """Clock that only advances when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def monotonic(self) -> float:
        return self.now


@pytest.fixture
def fake_clock() -> FakeClock:
    """A clock for polling tests that never really sleeps."""
    return FakeClock()


@pytest.fixture
def fake_binary(tmp_path):
    """Factory writing executable Python scripts that stand in for server binaries."""
    def make(name: str, body: str) -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return path
    return make


# ============================================================================
# Server Fixtures
# ============================================================================

@pytest.fixture
def mononoke_config_dir(tls_context) -> Path:
    """Default repo config tree in the test's scratch directory."""
    from harness.repo_config import setup_mononoke_config
    return setup_mononoke_config(tls_context.scratch_dir)


@pytest.fixture
def mononoke_server(tls_context, harness_config, mononoke_config_dir) -> ManagedProcess:
    """A started and ready Mononoke server."""
    if not harness_config.has_binary("mononoke_server"):
        pytest.skip(
            "Mononoke binary not found. Options:\n"
            "  - Specify --mononoke-server=<path>\n"
            "  - Set MONONOKE_SERVER environment variable"
        )
    proc = services.mononoke(tls_context, config_dir=mononoke_config_dir)
    services.wait_for_mononoke(tls_context, proc)
    return proc


# ============================================================================
# Failure Diagnostics
# ============================================================================

@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Hook to append service logs to the report of a failed test."""
    outcome = yield
    report = outcome.get_result()

    if report.when == "call" and report.failed:
        if item.config.getoption("--no-logs-on-failure", default=False):
            return

        context = item.funcargs.get("tls_context") or item.funcargs.get("test_context")
        if context is None:
            return

        for proc in context.processes:
            log = proc.get_log_contents()
            if not log:
                continue
            # Only show last 50 lines of log to avoid overwhelming output
            log_lines = log.strip().split('\n')
            if len(log_lines) > 50:
                log = '\n'.join(['... (truncated) ...'] + log_lines[-50:])
            report.longrepr = str(report.longrepr) + \
                f"\n\n--- {proc.name} log ({proc.log_file.name}, last 50 lines) ---\n{log}\n"
