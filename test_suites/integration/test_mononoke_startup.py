"""Startup tests against real Mononoke binaries.

Skipped unless --mononoke-server (or MONONOKE_SERVER) and the test
certificates are available.
"""

import pytest

from harness.fixture_db import create_mutable_counters_db, init_mutable_counters_db
from harness.repo_config import setup_mononoke_config
from servicelib import services
from servicelib.readiness import HttpProbe

pytestmark = pytest.mark.integration


class TestServerStartup:
    """Tests that the server comes up and is torn down."""

    def test_server_answers_tls_handshake(self, mononoke_server, tls_context):
        assert mononoke_server.is_running()
        probe = HttpProbe(f"https://localhost:{mononoke_server.port}", tls=tls_context.tls)
        assert probe.check()

    def test_server_registered_for_teardown(self, mononoke_server, tls_context):
        assert tls_context.get("mononoke") is mononoke_server
        pids = (tls_context.scratch_dir / "daemon_pids").read_text().split()
        assert str(mononoke_server.pid) in pids

    def test_stop_server(self, mononoke_server, tls_context):
        tls_context.stop(mononoke_server)
        assert not mononoke_server.is_running()
        probe = HttpProbe(f"https://localhost:{mononoke_server.port}", tls=tls_context.tls)
        assert not probe.check()


@pytest.mark.slow
class TestCacheWarmup:
    """Tests for startup with a warmup bookmark configured."""

    def test_warmup_marker_logged(self, tls_context, harness_config):
        if not harness_config.has_binary("mononoke_server"):
            pytest.skip("Mononoke binary not found")
        config_dir = setup_mononoke_config(
            tls_context.scratch_dir, cache_warmup_bookmark="master_bookmark")
        create_mutable_counters_db(tls_context.scratch_dir)
        init_mutable_counters_db(tls_context.scratch_dir)

        proc = services.mononoke(tls_context, config_dir=config_dir)
        services.wait_for_mononoke(tls_context, proc)
        services.wait_for_mononoke_cache_warmup(tls_context, proc)

        assert services.WARMUP_MARKER in proc.get_log_contents()
