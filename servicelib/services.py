"""Mononoke server, API server and command-line tools under test.

Each helper takes a ``TestContext`` that supplies the scratch directory,
the harness configuration (binary paths and timeouts) and the TLS
material. Background services are registered with the context and are
killed at teardown; foreground tools raise ``ToolFailure`` on a non-zero
exit after dumping their log.
"""

import os
from logging import getLogger
from pathlib import Path
from typing import Optional, Tuple

from .context import TestContext
from .errors import HarnessError
from .launcher import launch, run_tool
from .ports import allocate_free_port
from .protocol import Clock, ManagedProcess, ReadinessCheck
from .readiness import HttpProbe, LogPatternProbe, LogRegexProbe, wait_until_ready

logger = getLogger(__name__)

CONFIG_DIR_NAME = "mononoke-config"

WARMUP_MARKER = "finished initial warmup"

# "... Listening to <host>:<port>" -> port at the end of the line
APISERVER_LISTEN_PATTERN = r"Listening to .*?(\d+)\s*$"

COMMON_FLAGS = ["--do-not-init-cachelib"]


def _config_dir(context: TestContext, config_dir: Optional[Path]) -> Path:
    return Path(config_dir) if config_dir else context.scratch_dir / CONFIG_DIR_NAME


def _require_tls(context: TestContext):
    if context.tls is None:
        raise HarnessError("TLS material is required; set cert_dir in the harness config")
    return context.tls


# ============================================================================
# Mononoke server
# ============================================================================

def mononoke(context: TestContext, *args: str,
             config_dir: Optional[Path] = None) -> ManagedProcess:
    """Start the Mononoke server on a fresh port, listening on [::1]."""
    tls = _require_tls(context)
    port = allocate_free_port()
    server_args = list(args) + [
        "--ca-pem", tls.ca,
        "--private-key", tls.private_key,
        "--cert", tls.certificate,
        "--ssl-ticket-seeds", tls.ticket_seeds,
        "--debug",
        "--listening-host-port", f"[::1]:{port}",
        "-P", _config_dir(context, config_dir),
    ] + COMMON_FLAGS
    return launch(
        context,
        "mononoke",
        context.config.binary("mononoke_server"),
        server_args,
        log_file=context.scratch_dir / "mononoke.out",
        port=port,
    )


def wait_for_mononoke(context: TestContext, proc: ManagedProcess,
                      timeout: Optional[float] = None,
                      clock: Optional[Clock] = None) -> int:
    """Wait until the server completes a TLS handshake on its port.

    The server has no handler at ``/``, so a ready server answers the probe
    with an empty reply.
    """
    probe = HttpProbe(f"https://localhost:{proc.port}", tls=_require_tls(context))
    check = ReadinessCheck(
        probe=probe,
        timeout=timeout if timeout is not None else context.config.start_timeout,
        poll_interval=context.config.poll_interval,
        log_file=proc.log_file,
        description="Mononoke server",
    )
    return wait_until_ready(check, clock=clock)


def wait_for_mononoke_cache_warmup(context: TestContext, proc: ManagedProcess,
                                   timeout: Optional[float] = None,
                                   clock: Optional[Clock] = None) -> int:
    """Wait for the server to log the end of its cache warmup."""
    check = ReadinessCheck(
        probe=LogPatternProbe(proc.log_file, WARMUP_MARKER),
        timeout=timeout if timeout is not None else context.config.warmup_timeout,
        poll_interval=context.config.poll_interval,
        log_file=proc.log_file,
        description="Mononoke cache warmup",
    )
    return wait_until_ready(check, clock=clock)


# ============================================================================
# API server
# ============================================================================

def apiserver(context: TestContext, *args: str,
              config_dir: Optional[Path] = None) -> ManagedProcess:
    """Start the API server with TLS. Its port is read from the log later."""
    tls = _require_tls(context)
    server_args = list(args) + [
        "--mononoke-config-path", _config_dir(context, config_dir),
        "--ssl-ca", tls.ca,
        "--ssl-private-key", tls.private_key,
        "--ssl-certificate", tls.certificate,
        "--ssl-ticket-seeds", tls.ticket_seeds,
    ] + COMMON_FLAGS
    return launch(
        context,
        "apiserver",
        context.config.binary("apiserver"),
        server_args,
        log_file=context.scratch_dir / "apiserver.out",
    )


def no_ssl_apiserver(context: TestContext, *args: str,
                     host: str = "127.0.0.1", port: Optional[int] = None,
                     config_dir: Optional[Path] = None) -> ManagedProcess:
    """Start the API server over plain HTTP."""
    if port is None:
        port = allocate_free_port()
    server_args = list(args) + [
        "--http-host", host,
        "--http-port", str(port),
        "--mononoke-config-path", _config_dir(context, config_dir),
    ]
    return launch(
        context,
        "apiserver",
        context.config.binary("apiserver"),
        server_args,
        log_file=context.scratch_dir / "apiserver.out",
        port=port,
    )


def wait_for_apiserver(context: TestContext, proc: ManagedProcess, ssl: bool = True,
                       timeout: Optional[float] = None,
                       clock: Optional[Clock] = None) -> str:
    """Wait for the API server to log its port.

    Returns:
        Base URL of the server, e.g. ``https://localhost:8443``.
    """
    probe = LogRegexProbe(proc.log_file, APISERVER_LISTEN_PATTERN)
    check = ReadinessCheck(
        probe=probe,
        timeout=timeout if timeout is not None else context.config.apiserver_timeout,
        poll_interval=context.config.poll_interval,
        log_file=proc.log_file,
        description="Mononoke API server",
    )
    wait_until_ready(check, clock=clock)

    proc.port = int(probe.match.group(1))
    scheme = "https" if ssl else "http"
    return f"{scheme}://localhost:{proc.port}"


def setup_no_ssl_apiserver(context: TestContext,
                           clock: Optional[Clock] = None) -> Tuple[ManagedProcess, str]:
    """Start a plain-HTTP API server and wait for it."""
    proc = no_ssl_apiserver(context)
    url = wait_for_apiserver(context, proc, ssl=False, clock=clock)
    return proc, url


# ============================================================================
# Foreground tools
# ============================================================================

def _quiet_env():
    env = dict(os.environ)
    env["GLOG_minloglevel"] = "2"
    return env


def blobimport(context: TestContext, input_path: Path, output_path: Path, *args: str,
               config_dir: Optional[Path] = None):
    """Import an hg repo into blob storage, logging to blobimport.out."""
    Path(output_path).mkdir(parents=True, exist_ok=True)
    tool_args = [
        "--repo_id", "0",
        "--mononoke-config-path", _config_dir(context, config_dir),
        input_path,
    ] + COMMON_FLAGS + list(args)
    return run_tool(
        context,
        "blobimport",
        context.config.binary("blobimport"),
        tool_args,
        log_file=context.scratch_dir / "blobimport.out",
    )


def bonsai_verify(context: TestContext, *args: str, config_dir: Optional[Path] = None,
                  check: bool = True):
    tool_args = [
        "--repo_id", "0",
        "--mononoke-config-path", _config_dir(context, config_dir),
    ] + list(args)
    return run_tool(context, "bonsai_verify", context.config.binary("bonsai_verify"),
                    tool_args, env=_quiet_env(), check=check)


def aliasverify(context: TestContext, mode: str, *args: str,
                config_dir: Optional[Path] = None, check: bool = True):
    tool_args = [
        "--repo_id", "0",
        "--do-not-init-cachelib",
        "--mononoke-config-path", _config_dir(context, config_dir),
        "--mode", mode,
    ] + list(args)
    return run_tool(context, "aliasverify", context.config.binary("alias_verify"),
                    tool_args, env=_quiet_env(), check=check)


def _hg_sync_args(context: TestContext, config_dir: Optional[Path]):
    return COMMON_FLAGS + [
        "--mononoke-config-path", _config_dir(context, config_dir),
    ]


def mononoke_hg_sync(context: TestContext, repo: str, start_id: int,
                     failure_handler: Optional[str] = None,
                     config_dir: Optional[Path] = None, check: bool = True):
    """Replay one bookmark update onto an hg repo (``sync-once``)."""
    tool_args = _hg_sync_args(context, config_dir)
    if failure_handler is not None:
        tool_args += ["--run-on-failure", failure_handler]
    tool_args += [f"ssh://user@dummy/{repo}", "sync-once", "--start-id", str(start_id)]
    return run_tool(context, "hg_sync", context.config.binary("hg_sync"),
                    tool_args, check=check)


def mononoke_hg_sync_loop(context: TestContext, repo: str, start_id: int,
                          config_dir: Optional[Path] = None) -> ManagedProcess:
    """Run the sync job's continuous loop in the background."""
    tool_args = _hg_sync_args(context, config_dir) + [
        f"ssh://user@dummy/{repo}", "sync-loop", "--start-id", str(start_id),
    ]
    return launch(
        context,
        "hg_sync_loop",
        context.config.binary("hg_sync"),
        tool_args,
        log_file=context.scratch_dir / "hg_sync_loop.out",
    )


def pushrebase_replay(context: TestContext, db_indices: str,
                      server: ManagedProcess,
                      config_dir: Optional[Path] = None, check: bool = True):
    """Replay recorded pushrebases against a running server."""
    tls = _require_tls(context)
    env = dict(os.environ)
    env.update({
        "REPLAY_CA_PEM": str(tls.ca),
        "THRIFT_TLS_CL_CERT_PATH": str(tls.certificate),
        "THRIFT_TLS_CL_KEY_PATH": str(tls.private_key),
    })
    tool_args = [
        "--mononoke-config-path", _config_dir(context, config_dir),
        "--reponame", "repo",
        "--hgcli", context.config.binary("hgcli"),
        "--mononoke-admin", context.config.binary("admin"),
        "--mononoke-address", f"[::1]:{server.port}",
        "--mononoke-server-common-name", "localhost",
        "--db-indices", db_indices,
        "--repoid", "0",
        "--bundle-provider", "filesystem",
        "--filesystem-bundles-storage-path", context.scratch_dir,
        "--sqlite3-path", context.scratch_dir / "pushrebaserecording",
    ]
    return run_tool(context, "pushrebase_replay", context.config.binary("pushrebase_replay"),
                    tool_args, env=env, check=check)
