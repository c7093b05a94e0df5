"""One-call bootstrap for hook tests.

``hook_test_setup`` leaves the scratch directory with:

    mononoke-config/    repo config with the hook on master_bookmark
    repo-hg/            hg server repo holding the stack A-B-C,
                        master_bookmark at C
    repo/               blobimported copy of repo-hg
    repo2/              tree-only client clone with pushrebase and remotenames

and a Mononoke server serving ``repo`` that has passed its readiness check.
"""

from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, Optional

from servicelib import services
from servicelib.context import TestContext
from servicelib.protocol import Clock, ManagedProcess

from .hgrc import (
    enable_extension,
    hg,
    hgclone_treemanifest,
    setup_common_hg_configs,
    setup_hg_client,
    setup_hg_server,
)
from .repo_config import write_hook_config

logger = getLogger(__name__)

HOOK_BOOKMARK = "master_bookmark"

# Linear history A <- B <- C in debugdrawdag's notation
LINEAR_STACK = "C\n|\nB\n|\nA\n"

SERVER_REPO = "repo-hg"
CLIENT_REPO = "repo2"


@dataclass
class HookTestRepos:
    """What ``hook_test_setup`` built."""
    config_dir: Path
    server_repo: Path
    blob_repo: Path
    client_repo: Path
    server: ManagedProcess


def hook_test_setup(context: TestContext, hook_file: Optional[Path], hook_name: str,
                    hook_type: str, extra: Optional[Dict[str, Any]] = None,
                    clock: Optional[Clock] = None) -> HookTestRepos:
    """Build everything a hook test needs and start the server.

    Args:
        context: Test context; needs hg, dummyssh, blobimport and
            mononoke_server binaries and TLS material.
        hook_file: Lua source for the hook, or None for a hook with no file.
        hook_name: Name the hook is registered under.
        hook_type: ``PerChangeset`` or ``PerFile``.
        extra: Extra keys for the hook's config table.
        clock: Time source for the server readiness wait.

    Raises:
        ToolFailure: If hg or blobimport fails.
        ReadinessTimeout: If the server never accepts connections.
    """
    scratch = context.scratch_dir
    config_dir = write_hook_config(scratch, hook_file, hook_name, hook_type,
                                   extra=extra, bookmark=HOOK_BOOKMARK)
    setup_common_hg_configs(context)

    server_repo = scratch / SERVER_REPO
    hg(context, "init", server_repo)
    setup_hg_server(server_repo)
    hg(context, "debugdrawdag", cwd=server_repo, input=LINEAR_STACK)
    hg(context, "bookmark", HOOK_BOOKMARK, "-r", "tip", cwd=server_repo)

    blob_repo = scratch / "repo"
    services.blobimport(context, server_repo / ".hg", blob_repo, config_dir=config_dir)

    server = services.mononoke(context, config_dir=config_dir)
    services.wait_for_mononoke(context, server, clock=clock)

    client_repo = hgclone_treemanifest(context, f"ssh://user@dummy/{SERVER_REPO}", CLIENT_REPO,
                                       "--noupdate", "--config", "extensions.remotenames=")
    setup_hg_client(client_repo)
    enable_extension(client_repo, "pushrebase", "remotenames")

    logger.info(f"hook test for {hook_name} ready, server on port {server.port}")
    return HookTestRepos(
        config_dir=config_dir,
        server_repo=server_repo,
        blob_repo=blob_repo,
        client_repo=client_repo,
        server=server,
    )
