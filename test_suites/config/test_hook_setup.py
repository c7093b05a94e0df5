"""Tests for the hook test bootstrap, with scripts standing in for the binaries."""

import json

import pytest

from harness.config import Config
from harness.hgrc import read_hgrc
from harness.hook_setup import LINEAR_STACK, hook_test_setup
from harness.repo_config import load_repo_config
from servicelib import services
from servicelib.context import TestContext
from servicelib.errors import ToolFailure
from servicelib.protocol import TlsMaterial

# Appends {"args", "cwd", "stdin"} per call to hg.calls beside the script
FAKE_HG = """
import json, os, sys
args = sys.argv[1:]
stdin = sys.stdin.read() if args and args[0] == "debugdrawdag" else ""
calls = os.path.join(os.path.dirname(os.path.abspath(sys.argv[0])), "hg.calls")
with open(calls, "a") as f:
    f.write(json.dumps({"args": args, "cwd": os.getcwd(), "stdin": stdin}) + "\\n")
if args and args[0] == "init":
    os.makedirs(os.path.join(args[1], ".hg"))
elif args and args[0] == "clone":
    source = next(a for a in args if a.startswith("ssh://"))
    os.makedirs(os.path.join(args[args.index(source) + 1], ".hg"))
"""

RECORD_ARGS = """
import json, sys
print(json.dumps(sys.argv[1:]), flush=True)
"""

SLEEP_FOREVER = """
import time
time.sleep(60)
"""

FAILING_BLOBIMPORT = """
import sys
print("corrupt revlog", flush=True)
sys.exit(1)
"""


@pytest.fixture
def hook_context(scratch_dir, tmp_path, fake_binary):
    cert_dir = tmp_path / "certs"
    cert_dir.mkdir()
    for name in ("testcert.crt", "testcert.key", "server.pem.seeds"):
        (cert_dir / name).write_text("placeholder\n")
    config = Config(binaries={
        "hg": fake_binary("hg", FAKE_HG),
        "dummyssh": "/opt/bin/dummyssh",
        "blobimport": fake_binary("blobimport", RECORD_ARGS),
        "mononoke_server": fake_binary("mononoke", SLEEP_FOREVER),
    })
    with TestContext(scratch_dir, config=config,
                     tls=TlsMaterial.from_directory(cert_dir)) as context:
        yield context


@pytest.fixture
def waits(monkeypatch):
    """Record wait_for_mononoke calls instead of probing the fake server."""
    calls = []

    def wait_for_mononoke(context, proc, timeout=None, clock=None):
        calls.append(proc)
        return 1

    monkeypatch.setattr(services, "wait_for_mononoke", wait_for_mononoke)
    return calls


def hg_calls(context):
    path = context.config.binary("hg").parent / "hg.calls"
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestHookTestSetup:
    """Tests for the full hook test bootstrap."""

    def test_hg_server_repo_gets_linear_stack(self, hook_context, waits, tmp_path):
        hook_file = tmp_path / "block_empty.lua"
        hook_file.write_text("hook = function (ctx)\n  return true\nend\n")

        repos = hook_test_setup(hook_context, hook_file, "block_empty", "PerChangeset")

        calls = hg_calls(hook_context)
        commands = [c["args"][0] for c in calls]
        assert commands == ["init", "debugdrawdag", "bookmark", "clone"]

        drawdag = calls[1]
        assert drawdag["stdin"] == LINEAR_STACK
        assert drawdag["cwd"] == str(repos.server_repo.resolve())
        assert calls[2]["args"] == ["bookmark", "master_bookmark", "-r", "tip"]

        server_hgrc = read_hgrc(repos.server_repo / ".hg" / "hgrc")
        assert server_hgrc.get("treemanifest", "server") == "True"

    def test_hook_registered_and_copied(self, hook_context, waits, tmp_path):
        hook_file = tmp_path / "block_empty.lua"
        hook_file.write_text("hook = function (ctx)\n  return true\nend\n")

        repos = hook_test_setup(hook_context, hook_file, "block_empty", "PerChangeset",
                                extra={"bypass_commit_string": "@allow-empty"})

        repo = load_repo_config(repos.config_dir, "repo")
        assert repo.find_bookmark("master_bookmark").hooks == ["block_empty"]
        assert repo.hooks[0].extra == {"bypass_commit_string": "@allow-empty"}
        assert (repos.config_dir / "common" / "hooks" / "block_empty.lua").exists()

    def test_blobimport_then_server_started_and_waited(self, hook_context, waits):
        repos = hook_test_setup(hook_context, None, "limit_size", "PerFile")

        log = hook_context.scratch_dir / "blobimport.out"
        args = json.loads(log.read_text().splitlines()[-1])
        assert str(repos.server_repo / ".hg") in args
        assert args[args.index("--mononoke-config-path") + 1] == str(repos.config_dir)
        assert repos.blob_repo.is_dir()

        assert hook_context.get("mononoke") is repos.server
        assert waits == [repos.server]

    def test_client_clone_configured(self, hook_context, waits):
        repos = hook_test_setup(hook_context, None, "limit_size", "PerFile")

        clone = hg_calls(hook_context)[-1]["args"]
        assert "ssh://user@dummy/repo-hg" in clone
        assert clone[clone.index("ssh://user@dummy/repo-hg") + 1] == "repo2"
        assert "--noupdate" in clone

        hgrc = read_hgrc(repos.client_repo / ".hg" / "hgrc")
        assert hgrc.get("remotefilelog", "reponame") == "repo"
        assert hgrc.get("treemanifest", "treeonly") == "True"
        assert hgrc.has_option("extensions", "pushrebase")
        assert hgrc.has_option("extensions", "remotenames")

    def test_common_hgrc_points_at_dummyssh(self, hook_context, waits):
        hook_test_setup(hook_context, None, "limit_size", "PerFile")

        common = read_hgrc(hook_context.scratch_dir / ".hgrc")
        assert common.get("ui", "ssh") == "/opt/bin/dummyssh"

    def test_blobimport_failure_stops_before_server(self, hook_context, waits, fake_binary):
        hook_context.config.binaries["blobimport"] = fake_binary("blobimport", FAILING_BLOBIMPORT)

        with pytest.raises(ToolFailure):
            hook_test_setup(hook_context, None, "limit_size", "PerFile")

        assert hook_context.get("mononoke") is None
        assert waits == []
