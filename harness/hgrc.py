"""hg configuration helpers for talking to a test Mononoke server.

hgrc files are merged section by section with configparser rather than
appended to, so calling a helper twice does not duplicate sections.
"""

import configparser
import os
from pathlib import Path
from typing import Dict, List, Optional

from servicelib.context import TestContext
from servicelib.launcher import run_tool

# The ssh path dummyssh recognises
MONONOKE_SSH_URL = "ssh://user@dummy/repo"

TREEMANIFEST_SERVER = {
    "extensions": {"treemanifest": "", "remotefilelog": "", "smartlog": ""},
    "treemanifest": {"server": "True", "sendtrees": "True"},
    "remotefilelog": {"server": "True", "shallowtrees": "True"},
}

TREEMANIFEST_CLIENT = {
    "extensions": {"treemanifest": "", "remotefilelog": "", "fastmanifest": "", "smartlog": ""},
    "treemanifest": {"sendtrees": "True", "treeonly": "True"},
    "remotefilelog": {"shallowtrees": "True"},
}


def update_hgrc(path: Path, sections: Dict[str, Dict[str, str]]) -> Path:
    """Merge ``sections`` into the hgrc at ``path``, creating it if needed."""
    path = Path(path)
    parser = configparser.ConfigParser(interpolation=None)
    # hg keys are case sensitive
    parser.optionxform = str
    if path.exists():
        parser.read(path)
    for section, values in sections.items():
        if not parser.has_section(section):
            parser.add_section(section)
        for key, value in values.items():
            parser.set(section, key, str(value))
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        parser.write(f)
    return path


def read_hgrc(path: Path) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str
    parser.read(path)
    return parser


def hgrc_path(context: TestContext) -> Path:
    """The HGRCPATH used for all hg commands in this test."""
    return context.scratch_dir / ".hgrc"


def hg_env(context: TestContext) -> Dict[str, str]:
    env = dict(os.environ)
    env["HGRCPATH"] = str(hgrc_path(context))
    return env


def setup_common_hg_configs(context: TestContext) -> Path:
    """Point hg at dummyssh and give remotefilelog a cache path."""
    return update_hgrc(hgrc_path(context), {
        "ui": {"ssh": str(context.config.binary("dummyssh"))},
        "extensions": {"remotefilelog": ""},
        "remotefilelog": {"cachepath": str(context.scratch_dir / "cachepath")},
    })


def _repo_hgrc(repo_dir: Path) -> Path:
    return Path(repo_dir) / ".hg" / "hgrc"


def setup_hg_server(repo_dir: Path) -> Path:
    return update_hgrc(_repo_hgrc(repo_dir), {
        "extensions": {"treemanifest": "", "remotefilelog": ""},
        "treemanifest": {"server": "True"},
        "remotefilelog": {"server": "True", "shallowtrees": "True"},
    })


def setup_hg_client(repo_dir: Path, reponame: str = "repo") -> Path:
    return update_hgrc(_repo_hgrc(repo_dir), {
        "extensions": {"treemanifest": "", "remotefilelog": ""},
        "treemanifest": {"server": "False", "treeonly": "True"},
        "remotefilelog": {"server": "False", "reponame": reponame},
    })


def enable_extension(repo_dir: Path, *extensions: str) -> Path:
    return update_hgrc(_repo_hgrc(repo_dir), {
        "extensions": {name: "" for name in extensions},
    })


def setup_hg_lfs(repo_dir: Path, url: str, threshold, usercache: Path) -> Path:
    return update_hgrc(_repo_hgrc(repo_dir), {
        "extensions": {"lfs": ""},
        "lfs": {"url": url, "threshold": str(threshold), "usercache": str(usercache)},
    })


def hg(context: TestContext, *args: str, cwd: Optional[Path] = None, check: bool = True,
       input: Optional[str] = None):
    """Run plain hg with the test's HGRCPATH, feeding ``input`` to stdin."""
    return run_tool(context, "hg", context.config.binary("hg"), list(args),
                    env=hg_env(context), cwd=cwd, check=check, input=input)


def hginit_treemanifest(context: TestContext, repo_name: str, *args: str) -> Path:
    """``hg init`` a treemanifest server repo under the scratch directory."""
    repo_dir = context.scratch_dir / repo_name
    hg(context, "init", str(repo_dir), *args)
    sections = {name: dict(values) for name, values in TREEMANIFEST_SERVER.items()}
    sections["remotefilelog"].update({
        "reponame": repo_name,
        "cachepath": str(context.scratch_dir / "cachepath"),
    })
    update_hgrc(_repo_hgrc(repo_dir), sections)
    return repo_dir


def hgclone_treemanifest(context: TestContext, source: str, dest: str, *args: str) -> Path:
    """Shallow-clone ``source`` into ``dest`` and configure it as a tree-only client."""
    hg(context, "clone", "-q", "--shallow",
       "--config", "remotefilelog.reponame=master", source, dest, *args)
    repo_dir = context.scratch_dir / dest
    sections = {name: dict(values) for name, values in TREEMANIFEST_CLIENT.items()}
    sections["remotefilelog"].update({
        "reponame": dest,
        "cachepath": str(context.scratch_dir / "cachepath"),
    })
    update_hgrc(_repo_hgrc(repo_dir), sections)
    return repo_dir


def hgmn_args(config, *args: str) -> List[str]:
    """Command line for hg configured to talk to Mononoke through hgcli."""
    return [
        str(config.binary("hg")),
        "--config", f"ui.ssh={config.binary('dummyssh')}",
        "--config", f"paths.default={MONONOKE_SSH_URL}",
        "--config", f"ui.remotecmd={config.binary('hgcli')}",
    ] + [str(a) for a in args]


def hgmn(context: TestContext, *args: str, cwd: Optional[Path] = None, check: bool = True):
    cmd = hgmn_args(context.config, *args)
    return run_tool(context, "hgmn", cmd[0], cmd[1:], env=hg_env(context), cwd=cwd, check=check)
