"""Typed model of a Mononoke repo's server.toml.

Every optional section is a named field; ``RepoConfig.to_toml()`` is the
only place that turns the model into text. Files are read back with
tomllib so hooks can be registered after the initial setup.

Layout written by ``setup_mononoke_config``::

    <scratch>/mononoke-config/
        repos/repo/server.toml           repoid 0, enabled
        repos/disabled_repo/server.toml  repoid 2, disabled
        common/hooks/<name>.lua          (write_hook_config only)
"""

import shutil
from dataclasses import dataclass, field
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli_w

try:
    import tomllib
except ImportError:
    import tomli as tomllib

from servicelib.services import CONFIG_DIR_NAME

logger = getLogger(__name__)

DEFAULT_REPOTYPE = "blob:rocks"


@dataclass
class HookConfig:
    """A hook definition in the top-level ``[[hooks]]`` array."""
    name: str
    path: str
    hook_type: str
    # Extra keys written into the same table (e.g. bypass settings)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "path": self.path, "hook_type": self.hook_type}
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HookConfig":
        data = dict(data)
        return cls(
            name=data.pop("name"),
            path=data.pop("path", ""),
            hook_type=data.pop("hook_type", ""),
            extra=data,
        )


@dataclass
class BookmarkConfig:
    """A ``[[bookmarks]]`` entry matched by exact name or by regex."""
    name: Optional[str] = None
    regex: Optional[str] = None
    only_fast_forward: bool = False
    hooks: List[str] = field(default_factory=list)

    def __post_init__(self):
        if (self.name is None) == (self.regex is None):
            raise ValueError("A bookmark needs exactly one of name or regex")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.name is not None:
            data["name"] = self.name
        else:
            data["regex"] = self.regex
        if self.only_fast_forward:
            data["only_fast_forward"] = True
        if self.hooks:
            data["hooks"] = [{"hook_name": hook} for hook in self.hooks]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookmarkConfig":
        return cls(
            name=data.get("name"),
            regex=data.get("regex"),
            only_fast_forward=data.get("only_fast_forward", False),
            hooks=[h["hook_name"] for h in data.get("hooks", [])],
        )


@dataclass
class PushrebaseParams:
    rewritedates: bool = False
    block_merges: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.block_merges:
            data["block_merges"] = True
        data["rewritedates"] = self.rewritedates
        return data


@dataclass
class HookManagerParams:
    """Written only when the ACL checker is disabled."""
    entrylimit: int = 1048576
    weightlimit: int = 104857600
    disable_acl_checker: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entrylimit": self.entrylimit,
            "weightlimit": self.weightlimit,
            "disable_acl_checker": self.disable_acl_checker,
        }


@dataclass
class RepoConfig:
    """Contents of one repo's server.toml."""
    path: Path
    repotype: str = DEFAULT_REPOTYPE
    repoid: int = 0
    enabled: bool = True
    hash_validation_percentage: Optional[int] = 100
    readonly: bool = False
    bookmarks: List[BookmarkConfig] = field(default_factory=list)
    hooks: List[HookConfig] = field(default_factory=list)
    pushrebase: Optional[PushrebaseParams] = field(default_factory=PushrebaseParams)
    hook_manager_params: Optional[HookManagerParams] = field(default_factory=HookManagerParams)
    preserve_raw_bundle2: bool = False
    cache_warmup_bookmark: Optional[str] = None
    lfs_threshold: Optional[int] = None

    def __post_init__(self):
        self.path = Path(self.path)

    def add_bookmark(self, name: Optional[str] = None, regex: Optional[str] = None,
                     only_fast_forward: bool = False) -> BookmarkConfig:
        bookmark = BookmarkConfig(name=name, regex=regex, only_fast_forward=only_fast_forward)
        self.bookmarks.append(bookmark)
        return bookmark

    def find_bookmark(self, name: str) -> Optional[BookmarkConfig]:
        for bookmark in self.bookmarks:
            if bookmark.name == name:
                return bookmark
        return None

    def register_hook(self, name: str, path: str, hook_type: str,
                      bookmark: Optional[str] = None,
                      extra: Optional[Dict[str, Any]] = None) -> HookConfig:
        """Define a hook and attach it to a bookmark.

        Without ``bookmark`` the hook goes on the most recently added
        bookmark.

        Raises:
            ValueError: If there is no bookmark to attach the hook to.
        """
        if bookmark is not None:
            target = self.find_bookmark(bookmark)
            if target is None:
                raise ValueError(f"Unknown bookmark: {bookmark}")
        elif self.bookmarks:
            target = self.bookmarks[-1]
        else:
            raise ValueError(f"Cannot register hook {name}: no bookmarks configured")

        hook = HookConfig(name=name, path=path, hook_type=hook_type, extra=dict(extra or {}))
        target.hooks.append(name)
        self.hooks.append(hook)
        return hook

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": str(self.path),
            "repotype": self.repotype,
            "repoid": self.repoid,
            "enabled": self.enabled,
        }
        if self.hash_validation_percentage is not None:
            data["hash_validation_percentage"] = self.hash_validation_percentage
        if self.readonly:
            data["readonly"] = True
        if self.bookmarks:
            data["bookmarks"] = [b.to_dict() for b in self.bookmarks]
        if self.hooks:
            data["hooks"] = [h.to_dict() for h in self.hooks]
        if self.pushrebase is not None:
            data["pushrebase"] = self.pushrebase.to_dict()
        if self.hook_manager_params is not None:
            data["hook_manager_params"] = self.hook_manager_params.to_dict()
        if self.preserve_raw_bundle2:
            data["bundle2_replay_params"] = {"preserve_raw_bundle2": True}
        if self.cache_warmup_bookmark is not None:
            data["cache_warmup"] = {"bookmark": self.cache_warmup_bookmark}
        if self.lfs_threshold is not None:
            data["lfs"] = {"threshold": self.lfs_threshold}
        return data

    def to_toml(self) -> str:
        return tomli_w.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepoConfig":
        pushrebase = None
        if "pushrebase" in data:
            pushrebase = PushrebaseParams(
                rewritedates=data["pushrebase"].get("rewritedates", False),
                block_merges=data["pushrebase"].get("block_merges", False),
            )
        hook_manager_params = None
        if "hook_manager_params" in data:
            hook_manager_params = HookManagerParams(**data["hook_manager_params"])
        return cls(
            path=Path(data["path"]),
            repotype=data.get("repotype", DEFAULT_REPOTYPE),
            repoid=data.get("repoid", 0),
            enabled=data.get("enabled", True),
            hash_validation_percentage=data.get("hash_validation_percentage"),
            readonly=data.get("readonly", False),
            bookmarks=[BookmarkConfig.from_dict(b) for b in data.get("bookmarks", [])],
            hooks=[HookConfig.from_dict(h) for h in data.get("hooks", [])],
            pushrebase=pushrebase,
            hook_manager_params=hook_manager_params,
            preserve_raw_bundle2=data.get("bundle2_replay_params", {}).get("preserve_raw_bundle2", False),
            cache_warmup_bookmark=data.get("cache_warmup", {}).get("bookmark"),
            lfs_threshold=data.get("lfs", {}).get("threshold"),
        )


def repo_config_path(config_dir: Path, repo_name: str) -> Path:
    return Path(config_dir) / "repos" / repo_name / "server.toml"


def write_repo_config(config_dir: Path, repo_name: str, repo: RepoConfig) -> Path:
    """Serialize ``repo`` to ``repos/<repo_name>/server.toml``."""
    path = repo_config_path(config_dir, repo_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(repo.to_toml())
    logger.debug(f"wrote {path}")
    return path


def load_repo_config(config_dir: Path, repo_name: str) -> RepoConfig:
    with open(repo_config_path(config_dir, repo_name), "rb") as f:
        return RepoConfig.from_dict(tomllib.load(f))


def setup_mononoke_config(scratch_dir: Path, repotype: str = DEFAULT_REPOTYPE,
                          **options) -> Path:
    """Create the config tree for the main repo and a disabled repo.

    Args:
        scratch_dir: Test scratch directory; repos live directly under it.
        repotype: Storage type for both repos.
        **options: Extra RepoConfig fields for the main repo, e.g.
            ``readonly=True`` or ``cache_warmup_bookmark="master_bookmark"``.

    Returns:
        Path to the mononoke-config directory.
    """
    scratch_dir = Path(scratch_dir)
    config_dir = scratch_dir / CONFIG_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)

    repo = RepoConfig(path=scratch_dir / "repo", repotype=repotype, repoid=0, **options)
    write_repo_config(config_dir, "repo", repo)

    disabled = RepoConfig(
        path=scratch_dir / "disabled_repo",
        repotype=repotype,
        repoid=2,
        enabled=False,
        hash_validation_percentage=None,
        pushrebase=None,
        hook_manager_params=None,
    )
    write_repo_config(config_dir, "disabled_repo", disabled)
    return config_dir


def register_hook(config_dir: Path, name: str, path: str, hook_type: str,
                  bookmark: Optional[str] = None,
                  extra: Optional[Dict[str, Any]] = None,
                  repo_name: str = "repo") -> RepoConfig:
    """Add a hook to an already written repo config."""
    repo = load_repo_config(config_dir, repo_name)
    repo.register_hook(name, path, hook_type, bookmark=bookmark, extra=extra)
    write_repo_config(config_dir, repo_name, repo)
    return repo


def write_hook_config(scratch_dir: Path, hook_file: Optional[Path], hook_name: str,
                      hook_type: str, extra: Optional[Dict[str, Any]] = None,
                      bookmark: str = "master_bookmark") -> Path:
    """Write a repo config with one hook on ``bookmark``.

    The hook source, if given, is copied to ``common/hooks/<name>.lua``
    inside the config directory.

    Returns:
        Path to the mononoke-config directory.
    """
    config_dir = setup_mononoke_config(scratch_dir)
    repo = load_repo_config(config_dir, "repo")
    repo.add_bookmark(name=bookmark)

    hook_path = ""
    if hook_file:
        hooks_dir = config_dir / "common" / "hooks"
        hooks_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy(hook_file, hooks_dir / f"{hook_name}.lua")
        hook_path = f"common/hooks/{hook_name}.lua"

    repo.register_hook(hook_name, hook_path, hook_type, bookmark=bookmark, extra=extra)
    write_repo_config(config_dir, "repo", repo)
    return config_dir
