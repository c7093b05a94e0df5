"""Configuration management for the Mononoke integration test harness.

This module handles configuration for the harness, including:
- Paths to the server and tool binaries under test
- The directory holding the test TLS certificates
- Startup and polling timeouts
- Where kept test artifacts go

Configuration is loaded from (in order of precedence):
1. Environment variables (the names the shell test suite already uses)
2. Project-local .mononoke-tests.toml
3. User config ~/.config/mononoke-tests/config.toml
4. Built-in defaults
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib


# Binary name -> environment variable that overrides it
BINARY_ENV_VARS: Dict[str, str] = {
    "mononoke_server": "MONONOKE_SERVER",
    "apiserver": "MONONOKE_APISERVER",
    "hg_sync": "MONONOKE_HG_SYNC",
    "blobimport": "MONONOKE_BLOBIMPORT",
    "bonsai_verify": "MONONOKE_BONSAI_VERIFY",
    "alias_verify": "MONONOKE_ALIAS_VERIFY",
    "pushrebase_replay": "PUSHREBASE_REPLAY",
    "hgcli": "MONONOKE_HGCLI",
    "admin": "MONONOKE_ADMIN",
    "dummyssh": "DUMMYSSH",
    "hg": "HG",
}


@dataclass
class Config:
    """Main configuration for the harness."""

    # Paths to binaries, keyed by the names in BINARY_ENV_VARS
    binaries: Dict[str, Path] = field(default_factory=dict)

    # Directory with testcert.crt, testcert.key and server.pem.seeds
    cert_dir: Optional[Path] = None

    # Where --keep-artifacts scratch directories are moved
    artifacts_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "mononoke-tests" / "artifacts")

    # Seconds to wait for the server to accept TLS connections
    start_timeout: float = 15.0

    # Seconds to wait for the cache warmup marker
    warmup_timeout: float = 15.0

    # Seconds to wait for the API server to log its port
    apiserver_timeout: float = 20.0

    poll_interval: float = 0.1

    def __post_init__(self):
        self.binaries = {
            name: Path(path).expanduser() for name, path in self.binaries.items()
        }
        if isinstance(self.cert_dir, str):
            self.cert_dir = Path(self.cert_dir)
        if self.cert_dir:
            self.cert_dir = self.cert_dir.expanduser()
        if isinstance(self.artifacts_dir, str):
            self.artifacts_dir = Path(self.artifacts_dir)
        self.artifacts_dir = self.artifacts_dir.expanduser()

        # "hg" is normally just on PATH
        self.binaries.setdefault("hg", Path("hg"))

    def binary(self, name: str) -> Path:
        """Return the configured path for a binary.

        Raises:
            KeyError: If the binary is not configured.
        """
        if name not in self.binaries:
            env_var = BINARY_ENV_VARS.get(name, name.upper())
            raise KeyError(
                f"Binary '{name}' is not configured. "
                f"Set {env_var} or add it to the [binaries] section of the config file."
            )
        return self.binaries[name]

    def has_binary(self, name: str) -> bool:
        """True if the binary is configured and exists on disk."""
        path = self.binaries.get(name)
        return path is not None and path.exists()


# Default configuration file locations
USER_CONFIG_PATH = Path.home() / ".config" / "mononoke-tests" / "config.toml"
PROJECT_CONFIG_NAME = ".mononoke-tests.toml"


def _find_project_config() -> Optional[Path]:
    """Find project-local config file by walking up from cwd."""
    current = Path.cwd()
    while current != current.parent:
        config_path = current / PROJECT_CONFIG_NAME
        if config_path.exists():
            return config_path
        current = current.parent
    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file and return its contents."""
    if not path.exists():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_data(config: Config, data: Dict[str, Any]) -> None:
    """Merge one parsed config file into ``config``."""
    if "binaries" in data:
        for name, path in data["binaries"].items():
            config.binaries[name] = Path(path).expanduser()

    if "paths" in data:
        paths = data["paths"]
        if "cert_dir" in paths:
            config.cert_dir = Path(paths["cert_dir"]).expanduser()
        if "artifacts_dir" in paths:
            config.artifacts_dir = Path(paths["artifacts_dir"]).expanduser()

    if "timeouts" in data:
        timeouts = data["timeouts"]
        for key in ("start_timeout", "warmup_timeout", "apiserver_timeout", "poll_interval"):
            if key in timeouts:
                setattr(config, key, float(timeouts[key]))


def apply_environment(config: Config, environ=None) -> None:
    """Apply environment variable overrides (highest precedence)."""
    environ = os.environ if environ is None else environ

    for name, env_var in BINARY_ENV_VARS.items():
        if value := environ.get(env_var):
            config.binaries[name] = Path(value).expanduser()

    # TESTDIR is where the shell suite keeps its certificates
    if env_certs := environ.get("MONONOKE_CERT_DIR") or environ.get("TESTDIR"):
        config.cert_dir = Path(env_certs).expanduser()
    if env_artifacts := environ.get("MONONOKE_ARTIFACTS_DIR"):
        config.artifacts_dir = Path(env_artifacts).expanduser()
    if env_timeout := environ.get("MONONOKE_START_TIMEOUT"):
        config.start_timeout = float(env_timeout)


def load_config() -> Config:
    """Load configuration from files and environment.

    Returns:
        Config object with merged settings.
    """
    config = Config()

    user_data = _load_toml(USER_CONFIG_PATH)
    project_path = _find_project_config()
    project_data = _load_toml(project_path) if project_path else {}

    # Project overrides user
    for data in [user_data, project_data]:
        if data:
            apply_data(config, data)

    apply_environment(config)
    return config


def get_config() -> Config:
    """Get the current configuration (cached).

    Returns:
        Config object.
    """
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config():
    """Reset the cached configuration."""
    global _cached_config
    _cached_config = None


# Cached config instance
_cached_config: Optional[Config] = None


def generate_sample_config() -> str:
    """Generate a sample configuration file.

    Returns:
        Sample TOML configuration as a string.
    """
    return '''# Mononoke Test Harness Configuration
# Place this file at ~/.config/mononoke-tests/config.toml (user)
# or .mononoke-tests.toml in your project directory (project)

[binaries]
# Each entry can also be set through its environment variable
# (MONONOKE_SERVER, MONONOKE_APISERVER, MONONOKE_HG_SYNC, ...)
# mononoke_server = "/path/to/mononoke"
# apiserver = "/path/to/apiserver"
# hg_sync = "/path/to/mononoke_hg_sync_job"
# blobimport = "/path/to/blobimport"
# bonsai_verify = "/path/to/bonsai_verify"
# alias_verify = "/path/to/aliasverify"
# pushrebase_replay = "/path/to/pushrebase_replay"
# hgcli = "/path/to/hgcli"
# admin = "/path/to/admin"
# dummyssh = "/path/to/dummyssh"
# hg = "hg"

[paths]
# Directory with testcert.crt, testcert.key and server.pem.seeds
# cert_dir = "/path/to/tests/integration"

# Where kept test artifacts go (--keep-artifacts)
artifacts_dir = "~/.cache/mononoke-tests/artifacts"

[timeouts]
# Seconds; MONONOKE_START_TIMEOUT overrides start_timeout
start_timeout = 15
warmup_timeout = 15
apiserver_timeout = 20
poll_interval = 0.1
'''
