"""Test harness configuration and fixtures for Mononoke integration tests.

This package provides utilities for:
- Configuration management (binary paths, certificates, timeouts)
- Writing repo configuration (server.toml) for the server under test
- Creating and seeding SQLite fixture databases
- Writing hgrc files and building hg command lines
- Bootstrapping hook tests (config, hg repos, blobimport, running server)
- Cleaning up kept test artifacts
"""

from .config import get_config, load_config, reset_config, Config
from .repo_config import (
    RepoConfig,
    BookmarkConfig,
    HookConfig,
    setup_mononoke_config,
    register_hook,
    write_hook_config,
)
from .hook_setup import HookTestRepos, hook_test_setup
from .fixture_db import (
    create_mutable_counters_db,
    init_mutable_counters_db,
    create_pushrebaserecording_db,
    init_pushrebaserecording_db,
    init_bookmark_log_db,
)
from .clean import clean_directory, list_artifacts

__all__ = [
    # Config
    'get_config',
    'load_config',
    'reset_config',
    'Config',
    # Repo config
    'RepoConfig',
    'BookmarkConfig',
    'HookConfig',
    'setup_mononoke_config',
    'register_hook',
    'write_hook_config',
    # Hook test bootstrap
    'HookTestRepos',
    'hook_test_setup',
    # Fixture databases
    'create_mutable_counters_db',
    'init_mutable_counters_db',
    'create_pushrebaserecording_db',
    'init_pushrebaserecording_db',
    'init_bookmark_log_db',
    # Cleanup
    'clean_directory',
    'list_artifacts',
]
