"""Cleanup of kept test artifacts.

Tests run with --keep-artifacts leave their scratch directories (service
logs, mononoke-config, fixture databases) under the artifacts directory,
one directory per test. This module lists and removes them.
"""

import shutil
import time
from pathlib import Path
from typing import List, Optional, Tuple

from .config import get_config


def scratch_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(f.stat().st_size for f in path.rglob('*') if f.is_file())


def get_artifact_info(artifacts_dir: Path,
                      older_than: Optional[float] = None) -> List[Tuple[Path, int]]:
    """Kept scratch directories and their sizes, sorted by name.

    Args:
        artifacts_dir: Where --keep-artifacts moved the scratch directories.
        older_than: Only include entries last modified more than this many
            seconds ago.
    """
    if not artifacts_dir.exists():
        return []

    cutoff = time.time() - older_than if older_than is not None else None
    entries = []
    for entry in artifacts_dir.iterdir():
        if cutoff is not None and entry.stat().st_mtime > cutoff:
            continue
        entries.append((entry, scratch_size(entry)))
    entries.sort(key=lambda e: e[0].name)
    return entries


def service_logs(scratch: Path) -> List[str]:
    """Names of the service logs (``*.out``) in a kept scratch directory."""
    if not scratch.is_dir():
        return []
    return sorted(p.name for p in scratch.glob('*.out'))


def format_size(size_bytes: int) -> str:
    """Format a size in bytes to human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def get_artifact_totals(artifacts_dir: Path,
                        older_than: Optional[float] = None) -> Tuple[int, int]:
    entries = get_artifact_info(artifacts_dir, older_than)
    return len(entries), sum(size for _, size in entries)


def clean_directory(artifacts_dir: Path, dry_run: bool = False,
                    older_than: Optional[float] = None) -> Tuple[int, int]:
    """Remove kept scratch directories.

    Returns:
        Tuple of (entries_removed, bytes_freed).
    """
    entries = get_artifact_info(artifacts_dir, older_than)
    freed = sum(size for _, size in entries)
    if dry_run:
        return len(entries), freed

    for entry, _ in entries:
        if entry.is_dir():
            shutil.rmtree(entry, ignore_errors=True)
        else:
            entry.unlink(missing_ok=True)
    return len(entries), freed


def list_artifacts(config=None):
    """Print each kept scratch directory with its service logs and size."""
    config = config or get_config()

    print(f"Kept artifacts: {config.artifacts_dir}")
    if not config.artifacts_dir.exists():
        print("  (not created)")
        return

    entries = get_artifact_info(config.artifacts_dir)
    if not entries:
        print("  (empty)")
        return

    for scratch, size in entries:
        logs = service_logs(scratch)
        print(f"  {scratch.name:40} {format_size(size):>10}")
        if logs:
            print(f"      logs: {', '.join(logs)}")
    total = sum(size for _, size in entries)
    print(f"  {'─' * 52}")
    print(f"  {'Total':40} {format_size(total):>10}")
