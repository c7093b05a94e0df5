"""SQLite fixture databases used by sync and replay tests.

The schemas and seed rows are a contract with the tools under test: the
hg sync job reads ``latest-replayed-request`` from mutable_counters, and
pushrebase replay starts from the recorded row with id 1.
"""

import sqlite3
from contextlib import closing
from logging import getLogger
from pathlib import Path
from typing import Any, List, Tuple

logger = getLogger(__name__)

MUTABLE_COUNTERS_SCHEMA = """
CREATE TABLE mutable_counters (
  repo_id INT UNSIGNED NOT NULL,
  name VARCHAR(512) NOT NULL,
  value BIGINT NOT NULL,
  PRIMARY KEY (repo_id, name)
);
"""

PUSHREBASERECORDING_SCHEMA = """
CREATE TABLE pushrebaserecording (
   id bigint(20) NOT NULL,
   repo_id int(10) NOT NULL,
   ontorev binary(40) NOT NULL,
   onto varchar(512) NOT NULL,
   onto_rebased_rev binary(40),
   conflicts longtext,
   pushrebase_errmsg varchar(1024) DEFAULT NULL,
   upload_errmsg varchar(1024) DEFAULT NULL,
   bundlehandle varchar(1024) DEFAULT NULL,
   timestamps longtext NOT NULL,
   recorded_manifest_hashes longtext NOT NULL,
   real_manifest_hashes longtext NOT NULL,
   duration_ms int(10) DEFAULT NULL,
   replacements_revs varchar(1024) DEFAULT NULL,
   ordered_added_revs varchar(1024) DEFAULT NULL,
  PRIMARY KEY (id)
);
"""

LATEST_REPLAYED_REQUEST = "latest-replayed-request"

PUSHREBASE_SEED_ONTOREV = "add0c792bfce89610d277fd5b1e32f5287994d1d"

# Bonsai changeset id of the seeded master_bookmark move
BOOKMARK_SEED_CHANGESET = bytes.fromhex(
    "04C1EA537B01FFF207445E043E310807F9059572DD3087A0FCE458DEC005E4BD"
)


def _execute(db_path: Path, sql: str, params: Tuple = ()) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(str(db_path))) as conn:
        with conn:
            conn.execute(sql, params)


def mutable_counters_path(scratch_dir: Path) -> Path:
    return Path(scratch_dir) / "repo" / "mutable_counters"


def pushrebaserecording_path(scratch_dir: Path) -> Path:
    return Path(scratch_dir) / "pushrebaserecording"


def bookmarks_path(scratch_dir: Path) -> Path:
    return Path(scratch_dir) / "repo" / "books"


def create_mutable_counters_db(scratch_dir: Path) -> Path:
    """Create the mutable_counters table under ``<scratch>/repo``."""
    db_path = mutable_counters_path(scratch_dir)
    _execute(db_path, MUTABLE_COUNTERS_SCHEMA)
    logger.debug(f"created {db_path}")
    return db_path


def init_mutable_counters_db(scratch_dir: Path, value: int = 0) -> Path:
    """Seed the replay position the hg sync job starts from."""
    db_path = mutable_counters_path(scratch_dir)
    _execute(
        db_path,
        "insert into mutable_counters (repo_id, name, value) values (?, ?, ?)",
        (0, LATEST_REPLAYED_REQUEST, value),
    )
    return db_path


def create_pushrebaserecording_db(scratch_dir: Path) -> Path:
    db_path = pushrebaserecording_path(scratch_dir)
    _execute(db_path, PUSHREBASERECORDING_SCHEMA)
    logger.debug(f"created {db_path}")
    return db_path


def init_pushrebaserecording_db(scratch_dir: Path) -> Path:
    """Insert the single recorded pushrebase that replay tests start from."""
    db_path = pushrebaserecording_path(scratch_dir)
    _execute(
        db_path,
        "insert into pushrebaserecording "
        "(id, repo_id, bundlehandle, ontorev, onto, timestamps, "
        "recorded_manifest_hashes, real_manifest_hashes) "
        "values (?, ?, ?, ?, ?, ?, ?, ?)",
        (1, 0, "handle", PUSHREBASE_SEED_ONTOREV, "master_bookmark", "", "", ""),
    )
    return db_path


def init_bookmark_log_db(scratch_dir: Path) -> List[Tuple[Any, ...]]:
    """Seed bookmarks_update_log with a pushrebase move of master_bookmark.

    The table itself is created by the server on first start, so this only
    inserts.

    Returns:
        All rows of bookmarks_update_log after the insert.
    """
    db_path = bookmarks_path(scratch_dir)
    _execute(
        db_path,
        "insert into bookmarks_update_log "
        "(repo_id, name, from_changeset_id, to_changeset_id, reason, timestamp) "
        "values (?, ?, ?, ?, ?, ?)",
        (0, "master_bookmark", None, BOOKMARK_SEED_CHANGESET, "pushrebase", 0),
    )
    with closing(sqlite3.connect(str(db_path))) as conn:
        return conn.execute("select * from bookmarks_update_log").fetchall()
