#!/usr/bin/env python3
"""Main CLI entry point for the Mononoke test harness.

This provides the `mnt` command with subcommands usable from shell-based
tests as well as for running the Python suite.

Usage:
    mnt free-port
    mnt wait-log $TESTTMP/mononoke.out "finished initial warmup"
    mnt wait-http $MONONOKE_SOCKET --cert-dir $TESTDIR
    mnt setup-config $TESTTMP --repotype blob:files
    mnt init-db $TESTTMP mutable-counters
    mnt test -k readiness
"""

import argparse
import logging
import sys
from pathlib import Path


def set_logging_config(log_level_str=None):
    """Configure logging to stderr."""
    levels = {
        'critical': logging.CRITICAL,
        'error': logging.ERROR,
        'warning': logging.WARNING,
        'info': logging.INFO,
        'debug': logging.DEBUG,
    }
    log_level = levels.get((log_level_str or 'warning').lower(), logging.WARNING)
    logging.basicConfig(
        level=log_level,
        format='[mnt %(asctime)s %(levelname)s] %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def add_free_port_parser(subparsers):
    """Add the 'free-port' subcommand parser."""
    parser = subparsers.add_parser(
        'free-port',
        help='Print unused local TCP port(s)',
        description='Print one or more ports that are free right now',
    )
    parser.add_argument(
        "-n", "--count",
        type=int,
        default=1,
        help="Number of distinct ports to print (default: 1)"
    )
    return parser


def _add_timing_args(parser, default_timeout):
    parser.add_argument(
        "--timeout", "-t",
        type=float,
        default=default_timeout,
        help=f"Seconds to wait (default: {default_timeout})"
    )
    parser.add_argument(
        "--interval", "-i",
        type=float,
        default=None,
        help="Seconds between polls (default: from config, 0.1)"
    )


def add_wait_log_parser(subparsers):
    """Add the 'wait-log' subcommand parser."""
    parser = subparsers.add_parser(
        'wait-log',
        help='Wait for a string to appear in a log file',
        description='Poll a log file until it contains a literal string',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mnt wait-log $TESTTMP/mononoke.out "finished initial warmup"
  mnt wait-log $TESTTMP/apiserver.out "Listening to" --timeout 20
"""
    )
    parser.add_argument("log_file", type=Path, help="Log file to scan")
    parser.add_argument("pattern", help="Literal string to wait for")
    _add_timing_args(parser, 15.0)
    return parser


def add_wait_http_parser(subparsers):
    """Add the 'wait-http' subcommand parser."""
    parser = subparsers.add_parser(
        'wait-http',
        help='Wait for a server to accept TLS connections',
        description='Poll https://localhost:PORT/ until the server gives an empty reply',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mnt wait-http 12345 --cert-dir $TESTDIR --log $TESTTMP/mononoke.out
  mnt wait-http 8080 --no-ssl --health-path /health_check
"""
    )
    parser.add_argument("port", type=int, help="Port the server listens on")
    parser.add_argument(
        "--host",
        default="localhost",
        help="Host to probe (default: localhost)"
    )
    parser.add_argument(
        "--cert-dir",
        type=Path,
        help="Directory with testcert.crt and testcert.key (default: from config)"
    )
    parser.add_argument(
        "--no-ssl",
        action="store_true",
        help="Probe over plain HTTP"
    )
    parser.add_argument(
        "--health-path",
        help="Probe this path and require a 2xx response instead of an empty reply"
    )
    parser.add_argument(
        "--log",
        type=Path,
        help="Service log to print if the server does not come up"
    )
    _add_timing_args(parser, None)
    return parser


def add_setup_config_parser(subparsers):
    """Add the 'setup-config' subcommand parser."""
    parser = subparsers.add_parser(
        'setup-config',
        help='Write the Mononoke repo config tree',
        description='Create mononoke-config/ with an enabled and a disabled repo',
    )
    parser.add_argument("scratch_dir", type=Path, help="Test scratch directory ($TESTTMP)")
    parser.add_argument(
        "--repotype",
        default="blob:rocks",
        help="Repo storage type (default: blob:rocks)"
    )
    parser.add_argument(
        "--readonly",
        action="store_true",
        help="Mark the repo read-only"
    )
    parser.add_argument(
        "--only-fast-forward",
        metavar="BOOKMARK",
        help="Add a bookmark that only allows fast-forward moves"
    )
    parser.add_argument(
        "--only-fast-forward-regex",
        metavar="REGEX",
        help="Add a fast-forward-only bookmark matched by regex"
    )
    parser.add_argument(
        "--block-merges",
        action="store_true",
        help="Reject merges during pushrebase"
    )
    parser.add_argument(
        "--rewrite-dates",
        action="store_true",
        help="Rewrite commit dates during pushrebase"
    )
    parser.add_argument(
        "--enable-acl-checker",
        action="store_true",
        help="Keep the hook ACL checker enabled"
    )
    parser.add_argument(
        "--preserve-bundle2",
        action="store_true",
        help="Preserve raw bundle2 for replay"
    )
    parser.add_argument(
        "--cache-warmup-bookmark",
        metavar="BOOKMARK",
        help="Warm caches from this bookmark at startup"
    )
    parser.add_argument(
        "--lfs-threshold",
        type=int,
        help="LFS threshold in bytes"
    )
    return parser


def add_init_db_parser(subparsers):
    """Add the 'init-db' subcommand parser."""
    parser = subparsers.add_parser(
        'init-db',
        help='Create and seed a fixture database',
        description='Create and seed a SQLite fixture database',
    )
    parser.add_argument("scratch_dir", type=Path, help="Test scratch directory ($TESTTMP)")
    parser.add_argument(
        "database",
        choices=["mutable-counters", "pushrebaserecording", "bookmark-log"],
        help="Which fixture database to set up"
    )
    parser.add_argument(
        "--create-only",
        action="store_true",
        help="Create the table without seeding it"
    )
    return parser


def add_clean_parser(subparsers):
    """Add the 'clean' subcommand parser."""
    parser = subparsers.add_parser(
        'clean',
        help='Clean kept test artifacts',
        description='Clean scratch directories kept by --keep-artifacts',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mnt clean --list
  mnt clean --dry-run
  mnt clean --force
  mnt clean --older-than 7 --force
"""
    )
    parser.add_argument(
        "--list", "-l",
        action="store_true",
        help="List artifacts without deleting"
    )
    parser.add_argument(
        "--dry-run", "-n",
        action="store_true",
        help="Show what would be deleted without actually deleting"
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Skip confirmation prompt"
    )
    parser.add_argument(
        "--older-than",
        metavar="DAYS",
        type=float,
        help="Only clean artifacts last modified more than DAYS days ago"
    )
    return parser


def add_test_parser(subparsers):
    """Add the 'test' subcommand parser."""
    parser = subparsers.add_parser(
        'test',
        help='Run the test suite',
        description='Run the Mononoke harness test suite',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mnt test
  mnt test --mononoke-server ./buck-out/mononoke --cert-dir ./tests/integration
  mnt test -m "not integration"
  mnt test -k readiness
"""
    )
    parser.add_argument(
        "--mononoke-server",
        type=Path,
        help="Path to the Mononoke server binary"
    )
    parser.add_argument(
        "--cert-dir",
        type=Path,
        help="Directory with the test TLS certificates"
    )
    parser.add_argument(
        "--keep-artifacts",
        action="store_true",
        help="Keep scratch directories (logs, configs) after the run"
    )
    parser.add_argument(
        "-k",
        dest="keyword",
        help="Only run tests matching the given keyword expression"
    )
    parser.add_argument(
        "-m", "--mark",
        dest="marker",
        help="Only run tests matching the given marker"
    )
    parser.add_argument(
        "pytest_args",
        nargs="*",
        help="Additional arguments to pass to pytest"
    )
    return parser


def cmd_free_port(args):
    """Execute the free-port command."""
    from servicelib.ports import allocate_free_port, allocate_free_ports

    if args.count < 1:
        print("Error: --count must be at least 1", file=sys.stderr)
        return 1
    ports = [allocate_free_port()] if args.count == 1 else allocate_free_ports(args.count)
    for port in ports:
        print(port)
    return 0


def _interval(args):
    from harness.config import get_config
    return args.interval if args.interval is not None else get_config().poll_interval


def cmd_wait_log(args):
    """Execute the wait-log command."""
    from servicelib.errors import ReadinessTimeout
    from servicelib.protocol import ReadinessCheck
    from servicelib.readiness import LogPatternProbe, wait_until_ready

    check = ReadinessCheck(
        probe=LogPatternProbe(args.log_file, args.pattern),
        timeout=args.timeout,
        poll_interval=_interval(args),
        log_file=args.log_file,
    )
    try:
        wait_until_ready(check)
    except ReadinessTimeout as e:
        print(f"Error: {str(e).splitlines()[0]}", file=sys.stderr)
        return 1
    return 0


def cmd_wait_http(args):
    """Execute the wait-http command."""
    from harness.config import get_config
    from servicelib.errors import ReadinessTimeout
    from servicelib.protocol import ReadinessCheck, TlsMaterial
    from servicelib.readiness import HttpProbe, wait_until_ready

    config = get_config()
    tls = None
    if not args.no_ssl:
        cert_dir = args.cert_dir or config.cert_dir
        if cert_dir is None:
            print("Error: --cert-dir is required (or set TESTDIR)", file=sys.stderr)
            return 1
        tls = TlsMaterial.from_directory(cert_dir)

    scheme = "http" if args.no_ssl else "https"
    path = args.health_path or "/"
    if not path.startswith("/"):
        path = "/" + path
    mode = HttpProbe.RESPONSE if args.health_path else HttpProbe.EMPTY_REPLY

    check = ReadinessCheck(
        probe=HttpProbe(f"{scheme}://{args.host}:{args.port}{path}", tls=tls, mode=mode),
        timeout=args.timeout if args.timeout is not None else config.start_timeout,
        poll_interval=_interval(args),
        log_file=args.log,
    )
    try:
        wait_until_ready(check)
    except ReadinessTimeout as e:
        print(f"Error: {str(e).splitlines()[0]}", file=sys.stderr)
        return 1
    return 0


def cmd_setup_config(args):
    """Execute the setup-config command."""
    from harness.repo_config import BookmarkConfig, PushrebaseParams, setup_mononoke_config

    bookmarks = []
    if args.only_fast_forward:
        bookmarks.append(BookmarkConfig(name=args.only_fast_forward, only_fast_forward=True))
    if args.only_fast_forward_regex:
        bookmarks.append(BookmarkConfig(regex=args.only_fast_forward_regex, only_fast_forward=True))

    options = {
        "readonly": args.readonly,
        "bookmarks": bookmarks,
        "pushrebase": PushrebaseParams(
            rewritedates=args.rewrite_dates,
            block_merges=args.block_merges,
        ),
        "preserve_raw_bundle2": args.preserve_bundle2,
        "cache_warmup_bookmark": args.cache_warmup_bookmark,
        "lfs_threshold": args.lfs_threshold,
    }
    if args.enable_acl_checker:
        options["hook_manager_params"] = None

    config_dir = setup_mononoke_config(args.scratch_dir, repotype=args.repotype, **options)
    print(config_dir)
    return 0


def cmd_init_db(args):
    """Execute the init-db command."""
    import sqlite3
    from harness import fixture_db

    steps = {
        "mutable-counters": (fixture_db.create_mutable_counters_db,
                             fixture_db.init_mutable_counters_db),
        "pushrebaserecording": (fixture_db.create_pushrebaserecording_db,
                                fixture_db.init_pushrebaserecording_db),
        "bookmark-log": (None, fixture_db.init_bookmark_log_db),
    }
    create, seed = steps[args.database]

    try:
        if create is not None:
            create(args.scratch_dir)
        if not args.create_only:
            result = seed(args.scratch_dir)
            if isinstance(result, list):
                for row in result:
                    print("|".join("" if v is None else str(v) for v in row))
    except sqlite3.Error as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_clean(args):
    """Execute the clean command."""
    from harness.clean import (
        clean_directory,
        format_size,
        get_artifact_totals,
        list_artifacts,
    )
    from harness.config import get_config

    config = get_config()

    if args.list:
        list_artifacts(config)
        return 0

    older_than = args.older_than * 86400 if args.older_than is not None else None
    items, size = get_artifact_totals(config.artifacts_dir, older_than)
    if items == 0:
        print("Nothing to clean.")
        return 0

    print(f"Will delete: {items} items, {format_size(size)} in {config.artifacts_dir}")

    if args.dry_run:
        print("\n(Dry run - nothing deleted)")
        return 0

    if not args.force:
        try:
            response = input("\nProceed? [y/N] ")
            if response.lower() not in ['y', 'yes']:
                print("Cancelled.")
                return 0
        except (EOFError, KeyboardInterrupt):
            print("\nCancelled.")
            return 0

    items, bytes_freed = clean_directory(config.artifacts_dir, older_than=older_than)
    print(f"Cleaned artifacts: {items} items, {format_size(bytes_freed)}")
    return 0


def cmd_sample_config(args):
    """Execute the sample-config command."""
    from harness.config import generate_sample_config

    print(generate_sample_config(), end="")
    return 0


def cmd_test(args):
    """Execute the test command."""
    import subprocess

    pytest_cmd = [sys.executable, "-m", "pytest"]

    if args.mononoke_server:
        if not args.mononoke_server.exists():
            print(f"Error: Mononoke binary not found: {args.mononoke_server}", file=sys.stderr)
            return 1
        pytest_cmd.append(f"--mononoke-server={args.mononoke_server}")
    if args.cert_dir:
        pytest_cmd.append(f"--cert-dir={args.cert_dir}")
    if args.keep_artifacts:
        pytest_cmd.append("--keep-artifacts")
    if args.keyword:
        pytest_cmd.extend(["-k", args.keyword])
    if args.marker:
        pytest_cmd.extend(["-m", args.marker])
    if args.pytest_args:
        pytest_cmd.extend(args.pytest_args)

    print(f"\nRunning: {' '.join(str(x) for x in pytest_cmd)}\n")
    result = subprocess.run(pytest_cmd)
    return result.returncode


def build_parser():
    parser = argparse.ArgumentParser(
        prog='mnt',
        description='Mononoke Test Harness - launch, probe and configure test services',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  free-port      Print unused local TCP port(s)
  wait-log       Wait for a string to appear in a log file
  wait-http      Wait for a server to accept TLS connections
  setup-config   Write the Mononoke repo config tree
  init-db        Create and seed a fixture database
  clean          Clean kept test artifacts
  sample-config  Print a sample configuration file
  test           Run the test suite

For help on a specific command:
  mnt <command> --help

Environment Variables:
  MONONOKE_SERVER          Mononoke server binary
  MONONOKE_START_TIMEOUT   Seconds to wait for the server to start
  TESTDIR                  Directory with the test certificates
"""
    )

    parser.add_argument(
        '--version', '-V',
        action='version',
        version='%(prog)s 0.1.0'
    )
    parser.add_argument(
        '--log-level',
        default='warning',
        choices=['critical', 'error', 'warning', 'info', 'debug'],
        help='Harness log level (default: warning)'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='<command>')

    add_free_port_parser(subparsers)
    add_wait_log_parser(subparsers)
    add_wait_http_parser(subparsers)
    add_setup_config_parser(subparsers)
    add_init_db_parser(subparsers)
    add_clean_parser(subparsers)
    subparsers.add_parser('sample-config', help='Print a sample configuration file')
    add_test_parser(subparsers)
    return parser


def main(argv=None):
    """Main entry point for the mnt command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    set_logging_config(args.log_level)

    handlers = {
        'free-port': cmd_free_port,
        'wait-log': cmd_wait_log,
        'wait-http': cmd_wait_http,
        'setup-config': cmd_setup_config,
        'init-db': cmd_init_db,
        'clean': cmd_clean,
        'sample-config': cmd_sample_config,
        'test': cmd_test,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
