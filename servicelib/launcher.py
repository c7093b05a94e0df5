"""Starting service processes in the background or in the foreground."""

import subprocess
import sys
from logging import getLogger
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO

from .context import TestContext
from .errors import LaunchFailure, ToolFailure
from .protocol import ManagedProcess

logger = getLogger(__name__)


def _read_log(log_file: Optional[Path]) -> str:
    if log_file and log_file.exists():
        return log_file.read_text(errors="replace")
    return ""


def dump_log(log_file: Optional[Path], diagnostics: Optional[TextIO] = None) -> str:
    """Write a log file to the diagnostic stream and return its contents."""
    output = diagnostics if diagnostics is not None else sys.stderr
    contents = _read_log(log_file)
    if log_file is not None:
        print(f"--- {log_file} ---", file=output)
    print(contents, file=output, end="" if contents.endswith("\n") else "\n", flush=True)
    return contents


def launch(context: TestContext, name: str, executable, args: Sequence[str],
           log_file: Path, port: Optional[int] = None,
           env: Optional[Dict[str, str]] = None,
           cwd: Optional[Path] = None,
           diagnostics: Optional[TextIO] = None) -> ManagedProcess:
    """Start a service in the background and register it for teardown.

    stdout and stderr are both appended to ``log_file``. The call returns
    as soon as the process is spawned; waiting for readiness is up to the
    caller.

    Raises:
        LaunchFailure: If the executable cannot be started. Whatever the
            log already holds is dumped to ``diagnostics`` first.
    """
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    cmd = [str(executable)] + [str(a) for a in args]

    logger.info(f"starting {name}: {' '.join(cmd)}")
    with open(log_file, "ab") as log:
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                cwd=str(cwd or context.scratch_dir),
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"failed to start {name}: {e}")
            raise LaunchFailure(
                f"Failed to start {name} ({executable}): {e}",
                dump_log(log_file, diagnostics),
            ) from e

    proc = ManagedProcess(
        name=name,
        pid=process.pid,
        log_file=log_file,
        port=port,
        process=process,
    )
    context.register(proc)
    return proc


def run_tool(context: TestContext, name: str, executable, args: Sequence[str],
             log_file: Optional[Path] = None,
             env: Optional[Dict[str, str]] = None,
             cwd: Optional[Path] = None,
             check: bool = True,
             diagnostics: Optional[TextIO] = None,
             input: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run a tool to completion.

    With ``log_file`` the combined output is appended there (and dumped on
    failure); without it the output is captured on the returned object.
    ``input`` is written to the tool's stdin, which is otherwise empty.

    Raises:
        LaunchFailure: If the executable cannot be started.
        ToolFailure: If ``check`` is set and the tool exits non-zero.
    """
    cmd: List[str] = [str(executable)] + [str(a) for a in args]
    logger.info(f"running {name}: {' '.join(cmd)}")

    try:
        if log_file is not None:
            log_file = Path(log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            feed = {"stdin": subprocess.DEVNULL} if input is None else {"input": input.encode()}
            with open(log_file, "ab") as log:
                result = subprocess.run(
                    cmd,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    cwd=str(cwd or context.scratch_dir),
                    env=env,
                    **feed,
                )
        else:
            feed = {"stdin": subprocess.DEVNULL} if input is None else {"input": input}
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=str(cwd or context.scratch_dir),
                env=env,
                **feed,
            )
    except OSError as e:
        raise LaunchFailure(f"Failed to start {name} ({executable}): {e}") from e

    if check and result.returncode != 0:
        if log_file is not None:
            contents = dump_log(log_file, diagnostics)
        else:
            contents = (result.stdout or "") + (result.stderr or "")
        raise ToolFailure(
            f"{name} exited with status {result.returncode}",
            result.returncode,
            contents,
        )
    return result
