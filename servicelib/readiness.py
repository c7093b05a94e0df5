"""Readiness polling for launched services.

``wait_until_ready`` evaluates a probe at a fixed interval until it passes
or the attempt budget (``ceil(timeout / poll_interval)``) plus one final
grace check is used up. On timeout the service log is written to the
diagnostic stream and ``ReadinessTimeout`` is raised.

Probes:
- HttpProbe: one HTTPS request per poll. By default success is the
  "empty reply" a TLS-terminating server gives when it accepts the
  handshake and closes without answering.
- LogPatternProbe: literal substring search over the whole log file.
- LogRegexProbe: regular expression search, keeping the match.
"""

import http.client
import math
import re
from logging import getLogger
from pathlib import Path
from typing import Optional, TextIO

import requests

from .errors import ReadinessTimeout
from .launcher import dump_log
from .protocol import Clock, ReadinessCheck, ReadinessProbe, SystemClock, TlsMaterial

logger = getLogger(__name__)


def _is_empty_reply(exc: BaseException) -> bool:
    """True if the server closed the connection without sending a response.

    requests buries the low-level ``RemoteDisconnected`` a couple of levels
    deep (ConnectionError -> ProtocolError -> RemoteDisconnected), so walk
    the args, reasons and causes.
    """
    seen = set()
    stack = [exc]
    while stack:
        err = stack.pop()
        if id(err) in seen:
            continue
        seen.add(id(err))
        if isinstance(err, http.client.RemoteDisconnected):
            return True
        stack.extend(a for a in err.args if isinstance(a, BaseException))
        for attr in ('reason', '__cause__', '__context__'):
            inner = getattr(err, attr, None)
            if isinstance(inner, BaseException):
                stack.append(inner)
    return False


class HttpProbe(ReadinessProbe):
    """Probe a service with a single HTTP(S) GET per check."""

    EMPTY_REPLY = 'empty_reply'
    RESPONSE = 'response'

    def __init__(self, url: str, tls: Optional[TlsMaterial] = None,
                 mode: str = EMPTY_REPLY, request_timeout: float = 1.0):
        if mode not in (self.EMPTY_REPLY, self.RESPONSE):
            raise ValueError(f"Unknown probe mode: {mode}")
        self.url = url
        self.tls = tls
        self.mode = mode
        self.request_timeout = request_timeout

    def describe(self) -> str:
        return f"HTTP probe {self.url}"

    def check(self) -> bool:
        kwargs = {'timeout': self.request_timeout}
        if self.tls is not None:
            kwargs['cert'] = self.tls.client_cert
            kwargs['verify'] = str(self.tls.ca)

        # Fresh session per check: a pooled keep-alive connection closed by
        # the server would look exactly like an empty reply.
        with requests.Session() as session:
            # Ignore *_proxy environment variables, the target is local
            session.trust_env = False
            try:
                response = session.get(self.url, **kwargs)
            except requests.exceptions.ConnectionError as e:
                if _is_empty_reply(e):
                    return self.mode == self.EMPTY_REPLY
                logger.debug(f"{self.url} not ready: {e}")
                return False
            except requests.exceptions.RequestException as e:
                logger.debug(f"{self.url} not ready: {e}")
                return False

        if self.mode == self.RESPONSE:
            return 200 <= response.status_code < 300
        logger.debug(f"{self.url} answered {response.status_code}, expected an empty reply")
        return False


class LogPatternProbe(ReadinessProbe):
    """Check whether a log file contains a literal string.

    The file is re-read from the start on every check, which is fine for
    small, append-only test logs.
    """

    def __init__(self, log_file: Path, pattern: str):
        self.log_file = Path(log_file)
        self.pattern = pattern

    def describe(self) -> str:
        return f"'{self.pattern}' in {self.log_file.name}"

    def check(self) -> bool:
        if not self.log_file.exists():
            return False
        return self.pattern in self.log_file.read_text(errors='replace')


class LogRegexProbe(ReadinessProbe):
    """Check a log file against a regular expression.

    The last match found is kept in ``self.match`` so callers can pull
    values (a port number, say) out of the log line.
    """

    def __init__(self, log_file: Path, regex: str):
        self.log_file = Path(log_file)
        self.regex = re.compile(regex, re.MULTILINE)
        self.match: Optional[re.Match] = None

    def describe(self) -> str:
        return f"/{self.regex.pattern}/ in {self.log_file.name}"

    def check(self) -> bool:
        if not self.log_file.exists():
            return False
        content = self.log_file.read_text(errors='replace')
        match = None
        for match in self.regex.finditer(content):
            pass
        self.match = match
        return match is not None


def attempt_budget(timeout: float, poll_interval: float) -> int:
    """Number of polls before the grace check: ceil(timeout / interval)."""
    # 1.1 / 0.1 is 11.000000000000002; round before ceil so it stays 11
    return math.ceil(round(timeout / poll_interval, 9))


def wait_until_ready(check: ReadinessCheck, clock: Optional[Clock] = None,
                     diagnostics: Optional[TextIO] = None) -> int:
    """Poll ``check.probe`` until it passes.

    Args:
        check: Probe and timing parameters.
        clock: Time source; defaults to the real clock.
        diagnostics: Stream the log is written to on timeout (stderr).

    Returns:
        The 1-based number of the attempt that succeeded.

    Raises:
        ReadinessTimeout: If the probe never passed.
    """
    clock = clock or SystemClock()
    attempts = attempt_budget(check.timeout, check.poll_interval)
    start = clock.monotonic()

    for attempt in range(1, attempts + 1):
        if check.probe.check():
            logger.debug(f"{check.description}: ready after {attempt} attempt(s), "
                         f"{clock.monotonic() - start:.2f}s")
            return attempt
        clock.sleep(check.poll_interval)

    # Grace check for success landing right at the boundary
    if check.probe.check():
        logger.debug(f"{check.description}: ready on grace check, "
                     f"{clock.monotonic() - start:.2f}s")
        return attempts + 1

    logger.error(f"{check.description}: not ready after {clock.monotonic() - start:.2f}s "
                 f"(timeout {check.timeout}s)")
    contents = None
    if check.log_file is not None:
        contents = dump_log(check.log_file, diagnostics)
    raise ReadinessTimeout(
        f"{check.description} did not become ready within {check.timeout}s "
        f"({attempts + 1} attempts)",
        contents,
    )
