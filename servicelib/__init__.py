"""Mononoke Test Harness Library.

This module provides:
- TestContext: Per-test process registry with guaranteed teardown
- launch / run_tool: Background service and foreground tool execution
- wait_until_ready: Bounded readiness polling with HTTP and log probes
- allocate_free_port: Ephemeral port allocation
- services: Mononoke server, API server and tool wrappers
"""

from .context import TestContext
from .errors import HarnessError, LaunchFailure, ReadinessTimeout, ToolFailure
from .launcher import launch, run_tool
from .ports import allocate_free_port, allocate_free_ports
from .protocol import ManagedProcess, ReadinessCheck, SystemClock, TlsMaterial
from .readiness import HttpProbe, LogPatternProbe, LogRegexProbe, wait_until_ready

__all__ = [
    'TestContext',
    'HarnessError',
    'LaunchFailure',
    'ReadinessTimeout',
    'ToolFailure',
    'launch',
    'run_tool',
    'allocate_free_port',
    'allocate_free_ports',
    'ManagedProcess',
    'ReadinessCheck',
    'SystemClock',
    'TlsMaterial',
    'HttpProbe',
    'LogPatternProbe',
    'LogRegexProbe',
    'wait_until_ready',
]
