"""Ephemeral TCP port allocation for test services.

The port is free at the moment it is returned, but nothing holds it until
the service binds. Callers must tolerate the occasional bind failure.
"""

import socket
from contextlib import ExitStack
from typing import List


def allocate_free_port() -> int:
    """Return a TCP port the OS considers unused right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(('', 0))
        return sock.getsockname()[1]
    finally:
        sock.close()


def allocate_free_ports(count: int) -> List[int]:
    """Return ``count`` distinct free ports.

    All probe sockets stay bound until every port has been assigned, so the
    OS cannot hand out the same port twice within one call.
    """
    if count < 0:
        raise ValueError(f"count must not be negative, got {count}")
    ports = []
    with ExitStack() as stack:
        for _ in range(count):
            sock = stack.enter_context(socket.socket(socket.AF_INET, socket.SOCK_STREAM))
            sock.bind(('', 0))
            ports.append(sock.getsockname()[1])
    return ports
