"""Shared fixtures for loopbridge tests."""

from __future__ import annotations

import socket

import pytest

from loopbridge.config import Settings
from loopbridge.models.messages import (
    MessageType,
    SessionResult,
    create_message,
)


def _free_port_block(size: int = 3) -> int:
    """Return the first port of *size* consecutive ports that are currently free."""
    for _ in range(50):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("127.0.0.1", 0))
            start = probe.getsockname()[1]
        if start + size > 65535:
            continue
        socks = []
        try:
            for port in range(start, start + size):
                s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                socks.append(s)
                s.bind(("127.0.0.1", port))
        except OSError:
            continue
        finally:
            for s in socks:
                s.close()
        return start
    raise RuntimeError("No free port block found")


@pytest.fixture
def free_port():
    """First port of a block of three currently-free loopback ports."""
    return _free_port_block(3)


@pytest.fixture
def settings(free_port):
    """Settings pointing at a free port block with short timings."""
    return Settings(
        bridge_port=free_port,
        port_range_size=3,
        request_timeout=5.0,
        file_poll_interval=0.05,
        probe_timeout=0.5,
        poll_timeout=1.0,
    )


@pytest.fixture
def start_message():
    return create_message(
        MessageType.START_SESSION,
        {"planId": "login", "plan": {"steps": ["open", "submit"]}, "criteria": ["lands on /home"]},
    )


@pytest.fixture
def result_message():
    return create_message(
        MessageType.SESSION_RESULT,
        SessionResult(plan_id="login", passed=True, summary="ok", duration=120),
    )
