"""Shared fixtures for the netadapter tests. All sockets are loopback only."""

from __future__ import annotations

import time
from typing import Callable

import pytest

from netadapter.adapter import NetworkAdapter


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def adapter():
    """A NetworkAdapter on 127.0.0.1, shut down after the test."""
    a = NetworkAdapter("127.0.0.1")
    yield a
    a.shutdown()
