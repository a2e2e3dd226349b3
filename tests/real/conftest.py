"""
Configuration for live SSH tests.

These tests need a reachable SSH server that accepts password logins:
- REXEC_TEST_SSH_HOST      host name or address
- REXEC_TEST_SSH_PORT      port (default 22)
- REXEC_TEST_SSH_USER      login user
- REXEC_TEST_SSH_PASSWORD  login password
- REXEC_TEST_SSH_INSECURE  set to 1 to skip known_hosts verification

Run these tests explicitly:
    pytest tests/real/ -v -s -o "addopts="
"""

import os

import pytest

from rexec import Connection


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "real: marks tests that require a live SSH server",
    )


@pytest.fixture(scope="session")
def live_conn():
    """Connection built from the REXEC_TEST_SSH_* environment."""
    return Connection(
        type="ssh",
        host=os.environ.get("REXEC_TEST_SSH_HOST", ""),
        port=int(os.environ.get("REXEC_TEST_SSH_PORT", "22")),
        user=os.environ.get("REXEC_TEST_SSH_USER", ""),
        password=os.environ.get("REXEC_TEST_SSH_PASSWORD", ""),
        insecure=os.environ.get("REXEC_TEST_SSH_INSECURE", "").lower() in ("1", "t", "true"),
    )
