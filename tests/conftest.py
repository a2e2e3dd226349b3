"""
Shared pytest fixtures for rexec unit tests.

Nothing here touches the network or the real terminal: dialing, the paramiko
transport, and the command channel are all mocked.
"""

from unittest.mock import MagicMock, patch

import paramiko
import pytest

import rexec
from rexec.connection import Connection
from rexec.script import Script
from rexec.transport import CommandChannel


@pytest.fixture
def script():
    """A valid bash script with one placeholder."""
    return Script("greet", "bash", "echo ${msg}\n")


@pytest.fixture
def insecure_conn():
    """Connection that skips known_hosts."""
    return Connection(type="ssh", host="build01", port=22, user="ci", password="pw", insecure=True)


@pytest.fixture
def secure_conn():
    """Connection that verifies the host against known_hosts."""
    return Connection(type="ssh", host="build01", port=22, user="ci", password="pw")


@pytest.fixture
def mock_transport():
    """Mock paramiko.Transport whose open_session() returns a mock channel."""
    t = MagicMock(spec=paramiko.Transport)
    t.is_active.return_value = True
    t.open_session.return_value = MagicMock(spec=paramiko.Channel)
    return t


@pytest.fixture
def mock_dial(mock_transport):
    """Patch rexec.runner.dial to return mock_transport.

    Usage:
        def test_something(mock_dial, script, insecure_conn):
            runner = Runner(insecure_conn, script, {"msg": "hi"})
            mock_dial.assert_called_once()
    """
    with patch("rexec.runner.dial", return_value=mock_transport) as m:
        yield m


@pytest.fixture
def mock_channel(mock_dial):
    """Patch CommandChannel in the runner with a mock; yields the instance."""
    chan = MagicMock(spec=CommandChannel)
    chan.started = False
    with patch("rexec.runner.CommandChannel", return_value=chan):
        yield chan


@pytest.fixture(autouse=True)
def _reset_config():
    """Keep configure() overrides from leaking between tests."""
    yield
    rexec.reset_config()
