"""
rexec - run scripts on remote hosts over SSH.

Quick start:
    import rexec

    script = rexec.Script("uptime", "bash", "uptime\\n")
    with rexec.ssh({"Type": "ssh", "Host": "build01", "Port": "22", "User": "ci", "Password": "pw"}, script) as runner:
        runner.run()
    print(runner.exit_code)

Environment variables (read at import, overridden by configure()):
    REXEC_KNOWN_HOSTS      known_hosts path (default ~/.ssh/known_hosts)
    REXEC_CONNECT_TIMEOUT  TCP connect timeout in seconds (default 10.0)
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from rexec.connection import Connection, ConnectionSource, MappingConnection, to_connection
from rexec.errors import (
    NO_EXIT_CODE,
    RunnerError,
    ScriptError,
    RunnerConnectionError,
    StreamError,
    RemoteCommandError,
    ExecutionError,
)
from rexec.runner import Runner, compose_command
from rexec.script import Script
from rexec.transport import HostKeyError, ExitError, ExitMissingError

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

_DEFAULT_CONNECT_TIMEOUT = 10.0


# ─────────────────────────────────────────────────────────────────────────────
# Environment Variables (read at import)
# ─────────────────────────────────────────────────────────────────────────────


def _get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get environment variable as float."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {val!r}")


_env_known_hosts = os.environ.get("REXEC_KNOWN_HOSTS")
_env_connect_timeout = _get_env_float("REXEC_CONNECT_TIMEOUT")

# User-configured settings (set via configure())
_config_known_hosts: Optional[str] = None
_config_connect_timeout: Optional[float] = None


def configure(
    known_hosts: Union[str, Path, None] = None,
    connect_timeout: Optional[float] = None,
) -> None:
    """Configure defaults for runners created with ssh().

    Args:
        known_hosts: known_hosts path (default: from REXEC_KNOWN_HOSTS or ~/.ssh/known_hosts)
        connect_timeout: Connect timeout in seconds (default: from REXEC_CONNECT_TIMEOUT or 10.0)

    Raises:
        ValueError: If connect_timeout is not positive
    """
    global _config_known_hosts, _config_connect_timeout

    if connect_timeout is not None and connect_timeout <= 0:
        raise ValueError(f"connect_timeout must be positive, got {connect_timeout}")
    if known_hosts is not None:
        _config_known_hosts = str(known_hosts)
    if connect_timeout is not None:
        _config_connect_timeout = connect_timeout
    logger.debug("Configured known_hosts=%s connect_timeout=%s", _config_known_hosts, _config_connect_timeout)


def reset_config() -> None:
    """Drop configure() overrides, falling back to environment and defaults."""
    global _config_known_hosts, _config_connect_timeout
    _config_known_hosts = None
    _config_connect_timeout = None


def _effective_known_hosts() -> Optional[str]:
    if _config_known_hosts is not None:
        return _config_known_hosts
    return _env_known_hosts


def _effective_connect_timeout() -> float:
    if _config_connect_timeout is not None:
        return _config_connect_timeout
    if _env_connect_timeout is not None:
        return _env_connect_timeout
    return _DEFAULT_CONNECT_TIMEOUT


def ssh(connection: Any, script: Script, arguments: Any = None) -> Runner:
    """Create a connected Runner using the configured defaults.

    Args:
        connection: Connection, ConnectionSource, or mapping
            (keys Type, Host, Port, User, Password, Insecure)
        script: Script to run
        arguments: Mapping or object the script body is rendered against

    Returns:
        Runner (use as context manager or call close())
    """
    return Runner(
        connection,
        script,
        arguments,
        known_hosts=_effective_known_hosts(),
        connect_timeout=_effective_connect_timeout(),
    )


__all__ = [
    "__version__",
    "configure",
    "reset_config",
    "ssh",
    "Connection",
    "ConnectionSource",
    "MappingConnection",
    "to_connection",
    "Script",
    "Runner",
    "compose_command",
    "NO_EXIT_CODE",
    "RunnerError",
    "ScriptError",
    "RunnerConnectionError",
    "StreamError",
    "RemoteCommandError",
    "ExecutionError",
    "HostKeyError",
    "ExitError",
    "ExitMissingError",
]
