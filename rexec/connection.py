"""
Connection descriptors for the SSH runner.

A connection can be given either as a typed Connection or as a loosely-typed
string mapping (e.g. parsed from a config file or environment):

    Connection(host="build01", port=22, user="ci", password="pw")
    {"Type": "ssh", "Host": "build01", "Port": "22", "User": "ci", "Password": "pw"}

Both normalize to the same Connection. Normalization never raises: malformed
mapping values degrade to zero values (port 0, insecure False) and the
failure shows up at dial time instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_PORT_RE = re.compile(r"[0-9]+")
_MAX_PORT = 0xFFFF

# Accepted spellings after lower-casing; "0", "f", "false" and anything else are False
_TRUE_VALUES = ("1", "t", "true")


@dataclass(frozen=True)
class Connection:
    """How to reach an SSH host.

    Args:
        type: Connection type tag, expected to be "ssh" (not defaulted)
        host: Hostname or address
        port: TCP port
        user: Login name
        password: Password (excluded from repr)
        insecure: Accept any host key instead of checking known_hosts
    """

    type: str = ""
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = field(default="", repr=False)
    insecure: bool = False

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_connection(self) -> Connection:
        return self


@runtime_checkable
class ConnectionSource(Protocol):
    """Anything that can describe a Connection."""

    def to_connection(self) -> Connection: ...


def _parse_port(value: Any) -> int:
    """Parse an unsigned 16-bit base-10 port, 0 on failure."""
    text = str(value)
    if not _PORT_RE.fullmatch(text):
        return 0
    port = int(text)
    if port > _MAX_PORT:
        return 0
    return port


def _parse_bool(value: Any) -> bool:
    """Parse a case-insensitive boolean, False on failure."""
    return str(value).lower() in _TRUE_VALUES


class MappingConnection:
    """Connection source backed by a string-keyed mapping.

    Recognized keys: Type, Host, Port, User, Password, Insecure. Values are
    read as strings. Unknown keys are ignored.
    """

    def __init__(self, mapping: Mapping[str, Any]):
        self._mapping = mapping

    def to_connection(self) -> Connection:
        values: dict[str, Any] = {}
        for key, value in self._mapping.items():
            if key == "Type":
                values["type"] = str(value)
            elif key == "Host":
                values["host"] = str(value)
            elif key == "Port":
                values["port"] = _parse_port(value)
            elif key == "User":
                values["user"] = str(value)
            elif key == "Password":
                values["password"] = str(value)
            elif key == "Insecure":
                values["insecure"] = _parse_bool(value)
        return Connection(**values)

    def __repr__(self) -> str:
        keys = sorted(k for k in self._mapping if k != "Password")
        return f"MappingConnection(keys={keys})"


def to_connection(value: Any) -> Connection:
    """Normalize a Connection, ConnectionSource, or mapping into a Connection.

    Never raises. Unsupported values produce an empty Connection, which
    fails later when dialing.
    """
    if isinstance(value, Connection):
        conn = value
    elif isinstance(value, ConnectionSource):
        conn = value.to_connection()
    elif isinstance(value, Mapping):
        conn = MappingConnection(value).to_connection()
    else:
        logger.warning("Unsupported connection description %s, using empty connection", type(value).__name__)
        conn = Connection()

    if conn.type != "ssh":
        logger.debug("Connection type is %r, expected 'ssh'", conn.type)
    return conn


__all__ = [
    "Connection",
    "ConnectionSource",
    "MappingConnection",
    "to_connection",
]
