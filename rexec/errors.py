"""
Exceptions raised by the SSH runner.

Every failure surfaces as a RunnerError carrying enough context to diagnose a
remote failure without parsing messages: the originating script, the composed
command line (empty when composition never happened), and an exit code.

The exit code is the remote process's exit status for RemoteCommandError and
-1 for every other failure (nothing ran, or no exit status was reported).

The lower-level exception is chained via ``__cause__``
(standard ``raise RunnerError(...) from cause`` pattern) and exposed as
``err.cause``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from rexec.script import Script

# Exit code recorded when no remote exit status is available.
NO_EXIT_CODE = -1


class RunnerError(Exception):
    """Base exception for runner operations.

    Attributes:
        script: Script the runner was built from (always set)
        command: Composed command line, or "" if composition failed
        exit_code: Remote exit status, or -1 for local/transport failures
        kind: Failure category ("composition", "connection", "stream",
            "remote", "execution")
    """

    kind = "runner"

    def __init__(
        self,
        message: str,
        script: Optional[Script],
        command: str = "",
        exit_code: int = NO_EXIT_CODE,
    ):
        self.message = message
        self.script = script
        self.command = command
        self.exit_code = exit_code
        super().__init__(message)

    @property
    def cause(self) -> Optional[BaseException]:
        """The underlying exception, if any."""
        return self.__cause__

    def __str__(self) -> str:
        if self.__cause__ is not None:
            return f"{self.message}: {self.__cause__}"
        return self.message

    def __repr__(self) -> str:
        name = self.script.name if self.script is not None else None
        return f"{type(self).__name__}(kind={self.kind!r}, script={name!r}, exit_code={self.exit_code})"


class ScriptError(RunnerError):
    """Script failed to parse or could not be rendered with the given arguments.

    Raised before any network activity.
    """

    kind = "composition"


class RunnerConnectionError(RunnerError):
    """Known-hosts loading, dial, authentication, or channel open failed."""

    kind = "connection"


class StreamError(RunnerError):
    """An output pipe or writer could not be attached."""

    kind = "stream"


class RemoteCommandError(RunnerError):
    """Remote command ran and exited with a non-zero status."""

    kind = "remote"


class ExecutionError(RunnerError):
    """Command could not be started or waited on (channel closed, connection lost)."""

    kind = "execution"


__all__ = [
    "NO_EXIT_CODE",
    "RunnerError",
    "ScriptError",
    "RunnerConnectionError",
    "StreamError",
    "RemoteCommandError",
    "ExecutionError",
]
