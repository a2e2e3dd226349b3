"""
Run a script on a remote host over SSH.

A Runner owns one SSH connection and one session channel, and runs exactly
one command: the script's invocation line followed by its body rendered
against the given arguments. Construct a new Runner per command.

Example:
    from rexec import Connection, Runner, Script

    script = Script("disk-usage", "bash", "du -sh ${path}\\n")
    conn = Connection(type="ssh", host="build01", port=22, user="ci", password="secret")

    with Runner(conn, script, {"path": "/var/log"}) as runner:
        runner.set_stdout_writer(sys.stdout)
        runner.run()

    # Streaming, non-blocking
    with Runner(conn, script, {"path": "/var/log"}) as runner:
        out = runner.stdout_pipe()
        runner.start()
        for line in out:
            print(line.decode(), end="")
        runner.wait()

Every failure raises a RunnerError subclass; ``err.exit_code`` is the remote
exit status for RemoteCommandError and -1 otherwise.

Runners hold no lock. Do not drive one Runner from several threads. There is
no timeout on run()/wait(): to bound a command, wait from another thread and
call close() on deadline.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

import paramiko
from paramiko.hostkeys import InvalidHostKey

from rexec.connection import Connection, to_connection
from rexec.errors import (
    NO_EXIT_CODE,
    ExecutionError,
    RemoteCommandError,
    RunnerConnectionError,
    ScriptError,
    StreamError,
)
from rexec.script import Script
from rexec.terminal import interactive_terminal
from rexec.transport import (
    ChannelStateError,
    CommandChannel,
    ExitError,
    dial,
    load_known_hosts,
)

logger = logging.getLogger(__name__)

TERMINATION_SIGNAL = "TERM"

# Errors raised while dialing: socket/DNS failures, handshake and auth
# failures, a peer that hangs up mid-handshake, out-of-range ports, host
# names the IDNA codec rejects (UnicodeError is a ValueError).
_DIAL_ERRORS = (OSError, EOFError, OverflowError, ValueError, paramiko.SSHException)

# Errors raised while reading known_hosts: missing or unreadable file, a
# file that is not text, a malformed key line.
_KNOWN_HOSTS_ERRORS = (OSError, ValueError, InvalidHostKey, paramiko.SSHException)


def compose_command(script: Script, arguments: Any = None) -> str:
    """Build the full command line: invocation prefix + rendered body.

    Raises:
        ScriptError: Script failed to parse, or rendering failed
    """
    if script.error is not None:
        raise ScriptError("script failed to parse", script) from script.error
    try:
        reader = script.new_reader(arguments)
    except (KeyError, TypeError, ValueError) as e:
        raise ScriptError("cannot render script arguments", script) from e
    body = reader.read().decode()
    return script.command() + body


def _local_stdin() -> Optional[BinaryIO]:
    stream = sys.stdin
    if stream is None:
        return None
    return getattr(stream, "buffer", stream)


class Runner:
    """One remote command over a dedicated SSH connection.

    Connects on construction; a constructor that raises leaves nothing open.

    Args:
        connection: Connection, ConnectionSource, or mapping with keys
            Type, Host, Port, User, Password, Insecure
        script: Script to run
        arguments: Mapping or object the script body is rendered against
        known_hosts: known_hosts path (default ~/.ssh/known_hosts), ignored
            for insecure connections
        connect_timeout: TCP connect and handshake timeout in seconds
        stdin: Input stream for run() (default: this process's stdin)

    Raises:
        ScriptError: Script invalid or rendering failed (no network activity)
        RunnerConnectionError: known_hosts, dial, auth, or session open failed
    """

    def __init__(
        self,
        connection: Any,
        script: Script,
        arguments: Any = None,
        *,
        known_hosts: Union[str, Path, None] = None,
        connect_timeout: Optional[float] = 10.0,
        stdin: Optional[BinaryIO] = None,
    ):
        self._script = script
        self._command = ""
        self._connection: Optional[Connection] = None
        self._transport: Optional[paramiko.Transport] = None
        self._channel: Optional[CommandChannel] = None
        self._stdin = stdin
        self._running = False
        self._finished = False
        self._closed = False
        self._exit_code = 0

        self._command = compose_command(script, arguments)
        self._connection = to_connection(connection)
        try:
            self._connect(known_hosts, connect_timeout)
        except RunnerConnectionError:
            self.close()
            raise

    def _connection_error(self, message: str) -> RunnerConnectionError:
        return RunnerConnectionError(message, self._script, self._command, NO_EXIT_CODE)

    def _connect(self, known_hosts: Union[str, Path, None], timeout: Optional[float]) -> None:
        conn = self._connection
        assert conn is not None

        host_keys = None
        if not conn.insecure:
            try:
                host_keys = load_known_hosts(known_hosts)
            except RuntimeError as e:
                # Path.expanduser() cannot resolve ~
                raise self._connection_error("cannot find home directory of current user") from e
            except _KNOWN_HOSTS_ERRORS as e:
                raise self._connection_error("cannot access known_hosts file") from e

        try:
            self._transport = dial(
                conn.host,
                conn.port,
                conn.user,
                conn.password,
                host_keys=host_keys,
                timeout=timeout,
            )
        except _DIAL_ERRORS as e:
            raise self._connection_error(f"cannot dial host {conn.address}") from e

        try:
            self._channel = CommandChannel(self._transport.open_session(timeout=timeout))
        except _DIAL_ERRORS as e:
            raise self._connection_error(f"cannot open session on {conn.address}") from e

    # -- properties ---------------------------------------------------------

    @property
    def script(self) -> Script:
        return self._script

    @property
    def command(self) -> str:
        return self._command

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    @property
    def running(self) -> bool:
        return self._running

    @property
    def exit_code(self) -> int:
        """Last recorded exit code.

        0 on success, the remote exit status after a non-zero exit, -1 after
        a local or transport failure. Also 0 before anything ran, so only
        meaningful once run() or wait() returned.
        """
        return self._exit_code

    # -- streams ------------------------------------------------------------

    def _require_channel(self, error_cls: type) -> CommandChannel:
        if self._channel is None:
            self._exit_code = NO_EXIT_CODE
            raise error_cls("runner is closed", self._script, self._command, NO_EXIT_CODE)
        return self._channel

    def set_stdout_writer(self, writer) -> None:
        """Send stdout to a binary or text writer. Call before run()/start()."""
        channel = self._require_channel(StreamError)
        try:
            channel.stdout = writer
        except ChannelStateError as e:
            self._exit_code = NO_EXIT_CODE
            raise StreamError("cannot attach stdout writer", self._script, self._command, NO_EXIT_CODE) from e

    def set_stderr_writer(self, writer) -> None:
        """Send stderr to a binary or text writer. Call before run()/start()."""
        channel = self._require_channel(StreamError)
        try:
            channel.stderr = writer
        except ChannelStateError as e:
            self._exit_code = NO_EXIT_CODE
            raise StreamError("cannot attach stderr writer", self._script, self._command, NO_EXIT_CODE) from e

    def stdout_pipe(self) -> BinaryIO:
        """Readable binary stream of stdout. Excludes set_stdout_writer()."""
        channel = self._require_channel(StreamError)
        try:
            return channel.stdout_pipe()
        except (ChannelStateError, paramiko.SSHException, OSError) as e:
            self._exit_code = NO_EXIT_CODE
            raise StreamError("cannot create stdout reader", self._script, self._command, NO_EXIT_CODE) from e

    def stderr_pipe(self) -> BinaryIO:
        """Readable binary stream of stderr. Excludes set_stderr_writer()."""
        channel = self._require_channel(StreamError)
        try:
            return channel.stderr_pipe()
        except (ChannelStateError, paramiko.SSHException, OSError) as e:
            self._exit_code = NO_EXIT_CODE
            raise StreamError("cannot create stderr reader", self._script, self._command, NO_EXIT_CODE) from e

    # -- execution ----------------------------------------------------------

    def _remote_failure(self, e: ExitError) -> RemoteCommandError:
        self._exit_code = e.exit_status
        return RemoteCommandError(
            f"script {self._script.name!r} exited with status {e.exit_status}",
            self._script,
            self._command,
            e.exit_status,
        )

    def run(self) -> None:
        """Run the command and block until it exits.

        Attaches stdin. If stdin is a terminal, runs under a remote PTY with
        the local terminal in raw mode; the terminal is restored before
        run() returns or raises.

        Raises:
            RemoteCommandError: Command exited non-zero (exit_code = status)
            ExecutionError: Command could not run (exit_code = -1)
        """
        channel = self._require_channel(ExecutionError)
        stdin = self._stdin if self._stdin is not None else _local_stdin()
        channel.stdin = stdin

        logger.debug("Running command: %s", self._command)
        try:
            with interactive_terminal(channel, stdin):
                channel.run(self._command)
        except ExitError as e:
            raise self._remote_failure(e) from e
        except Exception as e:
            self._exit_code = NO_EXIT_CODE
            raise ExecutionError("cannot execute command", self._script, self._command, NO_EXIT_CODE) from e
        finally:
            self._finished = True

        self._exit_code = 0

    def start(self) -> None:
        """Start the command without waiting. Follow with wait().

        Raises:
            ExecutionError: Command could not be started (exit_code = -1)
        """
        channel = self._require_channel(ExecutionError)
        logger.debug("Starting command: %s", self._command)
        try:
            channel.start(self._command)
        except (ChannelStateError, paramiko.SSHException, OSError) as e:
            self._exit_code = NO_EXIT_CODE
            raise ExecutionError("cannot start command", self._script, self._command, NO_EXIT_CODE) from e
        self._running = True

    def wait(self) -> None:
        """Block until a start()-ed command exits.

        ``running`` is False afterwards whatever the outcome.

        Raises:
            RemoteCommandError: Command exited non-zero (exit_code = status)
            ExecutionError: No exit status available (exit_code = -1)
        """
        channel = self._require_channel(ExecutionError)
        try:
            channel.wait()
        except ExitError as e:
            raise self._remote_failure(e) from e
        except Exception as e:
            self._exit_code = NO_EXIT_CODE
            raise ExecutionError("command failed", self._script, self._command, NO_EXIT_CODE) from e
        finally:
            self._running = False
            self._finished = True

        self._exit_code = 0

    # -- teardown -----------------------------------------------------------

    def close(self) -> None:
        """Release the channel and connection. Idempotent, never raises.

        A still-running command is sent SIGTERM first. Each step is best
        effort; a failing step is logged and the next one still runs.
        """
        if self._running and self._channel is not None:
            try:
                self._channel.signal(TERMINATION_SIGNAL)
            except Exception:
                logger.debug("Error signalling remote command", exc_info=True)
        self._running = False

        if self._channel is not None:
            try:
                self._channel.close()
            except Exception:
                logger.debug("Error closing session channel", exc_info=True)
            self._channel = None

        if self._transport is not None:
            try:
                self._transport.close()
            except Exception:
                logger.debug("Error closing transport", exc_info=True)
            self._transport = None
            logger.info("SSH runner for %r closed", self._script.name)

        self._closed = True

    def __enter__(self) -> Runner:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        if self._closed:
            state = "closed"
        elif self._running:
            state = "running"
        elif self._finished:
            state = "done"
        else:
            state = "idle"
        address = self._connection.address if self._connection is not None else "?"
        return f"Runner({self._script.name!r} @ {address}, {state})"


__all__ = [
    "TERMINATION_SIGNAL",
    "compose_command",
    "Runner",
]
