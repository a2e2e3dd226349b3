"""
Thin layer over paramiko: dialing with host-key verification, and a command
channel with start/wait/signal semantics.

paramiko exposes a session channel as a socket-like object. CommandChannel
adds what a single-command runner needs on top of it:

- attachable stdin/stdout/stderr streams, pumped by I/O worker threads
- stdout/stderr pipes for live streaming instead of fixed writers
- a pseudo-terminal request that carries a terminal-mode map
- start()/wait() with exit statuses turned into ExitError/ExitMissingError,
  including "exit-signal" reports that paramiko itself drops
- RFC 4254 "signal" requests

Example:
    host_keys = load_known_hosts()
    transport = dial("build01", 22, "ci", "secret", host_keys=host_keys)
    chan = CommandChannel(transport.open_session())
    chan.stdout = sys.stdout.buffer
    chan.run("uname -a")
"""

from __future__ import annotations

import codecs
import io
import logging
import socket
import struct
import threading
from pathlib import Path
from typing import BinaryIO, Mapping, Optional, Union

import paramiko
from paramiko.common import MSG_CHANNEL_REQUEST, cMSG_CHANNEL_REQUEST
from paramiko.message import Message

logger = logging.getLogger(__name__)

DEFAULT_KNOWN_HOSTS = "~/.ssh/known_hosts"
DEFAULT_SSH_PORT = 22

_CHUNK_SIZE = 32768

# RFC 4254 section 8 terminal mode opcodes
TTY_OP_END = 0
ECHO = 53
ECHOCTL = 60
TTY_OP_ISPEED = 128
TTY_OP_OSPEED = 129

# RFC 4254 section 6.10 signal names; a process killed by one reports 128 + number
SIGNAL_NUMBERS = {
    "ABRT": 6,
    "ALRM": 14,
    "FPE": 8,
    "HUP": 1,
    "ILL": 4,
    "INT": 2,
    "KILL": 9,
    "PIPE": 13,
    "QUIT": 3,
    "SEGV": 11,
    "TERM": 15,
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class HostKeyError(paramiko.SSHException):
    """Remote host is not listed in known_hosts."""

    def __init__(self, hostname: str, key: paramiko.PKey):
        self.hostname = hostname
        self.key = key
        super().__init__(f"Host key for {hostname} ({key.get_name()}) not found in known_hosts")


class ExitError(Exception):
    """Remote command exited with a non-zero status, or was killed by a signal."""

    def __init__(self, exit_status: int, signal: Optional[str] = None):
        self.exit_status = exit_status
        self.signal = signal
        message = f"Process exited with status {exit_status}"
        if signal is not None:
            message += f" from signal {signal}"
        super().__init__(message)


class ExitMissingError(Exception):
    """Channel closed without the remote side reporting an exit status."""

    def __init__(self):
        super().__init__("Remote command exited without exit status")


class ChannelStateError(Exception):
    """Channel operation called in the wrong order (e.g. wait() before start())."""


# ---------------------------------------------------------------------------
# Dialing
# ---------------------------------------------------------------------------


def load_known_hosts(path: Union[str, Path, None] = None) -> paramiko.HostKeys:
    """Load a known_hosts file (default ~/.ssh/known_hosts).

    Raises:
        RuntimeError: If the home directory cannot be determined
        OSError: If the file is missing or unreadable
    """
    resolved = Path(path if path is not None else DEFAULT_KNOWN_HOSTS).expanduser()
    host_keys = paramiko.HostKeys()
    host_keys.load(str(resolved))
    logger.debug("Loaded %d known host(s) from %s", len(host_keys), resolved)
    return host_keys


def _known_hosts_name(host: str, port: int) -> str:
    if port == DEFAULT_SSH_PORT:
        return host
    return f"[{host}]:{port}"


def verify_host_key(transport: paramiko.Transport, host: str, port: int, host_keys: paramiko.HostKeys) -> None:
    """Check the server key of a started transport against known hosts.

    Raises:
        HostKeyError: If the host has no entry for this key type
        paramiko.BadHostKeyException: If the recorded key differs
    """
    key = transport.get_remote_server_key()
    name = _known_hosts_name(host, port)
    entry = host_keys.lookup(name)
    if entry is None or key.get_name() not in entry:
        raise HostKeyError(name, key)
    expected = entry[key.get_name()]
    if expected != key:
        raise paramiko.BadHostKeyException(name, key, expected)


def _handle_channel_request(channel: paramiko.Channel, m: Message) -> None:
    """Record "exit-signal" on the channel, then let paramiko handle the request.

    paramiko's client ignores "exit-signal", so a process killed by a signal
    would otherwise look like one that never reported how it ended.
    """
    start = m.packet.tell()
    if m.get_text() == "exit-signal":
        m.get_boolean()  # want reply
        channel.exit_signal = m.get_text()
        logger.debug("Remote process killed by signal %s", channel.exit_signal)
        channel.status_event.set()
    m.packet.seek(start)
    paramiko.Channel._handle_request(channel, m)


def install_exit_signal_handler(transport: paramiko.Transport) -> None:
    """Route channel requests on this transport through _handle_channel_request."""
    table = dict(transport._channel_handler_table)
    table[MSG_CHANNEL_REQUEST] = _handle_channel_request
    transport._channel_handler_table = table


def dial(
    host: str,
    port: int,
    user: str,
    password: str,
    *,
    host_keys: Optional[paramiko.HostKeys],
    timeout: Optional[float] = 10.0,
) -> paramiko.Transport:
    """Connect, verify the host key, and authenticate with a password.

    Args:
        host_keys: Trusted keys to verify against, or None to accept any
            host key (unsafe, trusted networks only)
        timeout: TCP connect and handshake timeout in seconds

    Returns:
        Authenticated paramiko.Transport (caller owns it)
    """
    sock = socket.create_connection((host, port), timeout=timeout)
    try:
        transport = paramiko.Transport(sock)
    except Exception:
        sock.close()
        raise
    install_exit_signal_handler(transport)
    try:
        transport.start_client(timeout=timeout)
        if host_keys is None:
            logger.warning("Host key verification disabled for %s:%d", host, port)
        else:
            verify_host_key(transport, host, port, host_keys)
        transport.auth_password(user, password)
    except Exception:
        try:
            transport.close()
        except Exception:
            logger.debug("Error closing transport after failed dial", exc_info=True)
        raise
    logger.info("SSH connected to %s:%d as %s", host, port, user)
    return transport


# ---------------------------------------------------------------------------
# CommandChannel
# ---------------------------------------------------------------------------


def encode_terminal_modes(modes: Mapping[int, int]) -> bytes:
    """Encode a terminal-mode map as RFC 4254 opcode/uint32 pairs."""
    out = b"".join(struct.pack(">BI", opcode, value) for opcode, value in modes.items())
    return out + struct.pack(">B", TTY_OP_END)


def _read_chunk(src) -> bytes:
    # read1() returns whatever is available instead of blocking for a full chunk
    read = getattr(src, "read1", None) or src.read
    return read(_CHUNK_SIZE)


class _Sink:
    """Writes received bytes to a binary or text writer."""

    def __init__(self, writer):
        self._writer = writer
        self._decoder = None
        if isinstance(writer, io.TextIOBase):
            self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def write(self, data: bytes) -> None:
        if self._writer is None:
            return
        if self._decoder is not None:
            self._writer.write(self._decoder.decode(data))
        else:
            self._writer.write(data)
        flush = getattr(self._writer, "flush", None)
        if flush is not None:
            flush()


class CommandChannel:
    """One SSH session channel running a single command.

    Attach streams before start(). ``stdin`` is any readable binary stream;
    ``stdout``/``stderr`` are binary or text writers. A stream left as None
    means no input, or discarded output.

    Not thread-safe. Does NOT own the transport.

    Args:
        channel: Session channel from paramiko.Transport.open_session()
    """

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        self.stdin: Optional[BinaryIO] = None
        self._stdout = None
        self._stderr = None
        self._stdout_piped = False
        self._stderr_piped = False
        self._started = False
        self._waited = False
        self._workers: list[threading.Thread] = []
        self._errors: list[BaseException] = []

    @property
    def started(self) -> bool:
        return self._started

    def _check_attach(self, name: str, piped: bool) -> None:
        if piped:
            raise ChannelStateError(f"{name} pipe already opened")
        if self._started:
            raise ChannelStateError(f"{name} set after command started")

    @property
    def stdout(self):
        return self._stdout

    @stdout.setter
    def stdout(self, writer) -> None:
        self._check_attach("stdout", self._stdout_piped)
        self._stdout = writer

    @property
    def stderr(self):
        return self._stderr

    @stderr.setter
    def stderr(self, writer) -> None:
        self._check_attach("stderr", self._stderr_piped)
        self._stderr = writer

    def stdout_pipe(self) -> BinaryIO:
        """Readable stream of the command's stdout."""
        if self._stdout is not None:
            raise ChannelStateError("stdout already set")
        if self._stdout_piped:
            raise ChannelStateError("stdout pipe already opened")
        if self._started:
            raise ChannelStateError("stdout pipe requested after command started")
        self._stdout_piped = True
        return self._channel.makefile("rb")

    def stderr_pipe(self) -> BinaryIO:
        """Readable stream of the command's stderr."""
        if self._stderr is not None:
            raise ChannelStateError("stderr already set")
        if self._stderr_piped:
            raise ChannelStateError("stderr pipe already opened")
        if self._started:
            raise ChannelStateError("stderr pipe requested after command started")
        self._stderr_piped = True
        return self._channel.makefile_stderr("rb")

    def _send_request(self, request: Message, want_reply: bool) -> None:
        if self._channel.closed:
            raise paramiko.SSHException("Channel is closed")
        if want_reply:
            self._channel._event_pending()
        self._channel.transport._send_user_message(request)
        if want_reply:
            self._channel._wait_for_event()

    def _request_header(self, name: str, want_reply: bool) -> Message:
        m = Message()
        m.add_byte(cMSG_CHANNEL_REQUEST)
        m.add_int(self._channel.remote_chanid)
        m.add_string(name)
        m.add_boolean(want_reply)
        return m

    def request_pty(self, term: str, height: int, width: int, modes: Mapping[int, int]) -> None:
        """Request a remote pseudo-terminal with the given terminal modes.

        paramiko's Channel.get_pty() always sends an empty mode list, so the
        request is built here.
        """
        m = self._request_header("pty-req", True)
        m.add_string(term)
        m.add_int(width)
        m.add_int(height)
        m.add_int(0)  # width in pixels
        m.add_int(0)  # height in pixels
        m.add_string(encode_terminal_modes(modes))
        self._send_request(m, want_reply=True)

    def signal(self, name: str) -> None:
        """Deliver a signal (e.g. "TERM", without the SIG prefix) to the remote process."""
        m = self._request_header("signal", False)
        m.add_string(name)
        self._send_request(m, want_reply=False)

    def start(self, command: str) -> None:
        """Start the command without waiting for it."""
        if self._started:
            raise ChannelStateError("command already started")
        self._channel.exec_command(command)
        self._started = True

        if self.stdin is None:
            self._channel.shutdown_write()
        else:
            # Never joined: local input may not reach EOF before the command exits
            threading.Thread(
                target=self._pump_stdin,
                args=(self.stdin,),
                name="rexec-stdin",
                daemon=True,
            ).start()

        if not self._stdout_piped:
            self._spawn(self._channel.recv, _Sink(self._stdout), "rexec-stdout")
        if not self._stderr_piped:
            self._spawn(self._channel.recv_stderr, _Sink(self._stderr), "rexec-stderr")

    def _spawn(self, recv, sink: _Sink, name: str) -> None:
        worker = threading.Thread(target=self._pump_output, args=(recv, sink), name=name, daemon=True)
        self._workers.append(worker)
        worker.start()

    def _pump_output(self, recv, sink: _Sink) -> None:
        try:
            while True:
                data = recv(_CHUNK_SIZE)
                if not data:
                    break
                sink.write(data)
        except Exception as e:
            self._errors.append(e)

    def _pump_stdin(self, src) -> None:
        try:
            while True:
                data = _read_chunk(src)
                if not data:
                    break
                self._channel.sendall(data)
            self._channel.shutdown_write()
        except (OSError, ValueError, EOFError, paramiko.SSHException) as e:
            logger.debug("stdin copy stopped: %s", e)

    def wait(self) -> None:
        """Wait for the command to exit and its output to drain.

        Raises:
            ExitError: Command exited non-zero or was killed by a signal
            ExitMissingError: Channel closed without an exit status or signal
            ChannelStateError: start() was not called, or wait() already ran
        """
        if not self._started:
            raise ChannelStateError("wait() called before start()")
        if self._waited:
            raise ChannelStateError("wait() already called")
        self._waited = True

        status = self._channel.recv_exit_status()
        for worker in self._workers:
            worker.join()

        if status == -1:
            signal = getattr(self._channel, "exit_signal", None)
            if not isinstance(signal, str):
                raise ExitMissingError()
            raise ExitError(128 + SIGNAL_NUMBERS.get(signal, 0), signal)
        if status != 0:
            raise ExitError(status)
        if self._errors:
            raise self._errors[0]

    def run(self, command: str) -> None:
        """Start the command and wait for it."""
        self.start(command)
        self.wait()

    def close(self) -> None:
        self._channel.close()

    def __repr__(self) -> str:
        if self._waited:
            state = "done"
        elif self._started:
            state = "started"
        else:
            state = "idle"
        return f"CommandChannel({state})"


__all__ = [
    "DEFAULT_KNOWN_HOSTS",
    "ECHO",
    "ECHOCTL",
    "TTY_OP_END",
    "TTY_OP_ISPEED",
    "TTY_OP_OSPEED",
    "HostKeyError",
    "ExitError",
    "ExitMissingError",
    "ChannelStateError",
    "SIGNAL_NUMBERS",
    "install_exit_signal_handler",
    "load_known_hosts",
    "verify_host_key",
    "dial",
    "encode_terminal_modes",
    "CommandChannel",
]
