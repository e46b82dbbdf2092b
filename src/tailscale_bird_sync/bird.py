"""
BIRD Control Channel Client

Speaks the BIRD command-line protocol over the daemon's Unix control socket
(by default ``/run/bird/bird.ctl``). Only the two verbs the sync daemon needs
are exposed: ``enable <protocol>`` and ``disable <protocol>``.

Wire format:
    On connect BIRD greets with ``0001 BIRD <version> ready.``. Each command is
    one text line. Reply lines are ``DDDD-text`` (more lines follow),
    ``DDDD text`` (last line of the reply) or `` text`` (continuation that
    reuses the previous code). Codes 0xxx report success, 1xxx/2xxx carry
    table data, 8xxx are runtime errors and 9xxx parse errors.

Reply codes relevant here:
    0008 Already disabled    0009 Disabled
    0010 Already enabled     0011 Enabled
    8003 No protocols match  9001 Parse error

"Already enabled"/"Already disabled" are success: the verbs are idempotent.

Every session is bounded by one deadline covering connect, greeting, command
and reply, so an unresponsive daemon produces a failure instead of a hang.

Usage Example:
    client = BirdControlClient("/run/bird/bird.ctl", timeout=5)
    with client.connect() as session:
        session.enable("tailscale")
"""

import logging
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Optional

from .logging_setup import resolve_logger_name

PROTOCOL_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

CODE_WELCOME = 1
CODE_ALREADY_DISABLED = 8
CODE_DISABLED = 9
CODE_ALREADY_ENABLED = 10
CODE_ENABLED = 11

_RECV_SIZE = 4096
_MAX_LINE = 64 * 1024


class BirdControlError(Exception):
    """Base class for failed control calls against the BIRD daemon."""


class BirdConnectionError(BirdControlError):
    """The control socket could not be reached, timed out or broke mid-session."""


class BirdCommandError(BirdControlError):
    """BIRD answered the command with an error reply."""

    def __init__(self, code: int, message: str):
        super().__init__(f"BIRD error {code:04d}: {message}")
        self.code = code
        self.message = message


@dataclass
class BirdReply:
    """A complete reply: every (code, text) line up to and including the final one."""
    lines: list[tuple[int, str]] = field(default_factory=list)

    @property
    def code(self) -> int:
        """First non-zero code of the reply, or the final code when all are zero."""
        for code, _ in self.lines:
            if code:
                return code
        return self.lines[-1][0] if self.lines else 0

    @property
    def text(self) -> str:
        return "\n".join(text for _, text in self.lines if text)

    @property
    def error_code(self) -> Optional[int]:
        for code, _ in self.lines:
            if code >= 8000:
                return code
        return None

    @property
    def ok(self) -> bool:
        return self.error_code is None


class BirdSession:
    """
    One connected control session.

    Sessions are cheap and not reused across reconciliation ticks; open one
    with ``BirdControlClient.connect()`` and close it when done (it is a
    context manager).
    """

    def __init__(self, sock: socket.socket, timeout: float = 5.0):
        self.sock = sock
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout
        self.version: Optional[str] = None
        self._buffer = b""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            pass

    def _readline(self) -> str:
        while b"\n" not in self._buffer:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise BirdConnectionError(f"no reply from BIRD within {self.timeout}s")
            if len(self._buffer) > _MAX_LINE:
                raise BirdConnectionError("reply line from BIRD is too long")
            try:
                self.sock.settimeout(remaining)
                chunk = self.sock.recv(_RECV_SIZE)
            except socket.timeout:
                raise BirdConnectionError(f"no reply from BIRD within {self.timeout}s")
            except OSError as e:
                raise BirdConnectionError(f"control socket read failed: {e}")
            if not chunk:
                raise BirdConnectionError("BIRD closed the control connection")
            self._buffer += chunk
        line, self._buffer = self._buffer.split(b"\n", 1)
        return line.decode("utf-8", errors="replace").rstrip("\r")

    def read_reply(self) -> BirdReply:
        """Read reply lines until the line that terminates the reply."""
        reply = BirdReply()
        last_code = 0
        while True:
            line = self._readline()
            if len(line) >= 5 and line[:4].isdigit() and line[4] in "- ":
                last_code = int(line[:4])
                reply.lines.append((last_code, line[5:]))
                if line[4] == " ":
                    return reply
            elif line.startswith(" "):
                reply.lines.append((last_code, line[1:]))
            elif len(line) == 4 and line.isdigit():
                # Final line with an empty message
                reply.lines.append((int(line), ""))
                return reply
            else:
                raise BirdConnectionError(f"malformed reply line from BIRD: {line[:80]!r}")

    def hello(self) -> str:
        """Consume the greeting BIRD sends on connect and return the version banner."""
        reply = self.read_reply()
        if reply.code != CODE_WELCOME:
            raise BirdConnectionError(f"unexpected greeting from BIRD: {reply.code:04d} {reply.text}")
        self.version = reply.text
        return reply.text

    def command(self, line: str) -> BirdReply:
        """
        Send one command line and return the reply.

        Raises:
            BirdConnectionError: Transport failure or timeout.
            BirdCommandError: BIRD answered with an 8xxx/9xxx code.
        """
        if "\n" in line or "\r" in line:
            raise ValueError("BIRD command must be a single line")
        try:
            self.sock.settimeout(max(self.deadline - time.monotonic(), 0.001))
            self.sock.sendall(line.encode("utf-8") + b"\n")
        except socket.timeout:
            raise BirdConnectionError(f"sending to BIRD timed out after {self.timeout}s")
        except OSError as e:
            raise BirdConnectionError(f"control socket write failed: {e}")

        reply = self.read_reply()
        if not reply.ok:
            raise BirdCommandError(reply.error_code, reply.text)
        logging.getLogger(resolve_logger_name()).debug(f"BIRD '{line}' -> {reply.code:04d} {reply.text}")
        return reply

    def enable(self, protocol: str) -> BirdReply:
        """Enable a protocol; an already enabled protocol is success."""
        return self.command(f"enable {_checked_protocol(protocol)}")

    def disable(self, protocol: str) -> BirdReply:
        """Disable a protocol; an already disabled protocol is success."""
        return self.command(f"disable {_checked_protocol(protocol)}")


def _checked_protocol(protocol: str) -> str:
    if not PROTOCOL_NAME_RE.match(protocol or ""):
        raise ValueError(f"invalid BIRD protocol name: {protocol!r}")
    return protocol


class BirdControlClient:
    """Opens bounded sessions to the BIRD control socket."""

    def __init__(self, socket_path: str, timeout: float = 5.0):
        self.socket_path = socket_path
        self.timeout = timeout

    def connect(self) -> BirdSession:
        """
        Connect to the control socket and consume the greeting.

        Returns:
            BirdSession: Connected session; caller closes it.

        Raises:
            BirdConnectionError: Socket missing, refused, timed out or no greeting.
        """
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        session = BirdSession(sock, timeout=self.timeout)
        try:
            sock.settimeout(self.timeout)
            sock.connect(self.socket_path)
            session.hello()
        except socket.timeout:
            session.close()
            raise BirdConnectionError(f"connecting to {self.socket_path} timed out after {self.timeout}s")
        except OSError as e:
            session.close()
            raise BirdConnectionError(f"cannot connect to {self.socket_path}: {e}")
        except BirdControlError:
            session.close()
            raise
        return session

    def probe(self) -> str:
        """Open and close one session; returns the BIRD version banner."""
        with self.connect() as session:
            return session.version or ""
