"""
Tailscale Status Source

Runs the Tailscale status command, parses its JSON output and reduces it to a
single boolean: is this node currently a primary subnet router.

The check is presence-only. Tailscale emits ``Self.PrimaryRoutes`` only while
the node holds primary routes, so the value of the key is never inspected
(null, empty list and empty string all count as present).

Failures are raised, never folded into ``False`` here. Deciding what an
indeterminate signal means is the reconciliation loop's job.
"""

import json
import logging
import subprocess
from typing import Any, Optional, Sequence

from .logging_setup import resolve_logger_name

SELF_KEY = "Self"
PRIMARY_ROUTES_KEY = "PrimaryRoutes"


class StatusOracleError(Exception):
    """Base class for failures that leave the primary-router signal indeterminate."""

    kind = "unknown"


class StatusCommandError(StatusOracleError):
    """The status command could not be run or exited non-zero."""

    kind = "execution"

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class StatusParseError(StatusOracleError):
    """The status command produced output that is not a JSON object."""

    kind = "parse"


def run_status_command(argv: Sequence[str], timeout: float) -> bytes:
    """
    Execute the status command and return its complete standard output.

    Args:
        argv (Sequence[str]): Command and arguments; no shell is involved.
        timeout (float): Seconds before the child is killed.

    Returns:
        bytes: Captured standard output.

    Raises:
        StatusCommandError: Binary missing, not executable, timed out or non-zero exit.
    """
    try:
        proc = subprocess.run(list(argv), capture_output=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        raise StatusCommandError(f"status command timed out after {timeout}s")
    except OSError as e:
        raise StatusCommandError(f"status command could not be executed: {e}")

    if proc.returncode != 0:
        stderr = (proc.stderr or b"").decode("utf-8", errors="replace").strip()
        raise StatusCommandError(
            f"status command exited with code {proc.returncode}" + (f": {stderr[-200:]}" if stderr else ""),
            returncode=proc.returncode,
            stderr=stderr,
        )
    return proc.stdout


def parse_status_document(payload: bytes | str) -> dict[str, Any]:
    """
    Parse the status payload into a key-ordered mapping.

    A JSON ``null`` document yields an empty mapping. Any other top-level
    value that is not an object is rejected. Invalid UTF-8 sequences are
    replaced with U+FFFD rather than rejected.

    Raises:
        StatusParseError: Payload is not JSON, exceeds the decoder's limits
            (oversized integers, excessive nesting), or is not an object.
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        document = json.loads(payload)
    except (ValueError, RecursionError) as e:
        raise StatusParseError(f"status output is not valid JSON: {e}")

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise StatusParseError(f"status output is a JSON {type(document).__name__}, expected an object")
    return document


def primary_router_present(document: dict[str, Any]) -> bool:
    """True when ``Self`` is an object that contains a ``PrimaryRoutes`` key, whatever its value."""
    self_node = document.get(SELF_KEY)
    if not isinstance(self_node, dict):
        return False
    return PRIMARY_ROUTES_KEY in self_node


class StatusOracle:
    """
    Polls the Tailscale status command for the primary-router signal.

    One external process is spawned per poll. There are no internal retries;
    the next reconciliation tick is the retry.
    """

    def __init__(self, argv: Sequence[str], timeout: float = 10.0):
        if not argv:
            raise ValueError("status command must not be empty")
        self.argv = list(argv)
        self.timeout = timeout

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    def poll(self) -> bool:
        """
        Run the status command once and report primary-router status.

        Returns:
            bool: True if this node advertises primary routes.

        Raises:
            StatusCommandError: The command failed to run or exited non-zero.
            StatusParseError: The output was not a JSON object.
        """
        payload = run_status_command(self.argv, self.timeout)
        document = parse_status_document(payload)
        present = primary_router_present(document)
        logging.getLogger(resolve_logger_name()).debug(f"Status poll: {SELF_KEY}.{PRIMARY_ROUTES_KEY} present={present}")
        return present
