"""
Unit Tests for the BIRD Control Channel Client

Test Coverage:
    - Reply framing: "DDDD-" continuation, "DDDD " final, " " continuation lines
    - Success codes, idempotent "already enabled/disabled" replies
    - Error replies (8xxx runtime, 9xxx parse) raised as BirdCommandError
    - Transport failures: closed connection, timeout, malformed lines
    - Protocol name validation before anything is sent
    - Full sessions against a fake BIRD server on a Unix socket
"""

import os
import shutil
import socket
import tempfile
import threading
import unittest

from .bird import (
    BirdControlClient,
    BirdSession,
    BirdReply,
    BirdCommandError,
    BirdConnectionError,
    BirdControlError,
    CODE_ENABLED,
    CODE_DISABLED,
    CODE_ALREADY_ENABLED,
    CODE_ALREADY_DISABLED,
)

WELCOME = b"0001 BIRD 2.0.12 ready.\n"


class SessionTestCase(unittest.TestCase):
    """Runs a BirdSession over a socketpair; the test plays BIRD on the other end."""

    timeout = 2.0

    def setUp(self):
        self.client_sock, self.bird_sock = socket.socketpair()
        self.bird_sock.settimeout(2)
        self.session = BirdSession(self.client_sock, timeout=self.timeout)

    def tearDown(self):
        self.session.close()
        self.bird_sock.close()

    def sent_line(self) -> bytes:
        return self.bird_sock.recv(4096)


class TestBirdReply(unittest.TestCase):

    def test_code_is_first_nonzero(self):
        reply = BirdReply(lines=[(11, "tailscale: enabled"), (0, "")])
        self.assertEqual(reply.code, 11)
        self.assertTrue(reply.ok)
        self.assertIsNone(reply.error_code)

    def test_error_code_detected(self):
        reply = BirdReply(lines=[(8003, "No protocols match")])
        self.assertFalse(reply.ok)
        self.assertEqual(reply.error_code, 8003)

    def test_text_joins_non_empty_lines(self):
        reply = BirdReply(lines=[(1002, "a"), (1002, "b"), (0, "")])
        self.assertEqual(reply.text, "a\nb")


class TestBirdSessionReplies(SessionTestCase):

    def test_hello_reads_version_banner(self):
        self.bird_sock.sendall(WELCOME)
        self.assertEqual(self.session.hello(), "BIRD 2.0.12 ready.")
        self.assertEqual(self.session.version, "BIRD 2.0.12 ready.")

    def test_hello_rejects_unexpected_greeting(self):
        self.bird_sock.sendall(b"8007 Access denied\n")
        with self.assertRaises(BirdConnectionError):
            self.session.hello()

    def test_enable_sends_command_and_reads_reply(self):
        self.bird_sock.sendall(b"0011-tailscale: enabled\n0000 \n")
        reply = self.session.enable("tailscale")
        self.assertEqual(self.sent_line(), b"enable tailscale\n")
        self.assertEqual(reply.code, CODE_ENABLED)
        self.assertIn("tailscale: enabled", reply.text)

    def test_disable_sends_command_and_reads_reply(self):
        self.bird_sock.sendall(b"0009-tailscale: disabled\n0000 \n")
        reply = self.session.disable("tailscale")
        self.assertEqual(self.sent_line(), b"disable tailscale\n")
        self.assertEqual(reply.code, CODE_DISABLED)

    def test_already_enabled_is_success(self):
        self.bird_sock.sendall(b"0010-tailscale: already enabled\n0000 \n")
        reply = self.session.enable("tailscale")
        self.assertEqual(reply.code, CODE_ALREADY_ENABLED)
        self.assertTrue(reply.ok)

    def test_already_disabled_is_success(self):
        self.bird_sock.sendall(b"0008-tailscale: already disabled\n0000 \n")
        reply = self.session.disable("tailscale")
        self.assertEqual(reply.code, CODE_ALREADY_DISABLED)

    def test_final_line_without_text(self):
        self.bird_sock.sendall(b"0011-tailscale: enabled\n0000\n")
        reply = self.session.enable("tailscale")
        self.assertEqual(reply.lines[-1], (0, ""))

    def test_space_continuation_lines_reuse_previous_code(self):
        self.bird_sock.sendall(b"2002-Name       Proto\n1002-tailscale  BGP\n bgp_peer2  BGP\n0000 \n")
        reply = self.session.command("show protocols")
        self.assertEqual(reply.lines[2], (1002, "bgp_peer2  BGP"))

    def test_carriage_returns_are_stripped(self):
        self.bird_sock.sendall(b"0011-tailscale: enabled\r\n0000 \r\n")
        reply = self.session.enable("tailscale")
        self.assertEqual(reply.lines[0], (11, "tailscale: enabled"))

    def test_reply_split_across_packets(self):
        self.bird_sock.sendall(b"0011-tails")
        self.bird_sock.sendall(b"cale: enabled\n00")
        self.bird_sock.sendall(b"00 \n")
        self.assertEqual(self.session.enable("tailscale").code, CODE_ENABLED)

    def test_no_protocols_match_raises_command_error(self):
        self.bird_sock.sendall(b"8003 No protocols match\n")
        with self.assertRaises(BirdCommandError) as ctx:
            self.session.enable("tailscale")
        self.assertEqual(ctx.exception.code, 8003)
        self.assertIn("No protocols match", str(ctx.exception))

    def test_parse_error_raises_command_error(self):
        self.bird_sock.sendall(b"9001 syntax error, unexpected CF_SYM_UNDEFINED\n")
        with self.assertRaises(BirdCommandError) as ctx:
            self.session.disable("tailscale")
        self.assertEqual(ctx.exception.code, 9001)

    def test_command_errors_are_control_errors(self):
        self.bird_sock.sendall(b"8007 Access denied\n")
        with self.assertRaises(BirdControlError):
            self.session.enable("tailscale")

    def test_closed_connection_raises_connection_error(self):
        self.bird_sock.close()
        with self.assertRaises(BirdConnectionError):
            self.session.enable("tailscale")

    def test_malformed_line_raises_connection_error(self):
        self.bird_sock.sendall(b"garbage\n")
        with self.assertRaises(BirdConnectionError):
            self.session.enable("tailscale")

    def test_invalid_protocol_name_sends_nothing(self):
        for name in ["", "tail scale", "tailscale\ndisable all", "1proto", "all;"]:
            with self.subTest(name=name):
                with self.assertRaises(ValueError):
                    self.session.enable(name)
        self.bird_sock.setblocking(False)
        with self.assertRaises(BlockingIOError):
            self.bird_sock.recv(4096)

    def test_multiline_command_rejected(self):
        with self.assertRaises(ValueError):
            self.session.command("enable a\ndisable b")


class TestBirdSessionTimeout(SessionTestCase):

    timeout = 0.2

    def test_silent_daemon_times_out(self):
        with self.assertRaises(BirdConnectionError) as ctx:
            self.session.enable("tailscale")
        self.assertIn("0.2", str(ctx.exception))

    def test_slow_drip_reply_bounded_by_deadline(self):
        # A partial line never completes; the session deadline still applies
        self.bird_sock.sendall(b"0011-tails")
        with self.assertRaises(BirdConnectionError):
            self.session.enable("tailscale")


class FakeBird(threading.Thread):
    """Minimal BIRD control socket: greets, then answers each command line in turn."""

    def __init__(self, path, replies, greeting=WELCOME):
        super().__init__(daemon=True)
        self.path = path
        self.replies = list(replies)
        self.greeting = greeting
        self.received = []
        self.server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.server.bind(path)
        self.server.listen(1)
        self.server.settimeout(5)

    def run(self):
        try:
            conn, _ = self.server.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            try:
                conn.sendall(self.greeting)
                buf = b""
                for reply in self.replies:
                    while b"\n" not in buf:
                        chunk = conn.recv(1024)
                        if not chunk:
                            return
                        buf += chunk
                    line, buf = buf.split(b"\n", 1)
                    self.received.append(line.decode())
                    conn.sendall(reply)
                conn.recv(1024)
            except OSError:
                return

    def stop(self):
        self.server.close()
        self.join(timeout=5)


class TestBirdControlClient(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "bird.ctl")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_enable_over_unix_socket(self):
        bird = FakeBird(self.path, [b"0011-tailscale: enabled\n0000 \n"])
        bird.start()
        try:
            client = BirdControlClient(self.path, timeout=2)
            with client.connect() as session:
                self.assertEqual(session.version, "BIRD 2.0.12 ready.")
                reply = session.enable("tailscale")
            self.assertEqual(reply.code, CODE_ENABLED)
        finally:
            bird.stop()
        self.assertEqual(bird.received, ["enable tailscale"])

    def test_command_error_over_unix_socket(self):
        bird = FakeBird(self.path, [b"8003 No protocols match\n"])
        bird.start()
        try:
            client = BirdControlClient(self.path, timeout=2)
            with client.connect() as session:
                with self.assertRaises(BirdCommandError):
                    session.disable("tailscale")
        finally:
            bird.stop()
        self.assertEqual(bird.received, ["disable tailscale"])

    def test_probe_returns_banner(self):
        bird = FakeBird(self.path, [])
        bird.start()
        try:
            self.assertEqual(BirdControlClient(self.path, timeout=2).probe(), "BIRD 2.0.12 ready.")
        finally:
            bird.stop()

    def test_bad_greeting_fails_connect(self):
        bird = FakeBird(self.path, [], greeting=b"HTTP/1.1 400 Bad Request\n")
        bird.start()
        try:
            with self.assertRaises(BirdConnectionError):
                BirdControlClient(self.path, timeout=2).connect()
        finally:
            bird.stop()

    def test_missing_socket_fails_connect(self):
        client = BirdControlClient(os.path.join(self.tmpdir, "missing.ctl"), timeout=1)
        with self.assertRaises(BirdConnectionError) as ctx:
            client.connect()
        self.assertIn("missing.ctl", str(ctx.exception))

    def test_not_a_socket_fails_connect(self):
        with open(self.path, "w") as f:
            f.write("not a socket")
        with self.assertRaises(BirdConnectionError):
            BirdControlClient(self.path, timeout=1).connect()


if __name__ == '__main__':
    unittest.main()
