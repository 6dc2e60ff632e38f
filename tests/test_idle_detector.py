import socket
import struct
import threading
import unittest
from types import SimpleNamespace
from unittest.mock import Mock

from valheim_lifecycle.services.idle_detector import (
    A2S_INFO_REQUEST,
    A2SPlayerCountSource,
    A2SQueryError,
    IdleDetector,
    parse_info_reply,
)


def _info_reply(players):
    return (
        b"\xFF\xFF\xFF\xFFI\x11"
        + b"My Valheim Server\x00Dedicated\x00valheim\x00Valheim\x00"
        + struct.pack("<h", 0)
        + bytes([players, 10, 0])
        + b"dl\x00"
    )


class FakeA2SServer:
    """UDP responder that issues one challenge, then answers the info query."""

    def __init__(self, players):
        self.players = players
        self.requests = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self):
        for _ in range(2):
            data, addr = self.sock.recvfrom(4096)
            self.requests.append(data)
            if data == A2S_INFO_REQUEST:
                self.sock.sendto(b"\xFF\xFF\xFF\xFFA\x01\x02\x03\x04", addr)
            else:
                self.sock.sendto(_info_reply(self.players), addr)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.thread.join(2)
        self.sock.close()


class ParseInfoReplyTests(unittest.TestCase):
    def test_player_count(self):
        self.assertEqual(parse_info_reply(_info_reply(4)), 4)

    def test_rejects_malformed(self):
        for payload in [b"", b"\x00\x00\x00\x00I\x11", b"\xFF\xFF\xFF\xFFX\x11", b"\xFF\xFF\xFF\xFFI\x11name"]:
            with self.subTest(payload=payload):
                with self.assertRaises(A2SQueryError):
                    parse_info_reply(payload)


class A2SPlayerCountSourceTests(unittest.TestCase):
    def test_challenge_is_answered(self):
        with FakeA2SServer(players=2) as server:
            count = A2SPlayerCountSource("127.0.0.1", server.port, timeout=2).read_player_count()
        self.assertEqual(count, 2)
        self.assertEqual(server.requests[1], A2S_INFO_REQUEST + b"\x01\x02\x03\x04")


class IdleDetectorTests(unittest.TestCase):
    def test_idle_with_zero_players(self):
        detector = IdleDetector(SimpleNamespace(read_player_count=lambda: 0))
        self.assertEqual(detector.is_idle(), (True, None))

    def test_not_idle_with_players(self):
        detector = IdleDetector(SimpleNamespace(read_player_count=lambda: 3))
        idle, reason = detector.is_idle()
        self.assertFalse(idle)
        self.assertIn("3 player", reason)

    def test_source_failure_fails_closed(self):
        def broken():
            raise socket.timeout("timed out")

        log_action = Mock()
        idle, error = IdleDetector(SimpleNamespace(read_player_count=broken), log_action).is_idle()
        self.assertFalse(idle)
        self.assertIn("timed out", error)
        log_action.assert_called_once()

    def test_unreachable_query_port_fails_closed(self):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
            detector = IdleDetector(A2SPlayerCountSource("127.0.0.1", port, timeout=0.2))
            idle, error = detector.is_idle()
        self.assertFalse(idle)
        self.assertTrue(error)

    def test_each_check_queries_again(self):
        counts = iter([1, 0])
        detector = IdleDetector(SimpleNamespace(read_player_count=lambda: next(counts)))
        self.assertFalse(detector.is_idle()[0])
        self.assertTrue(detector.is_idle()[0])


if __name__ == "__main__":
    unittest.main()
