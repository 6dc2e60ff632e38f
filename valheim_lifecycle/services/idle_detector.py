"""Connected-player detection over the Steam server query port (A2S_INFO)."""

import socket

A2S_INFO_REQUEST = b"\xFF\xFF\xFF\xFFTSource Engine Query\x00"
A2S_HEADER = b"\xFF\xFF\xFF\xFF"
A2S_CHALLENGE = 0x41
A2S_INFO_REPLY = 0x49
MAX_CHALLENGE_ROUNDS = 3


class A2SQueryError(Exception):
    """The query port did not return a usable A2S_INFO reply."""


def _read_cstring(payload, offset):
    end = payload.find(b"\x00", offset)
    if end < 0:
        raise A2SQueryError("truncated string in A2S_INFO reply")
    return payload[offset:end].decode("utf-8", errors="replace"), end + 1


def parse_info_reply(payload):
    """Return the player count from an A2S_INFO reply body (header included)."""
    if len(payload) < 6 or payload[:4] != A2S_HEADER:
        raise A2SQueryError("malformed A2S reply header")
    if payload[4] != A2S_INFO_REPLY:
        raise A2SQueryError(f"unexpected A2S reply type 0x{payload[4]:02x}")
    offset = 6  # header + type + protocol
    for _ in range(4):  # name, map, folder, game
        _, offset = _read_cstring(payload, offset)
    if len(payload) < offset + 3:
        raise A2SQueryError("truncated A2S_INFO reply")
    offset += 2  # steam app id (short)
    return payload[offset]


class A2SPlayerCountSource:
    """Reads the live player count from the game's query port."""

    def __init__(self, host, port, timeout=5.0):
        self.host = host
        self.port = int(port)
        self.timeout = float(timeout)

    def read_player_count(self):
        request = A2S_INFO_REQUEST
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(self.timeout)
            for _ in range(MAX_CHALLENGE_ROUNDS):
                sock.sendto(request, (self.host, self.port))
                payload, _ = sock.recvfrom(4096)
                if len(payload) >= 9 and payload[:4] == A2S_HEADER and payload[4] == A2S_CHALLENGE:
                    request = A2S_INFO_REQUEST + payload[5:9]
                    continue
                return parse_info_reply(payload)
        raise A2SQueryError("server kept answering with challenges")


class IdleDetector:
    """Idle means zero connected players; unknown is never idle."""

    def __init__(self, source, log_action=None):
        self.source = source
        self.log_action = log_action

    def player_count(self):
        return self.source.read_player_count()

    def is_idle(self):
        """Return ``(idle, error)``; errors fail closed with ``idle=False``."""
        try:
            count = int(self.player_count())
        except (OSError, A2SQueryError, ValueError, TypeError) as exc:
            error = f"player count unavailable: {exc or type(exc).__name__}"
            if self.log_action is not None:
                self.log_action("idle-check", error=error)
            return False, error
        if count > 0:
            return False, f"{count} player(s) connected"
        return True, None
