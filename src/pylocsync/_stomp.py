"""STOMP 1.1/1.2 frame codec.

Frames are ``COMMAND\\n`` + ``header:value\\n``* + ``\\n`` + body + ``NUL``.
A bare EOL between frames is a heart-beat. Header values are escaped
(``\\\\``, ``\\n``, ``\\r``, ``\\c``) in every frame except CONNECT and
CONNECTED.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pylocsync.exceptions import LocSyncProtocolError

HEARTBEAT = "\n"

# Upper bound on bytes buffered for one incomplete frame.
MAX_FRAME_BYTES = 1024 * 1024

_NUL = b"\x00"
_UNESCAPED_COMMANDS = frozenset({"CONNECT", "CONNECTED"})
_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "c": ":"}


@dataclass(frozen=True)
class StompFrame:
    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        mapped = _UNESCAPES.get(nxt)
        if mapped is None:
            raise LocSyncProtocolError(f"Undefined STOMP header escape: \\{nxt}")
        out.append(mapped)
    return "".join(out)


def encode_frame(frame: StompFrame) -> bytes:
    """Serialize *frame*; ``content-length`` is added when there is a body."""
    escape = frame.command not in _UNESCAPED_COMMANDS
    lines = [frame.command]
    headers = dict(frame.headers)
    if frame.body and "content-length" not in headers:
        headers["content-length"] = str(len(frame.body))
    for key, value in headers.items():
        if escape:
            key, value = _escape(key), _escape(value)
        lines.append(f"{key}:{value}")
    head = "\n".join(lines) + "\n\n"
    return head.encode("utf-8") + frame.body + _NUL


def build_frame(command: str, headers: dict[str, str] | None = None, body: str = "") -> bytes:
    return encode_frame(StompFrame(command=command, headers=headers or {}, body=body.encode("utf-8")))


class StompParser:
    """Incremental decoder; tolerates frames split across websocket messages."""

    def __init__(self, *, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        self._buffer = bytearray()
        self._max_frame_bytes = max_frame_bytes

    def feed(self, data: bytes | str) -> list[StompFrame]:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer.extend(data)
        frames: list[StompFrame] = []
        while True:
            self._skip_heartbeats()
            if not self._buffer:
                break
            frame = self._next_frame()
            if frame is None:
                break
            frames.append(frame)
        if len(self._buffer) > self._max_frame_bytes:
            size = len(self._buffer)
            self._buffer.clear()
            raise LocSyncProtocolError(f"STOMP frame exceeds {self._max_frame_bytes} bytes (buffered {size})")
        return frames

    def _skip_heartbeats(self) -> None:
        while self._buffer[:1] == b"\n" or self._buffer[:2] == b"\r\n":
            del self._buffer[: 1 if self._buffer[:1] == b"\n" else 2]

    def _next_frame(self) -> StompFrame | None:
        buf = self._buffer
        head_end = buf.find(b"\n\n")
        crlf_end = buf.find(b"\r\n\r\n")
        if crlf_end != -1 and (head_end == -1 or crlf_end < head_end):
            head_end, sep_len = crlf_end, 4
        elif head_end != -1:
            sep_len = 2
        else:
            return None

        try:
            head = bytes(buf[:head_end]).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise LocSyncProtocolError("STOMP frame header is not UTF-8") from exc
        lines = [line.rstrip("\r") for line in head.split("\n")]
        command = lines[0].strip()
        if not command:
            raise LocSyncProtocolError("STOMP frame without command")

        escape = command not in _UNESCAPED_COMMANDS
        headers: dict[str, str] = {}
        for line in lines[1:]:
            key, sep, value = line.partition(":")
            if not sep:
                raise LocSyncProtocolError(f"Malformed STOMP header line: {line!r}")
            if escape:
                key, value = _unescape(key), _unescape(value)
            # Repeated headers: the first occurrence wins.
            headers.setdefault(key, value)

        body_start = head_end + sep_len
        length_header = headers.get("content-length")
        if length_header is not None:
            try:
                length = int(length_header)
            except ValueError as exc:
                raise LocSyncProtocolError(f"Invalid content-length: {length_header!r}") from exc
            if length < 0 or length > self._max_frame_bytes:
                raise LocSyncProtocolError(f"content-length {length} out of range")
            body_end = body_start + length
            if len(buf) < body_end + 1:
                return None
            if buf[body_end : body_end + 1] != _NUL:
                raise LocSyncProtocolError("STOMP body not terminated by NUL")
        else:
            body_end = buf.find(_NUL, body_start)
            if body_end == -1:
                return None

        body = bytes(buf[body_start:body_end])
        del buf[: body_end + 1]
        return StompFrame(command=command, headers=headers, body=body)


def _parse_heartbeat(value: str | None) -> tuple[int, int]:
    if not value:
        return 0, 0
    tx, sep, rx = value.partition(",")
    try:
        return (int(tx), int(rx)) if sep else (0, 0)
    except ValueError:
        return 0, 0


def negotiate_heartbeat(client_tx_ms: int, client_rx_ms: int, server_header: str | None) -> tuple[int, int]:
    """Return ``(send_every_ms, expect_every_ms)``; ``0`` means disabled."""
    server_tx, server_rx = _parse_heartbeat(server_header)
    send = 0 if client_tx_ms == 0 or server_rx == 0 else max(client_tx_ms, server_rx)
    expect = 0 if client_rx_ms == 0 or server_tx == 0 else max(client_rx_ms, server_tx)
    return send, expect
