"""Native-messaging frame codec.

Wire format: ``[4 bytes little-endian unsigned length][length bytes of UTF-8 JSON]``,
repeated with no delimiter and no checksum. Pure functions, no I/O.
"""

from __future__ import annotations

import json
import struct
from typing import Any, Final

from .errors import FramingError

MAX_FRAME_BYTES = 8_000_000
_HEADER = struct.Struct("<I")


class NeedMoreData:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NEED_MORE_DATA"


NEED_MORE_DATA: Final = NeedMoreData()


def encode_frame(payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_BYTES:
        raise FramingError(f"frame too large: {len(payload)} bytes")
    return _HEADER.pack(len(payload)) + bytes(payload)


def encode_message(msg: dict[str, Any]) -> bytes:
    raw = json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return encode_frame(raw)


def decode_frame(buffer: bytes | bytearray) -> tuple[bytes, bytes] | NeedMoreData:
    """Split one complete frame off the front of ``buffer``.

    Returns ``(payload, remaining)`` or ``NEED_MORE_DATA`` when the header or the
    declared payload is not fully buffered yet. Never reads past the declared length.
    """
    if len(buffer) < _HEADER.size:
        return NEED_MORE_DATA
    (length,) = _HEADER.unpack_from(buffer, 0)
    if length > MAX_FRAME_BYTES:
        raise FramingError(f"invalid frame length: {length}")
    end = _HEADER.size + length
    if len(buffer) < end:
        return NEED_MORE_DATA
    return bytes(buffer[_HEADER.size : end]), bytes(buffer[end:])


def decode_json(payload: bytes) -> dict[str, Any]:
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FramingError(f"failed to decode frame JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise FramingError(f"frame JSON is not an object: {type(obj).__name__}")
    return obj


class FrameDecoder:
    """Accumulates partial reads and yields complete frames in arrival order."""

    def __init__(self) -> None:
        self._buf = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def feed(self, data: bytes) -> list[bytes]:
        if data:
            self._buf.extend(data)
        frames: list[bytes] = []
        while True:
            try:
                res = decode_frame(self._buf)
            except FramingError:
                if frames:
                    # Hand over what decoded cleanly; the bad header raises on the next feed.
                    return frames
                raise
            if isinstance(res, NeedMoreData):
                return frames
            payload, _rest = res
            del self._buf[: _HEADER.size + len(payload)]
            frames.append(payload)

    def messages(self, data: bytes) -> list[dict[str, Any] | FramingError]:
        """Like :meth:`feed`, but JSON-decodes each frame.

        A bad payload only poisons its own frame: it is returned as a
        ``FramingError`` entry and decoding continues with the next frame.
        """
        out: list[dict[str, Any] | FramingError] = []
        for payload in self.feed(data):
            try:
                out.append(decode_json(payload))
            except FramingError as exc:
                out.append(exc)
        return out
