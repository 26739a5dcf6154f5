"""De-framing of chunked batchexecute responses.

Response format (``rt=c``)::

    )]}'
    <byte_count>
    <json_array>
    <byte_count>
    <json_array>
    ...

The first line is an anti-XSSI guard that must be present verbatim. Each
chunk is a decimal length line followed by exactly that many bytes of JSON.
Blank lines between chunks are ignored. The stream ends when the
connection closes.
"""

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from . import constants
from .exceptions import FramingError

logger = logging.getLogger("notebooklm_rpc.framing")

DEFAULT_MAX_FRAME_SIZE = 64 * 1024 * 1024

# Entry markers that carry no call payload
_STATUS_MARKERS = ("di", "af.httprm", "e")


@dataclass(frozen=True)
class Frame:
    """One length-prefixed chunk of the response body."""
    declared_length: int
    payload: bytes
    offset: int  # Byte offset of the payload within the response body

    def json(self) -> Any:
        try:
            return json.loads(self.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FramingError(f"frame payload is not valid JSON: {e}", self.offset) from e


class FrameReader:
    """Incremental de-chunker.

    Feed it body bytes as they arrive; it returns every frame completed so
    far. Call ``close()`` once the stream ends to detect truncation.
    """

    def __init__(self, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self._buf = bytearray()
        self._consumed = 0  # Bytes of the body consumed before _buf[0]
        self._preamble_done = False
        self._expected: int | None = None
        self._closed = False

    @property
    def offset(self) -> int:
        return self._consumed

    def feed(self, data: bytes) -> list[Frame]:
        if self._closed:
            raise FramingError("data received after stream close", self._consumed)
        self._buf.extend(data)
        frames = []
        while True:
            frame = self._next_frame()
            if frame is None:
                break
            frames.append(frame)
        return frames

    def close(self) -> None:
        """Mark end-of-stream; raise if it ended mid-chunk."""
        self._closed = True
        if not self._preamble_done:
            raise FramingError("stream ended before the anti-XSSI preamble", self._consumed)
        if self._expected is not None:
            raise FramingError(
                f"stream ended mid-chunk: declared {self._expected} bytes, got {len(self._buf)}",
                self._consumed,
            )
        if self._buf.strip():
            raise FramingError("stream ended inside a length line", self._consumed)

    def _take(self, n: int) -> bytes:
        chunk = bytes(self._buf[:n])
        del self._buf[:n]
        self._consumed += n
        return chunk

    def _next_frame(self) -> Frame | None:
        if not self._preamble_done:
            if not self._read_preamble():
                return None

        while self._expected is None:
            newline = self._buf.find(b"\n")
            if newline < 0:
                # Anything but digits/whitespace can never become a length line
                pending = bytes(self._buf).strip()
                if pending and not pending.isdigit():
                    raise FramingError(f"invalid chunk length {pending[:20]!r}", self._consumed)
                return None
            line_offset = self._consumed
            line = self._take(newline + 1).strip()
            if not line:
                continue
            if not line.isdigit():
                raise FramingError(f"invalid chunk length {line[:20]!r}", line_offset)
            length = int(line)
            if length > self.max_frame_size:
                raise FramingError(
                    f"declared chunk length {length} exceeds limit {self.max_frame_size}",
                    line_offset,
                )
            self._expected = length

        if len(self._buf) < self._expected:
            return None

        offset = self._consumed
        payload = self._take(self._expected)
        frame = Frame(declared_length=self._expected, payload=payload, offset=offset)
        self._expected = None
        return frame

    def _read_preamble(self) -> bool:
        prefix = constants.ANTI_XSSI_PREFIX
        available = bytes(self._buf[:len(prefix)])
        if not prefix.startswith(available):
            raise FramingError(f"missing anti-XSSI preamble, got {available!r}", 0)
        newline = self._buf.find(b"\n")
        if newline < 0:
            return False
        line = bytes(self._buf[:newline]).rstrip(b"\r")
        if line != prefix:
            raise FramingError(f"unexpected preamble line {line[:20]!r}", 0)
        self._take(newline + 1)
        self._preamble_done = True
        return True


def iter_frames(chunks: Iterable[bytes], max_frame_size: int = DEFAULT_MAX_FRAME_SIZE) -> Iterator[Frame]:
    """Yield frames from an iterable of body chunks, validating the stream end."""
    reader = FrameReader(max_frame_size)
    for chunk in chunks:
        yield from reader.feed(chunk)
    reader.close()


def dechunk(data: bytes, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE) -> list[Frame]:
    """De-chunk a complete response body."""
    return list(iter_frames([data], max_frame_size))


@dataclass(frozen=True)
class RpcEnvelope:
    """A ``wrb.fr`` entry: the response to one call of the batch."""
    rpc_id: str
    payload: Any
    index: int = 0  # 1-based batch position, 0 when tagged "generic"
    error_code: int | None = None


def _parse_payload(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Some RPCs answer with a bare string
            return raw
    return raw


def _parse_index(tag: Any) -> int:
    if isinstance(tag, str) and tag.isdigit():
        return int(tag)
    if isinstance(tag, int) and not isinstance(tag, bool):
        return tag
    return 0


def _parse_error_code(status: Any) -> int | None:
    # Error signature: ["wrb.fr", "RPC_ID", null, null, null, [16], "generic"]
    if isinstance(status, list) and status and isinstance(status[0], int) and not isinstance(status[0], bool):
        return status[0]
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def _entries(data: Any) -> Iterator[list]:
    if not isinstance(data, list):
        return
    # A frame is normally a list of entries, but tolerate a bare entry
    if data and isinstance(data[0], str):
        yield data
        return
    for entry in data:
        if isinstance(entry, list) and entry:
            yield entry


def parse_envelopes(frame: Frame) -> list[RpcEnvelope]:
    """Extract call envelopes from a frame, skipping status/heartbeat entries."""
    envelopes = []
    for entry in _entries(frame.json()):
        marker = entry[0]
        if marker != constants.ENVELOPE_DATA:
            if marker not in _STATUS_MARKERS:
                logger.debug("Skipping unknown entry type %r at byte %d", marker, frame.offset)
            continue
        if len(entry) < 2 or not isinstance(entry[1], str):
            raise FramingError("data envelope without an RPC id", frame.offset)
        envelopes.append(RpcEnvelope(
            rpc_id=entry[1],
            payload=_parse_payload(entry[2]) if len(entry) > 2 else None,
            index=_parse_index(entry[6]) if len(entry) > 6 else 0,
            error_code=_parse_error_code(entry[5]) if len(entry) > 5 else None,
        ))
    return envelopes


def find_envelope(envelopes: Iterable[RpcEnvelope], rpc_id: str, index: int | None = None) -> RpcEnvelope | None:
    """Pick the envelope answering ``rpc_id`` (and batch ``index`` when given)."""
    for envelope in envelopes:
        if envelope.rpc_id != rpc_id:
            continue
        if index is not None and envelope.index not in (0, index):
            continue
        return envelope
    return None
