"""Undoes stacked Content-Encoding transforms and prepares bodies for display.

The decoder never gives up on odd input: an unknown encoding stops the
unwrapping and whatever is left is returned as is, and a body that is not
JSON is shown verbatim. Only errors from the underlying stream (or a corrupt
compressed payload) propagate.
"""

import contextlib
import io
import json
import logging
import zlib
from typing import Any, NamedTuple

import brotli

logger = logging.getLogger(__name__)

DISPLAY_LIMIT_BYTES = 1024 * 1024
CHUNK_SIZE = 64 * 1024


class RenderedBody(NamedTuple):
    text: str
    truncated: bool


class JsonResult(NamedTuple):
    ok: bool
    value: Any = None


class _ZlibDecoder:
    def __init__(self, wbits):
        self._obj = zlib.decompressobj(wbits)

    def decompress(self, data: bytes) -> bytes:
        return self._obj.decompress(data)

    def flush(self) -> bytes:
        return self._obj.flush()


class _GzipDecoder(_ZlibDecoder):
    def __init__(self):
        super().__init__(16 + zlib.MAX_WBITS)


class _DeflateDecoder:
    """HTTP "deflate" is meant to be zlib-wrapped, but plenty of servers send
    raw deflate. Try zlib on the first bytes and switch to raw if that fails."""

    def __init__(self):
        self._first_try = True
        self._data = b""
        self._obj = zlib.decompressobj()

    def decompress(self, data: bytes) -> bytes:
        if not data:
            return data

        if not self._first_try:
            return self._obj.decompress(data)

        self._data += data
        try:
            decompressed = self._obj.decompress(data)
            if decompressed:
                self._first_try = False
                self._data = None
            return decompressed
        except zlib.error:
            self._first_try = False
            self._obj = zlib.decompressobj(-zlib.MAX_WBITS)
            try:
                return self.decompress(self._data)
            finally:
                self._data = None

    def flush(self) -> bytes:
        return self._obj.flush()


class _BrotliDecoder:
    def __init__(self):
        self._obj = brotli.Decompressor()

    def decompress(self, data: bytes) -> bytes:
        return self._obj.process(data)

    def flush(self) -> bytes:
        return b""


DECODERS = {
    "gzip": _GzipDecoder,
    "x-gzip": _GzipDecoder,
    "deflate": _DeflateDecoder,
    "br": _BrotliDecoder,
}


class DecompressingReader(io.RawIOBase):
    """Readable stream that decompresses another readable stream on the fly.

    Closing the reader does not close the wrapped stream.
    """

    def __init__(self, source, decoder, chunk_size: int = CHUNK_SIZE):
        self._source = source
        self._decoder = decoder
        self._chunk_size = chunk_size
        self._buffer = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer and not self._eof:
            chunk = self._source.read(self._chunk_size)
            if chunk:
                self._buffer = self._decoder.decompress(chunk)
            else:
                self._buffer = self._decoder.flush()
                self._eof = True

        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


def parse_content_encodings(values) -> list:
    """Flattens one or more Content-Encoding header values into a list of names."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]

    encodings = []
    for value in values:
        encodings.extend(part.strip() for part in value.split(",") if part.strip())
    return encodings


def _read_all(stream) -> bytes:
    out = io.BytesIO()
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        out.write(chunk)
    return out.getvalue()


def decode(stream, encodings) -> bytes:
    """Reads `stream` to the end, unwrapping `encodings` last-declared first."""
    with contextlib.ExitStack() as stack:
        reader = stream
        for name in reversed(list(encodings)):
            enc = name.strip().lower()
            if enc == "identity":
                continue
            decoder_cls = DECODERS.get(enc)
            if decoder_cls is None:
                logger.warning("Unknown content encoding %r, leaving the rest of the body encoded", name)
                break
            reader = stack.enter_context(DecompressingReader(reader, decoder_cls()))
        return _read_all(reader)


def _reject_constant(name):
    raise ValueError(f"Non-standard JSON constant: {name}")


def try_parse_json(text: str) -> JsonResult:
    try:
        return JsonResult(True, json.loads(text, parse_constant=_reject_constant))
    except (ValueError, RecursionError):
        return JsonResult(False)


def render(data: bytes, limit: int = DISPLAY_LIMIT_BYTES) -> RenderedBody:
    truncated = len(data) > limit
    text = data[:limit].decode("utf-8", errors="replace")

    parsed = try_parse_json(text)
    if parsed.ok:
        text = json.dumps(parsed.value, indent=2, ensure_ascii=False)

    if truncated:
        text += f"\n\n--- truncated at {limit} bytes ---"

    return RenderedBody(text, truncated)
