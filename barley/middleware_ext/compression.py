"""
Compression Middleware - negotiated response compression.

Encodings in preference order: ``br`` (brotli), ``gzip``, ``deflate``.

A response is compressed only when all of these hold:
- the request method is GET or HEAD
- the response has no ``Content-Encoding`` and is not 204/304
- the content type is text-like
- the body is at least ``threshold`` bytes
- the compressed body is strictly smaller than the original

Otherwise the response passes through untouched. Encoder failures are
logged and also leave the response untouched.
"""

from __future__ import annotations

import gzip
import logging
import threading
import zlib
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

import brotli

from barley.request import Request
from barley.response import Response

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]

logger = logging.getLogger("barley.compression")

DEFAULT_ENCODINGS: Tuple[str, ...] = ("br", "gzip", "deflate")

COMPRESSIBLE_TYPES: Tuple[str, ...] = (
    "text/",
    "application/json",
    "application/javascript",
    "application/xml",
    "application/rss+xml",
    "application/atom+xml",
    "image/svg+xml",
    "application/x-font-ttf",
    "font/opentype",
)

NON_COMPRESSIBLE_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/",
    "audio/",
    "application/zip",
    "application/gzip",
    "application/x-rar-compressed",
    "application/pdf",
    "application/octet-stream",
)


def is_compressible(content_type: str) -> bool:
    content_type = content_type.split(";")[0].strip().lower()
    if any(content_type.startswith(t) for t in NON_COMPRESSIBLE_TYPES):
        return False
    return any(content_type.startswith(t) for t in COMPRESSIBLE_TYPES)


def parse_accept_encoding(header: Optional[str]) -> List[Tuple[str, float]]:
    """
    Parse ``Accept-Encoding`` into ``(encoding, q)`` pairs, highest q first.

    Entries with ``q=0`` (or an unparsable q) are dropped.
    """
    if not header:
        return []
    parsed: List[Tuple[str, float]] = []
    for item in header.split(","):
        parts = [p.strip() for p in item.split(";")]
        name = parts[0].lower()
        if not name:
            continue
        quality = 1.0
        for param in parts[1:]:
            if param.startswith("q="):
                try:
                    quality = float(param[2:])
                except ValueError:
                    quality = 0.0
        if quality > 0:
            parsed.append((name, quality))
    parsed.sort(key=lambda pair: pair[1], reverse=True)
    return parsed


def select_encoding(
    accepted: Sequence[Tuple[str, float]],
    supported: Sequence[str] = DEFAULT_ENCODINGS,
) -> Optional[str]:
    """First supported encoding the client accepts explicitly or via ``*``."""
    names = {name for name, _ in accepted}
    for encoding in supported:
        if encoding in names or "*" in names:
            return encoding
    return None


def compress(data: bytes, encoding: str, level: int = 6) -> bytes:
    """Compress ``data`` with the named encoding."""
    if encoding == "br":
        return brotli.compress(data, quality=level)
    if encoding == "gzip":
        return gzip.compress(data, compresslevel=level, mtime=0)
    if encoding == "deflate":
        return zlib.compress(data, level)
    raise ValueError(f"Unsupported compression encoding: {encoding}")


class CompressionStats:
    """Running totals of applied compressions."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        self.requests_processed = 0
        self.bytes_original = 0
        self.bytes_compressed = 0
        self.encoding_usage: Dict[str, int] = {}

    def add(self, original_size: int, compressed_size: int, encoding: str) -> None:
        with self._lock:
            self.requests_processed += 1
            self.bytes_original += original_size
            self.bytes_compressed += compressed_size
            self.encoding_usage[encoding] = self.encoding_usage.get(encoding, 0) + 1

    @property
    def average_ratio(self) -> float:
        """Bytes saved as a percentage of original bytes."""
        if self.bytes_original == 0:
            return 0.0
        return (self.bytes_original - self.bytes_compressed) / self.bytes_original * 100

    def to_dict(self) -> Dict[str, object]:
        return {
            "requests_processed": self.requests_processed,
            "bytes_original": self.bytes_original,
            "bytes_compressed": self.bytes_compressed,
            "average_ratio": round(self.average_ratio, 2),
            "encoding_usage": dict(self.encoding_usage),
        }


class CompressionMiddleware:
    """
    Args:
        threshold: Minimum body size in bytes.
        level: Compression level (brotli quality / zlib level).
        encodings: Supported encodings in preference order.
        stats: Optional collector updated on every applied compression.
    """

    CACHEABLE_METHODS = frozenset({"GET", "HEAD"})

    def __init__(
        self,
        threshold: int = 1024,
        level: int = 6,
        encodings: Sequence[str] = DEFAULT_ENCODINGS,
        stats: Optional[CompressionStats] = None,
    ):
        self.threshold = threshold
        self.level = level
        self.encodings = tuple(encodings)
        self.stats = stats

    async def __call__(
        self,
        request: Request,
        ctx: "RequestCtx",
        next_handler: Handler,
    ) -> Response:
        response = await next_handler(request, ctx)

        if request.method not in self.CACHEABLE_METHODS:
            return response
        if response.status in (204, 304) or response.get_header("content-encoding"):
            return response
        if not is_compressible(response.media_type):
            return response

        original = response.body
        if len(original) < self.threshold:
            return response

        encoding = select_encoding(
            parse_accept_encoding(request.header("accept-encoding")),
            self.encodings,
        )
        if encoding is None:
            return response

        try:
            compressed = compress(original, encoding, self.level)
        except Exception:
            logger.warning("Compression with %s failed", encoding, exc_info=True)
            return response

        if len(compressed) >= len(original):
            return response

        ratio = (len(original) - len(compressed)) / len(original) * 100
        response.body = compressed
        response.headers["content-encoding"] = encoding
        response.headers["content-length"] = str(len(compressed))
        response.headers["x-compression-ratio"] = f"{ratio:.2f}%"
        response.headers["x-original-size"] = str(len(original))
        response.headers["x-compressed-size"] = str(len(compressed))
        response.append_vary("Accept-Encoding")

        if self.stats is not None:
            self.stats.add(len(original), len(compressed), encoding)
        return response


__all__ = [
    "CompressionMiddleware",
    "CompressionStats",
    "compress",
    "is_compressible",
    "parse_accept_encoding",
    "select_encoding",
]
